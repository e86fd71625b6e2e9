"""
parser.py – Assembly text → Script.

Parsing runs in two steps.  ``_Parser`` turns the token stream into a flat
list of syntax items (label declarations, directives, statements) without
knowing anything about operand legality.  ``_ScriptBuilder`` then walks those
items in order, checks every statement against the operand-shape tables,
registers labels with the symbol table and assembles the Script.

Entry point: ``parse(text)``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from . import lexer as lx
from .errors import ParseError, ResolutionError, Span
from .lexer import Token, tokenize
from .opcodes import (
    ANIM_COMMANDS,
    CMD_OPCODES,
    EXPR_OPCODES,
    MESSAGE_COMMANDS,
    MSG_OPCODES,
    STAGE_EVENTS,
    is_text_byte,
)
from .program import (
    AtomRef,
    Block,
    Data,
    EntryPoint,
    Expr,
    Instruction,
    Int,
    LabelRef,
    Message,
    MsgCommand,
    Offset,
    Script,
    Target,
    Text,
    walk_operands,
)
from .signatures import (
    ELSE,
    MSG_SIGNATURES,
    SignatureMismatch,
    accepts_field,
    command_shape,
    is_anim_terminator,
    match,
    slot_at,
)

log = logging.getLogger(__name__)

_CONST_OPS = {'i8': 1, 'i16': 2, 'i32': 4}


# ---------------------------------------------------------------------------
# Syntax items
# ---------------------------------------------------------------------------

@dataclass
class LabelDecl:
    name: str
    span: Span


@dataclass
class Directive:
    name: str
    operands: list = field(default_factory=list)
    span: Optional[Span] = None


@dataclass
class Statement:
    opcode: str
    operands: list = field(default_factory=list)
    span: Optional[Span] = None


# ---------------------------------------------------------------------------
# Token-level parser
# ---------------------------------------------------------------------------

class _Parser:

    def __init__(self, text: str) -> None:
        self._tokens = tokenize(text)
        self._buf: list[Token] = []

    # Token access -------------------------------------------------------

    def peek(self, ahead: int = 0) -> Token:
        while len(self._buf) <= ahead:
            self._buf.append(next(self._tokens))
        return self._buf[ahead]

    def advance(self) -> Token:
        tok = self.peek()
        self._buf.pop(0)
        return tok

    def expect(self, kind: str, what: str) -> Token:
        tok = self.peek()
        if tok.kind != kind:
            raise ParseError(ParseError.SYNTAX, f"expected {what}, got {tok}", tok.span)
        return self.advance()

    def _skip_newlines(self) -> None:
        while self.peek().kind == lx.NEWLINE:
            self.advance()

    def _end_of_item(self) -> None:
        tok = self.peek()
        if tok.kind not in (lx.NEWLINE, lx.EOF):
            raise ParseError(ParseError.SYNTAX, f"expected end of line, got {tok}", tok.span)

    # Items --------------------------------------------------------------

    def items(self) -> list:
        result: list = []
        while True:
            self._skip_newlines()
            tok = self.peek()
            if tok.kind == lx.EOF:
                return result
            if tok.kind == lx.IDENT and self.peek(1).kind == lx.COLON:
                self.advance()
                colon = self.advance()
                result.append(LabelDecl(tok.value, Span(tok.start, colon.end)))
                continue
            if tok.kind == lx.DIRECTIVE:
                self.advance()
                operands = self._operand_list(self._operand)
                result.append(Directive(tok.value, operands, self._span_from(tok, operands)))
            elif tok.kind == lx.IDENT:
                self.advance()
                if tok.value in MESSAGE_COMMANDS:
                    operands = [self._message(tok)]
                else:
                    operands = self._operand_list(self._operand)
                result.append(Statement(tok.value, operands, self._span_from(tok, operands)))
            else:
                raise ParseError(ParseError.SYNTAX,
                                 f"expected a label, directive or command, got {tok}",
                                 tok.span)
            self._end_of_item()

    @staticmethod
    def _span_from(tok: Token, operands: list) -> Span:
        span = tok.span
        if operands and operands[-1].span is not None:
            span = span.join(operands[-1].span)
        return span

    def _operand_list(self, parse_one) -> list:
        if self.peek().kind in (lx.NEWLINE, lx.EOF):
            return []
        operands = [parse_one(0)]
        while self.peek().kind == lx.COMMA:
            self.advance()
            self._skip_newlines()
            operands.append(parse_one(len(operands)))
        return operands

    # Operands -----------------------------------------------------------

    def _operand(self, index: int = 0):
        tok = self.peek()
        if tok.kind == lx.STRING:
            self.advance()
            return Text(tok.value, tok.span)
        if tok.kind == lx.ATOM:
            self.advance()
            return AtomRef(tok.value, tok.span)
        if tok.kind == lx.ELSE:
            self.advance()
            target = self.peek()
            if target.kind not in (lx.LABEL, lx.OFFSET):
                raise ParseError(ParseError.SYNTAX,
                                 f"expected a label after 'else', got {target}", target.span)
            ref = self._term()
            ref.is_else = True
            ref.span = tok.span.join(ref.span)
            return ref
        return self._term()

    def _term(self):
        """One expression-level term: literal, label, offset or call."""
        tok = self.advance()
        if tok.kind == lx.INT:
            return Int(tok.value, tok.width, tok.span)
        if tok.kind == lx.LABEL:
            return LabelRef(tok.value, tok.width, span=tok.span)
        if tok.kind == lx.OFFSET:
            return Offset(tok.value, tok.width, span=tok.span)
        if tok.kind == lx.ATOM:
            return AtomRef(tok.value, tok.span)
        if tok.kind == lx.IDENT:
            args: list = []
            end = tok.span
            if self.peek().kind == lx.LPAREN:
                self.advance()
                if self.peek().kind != lx.RPAREN:
                    args.append(self._term())
                    while self.peek().kind == lx.COMMA:
                        self.advance()
                        args.append(self._term())
                end = self.expect(lx.RPAREN, "')'").span
            return self._call(tok, args, tok.span.join(end))
        if tok.kind == lx.STRING:
            raise ParseError(ParseError.SYNTAX,
                             "a string cannot appear inside an expression", tok.span)
        raise ParseError(ParseError.SYNTAX, f"expected an expression, got {tok}", tok.span)

    @staticmethod
    def _call(tok: Token, args: list, span: Span):
        name = tok.value
        if name not in EXPR_OPCODES:
            raise ParseError(ParseError.SYNTAX,
                             f"unrecognized expression operator '{name}'", tok.span)
        # i8(5) / i16(5) / i32(5) are literals with a forced width
        if name in _CONST_OPS and len(args) == 1 and isinstance(args[0], Int):
            return Int(args[0].value, _CONST_OPS[name], span)
        if name == 'addr' and len(args) == 1 and isinstance(args[0], (LabelRef, Offset)):
            args[0].span = span
            return args[0]
        return Expr(name, args, span)

    # Message bodies -----------------------------------------------------

    def _message(self, opcode: Token) -> Message:
        def one(index: int) -> MsgCommand:
            tok = self.peek()
            if tok.kind == lx.STRING:
                self.advance()
                return MsgCommand('text', [Text(tok.value, tok.span)], tok.span)
            if tok.kind != lx.IDENT or tok.value not in MSG_OPCODES:
                span = self._skip_term()
                raise ParseError.invalid_operand(opcode.value, index, span,
                                                 "expected a message command")
            self.advance()
            args: list = []
            end = tok.span
            if self.peek().kind == lx.LPAREN:
                self.advance()
                if self.peek().kind != lx.RPAREN:
                    args.append(self._message_arg(opcode.value, index))
                    while self.peek().kind == lx.COMMA:
                        self.advance()
                        args.append(self._message_arg(opcode.value, index))
                end = self.expect(lx.RPAREN, "')'").span
            return MsgCommand(tok.value, args, tok.span.join(end))

        commands = self._operand_list(one)
        span = opcode.span
        if commands and commands[-1].span is not None:
            span = Span(commands[0].span.start, commands[-1].span.end)
        return Message(commands, span)

    def _message_arg(self, opcode: str, index: int):
        tok = self.peek()
        if tok.kind == lx.INT:
            self.advance()
            return Int(tok.value, tok.width, tok.span)
        if tok.kind == lx.STRING:
            self.advance()
            return Text(tok.value, tok.span)
        span = self._skip_term()
        raise ParseError.invalid_operand(opcode, index, span,
                                         "message arguments must be integers or strings")

    def _skip_term(self) -> Span:
        """Consume one (possibly parenthesized) term for error reporting."""
        first = self.advance()
        span = first.span
        if self.peek().kind == lx.LPAREN:
            depth = 0
            while True:
                tok = self.advance()
                span = span.join(tok.span)
                if tok.kind == lx.LPAREN:
                    depth += 1
                elif tok.kind == lx.RPAREN:
                    depth -= 1
                    if depth == 0:
                        break
                elif tok.kind in (lx.NEWLINE, lx.EOF):
                    break
        return span


# ---------------------------------------------------------------------------
# Script builder
# ---------------------------------------------------------------------------

class _ScriptBuilder:

    def __init__(self) -> None:
        self.script: Optional[Script] = None
        self.block: Optional[Block] = None

    def build(self, items: list) -> Script:
        if not items or not self._is_target(items[0]):
            span = items[0].span if items else None
            raise ResolutionError(ResolutionError.MISSING_TARGET,
                                  "missing target specifier: the script must begin "
                                  "with .stage or .globals", span)
        self.script = Script(self._target(items[0]))
        for item in items[1:]:
            if isinstance(item, LabelDecl):
                self.block = self.script.add_block(item.name, item.span)
            elif isinstance(item, Directive):
                self._directive(item)
            else:
                self._statement(item)
        self.script.labels.resolve_all()
        log.debug("parsed %d block(s), %d entry point(s)",
                  len(self.script.blocks), len(self.script.entries))
        return self.script

    # Directives ---------------------------------------------------------

    @staticmethod
    def _is_target(item) -> bool:
        return isinstance(item, Directive) and item.name in ('stage', 'globals')

    def _target(self, item: Directive) -> Target:
        if item.name == 'globals':
            if item.operands:
                raise ParseError.invalid_operand('.globals', 0, item.operands[0].span,
                                                 "too many operands for directive")
            return Target.globals()
        if not item.operands or not isinstance(item.operands[0], Text):
            raise ParseError(ParseError.INVALID_OPERAND,
                             "target specifier is missing a stage name", item.span,
                             opcode='.stage', operand_index=0)
        if len(item.operands) > 1:
            raise ParseError.invalid_operand('.stage', 1, item.operands[1].span,
                                             "too many operands for directive")
        return Target.stage(item.operands[0].data.decode(lx.TEXT_ENCODING, errors="replace"))

    def _directive(self, item: Directive) -> None:
        name = item.name
        if self._is_target(item):
            raise ResolutionError(ResolutionError.DUPLICATE_TARGET,
                                  "duplicate target specifier", item.span)
        if name in STAGE_EVENTS:
            self._expect_shape(item, (LabelRef,))
            self._entry(EntryPoint(name), item.operands[0], item.span)
        elif name in ('interact', 'lib'):
            self._expect_shape(item, (Int, LabelRef))
            self._entry(EntryPoint(name, item.operands[0].value),
                        item.operands[1], item.span)
        elif name in ('db', 'dw', 'dd'):
            self._data(item)
        else:
            raise ParseError(ParseError.UNKNOWN_DIRECTIVE,
                             f"unrecognized directive: '.{name}'", item.span)

    @staticmethod
    def _expect_shape(item: Directive, shape: tuple) -> None:
        for index, kind in enumerate(shape):
            if index >= len(item.operands):
                raise ParseError.invalid_operand(f".{item.name}", index, item.span,
                                                 "not enough operands for directive")
            operand = item.operands[index]
            if not isinstance(operand, kind) or getattr(operand, 'is_else', False):
                what = 'a label reference' if kind is LabelRef else 'an integer'
                raise ParseError.invalid_operand(f".{item.name}", index, operand.span,
                                                 f"expected {what}")
            if kind is LabelRef and operand.width is not None:
                raise ParseError.invalid_operand(f".{item.name}", index, operand.span,
                                                 "entry point labels take no width suffix")
        if len(item.operands) > len(shape):
            extra = item.operands[len(shape)]
            raise ParseError.invalid_operand(f".{item.name}", len(shape), extra.span,
                                             "too many operands for directive")

    def _entry(self, entry: EntryPoint, ref: LabelRef, span: Span) -> None:
        self.script.labels.reference(ref.name, ref.span)
        self.script.add_entry(entry, ref.name, span)

    def _data(self, item: Directive) -> None:
        if not item.operands:
            raise ParseError.invalid_operand(f".{item.name}", 0, item.span,
                                             "expected at least one value")
        for index, value in enumerate(item.operands):
            ok = isinstance(value, Int)
            if item.name == 'db':
                ok = ok or isinstance(value, Text)
            elif item.name == 'dd':
                ok = ok or (isinstance(value, (LabelRef, Offset)) and not value.is_else)
            if not ok:
                raise ParseError.invalid_operand(f".{item.name}", index, value.span,
                                                 f"unsupported value for .{item.name}")
            if isinstance(value, LabelRef):
                self.script.labels.reference(value.name, value.span)
        self._current_block().items.append(Data(item.name, item.operands, item.span))

    # Statements ---------------------------------------------------------

    def _current_block(self) -> Block:
        if self.block is None:
            self.block = self.script.add_block(f"${len(self.script.blocks)}")
        return self.block

    def _statement(self, item: Statement) -> None:
        opcode = item.opcode
        if opcode not in CMD_OPCODES:
            raise ParseError(ParseError.UNKNOWN_COMMAND,
                             f"unrecognized command: '{opcode}'", item.span)
        operands = item.operands
        if opcode in MESSAGE_COMMANDS:
            self._check_message(opcode, operands[0])
        else:
            try:
                shape = command_shape(opcode, operands)
            except SignatureMismatch as exc:
                span = operands[exc.index].span if exc.index < len(operands) else item.span
                raise ParseError.invalid_operand(opcode, exc.index, span, exc.detail) from None
            for index, operand in enumerate(operands):
                if slot_at(shape, index) == ELSE:
                    operand.is_else = True
        if opcode in ANIM_COMMANDS:
            for index, operand in enumerate(operands[1:], 1):
                if is_anim_terminator(operand):
                    raise ParseError.invalid_operand(
                        opcode, index, operand.span,
                        "value encodes as the argument terminator and cannot be passed")
        for operand in walk_operands(operands):
            if isinstance(operand, LabelRef):
                self.script.labels.reference(operand.name, operand.span)
        self._current_block().items.append(Instruction(opcode, operands, item.span))

    def _check_message(self, opcode: str, message: Message) -> None:
        merged: list[MsgCommand] = []
        for index, cmd in enumerate(message.commands):
            if cmd.op == 'text':
                text = cmd.args[0]
                if not text.data:
                    continue
                bad = [b for b in text.data if not is_text_byte(b)]
                if bad:
                    raise ParseError.invalid_operand(
                        opcode, index, cmd.span,
                        f"byte 0x{bad[0]:02x} cannot appear in message text")
                if merged and merged[-1].op == 'text':
                    prev = merged[-1]
                    prev.args = [Text(prev.args[0].data + text.data,
                                      prev.args[0].span.join(text.span))]
                    continue
                merged.append(MsgCommand('text', [Text(text.data, text.span)], cmd.span))
                continue
            try:
                match(cmd.op, MSG_SIGNATURES[cmd.op], cmd.args, accepts_field)
            except SignatureMismatch as exc:
                raise ParseError.invalid_operand(opcode, index, cmd.span,
                                                 f"in '{cmd.op}': {exc.detail}") from None
            # message fields have a fixed width
            for arg in cmd.args:
                if isinstance(arg, Int):
                    arg.width = None
            merged.append(cmd)
        message.commands = merged


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_items(text: str) -> list:
    """Return the syntax items of *text* without building a Script."""
    return _Parser(text).items()


def parse(text: str) -> Script:
    """Parse assembly *text* into a Script.

    Raises
    ------
    LexError, ParseError, ResolutionError
    """
    return _ScriptBuilder().build(parse_items(text))
