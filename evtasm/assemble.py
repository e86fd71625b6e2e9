"""
assemble.py – Script → event-script bytecode.

Every item of the script is first *lowered* into a list of pieces: literal
byte strings, zero-width anchors, and ``_Ref`` fields whose bytes depend on
addresses that are not known yet.  Jump targets and ``addr`` operands are
width-tagged constants, so their size depends on the address they hold and
the address depends on the size of everything before it.  ``relax`` breaks
that cycle with a bounded fixed-point iteration: every label operand starts
at 8 bits, the pieces are laid out, any operand whose target no longer fits
is widened one step, and the layout is repeated until nothing grows.

Entry point: ``assemble_file(src_path, outdir='.')``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from .errors import EncodeError, Span
from .opcodes import (
    ANIM_COMMANDS,
    ANIM_TERMINATOR,
    ATOMS,
    CMD_OPCODES,
    CONST_TAGS,
    EXPR_OPCODES,
    MAX_MESSAGE_SIZE,
    MESSAGE_COMMANDS,
    MSG_END,
    MSG_FORMAT,
    MSG_OPCODES,
    OP_ADDR,
    REVERSED_OPS,
    address_width,
    fits_width,
    is_text_byte,
    literal_width,
    next_width,
    pack_int,
)
from .program import (
    AtomRef,
    Data,
    EntryPoint,
    Expr,
    Instruction,
    Int,
    LabelRef,
    Message,
    Offset,
    Script,
    Text,
    dump_entries,
)
from .signatures import (
    ELSE,
    FORMAT,
    INT,
    MSG_SIGNATURES,
    PTR,
    TEXT,
    VARIADIC,
    Atom,
    Field,
    Lit,
    SignatureMismatch,
    accepts_field,
    command_shape,
    expression_slots,
    is_anim_terminator,
    match,
    min_operands,
)

log = logging.getLogger(__name__)

# Upper bound on layout passes before giving up on a fixed point
MAX_PASSES = 64

_CONST_EXPRS = {'i8': 1, 'i16': 2, 'i32': 4}
_DATA_WIDTHS = {'db': 1, 'dw': 2, 'dd': 4}


# ---------------------------------------------------------------------------
# Pieces
# ---------------------------------------------------------------------------

class _Anchor:
    """Zero-width marker whose address is filled in by each layout pass."""
    __slots__ = ('addr',)

    def __init__(self) -> None:
        self.addr = 0


class _Ref:
    """An address-valued field, resolved once the layout is stable."""
    __slots__ = ('mode', 'target', 'width', 'forced', 'operand', 'where',
                 'span', 'item', 'index', 'addr')

    TAGGED = 'tagged'     # const tag + unsigned address, width relaxed
    ABS32 = 'abs32'       # raw 32-bit address
    LEN16 = 'len16'       # raw 16-bit distance from the field to the target

    def __init__(self, mode: str, target: Union[str, _Anchor], width: int,
                 forced: bool, operand=None, where: str = '',
                 span: Optional[Span] = None, item: int = 0, index: int = 0) -> None:
        self.mode = mode
        self.target = target
        self.width = width
        self.forced = forced
        self.operand = operand
        self.where = where
        self.span = span
        self.item = item
        self.index = index
        self.addr = 0

    @property
    def size(self) -> int:
        return self.width + 1 if self.mode == self.TAGGED else self.width

    def describe(self) -> str:
        if isinstance(self.target, str):
            return f"reference to '{self.target}' in {self.where}"
        return self.where


# ---------------------------------------------------------------------------
# Layout results
# ---------------------------------------------------------------------------

@dataclass
class Fixup:
    """One label operand and the width the relaxation settled on."""
    item: int                         # index of the item in program order
    operand: int                      # index of the top-level operand
    label: str
    width: int
    ref: Optional[LabelRef] = field(default=None, compare=False, repr=False)


@dataclass
class Layout:
    size: int
    passes: int
    block_addresses: list[int]
    item_addresses: list[int]
    fixups: list[Fixup]

    def address_of(self, script: Script, label: str) -> int:
        return self.block_addresses[script.resolve(label).block]


@dataclass
class Assembled:
    data: bytes
    entries: dict[EntryPoint, int]
    layout: Layout


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------

class _Assembler:

    def __init__(self, script: Script, max_passes: int = MAX_PASSES) -> None:
        self.script = script
        self.max_passes = max_passes
        self.pieces: list = []
        self.refs: list[_Ref] = []
        self.block_marks: list[_Anchor] = []
        self.item_marks: list[_Anchor] = []
        self.size = 0
        self.passes = 0
        self._where = ''
        self._span: Optional[Span] = None
        self._index = 0

    # ------------------------------------------------------------------
    # Lowering
    # ------------------------------------------------------------------

    def lower(self) -> None:
        for block in self.script.blocks:
            self._mark(self.block_marks)
            for item in block.items:
                self._mark(self.item_marks)
                if isinstance(item, Instruction):
                    self._instruction(item)
                else:
                    self._data(item)

    def _mark(self, marks: list) -> None:
        anchor = _Anchor()
        marks.append(anchor)
        self.pieces.append(anchor)

    def _emit(self, raw: bytes) -> None:
        self.pieces.append(raw)

    def _add_ref(self, mode: str, target, width: int, forced: bool, operand=None) -> None:
        ref = _Ref(mode, target, width, forced, operand, self._where,
                   getattr(operand, 'span', None) or self._span,
                   len(self.item_marks) - 1, self._index)
        self.pieces.append(ref)
        self.refs.append(ref)

    def _fail(self, reason: str, message: str, operand=None) -> EncodeError:
        return EncodeError(reason, message, getattr(operand, 'span', None) or self._span)

    def _instruction(self, ins: Instruction) -> None:
        opcode = ins.opcode
        self._span = ins.span
        self._index = 0
        self._where = f"operand 1 of '{opcode}'"
        if opcode not in CMD_OPCODES:
            raise self._fail(EncodeError.INTERNAL, f"no opcode for command '{opcode}'")
        self._emit(bytes([CMD_OPCODES[opcode]]))
        if opcode in MESSAGE_COMMANDS:
            self._message(ins.operands[0] if ins.operands else None, opcode)
            return
        try:
            shape = command_shape(opcode, ins.operands)
        except SignatureMismatch as exc:
            raise self._fail(EncodeError.INTERNAL,
                             f"operands of '{opcode}' have no encoding: {exc.detail}") from None
        operands = ins.operands

        if opcode == 'set':
            # value first, then target; a compound assignment stands alone
            order = [0] if len(operands) == 1 else [1, 0]
            for index in order:
                self._at(index, opcode)
                self._expr(operands[index])
            return

        end = None
        if opcode == 'call':
            end = _Anchor()
            self._add_ref(_Ref.LEN16, end, 2, True)

        fixed = min_operands(shape)
        for index in range(fixed):
            self._at(index, opcode)
            self._operand(shape[index], operands[index])
        if shape and shape[-1] == VARIADIC:
            tail = operands[fixed:]
            if opcode == 'ptcl':
                self._emit(_const(len(tail), literal_width(len(tail))))
            for index, operand in enumerate(tail, fixed):
                self._at(index, opcode)
                if opcode in ANIM_COMMANDS and is_anim_terminator(operand):
                    raise self._fail(EncodeError.OUT_OF_RANGE,
                                     f"{self._where} encodes as the argument terminator",
                                     operand)
                self._expr(operand)
            if opcode in ANIM_COMMANDS:
                self._emit(ANIM_TERMINATOR)
        if end is not None:
            self.pieces.append(end)

    def _at(self, index: int, opcode: str) -> None:
        self._index = index
        self._where = f"operand {index + 1} of '{opcode}'"

    def _operand(self, slot, operand) -> None:
        if slot in (PTR, ELSE):
            self._pointer(operand)
        elif slot == TEXT:
            if 0 in operand.data:
                raise self._fail(EncodeError.OUT_OF_RANGE,
                                 "string cannot contain a NUL byte", operand)
            self._emit(operand.data + b'\0')
        elif isinstance(slot, Atom):
            self._emit(_const(slot.value, 4))
        elif isinstance(slot, Lit) or slot == INT:
            self._int(operand)
        else:
            self._expr(operand)

    def _int(self, operand: Int) -> None:
        value = operand.value
        if operand.width is None:
            if not fits_width(value, 4):
                raise self._fail(EncodeError.OUT_OF_RANGE,
                                 f"{value} does not fit in 32 bits", operand)
            self._emit(_const(value, literal_width(value)))
            return
        if not fits_width(value, operand.width):
            raise self._fail(EncodeError.OUT_OF_RANGE,
                             f"{value} does not fit in {operand.width * 8} bits", operand)
        self._emit(_const(value, operand.width))

    def _pointer(self, operand) -> None:
        if isinstance(operand, Offset):
            width = operand.width or address_width(operand.value)
            if not 0 <= operand.value < (1 << (width * 8)):
                raise self._fail(EncodeError.OUT_OF_RANGE,
                                 f"offset 0x{operand.value:x} does not fit in "
                                 f"{width * 8} bits", operand)
            self._emit(bytes([CONST_TAGS[width]]) + operand.value.to_bytes(width, 'little'))
            return
        if operand.name not in self.script.labels:
            raise self._fail(EncodeError.UNRESOLVED_LABEL,
                             f"undefined label: '{operand.name}'", operand)
        self._add_ref(_Ref.TAGGED, operand.name, operand.width or 1,
                      operand.width is not None, operand)

    def _expr(self, operand) -> None:
        if isinstance(operand, Int):
            self._int(operand)
        elif isinstance(operand, (LabelRef, Offset)):
            self._emit(bytes([OP_ADDR]))
            self._pointer(operand)
        elif isinstance(operand, AtomRef):
            self._emit(_const(ATOMS[operand.name], 4))
        elif isinstance(operand, Expr):
            if operand.op in _CONST_EXPRS and len(operand.args) == 1:
                arg = operand.args[0]
                self._int(Int(arg.value, _CONST_EXPRS[operand.op], arg.span))
                return
            try:
                shape = expression_slots(operand)
            except (SignatureMismatch, KeyError):
                raise self._fail(EncodeError.INTERNAL,
                                 f"expression '{operand.op}' has no encoding", operand) from None
            self._emit(bytes([EXPR_OPCODES[operand.op]]))
            pairs = list(zip(shape, operand.args))
            if operand.op in REVERSED_OPS:
                pairs.reverse()
            for slot, arg in pairs:
                self._operand(slot, arg)
        else:
            raise self._fail(EncodeError.INTERNAL,
                             f"{type(operand).__name__} cannot be encoded as an expression",
                             operand)

    def _message(self, message: Optional[Message], opcode: str) -> None:
        if not isinstance(message, Message):
            raise self._fail(EncodeError.INTERNAL, f"'{opcode}' needs a message body")
        end = _Anchor()
        self._add_ref(_Ref.ABS32, end, 4, True)
        body = bytearray()
        for cmd in message.commands:
            if cmd.op == 'text':
                data = cmd.args[0].data
                if not all(is_text_byte(b) for b in data):
                    raise self._fail(EncodeError.OUT_OF_RANGE,
                                     "message text contains a command byte", cmd)
                body += data
                continue
            try:
                shape = match(cmd.op, MSG_SIGNATURES[cmd.op], cmd.args, accepts_field)
            except (SignatureMismatch, KeyError):
                raise self._fail(EncodeError.INTERNAL,
                                 f"message command '{cmd.op}' has no encoding", cmd) from None
            body.append(MSG_OPCODES[cmd.op])
            for slot, arg in zip(shape, cmd.args):
                if slot == FORMAT:
                    body += arg.data + bytes([MSG_FORMAT])
                elif isinstance(slot, Lit):
                    body += pack_int(arg.value, 1)
                else:
                    body += _field(slot, arg, self)
        body.append(MSG_END)
        if len(body) > MAX_MESSAGE_SIZE:
            raise self._fail(EncodeError.OUT_OF_RANGE,
                             f"message is too large ({len(body)} > {MAX_MESSAGE_SIZE} bytes)",
                             message)
        self._emit(bytes(body))
        self.pieces.append(end)

    def _data(self, data: Data) -> None:
        self._span = data.span
        self._where = f"'.{data.directive}'"
        width = _DATA_WIDTHS[data.directive]
        for index, value in enumerate(data.values):
            self._index = index
            if isinstance(value, Text):
                self._emit(value.data + b'\0')
            elif isinstance(value, Int):
                if not fits_width(value.value, width):
                    raise self._fail(EncodeError.OUT_OF_RANGE,
                                     f"{value.value} does not fit in {width * 8} bits", value)
                self._emit(pack_int(value.value, width))
            elif isinstance(value, LabelRef):
                if value.name not in self.script.labels:
                    raise self._fail(EncodeError.UNRESOLVED_LABEL,
                                     f"undefined label: '{value.name}'", value)
                self._add_ref(_Ref.ABS32, value.name, 4, True, value)
            elif isinstance(value, Offset):
                self._emit(pack_int(value.value, 4))
            else:
                raise self._fail(EncodeError.INTERNAL,
                                 f"{type(value).__name__} cannot be stored by "
                                 f".{data.directive}", value)

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def _place(self) -> int:
        addr = 0
        for piece in self.pieces:
            if isinstance(piece, bytes):
                addr += len(piece)
            elif isinstance(piece, _Ref):
                piece.addr = addr
                addr += piece.size
            else:
                piece.addr = addr
        return addr

    def _target(self, ref: _Ref) -> int:
        if isinstance(ref.target, _Anchor):
            return ref.target.addr
        return self.block_marks[self.script.resolve(ref.target).block].addr

    def relax(self) -> int:
        """Widen label operands until the layout stops changing."""
        grown: list[_Ref] = []
        for passes in range(1, self.max_passes + 1):
            self.size = self._place()
            grown = []
            for ref in self.refs:
                if ref.mode != _Ref.TAGGED or ref.forced:
                    continue
                if address_width(self._target(ref)) > ref.width:
                    ref.width = next_width(ref.width)
                    grown.append(ref)
            if not grown:
                self.passes = passes
                log.debug("layout settled after %d pass(es): %d bytes", passes, self.size)
                return passes
            log.debug("pass %d widened %d operand(s)", passes, len(grown))
        culprit = grown[-1]
        raise EncodeError(EncodeError.NO_FIXED_POINT,
                          f"address layout did not settle after {self.max_passes} passes; "
                          f"still growing: {culprit.describe()}", culprit.span)

    def emit(self) -> bytes:
        out = bytearray()
        for piece in self.pieces:
            if isinstance(piece, bytes):
                out += piece
            elif isinstance(piece, _Ref):
                out += self._encode_ref(piece)
        if len(out) != self.size:
            raise EncodeError(EncodeError.INTERNAL,
                              f"emitted {len(out)} bytes but the layout has {self.size}")
        return bytes(out)

    def _encode_ref(self, ref: _Ref) -> bytes:
        value = self._target(ref)
        if ref.mode == _Ref.TAGGED:
            if value >= 1 << (ref.width * 8):
                raise EncodeError(EncodeError.OUT_OF_RANGE,
                                  f"address 0x{value:x} does not fit in {ref.width * 8} bits "
                                  f"({ref.describe()})", ref.span)
            return bytes([CONST_TAGS[ref.width]]) + value.to_bytes(ref.width, 'little')
        if ref.mode == _Ref.LEN16:
            distance = value - ref.addr
            if distance > 0x7fff:
                raise EncodeError(EncodeError.OUT_OF_RANGE,
                                  f"{ref.where} is too large ({distance} bytes)", ref.span)
            return distance.to_bytes(2, 'little')
        return value.to_bytes(4, 'little')

    def layout(self) -> Layout:
        fixups = [Fixup(ref.item, ref.index, ref.target, ref.width, ref.operand)
                  for ref in self.refs
                  if ref.mode == _Ref.TAGGED and isinstance(ref.operand, LabelRef)]
        return Layout(self.size, self.passes,
                      [mark.addr for mark in self.block_marks],
                      [mark.addr for mark in self.item_marks],
                      fixups)


def _const(value: int, width: int) -> bytes:
    return bytes([CONST_TAGS[width]]) + pack_int(value, width)


def _field(slot: Field, arg: Int, asm: _Assembler) -> bytes:
    bits = slot.width * 8
    lo, hi = (-(1 << (bits - 1)), (1 << (bits - 1)) - 1) if slot.signed else (0, (1 << bits) - 1)
    if not lo <= arg.value <= hi:
        raise asm._fail(EncodeError.OUT_OF_RANGE,
                        f"{arg.value} is out of range for a {slot} message argument", arg)
    order = 'big' if slot.big_endian else 'little'
    return arg.value.to_bytes(slot.width, order, signed=slot.signed)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def _run(script: Script, max_passes: int) -> _Assembler:
    asm = _Assembler(script, max_passes)
    asm.lower()
    asm.relax()
    return asm


def layout(script: Script, max_passes: int = MAX_PASSES) -> Layout:
    """Lay out *script* without emitting bytes."""
    return _run(script, max_passes).layout()


def assemble_script(script: Script, max_passes: int = MAX_PASSES) -> Assembled:
    """Encode *script* and return its bytes, entry offsets and layout.

    Parameters
    ----------
    script:
        A Script from ``parse`` or ``disassemble_script``.
    max_passes:
        Bound on relaxation passes before ``EncodeError`` is raised.

    Returns
    -------
    ``Assembled`` holding the bytecode and the entry-point offsets.
    """
    asm = _run(script, max_passes)
    data = asm.emit()
    result = asm.layout()
    entries = {entry: result.address_of(script, label)
               for entry, label in script.entry_points().items()}
    log.debug("assembled %d block(s) into %d bytes", len(script.blocks), len(data))
    return Assembled(data, entries, result)


def compile_script(text: str, max_passes: int = MAX_PASSES) -> Assembled:
    """Parse and assemble source *text*."""
    from .parser import parse
    return assemble_script(parse(text), max_passes)


def assemble(text: str, max_passes: int = MAX_PASSES) -> bytes:
    """Assemble source *text* into bytecode."""
    return compile_script(text, max_passes).data


def assemble_file(src_path: str | Path, outdir: str | Path = '.',
                  max_passes: int = MAX_PASSES) -> list[Path]:
    """Assemble a source file into ``<stem>.bin`` plus ``<stem>.entries.json``.

    Returns
    -------
    List of Path objects for the files written.
    """
    from .parser import parse

    src_path = Path(src_path)
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    script = parse(src_path.read_text(encoding='utf-8'))
    result = assemble_script(script, max_passes)

    bin_path = outdir / (src_path.stem + '.bin')
    bin_path.write_bytes(result.data)
    entries_path = outdir / (src_path.stem + '.entries.json')
    entries_path.write_text(dump_entries(script.target, result.entries), encoding='utf-8')
    return [bin_path, entries_path]
