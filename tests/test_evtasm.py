"""
tests/test_evtasm.py – Unit and integration tests for the evtasm package.

Run with:  python -m pytest tests/
       or: python -m unittest discover -s tests
"""

from __future__ import annotations

import json
import sys
import tempfile
import unittest
from pathlib import Path

# Make the package importable when running from the repo root.
sys.path.insert(0, str(Path(__file__).parent.parent))

from evtasm import (
    AtomRef,
    Data,
    DecodeError,
    EncodeError,
    EntryPoint,
    Expr,
    Instruction,
    Int,
    LabelRef,
    LexError,
    Message,
    MsgCommand,
    Offset,
    ParseError,
    ResolutionError,
    Target,
    Text,
    assemble,
    assemble_script,
    compile_script,
    disassemble,
    disassemble_script,
    layout,
    parse,
    write_script,
)
from evtasm import lexer as lx
from evtasm.assemble import Fixup
from evtasm.errors import Span, line_col
from evtasm.labels import LabelTable
from evtasm.lexer import tokenize
from evtasm.opcodes import address_width, literal_width
from evtasm.signatures import (
    CMD_SIGNATURES,
    EXPR,
    SignatureMismatch,
    command_shape,
    match,
)
from evtasm.writer import format_operand, quote


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_SELF_LOOP = '.stage "s01"\nmain:\n\tgoto *main\n'

_FULL = """\
.stage "s01"
.prologue *start
.interact 20, *talk

; everything the encoder knows about, once
start:
\tset flag(3), 1
\tset adda(var(2), 5)
\tif eq(flag(3), 1), else *skip
\tkill 1000
\tkill 7.d
\tanim obj(@anim, 4), 1, 2
\tcall 7, 100, var(1)
\tptcl 1, @lead, 2, 3, 4
\tcamera @unk232, 3, 9
\tsfx 12, 2, 40
\tmsg "Hello", speed(2), "world\\n",
\t\trgba(0xff00ff80), sfx(300, 4, 2, 1), stay
\tattach 4, *talk
\tread @anim, 4, *name
\tsetsp sub(sp(2), result)
skip:
\twait @time, 30
\tgoto *start

talk:
\tselect "Yes", ask(0, 1)
\tprintf "debug %d"
\treturn

name:
\t.db "mouse"
"""


def _far_jump(forced: str = '') -> str:
    """Source whose forward jump spans more than 255 bytes."""
    filler = ', '.join(['0'] * 300)
    return (f'.stage "s"\nstart:\n\tgoto *far{forced}\n\t.db {filler}\n'
            f'far:\n\treturn\n')


def _flatten(script):
    """Instruction stream with every label replaced by its address."""
    lay = layout(script)

    def norm(op):
        if isinstance(op, Int):
            return ('int', op.value, op.width or literal_width(op.value))
        if isinstance(op, LabelRef):
            return ('ref', lay.address_of(script, op.name), op.is_else)
        if isinstance(op, Offset):
            return ('ref', op.value, op.is_else)
        if isinstance(op, Expr):
            return ('expr', op.op, tuple(norm(a) for a in op.args))
        if isinstance(op, Message):
            return ('msg', tuple((c.op, tuple(norm(a) for a in c.args))
                                 for c in op.commands))
        if isinstance(op, Text):
            return ('text', op.data)
        if isinstance(op, AtomRef):
            return ('atom', op.name)
        raise AssertionError(f"unexpected operand {op!r}")

    items = [item for _, item in script.items()]
    stream = [(addr, item.opcode, tuple(norm(o) for o in item.operands))
              for addr, item in zip(lay.item_addresses, items)
              if isinstance(item, Instruction)]
    entries = {entry: lay.address_of(script, label)
               for entry, label in script.entries.items()}
    return stream, entries


# ---------------------------------------------------------------------------
# Lexer
# ---------------------------------------------------------------------------

class TestLexer(unittest.TestCase):

    def _kinds(self, text: str) -> list[str]:
        return [tok.kind for tok in tokenize(text)]

    def test_statement_tokens(self):
        self.assertEqual(self._kinds("goto *main.w ; comment\n"),
                         [lx.IDENT, lx.LABEL, lx.NEWLINE, lx.EOF])
        label = list(tokenize("*main.w"))[0]
        self.assertEqual((label.value, label.width), ("main", 2))

    def test_integers(self):
        toks = list(tokenize("-0x10.b 1000 4294967295"))
        self.assertEqual([(t.value, t.width) for t in toks[:3]],
                         [(-16, 1), (1000, None), (4294967295, None)])

    def test_offset_and_atom(self):
        toks = list(tokenize("*0x1c @lead .db else"))
        self.assertEqual([t.kind for t in toks[:4]],
                         [lx.OFFSET, lx.ATOM, lx.DIRECTIVE, lx.ELSE])
        self.assertEqual(toks[0].value, 28)

    def test_string_escapes(self):
        tok = list(tokenize(r'"a\x41\n\"%d"'))[0]
        self.assertEqual(tok.value, b'aA\n"%d')

    def test_block_comment_spans_lines(self):
        self.assertEqual(self._kinds("/* a\nb */ return"), [lx.IDENT, lx.EOF])

    def test_errors(self):
        cases = [
            ('"abc', LexError.UNTERMINATED_STRING),
            ('"abc\n"', LexError.UNTERMINATED_STRING),
            ('/* never closed', LexError.UNTERMINATED_BLOCK_COMMENT),
            ('4294967296', LexError.INTEGER_OUT_OF_RANGE),
            ('#', LexError.INVALID_CHARACTER),
            ('"\\q"', LexError.INVALID_CHARACTER),
        ]
        for text, reason in cases:
            with self.subTest(text=text):
                with self.assertRaises(LexError) as cm:
                    list(tokenize(text))
                self.assertEqual(cm.exception.reason, reason)

    def test_line_col(self):
        self.assertEqual(line_col("ab\ncd", 4), (2, 2))


# ---------------------------------------------------------------------------
# Symbol table and operand shapes
# ---------------------------------------------------------------------------

class TestLabelTable(unittest.TestCase):

    def test_forward_reference_resolves(self):
        table = LabelTable()
        table.reference("later", Span(0, 5))
        table.declare("later", 3)
        table.resolve_all()
        self.assertEqual(table.resolve("later").block, 3)

    def test_duplicate_label(self):
        table = LabelTable()
        table.declare("a", 0)
        with self.assertRaises(ResolutionError) as cm:
            table.declare("a", 1)
        self.assertEqual(cm.exception.reason, ResolutionError.DUPLICATE_LABEL)

    def test_undefined_label_reports_first_reference(self):
        table = LabelTable()
        table.reference("x", Span(4, 6))
        table.reference("y", Span(9, 11))
        with self.assertRaises(ResolutionError) as cm:
            table.resolve_all()
        self.assertEqual(cm.exception.label, "x")
        self.assertEqual(cm.exception.span, Span(4, 6))


class TestSignatures(unittest.TestCase):

    def test_selector_picks_shape(self):
        shape = command_shape('camera', [AtomRef('unk232'), Int(3), Int(9)])
        self.assertEqual(len(shape), 3)
        self.assertEqual(shape[2], EXPR)

    def test_mismatch_names_operand(self):
        with self.assertRaises(SignatureMismatch) as cm:
            match('goto', CMD_SIGNATURES['goto'], [Int(5)])
        self.assertEqual(cm.exception.index, 0)

    def test_not_enough_operands(self):
        with self.assertRaises(SignatureMismatch) as cm:
            match('warp', CMD_SIGNATURES['warp'], [Int(1)])
        self.assertIn("not enough operands", cm.exception.detail)

    def test_compound_assignment_only_in_set(self):
        with self.assertRaises(SignatureMismatch):
            command_shape('kill', [Expr('adda', [Expr('var', [Int(1)]), Int(2)])])


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class TestParser(unittest.TestCase):

    def test_self_loop(self):
        script = parse(_SELF_LOOP)
        self.assertEqual(script.target, Target.stage("s01"))
        self.assertEqual(len(script.blocks), 1)
        self.assertEqual(script.blocks[0].items,
                         [Instruction('goto', [LabelRef('main')])])

    def test_forward_reference(self):
        script = parse('.globals\n.lib 3, *fn\n\tgoto *fn\nfn:\n\treturn\n')
        self.assertEqual(script.entries, {EntryPoint('lib', 3): 'fn'})
        self.assertTrue(script.blocks[0].synthetic)
        self.assertEqual(script.resolve('fn').block, 1)

    def test_else_target_is_marked(self):
        for text in ('if flag(1), else *x', 'if flag(1), *x'):
            with self.subTest(text=text):
                script = parse(f'.stage "s"\n{text}\nx:\n\treturn\n')
                self.assertTrue(script.blocks[0].items[0].operands[1].is_else)

    def test_addr_and_width_functions(self):
        script = parse('.stage "s"\na:\n\tkill i32(5)\n\tkill addr(*a)\n')
        ops = [item.operands[0] for item in script.blocks[0].items]
        self.assertEqual(ops, [Int(5, 4), LabelRef('a')])

    def test_message_text_runs_merge(self):
        script = parse('.stage "s"\n\tmsg "ab", "cd",\n\t\twait(3.b)\n')
        message = script.blocks[0].items[0].operands[0]
        self.assertEqual(message.commands, [
            MsgCommand('text', [Text(b'abcd')]),
            MsgCommand('wait', [Int(3)]),
        ])

    def test_errors(self):
        cases = [
            ('.stage "s"\n\tfrobnicate 1\n', ParseError, ParseError.UNKNOWN_COMMAND),
            ('.stage "s"\n.frob\n', ParseError, ParseError.UNKNOWN_DIRECTIVE),
            ('.stage "s"\n\tgoto 5\n', ParseError, ParseError.INVALID_OPERAND),
            ('.stage "s"\n\tanim 1, -1\n', ParseError, ParseError.INVALID_OPERAND),
            ('.stage "s"\n\tmsg speed(3.w)\n', ParseError, ParseError.INVALID_OPERAND),
            ('.stage "s"\n\tmsg bogus(1)\n', ParseError, ParseError.INVALID_OPERAND),
            ('.stage "s"\n\tmsg add(1, 2)\n', ParseError, ParseError.INVALID_OPERAND),
            ('.stage "s"\n.prologue *a.b\na:\n', ParseError, ParseError.INVALID_OPERAND),
            ('.stage "s"\n\tmsg "\\x05"\n', ParseError, ParseError.INVALID_OPERAND),
            ('.stage "s"\n\tkill 1 2\n', ParseError, ParseError.SYNTAX),
            ('a:\n\treturn\n', ResolutionError, ResolutionError.MISSING_TARGET),
            ('.stage "s"\n.globals\n', ResolutionError, ResolutionError.DUPLICATE_TARGET),
            ('.stage "s"\nloop:\nloop:\n', ResolutionError, ResolutionError.DUPLICATE_LABEL),
            ('.stage "s"\n\tgoto *nowhere\n', ResolutionError, ResolutionError.UNDEFINED_LABEL),
            ('.globals\n.prologue *a\na:\n', ResolutionError, ResolutionError.SCOPE_MISMATCH),
            ('.stage "s"\n.lib 1, *a\na:\n', ResolutionError, ResolutionError.SCOPE_MISMATCH),
            ('.stage "s"\n.dead *a\n.dead *a\na:\n', ResolutionError,
             ResolutionError.DUPLICATE_ENTRY_POINT),
        ]
        for text, exc_type, reason in cases:
            with self.subTest(text=text):
                with self.assertRaises(exc_type) as cm:
                    parse(text)
                self.assertEqual(cm.exception.reason, reason)

    def test_invalid_operand_position(self):
        text = '.stage "s"\nx:\n\twarp 1, *x, 3\n'
        with self.assertRaises(ParseError) as cm:
            parse(text)
        exc = cm.exception
        self.assertEqual((exc.opcode, exc.operand_index), ('warp', 2))
        self.assertIn("line 3", exc.describe(text))

    def test_unknown_command_message(self):
        with self.assertRaises(ParseError) as cm:
            parse('.stage "s"\n\tfrobnicate\n')
        self.assertEqual(cm.exception.message, "unrecognized command: 'frobnicate'")

    def test_duplicate_label_is_named(self):
        with self.assertRaises(ResolutionError) as cm:
            parse('.stage "s"\nloop:\n\tgoto *loop\nloop:\n\treturn\n')
        self.assertEqual(cm.exception.reason, ResolutionError.DUPLICATE_LABEL)
        self.assertEqual(cm.exception.label, 'loop')

    def test_expression_inside_message(self):
        with self.assertRaises(ParseError) as cm:
            parse('.stage "s"\n\tmsg "hp ", add(1, 2)\n')
        exc = cm.exception
        self.assertEqual(exc.reason, ParseError.INVALID_OPERAND)
        self.assertEqual((exc.opcode, exc.operand_index), ('msg', 1))

    def test_anim_rejects_terminator_bytes(self):
        for arg in ('-1', '-1.w', '255.b', '0xff.b', 'i8(255)'):
            with self.subTest(arg=arg):
                with self.assertRaises(ParseError) as cm:
                    parse(f'.stage "s"\nmain:\n\tanim 1, {arg}, 2\n\treturn\n')
                exc = cm.exception
                self.assertEqual((exc.opcode, exc.operand_index), ('anim', 1))

    def test_entry_label_width_suffix(self):
        with self.assertRaises(ParseError) as cm:
            parse('.stage "s"\n.prologue *x.b\nx:\n\treturn\n')
        exc = cm.exception
        self.assertEqual((exc.opcode, exc.operand_index), ('.prologue', 0))


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------

class TestAssembler(unittest.TestCase):

    def _body(self, line: str) -> bytes:
        return assemble(f'.stage "s"\n{line}\n')

    def test_self_loop(self):
        self.assertEqual(assemble(_SELF_LOOP), bytes([0x03, 0x21, 0x00]))

    def test_literal_widths(self):
        self.assertEqual(self._body('\tkill 1000'), bytes([0x1e, 0x17, 0xe8, 0x03]))
        self.assertEqual(self._body('\tkill 1000.d'),
                         bytes([0x1e, 0x18, 0xe8, 0x03, 0x00, 0x00]))
        self.assertEqual(self._body('\tkill 255.b'), bytes([0x1e, 0x21, 0xff]))
        self.assertEqual(self._body('\tkill -1'), bytes([0x1e, 0x21, 0xff]))

    def test_forced_width_out_of_range(self):
        for line in ('\tkill 300.b', '\tkill -32769.w', '\tkill i8(256)'):
            with self.subTest(line=line):
                with self.assertRaises(EncodeError) as cm:
                    self._body(line)
                self.assertEqual(cm.exception.reason, EncodeError.OUT_OF_RANGE)
                self.assertFalse(cm.exception.internal)

    def test_set_stores_value_first(self):
        self.assertEqual(self._body('\tset flag(3), 1'),
                         bytes([0x04, 0x21, 0x01, 0x1c, 0x21, 0x03]))
        self.assertEqual(self._body('\tset adda(var(2), 5)'),
                         bytes([0x04, 0x0f, 0x21, 0x05, 0x1d, 0x21, 0x02]))

    def test_variadic_framing(self):
        self.assertEqual(self._body('\tanim 1, 2'),
                         bytes([0x11, 0x21, 0x01, 0x21, 0x02, 0x21, 0xff]))
        self.assertEqual(self._body('\tcall 7, 100'),
                         bytes([0x16, 0x06, 0x00, 0x21, 0x07, 0x21, 0x64]))
        self.assertEqual(self._body('\tptcl 1, @lead, 2, 3'),
                         bytes([0x26, 0x21, 0x01, 0x18, 0xdc, 0x00, 0x00, 0x00,
                                0x21, 0x02, 0x21, 0x01, 0x21, 0x03]))

    def test_message_and_printf(self):
        self.assertEqual(self._body('\tmsg "Hi", wait(5)'),
                         bytes([0x23, 0x0a, 0x00, 0x00, 0x00, 0x48, 0x69, 0x02, 0x05, 0x00]))
        self.assertEqual(self._body('\tprintf "ok"'), bytes([0x25, 0x6f, 0x6b, 0x00]))

    def test_message_field_range(self):
        with self.assertRaises(EncodeError) as cm:
            self._body('\tmsg speed(256)')
        self.assertEqual(cm.exception.reason, EncodeError.OUT_OF_RANGE)

    def test_message_size_limit(self):
        text = '"' + 'a' * 2048 + '"'
        with self.assertRaises(EncodeError):
            self._body(f'\tmsg {text}')

    def test_data_directives(self):
        data = assemble('.stage "s"\na:\n\t.dd *a, 7\n\t.dw -2\n\t.db "x", 1\n')
        self.assertEqual(data, bytes([0, 0, 0, 0, 7, 0, 0, 0, 0xfe, 0xff,
                                      0x78, 0x00, 0x01]))

    def test_relaxation_widens_far_jump(self):
        data = assemble(_far_jump())
        self.assertEqual(data[:4], bytes([0x03, 0x17, 0x30, 0x01]))
        self.assertEqual(len(data), 305)
        self.assertEqual(data[304], 0x02)

    def test_fixups_record_chosen_width(self):
        lay = layout(parse(_far_jump()))
        self.assertEqual(lay.fixups, [Fixup(0, 0, 'far', 2)])
        self.assertEqual(lay.block_addresses, [0, 304])

    def test_relaxation_bound(self):
        with self.assertRaises(EncodeError) as cm:
            layout(parse(_far_jump()), max_passes=1)
        self.assertEqual(cm.exception.reason, EncodeError.NO_FIXED_POINT)
        self.assertIn("'far'", cm.exception.message)

    def test_forced_narrow_label(self):
        with self.assertRaises(EncodeError) as cm:
            assemble(_far_jump('.b'))
        self.assertEqual(cm.exception.reason, EncodeError.OUT_OF_RANGE)

    def test_widths_are_minimal(self):
        script = parse(_FULL)
        lay = layout(script)
        self.assertTrue(lay.fixups)
        for fix in lay.fixups:
            target = lay.address_of(script, fix.label)
            self.assertEqual(fix.width, address_width(target), fix)

    def test_compile_returns_entry_table(self):
        result = compile_script(_FULL)
        script = parse(_FULL)
        talk = layout(script).address_of(script, 'talk')
        self.assertEqual(result.entries, {EntryPoint('prologue'): 0,
                                          EntryPoint('interact', 20): talk})
        self.assertEqual(len(result.data), result.layout.size)

    def test_unresolved_label_in_hand_built_script(self):
        script = parse(_SELF_LOOP)
        script.blocks[0].items.append(Instruction('goto', [LabelRef('ghost')]))
        with self.assertRaises(EncodeError) as cm:
            assemble_script(script)
        self.assertEqual(cm.exception.reason, EncodeError.UNRESOLVED_LABEL)

    def test_ill_formed_model_is_internal_error(self):
        script = parse(_SELF_LOOP)
        script.blocks[0].items.append(Instruction('warp', [Int(1)]))
        with self.assertRaises(EncodeError) as cm:
            assemble_script(script)
        self.assertTrue(cm.exception.internal)

    def test_anim_terminator_in_hand_built_script(self):
        script = parse(_SELF_LOOP)
        for arg in (Int(255, 1), Int(-1), Expr('i8', [Int(255)])):
            with self.subTest(arg=arg):
                script.blocks[0].items[:] = [Instruction('anim', [Int(1), arg, Int(2)])]
                with self.assertRaises(EncodeError) as cm:
                    assemble_script(script)
                self.assertEqual(cm.exception.reason, EncodeError.OUT_OF_RANGE)

    def test_anim_accepts_wide_255(self):
        data = assemble('.stage "s"\nmain:\n\tanim 1, 255, 2\n\treturn\n')
        self.assertEqual(data[:6], bytes([0x11, 0x21, 0x01, 0x17, 0xff, 0x00]))
        self.assertEqual(assemble(disassemble(data, [0])), data)


# ---------------------------------------------------------------------------
# Disassembler
# ---------------------------------------------------------------------------

class TestDisassembler(unittest.TestCase):

    def test_self_loop(self):
        script = disassemble_script(assemble(_SELF_LOOP), [0], Target.stage("s01"))
        block = script.blocks[0]
        self.assertEqual(len(script.blocks), 1)
        self.assertEqual(block.items, [Instruction('goto', [LabelRef(block.label)])])

    def test_non_minimal_literal_keeps_suffix(self):
        data = assemble('.stage "s"\n\tkill 1000.d\n')
        text = disassemble(data, [0])
        self.assertIn('1000.d', text)
        self.assertEqual(assemble(text), data)

    def test_non_minimal_pointer_is_pinned(self):
        data = bytes([0x03, 0x18, 0x06, 0x00, 0x00, 0x00, 0x02])
        script = disassemble_script(data, [0])
        self.assertEqual(script.blocks[0].items[0].operands, [LabelRef('loc_6', 4)])
        text = write_script(script)
        self.assertIn('*loc_6.d', text)
        self.assertEqual(assemble(text), data)

    def test_target_splits_block(self):
        data = bytes([0x1e, 0x21, 0x01, 0x1e, 0x21, 0x02, 0x03, 0x21, 0x03])
        script = disassemble_script(data, [0])
        self.assertEqual([b.label for b in script.blocks], ['evt_0', 'loc_3'])
        self.assertEqual([len(b.items) for b in script.blocks], [1, 2])
        self.assertEqual(assemble_script(script).data, data)

    def test_jump_to_end_of_buffer(self):
        data = bytes([0x03, 0x21, 0x03])
        script = disassemble_script(data, [0])
        self.assertEqual(script.blocks[-1].label, 'loc_3')
        self.assertEqual(script.blocks[-1].items, [])
        self.assertEqual(assemble_script(script).data, data)

    def test_data_block_and_reference(self):
        src = ('.stage "s"\n.prologue *main\nmain:\n\tread @anim, 4, *name\n'
               '\treturn\nname:\n\t.db "mouse"\n')
        result = compile_script(src)
        script = disassemble_script(result.data, result.entries, Target.stage("s"))
        self.assertEqual([b.label for b in script.blocks], ['evt_0', 'dat_c'])
        self.assertEqual(script.blocks[1].items, [Data('db', [Text(b'mouse')])])
        self.assertEqual(script.blocks[0].items[0].operands[2], LabelRef('dat_c'))

    def test_reference_inside_instruction_is_offset(self):
        data = assemble('.stage "s"\n\tread @anim, 4, *0x2\n')
        script = disassemble_script(data, [0])
        self.assertEqual(script.blocks[0].items[0].operands[2], Offset(2))

    def test_event_address_is_code(self):
        data = assemble('.stage "s"\nmain:\n\tattach 4, *handler\n\treturn\n'
                        'handler:\n\tkill 1\n\treturn\n')
        script = disassemble_script(data, [0])
        self.assertEqual(script.blocks[1].label, 'evt_7')
        self.assertEqual(script.blocks[1].items[0].opcode, 'kill')

    def test_message(self):
        data = bytes([0x23, 0x0a, 0x00, 0x00, 0x00, 0x48, 0x69, 0x02, 0x05, 0x00])
        script = disassemble_script(data, [0])
        self.assertEqual(script.blocks[0].items[0].operands, [Message([
            MsgCommand('text', [Text(b'Hi')]),
            MsgCommand('wait', [Int(5)]),
        ])])

    def test_entry_roles(self):
        script = disassemble_script(b'\x02\x02', {EntryPoint('lib', 1): 1})
        self.assertTrue(script.target.is_globals)
        self.assertEqual(script.entries, {EntryPoint('lib', 1): 'sub_1'})
        with self.assertRaises(ResolutionError):
            disassemble_script(b'\x02', {EntryPoint('lib', 1): 0}, Target.stage("s"))

    def test_errors(self):
        cases = [
            (bytes([0xee]), DecodeError.UNKNOWN_OPCODE),
            (bytes([0x03, 0x17, 0x01]), DecodeError.TRUNCATED_OPERAND),
            (bytes([0x03, 0x21, 0x10]), DecodeError.OFFSET_OUT_OF_RANGE),
            (bytes([0x03, 0x21, 0x01]), DecodeError.MISALIGNED_TARGET),
            (bytes([0x17, 0x18, 0x00, 0x00, 0x00, 0x00]), DecodeError.UNEXPECTED_VALUE),
            (bytes([0x11, 0x21, 0x01, 0x17, 0xff, 0xff]), DecodeError.UNEXPECTED_VALUE),
            (bytes([0x16, 0x05, 0x00, 0x21, 0x07, 0x21, 0x64]), DecodeError.UNEXPECTED_VALUE),
            (bytes([0x26, 0x21, 0x01, 0x18, 0xdc, 0x00, 0x00, 0x00,
                    0x21, 0x02, 0x17, 0x01, 0x00, 0x21, 0x03]), DecodeError.UNEXPECTED_VALUE),
            (bytes([0x23, 0x0b, 0x00, 0x00, 0x00, 0x48, 0x69, 0x02, 0x05, 0x00]),
             DecodeError.UNEXPECTED_VALUE),
            (bytes([0x23, 0x07, 0x00, 0x00, 0x00, 0x07, 0x00]), DecodeError.UNKNOWN_OPCODE),
            (bytes([0x1e, 0xc8]), DecodeError.TRUNCATED_OPERAND),
        ]
        for data, reason in cases:
            with self.subTest(data=data.hex()):
                with self.assertRaises(DecodeError) as cm:
                    disassemble_script(data, [0])
                self.assertEqual(cm.exception.reason, reason)
                self.assertIsNotNone(cm.exception.offset)

    def test_entry_outside_buffer(self):
        with self.assertRaises(DecodeError) as cm:
            disassemble_script(b'\x02', [5])
        self.assertEqual(cm.exception.reason, DecodeError.OFFSET_OUT_OF_RANGE)


# ---------------------------------------------------------------------------
# Round trips
# ---------------------------------------------------------------------------

class TestRoundTrip(unittest.TestCase):

    def setUp(self):
        self.result = compile_script(_FULL)
        self.target = Target.stage("s01")

    def test_bytes_survive_text(self):
        text = disassemble(self.result.data, self.result.entries, self.target)
        self.assertEqual(assemble(text), self.result.data)

    def test_model_matches_source(self):
        decoded = disassemble_script(self.result.data, self.result.entries, self.target)
        self.assertEqual(_flatten(decoded), _flatten(parse(_FULL)))

    def test_printed_model_parses_back_equal(self):
        decoded = disassemble_script(self.result.data, self.result.entries, self.target)
        self.assertEqual(parse(write_script(decoded)), decoded)

    def test_verify_flag(self):
        script = disassemble_script(self.result.data, self.result.entries,
                                    self.target, verify=True)
        self.assertEqual(script.target, self.target)

    def test_far_jump_round_trip(self):
        data = assemble(_far_jump())
        self.assertEqual(assemble(disassemble(data, [0])), data)


# ---------------------------------------------------------------------------
# Pretty printer
# ---------------------------------------------------------------------------

class TestWriter(unittest.TestCase):

    def test_operands(self):
        self.assertEqual(format_operand(Int(1000, 4)), '1000.d')
        self.assertEqual(format_operand(Int(-3)), '-3')
        self.assertEqual(format_operand(LabelRef('x', 2, True)), 'else *x.w')
        self.assertEqual(format_operand(Offset(28)), '*0x1c')
        self.assertEqual(format_operand(Expr('result')), 'result')
        self.assertEqual(format_operand(Expr('obj', [AtomRef('anim'), Int(4)])),
                         'obj(@anim, 4)')

    def test_quote_round_trips_every_byte(self):
        data = bytes(range(256))
        tok = list(tokenize(quote(data)))[0]
        self.assertEqual(tok.value, data)

    def test_script_layout(self):
        text = write_script(parse(_SELF_LOOP))
        self.assertEqual(text, '.stage "s01"\n\nmain:\n\tgoto\t*main\n')

    def test_entries_and_messages(self):
        text = write_script(parse('.globals\n.lib 2, *f\nf:\n\tmsg "a", stay\n'))
        self.assertIn('.lib\t2, *f', text)
        self.assertIn('\tmsg\t"a",\n\t\tstay', text)

    def test_colour_fields_print_in_hex(self):
        data = assemble('.stage "s"\n\tmsg rgba(0x01020304)\n')
        text = disassemble(data, [0])
        self.assertIn('rgba(0x01020304)', text)
        self.assertEqual(assemble(text), data)


# ---------------------------------------------------------------------------
# CLI smoke tests
# ---------------------------------------------------------------------------

class TestCLI(unittest.TestCase):

    def _run(self, *args: str) -> int:
        from evtasm.__main__ import main
        return main(list(args))

    def test_assemble_then_disassemble(self):
        with tempfile.TemporaryDirectory() as td:
            src = Path(td) / "s01.asm"
            src.write_text(_FULL, encoding="utf-8")
            out = Path(td) / "bin"
            self.assertEqual(self._run("assemble", "-o", str(out), str(src)), 0)
            binary = out / "s01.bin"
            sidecar = json.loads((out / "s01.entries.json").read_text(encoding="utf-8"))
            self.assertEqual(sidecar["target"], "stage:s01")
            self.assertEqual(sidecar["entries"]["prologue"], 0)

            back = Path(td) / "back"
            self.assertEqual(self._run("disassemble", "-j", "2", "--verify",
                                       "-o", str(back), str(binary)), 0)
            text = (back / "s01.asm").read_text(encoding="utf-8")
            self.assertTrue(text.startswith('.stage "s01"\n'))
            self.assertEqual(assemble(text), binary.read_bytes())

    def test_disassemble_with_entry_option(self):
        with tempfile.TemporaryDirectory() as td:
            binary = Path(td) / "x.bin"
            binary.write_bytes(bytes([0x02, 0x02]))
            rc = self._run("disassemble", "--entry", "startup=0", "--entry", "1",
                           "-o", td, str(binary))
            self.assertEqual(rc, 0)
            text = (Path(td) / "x.asm").read_text(encoding="utf-8")
            self.assertIn('.startup\t*evt_0', text)

    def test_check_reports_failures(self):
        with tempfile.TemporaryDirectory() as td:
            good = Path(td) / "good.asm"
            good.write_text(_SELF_LOOP, encoding="utf-8")
            bad = Path(td) / "bad.asm"
            bad.write_text('.stage "s"\n\tgoto *missing\n', encoding="utf-8")
            self.assertEqual(self._run("check", str(good)), 0)
            self.assertEqual(self._run("check", "-j", "2", str(good), str(bad)), 1)

    def test_undecodable_source_does_not_stop_batch(self):
        with tempfile.TemporaryDirectory() as td:
            bad = Path(td) / "bad.asm"
            bad.write_bytes(b'.stage "\xff\xfe"\n')
            good = Path(td) / "good.asm"
            good.write_text(_SELF_LOOP, encoding="utf-8")
            out = Path(td) / "out"
            self.assertEqual(self._run("assemble", "-o", str(out), str(bad), str(good)), 1)
            self.assertEqual((out / "good.bin").read_bytes(), assemble(_SELF_LOOP))

    def test_malformed_entry_table_does_not_stop_batch(self):
        with tempfile.TemporaryDirectory() as td:
            broken = Path(td) / "broken.bin"
            broken.write_bytes(b'\x02')
            (Path(td) / "broken.entries.json").write_text("{not json", encoding="utf-8")
            missing_key = Path(td) / "nokey.bin"
            missing_key.write_bytes(b'\x02')
            (Path(td) / "nokey.entries.json").write_text('{"entries": {}}', encoding="utf-8")
            fine = Path(td) / "fine.bin"
            fine.write_bytes(b'\x02')
            out = Path(td) / "out"
            rc = self._run("disassemble", "-j", "2", "-o", str(out),
                           str(broken), str(missing_key), str(fine))
            self.assertEqual(rc, 1)
            self.assertTrue((out / "fine.asm").exists())
            self.assertFalse((out / "broken.asm").exists())

    def test_opcodes(self):
        self.assertEqual(self._run("opcodes", "--category", "control"), 0)


if __name__ == "__main__":
    unittest.main()
