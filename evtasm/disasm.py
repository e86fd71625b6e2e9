"""
disasm.py – Event-script bytecode → Script.

The buffer carries no block table, so structure is recovered with a
work-list: decoding starts at every known entry offset and runs forward
until a terminator, the end of the buffer, or an instruction that has
already been decoded.  Every jump target found on the way is pushed onto the
work-list.  Once nothing is left to visit, each instruction that is an entry
or the target of a reference opens a block; this splits a run that was
decoded in one sweep wherever a later target lands on one of its
instruction boundaries.  Bytes that no sweep reached become ``.db`` data.

Widths are preserved so that re-assembling the result reproduces the input:
literals stored wider than necessary keep a width suffix, and address widths
are pinned wherever the assembler's own relaxation would pick a different
width.

Entry point: ``disassemble_file(path, outdir='.', entries=None, target=None)``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Optional, Union

from .assemble import MAX_PASSES, assemble_script, layout
from .errors import DecodeError
from .opcodes import (
    ANIM_TERMINATOR,
    ASSIGN_OPS,
    CMD_NAMES,
    EXPR_NAMES,
    MAX_MESSAGE_SIZE,
    MESSAGE_COMMANDS,
    MSG_END,
    MSG_FORMAT,
    MSG_NAMES,
    OP_ADDR,
    REVERSED_OPS,
    TAG_WIDTHS,
    TERMINATORS,
    address_width,
    is_text_byte,
    literal_width,
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
    MsgCommand,
    Offset,
    Script,
    Target,
    Text,
    load_entries,
)
from .signatures import (
    CMD_SIGNATURES,
    ELSE,
    EVENT,
    EXPR,
    EXPR_SIGNATURES,
    INT,
    MSG_SIGNATURES,
    PTR,
    SET,
    TEXT,
    VARIADIC,
    Atom,
    accepts,
    describe,
    is_anim_terminator,
    is_selector,
    slot_at,
)

log = logging.getLogger(__name__)

EntrySpec = Union[Mapping[EntryPoint, int], Iterable[Union[int, tuple]]]

# Label prefixes, most specific first
_PREFIXES = ('evt', 'sub', 'loc', 'dat')
_RANK = {prefix: i for i, prefix in enumerate(_PREFIXES)}

_MAX_CALL_SIZE = 0x7fff
_ROW = 16


# ---------------------------------------------------------------------------
# ByteReader
# ---------------------------------------------------------------------------

class _Reader:
    """Byte-level reader over the bytecode buffer."""

    __slots__ = ('data', 'pos', 'end')

    def __init__(self, data: bytes, pos: int = 0) -> None:
        self.data = data
        self.pos = pos
        self.end = len(data)

    def peek(self, ahead: int = 0) -> Optional[int]:
        i = self.pos + ahead
        return self.data[i] if i < self.end else None

    def read(self, n: int) -> bytes:
        if self.pos + n > self.end:
            raise DecodeError(DecodeError.TRUNCATED_OPERAND, self.pos,
                              f"operand runs past the end of the buffer "
                              f"(need {n} byte(s) at 0x{self.pos:x})")
        raw = self.data[self.pos: self.pos + n]
        self.pos += n
        return raw

    def read_byte(self) -> int:
        return self.read(1)[0]

    def read_int(self, width: int, signed: bool = False, order: str = 'little') -> int:
        return int.from_bytes(self.read(width), order, signed=signed)

    def read_const(self, signed: bool = True) -> tuple[int, int]:
        """Read a width-tagged constant; return (value, width in bytes)."""
        at = self.pos
        tag = self.read_byte()
        width = TAG_WIDTHS.get(tag)
        if width is None:
            raise DecodeError(DecodeError.UNEXPECTED_VALUE, at,
                              f"expected a constant, found byte 0x{tag:02x}")
        return self.read_int(width, signed), width

    def read_until(self, stop: int) -> bytes:
        """Read up to (and consume, but do not return) the byte *stop*."""
        end = self.data.find(bytes([stop]), self.pos)
        if end < 0:
            raise DecodeError(DecodeError.TRUNCATED_OPERAND, self.pos,
                              f"missing terminator 0x{stop:02x} before the end of the buffer")
        raw = self.data[self.pos: end]
        self.pos = end + 1
        return raw


# ---------------------------------------------------------------------------
# Decoded records
# ---------------------------------------------------------------------------

@dataclass
class _Decoded:
    offset: int
    size: int
    ins: Instruction


@dataclass
class _Pointer:
    ref: LabelRef                     # placeholder, named once blocks are known
    target: int
    width: int
    kind: str                         # label prefix the target asks for
    at: int                           # offset of the constant in the buffer


def _int(value: int, width: int) -> Int:
    return Int(value, None if width == literal_width(value) else width)


def _selects(slot, value: int, width: int) -> bool:
    if isinstance(slot, Atom):
        return width == 4 and value == slot.value
    return value == slot.value


# ---------------------------------------------------------------------------
# Disassembler
# ---------------------------------------------------------------------------

class _Disassembler:

    def __init__(self, data: bytes, target: Target) -> None:
        self.data = bytes(data)
        self.target = target
        self.decoded: dict[int, _Decoded] = {}
        self.owner: dict[int, int] = {}       # byte offset → instruction covering it
        self.kinds: dict[int, str] = {}       # block start → label prefix
        self.pointers: list[_Pointer] = []
        self._work: list[int] = []
        self._opcode = ''

    # ------------------------------------------------------------------
    # Work-list
    # ------------------------------------------------------------------

    def seed(self, offset: int, kind: str) -> None:
        if not 0 <= offset <= len(self.data):
            raise DecodeError(DecodeError.OFFSET_OUT_OF_RANGE, offset,
                              f"entry offset 0x{offset:x} is outside the buffer "
                              f"(0x{len(self.data):x} bytes)")
        self._mark(offset, kind)
        self._work.append(offset)

    def _mark(self, offset: int, kind: str) -> None:
        current = self.kinds.get(offset)
        if current is None or _RANK[kind] < _RANK[current]:
            self.kinds[offset] = kind

    def recover(self) -> None:
        while self._work:
            self._sweep(self._work.pop())
        log.debug("decoded %d instruction(s) from %d start(s)",
                  len(self.decoded), len(self.kinds))

    def _sweep(self, pos: int) -> None:
        while pos < len(self.data):
            if pos in self.decoded:
                return
            if pos in self.owner:
                raise DecodeError(DecodeError.MISALIGNED_TARGET, pos,
                                  f"0x{pos:x} is inside the instruction at "
                                  f"0x{self.owner[pos]:x}")
            item = self._decode(pos)
            for b in range(pos, pos + item.size):
                if b in self.owner:
                    raise DecodeError(DecodeError.MISALIGNED_TARGET, b,
                                      f"instruction at 0x{pos:x} overlaps the "
                                      f"instruction at 0x{self.owner[b]:x}")
                self.owner[b] = pos
            self.decoded[pos] = item
            pos += item.size
            if item.ins.opcode in TERMINATORS:
                return

    # ------------------------------------------------------------------
    # Instructions
    # ------------------------------------------------------------------

    def _decode(self, pos: int) -> _Decoded:
        r = _Reader(self.data, pos)
        code = r.read_byte()
        opcode = CMD_NAMES.get(code)
        if opcode is None:
            raise DecodeError(DecodeError.UNKNOWN_OPCODE, pos, f"unknown opcode 0x{code:02x}")
        self._opcode = opcode
        if opcode in MESSAGE_COMMANDS:
            operands = [self._message(r)]
        elif opcode == 'set':
            operands = self._set(r)
        else:
            operands = self._command(r, opcode)
        return _Decoded(pos, r.pos - pos, Instruction(opcode, operands))

    def _set(self, r: _Reader) -> list:
        value = self._expr(r, EXPR)
        if isinstance(value, Expr) and value.op in ASSIGN_OPS:
            return [value]
        if not accepts(EXPR, value):
            raise DecodeError(DecodeError.UNEXPECTED_VALUE, r.pos,
                              "operand 2 of 'set' is not an expression")
        return [self._operand(r, SET, 'set', 0), value]

    def _command(self, r: _Reader, opcode: str) -> list:
        size_at = r.pos
        size = r.read_int(2) if opcode == 'call' else 0
        shape, operands = self._walk(r, opcode, CMD_SIGNATURES[opcode], self._operand)
        if not shape or shape[-1] != VARIADIC:
            return operands

        if opcode == 'call':
            end = size_at + size
            if size > _MAX_CALL_SIZE:
                raise DecodeError(DecodeError.UNEXPECTED_VALUE, size_at,
                                  f"argument size {size} of 'call' is too large")
            while r.pos < end:
                operands.append(self._operand(r, VARIADIC, opcode, len(operands)))
            if r.pos != end:
                raise DecodeError(DecodeError.UNEXPECTED_VALUE, size_at,
                                  f"argument size {size} of 'call' does not match "
                                  f"its arguments ({r.pos - size_at})")
        elif opcode == 'ptcl':
            at = r.pos
            count, width = r.read_const()
            if count < 0 or width != literal_width(count):
                raise DecodeError(DecodeError.UNEXPECTED_VALUE, at,
                                  f"non-canonical argument count for 'ptcl': {count}")
            for _ in range(count):
                operands.append(self._operand(r, VARIADIC, opcode, len(operands)))
        else:
            while self.data[r.pos: r.pos + 2] != ANIM_TERMINATOR:
                at = r.pos
                arg = self._operand(r, VARIADIC, opcode, len(operands))
                if is_anim_terminator(arg):
                    raise DecodeError(DecodeError.UNEXPECTED_VALUE, at,
                                      f"non-canonical argument terminator for '{opcode}'")
                operands.append(arg)
            r.pos += 2
        return operands

    def _walk(self, r: _Reader, name: str, shapes: tuple, read_slot,
              message: bool = False) -> tuple[tuple, list]:
        """Decode operands while narrowing *shapes* at every selector."""
        live = list(shapes)
        operands: list = []
        while True:
            index = len(operands)
            slots = [slot_at(shape, index) for shape in live]
            done = [shape for shape, slot in zip(live, slots)
                    if slot is None or slot == VARIADIC]
            if done:
                return done[0], operands
            if not any(is_selector(slot) for slot in slots):
                operands.append(read_slot(r, slots[0], name, index))
                continue
            at = r.pos
            if message:
                value, width = r.read_int(1, signed=True), 1
            else:
                value, width = r.read_const()
            live = [shape for shape, slot in zip(live, slots)
                    if is_selector(slot) and _selects(slot, value, width)]
            if not live:
                raise DecodeError(DecodeError.UNEXPECTED_VALUE, at,
                                  f"unexpected value {value} for operand {index + 1} "
                                  f"of '{name}'")
            slot = slot_at(live[0], index)
            if isinstance(slot, Atom):
                operands.append(AtomRef(slot.name))
            else:
                operands.append(Int(value) if message else _int(value, width))

    def _operand(self, r: _Reader, slot, name: str, index: int):
        at = r.pos
        if slot in (PTR, ELSE):
            kind = 'sub' if self._opcode == 'run' else 'loc'
            operand = self._pointer(r, kind, slot == ELSE)
        elif slot == INT:
            operand = _int(*r.read_const())
        elif slot == TEXT:
            operand = Text(r.read_until(0))
        else:
            operand = self._expr(r, slot)
        if not accepts(slot, operand):
            raise DecodeError(DecodeError.UNEXPECTED_VALUE, at,
                              f"operand {index + 1} of '{name}' is not {describe(slot)}")
        return operand

    def _expr(self, r: _Reader, slot):
        at = r.pos
        op = r.peek()
        if op is not None and op in TAG_WIDTHS:
            return _int(*r.read_const())
        op = r.read_byte()
        if op == OP_ADDR:
            return self._pointer(r, 'evt' if slot == EVENT else 'dat', False)
        name = EXPR_NAMES.get(op)
        if name is None:
            raise DecodeError(DecodeError.UNKNOWN_OPCODE, at,
                              f"unknown expression operator 0x{op:02x}")
        shapes = EXPR_SIGNATURES[name]
        if name in REVERSED_OPS:
            shape = shapes[0]
            args = [self._operand(r, shape[i], name, i) for i in reversed(range(len(shape)))]
            args.reverse()
            return Expr(name, args)
        _, args = self._walk(r, name, shapes, self._operand)
        return Expr(name, args)

    def _pointer(self, r: _Reader, kind: str, is_else: bool) -> LabelRef:
        at = r.pos
        value, width = r.read_const(signed=False)
        ref = LabelRef('', None, is_else)
        self.pointers.append(_Pointer(ref, value, width, kind, at))
        if kind != 'dat':
            if value > len(self.data):
                raise DecodeError(DecodeError.OFFSET_OUT_OF_RANGE, at,
                                  f"jump target 0x{value:x} is outside the buffer "
                                  f"(0x{len(self.data):x} bytes)")
            self._mark(value, kind)
            self._work.append(value)
        return ref

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _message(self, r: _Reader) -> Message:
        at = r.pos
        end = r.read_int(4)
        start = r.pos
        commands: list[MsgCommand] = []
        text = bytearray()
        while True:
            b = r.read_byte()
            if b == MSG_END:
                break
            if is_text_byte(b):
                text.append(b)
                continue
            if text:
                commands.append(MsgCommand('text', [Text(bytes(text))]))
                text = bytearray()
            name = MSG_NAMES.get(b)
            if name is None:
                raise DecodeError(DecodeError.UNKNOWN_OPCODE, r.pos - 1,
                                  f"unknown message command 0x{b:02x}")
            if name == 'format':
                commands.append(MsgCommand(name, [Text(r.read_until(MSG_FORMAT))]))
                continue
            _, args = self._walk(r, name, MSG_SIGNATURES[name], self._field, message=True)
            commands.append(MsgCommand(name, args))
        if text:
            commands.append(MsgCommand('text', [Text(bytes(text))]))
        if r.pos - start > MAX_MESSAGE_SIZE:
            raise DecodeError(DecodeError.UNEXPECTED_VALUE, start,
                              f"message body is longer than {MAX_MESSAGE_SIZE} bytes")
        if end != r.pos:
            raise DecodeError(DecodeError.UNEXPECTED_VALUE, at,
                              f"message end offset 0x{end:x} does not match the "
                              f"message (ends at 0x{r.pos:x})")
        return Message(commands)

    @staticmethod
    def _field(r: _Reader, slot, name: str, index: int) -> Int:
        order = 'big' if slot.big_endian else 'little'
        return Int(r.read_int(slot.width, slot.signed, order))

    # ------------------------------------------------------------------
    # Script construction
    # ------------------------------------------------------------------

    def build(self, entries: list[tuple[Optional[EntryPoint], int]]) -> Script:
        n = len(self.data)
        offsets: dict[int, Offset] = {}
        for p in self.pointers:
            if p.kind != 'dat':
                continue
            if p.target > n or (p.target in self.owner and p.target not in self.decoded):
                width = None if p.width == address_width(p.target) else p.width
                offsets[id(p.ref)] = Offset(p.target, width)
            else:
                self._mark(p.target, 'dat')

        units = self._units()
        names = {offset: f"{kind}_{offset:x}" for offset, kind in self.kinds.items()}
        for p in self.pointers:
            if id(p.ref) not in offsets:
                p.ref.name = names[p.target]

        script = Script(self.target)
        block = None
        for start, item in units:
            if start in names:
                block = script.add_block(names[start])
            if isinstance(item, Instruction) and offsets:
                item.operands = _swap(item.operands, offsets)
            block.items.append(item)
        if n in names:
            script.add_block(names[n])

        for p in self.pointers:
            if id(p.ref) not in offsets:
                script.labels.reference(p.ref.name)
        for entry, offset in entries:
            if entry is not None:
                script.add_entry(entry, names[offset])
        script.labels.resolve_all()
        log.debug("recovered %d block(s)", len(script.blocks))
        return script

    def _units(self) -> list[tuple[int, object]]:
        """Instructions and data items in address order."""
        units: list[tuple[int, object]] = []
        pos, n = 0, len(self.data)
        while pos < n:
            item = self.decoded.get(pos)
            if item is not None:
                units.append((pos, item.ins))
                pos += item.size
                continue
            end = pos + 1
            while end < n and end not in self.decoded:
                end += 1
            self._mark(pos, 'dat')
            cuts = sorted(k for k in self.kinds if pos <= k < end) + [end]
            for lo, hi in zip(cuts, cuts[1:]):
                units.extend(_data_items(self.data, lo, hi))
            pos = end
        return units

    # ------------------------------------------------------------------
    # Width pinning
    # ------------------------------------------------------------------

    def pin_widths(self, script: Script, max_passes: int = MAX_PASSES) -> None:
        """Pin address widths until the assembler reproduces the decoded layout."""
        decoded = {id(p.ref): p.width for p in self.pointers}
        for round_ in range(len(decoded) + 1):
            changed = 0
            for fix in layout(script, max_passes).fixups:
                want = decoded.get(id(fix.ref))
                if want is not None and fix.ref.width is None and fix.width != want:
                    fix.ref.width = want
                    changed += 1
            if not changed:
                log.debug("address widths stable after %d round(s)", round_ + 1)
                return
            log.debug("pinned %d address width(s)", changed)


def _swap(operands: list, offsets: dict[int, Offset]) -> list:
    out = []
    for operand in operands:
        if id(operand) in offsets:
            operand = offsets[id(operand)]
        elif isinstance(operand, Expr):
            operand.args = _swap(operand.args, offsets)
        out.append(operand)
    return out


def _is_printable(b: int) -> bool:
    return 0x20 <= b < 0x7f or b in (0x09, 0x0a)


def _data_items(data: bytes, lo: int, hi: int) -> list[tuple[int, Data]]:
    """Split data[lo:hi] into string lines and rows of bytes."""
    items: list[tuple[int, Data]] = []
    row: list[Int] = []
    row_start = lo

    def flush() -> None:
        nonlocal row
        if row:
            items.append((row_start, Data('db', row)))
            row = []

    pos = lo
    while pos < hi:
        end = pos
        while end < hi and _is_printable(data[end]):
            end += 1
        if end < hi and data[end] == 0 and end - pos >= 2:
            flush()
            items.append((pos, Data('db', [Text(data[pos:end])])))
            pos = end + 1
            continue
        stop = min(end + 1, hi)
        for b in data[pos:stop]:
            if not row:
                row_start = pos
            row.append(Int(b))
            pos += 1
            if len(row) == _ROW:
                flush()
    flush()
    return items


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def _normalize_entries(entries: Optional[EntrySpec]) -> list[tuple[Optional[EntryPoint], int]]:
    if entries is None:
        return []
    if isinstance(entries, Mapping):
        return [(entry, int(offset)) for entry, offset in entries.items()]
    result = []
    for item in entries:
        if isinstance(item, tuple):
            result.append((item[0], int(item[1])))
        else:
            result.append((None, int(item)))
    return result


def disassemble_script(data: bytes, entries: Optional[EntrySpec] = None,
                       target: Optional[Target] = None, *,
                       verify: bool = False, max_passes: int = MAX_PASSES) -> Script:
    """Recover a Script from bytecode.

    Parameters
    ----------
    data:
        The bytecode buffer.
    entries:
        Known entry offsets: a mapping EntryPoint → offset, or an iterable of
        ``(EntryPoint, offset)`` pairs and plain offsets.  Plain offsets are
        decoded but declare no entry point.
    target:
        Stage or globals target of the script.  By default a script with
        library entries is globals, anything else an untitled stage.
    verify:
        Re-assemble the result and raise ``DecodeError`` unless it matches
        *data* byte for byte.

    Returns
    -------
    The recovered Script.
    """
    seeds = _normalize_entries(entries)
    if target is None:
        libs = any(entry is not None and not entry.is_stage_event for entry, _ in seeds)
        target = Target.globals() if libs else Target.stage('untitled')
    dis = _Disassembler(data, target)
    for entry, offset in seeds:
        kind = 'sub' if entry is not None and not entry.is_stage_event else 'evt'
        dis.seed(offset, kind)
    dis.recover()
    script = dis.build(seeds)
    dis.pin_widths(script, max_passes)
    if verify:
        out = assemble_script(script, max_passes).data
        if out != dis.data:
            at = next((i for i, (a, b) in enumerate(zip(out, dis.data)) if a != b),
                      min(len(out), len(dis.data)))
            raise DecodeError(DecodeError.UNEXPECTED_VALUE, at,
                              f"bytecode does not reassemble identically "
                              f"(first difference at 0x{at:x})")
    return script


def disassemble(data: bytes, entries: Optional[EntrySpec] = None,
                target: Optional[Target] = None, **kwargs) -> str:
    """Disassemble *data* to assembly text."""
    from .writer import write_script
    return write_script(disassemble_script(data, entries, target, **kwargs))


def disassemble_file(path: str | Path, outdir: str | Path = '.',
                     entries: Optional[EntrySpec] = None,
                     target: Optional[Target] = None,
                     verify: bool = False) -> list[Path]:
    """Disassemble a bytecode file into ``<stem>.asm``.

    When *entries* is not given, ``<stem>.entries.json`` beside the input is
    read if it exists; otherwise decoding starts at offset 0.  The target
    defaults to the one in that file, or a stage named after the file.

    Returns
    -------
    List of Path objects for the files written.
    """
    path = Path(path)
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    data = path.read_bytes()
    sidecar = path.with_name(path.stem + '.entries.json')
    if entries is None and sidecar.exists():
        saved_target, entries = load_entries(sidecar.read_text(encoding='utf-8'))
        target = target or saved_target
        log.debug("read %d entry point(s) from %s", len(entries), sidecar.name)
    if entries is None:
        entries = [0]
    target = target or Target.stage(path.stem)

    from .writer import write_script
    script = disassemble_script(data, entries, target, verify=verify)
    out_path = outdir / (path.stem + '.asm')
    out_path.write_text(write_script(script), encoding='utf-8')
    return [out_path]
