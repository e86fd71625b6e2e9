"""
program.py – The script model shared by the assembler and the disassembler.

A ``Script`` owns an ordered list of ``Block``s.  Each block is named by one
label and holds instructions and raw data.  Operands are small dataclasses;
spans are carried along for diagnostics but never take part in equality, so
a model parsed from text compares equal to the same model rebuilt from bytes.

Entry point: ``Script.resolve(label)`` and ``Script.entry_points()``
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

from .errors import ResolutionError, Span
from .labels import LabelBinding, LabelTable
from .opcodes import ENTRY_ROLES, KEYED_ROLES, STAGE_EVENTS


# ---------------------------------------------------------------------------
# Operands
# ---------------------------------------------------------------------------

@dataclass
class Int:
    value: int
    width: Optional[int] = None       # forced width in bytes; None → narrowest
    span: Optional[Span] = field(default=None, compare=False, repr=False)


@dataclass
class AtomRef:
    name: str
    span: Optional[Span] = field(default=None, compare=False, repr=False)


@dataclass
class Text:
    data: bytes
    span: Optional[Span] = field(default=None, compare=False, repr=False)


@dataclass
class LabelRef:
    name: str
    width: Optional[int] = None       # forced width in bytes; None → relaxed
    is_else: bool = False
    span: Optional[Span] = field(default=None, compare=False, repr=False)


@dataclass
class Offset:
    """An unrelocated address written as ``*0x1c``."""
    value: int
    width: Optional[int] = None
    is_else: bool = False
    span: Optional[Span] = field(default=None, compare=False, repr=False)


@dataclass
class Expr:
    op: str
    args: list = field(default_factory=list)
    span: Optional[Span] = field(default=None, compare=False, repr=False)


@dataclass
class MsgCommand:
    op: str                           # message command name, or 'text'
    args: list = field(default_factory=list)
    span: Optional[Span] = field(default=None, compare=False, repr=False)


@dataclass
class Message:
    commands: list[MsgCommand] = field(default_factory=list)
    span: Optional[Span] = field(default=None, compare=False, repr=False)


Operand = Union[Int, AtomRef, Text, LabelRef, Offset, Expr, Message]


def walk_operands(operands: list) -> Iterator:
    """Yield every operand in *operands*, descending into expressions."""
    for operand in operands:
        yield operand
        if isinstance(operand, Expr):
            yield from walk_operands(operand.args)


# ---------------------------------------------------------------------------
# Instructions, data and blocks
# ---------------------------------------------------------------------------

@dataclass
class Instruction:
    opcode: str
    operands: list = field(default_factory=list)
    span: Optional[Span] = field(default=None, compare=False, repr=False)


@dataclass
class Data:
    directive: str                    # 'db', 'dw' or 'dd'
    values: list = field(default_factory=list)
    span: Optional[Span] = field(default=None, compare=False, repr=False)


Item = Union[Instruction, Data]


@dataclass
class Block:
    label: str
    items: list = field(default_factory=list)

    @property
    def synthetic(self) -> bool:
        """Blocks opened by code that precedes any label are not printed."""
        return self.label.startswith('$')


# ---------------------------------------------------------------------------
# Entry points and target
# ---------------------------------------------------------------------------

@dataclass(frozen=True, order=True)
class EntryPoint:
    role: str
    key: Optional[int] = None         # object id for 'interact', index for 'lib'

    def __post_init__(self) -> None:
        if self.role not in ENTRY_ROLES:
            raise ValueError(f"unknown entry point role {self.role!r}")
        if (self.role in KEYED_ROLES) != (self.key is not None):
            raise ValueError(f"entry point {self.role!r} has a wrong key: {self.key!r}")

    @property
    def is_stage_event(self) -> bool:
        return self.role != 'lib'

    def __str__(self) -> str:
        return self.role if self.key is None else f"{self.role}:{self.key}"

    @classmethod
    def parse(cls, text: str) -> "EntryPoint":
        """Parse ``startup`` / ``interact:20`` / ``lib:3``."""
        role, _, key = text.partition(':')
        return cls(role, int(key, 0) if key else None)


@dataclass(frozen=True)
class Target:
    kind: str                         # 'stage' or 'globals'
    name: Optional[str] = None        # stage name

    @classmethod
    def stage(cls, name: str) -> "Target":
        return cls('stage', name)

    @classmethod
    def globals(cls) -> "Target":
        return cls('globals')

    @property
    def is_globals(self) -> bool:
        return self.kind == 'globals'

    @classmethod
    def parse(cls, text: str) -> "Target":
        """Parse ``globals`` or ``stage:NAME``."""
        if text == 'globals':
            return cls.globals()
        kind, _, name = text.partition(':')
        if kind != 'stage' or not name:
            raise ValueError(f"bad target {text!r}: expected 'globals' or 'stage:NAME'")
        return cls.stage(name)

    def __str__(self) -> str:
        return 'globals' if self.is_globals else f"stage:{self.name}"


# ---------------------------------------------------------------------------
# Script
# ---------------------------------------------------------------------------

@dataclass
class Script:
    target: Target
    blocks: list[Block] = field(default_factory=list)
    entries: dict[EntryPoint, str] = field(default_factory=dict)
    labels: LabelTable = field(default_factory=LabelTable, compare=False, repr=False)

    def resolve(self, label: str) -> LabelBinding:
        """Return the (block, offset) binding of *label*."""
        return self.labels.resolve(label)

    def entry_points(self) -> dict[EntryPoint, str]:
        """Return the role table in the fixed role order."""
        order = {role: i for i, role in enumerate(STAGE_EVENTS + ('interact', 'lib'))}
        return dict(sorted(self.entries.items(),
                           key=lambda kv: (order[kv[0].role], kv[0].key or 0)))

    def add_block(self, label: str, span: Optional[Span] = None) -> Block:
        block = Block(label)
        self.labels.declare(label, len(self.blocks), span)
        self.blocks.append(block)
        return block

    def add_entry(self, entry: EntryPoint, label: str,
                  span: Optional[Span] = None) -> None:
        if entry in self.entries:
            raise ResolutionError(ResolutionError.DUPLICATE_ENTRY_POINT,
                                  f"duplicate entry point '{entry}'", span)
        if entry.is_stage_event and self.target.is_globals:
            raise ResolutionError(ResolutionError.SCOPE_MISMATCH,
                                  "globals scripts cannot define stage events", span)
        if not entry.is_stage_event and not self.target.is_globals:
            raise ResolutionError(ResolutionError.SCOPE_MISMATCH,
                                  "stage scripts cannot define library functions", span)
        self.entries[entry] = label

    def items(self) -> Iterator[tuple[int, Item]]:
        for index, block in enumerate(self.blocks):
            for item in block.items:
                yield index, item

    def instructions(self) -> Iterator[Instruction]:
        for _, item in self.items():
            if isinstance(item, Instruction):
                yield item


# ---------------------------------------------------------------------------
# Entry-table sidecar
# ---------------------------------------------------------------------------

def dump_entries(target: Target, offsets: dict[EntryPoint, int]) -> str:
    """Serialise a target and its entry offsets to the ``.entries.json`` form."""
    doc = {
        'target': str(target),
        'entries': {str(entry): offset for entry, offset in sorted(offsets.items())},
    }
    return json.dumps(doc, indent=2) + '\n'


def load_entries(text: str) -> tuple[Target, dict[EntryPoint, int]]:
    """Inverse of ``dump_entries``."""
    doc = json.loads(text)
    target = Target.parse(doc['target'])
    offsets = {EntryPoint.parse(key): int(value)
               for key, value in doc.get('entries', {}).items()}
    return target, offsets
