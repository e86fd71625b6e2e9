"""
signatures.py – Operand-shape tables for commands, expressions and messages.

Each opcode maps to the tuple of shapes it accepts.  A shape is a tuple of
slots.  Most slots name a kind of operand (an expression, a jump target...);
``Atom`` and ``Lit`` slots are *selectors*: they match one concrete value and
pick which alternatives stay alive, so the operands after a selector are read
according to the chosen shape.

The parser checks source operands with ``match``, the assembler re-checks
before encoding, and the disassembler walks the same alternatives while
decoding, so the three directions cannot disagree.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence

from .opcodes import ASSIGN_OPS, ASSIGNABLE, ATOMS, MSG_FORMAT
from .program import AtomRef, Expr, Int, LabelRef, Message, Offset, Text


# ---------------------------------------------------------------------------
# Slot kinds
# ---------------------------------------------------------------------------

EXPR = 'expr'
OBJ = 'obj'                           # object id
EVENT = 'event'                       # address of an event handler
SOUND = 'sound'
ITEM = 'item'
STRING = 'string'                     # address of a string
ARRAY = 'array'                       # address of an array
SET = 'set'                           # assignable expression
UPDATE = 'update'                     # compound assignment
INT = 'int'                           # literal integer
PTR = 'ptr'                           # jump target
ELSE = 'else'                         # jump target taken when a condition fails
MSG = 'msg'                           # message body
TEXT = 'text'                         # NUL-terminated string
VARIADIC = 'variadic'                 # zero or more expressions
FORMAT = 'format'                     # message text terminated by MSG_FORMAT

EXPR_KINDS = frozenset({EXPR, OBJ, EVENT, SOUND, ITEM, STRING, ARRAY})

_DESCRIPTIONS = {
    EXPR: 'an expression', OBJ: 'an object expression',
    EVENT: 'an event expression', SOUND: 'a sound expression',
    ITEM: 'an item expression', STRING: 'a string expression',
    ARRAY: 'an array expression', SET: 'an assignable expression',
    UPDATE: 'a compound assignment', INT: 'an integer',
    PTR: 'a label reference', ELSE: 'an else label', MSG: 'a message',
    TEXT: 'a string', VARIADIC: 'an expression', FORMAT: 'a string',
}


@dataclass(frozen=True)
class Atom:
    name: str

    @property
    def value(self) -> int:
        return ATOMS[self.name]

    def __str__(self) -> str:
        return f"@{self.name}"


@dataclass(frozen=True)
class Lit:
    value: int

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class Field:
    """A raw fixed-width integer inside a message command."""
    width: int
    signed: bool = False
    big_endian: bool = False

    def __str__(self) -> str:
        return f"{'i' if self.signed else 'u'}{self.width * 8}"


U8, I8 = Field(1), Field(1, True)
U16, I16 = Field(2), Field(2, True)
U32, I32 = Field(4), Field(4, True)
RGBA = Field(4, big_endian=True)


def is_selector(slot) -> bool:
    return isinstance(slot, (Atom, Lit))


def describe(slot) -> str:
    if is_selector(slot) or isinstance(slot, Field):
        return str(slot)
    return _DESCRIPTIONS[slot]


def _e(n: int) -> tuple:
    return (EXPR,) * n


def _lits(head: tuple, values: Sequence[int], *tail) -> list[tuple]:
    return [head + (Lit(v),) + tail for v in values]


# ---------------------------------------------------------------------------
# Command shapes
# ---------------------------------------------------------------------------

_CHECK = (
    (Atom('time'), EXPR),
    (Atom('fade'),),
    (Atom('wipe'),),
    (Atom('unk203'),),
    (Atom('anim'), OBJ, EXPR),
    (Atom('dir'), OBJ),
    (Atom('move'), OBJ),
    (Atom('color'), OBJ),
    (Atom('sfx'), SOUND),
    (Atom('real'), EXPR),
    (Atom('cam'),),
    (Atom('read'), OBJ),
    (Atom('zblur'),),
    (Atom('letterbox'),),
    (Atom('shake'),),
    (Atom('mono'),),
    (Atom('scale'), OBJ),
    (Atom('cue'),),
    (Atom('unk246'), EXPR),
)

CMD_SIGNATURES: dict[str, tuple] = {
    'abort':  ((),),
    'return': ((),),
    'goto':   ((PTR,),),
    'set':    ((UPDATE,), (SET, EXPR)),
    'if':     ((EXPR, ELSE),),
    'elif':   ((EXPR, ELSE),),
    'endif':  ((PTR,),),
    'case':   ((EXPR, ELSE),),
    'expr':   ((EXPR, ELSE),),
    'while':  ((EXPR, ELSE),),
    'break':  ((PTR,),),
    'run':    ((PTR,),),
    'lib':    ((INT,),),
    'pushbp': ((),),
    'popbp':  ((),),
    'setsp':  ((EXPR,),),
    'anim':   ((OBJ, VARIADIC),),
    'anim1':  ((OBJ, VARIADIC),),
    'anim2':  ((OBJ, VARIADIC),),
    'attach': ((OBJ, EVENT),),
    'born':   (_e(9) + (EVENT,),),
    'call':   ((OBJ, VARIADIC),),
    'camera': (
        (Atom('anim'),) + _e(3),
        (Atom('pos'),) + _e(5),
        (Atom('obj'),) + _e(3),
        (Atom('reset'),) + _e(2),
        (Atom('unk211'),) + _e(4),
        (Atom('lead'), EXPR),
        (Atom('unk227'),) + _e(5),
        (Atom('distance'),) + _e(3),
        (Atom('unk229'),) + _e(3),
        (Atom('unk230'),),
        *_lits((Atom('unk232'),), (-2, -1, 0, 1)),
        *_lits((Atom('unk232'),), (2, 3, 4), EXPR),
        (Atom('unk236'), EXPR),
        (Atom('unk237'), EXPR),
        (Atom('unk238'), EXPR),
        (Atom('unk240'),) + _e(4),
        (Atom('unk243'),) + _e(4),
        (Atom('unk251'),) + _e(4),
        (Atom('unk252'),) + _e(4),
    ),
    'check':  _CHECK,
    'color':  (
        (OBJ, Atom('modulate')) + _e(4),
        (OBJ, Atom('blend')) + _e(4),
    ),
    'detach': ((OBJ,),),
    'dir':    ((OBJ, EXPR),),
    'mdir':   (
        (OBJ, Atom('dir')) + _e(3),
        (OBJ, Atom('pos')) + _e(4),
        (OBJ, Atom('obj')) + _e(3),
        (OBJ, Atom('cam')) + _e(2),
    ),
    'disp':   ((OBJ, EXPR),),
    'kill':   ((EXPR,),),
    'light':  (
        (EXPR, Atom('pos')) + _e(3),
        (EXPR, Atom('color')) + _e(3),
        (EXPR, Atom('unk227')) + _e(3),
    ),
    'menu':   (
        *_lits((), range(8)),
        (Lit(1000), EXPR),
        (Lit(1001), EXPR, EXPR),
    ),
    'move':   ((OBJ,) + _e(4),),
    'moveto': ((OBJ,) + _e(6),),
    'msg':    ((MSG,),),
    'pos':    ((OBJ,) + _e(3),),
    'printf': ((TEXT,),),
    'ptcl':   (
        (EXPR, Atom('pos')) + _e(7),
        (EXPR, Atom('obj'), OBJ) + _e(7),
        (EXPR, Atom('unk210')),
        (EXPR, Atom('lead'), OBJ, VARIADIC),
    ),
    'read':   (
        (Atom('anim'), OBJ, STRING),
        (Atom('sfx'), OBJ, STRING),
    ),
    'scale':  ((OBJ,) + _e(3),),
    'mscale': ((OBJ,) + _e(4),),
    'scrn':   (
        (Atom('fade'),) + _e(9),
        (Atom('wipe'),) + _e(17),
        *_lits((Atom('hud'),), (0, 1, 2), EXPR),
        (Atom('hud'), Lit(3)) + _e(4),
        *_lits((Atom('hud'), Lit(4)), (-4, -2, -1, 0, 1, 2, 3)),
        (Atom('hud'), Lit(4), Lit(-3), EXPR),
        (Atom('zblur'),) + _e(5),
        (Atom('letterbox'),) + _e(10),
        (Atom('shake'),) + _e(7),
        (Atom('mono'),) + _e(9),
    ),
    'select': ((MSG,),),
    'sfx':    (
        *_lits((SOUND,), (0, 1, 5, 6)),
        *_lits((SOUND,), (2, 3), EXPR),
        (SOUND, Lit(4), EXPR, EXPR),
        (SOUND, Atom('cue')),
    ),
    'timer':  ((EXPR, EVENT),),
    'wait':   _CHECK,
    'warp':   ((EXPR, EXPR),),
    'win':    (
        (Atom('pos'), EXPR, EXPR),
        (Atom('obj'), OBJ, EXPR, EXPR, EXPR),
        (Atom('reset'),),
        (Atom('color'),) + _e(4),
        (Atom('letterbox'),),
    ),
    'movie':  ((STRING,) + _e(5),),
}


# ---------------------------------------------------------------------------
# Expression shapes
# ---------------------------------------------------------------------------

EXPR_SIGNATURES: dict[str, tuple] = {
    'not': ((EXPR,),),
    'i8': ((INT,),), 'i16': ((INT,),), 'i32': ((INT,),),
    'addr': ((PTR,),),
    'sp': ((INT,),), 'bp': ((INT,),),
    'flag': ((EXPR,),), 'var': ((EXPR,),),
    'result': ((),), 'result2': ((),),
    'pad': ((EXPR,),), 'battery': ((EXPR,),), 'money': ((),),
    'item': ((ITEM,),), 'atc': ((EXPR,),), 'rank': ((),), 'exp': ((),),
    'level': ((),), 'hold': ((),), 'map': ((EXPR,),),
    'actor_name': ((OBJ,),), 'item_name': ((ITEM,),), 'time': ((EXPR,),),
    'cur_suit': ((),), 'scrap': ((),), 'cur_atc': ((),), 'use': ((),),
    'hit': ((),), 'sticker_name': ((EXPR,),),
    'obj': tuple(
        [(Atom(a), OBJ) for a in ('anim', 'dir', 'pos_x', 'pos_y', 'pos_z',
                                  'unk235', 'unk247', 'unk248')]
        + [(Atom(a), ARRAY) for a in ('bone_x', 'bone_y', 'bone_z', 'dir_to',
                                      'distance', 'unk249', 'unk250')]
    ),
    'rand': ((EXPR,),), 'sin': ((EXPR,),), 'cos': ((EXPR,),),
    'array': ((EXPR, EXPR, ARRAY),),
}
for _op in ('eq', 'ne', 'lt', 'le', 'gt', 'ge',
            'add', 'sub', 'mul', 'div', 'mod', 'and', 'or', 'xor'):
    EXPR_SIGNATURES[_op] = ((EXPR, EXPR),)
for _op in ASSIGN_OPS:
    EXPR_SIGNATURES[_op] = ((SET, EXPR),)
del _op


# ---------------------------------------------------------------------------
# Message command shapes
# ---------------------------------------------------------------------------

# Lit slots here are the raw signed type byte of 'sfx'.
MSG_SIGNATURES: dict[str, tuple] = {
    'speed':  ((U8,),),
    'wait':   ((U8,),),
    'anim':   ((U8, I16, I32),),
    'sfx':    (
        *_lits((U32,), (-1, 0, 1, 5, 6)),
        *_lits((U32,), (2, 3), U16),
        (U32, Lit(4), U16, U8),
    ),
    'voice':  ((U8,),),
    'def':    ((U8, I32),),
    'format': ((FORMAT,),),
    'size':   ((U8,),),
    'color':  ((U8,),),
    'rgba':   ((RGBA,),),
    'prop':   ((U8,),),
    'icon':   ((U8,),),
    'shake':  ((U8, U8, U8),),
    'center': ((U8,),),
    'rotate': ((I16,),),
    'scale':  ((I16, I16),),
    'input':  ((U8, U8, U8),),
    'ask':    ((U8, U8),),
    'stay':   ((),),
}


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

class SignatureMismatch(ValueError):
    """Raised by ``match``; *index* is the operand that could not be placed."""

    def __init__(self, index: int, detail: str) -> None:
        super().__init__(detail)
        self.index = index
        self.detail = detail


def is_expression(operand) -> bool:
    if isinstance(operand, (LabelRef, Offset)):
        return not operand.is_else
    if isinstance(operand, Expr):
        return operand.op not in ASSIGN_OPS
    return isinstance(operand, Int)


def is_anim_terminator(operand) -> bool:
    """True if *operand* cannot appear in the argument tail of an anim command.

    -1 is reserved for the terminator at any width, and 255 stored in eight
    bits encodes to the terminator's bytes.
    """
    width = None
    if isinstance(operand, Expr) and operand.op == 'i8' and len(operand.args) == 1:
        operand, width = operand.args[0], 1
    if not isinstance(operand, Int):
        return False
    width = width or operand.width
    return operand.value == -1 or (operand.value == 255 and width == 1)


def accepts(slot, operand) -> bool:
    """True if *operand* can stand in *slot* of a command or expression."""
    if isinstance(slot, Atom):
        return isinstance(operand, AtomRef) and operand.name == slot.name
    if isinstance(slot, Lit):
        return isinstance(operand, Int) and operand.value == slot.value
    if slot in EXPR_KINDS or slot == VARIADIC:
        return is_expression(operand)
    if slot == SET:
        return isinstance(operand, Expr) and operand.op in ASSIGNABLE
    if slot == UPDATE:
        return isinstance(operand, Expr) and operand.op in ASSIGN_OPS
    if slot == INT:
        return isinstance(operand, Int)
    if slot == PTR:
        return isinstance(operand, (LabelRef, Offset)) and not operand.is_else
    if slot == ELSE:
        return isinstance(operand, (LabelRef, Offset))
    if slot == MSG:
        return isinstance(operand, Message)
    if slot == TEXT:
        return isinstance(operand, Text)
    return False


def accepts_field(slot, operand) -> bool:
    """Like ``accepts`` for the raw arguments of a message command."""
    if isinstance(slot, Field):
        return (isinstance(operand, Int)
                and operand.width in (None, slot.width))
    if isinstance(slot, Lit):
        return (isinstance(operand, Int) and operand.value == slot.value
                and operand.width in (None, 1))
    if slot == FORMAT:
        return isinstance(operand, Text) and MSG_FORMAT not in operand.data
    return False


def slot_at(shape: tuple, index: int):
    """Slot of *shape* at *index*, expanding a trailing variadic tail."""
    if shape and shape[-1] == VARIADIC and index >= len(shape) - 1:
        return VARIADIC
    return shape[index] if index < len(shape) else None


def min_operands(shape: tuple) -> int:
    return len(shape) - 1 if shape and shape[-1] == VARIADIC else len(shape)


def match(name: str, shapes: tuple, operands: Sequence,
          check: Callable = accepts) -> tuple:
    """Return the first shape of *shapes* that accepts every operand.

    Raises ``SignatureMismatch`` naming the first operand that no remaining
    shape accepts, or the position where more operands were required.
    """
    live = list(shapes)
    for index, operand in enumerate(operands):
        slots = [slot_at(shape, index) for shape in live]
        if all(slot is None for slot in slots):
            raise SignatureMismatch(index, f"too many operands for '{name}'")
        survivors = [shape for shape, slot in zip(live, slots)
                     if slot is not None and check(slot, operand)]
        if not survivors:
            raise SignatureMismatch(index, f"expected {_expected(slots)}")
        live = survivors
    for shape in live:
        if min_operands(shape) <= len(operands):
            return shape
    slots = [slot_at(shape, len(operands)) for shape in live]
    raise SignatureMismatch(len(operands),
                            f"not enough operands for '{name}': expected {_expected(slots)}")


def _expected(slots: list) -> str:
    seen: list[str] = []
    for slot in slots:
        if slot is None:
            continue
        text = describe(slot)
        if text not in seen:
            seen.append(text)
    if len(seen) > 6:
        seen = seen[:6] + ['...']
    return ' or '.join(seen) if seen else 'nothing'


def check_expression(expr: Expr) -> None:
    """Validate *expr* and its sub-expressions against ``EXPR_SIGNATURES``."""
    shapes = EXPR_SIGNATURES.get(expr.op)
    if shapes is None:
        raise SignatureMismatch(0, f"unrecognized expression operator '{expr.op}'")
    try:
        match(expr.op, shapes, expr.args)
    except SignatureMismatch as exc:
        raise SignatureMismatch(exc.index, f"in '{expr.op}': {exc.detail}") from None
    for arg in expr.args:
        if isinstance(arg, Expr):
            check_expression(arg)


def expression_slots(expr: Expr) -> tuple:
    return match(expr.op, EXPR_SIGNATURES[expr.op], expr.args)


def command_shape(opcode: str, operands: Sequence) -> tuple:
    """Matched shape for a command, checking nested expressions too."""
    shape = match(opcode, CMD_SIGNATURES[opcode], operands)
    for index, operand in enumerate(operands):
        if isinstance(operand, Expr):
            try:
                check_expression(operand)
            except SignatureMismatch as exc:
                raise SignatureMismatch(index, exc.detail) from None
    return shape
