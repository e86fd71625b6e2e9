"""
opcodes.py – Opcode, expression-operator, atom and message-command tables.

All tables are plain module-level dicts built once at import time and never
mutated afterwards; both directions of the toolchain read from them.
"""

from __future__ import annotations


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

CMD_OPCODES: dict[str, int] = {
    'abort':   1, 'return':  2, 'goto':    3, 'set':     4,
    'if':      5, 'elif':    6, 'endif':   7, 'case':    8,
    'expr':    9, 'while':  10, 'break':  11, 'run':    12,
    'lib':    13, 'pushbp': 14, 'popbp':  15, 'setsp':  16,
    'anim':   17, 'anim1':  18, 'anim2':  19, 'attach': 20,
    'born':   21, 'call':   22, 'camera': 23, 'check':  24,
    'color':  25, 'detach': 26, 'dir':    27, 'mdir':   28,
    'disp':   29, 'kill':   30, 'light':  31, 'menu':   32,
    'move':   33, 'moveto': 34, 'msg':    35, 'pos':    36,
    'printf': 37, 'ptcl':   38, 'read':   39, 'scale':  40,
    'mscale': 41, 'scrn':   42, 'select': 43, 'sfx':    44,
    'timer':  45, 'wait':   46, 'warp':   47, 'win':    48,
    'movie':  49,
}
CMD_NAMES: dict[int, str] = {v: k for k, v in CMD_OPCODES.items()}

CMD_CATEGORIES: dict[str, str] = {}
for _name in ('abort', 'return', 'goto', 'if', 'elif', 'endif', 'case',
              'expr', 'while', 'break', 'run', 'lib'):
    CMD_CATEGORIES[_name] = 'control'
for _name in ('set', 'pushbp', 'popbp', 'setsp'):
    CMD_CATEGORIES[_name] = 'data'
for _name in ('menu', 'read', 'check', 'wait'):
    CMD_CATEGORIES[_name] = 'system'
CMD_CATEGORIES['printf'] = 'debug'
for _name in CMD_OPCODES:
    CMD_CATEGORIES.setdefault(_name, 'direction')
del _name

# Commands after which execution never falls through to the next instruction
TERMINATORS = frozenset({'abort', 'return', 'goto', 'endif', 'break'})
# Commands whose operands are a message body
MESSAGE_COMMANDS = frozenset({'msg', 'select'})
# Commands whose expression tail is closed by ANIM_TERMINATOR
ANIM_COMMANDS = frozenset({'anim', 'anim1', 'anim2'})


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------

EXPR_OPCODES: dict[str, int] = {
    'eq':   0, 'ne':   1, 'lt':   2, 'le':   3, 'gt':   4, 'ge':   5,
    'not':  6,
    'add':  7, 'sub':  8, 'mul':  9, 'div': 10, 'mod': 11,
    'and': 12, 'or':  13, 'xor': 14,
    'adda': 15, 'suba': 16, 'mula': 17, 'diva': 18, 'moda': 19,
    'anda': 20, 'ora':  21, 'xora': 22,
    'i16': 23, 'i32': 24, 'addr': 25, 'sp': 26, 'bp': 27,
    'flag': 28, 'var': 29, 'result': 30, 'result2': 31, 'pad': 32,
    'i8': 33,
    'battery': 100, 'money': 101, 'item': 102, 'atc': 103, 'rank': 104,
    'exp': 105, 'level': 106, 'hold': 107, 'map': 108,
    'actor_name': 109, 'item_name': 110, 'time': 111, 'cur_suit': 112,
    'scrap': 113, 'cur_atc': 114, 'use': 115, 'hit': 116,
    'sticker_name': 117,
    'obj': 200, 'rand': 201, 'sin': 202, 'cos': 203, 'array': 204,
}
EXPR_NAMES: dict[int, str] = {v: k for k, v in EXPR_OPCODES.items()}

BINARY_OPS = frozenset({'eq', 'ne', 'lt', 'le', 'gt', 'ge',
                        'add', 'sub', 'mul', 'div', 'mod', 'and', 'or', 'xor'})
ASSIGN_OPS = frozenset({'adda', 'suba', 'mula', 'diva', 'moda',
                        'anda', 'ora', 'xora'})
# Operators whose operands are stored right-to-left
REVERSED_OPS = BINARY_OPS | ASSIGN_OPS
# Accessors that may appear on the left of an assignment
ASSIGNABLE = frozenset({'sp', 'flag', 'var', 'result', 'result2', 'pad',
                        'battery', 'money', 'item', 'atc', 'rank', 'exp',
                        'level', 'time', 'cur_suit', 'scrap', 'cur_atc'})


# ---------------------------------------------------------------------------
# Width-tagged constants
# ---------------------------------------------------------------------------

CONST_8 = EXPR_OPCODES['i8']
CONST_16 = EXPR_OPCODES['i16']
CONST_32 = EXPR_OPCODES['i32']
OP_ADDR = EXPR_OPCODES['addr']

CONST_TAGS: dict[int, int] = {1: CONST_8, 2: CONST_16, 4: CONST_32}
TAG_WIDTHS: dict[int, int] = {v: k for k, v in CONST_TAGS.items()}

# Argument terminator of the anim commands: const8 -1
ANIM_TERMINATOR = bytes([CONST_8, 0xff])

WIDTH_SUFFIXES: dict[str, int] = {'b': 1, 'w': 2, 'd': 4}
SUFFIX_FOR_WIDTH: dict[int, str] = {v: k for k, v in WIDTH_SUFFIXES.items()}

INT_MIN = -(1 << 31)
UINT_MAX = (1 << 32) - 1


def literal_width(value: int) -> int:
    """Narrowest width in bytes that holds *value* as a signed integer."""
    if -0x80 <= value <= 0x7f:
        return 1
    if -0x8000 <= value <= 0x7fff:
        return 2
    return 4


def address_width(value: int) -> int:
    """Narrowest width in bytes that holds *value* as an unsigned integer."""
    if 0 <= value <= 0xff:
        return 1
    if 0 <= value <= 0xffff:
        return 2
    return 4


def fits_width(value: int, width: int) -> bool:
    """True if *value* can be stored in *width* bytes, signed or unsigned."""
    bits = width * 8
    return -(1 << (bits - 1)) <= value < (1 << bits)


def next_width(width: int) -> int:
    return {1: 2, 2: 4}.get(width, 4)


def pack_int(value: int, width: int) -> bytes:
    """Little-endian two's-complement bytes of *value* truncated to *width*."""
    return (value & ((1 << (width * 8)) - 1)).to_bytes(width, 'little')


# ---------------------------------------------------------------------------
# Atoms (type codes)
# ---------------------------------------------------------------------------

ATOMS: dict[str, int] = {
    'time': 200, 'fade': 201, 'wipe': 202, 'unk203': 203, 'anim': 204,
    'dir': 205, 'move': 206, 'pos': 207, 'obj': 208, 'reset': 209,
    'unk210': 210, 'unk211': 211, 'pos_x': 212, 'pos_y': 213, 'pos_z': 214,
    'bone_x': 215, 'bone_y': 216, 'bone_z': 217, 'dir_to': 218,
    'color': 219, 'lead': 220, 'sfx': 221, 'modulate': 222, 'blend': 223,
    'real': 224, 'cam': 225, 'hud': 226, 'unk227': 227, 'distance': 228,
    'unk229': 229, 'unk230': 230, 'unk231': 231, 'unk232': 232,
    'read': 233, 'zblur': 234, 'unk235': 235, 'unk236': 236,
    'unk237': 237, 'unk238': 238, 'letterbox': 239, 'unk240': 240,
    'shake': 241, 'mono': 242, 'unk243': 243, 'scale': 244, 'cue': 245,
    'unk246': 246, 'unk247': 247, 'unk248': 248, 'unk249': 249,
    'unk250': 250, 'unk251': 251, 'unk252': 252,
}
ATOM_NAMES: dict[int, str] = {v: k for k, v in ATOMS.items()}


# ---------------------------------------------------------------------------
# Message commands
# ---------------------------------------------------------------------------

MSG_END = 0
MSG_NEWLINE = 10
MSG_NEWLINE_VT = 11
MSG_FORMAT = 12
MSG_OPCODE_MAX = 24
MAX_MESSAGE_SIZE = 2048

MSG_OPCODES: dict[str, int] = {
    'speed': 1, 'wait': 2, 'anim': 3, 'sfx': 4, 'voice': 5, 'def': 6,
    'format': 12, 'size': 13, 'color': 14, 'rgba': 15, 'prop': 16,
    'icon': 17, 'shake': 18, 'center': 19, 'rotate': 20, 'scale': 21,
    'input': 22, 'ask': 23, 'stay': 24,
}
MSG_NAMES: dict[int, str] = {v: k for k, v in MSG_OPCODES.items()}

# Bytes inside a message body that are text rather than commands
TEXT_CONTROL_BYTES = frozenset({MSG_NEWLINE, MSG_NEWLINE_VT})


def is_text_byte(b: int) -> bool:
    return b > MSG_OPCODE_MAX or b in TEXT_CONTROL_BYTES


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

# Stage event roles that take no key, in table order
STAGE_EVENTS = ('prologue', 'startup', 'dead', 'pose', 'time_cycle', 'time_up')
# Roles keyed by an integer (object id / library index)
KEYED_ROLES = ('interact', 'lib')
ENTRY_ROLES = STAGE_EVENTS + KEYED_ROLES
