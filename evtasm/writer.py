"""
writer.py – Script → canonical assembly text.

The output parses back to an equal Script: widths are printed as suffixes
only where they were pinned, else-targets keep their ``else`` keyword and
message bodies are continued on indented lines.

Entry point: ``write_script(script)``
"""

from __future__ import annotations

from .lexer import TEXT_ENCODING
from .opcodes import SUFFIX_FOR_WIDTH, TERMINATORS
from .program import (
    AtomRef,
    Block,
    Data,
    Expr,
    Instruction,
    Int,
    LabelRef,
    Message,
    MsgCommand,
    Offset,
    Script,
    Text,
)

# Message commands whose raw fields read better in hex, with their widths
_HEX_MSG_COMMANDS = {'rgba': (4,)}

_ESCAPES = {0x5c: '\\\\', 0x22: '\\"', 0x0a: '\\n', 0x09: '\\t', 0x0d: '\\r', 0x0b: '\\v'}


def _suffix(width) -> str:
    return f".{SUFFIX_FOR_WIDTH[width]}" if width else ''


def quote(data: bytes) -> str:
    """Return *data* as a double-quoted string literal."""
    out = ['"']
    for b in data:
        if b in _ESCAPES:
            out.append(_ESCAPES[b])
        elif 0x20 <= b < 0x7f:
            out.append(chr(b))
        elif b >= 0xa0:
            out.append(bytes([b]).decode(TEXT_ENCODING))
        else:
            out.append(f"\\x{b:02x}")
    out.append('"')
    return ''.join(out)


def format_operand(operand) -> str:
    if isinstance(operand, Int):
        return f"{operand.value}{_suffix(operand.width)}"
    if isinstance(operand, AtomRef):
        return f"@{operand.name}"
    if isinstance(operand, Text):
        return quote(operand.data)
    if isinstance(operand, LabelRef):
        text = f"*{operand.name}{_suffix(operand.width)}"
        return f"else {text}" if operand.is_else else text
    if isinstance(operand, Offset):
        text = f"*0x{operand.value:x}{_suffix(operand.width)}"
        return f"else {text}" if operand.is_else else text
    if isinstance(operand, Expr):
        if not operand.args:
            return operand.op
        return f"{operand.op}({', '.join(format_operand(a) for a in operand.args)})"
    if isinstance(operand, Message):
        return ',\n\t\t'.join(_format_msg(cmd) for cmd in operand.commands)
    raise TypeError(f"cannot format {type(operand).__name__}")


def _format_msg(cmd: MsgCommand) -> str:
    if cmd.op == 'text':
        return quote(cmd.args[0].data)
    if not cmd.args:
        return cmd.op
    if cmd.op in _HEX_MSG_COMMANDS:
        args = ', '.join(f"0x{a.value:0{2 * width}x}" if a.value >= 0 else format_operand(a)
                         for a, width in zip(cmd.args, _HEX_MSG_COMMANDS[cmd.op]))
    else:
        args = ', '.join(format_operand(a) for a in cmd.args)
    return f"{cmd.op}({args})"


def format_item(item) -> str:
    if isinstance(item, Instruction):
        if not item.operands or item.operands == [Message()]:
            return f"\t{item.opcode}"
        return f"\t{item.opcode}\t{', '.join(format_operand(o) for o in item.operands)}"
    if isinstance(item, Data):
        return f"\t.{item.directive}\t{', '.join(format_operand(v) for v in item.values)}"
    raise TypeError(f"cannot format {type(item).__name__}")


def _falls_through(block: Block) -> bool:
    if not block.items:
        return True
    last = block.items[-1]
    return isinstance(last, Instruction) and last.opcode not in TERMINATORS


def write_script(script: Script) -> str:
    """Render *script* as assembly text.

    Parameters
    ----------
    script:
        The Script to print.

    Returns
    -------
    Text that ``parse`` turns back into an equal Script.
    """
    lines: list[str] = []
    if script.target.is_globals:
        lines.append('.globals')
    else:
        name = script.target.name.encode(TEXT_ENCODING, errors='replace')
        lines.append(f".stage {quote(name)}")
    for entry, label in script.entry_points().items():
        if entry.key is None:
            lines.append(f".{entry.role}\t*{label}")
        else:
            lines.append(f".{entry.role}\t{entry.key}, *{label}")

    previous = None
    for block in script.blocks:
        if not block.synthetic:
            if previous is None or not _falls_through(previous):
                lines.append('')
            lines.append(f"{block.label}:")
        elif previous is None:
            lines.append('')
        lines.extend(format_item(item) for item in block.items)
        previous = block
    return '\n'.join(lines) + '\n'
