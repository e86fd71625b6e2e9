"""
evtasm – Assembler and disassembler for event-script bytecode.

Public API re-exports:

  from evtasm.parser   import parse
  from evtasm.assemble import assemble, compile_script, assemble_script, layout, assemble_file
  from evtasm.disasm   import disassemble, disassemble_script, disassemble_file
  from evtasm.writer   import write_script
  from evtasm.program  import Script, Block, Instruction, Data, EntryPoint, Target, ...
  from evtasm.errors   import EvtasmError, LexError, ParseError, ResolutionError,
                              EncodeError, DecodeError
"""

from .errors   import (
    Span,
    EvtasmError,
    LexError,
    ParseError,
    ResolutionError,
    EncodeError,
    DecodeError,
)
from .program  import (
    Int,
    AtomRef,
    Text,
    LabelRef,
    Offset,
    Expr,
    MsgCommand,
    Message,
    Instruction,
    Data,
    Block,
    EntryPoint,
    Target,
    Script,
)
from .lexer    import tokenize
from .parser   import parse
from .assemble import (
    Assembled,
    Layout,
    assemble,
    compile_script,
    assemble_script,
    layout,
    assemble_file,
)
from .disasm   import disassemble, disassemble_script, disassemble_file
from .writer   import write_script

__all__ = [
    "Span",
    "EvtasmError", "LexError", "ParseError", "ResolutionError",
    "EncodeError", "DecodeError",
    "Int", "AtomRef", "Text", "LabelRef", "Offset", "Expr",
    "MsgCommand", "Message",
    "Instruction", "Data", "Block", "EntryPoint", "Target", "Script",
    "tokenize",
    "parse",
    "Assembled",
    "Layout",
    "assemble",
    "compile_script",
    "assemble_script",
    "layout",
    "assemble_file",
    "disassemble",
    "disassemble_script",
    "disassemble_file",
    "write_script",
]
