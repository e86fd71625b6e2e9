"""
errors.py – Error taxonomy shared by every stage of the toolchain.

Text-mode errors carry a ``Span`` of character offsets into the source;
binary-mode errors carry the byte ``offset`` into the bytecode buffer.  All of
them are ``ValueError`` subclasses so callers that only care about "bad
input" can catch that.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Span:
    start: int
    end: int

    def join(self, other: Optional["Span"]) -> "Span":
        if other is None:
            return self
        return Span(min(self.start, other.start), max(self.end, other.end))

    def __str__(self) -> str:
        return f"{self.start}..{self.end}"


def line_col(text: str, offset: int) -> tuple[int, int]:
    """Return the 1-based (line, column) of *offset* in *text*."""
    offset = max(0, min(offset, len(text)))
    line = text.count("\n", 0, offset) + 1
    col = offset - (text.rfind("\n", 0, offset) + 1) + 1
    return line, col


class EvtasmError(ValueError):
    """Base class for all toolchain errors."""

    kind = "error"

    def __init__(self, reason: str, message: str, *,
                 span: Optional[Span] = None,
                 offset: Optional[int] = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.span = span
        self.offset = offset

    def location(self, text: Optional[str] = None) -> str:
        if self.span is not None:
            if text is not None:
                line, col = line_col(text, self.span.start)
                return f"line {line}, column {col}"
            return f"chars {self.span}"
        if self.offset is not None:
            return f"offset 0x{self.offset:x}"
        return ""

    def describe(self, text: Optional[str] = None) -> str:
        where = self.location(text)
        head = f"{self.kind}: {self.message}"
        return f"{head} ({where})" if where else head

    def __str__(self) -> str:
        return self.describe()


class LexError(EvtasmError):
    kind = "lex error"

    UNTERMINATED_STRING = "UnterminatedString"
    UNTERMINATED_BLOCK_COMMENT = "UnterminatedBlockComment"
    INVALID_CHARACTER = "InvalidCharacter"
    INTEGER_OUT_OF_RANGE = "IntegerOutOfRange"

    def __init__(self, reason: str, offset: int, message: str) -> None:
        super().__init__(reason, message, span=Span(offset, offset + 1))


class ParseError(EvtasmError):
    kind = "parse error"

    SYNTAX = "Syntax"
    UNKNOWN_COMMAND = "UnknownCommand"
    UNKNOWN_DIRECTIVE = "UnknownDirective"
    INVALID_OPERAND = "InvalidOperand"

    def __init__(self, reason: str, message: str, span: Optional[Span] = None, *,
                 opcode: Optional[str] = None,
                 operand_index: Optional[int] = None) -> None:
        super().__init__(reason, message, span=span)
        self.opcode = opcode
        self.operand_index = operand_index

    @classmethod
    def invalid_operand(cls, opcode: str, index: int, span: Optional[Span],
                        detail: str) -> "ParseError":
        return cls(cls.INVALID_OPERAND,
                   f"invalid operand {index + 1} for '{opcode}': {detail}",
                   span, opcode=opcode, operand_index=index)


class ResolutionError(EvtasmError):
    kind = "resolution error"

    UNDEFINED_LABEL = "UndefinedLabel"
    DUPLICATE_LABEL = "DuplicateLabel"
    MISSING_TARGET = "MissingTarget"
    DUPLICATE_TARGET = "DuplicateTarget"
    DUPLICATE_ENTRY_POINT = "DuplicateEntryPoint"
    SCOPE_MISMATCH = "ScopeMismatch"

    def __init__(self, reason: str, message: str, span: Optional[Span] = None, *,
                 label: Optional[str] = None) -> None:
        super().__init__(reason, message, span=span)
        self.label = label


class EncodeError(EvtasmError):
    kind = "encode error"

    OUT_OF_RANGE = "OutOfRange"
    UNRESOLVED_LABEL = "UnresolvedLabel"
    NO_FIXED_POINT = "NoFixedPoint"
    INTERNAL = "Internal"

    def __init__(self, reason: str, message: str, span: Optional[Span] = None) -> None:
        super().__init__(reason, message, span=span)

    @property
    def internal(self) -> bool:
        """True when the error is a toolchain defect rather than bad input."""
        return self.reason == self.INTERNAL


class DecodeError(EvtasmError):
    kind = "decode error"

    UNKNOWN_OPCODE = "UnknownOpcode"
    TRUNCATED_OPERAND = "TruncatedOperand"
    OFFSET_OUT_OF_RANGE = "OffsetOutOfRange"
    MISALIGNED_TARGET = "MisalignedTarget"
    UNEXPECTED_VALUE = "UnexpectedValue"

    def __init__(self, reason: str, offset: int, message: str) -> None:
        super().__init__(reason, message, offset=offset)
