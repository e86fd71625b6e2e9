"""
lexer.py – Tokenizer for event-script assembly text.

Entry point: ``tokenize(text)`` (a generator; tokens are produced on demand)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional

from .errors import LexError, Span
from .opcodes import INT_MIN, UINT_MAX, WIDTH_SUFFIXES


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

IDENT = 'identifier'
DIRECTIVE = 'directive'
ATOM = 'atom'
INT = 'integer'
STRING = 'string'
LABEL = 'label'
OFFSET = 'offset'
COMMA = ','
LPAREN = '('
RPAREN = ')'
COLON = ':'
ELSE = 'else'
NEWLINE = 'newline'
EOF = 'end of input'

_PUNCT = {',': COMMA, '(': LPAREN, ')': RPAREN, ':': COLON}

_ESCAPES = {'\\': 0x5c, '"': 0x22, 'n': 0x0a, 't': 0x09, 'r': 0x0d, 'v': 0x0b}

# Characters outside ASCII are stored in the game's Windows-1252 code page.
TEXT_ENCODING = 'cp1252'


@dataclass(frozen=True)
class Token:
    kind: str
    value: object = None
    start: int = 0
    end: int = 0
    width: Optional[int] = None       # forced width from a .b/.w/.d suffix

    @property
    def span(self) -> Span:
        return Span(self.start, self.end)

    def __str__(self) -> str:
        if self.kind in (IDENT, DIRECTIVE, ATOM, LABEL):
            prefix = {DIRECTIVE: '.', ATOM: '@', LABEL: '*'}.get(self.kind, '')
            return f"'{prefix}{self.value}'"
        if self.kind in (INT, OFFSET):
            return f"'{self.value}'"
        if self.kind == STRING:
            return 'a string'
        return f"'{self.kind}'" if len(self.kind) == 1 else self.kind


def _is_ident_start(ch: str) -> bool:
    return ch.isascii() and (ch.isalpha() or ch == '_')


def _is_ident_char(ch: str) -> bool:
    return ch.isascii() and (ch.isalnum() or ch == '_')


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------

class Lexer:
    """Character scanner; iterate it to get tokens, ending with one EOF."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0
        self.end = len(text)

    def __iter__(self) -> Iterator[Token]:
        while True:
            tok = self.next_token()
            yield tok
            if tok.kind == EOF:
                return

    def _peek(self, ahead: int = 0) -> str:
        i = self.pos + ahead
        return self.text[i] if i < self.end else ''

    def _skip_space(self) -> None:
        while self.pos < self.end:
            ch = self.text[self.pos]
            if ch in ' \t\r\f':
                self.pos += 1
            elif ch == ';':
                nl = self.text.find('\n', self.pos)
                self.pos = self.end if nl < 0 else nl
            elif ch == '/' and self._peek(1) == '*':
                close = self.text.find('*/', self.pos + 2)
                if close < 0:
                    raise LexError(LexError.UNTERMINATED_BLOCK_COMMENT, self.pos,
                                   "unterminated block comment")
                self.pos = close + 2
            else:
                return

    def next_token(self) -> Token:
        self._skip_space()
        start = self.pos
        if start >= self.end:
            return Token(EOF, None, start, start)
        ch = self.text[start]

        if ch == '\n':
            self.pos += 1
            return Token(NEWLINE, None, start, self.pos)
        if ch in _PUNCT:
            self.pos += 1
            return Token(_PUNCT[ch], None, start, self.pos)
        if ch == '"':
            return self._read_string()
        if ch == '-' or ch.isdigit():
            value, width = self._read_number()
            return Token(INT, value, start, self.pos, width)
        if ch in '.@':
            if not _is_ident_start(self._peek(1)):
                raise LexError(LexError.INVALID_CHARACTER, start, f"invalid token {ch!r}")
            self.pos += 1
            name = self._read_ident()
            return Token(DIRECTIVE if ch == '.' else ATOM, name, start, self.pos)
        if ch == '*':
            self.pos += 1
            nxt = self._peek()
            if nxt.isdigit():
                value, width = self._read_number()
                if value < 0:
                    raise LexError(LexError.INVALID_CHARACTER, start,
                                   "offsets cannot be negative")
                return Token(OFFSET, value, start, self.pos, width)
            if not _is_ident_start(nxt):
                raise LexError(LexError.INVALID_CHARACTER, start, "invalid token '*'")
            name = self._read_ident()
            width = self._read_suffix()
            return Token(LABEL, name, start, self.pos, width)
        if _is_ident_start(ch):
            name = self._read_ident()
            if name == 'else':
                return Token(ELSE, None, start, self.pos)
            return Token(IDENT, name, start, self.pos)
        raise LexError(LexError.INVALID_CHARACTER, start, f"invalid token {ch!r}")

    # ------------------------------------------------------------------
    # Token bodies
    # ------------------------------------------------------------------

    def _read_ident(self) -> str:
        start = self.pos
        while self.pos < self.end and _is_ident_char(self.text[self.pos]):
            self.pos += 1
        return self.text[start: self.pos]

    def _read_suffix(self) -> Optional[int]:
        """Consume a ``.b``/``.w``/``.d`` width suffix if one follows."""
        if (self._peek() == '.' and self._peek(1) in WIDTH_SUFFIXES
                and not _is_ident_char(self._peek(2))):
            width = WIDTH_SUFFIXES[self._peek(1)]
            self.pos += 2
            return width
        return None

    def _read_number(self) -> tuple[int, Optional[int]]:
        start = self.pos
        negative = self._peek() == '-'
        if negative:
            self.pos += 1
        if self._peek() == '0' and self._peek(1) in 'xX' and self._peek(1):
            self.pos += 2
            digits_start = self.pos
            while self.pos < self.end and self.text[self.pos] in '0123456789abcdefABCDEF':
                self.pos += 1
            radix = 16
        else:
            digits_start = self.pos
            while self.pos < self.end and self.text[self.pos].isdigit():
                self.pos += 1
            radix = 10
        digits = self.text[digits_start: self.pos]
        if not digits:
            raise LexError(LexError.INVALID_CHARACTER, start, "invalid token")
        if _is_ident_char(self._peek()):
            raise LexError(LexError.INVALID_CHARACTER, self.pos,
                           f"invalid character {self._peek()!r} in integer literal")
        value = int(digits, radix)
        if negative:
            value = -value
        if not INT_MIN <= value <= UINT_MAX:
            raise LexError(LexError.INTEGER_OUT_OF_RANGE, start,
                           "integer literal out of range")
        return value, self._read_suffix()

    def _read_string(self) -> Token:
        start = self.pos
        self.pos += 1
        out = bytearray()
        while True:
            if self.pos >= self.end or self.text[self.pos] == '\n':
                raise LexError(LexError.UNTERMINATED_STRING, start,
                               "unterminated string literal")
            ch = self.text[self.pos]
            if ch == '"':
                self.pos += 1
                return Token(STRING, bytes(out), start, self.pos)
            if ch == '\\':
                out.append(self._read_escape())
                continue
            try:
                out += ch.encode(TEXT_ENCODING)
            except UnicodeEncodeError:
                raise LexError(LexError.INVALID_CHARACTER, self.pos,
                               f"character {ch!r} cannot be encoded") from None
            self.pos += 1

    def _read_escape(self) -> int:
        at = self.pos
        code = self._peek(1)
        if code in _ESCAPES:
            self.pos += 2
            return _ESCAPES[code]
        if code == 'x':
            hex_digits = self.text[self.pos + 2: self.pos + 4]
            if len(hex_digits) == 2 and all(c in '0123456789abcdefABCDEF' for c in hex_digits):
                self.pos += 4
                return int(hex_digits, 16)
        raise LexError(LexError.INVALID_CHARACTER, at, "invalid escape sequence")


def tokenize(text: str) -> Iterator[Token]:
    """Yield the tokens of *text*; the last token is always EOF."""
    return iter(Lexer(text))
