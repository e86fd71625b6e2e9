"""
labels.py – Per-script symbol table.

Resolution happens in two phases.  While a script is being built every
declaration is recorded with ``declare`` (a second declaration of the same
name fails immediately) and every use with ``reference``.  Once the whole
script has been read, ``resolve_all`` checks that each reference names a
declared label.  Forward references are therefore legal.

An ``else *label`` operand is recorded exactly like a plain reference.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional

from .errors import ResolutionError, Span


@dataclass(frozen=True)
class LabelBinding:
    block: int                        # index into Script.blocks
    offset: int = 0                   # item index inside the block


class LabelTable:

    def __init__(self) -> None:
        self._bindings: dict[str, LabelBinding] = {}
        self._refs: list[tuple[str, Optional[Span]]] = []

    def __contains__(self, name: str) -> bool:
        return name in self._bindings

    def __iter__(self) -> Iterator[str]:
        return iter(self._bindings)

    def __len__(self) -> int:
        return len(self._bindings)

    # ------------------------------------------------------------------
    # Phase one
    # ------------------------------------------------------------------

    def declare(self, name: str, block: int, span: Optional[Span] = None,
                offset: int = 0) -> LabelBinding:
        if name in self._bindings:
            raise ResolutionError(ResolutionError.DUPLICATE_LABEL,
                                  f"label is defined more than once: '{name}'",
                                  span, label=name)
        binding = LabelBinding(block, offset)
        self._bindings[name] = binding
        return binding

    def reference(self, name: str, span: Optional[Span] = None) -> None:
        self._refs.append((name, span))

    # ------------------------------------------------------------------
    # Phase two
    # ------------------------------------------------------------------

    def resolve_all(self) -> None:
        """Fail on the first reference (in source order) with no declaration."""
        for name, span in self._refs:
            if name not in self._bindings:
                raise ResolutionError(ResolutionError.UNDEFINED_LABEL,
                                      f"undefined label: '{name}'", span, label=name)

    def resolve(self, name: str) -> LabelBinding:
        try:
            return self._bindings[name]
        except KeyError:
            raise ResolutionError(ResolutionError.UNDEFINED_LABEL,
                                  f"undefined label: '{name}'", label=name) from None
