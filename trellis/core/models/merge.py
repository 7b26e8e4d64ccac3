"""
Diff and merge result types.

These are plain value types produced by the text diff engine and the
three-way merge engine. They are never persisted, so they are
dataclasses rather than Pydantic models.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import NamedTuple


class Hunk(NamedTuple):
    """A maximal run of one relation between sequences A and B.

    Mirrors ``difflib`` opcodes: ``a[a_lo:a_hi]`` relates to
    ``b[b_lo:b_hi]`` by ``tag`` (equal, insert, delete, replace).
    """

    tag: str
    a_lo: int
    a_hi: int
    b_lo: int
    b_hi: int

    @property
    def changed(self) -> bool:
        return self.tag != "equal"


@dataclass
class ConflictRegion:
    """A base-anchored span that local and upstream changed differently.

    Attributes:
        base_lo:     First base line of the span (0-based).
        base_hi:     End of the span in base (exclusive).
        base:        Base lines the two sides diverged from.
        local:       The developer's version of the span.
        upstream:    The freshly generated version of the span.
        output_line: Index of the opening marker in the merged output.
    """

    base_lo: int
    base_hi: int
    base: list[str] = field(default_factory=list)
    local: list[str] = field(default_factory=list)
    upstream: list[str] = field(default_factory=list)
    output_line: int = 0

    def to_dict(self) -> dict:
        return {
            "base_lines": [self.base_lo + 1, self.base_hi],
            "output_line": self.output_line + 1,
            "base": "".join(self.base),
            "local": "".join(self.local),
            "upstream": "".join(self.upstream),
        }


@dataclass
class MergeResult:
    """Outcome of a three-way merge.

    A result with no conflicts is *clean* and ``lines`` is the merged
    file. Otherwise ``lines`` contains marker blocks and ``conflicts``
    lists each region, in output order.
    """

    lines: list[str] = field(default_factory=list)
    conflicts: list[ConflictRegion] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.conflicts

    @property
    def text(self) -> str:
        return "".join(self.lines)
