"""
Three-way merge engine — reconcile regenerated output with local edits.

``merge(base, upstream, local)`` diffs base against each side and walks
the two edit scripts together over base positions:

    - regions neither side touched keep the base text
    - regions only upstream changed take upstream (template evolution)
    - regions only local changed take local (developer edits)
    - regions both changed identically take that text (convergent)
    - regions both changed differently become a conflict block

Two changes compete when their base ranges overlap, or when both are
insertions at the same base position. Changes that merely touch at a
boundary apply independently.

Pure functions, no I/O.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from trellis.core.models.merge import ConflictRegion, MergeResult
from trellis.core.services.text_diff import diff, split_lines

# ── Conflict markers ────────────────────────────────────────────────

MARKER_LOCAL = "<<<<<<< local"
MARKER_BASE = "||||||| base"
MARKER_SEPARATOR = "======="
MARKER_UPSTREAM = ">>>>>>> upstream"

UPSTREAM, LOCAL = 0, 1


@dataclass(frozen=True)
class _Change:
    """One non-equal hunk of a side's edit script, keyed by side."""

    side: int
    base_lo: int
    base_hi: int
    lo: int
    hi: int


def _changes(base: Sequence[str], other: Sequence[str], side: int) -> list[_Change]:
    return [
        _Change(side, h.a_lo, h.a_hi, h.b_lo, h.b_hi)
        for h in diff(base, other)
        if h.changed
    ]


def _competes(lo: int, hi: int, change: _Change) -> bool:
    """Whether ``change`` competes with the base span ``[lo, hi)``."""
    if change.base_lo < hi and lo < change.base_hi:
        return True
    # Two insertions at the same point have no defined order.
    return lo == hi == change.base_lo == change.base_hi


def _side_text(
    base: Sequence[str],
    side_lines: Sequence[str],
    changes: list[_Change],
    lo: int,
    hi: int,
) -> list[str]:
    """One side's version of ``base[lo:hi]`` given its changes in the span."""
    out: list[str] = []
    pos = lo
    for c in changes:
        out.extend(base[pos:c.base_lo])
        out.extend(side_lines[c.lo:c.hi])
        pos = c.base_hi
    out.extend(base[pos:hi])
    return out


def _terminated(lines: list[str]) -> list[str]:
    """Ensure the block ends with a newline so a marker can follow it."""
    if lines and not lines[-1].endswith("\n"):
        return lines[:-1] + [lines[-1] + "\n"]
    return lines


def merge(
    base: Sequence[str],
    upstream: Sequence[str],
    local: Sequence[str],
) -> MergeResult:
    """Merge upstream and local changes made against a common base.

    Args:
        base: Lines the generator produced on the previous pass.
        upstream: Lines the generator produces now.
        local: Lines currently on disk, possibly hand-edited.

    Returns:
        MergeResult. It is clean when no region conflicts; otherwise the
        lines contain marker blocks and ``conflicts`` lists each region.
    """
    changes = sorted(
        _changes(base, upstream, UPSTREAM) + _changes(base, local, LOCAL),
        key=lambda c: (c.base_lo, c.base_hi, c.side),
    )

    out: list[str] = []
    conflicts: list[ConflictRegion] = []
    pos = 0
    i = 0

    while i < len(changes):
        group = [changes[i]]
        lo, hi = changes[i].base_lo, changes[i].base_hi
        i += 1
        while i < len(changes) and _competes(lo, hi, changes[i]):
            group.append(changes[i])
            hi = max(hi, changes[i].base_hi)
            i += 1

        out.extend(base[pos:lo])
        pos = hi

        by_side = {
            side: [c for c in group if c.side == side] for side in (UPSTREAM, LOCAL)
        }
        if not by_side[LOCAL]:
            out.extend(_side_text(base, upstream, by_side[UPSTREAM], lo, hi))
            continue
        if not by_side[UPSTREAM]:
            out.extend(_side_text(base, local, by_side[LOCAL], lo, hi))
            continue

        upstream_text = _side_text(base, upstream, by_side[UPSTREAM], lo, hi)
        local_text = _side_text(base, local, by_side[LOCAL], lo, hi)
        if upstream_text == local_text:
            out.extend(upstream_text)
            continue

        region = ConflictRegion(
            base_lo=lo,
            base_hi=hi,
            base=list(base[lo:hi]),
            local=local_text,
            upstream=upstream_text,
            output_line=len(out),
        )
        conflicts.append(region)
        out.append(MARKER_LOCAL + "\n")
        out.extend(_terminated(local_text))
        out.append(MARKER_BASE + "\n")
        out.extend(_terminated(region.base))
        out.append(MARKER_SEPARATOR + "\n")
        out.extend(_terminated(upstream_text))
        out.append(MARKER_UPSTREAM + "\n")

    out.extend(base[pos:])
    return MergeResult(lines=out, conflicts=conflicts)


def merge_text(base: str, upstream: str, local: str) -> MergeResult:
    """String-level ``merge``; lines keep their terminators."""
    return merge(split_lines(base), split_lines(upstream), split_lines(local))


def has_conflict_markers(text: str) -> bool:
    """Whether a file still contains unresolved merge markers."""
    lines = set(split_lines(text))
    return (MARKER_LOCAL + "\n") in lines and (MARKER_UPSTREAM + "\n") in lines
