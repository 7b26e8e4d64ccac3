"""
Text diff engine — line-level shortest edit scripts.

``diff(a, b)`` returns hunks in ``difflib`` opcode form covering both
sequences end to end. The common prefix and suffix are trimmed first,
so ambiguous matching runs anchor at the start; the remainder is solved
with Myers' O(ND) algorithm over the lines both sides share. Output
is deterministic, and equal inputs always give a single ``equal`` hunk.

Pure functions, no I/O.
"""

from __future__ import annotations

import difflib
from collections.abc import Sequence

from trellis.core.models.merge import Hunk


def split_lines(text: str) -> list[str]:
    """Split text into lines that keep their ``\\n`` terminator.

    Only ``\\n`` separates lines (``\\r\\n`` stays intact inside a line).
    ``"".join(split_lines(t)) == t`` for every string.
    """
    if not text:
        return []
    parts = text.split("\n")
    lines = [p + "\n" for p in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def join_lines(lines: Sequence[str]) -> str:
    return "".join(lines)


def diff(a: Sequence[str], b: Sequence[str]) -> list[Hunk]:
    """Compute a shortest edit script from ``a`` to ``b``.

    Args:
        a: Original lines.
        b: New lines.

    Returns:
        Ordered, non-overlapping hunks. Concatenating the A-side spans
        reconstructs ``a`` and the B-side spans reconstruct ``b``.
    """
    n, m = len(a), len(b)

    prefix = 0
    while prefix < n and prefix < m and a[prefix] == b[prefix]:
        prefix += 1

    suffix = 0
    while (
        suffix < n - prefix
        and suffix < m - prefix
        and a[n - 1 - suffix] == b[m - 1 - suffix]
    ):
        suffix += 1

    ops: list[tuple[str, int, int]] = []  # (op, a_index, b_index) per line
    for i in range(prefix):
        ops.append(("=", i, i))

    mid_a = a[prefix:n - suffix]
    mid_b = b[prefix:m - suffix]
    for op, i, j in _myers(mid_a, mid_b):
        ops.append((op, i + prefix, j + prefix))

    for k in range(suffix):
        ops.append(("=", n - suffix + k, m - suffix + k))

    return _to_hunks(ops, n, m)


def _myers(a: Sequence[str], b: Sequence[str]) -> list[tuple[str, int, int]]:
    """Shortest edit script as per-line operations.

    Lines are interned to integers first so comparisons are cheap. Lines
    that occur on only one side can never be matched, so they are set
    aside and Myers runs on the lines both sides share.
    """
    ids: dict[str, int] = {}
    ia = [ids.setdefault(line, len(ids)) for line in a]
    ib = [ids.setdefault(line, len(ids)) for line in b]
    shared = set(ia) & set(ib)
    keep_a = [i for i, t in enumerate(ia) if t in shared]
    keep_b = [j for j, t in enumerate(ib) if t in shared]
    matches = _match_pairs([ia[i] for i in keep_a], [ib[j] for j in keep_b])

    ops: list[tuple[str, int, int]] = []
    i = j = 0
    for ka, kb in matches:
        x, y = keep_a[ka], keep_b[kb]
        ops += [("-", p, j) for p in range(i, x)]
        ops += [("+", x, q) for q in range(j, y)]
        ops.append(("=", x, y))
        i, j = x + 1, y + 1
    ops += [("-", p, j) for p in range(i, len(a))]
    ops += [("+", len(a), q) for q in range(j, len(b))]
    return ops


def _match_pairs(a: Sequence[int], b: Sequence[int]) -> list[tuple[int, int]]:
    """Myers' greedy algorithm; returns the matched ``(i, j)`` pairs in order.

    Each step keeps only the diagonals it can reach, so the trace grows
    with the square of the edit distance rather than with its product
    with the input length.
    """
    n, m = len(a), len(b)
    if n == 0 or m == 0:
        return []

    max_d = n + m
    offset = max_d + 1
    v = [0] * (2 * max_d + 3)
    trace: list[list[int]] = []

    for d in range(max_d + 1):
        # Diagonals -d-1 .. d+1 as they stood after step d - 1.
        trace.append(v[offset - d - 1:offset + d + 2])
        for k in range(-d, d + 1, 2):
            if k == -d or (k != d and v[offset + k - 1] < v[offset + k + 1]):
                x = v[offset + k + 1]
            else:
                x = v[offset + k - 1] + 1
            y = x - k
            while x < n and y < m and a[x] == b[y]:
                x += 1
                y += 1
            v[offset + k] = x
            if x >= n and y >= m:
                return _backtrack(trace, n, m)

    raise AssertionError("unreachable: edit distance exceeds n + m")


def _backtrack(trace: list[list[int]], n: int, m: int) -> list[tuple[int, int]]:
    x, y = n, m
    pairs: list[tuple[int, int]] = []

    for d in range(len(trace) - 1, -1, -1):
        w = trace[d]  # diagonal k is at w[k + d + 1]
        k = x - y
        if k == -d or (k != d and w[k + d] < w[k + d + 2]):
            prev_k = k + 1
        else:
            prev_k = k - 1
        prev_x = w[prev_k + d + 1]
        prev_y = prev_x - prev_k

        while x > prev_x and y > prev_y:
            x -= 1
            y -= 1
            pairs.append((x, y))

        if d > 0:
            if x == prev_x:
                y -= 1
            else:
                x -= 1

    pairs.reverse()
    return pairs


def _to_hunks(ops: list[tuple[str, int, int]], n: int, m: int) -> list[Hunk]:
    """Fold per-line operations into maximal hunks.

    Adjacent deletes and inserts merge into one ``replace`` hunk.
    """
    hunks: list[Hunk] = []
    i = j = 0
    idx = 0
    while idx < len(ops):
        if ops[idx][0] == "=":
            start_i, start_j = i, j
            while idx < len(ops) and ops[idx][0] == "=":
                i += 1
                j += 1
                idx += 1
            hunks.append(Hunk("equal", start_i, i, start_j, j))
            continue

        start_i, start_j = i, j
        while idx < len(ops) and ops[idx][0] != "=":
            if ops[idx][0] == "-":
                i += 1
            else:
                j += 1
            idx += 1
        if i > start_i and j > start_j:
            tag = "replace"
        elif i > start_i:
            tag = "delete"
        else:
            tag = "insert"
        hunks.append(Hunk(tag, start_i, i, start_j, j))

    assert i == n and j == m, "edit script must cover both sequences"
    return hunks


def apply_hunks(a: Sequence[str], b: Sequence[str], hunks: Sequence[Hunk]) -> list[str]:
    """Rebuild ``b`` from ``a`` and an edit script (B-side of every hunk)."""
    out: list[str] = []
    for h in hunks:
        if h.tag == "equal":
            out.extend(a[h.a_lo:h.a_hi])
        else:
            out.extend(b[h.b_lo:h.b_hi])
    return out


def unified_diff(old: str, new: str, path: str, limit: int = 50) -> dict:
    """Human-readable preview of a content change.

    Returns:
        {"lines_added": int, "lines_removed": int, "diff": str}
    """
    diff_lines = list(difflib.unified_diff(
        old.splitlines(),
        new.splitlines(),
        fromfile=f"a/{path}",
        tofile=f"b/{path}",
        lineterm="",
    ))
    added = sum(1 for l in diff_lines if l.startswith("+") and not l.startswith("+++"))
    removed = sum(1 for l in diff_lines if l.startswith("-") and not l.startswith("---"))
    diff_text = "\n".join(diff_lines[:limit])
    if len(diff_lines) > limit:
        diff_text += f"\n... ({len(diff_lines) - limit} more lines)"
    return {"lines_added": added, "lines_removed": removed, "diff": diff_text}
