"""Diff engine — unified diffs between backups, with a raw-content fallback."""

from __future__ import annotations

from typing import Iterator, Sequence

from confighistory.models.backup_record import Snapshot
from confighistory.models.diff_result import BackupDiff, ContentComparison, UnifiedDiff

DEFAULT_CONTEXT = 3
DEFAULT_MAX_BYTES = 1024 * 1024
NO_NEWLINE_MARKER = "\\ No newline at end of file\n"

# Opcode: (tag, i1, i2, j1, j2) over line indices, tag in equal/delete/insert
Opcode = tuple[str, int, int, int, int]


def decode_text(content: bytes) -> str | None:
    """Content as text, or None if it is binary (NUL bytes or invalid UTF-8)."""
    if b"\x00" in content:
        return None
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError:
        return None


def _shortest_edit(a: Sequence[str], b: Sequence[str]) -> list[tuple[str, int, int]]:
    """
    Myers O(ND) shortest edit script between two line lists.

    Returns per-line edits ``(tag, a_index, b_index)`` in order. Within a
    change block deletions come before insertions.
    """
    n, m = len(a), len(b)
    if n == 0 and m == 0:
        return []
    offset = n + m + 1
    v = [0] * (2 * offset + 1)
    trace: list[list[int]] = []

    for d in range(n + m + 1):
        trace.append(v[:])
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
                return _backtrack(trace, n, m, offset)
    raise AssertionError("edit script not found")


def _backtrack(trace: list[list[int]], n: int, m: int, offset: int) -> list[tuple[str, int, int]]:
    edits: list[tuple[str, int, int]] = []
    x, y = n, m
    for d in range(len(trace) - 1, -1, -1):
        v = trace[d]
        k = x - y
        if k == -d or (k != d and v[offset + k - 1] < v[offset + k + 1]):
            prev_k = k + 1
        else:
            prev_k = k - 1
        prev_x = v[offset + prev_k]
        prev_y = prev_x - prev_k
        while x > prev_x and y > prev_y:
            edits.append(("equal", x - 1, y - 1))
            x -= 1
            y -= 1
        if d > 0:
            if x == prev_x:
                edits.append(("insert", x, y - 1))
            else:
                edits.append(("delete", x - 1, y))
        x, y = prev_x, prev_y
    edits.reverse()
    return edits


def line_opcodes(a: Sequence[str], b: Sequence[str]) -> list[Opcode]:
    """Grouped opcodes of a minimal line edit script from *a* to *b*."""
    # Common prefix/suffix never take part in the edit script
    prefix = 0
    while prefix < len(a) and prefix < len(b) and a[prefix] == b[prefix]:
        prefix += 1
    suffix = 0
    while (
        suffix < len(a) - prefix
        and suffix < len(b) - prefix
        and a[len(a) - 1 - suffix] == b[len(b) - 1 - suffix]
    ):
        suffix += 1

    middle = _shortest_edit(a[prefix : len(a) - suffix], b[prefix : len(b) - suffix])

    opcodes: list[Opcode] = []

    def _push(tag: str, i1: int, i2: int, j1: int, j2: int) -> None:
        if i1 == i2 and j1 == j2:
            return
        if opcodes and opcodes[-1][0] == tag:
            _, pi1, _, pj1, _ = opcodes[-1]
            opcodes[-1] = (tag, pi1, i2, pj1, j2)
        else:
            opcodes.append((tag, i1, i2, j1, j2))

    _push("equal", 0, prefix, 0, prefix)
    for tag, i, j in middle:
        i += prefix
        j += prefix
        if tag == "equal":
            _push("equal", i, i + 1, j, j + 1)
        elif tag == "delete":
            _push("delete", i, i + 1, j, j)
        else:
            _push("insert", i, i, j, j + 1)
    _push("equal", len(a) - suffix, len(a), len(b) - suffix, len(b))
    return opcodes


def group_hunks(opcodes: list[Opcode], context: int = DEFAULT_CONTEXT) -> Iterator[list[Opcode]]:
    """Split opcodes into hunks, keeping at most *context* equal lines around each change."""
    if not any(op[0] != "equal" for op in opcodes):
        return
    codes = list(opcodes)
    tag, i1, i2, j1, j2 = codes[0]
    if tag == "equal":
        codes[0] = (tag, max(i1, i2 - context), i2, max(j1, j2 - context), j2)
    tag, i1, i2, j1, j2 = codes[-1]
    if tag == "equal":
        codes[-1] = (tag, i1, min(i2, i1 + context), j1, min(j2, j1 + context))

    hunk: list[Opcode] = []
    for tag, i1, i2, j1, j2 in codes:
        # A long equal run closes the current hunk and opens the next one
        if tag == "equal" and i2 - i1 > 2 * context and hunk:
            hunk.append((tag, i1, i1 + context, j1, j1 + context))
            yield hunk
            hunk = []
            i1, j1 = i2 - context, j2 - context
        hunk.append((tag, i1, i2, j1, j2))
    if hunk and not (len(hunk) == 1 and hunk[0][0] == "equal"):
        yield hunk


def _format_range(start: int, stop: int) -> str:
    """1-based ``start,length`` of a hunk side; length 1 is implied, empty ranges point before."""
    beginning = start + 1
    length = stop - start
    if length == 1:
        return f"{beginning}"
    if length == 0:
        beginning -= 1
    return f"{beginning},{length}"


def _emit(prefix: str, line: str) -> str:
    if line.endswith("\n"):
        return f"{prefix}{line}"
    return f"{prefix}{line}\n{NO_NEWLINE_MARKER}"


def unified_diff(
    old_text: str,
    new_text: str,
    old_label: str,
    new_label: str,
    context: int = DEFAULT_CONTEXT,
) -> str:
    """Unified diff of two texts; an empty string when they are identical."""
    a = old_text.splitlines(keepends=True)
    b = new_text.splitlines(keepends=True)
    hunks = list(group_hunks(line_opcodes(a, b), context))
    if not hunks:
        return ""

    out = [f"--- {old_label}\n", f"+++ {new_label}\n"]
    for hunk in hunks:
        first, last = hunk[0], hunk[-1]
        out.append(
            f"@@ -{_format_range(first[1], last[2])} +{_format_range(first[3], last[4])} @@\n"
        )
        for tag, i1, i2, j1, j2 in hunk:
            if tag == "equal":
                out.extend(_emit(" ", line) for line in a[i1:i2])
            elif tag == "delete":
                out.extend(_emit("-", line) for line in a[i1:i2])
            else:
                out.extend(_emit("+", line) for line in b[j1:j2])
    return "".join(out)


def render_snapshot(snapshot: Snapshot) -> bytes:
    """Single bytes view of a snapshot: raw content for files, a bundle for directories."""
    if not snapshot.is_directory:
        return snapshot.single_content()
    parts: list[bytes] = []
    for rel in sorted(snapshot.files):
        content = snapshot.files[rel]
        parts.append(f"==> {rel} <==\n".encode("utf-8"))
        parts.append(content)
        if content and not content.endswith(b"\n"):
            parts.append(b"\n")
    return b"".join(parts)


class DiffEngine:
    """Computes BackupDiff results between two contents or two snapshots."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES, context: int = DEFAULT_CONTEXT) -> None:
        self._max_bytes = max_bytes
        self._context = context

    def _as_text(self, content: bytes) -> str | None:
        if len(content) > self._max_bytes:
            return None
        return decode_text(content)

    def diff(
        self,
        old: bytes | None,
        new: bytes,
        old_label: str = "old",
        new_label: str = "new",
    ) -> BackupDiff:
        if old is None:
            return ContentComparison(
                new_content=new,
                old_content=None,
                old_filename="",
                new_filename=new_label,
                is_first_backup=True,
            )

        old_text = self._as_text(old)
        new_text = self._as_text(new)
        if old_text is None or new_text is None:
            return ContentComparison(
                new_content=new,
                old_content=old,
                old_filename=old_label,
                new_filename=new_label,
            )

        return UnifiedDiff(
            unified_diff=unified_diff(old_text, new_text, old_label, new_label, self._context),
            old_filename=old_label,
            new_filename=new_label,
        )

    def diff_snapshots(
        self,
        old: Snapshot | None,
        new: Snapshot,
        old_label: str = "old",
        new_label: str = "new",
    ) -> BackupDiff:
        """Diff two snapshots; directory snapshots are compared file by file."""
        if old is None:
            return self.diff(None, render_snapshot(new), old_label, new_label)
        if not (old.is_directory or new.is_directory):
            return self.diff(old.single_content(), new.single_content(), old_label, new_label)

        pieces: list[str] = []
        for rel in sorted(set(old.files) | set(new.files)):
            before = old.files.get(rel, b"")
            after = new.files.get(rel, b"")
            before_text = self._as_text(before)
            after_text = self._as_text(after)
            if before_text is None or after_text is None:
                return ContentComparison(
                    new_content=render_snapshot(new),
                    old_content=render_snapshot(old),
                    old_filename=old_label,
                    new_filename=new_label,
                )
            left = f"{old_label}/{rel}" if rel in old.files else "/dev/null"
            right = f"{new_label}/{rel}" if rel in new.files else "/dev/null"
            pieces.append(unified_diff(before_text, after_text, left, right, self._context))

        return UnifiedDiff(
            unified_diff="".join(pieces),
            old_filename=old_label,
            new_filename=new_label,
        )
