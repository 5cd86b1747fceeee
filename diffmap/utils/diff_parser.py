#!/usr/bin/env python3
"""Unified diff parser and line mapper for the PR review pipeline.

Parses unified diff text (git dialect) into immutable per-file records and
maps positions inside a file's raw diff segment back to line numbers in the
new (or old) version of the file.

A *raw position* is the 1-indexed line number inside one file's segment,
counted from that file's ``diff --git`` line (inclusive):

    1: diff --git a/src/app.ts b/src/app.ts
    2: --- a/src/app.ts
    3: +++ b/src/app.ts
    4: @@ -1,3 +1,4 @@
    5:  const a = 1;        -> new line 1
    6: +const b = 2;        -> new line 2
    7:  const c = 3;        -> new line 3

Parsing never raises: malformed hunks are skipped and anything that cannot
be interpreted is ignored.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class FileStatus(str, Enum):
    """Change status of a file, derived from its old/new paths."""

    ADDED = "added"
    DELETED = "deleted"
    RENAMED = "renamed"
    MODIFIED = "modified"


class LineKind(str, Enum):
    CONTEXT = "context"
    ADDITION = "addition"
    DELETION = "deletion"


@dataclass(frozen=True)
class DiffLine:
    """One content line of a hunk."""

    kind: LineKind
    text: str
    raw_position: int
    old_line: Optional[int] = None
    new_line: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "text": self.text,
            "raw_position": self.raw_position,
            "old_line": self.old_line,
            "new_line": self.new_line,
        }


@dataclass(frozen=True)
class DiffHunk:
    """A ``@@`` block with its declared ranges and content lines."""

    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    lines: Tuple[DiffLine, ...] = ()
    header: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "header": self.header,
            "old_start": self.old_start,
            "old_lines": self.old_lines,
            "new_start": self.new_start,
            "new_lines": self.new_lines,
            "lines": [line.to_dict() for line in self.lines],
        }


@dataclass(frozen=True)
class DiffFile:
    """Parsed diff data for a single file.

    ``line_map`` is built from the hunks on construction and gives O(1)
    ``raw_position -> DiffLine`` lookups for the line mapper.  It is not
    part of equality.
    """

    path: str
    status: FileStatus
    additions: int = 0
    deletions: int = 0
    hunks: Tuple[DiffHunk, ...] = ()
    old_path: Optional[str] = None
    diff: str = ""
    line_map: Dict[int, DiffLine] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        table: Dict[int, DiffLine] = {}
        for hunk in self.hunks:
            for line in hunk.lines:
                table[line.raw_position] = line
        object.__setattr__(self, "line_map", table)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "old_path": self.old_path,
            "status": self.status.value,
            "additions": self.additions,
            "deletions": self.deletions,
            "hunks": [hunk.to_dict() for hunk in self.hunks],
        }


# --- Regex patterns for parsing unified diff ---
_DIFF_MARKER_RE = re.compile(r"^diff --git (.*)$")
_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_RENAME_FROM_RE = re.compile(r"^rename from (.+)$")
_RENAME_TO_RE = re.compile(r"^rename to (.+)$")
_QUOTED_HEAD_RE = re.compile(r'^"((?:[^"\\]|\\.)*)" (.+)$')
_QUOTED_TAIL_RE = re.compile(r'^(.+?) "((?:[^"\\]|\\.)*)"$')
_PREFIXED_PAIR_RE = re.compile(r"^a/(.+?) b/(.+)$")
_OCTAL_RE = re.compile(r"\\([0-3][0-7]{2})")

_DEV_NULL = "/dev/null"


def decode_git_path(path: str) -> str:
    """Decode Git escape sequences in a path string.

    Git quotes paths containing non-ASCII or special characters.  Octal
    escapes are raw UTF-8 bytes, so consecutive ones are collected and
    decoded together (``\\355\\225\\234`` is one character).

    Args:
        path: Path string with the outer quotes already removed.

    Returns:
        Decoded path string.
    """
    if "\\" not in path:
        return path

    path = path.replace("\\\\", "\x00BACKSLASH\x00")
    path = path.replace('\\"', '"')
    path = path.replace("\\t", "\t").replace("\\n", "\n")

    parts: List[str] = []
    pending = bytearray()
    i = 0
    while i < len(path):
        m = _OCTAL_RE.match(path, i)
        if m:
            pending.append(int(m.group(1), 8))
            i = m.end()
            continue
        if pending:
            parts.append(pending.decode("utf-8", errors="replace"))
            pending = bytearray()
        parts.append(path[i])
        i += 1
    if pending:
        parts.append(pending.decode("utf-8", errors="replace"))

    return "".join(parts).replace("\x00BACKSLASH\x00", "\\")


def _unquote(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return decode_git_path(value[1:-1])
    return value


def _strip_prefix(path: str, prefix: str) -> str:
    return path[len(prefix):] if path.startswith(prefix) else path


def _parse_git_paths(rest: str) -> Tuple[str, str]:
    """Split the ``a/<old> b/<new>`` part of a ``diff --git`` line.

    The unquoted form is ambiguous when a path contains `` b/``.  Equal
    paths (the common case) are resolved by splitting the line in half;
    otherwise the first `` b/`` wins.
    """
    rest = rest.strip()

    m = _QUOTED_HEAD_RE.match(rest)
    if m:
        old = decode_git_path(m.group(1))
        new = _unquote(m.group(2).strip())
        return _strip_prefix(old, "a/"), _strip_prefix(new, "b/")

    m = _QUOTED_TAIL_RE.match(rest)
    if m:
        new = decode_git_path(m.group(2))
        return _strip_prefix(m.group(1), "a/"), _strip_prefix(new, "b/")

    if len(rest) % 2 == 1:
        half = len(rest) // 2
        left, sep, right = rest[:half], rest[half], rest[half + 1:]
        if sep == " ":
            if left.startswith("a/") and right.startswith("b/") and left[2:] == right[2:]:
                return left[2:], right[2:]
            if left == right:
                return left, right

    m = _PREFIXED_PAIR_RE.match(rest)
    if m:
        return m.group(1), m.group(2)

    old, _, new = rest.partition(" ")
    return old, new or old


def _header_path(value: str) -> Optional[str]:
    """Return the path named on a ``---``/``+++`` line, None for /dev/null."""
    value = value.rstrip()
    if value.startswith('"'):
        end = value.rfind('"')
        value = _unquote(value[: end + 1]) if end > 0 else value
    else:
        # Timestamps (and git's padding for names with spaces) follow a tab.
        value = value.split("\t", 1)[0]
    if value == _DEV_NULL:
        return None
    if value.startswith("a/") or value.startswith("b/"):
        value = value[2:]
    return value


def _split_lines(diff_text: str) -> List[str]:
    lines = diff_text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def _split_segments(lines: List[str]) -> Iterator[List[str]]:
    """Yield per-file line groups, each starting at a ``diff --git`` line."""
    segment: Optional[List[str]] = None
    for line in lines:
        if _DIFF_MARKER_RE.match(line):
            if segment is not None:
                yield segment
            segment = [line]
        elif segment is not None:
            segment.append(line)
    if segment is not None:
        yield segment


def _derive_status(
    old_path: Optional[str],
    new_path: Optional[str],
) -> Tuple[FileStatus, str, Optional[str]]:
    """Return (status, path, old_path) from the presence of each side."""
    if old_path is None and new_path is not None:
        return FileStatus.ADDED, new_path, None
    if old_path is not None and new_path is None:
        return FileStatus.DELETED, old_path, None
    if old_path is not None and new_path is not None and old_path != new_path:
        return FileStatus.RENAMED, new_path, old_path
    return FileStatus.MODIFIED, new_path or old_path or "", None


def _parse_segment(segment: List[str]) -> DiffFile:
    """Parse one file's section of the diff."""
    marker = _DIFF_MARKER_RE.match(segment[0])
    git_old, git_new = _parse_git_paths(marker.group(1) if marker else "")

    # Sentinel: "not declared" differs from "declared as /dev/null" (None).
    unset = object()
    header_old: Any = unset
    header_new: Any = unset
    new_file = False
    deleted_file = False

    hunks: List[DiffHunk] = []
    additions = 0
    deletions = 0
    in_header = True

    # Hunk accumulation state
    hunk_match: Optional[re.Match] = None
    hunk_header = ""
    hunk_lines: List[DiffLine] = []
    old_cursor = 0
    new_cursor = 0

    def _flush_hunk() -> None:
        nonlocal hunk_match, hunk_lines
        if hunk_match is None:
            return
        hunks.append(
            DiffHunk(
                old_start=int(hunk_match.group(1)),
                old_lines=int(hunk_match.group(2) or 1),
                new_start=int(hunk_match.group(3)),
                new_lines=int(hunk_match.group(4) or 1),
                lines=tuple(hunk_lines),
                header=hunk_header,
            )
        )
        hunk_match = None
        hunk_lines = []

    for position, line in enumerate(segment[1:], start=2):
        # --- Extended headers and file path headers ---
        if in_header:
            if line.startswith("--- "):
                header_old = _header_path(line[4:])
                continue
            if line.startswith("+++ "):
                header_new = _header_path(line[4:])
                continue
            m = _RENAME_FROM_RE.match(line)
            if m:
                git_old = _unquote(m.group(1))
                continue
            m = _RENAME_TO_RE.match(line)
            if m:
                git_new = _unquote(m.group(1))
                continue
            if line.startswith("new file mode"):
                new_file = True
                continue
            if line.startswith("deleted file mode"):
                deleted_file = True
                continue

        # --- Hunk header ---
        if line.startswith("@@"):
            in_header = False
            _flush_hunk()
            m = _HUNK_RE.match(line)
            if not m:
                logger.debug(
                    "Skipping malformed hunk header at position %d: %r",
                    position,
                    line,
                )
                continue
            hunk_match = m
            hunk_header = line
            old_cursor = int(m.group(1))
            new_cursor = int(m.group(3))
            continue

        # --- Hunk body ---
        if hunk_match is None:
            continue

        if line.startswith("+"):
            hunk_lines.append(
                DiffLine(LineKind.ADDITION, line[1:], position, new_line=new_cursor)
            )
            new_cursor += 1
            additions += 1
        elif line.startswith("-"):
            hunk_lines.append(
                DiffLine(LineKind.DELETION, line[1:], position, old_line=old_cursor)
            )
            old_cursor += 1
            deletions += 1
        elif line.startswith(" ") or line == "":
            # Some tools strip the single space from blank context lines.
            hunk_lines.append(
                DiffLine(
                    LineKind.CONTEXT,
                    line[1:],
                    position,
                    old_line=old_cursor,
                    new_line=new_cursor,
                )
            )
            old_cursor += 1
            new_cursor += 1
        # "\ No newline at end of file" and other noise: ignored

    _flush_hunk()

    if header_old is unset:
        header_old = None if new_file else git_old
    if header_new is unset:
        header_new = None if deleted_file else git_new

    status, path, old_path = _derive_status(header_old, header_new)
    if not path:
        path = git_new or git_old

    return DiffFile(
        path=path,
        status=status,
        additions=additions,
        deletions=deletions,
        hunks=tuple(hunks),
        old_path=old_path,
        diff="\n".join(segment),
    )


def parse_diff(diff_text: str) -> List[DiffFile]:
    """Parse unified diff text into per-file records, in source order.

    Text before the first ``diff --git`` line is discarded; input without
    any such line (including empty input) yields an empty list.

    Args:
        diff_text: Raw unified diff text.

    Returns:
        List of DiffFile objects, one per ``diff --git`` section.
    """
    if not isinstance(diff_text, str) or not diff_text.strip():
        return []
    return [_parse_segment(segment) for segment in _split_segments(_split_lines(diff_text))]


def _lookup(diff_file: DiffFile, diff_line: Any) -> Optional[DiffLine]:
    if isinstance(diff_line, bool) or not isinstance(diff_line, int):
        return None
    return diff_file.line_map.get(diff_line)


def map_diff_line_to_file_line(diff_file: DiffFile, diff_line: int) -> Optional[int]:
    """Map a raw position in a file's diff to its line in the new file.

    Args:
        diff_file: Parsed file record from parse_diff().
        diff_line: 1-indexed position counted from the file's
            ``diff --git`` line.

    Returns:
        The new-file line number for a context or added line; None for a
        deleted line, a header or meta line, or a position out of range.
    """
    entry = _lookup(diff_file, diff_line)
    return entry.new_line if entry is not None else None


def map_diff_line_to_old_file_line(diff_file: DiffFile, diff_line: int) -> Optional[int]:
    """Old-file counterpart of map_diff_line_to_file_line().

    Returns None for added lines, which have no old-file line.
    """
    entry = _lookup(diff_file, diff_line)
    return entry.old_line if entry is not None else None


def get_new_line_numbers(diff_file: DiffFile) -> Set[int]:
    """Get the new-file line numbers visible in the diff (context + added).

    These are the only lines a code host accepts inline comments on.
    """
    return {
        line.new_line
        for hunk in diff_file.hunks
        for line in hunk.lines
        if line.new_line is not None
    }
