#!/usr/bin/env python3
"""Diff index for finding placement.

Builds a per-file index over parsed diffs: visible new-file lines, runs of
added/deleted lines ("blocks") and move facts (a deleted block whose
normalized content reappears as an added block).  Also produces compact
summary diffs for prompts and resolves the line a finding refers to.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from diffmap.utils.diff_parser import DiffFile, DiffHunk, DiffLine, LineKind

_DELETION_WORDS_RE = re.compile(
    r"\b(deleted|removed|no longer|deleted from|removed from)\b", re.IGNORECASE
)
_LINE_MARKER_RE = re.compile(r"^[-+]\s?")
_WHITESPACE_RE = re.compile(r"\s+")

_COMMENT_PREFIXES = ("//", "#", "/*", "*", "<!--", "-->", "<#--", "--#>")

RESOLVED_BY_LINE_ID = "line_id"
RESOLVED_BY_LINE_TEXT = "line_text"
RESOLVED_BY_ORIGINAL = "original"
RESOLVED_BY_NONE = "none"


@dataclass
class DiffBlock:
    """A run of consecutive added or deleted lines within one hunk."""

    kind: LineKind
    file: str
    start: int
    end: int
    lines: List[str] = field(default_factory=list)
    normalized: str = ""
    hash: str = ""


@dataclass
class MoveFact:
    from_file: str
    from_start: int
    from_end: int
    to_file: str
    to_start: int
    to_end: int
    hash: str
    size_lines: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "moved",
            "from": {"file": self.from_file, "start_line": self.from_start, "end_line": self.from_end},
            "to": {"file": self.to_file, "start_line": self.to_start, "end_line": self.to_end},
            "hash": self.hash,
            "size_lines": self.size_lines,
        }


@dataclass
class DiffFileIndex:
    file: str
    lines: List[DiffLine] = field(default_factory=list)
    new_lines: Set[int] = field(default_factory=set)
    added_blocks: List[DiffBlock] = field(default_factory=list)
    deleted_blocks: List[DiffBlock] = field(default_factory=list)
    move_facts: List[MoveFact] = field(default_factory=list)


@dataclass
class DiffIndex:
    files: Dict[str, DiffFileIndex] = field(default_factory=dict)
    move_facts: List[MoveFact] = field(default_factory=list)


def is_meta_diff_line(line: str) -> bool:
    """True for ``\\ No newline at end of file`` markers."""
    return line.startswith("\\ No newline at end of file")


def _is_comment_only(trimmed: str) -> bool:
    return trimmed.startswith(_COMMENT_PREFIXES)


def normalize_block(lines: List[str]) -> str:
    """Normalize block content for move matching.

    Blank and comment-only lines are dropped and inner whitespace is
    collapsed, so re-indented moves still match.
    """
    normalized = []
    for raw in lines:
        trimmed = raw.strip()
        if not trimmed or _is_comment_only(trimmed):
            continue
        normalized.append(_WHITESPACE_RE.sub(" ", trimmed))
    return "\n".join(normalized)


def _index_file(diff_file: DiffFile) -> DiffFileIndex:
    index = DiffFileIndex(file=diff_file.path)
    current: Optional[DiffBlock] = None

    def _finalize() -> None:
        nonlocal current
        if current is None:
            return
        normalized = normalize_block(current.lines)
        if normalized:
            current.normalized = normalized
            current.hash = hashlib.sha1(normalized.encode("utf-8")).hexdigest()
            if current.kind is LineKind.ADDITION:
                index.added_blocks.append(current)
            else:
                index.deleted_blocks.append(current)
        current = None

    for hunk in diff_file.hunks:
        for line in hunk.lines:
            index.lines.append(line)
            if line.new_line is not None:
                index.new_lines.add(line.new_line)

            if line.kind is LineKind.CONTEXT:
                _finalize()
                continue

            number = line.new_line if line.kind is LineKind.ADDITION else line.old_line
            if current is not None and current.kind is line.kind:
                current.lines.append(line.text)
                current.end = number
            else:
                _finalize()
                current = DiffBlock(
                    kind=line.kind,
                    file=diff_file.path,
                    start=number,
                    end=number,
                    lines=[line.text],
                )
        # Blocks never span hunks.
        _finalize()

    return index


def build_diff_index(diff_files: List[DiffFile]) -> DiffIndex:
    """Index parsed files and pair deleted/added blocks into move facts.

    Blocks with equal content hashes are paired in source order; each
    resulting MoveFact is attached to the global list and to both files.
    """
    index = DiffIndex()
    deleted_by_hash: Dict[str, List[DiffBlock]] = {}
    added_by_hash: Dict[str, List[DiffBlock]] = {}

    for diff_file in diff_files:
        file_index = _index_file(diff_file)
        index.files[diff_file.path] = file_index
        for block in file_index.deleted_blocks:
            deleted_by_hash.setdefault(block.hash, []).append(block)
        for block in file_index.added_blocks:
            added_by_hash.setdefault(block.hash, []).append(block)

    for block_hash, deletes in deleted_by_hash.items():
        adds = added_by_hash.get(block_hash)
        if not adds:
            continue
        for source, target in zip(deletes, adds):
            if source.start <= 0 or target.start <= 0:
                continue
            fact = MoveFact(
                from_file=source.file,
                from_start=source.start,
                from_end=source.end,
                to_file=target.file,
                to_start=target.start,
                to_end=target.end,
                hash=block_hash,
                size_lines=len(target.lines),
            )
            index.move_facts.append(fact)
            from_index = index.files.get(source.file)
            to_index = index.files.get(target.file)
            if from_index is not None:
                from_index.move_facts.append(fact)
            if to_index is not None and to_index is not from_index:
                to_index.move_facts.append(fact)

    return index


_LINE_PREFIX = {
    LineKind.CONTEXT: " ",
    LineKind.ADDITION: "+",
    LineKind.DELETION: "-",
}


def _file_headers(diff_file: DiffFile) -> List[str]:
    headers: List[str] = []
    for line in diff_file.diff.split("\n"):
        if line.startswith("@@"):
            break
        if line.startswith(("diff --git", "--- ", "+++ ")):
            headers.append(line.rstrip("\r"))
    return headers


def _hunk_header(hunk: DiffHunk) -> str:
    if hunk.header:
        return hunk.header
    return f"@@ -{hunk.old_start},{hunk.old_lines} +{hunk.new_start},{hunk.new_lines} @@"


def _select_hunk_lines(lines: Sequence[DiffLine], context_lines: int) -> List[DiffLine]:
    include = [False] * len(lines)
    for i, line in enumerate(lines):
        if line.kind is LineKind.CONTEXT:
            continue
        start = max(0, i - context_lines)
        end = min(len(lines) - 1, i + context_lines)
        for j in range(start, end + 1):
            include[j] = True
    return [line for i, line in enumerate(lines) if include[i]]


def build_summary_diff(
    diff_file: DiffFile,
    context_lines: int = 3,
    max_lines: int = 200,
) -> str:
    """Build a compact diff for prompts.

    Keeps the file headers, every parsed hunk header and change line, and at
    most ``context_lines`` of context around each change.  Past ``max_lines``,
    context lines are dropped from the end first; headers and change lines
    are never dropped, so the result may still exceed ``max_lines``.

    Rendered from the parsed hunks, so hunks the parser skipped never show up.
    """
    context_lines = max(0, context_lines)
    # (rendered text, droppable)
    output: List[Tuple[str, bool]] = [(h, False) for h in _file_headers(diff_file)]

    for hunk in diff_file.hunks:
        output.append((_hunk_header(hunk), False))
        for line in _select_hunk_lines(hunk.lines, context_lines):
            output.append(
                (_LINE_PREFIX[line.kind] + line.text, line.kind is LineKind.CONTEXT)
            )

    excess = len(output) - max_lines
    if excess > 0:
        for i in range(len(output) - 1, -1, -1):
            if excess <= 0:
                break
            if output[i][1]:
                del output[i]
                excess -= 1

    return "\n".join(text for text, _ in output)


def coerce_line(value: Any) -> Optional[int]:
    """Return ``value`` as a line number, or None if it is not an integer.

    Accepts ints, integral floats and numeric strings; bools and fractional
    values are rejected.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _normalize_line_text(line_text: Any) -> str:
    if not isinstance(line_text, str):
        return ""
    return _LINE_MARKER_RE.sub("", line_text.strip())


def resolve_finding_line(
    finding: Dict[str, Any],
    diff_index: DiffIndex,
) -> Tuple[Optional[int], str]:
    """Resolve the new-file line a finding refers to.

    Order: ``line_id`` (``"L<n>"``), then ``line_text`` matched against
    visible lines (nearest to the reported line wins), then the reported
    ``line`` if it is visible.

    Returns:
        Tuple of (line or None, how it was resolved).
    """
    file_index = diff_index.files.get(finding.get("file", ""))
    if file_index is None:
        return None, RESOLVED_BY_NONE

    line_id = finding.get("line_id")
    if isinstance(line_id, str) and line_id.strip().startswith("L"):
        m = re.search(r"\d+", line_id)
        if m and int(m.group(0)) in file_index.new_lines:
            return int(m.group(0)), RESOLVED_BY_LINE_ID

    reported = coerce_line(finding.get("line"))

    line_text = _normalize_line_text(finding.get("line_text"))
    if line_text:
        candidates = []
        for line in file_index.lines:
            if line.new_line is None:
                continue
            content = line.text.strip()
            if content == line_text or line_text in content or (content and content in line_text):
                candidates.append(line.new_line)
        if candidates:
            target = reported if reported is not None else candidates[0]
            best = min(candidates, key=lambda n: abs(n - target))
            return best, RESOLVED_BY_LINE_TEXT

    if reported is not None and reported in file_index.new_lines:
        return reported, RESOLVED_BY_ORIGINAL

    return None, RESOLVED_BY_NONE


def apply_line_resolution(
    findings: List[Dict[str, Any]],
    diff_index: DiffIndex,
) -> Tuple[List[Dict[str, Any]], int, int]:
    """Resolve every finding's line; drop findings that cannot be placed.

    Returns:
        Tuple of (resolved findings, corrected count, dropped count).
        Resolved findings are copies with ``line`` updated.
    """
    resolved: List[Dict[str, Any]] = []
    corrected = 0
    dropped = 0

    for finding in findings:
        line, _ = resolve_finding_line(finding, diff_index)
        if line is None:
            dropped += 1
            continue
        if line != coerce_line(finding.get("line")):
            corrected += 1
        resolved.append({**finding, "line": line})

    return resolved, corrected, dropped


def suppress_move_false_positives(
    findings: List[Dict[str, Any]],
    diff_index: DiffIndex,
) -> Tuple[List[Dict[str, Any]], int]:
    """Drop "code was removed" findings whose code was only moved.

    A finding is suppressed when its title and message (or description)
    talk about deletion and its ``line_text`` is part of an added block that
    is a move destination.
    """
    moved_hashes = {fact.hash for fact in diff_index.move_facts}
    kept: List[Dict[str, Any]] = []
    suppressed = 0

    for finding in findings:
        message = finding.get("message") or finding.get("description", "")
        text = f"{finding.get('title', '')} {message}"
        line_text = _normalize_line_text(finding.get("line_text"))
        file_index = diff_index.files.get(finding.get("file", ""))
        if not _DELETION_WORDS_RE.search(text) or not line_text or file_index is None:
            kept.append(finding)
            continue

        in_moved_block = any(
            block.hash in moved_hashes
            and any(line.strip() == line_text for line in block.lines)
            for block in file_index.added_blocks
        )
        if in_moved_block:
            suppressed += 1
            continue
        kept.append(finding)

    return kept, suppressed
