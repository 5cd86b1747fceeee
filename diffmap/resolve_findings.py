#!/usr/bin/env python3
"""Resolve Findings — place reviewer findings on concrete file lines.

Reviewer agents report findings against the diff they were shown, either as
a raw position inside a file's diff segment (``diff_line``) or as a new-file
line (``line``), optionally with the quoted ``line_text`` / ``line_id``.
This stage maps every finding to a line the code host accepts for inline
comments, or demotes it to a summary-only finding.

Finding format (JSON array per input file):
    {
        "file": "src/app.ts",
        "diff_line": 6,               # raw position, counted from "diff --git"
        "line": 2,                    # or a new-file line
        "line_text": "const b = 2;",  # optional
        "line_id": "L2",              # optional
        "severity": "warning",
        "category": "logic",
        "title": "...",
        "message": "..."
    }

Usage:
    python -m diffmap.resolve_findings \\
        --diff pr.diff \\
        --findings findings-logic.json findings-security.json \\
        --output placement.json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from diffmap.utils.diff_indexer import (
    build_diff_index,
    coerce_line,
    resolve_finding_line,
    suppress_move_false_positives,
)
from diffmap.utils.diff_parser import (
    DiffFile,
    FileStatus,
    get_new_line_numbers,
    map_diff_line_to_file_line,
    parse_diff,
)

logger = logging.getLogger(__name__)

REASON_NOT_IN_DIFF = "file not in diff"
REASON_DELETED_FILE = "file deleted"
REASON_UNMAPPED_POSITION = "diff position is a deleted line or outside any hunk"
REASON_UNRESOLVED_LINE = "line not visible in diff"


def load_findings(file_paths: List[str]) -> List[Dict[str, Any]]:
    """Load and merge findings from multiple JSON files.

    Each file should contain a JSON array of finding dicts.
    Missing or malformed files are logged and skipped.
    """
    all_findings: List[Dict[str, Any]] = []

    for fp in file_paths:
        path = Path(fp)
        if not path.exists():
            logger.warning("Findings file not found, skipping: %s", fp)
            continue

        try:
            data = json.loads(path.read_text(encoding="utf-8", errors="replace"))
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse JSON from %s: %s", fp, e)
            continue

        if not isinstance(data, list):
            logger.warning(
                "Expected JSON array in %s, got %s", fp, type(data).__name__
            )
            continue
        all_findings.extend(f for f in data if isinstance(f, dict))

    return all_findings


def map_reported_positions(
    findings: List[Dict[str, Any]],
    files_by_path: Dict[str, DiffFile],
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Translate ``diff_line`` raw positions into new-file lines.

    Findings without ``diff_line`` pass through unchanged.

    Returns:
        Tuple of (mapped findings, unmapped findings with a ``reason``).
    """
    mapped: List[Dict[str, Any]] = []
    unmapped: List[Dict[str, Any]] = []

    for finding in findings:
        position = coerce_line(finding.get("diff_line"))
        if position is None:
            mapped.append(finding)
            continue

        diff_file = files_by_path.get(finding.get("file", ""))
        if diff_file is None:
            unmapped.append({**finding, "reason": REASON_NOT_IN_DIFF})
            continue

        line = map_diff_line_to_file_line(diff_file, position)
        if line is None:
            unmapped.append({**finding, "reason": REASON_UNMAPPED_POSITION})
            continue
        mapped.append({**finding, "line": line})

    return mapped, unmapped


def resolve_comment_line(
    file_path: str,
    line: Any,
    files_by_path: Dict[str, DiffFile],
) -> Optional[int]:
    """Return ``line`` if an inline comment can be placed on it, else None."""
    diff_file = files_by_path.get(file_path)
    if diff_file is None or diff_file.status is FileStatus.DELETED:
        return None
    line = coerce_line(line)
    if line is None or line <= 0:
        return None
    return line if line in get_new_line_numbers(diff_file) else None


def place_findings(
    findings: List[Dict[str, Any]],
    diff_files: List[DiffFile],
    suppress_moves: bool = True,
) -> Dict[str, Any]:
    """Split findings into inline-placeable and summary-only.

    Steps:
      1. Findings on files outside the diff or on deleted files are
         summary-only.
      2. ``diff_line`` positions are mapped to new-file lines.
      3. Lines are resolved via line_id / line_text / reported line.
      4. "Removed code" findings that only describe a move are dropped.

    Args:
        findings: Finding dicts (see module docstring).
        diff_files: Parsed files from parse_diff().
        suppress_moves: Apply step 4.

    Returns:
        Dict with ``inline``, ``summary_only`` and ``stats``.
    """
    files_by_path = {f.path: f for f in diff_files}
    diff_index = build_diff_index(diff_files)

    placeable: List[Dict[str, Any]] = []
    summary_only: List[Dict[str, Any]] = []
    for finding in findings:
        diff_file = files_by_path.get(finding.get("file", ""))
        if diff_file is None:
            summary_only.append({**finding, "reason": REASON_NOT_IN_DIFF})
        elif diff_file.status is FileStatus.DELETED:
            summary_only.append({**finding, "reason": REASON_DELETED_FILE})
        else:
            placeable.append(finding)

    mapped, unmapped = map_reported_positions(placeable, files_by_path)
    summary_only.extend(unmapped)

    resolved: List[Dict[str, Any]] = []
    corrected = 0
    for finding in mapped:
        line, resolved_by = resolve_finding_line(finding, diff_index)
        if line is None or resolve_comment_line(finding["file"], line, files_by_path) is None:
            summary_only.append({**finding, "reason": REASON_UNRESOLVED_LINE})
            continue
        if line != coerce_line(finding.get("line")):
            corrected += 1
            logger.debug(
                "Moved finding in %s from line %s to %d (%s)",
                finding["file"],
                finding.get("line"),
                line,
                resolved_by,
            )
        resolved.append({**finding, "line": line})

    suppressed = 0
    if suppress_moves:
        resolved, suppressed = suppress_move_false_positives(resolved, diff_index)

    resolved.sort(key=lambda f: (f.get("file", ""), f["line"]))

    stats = {
        "total_findings": len(findings),
        "inline": len(resolved),
        "summary_only": len(summary_only),
        "lines_corrected": corrected,
        "moves_suppressed": suppressed,
        "move_facts": len(diff_index.move_facts),
    }
    logger.info(
        "Placed %d/%d finding(s) inline, %d summary-only "
        "(%d line(s) corrected, %d move(s) suppressed)",
        stats["inline"],
        stats["total_findings"],
        stats["summary_only"],
        corrected,
        suppressed,
    )

    return {"inline": resolved, "summary_only": summary_only, "stats": stats}


def _severity_label(severity: str) -> str:
    """Map severity to a text label for review comments."""
    return {
        "critical": "[CRITICAL]",
        "high": "[HIGH]",
        "medium": "[MEDIUM]",
        "low": "[LOW]",
        "error": "[ERROR]",
        "warning": "[WARNING]",
    }.get(severity, "[INFO]")


def format_comment_body(finding: Dict[str, Any]) -> str:
    """Format a finding into an inline review comment body.

    Args:
        finding: A finding dict with severity, category, title, message
                 and optional suggestion.

    Returns:
        Markdown-formatted comment body string.
    """
    label = _severity_label(finding.get("severity", "info"))
    category = finding.get("category", "")
    title = finding.get("title", "")

    header = f"**{label}**"
    if category:
        header += f" `{category}`"
    if title:
        header += f" {title}"

    parts = [header]
    message = finding.get("message") or finding.get("description", "")
    if message:
        parts.append(message)

    suggestion = finding.get("suggestion")
    if suggestion:
        parts.append("")
        parts.append(f"```suggestion\n{suggestion}\n```")

    return "\n".join(parts)


def build_review_comments(
    findings: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Convert placed findings into inline comment payloads.

    Findings without a file or a positive line are skipped.
    """
    comments: List[Dict[str, Any]] = []

    for finding in findings:
        file_path = finding.get("file", "")
        line = coerce_line(finding.get("line"))
        if not file_path or line is None or line <= 0:
            continue
        comments.append(
            {
                "path": file_path,
                "line": line,
                "side": "RIGHT",
                "body": format_comment_body(finding),
            }
        )

    return comments


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Resolve Findings — map findings to inline comment lines"
    )
    parser.add_argument(
        "--diff",
        required=True,
        help="Path to the PR unified diff file",
    )
    parser.add_argument(
        "--findings",
        nargs="+",
        required=True,
        help="One or more JSON finding files",
    )
    parser.add_argument(
        "--output",
        default=None,
        help="Output JSON file path (default: stdout)",
    )
    parser.add_argument(
        "--no-move-suppression",
        action="store_true",
        help="Keep 'removed code' findings even when the code was moved",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (default: INFO)",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(levelname)s: %(message)s",
    )

    diff_path = Path(args.diff)
    if not diff_path.exists():
        print(f"Error: Diff file not found: {args.diff}", file=sys.stderr)
        return 1

    diff_files = parse_diff(diff_path.read_text(encoding="utf-8", errors="replace"))
    findings = load_findings(args.findings)

    placement = place_findings(
        findings, diff_files, suppress_moves=not args.no_move_suppression
    )
    result = {
        "stats": placement["stats"],
        "comments": build_review_comments(placement["inline"]),
        "inline": placement["inline"],
        "summary_only": placement["summary_only"],
    }

    output_json = json.dumps(result, ensure_ascii=False, indent=2)

    if args.output:
        Path(args.output).write_text(output_json + "\n", encoding="utf-8")
        print(
            f"{len(result['comments'])} inline comment(s), "
            f"{len(result['summary_only'])} summary-only finding(s). "
            f"Written to: {args.output}"
        )
    else:
        print(output_json)

    return 0


if __name__ == "__main__":
    sys.exit(main())
