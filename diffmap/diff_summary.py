#!/usr/bin/env python3
"""Diff Summary — per-file change summary and large PR detection.

Parses the PR's unified diff and produces the per-file data that PR summary
generation consumes (path, status, additions, deletions), separates
reviewable files from skipped ones, and classifies the PR as large or not.

Three-step logic:
  Step 1: File Filter — deleted files and skip_patterns matches are skipped
  Step 2: Size Classification — reviewable count > threshold OR label match → large PR
  Step 3: Prioritization — reviewable files are scored; the top files within
          the line budget get full analysis, the rest are summary-only, and
          files beyond max_total_files are dropped

Usage:
  python -m diffmap.diff_summary \\
    --diff <path-to-diff-file> \\
    --config configs/diff_config.yml \\
    --output diff-summary.json \\
    [--labels migration,large-change] \\
    [--priority-files src/auth,src/billing.ts] \\
    [--summary-diff]
"""

from __future__ import annotations

import argparse
import json
import logging
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, TypeVar

import yaml

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from diffmap.utils.diff_indexer import build_summary_diff
from diffmap.utils.diff_parser import DiffFile, FileStatus, parse_diff
from diffmap.utils.file_priority import calculate_file_priority

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONTEXT_LINES = 3
DEFAULT_MAX_LINES = 200

DEFAULT_PRIORITIZATION: Dict[str, int] = {
    "max_full_analysis_files": 50,
    "max_total_files": 150,
    "token_budget": 500_000,
    "tokens_per_line": 10,
    "batch_size": 10,
}

# Added to the score of files the PR author asked to have reviewed.
USER_PRIORITY_BOOST = 1000


@dataclass
class PrioritizedFile:
    file: DiffFile
    priority: float
    full_analysis: bool


def _require_int(value: Any, name: str, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def load_config(config_path: str) -> Dict[str, Any]:
    """Load and validate diff_config.yml.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Parsed configuration dictionary, with ``summary_diff`` and
        ``prioritization`` defaults filled in.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ValueError: If required keys are missing or have the wrong type.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f)

    if not isinstance(config, dict):
        raise ValueError(f"Config file is empty or not a YAML mapping: {config_path}")

    for key in ("skip_patterns", "max_reviewable_files", "large_pr_labels"):
        if key not in config:
            raise ValueError(f"Missing required config key: {key}")

    if not isinstance(config["skip_patterns"], list):
        raise ValueError("skip_patterns must be a list")
    if not isinstance(config["large_pr_labels"], list):
        raise ValueError("large_pr_labels must be a list")
    _require_int(config["max_reviewable_files"], "max_reviewable_files")

    summary = config.get("summary_diff") or {}
    if not isinstance(summary, dict):
        raise ValueError("summary_diff must be a mapping")
    config["summary_diff"] = {
        "context_lines": _require_int(
            summary.get("context_lines", DEFAULT_CONTEXT_LINES),
            "summary_diff.context_lines",
        ),
        "max_lines": _require_int(
            summary.get("max_lines", DEFAULT_MAX_LINES), "summary_diff.max_lines"
        ),
    }

    prioritization = config.get("prioritization") or {}
    if not isinstance(prioritization, dict):
        raise ValueError("prioritization must be a mapping")
    config["prioritization"] = {
        key: _require_int(
            prioritization.get(key, default),
            f"prioritization.{key}",
            minimum=1 if key == "batch_size" else 0,
        )
        for key, default in DEFAULT_PRIORITIZATION.items()
    }

    return config


def filter_files(
    files: List[DiffFile],
    skip_patterns: List[str],
) -> Tuple[List[DiffFile], List[Dict[str, str]]]:
    """Separate files into reviewable and skipped.

    Deleted files have nothing left to comment on and are always skipped.

    Args:
        files: Parsed files from parse_diff().
        skip_patterns: Regex patterns from the config.

    Returns:
        Tuple of (reviewable_files, skipped_files).
        skipped_files contains dicts with 'file' and 'reason' keys.
    """
    compiled = []
    for pattern in skip_patterns:
        try:
            compiled.append((pattern, re.compile(pattern)))
        except re.error as e:
            logger.warning("Invalid skip pattern '%s': %s", pattern, e)

    reviewable: List[DiffFile] = []
    skipped: List[Dict[str, str]] = []

    for diff_file in files:
        if diff_file.status is FileStatus.DELETED:
            skipped.append({"file": diff_file.path, "reason": "file deleted"})
            continue

        matched = next(
            (p for p, regex in compiled if regex.search(diff_file.path)), None
        )
        if matched is not None:
            skipped.append({"file": diff_file.path, "reason": f"path filter: {matched}"})
            continue

        reviewable.append(diff_file)

    return reviewable, skipped


def classify_pr(
    reviewable_count: int,
    max_reviewable_files: int,
    labels: List[str],
    large_pr_labels: List[str],
) -> Tuple[bool, List[str]]:
    """Determine if a PR is classified as "large".

    A PR is large if:
      - reviewable_count > max_reviewable_files, OR
      - any PR label matches large_pr_labels

    Returns:
        Tuple of (is_large_pr, reasons).
    """
    reasons = []

    if reviewable_count > max_reviewable_files:
        reasons.append(
            f"reviewable file count ({reviewable_count}) exceeds "
            f"threshold ({max_reviewable_files})"
        )

    matching_labels = set(labels) & set(large_pr_labels)
    if matching_labels:
        reasons.append(f"large PR label: {', '.join(sorted(matching_labels))}")

    return bool(reasons), reasons


def _is_user_priority(path: str, priority_files: Sequence[str]) -> bool:
    return any(pf in path or path in pf for pf in priority_files if pf)


def prioritize_files(
    files: List[DiffFile],
    priority_files: Optional[Sequence[str]] = None,
    max_full_analysis_files: int = DEFAULT_PRIORITIZATION["max_full_analysis_files"],
    max_total_files: int = DEFAULT_PRIORITIZATION["max_total_files"],
    token_budget: int = DEFAULT_PRIORITIZATION["token_budget"],
    tokens_per_line: int = DEFAULT_PRIORITIZATION["tokens_per_line"],
) -> List[PrioritizedFile]:
    """Score, sort and partition files for review.

    Files are sorted by priority (highest first, ties keep diff order).  The
    first ``max_full_analysis_files`` whose estimated size
    (lines changed * ``tokens_per_line``) still fits in ``token_budget`` get
    ``full_analysis``; the rest are summary-only.  Files past
    ``max_total_files`` are dropped from the result.

    Args:
        files: Reviewable files.
        priority_files: Paths (or path fragments) to boost to the top.
        max_full_analysis_files: Cap on fully analyzed files.
        max_total_files: Cap on files kept at all.
        token_budget: Estimated token budget for fully analyzed files.
        tokens_per_line: Estimated tokens per changed line.

    Returns:
        List of PrioritizedFile, highest priority first.
    """
    priority_files = priority_files or []

    scored = []
    for diff_file in files:
        lines_changed = diff_file.additions + diff_file.deletions
        score = calculate_file_priority(diff_file.path, lines_changed)
        if _is_user_priority(diff_file.path, priority_files):
            score += USER_PRIORITY_BOOST
        scored.append((diff_file, score, lines_changed))

    scored.sort(key=lambda item: item[1], reverse=True)

    budget_used = 0
    result: List[PrioritizedFile] = []
    for i, (diff_file, score, lines_changed) in enumerate(scored[:max_total_files]):
        estimated = lines_changed * tokens_per_line
        full = i < max_full_analysis_files and budget_used + estimated <= token_budget
        if full:
            budget_used += estimated
        result.append(PrioritizedFile(diff_file, score, full))

    dropped = len(files) - len(result)
    if dropped > 0:
        logger.warning(
            "Dropped %d low-priority file(s) beyond max_total_files (%d)",
            dropped,
            max_total_files,
        )

    full_count = sum(1 for p in result if p.full_analysis)
    logger.info(
        "Prioritized %d file(s): %d full analysis, %d summary-only",
        len(result),
        full_count,
        len(result) - full_count,
    )
    return result


def batch_files(items: Sequence[T], batch_size: int) -> List[List[T]]:
    """Split items into consecutive batches of at most ``batch_size``.

    Raises:
        ValueError: If batch_size is less than 1.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    return [list(items[i:i + batch_size]) for i in range(0, len(items), batch_size)]


def summarize_file(
    diff_file: DiffFile,
    include_summary_diff: bool = False,
    context_lines: int = DEFAULT_CONTEXT_LINES,
    max_lines: int = DEFAULT_MAX_LINES,
) -> Dict[str, Any]:
    """Build the summary entry for one file."""
    entry: Dict[str, Any] = {
        "path": diff_file.path,
        "old_path": diff_file.old_path,
        "status": diff_file.status.value,
        "additions": diff_file.additions,
        "deletions": diff_file.deletions,
        "hunk_count": len(diff_file.hunks),
    }
    if include_summary_diff:
        entry["summary_diff"] = build_summary_diff(
            diff_file, context_lines=context_lines, max_lines=max_lines
        )
    return entry


def run_summary(
    diff_text: str,
    config: Dict[str, Any],
    labels: Optional[List[str]] = None,
    include_summary_diff: bool = False,
    priority_files: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Execute the full summary pipeline.

    Args:
        diff_text: Raw unified diff text.
        config: Parsed configuration (see load_config()).
        labels: PR labels (empty list if not provided).
        include_summary_diff: Attach a compact diff to each reviewable file.
        priority_files: Paths the PR author wants reviewed first.

    Returns:
        Summary result dictionary matching the output JSON schema.
        ``reviewable_files`` is in priority order, each entry carrying
        ``priority`` and ``full_analysis``; ``batches`` groups the paths of
        fully analyzed files.
    """
    if labels is None:
        labels = []

    summary_cfg = config.get("summary_diff") or {}
    context_lines = summary_cfg.get("context_lines", DEFAULT_CONTEXT_LINES)
    max_lines = summary_cfg.get("max_lines", DEFAULT_MAX_LINES)
    prio_cfg = {**DEFAULT_PRIORITIZATION, **(config.get("prioritization") or {})}

    all_files = parse_diff(diff_text)
    reviewable, skipped = filter_files(all_files, config["skip_patterns"])

    is_large, reasons = classify_pr(
        reviewable_count=len(reviewable),
        max_reviewable_files=config["max_reviewable_files"],
        labels=labels,
        large_pr_labels=config["large_pr_labels"],
    )

    prioritized = prioritize_files(
        reviewable,
        priority_files,
        max_full_analysis_files=prio_cfg["max_full_analysis_files"],
        max_total_files=prio_cfg["max_total_files"],
        token_budget=prio_cfg["token_budget"],
        tokens_per_line=prio_cfg["tokens_per_line"],
    )
    kept = {id(p.file) for p in prioritized}
    drop_reason = f"low priority: beyond max_total_files ({prio_cfg['max_total_files']})"
    for diff_file in reviewable:
        if id(diff_file) not in kept:
            skipped.append({"file": diff_file.path, "reason": drop_reason})

    logger.info(
        "Parsed %d file(s): %d reviewable, %d skipped, large=%s",
        len(all_files),
        len(prioritized),
        len(skipped),
        is_large,
    )

    reviewable_entries = []
    for p in prioritized:
        entry = summarize_file(p.file, include_summary_diff, context_lines, max_lines)
        entry["priority"] = p.priority
        entry["full_analysis"] = p.full_analysis
        reviewable_entries.append(entry)

    full_paths = [p.file.path for p in prioritized if p.full_analysis]

    return {
        "is_large_pr": is_large,
        "reasons": reasons,
        "total_changed_files": len(all_files),
        "total_additions": sum(f.additions for f in all_files),
        "total_deletions": sum(f.deletions for f in all_files),
        "files": [summarize_file(f) for f in all_files],
        "reviewable_files": reviewable_entries,
        "reviewable_count": len(reviewable_entries),
        "full_analysis_count": len(full_paths),
        "batches": batch_files(full_paths, prio_cfg["batch_size"]),
        "skipped_files": skipped,
        "skipped_count": len(skipped),
    }


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Diff Summary — per-file change summary and large PR detection"
    )
    parser.add_argument(
        "--diff",
        required=True,
        help="Path to the unified diff file",
    )
    parser.add_argument(
        "--config",
        default="configs/diff_config.yml",
        help="Path to diff_config.yml (default: configs/diff_config.yml)",
    )
    parser.add_argument(
        "--output",
        default=None,
        help="Output JSON file path (default: stdout)",
    )
    parser.add_argument(
        "--labels",
        default="",
        help="Comma-separated PR labels",
    )
    parser.add_argument(
        "--priority-files",
        default="",
        help="Comma-separated paths (or path fragments) to review first",
    )
    parser.add_argument(
        "--summary-diff",
        action="store_true",
        help="Include a compact summary diff for each reviewable file",
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

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    diff_path = Path(args.diff)
    if not diff_path.exists():
        print(f"Error: Diff file not found: {args.diff}", file=sys.stderr)
        return 1

    diff_text = diff_path.read_text(encoding="utf-8", errors="replace")
    labels = [label.strip() for label in args.labels.split(",") if label.strip()]
    priority_files = [p.strip() for p in args.priority_files.split(",") if p.strip()]

    result = run_summary(diff_text, config, labels, args.summary_diff, priority_files)

    output_json = json.dumps(result, ensure_ascii=False, indent=2)

    if args.output:
        Path(args.output).write_text(output_json + "\n", encoding="utf-8")
        print(f"Diff summary written to: {args.output}")
    else:
        print(output_json)

    return 0


if __name__ == "__main__":
    sys.exit(main())
