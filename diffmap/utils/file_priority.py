#!/usr/bin/env python3
"""File priority scoring for large PRs.

Scores a changed file by where it lives and how much of it changed, so the
summary stage can decide which files get a full review when a PR is too big
to review everything.

Score components:
    path segments   auth/security/crypto/payment +100 ... generated -100
    extension       .config. -20, .test./.spec. -30, .d.ts -40
    file name       index. -10, types. -15
    lines changed   +min(lines_changed / 10, 20)
"""

from __future__ import annotations

from typing import Dict, List, Tuple

# ---------------------------------------------------------------------------
# Score tables
# ---------------------------------------------------------------------------

PATH_SEGMENT_SCORES: Dict[str, int] = {
    "auth": 100,
    "security": 100,
    "crypto": 100,
    "payment": 100,
    "api": 80,
    "controllers": 80,
    "routes": 80,
    "migrations": 70,
    "models": 60,
    "entities": 60,
    "services": 50,
    "domain": 50,
    "utils": 30,
    "helpers": 30,
    "components": 30,
    "tests": -30,
    "docs": -50,
    "generated": -100,
}

# Matched anywhere in the lowercased path.
EXTENSION_MODIFIERS: List[Tuple[str, int]] = [
    (".config.", -20),
    (".test.", -30),
    (".spec.", -30),
    (".d.ts", -40),
]

# Matched against the start of the file name.
NAME_MODIFIERS: List[Tuple[str, int]] = [
    ("index.", -10),
    ("types.", -15),
]

MAX_LINES_BONUS = 20


def calculate_file_priority(file_path: str, lines_changed: int) -> float:
    """Calculate a review priority score for a file.

    Higher scores should be reviewed first.

    Args:
        file_path: Repository-relative path (``\\`` separators are accepted).
        lines_changed: additions + deletions for the file.

    Returns:
        Priority score (may be negative).
    """
    normalized = file_path.replace("\\", "/").lower()
    segments = normalized.split("/")
    file_name = segments[-1]

    score: float = 0
    for segment in segments:
        score += PATH_SEGMENT_SCORES.get(segment, 0)

    for pattern, modifier in EXTENSION_MODIFIERS:
        if pattern in normalized:
            score += modifier

    for pattern, modifier in NAME_MODIFIERS:
        if file_name.startswith(pattern):
            score += modifier

    score += min(lines_changed / 10, MAX_LINES_BONUS)
    return score
