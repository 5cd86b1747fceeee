"""Tests for resolve_findings.py — placing findings on inline comment lines.

Covers:
  - Finding loading from multiple JSON files (missing / malformed input)
  - Raw diff position → file line mapping
  - Inline target validation (deleted files, invisible lines)
  - Line correction via line_text and move false-positive suppression
  - Comment body formatting and payloads
  - CLI output
"""

from __future__ import annotations

import json
import sys
import textwrap
from pathlib import Path

import pytest

# Adjust path so we can import from diffmap/
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from diffmap.resolve_findings import (
    REASON_DELETED_FILE,
    REASON_NOT_IN_DIFF,
    REASON_UNMAPPED_POSITION,
    REASON_UNRESOLVED_LINE,
    build_review_comments,
    format_comment_body,
    load_findings,
    main,
    map_reported_positions,
    place_findings,
    resolve_comment_line,
)
from diffmap.utils.diff_parser import parse_diff


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

# src/app.ts raw positions:
#   5:  const a = 1;     -> 10
#   6: +const b = 2;     -> 11
#   7: +if (b) run();    -> 12
#   8:  const c = 3;     -> 13
#   9: -const old = 0;   -> None
#  10:  const d = 4;     -> 14
PR_DIFF = textwrap.dedent("""\
    diff --git a/src/app.ts b/src/app.ts
    --- a/src/app.ts
    +++ b/src/app.ts
    @@ -10,4 +10,5 @@
     const a = 1;
    +const b = 2;
    +if (b) run();
     const c = 3;
    -const old = 0;
     const d = 4;
    diff --git a/src/gone.ts b/src/gone.ts
    deleted file mode 100644
    --- a/src/gone.ts
    +++ /dev/null
    @@ -1,1 +0,0 @@
    -x();
""")

MOVE_DIFF = textwrap.dedent("""\
    diff --git a/src/a.py b/src/a.py
    --- a/src/a.py
    +++ b/src/a.py
    @@ -1,4 +1,1 @@
     import os
    -def helper(x):
    -    return x * 2
    -
    diff --git a/src/b.py b/src/b.py
    --- a/src/b.py
    +++ b/src/b.py
    @@ -1,1 +1,4 @@
     import sys
    +def helper(x):
    +    return x * 2
    +
""")


@pytest.fixture
def diff_files():
    return parse_diff(PR_DIFF)


@pytest.fixture
def files_by_path(diff_files):
    return {f.path: f for f in diff_files}


@pytest.fixture
def findings():
    return [
        {"file": "src/app.ts", "diff_line": 7, "severity": "high", "title": "A"},
        {"file": "src/app.ts", "diff_line": 9, "severity": "low", "title": "B"},
        {"file": "src/gone.ts", "line": 1, "title": "C"},
        {"file": "src/other.ts", "line": 3, "title": "D"},
        {"file": "src/app.ts", "line": 99, "title": "E"},
        {"file": "src/app.ts", "line": 30, "line_text": "const b = 2;", "title": "F"},
    ]


# ============================================================================
# load_findings
# ============================================================================


class TestLoadFindings:
    def test_merges_files(self, tmp_path):
        first = tmp_path / "logic.json"
        second = tmp_path / "security.json"
        first.write_text(json.dumps([{"file": "a.ts", "line": 1}]), encoding="utf-8")
        second.write_text(json.dumps([{"file": "b.ts", "line": 2}, "noise"]), encoding="utf-8")

        findings = load_findings([str(first), str(second)])

        assert [f["file"] for f in findings] == ["a.ts", "b.ts"]

    def test_missing_and_malformed_skipped(self, tmp_path):
        broken = tmp_path / "broken.json"
        broken.write_text("{not json", encoding="utf-8")
        obj = tmp_path / "object.json"
        obj.write_text(json.dumps({"file": "a.ts"}), encoding="utf-8")

        findings = load_findings([str(tmp_path / "missing.json"), str(broken), str(obj)])

        assert findings == []


# ============================================================================
# map_reported_positions / resolve_comment_line
# ============================================================================


class TestMapReportedPositions:
    def test_maps_positions(self, files_by_path):
        mapped, unmapped = map_reported_positions(
            [
                {"file": "src/app.ts", "diff_line": 6},
                {"file": "src/app.ts", "diff_line": "10"},
                {"file": "src/app.ts", "diff_line": 9},
                {"file": "src/app.ts", "diff_line": 2},
                {"file": "src/app.ts", "line": 13},
                {"file": "src/nope.ts", "diff_line": 6},
            ],
            files_by_path,
        )
        assert [f.get("line") for f in mapped] == [11, 14, 13]
        assert [f["reason"] for f in unmapped] == [
            REASON_UNMAPPED_POSITION,
            REASON_UNMAPPED_POSITION,
            REASON_NOT_IN_DIFF,
        ]

    def test_inputs_not_mutated(self, files_by_path):
        finding = {"file": "src/app.ts", "diff_line": 6}
        map_reported_positions([finding], files_by_path)
        assert "line" not in finding


class TestResolveCommentLine:
    def test_visible_line(self, files_by_path):
        assert resolve_comment_line("src/app.ts", 11, files_by_path) == 11

    def test_string_line(self, files_by_path):
        assert resolve_comment_line("src/app.ts", "14", files_by_path) == 14

    @pytest.mark.parametrize("line", [0, -3, 99, None, "abc", 11.5, True])
    def test_invalid_line(self, files_by_path, line):
        assert resolve_comment_line("src/app.ts", line, files_by_path) is None

    def test_deleted_file(self, files_by_path):
        assert resolve_comment_line("src/gone.ts", 1, files_by_path) is None

    def test_missing_file(self, files_by_path):
        assert resolve_comment_line("missing.ts", 2, files_by_path) is None


# ============================================================================
# place_findings
# ============================================================================


class TestPlaceFindings:
    def test_split_inline_and_summary(self, findings, diff_files):
        result = place_findings(findings, diff_files)

        assert [(f["title"], f["line"]) for f in result["inline"]] == [("F", 11), ("A", 12)]
        reasons = {f["title"]: f["reason"] for f in result["summary_only"]}
        assert reasons == {
            "B": REASON_UNMAPPED_POSITION,
            "C": REASON_DELETED_FILE,
            "D": REASON_NOT_IN_DIFF,
            "E": REASON_UNRESOLVED_LINE,
        }

    def test_stats(self, findings, diff_files):
        stats = place_findings(findings, diff_files)["stats"]
        assert stats == {
            "total_findings": 6,
            "inline": 2,
            "summary_only": 4,
            "lines_corrected": 1,
            "moves_suppressed": 0,
            "move_facts": 0,
        }

    def test_every_finding_accounted_for(self, findings, diff_files):
        result = place_findings(findings, diff_files)
        assert len(result["inline"]) + len(result["summary_only"]) == len(findings)

    def test_move_suppression(self):
        finding = {
            "file": "src/b.py",
            "line": 2,
            "title": "Function removed",
            "message": "helper() was deleted",
            "line_text": "def helper(x):",
        }
        diff_files = parse_diff(MOVE_DIFF)

        result = place_findings([finding], diff_files)
        assert result["inline"] == []
        assert result["stats"]["moves_suppressed"] == 1
        assert result["stats"]["move_facts"] == 1

        kept = place_findings([finding], diff_files, suppress_moves=False)
        assert [f["line"] for f in kept["inline"]] == [2]

    def test_fractional_line_is_summary_only(self, diff_files):
        result = place_findings([{"file": "src/app.ts", "line": 11.5}], diff_files)
        assert result["inline"] == []
        assert result["summary_only"][0]["reason"] == REASON_UNRESOLVED_LINE

    def test_no_findings(self, diff_files):
        result = place_findings([], diff_files)
        assert result["inline"] == []
        assert result["summary_only"] == []


# ============================================================================
# Comment formatting
# ============================================================================


class TestFormatCommentBody:
    def test_full_finding(self):
        body = format_comment_body(
            {
                "severity": "high",
                "category": "security",
                "title": "SQL injection",
                "message": "Use bound parameters.",
                "suggestion": "db.query(sql, [id])",
            }
        )
        assert body == (
            "**[HIGH]** `security` SQL injection\n"
            "Use bound parameters.\n"
            "\n"
            "```suggestion\n"
            "db.query(sql, [id])\n"
            "```"
        )

    def test_minimal_finding(self):
        assert format_comment_body({}) == "**[INFO]**"

    def test_description_fallback(self):
        body = format_comment_body({"severity": "medium", "description": "Check bounds."})
        assert body == "**[MEDIUM]**\nCheck bounds."


class TestBuildReviewComments:
    def test_payloads(self):
        comments = build_review_comments(
            [
                {"file": "src/app.ts", "line": 11, "severity": "low", "title": "x"},
                {"file": "src/app.ts", "line": "12"},
                {"file": "", "line": 3},
                {"file": "src/app.ts", "line": 0},
            ]
        )
        assert [(c["path"], c["line"], c["side"]) for c in comments] == [
            ("src/app.ts", 11, "RIGHT"),
            ("src/app.ts", 12, "RIGHT"),
        ]
        assert comments[0]["body"] == "**[LOW]** x"


# ============================================================================
# CLI
# ============================================================================


class TestMain:
    def test_writes_output(self, tmp_path, findings):
        diff_path = tmp_path / "pr.diff"
        diff_path.write_text(PR_DIFF, encoding="utf-8")
        findings_path = tmp_path / "findings.json"
        findings_path.write_text(json.dumps(findings), encoding="utf-8")
        output_path = tmp_path / "placement.json"

        rc = main([
            "--diff", str(diff_path),
            "--findings", str(findings_path), str(tmp_path / "absent.json"),
            "--output", str(output_path),
        ])

        assert rc == 0
        result = json.loads(output_path.read_text(encoding="utf-8"))
        assert result["stats"]["inline"] == 2
        assert [c["line"] for c in result["comments"]] == [11, 12]
        assert len(result["summary_only"]) == 4

    def test_stdout(self, tmp_path, capsys):
        diff_path = tmp_path / "pr.diff"
        diff_path.write_text(PR_DIFF, encoding="utf-8")
        findings_path = tmp_path / "findings.json"
        findings_path.write_text(
            json.dumps([{"file": "src/app.ts", "diff_line": 6}]), encoding="utf-8"
        )

        rc = main(["--diff", str(diff_path), "--findings", str(findings_path)])

        assert rc == 0
        result = json.loads(capsys.readouterr().out)
        assert result["comments"][0]["line"] == 11

    def test_missing_diff(self, tmp_path, capsys):
        rc = main([
            "--diff", str(tmp_path / "missing.diff"),
            "--findings", str(tmp_path / "f.json"),
        ])
        assert rc == 1
        assert "Diff file not found" in capsys.readouterr().err
