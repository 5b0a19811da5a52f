"""
Autopilot - Status Signal Parser Tests
======================================
"""

from autopilot.core.autonomous.signal_parser import (
    ParsedSignal,
    SignalParser,
    Unparseable,
    extract_changed_files,
    parse_signal,
)
from autopilot.core.models import StatusSignal


REVIEW_OUTPUT = """\
Implemented the endpoint and the tests.

STATUS: NEEDS_REVIEW
PR_NUMBER: 42
FILES_CHANGED:
  - src/app.py
  - tests/test_app.py
FEEDBACK_FOR_AGENT: |
  Line one,
  line two.
"""


# ==========================================================================
# Markers
# ==========================================================================

class TestMarkers:
    """Tests for locating the STATUS line."""

    def test_plain_marker(self):
        """A plain STATUS line is recognized."""
        result = parse_signal("All done.\nSTATUS: COMPLETE")

        assert isinstance(result, ParsedSignal)
        assert result.signal == StatusSignal.COMPLETE
        assert result.line_number == 2

    def test_bold_marker_and_alias(self):
        """Markdown bold markers and the DONE alias resolve to COMPLETE."""
        result = parse_signal("**STATUS**: DONE")

        assert result.signal == StatusSignal.COMPLETE

    def test_bracket_marker_with_detail(self):
        """Trailing text after a dash becomes the DETAIL field."""
        result = parse_signal("[STATUS]: stuck - waiting on credentials")

        assert result.signal == StatusSignal.BLOCKED
        assert result.detail == "waiting on credentials"

    def test_lowercase_marker(self):
        """Markers are case-insensitive."""
        result = parse_signal("status: complete")

        assert result.signal == StatusSignal.COMPLETE

    def test_last_marker_wins(self):
        """An earlier quoted status line does not override the final one."""
        output = "Earlier I said:\nSTATUS: BLOCKED\nbut it is fixed now.\nSTATUS: COMPLETE"

        result = parse_signal(output)

        assert result.signal == StatusSignal.COMPLETE
        assert result.line_number == 4

    def test_no_marker_is_unparseable(self):
        """Prose without a marker is never treated as complete."""
        result = parse_signal("I think everything works now.")

        assert isinstance(result, Unparseable)
        assert result.reason == "no status signal"

    def test_empty_output_is_unparseable(self):
        """Empty and missing output are unparseable."""
        assert isinstance(parse_signal(""), Unparseable)
        assert isinstance(parse_signal(None), Unparseable)

    def test_unknown_word_is_unparseable(self):
        """A marker with an unknown signal word is reported by name."""
        result = parse_signal("STATUS: MAYBE")

        assert isinstance(result, Unparseable)
        assert result.reason == "unknown status signal: MAYBE"


# ==========================================================================
# Fields
# ==========================================================================

class TestFields:
    """Tests for KEY: value capture after the marker."""

    def test_scalar_list_and_block_fields(self):
        """Scalars, indented lists and literal blocks are captured."""
        result = parse_signal(REVIEW_OUTPUT)

        assert result.signal == StatusSignal.NEEDS_REVIEW
        assert result.get("PR_NUMBER") == "42"
        assert result.get_list("FILES_CHANGED") == ["src/app.py", "tests/test_app.py"]
        assert result.get("FEEDBACK_FOR_AGENT") == "Line one,\nline two."

    def test_field_lookup_is_case_insensitive(self):
        result = parse_signal(REVIEW_OUTPUT)

        assert result.get("pr_number") == "42"
        assert result.get("missing", "fallback") == "fallback"

    def test_folded_block(self):
        """A '>' block folds its lines with spaces."""
        result = parse_signal("STATUS: BLOCKED\nREASON: >\n  the staging database\n  is unreachable\n")

        assert result.get("REASON") == "the staging database is unreachable"

    def test_comma_separated_list(self):
        result = parse_signal("STATUS: COMPLETE\nFILES_CHANGED: a.py, b.py")

        assert result.get_list("FILES_CHANGED") == ["a.py", "b.py"]

    def test_capture_stops_at_blank_line(self):
        """Fields after a blank line are prose, not part of the signal."""
        result = parse_signal("STATUS: COMPLETE\nSUMMARY: ok\n\nPR_NUMBER: 9")

        assert result.get("SUMMARY") == "ok"
        assert result.get("PR_NUMBER") is None

    def test_capture_stops_at_prose(self):
        result = parse_signal("STATUS: COMPLETE\nThe rest is prose.\nPR_NUMBER: 9")

        assert result.fields == {}

    def test_explicit_detail_field_wins(self):
        result = parse_signal("STATUS: BLOCKED - short\nDETAIL: the long explanation")

        assert result.detail == "the long explanation"

    def test_capture_fields_directly(self):
        fields = SignalParser().capture_fields(["VERDICT: APPROVED", "ITERATION: 2"])

        assert fields == {"VERDICT": "APPROVED", "ITERATION": "2"}


# ==========================================================================
# Changed Files
# ==========================================================================

class TestChangedFiles:
    """Tests for extract_changed_files."""

    def test_prefers_files_changed_field(self):
        result = parse_signal(REVIEW_OUTPUT)

        assert extract_changed_files(result, "modified: other.py") == ["src/app.py", "tests/test_app.py"]

    def test_falls_back_to_prose(self):
        """Prose mentions are collected once each, in order."""
        output = "I modified: src/a.py and created: `tests/test_a.py`, then modified: src/a.py again."

        assert extract_changed_files(Unparseable(), output) == ["src/a.py", "tests/test_a.py"]

    def test_no_files(self):
        assert extract_changed_files(parse_signal("STATUS: COMPLETE"), "") == []
