"""
Autopilot - Work Evaluation Tests
=================================
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from autopilot.core.autonomous.collaborators import CiCheck, PullRequestInfo
from autopilot.core.autonomous.signal_parser import parse_signal
from autopilot.core.autonomous.work_evaluator import (
    FAIL,
    PASS,
    PENDING,
    UNKNOWN,
    ReviewIssue,
    ReviewReport,
    WorkEvaluator,
    parse_review_output,
)
from autopilot.core.autonomous.work_planner import AcceptanceCriterion
from autopilot.core.models import (
    CiConclusion,
    EvaluationStatus,
    ReviewIssueSeverity,
    ReviewVerdict,
)


REVIEW_OUTPUT = """\
Reviewed the login changes.

VERDICT: CHANGES_REQUESTED
ITERATION: 2
src/auth.py:42: [HIGH] Password compared with ==
- [LOW] Missing docstring
FEEDBACK_FOR_AGENT: |
  Use hmac.compare_digest.
  Add a test.
"""

DONE = [AcceptanceCriterion("Login works", done=True), {"text": "Logout works", "done": True}]


def approved(revision: int = 0) -> ReviewReport:
    return ReviewReport(verdict=ReviewVerdict.APPROVED, revision=revision)


# ==========================================================================
# Review Parsing
# ==========================================================================

class TestReviewParsing:
    """Tests for reviewer output parsing."""

    def test_full_review(self):
        """Verdict, iteration, located and plain issues, and feedback are parsed."""
        report = parse_review_output(REVIEW_OUTPUT, revision=3)

        assert report.verdict == ReviewVerdict.CHANGES_REQUESTED
        assert report.iteration == 2
        assert report.revision == 3
        assert report.issues == (
            ReviewIssue(ReviewIssueSeverity.HIGH, "Password compared with ==", "src/auth.py", 42),
            ReviewIssue(ReviewIssueSeverity.LOW, "Missing docstring"),
        )
        assert report.feedback == "Use hmac.compare_digest.\nAdd a test."
        assert report.highest_severity == ReviewIssueSeverity.HIGH
        assert len(report.blocking_issues) == 1
        assert not report.approved

    def test_issue_describe(self):
        issue = ReviewIssue(ReviewIssueSeverity.HIGH, "Password compared with ==", "src/auth.py", 42)

        assert issue.describe() == "[HIGH] src/auth.py:42: Password compared with =="
        assert ReviewIssue(ReviewIssueSeverity.LOW, "Typo").describe() == "[LOW] Typo"
        assert ReviewIssue.from_dict(issue.to_dict()) == issue

    def test_approval_with_blocking_issue_is_downgraded(self):
        report = parse_review_output("VERDICT: APPROVED\n[CRITICAL] Secrets committed")

        assert report.verdict == ReviewVerdict.CHANGES_REQUESTED

    def test_approval_with_minor_issues(self):
        report = parse_review_output("VERDICT: LGTM\n[NITPICK] Rename variable")

        assert report.verdict == ReviewVerdict.APPROVED
        assert report.approved

    def test_verdict_from_status_signal(self):
        assert parse_review_output("Fine.\nSTATUS: REVIEW_PASSED").verdict == ReviewVerdict.APPROVED
        assert parse_review_output("No.\nSTATUS: REVIEW_FAILED").verdict == ReviewVerdict.CHANGES_REQUESTED

    def test_verdict_inferred_from_issues(self):
        assert parse_review_output("[HIGH] Broken").verdict == ReviewVerdict.CHANGES_REQUESTED
        assert parse_review_output("Not sure what to think.").verdict == ReviewVerdict.NEEDS_DISCUSSION


# ==========================================================================
# Evaluation
# ==========================================================================

class TestEvaluation:
    """Tests for WorkEvaluator.evaluate."""

    def test_unmet_criteria(self):
        evaluation = WorkEvaluator().evaluate([AcceptanceCriterion("Login works"), {"text": "Logout", "done": True}])

        assert evaluation.unmet_criteria == ("Login works",)
        assert evaluation.criteria_met == 1
        assert evaluation.criteria_total == 2
        assert "- Acceptance criterion not met: Login works" in evaluation.feedback

    def test_keyword_statuses_from_check_names(self):
        """Build and lint status come from check names."""
        checks = [
            CiCheck("build", CiConclusion.FAILURE),
            CiCheck("lint", CiConclusion.SUCCESS),
            CiCheck("unit-tests", CiConclusion.SUCCESS),
        ]

        evaluation = WorkEvaluator().evaluate(DONE, ci_checks=checks)

        assert evaluation.ci_status == CiConclusion.FAILURE
        assert evaluation.ci_failing
        assert evaluation.failed_checks == ("build",)
        assert evaluation.build_status == FAIL
        assert evaluation.lint_status == PASS
        assert "- CI check 'build' is failing" in evaluation.feedback
        assert "- Build is failing" not in evaluation.feedback

    def test_keyword_statuses_from_signal(self):
        signal = parse_signal("STATUS: COMPLETE\nBUILD: passed\nLINT: failing")

        evaluation = WorkEvaluator().evaluate(DONE, signal=signal)

        assert evaluation.ci_status is None
        assert evaluation.ci_green
        assert evaluation.build_status == PASS
        assert evaluation.lint_status == FAIL
        assert not evaluation.lint_ok
        assert "- Lint is failing" in evaluation.feedback

    def test_unknown_statuses_pass(self):
        evaluation = WorkEvaluator().evaluate(DONE)

        assert evaluation.build_status == UNKNOWN
        assert evaluation.build_ok and evaluation.lint_ok

    def test_required_check_missing_is_pending(self):
        evaluator = WorkEvaluator(required_checks=["tests", "e2e"])

        evaluation = evaluator.evaluate(DONE, ci_checks=[CiCheck("tests", CiConclusion.SUCCESS)])

        assert evaluation.ci_status == CiConclusion.PENDING
        assert evaluation.pending_checks == ("e2e",)
        assert evaluation.ci_pending

    def test_pending_build_check(self):
        evaluation = WorkEvaluator().evaluate(DONE, ci_checks=[CiCheck("build", CiConclusion.PENDING)])

        assert evaluation.build_status == PENDING
        assert not evaluation.build_ok

    def test_latest_check_result_wins(self):
        now = datetime.now(timezone.utc)
        checks = [
            CiCheck("tests", CiConclusion.SUCCESS, updated_at=now),
            CiCheck("tests", CiConclusion.FAILURE, updated_at=now - timedelta(minutes=5)),
        ]

        assert WorkEvaluator().evaluate(DONE, ci_checks=checks).ci_status == CiConclusion.SUCCESS

    def test_stale_review_is_ignored(self):
        """A review of an older revision does not count."""
        evaluation = WorkEvaluator().evaluate(DONE, review=approved(revision=1), revision=2)

        assert not evaluation.has_review
        assert not evaluation.review_approved

    def test_review_feedback_sorted_by_severity(self):
        review = parse_review_output(REVIEW_OUTPUT, revision=1)

        evaluation = WorkEvaluator().evaluate(DONE, review=review, revision=1)

        lines = evaluation.feedback.splitlines()
        assert lines[0] == "- Review issue [HIGH] src/auth.py:42: Password compared with =="
        assert lines[1] == "- Review issue [LOW] Missing docstring"
        assert lines[2].startswith("- Reviewer feedback: Use hmac.compare_digest.")

    def test_complete_requires_mergeable_pr(self):
        evaluator = WorkEvaluator()
        checks = [CiCheck("tests", CiConclusion.SUCCESS)]

        without_pr = evaluator.evaluate(DONE, ci_checks=checks, review=approved())
        with_pr = evaluator.evaluate(
            DONE, ci_checks=checks, review=approved(), pull_request=PullRequestInfo(number=7, mergeable=True)
        )

        assert without_pr.status == EvaluationStatus.INCOMPLETE
        assert with_pr.status == EvaluationStatus.COMPLETE
        assert with_pr.is_complete
        assert with_pr.feedback == ""

    def test_merge_conflict_feedback(self):
        pull_request = PullRequestInfo(number=7, mergeable=False, conflicting_files=("src/a.py", "src/b.py"))

        evaluation = WorkEvaluator().evaluate(DONE, pull_request=pull_request)

        assert evaluation.has_pr
        assert evaluation.mergeable is False
        assert "- Pull request has merge conflicts in: src/a.py, src/b.py" in evaluation.feedback

    def test_to_record(self):
        session_id = uuid4()
        evaluation = WorkEvaluator().evaluate(
            DONE, ci_checks=[CiCheck("build", CiConclusion.FAILURE)], review=approved()
        )

        record = WorkEvaluator.to_record(evaluation, session_id, "epic-001/story-1", agent_id="agent-1", signal="COMPLETE")

        assert record.session_id == session_id
        assert record.status == EvaluationStatus.INCOMPLETE
        assert record.criteria_met == 2
        assert record.failed_checks == ["build"]
        assert record.review_verdict == ReviewVerdict.APPROVED
        assert record.feedback == "- CI check 'build' is failing"
