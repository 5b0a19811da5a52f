"""
Work Evaluation
===============

Judges whether an agent's declared completion is actually complete:
acceptance-criteria coverage, CI, code review, build/lint and PR
mergeability. Any failing check yields INCOMPLETE plus a
criterion-specific feedback string that can be injected directly into a
continuation message.

Also parses reviewer-agent output into a structured review report::

    VERDICT: CHANGES_REQUESTED
    ITERATION: 1
    src/auth.py:42: [HIGH] Password compared with ==
    [LOW] Missing docstring
    FEEDBACK_FOR_AGENT: |
      Use hmac.compare_digest for the password check.
"""

import re
from dataclasses import dataclass, replace
from typing import Any, Iterable, Optional, Sequence

import structlog

from autopilot.core.autonomous.collaborators import CiCheck, PullRequestInfo
from autopilot.core.autonomous.signal_parser import ParsedSignal, ParseResult, SignalParser
from autopilot.core.models import (
    CiConclusion,
    EvaluationStatus,
    ReviewIssueSeverity,
    ReviewVerdict,
    StatusSignal,
    WorkEvaluation,
)

logger = structlog.get_logger()

PASS = "pass"
FAIL = "fail"
PENDING = "pending"
UNKNOWN = "unknown"


# ==========================================================================
# Review Report
# ==========================================================================

@dataclass(frozen=True)
class ReviewIssue:
    severity: ReviewIssueSeverity
    text: str
    file: Optional[str] = None
    line: Optional[int] = None

    @property
    def location(self) -> Optional[str]:
        if not self.file:
            return None
        return f"{self.file}:{self.line}" if self.line else self.file

    def describe(self) -> str:
        prefix = f"[{self.severity.value.upper()}]"
        return f"{prefix} {self.location}: {self.text}" if self.location else f"{prefix} {self.text}"

    def to_dict(self) -> dict:
        return {"severity": self.severity.value, "text": self.text, "file": self.file, "line": self.line}

    @classmethod
    def from_dict(cls, data: dict) -> "ReviewIssue":
        return cls(
            severity=ReviewIssueSeverity(data.get("severity", "medium")),
            text=data.get("text", ""),
            file=data.get("file"),
            line=data.get("line"),
        )


@dataclass(frozen=True)
class ReviewReport:
    """A review verdict for one revision of a story."""
    verdict: ReviewVerdict
    issues: tuple[ReviewIssue, ...] = ()
    feedback: Optional[str] = None
    iteration: Optional[int] = None
    revision: int = 0

    @property
    def blocking_issues(self) -> list[ReviewIssue]:
        return [i for i in self.issues if i.severity.blocks_merge]

    @property
    def highest_severity(self) -> Optional[ReviewIssueSeverity]:
        if not self.issues:
            return None
        return max((i.severity for i in self.issues), key=lambda s: s.rank)

    @property
    def approved(self) -> bool:
        return self.verdict == ReviewVerdict.APPROVED and not self.blocking_issues


class ReviewOutputParser:
    """Parses reviewer-agent output into a ReviewReport."""

    VERDICT_LINE = re.compile(r"^\s*\**VERDICT\**\s*:\s*\**\s*([A-Z_ ]+?)\s*\**\s*$", re.IGNORECASE)
    ITERATION_LINE = re.compile(r"^\s*ITERATION\s*:\s*(\d+)\s*$", re.IGNORECASE)
    LOCATED_ISSUE = re.compile(
        r"^\s*[-*]?\s*([\w./-]+):(\d+):?\s*\[(CRITICAL|HIGH|MEDIUM|LOW|NITPICK)\]\s*(.+?)\s*$",
        re.IGNORECASE,
    )
    PLAIN_ISSUE = re.compile(r"^\s*[-*]?\s*\[(CRITICAL|HIGH|MEDIUM|LOW|NITPICK)\]\s*(.+?)\s*$", re.IGNORECASE)

    VERDICT_ALIASES = {
        "APPROVED": ReviewVerdict.APPROVED,
        "APPROVE": ReviewVerdict.APPROVED,
        "LGTM": ReviewVerdict.APPROVED,
        "CHANGES_REQUESTED": ReviewVerdict.CHANGES_REQUESTED,
        "REQUEST_CHANGES": ReviewVerdict.CHANGES_REQUESTED,
        "CHANGES REQUESTED": ReviewVerdict.CHANGES_REQUESTED,
        "NEEDS_DISCUSSION": ReviewVerdict.NEEDS_DISCUSSION,
        "NEEDS DISCUSSION": ReviewVerdict.NEEDS_DISCUSSION,
    }

    def __init__(self, signal_parser: Optional[SignalParser] = None):
        self.signal_parser = signal_parser or SignalParser()

    def parse(self, output: str, revision: int = 0) -> ReviewReport:
        lines = (output or "").splitlines()
        verdict: Optional[ReviewVerdict] = None
        iteration: Optional[int] = None
        issues: list[ReviewIssue] = []
        feedback: Optional[str] = None

        skip_until = -1
        for index, line in enumerate(lines):
            if index <= skip_until:
                continue

            match = self.VERDICT_LINE.match(line)
            if match:
                verdict = self.VERDICT_ALIASES.get(match.group(1).strip().upper(), verdict)
                continue

            match = self.ITERATION_LINE.match(line)
            if match:
                iteration = int(match.group(1))
                continue

            match = self.LOCATED_ISSUE.match(line)
            if match:
                issues.append(ReviewIssue(
                    severity=ReviewIssueSeverity(match.group(3).lower()),
                    text=match.group(4),
                    file=match.group(1),
                    line=int(match.group(2)),
                ))
                continue

            match = self.PLAIN_ISSUE.match(line)
            if match:
                issues.append(ReviewIssue(
                    severity=ReviewIssueSeverity(match.group(1).lower()),
                    text=match.group(2),
                ))
                continue

            if line.strip().startswith("FEEDBACK_FOR_AGENT:") and feedback is None:
                tail = list(self._indented_tail(lines, index + 1))
                captured = self.signal_parser.capture_fields([line.strip()] + tail)
                feedback = captured.get("FEEDBACK_FOR_AGENT") or None
                skip_until = index + len(tail)

        if verdict is None:
            verdict = self._infer_verdict(output, issues)

        # An approval with open blocking issues is not an approval
        if verdict == ReviewVerdict.APPROVED and any(i.severity.blocks_merge for i in issues):
            verdict = ReviewVerdict.CHANGES_REQUESTED

        return ReviewReport(
            verdict=verdict,
            issues=tuple(issues),
            feedback=feedback,
            iteration=iteration,
            revision=revision,
        )

    @staticmethod
    def _indented_tail(lines: list[str], start: int) -> Iterable[str]:
        for line in lines[start:]:
            if line.strip() and not line[:1].isspace():
                break
            yield line

    def _infer_verdict(self, output: str, issues: Sequence[ReviewIssue]) -> ReviewVerdict:
        result = self.signal_parser.parse(output)
        if isinstance(result, ParsedSignal):
            if result.signal == StatusSignal.REVIEW_PASSED:
                return ReviewVerdict.APPROVED
            if result.signal == StatusSignal.REVIEW_FAILED:
                return ReviewVerdict.CHANGES_REQUESTED
        if any(i.severity.blocks_merge for i in issues):
            return ReviewVerdict.CHANGES_REQUESTED
        return ReviewVerdict.NEEDS_DISCUSSION


def parse_review_output(output: str, revision: int = 0) -> ReviewReport:
    return ReviewOutputParser().parse(output, revision=revision)


# ==========================================================================
# Evaluation
# ==========================================================================

@dataclass(frozen=True)
class Evaluation:
    """
    Point-in-time judgement of a story.

    ``review`` is only set when the review covers the current revision;
    ``mergeable`` is tri-state and None before a PR exists.
    """
    criteria_total: int = 0
    unmet_criteria: tuple[str, ...] = ()
    ci_status: Optional[CiConclusion] = None
    failed_checks: tuple[str, ...] = ()
    pending_checks: tuple[str, ...] = ()
    review: Optional[ReviewReport] = None
    build_status: str = UNKNOWN
    lint_status: str = UNKNOWN
    has_pr: bool = False
    mergeable: Optional[bool] = None
    conflicting_files: tuple[str, ...] = ()
    feedback: str = ""

    @property
    def criteria_met(self) -> int:
        return self.criteria_total - len(self.unmet_criteria)

    @property
    def all_criteria_met(self) -> bool:
        return not self.unmet_criteria

    @property
    def ci_green(self) -> bool:
        return self.ci_status in (None, CiConclusion.SUCCESS)

    @property
    def ci_pending(self) -> bool:
        return self.ci_status == CiConclusion.PENDING

    @property
    def ci_failing(self) -> bool:
        return self.ci_status in (CiConclusion.FAILURE, CiConclusion.CANCELLED)

    @property
    def build_ok(self) -> bool:
        return self.build_status in (PASS, UNKNOWN)

    @property
    def lint_ok(self) -> bool:
        return self.lint_status in (PASS, UNKNOWN)

    @property
    def has_review(self) -> bool:
        return self.review is not None

    @property
    def review_verdict(self) -> Optional[ReviewVerdict]:
        return self.review.verdict if self.review else None

    @property
    def review_approved(self) -> bool:
        return self.review is not None and self.review.approved

    @property
    def mergeable_ok(self) -> bool:
        return self.mergeable is True

    @property
    def status(self) -> EvaluationStatus:
        complete = (
            self.all_criteria_met
            and self.ci_green
            and self.review_approved
            and self.build_ok
            and self.lint_ok
            and self.mergeable_ok
        )
        return EvaluationStatus.COMPLETE if complete else EvaluationStatus.INCOMPLETE

    @property
    def is_complete(self) -> bool:
        return self.status == EvaluationStatus.COMPLETE


class WorkEvaluator:
    """
    Builds Evaluations from the story source of truth, CI results, the
    latest review and the PR state.
    """

    BUILD_KEYWORDS = ("build", "compile")
    LINT_KEYWORDS = ("lint", "format", "clippy", "flake8", "ruff", "eslint")

    def __init__(self, required_checks: Optional[Sequence[str]] = None):
        self.required_checks = list(required_checks or [])

    def evaluate(
        self,
        criteria: Sequence[Any],
        ci_checks: Sequence[CiCheck] = (),
        review: Optional[ReviewReport] = None,
        revision: int = 0,
        pull_request: Optional[PullRequestInfo] = None,
        signal: Optional[ParseResult] = None,
    ) -> Evaluation:
        unmet = tuple(self._criterion_text(c) for c in criteria if not self._criterion_done(c))

        latest = self._latest_per_check(ci_checks)
        ci_status, failed, pending = self._aggregate_ci(latest)

        current_review = review if review is not None and review.revision == revision else None

        build_status = self._keyword_status(latest, self.BUILD_KEYWORDS, signal, "BUILD")
        lint_status = self._keyword_status(latest, self.LINT_KEYWORDS, signal, "LINT")

        evaluation = Evaluation(
            criteria_total=len(criteria),
            unmet_criteria=unmet,
            ci_status=ci_status,
            failed_checks=tuple(failed),
            pending_checks=tuple(pending),
            review=current_review,
            build_status=build_status,
            lint_status=lint_status,
            has_pr=pull_request is not None,
            mergeable=pull_request.mergeable if pull_request else None,
            conflicting_files=tuple(pull_request.conflicting_files) if pull_request else (),
        )
        return replace(evaluation, feedback=self.generate_feedback(evaluation))

    # ----------------------------------------------------------------------
    # Criteria
    # ----------------------------------------------------------------------

    @staticmethod
    def _criterion_done(criterion: Any) -> bool:
        if isinstance(criterion, dict):
            return bool(criterion.get("done"))
        return bool(getattr(criterion, "done", False))

    @staticmethod
    def _criterion_text(criterion: Any) -> str:
        if isinstance(criterion, dict):
            return str(criterion.get("text", ""))
        return str(getattr(criterion, "text", criterion))

    # ----------------------------------------------------------------------
    # CI
    # ----------------------------------------------------------------------

    @staticmethod
    def _latest_per_check(checks: Sequence[CiCheck]) -> dict[str, CiCheck]:
        """Later entries win; entries with timestamps win over older timestamps."""
        latest: dict[str, CiCheck] = {}
        for check in checks:
            current = latest.get(check.name)
            if (
                current is not None
                and current.updated_at is not None
                and check.updated_at is not None
                and check.updated_at < current.updated_at
            ):
                continue
            latest[check.name] = check
        return latest

    def _aggregate_ci(
        self,
        latest: dict[str, CiCheck],
    ) -> tuple[Optional[CiConclusion], list[str], list[str]]:
        names = self.required_checks or list(latest)
        if not names:
            return None, [], []

        failed, pending = [], []
        for name in names:
            check = latest.get(name)
            if check is None or check.conclusion == CiConclusion.PENDING:
                pending.append(name)
            elif check.conclusion in (CiConclusion.FAILURE, CiConclusion.CANCELLED):
                failed.append(name)

        if failed:
            return CiConclusion.FAILURE, failed, pending
        if pending:
            return CiConclusion.PENDING, failed, pending
        return CiConclusion.SUCCESS, failed, pending

    @staticmethod
    def _keyword_status(
        latest: dict[str, CiCheck],
        keywords: Sequence[str],
        signal: Optional[ParseResult],
        field_name: str,
    ) -> str:
        matching = [c for name, c in latest.items() if any(k in name.lower() for k in keywords)]
        if matching:
            if any(c.conclusion in (CiConclusion.FAILURE, CiConclusion.CANCELLED) for c in matching):
                return FAIL
            if any(c.conclusion == CiConclusion.PENDING for c in matching):
                return PENDING
            return PASS

        if isinstance(signal, ParsedSignal):
            value = (signal.get(field_name) or "").strip().lower()
            if value in ("pass", "passed", "passing", "ok", "success", "green"):
                return PASS
            if value in ("fail", "failed", "failing", "error", "red"):
                return FAIL
        return UNKNOWN

    # ----------------------------------------------------------------------
    # Feedback
    # ----------------------------------------------------------------------

    @staticmethod
    def generate_feedback(evaluation: Evaluation) -> str:
        """Criterion-specific feedback suitable for a continuation message."""
        lines: list[str] = []

        for text in evaluation.unmet_criteria:
            lines.append(f"- Acceptance criterion not met: {text}")

        for name in evaluation.failed_checks:
            lines.append(f"- CI check '{name}' is failing")
        if evaluation.build_status == FAIL and not any("build" in n.lower() for n in evaluation.failed_checks):
            lines.append("- Build is failing")
        if evaluation.lint_status == FAIL and not any("lint" in n.lower() for n in evaluation.failed_checks):
            lines.append("- Lint is failing")

        review = evaluation.review
        if review is not None and not review.approved:
            issues = sorted(review.issues, key=lambda i: -i.severity.rank)
            for issue in issues:
                lines.append(f"- Review issue {issue.describe()}")
            if review.feedback:
                lines.append(f"- Reviewer feedback: {review.feedback.strip()}")

        if evaluation.mergeable is False:
            if evaluation.conflicting_files:
                lines.append(
                    f"- Pull request has merge conflicts in: {', '.join(evaluation.conflicting_files)}"
                )
            else:
                lines.append("- Pull request is not mergeable")

        return "\n".join(lines)

    # ----------------------------------------------------------------------
    # Persistence
    # ----------------------------------------------------------------------

    @staticmethod
    def to_record(
        evaluation: Evaluation,
        session_id: Any,
        story_id: str,
        agent_id: Optional[str] = None,
        signal: Optional[str] = None,
    ) -> WorkEvaluation:
        return WorkEvaluation(
            session_id=session_id,
            story_id=story_id,
            agent_id=agent_id,
            signal=signal,
            status=evaluation.status,
            criteria_met=evaluation.criteria_met,
            criteria_total=evaluation.criteria_total,
            ci_status=evaluation.ci_status,
            review_verdict=evaluation.review_verdict,
            build_status=evaluation.build_status,
            lint_status=evaluation.lint_status,
            mergeable=evaluation.mergeable,
            failed_checks=list(evaluation.failed_checks),
            feedback=evaluation.feedback or None,
        )


