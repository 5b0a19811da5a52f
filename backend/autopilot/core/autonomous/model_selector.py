"""
Model Selector
==============

Maps task complexity, retry count and review severity to a model tier.

Tier path: fast -> standard -> premium. Escalation rules are applied after
the base complexity mapping and the highest tier wins; an explicit
override always wins.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from autopilot.core.config import settings
from autopilot.core.models import ModelTier, ReviewIssueSeverity, TaskComplexity

logger = structlog.get_logger()


@dataclass(frozen=True)
class TaskProfile:
    """The inputs of the complexity score."""
    criteria_count: int = 0
    file_count: int = 0
    dependency_depth: int = 0

    @classmethod
    def from_item(cls, item: Any) -> "TaskProfile":
        """Build from a planned item or a persisted work item."""
        criteria = getattr(item, "criteria", None)
        if criteria is None:
            criteria = getattr(item, "acceptance_criteria", None) or []
        return cls(
            criteria_count=len(criteria),
            file_count=len(getattr(item, "referenced_files", None) or []),
            dependency_depth=getattr(item, "dependency_depth", 0) or 0,
        )


@dataclass
class ModelSelection:
    tier: ModelTier
    model: str
    complexity: TaskComplexity
    score: float
    reasons: list[str] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons)


class ModelSelector:
    """Weighted complexity scoring plus escalation rules."""

    TIER_PATH = [ModelTier.FAST, ModelTier.STANDARD, ModelTier.PREMIUM]

    COMPLEXITY_TIERS = {
        TaskComplexity.SIMPLE: ModelTier.FAST,
        TaskComplexity.MEDIUM: ModelTier.STANDARD,
        TaskComplexity.COMPLEX: ModelTier.PREMIUM,
    }

    def __init__(
        self,
        models: Optional[dict[ModelTier, str]] = None,
        criteria_weight: Optional[float] = None,
        files_weight: Optional[float] = None,
        depth_weight: Optional[float] = None,
        medium_threshold: Optional[float] = None,
        complex_threshold: Optional[float] = None,
        escalate_after_retries: Optional[int] = None,
    ):
        self.models = models or {
            ModelTier.FAST: settings.MODEL_FAST,
            ModelTier.STANDARD: settings.MODEL_STANDARD,
            ModelTier.PREMIUM: settings.MODEL_PREMIUM,
        }
        self.criteria_weight = criteria_weight if criteria_weight is not None else settings.COMPLEXITY_CRITERIA_WEIGHT
        self.files_weight = files_weight if files_weight is not None else settings.COMPLEXITY_FILES_WEIGHT
        self.depth_weight = depth_weight if depth_weight is not None else settings.COMPLEXITY_DEPTH_WEIGHT
        self.medium_threshold = medium_threshold if medium_threshold is not None else settings.COMPLEXITY_MEDIUM_THRESHOLD
        self.complex_threshold = complex_threshold if complex_threshold is not None else settings.COMPLEXITY_COMPLEX_THRESHOLD
        self.escalate_after_retries = (
            escalate_after_retries if escalate_after_retries is not None else settings.ESCALATE_AFTER_RETRIES
        )

    def score(self, task: TaskProfile) -> float:
        return (
            self.criteria_weight * task.criteria_count
            + self.files_weight * task.file_count
            + self.depth_weight * task.dependency_depth
        )

    def classify(self, task: TaskProfile) -> tuple[TaskComplexity, float]:
        score = self.score(task)
        if score >= self.complex_threshold:
            return TaskComplexity.COMPLEX, score
        if score >= self.medium_threshold:
            return TaskComplexity.MEDIUM, score
        return TaskComplexity.SIMPLE, score

    def escalate(self, tier: ModelTier) -> ModelTier:
        """Next tier up; premium stays premium."""
        index = self.TIER_PATH.index(tier)
        return self.TIER_PATH[min(index + 1, len(self.TIER_PATH) - 1)]

    def tier_for_model(self, model: str) -> ModelTier:
        for tier, name in self.models.items():
            if name == model:
                return tier
        low = model.lower()
        if "haiku" in low:
            return ModelTier.FAST
        if "opus" in low:
            return ModelTier.PREMIUM
        return ModelTier.STANDARD

    def select(
        self,
        task: Any,
        retry_count: int = 0,
        review_severity: Optional[ReviewIssueSeverity] = None,
        override: Optional[str] = None,
        minimum_tier: Optional[ModelTier] = None,
    ) -> ModelSelection:
        """
        Pick a tier for the next spawn.

        Args:
            task: TaskProfile, or any item with criteria/referenced_files/dependency_depth
            retry_count: Failed attempts so far for this story
            review_severity: Highest open review issue severity, if any
            override: Tier name or model name that always wins
            minimum_tier: Floor set by recovery (model escalation)
        """
        profile = task if isinstance(task, TaskProfile) else TaskProfile.from_item(task)
        complexity, score = self.classify(profile)
        tier = self.COMPLEXITY_TIERS[complexity]
        reasons = [f"{complexity.value} task (score {score:.1f}) -> {tier.value}"]

        if retry_count >= self.escalate_after_retries:
            escalated = self.escalate(tier)
            if escalated != tier:
                reasons.append(f"retry_count {retry_count} -> {escalated.value}")
            tier = escalated

        if review_severity == ReviewIssueSeverity.CRITICAL and tier != ModelTier.PREMIUM:
            tier = ModelTier.PREMIUM
            reasons.append("critical review issue -> premium")

        if minimum_tier and self.TIER_PATH.index(minimum_tier) > self.TIER_PATH.index(tier):
            tier = minimum_tier
            reasons.append(f"recovery escalation -> {tier.value}")

        model = self.models[tier]
        if override:
            try:
                tier = ModelTier(override.lower())
                model = self.models[tier]
            except ValueError:
                model = override
                tier = self.tier_for_model(override)
            reasons.append(f"override -> {model}")

        selection = ModelSelection(
            tier=tier,
            model=model,
            complexity=complexity,
            score=score,
            reasons=reasons,
        )
        logger.info(
            "Model selected",
            tier=tier.value,
            model=model,
            complexity=complexity.value,
            score=score,
            reason=selection.reason,
        )
        return selection
