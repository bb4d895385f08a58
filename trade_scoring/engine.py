"""
Trade Scoring Engine - Scoring.

============================================================
PURPOSE
============================================================
Scores an ExtractedFeatures bag against a StrategyRubric.

============================================================
SCORING LOGIC
============================================================
Metric:
    NumericTable  -> step function, direction inferred from
                     the lowest- and highest-threshold scores
    CategoryMap   -> direct lookup; signed offsets from 100
                     when any score in the map is negative
    absent value  -> score None ("missing")

Criterion:
    mean of available metric scores, or the neutral score (50)
    when none are available. Neutral on missing data is a
    product decision: missing data must not tank a composite.

Composite:
    weighted mean with weights normalized by their sum
    -> penalty rules subtract fixed amounts
    -> clamp to rubric caps (inclusive)

Violations:
    required features absent from the input. Reported even
    when scoring succeeded; such a score is advisory only.

All scores are rounded to two decimals.

============================================================
"""

import logging
import math
from typing import Any, List, Optional, Tuple

from .config import ScoringPolicyConfig
from .types import (
    AggregatedScore,
    AppliedPenalty,
    CategoryMap,
    CriterionScore,
    ExtractedFeatures,
    MetricConfig,
    MetricScore,
    NumericTable,
    StrategyRubric,
)


logger = logging.getLogger(__name__)


# =============================================================
# PRIMITIVES
# =============================================================


def clamp_score(value: float, decimals: int = 2) -> float:
    """Clamp to [0, 100] and round; non-finite values score 0."""
    if value is None or not math.isfinite(value):
        return 0.0
    return round(min(100.0, max(0.0, value)), decimals)


def evaluate_numeric_table(value: float, table: NumericTable) -> float:
    """
    Evaluate a step table.

    Increasing: score of the last threshold the value reached.
    Decreasing: score of the first threshold the value is at or
    below. Values outside the table clamp to the nearest end.
    """
    if table.is_empty:
        return 0.0

    steps = table.steps
    if table.increasing:
        score = steps[0][1]
        for threshold, step_score in steps:
            if value >= threshold:
                score = step_score
        return clamp_score(score)

    for threshold, step_score in steps:
        if value <= threshold:
            return clamp_score(step_score)
    return clamp_score(steps[-1][1])


def evaluate_category_map(value: Any, mapping: CategoryMap) -> float:
    """
    Look up a categorical value.

    Booleans use "true"/"false" keys. Unmatched values score 0.
    """
    def resolve(key: str) -> Optional[float]:
        if key not in mapping.scores:
            return None
        raw = mapping.scores[key]
        return clamp_score(100.0 + raw if mapping.signed_offsets else raw)

    if isinstance(value, bool):
        found = resolve("true" if value else "false")
        if found is not None:
            return found

    found = resolve(str(value))
    return found if found is not None else 0.0


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _coerce_numeric(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


# =============================================================
# ENGINE
# =============================================================


class ScoringEngine:
    """
    Deterministic rubric evaluator.

    Stateless per call: safe to share across concurrent
    evaluations.

    Usage:
        engine = ScoringEngine()
        result = engine.score(features, rubric)
        print(result.raw_score, result.violations)
    """

    def __init__(self, policy: Optional[ScoringPolicyConfig] = None):
        self._policy = policy or ScoringPolicyConfig()

    @property
    def policy(self) -> ScoringPolicyConfig:
        return self._policy

    def _round(self, value: float) -> float:
        return clamp_score(value, self._policy.score_decimals)

    def score_metric(self, metric: str, config: MetricConfig, raw_value: Any) -> MetricScore:
        """Score one metric against its classified configuration."""
        if raw_value is None:
            return MetricScore(metric=metric, raw_value=None, score=None,
                               reason=f"{metric}: missing", passed=False)

        if isinstance(config, NumericTable):
            numeric = _coerce_numeric(raw_value)
            if numeric is None:
                logger.debug(f"Metric {metric} value {raw_value!r} is not numeric")
                return MetricScore(metric=metric, raw_value=raw_value, score=None,
                                   reason=f"{metric}: missing", passed=False)
            score = evaluate_numeric_table(numeric, config)
        elif isinstance(config, CategoryMap):
            score = evaluate_category_map(raw_value, config)
        else:
            raise TypeError(f"Unclassified metric config for {metric}: {config!r}")

        return MetricScore(
            metric=metric,
            raw_value=raw_value,
            score=score,
            reason=f"{metric}: {format_value(raw_value)} → {format_value(score)}",
            passed=score >= self._policy.pass_threshold,
        )

    def _apply_penalties(
        self,
        composite: float,
        features: ExtractedFeatures,
        rubric: StrategyRubric,
    ) -> Tuple[float, List[AppliedPenalty]]:
        applied: List[AppliedPenalty] = []
        for rule in rubric.aggregation.penalties:
            feature_value = _coerce_numeric(features.get(rule.field))
            if feature_value is None:
                continue
            if rule.matches(feature_value):
                composite -= rule.minus
                applied.append(AppliedPenalty(expression=rule.expression, amount=rule.minus))
        return composite, applied

    def score(self, features: ExtractedFeatures, rubric: StrategyRubric) -> AggregatedScore:
        """
        Score features against a rubric.

        Args:
            features: Canonical feature bag (not modified)
            rubric: Parsed rubric

        Returns:
            AggregatedScore with per-criterion and per-metric detail
        """
        normalized = rubric.normalized_weights()
        criterion_scores: List[CriterionScore] = []

        for criterion, metrics in rubric.criteria.items():
            metric_scores = tuple(
                self.score_metric(metric, config, features.get(metric))
                for metric, config in metrics.items()
            )
            available = [m.score for m in metric_scores if m.score is not None]
            if available:
                criterion_score = sum(available) / len(available)
            else:
                criterion_score = self._policy.neutral_criterion_score

            criterion_scores.append(CriterionScore(
                criterion=criterion,
                weight=rubric.weights.get(criterion, 0.0),
                normalized_weight=normalized[criterion],
                metrics=metric_scores,
                score=self._round(criterion_score),
            ))

        weighted_sum = sum(c.score * c.normalized_weight for c in criterion_scores)
        composite, penalties = self._apply_penalties(
            self._round(weighted_sum), features, rubric,
        )

        caps = rubric.aggregation.caps
        composite = min(caps.max, max(caps.min, composite))

        violations = tuple(
            f"Missing required feature: {feature}"
            for feature in rubric.required_features
            if features.get(feature) is None
        )

        result = AggregatedScore(
            raw_score=self._round(composite),
            criterion_scores=tuple(criterion_scores),
            penalties_applied=tuple(penalties),
            violations=violations,
            configuration_issues=rubric.configuration_issues,
        )
        logger.debug(
            f"Scored {features.symbol} with {rubric.name} v{rubric.rubric_version}: "
            f"{result.raw_score} (penalties={len(penalties)}, violations={len(violations)})"
        )
        return result


def score_features(features: ExtractedFeatures, rubric: StrategyRubric) -> AggregatedScore:
    """Score with the default policy."""
    return ScoringEngine().score(features, rubric)
