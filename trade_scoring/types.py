"""
Trade Scoring Engine - Type Definitions.

============================================================
PURPOSE
============================================================
Data contracts for the deterministic trade scoring engine.

This module defines the rubric model (including the tagged
metric configuration), the canonical feature bag, the score
tree produced by the engine, the calibration result and the
durable cached payload.

============================================================
DESIGN PRINCIPLES
============================================================
- All types are immutable where possible
- Metric configuration is a discriminated union, classified
  once when a rubric is parsed
- Penalty rules are parsed into a small AST at load time
- Clear separation between input and output types

============================================================
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union


# ============================================================
# ENUMS
# ============================================================


class MetricKind(str, Enum):
    """Discriminator for metric configurations."""

    NUMERIC_TABLE = "numeric_table"
    CATEGORY_MAP = "category_map"


class ComparisonOperator(str, Enum):
    """Operators accepted in penalty rule expressions."""

    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="

    def compare(self, left: float, right: float) -> bool:
        if self is ComparisonOperator.LT:
            return left < right
        if self is ComparisonOperator.LE:
            return left <= right
        if self is ComparisonOperator.GT:
            return left > right
        return left >= right


class ConfidenceTier(str, Enum):
    """
    Coarse confidence attached to a cached score.

    Reflects data completeness, not the score itself.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EvaluationStatus(str, Enum):
    """Outcome of a single service evaluation."""

    SCORED = "scored"          # Computed this call
    CACHED = "cached"          # Served from the score cache
    REJECTED = "rejected"      # Trade draft failed schema validation


# ============================================================
# RUBRIC CONTRACTS
# ============================================================


@dataclass(frozen=True)
class NumericTable:
    """
    Step function over a numeric feature.

    Thresholds are kept sorted ascending. Direction is inferred
    from the scores at the lowest and highest thresholds, not
    from the order the document declared them in.
    """

    steps: Tuple[Tuple[float, float], ...]
    kind: MetricKind = field(default=MetricKind.NUMERIC_TABLE, init=False)

    @property
    def is_empty(self) -> bool:
        return not self.steps

    @property
    def increasing(self) -> bool:
        if not self.steps:
            return True
        return self.steps[-1][1] >= self.steps[0][1]

    @property
    def is_monotonic(self) -> bool:
        scores = [score for _, score in self.steps]
        pairs = list(zip(scores, scores[1:]))
        return all(a <= b for a, b in pairs) or all(a >= b for a, b in pairs)


@dataclass(frozen=True)
class CategoryMap:
    """
    Map from category key to score.

    When any score is negative the whole map is read as signed
    offsets from 100 (-20 means 80).
    """

    scores: Mapping[str, float]
    kind: MetricKind = field(default=MetricKind.CATEGORY_MAP, init=False)

    @property
    def signed_offsets(self) -> bool:
        return any(value < 0 for value in self.scores.values())


MetricConfig = Union[NumericTable, CategoryMap]


@dataclass(frozen=True)
class PenaltyRule:
    """
    Parsed penalty rule: `field <op> value` subtracts `minus`.

    `expression` keeps the original text for reporting.
    """

    field: str
    operator: ComparisonOperator
    value: float
    minus: float
    expression: str

    def matches(self, feature_value: float) -> bool:
        return self.operator.compare(feature_value, self.value)


@dataclass(frozen=True)
class ScoreCaps:
    """Inclusive bounds applied to the composite."""

    min: float = 0.0
    max: float = 100.0


@dataclass(frozen=True)
class AggregationPolicy:
    """How criterion scores become a composite."""

    method: str = "weighted_mean"
    caps: ScoreCaps = field(default_factory=ScoreCaps)
    penalties: Tuple[PenaltyRule, ...] = ()


@dataclass(frozen=True)
class StrategyRubric:
    """
    Versioned scoring rubric for one strategy.

    ============================================================
    INVARIANTS
    ============================================================
    - Every criterion in `weights` has an entry in `criteria`
    - Every metric config is already classified
    - Penalty rules are already parsed and validated

    ============================================================
    """

    name: str
    rubric_version: str
    weights: Mapping[str, float]
    criteria: Mapping[str, Mapping[str, MetricConfig]]
    aggregation: AggregationPolicy = field(default_factory=AggregationPolicy)
    required_features: Tuple[str, ...] = ()
    strategy: Optional[str] = None

    # Problems found while parsing that were skipped, not fatal
    configuration_issues: Tuple[str, ...] = ()

    @property
    def total_weight(self) -> float:
        return sum(self.weights.values())

    def normalized_weights(self) -> Dict[str, float]:
        """Criterion weights scaled to sum to 1 (zero total -> divide by 1)."""
        total = self.total_weight or 1.0
        return {
            criterion: self.weights.get(criterion, 0.0) / total
            for criterion in self.criteria
        }

    def metric_names(self) -> List[str]:
        return [metric for metrics in self.criteria.values() for metric in metrics]


# ============================================================
# FEATURE EXTRACTION CONTRACTS
# ============================================================


class ExtractedFeatures(Mapping[str, Any]):
    """
    Canonical feature bag for one evaluation.

    Always carries `strategy` and `symbol`. Read-only once built.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, Any]) -> None:
        if "strategy" not in values or "symbol" not in values:
            raise ValueError("ExtractedFeatures requires 'strategy' and 'symbol'")
        self._values = MappingProxyType(dict(values))

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ExtractedFeatures({dict(self._values)!r})"

    @property
    def strategy(self) -> str:
        return self._values["strategy"]

    @property
    def symbol(self) -> str:
        return self._values["symbol"]

    def has(self, key: str) -> bool:
        """True when the feature is present with a non-null value."""
        return self._values.get(key) is not None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._values)


@dataclass(frozen=True)
class ExtractionIssue:
    """A field that failed validation or a range check."""

    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


@dataclass(frozen=True)
class FeatureExtractionResult:
    """
    Outcome of feature extraction.

    `ok` is False whenever anything is missing or out of range.
    `features` is None only when the trade draft itself failed
    schema validation; otherwise it holds whatever could be
    extracted, for diagnostics or partial scoring.
    """

    ok: bool
    features: Optional[ExtractedFeatures]
    missing: Tuple[str, ...] = ()
    out_of_range: Tuple[ExtractionIssue, ...] = ()
    error: Optional[str] = None
    input_fingerprint: Optional[str] = None

    @property
    def schema_valid(self) -> bool:
        return self.features is not None

    @property
    def issue_count(self) -> int:
        return len(self.missing) + len(self.out_of_range)


# ============================================================
# SCORE TREE
# ============================================================


@dataclass(frozen=True)
class MetricScore:
    """Score of a single rubric metric."""

    metric: str
    raw_value: Union[float, str, bool, None]
    score: Optional[float]
    reason: str
    passed: bool


@dataclass(frozen=True)
class CriterionScore:
    """Mean of a criterion's available metric scores."""

    criterion: str
    weight: float
    normalized_weight: float
    metrics: Tuple[MetricScore, ...]
    score: float

    @property
    def available_metrics(self) -> List[MetricScore]:
        return [m for m in self.metrics if m.score is not None]

    @property
    def used_neutral_default(self) -> bool:
        return not self.available_metrics


@dataclass(frozen=True)
class AppliedPenalty:
    """A penalty rule that fired."""

    expression: str
    amount: float

    def __str__(self) -> str:
        amount = int(self.amount) if float(self.amount).is_integer() else self.amount
        return f"{self.expression} (-{amount})"


@dataclass(frozen=True)
class AggregatedScore:
    """
    Engine output for one feature set.

    A non-empty `violations` list means the score is advisory.
    """

    raw_score: float
    criterion_scores: Tuple[CriterionScore, ...]
    penalties_applied: Tuple[AppliedPenalty, ...] = ()
    violations: Tuple[str, ...] = ()
    configuration_issues: Tuple[str, ...] = ()

    @property
    def is_authoritative(self) -> bool:
        return not self.violations

    @property
    def metric_scores(self) -> List[MetricScore]:
        return [m for c in self.criterion_scores for m in c.metrics]

    @property
    def metric_coverage(self) -> float:
        """Share of rubric metrics that produced a score."""
        metrics = self.metric_scores
        if not metrics:
            return 0.0
        return sum(1 for m in metrics if m.score is not None) / len(metrics)

    def reasons(self) -> List[str]:
        reasons = [m.reason for m in self.metric_scores]
        reasons.extend(str(p) for p in self.penalties_applied)
        return reasons

    def to_dict(self) -> Dict[str, Any]:
        return {
            "raw_score": self.raw_score,
            "criteria": [
                {
                    "criterion": c.criterion,
                    "weight": c.weight,
                    "normalized_weight": c.normalized_weight,
                    "score": c.score,
                    "metrics": [
                        {
                            "metric": m.metric,
                            "raw_value": m.raw_value,
                            "score": m.score,
                            "reason": m.reason,
                            "passed": m.passed,
                        }
                        for m in c.metrics
                    ],
                }
                for c in self.criterion_scores
            ],
            "penalties_applied": [str(p) for p in self.penalties_applied],
            "violations": list(self.violations),
            "configuration_issues": list(self.configuration_issues),
        }


@dataclass(frozen=True)
class CalibrationResult:
    """Probability derived from a composite, tagged with its curve."""

    calibration_version: str
    calibrated_probability: float


@dataclass(frozen=True)
class CacheKey:
    """(rubric version, calibration version, input fingerprint)."""

    rubric_version: str
    calibration_version: str
    input_hash: str


@dataclass(frozen=True)
class CachedScorePayload:
    """
    Durable score record, one per unique cache key.

    Never updated in place: a new input or version yields a new
    record.
    """

    rubric_version: str
    calibration_version: str
    raw_score: float
    calibrated_success_prob: float
    reasons: Tuple[str, ...]
    violations: Tuple[str, ...]
    confidence: ConfidenceTier
    ips_id: str
    input_hash: str
    ips_version: Optional[str] = None

    @property
    def cache_key(self) -> CacheKey:
        return CacheKey(
            rubric_version=self.rubric_version,
            calibration_version=self.calibration_version,
            input_hash=self.input_hash,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rubric_version": self.rubric_version,
            "calibration_version": self.calibration_version,
            "raw_score": self.raw_score,
            "calibrated_success_prob": self.calibrated_success_prob,
            "reasons": list(self.reasons),
            "violations": list(self.violations),
            "confidence": self.confidence.value,
            "ips_id": self.ips_id,
            "ips_version": self.ips_version,
            "input_hash": self.input_hash,
        }

    @classmethod
    def from_dict(cls, details: Mapping[str, Any]) -> "CachedScorePayload":
        """Rebuild a payload from stored calculation details."""
        return cls(
            rubric_version=details["rubric_version"],
            calibration_version=details["calibration_version"],
            raw_score=float(details["raw_score"]),
            calibrated_success_prob=float(details["calibrated_success_prob"]),
            reasons=tuple(details.get("reasons") or ()),
            violations=tuple(details.get("violations") or ()),
            confidence=ConfidenceTier(details.get("confidence") or "medium"),
            ips_id=details["ips_id"],
            input_hash=details["input_hash"],
            ips_version=details.get("ips_version"),
        )


@dataclass(frozen=True)
class FactorScoreRow:
    """Per-metric detail persisted next to a cached score."""

    factor_name: str
    criterion: str
    raw_value: Union[float, str, bool, None]
    weight: float
    individual_score: Optional[float]
    weighted_score: Optional[float]
    target_met: bool


# ============================================================
# ERROR TYPES
# ============================================================


class TradeScoringError(Exception):
    """Base exception for trade scoring errors."""
    pass


class ConfigurationError(TradeScoringError):
    """Raised when configuration values are invalid."""
    pass


class RubricError(TradeScoringError):
    """Base class for rubric problems."""

    def __init__(self, message: str, rubric_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.rubric_name = rubric_name


class InvalidRubricError(RubricError):
    """
    Rubric weights reference a criterion that does not exist.

    Indicates corrupt configuration; always propagated.
    """
    pass


class RubricDocumentError(RubricError):
    """Rubric document does not have the expected shape."""
    pass


class RubricSourceError(TradeScoringError):
    """Persisted rubric could not be read."""
    pass


class CacheBackendError(TradeScoringError):
    """Score cache store is unreachable or rejected a write."""
    pass


class NarrativeError(TradeScoringError):
    """Narrative service call failed or returned nothing usable."""
    pass
