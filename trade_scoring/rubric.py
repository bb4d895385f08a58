"""
Trade Scoring Engine - Rubrics.

============================================================
PURPOSE
============================================================
Turns rubric documents into validated StrategyRubric objects
and resolves a strategy name to its rubric.

============================================================
PARSING RULES
============================================================
- Metric configs are classified once: a list of
  (threshold, score) pairs is a NumericTable, a mapping of
  key -> score is a CategoryMap. Anything else is skipped and
  reported as a configuration issue.
- Penalty rules `field <op> value` are parsed into
  PenaltyRule objects. Only <, <=, >, >= are accepted.
  Unparseable rules and rules on unknown features are skipped
  and reported.
- Weights naming a criterion with no criteria entry raise
  InvalidRubricError. This is the only fatal rubric problem.

============================================================
LOOKUP POLICY
============================================================
RubricStore.load never fails for missing or unreadable
rubrics: it falls back to the built-in default so the engine
can always score something.

============================================================
"""

import logging
import math
import re
from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .features import CANONICAL_FEATURES
from .types import (
    AggregationPolicy,
    CategoryMap,
    ComparisonOperator,
    InvalidRubricError,
    MetricConfig,
    NumericTable,
    PenaltyRule,
    RubricDocumentError,
    RubricSourceError,
    ScoreCaps,
    StrategyRubric,
)


logger = logging.getLogger(__name__)


# =============================================================
# DEFAULT RUBRIC
# =============================================================


DEFAULT_PCS_RUBRIC: Dict[str, Any] = {
    "name": "PCS_Default",
    "strategy": "put-credit-spread",
    "rubric_version": "1.3.0",
    "weights": {
        "edge": 0.35,
        "liquidity": 0.2,
        "risk_events": 0.2,
        "trend_alignment": 0.15,
        "execution_quality": 0.1,
    },
    "criteria": {
        "edge": {
            "credit_to_width_pct": [[0.15, 60], [0.2, 80], [0.25, 90], [0.3, 100]],
            "delta_short": [[0.1, 100], [0.12, 90], [0.15, 75], [0.18, 50], [0.22, 20]],
            "iv_rank": [[10, 40], [20, 70], [30, 85], [50, 95], [70, 100]],
        },
        "liquidity": {
            "oi_short_leg_min": [[100, 60], [500, 80], [1000, 95]],
            "bid_ask_pct": [[1.5, 100], [2.0, 85], [3.0, 60], [5.0, 30]],
        },
        "risk_events": {
            "days_to_earnings": [[0, 10], [2, 40], [5, 65], [10, 85], [15, 100]],
            "macro_event_flag": {"FOMC": -20, "CPI": -10, "None": 0},
        },
        "trend_alignment": {
            "price_above_ma_50": {"true": 80, "false": 40},
            "rsi_14": [[30, 50], [50, 80], [70, 60]],
        },
        "execution_quality": {
            "fill_vs_mid_bps": [[0, 100], [25, 85], [50, 70], [100, 40]],
        },
    },
    "aggregation": {
        "method": "weighted_mean",
        "caps": {"min": 0, "max": 100},
        "penalties": [
            {"if": "credit_to_width_pct < 0.12", "minus": 25},
            {"if": "bid_ask_pct > 5.0", "minus": 20},
        ],
    },
    "required_features": [
        "credit_to_width_pct",
        "delta_short",
        "iv_rank",
        "oi_short_leg_min",
        "bid_ask_pct",
        "days_to_earnings",
        "macro_event_flag",
        "price_above_ma_50",
        "rsi_14",
        "fill_vs_mid_bps",
    ],
}


_PENALTY_PATTERN = re.compile(
    r"^\s*(?P<field>[a-z0-9_]+)\s*(?P<op><=|>=|<|>)\s*(?P<value>-?\d+(?:\.\d+)?)\s*$",
    re.IGNORECASE,
)

SUPPORTED_AGGREGATION_METHODS = ("weighted_mean",)


# =============================================================
# PARSING
# =============================================================


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _category_key(key: Any) -> str:
    # YAML turns `true:` into a bool key; rubric lookups use "true"/"false"
    if isinstance(key, bool):
        return "true" if key else "false"
    return str(key)


def classify_metric(metric: str, config: Any) -> Tuple[Optional[MetricConfig], Optional[str]]:
    """
    Classify one metric configuration.

    Returns:
        (metric_config, None) on success, (None, issue) otherwise
    """
    if isinstance(config, Mapping):
        scores: Dict[str, float] = {}
        for key, score in config.items():
            if not _is_number(score):
                return None, f"{metric}: category score for {key!r} is not a number"
            scores[_category_key(key)] = float(score)
        return CategoryMap(scores=MappingProxyType(scores)), None

    if isinstance(config, (list, tuple)):
        steps: List[Tuple[float, float]] = []
        for entry in config:
            if (
                not isinstance(entry, (list, tuple))
                or len(entry) != 2
                or not all(_is_number(v) for v in entry)
            ):
                return None, f"{metric}: table entry {entry!r} is not a (threshold, score) pair"
            steps.append((float(entry[0]), float(entry[1])))
        table = NumericTable(steps=tuple(sorted(steps, key=lambda step: step[0])))
        if not table.is_monotonic:
            logger.debug(
                f"Metric {metric} table is not monotonic; "
                f"direction inferred from endpoints ({'up' if table.increasing else 'down'})"
            )
        return table, None

    return None, f"{metric}: unsupported metric configuration type {type(config).__name__}"


def parse_penalty_rule(
    rule: Any,
    known_features: Iterable[str],
) -> Tuple[Optional[PenaltyRule], Optional[str]]:
    """
    Parse a `{"if": "field <op> value", "minus": n}` rule.

    Returns:
        (rule, None) on success, (None, issue) otherwise
    """
    if not isinstance(rule, Mapping):
        return None, f"penalty rule {rule!r} is not a mapping"

    expression = rule.get("if")
    minus = rule.get("minus")
    if not isinstance(expression, str):
        return None, f"penalty rule {rule!r} has no 'if' expression"
    if not _is_number(minus):
        return None, f"penalty rule '{expression}' has a non-numeric 'minus'"

    match = _PENALTY_PATTERN.match(expression)
    if not match:
        return None, f"penalty rule '{expression}' is not of the form 'field <op> value'"

    field_name = match.group("field").lower()
    if field_name not in set(known_features):
        return None, f"penalty rule '{expression}' references unknown feature '{field_name}'"

    return PenaltyRule(
        field=field_name,
        operator=ComparisonOperator(match.group("op")),
        value=float(match.group("value")),
        minus=float(minus),
        expression=expression,
    ), None


def parse_rubric(
    document: Any,
    default_min_cap: float = 0.0,
    default_max_cap: float = 100.0,
) -> StrategyRubric:
    """
    Validate and classify a rubric document.

    Args:
        document: Raw rubric mapping (from the store or a file)
        default_min_cap: Lower cap when the document has none
        default_max_cap: Upper cap when the document has none

    Returns:
        StrategyRubric ready for scoring

    Raises:
        RubricDocumentError: Document shape is wrong
        InvalidRubricError: Weights reference a missing criterion
    """
    if not isinstance(document, Mapping):
        raise RubricDocumentError(f"Rubric document must be a mapping, got {type(document).__name__}")

    name = document.get("name")
    version = document.get("rubric_version")
    if not isinstance(name, str) or not name:
        raise RubricDocumentError("Rubric document has no name")
    if not isinstance(version, str) or not version:
        raise RubricDocumentError("Rubric document has no rubric_version", rubric_name=name)

    raw_weights = document.get("weights")
    raw_criteria = document.get("criteria")
    if not isinstance(raw_weights, Mapping) or not isinstance(raw_criteria, Mapping):
        raise RubricDocumentError("Rubric needs 'weights' and 'criteria' mappings", rubric_name=name)

    weights: Dict[str, float] = {}
    for criterion, weight in raw_weights.items():
        if not _is_number(weight) or weight < 0:
            raise RubricDocumentError(
                f"Weight for criterion '{criterion}' must be a non-negative number",
                rubric_name=name,
            )
        weights[str(criterion)] = float(weight)

    missing_criteria = [c for c in weights if c not in raw_criteria]
    if missing_criteria:
        raise InvalidRubricError(
            f"Rubric '{name}' weights reference unknown criteria: {', '.join(missing_criteria)}",
            rubric_name=name,
        )

    issues: List[str] = []
    criteria: Dict[str, Mapping[str, MetricConfig]] = {}
    for criterion, metrics in raw_criteria.items():
        if not isinstance(metrics, Mapping):
            raise RubricDocumentError(
                f"Criterion '{criterion}' must map metric names to configs",
                rubric_name=name,
            )
        classified: Dict[str, MetricConfig] = {}
        for metric, config in metrics.items():
            metric_config, issue = classify_metric(str(metric), config)
            if issue:
                issues.append(issue)
                continue
            classified[str(metric)] = metric_config
        criteria[str(criterion)] = MappingProxyType(classified)

    raw_required = document.get("required_features") or []
    if not isinstance(raw_required, (list, tuple)):
        raise RubricDocumentError("required_features must be a list", rubric_name=name)
    required = tuple(str(f) for f in raw_required)

    raw_aggregation = document.get("aggregation") or {}
    if not isinstance(raw_aggregation, Mapping):
        raise RubricDocumentError("aggregation must be a mapping", rubric_name=name)

    method = raw_aggregation.get("method", "weighted_mean")
    if method not in SUPPORTED_AGGREGATION_METHODS:
        issues.append(f"aggregation method '{method}' unsupported; using weighted_mean")
        method = "weighted_mean"

    raw_caps = raw_aggregation.get("caps") or {}
    cap_min = raw_caps.get("min") if isinstance(raw_caps, Mapping) else None
    cap_max = raw_caps.get("max") if isinstance(raw_caps, Mapping) else None
    caps = ScoreCaps(
        min=float(cap_min) if _is_number(cap_min) else default_min_cap,
        max=float(cap_max) if _is_number(cap_max) else default_max_cap,
    )
    if caps.min > caps.max:
        issues.append(
            f"caps min {caps.min:g} exceeds max {caps.max:g}; "
            f"using [{default_min_cap:g}, {default_max_cap:g}]"
        )
        caps = ScoreCaps(min=default_min_cap, max=default_max_cap)

    known_features = set(CANONICAL_FEATURES) | set(required)
    for metrics in criteria.values():
        known_features.update(metrics)

    penalties: List[PenaltyRule] = []
    for raw_rule in raw_aggregation.get("penalties") or []:
        rule, issue = parse_penalty_rule(raw_rule, known_features)
        if issue:
            issues.append(issue)
            continue
        penalties.append(rule)

    for issue in issues:
        logger.warning(f"Rubric '{name}' v{version}: {issue}")

    strategy = document.get("strategy")
    return StrategyRubric(
        name=name,
        rubric_version=version,
        weights=MappingProxyType(weights),
        criteria=MappingProxyType(criteria),
        aggregation=AggregationPolicy(method=method, caps=caps, penalties=tuple(penalties)),
        required_features=required,
        strategy=str(strategy) if strategy else None,
        configuration_issues=tuple(issues),
    )


def default_rubric() -> StrategyRubric:
    """Built-in put-credit-spread rubric."""
    return parse_rubric(DEFAULT_PCS_RUBRIC)


# =============================================================
# RUBRIC SOURCES
# =============================================================


class RubricSource(ABC):
    """
    Read-only lookup of persisted rubric documents.

    Implementations raise RubricSourceError when the store is
    unreachable and return None when no rubric exists.
    """

    @abstractmethod
    async def fetch_rubric(self, strategy: str) -> Optional[Mapping[str, Any]]:
        pass


class StaticRubricSource(RubricSource):
    """Rubric documents held in memory, keyed by strategy."""

    def __init__(self, documents: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self._documents = dict(documents or {})

    async def fetch_rubric(self, strategy: str) -> Optional[Mapping[str, Any]]:
        return self._documents.get(strategy)


# =============================================================
# RUBRIC STORE
# =============================================================


class RubricStore:
    """
    Resolves a strategy name to a StrategyRubric.

    Usage:
        store = RubricStore(source=SqlRubricSource(session_factory))
        rubric = await store.load("put-credit-spread")
    """

    def __init__(
        self,
        source: Optional[RubricSource] = None,
        default_document: Optional[Mapping[str, Any]] = None,
        default_min_cap: float = 0.0,
        default_max_cap: float = 100.0,
    ):
        """
        Args:
            source: Persisted rubric lookup (None = always default)
            default_document: Fallback rubric document
            default_min_cap: Lower cap for documents without caps
            default_max_cap: Upper cap for documents without caps
        """
        self._source = source
        self._min_cap = default_min_cap
        self._max_cap = default_max_cap
        self._default = parse_rubric(
            default_document or DEFAULT_PCS_RUBRIC,
            default_min_cap=default_min_cap,
            default_max_cap=default_max_cap,
        )

    @property
    def default(self) -> StrategyRubric:
        return self._default

    async def load(self, strategy: str, rubric_version: Optional[str] = None) -> StrategyRubric:
        """
        Load the rubric for a strategy.

        Args:
            strategy: Strategy key (e.g. "put-credit-spread")
            rubric_version: Version the caller expects; informational only

        Returns:
            Persisted rubric, or the default on any lookup failure

        Raises:
            InvalidRubricError: Persisted rubric weights reference missing criteria
        """
        if self._source is None:
            return self._default

        try:
            document = await self._source.fetch_rubric(strategy)
        except RubricSourceError as e:
            logger.warning(f"Rubric lookup failed for '{strategy}', using default: {e}")
            return self._default

        if document is None:
            logger.info(f"No persisted rubric for '{strategy}', using {self._default.name}")
            return self._default

        try:
            rubric = parse_rubric(
                document,
                default_min_cap=self._min_cap,
                default_max_cap=self._max_cap,
            )
        except RubricDocumentError as e:
            logger.warning(f"Malformed rubric for '{strategy}', using default: {e}")
            return self._default

        if rubric_version and rubric.rubric_version != rubric_version:
            logger.info(
                f"Requested rubric v{rubric_version} for '{strategy}', "
                f"store has v{rubric.rubric_version}; using stored version"
            )
        return rubric
