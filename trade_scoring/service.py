"""
Trade Scoring Engine - Service.

============================================================
PURPOSE
============================================================
Orchestrates one evaluation end to end:

    RubricStore -> FeatureExtractor -> fingerprint
        -> ScoreCache.lookup (hit: return cached payload)
        -> ScoringEngine -> Calibrator -> confidence tier
        -> ScoreCache.store -> optional narrative

============================================================
FAILURE POLICY
============================================================
- Trade draft fails schema: REJECTED evaluation with issues
- Missing / out-of-range features: scored, issues attached
- Rubric or cache store unavailable: degrade, never fail
- Rubric weights reference a missing criterion: raises

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from .cache import InMemoryScoreCacheBackend, ScoreCache
from .calibration import Calibrator, create_calibrator
from .clock import ClockProtocol
from .config import TradeScoringConfig, get_default_config
from .engine import ScoringEngine
from .features import FeatureExtractor, fingerprint_for_caching
from .narrative import (
    NarrativeGenerator,
    NarrativeRequest,
    OllamaNarrativeGenerator,
    generate_narrative,
)
from .repository import SqlRubricSource, SqlScoreCacheBackend
from .rubric import RubricStore
from .types import (
    AggregatedScore,
    CachedScorePayload,
    CalibrationResult,
    ConfidenceTier,
    EvaluationStatus,
    FactorScoreRow,
    FeatureExtractionResult,
    StrategyRubric,
)


logger = logging.getLogger(__name__)


DEFAULT_STRATEGY = "put-credit-spread"

_STRATEGY_KEYS = ("contractType", "contract_type", "strategy")


# ============================================================
# RESULT TYPES
# ============================================================


@dataclass(frozen=True)
class TradeCandidate:
    """One item of a batch evaluation."""

    trade_draft: Mapping[str, Any]
    factor_values: Mapping[str, Any] = field(default_factory=dict)
    strategy: Optional[str] = None
    trade_id: Optional[str] = None


@dataclass(frozen=True)
class TradeEvaluation:
    """
    Result of evaluating one trade candidate.

    `payload` is None only for REJECTED evaluations. On a cache
    hit `aggregated` and `calibration` are None; the payload
    carries the stored numbers.
    """

    status: EvaluationStatus
    payload: Optional[CachedScorePayload] = None
    aggregated: Optional[AggregatedScore] = None
    extraction: Optional[FeatureExtractionResult] = None
    calibration: Optional[CalibrationResult] = None
    factor_rows: Tuple[FactorScoreRow, ...] = ()
    narrative: Optional[str] = None
    issues: Tuple[str, ...] = ()

    @property
    def from_cache(self) -> bool:
        return self.status == EvaluationStatus.CACHED

    @property
    def score(self) -> Optional[float]:
        return self.payload.raw_score if self.payload else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "from_cache": self.from_cache,
            "payload": self.payload.to_dict() if self.payload else None,
            "details": self.aggregated.to_dict() if self.aggregated else None,
            "narrative": self.narrative,
            "issues": list(self.issues),
        }


# ============================================================
# HELPERS
# ============================================================


def strategy_label(trade_draft: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not isinstance(trade_draft, Mapping):
        return None
    for key in _STRATEGY_KEYS:
        value = trade_draft.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extraction_issues(extraction: FeatureExtractionResult) -> Tuple[str, ...]:
    issues = [str(issue) for issue in extraction.out_of_range]
    reported = {issue.field for issue in extraction.out_of_range}
    issues.extend(
        f"Missing feature: {name}" for name in extraction.missing if name not in reported
    )
    return tuple(issues)


def build_factor_rows(aggregated: AggregatedScore, pass_threshold: float) -> Tuple[FactorScoreRow, ...]:
    """
    Per-metric detail rows.

    A metric's weighted contribution is its score times the
    criterion's normalized weight, split evenly across the
    criterion's metrics.
    """
    rows: List[FactorScoreRow] = []
    for criterion in aggregated.criterion_scores:
        share = criterion.normalized_weight / len(criterion.metrics) if criterion.metrics else 0.0
        for metric in criterion.metrics:
            weighted = round(metric.score * share, 4) if metric.score is not None else None
            rows.append(FactorScoreRow(
                factor_name=metric.metric,
                criterion=criterion.criterion,
                raw_value=metric.raw_value,
                weight=round(share, 6),
                individual_score=metric.score,
                weighted_score=weighted,
                target_met=metric.score is not None and metric.score >= pass_threshold,
            ))
    return tuple(rows)


# ============================================================
# SERVICE
# ============================================================


class TradeScoringService:
    """
    Trade candidate evaluation.

    All collaborators are injected; `create_service` wires the
    defaults from configuration.

    Usage:
        service = create_service(config)
        evaluation = await service.evaluate(trade_draft, factor_values)
        print(evaluation.score, evaluation.payload.confidence)
    """

    def __init__(
        self,
        rubric_store: Optional[RubricStore] = None,
        extractor: Optional[FeatureExtractor] = None,
        engine: Optional[ScoringEngine] = None,
        calibrator: Optional[Calibrator] = None,
        cache: Optional[ScoreCache] = None,
        narrative_generator: Optional[NarrativeGenerator] = None,
        config: Optional[TradeScoringConfig] = None,
    ):
        self._config = config or get_default_config()
        self._rubric_store = rubric_store if rubric_store is not None else RubricStore(
            default_min_cap=self._config.scoring.default_min_cap,
            default_max_cap=self._config.scoring.default_max_cap,
        )
        self._extractor = extractor if extractor is not None else FeatureExtractor()
        self._engine = engine if engine is not None else ScoringEngine(self._config.scoring)
        self._calibrator = calibrator if calibrator is not None else create_calibrator(self._config.calibration)
        self._cache = cache if cache is not None else ScoreCache(InMemoryScoreCacheBackend())
        self._narrative = narrative_generator

    @property
    def cache(self) -> ScoreCache:
        return self._cache

    @property
    def calibrator(self) -> Calibrator:
        return self._calibrator

    def confidence_tier(
        self,
        aggregated: AggregatedScore,
        extraction: FeatureExtractionResult,
    ) -> ConfidenceTier:
        """
        LOW: required features missing or thin metric coverage.
        HIGH: near-complete coverage and a clean extraction.
        """
        tiers = self._config.confidence
        coverage = aggregated.metric_coverage
        if aggregated.violations or coverage < tiers.medium_min_coverage:
            return ConfidenceTier.LOW
        if coverage >= tiers.high_min_coverage and extraction.issue_count == 0:
            return ConfidenceTier.HIGH
        return ConfidenceTier.MEDIUM

    async def _narrate(self, payload: CachedScorePayload, features: Mapping[str, Any]) -> str:
        narrative_config = self._config.narrative
        request = NarrativeRequest(
            raw_score=payload.raw_score,
            calibrated_probability=payload.calibrated_success_prob,
            reasons=payload.reasons,
            confidence=payload.confidence,
            seed=narrative_config.seed,
            rubric_version=payload.rubric_version,
            calibration_version=payload.calibration_version,
            features=dict(features),
            word_budget=narrative_config.word_budget,
            bullet_count=narrative_config.bullet_count,
        )
        return await generate_narrative(self._narrative, request)

    async def evaluate(
        self,
        trade_draft: Optional[Mapping[str, Any]],
        factor_values: Optional[Mapping[str, Any]] = None,
        strategy: Optional[str] = None,
        policy_id: str = "default",
        policy_version: Optional[str] = None,
        trade_id: Optional[str] = None,
        include_narrative: bool = False,
        rubric: Optional[StrategyRubric] = None,
    ) -> TradeEvaluation:
        """
        Evaluate one trade candidate.

        Args:
            trade_draft: Raw trade description
            factor_values: Loosely-keyed factor values
            strategy: Rubric key; defaults to the draft's contract type
            policy_id: Originating policy identifier
            policy_version: Expected rubric version (informational)
            trade_id: Optional trade reference stored with the score
            include_narrative: Attach an explanation
            rubric: Preloaded rubric (batch evaluation)

        Returns:
            TradeEvaluation

        Raises:
            InvalidRubricError: Rubric weights reference a missing criterion
        """
        strategy = strategy or strategy_label(trade_draft) or DEFAULT_STRATEGY
        if rubric is None:
            rubric = await self._rubric_store.load(strategy, policy_version)

        extraction = self._extractor.extract(
            trade_draft,
            factor_values,
            extra_features=tuple(rubric.metric_names()) + rubric.required_features,
        )
        issues = extraction_issues(extraction)

        if extraction.features is None:
            logger.info(f"Trade draft rejected for {strategy}: {extraction.error}")
            return TradeEvaluation(
                status=EvaluationStatus.REJECTED,
                extraction=extraction,
                issues=issues,
            )

        fingerprint = fingerprint_for_caching(
            rubric.rubric_version, trade_draft, factor_values, policy_id,
        )
        cached = await self._cache.lookup(fingerprint, rubric.rubric_version, self._calibrator.version)
        if cached is not None:
            narrative = await self._narrate(cached, extraction.features) if include_narrative else None
            return TradeEvaluation(
                status=EvaluationStatus.CACHED,
                payload=cached,
                extraction=extraction,
                narrative=narrative,
                issues=issues,
            )

        aggregated = self._engine.score(extraction.features, rubric)
        calibration = self._calibrator.calibrate(aggregated.raw_score)
        confidence = self.confidence_tier(aggregated, extraction)

        payload = CachedScorePayload(
            rubric_version=rubric.rubric_version,
            calibration_version=calibration.calibration_version,
            raw_score=aggregated.raw_score,
            calibrated_success_prob=calibration.calibrated_probability,
            reasons=tuple(aggregated.reasons()),
            violations=aggregated.violations,
            confidence=confidence,
            ips_id=policy_id,
            input_hash=fingerprint,
            ips_version=policy_version or rubric.rubric_version,
        )
        factor_rows = build_factor_rows(aggregated, self._engine.policy.pass_threshold)
        await self._cache.store(payload, factor_rows, trade_id=trade_id)

        logger.info(
            f"Scored {extraction.features.symbol} ({strategy}): {payload.raw_score} "
            f"p={payload.calibrated_success_prob} confidence={confidence.value}"
        )

        narrative = await self._narrate(payload, extraction.features) if include_narrative else None
        return TradeEvaluation(
            status=EvaluationStatus.SCORED,
            payload=payload,
            aggregated=aggregated,
            extraction=extraction,
            calibration=calibration,
            factor_rows=factor_rows,
            narrative=narrative,
            issues=issues,
        )

    async def evaluate_batch(
        self,
        candidates: Sequence[TradeCandidate],
        policy_id: str = "default",
        include_narrative: bool = False,
    ) -> List[TradeEvaluation]:
        """
        Evaluate candidates concurrently.

        Each distinct strategy's rubric is loaded once, so every
        candidate in the batch sees the same rubric. Results keep
        input order.
        """
        strategies = [
            c.strategy or strategy_label(c.trade_draft) or DEFAULT_STRATEGY
            for c in candidates
        ]
        distinct = sorted(set(strategies))
        loaded = await asyncio.gather(*(self._rubric_store.load(s) for s in distinct))
        rubrics = dict(zip(distinct, loaded))

        return list(await asyncio.gather(*(
            self.evaluate(
                candidate.trade_draft,
                candidate.factor_values,
                strategy=strategy,
                policy_id=policy_id,
                trade_id=candidate.trade_id,
                include_narrative=include_narrative,
                rubric=rubrics[strategy],
            )
            for candidate, strategy in zip(candidates, strategies)
        )))

    async def close(self) -> None:
        if isinstance(self._narrative, OllamaNarrativeGenerator):
            await self._narrative.close()


def create_service(
    config: Optional[TradeScoringConfig] = None,
    session_factory: Optional[async_sessionmaker] = None,
    clock: Optional[ClockProtocol] = None,
) -> TradeScoringService:
    """
    Wire a service from configuration.

    Without a session factory the default rubric and an
    in-memory cache are used.
    """
    config = config or get_default_config()
    source = SqlRubricSource(session_factory) if session_factory else None
    backend = SqlScoreCacheBackend(session_factory) if session_factory else InMemoryScoreCacheBackend()
    narrative = OllamaNarrativeGenerator(config.narrative) if config.narrative.enabled else None

    return TradeScoringService(
        rubric_store=RubricStore(
            source=source,
            default_min_cap=config.scoring.default_min_cap,
            default_max_cap=config.scoring.default_max_cap,
        ),
        extractor=FeatureExtractor(clock=clock),
        engine=ScoringEngine(config.scoring),
        calibrator=create_calibrator(config.calibration),
        cache=ScoreCache(backend),
        narrative_generator=narrative,
        config=config,
    )
