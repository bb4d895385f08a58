"""
Trade Scoring Engine - Repository.

============================================================
PURPOSE
============================================================
Repository pattern implementation for rubric and score
persistence, plus adapters that plug the repositories into
RubricStore and ScoreCache.

============================================================
ERROR HANDLING
============================================================
Repositories let SQLAlchemy errors propagate. The adapters
log them and re-raise as RubricSourceError /
CacheBackendError, which the callers degrade on:

- Rubric store unreachable -> default rubric
- Cache lookup failure     -> recompute
- Cache store failure      -> logged, score stands

A duplicate insert of an existing cache key (two concurrent
evaluations of the same input) counts as stored.

============================================================
"""

import logging
from typing import Any, Dict, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from .cache import ScoreCacheBackend
from .engine import format_value
from .features import to_number
from .models import FactorScoreDetail, ScoreCalculation, StrategyRubricRecord
from .rubric import RubricSource
from .types import (
    CacheBackendError,
    CacheKey,
    CachedScorePayload,
    FactorScoreRow,
    RubricSourceError,
)


logger = logging.getLogger(__name__)


def summarize_factor_rows(factor_rows: Sequence[FactorScoreRow]) -> Dict[str, Any]:
    """Aggregate statistics stored on the calculation row."""
    used = [row for row in factor_rows if row.individual_score is not None]
    targets_met = sum(1 for row in used if row.target_met)
    return {
        "total_weight": round(sum(row.weight for row in used), 4),
        "factors_used": len(used),
        "targets_met": targets_met,
        "target_percentage": round(targets_met / len(used) * 100, 2) if used else 0.0,
    }


# ============================================================
# REPOSITORIES
# ============================================================


class RubricRepository:
    """Rubric document queries."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_record(self, strategy: str) -> Optional[StrategyRubricRecord]:
        stmt = select(StrategyRubricRecord).where(StrategyRubricRecord.strategy == strategy)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_rubric_document(self, strategy: str) -> Optional[Any]:
        """
        Get the rubric document for a strategy.

        The record's name and version fill in the document when
        it omits them. A stored value that is not an object is
        returned as is so rubric parsing rejects it.
        """
        record = await self.get_record(strategy)
        if record is None:
            return None
        if not isinstance(record.rubric, Mapping):
            logger.warning(f"Stored rubric for '{strategy}' is not a JSON object")
            return record.rubric
        document = dict(record.rubric)
        document.setdefault("name", record.name)
        document.setdefault("rubric_version", record.rubric_version)
        document.setdefault("strategy", record.strategy)
        return document

    async def save_rubric(
        self,
        strategy: str,
        document: Mapping[str, Any],
    ) -> StrategyRubricRecord:
        """Insert or replace the rubric for a strategy."""
        record = await self.get_record(strategy)
        name = str(document.get("name") or strategy)
        version = str(document.get("rubric_version") or "1.0.0")
        if record is None:
            record = StrategyRubricRecord(
                name=name,
                strategy=strategy,
                rubric_version=version,
                rubric=dict(document),
            )
            self._session.add(record)
        else:
            record.name = name
            record.rubric_version = version
            record.rubric = dict(document)
        await self._session.flush()
        return record


class ScoreRepository:
    """
    Cached score persistence.

    ============================================================
    METHODS
    ============================================================
    - find_cached: Lookup by cache key
    - save_calculation: Insert unless the key already exists
    - get_factor_details: Per-metric rows for a calculation

    ============================================================
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def find_cached(self, key: CacheKey) -> Optional[ScoreCalculation]:
        stmt = select(ScoreCalculation).where(
            ScoreCalculation.rubric_version == key.rubric_version,
            ScoreCalculation.calibration_version == key.calibration_version,
            ScoreCalculation.input_hash == key.input_hash,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_factor_details(self, key: CacheKey) -> Sequence[FactorScoreDetail]:
        stmt = (
            select(ScoreCalculation)
            .options(selectinload(ScoreCalculation.factor_details))
            .where(
                ScoreCalculation.rubric_version == key.rubric_version,
                ScoreCalculation.calibration_version == key.calibration_version,
                ScoreCalculation.input_hash == key.input_hash,
            )
        )
        result = await self._session.execute(stmt)
        calculation = result.scalar_one_or_none()
        return list(calculation.factor_details) if calculation else []

    async def save_calculation(
        self,
        payload: CachedScorePayload,
        factor_rows: Sequence[FactorScoreRow] = (),
        trade_id: Optional[str] = None,
    ) -> ScoreCalculation:
        """
        Persist a score with its factor rows.

        Returns the existing row untouched when the key is
        already stored.
        """
        existing = await self.find_cached(payload.cache_key)
        if existing is not None:
            return existing

        summary = summarize_factor_rows(factor_rows)
        calculation = ScoreCalculation(
            input_hash=payload.input_hash,
            rubric_version=payload.rubric_version,
            calibration_version=payload.calibration_version,
            ips_id=payload.ips_id,
            ips_version=payload.ips_version,
            trade_id=trade_id,
            final_score=payload.raw_score,
            calibrated_success_prob=payload.calibrated_success_prob,
            confidence=payload.confidence.value,
            reasons=list(payload.reasons),
            violations=list(payload.violations),
            calculation_details=payload.to_dict(),
            **summary,
        )
        for row in factor_rows:
            numeric = to_number(row.raw_value)
            calculation.factor_details.append(FactorScoreDetail(
                factor_name=row.factor_name,
                criterion=row.criterion,
                factor_value=numeric,
                raw_value=None if row.raw_value is None else format_value(row.raw_value),
                weight=row.weight,
                individual_score=row.individual_score,
                weighted_score=row.weighted_score,
                target_met=row.target_met,
            ))

        self._session.add(calculation)
        await self._session.flush()
        return calculation


# ============================================================
# ADAPTERS
# ============================================================


class SqlRubricSource(RubricSource):
    """RubricSource backed by the ips_rubrics table."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def fetch_rubric(self, strategy: str) -> Optional[Any]:
        try:
            async with self._session_factory() as session:
                return await RubricRepository(session).get_rubric_document(strategy)
        except SQLAlchemyError as e:
            logger.error(f"Rubric lookup failed for {strategy}: {e}", exc_info=True)
            raise RubricSourceError(f"Rubric store unavailable: {e}") from e


class SqlScoreCacheBackend(ScoreCacheBackend):
    """ScoreCacheBackend backed by ips_score_calculations."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def get(self, key: CacheKey) -> Optional[CachedScorePayload]:
        try:
            async with self._session_factory() as session:
                calculation = await ScoreRepository(session).find_cached(key)
        except SQLAlchemyError as e:
            logger.error(f"Score lookup failed: {e}", exc_info=True)
            raise CacheBackendError(f"Score store unavailable: {e}") from e

        if calculation is None:
            return None
        details = dict(calculation.calculation_details or {})
        details.setdefault("rubric_version", calculation.rubric_version)
        details.setdefault("calibration_version", calculation.calibration_version)
        details.setdefault("input_hash", calculation.input_hash)
        details.setdefault("ips_id", calculation.ips_id)
        details.setdefault("raw_score", calculation.final_score)
        details.setdefault("calibrated_success_prob", calculation.calibrated_success_prob)
        details.setdefault("reasons", calculation.reasons)
        details.setdefault("violations", calculation.violations)
        details.setdefault("confidence", calculation.confidence)
        try:
            return CachedScorePayload.from_dict(details)
        except (KeyError, TypeError, ValueError) as e:
            raise CacheBackendError(f"Stored score {key.input_hash[:12]} is unreadable: {e}") from e

    async def put(
        self,
        payload: CachedScorePayload,
        factor_rows: Sequence[FactorScoreRow] = (),
        trade_id: Optional[str] = None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await ScoreRepository(session).save_calculation(
                        payload, factor_rows, trade_id=trade_id,
                    )
        except IntegrityError:
            logger.info(f"Score {payload.input_hash[:12]} already stored by a concurrent writer")
        except SQLAlchemyError as e:
            logger.error(f"Score store failed: {e}", exc_info=True)
            raise CacheBackendError(f"Score store unavailable: {e}") from e
