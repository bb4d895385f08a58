"""
Trade Scoring Engine - Persistence Models.

============================================================
PURPOSE
============================================================
ORM models for persisted rubrics and computed scores.

============================================================
MODELS
============================================================
1. StrategyRubricRecord: Rubric document per strategy
2. ScoreCalculation: One cached score per
   (rubric version, calibration version, input hash)
3. FactorScoreDetail: Per-metric breakdown (child of
   ScoreCalculation)

============================================================
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for trade scoring tables."""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


# ============================================================
# RUBRIC MODEL
# ============================================================


class StrategyRubricRecord(Base):
    """
    Persisted rubric document for one strategy.

    The document is stored as-is and parsed on load.
    """

    __tablename__ = "ips_rubrics"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    strategy: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
        comment="Strategy key, e.g. put_credit_spread",
    )

    rubric_version: Mapped[str] = mapped_column(String(20), nullable=False)

    rubric: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        comment="Rubric document (weights, criteria, aggregation, required_features)",
    )

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"StrategyRubricRecord(strategy={self.strategy}, version={self.rubric_version})"


# ============================================================
# SCORE CALCULATION MODEL
# ============================================================


class ScoreCalculation(Base):
    """
    Cached score for one fingerprinted input.

    ============================================================
    WHAT IT STORES
    ============================================================
    - Composite score and calibrated probability
    - Reasons and violations
    - Aggregate factor statistics
    - Full payload for cache reconstruction

    Rows are written once and never updated.

    ============================================================
    """

    __tablename__ = "ips_score_calculations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    input_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    rubric_version: Mapped[str] = mapped_column(String(20), nullable=False)

    calibration_version: Mapped[str] = mapped_column(String(40), nullable=False)

    ips_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Originating policy identifier",
    )

    ips_version: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    trade_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    final_score: Mapped[float] = mapped_column(Float, nullable=False)

    calibrated_success_prob: Mapped[float] = mapped_column(Float, nullable=False)

    confidence: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="low, medium, high",
    )

    reasons: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    violations: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    total_weight: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    factors_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    targets_met: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    target_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    calculation_details: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        comment="Serialized payload used to rebuild cache hits",
    )

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=_utcnow)

    factor_details: Mapped[List["FactorScoreDetail"]] = relationship(
        "FactorScoreDetail",
        back_populates="calculation",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint(
            "rubric_version", "calibration_version", "input_hash",
            name="uq_ips_score_calculations_cache_key",
        ),
        Index("ix_ips_score_calculations_ips_id", "ips_id"),
        Index("ix_ips_score_calculations_trade_id", "trade_id"),
    )

    def __repr__(self) -> str:
        return (
            f"ScoreCalculation("
            f"hash={self.input_hash[:12]}, "
            f"rubric={self.rubric_version}, "
            f"score={self.final_score})"
        )


# ============================================================
# FACTOR SCORE DETAIL MODEL
# ============================================================


class FactorScoreDetail(Base):
    """Per-metric score row."""

    __tablename__ = "factor_score_details"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    calculation_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("ips_score_calculations.id", ondelete="CASCADE"),
        nullable=False,
    )

    factor_name: Mapped[str] = mapped_column(String(100), nullable=False)

    criterion: Mapped[str] = mapped_column(String(100), nullable=False)

    factor_value: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Numeric value when the raw value is numeric",
    )

    raw_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    weight: Mapped[float] = mapped_column(Float, nullable=False)

    individual_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    weighted_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    target_met: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=_utcnow)

    calculation: Mapped["ScoreCalculation"] = relationship(
        "ScoreCalculation",
        back_populates="factor_details",
    )

    __table_args__ = (
        Index("ix_factor_score_details_calculation_id", "calculation_id"),
    )

    def __repr__(self) -> str:
        return f"FactorScoreDetail(factor={self.factor_name}, score={self.individual_score})"
