"""
Trade Scoring Engine - Package.

============================================================
PURPOSE
============================================================
Deterministic, explainable scoring of option trade
candidates against versioned, strategy-specific rubrics.

============================================================
WHAT IT IS
============================================================
- Rubric-driven weighted scoring (0-100)
- Versioned calibration to a success probability
- Fingerprint cache keyed by rubric + calibration version
- Optional narrative explanation that never moves the number

============================================================
WHAT IT IS NOT
============================================================
- NOT a trade executor
- NOT a market data client
- NOT a network service

============================================================
PIPELINE
============================================================
RubricStore -> FeatureExtractor -> ScoringEngine
    -> Calibrator -> ScoreCache -> NarrativeGenerator

============================================================
USAGE
============================================================
    from trade_scoring import create_service

    service = create_service()
    evaluation = await service.evaluate(
        {
            "symbol": "AAPL",
            "contractType": "put-credit-spread",
            "shortPutStrike": 180,
            "longPutStrike": 175,
            "creditReceived": 1.25,
            "expirationDate": "2026-11-20",
        },
        {"delta_short": 0.12, "iv_rank": 55, "macro_event_flag": "None"},
    )

    print(evaluation.payload.raw_score)
    print(evaluation.payload.calibrated_success_prob)
    print(evaluation.payload.reasons)

============================================================
"""

# Types
from .types import (
    # Enums
    MetricKind,
    ComparisonOperator,
    ConfidenceTier,
    EvaluationStatus,

    # Rubric
    NumericTable,
    CategoryMap,
    MetricConfig,
    PenaltyRule,
    ScoreCaps,
    AggregationPolicy,
    StrategyRubric,

    # Extraction
    ExtractedFeatures,
    ExtractionIssue,
    FeatureExtractionResult,

    # Scores
    MetricScore,
    CriterionScore,
    AppliedPenalty,
    AggregatedScore,
    CalibrationResult,
    CacheKey,
    CachedScorePayload,
    FactorScoreRow,

    # Exceptions
    TradeScoringError,
    ConfigurationError,
    RubricError,
    InvalidRubricError,
    RubricDocumentError,
    RubricSourceError,
    CacheBackendError,
    NarrativeError,
)

# Configuration
from .config import (
    ScoringPolicyConfig,
    ConfidenceTierConfig,
    CalibrationConfig,
    NarrativeConfig,
    DatabaseConfig,
    LoggingConfig,
    TradeScoringConfig,
    get_default_config,
    load_config,
)

# Components
from .rubric import (
    DEFAULT_PCS_RUBRIC,
    RubricSource,
    StaticRubricSource,
    RubricStore,
    parse_rubric,
    default_rubric,
)

from .features import (
    FACTOR_ALIASES,
    TradeDraft,
    FeatureExtractor,
    extract_features,
    fingerprint_input,
    fingerprint_for_caching,
)

from .engine import (
    ScoringEngine,
    score_features,
)

from .calibration import (
    Calibrator,
    IdentityCalibrator,
    PiecewiseLinearCalibrator,
    create_calibrator,
)

from .cache import (
    ScoreCacheBackend,
    InMemoryScoreCacheBackend,
    ScoreCache,
)

from .narrative import (
    NarrativeRequest,
    NarrativeGenerator,
    OllamaNarrativeGenerator,
    fallback_narrative,
    generate_narrative,
)

# Service
from .service import (
    TradeCandidate,
    TradeEvaluation,
    TradeScoringService,
    create_service,
)

from .clock import ClockProtocol, SystemClock, MockClock
from .logging_config import setup_logging


__all__ = [
    # Enums
    "MetricKind",
    "ComparisonOperator",
    "ConfidenceTier",
    "EvaluationStatus",

    # Rubric
    "NumericTable",
    "CategoryMap",
    "MetricConfig",
    "PenaltyRule",
    "ScoreCaps",
    "AggregationPolicy",
    "StrategyRubric",

    # Extraction
    "ExtractedFeatures",
    "ExtractionIssue",
    "FeatureExtractionResult",

    # Scores
    "MetricScore",
    "CriterionScore",
    "AppliedPenalty",
    "AggregatedScore",
    "CalibrationResult",
    "CacheKey",
    "CachedScorePayload",
    "FactorScoreRow",

    # Exceptions
    "TradeScoringError",
    "ConfigurationError",
    "RubricError",
    "InvalidRubricError",
    "RubricDocumentError",
    "RubricSourceError",
    "CacheBackendError",
    "NarrativeError",

    # Configuration
    "ScoringPolicyConfig",
    "ConfidenceTierConfig",
    "CalibrationConfig",
    "NarrativeConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "TradeScoringConfig",
    "get_default_config",
    "load_config",

    # Components
    "DEFAULT_PCS_RUBRIC",
    "RubricSource",
    "StaticRubricSource",
    "RubricStore",
    "parse_rubric",
    "default_rubric",
    "FACTOR_ALIASES",
    "TradeDraft",
    "FeatureExtractor",
    "extract_features",
    "fingerprint_input",
    "fingerprint_for_caching",
    "ScoringEngine",
    "score_features",
    "Calibrator",
    "IdentityCalibrator",
    "PiecewiseLinearCalibrator",
    "create_calibrator",
    "ScoreCacheBackend",
    "InMemoryScoreCacheBackend",
    "ScoreCache",
    "NarrativeRequest",
    "NarrativeGenerator",
    "OllamaNarrativeGenerator",
    "fallback_narrative",
    "generate_narrative",

    # Service
    "TradeCandidate",
    "TradeEvaluation",
    "TradeScoringService",
    "create_service",

    # Utilities
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "setup_logging",
]


__version__ = "1.0.0"
