"""
Trade Scoring Engine - Configuration.

============================================================
CONFIGURABLE THRESHOLDS AND SERVICES
============================================================

All configuration values are designed to be:
- Easily tunable
- Well-documented
- Safe defaults

Sources, in order of precedence:
1. YAML file (load_config(path))
2. Environment variables (.env supported)
3. Dataclass defaults

============================================================
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import yaml
from dotenv import load_dotenv

from .types import ConfigurationError


# =============================================================
# SCORING POLICY
# =============================================================


@dataclass
class ScoringPolicyConfig:
    """
    Engine-level scoring policy.
    """
    pass_threshold: float = 70.0           # Metric "passed" at or above this
    neutral_criterion_score: float = 50.0  # Criterion with no data scores this
    default_min_cap: float = 0.0
    default_max_cap: float = 100.0
    score_decimals: int = 2

    def validate(self) -> None:
        if not 0.0 <= self.pass_threshold <= 100.0:
            raise ConfigurationError(f"pass_threshold out of range: {self.pass_threshold}")
        if not 0.0 <= self.neutral_criterion_score <= 100.0:
            raise ConfigurationError(
                f"neutral_criterion_score out of range: {self.neutral_criterion_score}"
            )
        if self.default_min_cap > self.default_max_cap:
            raise ConfigurationError("default_min_cap must not exceed default_max_cap")


# =============================================================
# CONFIDENCE TIERS
# =============================================================


@dataclass
class ConfidenceTierConfig:
    """
    Metric coverage needed for each confidence tier.
    """
    high_min_coverage: float = 0.9     # At or above = HIGH (if no issues)
    medium_min_coverage: float = 0.6   # At or above = MEDIUM, below = LOW

    def validate(self) -> None:
        if not 0.0 <= self.medium_min_coverage <= self.high_min_coverage <= 1.0:
            raise ConfigurationError(
                "confidence coverage thresholds must satisfy 0 <= medium <= high <= 1"
            )


# =============================================================
# CALIBRATION
# =============================================================


@dataclass
class CalibrationConfig:
    """
    Which calibration curve to use.

    method "none" is the linear identity mapping. method
    "piecewise" interpolates between (raw_score, probability)
    points and records `version`.
    """
    method: str = "none"
    version: Optional[str] = None
    points: List[Tuple[float, float]] = field(default_factory=list)

    def validate(self) -> None:
        if self.method not in ("none", "piecewise"):
            raise ConfigurationError(f"Unknown calibration method: {self.method}")
        if self.method == "piecewise":
            if not self.version:
                raise ConfigurationError("piecewise calibration requires a version")
            if len(self.points) < 2:
                raise ConfigurationError("piecewise calibration requires at least 2 points")
            xs = [x for x, _ in self.points]
            if xs != sorted(xs) or len(set(xs)) != len(xs):
                raise ConfigurationError("piecewise calibration points must be strictly increasing")


# =============================================================
# NARRATIVE
# =============================================================


@dataclass
class NarrativeConfig:
    """
    Optional LLM explanation layer.
    """
    enabled: bool = False
    api_url: str = "http://localhost:11434/api/chat"
    model: str = "llama3"
    word_budget: int = 90
    bullet_count: int = 3
    timeout_seconds: float = 20.0
    temperature: float = 0.0
    seed: int = 7


# =============================================================
# DATABASE / LOGGING
# =============================================================


@dataclass
class DatabaseConfig:
    """
    Persistent store for rubrics and cached scores.

    No URL means no persistence: default rubric and an
    in-memory cache are used.
    """
    url: Optional[str] = None
    pool_size: int = 5
    max_overflow: int = 10
    echo: bool = False


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "text"  # text | json


# =============================================================
# MAIN CONFIG
# =============================================================


@dataclass
class TradeScoringConfig:
    """
    Main configuration for the trade scoring engine.
    """
    scoring: ScoringPolicyConfig = field(default_factory=ScoringPolicyConfig)
    confidence: ConfidenceTierConfig = field(default_factory=ConfidenceTierConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    narrative: NarrativeConfig = field(default_factory=NarrativeConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> "TradeScoringConfig":
        self.scoring.validate()
        self.confidence.validate()
        self.calibration.validate()
        return self

    @classmethod
    def from_env(cls) -> "TradeScoringConfig":
        """Build configuration from environment variables (.env aware)."""
        load_dotenv()

        config = cls()
        config.database.url = os.getenv("DATABASE_URL") or None
        config.narrative.enabled = os.getenv("NARRATIVE_ENABLED", "false").lower() == "true"
        config.narrative.api_url = os.getenv("OLLAMA_API_URL", config.narrative.api_url).strip()
        config.narrative.model = os.getenv("OLLAMA_MODEL", config.narrative.model).strip()
        config.narrative.timeout_seconds = float(
            os.getenv("NARRATIVE_TIMEOUT_SECONDS", str(config.narrative.timeout_seconds))
        )
        config.calibration.method = os.getenv("CALIBRATION_METHOD", config.calibration.method)
        config.logging.level = os.getenv("SCORING_LOG_LEVEL", config.logging.level)
        config.logging.format = os.getenv("SCORING_LOG_FORMAT", config.logging.format)
        return config.validate()

    @classmethod
    def from_yaml(cls, path: Path) -> "TradeScoringConfig":
        """Load configuration from YAML file on top of env/defaults."""
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        config = cls.from_env()

        if "scoring" in data:
            sc = data["scoring"]
            config.scoring = ScoringPolicyConfig(
                pass_threshold=sc.get("pass_threshold", 70.0),
                neutral_criterion_score=sc.get("neutral_criterion_score", 50.0),
                default_min_cap=sc.get("default_min_cap", 0.0),
                default_max_cap=sc.get("default_max_cap", 100.0),
                score_decimals=sc.get("score_decimals", 2),
            )

        if "confidence" in data:
            cc = data["confidence"]
            config.confidence = ConfidenceTierConfig(
                high_min_coverage=cc.get("high_min_coverage", 0.9),
                medium_min_coverage=cc.get("medium_min_coverage", 0.6),
            )

        if "calibration" in data:
            cal = data["calibration"]
            config.calibration = CalibrationConfig(
                method=cal.get("method", "none"),
                version=cal.get("version"),
                points=[(float(x), float(y)) for x, y in cal.get("points", [])],
            )

        if "narrative" in data:
            nc = data["narrative"]
            narrative = config.narrative
            narrative.enabled = nc.get("enabled", narrative.enabled)
            narrative.api_url = nc.get("api_url", narrative.api_url)
            narrative.model = nc.get("model", narrative.model)
            narrative.word_budget = nc.get("word_budget", narrative.word_budget)
            narrative.timeout_seconds = nc.get("timeout_seconds", narrative.timeout_seconds)
            narrative.seed = nc.get("seed", narrative.seed)
            narrative.bullet_count = nc.get("bullet_count", narrative.bullet_count)

        if "database" in data:
            db = data["database"]
            config.database.url = db.get("url", config.database.url)
            config.database.echo = db.get("echo", config.database.echo)

        if "logging" in data:
            lc = data["logging"]
            config.logging = LoggingConfig(
                level=lc.get("level", config.logging.level),
                format=lc.get("format", config.logging.format),
            )

        return config.validate()


# =============================================================
# DEFAULT CONFIG INSTANCE
# =============================================================


def get_default_config() -> TradeScoringConfig:
    """Get default configuration (no environment lookup)."""
    return TradeScoringConfig()


def load_config(path: Optional[Path] = None) -> TradeScoringConfig:
    """
    Load configuration from file, else environment.

    Args:
        path: Optional path to YAML config file

    Returns:
        TradeScoringConfig instance
    """
    if path and path.exists():
        return TradeScoringConfig.from_yaml(path)
    return TradeScoringConfig.from_env()
