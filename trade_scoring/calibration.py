"""
Trade Scoring Engine - Calibration.

Maps a 0-100 composite to a success probability. Every result
carries the version of the curve that produced it so cached
scores stay attributable when the curve changes.
"""

from abc import ABC, abstractmethod
from typing import Optional, Sequence, Tuple

from .config import CalibrationConfig
from .types import CalibrationResult, ConfigurationError


IDENTITY_CALIBRATION_VERSION = "none"


def _clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


class Calibrator(ABC):
    """Calibration curve contract."""

    @property
    @abstractmethod
    def version(self) -> str:
        pass

    @abstractmethod
    def probability(self, raw_score: float) -> float:
        """Probability in [0, 1] for a raw score."""
        pass

    def calibrate(self, raw_score: float) -> CalibrationResult:
        return CalibrationResult(
            calibration_version=self.version,
            calibrated_probability=round(_clamp(self.probability(raw_score), 0.0, 1.0), 2),
        )


class IdentityCalibrator(Calibrator):
    """probability = clamp(score, 0, 100) / 100."""

    @property
    def version(self) -> str:
        return IDENTITY_CALIBRATION_VERSION

    def probability(self, raw_score: float) -> float:
        return _clamp(raw_score, 0.0, 100.0) / 100.0


class PiecewiseLinearCalibrator(Calibrator):
    """
    Linear interpolation between (raw_score, probability) knots.

    Scores outside the knots take the nearest knot's probability.
    """

    def __init__(self, version: str, points: Sequence[Tuple[float, float]]):
        if len(points) < 2:
            raise ConfigurationError("piecewise calibration requires at least 2 points")
        xs = [float(x) for x, _ in points]
        if any(b <= a for a, b in zip(xs, xs[1:])):
            raise ConfigurationError("piecewise calibration points must be strictly increasing")
        self._version = version
        self._points = [(float(x), float(y)) for x, y in points]

    @property
    def version(self) -> str:
        return self._version

    def probability(self, raw_score: float) -> float:
        points = self._points
        if raw_score <= points[0][0]:
            return points[0][1]
        if raw_score >= points[-1][0]:
            return points[-1][1]
        for (x0, y0), (x1, y1) in zip(points, points[1:]):
            if x0 <= raw_score <= x1:
                return y0 + (y1 - y0) * (raw_score - x0) / (x1 - x0)
        return points[-1][1]


def create_calibrator(config: Optional[CalibrationConfig] = None) -> Calibrator:
    """Build the calibrator named by configuration."""
    config = config or CalibrationConfig()
    config.validate()
    if config.method == "piecewise":
        return PiecewiseLinearCalibrator(config.version, config.points)
    return IdentityCalibrator()
