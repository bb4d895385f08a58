"""
Tests for the scoring engine.

============================================================
PURPOSE
============================================================
- Step table and category map evaluation
- Neutral default for criteria without data
- Penalties and inclusive caps
- Determinism of score and calibration

The neutral default (50) for a criterion with no available
metrics is product behavior. Changing it to penalize missing
data changes every composite in the system.

============================================================
"""

from types import MappingProxyType

import pytest

from trade_scoring.calibration import IdentityCalibrator
from trade_scoring.config import ScoringPolicyConfig
from trade_scoring.engine import (
    ScoringEngine,
    clamp_score,
    evaluate_category_map,
    evaluate_numeric_table,
    format_value,
)
from trade_scoring.features import FeatureExtractor
from trade_scoring.rubric import default_rubric, parse_rubric
from trade_scoring.types import CategoryMap, ExtractedFeatures, NumericTable


def _features(**values):
    return ExtractedFeatures({"strategy": "put_credit_spread", "symbol": "TEST", **values})


@pytest.fixture
def engine():
    return ScoringEngine()


@pytest.fixture
def golden_features():
    return _features(
        credit_to_width_pct=0.22,
        delta_short=0.13,
        iv_rank=45,
        oi_short_leg_min=600,
        bid_ask_pct=1.5,
        days_to_earnings=7,
        macro_event_flag="None",
        price_above_ma_50=True,
        rsi_14=55,
        fill_vs_mid_bps=20,
    )


# ============================================================
# PRIMITIVES
# ============================================================


class TestNumericTable:
    """Tests for step table evaluation."""

    @pytest.fixture
    def increasing(self):
        return NumericTable(steps=((10.0, 40.0), (20.0, 70.0), (30.0, 85.0)))

    def test_value_between_thresholds(self, increasing):
        assert evaluate_numeric_table(25, increasing) == 70

    def test_value_below_table(self, increasing):
        assert evaluate_numeric_table(5, increasing) == 40

    def test_value_above_table(self, increasing):
        assert evaluate_numeric_table(100, increasing) == 85

    def test_value_on_threshold(self, increasing):
        assert evaluate_numeric_table(20, increasing) == 70

    def test_decreasing_table(self):
        table = NumericTable(steps=((1.5, 100.0), (2.0, 85.0), (3.0, 60.0), (5.0, 30.0)))

        assert evaluate_numeric_table(1.0, table) == 100
        assert evaluate_numeric_table(1.8, table) == 85
        assert evaluate_numeric_table(2.0, table) == 85
        assert evaluate_numeric_table(9.0, table) == 30

    def test_empty_table_scores_zero(self):
        assert evaluate_numeric_table(10, NumericTable(steps=())) == 0

    def test_scores_clamped(self):
        table = NumericTable(steps=((0.0, -10.0), (10.0, 140.0)))

        assert evaluate_numeric_table(-5, table) == 0
        assert evaluate_numeric_table(50, table) == 100


class TestCategoryMap:
    """Tests for categorical evaluation."""

    def test_signed_offsets(self):
        mapping = CategoryMap(scores=MappingProxyType({"FOMC": -20.0, "CPI": -10.0, "None": 0.0}))

        assert evaluate_category_map("FOMC", mapping) == 80
        assert evaluate_category_map("CPI", mapping) == 90
        assert evaluate_category_map("None", mapping) == 100

    def test_direct_scores(self):
        mapping = CategoryMap(scores=MappingProxyType({"true": 80.0, "false": 40.0}))

        assert evaluate_category_map(True, mapping) == 80
        assert evaluate_category_map(False, mapping) == 40
        assert evaluate_category_map("true", mapping) == 80

    def test_unmatched_scores_zero(self):
        mapping = CategoryMap(scores=MappingProxyType({"FOMC": -20.0}))

        assert evaluate_category_map("NFP", mapping) == 0

    def test_mixed_sign_map_reads_every_score_as_offset(self):
        mapping = CategoryMap(scores=MappingProxyType({"bad": -30.0, "good": 90.0}))

        # A positive score in a signed map overflows and clamps
        assert evaluate_category_map("good", mapping) == 100
        assert evaluate_category_map("bad", mapping) == 70


class TestFormatting:
    """Tests for value formatting and clamping helpers."""

    def test_format_value(self):
        assert format_value(90.0) == "90"
        assert format_value(91.67) == "91.67"
        assert format_value(True) == "true"
        assert format_value("FOMC") == "FOMC"

    def test_clamp_score(self):
        assert clamp_score(-15) == 0
        assert clamp_score(100.004) == 100
        assert clamp_score(55.556) == 55.56
        # 55.555 is stored as 55.5549..., so it rounds down
        assert clamp_score(55.555) == 55.55
        assert clamp_score(float("nan")) == 0


# ============================================================
# ENGINE
# ============================================================


class TestScoringEngine:
    """Tests for ScoringEngine.score."""

    def test_golden_composite(self, engine, golden_features):
        result = engine.score(golden_features, default_rubric())

        assert result.raw_score == 83.0
        assert result.penalties_applied == ()
        assert result.violations == ()
        assert result.is_authoritative is True

    def test_criterion_detail(self, engine, golden_features):
        result = engine.score(golden_features, default_rubric())
        criteria = {c.criterion: c for c in result.criterion_scores}

        assert criteria["edge"].score == 80
        assert criteria["liquidity"].score == 90
        assert criteria["risk_events"].score == 82.5
        assert criteria["trend_alignment"].score == 80
        assert criteria["execution_quality"].score == 85
        assert sum(c.normalized_weight for c in result.criterion_scores) == pytest.approx(1.0)

    def test_reasons_list(self, engine, golden_features):
        result = engine.score(golden_features, default_rubric())
        reasons = result.reasons()

        assert "credit_to_width_pct: 0.22 → 80" in reasons
        assert "macro_event_flag: None → 100" in reasons
        assert "price_above_ma_50: true → 80" in reasons
        assert len(reasons) == 10

    def test_neutral_default_for_missing_criterion(self, engine):
        features = _features(
            credit_to_width_pct=0.22,
            delta_short=0.13,
            iv_rank=45,
        )

        result = engine.score(features, default_rubric())
        criteria = {c.criterion: c for c in result.criterion_scores}

        assert criteria["liquidity"].score == 50
        assert criteria["liquidity"].used_neutral_default is True
        assert criteria["edge"].used_neutral_default is False

    def test_missing_metric_reason_and_violation(self, engine, golden_features):
        features = _features(**{k: v for k, v in golden_features.items()
                                if k not in ("strategy", "symbol", "rsi_14")})

        result = engine.score(features, default_rubric())
        rsi = next(m for m in result.metric_scores if m.metric == "rsi_14")

        assert rsi.score is None
        assert rsi.reason == "rsi_14: missing"
        assert result.violations == ("Missing required feature: rsi_14",)
        assert result.is_authoritative is False
        # trend_alignment averages only the price_above_ma_50 score
        criteria = {c.criterion: c for c in result.criterion_scores}
        assert criteria["trend_alignment"].score == 80

    def test_non_numeric_value_treated_as_missing(self, engine, golden_features):
        features = _features(**{**dict(golden_features), "iv_rank": "high"})

        result = engine.score(features, default_rubric())
        iv = next(m for m in result.metric_scores if m.metric == "iv_rank")

        assert iv.score is None
        assert iv.reason == "iv_rank: missing"

    def test_penalty_applied(self, engine, golden_features):
        features = _features(**{**dict(golden_features), "credit_to_width_pct": 0.10})

        result = engine.score(features, default_rubric())

        assert [str(p) for p in result.penalties_applied] == ["credit_to_width_pct < 0.12 (-25)"]
        assert "credit_to_width_pct < 0.12 (-25)" in result.reasons()

    def test_composite_clamped_to_min_cap(self, engine):
        rubric = parse_rubric({
            "name": "Tiny",
            "rubric_version": "0.1.0",
            "weights": {"only": 1},
            "criteria": {"only": {"iv_rank": [[0, 10], [100, 10]]}},
            "aggregation": {
                "method": "weighted_mean",
                "caps": {"min": 0, "max": 100},
                "penalties": [{"if": "iv_rank > 1", "minus": 25}],
            },
        })

        result = engine.score(_features(iv_rank=50), rubric)

        assert result.raw_score == 0
        assert len(result.penalties_applied) == 1

    def test_caps_are_inclusive(self, engine):
        rubric = parse_rubric({
            "name": "Capped",
            "rubric_version": "0.1.0",
            "weights": {"only": 1},
            "criteria": {"only": {"iv_rank": [[0, 95], [100, 95]]}},
            "aggregation": {"caps": {"min": 20, "max": 90}},
        })

        assert engine.score(_features(iv_rank=50), rubric).raw_score == 90

    def test_zero_weights_do_not_divide_by_zero(self, engine):
        rubric = parse_rubric({
            "name": "Weightless",
            "rubric_version": "0.1.0",
            "weights": {"only": 0},
            "criteria": {"only": {"iv_rank": [[0, 80]]}},
        })

        assert engine.score(_features(iv_rank=50), rubric).raw_score == 0

    def test_custom_neutral_score(self):
        engine = ScoringEngine(ScoringPolicyConfig(neutral_criterion_score=40))

        result = engine.score(_features(), default_rubric())

        assert result.raw_score == 40
        assert all(c.used_neutral_default for c in result.criterion_scores)

    def test_input_features_not_mutated(self, engine, golden_features):
        before = golden_features.to_dict()

        engine.score(golden_features, default_rubric())

        assert golden_features.to_dict() == before


class TestEndToEnd:
    """Extraction, scoring and calibration together."""

    def test_aapl_scenario(self, mock_clock, aapl_trade_draft, aapl_factors):
        extraction = FeatureExtractor(clock=mock_clock).extract(aapl_trade_draft, aapl_factors)
        result = ScoringEngine().score(extraction.features, default_rubric())
        calibration = IdentityCalibrator().calibrate(result.raw_score)
        edge = next(c for c in result.criterion_scores if c.criterion == "edge")

        assert extraction.features["credit_to_width_pct"] == pytest.approx(0.25)
        assert edge.score >= 80
        assert result.penalties_applied == ()
        assert 75 <= result.raw_score <= 90
        assert result.raw_score == pytest.approx(89.08, abs=0.01)
        assert calibration.calibrated_probability == round(result.raw_score / 100, 2)

    def test_pipeline_is_deterministic(self, mock_clock, aapl_trade_draft, aapl_factors):
        extractor = FeatureExtractor(clock=mock_clock)
        engine = ScoringEngine()
        calibrator = IdentityCalibrator()

        def run():
            features = extractor.extract(aapl_trade_draft, aapl_factors).features
            result = engine.score(features, default_rubric())
            return result.to_dict(), calibrator.calibrate(result.raw_score)

        assert run() == run()
