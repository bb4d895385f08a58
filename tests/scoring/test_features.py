"""
Tests for feature extraction.

============================================================
PURPOSE
============================================================
- Alias resolution of loosely-named factors
- Derived days-to-expiration and credit-to-width
- Structured diagnostics instead of exceptions
- Order-independent input fingerprints

============================================================
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from trade_scoring.features import (
    FeatureExtractor,
    compute_dte,
    fingerprint_for_caching,
    fingerprint_input,
    normalise_key,
    parse_expiration,
    to_boolean,
    to_number,
)


FIXED_NOW = datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def extractor(mock_clock):
    return FeatureExtractor(clock=mock_clock)


# ============================================================
# HELPERS
# ============================================================


class TestHelpers:
    """Tests for normalization and coercion helpers."""

    def test_normalise_key(self):
        assert normalise_key("Short Leg Delta") == "short_leg_delta"
        assert normalise_key("Price>MA50") == "price_ma50"
        assert normalise_key("  bid-ask % ") == "bid_ask"

    def test_to_number(self):
        assert to_number("1.5") == 1.5
        assert to_number(3) == 3.0
        assert to_number(True) is None
        assert to_number("abc") is None
        assert to_number(float("nan")) is None

    def test_to_boolean(self):
        assert to_boolean("Yes") is True
        assert to_boolean("n") is False
        assert to_boolean(1) is True
        assert to_boolean(0) is False
        assert to_boolean("maybe") is None
        assert to_boolean(2) is None

    def test_date_only_expiration_is_midnight_utc(self):
        parsed = parse_expiration("2026-04-01")

        assert parsed.hour == 0
        assert parsed.utcoffset() == timedelta(0)

    def test_bad_expiration(self):
        assert parse_expiration("next friday") is None

    def test_compute_dte_rounds_and_floors(self):
        assert compute_dte(FIXED_NOW + timedelta(days=30), FIXED_NOW) == 30
        assert compute_dte(FIXED_NOW + timedelta(days=2, hours=12), FIXED_NOW) == 3
        assert compute_dte(FIXED_NOW - timedelta(days=4), FIXED_NOW) == 0


# ============================================================
# EXTRACTION
# ============================================================


class TestFeatureExtractor:
    """Tests for FeatureExtractor.extract."""

    def test_complete_input_is_ok(self, extractor, aapl_trade_draft, aapl_factors):
        result = extractor.extract(aapl_trade_draft, aapl_factors)

        assert result.ok is True
        assert result.missing == ()
        assert result.out_of_range == ()
        assert result.features.symbol == "AAPL"
        assert result.features.strategy == "put_credit_spread"
        assert result.features["credit_to_width_pct"] == pytest.approx(0.25)
        assert result.features["dte"] == 30
        assert result.features["macro_event_flag"] == "None"
        assert result.features["price_above_ma_50"] is True

    def test_alias_resolution(self, extractor, aapl_trade_draft):
        factors = {
            "Short Leg Delta": "0.15",
            "IVR": 40,
            "Price>MA50": "yes",
            "RSI": 61,
            "Macro Event": "CPI",
        }

        result = extractor.extract(aapl_trade_draft, factors)

        assert result.features["delta_short"] == 0.15
        assert result.features["iv_rank"] == 40
        assert result.features["price_above_ma_50"] is True
        assert result.features["rsi_14"] == 61
        assert result.features["macro_event_flag"] == "CPI"

    def test_missing_factors_reported(self, extractor, aapl_trade_draft):
        result = extractor.extract(aapl_trade_draft, {"delta_short": 0.12})

        assert result.ok is False
        assert result.features is not None
        assert "iv_rank" in result.missing
        assert "macro_event_flag" in result.missing
        assert "delta_short" not in result.missing

    def test_supplied_values_win_over_derived(self, extractor, aapl_trade_draft, aapl_factors):
        factors = {**aapl_factors, "days_to_expiration": 45, "credit_to_width_pct": 0.3}

        result = extractor.extract(aapl_trade_draft, factors)

        assert result.features["dte"] == 45
        assert result.features["credit_to_width_pct"] == 0.3

    def test_call_leg_credit_to_width(self, extractor, aapl_factors):
        draft = {
            "symbol": "SPY",
            "contractType": "call-credit-spread",
            "shortCallStrike": 500,
            "longCallStrike": 505,
            "creditReceived": 1.0,
            "expirationDate": (FIXED_NOW + timedelta(days=10)).date().isoformat(),
        }

        result = extractor.extract(draft, aapl_factors)

        assert result.features["credit_to_width_pct"] == 0.2
        assert result.features["strategy"] == "call_credit_spread"

    def test_date_object_expiration(self, extractor, aapl_trade_draft, aapl_factors):
        draft = {**aapl_trade_draft, "expirationDate": date(2026, 4, 1)}

        result = extractor.extract(draft, aapl_factors)

        assert result.features["expiration_date"] == "2026-04-01"
        assert result.features["dte"] == 30

    def test_schema_failure_returns_diagnostics(self, extractor, aapl_factors):
        result = extractor.extract({"contractType": "put-credit-spread"}, aapl_factors)

        assert result.ok is False
        assert result.features is None
        assert result.schema_valid is False
        assert "symbol" in result.missing
        assert result.error

    def test_none_draft_does_not_raise(self, extractor):
        result = extractor.extract(None, None)

        assert result.ok is False
        assert result.features is None

    def test_expired_trade_flagged(self, extractor, aapl_trade_draft, aapl_factors):
        draft = {
            **aapl_trade_draft,
            "expirationDate": (FIXED_NOW - timedelta(days=5)).date().isoformat(),
        }

        result = extractor.extract(draft, aapl_factors)

        assert result.ok is False
        assert result.features["dte"] == 0
        assert any(issue.field == "dte" for issue in result.out_of_range)

    def test_unparseable_expiration_flagged(self, extractor, aapl_trade_draft, aapl_factors):
        draft = {**aapl_trade_draft, "expirationDate": "soon"}

        result = extractor.extract(draft, aapl_factors)

        assert any(issue.field == "expiration_date" for issue in result.out_of_range)
        assert "dte" in result.missing

    def test_delta_out_of_range(self, extractor, aapl_trade_draft, aapl_factors):
        result = extractor.extract(aapl_trade_draft, {**aapl_factors, "delta_short": 1.5})

        assert result.ok is False
        assert result.features["delta_short"] == 1.5
        assert [i.field for i in result.out_of_range] == ["delta_short"]

    def test_non_positive_credit_to_width(self, extractor, aapl_trade_draft, aapl_factors):
        draft = {**aapl_trade_draft, "creditReceived": 0}

        result = extractor.extract(draft, aapl_factors)

        assert any(
            issue.field == "credit_to_width_pct" and "positive" in issue.message
            for issue in result.out_of_range
        )

    def test_non_string_macro_flag(self, extractor, aapl_trade_draft, aapl_factors):
        result = extractor.extract(aapl_trade_draft, {**aapl_factors, "macro_event_flag": 5})

        assert "macro_event_flag" not in result.features
        assert any(issue.field == "macro_event_flag" for issue in result.out_of_range)

    def test_unrecognized_boolean_is_missing(self, extractor, aapl_trade_draft, aapl_factors):
        result = extractor.extract(aapl_trade_draft, {**aapl_factors, "price_above_ma_50": "maybe"})

        assert "price_above_ma_50" in result.missing

    def test_extra_rubric_features(self, extractor, aapl_trade_draft, aapl_factors):
        result = extractor.extract(
            aapl_trade_draft,
            {**aapl_factors, "Gamma Exposure": 3},
            extra_features=("gamma_exposure", "vanna"),
        )

        assert result.features["gamma_exposure"] == 3
        assert "vanna" in result.missing

    def test_features_are_read_only(self, extractor, aapl_trade_draft, aapl_factors):
        features = extractor.extract(aapl_trade_draft, aapl_factors).features

        with pytest.raises(TypeError):
            features["symbol"] = "MSFT"


# ============================================================
# FINGERPRINTS
# ============================================================


class TestFingerprint:
    """Tests for input fingerprinting."""

    def test_key_order_does_not_matter(self, aapl_trade_draft, aapl_factors):
        reordered_draft = dict(reversed(list(aapl_trade_draft.items())))
        reordered_factors = dict(reversed(list(aapl_factors.items())))

        assert fingerprint_input(aapl_trade_draft, aapl_factors) == fingerprint_input(
            reordered_draft, reordered_factors
        )

    def test_extraction_fingerprint_is_stable(self, extractor, aapl_trade_draft, aapl_factors):
        first = extractor.extract(aapl_trade_draft, aapl_factors)
        second = extractor.extract(
            dict(reversed(list(aapl_trade_draft.items()))),
            dict(reversed(list(aapl_factors.items()))),
        )

        assert first.input_fingerprint == second.input_fingerprint

    def test_value_change_changes_fingerprint(self, aapl_trade_draft, aapl_factors):
        changed = {**aapl_factors, "iv_rank": 56}

        assert fingerprint_input(aapl_trade_draft, aapl_factors) != fingerprint_input(
            aapl_trade_draft, changed
        )

    def test_caching_fingerprint_covers_version_and_policy(self, aapl_trade_draft, aapl_factors):
        base = fingerprint_for_caching("1.3.0", aapl_trade_draft, aapl_factors, "default")

        assert base == fingerprint_for_caching("1.3.0", aapl_trade_draft, aapl_factors, "default")
        assert base != fingerprint_for_caching("1.4.0", aapl_trade_draft, aapl_factors, "default")
        assert base != fingerprint_for_caching("1.3.0", aapl_trade_draft, aapl_factors, "ips-7")
