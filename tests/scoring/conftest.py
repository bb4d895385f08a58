"""
Shared fixtures for trade scoring tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from trade_scoring.clock import MockClock
from trade_scoring.rubric import DEFAULT_PCS_RUBRIC


FIXED_NOW = datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def mock_clock():
    """Clock pinned to midnight UTC."""
    return MockClock(FIXED_NOW)


@pytest.fixture
def aapl_trade_draft():
    """Put credit spread expiring 30 days after the mock clock."""
    return {
        "symbol": "AAPL",
        "contractType": "put-credit-spread",
        "shortPutStrike": 180,
        "longPutStrike": 175,
        "creditReceived": 1.25,
        "expirationDate": (FIXED_NOW + timedelta(days=30)).date().isoformat(),
    }


@pytest.fixture
def aapl_factors():
    """Complete factor map for the default rubric."""
    return {
        "delta_short": 0.12,
        "iv_rank": 55,
        "oi_short_leg_min": 800,
        "bid_ask_pct": 1.8,
        "days_to_earnings": 20,
        "macro_event_flag": "None",
        "price_above_ma_50": True,
        "rsi_14": 58,
        "fill_vs_mid_bps": 10,
    }


@pytest.fixture
def rubric_document():
    """Mutable copy of the built-in rubric document."""
    return {
        **DEFAULT_PCS_RUBRIC,
        "weights": dict(DEFAULT_PCS_RUBRIC["weights"]),
        "criteria": {k: dict(v) for k, v in DEFAULT_PCS_RUBRIC["criteria"].items()},
        "aggregation": dict(DEFAULT_PCS_RUBRIC["aggregation"]),
        "required_features": list(DEFAULT_PCS_RUBRIC["required_features"]),
    }
