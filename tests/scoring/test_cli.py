"""
Tests for the command line entry point.
"""

import json

import pytest

from trade_scoring.cli import async_main, create_parser, parse_candidates
from trade_scoring.config import get_default_config


class TestParseCandidates:
    """Tests for candidate decoding."""

    def test_single_object(self, aapl_trade_draft, aapl_factors):
        candidates = parse_candidates(
            {"trade_draft": aapl_trade_draft, "factor_values": aapl_factors, "trade_id": "T-1"},
        )

        assert len(candidates) == 1
        assert candidates[0].trade_id == "T-1"
        assert candidates[0].strategy is None

    def test_list_with_default_strategy(self, aapl_trade_draft):
        candidates = parse_candidates(
            [
                {"trade_draft": aapl_trade_draft},
                {"trade_draft": aapl_trade_draft, "strategy": "iron-condor"},
            ],
            default_strategy="put-credit-spread",
        )

        assert [c.strategy for c in candidates] == ["put-credit-spread", "iron-condor"]
        assert candidates[0].factor_values == {}

    def test_bad_shape_rejected(self):
        with pytest.raises(ValueError, match="Candidate 1"):
            parse_candidates([{"trade_draft": {}}, {"factor_values": {}}])


class TestParser:
    """Tests for argument parsing."""

    def test_defaults(self):
        args = create_parser().parse_args(["candidates.json"])

        assert args.input == "candidates.json"
        assert args.policy_id == "default"
        assert args.narrative is False
        assert args.log_level is None

    def test_options(self):
        args = create_parser().parse_args([
            "-", "--strategy", "put-credit-spread", "--narrative", "--log-format", "json",
        ])

        assert args.input == "-"
        assert args.strategy == "put-credit-spread"
        assert args.narrative is True
        assert args.log_format == "json"


class TestAsyncMain:
    """Tests for the scoring run without a database."""

    @pytest.mark.asyncio
    async def test_scores_file(self, tmp_path, capsys, aapl_trade_draft, aapl_factors):
        path = tmp_path / "candidates.json"
        path.write_text(json.dumps({
            "trade_draft": aapl_trade_draft,
            "factor_values": {**aapl_factors, "dte": 30},
        }))
        args = create_parser().parse_args([str(path)])

        exit_code = await async_main(args, get_default_config())

        assert exit_code == 0
        result = json.loads(capsys.readouterr().out)
        assert result["status"] == "scored"
        assert result["payload"]["rubric_version"] == "1.3.0"
        assert result["narrative"] is None

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        args = create_parser().parse_args([str(tmp_path / "absent.json")])

        assert await async_main(args, get_default_config()) == 1
