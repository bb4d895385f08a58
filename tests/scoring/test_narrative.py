"""
Tests for the narrative layer.

The external model is always mocked; no network is used.
"""

import asyncio
import json

import aiohttp
import pytest
from unittest.mock import AsyncMock, MagicMock

from trade_scoring.config import NarrativeConfig
from trade_scoring.narrative import (
    NarrativeGenerator,
    NarrativeRequest,
    OllamaNarrativeGenerator,
    build_prompt,
    fallback_narrative,
    generate_narrative,
)
from trade_scoring.types import ConfidenceTier, NarrativeError


@pytest.fixture
def request_():
    return NarrativeRequest(
        raw_score=83.0,
        calibrated_probability=0.83,
        reasons=(
            "credit_to_width_pct: 0.22 → 80",
            "delta_short: 0.13 → 75",
            "iv_rank: 45 → 85",
            "oi_short_leg_min: 600 → 80",
        ),
        confidence=ConfidenceTier.HIGH,
        seed=11,
        features={"symbol": "AAPL", "iv_rank": 45},
    )


def _response(status=200, body=None, text=""):
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=body)
    response.text = AsyncMock(return_value=text)
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


def _session(context=None, error=None):
    session = MagicMock()
    session.closed = False
    if error is not None:
        session.post = MagicMock(side_effect=error)
    else:
        session.post = MagicMock(return_value=context)
    return session


class TestFallbackNarrative:
    """Tests for the deterministic template."""

    def test_template(self, request_):
        text = fallback_narrative(request_)

        assert text == (
            "Score 83.0 (p=83%, confidence high). "
            "• credit_to_width_pct: 0.22 → 80 "
            "• delta_short: 0.13 → 75 "
            "• iv_rank: 45 → 85."
        )

    def test_no_reasons(self):
        text = fallback_narrative(NarrativeRequest(
            raw_score=50.0,
            calibrated_probability=0.5,
            reasons=(),
            confidence=ConfidenceTier.LOW,
        ))

        assert text == "Score 50.0 (p=50%, confidence low)."


class TestPrompt:
    """Tests for prompt construction."""

    def test_prompt_carries_budget_and_numbers(self, request_):
        prompt = build_prompt(request_)

        assert "max 90 words" in prompt
        assert "83.0" in prompt
        assert "83%" in prompt
        assert "1. credit_to_width_pct: 0.22 → 80" in prompt
        assert '"symbol": "AAPL"' in prompt

    def test_payload_is_deterministic(self, request_):
        generator = OllamaNarrativeGenerator(NarrativeConfig(model="llama3"))

        payload = generator.build_payload(request_)

        assert payload["stream"] is False
        assert payload["model"] == "llama3"
        assert payload["options"] == {"temperature": 0.0, "top_p": 1, "seed": 11}
        assert [m["role"] for m in payload["messages"]] == ["system", "user"]


class TestOllamaNarrativeGenerator:
    """Tests for the HTTP client with a mocked session."""

    @pytest.mark.asyncio
    async def test_reads_ollama_message(self, request_):
        session = _session(_response(body={"message": {"content": "  Solid setup.  "}}))
        generator = OllamaNarrativeGenerator(NarrativeConfig(), session=session)

        assert await generator.explain(request_) == "Solid setup."
        assert session.post.call_args.args[0] == "http://localhost:11434/api/chat"

    @pytest.mark.asyncio
    async def test_reads_openai_style_choices(self, request_):
        body = {"choices": [{"message": {"content": "Looks fine."}}]}
        generator = OllamaNarrativeGenerator(session=_session(_response(body=body)))

        assert await generator.explain(request_) == "Looks fine."

    @pytest.mark.asyncio
    async def test_non_200_raises(self, request_):
        generator = OllamaNarrativeGenerator(
            session=_session(_response(status=503, text="overloaded")),
        )

        with pytest.raises(NarrativeError, match="503"):
            await generator.explain(request_)

    @pytest.mark.asyncio
    async def test_empty_content_raises(self, request_):
        generator = OllamaNarrativeGenerator(session=_session(_response(body={"message": {}})))

        with pytest.raises(NarrativeError):
            await generator.explain(request_)

    @pytest.mark.asyncio
    async def test_client_error_wrapped(self, request_):
        generator = OllamaNarrativeGenerator(
            session=_session(error=aiohttp.ClientConnectionError("refused")),
        )

        with pytest.raises(NarrativeError):
            await generator.explain(request_)

    @pytest.mark.asyncio
    async def test_timeout_wrapped(self, request_):
        generator = OllamaNarrativeGenerator(session=_session(error=asyncio.TimeoutError()))

        with pytest.raises(NarrativeError):
            await generator.explain(request_)

    @pytest.mark.asyncio
    async def test_malformed_json_wrapped(self, request_):
        context = _response(body=None)
        response = await context.__aenter__()
        response.json = AsyncMock(side_effect=json.JSONDecodeError("Expecting value", "<html>", 0))
        generator = OllamaNarrativeGenerator(session=_session(context))

        with pytest.raises(NarrativeError, match="malformed JSON"):
            await generator.explain(request_)

    @pytest.mark.asyncio
    async def test_injected_session_not_closed(self, request_):
        session = _session()
        session.close = AsyncMock()
        generator = OllamaNarrativeGenerator(session=session)

        await generator.close()

        session.close.assert_not_awaited()


class TestGenerateNarrative:
    """Tests for the fallback wrapper."""

    @pytest.mark.asyncio
    async def test_no_generator_uses_template(self, request_):
        assert await generate_narrative(None, request_) == fallback_narrative(request_)

    @pytest.mark.asyncio
    async def test_generator_text_returned(self, request_):
        generator = AsyncMock(spec=NarrativeGenerator)
        generator.explain = AsyncMock(return_value="Model text.")

        assert await generate_narrative(generator, request_) == "Model text."
        generator.explain.assert_awaited_once_with(request_)

    @pytest.mark.asyncio
    async def test_failure_falls_back(self, request_):
        generator = AsyncMock(spec=NarrativeGenerator)
        generator.explain = AsyncMock(side_effect=NarrativeError("model offline"))

        assert await generate_narrative(generator, request_) == fallback_narrative(request_)

    @pytest.mark.asyncio
    async def test_unexpected_error_falls_back(self, request_, caplog):
        generator = AsyncMock(spec=NarrativeGenerator)
        generator.explain = AsyncMock(side_effect=RuntimeError("bad plugin"))

        with caplog.at_level("WARNING", logger="trade_scoring.narrative"):
            text = await generate_narrative(generator, request_)

        assert text == fallback_narrative(request_)
        assert "RuntimeError" in caplog.text
