"""
Trade Scoring Engine - Narrative.

============================================================
PURPOSE
============================================================
Optional natural-language explanation of a score.

The numeric result never depends on this layer. When the
language model call fails for any reason a deterministic
template built from the reasons list is returned instead.

============================================================
CONTRACT
============================================================
    explain(raw score, calibrated probability, reasons,
            confidence, seed) -> text

The word budget is passed to the model; it is not enforced
here.

============================================================
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence

import aiohttp

from .config import NarrativeConfig
from .types import ConfidenceTier, NarrativeError


logger = logging.getLogger(__name__)


SYSTEM_PROMPT = "You turn structured scoring rationale into concise professional explanations."


@dataclass(frozen=True)
class NarrativeRequest:
    """Inputs for one explanation."""

    raw_score: float
    calibrated_probability: float
    reasons: Sequence[str]
    confidence: ConfidenceTier
    seed: int = 7
    rubric_version: Optional[str] = None
    calibration_version: Optional[str] = None
    features: Mapping[str, Any] = field(default_factory=dict)
    word_budget: int = 90
    bullet_count: int = 3


class NarrativeGenerator(ABC):
    """External explanation service contract."""

    @abstractmethod
    async def explain(self, request: NarrativeRequest) -> str:
        """Return explanation text or raise NarrativeError."""
        pass


def fallback_narrative(request: NarrativeRequest) -> str:
    """Deterministic explanation from the reasons list and numbers."""
    bullets = " ".join(f"• {reason}" for reason in list(request.reasons)[:request.bullet_count])
    text = (
        f"Score {request.raw_score:.1f} "
        f"(p={request.calibrated_probability * 100:.0f}%, "
        f"confidence {request.confidence.value})."
    )
    return f"{text} {bullets}." if bullets else text


def build_prompt(request: NarrativeRequest) -> str:
    reasons = "\n".join(f"{idx}. {reason}" for idx, reason in enumerate(request.reasons, start=1))
    features = json.dumps(dict(request.features), indent=2, sort_keys=True, default=str)
    return (
        "You are a professional options desk risk manager. "
        f"Write a concise explanation (max {request.word_budget} words) for a scoring result.\n\n"
        "Guidelines:\n"
        f"- You must acknowledge the raw score {request.raw_score:.1f} and success probability "
        f"{request.calibrated_probability * 100:.0f}%.\n"
        f"- Provide exactly {request.bullet_count} bullet points referencing the deterministic reasons below.\n"
        "- Tone: factual, professional, calm.\n"
        "- Do not invent data or alter numbers.\n"
        f"- Close with a short sentence on next step confidence ({request.confidence.value}).\n\n"
        f"Deterministic reasons:\n{reasons}\n\n"
        f"Normalized features:\n{features}\n"
    )


class OllamaNarrativeGenerator(NarrativeGenerator):
    """
    Chat-completion client for an Ollama-compatible endpoint.

    Also reads OpenAI-style `choices[0].message.content` bodies.
    """

    def __init__(
        self,
        config: Optional[NarrativeConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._config = config or NarrativeConfig()
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    def build_payload(self, request: NarrativeRequest) -> Dict[str, Any]:
        return {
            "model": self._config.model,
            "stream": False,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(request)},
            ],
            "options": {
                "temperature": self._config.temperature,
                "top_p": 1,
                "seed": request.seed,
            },
        }

    @staticmethod
    def extract_content(body: Any) -> str:
        if not isinstance(body, Mapping):
            return ""
        message = body.get("message")
        if isinstance(message, Mapping) and isinstance(message.get("content"), str):
            return message["content"].strip()
        choices = body.get("choices")
        if isinstance(choices, list) and choices:
            first = choices[0].get("message", {}) if isinstance(choices[0], Mapping) else {}
            content = first.get("content") if isinstance(first, Mapping) else None
            if isinstance(content, str):
                return content.strip()
        return ""

    async def explain(self, request: NarrativeRequest) -> str:
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=self._config.timeout_seconds)
        try:
            async with session.post(
                self._config.api_url,
                json=self.build_payload(request),
                timeout=timeout,
            ) as response:
                if response.status != 200:
                    body = await response.text()
                    raise NarrativeError(f"Narrative model error {response.status}: {body[:200]}")
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NarrativeError(f"Narrative request failed: {e}") from e
        except ValueError as e:
            raise NarrativeError(f"Narrative model returned malformed JSON: {e}") from e

        content = self.extract_content(data)
        if not content:
            raise NarrativeError("Narrative model returned no content")
        return content


async def generate_narrative(
    generator: Optional[NarrativeGenerator],
    request: NarrativeRequest,
) -> str:
    """
    Explain a score, falling back to the deterministic template.

    Never raises for generator failures, including unexpected
    errors from an injected generator.
    """
    if generator is None:
        return fallback_narrative(request)
    try:
        return await generator.explain(request)
    except NarrativeError as e:
        logger.warning(f"Narrative generation failed, using template: {e}")
        return fallback_narrative(request)
    except Exception as e:
        logger.warning(f"Narrative generator raised {type(e).__name__}, using template: {e}", exc_info=True)
        return fallback_narrative(request)
