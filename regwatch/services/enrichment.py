"""
Optional LLM enrichment: urgency score and plain-language summary.

Claude is used when an Anthropic key is configured, GPT otherwise. The
pipeline treats every failure here as non-fatal and falls back to the
deterministic scorer.
"""
import json
import re
from abc import ABC, abstractmethod
from typing import Optional

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from pydantic import BaseModel, Field, ValidationError

from regwatch.config import Settings, get_settings

ANTHROPIC_MODEL = "claude-3-5-haiku-latest"
OPENAI_MODEL = "gpt-4o-mini"

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.S)


class EnrichmentError(Exception):
    """The model call failed or returned something unusable."""


class EnrichmentResult(BaseModel):
    """Model verdict for one alert."""
    urgency_score: int = Field(ge=1, le=10)
    summary: str = Field(min_length=1)


class EnrichmentClient(ABC):
    """Best-effort classifier for a single alert."""

    @abstractmethod
    async def classify(self, title: str, content: str) -> EnrichmentResult:
        """
        Raises:
            EnrichmentError: on any failure, including unparseable output
        """


def parse_enrichment(text: str) -> EnrichmentResult:
    """Pull the JSON verdict out of a model reply."""
    match = _JSON_OBJECT_RE.search(text or "")
    if not match:
        raise EnrichmentError(f"No JSON object in model output: {text[:120]!r}")
    try:
        return EnrichmentResult.model_validate(json.loads(match.group(0)))
    except (json.JSONDecodeError, ValidationError) as e:
        raise EnrichmentError(f"Malformed model output: {e}") from e


class LLMEnrichmentClient(EnrichmentClient):
    """
    Enrichment backed by Claude or GPT.

    The client is created lazily on first use so constructing the
    pipeline never requires network access or keys.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._anthropic_client: Optional[AsyncAnthropic] = None
        self._openai_client: Optional[AsyncOpenAI] = None

    @property
    def available(self) -> bool:
        return bool(self.settings.anthropic_api_key or self.settings.openai_api_key)

    async def classify(self, title: str, content: str) -> EnrichmentResult:
        prompt = self._build_prompt(title, content)

        try:
            if self.settings.anthropic_api_key:
                text = await self._classify_anthropic(prompt)
            elif self.settings.openai_api_key:
                text = await self._classify_openai(prompt)
            else:
                raise EnrichmentError("No LLM API key configured")
        except EnrichmentError:
            raise
        except Exception as e:
            raise EnrichmentError(f"{type(e).__name__}: {e}") from e

        return parse_enrichment(text)

    async def _classify_anthropic(self, prompt: str) -> str:
        """Classify using Claude."""
        if self._anthropic_client is None:
            self._anthropic_client = AsyncAnthropic(api_key=self.settings.anthropic_api_key)

        response = await self._anthropic_client.messages.create(
            model=ANTHROPIC_MODEL,
            max_tokens=300,
            messages=[{"role": "user", "content": prompt}],
        )
        return response.content[0].text.strip()

    async def _classify_openai(self, prompt: str) -> str:
        """Classify using GPT."""
        if self._openai_client is None:
            self._openai_client = AsyncOpenAI(api_key=self.settings.openai_api_key)

        response = await self._openai_client.chat.completions.create(
            model=OPENAI_MODEL,
            max_tokens=300,
            response_format={"type": "json_object"},
            messages=[{"role": "user", "content": prompt}],
        )
        return (response.choices[0].message.content or "").strip()

    def _build_prompt(self, title: str, content: str) -> str:
        """Build the classification prompt."""
        return f"""You triage regulatory announcements for food, drug and device compliance teams.
Rate how urgently a compliance team must act on this announcement, from 1 (informational)
to 10 (act today: serious health hazard, Class I recall, outbreak). Then summarize it in
one or two plain sentences.

Reply with JSON only: {{"urgency_score": <1-10>, "summary": "<text>"}}

Title: {title}

Content:
{content[:3000] or 'No content available.'}
"""
