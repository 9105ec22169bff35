"""External semantic signal: sentiment and entity salience.

Uses the Cloud Natural Language REST API to add a semantic contribution
(0-50 points) on top of pattern and structural scoring. Every failure is
surfaced as :class:`SemanticServiceError`; callers decide how to degrade.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import httpx

from llm_shield.config import get_settings
from llm_shield.exceptions import SemanticServiceError
from llm_shield.logging import get_logger
from llm_shield.security.models import EntityResult, SemanticResult, SentimentResult

log = get_logger("llm_shield.security.semantic")

_MAX_CONTENT_CHARS = 20000
_MIN_ENTITY_SALIENCE = 0.01
_MAX_CONTRIBUTION = 50.0

_SENSITIVE_ENTITY_TYPES = ("EMAIL", "PHONE_NUMBER", "PERSON", "ORGANIZATION", "ADDRESS", "NUMBER")
_PII_ENTITY_TYPES = ("EMAIL", "PHONE_NUMBER", "ADDRESS", "NUMBER", "PERSON")


class SemanticSignalProvider(Protocol):
    """Anything that can produce a :class:`SemanticResult` for a prompt."""

    async def analyze(self, text: str) -> SemanticResult: ...


def score_semantic_signal(
    sentiment: SentimentResult, entities: list[EntityResult]
) -> tuple[float, list[str]]:
    """Turn sentiment and entities into a risk contribution.

    Args:
        sentiment: Document sentiment.
        entities: Detected entities (already noise-filtered).

    Returns:
        Tuple of (points capped at 50, reasoning lines).
    """
    points = 0.0
    reasoning: list[str] = []

    if sentiment.score < -0.3 and sentiment.magnitude > 0.5:
        points += min(30.0, abs(sentiment.score) * sentiment.magnitude * 30)
        reasoning.append(
            f"Negative sentiment detected (score: {sentiment.score:.2f}, "
            f"magnitude: {sentiment.magnitude:.2f})"
        )
    elif sentiment.score < -0.5:
        points += 15
        reasoning.append(f"Strong negative sentiment (score: {sentiment.score:.2f})")

    # Flat tone with heavy emphasis reads as manipulation
    if -0.1 < sentiment.score < 0.1 and sentiment.magnitude > 1.5:
        points += 10
        reasoning.append(
            "Neutral sentiment with high magnitude may indicate manipulation attempt "
            f"(magnitude: {sentiment.magnitude:.2f})"
        )

    sensitive = [
        e for e in entities if any(t in e.type.upper() for t in _SENSITIVE_ENTITY_TYPES)
    ]
    if sensitive:
        points += min(20.0, len(sensitive) * 5)
        reasoning.append(
            f"Detected {len(sensitive)} potentially sensitive entities: "
            + ", ".join(e.type for e in sensitive)
        )

    prominent = [e for e in entities if e.salience > 0.3]
    if len(prominent) > 3:
        points += 15
        reasoning.append(
            f"Multiple prominent entities detected ({len(prominent)}), "
            "possible data extraction attempt"
        )

    return min(_MAX_CONTRIBUTION, points), reasoning


class NaturalLanguageClient:
    """Async client for the Natural Language sentiment and entity endpoints."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: API key; defaults to ``SEMANTIC_API_KEY``.
            base_url: REST base URL; defaults to ``SEMANTIC_BASE_URL``.
            timeout: Per-call timeout in seconds; defaults to ``SEMANTIC_TIMEOUT``.
            client: Pre-built HTTP client (tests inject a mock transport).
        """
        settings = get_settings()
        if api_key is None and settings.semantic_api_key is not None:
            api_key = settings.semantic_api_key.get_secret_value()
        self._api_key = api_key
        self._base_url = (base_url or settings.semantic_base_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.semantic_timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _post(self, method: str, text: str) -> dict[str, Any]:
        params = {"key": self._api_key} if self._api_key else None
        body = {
            "document": {"type": "PLAIN_TEXT", "content": text[:_MAX_CONTENT_CHARS]},
            "encodingType": "UTF8",
        }
        try:
            client = await self._get_client()
            response = await client.post(
                f"{self._base_url}/documents:{method}", params=params, json=body
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise SemanticServiceError(f"{method} request failed: {e}") from e
        except ValueError as e:
            raise SemanticServiceError(f"{method} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise SemanticServiceError(f"{method} returned unexpected payload")
        return data

    async def analyze_sentiment(self, text: str) -> SentimentResult:
        """Return document sentiment for *text*."""
        data = await self._post("analyzeSentiment", text)
        sentiment = data.get("documentSentiment") or {}
        score = sentiment.get("score")
        magnitude = sentiment.get("magnitude")
        if score is None or magnitude is None:
            raise SemanticServiceError("No sentiment data returned")
        try:
            score, magnitude = float(score), float(magnitude)
        except (TypeError, ValueError) as e:
            raise SemanticServiceError("Malformed sentiment payload") from e
        return SentimentResult(
            score=score,
            magnitude=magnitude,
            confidence=min(magnitude / 2, 1.0),
        )

    async def detect_entities(self, text: str) -> list[EntityResult]:
        """Return entities in *text*, dropping near-zero salience noise."""
        data = await self._post("analyzeEntities", text)
        try:
            entities = [
                EntityResult(
                    name=str(raw.get("name", "")),
                    type=str(raw.get("type", "UNKNOWN")),
                    salience=float(raw.get("salience", 0.0)),
                )
                for raw in data.get("entities", [])
            ]
        except (AttributeError, TypeError, ValueError) as e:
            raise SemanticServiceError("Malformed entity payload") from e
        return [e for e in entities if e.salience > _MIN_ENTITY_SALIENCE]

    async def analyze(self, text: str) -> SemanticResult:
        """Run sentiment and entity analysis concurrently and score them.

        Raises:
            SemanticServiceError: If either call fails.
        """
        sentiment, entities = await asyncio.gather(
            self.analyze_sentiment(text), self.detect_entities(text)
        )
        contribution, reasoning = score_semantic_signal(sentiment, entities)
        return SemanticResult(
            sentiment=sentiment,
            entities=entities,
            risk_contribution=contribution,
            reasoning=reasoning,
        )

    async def detect_pii_in_response(self, response_text: str) -> list[EntityResult]:
        """Return PII-typed entities found in generated output.

        An empty list means no PII was detected.
        """
        entities = await self.detect_entities(response_text)
        return [
            e
            for e in entities
            if e.salience > 0.1 and any(t in e.type.upper() for t in _PII_ENTITY_TYPES)
        ]

    async def health_check(self) -> bool:
        """Return ``True`` if the service answers a trivial request."""
        try:
            await self.analyze_sentiment("Test message")
        except SemanticServiceError as e:
            log.warning("semantic_health_check_failed", error=str(e))
            return False
        return True

    async def close(self) -> None:
        """Close the shared HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
