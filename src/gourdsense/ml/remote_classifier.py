"""Cloud classifier: Gemini multimodal verification of a captured frame."""

from __future__ import annotations

import base64
import logging
import time
from dataclasses import replace
from typing import TYPE_CHECKING, Protocol

import httpx

from gourdsense.errors import (
    RateLimitedError,
    RemoteNetworkError,
    RemoteUnavailableError,
    ResponseParseError,
)
from gourdsense.ml.labels import tags_for
from gourdsense.ml.response_parser import parse_remote_response

if TYPE_CHECKING:
    from gourdsense.config import Settings
    from gourdsense.engine.predictions import ContextHint, RemotePrediction

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = """You are an expert botanist specializing in gourd flower identification. \
Analyze this flower image carefully and provide a detailed classification.

**Task:** Identify the gourd variety and flower gender, and assess the flower.

**Gourd Varieties to Detect:**
1. **Ampalaya Bilog** (Bitter Gourd) - Round variety with small yellow bitter gourd flowers
2. **Patola** (Luffa/Sponge Gourd) - Larger yellow flowers with distinct luffa characteristics
3. **Upo Smooth** (Bottle Gourd) - Smooth variety with white flowers, typically bloom at night

**Gender Classification:**
- **Male Flowers:** Visible stamens (pollen-bearing structures), typically on long thin stems
- **Female Flowers:** An ovary/small fruit at the base, pistil instead of stamens

**Special Case:**
- If this is NOT a gourd flower (different plant, object, blurry image), classify as "not_flower"

**Required Response Format (JSON only):**
{
  "variety": "ampalaya_bilog" | "patola" | "upo_smooth" | "not_flower",
  "gender": "male" | "female" | "unknown",
  "confidence": 0.0 to 1.0,
  "reasoning": "Brief 1-2 sentence explanation of your classification",
  "keyFeatures": ["feature1", "feature2", "feature3"],
  "qualityMetrics": {
    "petalQuality": 0-100, "colorScore": 0-100, "developmentScore": 0-100,
    "healthScore": 0-100, "pollinationPotential": 0-100
  },
  "flowerQuality": {
    "overallScore": 0-100, "petalCondition": "excellent" | "good" | "fair" | "poor",
    "sizeAssessment": "small" | "medium" | "large", "healthIndicators": ["indicator"]
  },
  "harvestPrediction": {
    "currentStage": "bud" | "blooming" | "peak_bloom" | "pollinated" | "fruiting" | "harvest",
    "daysToHarvest": integer, "optimalHarvestWindow": "text",
    "pollinationReady": true | false, "bestPollinationTime": "text"
  },
  "observations": {"strengths": ["..."], "concerns": ["..."], "recommendations": ["..."]}
}

**Important:**
- Respond ONLY with valid JSON (no markdown, no extra text)
- Be conservative with confidence scores
- If uncertain, lower the confidence score
- If image quality is poor, mention it in reasoning and lower confidence"""


def build_prompt(context_hint: ContextHint | None) -> str:
    """Return the analysis prompt, with the on-device verdict appended as a prior."""
    if context_hint is None:
        return ANALYSIS_PROMPT
    tags = tags_for(context_hint.label)
    if tags.is_flower:
        verdict = f"{tags.gender.value} {tags.variety}"
    else:
        verdict = "not a gourd flower"
    return (
        f"{ANALYSIS_PROMPT}\n\n"
        f"**Context:** An on-device model classified this image as {verdict} "
        f"with {context_hint.confidence * 100:.1f}% confidence. Treat this as a hint only: "
        "verify it against the visible features and report your own independent "
        "variety, gender and confidence. Explain in reasoning if you disagree."
    )


class RemoteClassifier(Protocol):
    """Protocol for the cloud verification classifier."""

    @property
    def is_available(self) -> bool:
        """Return whether the classifier is enabled and configured."""
        ...

    async def analyze(self, image: bytes, context_hint: ContextHint | None = None) -> RemotePrediction:
        """Classify a JPEG image, optionally seeded with the local verdict.

        Raises:
            RemoteClassifierError: One of RateLimitedError, RemoteNetworkError,
                ResponseParseError or RemoteUnavailableError.
        """
        ...


class GeminiClassifier:
    """Calls the Gemini ``generateContent`` REST endpoint with an inline image."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.remote_timeout)

    @property
    def model_name(self) -> str:
        return self._settings.gemini_model

    @property
    def is_available(self) -> bool:
        return self._settings.enable_remote_validation and bool(self._settings.gemini_api_key)

    async def analyze(self, image: bytes, context_hint: ContextHint | None = None) -> RemotePrediction:
        if not self.is_available:
            raise RemoteUnavailableError("Remote validation is disabled or no API key is configured")

        started = time.monotonic()
        text = await self._generate(image, build_prompt(context_hint))
        logger.debug("Gemini raw response: %s", text)

        prediction = parse_remote_response(text)
        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(
            "Gemini prediction: variety=%s gender=%s confidence=%.2f salvaged=%s (%.0fms)",
            prediction.variety,
            prediction.gender,
            prediction.confidence,
            prediction.salvaged,
            elapsed_ms,
        )
        return replace(prediction, model_version=self.model_name, processing_time_ms=elapsed_ms)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -- Internal -----------------------------------------------------------

    def _request_body(self, image: bytes, prompt: str) -> dict[str, object]:
        return {
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                        {
                            "inline_data": {
                                "mime_type": "image/jpeg",
                                "data": base64.b64encode(image).decode("ascii"),
                            }
                        },
                    ]
                }
            ],
            "generationConfig": {
                "temperature": self._settings.gemini_temperature,
                "topK": self._settings.gemini_top_k,
                "topP": self._settings.gemini_top_p,
                "maxOutputTokens": self._settings.gemini_max_output_tokens,
                "responseMimeType": "application/json",
            },
        }

    async def _generate(self, image: bytes, prompt: str) -> str:
        url = f"{self._settings.gemini_base_url}/models/{self._settings.gemini_model}:generateContent"
        headers = {"x-goog-api-key": self._settings.gemini_api_key or ""}
        try:
            response = await self._client.post(url, json=self._request_body(image, prompt), headers=headers)
        except httpx.TransportError as exc:
            raise RemoteNetworkError(f"Gemini request failed: {exc}") from exc

        if response.status_code == httpx.codes.TOO_MANY_REQUESTS:
            raise RateLimitedError("Gemini quota exhausted (HTTP 429)")
        if response.is_error:
            raise RemoteUnavailableError(f"Gemini returned HTTP {response.status_code}")

        try:
            payload = response.json()
            parts = payload["candidates"][0]["content"]["parts"]
            text = "".join(part.get("text", "") for part in parts)
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ResponseParseError(f"Gemini response has no candidate text: {exc}") from exc
        if not text.strip():
            raise ResponseParseError("Gemini returned an empty candidate")
        return text

