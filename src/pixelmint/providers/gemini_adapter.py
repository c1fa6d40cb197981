"""
Google Gemini image generation adapter for PixelMint.

Uses the Generative Language REST API (generateContent with an image
response modality) and returns the first inline image part as bytes.
"""

import base64
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from ..core.orchestrator.errors import ProviderFaultError
from ..core.orchestrator.types import QuotaSnapshot, RateLimitSpec
from .http_base import HTTPImageProvider

__all__ = ["GeminiProvider"]

BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.5-flash-image"


class GeminiProvider(HTTPImageProvider):
    """Gemini image provider: $0.039 per image, 60 requests per minute, ~1500 per day."""

    name = "gemini"
    cost = 0.039
    requests_per_day = 1500

    def __init__(
        self,
        api_key: str,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        model: str = DEFAULT_MODEL,
    ):
        super().__init__(api_key, timeout=timeout, client=client)
        self.model = model

    def rate_limit_spec(self) -> RateLimitSpec:
        return RateLimitSpec(capacity=60, refill_rate=1, refill_interval=1.0)

    def _headers(self) -> Dict[str, str]:
        return {**self._json_headers(), "x-goog-api-key": self._api_key}

    async def generate(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> bytes:
        options = options or {}
        model = options.get("model") or self.model
        body: Dict[str, Any] = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"responseModalities": ["IMAGE"]},
        }
        if options.get("aspect_ratio"):
            body["generationConfig"]["imageConfig"] = {"aspectRatio": options["aspect_ratio"]}
        if options.get("temperature") is not None:
            body["generationConfig"]["temperature"] = options["temperature"]

        self._record_request()
        response = await self._send(
            "POST", f"{BASE_URL}/models/{model}:generateContent", headers=self._headers(), json=body
        )
        data = response.json()

        for candidate in data.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                inline = part.get("inlineData") or part.get("inline_data")
                if inline and inline.get("data"):
                    payload = base64.b64decode(inline["data"])
                    logger.debug(f"Gemini returned {len(payload)} bytes ({inline.get('mimeType', 'unknown')})")
                    return payload

        raise ProviderFaultError("Gemini response contained no image data", provider=self.name, code="NO_IMAGE")

    async def validate_credential(self) -> bool:
        return await self._check("GET", f"{BASE_URL}/models", headers=self._headers())

    async def current_quota(self) -> QuotaSnapshot:
        # No quota endpoint; estimate from the daily request allowance.
        return self._estimated_quota()
