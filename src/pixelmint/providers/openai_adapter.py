"""
OpenAI image generation adapter for PixelMint (DALL-E 3).

Talks to the Images API directly over httpx and requests base64 output so
the payload comes back in a single round trip.
"""

import base64
from typing import Any, Dict, Optional

import httpx

from ..core.orchestrator.errors import ProviderFaultError
from ..core.orchestrator.types import QuotaSnapshot, RateLimitSpec
from .http_base import HTTPImageProvider

__all__ = ["OpenAIImageProvider"]

BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "dall-e-3"


class OpenAIImageProvider(HTTPImageProvider):
    """DALL-E 3 provider: $0.08 per image, 15 requests per minute, ~500 per day."""

    name = "openai"
    cost = 0.08
    requests_per_day = 500

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
        return RateLimitSpec(capacity=15, refill_rate=1, refill_interval=4.0)

    def _headers(self) -> Dict[str, str]:
        return {**self._json_headers(), "Authorization": f"Bearer {self._api_key}"}

    async def generate(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> bytes:
        options = options or {}
        body = {
            "model": options.get("model") or self.model,
            "prompt": prompt,
            "n": 1,
            "size": options.get("size", "1024x1024"),
            "quality": options.get("quality", "standard"),
            "response_format": "b64_json",
        }
        if options.get("style"):
            body["style"] = options["style"]

        self._record_request()
        response = await self._send("POST", f"{BASE_URL}/images/generations", headers=self._headers(), json=body)
        items = response.json().get("data") or []
        if not items or not items[0].get("b64_json"):
            raise ProviderFaultError("OpenAI response contained no image data", provider=self.name, code="NO_IMAGE")
        return base64.b64decode(items[0]["b64_json"])

    async def validate_credential(self) -> bool:
        return await self._check("GET", f"{BASE_URL}/models", headers=self._headers())

    async def current_quota(self) -> QuotaSnapshot:
        # OpenAI exposes no quota endpoint for images.
        return self._estimated_quota()
