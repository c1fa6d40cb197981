"""
Stability AI adapter for PixelMint (Stable Diffusion 3.5).

The v2beta generate endpoint takes multipart form data and answers with
raw image bytes when asked for ``image/*``. Remaining credits come from the
account balance endpoint.
"""

from typing import Any, Dict, Optional

import httpx
from loguru import logger

from ..core.orchestrator.types import QuotaSnapshot, RateLimitSpec
from .http_base import HTTPImageProvider

__all__ = ["StableDiffusionProvider"]

BASE_URL = "https://api.stability.ai"
DEFAULT_MODEL = "sd3.5-large"


class StableDiffusionProvider(HTTPImageProvider):
    """Stable Diffusion provider: about $0.05 per image, 30 requests per minute."""

    name = "stable_diffusion"
    cost = 0.05

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
        return RateLimitSpec(capacity=30, refill_rate=1, refill_interval=2.0)

    def _auth(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    async def generate(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> bytes:
        options = options or {}
        form = {
            "prompt": prompt,
            "model": options.get("model") or self.model,
            "aspect_ratio": options.get("aspect_ratio", "1:1"),
            "output_format": options.get("output_format", "png"),
        }
        if options.get("negative_prompt"):
            form["negative_prompt"] = options["negative_prompt"]
        if options.get("seed") is not None:
            form["seed"] = str(options["seed"])

        self._record_request()
        response = await self._send(
            "POST",
            f"{BASE_URL}/v2beta/stable-image/generate/sd3",
            headers={**self._auth(), "Accept": "image/*"},
            data=form,
            files={"none": ("", b"")},
        )
        logger.debug(f"Stability AI returned {len(response.content)} bytes")
        return response.content

    async def validate_credential(self) -> bool:
        return await self._check("GET", f"{BASE_URL}/v1/user/account", headers=self._auth())

    async def current_quota(self) -> QuotaSnapshot:
        # Credit based: the balance is known, the ceiling is not.
        response = await self._send("GET", f"{BASE_URL}/v1/user/balance", headers=self._auth())
        credits = response.json().get("credits")
        return QuotaSnapshot(remaining=float(credits) if credits is not None else None, limit=None)
