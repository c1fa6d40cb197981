"""
Local zero-cost provider for PixelMint.

Delegates to an injected procedural renderer. Without one it renders a
deterministic SVG placeholder so the pipeline still produces a payload
when every remote provider is unavailable.
"""

import hashlib
import inspect
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from ..core.orchestrator.types import QuotaSnapshot, RateLimitSpec

__all__ = ["LocalProvider", "placeholder_svg"]

Renderer = Callable[[str, Dict[str, Any]], Union[bytes, Awaitable[bytes]]]


def placeholder_svg(prompt: str, options: Dict[str, Any]) -> bytes:
    """Render a flat-color SVG whose fill is derived from the prompt and seed."""
    size = int(options.get("size_px", 512))
    seed = f"{prompt}|{options.get('color_seed', 0)}"
    color = hashlib.sha256(seed.encode("utf-8")).hexdigest()[:6]
    label = (prompt[:40] or "local").replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    svg = (
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{size}" height="{size}">'
        f'<rect width="100%" height="100%" fill="#{color}"/>'
        f'<text x="50%" y="50%" text-anchor="middle" font-family="sans-serif" font-size="16">{label}</text>'
        f"</svg>"
    )
    return svg.encode("utf-8")


class LocalProvider:
    """Always-healthy provider backed by local rendering; costs nothing and has no quota."""

    name = "local"

    def __init__(self, renderer: Optional[Renderer] = None):
        self._renderer = renderer or placeholder_svg

    def identity(self) -> str:
        return self.name

    async def generate(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> bytes:
        result = self._renderer(prompt, dict(options or {}))
        if inspect.isawaitable(result):
            result = await result
        return bytes(result)

    async def validate_credential(self) -> bool:
        return True

    async def current_quota(self) -> QuotaSnapshot:
        return QuotaSnapshot()

    def cost_per_unit(self) -> float:
        return 0.0

    def rate_limit_spec(self) -> RateLimitSpec:
        return RateLimitSpec(capacity=1000, refill_rate=1000, refill_interval=1.0)
