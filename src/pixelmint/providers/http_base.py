"""
Shared HTTP plumbing for remote image providers.

Adapters subclass HTTPImageProvider to get an httpx.AsyncClient (owned, or
injected for tests), status-code to error mapping and a local request
counter used to estimate quota for services without a quota endpoint.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from ..core.orchestrator.errors import (
    CredentialInvalidError,
    GenerationError,
    InvalidInputError,
    NetworkFailureError,
    ProviderFaultError,
    QuotaExhaustedError,
    RateLimitedError,
    parse_retry_after,
)
from ..core.orchestrator.types import QuotaSnapshot


def next_midnight(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now()
    return datetime.combine(now.date() + timedelta(days=1), datetime.min.time())


def next_month_start(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now()
    if now.month == 12:
        return datetime(now.year + 1, 1, 1)
    return datetime(now.year, now.month + 1, 1)


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        data = response.json()
    except ValueError:
        return response.text.strip() or None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            return error.get("message")
        if isinstance(error, str):
            return error
        if data.get("message"):
            return str(data["message"])
        errors = data.get("errors")
        if isinstance(errors, list) and errors:
            return str(errors[0])
    return None


def error_from_response(response: httpx.Response, provider: str) -> GenerationError:
    """Map a non-2xx response to the generation error taxonomy."""
    status = response.status_code
    message = _error_message(response)

    if status in (401, 403):
        return CredentialInvalidError(message or "Invalid API key", provider=provider, status_code=status)
    if status == 429:
        return RateLimitedError(
            message or "Rate limit exceeded",
            provider=provider,
            retry_after=parse_retry_after(response.headers),
            status_code=status,
        )
    if status == 402:
        return QuotaExhaustedError(message or "Quota exceeded", provider=provider, status_code=status)
    if status == 400:
        return InvalidInputError(message or "Bad request", provider=provider, field="request", status_code=status)
    return ProviderFaultError(message or "Unknown error", provider=provider, code=f"HTTP_{status}", status_code=status)


class HTTPImageProvider:
    """Base for adapters that talk to a remote image API over httpx."""

    name = "remote"
    cost = 0.0
    requests_per_day: Optional[int] = None

    def __init__(
        self,
        api_key: str,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key or not isinstance(api_key, str):
            raise ValueError(f"{self.name} API key is required")
        self._api_key = api_key
        self._timeout = timeout or 60
        self._client = client
        self._owns_client = client is None
        self._request_count = 0
        self._count_day = datetime.now().date()

    def identity(self) -> str:
        return self.name

    def cost_per_unit(self) -> float:
        return self.cost

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _roll_day(self) -> None:
        today = datetime.now().date()
        if today != self._count_day:
            self._count_day = today
            self._request_count = 0

    def _record_request(self) -> None:
        self._roll_day()
        self._request_count += 1

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, raising typed errors for transport failures and non-2xx replies."""
        try:
            response = await self._get_client().request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise NetworkFailureError(f"{type(e).__name__}: {e}", provider=self.name) from e
        if response.is_error:
            error = error_from_response(response, self.name)
            logger.debug(f"{self.name} API returned HTTP {response.status_code}: {error.message}")
            raise error
        return response

    async def _check(self, method: str, url: str, **kwargs: Any) -> bool:
        """True if the endpoint accepts our credentials."""
        try:
            await self._send(method, url, **kwargs)
            return True
        except GenerationError as e:
            logger.warning(f"{self.name} credential validation failed: {e.message}")
            return False

    def _estimated_quota(self) -> QuotaSnapshot:
        """Quota estimated from the local request count, for APIs without a quota endpoint."""
        if not self.requests_per_day:
            return QuotaSnapshot()
        self._roll_day()
        return QuotaSnapshot(
            remaining=max(0, self.requests_per_day - self._request_count),
            limit=self.requests_per_day,
            reset_time=next_midnight(),
        )

    def _json_headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}


__all__ = [
    "HTTPImageProvider",
    "error_from_response",
    "next_midnight",
    "next_month_start",
]
