"""
Bounded request/response log for provider calls.

Keeps the most recent provider requests in a ring buffer for debugging and
per-provider statistics; every entry is also written through loguru.
"""

import itertools
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Deque, Dict, List, Optional

from loguru import logger


@dataclass
class RequestLogEntry:
    """One provider request and its eventual outcome."""

    id: str
    timestamp: float
    provider: str
    prompt: str
    options: Dict[str, Any]
    status: str = "pending"
    duration_ms: Optional[float] = None
    response_size: Optional[int] = None
    error: Optional[Dict[str, Any]] = None


def truncate_prompt(prompt: str, max_length: int = 100) -> str:
    if not prompt or len(prompt) <= max_length:
        return prompt
    return prompt[:max_length] + "..."


class RequestLog:
    """Ring buffer of the last ``max_entries`` provider requests."""

    def __init__(self, max_entries: int = 100):
        self.max_entries = max_entries
        self._entries: Deque[RequestLogEntry] = deque(maxlen=max_entries)
        self._counter = itertools.count(1)

    def _find(self, request_id: str) -> Optional[RequestLogEntry]:
        for entry in self._entries:
            if entry.id == request_id:
                return entry
        return None

    def log_request(self, provider: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        """Record a new pending request and return its id."""
        request_id = f"req_{int(time.time() * 1000)}_{next(self._counter)}"
        self._entries.append(
            RequestLogEntry(
                id=request_id,
                timestamp=time.time(),
                provider=provider,
                prompt=truncate_prompt(prompt),
                options=dict(options or {}),
            )
        )
        logger.debug(f"[{provider}] request {request_id}: {truncate_prompt(prompt, 60)!r}")
        return request_id

    def log_response(
        self,
        request_id: str,
        status: str = "success",
        payload: Optional[bytes] = None,
        duration_ms: Optional[float] = None,
    ) -> None:
        entry = self._find(request_id)
        if entry is None:
            logger.warning(f"Log entry not found for request ID: {request_id}")
            return
        entry.status = status
        entry.duration_ms = duration_ms
        if payload is not None:
            entry.response_size = len(payload)
        duration = f"{duration_ms:.0f}ms" if duration_ms is not None else "unknown"
        logger.debug(f"[{entry.provider}] response {request_id}: {status} in {duration}")

    def log_error(self, request_id: str, error: BaseException) -> None:
        entry = self._find(request_id)
        if entry is None:
            logger.warning(f"Log entry not found for request ID: {request_id}")
            return
        entry.status = "error"
        entry.error = {
            "name": type(error).__name__,
            "message": str(error) or "Unknown error",
            "code": getattr(error, "code", None),
            "provider": getattr(error, "provider", None) or entry.provider,
        }
        logger.debug(f"[{entry.provider}] error {request_id}: {entry.error['name']}: {entry.error['message']}")

    def get_recent_logs(self, count: int = 10) -> List[Dict[str, Any]]:
        """Most recent entries first."""
        return [asdict(entry) for entry in reversed(list(self._entries)[-count:])]

    def get_statistics(self) -> Dict[str, Any]:
        entries = list(self._entries)
        if not entries:
            return {
                "total_requests": 0,
                "success_rate": 0.0,
                "average_response_time": 0.0,
                "provider_stats": {},
                "error_stats": {},
            }

        successes = sum(1 for e in entries if e.status == "success")
        durations = [e.duration_ms for e in entries if e.duration_ms is not None]

        provider_stats: Dict[str, Dict[str, int]] = {}
        error_stats: Dict[str, int] = {}
        for entry in entries:
            stats = provider_stats.setdefault(entry.provider, {"total": 0, "success": 0, "error": 0})
            stats["total"] += 1
            if entry.status == "success":
                stats["success"] += 1
            elif entry.status == "error":
                stats["error"] += 1
                name = (entry.error or {}).get("name", "Unknown")
                error_stats[name] = error_stats.get(name, 0) + 1

        return {
            "total_requests": len(entries),
            "success_rate": successes / len(entries) * 100,
            "average_response_time": sum(durations) / len(durations) if durations else 0.0,
            "provider_stats": provider_stats,
            "error_stats": error_stats,
        }

    def clear(self) -> None:
        self._entries.clear()
        self._counter = itertools.count(1)
        logger.debug("Request log cleared")

    def __len__(self) -> int:
        return len(self._entries)


__all__ = [
    "RequestLog",
    "RequestLogEntry",
    "truncate_prompt",
]
