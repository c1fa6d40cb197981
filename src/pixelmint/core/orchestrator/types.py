"""
Type definitions for the generation orchestrator package.

This module contains core data types shared across the orchestrator:
- Priority: Batch scheduling priority
- RateLimitSpec: Token bucket parameters advertised by a provider
- QuotaSnapshot: Last known remote quota for a provider
- ProviderUsage: Per-provider request statistics
- GenerationRequest: One unit of batch work
- BatchOutcome: Result slot returned by the batch executor
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class Priority(str, Enum):
    """Batch scheduling priority."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 0, "medium": 1, "low": 2}[self.value]


@dataclass(frozen=True)
class RateLimitSpec:
    """Token bucket parameters: ``refill_rate`` tokens every ``refill_interval`` seconds."""

    capacity: int
    refill_rate: int = 1
    refill_interval: float = 1.0


@dataclass
class QuotaSnapshot:
    """Remote quota as last reported by a provider. ``None`` means unknown."""

    remaining: Optional[float] = None
    limit: Optional[float] = None
    reset_time: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @property
    def usage_ratio(self) -> Optional[float]:
        if self.remaining is None or not self.limit:
            return None
        return max(0.0, min(1.0, (self.limit - self.remaining) / self.limit))


@dataclass
class ProviderUsage:
    """Per-provider request statistics."""

    requests_count: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    last_request_time: Optional[datetime] = None
    rate_limit_hits: int = 0


@dataclass
class GenerationRequest:
    """A single generation job, as submitted to the batch executor."""

    prompt: str
    category: str = "background"
    complexity: int = 1
    color_seed: int = 0
    index: int = 0
    provider: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)

    def dedup_hash(self) -> str:
        """Stable hash of the fields that make two requests interchangeable."""
        key_data = {
            "category": self.category,
            "complexity": self.complexity,
            "color_seed": self.color_seed,
            "index": self.index,
            "prompt": self.prompt,
            "provider": self.provider,
        }
        raw = json.dumps(key_data, sort_keys=True)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class BatchOutcome:
    """Result slot for one batch position: a payload or an error."""

    payload: Optional[bytes] = None
    error: Optional[BaseException] = None
    latency_ms: float = 0.0
    deduplicated: bool = False

    @property
    def success(self) -> bool:
        return self.error is None


__all__ = [
    "Priority",
    "RateLimitSpec",
    "QuotaSnapshot",
    "ProviderUsage",
    "GenerationRequest",
    "BatchOutcome",
]
