"""Error taxonomy for the discovery engine."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DiscoveryError(RuntimeError):
    """Base class for engine errors."""


class TransientUpstreamFailure(DiscoveryError):
    """An embedding or summarization collaborator timed out or failed.

    Retried or degraded inside the engine; never surfaced to end users.
    """

    def __init__(
        self, message: str, cooldown: float | None = None, is_rate_limit: bool = False
    ) -> None:
        super().__init__(message)
        self.cooldown = cooldown
        self.is_rate_limit = is_rate_limit


class SynthesisQuotaError(DiscoveryError):
    """Raised when the summarization provider reports a non-retryable quota error."""


class InvalidState(DiscoveryError):
    """Navigation request that cannot be honoured (e.g. unknown or expired topic)."""

    def __init__(self, message: str, topic_id: str | None = None) -> None:
        super().__init__(message)
        self.topic_id = topic_id


class ConfigurationError(ValueError):
    """Malformed configuration or ScoreWeights, rejected at the boundary."""


class StoreUnavailable(DiscoveryError):
    """The content store or social graph is unreachable."""


def truncate_to_cap(
    items: Sequence[T],
    cap: int,
    what: str,
    key: Callable[[T], object] | None = None,
) -> list[T]:
    """Deterministically cut ``items`` down to ``cap`` entries.

    When ``key`` is given the items are sorted by it first so that the kept
    subset does not depend on collaborator ordering. Overflow is logged as a
    ResourceExhaustion warning rather than raised.
    """
    ordered = sorted(items, key=key) if key is not None else list(items)  # type: ignore[arg-type]
    if cap <= 0 or len(ordered) <= cap:
        return ordered
    logger.warning(
        "ResourceExhaustion: %s has %d items, truncated to cap %d.",
        what,
        len(ordered),
        cap,
    )
    return ordered[:cap]


class RateLimited(DiscoveryError):
    """An on-demand refresh arrived inside the caller's cooldown window."""

    def __init__(self, message: str, retry_after: float) -> None:
        super().__init__(message)
        self.retry_after = retry_after
