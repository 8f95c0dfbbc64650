"""Probability feed ranking.

Each eligible candidate gets four factors in [0, 1] (recency, similarity,
social, trending) and a composite score from ``ScoreWeights``. The page is
then drawn without replacement with probability proportional to score.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable, Collection, Sequence
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from discovery.config import DiscoveryConfig
from discovery.constants import (
    DEGRADED_SIMILARITY_DISCOUNT,
    ENGAGEMENT_MIN_AGE_HOURS,
    INTEREST_CACHE_TTL,
    INTEREST_MAX_VECTORS,
    MAX_PAGE_SIZE,
    NEUTRAL_SIMILARITY_FACTOR,
    SAMPLING_MIN_WEIGHT,
    SOCIAL_FOLLOWED,
    SOCIAL_MUTUAL,
    SOCIAL_NONE,
)
from discovery.embedding import similarity
from discovery.errors import StoreUnavailable, truncate_to_cap
from discovery.models import ContentItem, FeedMode, FeedPage, ScoredItem, ScoreWeights
from discovery.store import ContentStore, SocialGraph

logger = logging.getLogger(__name__)


def recency_factor(created_at: float, now: float, half_life_hours: float) -> float:
    """Exponential half-life decay: 1.0 for brand-new content."""
    age_hours = max(0.0, now - created_at) / 3600.0
    return float(0.5 ** (age_hours / half_life_hours))


def similarity_factor(item: ContentItem, interest: Optional[NDArray[np.float32]]) -> float:
    """Cosine similarity mapped to [0, 1]; neutral when either vector is missing.

    A degraded (keyword-tier) vector only moves the factor part of the way
    from neutral.
    """
    if interest is None or item.embedding is None:
        return NEUTRAL_SIMILARITY_FACTOR
    factor = (similarity(item.embedding, interest) + 1.0) / 2.0
    if item.embedding_degraded:
        factor = NEUTRAL_SIMILARITY_FACTOR + (factor - NEUTRAL_SIMILARITY_FACTOR) * (
            1.0 - DEGRADED_SIMILARITY_DISCOUNT
        )
    return factor


def social_factor(author_id: str, following: Collection[str], second_degree: Collection[str]) -> float:
    if author_id in following:
        return SOCIAL_FOLLOWED
    if author_id in second_degree:
        return SOCIAL_MUTUAL
    return SOCIAL_NONE


def engagement_velocity(item: ContentItem, now: float) -> float:
    """Weighted engagement per hour of age, with age floored at one hour."""
    age_hours = max(ENGAGEMENT_MIN_AGE_HOURS, (now - item.created_at) / 3600.0)
    return item.engagement.weighted() / age_hours


def trending_factors(items: Sequence[ContentItem], now: float) -> list[float]:
    """Log-scaled velocity relative to the fastest item in the pool."""
    velocities = [engagement_velocity(i, now) for i in items]
    peak = max(velocities, default=0.0)
    if peak <= 0:
        return [0.0] * len(items)
    denom = math.log1p(peak)
    return [math.log1p(v) / denom for v in velocities]


def score_candidates(
    items: Sequence[ContentItem],
    weights: ScoreWeights,
    now: float,
    interest: Optional[NDArray[np.float32]],
    following: Collection[str],
    second_degree: Collection[str],
    half_life_hours: float,
) -> list[ScoredItem]:
    trending = trending_factors(items, now)
    scored = []
    for item, tr in zip(items, trending):
        rec = recency_factor(item.created_at, now, half_life_hours)
        sim = similarity_factor(item, interest)
        soc = social_factor(item.author_id, following, second_degree)
        score = (
            weights.recency * rec
            + weights.similarity * sim
            + weights.social * soc
            + weights.trending * tr
        )
        scored.append(ScoredItem(item, rec, sim, soc, tr, score))
    return scored


class FenwickTree:
    """Prefix sums over sampling weights with point updates, both O(log n)."""

    def __init__(self, weights: Sequence[float]) -> None:
        self.n = len(weights)
        self._tree = [0.0] * (self.n + 1)
        for i, w in enumerate(weights, start=1):
            self._tree[i] += w
            parent = i + (i & -i)
            if parent <= self.n:
                self._tree[parent] += self._tree[i]

    def add(self, index: int, delta: float) -> None:
        i = index + 1
        while i <= self.n:
            self._tree[i] += delta
            i += i & -i

    def total(self) -> float:
        i, s = self.n, 0.0
        while i > 0:
            s += self._tree[i]
            i -= i & -i
        return s

    def find(self, target: float) -> int:
        """Smallest index whose inclusive prefix sum exceeds ``target``."""
        pos = 0
        remaining = target
        step = 1 << self.n.bit_length()
        while step:
            nxt = pos + step
            if nxt <= self.n and self._tree[nxt] <= remaining:
                pos = nxt
                remaining -= self._tree[nxt]
            step >>= 1
        return min(pos, self.n - 1)


def probability_sample(
    scored: Sequence[ScoredItem], k: int, rng: np.random.Generator
) -> list[ScoredItem]:
    """Draw ``k`` items without replacement, probability proportional to score.

    Every candidate keeps at least ``SAMPLING_MIN_WEIGHT`` so low scorers
    retain a non-zero chance.
    """
    weights = [max(SAMPLING_MIN_WEIGHT, s.score) for s in scored]
    tree = FenwickTree(weights)
    picked: list[ScoredItem] = []
    for _ in range(min(k, len(scored))):
        idx = tree.find(float(rng.random()) * tree.total())
        if weights[idx] == 0.0:
            # Float drift in the prefix sums can land on a drawn slot.
            idx = next(i for i, w in enumerate(weights) if w > 0.0)
        picked.append(scored[idx])
        tree.add(idx, -weights[idx])
        weights[idx] = 0.0
    return picked


class UserInterestCache:
    """Rolling user-interest vectors, refreshed with a bounded wait."""

    def __init__(
        self,
        store: ContentStore,
        timeout: float,
        ttl: float = INTEREST_CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.timeout = timeout
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[Optional[NDArray[np.float32]], float]] = {}
        self._pending: dict[str, asyncio.Task[list[NDArray[np.float32]]]] = {}

    async def get(self, user_id: str) -> Optional[NDArray[np.float32]]:
        now = self._clock()
        entry = self._entries.get(user_id)
        if entry is not None and now - entry[1] < self.ttl:
            return entry[0]

        task = self._pending.get(user_id)
        if task is None:
            task = asyncio.ensure_future(self.store.interaction_vectors(user_id, INTEREST_MAX_VECTORS))
            self._pending[user_id] = task
            task.add_done_callback(lambda t, u=user_id: self._finish(u, t))
        try:
            vectors = await asyncio.wait_for(asyncio.shield(task), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Interest refresh for %s timed out, using cached or neutral.", user_id)
            return entry[0] if entry is not None else None
        except StoreUnavailable as e:
            logger.warning("Interest refresh for %s failed: %s", user_id, e)
            return entry[0] if entry is not None else None
        interest = self.mean_vector(vectors)
        self._entries[user_id] = (interest, now)
        return interest

    def _finish(self, user_id: str, task: asyncio.Task[list[NDArray[np.float32]]]) -> None:
        self._pending.pop(user_id, None)
        if task.cancelled() or task.exception() is not None:
            return
        self._entries[user_id] = (self.mean_vector(task.result()), self._clock())

    @staticmethod
    def mean_vector(vectors: Sequence[NDArray[np.float32]]) -> Optional[NDArray[np.float32]]:
        if not vectors:
            return None
        mean = np.mean(np.vstack(vectors).astype(np.float32), axis=0)
        norm = float(np.linalg.norm(mean))
        if norm == 0.0:
            return None
        return (mean / norm).astype(np.float32)

    def invalidate(self, user_id: str) -> None:
        self._entries.pop(user_id, None)


def _recency_key(item: ContentItem) -> tuple[float, str]:
    return (-item.created_at, item.id)


class FeedRanker:
    def __init__(
        self,
        config: DiscoveryConfig,
        store: ContentStore,
        graph: SocialGraph,
        clock: Callable[[], float] = time.time,
        interests: Optional[UserInterestCache] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.graph = graph
        self._clock = clock
        self.interests = interests or UserInterestCache(
            store, config.interest_refresh_timeout, clock=clock
        )

    async def rank(
        self,
        user_id: str,
        weights: Optional[ScoreWeights] = None,
        page_size: Optional[int] = None,
        exclude_ids: Collection[str] = (),
        seed: Optional[int] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> FeedPage:
        """Score the eligible pool for ``user_id`` and draw one page from it.

        ``weights`` must already be a validated ScoreWeights; malformed
        overrides are rejected where they are parsed. Raises StoreUnavailable
        when the candidate pool or social graph cannot be read.
        """
        cfg = self.config
        weights = weights or cfg.score_weights
        size = max(1, min(page_size or cfg.default_page_size, MAX_PAGE_SIZE))
        now = self._clock()

        since = now - cfg.candidate_window_days * 86400.0
        raw = await self.store.recent(since, cfg.candidate_max_items + 1)
        pool = truncate_to_cap(raw, cfg.candidate_max_items, "candidate pool", key=_recency_key)

        following, second_degree, blocked = await asyncio.gather(
            self.graph.following(user_id),
            self.graph.second_degree(user_id),
            self.graph.blocked(user_id),
        )
        excluded = set(exclude_ids)
        eligible = [
            item
            for item in pool
            if item.author_id != user_id
            and item.author_id not in blocked
            and item.id not in excluded
            and not item.deleted
        ]

        interest = await self.interests.get(user_id)
        scored = score_candidates(
            eligible,
            weights,
            now,
            interest,
            following,
            second_degree,
            cfg.recency_half_life_hours,
        )
        generator = rng if rng is not None else np.random.default_rng(seed)
        drawn = probability_sample(scored, size, generator)
        logger.debug("Ranked %d candidates for %s, drew %d.", len(scored), user_id, len(drawn))

        return FeedPage(
            items=[s.item for s in drawn],
            mode=FeedMode.DEFAULT,
            weights=weights.to_dict(),
            stats=_stats(scored),
            has_more=len(scored) > len(drawn),
        )


def _stats(scored: Sequence[ScoredItem]) -> dict[str, float]:
    if not scored:
        return {"candidates": 0}
    n = len(scored)
    return {
        "candidates": n,
        "avg_score": round(sum(s.score for s in scored) / n, 4),
        "avg_recency": round(sum(s.recency for s in scored) / n, 4),
        "avg_similarity": round(sum(s.similarity for s in scored) / n, 4),
        "avg_social": round(sum(s.social for s in scored) / n, 4),
        "avg_trending": round(sum(s.trending for s in scored) / n, 4),
    }
