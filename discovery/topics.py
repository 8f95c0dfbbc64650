"""Topic discovery: periodic clustering, synthesis and the published topic cache.

Readers never see a partially built topic set. Each run builds a complete
``TopicSnapshot`` and swaps it in with a single reference assignment; the
``TopicDiscoveryEngine`` is the only writer.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from functools import partial
from typing import Optional

from discovery.clustering import (
    Cluster,
    cluster_window,
    engagement_score,
    extract_keywords,
    geo_scope_for,
    participant_count,
    select_representatives,
)
from discovery.config import DiscoveryConfig
from discovery.constants import (
    SYNTHESIS_CACHE_MAX_ENTRIES,
    TOPIC_MERGE_MIN_JACCARD,
    TOPIC_REGIONAL_SLOT,
)
from discovery.errors import (
    RateLimited,
    StoreUnavailable,
    SynthesisQuotaError,
    TransientUpstreamFailure,
)
from discovery.models import ContentItem, GeoScope, Synthesis, Topic
from discovery.store import ContentStore
from discovery.summarizer import SummarizationService

logger = logging.getLogger(__name__)

SynthesisKey = tuple[str, ...]


@dataclass(frozen=True)
class TopicSnapshot:
    """Immutable published topic set.

    ``topics`` is the ordered public list. ``retained`` holds topics from
    earlier runs that were not superseded and have not expired; they can
    still be navigated but are no longer listed.
    """

    topics: tuple[Topic, ...] = ()
    retained: tuple[Topic, ...] = ()
    published_at: float = 0.0
    _by_id: dict[str, Topic] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        index = {t.id: t for t in self.retained}
        index.update({t.id: t for t in self.topics})
        object.__setattr__(self, "_by_id", index)

    def get(self, topic_id: str) -> Optional[Topic]:
        return self._by_id.get(topic_id)

    def __contains__(self, topic_id: object) -> bool:
        return topic_id in self._by_id

    def all_topics(self) -> list[Topic]:
        return list(self._by_id.values())

    def without(self, topic_id: str) -> TopicSnapshot:
        return TopicSnapshot(
            topics=tuple(t for t in self.topics if t.id != topic_id),
            retained=tuple(t for t in self.retained if t.id != topic_id),
            published_at=self.published_at,
        )


class TopicCache:
    def __init__(self) -> None:
        self._snapshot = TopicSnapshot()

    @property
    def snapshot(self) -> TopicSnapshot:
        return self._snapshot

    def publish(self, snapshot: TopicSnapshot) -> None:
        self._snapshot = snapshot


class SynthesisCache:
    """Bounded LRU of successful syntheses keyed by representative ids."""

    def __init__(self, max_entries: int = SYNTHESIS_CACHE_MAX_ENTRIES) -> None:
        self.max_entries = max_entries
        self._entries: OrderedDict[SynthesisKey, Synthesis] = OrderedDict()

    def get(self, key: SynthesisKey) -> Optional[Synthesis]:
        value = self._entries.get(key)
        if value is not None:
            self._entries.move_to_end(key)
        return value

    def put(self, key: SynthesisKey, value: Synthesis) -> None:
        self._entries[key] = value
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    sa, sb = set(a), set(b)
    if not sa and not sb:
        return 0.0
    return len(sa & sb) / len(sa | sb)


def _base36(n: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(digits[r])
    return "".join(reversed(out))


def make_topic_id(title: str, now: float, taken: set[str]) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")[:40].rstrip("-") or "topic"
    base = f"{slug}-{_base36(int(now * 1000))}"
    candidate = base
    n = 2
    while candidate in taken:
        candidate = f"{base}-{n}"
        n += 1
    return candidate


def interleave_regional(
    national: Sequence[Topic],
    regional: Sequence[Topic],
    now: float,
    window_seconds: float,
    region: Optional[str] = None,
    slot: int = TOPIC_REGIONAL_SLOT,
) -> list[Topic]:
    """Place at most one REGIONAL topic among the NATIONAL ones.

    The chosen regional topic rotates once per ``window_seconds`` of wall
    clock time; a topic for ``region`` is preferred when one exists.
    """
    result = list(national)
    if not regional:
        return result
    preferred = [t for t in regional if region is not None and t.region == region]
    pool = preferred or list(regional)
    window_index = int(now // window_seconds)
    chosen = pool[window_index % len(pool)]
    result.insert(min(slot, len(result)), chosen)
    return result


class TopicDiscoveryEngine:
    """Owns the topic cache and the clustering cadence."""

    def __init__(
        self,
        config: DiscoveryConfig,
        store: ContentStore,
        summarizer: SummarizationService,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.store = store
        self.summarizer = summarizer
        self._clock = clock
        self._cache = TopicCache()
        self._synthesis_cache = SynthesisCache()
        self._run_lock = asyncio.Lock()
        self._last_refresh: dict[str, float] = {}
        self._late: set[asyncio.Task[Synthesis]] = set()
        self._loop_task: Optional[asyncio.Task[None]] = None

    @property
    def snapshot(self) -> TopicSnapshot:
        return self._cache.snapshot

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    async def run_once(self, now: Optional[float] = None) -> Optional[TopicSnapshot]:
        """Run one clustering pass and publish the result.

        Returns None without doing any work when another run is in progress.
        """
        if self._run_lock.locked():
            logger.info("Clustering run already in progress, skipping.")
            return None
        async with self._run_lock:
            return await self._run(self._clock() if now is None else now)

    async def _run(self, now: float) -> TopicSnapshot:
        cfg = self.config
        logger.info("Clustering run started.")
        since = now - cfg.window_hours * 3600.0
        # One past the cap so an overflowing window is detected and logged.
        items = await self.store.recent(since, cfg.window_max_items + 1, with_embedding=True)
        clusters = cluster_window(
            items,
            now=now,
            threshold=cfg.similarity_threshold,
            window_hours=cfg.window_hours,
            max_items=cfg.window_max_items,
            min_size=cfg.min_cluster_size,
        )
        clusters.sort(key=lambda c: -engagement_score(c.members, now, cfg.recency_half_life_hours))
        if len(clusters) > cfg.max_topics:
            logger.debug("Keeping top %d of %d clusters.", cfg.max_topics, len(clusters))
            clusters = clusters[: cfg.max_topics]

        previous = [t for t in self._cache.snapshot.all_topics() if not t.is_expired(now)]
        superseded: set[str] = set()
        taken: set[str] = {t.id for t in previous}
        published: list[Topic] = []
        deferred = 0

        for idx, cluster in enumerate(clusters):
            reps = select_representatives(cluster.members, cfg.representatives)
            try:
                synthesis = await self._synthesize(reps)
            except SynthesisQuotaError as e:
                deferred += len(clusters) - idx
                logger.error("Synthesis quota exhausted, deferring remaining clusters: %s", e)
                break
            if synthesis is None:
                deferred += 1
                continue

            match = self._best_match(cluster, previous, superseded)
            if match is not None:
                superseded.add(match.id)
            published.append(await self._build_topic(cluster, synthesis, match, now, taken))

        published.sort(key=lambda t: -t.engagement_score)
        # Re-read after the awaits above: topics evicted meanwhile stay gone.
        retained = tuple(
            t
            for t in self._cache.snapshot.all_topics()
            if not t.is_expired(now) and t.id not in superseded
        )
        snapshot = TopicSnapshot(topics=tuple(published), retained=retained, published_at=now)
        self._cache.publish(snapshot)
        logger.info(
            "Clustering run finished: %d items, %d clusters, %d topics published, %d deferred.",
            len(items),
            len(clusters),
            len(published),
            deferred,
        )
        return snapshot

    def _best_match(
        self, cluster: Cluster, previous: Sequence[Topic], superseded: set[str]
    ) -> Optional[Topic]:
        best: Optional[Topic] = None
        best_score = TOPIC_MERGE_MIN_JACCARD
        for topic in previous:
            if topic.id in superseded:
                continue
            score = jaccard(cluster.member_ids, topic.member_ids)
            if score >= best_score and (best is None or score > best_score):
                best, best_score = topic, score
        return best

    async def _build_topic(
        self,
        cluster: Cluster,
        synthesis: Synthesis,
        match: Optional[Topic],
        now: float,
        taken: set[str],
    ) -> Topic:
        members = list(cluster.members)
        if match is not None:
            # Previous order stays a prefix so in-flight pagination is unaffected.
            known = set(match.member_ids)
            fresh = [mid for mid in cluster.member_ids if mid not in known]
            member_ids = match.member_ids + tuple(fresh)
            # Derived fields cover carried-over members too, tombstoned ones included.
            in_cluster = set(cluster.member_ids)
            carried = [mid for mid in match.member_ids if mid not in in_cluster]
            if carried:
                found = await self.store.get_many(carried)
                members.extend(found[mid] for mid in carried if mid in found)
            topic_id = match.id
            created_at = match.created_at
        else:
            member_ids = cluster.member_ids
            topic_id = make_topic_id(synthesis.title, now, taken)
            taken.add(topic_id)
            created_at = now
        scope, region = geo_scope_for(members)
        return Topic(
            id=topic_id,
            member_ids=member_ids,
            title=synthesis.title,
            prevailing_position=synthesis.prevailing_position,
            leading_critique=synthesis.leading_critique,
            participant_count=participant_count(members),
            created_at=created_at,
            expires_at=now + self.config.topic_ttl_seconds,
            geo_scope=scope,
            region=region,
            keywords=tuple(extract_keywords(m.text for m in members)),
            engagement_score=round(
                engagement_score(members, now, self.config.recency_half_life_hours), 6
            ),
        )

    async def _synthesize(self, reps: Sequence[ContentItem]) -> Optional[Synthesis]:
        key: SynthesisKey = tuple(r.id for r in reps)
        cached = self._synthesis_cache.get(key)
        if cached is not None:
            return cached

        task: asyncio.Task[Synthesis] = asyncio.ensure_future(
            self.summarizer.synthesize([r.text for r in reps])
        )
        try:
            result = await asyncio.wait_for(asyncio.shield(task), self.config.llm_timeout)
        except asyncio.TimeoutError:
            self._late.add(task)
            task.add_done_callback(partial(self._store_late, key))
            logger.warning(
                "Synthesis timed out after %.1fs, deferring cluster of %d.",
                self.config.llm_timeout,
                len(reps),
            )
            return None
        except TransientUpstreamFailure as e:
            logger.warning("Synthesis failed, deferring cluster: %s", e)
            return None
        self._synthesis_cache.put(key, result)
        return result

    def _store_late(self, key: SynthesisKey, task: asyncio.Task[Synthesis]) -> None:
        self._late.discard(task)
        if task.cancelled() or task.exception() is not None:
            return
        self._synthesis_cache.put(key, task.result())

    async def refresh(self, caller_id: str) -> Optional[TopicSnapshot]:
        """On-demand run, limited to once per cooldown window per caller."""
        now = self._clock()
        cooldown = self.config.refresh_cooldown_seconds
        last = self._last_refresh.get(caller_id)
        if last is not None and now - last < cooldown:
            raise RateLimited(
                f"Refresh limited to once per {cooldown:.0f}s", retry_after=cooldown - (now - last)
            )
        self._last_refresh[caller_id] = now
        self._prune_refresh_log(now)
        return await self.run_once(now)

    def _prune_refresh_log(self, now: float) -> None:
        cooldown = self.config.refresh_cooldown_seconds
        stale = [k for k, t in self._last_refresh.items() if now - t >= cooldown]
        for k in stale:
            del self._last_refresh[k]

    async def get_live_topic(self, topic_id: str, now: Optional[float] = None) -> Optional[Topic]:
        """Return the topic if it exists, has not expired and has a surviving member.

        A topic whose members are all tombstoned is evicted from the cache.
        """
        now = self._clock() if now is None else now
        topic = self._cache.snapshot.get(topic_id)
        if topic is None or topic.is_expired(now):
            return None
        members = await self.store.get_many(topic.member_ids)
        if not any(not m.deleted for m in members.values()):
            self._evict(topic_id)
            return None
        return topic

    def _evict(self, topic_id: str) -> None:
        current = self._cache.snapshot
        if topic_id in current:
            self._cache.publish(current.without(topic_id))
            logger.info("Evicted topic %s: no surviving members.", topic_id)

    async def trending_topics(
        self, now: Optional[float] = None, region: Optional[str] = None
    ) -> list[Topic]:
        now = self._clock() if now is None else now
        live = [t for t in self._cache.snapshot.topics if not t.is_expired(now)]
        live = await self._drop_dead(live)
        national = [t for t in live if t.geo_scope is GeoScope.NATIONAL]
        regional = [t for t in live if t.geo_scope is GeoScope.REGIONAL]
        return interleave_regional(
            national, regional, now, self.config.regional_window_seconds, region=region
        )

    async def _drop_dead(self, topics: list[Topic]) -> list[Topic]:
        ids = {mid for t in topics for mid in t.member_ids}
        if not ids:
            return topics
        try:
            members = await self.store.get_many(ids)
        except StoreUnavailable as e:
            logger.warning("Store unavailable, serving topics unfiltered: %s", e)
            return topics
        alive = []
        for topic in topics:
            if any(mid in members and not members[mid].deleted for mid in topic.member_ids):
                alive.append(topic)
            else:
                self._evict(topic.id)
        return alive

    async def _cadence(self) -> None:
        while True:
            try:
                await self.run_once()
            except StoreUnavailable as e:
                logger.warning("Clustering run skipped, store unavailable: %s", e)
            except Exception:
                logger.exception("Clustering run failed.")
            await asyncio.sleep(self.config.cadence_seconds)

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._cadence())

    async def stop(self) -> None:
        tasks = [t for t in [self._loop_task, *self._late] if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._late.clear()
