"""Wires the embedding layer, topic discovery, ranking and navigation together."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Mapping
from typing import Optional, Union

from discovery.config import DiscoveryConfig
from discovery.embedding import TieredEmbedder
from discovery.errors import ConfigurationError, StoreUnavailable
from discovery.models import ContentItem, FeedPage, ScoreWeights, Topic
from discovery.navigation import NavigationStateMachine
from discovery.ranking import FeedRanker
from discovery.store import ContentStore, SocialGraph
from discovery.summarizer import LLMSummarizer, SummarizationService
from discovery.topics import TopicDiscoveryEngine, TopicSnapshot

logger = logging.getLogger(__name__)

WeightsArg = Union[ScoreWeights, Mapping[str, object], None]


class DiscoveryEngine:
    def __init__(
        self,
        config: DiscoveryConfig,
        store: ContentStore,
        graph: SocialGraph,
        embedder: Optional[TieredEmbedder] = None,
        summarizer: Optional[SummarizationService] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.store = store
        self.graph = graph
        self._clock = clock
        self.embedder = embedder or TieredEmbedder(config)
        self.topics = TopicDiscoveryEngine(
            config, store, summarizer or LLMSummarizer(config), clock=clock
        )
        self.ranker = FeedRanker(config, store, graph, clock=clock)
        self.navigation = NavigationStateMachine(
            config, self.topics, self.ranker, store, clock=clock
        )
        self._embed_tasks: set[asyncio.Task[None]] = set()

    # Content

    async def submit_content(
        self,
        author_id: str,
        text: str,
        geo_tag: Optional[str] = None,
        is_political: bool = False,
        content_id: Optional[str] = None,
    ) -> ContentItem:
        """Persist a new item now and compute its embedding in the background.

        Succeeds even when every embedding tier fails; the item then simply
        stays out of clustering and gets a neutral similarity factor.
        """
        item = ContentItem(
            id=content_id or uuid.uuid4().hex,
            author_id=author_id,
            created_at=self._clock(),
            text=text,
            geo_tag=geo_tag or None,
            is_political=is_political,
        )
        await self.store.add(item)
        task = asyncio.create_task(self._embed_and_store(item))
        self._embed_tasks.add(task)
        task.add_done_callback(self._embed_tasks.discard)
        return item

    async def _embed_and_store(self, item: ContentItem) -> None:
        try:
            result = await self.embedder.embed(item.text)
        except Exception:
            logger.exception("Embedding %s failed unexpectedly.", item.id)
            return
        if result is None:
            return
        try:
            await self.store.save_embedding(item.id, result.vector, result.degraded)
        except StoreUnavailable as e:
            logger.warning("Could not persist embedding for %s: %s", item.id, e)
            return
        logger.debug("Embedded %s via %s tier.", item.id, result.tier)

    async def record_engagement(
        self, content_id: str, likes: int = 0, replies: int = 0, shares: int = 0
    ) -> ContentItem:
        return await self.store.record_engagement(content_id, likes, replies, shares)

    async def delete_content(self, content_id: str) -> None:
        await self.store.soft_delete(content_id)

    # Topics

    async def trending_topics(self, region: Optional[str] = None) -> list[Topic]:
        return await self.topics.trending_topics(region=region)

    async def refresh_topics(self, caller_id: str) -> Optional[TopicSnapshot]:
        return await self.topics.refresh(caller_id)

    # Navigation

    async def enter_topic(self, user_id: str, topic_id: str) -> str:
        return await self.navigation.enter(user_id, topic_id)

    def exit_topic(self, user_id: str) -> None:
        self.navigation.exit(user_id)

    def resolve_weights(self, weights: WeightsArg) -> ScoreWeights:
        """Validate per-request weights before any ranking work happens."""
        if isinstance(weights, ScoreWeights):
            return weights
        try:
            return ScoreWeights.from_mapping(weights, base=self.config.score_weights)
        except ConfigurationError as e:
            logger.info("Rejected score weights %s: %s", dict(weights or {}), e)
            raise

    async def get_page(
        self,
        user_id: str,
        page_size: Optional[int] = None,
        weights: WeightsArg = None,
        seed: Optional[int] = None,
    ) -> FeedPage:
        resolved = self.resolve_weights(weights)
        return await self.navigation.get_page(user_id, page_size, resolved, seed)

    # Lifecycle

    def start(self) -> None:
        self.topics.start()

    async def drain(self) -> None:
        """Wait for background embedding work, including timed-out tier calls."""
        if self._embed_tasks:
            await asyncio.gather(*list(self._embed_tasks), return_exceptions=True)
        await self.embedder.drain()

    async def stop(self) -> None:
        await self.topics.stop()
        await self.drain()
