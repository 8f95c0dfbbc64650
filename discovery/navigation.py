"""Topic navigation: per-user DEFAULT/TOPIC state and paginated serving."""

from __future__ import annotations

import base64
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import replace
from typing import Optional

from discovery.config import DiscoveryConfig
from discovery.constants import (
    MAX_PAGE_SIZE,
    USER_STATE_MAX_ENTRIES,
    USER_STATE_SWEEP_INTERVAL,
)
from discovery.errors import InvalidState
from discovery.models import ContentItem, FeedMode, FeedPage, ScoreWeights, UserFeedState
from discovery.ranking import FeedRanker
from discovery.store import ContentStore
from discovery.topics import TopicDiscoveryEngine

logger = logging.getLogger(__name__)


def encode_cursor(topic_id: str, offset: int) -> str:
    raw = f"{offset}:{topic_id}".encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(token: str) -> tuple[str, int]:
    padded = token + "=" * (-len(token) % 4)
    try:
        offset, topic_id = base64.urlsafe_b64decode(padded).decode().split(":", 1)
        return topic_id, int(offset)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValueError(f"Malformed cursor: {token!r}") from e


class UserStateStore:
    """Keyed UserFeedState storage with idle-TTL eviction.

    Writers touch only the fields they change, so concurrent writers to the
    same user resolve last-write-wins per field. Readers get a copy.
    """

    def __init__(
        self,
        ttl: float,
        max_entries: int = USER_STATE_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._states: dict[str, UserFeedState] = {}
        self._lock = threading.Lock()
        self._sweep_interval = min(USER_STATE_SWEEP_INTERVAL, ttl)
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._states)

    def _expired(self, state: UserFeedState, now: float) -> bool:
        return now - state.touched_at >= self.ttl

    def _live(self, user_id: str, now: float) -> UserFeedState:
        state = self._states.get(user_id)
        if state is None or self._expired(state, now):
            state = UserFeedState(user_id=user_id, touched_at=now)
            self._states[user_id] = state
        self._sweep(now)
        return state

    @staticmethod
    def _copy(state: UserFeedState) -> UserFeedState:
        return replace(state, seen_ids=set(state.seen_ids))

    def get(self, user_id: str) -> UserFeedState:
        """Current state for ``user_id``; unknown or idle users read as DEFAULT."""
        now = self._clock()
        with self._lock:
            self._sweep(now)
            state = self._states.get(user_id)
            if state is None or self._expired(state, now):
                return UserFeedState(user_id=user_id, touched_at=now)
            return self._copy(state)

    def update(self, user_id: str, **fields: object) -> UserFeedState:
        now = self._clock()
        with self._lock:
            state = self._live(user_id, now)
            for name, value in fields.items():
                setattr(state, name, value)
            state.touched_at = now
            return self._copy(state)

    def advance_cursor(self, user_id: str, topic_id: str, offset: int) -> UserFeedState:
        """Move the cursor forward if the user is still on ``topic_id``."""
        now = self._clock()
        with self._lock:
            state = self._live(user_id, now)
            if state.mode is FeedMode.TOPIC and state.active_topic_id == topic_id:
                state.pagination_cursor = max(state.pagination_cursor, offset)
            state.touched_at = now
            return self._copy(state)

    def mark_seen(self, user_id: str, content_ids: Iterable[str]) -> UserFeedState:
        now = self._clock()
        with self._lock:
            state = self._live(user_id, now)
            state.seen_ids.update(content_ids)
            state.last_ranked_at = now
            state.touched_at = now
            return self._copy(state)

    def _sweep(self, now: float) -> None:
        """Drop idle entries at most once per sweep interval, then trim to size."""
        full = len(self._states) > self.max_entries
        if full or now - self._last_sweep >= self._sweep_interval:
            self._last_sweep = now
            expired = [u for u, s in self._states.items() if self._expired(s, now)]
            for u in expired:
                del self._states[u]
        overflow = len(self._states) - self.max_entries
        if overflow > 0:
            oldest = sorted(self._states.values(), key=lambda s: s.touched_at)[:overflow]
            for s in oldest:
                del self._states[s.user_id]


class NavigationStateMachine:
    """DEFAULT <-> TOPIC(topic_id) transitions and page serving."""

    def __init__(
        self,
        config: DiscoveryConfig,
        topics: TopicDiscoveryEngine,
        ranker: FeedRanker,
        store: ContentStore,
        states: Optional[UserStateStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.topics = topics
        self.ranker = ranker
        self.store = store
        self.states = states or UserStateStore(config.user_state_ttl_seconds, clock=clock)

    async def enter(self, user_id: str, topic_id: str) -> str:
        """Pin ``topic_id`` for ``user_id`` and return the pagination cursor.

        Re-entering the active topic keeps the current cursor. Raises
        InvalidState when the topic is unknown, expired or evicted.
        """
        topic = await self.topics.get_live_topic(topic_id)
        if topic is None:
            raise InvalidState(f"Topic {topic_id} does not exist or has expired", topic_id=topic_id)
        state = self.states.get(user_id)
        if state.mode is FeedMode.TOPIC and state.active_topic_id == topic_id:
            return encode_cursor(topic_id, state.pagination_cursor)
        self.states.update(
            user_id,
            mode=FeedMode.TOPIC,
            active_topic_id=topic_id,
            pagination_cursor=0,
            seen_ids=set(),
        )
        return encode_cursor(topic_id, 0)

    def exit(self, user_id: str) -> None:
        self.states.update(
            user_id,
            mode=FeedMode.DEFAULT,
            active_topic_id=None,
            pagination_cursor=0,
            seen_ids=set(),
        )

    async def get_page(
        self,
        user_id: str,
        page_size: Optional[int] = None,
        weights: Optional[ScoreWeights] = None,
        seed: Optional[int] = None,
    ) -> FeedPage:
        size = max(1, min(page_size or self.config.default_page_size, MAX_PAGE_SIZE))
        state = self.states.get(user_id)
        if state.mode is FeedMode.TOPIC and state.active_topic_id is not None:
            topic_id = state.active_topic_id
            topic = await self.topics.get_live_topic(topic_id)
            if topic is not None:
                return await self._topic_page(user_id, topic.id, topic.member_ids, state, size)
            logger.info("Topic %s ended for %s, returning to DEFAULT.", topic_id, user_id)
            self.exit(user_id)
            page = await self._default_page(user_id, size, weights, seed)
            page.topic_ended = True
            page.ended_topic_id = topic_id
            return page
        return await self._default_page(user_id, size, weights, seed)

    async def _topic_page(
        self,
        user_id: str,
        topic_id: str,
        member_ids: tuple[str, ...],
        state: UserFeedState,
        size: int,
    ) -> FeedPage:
        pos = state.pagination_cursor
        items: list[ContentItem] = []
        while len(items) < size and pos < len(member_ids):
            chunk = member_ids[pos : pos + size - len(items)]
            found = await self.store.get_many(chunk)
            for mid in chunk:
                pos += 1
                item = found.get(mid)
                # Tombstoned members are skipped but still consume cursor positions.
                if item is not None and not item.deleted:
                    items.append(item)
        self.states.advance_cursor(user_id, topic_id, pos)
        return FeedPage(
            items=items,
            mode=FeedMode.TOPIC,
            cursor=encode_cursor(topic_id, pos),
            topic_id=topic_id,
            algorithm="topic-members",
            has_more=pos < len(member_ids),
        )

    async def _default_page(
        self,
        user_id: str,
        size: int,
        weights: Optional[ScoreWeights],
        seed: Optional[int],
    ) -> FeedPage:
        state = self.states.get(user_id)
        page = await self.ranker.rank(
            user_id, weights=weights, page_size=size, exclude_ids=state.seen_ids, seed=seed
        )
        if not page.items and state.seen_ids:
            logger.debug("Pool exhausted for %s, clearing seen set.", user_id)
            self.states.update(user_id, seen_ids=set())
            page = await self.ranker.rank(user_id, weights=weights, page_size=size, seed=seed)
        self.states.mark_seen(user_id, (i.id for i in page.items))
        return page
