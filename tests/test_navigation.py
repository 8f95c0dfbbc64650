"""DEFAULT/TOPIC navigation, cursors and per-user state."""

from __future__ import annotations

import pytest
import pytest_asyncio

from conftest import FakeSummarizer, make_item, unit
from discovery.errors import InvalidState
from discovery.models import FeedMode
from discovery.navigation import (
    NavigationStateMachine,
    UserStateStore,
    decode_cursor,
    encode_cursor,
)
from discovery.ranking import FeedRanker
from discovery.store import InMemoryContentStore, InMemorySocialGraph
from discovery.topics import TopicDiscoveryEngine

VEC_A = unit(1.0)
MEMBERS = [f"m{n}" for n in range(5)]


@pytest_asyncio.fixture
async def topic_nav(config, clock):
    items = [make_item(mid, VEC_A, author="poster", age=n * 60) for n, mid in enumerate(MEMBERS)]
    items += [make_item(f"other{n}", author="someone", age=n) for n in range(3)]
    store = InMemoryContentStore(items)
    graph = InMemorySocialGraph()
    topics = TopicDiscoveryEngine(config, store, FakeSummarizer(), clock=clock)
    ranker = FeedRanker(config, store, graph, clock=clock)
    nav = NavigationStateMachine(config, topics, ranker, store, clock=clock)
    snapshot = await topics.run_once()
    (topic,) = snapshot.topics
    return nav, topic, store


def test_cursor_roundtrip():
    token = encode_cursor("housing-vote-abc:1", 42)
    assert decode_cursor(token) == ("housing-vote-abc:1", 42)


@pytest.mark.parametrize("token", ["", "!!!", "bm9jb2xvbg"])
def test_malformed_cursor_rejected(token):
    with pytest.raises(ValueError):
        decode_cursor(token)


@pytest.mark.asyncio
async def test_topic_pages_follow_member_order(topic_nav):
    nav, topic, _ = topic_nav
    assert topic.member_ids == tuple(MEMBERS)

    cursor = await nav.enter("u", topic.id)
    assert decode_cursor(cursor) == (topic.id, 0)

    first = await nav.get_page("u", page_size=2)
    second = await nav.get_page("u", page_size=2)
    assert [i.id for i in first.items] == ["m0", "m1"]
    assert [i.id for i in second.items] == ["m2", "m3"]
    assert second.mode is FeedMode.TOPIC
    assert second.algorithm == "topic-members"
    assert decode_cursor(second.cursor) == (topic.id, 4)
    assert second.has_more is True

    last = await nav.get_page("u", page_size=2)
    assert [i.id for i in last.items] == ["m4"]
    assert last.has_more is False
    assert (await nav.get_page("u", page_size=2)).items == []


@pytest.mark.asyncio
async def test_reentering_active_topic_keeps_cursor(topic_nav):
    nav, topic, _ = topic_nav
    await nav.enter("u", topic.id)
    await nav.get_page("u", page_size=3)
    cursor = await nav.enter("u", topic.id)
    assert decode_cursor(cursor) == (topic.id, 3)


@pytest.mark.asyncio
async def test_enter_unknown_topic_leaves_state_unchanged(topic_nav):
    nav, _, _ = topic_nav
    with pytest.raises(InvalidState) as excinfo:
        await nav.enter("u", "no-such-topic")
    assert excinfo.value.topic_id == "no-such-topic"
    assert nav.states.get("u").mode is FeedMode.DEFAULT


@pytest.mark.asyncio
async def test_exit_returns_to_default(topic_nav):
    nav, topic, _ = topic_nav
    await nav.enter("u", topic.id)
    nav.exit("u")
    state = nav.states.get("u")
    assert state.mode is FeedMode.DEFAULT
    assert state.active_topic_id is None
    assert state.pagination_cursor == 0

    page = await nav.get_page("u", page_size=3, seed=1)
    assert page.mode is FeedMode.DEFAULT
    assert page.algorithm == "probability-cloud"


@pytest.mark.asyncio
async def test_expired_topic_ends_session(topic_nav, clock, config):
    nav, topic, _ = topic_nav
    await nav.enter("u", topic.id)
    clock.advance(config.topic_ttl_seconds + 1)

    page = await nav.get_page("u", page_size=2, seed=0)
    assert page.mode is FeedMode.DEFAULT
    assert page.topic_ended is True
    assert page.ended_topic_id == topic.id
    assert nav.states.get("u").mode is FeedMode.DEFAULT

    with pytest.raises(InvalidState):
        await nav.enter("u", topic.id)


@pytest.mark.asyncio
async def test_deleted_members_are_skipped(topic_nav):
    nav, topic, store = topic_nav
    await store.soft_delete("m1")
    await nav.enter("u", topic.id)
    page = await nav.get_page("u", page_size=2)
    assert [i.id for i in page.items] == ["m0", "m2"]
    assert decode_cursor(page.cursor) == (topic.id, 3)


@pytest.mark.asyncio
async def test_default_feed_does_not_repeat_until_exhausted(topic_nav):
    nav, _, _ = topic_nav
    seen: list[str] = []
    for seed in range(4):
        page = await nav.get_page("u", page_size=2, seed=seed)
        seen.extend(i.id for i in page.items)
    # Eight eligible items in four pages of two: every one exactly once.
    assert sorted(seen) == sorted(MEMBERS + ["other0", "other1", "other2"])

    # Exhausted pool starts over instead of returning nothing.
    again = await nav.get_page("u", page_size=2, seed=9)
    assert len(again.items) == 2


@pytest.mark.asyncio
async def test_entering_topic_clears_seen_set(topic_nav):
    nav, topic, _ = topic_nav
    await nav.get_page("u", page_size=3, seed=0)
    assert nav.states.get("u").seen_ids
    await nav.enter("u", topic.id)
    assert nav.states.get("u").seen_ids == set()


# =============================================================================
# UserStateStore
# =============================================================================


def test_state_expires_after_idle_ttl(clock):
    states = UserStateStore(ttl=60, clock=clock)
    states.update("u", mode=FeedMode.TOPIC, active_topic_id="t")
    clock.advance(59)
    assert states.get("u").mode is FeedMode.TOPIC
    clock.advance(60)
    assert states.get("u").mode is FeedMode.DEFAULT


def test_get_returns_copy(clock):
    states = UserStateStore(ttl=60, clock=clock)
    copy = states.get("u")
    copy.seen_ids.add("x")
    assert states.get("u").seen_ids == set()


def test_cursor_only_moves_forward_on_active_topic(clock):
    states = UserStateStore(ttl=60, clock=clock)
    states.update("u", mode=FeedMode.TOPIC, active_topic_id="t")
    states.advance_cursor("u", "t", 4)
    states.advance_cursor("u", "t", 2)
    assert states.get("u").pagination_cursor == 4

    # A page computed for a topic the user has since left is ignored.
    states.update("u", active_topic_id="other", pagination_cursor=0)
    states.advance_cursor("u", "t", 6)
    assert states.get("u").pagination_cursor == 0


def test_sweep_bounds_entries(clock):
    states = UserStateStore(ttl=600, max_entries=3, clock=clock)
    for n in range(5):
        states.update(f"u{n}", pagination_cursor=n)
        clock.advance(1)
    assert len(states) == 3


def test_read_only_users_do_not_accumulate(clock):
    states = UserStateStore(ttl=10, max_entries=5, clock=clock)
    for n in range(100):
        states.get(f"reader{n}")
        states.mark_seen(f"reader{n}", ["x"])
        clock.advance(60)
    assert len(states) <= 1


def test_get_does_not_create_entries(clock):
    states = UserStateStore(ttl=60, clock=clock)
    assert states.get("u").mode is FeedMode.DEFAULT
    assert len(states) == 0


def test_idle_entries_swept_on_any_write(clock):
    states = UserStateStore(ttl=60, max_entries=1000, clock=clock)
    for n in range(10):
        states.mark_seen(f"u{n}", ["x"])
    assert len(states) == 10
    clock.advance(61)
    states.advance_cursor("late", "t", 1)
    assert len(states) == 1
