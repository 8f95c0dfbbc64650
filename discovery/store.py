"""Collaborator contracts for content and social data, with in-memory implementations.

The relational store and social graph live outside the engine; these
protocols pin down the calls the engine makes. The in-memory classes back
the CLI and the test suite and can be persisted to a JSON dump.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from collections import defaultdict
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Optional, Protocol

import numpy as np
from numpy.typing import NDArray

from discovery.errors import StoreUnavailable
from discovery.models import ContentItem


class ContentStore(Protocol):
    async def add(self, item: ContentItem) -> None: ...

    async def get_many(self, ids: Iterable[str]) -> dict[str, ContentItem]: ...

    async def recent(
        self, since: float, limit: int, with_embedding: bool = False
    ) -> list[ContentItem]: ...

    async def save_embedding(
        self, content_id: str, vector: NDArray[np.float32], degraded: bool
    ) -> None: ...

    async def record_engagement(
        self, content_id: str, likes: int = 0, replies: int = 0, shares: int = 0
    ) -> ContentItem: ...

    async def soft_delete(self, content_id: str) -> None: ...

    async def interaction_vectors(self, user_id: str, limit: int) -> list[NDArray[np.float32]]: ...


class SocialGraph(Protocol):
    async def following(self, user_id: str) -> set[str]: ...

    async def second_degree(self, user_id: str) -> set[str]: ...

    async def blocked(self, user_id: str) -> set[str]: ...


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON atomically using a temp file + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(tmp_fd, "w") as f:
            json.dump(data, f)
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class InMemoryContentStore:
    def __init__(self, items: Iterable[ContentItem] = ()) -> None:
        self._items: dict[str, ContentItem] = {i.id: i for i in items}
        self._likes: dict[str, list[str]] = defaultdict(list)
        self._lock = threading.Lock()
        self.online = True

    def _check(self) -> None:
        if not self.online:
            raise StoreUnavailable("content store unreachable")

    async def add(self, item: ContentItem) -> None:
        self._check()
        with self._lock:
            if item.id in self._items:
                raise ValueError(f"Duplicate content id {item.id}")
            self._items[item.id] = item

    async def get_many(self, ids: Iterable[str]) -> dict[str, ContentItem]:
        self._check()
        with self._lock:
            return {i: self._items[i] for i in ids if i in self._items}

    async def recent(
        self, since: float, limit: int, with_embedding: bool = False
    ) -> list[ContentItem]:
        self._check()
        with self._lock:
            items = [
                i
                for i in self._items.values()
                if i.created_at >= since
                and not i.deleted
                and (i.embedding is not None or not with_embedding)
            ]
        items.sort(key=lambda i: (-i.created_at, i.id))
        return items[:limit]

    async def save_embedding(
        self, content_id: str, vector: NDArray[np.float32], degraded: bool
    ) -> None:
        self._check()
        with self._lock:
            current = self._items.get(content_id)
            if current is None:
                return
            self._items[content_id] = current.with_embedding(vector, degraded)

    async def record_engagement(
        self, content_id: str, likes: int = 0, replies: int = 0, shares: int = 0
    ) -> ContentItem:
        self._check()
        with self._lock:
            current = self._items.get(content_id)
            if current is None:
                raise KeyError(content_id)
            updated = current.with_engagement(
                current.engagement.incremented(likes, replies, shares)
            )
            self._items[content_id] = updated
            return updated

    async def record_like(self, user_id: str, content_id: str) -> ContentItem:
        updated = await self.record_engagement(content_id, likes=1)
        with self._lock:
            self._likes[user_id].append(content_id)
        return updated

    async def soft_delete(self, content_id: str) -> None:
        self._check()
        with self._lock:
            current = self._items.get(content_id)
            if current is not None:
                self._items[content_id] = current.tombstoned()

    async def interaction_vectors(self, user_id: str, limit: int) -> list[NDArray[np.float32]]:
        self._check()
        with self._lock:
            liked = [self._items[i] for i in reversed(self._likes.get(user_id, [])) if i in self._items]
            authored = sorted(
                (i for i in self._items.values() if i.author_id == user_id),
                key=lambda i: -i.created_at,
            )
        vectors = [
            i.embedding
            for i in liked + authored
            if i.embedding is not None and not i.embedding_degraded and not i.deleted
        ]
        return vectors[:limit]  # type: ignore[return-value]

    def dump(self, path: Path, graph: Optional[InMemorySocialGraph] = None) -> None:
        with self._lock:
            payload: dict[str, Any] = {
                "items": [i.to_dict() for i in self._items.values()],
                "likes": {u: list(ids) for u, ids in self._likes.items()},
            }
        if graph is not None:
            payload["graph"] = graph.to_dict()
        atomic_write_json(Path(path), payload)


class InMemorySocialGraph:
    def __init__(
        self,
        follows: Optional[dict[str, set[str]]] = None,
        blocks: Optional[dict[str, set[str]]] = None,
    ) -> None:
        self._follows: dict[str, set[str]] = defaultdict(set)
        self._blocks: dict[str, set[str]] = defaultdict(set)
        for user, targets in (follows or {}).items():
            self._follows[user].update(targets)
        for user, targets in (blocks or {}).items():
            self._blocks[user].update(targets)
        self.online = True

    def _check(self) -> None:
        if not self.online:
            raise StoreUnavailable("social graph unreachable")

    def follow(self, user_id: str, target_id: str) -> None:
        self._follows[user_id].add(target_id)

    def block(self, user_id: str, target_id: str) -> None:
        self._blocks[user_id].add(target_id)

    async def following(self, user_id: str) -> set[str]:
        self._check()
        return set(self._follows.get(user_id, set()))

    async def second_degree(self, user_id: str) -> set[str]:
        self._check()
        direct = self._follows.get(user_id, set())
        reachable: set[str] = set()
        for friend in direct:
            reachable.update(self._follows.get(friend, set()))
        return reachable - direct - {user_id}

    async def blocked(self, user_id: str) -> set[str]:
        """Users blocked by ``user_id`` or blocking them."""
        self._check()
        outgoing = set(self._blocks.get(user_id, set()))
        incoming = {u for u, targets in self._blocks.items() if user_id in targets}
        return outgoing | incoming

    def to_dict(self) -> dict[str, dict[str, list[str]]]:
        return {
            "follows": {u: sorted(t) for u, t in self._follows.items()},
            "blocks": {u: sorted(t) for u, t in self._blocks.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InMemorySocialGraph:
        return cls(
            follows={u: set(t) for u, t in (data.get("follows") or {}).items()},
            blocks={u: set(t) for u, t in (data.get("blocks") or {}).items()},
        )


def load_dump(path: Path) -> tuple[InMemoryContentStore, InMemorySocialGraph]:
    """Read a JSON dump written by ``InMemoryContentStore.dump``."""
    data = json.loads(Path(path).read_text())
    store = InMemoryContentStore(ContentItem.from_dict(d) for d in data.get("items", []))
    for user_id, ids in (data.get("likes") or {}).items():
        store._likes[str(user_id)] = [str(i) for i in ids]
    graph = InMemorySocialGraph.from_dict(data.get("graph") or {})
    return store, graph
