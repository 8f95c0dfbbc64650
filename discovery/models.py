"""Typed data models for semantic content discovery."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Mapping, Optional, TypedDict

import numpy as np
from numpy.typing import NDArray

from discovery.constants import (
    DEFAULT_WEIGHT_RECENCY,
    DEFAULT_WEIGHT_SIMILARITY,
    DEFAULT_WEIGHT_SOCIAL,
    DEFAULT_WEIGHT_TRENDING,
    ENGAGEMENT_LIKE_WEIGHT,
    ENGAGEMENT_REPLY_WEIGHT,
    ENGAGEMENT_SHARE_WEIGHT,
    WEIGHT_SUM_EPSILON,
)
from discovery.errors import ConfigurationError


class GeoScope(str, Enum):
    NATIONAL = "NATIONAL"
    REGIONAL = "REGIONAL"


class FeedMode(str, Enum):
    DEFAULT = "DEFAULT"
    TOPIC = "TOPIC"


class EngagementDict(TypedDict):
    likes: int
    replies: int
    shares: int


class ContentItemDict(TypedDict):
    """Serialized ContentItem payload for the JSON store and API boundaries."""

    id: str
    author_id: str
    created_at: float
    text: str
    embedding: Optional[list[float]]
    embedding_degraded: bool
    engagement: EngagementDict
    geo_tag: Optional[str]
    is_political: bool
    deleted: bool


class TopicDict(TypedDict):
    id: str
    title: str
    prevailing_position: str
    leading_critique: str
    participant_count: int
    member_count: int
    geo_scope: str
    region: Optional[str]
    keywords: list[str]
    created_at: float
    expires_at: float


@dataclass(frozen=True)
class Engagement:
    """Monotonic engagement counters."""

    likes: int = 0
    replies: int = 0
    shares: int = 0

    def weighted(self) -> float:
        return (
            self.likes * ENGAGEMENT_LIKE_WEIGHT
            + self.replies * ENGAGEMENT_REPLY_WEIGHT
            + self.shares * ENGAGEMENT_SHARE_WEIGHT
        )

    def incremented(self, likes: int = 0, replies: int = 0, shares: int = 0) -> Engagement:
        if likes < 0 or replies < 0 or shares < 0:
            raise ValueError("Engagement counters only move forward")
        return Engagement(self.likes + likes, self.replies + replies, self.shares + shares)

    def to_dict(self) -> EngagementDict:
        return {"likes": self.likes, "replies": self.replies, "shares": self.shares}


def _freeze_vector(vec: NDArray[np.float32] | None) -> NDArray[np.float32] | None:
    if vec is None:
        return None
    frozen = np.array(vec, dtype=np.float32, copy=True)
    frozen.flags.writeable = False
    return frozen


@dataclass(frozen=True)
class ContentItem:
    """A unit of user-generated content eligible for discovery.

    Instances are immutable; a new embedding produces a new ContentItem via
    ``with_embedding`` and the store swaps the record in one assignment.
    """

    id: str
    author_id: str
    created_at: float
    text: str
    embedding: Optional[NDArray[np.float32]] = None
    embedding_degraded: bool = False
    engagement: Engagement = field(default_factory=Engagement)
    geo_tag: Optional[str] = None
    is_political: bool = False
    deleted: bool = False

    def __post_init__(self) -> None:
        if self.embedding is not None and self.embedding.flags.writeable:
            object.__setattr__(self, "embedding", _freeze_vector(self.embedding))

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    def with_embedding(self, vector: NDArray[np.float32], degraded: bool) -> ContentItem:
        return replace(self, embedding=_freeze_vector(vector), embedding_degraded=degraded)

    def with_engagement(self, engagement: Engagement) -> ContentItem:
        return replace(self, engagement=engagement)

    def tombstoned(self) -> ContentItem:
        return replace(self, deleted=True)

    @classmethod
    def from_dict(cls, d: Mapping[str, object]) -> ContentItem:
        eng = d.get("engagement") or {}
        emb = d.get("embedding")
        return cls(
            id=str(d["id"]),
            author_id=str(d.get("author_id", "")),
            created_at=float(d.get("created_at", 0.0)),  # type: ignore[arg-type]
            text=str(d.get("text", "")),
            embedding=np.asarray(emb, dtype=np.float32) if emb is not None else None,
            embedding_degraded=bool(d.get("embedding_degraded", False)),
            engagement=Engagement(
                likes=int(eng.get("likes", 0)),  # type: ignore[union-attr]
                replies=int(eng.get("replies", 0)),  # type: ignore[union-attr]
                shares=int(eng.get("shares", 0)),  # type: ignore[union-attr]
            ),
            geo_tag=d.get("geo_tag") or None,  # type: ignore[arg-type]
            is_political=bool(d.get("is_political", False)),
            deleted=bool(d.get("deleted", False)),
        )

    def to_dict(self, include_embedding: bool = True) -> ContentItemDict:
        return {
            "id": self.id,
            "author_id": self.author_id,
            "created_at": self.created_at,
            "text": self.text,
            "embedding": [float(x) for x in self.embedding]
            if include_embedding and self.embedding is not None
            else None,
            "embedding_degraded": self.embedding_degraded,
            "engagement": self.engagement.to_dict(),
            "geo_tag": self.geo_tag,
            "is_political": self.is_political,
            "deleted": self.deleted,
        }


@dataclass(frozen=True)
class Topic:
    """An AI-synthesized cluster of semantically related content."""

    id: str
    member_ids: tuple[str, ...]  # Discovery order; fixed for the life of the topic
    title: str
    prevailing_position: str
    leading_critique: str
    participant_count: int
    created_at: float
    expires_at: float
    geo_scope: GeoScope = GeoScope.NATIONAL
    region: Optional[str] = None
    keywords: tuple[str, ...] = ()
    engagement_score: float = 0.0

    def __post_init__(self) -> None:
        if not self.member_ids:
            raise ValueError("Topic must have at least one member")
        if (self.geo_scope is GeoScope.REGIONAL) != (self.region is not None):
            raise ValueError("region is set iff geo_scope is REGIONAL")

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> TopicDict:
        return {
            "id": self.id,
            "title": self.title,
            "prevailing_position": self.prevailing_position,
            "leading_critique": self.leading_critique,
            "participant_count": self.participant_count,
            "member_count": len(self.member_ids),
            "geo_scope": self.geo_scope.value,
            "region": self.region,
            "keywords": list(self.keywords),
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }


@dataclass
class UserFeedState:
    """Per-user navigation cursor. Written only by the navigation state machine."""

    user_id: str
    mode: FeedMode = FeedMode.DEFAULT
    active_topic_id: Optional[str] = None
    pagination_cursor: int = 0
    last_ranked_at: Optional[float] = None
    touched_at: float = 0.0
    seen_ids: set[str] = field(default_factory=set)

    def is_consistent(self) -> bool:
        return (self.mode is FeedMode.TOPIC) == (self.active_topic_id is not None)


_WEIGHT_FIELDS = ("recency", "similarity", "social", "trending")


@dataclass(frozen=True)
class ScoreWeights:
    """Ranking factor weights: four non-negative floats summing to 1.0."""

    recency: float = DEFAULT_WEIGHT_RECENCY
    similarity: float = DEFAULT_WEIGHT_SIMILARITY
    social: float = DEFAULT_WEIGHT_SOCIAL
    trending: float = DEFAULT_WEIGHT_TRENDING

    def __post_init__(self) -> None:
        values = [getattr(self, name) for name in _WEIGHT_FIELDS]
        for name, value in zip(_WEIGHT_FIELDS, values):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(f"Weight '{name}' must be a number")
            if not math.isfinite(value) or value < 0:
                raise ConfigurationError(f"Weight '{name}' must be finite and >= 0")
        total = math.fsum(values)
        if abs(total - 1.0) > WEIGHT_SUM_EPSILON:
            raise ConfigurationError(f"Weights must sum to 1.0 (got {total:.6f})")

    @classmethod
    def from_mapping(
        cls, overrides: Mapping[str, object] | None, base: ScoreWeights | None = None
    ) -> ScoreWeights:
        """Overlay ``overrides`` onto ``base`` (defaults) and validate the result."""
        base = base or cls()
        if not overrides:
            return base
        unknown = set(overrides) - set(_WEIGHT_FIELDS)
        if unknown:
            raise ConfigurationError(f"Unknown weight(s): {sorted(unknown)}")
        merged = {name: getattr(base, name) for name in _WEIGHT_FIELDS}
        merged.update(overrides)  # type: ignore[arg-type]
        return cls(**merged)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in _WEIGHT_FIELDS}


@dataclass(frozen=True)
class EmbeddingResult:
    """Output of a successful embed call."""

    vector: NDArray[np.float32]
    tier: str  # "remote" | "local" | "keyword"
    degraded: bool = False


@dataclass(frozen=True)
class Synthesis:
    title: str
    prevailing_position: str
    leading_critique: str


@dataclass
class ScoredItem:
    """Factor breakdown for a single ranking candidate."""

    item: ContentItem
    recency: float
    similarity: float
    social: float
    trending: float
    score: float


@dataclass
class FeedPage:
    """Result of a getPage call in either mode."""

    items: list[ContentItem]
    mode: FeedMode
    cursor: Optional[str] = None
    topic_id: Optional[str] = None
    topic_ended: bool = False  # Set when a stale TOPIC state was auto-exited
    ended_topic_id: Optional[str] = None
    algorithm: str = "probability-cloud"
    weights: Optional[dict[str, float]] = None
    stats: dict[str, float] = field(default_factory=dict)
    has_more: bool = False
    outage: bool = False
