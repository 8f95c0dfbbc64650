"""Greedy single-pass clustering over a recent-content window."""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from numpy.typing import NDArray
from sklearn.feature_extraction.text import ENGLISH_STOP_WORDS

from discovery.constants import RECENCY_HALF_LIFE_HOURS, TOPIC_KEYWORDS
from discovery.embedding import similarity_to_many
from discovery.errors import truncate_to_cap
from discovery.models import ContentItem, GeoScope

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9']+")


@dataclass
class Cluster:
    """An open cluster: members in join order plus a running mean centroid."""

    members: list[ContentItem] = field(default_factory=list)
    centroid: Optional[NDArray[np.float64]] = None

    def add(self, item: ContentItem) -> None:
        assert item.embedding is not None
        vec = np.asarray(item.embedding, dtype=np.float64)
        if self.centroid is None:
            self.centroid = vec.copy()
        else:
            # Incremental mean: c_n = c_{n-1} + (x - c_{n-1}) / n
            n = len(self.members) + 1
            self.centroid = self.centroid + (vec - self.centroid) / n
        self.members.append(item)

    @property
    def member_ids(self) -> tuple[str, ...]:
        return tuple(m.id for m in self.members)

    @property
    def size(self) -> int:
        return len(self.members)


def is_clusterable(item: ContentItem) -> bool:
    """Only items with a full-fidelity vector take part in clustering."""
    return item.embedding is not None and not item.embedding_degraded and not item.deleted


def _recency_key(item: ContentItem) -> tuple[float, str]:
    return (-item.created_at, item.id)


def greedy_cluster(items: Sequence[ContentItem], threshold: float) -> list[Cluster]:
    """Assign each item, newest first, to the closest open centroid at or above
    ``threshold``; otherwise it opens a new singleton cluster."""
    clusters: list[Cluster] = []
    for item in sorted(items, key=_recency_key):
        if clusters:
            centroids = np.vstack([c.centroid for c in clusters])
            sims = similarity_to_many(item.embedding, centroids)  # type: ignore[arg-type]
            best = int(np.argmax(sims))
            if sims[best] >= threshold:
                clusters[best].add(item)
                continue
        cluster = Cluster()
        cluster.add(item)
        clusters.append(cluster)
    return clusters


def cluster_window(
    items: Iterable[ContentItem],
    now: float,
    threshold: float,
    window_hours: float,
    max_items: int,
    min_size: int,
) -> list[Cluster]:
    """Cluster the bounded recent window and drop clusters below ``min_size``."""
    since = now - window_hours * 3600.0
    eligible = [i for i in items if is_clusterable(i) and i.created_at >= since]
    window = truncate_to_cap(eligible, max_items, "clustering window", key=_recency_key)
    clusters = greedy_cluster(window, threshold)
    kept = [c for c in clusters if c.size >= min_size]
    logger.debug(
        "Clustered %d items into %d clusters, %d at or above min size %d.",
        len(window),
        len(clusters),
        len(kept),
        min_size,
    )
    return kept


def select_representatives(members: Sequence[ContentItem], k: int) -> list[ContentItem]:
    """Top ``k`` members by weighted engagement, newest first on ties."""
    ranked = sorted(members, key=lambda m: (-m.engagement.weighted(), -m.created_at, m.id))
    return ranked[:k]


def geo_scope_for(members: Sequence[ContentItem]) -> tuple[GeoScope, Optional[str]]:
    tags = {m.geo_tag for m in members}
    if len(tags) == 1:
        (tag,) = tags
        if tag:
            return GeoScope.REGIONAL, tag
    return GeoScope.NATIONAL, None


def participant_count(members: Iterable[ContentItem]) -> int:
    return len({m.author_id for m in members})


def engagement_score(
    members: Sequence[ContentItem],
    now: float,
    half_life_hours: float = RECENCY_HALF_LIFE_HOURS,
) -> float:
    """Mean weighted engagement, boosted by how recent the newest member is."""
    if not members:
        return 0.0
    mean_engagement = sum(m.engagement.weighted() for m in members) / len(members)
    newest = max(m.created_at for m in members)
    age_hours = max(0.0, now - newest) / 3600.0
    recency = 0.5 ** (age_hours / half_life_hours)
    return mean_engagement * (1.0 + recency)


def extract_keywords(texts: Iterable[str], limit: int = TOPIC_KEYWORDS) -> list[str]:
    counter: Counter[str] = Counter()
    for text in texts:
        for token in _TOKEN_RE.findall(text.lower()):
            if token in ENGLISH_STOP_WORDS or len(token) < 3 or token.isdigit():
                continue
            counter[token] += 1
    ranked = sorted(counter.items(), key=lambda t: (-t[1], t[0]))
    return [token for token, _ in ranked[:limit]]
