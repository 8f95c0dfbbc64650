"""Greedy clustering, representatives and topic metadata."""

from __future__ import annotations

import logging

import numpy as np
from hypothesis import given, settings
from hypothesis import strategies as st
from hypothesis.extra.numpy import arrays

from conftest import DIM, NOW, make_item, unit
from discovery.clustering import (
    cluster_window,
    engagement_score,
    extract_keywords,
    geo_scope_for,
    greedy_cluster,
    participant_count,
    select_representatives,
)
from discovery.models import GeoScope

# B sits at cosine 0.85 from A; C sits at cosine 0.10 from both.
VEC_A = unit(1.0)
VEC_B = unit(0.85, np.sqrt(1 - 0.85**2))
VEC_C = unit(0.1, 0.02847, 0.99459)


def test_scenario_vectors_have_intended_similarity():
    assert abs(float(VEC_A @ VEC_B) - 0.85) < 1e-4
    assert abs(float(VEC_A @ VEC_C) - 0.10) < 1e-3
    assert abs(float(VEC_B @ VEC_C) - 0.10) < 1e-3


def test_two_similar_items_form_one_cluster_third_stays_out():
    items = [
        make_item("a", VEC_A, age=10),
        make_item("b", VEC_B, age=20),
        make_item("c", VEC_C, age=30),
    ]
    clusters = cluster_window(
        items, now=NOW, threshold=0.60, window_hours=24, max_items=500, min_size=2
    )
    assert len(clusters) == 1
    assert clusters[0].member_ids == ("a", "b")


def test_members_join_in_recency_order():
    items = [
        make_item("old", VEC_A, age=300),
        make_item("new", VEC_A, age=1),
        make_item("mid", VEC_A, age=100),
    ]
    (cluster,) = greedy_cluster(items, threshold=0.6)
    assert cluster.member_ids == ("new", "mid", "old")


def test_centroid_is_running_mean():
    items = [make_item("a", VEC_A, age=1), make_item("b", VEC_B, age=2)]
    (cluster,) = greedy_cluster(items, threshold=0.6)
    expected = (VEC_A.astype(np.float64) + VEC_B.astype(np.float64)) / 2
    assert np.allclose(cluster.centroid, expected)


def test_items_without_vectors_or_degraded_are_excluded():
    items = [
        make_item("a", VEC_A, age=1),
        make_item("b", None, age=2),
        make_item("c", VEC_A, age=3, degraded=True),
        make_item("d", VEC_A, age=4, deleted=True),
        make_item("e", VEC_A, age=5),
    ]
    clusters = cluster_window(items, now=NOW, threshold=0.6, window_hours=24, max_items=500, min_size=2)
    assert [c.member_ids for c in clusters] == [("a", "e")]


def test_items_older_than_window_are_never_considered():
    items = [
        make_item("fresh", VEC_A, age=60),
        make_item("stale", VEC_A, age=25 * 3600),
    ]
    clusters = cluster_window(items, now=NOW, threshold=0.6, window_hours=24, max_items=500, min_size=2)
    assert clusters == []


def test_window_cap_truncates_deterministically(caplog):
    items = [make_item(f"i{n}", VEC_A, age=n) for n in range(10)]
    with caplog.at_level(logging.WARNING):
        clusters = cluster_window(
            list(reversed(items)), now=NOW, threshold=0.6, window_hours=24, max_items=4, min_size=1
        )
    assert clusters[0].member_ids == ("i0", "i1", "i2", "i3")
    assert "ResourceExhaustion" in caplog.text


@settings(max_examples=30, deadline=None)
@given(
    arrays(
        np.float32,
        (12, DIM),
        elements=st.floats(-1.0, 1.0, allow_nan=False, allow_infinity=False, width=32),
    ),
    st.integers(min_value=1, max_value=5),
)
def test_every_cluster_meets_min_size(vectors, min_size):
    items = [make_item(f"i{n}", v, age=n) for n, v in enumerate(vectors)]
    clusters = cluster_window(
        items, now=NOW, threshold=0.6, window_hours=24, max_items=500, min_size=min_size
    )
    assert all(c.size >= min_size for c in clusters)
    seen = [mid for c in clusters for mid in c.member_ids]
    assert len(seen) == len(set(seen))


def test_representatives_prefer_engagement():
    members = [
        make_item("quiet", VEC_A, likes=0),
        make_item("loud", VEC_A, likes=1, shares=5),
        make_item("mid", VEC_A, replies=3),
    ]
    reps = select_representatives(members, 2)
    assert [r.id for r in reps] == ["loud", "mid"]


def test_geo_scope_regional_only_when_all_share_tag():
    assert geo_scope_for([make_item("a", geo="OH"), make_item("b", geo="OH")]) == (
        GeoScope.REGIONAL,
        "OH",
    )
    assert geo_scope_for([make_item("a", geo="OH"), make_item("b", geo="PA")])[0] is GeoScope.NATIONAL
    assert geo_scope_for([make_item("a", geo="OH"), make_item("b")])[0] is GeoScope.NATIONAL
    assert geo_scope_for([make_item("a"), make_item("b")]) == (GeoScope.NATIONAL, None)


def test_participant_count_is_distinct_authors():
    members = [make_item("a", author="x"), make_item("b", author="x"), make_item("c", author="y")]
    assert participant_count(members) == 2


def test_engagement_score_rewards_recency():
    fresh = [make_item("a", likes=10, age=0)]
    old = [make_item("b", likes=10, age=48 * 3600)]
    assert engagement_score(fresh, NOW) > engagement_score(old, NOW)
    assert engagement_score([], NOW) == 0.0


def test_extract_keywords_skips_stop_words():
    texts = [
        "The city council voted on the housing plan",
        "Housing costs keep rising in the city",
        "Council members debate housing",
    ]
    keywords = extract_keywords(texts, limit=3)
    assert keywords[0] == "housing"
    assert set(keywords) <= {"housing", "city", "council"}
    assert "the" not in keywords
