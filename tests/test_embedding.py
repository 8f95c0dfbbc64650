"""Tests for the embedding & similarity layer."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import httpx
import numpy as np
import pytest
import respx
from hypothesis import given, settings
from hypothesis import strategies as st
from hypothesis.extra.numpy import arrays

from conftest import DIM
from discovery.embedding import (
    EmbeddingCache,
    KeywordEmbedder,
    LocalEmbedder,
    RemoteEmbeddingProvider,
    TieredEmbedder,
    clean_text,
    fit_dimension,
    similarity,
    similarity_to_many,
)
from discovery.errors import TransientUpstreamFailure

URL = "https://embeddings.test/v1/embeddings"

finite = st.floats(-10.0, 10.0, allow_nan=False, allow_infinity=False, width=32)


def vector_pair(dim: int = 16):
    return st.tuples(
        arrays(np.float32, dim, elements=finite),
        arrays(np.float32, dim, elements=finite),
    )


# =============================================================================
# Similarity
# =============================================================================


@given(vector_pair())
def test_similarity_is_symmetric(pair):
    a, b = pair
    assert similarity(a, b) == similarity(b, a)


@given(vector_pair())
def test_similarity_is_bounded(pair):
    a, b = pair
    assert -1.0 <= similarity(a, b) <= 1.0


def test_similarity_of_identical_and_opposite():
    v = np.array([1.0, 2.0, 3.0], dtype=np.float32)
    assert similarity(v, v) == pytest.approx(1.0)
    assert similarity(v, -v) == pytest.approx(-1.0)


def test_similarity_zero_vector_is_zero():
    assert similarity(np.zeros(4), np.ones(4)) == 0.0


def test_similarity_length_mismatch_raises():
    with pytest.raises(ValueError, match="mismatch"):
        similarity(np.ones(3), np.ones(4))


def test_similarity_to_many_matches_pairwise():
    rng = np.random.default_rng(0)
    vec = rng.standard_normal(DIM)
    matrix = rng.standard_normal((5, DIM))
    sims = similarity_to_many(vec, matrix)
    for row, sim in zip(matrix, sims):
        assert sim == pytest.approx(similarity(vec, row), abs=1e-9)


def test_similarity_to_many_empty():
    assert similarity_to_many(np.ones(DIM), np.zeros((0, DIM))).shape == (0,)


# =============================================================================
# Text hygiene and reprojection
# =============================================================================


def test_clean_text_collapses_and_truncates():
    assert clean_text("  a\n\tb   c  ", 100) == "a b c"
    assert clean_text("x" * 600, 512) == "x" * 512
    assert clean_text("", 10) == ""


@settings(max_examples=25)
@given(st.integers(min_value=2, max_value=64))
def test_fit_dimension_returns_unit_vector(src_dim):
    vec = np.random.default_rng(src_dim).standard_normal(src_dim)
    out = fit_dimension(vec, DIM)
    assert out.shape == (DIM,)
    assert np.linalg.norm(out) == pytest.approx(1.0, abs=1e-5)


def test_fit_dimension_is_deterministic():
    vec = np.arange(384, dtype=np.float32)
    assert np.array_equal(fit_dimension(vec, DIM), fit_dimension(vec, DIM))


# =============================================================================
# Tiers
# =============================================================================


def test_keyword_embedder_flags_empty_vocabulary():
    embedder = KeywordEmbedder(DIM)
    assert embedder.embed("the and of") is None
    vec = embedder.embed("housing prices downtown")
    assert vec is not None
    assert vec.shape == (DIM,)
    assert np.all(vec >= 0)


def test_embedding_cache_roundtrip(tmp_path):
    cache = EmbeddingCache(tmp_path, max_files=2)
    key = EmbeddingCache.key("remote", "m", DIM, "hello")
    vec = np.ones(DIM, dtype=np.float32)
    cache.put(key, vec)
    assert np.array_equal(cache.get(key, DIM), vec)
    assert cache.get(key, DIM + 1) is None


def test_embedding_cache_evicts_oldest(tmp_path):
    cache = EmbeddingCache(tmp_path, max_files=2)
    for i in range(4):
        cache.put(f"k{i}", np.ones(DIM, dtype=np.float32))
    assert len(list(tmp_path.glob("*.npz"))) == 2


@pytest.mark.asyncio
async def test_remote_tier_success(config):
    remote = RemoteEmbeddingProvider(URL, "test-model", DIM, api_key="k", max_retries=1)
    embedder = TieredEmbedder(config, remote=remote)
    with respx.mock:
        route = respx.post(URL).mock(
            return_value=httpx.Response(200, json={"data": [{"embedding": [1.0] * DIM}]})
        )
        result = await embedder.embed("city council vote tonight")
    assert route.called
    assert result is not None
    assert result.tier == "remote"
    assert not result.degraded
    assert np.linalg.norm(result.vector) == pytest.approx(1.0, abs=1e-5)


@pytest.mark.asyncio
async def test_remote_failure_falls_back_to_local(config, mock_onnx_model):
    remote = RemoteEmbeddingProvider(URL, "test-model", DIM, api_key="k", max_retries=1)
    embedder = TieredEmbedder(config, remote=remote)
    with respx.mock:
        respx.post(URL).mock(return_value=httpx.Response(503))
        result = await embedder.embed("school board budget")
    assert result is not None
    assert result.tier == "local"
    assert result.vector.shape == (DIM,)
    assert mock_onnx_model.encode.called


@pytest.mark.asyncio
async def test_remote_without_key_is_skipped(config):
    remote = RemoteEmbeddingProvider(URL, "test-model", DIM, api_key="")
    embedder = TieredEmbedder(config, remote=remote)
    with respx.mock(assert_all_called=False) as respx_mock:
        route = respx_mock.post(URL)
        result = await embedder.embed("bike lanes")
    assert not route.called
    assert result is not None and result.tier == "local"


@pytest.mark.asyncio
async def test_local_failure_degrades_to_keyword(config, mock_onnx_model):
    mock_onnx_model.encode.side_effect = RuntimeError("onnx session crashed")
    embedder = TieredEmbedder(config, remote=RemoteEmbeddingProvider(URL, "m", DIM, api_key=""))
    result = await embedder.embed("transit fares increase")
    assert result is not None
    assert result.tier == "keyword"
    assert result.degraded is True


@pytest.mark.asyncio
async def test_all_tiers_fail_returns_none(config, mock_onnx_model):
    mock_onnx_model.encode.side_effect = RuntimeError("no model")
    embedder = TieredEmbedder(config, remote=RemoteEmbeddingProvider(URL, "m", DIM, api_key=""))
    assert await embedder.embed("the and of") is None
    assert await embedder.embed("   ") is None


class SlowRemote:
    name = "remote"
    model_id = "slow-model"
    available = True

    def __init__(self, delay: float):
        self.delay = delay
        self.calls = 0

    async def embed(self, text):
        self.calls += 1
        await asyncio.sleep(self.delay)
        return np.ones(DIM, dtype=np.float32) / np.sqrt(DIM)


@pytest.mark.asyncio
async def test_remote_timeout_falls_back_and_caches_late_result(config):
    config.embedding_remote_timeout = 0.05
    remote = SlowRemote(delay=0.2)
    embedder = TieredEmbedder(config, remote=remote)

    first = await embedder.embed("late arrival")
    assert first is not None and first.tier == "local"

    await embedder.drain()
    second = await embedder.embed("late arrival")
    assert second is not None and second.tier == "remote"
    assert remote.calls == 1


@pytest.mark.asyncio
async def test_local_embedder_wraps_missing_model():
    with patch("discovery.embedding.ONNXEmbeddingModel", side_effect=FileNotFoundError("gone")):
        with pytest.raises(TransientUpstreamFailure):
            await LocalEmbedder("missing_dir", DIM).embed("text")


@pytest.mark.asyncio
async def test_remote_http_call_outlives_tier_timeout(config):
    config.embedding_remote_timeout = 0.05
    remote = RemoteEmbeddingProvider(URL, "test-model", DIM, api_key="k", max_retries=1)
    embedder = TieredEmbedder(config, remote=remote)
    seen_timeouts = []

    async def slow_embedding(request):
        seen_timeouts.append(request.extensions["timeout"]["read"])
        await asyncio.sleep(0.2)
        return httpx.Response(200, json={"data": [{"embedding": [1.0] * DIM}]})

    with respx.mock:
        route = respx.post(URL).mock(side_effect=slow_embedding)
        first = await embedder.embed("late arrival over http")
        assert first is not None and first.tier == "local"
        await embedder.drain()
        second = await embedder.embed("late arrival over http")
    assert second is not None and second.tier == "remote"
    assert route.call_count == 1
    assert seen_timeouts[0] > config.embedding_remote_timeout
