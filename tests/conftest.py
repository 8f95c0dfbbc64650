import asyncio
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from discovery.config import DiscoveryConfig
from discovery.embedding import reset_local_model
from discovery.models import ContentItem, Engagement, Synthesis

DIM = 8
NOW = 1_700_000_000.0


@pytest.fixture(autouse=True)
def mock_onnx_model():
    """
    Automatically mock ONNXEmbeddingModel for all tests to avoid
    loading the heavy ONNX model or requiring the onnx_model directory.
    """
    reset_local_model()
    with patch("discovery.embedding.ONNXEmbeddingModel") as MockClass:
        mock_instance = MagicMock()
        MockClass.return_value = mock_instance

        # Default behavior: deterministic vectors at the MiniLM dimension
        def side_effect(texts, **kwargs):
            return np.array(
                [np.random.default_rng(len(t)).random(384) for t in texts],
                dtype=np.float32,
            )

        mock_instance.encode.side_effect = side_effect
        yield mock_instance
    reset_local_model()


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    for key in ("EMBEDDING_API_KEY", "LLM_API_KEY", "GROQ_API_KEY", "DISCOVERY_DUMP"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("DISCOVERY_CONFIG", str(tmp_path / "config.json"))


@pytest.fixture
def config(tmp_path):
    return DiscoveryConfig(
        embedding_dimension=DIM,
        embedding_cache_dir=str(tmp_path / "embeddings"),
        embedding_remote_timeout=0.5,
        embedding_local_timeout=0.5,
        min_cluster_size=2,
        llm_timeout=0.5,
        interest_refresh_timeout=0.5,
    )


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def unit(*components: float) -> np.ndarray:
    vec = np.zeros(DIM, dtype=np.float32)
    vec[: len(components)] = components
    return vec / np.linalg.norm(vec)


def make_item(
    item_id: str,
    vector=None,
    author: str = "author",
    age: float = 0.0,
    text: str = "",
    likes: int = 0,
    replies: int = 0,
    shares: int = 0,
    geo: str | None = None,
    degraded: bool = False,
    deleted: bool = False,
    now: float = NOW,
) -> ContentItem:
    return ContentItem(
        id=item_id,
        author_id=author,
        created_at=now - age,
        text=text or f"post {item_id}",
        embedding=vector,
        embedding_degraded=degraded,
        engagement=Engagement(likes, replies, shares),
        geo_tag=geo,
        deleted=deleted,
    )


class FakeSummarizer:
    """Returns a synthesis named after the first representative text."""

    def __init__(self, delay: float = 0.0, error: Exception | None = None):
        self.delay = delay
        self.error = error
        self.calls: list[list[str]] = []

    async def synthesize(self, representative_texts):
        self.calls.append(list(representative_texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return Synthesis(
            title=f"About {representative_texts[0]}",
            prevailing_position="Most agree.",
            leading_critique="Some disagree.",
        )
