"""Embedding & similarity layer.

``TieredEmbedder.embed`` resolves a vector through three tiers, first
success wins: the remote provider, the in-process ONNX model, then a hashed
bag-of-words pseudo-vector flagged ``degraded``. ``None`` means every tier
failed; the content still exists, it just has no vector.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import threading
from collections.abc import Awaitable, Callable
from functools import lru_cache
from pathlib import Path
from typing import Optional, cast

import httpx
import numpy as np
from numpy.typing import NDArray
from sklearn.feature_extraction.text import HashingVectorizer
from sklearn.metrics.pairwise import cosine_similarity
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from discovery.config import DiscoveryConfig
from discovery.constants import (
    EMBEDDING_CACHE_MAX_FILES,
    EMBEDDING_HTTP_TIMEOUT,
    EMBEDDING_LOCAL_BATCH_SIZE,
    EMBEDDING_LOCAL_MAX_TOKENS,
    EMBEDDING_LOCAL_MODEL_ID,
    EMBEDDING_MIN_CLIP,
    EMBEDDING_PROJECTION_SEED,
    LLM_CONNECT_TIMEOUT,
    LLM_HTTP_USER_AGENT,
    RATE_LIMIT_ERROR_BACKOFF_BASE,
    RATE_LIMIT_ERROR_BACKOFF_MAX,
    SIMILARITY_MAX,
    SIMILARITY_MIN,
)
from discovery.errors import TransientUpstreamFailure
from discovery.models import EmbeddingResult

logger = logging.getLogger(__name__)

Vector = NDArray[np.float32]


def clean_text(text: str, max_chars: int) -> str:
    """Collapse whitespace and truncate deterministically to ``max_chars``."""
    collapsed = re.sub(r"\s+", " ", text or "").strip()
    return collapsed[:max_chars].rstrip()


def similarity(a: NDArray[np.floating], b: NDArray[np.floating]) -> float:
    """Cosine similarity in [-1, 1].

    Total for equal-length vectors (a zero vector yields 0.0). Mismatched
    lengths are a programming error and raise ValueError.
    """
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.shape != vb.shape:
        raise ValueError(f"Vector length mismatch: {va.shape[0]} != {vb.shape[0]}")
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na < EMBEDDING_MIN_CLIP or nb < EMBEDDING_MIN_CLIP:
        return 0.0
    sim = float(np.dot(va, vb)) / (na * nb)
    return min(SIMILARITY_MAX, max(SIMILARITY_MIN, sim))


def similarity_to_many(vec: NDArray[np.floating], matrix: NDArray[np.floating]) -> NDArray[np.float64]:
    """Cosine similarity of one vector against each row of ``matrix``."""
    if len(matrix) == 0:
        return np.zeros(0, dtype=np.float64)
    row = np.asarray(vec, dtype=np.float64).reshape(1, -1)
    mat = np.asarray(matrix, dtype=np.float64)
    if row.shape[1] != mat.shape[1]:
        raise ValueError(f"Vector length mismatch: {row.shape[1]} != {mat.shape[1]}")
    return np.clip(cosine_similarity(row, mat)[0], SIMILARITY_MIN, SIMILARITY_MAX)


def _normalize(vec: NDArray[np.floating]) -> Vector:
    norm = float(np.linalg.norm(vec))
    return (np.asarray(vec, dtype=np.float32) / max(norm, EMBEDDING_MIN_CLIP)).astype(np.float32)


@lru_cache(maxsize=8)
def _projection_matrix(src_dim: int, dst_dim: int) -> Vector:
    rng = np.random.default_rng(EMBEDDING_PROJECTION_SEED + src_dim * 31 + dst_dim)
    matrix = rng.standard_normal((src_dim, dst_dim)).astype(np.float32)
    matrix /= np.sqrt(dst_dim)
    matrix.flags.writeable = False
    return matrix


def fit_dimension(vec: NDArray[np.floating], dim: int) -> Vector:
    """Reproject ``vec`` to ``dim`` with a fixed-seed Gaussian random projection.

    Random projection approximately preserves cosine geometry, so vectors
    from the local model stay comparable among themselves after reprojection.
    """
    arr = np.asarray(vec, dtype=np.float32).ravel()
    if arr.shape[0] == dim:
        return _normalize(arr)
    return _normalize(arr @ _projection_matrix(arr.shape[0], dim))


class EmbeddingCache:
    """On-disk npz cache keyed by tier, model and text."""

    def __init__(self, cache_dir: str | Path, max_files: int = EMBEDDING_CACHE_MAX_FILES) -> None:
        self.cache_dir = Path(cache_dir)
        self.max_files = max_files
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def key(tier: str, model_id: str, dim: int, text: str) -> str:
        return hashlib.sha256(f"{tier}:{model_id}:{dim}:{text}".encode()).hexdigest()

    def get(self, key: str, dim: int) -> Optional[Vector]:
        path = self.cache_dir / f"{key}.npz"
        if not path.exists():
            return None
        try:
            with np.load(path) as data:
                vec = data["embedding"]
        except Exception as e:
            logger.debug("Failed to load embedding cache %s: %s", path, e)
            return None
        if vec.shape != (dim,):
            return None
        return vec.astype(np.float32)

    def put(self, key: str, vec: Vector) -> None:
        try:
            np.savez_compressed(self.cache_dir / f"{key}.npz", embedding=vec)
        except OSError as e:
            logger.debug("Failed to write embedding cache: %s", e)
            return
        self._evict()

    def _evict(self) -> None:
        # Files can disappear between glob/stat/unlink under concurrent writers.
        existing: list[tuple[float, Path]] = []
        for p in self.cache_dir.glob("*.npz"):
            try:
                existing.append((p.stat().st_mtime, p))
            except FileNotFoundError:
                continue
        if len(existing) <= self.max_files:
            return
        existing.sort(key=lambda t: t[0])
        for _, f in existing[: len(existing) - self.max_files]:
            try:
                f.unlink()
            except OSError:
                continue


class ONNXEmbeddingModel:
    def __init__(self, model_dir: str = "onnx_model") -> None:
        import onnxruntime as ort
        from transformers import AutoTokenizer

        self.model_dir: str = model_dir
        if not Path(f"{model_dir}/model.onnx").exists():
            raise FileNotFoundError(
                f"Model not found in {model_dir}. Please run setup_model.py."
            )

        self.tokenizer = AutoTokenizer.from_pretrained(model_dir)
        self.session = ort.InferenceSession(
            f"{model_dir}/model.onnx", providers=["CPUExecutionProvider"]
        )
        self.model_id: str = EMBEDDING_LOCAL_MODEL_ID
        self._lock = threading.Lock()

    def encode(
        self,
        texts: list[str],
        normalize_embeddings: bool = True,
        batch_size: int = EMBEDDING_LOCAL_BATCH_SIZE,
    ) -> Vector:
        all_embeddings: list[Vector] = []

        for i in range(0, len(texts), batch_size):
            batch = texts[i : i + batch_size]
            with self._lock:
                inputs = self.tokenizer(
                    batch,
                    padding=True,
                    truncation=True,
                    max_length=EMBEDDING_LOCAL_MAX_TOKENS,
                    return_tensors="np",
                )
                attention_mask = cast(
                    NDArray[np.int64], inputs["attention_mask"].astype(np.int64, copy=True)
                )
                input_names = [node.name for node in self.session.get_inputs()]
                ort_inputs = {
                    k: v.astype(np.int64) for k, v in inputs.items() if k in input_names
                }
                outputs = self.session.run(None, ort_inputs)
                last_hidden_state = cast(Vector, outputs[0])

            # Mean Pooling
            mask_expanded = np.expand_dims(attention_mask, -1).astype(float)
            sum_embeddings = np.sum(last_hidden_state * mask_expanded, axis=1)
            sum_mask = np.clip(mask_expanded.sum(axis=1), a_min=EMBEDDING_MIN_CLIP, a_max=None)
            batch_embeddings = (sum_embeddings / sum_mask).astype(np.float32)

            if normalize_embeddings:
                norm = np.linalg.norm(batch_embeddings, axis=1, keepdims=True)
                batch_embeddings = batch_embeddings / np.clip(
                    norm, a_min=EMBEDDING_MIN_CLIP, a_max=None
                )

            all_embeddings.append(batch_embeddings)

        return (
            np.vstack(all_embeddings)
            if all_embeddings
            else np.array([], dtype=np.float32)
        )


class RemoteEmbeddingProvider:
    """OpenAI-compatible ``/embeddings`` endpoint."""

    name = "remote"

    def __init__(
        self,
        url: str,
        model: str,
        dim: int,
        api_key: Optional[str] = None,
        max_retries: int = 2,
    ) -> None:
        self.url = url
        self.model_id = model
        self.dim = dim
        self.api_key = api_key if api_key is not None else os.environ.get("EMBEDDING_API_KEY")
        self.max_retries = max_retries

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def embed(self, text: str) -> Vector:
        payload = {"model": self.model_id, "input": text, "dimensions": self.dim}
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "User-Agent": LLM_HTTP_USER_AGENT,
        }
        timeout = httpx.Timeout(EMBEDDING_HTTP_TIMEOUT, connect=LLM_CONNECT_TIMEOUT)
        async with httpx.AsyncClient(timeout=timeout) as client:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries),
                retry=retry_if_exception_type(TransientUpstreamFailure),
                wait=wait_random_exponential(
                    min=RATE_LIMIT_ERROR_BACKOFF_BASE, max=RATE_LIMIT_ERROR_BACKOFF_MAX
                ),
                reraise=True,
            ):
                with attempt:
                    try:
                        resp = await client.post(self.url, headers=headers, json=payload)
                    except httpx.HTTPError as e:
                        raise TransientUpstreamFailure(str(e)) from e
                    if resp.status_code != 200:
                        raise TransientUpstreamFailure(
                            f"Embedding API error {resp.status_code}",
                            is_rate_limit=resp.status_code == 429,
                        )
                    try:
                        raw = resp.json()["data"][0]["embedding"]
                    except (KeyError, IndexError, TypeError, ValueError) as e:
                        raise TransientUpstreamFailure(
                            f"Malformed embedding response: {e}"
                        ) from e
                    return fit_dimension(np.asarray(raw, dtype=np.float32), self.dim)
        raise TransientUpstreamFailure("Embedding retries exhausted")


_local_model: ONNXEmbeddingModel | None = None
_local_model_lock = threading.Lock()


def init_local_model(model_dir: str) -> ONNXEmbeddingModel:
    global _local_model
    if _local_model is None:
        with _local_model_lock:
            if _local_model is None:
                _local_model = ONNXEmbeddingModel(model_dir=model_dir)
    assert _local_model is not None
    return _local_model


def reset_local_model() -> None:
    global _local_model
    with _local_model_lock:
        _local_model = None


class LocalEmbedder:
    """In-process ONNX fallback, reprojected to the configured dimension."""

    name = "local"

    def __init__(self, model_dir: str, dim: int) -> None:
        self.model_dir = model_dir
        self.dim = dim
        self.model_id = EMBEDDING_LOCAL_MODEL_ID

    @property
    def available(self) -> bool:
        return True

    async def embed(self, text: str) -> Vector:
        def _encode() -> Vector:
            model = init_local_model(self.model_dir)
            out = model.encode([text])
            return np.asarray(out, dtype=np.float32)[0]

        try:
            raw = await asyncio.to_thread(_encode)
        except (FileNotFoundError, OSError, RuntimeError, ValueError) as e:
            raise TransientUpstreamFailure(f"Local model failed: {e}") from e
        return fit_dimension(raw, self.dim)


class KeywordEmbedder:
    """Hashed bag-of-words pseudo-vector at the configured dimension."""

    name = "keyword"

    def __init__(self, dim: int) -> None:
        self.dim = dim
        self._vectorizer = HashingVectorizer(
            n_features=dim,
            alternate_sign=False,
            norm="l2",
            stop_words="english",
            lowercase=True,
        )

    def embed(self, text: str) -> Optional[Vector]:
        sparse = self._vectorizer.transform([text])
        if sparse.nnz == 0:
            return None
        return np.asarray(sparse.toarray()[0], dtype=np.float32)


class TieredEmbedder:
    """Remote -> local -> keyword resolution with bounded waits per tier."""

    def __init__(
        self,
        config: DiscoveryConfig,
        remote: Optional[RemoteEmbeddingProvider] = None,
        local: Optional[LocalEmbedder] = None,
        keyword: Optional[KeywordEmbedder] = None,
        cache: Optional[EmbeddingCache] = None,
    ) -> None:
        dim = config.embedding_dimension
        self.config = config
        self.remote = remote or RemoteEmbeddingProvider(
            config.embedding_remote_url, config.embedding_remote_model, dim
        )
        self.local = local or LocalEmbedder(config.embedding_local_model_dir, dim)
        self.keyword = keyword or KeywordEmbedder(dim)
        self.cache = cache or EmbeddingCache(config.embedding_cache_dir)
        self._timeouts = {
            "remote": config.embedding_remote_timeout,
            "local": config.embedding_local_timeout,
        }
        self._late: set[asyncio.Task[Vector]] = set()

    async def embed(self, text: str) -> Optional[EmbeddingResult]:
        cleaned = clean_text(text, self.config.max_embed_chars)
        if not cleaned:
            logger.warning("Embedding unavailable: empty text after cleaning.")
            return None

        dim = self.config.embedding_dimension
        for tier in (self.remote, self.local):
            if not tier.available:
                logger.debug("Embedding tier %s not configured, skipping.", tier.name)
                continue
            key = EmbeddingCache.key(tier.name, tier.model_id, dim, cleaned)
            cached = self.cache.get(key, dim)
            if cached is not None:
                return EmbeddingResult(vector=cached, tier=tier.name)
            try:
                vec = await self._bounded(tier.name, key, lambda t=tier: t.embed(cleaned))
            except TransientUpstreamFailure as e:
                logger.warning("Embedding tier %s failed, falling back: %s", tier.name, e)
                continue
            self.cache.put(key, vec)
            return EmbeddingResult(vector=vec, tier=tier.name)

        vec = self.keyword.embed(cleaned)
        if vec is not None:
            logger.warning("Embedding degraded to keyword fallback.")
            return EmbeddingResult(vector=vec, tier=self.keyword.name, degraded=True)

        logger.warning("Embedding unavailable: all tiers failed.")
        return None

    async def _bounded(
        self, tier: str, key: str, call: Callable[[], Awaitable[Vector]]
    ) -> Vector:
        task: asyncio.Task[Vector] = asyncio.ensure_future(call())
        try:
            return await asyncio.wait_for(asyncio.shield(task), self._timeouts[tier])
        except asyncio.TimeoutError as e:
            # Let the call finish in the background; its vector lands in the
            # cache for the next request.
            self._late.add(task)
            task.add_done_callback(lambda t: self._store_late(key, t))
            raise TransientUpstreamFailure(f"{tier} embedding timed out") from e
        except TransientUpstreamFailure:
            raise
        except Exception as e:
            raise TransientUpstreamFailure(f"{tier} embedding failed: {e}") from e

    def _store_late(self, key: str, task: asyncio.Task[Vector]) -> None:
        self._late.discard(task)
        if task.cancelled() or task.exception() is not None:
            return
        self.cache.put(key, task.result())

    async def drain(self) -> None:
        """Wait for timed-out tier calls still running in the background."""
        if self._late:
            await asyncio.gather(*list(self._late), return_exceptions=True)
