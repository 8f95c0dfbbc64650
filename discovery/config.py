"""Runtime configuration for the discovery engine.

Defaults come from ``discovery.constants``; a JSON file and ``DISCOVERY_*``
environment variables override them so thresholds, windows and cadences can
be tuned without a code change.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

from discovery import constants as c
from discovery.errors import ConfigurationError
from discovery.models import ScoreWeights

CONFIG_DIR = Path.home() / ".config" / "discovery_engine"
CONFIG_FILE = CONFIG_DIR / "config.json"
ENV_PREFIX = "DISCOVERY_"


def _default_weights() -> dict[str, float]:
    return ScoreWeights().to_dict()


@dataclass
class DiscoveryConfig:
    # Embedding
    embedding_dimension: int = c.EMBEDDING_DIMENSION
    max_embed_chars: int = c.EMBEDDING_MAX_TEXT_CHARS
    embedding_cache_dir: str = c.EMBEDDING_CACHE_DIR
    embedding_remote_url: str = c.EMBEDDING_REMOTE_URL
    embedding_remote_model: str = c.EMBEDDING_REMOTE_MODEL
    embedding_remote_timeout: float = c.EMBEDDING_REMOTE_TIMEOUT
    embedding_local_model_dir: str = c.EMBEDDING_LOCAL_MODEL_DIR
    embedding_local_timeout: float = c.EMBEDDING_LOCAL_TIMEOUT

    # Clustering
    similarity_threshold: float = c.CLUSTER_SIMILARITY_THRESHOLD
    window_hours: float = c.CLUSTER_WINDOW_HOURS
    window_max_items: int = c.CLUSTER_WINDOW_MAX_ITEMS
    min_cluster_size: int = c.CLUSTER_MIN_SIZE
    max_topics: int = c.CLUSTER_MAX_TOPICS
    representatives: int = c.CLUSTER_REPRESENTATIVES
    cadence_seconds: float = c.CLUSTER_CADENCE_SECONDS
    refresh_cooldown_seconds: float = c.CLUSTER_REFRESH_COOLDOWN_SECONDS
    topic_ttl_seconds: float = c.TOPIC_TTL_SECONDS
    regional_window_seconds: float = c.TOPIC_REGIONAL_WINDOW_SECONDS

    # Summarization
    llm_api_url: str = c.LLM_API_URL
    llm_model: str = c.LLM_MODEL
    llm_timeout: float = c.LLM_TIMEOUT

    # Ranking
    candidate_window_days: float = c.CANDIDATE_WINDOW_DAYS
    candidate_max_items: int = c.CANDIDATE_MAX_ITEMS
    recency_half_life_hours: float = c.RECENCY_HALF_LIFE_HOURS
    interest_refresh_timeout: float = c.INTEREST_REFRESH_TIMEOUT
    default_page_size: int = c.DEFAULT_PAGE_SIZE
    weights: dict[str, float] = field(default_factory=_default_weights)

    # Navigation / HTTP
    user_state_ttl_seconds: float = c.USER_STATE_TTL_SECONDS
    response_cache_seconds: int = c.RESPONSE_CACHE_SECONDS

    def __post_init__(self) -> None:
        if not -1.0 <= self.similarity_threshold <= 1.0:
            raise ConfigurationError("similarity_threshold must be within [-1, 1]")
        if self.min_cluster_size < 1:
            raise ConfigurationError("min_cluster_size must be >= 1")
        for name in (
            "cadence_seconds",
            "topic_ttl_seconds",
            "window_hours",
            "regional_window_seconds",
            "user_state_ttl_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be > 0")
        if self.llm_timeout >= self.cadence_seconds:
            raise ConfigurationError("llm_timeout must be shorter than cadence_seconds")
        # Validates the sum-to-one invariant up front.
        ScoreWeights.from_mapping(self.weights, base=ScoreWeights())

    @property
    def score_weights(self) -> ScoreWeights:
        return ScoreWeights.from_mapping(self.weights, base=ScoreWeights())

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> DiscoveryConfig:
        known = {f.name: f for f in fields(cls)}
        unknown = set(data) - set(known)
        if unknown:
            raise ConfigurationError(f"Unknown config key(s): {sorted(unknown)}")
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            kwargs[key] = _coerce(key, known[key].type, value)
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _coerce(key: str, annotation: object, value: Any) -> Any:
    type_name = annotation if isinstance(annotation, str) else getattr(annotation, "__name__", "")
    try:
        if type_name == "int":
            if isinstance(value, bool):
                raise TypeError
            return int(value)
        if type_name == "float":
            if isinstance(value, bool):
                raise TypeError
            return float(value)
        if type_name == "str":
            return str(value)
        if type_name.startswith("dict"):
            parsed = json.loads(value) if isinstance(value, str) else value
            if not isinstance(parsed, dict):
                raise TypeError
            return parsed
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for '{key}': {value!r}") from e
    return value


def _config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return path
    env_path = os.environ.get("DISCOVERY_CONFIG")
    return Path(env_path) if env_path else CONFIG_FILE


def _read_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Unreadable config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a JSON object")
    return data


def _read_env() -> dict[str, Any]:
    names = {f.name for f in fields(DiscoveryConfig)}
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == "DISCOVERY_CONFIG":
            continue
        name = key[len(ENV_PREFIX) :].lower()
        if name in names:
            overrides[name] = value
    return overrides


def load_config(path: Optional[Path] = None) -> DiscoveryConfig:
    data = _read_file(_config_path(path))
    data.update(_read_env())
    return DiscoveryConfig.from_mapping(data)


def save_config(key: str, value: Any, path: Optional[Path] = None) -> None:
    target = _config_path(path)
    data = _read_file(target)
    data[key] = value
    # Reject the write if it would not load back.
    DiscoveryConfig.from_mapping(data)
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "w") as f:
        json.dump(data, f, indent=2)
