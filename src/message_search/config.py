"""Configuration models for the message search pipeline."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class NormalizerConfig(BaseModel):
    """Bounds applied to raw message text before any embedding call."""

    max_chars: int = Field(default=8000, ge=1)


class RetryConfig(BaseModel):
    """Per-call retry/backoff policy for one external dependency."""

    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=0.2, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter_ratio: float = Field(default=0.1, ge=0.0, le=1.0)
    attempt_timeout_seconds: float = Field(default=2.0, gt=0.0)


class CircuitConfig(BaseModel):
    """Failure threshold/window and cool-down for a circuit breaker."""

    failure_threshold: int = Field(default=5, ge=1)
    window_seconds: float = Field(default=30.0, gt=0.0)
    cooldown_seconds: float = Field(default=15.0, gt=0.0)


class IndexingConfig(BaseModel):
    """Configures the indexing worker pool and per-message deadline."""

    workers: int = Field(default=4, ge=1)
    queue_capacity: int = Field(default=256, ge=1)
    operation_deadline_seconds: float = Field(default=10.0, gt=0.0)
    sweep_batch_size: int = Field(default=50, ge=1)


class QueryConfig(BaseModel):
    """Configures query validation bounds and the overall query deadline."""

    min_query_chars: int = Field(default=3, ge=1)
    max_query_chars: int = Field(default=500, ge=1)
    min_limit: int = Field(default=1, ge=1)
    max_limit: int = Field(default=50, ge=1)
    default_limit: int = Field(default=10, ge=1)
    default_min_score: float = Field(default=0.7, ge=0.0, le=1.0)
    candidate_multiplier: int = Field(default=2, ge=1)
    deadline_seconds: float = Field(default=1.0, gt=0.0)
    fetch_workers: int = Field(default=8, ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> "QueryConfig":
        if self.min_query_chars > self.max_query_chars:
            raise ValueError("min_query_chars must not exceed max_query_chars")
        if not self.min_limit <= self.default_limit <= self.max_limit:
            raise ValueError("default_limit must lie within [min_limit, max_limit]")
        return self


class RankingConfig(BaseModel):
    """Score weighting for the result ranker.

    These are product-tuning values, not correctness invariants.
    """

    similarity_weight: float = Field(default=0.8, ge=0.0)
    recency_weight: float = Field(default=0.2, ge=0.0)
    recency_horizon_seconds: float = Field(default=30 * 24 * 3600.0, gt=0.0)


class MetadataConfig(BaseModel):
    max_keywords: int = Field(default=20, ge=1)
    min_token_length: int = Field(default=3, ge=1)


class EmbeddingServiceConfig(BaseModel):
    """Connection settings for the embedding provider."""

    provider: str = Field(default="hashing", pattern="^(hashing|openai)$")
    endpoint: str = "https://api.openai.com/v1"
    api_key: str | None = None
    model: str = "text-embedding-3-small"
    dimension: int = Field(default=1536, ge=1)


class VectorIndexConfig(BaseModel):
    """Connection settings for the vector index."""

    provider: str = Field(default="memory", pattern="^(memory|qdrant)$")
    url: str = "http://localhost:6333"
    api_key: str | None = None
    collection: str = "messages"
    native_filter: bool = True
    overfetch_factor: int = Field(default=4, ge=1)


class Settings(BaseSettings):
    """Externally supplied configuration surface.

    Values come from ``MESSAGE_SEARCH_*`` environment variables (nested
    groups use ``__``, e.g. ``MESSAGE_SEARCH_QUERY__DEADLINE_SECONDS``) or a
    local ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="MESSAGE_SEARCH_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = "INFO"
    log_json: bool = False

    embedding: EmbeddingServiceConfig = Field(default_factory=EmbeddingServiceConfig)
    vector_index: VectorIndexConfig = Field(default_factory=VectorIndexConfig)

    normalizer: NormalizerConfig = Field(default_factory=NormalizerConfig)
    metadata: MetadataConfig = Field(default_factory=MetadataConfig)
    embedding_retry: RetryConfig = Field(default_factory=RetryConfig)
    vector_retry: RetryConfig = Field(default_factory=RetryConfig)
    embedding_circuit: CircuitConfig = Field(default_factory=CircuitConfig)
    vector_circuit: CircuitConfig = Field(default_factory=CircuitConfig)
    indexing: IndexingConfig = Field(default_factory=IndexingConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
