"""
Configuration management with validation.

Centralized engine settings loaded from environment variables, a `.env`
file, or any flat key/value source passed to `load_config`.
Uses Pydantic for validation and type safety.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

ProviderName = Literal["openai", "openai-compatible", "gemini", "ollama"]


class Settings(BaseSettings):
    """
    Engine settings with validation.

    All settings can be overridden via environment variables or a `.env` file.
    Optional generation knobs left as None are not sent to the provider.
    """

    # =========================================================================
    # PATHS
    # =========================================================================
    STORE_PATH: Path = Field(
        default=Path("data/vector_store.json"),
        description="JSON file holding chunks, vectors and document records",
    )
    HISTORY_PATH: Path = Field(
        default=Path("data/chat_history.json"),
        description="JSON file holding the chat history log",
    )

    # =========================================================================
    # PROVIDER
    # =========================================================================
    PROVIDER: ProviderName = Field(
        default="openai",
        description="Backend: 'openai', 'openai-compatible', 'gemini' or 'ollama'",
    )
    BASE_URL: str = Field(
        default="",
        description="Endpoint override (empty = provider default)",
    )
    API_KEY: str = Field(
        default="",
        description="API key sent as bearer token or Gemini query parameter",
    )
    CHAT_MODEL: str = Field(
        default="",
        description="Chat model identifier (empty = provider default)",
    )
    EMBED_MODEL: str = Field(
        default="",
        description="Embedding model identifier (empty = provider default)",
    )

    # =========================================================================
    # TRANSPORT
    # =========================================================================
    TIMEOUT_MS: int = Field(
        default=60000, ge=100, le=3_600_000,
        description="Absolute request deadline in milliseconds",
    )
    STREAM_STALL_MS: int = Field(
        default=20000, ge=100, le=3_600_000,
        description="Abort a stream when no bytes arrive for this long",
    )
    POLL_INTERVAL_MS: int = Field(
        default=30, ge=1, le=1000,
        description="Readiness poll interval for in-flight requests",
    )
    MAX_RETRIES: int = Field(
        default=2, ge=0, le=10,
        description="Retries after the first attempt for non-200 responses",
    )
    RETRY_BASE_DELAY_MS: int = Field(
        default=400, ge=0, le=60000,
        description="Base retry delay in milliseconds",
    )
    RETRY_BACKOFF_FACTOR: float = Field(
        default=2.0, ge=1.0, le=10.0,
        description="Multiplicative backoff between attempts",
    )

    # =========================================================================
    # GENERATION PARAMETERS
    # =========================================================================
    TEMPERATURE: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    TOP_P: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    TOP_K: Optional[int] = Field(default=None, ge=1)
    CANDIDATE_COUNT: Optional[int] = Field(default=None, ge=1, le=8)
    MAX_OUTPUT_TOKENS: Optional[int] = Field(default=None, ge=1)
    STOP_SEQUENCES: str = Field(
        default="",
        description="Comma-separated stop sequences",
    )

    # =========================================================================
    # GEMINI EMBEDDING / SAFETY
    # =========================================================================
    TASK_TYPE: Optional[str] = Field(default=None, description="Gemini embedding task type")
    OUTPUT_DIMENSIONALITY: Optional[int] = Field(default=None, ge=1)
    SAFETY_HARASSMENT: Optional[str] = Field(default=None)
    SAFETY_HATE_SPEECH: Optional[str] = Field(default=None)
    SAFETY_SEXUAL: Optional[str] = Field(default=None)
    SAFETY_DANGEROUS: Optional[str] = Field(default=None)
    SAFETY_CIVIC: Optional[str] = Field(default=None)

    # =========================================================================
    # CHUNKING STRATEGY
    # =========================================================================
    CHUNK_SIZE: int = Field(
        default=800, ge=1, le=100_000,
        description="Window size in characters",
    )
    CHUNK_OVERLAP: int = Field(
        default=100, ge=0, le=100_000,
        description="Characters shared by consecutive windows",
    )
    CHUNK_PAD: int = Field(
        default=80, ge=0, le=10_000,
        description="Context characters captured on each side for display",
    )
    EMBEDDING_DIM: int = Field(
        default=256, ge=8, le=8192,
        description="Dimension of the local hashing vectorizer",
    )

    # =========================================================================
    # RETRIEVAL
    # =========================================================================
    SIMILARITY_TOP_K: int = Field(
        default=4, ge=1, le=50,
        description="Number of chunks to retrieve",
    )
    USE_PROVIDER_EMBEDDINGS: bool = Field(
        default=False,
        description="Embed queries and chunks through the provider",
    )
    EMBED_BATCH_SIZE: int = Field(
        default=100, ge=1, le=2048,
        description="Texts per batch embedding request (Gemini accepts 100, OpenAI 2048)",
    )
    INGEST_TICK_MS: int = Field(
        default=10, ge=0, le=10000,
        description="Delay between ingestion queue ticks",
    )

    # =========================================================================
    # CITATION
    # =========================================================================
    SHOW_CITATIONS: bool = Field(
        default=True,
        description="Append a sources block to answers",
    )
    CITATION_MAX_FILES: int = Field(
        default=3, ge=1, le=50,
        description="Maximum number of cited files",
    )
    CITATION_MATCH_THRESHOLD: float = Field(
        default=0.12, ge=0.0, le=1.0,
        description="Minimum word overlap for a chunk to be cited",
    )

    # =========================================================================
    # MONITORING
    # =========================================================================
    ENABLE_METRICS: bool = Field(
        default=False,
        description="Enable Prometheus metrics server",
    )
    METRICS_PORT: int = Field(
        default=8001, ge=1024, le=65535,
        description="Port for metrics endpoint",
    )
    LOG_FORMAT: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging verbosity level",
    )
    MAX_QUERY_LENGTH: int = Field(
        default=5000, ge=10, le=200_000,
        description="Maximum accepted prompt length",
    )

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @validator("STORE_PATH", "HISTORY_PATH")
    def create_parent_directories(cls, v: Path) -> Path:
        """Ensure the parent directory of persisted files exists."""
        v = Path(v)
        v.parent.mkdir(parents=True, exist_ok=True)
        return v

    @validator("CHUNK_OVERLAP")
    def clamp_overlap(cls, v: int, values) -> int:
        """Keep overlap strictly below the chunk size."""
        chunk_size = values.get("CHUNK_SIZE")
        if chunk_size is not None and v >= chunk_size:
            logging.warning(f"CHUNK_OVERLAP {v} >= CHUNK_SIZE {chunk_size}; clamping")
            return chunk_size - 1
        return v

    def get_stop_sequences(self) -> List[str]:
        """Parse stop sequences into a list."""
        return [s.strip() for s in self.STOP_SEQUENCES.split(",") if s.strip()]

    def get_safety_thresholds(self) -> Dict[str, str]:
        """Map configured Gemini safety thresholds to harm categories."""
        pairs = {
            "HARM_CATEGORY_HARASSMENT": self.SAFETY_HARASSMENT,
            "HARM_CATEGORY_HATE_SPEECH": self.SAFETY_HATE_SPEECH,
            "HARM_CATEGORY_SEXUALLY_EXPLICIT": self.SAFETY_SEXUAL,
            "HARM_CATEGORY_DANGEROUS_CONTENT": self.SAFETY_DANGEROUS,
            "HARM_CATEGORY_CIVIC_INTEGRITY": self.SAFETY_CIVIC,
        }
        return {category: value for category, value in pairs.items() if value}


# Flat key/value names accepted by load_config
CONFIG_KEYS: Dict[str, str] = {
    "provider": "PROVIDER",
    "baseUrl": "BASE_URL",
    "apiKey": "API_KEY",
    "chatModel": "CHAT_MODEL",
    "embedModel": "EMBED_MODEL",
    "timeoutMs": "TIMEOUT_MS",
    "streamStallMs": "STREAM_STALL_MS",
    "temperature": "TEMPERATURE",
    "topP": "TOP_P",
    "topK": "TOP_K",
    "candidateCount": "CANDIDATE_COUNT",
    "maxOutputTokens": "MAX_OUTPUT_TOKENS",
    "max_tokens": "MAX_OUTPUT_TOKENS",
    "stopSequences": "STOP_SEQUENCES",
    "taskType": "TASK_TYPE",
    "outputDimensionality": "OUTPUT_DIMENSIONALITY",
    "safetyHarassment": "SAFETY_HARASSMENT",
    "safetyHateSpeech": "SAFETY_HATE_SPEECH",
    "safetySexual": "SAFETY_SEXUAL",
    "safetyDangerous": "SAFETY_DANGEROUS",
    "safetyCivic": "SAFETY_CIVIC",
    "showCitations": "SHOW_CITATIONS",
    "citationMaxFiles": "CITATION_MAX_FILES",
    "citationMatchThreshold": "CITATION_MATCH_THRESHOLD",
    "chunkSize": "CHUNK_SIZE",
    "overlap": "CHUNK_OVERLAP",
    "pad": "CHUNK_PAD",
    "useProviderEmbeddings": "USE_PROVIDER_EMBEDDINGS",
    "embedBatchSize": "EMBED_BATCH_SIZE",
    "topKRetrieval": "SIMILARITY_TOP_K",
    "storePath": "STORE_PATH",
    "historyPath": "HISTORY_PATH",
}


def load_config(source: Optional[Mapping[str, Any]] = None) -> Settings:
    """
    Build validated settings from a flat key/value source.

    Keys use the camelCase names in CONFIG_KEYS (field names are accepted
    too). Values override environment variables; empty values are ignored
    so the field default applies.

    Args:
        source: Key/value mapping, e.g. parsed from a settings file.

    Returns:
        Validated Settings instance.

    Raises:
        pydantic.ValidationError: If a value fails validation.
    """
    overrides: Dict[str, Any] = {}

    for key, value in (source or {}).items():
        field = CONFIG_KEYS.get(key) or (key.upper() if key.upper() in Settings.model_fields else None)
        if field is None:
            logger.debug(f"Ignoring unknown config key: {key}")
            continue
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        if field == "STOP_SEQUENCES" and isinstance(value, (list, tuple)):
            value = ",".join(str(v) for v in value)
        overrides[field] = value

    return Settings(**overrides)


# Global settings instance (singleton)
settings = Settings()
