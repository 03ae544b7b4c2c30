"""Engram configuration management.

Loads configuration from .env files and YAML config files, merges them,
and provides validated settings via pydantic models.
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def _check_unit_interval(name: str, v: float) -> float:
    if not 0.0 <= v <= 1.0:
        raise ValueError(f"{name} must be between 0.0 and 1.0")
    return v


class EmbeddingProviderName(str, Enum):
    """Supported embedding backends."""
    OLLAMA = "ollama"
    OPENAI = "openai"


class EmbeddingConfig(BaseModel):
    """Configuration for the external embedding service and its cache."""

    provider: EmbeddingProviderName = EmbeddingProviderName.OPENAI
    model: str = "text-embedding-3-small"
    host: str = "http://localhost:11434"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    embedding_dim: int = 1536
    timeout_seconds: float = 10.0
    cache_size: int = 100

    @field_validator("embedding_dim", "cache_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Ensure sizes are positive."""
        if v <= 0:
            raise ValueError("embedding_dim and cache_size must be positive")
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Ensure timeout is positive."""
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v


class StoreConfig(BaseModel):
    """Configuration for the persistent memory store."""

    db_path: str = "data/memories.db"
    # Cosine similarity above which store_memory reuses an existing record.
    dedup_threshold: float | None = None

    @field_validator("dedup_threshold")
    @classmethod
    def validate_dedup_threshold(cls, v: float | None) -> float | None:
        """Ensure dedup_threshold is in valid range."""
        if v is None:
            return v
        return _check_unit_interval("dedup_threshold", v)


class ScoringWeights(BaseModel):
    """Weights of the hybrid retrieval score.

    They must sum to 1.0 and similarity must dominate every other signal.
    """

    similarity: float = 0.6
    importance: float = 0.15
    recency: float = 0.1
    frequency: float = 0.05
    keyword: float = 0.1

    @model_validator(mode="after")
    def validate_weights(self) -> "ScoringWeights":
        """Check the weight total and the dominance of similarity."""
        values = [self.similarity, self.importance, self.recency, self.frequency, self.keyword]
        if any(v < 0.0 for v in values):
            raise ValueError("scoring weights must be non-negative")
        if not math.isclose(sum(values), 1.0, abs_tol=1e-6):
            raise ValueError(f"scoring weights must sum to 1.0, got {sum(values):.4f}")
        if self.similarity <= max(values[1:]):
            raise ValueError("similarity weight must be greater than every other weight")
        return self


class RetrievalConfig(BaseModel):
    """Configuration for ranked retrieval."""

    top_k: int = 15
    min_similarity: float = 0.3
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    recency_half_life_days: float = 14.0
    frequency_saturation: float = 5.0
    embed_timeout_seconds: float = 5.0
    touch_retry_base_seconds: float = 0.5
    touch_retry_max_seconds: float = 30.0
    touch_queue_size: int = 10000

    @field_validator("top_k")
    @classmethod
    def validate_top_k(cls, v: int) -> int:
        """Ensure top_k is positive."""
        if v <= 0:
            raise ValueError("top_k must be positive")
        return v

    @field_validator("touch_queue_size")
    @classmethod
    def validate_touch_queue_size(cls, v: int) -> int:
        """Ensure the touch queue can hold at least one hit."""
        if v <= 0:
            raise ValueError("touch_queue_size must be positive")
        return v

    @field_validator("min_similarity")
    @classmethod
    def validate_min_similarity(cls, v: float) -> float:
        """Ensure min_similarity is in valid range."""
        if not -1.0 <= v <= 1.0:
            raise ValueError("min_similarity must be between -1.0 and 1.0")
        return v

    @field_validator(
        "recency_half_life_days",
        "frequency_saturation",
        "embed_timeout_seconds",
        "touch_retry_base_seconds",
        "touch_retry_max_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Ensure curve parameters and timeouts are positive."""
        if v <= 0:
            raise ValueError("retrieval curve parameters and timeouts must be positive")
        return v


class ContextConfig(BaseModel):
    """Token budgets and packing rules for context assembly."""

    total_tokens: int = 2000
    profile_tokens: int = 300
    memory_tokens: int = 1200
    chars_per_token: int = 4
    dedup_threshold: float = 0.85
    profile_types: list[str] = Field(
        default_factory=lambda: ["personal", "preference", "instruction"]
    )
    max_profile_items: int = 10
    max_conversation_turns: int = 6

    @field_validator("profile_types")
    @classmethod
    def validate_profile_types(cls, v: list[str]) -> list[str]:
        """Ensure every profile type is a known memory type."""
        from engram.memory.models import MemoryType

        valid_types = {t.value for t in MemoryType}
        normalized = [t.lower() for t in v]
        unknown = set(normalized) - valid_types
        if unknown:
            raise ValueError(f"profile_types must be drawn from {sorted(valid_types)}")
        return normalized

    @field_validator("dedup_threshold")
    @classmethod
    def validate_dedup_threshold(cls, v: float) -> float:
        """Ensure dedup_threshold is in valid range."""
        return _check_unit_interval("dedup_threshold", v)

    @field_validator("chars_per_token", "max_profile_items", "max_conversation_turns")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Ensure counts are positive."""
        if v <= 0:
            raise ValueError("chars_per_token, max_profile_items and max_conversation_turns must be positive")
        return v

    @model_validator(mode="after")
    def validate_budgets(self) -> "ContextConfig":
        """Ensure the fixed allotments fit inside the total budget."""
        if min(self.total_tokens, self.profile_tokens, self.memory_tokens) < 0:
            raise ValueError("token budgets must not be negative")
        if self.profile_tokens + self.memory_tokens > self.total_tokens:
            raise ValueError("profile_tokens + memory_tokens must not exceed total_tokens")
        return self

    @property
    def conversation_tokens(self) -> int:
        """Tokens left over for recent conversation turns."""
        return self.total_tokens - self.profile_tokens - self.memory_tokens


class DecayConfig(BaseModel):
    """Configuration for the periodic decay pass."""

    staleness_days: float = 30.0
    attenuation: float = 0.95
    decay_floor: float = 0.05
    deactivation_threshold: float = 0.1
    interval_seconds: float = 24 * 3600.0

    @field_validator("attenuation")
    @classmethod
    def validate_attenuation(cls, v: float) -> float:
        """Attenuation must strictly shrink the decay factor."""
        if not 0.0 < v < 1.0:
            raise ValueError("attenuation must be between 0.0 and 1.0 (exclusive)")
        return v

    @field_validator("decay_floor", "deactivation_threshold")
    @classmethod
    def validate_unit(cls, v: float) -> float:
        """Ensure floor and threshold are in valid range."""
        return _check_unit_interval("decay_floor and deactivation_threshold", v)

    @field_validator("staleness_days")
    @classmethod
    def validate_staleness(cls, v: float) -> float:
        """Ensure staleness_days is not negative."""
        if v < 0:
            raise ValueError("staleness_days must not be negative")
        return v

    @field_validator("interval_seconds")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        """Ensure the pass interval is positive."""
        if v <= 0:
            raise ValueError("interval_seconds must be positive")
        return v


class SessionConfig(BaseModel):
    """Configuration for the in-process session buffer."""

    max_messages: int = 50

    @field_validator("max_messages")
    @classmethod
    def validate_max_messages(cls, v: int) -> int:
        """Ensure max_messages is positive."""
        if v <= 0:
            raise ValueError("max_messages must be positive")
        return v


class EngramConfig(BaseSettings):
    """
    Engram's main configuration.

    Loads from:
    1. .env file (via pydantic-settings)
    2. YAML config files (via load() classmethod)
    3. Environment variables with ENGRAM_ prefix

    Environment variables override YAML values.
    """

    model_config = SettingsConfigDict(
        env_prefix="ENGRAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    data_dir: str = "~/.engram"
    log_level: str = "INFO"

    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    decay: DecayConfig = Field(default_factory=DecayConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log_level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()

    @model_validator(mode="after")
    def expand_data_dir(self) -> "EngramConfig":
        """Expand user home directory in data_dir."""
        self.data_dir = str(Path(self.data_dir).expanduser())
        return self

    @property
    def db_path(self) -> Path:
        """Store path, resolved against data_dir when relative."""
        path = Path(self.store.db_path).expanduser()
        if path.is_absolute() or str(path) == ":memory:":
            return path
        return Path(self.data_dir) / path

    @classmethod
    def load(cls, yaml_path: Path | str | None = None) -> "EngramConfig":
        """
        Load configuration from YAML and environment.

        Args:
            yaml_path: Path to YAML config file. If None, searches default locations.

        Returns:
            Validated EngramConfig instance.
        """
        yaml_file = cls._find_yaml_config(yaml_path)

        yaml_data: dict[str, Any] = {}
        if yaml_file and yaml_file.exists():
            yaml_data = cls._load_yaml_file(yaml_file)
            logger.debug(f"Loaded config from {yaml_file}")

        # A top-level "engram" section holds root fields; sibling sections
        # (embedding, retrieval, ...) are passed through unchanged.
        if "engram" in yaml_data:
            merged_data = dict(yaml_data["engram"] or {})
            merged_data.update({k: v for k, v in yaml_data.items() if k != "engram"})
            yaml_data = merged_data

        return cls(**yaml_data)

    @classmethod
    def _find_yaml_config(cls, yaml_path: Path | str | None) -> Path | None:
        """Find the YAML config file to load."""
        if yaml_path:
            return Path(yaml_path)

        default_locations = [
            Path("config/engram.yaml"),
            Path("config/engram.yml"),
            Path.home() / ".engram" / "config.yaml",
        ]

        for location in default_locations:
            if location.exists():
                return location

        return None

    @classmethod
    def _load_yaml_file(cls, path: Path) -> dict[str, Any]:
        """Load YAML file and return parsed data."""
        try:
            with path.open("r") as f:
                return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.warning(f"Failed to parse YAML file {path}: {e}")
            return {}

    def get_log_config(self) -> dict[str, Any]:
        """Get logging configuration dict for use with logging.config."""
        return {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "level": self.log_level,
                    "formatter": "standard",
                },
            },
            "root": {
                "level": self.log_level,
                "handlers": ["console"],
            },
        }
