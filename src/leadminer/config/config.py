"""
Configuration management for LeadMiner using Pydantic.
"""

from __future__ import annotations

import logging
import threading
from datetime import date
from pathlib import Path
from typing import Any, ClassVar, Dict, List, Literal, Optional, Tuple, cast

import yaml
from dateutil import parser as dateutil_parser
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from leadminer.exceptions import ConfigurationError

# --- Setup Logging ---
log = logging.getLogger(__name__)

DEFAULT_TRACKING_PARAMS = ["utm_source", "utm_medium", "utm_campaign", "fbclid", "gclid", "ref", "source"]


def _unit_interval(name: str, v: float) -> float:
    if not 0.0 <= v <= 1.0:
        raise ValueError(f"{name} must be between 0.0 and 1.0, got {v}")
    return v


def parse_date_range(value: str) -> Tuple[date, date]:
    """Parse "YYYY-MM-DD to YYYY-MM-DD" into an ordered (start, end) pair."""
    parts = [p.strip() for p in value.split(" to ")]
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"date range must look like 'YYYY-MM-DD to YYYY-MM-DD', got {value!r}")
    try:
        start = dateutil_parser.isoparse(parts[0]).date()
        end = dateutil_parser.isoparse(parts[1]).date()
    except (ValueError, OverflowError) as e:
        raise ValueError(f"date range {value!r} is not parseable: {e}") from e
    if start > end:
        raise ValueError(f"date range start {start} is after end {end}")
    return start, end


# --- Nested Configuration Models ---


class DedupConfig(BaseModel):
    """Fingerprint store and similarity index configuration."""

    semantic_threshold: float = Field(default=0.85, description="Minimum cosine similarity for a semantic duplicate.")
    embedding_dim: int = Field(default=1536, gt=0, description="Length of embedding vectors.")
    excerpt_chars: int = Field(default=500, gt=0, description="Body-text characters included in the embedding text.")
    index_backend: Literal["flat", "faiss"] = Field(
        default="flat", description="Vector index: exact numpy scan or faiss IndexFlatIP."
    )
    embedder: Literal["hashing", "openai"] = Field(default="hashing", description="Embedding capability to use.")
    embedding_model: str = Field(default="text-embedding-3-small", description="Remote embedding model name.")
    tracking_params: List[str] = Field(
        default_factory=lambda: list(DEFAULT_TRACKING_PARAMS),
        description="Query parameters stripped during URL normalization.",
    )

    @field_validator("semantic_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        return _unit_interval("semantic_threshold", v)


class ClassifierConfig(BaseModel):
    """Classifier thresholds and external-call settings."""

    confidence_threshold: float = Field(default=0.85, description="Minimum confidence for a relevant result.")
    review_band_low: float = Field(default=0.6, description="Inclusive lower bound of the review band.")
    review_band_high: float = Field(default=0.8, description="Inclusive upper bound of the review band.")
    consistency_threshold: float = Field(default=0.7, description="Self-consistency below this flags review.")
    consistency_passes: int = Field(default=2, description="Total independent classification passes (N).")
    exclusion_ratio: float = Field(
        default=0.3, description="Exclusion-term density above which a candidate is commercial."
    )
    timeout_seconds: float = Field(default=10.0, gt=0, description="Per-call timeout for classification.")
    max_concurrency: int = Field(default=5, ge=1, description="Max concurrent classification calls.")
    known_b2b_domains: List[str] = Field(
        default_factory=lambda: ["winspire", "biddingforgood", "charitybuzz", "auctionpackages"],
        description="URL fragments of known B2B auction-package providers.",
    )
    model: str = Field(default="gpt-4o-mini", description="Chat model used for relevance judgments.")
    api_base: str = Field(default="https://api.openai.com/v1", description="OpenAI-compatible API base URL.")
    api_key: Optional[SecretStr] = Field(default=None, description="API key for the classification service.")
    temperature: float = Field(default=0.1, ge=0, le=2)
    max_retries: int = Field(default=2, ge=1, description="Attempts for transient HTTP errors.")

    @field_validator("confidence_threshold", "review_band_low", "review_band_high", "consistency_threshold", "exclusion_ratio")
    @classmethod
    def validate_unit(cls, v: float) -> float:
        return _unit_interval("threshold", v)

    @field_validator("consistency_passes")
    @classmethod
    def validate_passes(cls, v: int) -> int:
        if v < 2:
            raise ValueError("consistency_passes must be at least 2")
        return v

    @model_validator(mode="after")
    def validate_band(self) -> "ClassifierConfig":
        if self.review_band_low > self.review_band_high:
            raise ValueError(
                f"review_band_low ({self.review_band_low}) must not exceed review_band_high ({self.review_band_high})"
            )
        return self


class MonitorConfig(BaseModel):
    """Alert thresholds and history retention for the classification monitor."""

    max_b2b_rate: float = Field(default=0.3, description="Alert when b2b+vendor rate exceeds this.")
    min_nonprofit_rate: float = Field(default=0.1, description="Alert when nonprofit rate drops below this.")
    min_verification_rate: float = Field(default=0.7, description="Alert when verification rate drops below this.")
    max_review_rate: float = Field(default=0.4, description="Alert when review rate exceeds this.")
    low_confidence_floor: float = Field(default=0.6, description="Relevant results below this are suspect.")
    history_days: int = Field(default=30, gt=0, description="Days of snapshots and alerts to keep.")
    max_snapshots: int = Field(default=500, gt=0, description="Hard cap on retained snapshots.")
    max_alerts: int = Field(default=2000, gt=0, description="Hard cap on retained alerts.")

    @field_validator("max_b2b_rate", "min_nonprofit_rate", "min_verification_rate", "max_review_rate", "low_confidence_floor")
    @classmethod
    def validate_unit(cls, v: float) -> float:
        return _unit_interval("rate", v)


class CacheConfig(BaseModel):
    ttl_seconds: float = Field(default=3600.0, gt=0, description="Time-to-live for cached results.")
    max_entries: int = Field(default=1000, gt=0, description="Entries held before eviction.")
    evict_fraction: float = Field(default=0.2, description="Fraction of oldest entries evicted when full.")
    verification_ttl_seconds: float = Field(default=24 * 3600.0, gt=0)

    @field_validator("evict_fraction")
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("evict_fraction must be in (0, 1]")
        return v


class RateLimitConfig(BaseModel):
    rate: float = Field(default=2.0, gt=0, description="Sustained calls per second.")
    burst: int = Field(default=5, ge=1, description="Calls allowed back-to-back before throttling.")


class RateLimitsConfig(BaseModel):
    """Token-bucket limits per external dependency."""

    classifier: RateLimitConfig = Field(default_factory=lambda: RateLimitConfig(rate=2.0, burst=5))
    embedder: RateLimitConfig = Field(default_factory=lambda: RateLimitConfig(rate=10.0, burst=20))
    verifier: RateLimitConfig = Field(default_factory=lambda: RateLimitConfig(rate=1.0, burst=3))
    search: RateLimitConfig = Field(default_factory=lambda: RateLimitConfig(rate=0.5, burst=2))

    def as_dict(self) -> Dict[str, RateLimitConfig]:
        return {
            "classifier": self.classifier,
            "embedder": self.embedder,
            "verifier": self.verifier,
            "search": self.search,
        }


class BudgetConfig(BaseModel):
    """Spend and quota limits for paid external services."""

    budget_limit: float = Field(default=50.0, ge=0, description="Total dollars allowed per run.")
    max_classification_calls: Optional[int] = Field(default=None, ge=0, description="Call quota, None for unlimited.")
    max_search_queries: int = Field(default=50, ge=0, description="Search queries issued per run.")
    cost_per_classification: float = Field(default=0.0005, ge=0)
    cost_per_search: float = Field(default=0.015, ge=0)
    cost_per_embedding: float = Field(default=0.00001, ge=0)
    warning_fraction: float = Field(default=0.8, description="Warn once spend crosses this fraction.")

    @field_validator("warning_fraction")
    @classmethod
    def validate_unit(cls, v: float) -> float:
        return _unit_interval("warning_fraction", v)


class SearchConfig(BaseModel):
    """Search query generation and lead-volume limits."""

    event_date_range: str = Field(
        default="2025-03-01 to 2025-12-31", description="Target event window, 'YYYY-MM-DD to YYYY-MM-DD'."
    )
    max_leads_per_day: int = Field(default=10, ge=0, description="Stop once this many leads are admitted.")
    exclude_states: List[str] = Field(default_factory=list, description="US states whose events are skipped.")
    skip_domains: List[str] = Field(
        default_factory=lambda: [
            "facebook.com",
            "twitter.com",
            "instagram.com",
            "linkedin.com",
            "youtube.com",
            "tiktok.com",
            "pinterest.com",
            "reddit.com",
            "amazon.com",
            "ebay.com",
            "craigslist.org",
        ]
    )
    query_templates: List[str] = Field(
        default_factory=lambda: [
            '"{keyword}" nonprofit {month} {year}',
            '"{keyword}" charity gala {month} {year}',
            '"{keyword}" school fundraiser {month} {year}',
        ]
    )
    keywords: List[str] = Field(
        default_factory=lambda: ["travel auction", "vacation raffle", "trip silent auction", "getaway auction"]
    )
    results_per_query: int = Field(default=10, ge=1, le=100)
    api_base: str = Field(default="https://serpapi.com/search.json")
    api_key: Optional[SecretStr] = None

    @field_validator("event_date_range")
    @classmethod
    def validate_date_range(cls, v: str) -> str:
        parse_date_range(v)
        return v

    @property
    def date_window(self) -> Tuple[date, date]:
        return parse_date_range(self.event_date_range)


class VerificationConfig(BaseModel):
    enabled: bool = Field(default=True, description="Look up nonprofit-category candidates in the registry.")
    api_base: str = Field(default="https://projects.propublica.org/nonprofits/api/v2")
    user_agent: str = Field(default="LeadMiner/0.1 (+nonprofit-lead-research)")
    timeout_seconds: float = Field(default=10.0, gt=0)


class StorageConfig(BaseModel):
    """Ledger and sink file locations."""

    ledger_path: Path = Field(default=Path("./data/pipeline/ledger.db"), description="SQLite ledger path.")
    leads_path: Path = Field(default=Path("./data/pipeline/leads.jsonl"), description="Admitted-lead JSONL sink.")
    review_path: Path = Field(default=Path("./data/pipeline/review.jsonl"), description="Review-bucket JSONL sink.")
    summary_dir: Path = Field(default=Path("./data/pipeline/runs"), description="Directory for run summaries.")
    wal_mode: bool = Field(default=True, description="Enable Write-Ahead Logging for the ledger.")
    retention_days: int = Field(default=365, gt=0, description="Ledger rows older than this are pruned.")


class MonitoringConfig(BaseModel):
    """Configuration for the observability and monitoring system."""

    enabled: bool = True
    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to log file. If None, logs to console.")
    prometheus_port: int | None = Field(default=None, description="Port for Prometheus metrics exporter.")

    @field_validator("log_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v!r}")
        return v.upper()

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


class PipelineConfig(BaseModel):
    batch_size: int = Field(default=20, ge=1, description="Candidates processed per batch.")
    verify_nonprofits: bool = Field(default=True, description="Run registry verification before admission.")


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "LeadMiner"
    version: str = "0.1.0"
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    rate_limits: RateLimitsConfig = Field(default_factory=RateLimitsConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)

    model_config = SettingsConfigDict(env_prefix="LEADMINER_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data or {})


def load_config(path: Optional[Path] = None) -> Config:
    """
    Load and validate configuration, failing fast on invalid values.

    Raises:
        ConfigurationError: if any value fails validation or the file is unreadable.
    """
    try:
        if path is not None:
            return Config.from_yaml(Path(path))
        found = find_config_file()
        return Config.from_yaml(found) if found else Config()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Unable to read configuration: {e}") from e


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    paths_to_check = [
        current_dir / "leadminer.yaml",
        current_dir / "config.yaml",
        current_dir / "config.yml",
    ]
    for path in paths_to_check:
        if path.exists():
            return path
    return None


# --- Lazy Configuration Loader ---


class LazyConfig:
    """
    A proxy for the Config object that delays its loading and validation
    until an attribute is first accessed.
    """

    _config: ClassVar[Config | None] = None
    _lock: ClassVar[threading.Lock] = threading.Lock()

    def __getattr__(self, name: str) -> Any:
        if self.__class__._config is None:
            with self.__class__._lock:
                if self.__class__._config is None:
                    self.__class__._config = load_config()
        return getattr(self.__class__._config, name)

    @classmethod
    def reset(cls) -> None:
        with cls._lock:
            cls._config = None


# --- Global Settings Instance ---
settings: "Config" = cast("Config", LazyConfig())
