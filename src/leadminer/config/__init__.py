"""Configuration for LeadMiner."""

from .config import (
    BudgetConfig,
    CacheConfig,
    ClassifierConfig,
    Config,
    DedupConfig,
    MonitorConfig,
    MonitoringConfig,
    PipelineConfig,
    RateLimitConfig,
    RateLimitsConfig,
    SearchConfig,
    StorageConfig,
    VerificationConfig,
    find_config_file,
    load_config,
    parse_date_range,
    settings,
)

__all__ = [
    "BudgetConfig",
    "CacheConfig",
    "ClassifierConfig",
    "Config",
    "DedupConfig",
    "MonitorConfig",
    "MonitoringConfig",
    "PipelineConfig",
    "RateLimitConfig",
    "RateLimitsConfig",
    "SearchConfig",
    "StorageConfig",
    "VerificationConfig",
    "find_config_file",
    "load_config",
    "parse_date_range",
    "settings",
]
