"""Configuration exports."""

from .settings import (
    ConsumerSettings,
    DeidSettings,
    Environment,
    IndexerSettings,
    IngestionSettings,
    KafkaSettings,
    LoggingSettings,
    ObjectStoreSettings,
    PipelineSettings,
    PoolSettings,
    RedisSettings,
    SaturationPolicy,
    TelemetrySettings,
    TopicSettings,
    get_settings,
    load_settings,
)

__all__ = [
    "ConsumerSettings",
    "DeidSettings",
    "Environment",
    "IndexerSettings",
    "IngestionSettings",
    "KafkaSettings",
    "LoggingSettings",
    "ObjectStoreSettings",
    "PipelineSettings",
    "PoolSettings",
    "RedisSettings",
    "SaturationPolicy",
    "TelemetrySettings",
    "TopicSettings",
    "get_settings",
    "load_settings",
]
