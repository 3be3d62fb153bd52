"""Configuration system for the ingestion, de-identification and indexing services."""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from enum import Enum
from functools import lru_cache
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environments supported by the platform."""

    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class LoggingSettings(BaseModel):
    """Structured logging configuration."""

    level: str = Field(default="INFO", description="Log level for application output")
    json_output: bool = Field(default=True, description="Render log lines as JSON")
    scrub_fields: Sequence[str] = Field(
        default_factory=lambda: ["password", "token", "secret", "authorization"],
        description="Fields that should be redacted in logs",
    )


class TelemetrySettings(BaseModel):
    """Configuration block for OpenTelemetry export."""

    exporter: Literal["console", "otlp", "none"] = "none"
    endpoint: str | None = Field(default=None, description="Exporter endpoint")
    sample_ratio: float = Field(default=1.0, ge=0.0, le=1.0)


class SaturationPolicy(str, Enum):
    """Behaviour of a worker pool once every worker and queue slot is taken."""

    WAIT = "wait"
    REJECT = "reject"


class PoolSettings(BaseModel):
    """Sizing for one worker pool."""

    thread_name_prefix: str = "worker"
    core_size: int = Field(default=4, ge=1)
    max_size: int = Field(default=4, ge=1)
    queue_capacity: int = Field(default=100, ge=0)
    saturation_policy: SaturationPolicy = SaturationPolicy.WAIT

    @model_validator(mode="after")
    def _validate_sizes(self) -> PoolSettings:
        if self.core_size > self.max_size:
            raise ValueError("core_size must not exceed max_size")
        return self


class TopicSettings(BaseModel):
    """Kafka topic names; both are required and must not be blank."""

    ingestion_events: str = "researchex.cdw.load.events"
    deid_events: str = "researchex.deid.jobs"
    partitions: int = Field(default=3, ge=1)

    @field_validator("ingestion_events", "deid_events")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("topic names must not be blank")
        return value.strip()


class KafkaSettings(BaseModel):
    """Broker connection parameters for the aiokafka transport."""

    bootstrap_servers: str = "localhost:9092"
    client_id: str = "researchex"
    acks: Literal["all", "1", "0"] = "all"
    enable_idempotence: bool = True
    auto_offset_reset: Literal["earliest", "latest"] = "earliest"


class ConsumerSettings(BaseModel):
    """Manual-ack consumer configuration for one downstream service."""

    group_id: str
    concurrency: int = 1
    nack_backoff_seconds: float = Field(default=1.0, ge=0.0)
    poll_batch_size: int = Field(default=10, ge=1)

    @field_validator("concurrency", mode="before")
    @classmethod
    def _coerce_concurrency(cls, value: Any) -> int:
        if value is None:
            return 1
        value = int(value)
        return value if value >= 1 else 1


class IngestionSettings(BaseModel):
    """Ingestion (CDW load) pipeline configuration."""

    source_name: str = "cdw-loader"
    cpu_pool: PoolSettings = Field(
        default_factory=lambda: PoolSettings(
            thread_name_prefix="cdw-cpu", core_size=4, max_size=4, queue_capacity=100
        )
    )
    io_pool: PoolSettings = Field(
        default_factory=lambda: PoolSettings(
            thread_name_prefix="cdw-io", core_size=4, max_size=8, queue_capacity=200
        )
    )
    max_record_count: int = Field(default=5_000_000, ge=1)
    error_code: str = "CDW-PIPELINE-ERROR"
    raw_location_prefix: str = "s3://raw"


class DeidSettings(BaseModel):
    """De-identification pipeline configuration."""

    cpu_pool: PoolSettings = Field(
        default_factory=lambda: PoolSettings(
            thread_name_prefix="deid-cpu", core_size=4, max_size=4, queue_capacity=200
        )
    )
    io_pool: PoolSettings = Field(
        default_factory=lambda: PoolSettings(
            thread_name_prefix="deid-io", core_size=6, max_size=12, queue_capacity=400
        )
    )
    max_record_count: int = Field(default=10_000_000, ge=1)
    error_code: str = "DEID-PIPELINE-ERROR"
    raw_location_prefix: str = "s3://raw"
    output_location_prefix: str = "s3://deid"
    identifier_fields: Sequence[str] = Field(
        default_factory=lambda: ["patient_name", "name", "address", "phone", "email", "resident_id"],
        description="Record fields replaced wholesale during masking",
    )
    consumer: ConsumerSettings = Field(
        default_factory=lambda: ConsumerSettings(group_id="deid-service")
    )


class IndexerSettings(BaseModel):
    """Research index configuration."""

    cpu_pool: PoolSettings = Field(
        default_factory=lambda: PoolSettings(
            thread_name_prefix="research-cpu", core_size=2, max_size=2, queue_capacity=100
        )
    )
    io_pool: PoolSettings = Field(
        default_factory=lambda: PoolSettings(
            thread_name_prefix="research-io", core_size=4, max_size=8, queue_capacity=200
        )
    )
    cache_key_prefix: str = "doc:"
    consumer: ConsumerSettings = Field(
        default_factory=lambda: ConsumerSettings(group_id="research-service")
    )


class RedisSettings(BaseModel):
    """Redis cache used for research document lookups."""

    enabled: bool = False
    url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")


class ObjectStoreSettings(BaseModel):
    """Where batch payloads live; ``memory`` keeps them in-process."""

    backend: Literal["memory", "s3"] = "memory"
    endpoint_url: str | None = Field(default=None, description="S3/MinIO endpoint override")


class PipelineSettings(BaseSettings):
    """Top-level settings shared by every service in the pipeline."""

    environment: Environment = Environment.DEV
    service_name: str = "researchex"
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    topics: TopicSettings = Field(default_factory=TopicSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    deid: DeidSettings = Field(default_factory=DeidSettings)
    indexer: IndexerSettings = Field(default_factory=IndexerSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    object_store: ObjectStoreSettings = Field(default_factory=ObjectStoreSettings)

    model_config = SettingsConfigDict(env_prefix="RX_", env_nested_delimiter="__")


ENVIRONMENT_DEFAULTS: Mapping[Environment, dict[str, Any]] = {
    Environment.DEV: {
        "logging": {"json_output": False},
        "telemetry": {"exporter": "none"},
    },
    Environment.STAGING: {
        "telemetry": {"exporter": "otlp", "sample_ratio": 0.25},
        "redis": {"enabled": True},
    },
    Environment.PROD: {
        "telemetry": {"exporter": "otlp", "sample_ratio": 0.05},
        "redis": {"enabled": True},
    },
}


def _deep_update(target: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    for key, value in updates.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            target[key] = _deep_update(dict(current), value)
        else:
            target[key] = value
    return target


def load_settings(environment: str | None = None) -> PipelineSettings:
    """Load settings with environment specific defaults applied.

    Environment defaults only fill values the environment variables left at
    their defaults; anything set through ``RX_*`` wins.
    """
    env_value = (environment or os.getenv("RX_ENV", "dev")).lower()
    env = Environment(env_value)
    try:
        base_settings = PipelineSettings()
    except ValidationError as err:
        raise RuntimeError(f"Invalid configuration: {err}") from err
    explicit = base_settings.model_dump(exclude_unset=True)
    merged = _deep_update(PipelineSettings.model_construct().model_dump(), ENVIRONMENT_DEFAULTS.get(env, {}))
    merged = _deep_update(merged, explicit)
    merged["environment"] = env
    return PipelineSettings.model_validate(merged)


@lru_cache(maxsize=1)
def get_settings() -> PipelineSettings:
    """Cached accessor for process entry points."""
    return load_settings()


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
