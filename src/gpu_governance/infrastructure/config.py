"""Configuration for the GPU governance engine."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class InventoryConfig(BaseModel):
    """Device inventory configuration."""

    node_name: str = Field(default="localhost")
    poll_interval_seconds: float = Field(default=30.0, gt=0)
    dev_mode: bool = Field(default=True)
    dev_device_count: int = Field(default=2, ge=0)
    dev_memory_mb: int = Field(default=40960, gt=0)


class CapacityConfig(BaseModel):
    """Shared-unit memory headroom."""

    shared_headroom_mb: int = Field(default=1024, ge=0)
    shared_headroom_fraction: float = Field(default=0.0, ge=0.0, lt=1.0)


class TransitionConfig(BaseModel):
    """Partition scheme transition configuration."""

    drain_timeout_seconds: float = Field(default=600.0, gt=0)
    drain_grace_seconds: float = Field(default=60.0, ge=0)
    evict_on_drain: bool = Field(default=False)
    verify_max_attempts: int = Field(default=5, ge=1)
    verify_backoff_seconds: float = Field(default=1.0, gt=0)
    verify_backoff_max_seconds: float = Field(default=30.0, gt=0)
    max_time_slice_replicas: int = Field(default=64, ge=1)
    step_interval_seconds: float = Field(default=1.0, gt=0)

    @model_validator(mode="after")
    def _grace_within_timeout(self) -> TransitionConfig:
        if self.drain_grace_seconds > self.drain_timeout_seconds:
            raise ValueError("drain_grace_seconds must not exceed drain_timeout_seconds")
        return self


class AdmissionConfig(BaseModel):
    """Admission controller configuration."""

    policy: Literal["strict_quota", "borrow_with_limit", "priority_preemptive"] = Field(
        default="borrow_with_limit"
    )
    max_queue_size: int = Field(default=10000, ge=1)
    default_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    finished_retention: int = Field(default=10000, ge=1)
    event_workers: int = Field(default=4, ge=0)


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)
    metrics_port: int = Field(default=9104)


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    otlp_endpoint: str | None = Field(default=None)
    environment: str = Field(default="development")
    enable_metrics: bool = Field(default=True)
    enable_tracing: bool = Field(default=False)


class Config(BaseSettings):
    """Main configuration."""

    model_config = SettingsConfigDict(env_prefix="GPU_GOVERNANCE_", env_nested_delimiter="__")

    inventory: InventoryConfig = Field(default_factory=InventoryConfig)
    capacity: CapacityConfig = Field(default_factory=CapacityConfig)
    transition: TransitionConfig = Field(default_factory=TransitionConfig)
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


@lru_cache
def get_config() -> Config:
    return Config()
