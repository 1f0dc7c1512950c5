from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .broker.client import BrokerConfig
from .coordinator.policy import RetryPolicy


class PipelineSettings(BaseSettings):
    """Runtime settings, read from ``PIPELINE_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="PIPELINE_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    pipeline_id: str = "tweet-pipeline"

    # broker
    redis_url: str = "redis://localhost:6379/0"
    ingress_queue: str = "tweet_events"
    action_queue: str = "actions_to_take"
    consumer_group: str = "tweet-pipeline"
    consumer_name: str = "worker-1"
    reconnect_base_delay_ms: int = Field(500, ge=0)
    reconnect_max_delay_ms: int = Field(30_000, ge=0)

    # ingress buffer
    buffer_enabled: bool = True
    buffer_capacity: int = Field(10, gt=0)

    # delivery
    max_retry_attempts: int = Field(3, ge=1)
    initial_retry_delay_ms: int = Field(500, ge=0)
    backoff_factor: float = Field(2.0, ge=1.0)
    max_retry_delay_ms: int = Field(30_000, ge=0)
    retry_jitter: bool = False
    publish_timeout_sec: Optional[float] = Field(5.0, gt=0)

    # consumers
    max_concurrent_analysis: int = Field(5, gt=0)
    max_concurrent_actions: int = Field(10, gt=0)
    max_redeliveries: int = Field(3, ge=1)
    dedupe_window: int = Field(10_000, gt=0)

    # lifecycle / tooling
    shutdown_grace_sec: float = Field(10.0, ge=0)
    dlq_path: str = ".dlq/tweet_events.ndjson"
    metrics_port: Optional[int] = None

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_retry_attempts,
            initial_backoff_ms=self.initial_retry_delay_ms,
            max_backoff_ms=self.max_retry_delay_ms,
            backoff_multiplier=self.backoff_factor,
            jitter=self.retry_jitter,
        )

    def broker_config(self) -> BrokerConfig:
        return BrokerConfig(
            url=self.redis_url,
            consumer_group=self.consumer_group,
            consumer_name=self.consumer_name,
            reconnect_policy=RetryPolicy(
                initial_backoff_ms=self.reconnect_base_delay_ms,
                max_backoff_ms=self.reconnect_max_delay_ms,
            ),
        )


@lru_cache()
def get_settings() -> PipelineSettings:
    return PipelineSettings()
