"""
Runtime configuration via pydantic-settings.

Settings are read from GENFLOW_* environment variables and converted into
the immutable policy objects each component consumes.

    settings = Settings()
    worker_policy = settings.worker_policy()
"""

from __future__ import annotations

from datetime import timedelta
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from genflow import idempotency as I
from genflow.jobs import JobStorePolicy
from genflow.queue import QueuePolicy
from genflow.worker import WorkerPolicy

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class Settings(BaseSettings):
    """
    Root configuration.

    Loaded in this order:
    1. Defaults below
    2. .env file (if present)
    3. GENFLOW_* environment variables
    """

    model_config = SettingsConfigDict(
        env_prefix="GENFLOW_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: LogLevel = "INFO"
    log_format: Literal["json", "console"] = "json"

    # Persistence
    database_url: str = "sqlite+aiosqlite:///./genflow.db"

    # Idempotency
    idempotency_ttl_hours: float = Field(default=24, gt=0)
    reservation_ttl_seconds: float = Field(default=300, gt=0)
    idempotency_wait_seconds: float = Field(default=30, gt=0)
    idempotency_fail_open: bool = True

    # Jobs
    job_ttl_days: float = Field(default=7, gt=0)

    # Queue
    visibility_timeout_seconds: float = Field(default=300, gt=0)
    max_receive_count: int = Field(default=3, ge=1)
    retention_days: float = Field(default=4, gt=0)
    dlq_retention_days: float = Field(default=14, gt=0)

    # Worker
    max_concurrency: int = Field(default=100, ge=1)
    executor_attempts: int = Field(default=3, ge=1)
    executor_backoff_seconds: float = Field(default=2.0, ge=0)
    executor_backoff_factor: float = Field(default=2.0, ge=1)
    executor_timeout_seconds: float = Field(default=240, gt=0)
    receive_batch_size: int = Field(default=10, ge=1)
    poll_interval_seconds: float = Field(default=1.0, gt=0)

    @model_validator(mode="after")
    def _visibility_exceeds_executor_timeout(self) -> Settings:
        if self.visibility_timeout_seconds <= self.executor_timeout_seconds:
            raise ValueError(
                "visibility_timeout_seconds must exceed executor_timeout_seconds"
            )
        return self

    def idempotency_policy(self) -> I.Policy:
        return (
            I.Policy()
            .with_ttl(hours=self.idempotency_ttl_hours)
            .with_reservation_ttl(seconds=self.reservation_ttl_seconds)
            .with_wait_timeout(seconds=self.idempotency_wait_seconds)
            .with_fail_open(self.idempotency_fail_open)
        )

    def job_store_policy(self) -> JobStorePolicy:
        return JobStorePolicy(ttl=timedelta(days=self.job_ttl_days))

    def queue_policy(self) -> QueuePolicy:
        return QueuePolicy(
            visibility_timeout=timedelta(seconds=self.visibility_timeout_seconds),
            max_receive_count=self.max_receive_count,
            retention=timedelta(days=self.retention_days),
        )

    def dlq_policy(self) -> QueuePolicy:
        return QueuePolicy(
            visibility_timeout=timedelta(seconds=60),
            max_receive_count=None,
            retention=timedelta(days=self.dlq_retention_days),
        )

    def worker_policy(self) -> WorkerPolicy:
        return WorkerPolicy(
            attempts=self.executor_attempts,
            backoff_initial=self.executor_backoff_seconds,
            backoff_factor=self.executor_backoff_factor,
            execution_timeout=self.executor_timeout_seconds,
            # Lapses after the executor gives up, before the queue redelivers
            lease=timedelta(
                seconds=(self.executor_timeout_seconds + self.visibility_timeout_seconds) / 2
            ),
            max_concurrency=self.max_concurrency,
            batch_size=self.receive_batch_size,
            poll_interval=self.poll_interval_seconds,
        )


__all__ = ("Settings", "LogLevel")
