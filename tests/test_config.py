"""Tests for settings and logging setup."""

from datetime import timedelta

import pytest
import structlog
from pydantic import ValidationError

from genflow.config import Settings
from genflow.logging import Redactor, get_logger, setup_logging


class TestSettings:
    def test_defaults_keep_timing_order(self):
        settings = Settings(_env_file=None)

        worker = settings.worker_policy()
        queue = settings.queue_policy()

        assert worker.execution_timeout == 240
        assert worker.lease == timedelta(seconds=270)
        assert queue.visibility_timeout == timedelta(seconds=300)
        assert queue.max_receive_count == 3
        assert worker.lease < queue.visibility_timeout

    def test_dead_letter_policy(self):
        dlq = Settings(_env_file=None).dlq_policy()

        assert dlq.max_receive_count is None
        assert dlq.retention == timedelta(days=14)

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("GENFLOW_MAX_RECEIVE_COUNT", "5")
        monkeypatch.setenv("GENFLOW_IDEMPOTENCY_TTL_HOURS", "1")
        monkeypatch.setenv("GENFLOW_IDEMPOTENCY_FAIL_OPEN", "false")

        settings = Settings(_env_file=None)

        assert settings.queue_policy().max_receive_count == 5
        policy = settings.idempotency_policy()
        assert policy.result_ttl == timedelta(hours=1)
        assert policy.fail_open is False

    def test_visibility_must_exceed_executor_timeout(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, visibility_timeout_seconds=60, executor_timeout_seconds=240)

    def test_job_ttl(self):
        assert Settings(_env_file=None, job_ttl_days=2).job_store_policy().ttl == timedelta(days=2)


class TestRedactor:
    def test_masks_sensitive_keys_and_emails(self):
        event = Redactor()(
            None,
            "info",
            {
                "event": "job_created",
                "owner_email": "owner@example.com",
                "note": "sent to owner@example.com",
                "nested": {"token": "abc", "project_name": "acme"},
            },
        )

        assert event["owner_email"] == "[REDACTED]"
        assert event["note"] == "sent to [EMAIL]"
        assert event["nested"] == {"token": "[REDACTED]", "project_name": "acme"}
        assert event["event"] == "job_created"

    def test_setup_logging_json(self, capsys):
        setup_logging(level="INFO", format="json")
        try:
            get_logger("tests.config").info("unit_test_event", email="a@b.co")
            err = capsys.readouterr().err
        finally:
            structlog.reset_defaults()

        assert "unit_test_event" in err
        assert "a@b.co" not in err
