"""Tests for storage retries and per-thread logging context."""

import logging

import pytest

from salesflow.core.error_recovery import RetryConfig, with_retry
from salesflow.core.exceptions import EntityNotFoundError, StorageError, TransientError
from salesflow.core.logging import RunContextFilter, _context_filter, logging_context

FAST = RetryConfig(max_attempts=3, base_delay=0, max_delay=0, jitter=False)


class TestWithRetry:

    def test_transient_failure_is_retried(self):
        calls = []

        @with_retry(FAST)
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientError("database is locked")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3

    def test_gives_up_after_max_attempts(self):
        calls = []

        @with_retry(FAST)
        def broken():
            calls.append(1)
            raise StorageError("disk full", operation="write")

        with pytest.raises(StorageError):
            broken()
        assert len(calls) == 3

    def test_other_errors_are_not_retried(self):
        calls = []

        @with_retry(FAST)
        def missing():
            calls.append(1)
            raise EntityNotFoundError("Lead not found: x")

        with pytest.raises(EntityNotFoundError):
            missing()
        assert len(calls) == 1

    def test_backoff_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=3.0, jitter=False)
        assert [config.delay_for(attempt) for attempt in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]


class TestLoggingContext:

    def test_nested_context_restores_outer_fields(self):
        with logging_context(run_id="outer", lead_id="lead-1"):
            with logging_context(run_id="inner"):
                assert _context_filter.fields == {"run_id": "inner", "lead_id": "lead-1"}
            assert _context_filter.fields == {"run_id": "outer", "lead_id": "lead-1"}
        assert _context_filter.fields == {}

    def test_filter_merges_context_into_record(self):
        context_filter = RunContextFilter()
        context_filter.replace({"run_id": "r1"})
        record = logging.LogRecord("salesflow", logging.INFO, __file__, 1, "hello", None, None)
        record.extra_fields = {"operation": "write"}

        assert context_filter.filter(record)
        assert record.extra_fields == {"run_id": "r1", "operation": "write"}
