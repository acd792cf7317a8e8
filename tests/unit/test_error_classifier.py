"""Tests for the error classifier, user-facing formatting and ErrorRecord building."""
import asyncio
import logging
import socket
from datetime import datetime

import httpx
import pytest
from sqlalchemy import exc as sa_exc

from profilesync.sync.errors import (
    ApiError,
    Category,
    ConnectionFailure,
    DuplicateKeyError,
    RecordValidationError,
    Severity,
    StoreError,
    TopLevelSyncError,
    TransportTimeout,
    UnsupportedFieldError,
    classify,
    format_for_user,
    is_duplicate_key_message,
    log_error,
    make_error_record,
)


def _integrity_error(message: str) -> sa_exc.IntegrityError:
    return sa_exc.IntegrityError("INSERT ...", {}, Exception(message))


# ─── HTTP status table ────────────────────────────────────────────────────────

class TestApiStatus:
    @pytest.mark.parametrize("status,code,severity,retryable", [
        (400, "BAD_REQUEST", Severity.MEDIUM, False),
        (401, "UNAUTHORIZED", Severity.HIGH, False),
        (403, "PERMISSION_DENIED", Severity.LOW, False),
        (404, "NOT_FOUND", Severity.LOW, False),
        (408, "REQUEST_TIMEOUT", Severity.MEDIUM, True),
        (429, "RATE_LIMITED", Severity.MEDIUM, True),
        (500, "SERVER_ERROR", Severity.HIGH, True),
        (503, "SERVER_ERROR", Severity.HIGH, True),
        (418, "UNKNOWN_HTTP_ERROR", Severity.MEDIUM, False),
    ])
    def test_status_mapping(self, status, code, severity, retryable):
        info = classify(ApiError(status, f"HTTP {status}: nope"))
        assert info.code == code
        assert info.category == Category.API
        assert info.severity == severity
        assert info.retryable is retryable

    def test_unsupported_field_is_not_retryable(self):
        info = classify(UnsupportedFieldError("BUSINESS_CONVERSATIONS"))
        assert info.code == "UNSUPPORTED_FIELD"
        assert info.category == Category.API
        assert not info.retryable

    def test_httpx_status_error(self):
        request = httpx.Request("GET", "https://api.example/accounts")
        response = httpx.Response(429, request=request)
        error = httpx.HTTPStatusError("rate limited", request=request, response=response)
        info = classify(error)
        assert info.code == "RATE_LIMITED"
        assert info.retryable


# ─── Network ──────────────────────────────────────────────────────────────────

class TestNetwork:
    @pytest.mark.parametrize("error", [
        TransportTimeout("timed out"),
        asyncio.TimeoutError(),
        httpx.ReadTimeout("read timed out"),
    ])
    def test_timeouts_are_retryable_medium(self, error):
        info = classify(error)
        assert info.category == Category.NETWORK
        assert info.severity == Severity.MEDIUM
        assert info.retryable

    @pytest.mark.parametrize("error", [
        ConnectionFailure("refused"),
        ConnectionRefusedError("refused"),
        socket.gaierror("Name or service not known"),
        httpx.ConnectError("connect failed"),
    ])
    def test_connection_failures_are_retryable_high(self, error):
        info = classify(error)
        assert info.code == "CONNECTION_ERROR"
        assert info.severity == Severity.HIGH
        assert info.retryable


# ─── Database ─────────────────────────────────────────────────────────────────

class TestDatabase:
    def test_duplicate_key_variant(self):
        info = classify(DuplicateKeyError("UNIQUE constraint failed: review.review_id"))
        assert info.code == "DUPLICATE_KEY"
        assert info.severity == Severity.LOW
        assert not info.retryable

    def test_raw_integrity_error_with_unique_message(self):
        info = classify(_integrity_error("UNIQUE constraint failed: post.post_id"))
        assert info.code == "DUPLICATE_KEY"

    def test_raw_integrity_error_other(self):
        info = classify(_integrity_error("NOT NULL constraint failed: review.star_rating"))
        assert info.code == "DATABASE_ERROR"
        assert info.retryable

    def test_store_error_is_retryable_high(self):
        info = classify(StoreError("database is locked"))
        assert info.category == Category.DATABASE
        assert info.severity == Severity.HIGH
        assert info.retryable

    def test_operational_error(self):
        error = sa_exc.OperationalError("SELECT 1", {}, Exception("database is locked"))
        assert classify(error).code == "DATABASE_ERROR"


# ─── Validation / fallback ────────────────────────────────────────────────────

class TestFallback:
    def test_validation_variant(self):
        info = classify(RecordValidationError("Review record missing required field 'reviewId'"))
        assert info.category == Category.VALIDATION
        assert not info.retryable

    def test_message_with_required_field(self):
        info = classify(ValueError("field 'name' is required"))
        assert info.category == Category.VALIDATION

    def test_message_with_http_status(self):
        assert classify(RuntimeError("request failed: HTTP 503 upstream")).code == "SERVER_ERROR"

    def test_message_with_econnrefused(self):
        assert classify(RuntimeError("connect ECONNREFUSED 127.0.0.1:443")).code == "CONNECTION_ERROR"

    def test_top_level_is_critical(self):
        info = classify(TopLevelSyncError("cannot list accounts"))
        assert info.severity == Severity.CRITICAL

    def test_unknown_default(self):
        info = classify(RuntimeError("something odd"))
        assert info.code == "UNKNOWN_ERROR"
        assert info.category == Category.UNKNOWN
        assert info.severity == Severity.MEDIUM
        assert not info.retryable

    def test_empty_message_still_classified(self):
        info = classify(RuntimeError())
        assert info.category == Category.UNKNOWN
        assert info.message

    def test_classify_is_deterministic(self):
        error = ApiError(500, "HTTP 500: boom")
        assert classify(error) == classify(error)


class TestIsDuplicateKeyMessage:
    @pytest.mark.parametrize("message", [
        "UNIQUE constraint failed: review.review_id",
        'duplicate key value violates unique constraint "uq_review_natural_key"',
        "E11000 duplicate key error collection",
    ])
    def test_recognised(self, message):
        assert is_duplicate_key_message(message)

    def test_not_recognised(self):
        assert not is_duplicate_key_message("FOREIGN KEY constraint failed")


# ─── Formatting / logging / records ───────────────────────────────────────────

class TestFormatForUser:
    def test_permission_denied_is_reassuring(self):
        text = format_for_user(classify(ApiError(403)))
        assert "expected" in text.lower()

    def test_duplicate_is_normal(self):
        text = format_for_user(classify(DuplicateKeyError("dup")))
        assert "normal" in text.lower()

    def test_network_mentions_retry(self):
        text = format_for_user(classify(TransportTimeout("slow")))
        assert "retried" in text.lower()

    def test_unknown_returns_message(self):
        assert format_for_user(classify(RuntimeError("weird thing"))) == "weird thing"


class TestLogError:
    def test_logs_at_severity_level(self, caplog):
        with caplog.at_level(logging.INFO, logger="profilesync.sync.errors"):
            log_error(ApiError(404, "HTTP 404: gone"), "reviews locations/1")
            log_error(ApiError(500, "HTTP 500: boom"), "reviews locations/2")
        levels = [r.levelno for r in caplog.records]
        assert levels == [logging.INFO, logging.ERROR]
        assert "API_NOT_FOUND" in caplog.records[0].getMessage()


class TestMakeErrorRecord:
    def test_fields(self):
        record = make_error_record(
            ApiError(404, "HTTP 404: gone"),
            step="reviews",
            context_entity="locations/2",
            timestamp=datetime(2025, 1, 15, 7, 30),
        )
        assert record == {
            "code": "NOT_FOUND",
            "category": "api",
            "severity": "low",
            "retryable": False,
            "message": "HTTP 404: gone",
            "step": "reviews",
            "contextEntity": "locations/2",
            "timestamp": "2025-01-15T07:30:00",
        }
