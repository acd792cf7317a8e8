"""
Error taxonomy and classifier for the sync pipeline.

Failures are tagged where they are first observed: the API client raises
ApiError / TransportTimeout / ConnectionFailure, the batch writer raises
DuplicateKeyError / StoreError, the normalizer raises RecordValidationError.
classify() dispatches on those variants first, then on the third-party
exception types that can still leak through (httpx, SQLAlchemy, asyncio,
socket), and only then falls back to message matching for genuinely
unstructured upstream errors.

classify() is pure and total: the same error always yields the same
Classification, and anything unrecognised is unknown/medium/not-retryable.
"""
import asyncio
import logging
import re
import socket
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from sqlalchemy import exc as sa_exc

logger = logging.getLogger(__name__)


class Category(str, Enum):
    NETWORK = "network"
    API = "api"
    DATABASE = "database"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ─── Boundary exception variants ──────────────────────────────────────────────

class SyncError(Exception):
    """Base class for every failure raised by this package."""


class ApiError(SyncError):
    """Non-2xx response from the business-data API."""

    def __init__(self, status: int, message: str = "", body: str = ""):
        self.status = status
        self.body = body
        super().__init__(message or f"HTTP {status} error")


class UnsupportedFieldError(ApiError):
    """A 400 naming a field/metric the API does not support for this resource."""

    def __init__(self, field: str, message: str = "", body: str = ""):
        self.field = field
        super().__init__(400, message or f"Unsupported field: {field}", body)


class TransportTimeout(SyncError):
    pass


class ConnectionFailure(SyncError):
    """Connection refused, reset, or the host could not be resolved."""


class DuplicateKeyError(SyncError):
    """A write collided with an existing row on its natural key."""


class StoreError(SyncError):
    """Any other persistence-layer failure."""


class RecordValidationError(SyncError):
    """A raw record is missing a required field (usually its natural key)."""


class TopLevelSyncError(SyncError):
    """The run as a whole cannot continue."""


class SyncRunNotFound(SyncError):
    pass


# ─── Classification ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Classification:
    code: str
    category: Category
    severity: Severity
    retryable: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["category"] = self.category.value
        d["severity"] = self.severity.value
        return d


def _status_classification(status: int, message: str) -> Classification:
    if status == 400:
        return Classification("BAD_REQUEST", Category.API, Severity.MEDIUM, False, message)
    if status == 401:
        return Classification("UNAUTHORIZED", Category.API, Severity.HIGH, False, message)
    if status == 403:
        # Expected for accounts without access to a given API surface
        return Classification("PERMISSION_DENIED", Category.API, Severity.LOW, False, message)
    if status == 404:
        return Classification("NOT_FOUND", Category.API, Severity.LOW, False, message)
    if status == 408:
        return Classification("REQUEST_TIMEOUT", Category.API, Severity.MEDIUM, True, message)
    if status == 429:
        return Classification("RATE_LIMITED", Category.API, Severity.MEDIUM, True, message)
    if 500 <= status <= 599:
        return Classification("SERVER_ERROR", Category.API, Severity.HIGH, True, message)
    return Classification("UNKNOWN_HTTP_ERROR", Category.API, Severity.MEDIUM, False, message)


def _timeout(message: str) -> Classification:
    return Classification("TIMEOUT", Category.NETWORK, Severity.MEDIUM, True, message)


def _connection(message: str) -> Classification:
    return Classification("CONNECTION_ERROR", Category.NETWORK, Severity.HIGH, True, message)


def _duplicate(message: str) -> Classification:
    return Classification("DUPLICATE_KEY", Category.DATABASE, Severity.LOW, False, message)


def _database(message: str) -> Classification:
    return Classification("DATABASE_ERROR", Category.DATABASE, Severity.HIGH, True, message)


def _validation(message: str) -> Classification:
    return Classification("VALIDATION_ERROR", Category.VALIDATION, Severity.MEDIUM, False, message)


_HTTP_STATUS_RE = re.compile(r"HTTP\s+(\d{3})", re.IGNORECASE)
_DUPLICATE_MARKERS = ("unique constraint failed", "duplicate key", "e11000")
_CONNECTION_MARKERS = (
    "econnrefused", "enotfound", "connection refused",
    "name or service not known", "nodename nor servname",
)
_TIMEOUT_MARKERS = ("timed out", "etimedout")


def is_duplicate_key_message(message: str) -> bool:
    lowered = message.lower()
    return any(m in lowered for m in _DUPLICATE_MARKERS)


def _classify_message(message: str) -> Classification:
    """Fallback for errors that arrive with nothing but a message."""
    lowered = message.lower()
    match = _HTTP_STATUS_RE.search(message)
    if match:
        return _status_classification(int(match.group(1)), message)
    if is_duplicate_key_message(message):
        return _duplicate(message)
    if any(m in lowered for m in _CONNECTION_MARKERS):
        return _connection(message)
    if any(m in lowered for m in _TIMEOUT_MARKERS):
        return _timeout(message)
    if "invalid" in lowered or "required" in lowered:
        return _validation(message)
    return Classification(
        "UNKNOWN_ERROR", Category.UNKNOWN, Severity.MEDIUM, False,
        message or "Unknown error occurred",
    )


def classify(error: BaseException) -> Classification:
    """Map any raised error to exactly one Classification."""
    message = str(error) or type(error).__name__

    # Variants raised at our own boundaries
    if isinstance(error, DuplicateKeyError):
        return _duplicate(message)
    if isinstance(error, StoreError):
        return _database(message)
    if isinstance(error, TransportTimeout):
        return _timeout(message)
    if isinstance(error, ConnectionFailure):
        return _connection(message)
    if isinstance(error, UnsupportedFieldError):
        return Classification("UNSUPPORTED_FIELD", Category.API, Severity.MEDIUM, False, message)
    if isinstance(error, ApiError):
        return _status_classification(error.status, message)
    if isinstance(error, RecordValidationError):
        return _validation(message)
    if isinstance(error, TopLevelSyncError):
        return Classification("SYNC_ABORTED", Category.UNKNOWN, Severity.CRITICAL, False, message)

    # Third-party types that were not converted at a boundary
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return _timeout(message)
    if isinstance(error, (httpx.ConnectError, ConnectionRefusedError, socket.gaierror)):
        return _connection(message)
    if isinstance(error, httpx.HTTPStatusError):
        return _status_classification(error.response.status_code, message)
    if isinstance(error, sa_exc.IntegrityError):
        if is_duplicate_key_message(message):
            return _duplicate(message)
        return _database(message)
    if isinstance(error, sa_exc.SQLAlchemyError):
        return _database(message)

    return _classify_message(message)


def format_for_user(info: Classification) -> str:
    """Human-readable explanation of a classified error."""
    if info.category == Category.API:
        if info.code == "PERMISSION_DENIED":
            return "This feature is not available for your account type. This is common and expected."
        if info.code == "NOT_FOUND":
            return "The requested resource is not available. Some features may not be enabled for this project."
        return f"API error: {info.message}"
    if info.category == Category.DATABASE:
        if info.code == "DUPLICATE_KEY":
            return "Data already exists in the database. This is normal during sync operations."
        return "Database operation failed. Data may not have been saved."
    if info.category == Category.NETWORK:
        return "Network connection issue. The operation will be retried automatically."
    if info.category == Category.VALIDATION:
        return "Invalid data format received."
    return info.message


_SEVERITY_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


def log_error(error: BaseException, context: str) -> Classification:
    """Classify and log at a level matching the severity. Returns the classification."""
    info = classify(error)
    logger.log(
        _SEVERITY_LEVELS[info.severity],
        "[%s] %s_%s: %s",
        context, info.category.value.upper(), info.code, info.message,
        exc_info=info.severity == Severity.CRITICAL,
    )
    return info


def make_error_record(
    error: BaseException,
    *,
    step: str,
    context_entity: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Build the ErrorRecord dict stored inline on a SyncRun."""
    info = classify(error)
    return {
        "code": info.code,
        "category": info.category.value,
        "severity": info.severity.value,
        "retryable": info.retryable,
        "message": info.message,
        "step": step,
        "contextEntity": context_entity,
        "timestamp": (timestamp or datetime.utcnow()).isoformat(),
    }
