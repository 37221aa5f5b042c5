"""
Error hierarchy for the anchoring engine.

Every error carries an ``ErrorContext`` with a unique id, a UTC timestamp,
a category and a severity so that failures written to the anchor log or
surfaced as operator notices can be correlated later.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Broad classification of an error's origin."""

    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    CRYPTO = "crypto"
    NETWORK = "network"
    PROVIDER = "provider"
    QUEUE = "queue"
    SYSTEM = "system"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorRecoveryStrategy(str, Enum):
    NONE = "none"
    RETRY = "retry"
    OPERATOR = "operator"


@dataclass
class ErrorContext:
    """Context captured at the point an error is raised."""

    category: ErrorCategory = ErrorCategory.SYSTEM
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    recovery_strategy: ErrorRecoveryStrategy = ErrorRecoveryStrategy.NONE
    error_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
            "category": self.category.value,
            "severity": self.severity.value,
            "recovery_strategy": self.recovery_strategy.value,
            "metadata": dict(self.metadata),
        }


class DocAnchorError(Exception):
    """Base class for all engine errors."""

    default_category = ErrorCategory.SYSTEM
    default_severity = ErrorSeverity.MEDIUM
    default_recovery = ErrorRecoveryStrategy.NONE

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        severity: ErrorSeverity | None = None,
        recovery_strategy: ErrorRecoveryStrategy | None = None,
        cause: BaseException | None = None,
        **metadata: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = ErrorContext(
            category=category or self.default_category,
            severity=severity or self.default_severity,
            recovery_strategy=recovery_strategy or self.default_recovery,
            metadata=metadata,
        )
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "context": self.context.to_dict(),
        }


class ConfigurationError(DocAnchorError):
    default_category = ErrorCategory.CONFIGURATION
    default_severity = ErrorSeverity.HIGH
    default_recovery = ErrorRecoveryStrategy.OPERATOR


class UnsupportedAlgorithm(DocAnchorError):
    """A packed hash names an algorithm the registry cannot parse."""

    default_category = ErrorCategory.VALIDATION

    def __init__(self, algorithm: str, **metadata: Any) -> None:
        super().__init__(
            f"Unsupported hash algorithm: {algorithm!r}",
            algorithm=algorithm,
            **metadata,
        )
        self.algorithm = algorithm


class KeyMissing(DocAnchorError):
    """A required secret (HMAC key or signing key) is absent or invalid."""

    default_category = ErrorCategory.CRYPTO
    default_severity = ErrorSeverity.HIGH
    default_recovery = ErrorRecoveryStrategy.OPERATOR


class HmacKeyMissing(KeyMissing):
    def __init__(self, message: str = "HMAC key is not configured", **metadata: Any):
        super().__init__(message, **metadata)


class ProviderError(DocAnchorError):
    """Base for failures reported by an external anchoring provider."""

    default_category = ErrorCategory.PROVIDER
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        http_status: int | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, provider=provider, http_status=http_status, **kwargs)
        self.provider = provider
        self.http_status = http_status


class TransientProviderError(ProviderError):
    """Network failure, timeout, 5xx or rate limiting; retried with backoff."""

    default_category = ErrorCategory.NETWORK
    default_recovery = ErrorRecoveryStrategy.RETRY
    retryable = True


class PermanentProviderError(ProviderError):
    """Authentication or configuration rejected; retrying cannot succeed."""

    default_severity = ErrorSeverity.HIGH
    default_recovery = ErrorRecoveryStrategy.OPERATOR


class MalformedResponse(PermanentProviderError):
    """The provider answered with something that cannot be parsed."""


class QueueError(DocAnchorError):
    default_category = ErrorCategory.QUEUE


__all__ = [
    "ConfigurationError",
    "DocAnchorError",
    "ErrorCategory",
    "ErrorContext",
    "ErrorRecoveryStrategy",
    "ErrorSeverity",
    "HmacKeyMissing",
    "KeyMissing",
    "MalformedResponse",
    "PermanentProviderError",
    "ProviderError",
    "QueueError",
    "TransientProviderError",
    "UnsupportedAlgorithm",
]
