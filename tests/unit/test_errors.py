from __future__ import annotations

import logging

import pytest

from docanchor import diagnostics
from docanchor.errors import (
    ConfigurationError,
    DocAnchorError,
    ErrorCategory,
    ErrorRecoveryStrategy,
    HmacKeyMissing,
    KeyMissing,
    MalformedResponse,
    PermanentProviderError,
    TransientProviderError,
    UnsupportedAlgorithm,
)
from docanchor.providers.base import DispatchResult


def test_error_context_is_populated() -> None:
    err = ConfigurationError("bad config", setting="queue.state_path")
    data = err.to_dict()

    assert data["error_type"] == "ConfigurationError"
    assert data["message"] == "bad config"
    assert data["context"]["category"] == "configuration"
    assert data["context"]["recovery_strategy"] == "operator"
    assert data["context"]["metadata"] == {"setting": "queue.state_path"}
    assert data["context"]["timestamp"].endswith("Z")
    assert err.context.error_id


def test_hierarchy() -> None:
    assert issubclass(HmacKeyMissing, KeyMissing)
    assert issubclass(MalformedResponse, PermanentProviderError)
    for cls in (UnsupportedAlgorithm, KeyMissing, TransientProviderError):
        assert issubclass(cls, DocAnchorError)


def test_provider_errors_carry_retryability() -> None:
    transient = TransientProviderError("slow", provider="rfc3161", http_status=503)
    permanent = MalformedResponse("garbage", provider="rfc3161")

    assert transient.retryable is True
    assert transient.context.category is ErrorCategory.NETWORK
    assert transient.context.recovery_strategy is ErrorRecoveryStrategy.RETRY
    assert permanent.retryable is False
    assert DispatchResult.from_error(transient).status == "retry"
    assert DispatchResult.from_error(transient).http_status == 503
    assert DispatchResult.from_error(permanent).status == "failed"


def test_cause_is_chained() -> None:
    root = ValueError("boom")
    err = KeyMissing("bad key", cause=root)
    assert err.__cause__ is root


def test_diagnostics_route_to_component_logger(
    caplog: pytest.LogCaptureFixture,
) -> None:
    diagnostics.configure(True)
    with caplog.at_level(logging.WARNING, logger="docanchor.queue"):
        diagnostics.warn("queue", "queue full", max_jobs=3)

    (record,) = [r for r in caplog.records if r.name == "docanchor.queue"]
    assert record.levelno == logging.WARNING
    assert record.getMessage() == "queue full max_jobs=3"


def test_diagnostics_can_be_disabled(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    monkeypatch.setenv("DOCANCHOR_INTERNAL_LOGGING_ENABLED", "false")
    with caplog.at_level(logging.DEBUG, logger="docanchor"):
        diagnostics.warn("queue", "suppressed")
    assert not [r for r in caplog.records if r.name.startswith("docanchor")]
