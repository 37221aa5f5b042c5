"""
Provider dispatcher protocol and shared result types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

import httpx

from ..errors import PermanentProviderError, ProviderError, TransientProviderError
from ..record import AnchorRecord

DispatchStatus = Literal["anchored", "retry", "failed"]

USER_AGENT = "docanchor"


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    anchor_url: str | None = None
    error: str | None = None
    http_status: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def anchored(cls, url: str | None = None, **details: Any) -> "DispatchResult":
        http_status = details.pop("http_status", None)
        return cls("anchored", anchor_url=url, http_status=http_status, details=details)

    @classmethod
    def from_error(cls, exc: ProviderError) -> "DispatchResult":
        return cls(
            "retry" if exc.retryable else "failed",
            error=exc.message,
            http_status=exc.http_status,
        )


@dataclass(frozen=True)
class ConnectionCheck:
    success: bool
    message: str


@runtime_checkable
class ProviderDispatcher(Protocol):
    """One implementation per external anchoring system."""

    name: str

    async def dispatch(self, record: AnchorRecord) -> DispatchResult:
        """Deliver ``record``; never raises for provider-side failures."""

    async def test_connection(self) -> ConnectionCheck:
        """Cheap read-only check of credentials and reachability."""


class HttpDispatcherMixin:
    """Shared httpx client handling for HTTP based dispatchers."""

    name = "http"

    def _init_client(self, client: httpx.AsyncClient | None, timeout: float) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout, headers={"User-Agent": USER_AGENT}
            )
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue a request, mapping transport failures to ``TransientProviderError``."""
        try:
            return await self._get_client().request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(
                f"timeout contacting {url}", provider=self.name, cause=exc
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientProviderError(
                f"network error: {exc}", provider=self.name, cause=exc
            ) from exc


def raise_for_status(
    response: httpx.Response,
    *,
    provider: str,
    permanent: frozenset[int],
    context: str,
) -> None:
    """Map a non-2xx response to a transient or permanent provider error."""
    code = response.status_code
    if 200 <= code < 300:
        return
    snippet = response.text[:256] if response.content else ""
    message = f"{context}: HTTP {code}"
    if snippet:
        message = f"{message} {snippet}"
    if code in permanent:
        raise PermanentProviderError(message, provider=provider, http_status=code)
    raise TransientProviderError(message, provider=provider, http_status=code)


__all__ = [
    "ConnectionCheck",
    "DispatchResult",
    "DispatchStatus",
    "HttpDispatcherMixin",
    "ProviderDispatcher",
    "raise_for_status",
]
