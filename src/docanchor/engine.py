"""
Wiring for the anchoring engine.

``AnchorEngine`` turns a ``Settings`` instance into the hash registry calls,
queue, dispatchers, anchor log and verifier, passing each component only the
configuration it needs.
"""

from __future__ import annotations

import time
from typing import Callable, Mapping

import httpx

from . import diagnostics
from .anchor_log import AnchorLog
from .documents import Document, DocumentStore, InMemoryDocumentStore
from .errors import ConfigurationError, HmacKeyMissing
from .hashing import HashResult, compute
from .providers.base import ConnectionCheck, ProviderDispatcher
from .providers.githost import create_git_dispatcher
from .providers.rfc3161 import RFC3161Dispatcher
from .providers.transparency_log import TransparencyLogDispatcher
from .queue import AnchorQueue, DispatchOutcome, RetryPolicy
from .record import build_anchor_record
from .settings import Settings
from .signing import (
    PAYLOAD_TYPE_DOCUMENT,
    KeySource,
    SignatureBundle,
    resolve_key_source,
    sign_document,
)
from .verify import HashReport, LogEntryCheck, Verifier


def build_dispatchers(
    settings: Settings,
    *,
    client: httpx.AsyncClient | None = None,
    key_source_factory: Callable[[], KeySource] | None = None,
) -> dict[str, ProviderDispatcher]:
    """Instantiate a dispatcher for every enabled provider."""
    timeout = settings.http_timeout_seconds
    factory = key_source_factory or _key_source_factory(settings)
    dispatchers: dict[str, ProviderDispatcher] = {}
    if "git_host" in settings.providers_enabled:
        dispatchers["git_host"] = create_git_dispatcher(
            settings.git, client=client, timeout=timeout
        )
    if "rfc3161" in settings.providers_enabled:
        dispatchers["rfc3161"] = RFC3161Dispatcher(
            settings.rfc3161,
            producer_version=settings.producer_version,
            client=client,
            timeout=timeout,
        )
    if "transparency_log" in settings.providers_enabled:
        dispatchers["transparency_log"] = TransparencyLogDispatcher(
            settings.transparency_log,
            factory,
            producer_version=settings.producer_version,
            client=client,
            timeout=timeout,
        )
    return dispatchers


def _key_source_factory(settings: Settings) -> Callable[[], KeySource]:
    private_hex = settings.signing.private_key()
    public_hex = settings.signing.public_key_hex

    def _factory() -> KeySource:
        return resolve_key_source(private_hex, public_hex)

    return _factory


class AnchorEngine:
    """Entry point used by the host application and the CLI."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: DocumentStore | None = None,
        dispatchers: Mapping[str, ProviderDispatcher] | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or Settings()
        diagnostics.configure(self.settings.internal_logging_enabled)
        self._key_source_factory = _key_source_factory(self.settings)
        q = self.settings.queue
        self.queue = AnchorQueue(
            state_path=q.state_path,
            policy=RetryPolicy(
                max_attempts=q.max_attempts,
                base_delay=q.base_delay_seconds,
                max_delay=q.max_delay_seconds,
            ),
            dedup_window=q.dedup_window_seconds,
            max_jobs=q.max_jobs,
            clock=clock,
        )
        self.log = AnchorLog(self.settings.log.path, clock=clock)
        if dispatchers is None:
            dispatchers = build_dispatchers(
                self.settings,
                client=client,
                key_source_factory=self._key_source_factory,
            )
        self.dispatchers: dict[str, ProviderDispatcher] = dict(dispatchers)
        self.store = store if store is not None else InMemoryDocumentStore()
        tlog = self.dispatchers.get("transparency_log")
        if not isinstance(tlog, TransparencyLogDispatcher):
            tlog = TransparencyLogDispatcher(
                self.settings.transparency_log,
                self._key_source_factory,
                client=client,
                timeout=self.settings.http_timeout_seconds,
            )
        self._verify_tlog = tlog
        self.verifier = Verifier(
            self.store,
            hmac_key=self.settings.hash.key(),
            log=self.log,
            transparency_log=tlog,
        )

    # -- hashing / signing ---------------------------------------------

    def hash_document(self, document: Document) -> HashResult:
        cfg = self.settings.hash
        if cfg.hmac_enabled:
            key = cfg.key()
            if not key:
                diagnostics.warn(
                    "engine",
                    "HMAC mode enabled without a key",
                    document_id=document.effective_id,
                )
                raise HmacKeyMissing(document_id=document.effective_id)
            return compute(document, cfg.algorithm, hmac_key=key)
        return compute(document, cfg.algorithm)

    def sign_document(
        self, document: Document, *, payload_type: str = PAYLOAD_TYPE_DOCUMENT
    ) -> SignatureBundle:
        return sign_document(
            document,
            self._key_source_factory(),
            dsse_enabled=self.settings.signing.dsse_enabled,
            payload_type=payload_type,
        )

    # -- enqueue / drain -----------------------------------------------

    def on_document_saved(
        self, document: Document, *, force: bool = False
    ) -> tuple[HashResult, str | None]:
        """Hash ``document`` and queue it for every enabled provider."""
        result = self.hash_document(document)
        record = build_anchor_record(
            document,
            result,
            producer_version=self.settings.producer_version,
            site_url=self.settings.site_url,
        )
        job_id = self.queue.enqueue(
            record, sorted(self.settings.providers_enabled), force=force
        )
        return result, job_id

    async def process_queue(self, now: float | None = None) -> list[DispatchOutcome]:
        """Run all due work; intended to be called by an external scheduler."""
        outcomes = await self.queue.drain(self.dispatchers, log=self.log, now=now)
        if outcomes:
            diagnostics.info(
                "engine",
                "queue processed",
                dispatched=len(outcomes),
                anchored=sum(o.result.status == "anchored" for o in outcomes),
            )
        return outcomes

    drain = process_queue

    async def anchor_now(self, document: Document) -> list[DispatchOutcome]:
        """Operator-triggered anchoring that bypasses dedup and the schedule."""
        _, job_id = self.on_document_saved(document, force=True)
        if job_id is None:
            return []
        return await self.queue.drain_job(job_id, self.dispatchers, log=self.log)

    # -- verification / maintenance --------------------------------------

    def verify_hash(self, document_id: str) -> HashReport:
        return self.verifier.verify_hash(document_id)

    async def verify_log_entry(self, log_index: int) -> LogEntryCheck:
        return await self.verifier.verify_log_entry(log_index)

    async def prune_log(self, days: int | None = None) -> int:
        retention = days if days is not None else self.settings.log.retention_days
        if retention <= 0:
            raise ConfigurationError(
                "log retention is 'keep forever'; pass an explicit number of days"
            )
        return await self.log.prune(retention)

    async def test_connections(self) -> dict[str, ConnectionCheck]:
        return {
            name: await dispatcher.test_connection()
            for name, dispatcher in self.dispatchers.items()
        }

    async def aclose(self) -> None:
        closers = list(self.dispatchers.values())
        if self._verify_tlog not in closers:
            closers.append(self._verify_tlog)
        for dispatcher in closers:
            close = getattr(dispatcher, "aclose", None)
            if close is not None:
                await close()

    async def __aenter__(self) -> "AnchorEngine":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()


__all__ = ["AnchorEngine", "build_dispatchers"]
