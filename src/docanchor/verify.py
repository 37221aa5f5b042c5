"""
Read-only verification of stored hashes and transparency-log entries.

Nothing here rewrites content, stored hashes or log entries; mismatches are
reported, never corrected.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from .anchor_log import AnchorLog
from .documents import DocumentStore
from .errors import ProviderError
from .hashing import HashVerification, verify_packed
from .providers.transparency_log import TransparencyLogDispatcher


@dataclass(frozen=True)
class HashReport:
    document_id: str
    found: bool
    verified: bool
    stored_hash: str | None = None
    current_hash: str | None = None
    mode: str | None = None
    algorithm: str | None = None
    hmac_key_missing: bool = False
    algorithm_unavailable: bool = False
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_verification(
        cls, document_id: str, outcome: HashVerification
    ) -> "HashReport":
        if outcome.hmac_key_missing:
            message = (
                "HmacKeyMissing: stored hash is keyed but no HMAC key is configured"
            )
        elif outcome.algorithm_unavailable:
            message = f"algorithm {outcome.algorithm} is not available on this host"
        elif outcome.verified:
            message = "content matches stored hash"
        else:
            message = "content does not match stored hash"
        return cls(
            document_id=document_id,
            found=True,
            verified=outcome.verified,
            stored_hash=outcome.stored_hash,
            current_hash=outcome.current_hash,
            mode=outcome.mode,
            algorithm=outcome.algorithm,
            hmac_key_missing=outcome.hmac_key_missing,
            algorithm_unavailable=outcome.algorithm_unavailable,
            message=message,
        )


@dataclass(frozen=True)
class LogEntryCheck:
    log_index: int
    found: bool
    locally_recorded: bool
    log_index_matches: bool
    uuid: str | None = None
    integrated_time: int | None = None
    has_inclusion_proof: bool = False
    has_signed_entry_timestamp: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Verifier:
    """Cross-checks documents and anchor log entries against live state."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        hmac_key: str | None = None,
        log: AnchorLog | None = None,
        transparency_log: TransparencyLogDispatcher | None = None,
    ) -> None:
        self._store = store
        self._hmac_key = hmac_key
        self._log = log
        self._tlog = transparency_log

    def verify_hash(self, document_id: str) -> HashReport:
        stored = self._store.get(document_id)
        if stored is None:
            return HashReport(
                document_id=document_id,
                found=False,
                verified=False,
                message="document not found",
            )
        if not stored.packed_hash:
            return HashReport(
                document_id=document_id,
                found=True,
                verified=False,
                message="no stored hash for document",
            )
        outcome = verify_packed(
            stored.document, stored.packed_hash, hmac_key=self._hmac_key
        )
        return HashReport.from_verification(document_id, outcome)

    async def verify_log_entry(self, log_index: int) -> LogEntryCheck:
        local = self._log.find_by_log_index(log_index) if self._log else None
        if self._tlog is None:
            return LogEntryCheck(
                log_index=log_index,
                found=False,
                locally_recorded=local is not None,
                log_index_matches=False,
                error="transparency log is not configured",
            )
        try:
            entry = await self._tlog.fetch_entry(log_index)
        except ProviderError as exc:
            return LogEntryCheck(
                log_index=log_index,
                found=False,
                locally_recorded=local is not None,
                log_index_matches=False,
                error=exc.message,
            )
        if entry is None:
            return LogEntryCheck(
                log_index=log_index,
                found=False,
                locally_recorded=local is not None,
                log_index_matches=False,
                error="entry not found in transparency log",
            )
        verification = entry.get("verification") or {}
        remote_index = entry.get("logIndex")
        matches = remote_index == log_index
        if local is not None and local.entry_uuid and entry.get("uuid"):
            matches = matches and local.entry_uuid == entry["uuid"]
        return LogEntryCheck(
            log_index=log_index,
            found=True,
            locally_recorded=local is not None,
            log_index_matches=matches,
            uuid=entry.get("uuid"),
            integrated_time=entry.get("integratedTime"),
            has_inclusion_proof=bool(verification.get("inclusionProof")),
            has_signed_entry_timestamp=bool(
                verification.get("signedEntryTimestamp")
            ),
        )


__all__ = ["HashReport", "LogEntryCheck", "Verifier"]
