"""
Durable, deduplicated retry queue of anchor jobs.

The queue owns the job lifecycle. ``drain`` hands each due job to every
provider that has not yet confirmed it, collects the results and applies the
resulting state transition in one step. Dispatchers never touch jobs.

State is a single JSON document written atomically (temp file, fsync,
``os.replace``); without a path the queue lives in memory only.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Literal, Mapping

import orjson

from . import diagnostics
from .anchor_log import AnchorLog, AnchorLogEntry, LogStatus
from .errors import ProviderError, QueueError
from .providers.base import DispatchResult, ProviderDispatcher
from .record import AnchorRecord

JobStatus = Literal["pending", "retry", "failed", "done"]
ProviderStatus = Literal["pending", "retry", "done", "failed", "skipped"]

STATE_VERSION = 1


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a ceiling and a bounded attempt budget."""

    max_attempts: int = 5
    base_delay: float = 60.0
    max_delay: float = 86_400.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        exponent = max(attempt - 1, 0)
        return min(self.base_delay * (2**exponent), self.max_delay)


def dedup_key(document_id: str, packed_hash: str) -> str:
    return hashlib.sha256(f"{document_id}\x00{packed_hash}".encode()).hexdigest()


@dataclass
class QueueJob:
    id: str
    record: AnchorRecord
    dedup_key: str
    providers: dict[str, ProviderStatus]
    attempt_count: int = 0
    next_attempt_at: float = 0.0
    status: JobStatus = "pending"
    created_at: float = 0.0
    last_error: str | None = None

    def outstanding(self) -> list[str]:
        return [p for p, s in self.providers.items() if s in ("pending", "retry")]

    def is_due(self, now: float) -> bool:
        return self.status in ("pending", "retry") and self.next_attempt_at <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "record": self.record.to_dict(),
            "dedup_key": self.dedup_key,
            "providers": dict(self.providers),
            "attempt_count": self.attempt_count,
            "next_attempt_at": self.next_attempt_at,
            "status": self.status,
            "created_at": self.created_at,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueueJob":
        return cls(
            id=data["id"],
            record=AnchorRecord.from_dict(data["record"]),
            dedup_key=data["dedup_key"],
            providers=dict(data.get("providers", {})),
            attempt_count=int(data.get("attempt_count", 0)),
            next_attempt_at=float(data.get("next_attempt_at", 0.0)),
            status=data.get("status", "pending"),
            created_at=float(data.get("created_at", 0.0)),
            last_error=data.get("last_error"),
        )


@dataclass
class Notice:
    """Persistent operator notice for failures that need a human."""

    id: str
    job_id: str
    provider: str
    message: str
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "provider": self.provider,
            "message": self.message,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class DispatchOutcome:
    job_id: str
    provider: str
    attempt: int
    result: DispatchResult


@dataclass
class _State:
    jobs: dict[str, QueueJob] = field(default_factory=dict)
    recent: dict[str, float] = field(default_factory=dict)
    notices: list[Notice] = field(default_factory=list)


class AnchorQueue:
    """Job queue with per-provider sub-status tracking."""

    def __init__(
        self,
        *,
        state_path: str | Path | None = None,
        policy: RetryPolicy | None = None,
        dedup_window: float = 60.0,
        max_jobs: int = 10_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = Path(state_path) if state_path else None
        self._policy = policy or RetryPolicy()
        self._dedup_window = dedup_window
        self._max_jobs = max_jobs
        self._clock = clock
        self._lock = asyncio.Lock()
        self._in_flight: set[str] = set()
        self._state = self._load()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def _load(self) -> _State:
        if self._path is None or not self._path.exists():
            return _State()
        try:
            data = orjson.loads(self._path.read_bytes())
            return _State(
                jobs={
                    j["id"]: QueueJob.from_dict(j) for j in data.get("jobs", [])
                },
                recent={k: float(v) for k, v in data.get("recent", {}).items()},
                notices=[Notice(**n) for n in data.get("notices", [])],
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            diagnostics.warn(
                "queue",
                "queue state corrupt, starting empty",
                path=str(self._path),
                error=str(exc),
            )
            return _State()

    def _serialize(self) -> bytes:
        return orjson.dumps(
            {
                "version": STATE_VERSION,
                "jobs": [j.to_dict() for j in self._state.jobs.values()],
                "recent": self._state.recent,
                "notices": [n.to_dict() for n in self._state.notices],
            },
            option=orjson.OPT_SORT_KEYS,
        )

    def _write_atomic(self, serialized: bytes) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_suffix(".tmp")
        with open(temp_path, "wb") as f:
            f.write(serialized)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, self._path)

    def _save(self) -> None:
        self._write_atomic(self._serialize())

    async def _save_async(self) -> None:
        if self._path is None:
            return
        await asyncio.to_thread(self._write_atomic, self._serialize())

    # ------------------------------------------------------------------
    # enqueue side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        record: AnchorRecord,
        providers: Iterable[str],
        *,
        now: float | None = None,
        force: bool = False,
    ) -> str | None:
        """
        Add a job for ``record``; returns its id or ``None`` when suppressed.

        A record with the same document id and packed hash enqueued within the
        dedup window is a no-op, as is enqueueing into a full queue. ``force``
        skips the dedup check (used for operator-triggered anchoring).
        """
        targets = list(dict.fromkeys(providers))
        if not targets:
            return None
        ts = self._clock() if now is None else now
        key = dedup_key(record.document_id, record.packed_hash)
        self._state.recent = {
            k: v
            for k, v in self._state.recent.items()
            if ts - v < self._dedup_window
        }
        if not force and key in self._state.recent:
            diagnostics.info(
                "queue", "duplicate enqueue suppressed", document_id=record.document_id
            )
            return None
        if len(self._state.jobs) >= self._max_jobs:
            diagnostics.warn(
                "queue",
                "queue full, enqueue dropped",
                document_id=record.document_id,
                max_jobs=self._max_jobs,
            )
            return None
        job = QueueJob(
            id=f"anchor_{uuid.uuid4().hex}",
            record=record,
            dedup_key=key,
            providers={name: "pending" for name in targets},
            next_attempt_at=ts,
            created_at=ts,
        )
        self._state.jobs[job.id] = job
        self._state.recent[key] = ts
        self._save()
        return job.id

    def get(self, job_id: str) -> QueueJob | None:
        return self._state.jobs.get(job_id)

    def jobs(self) -> list[QueueJob]:
        return sorted(self._state.jobs.values(), key=lambda j: j.created_at)

    def counts(self) -> dict[str, int]:
        totals = {"pending": 0, "retry": 0, "failed": 0}
        for job in self._state.jobs.values():
            if job.status in totals:
                totals[job.status] += 1
        totals["total"] = len(self._state.jobs)
        return totals

    def due_jobs(self, now: float | None = None) -> list[QueueJob]:
        ts = self._clock() if now is None else now
        return [
            j for j in self.jobs() if j.is_due(ts) and j.id not in self._in_flight
        ]

    def requeue(self, job_id: str, *, now: float | None = None) -> QueueJob:
        """Manually revive a failed job with a fresh retry budget."""
        job = self._state.jobs.get(job_id)
        if job is None:
            raise QueueError(f"unknown job: {job_id}", job_id=job_id)
        if job.status != "failed":
            raise QueueError(f"job {job_id} is not failed", job_id=job_id)
        job.providers = {
            p: ("pending" if s == "failed" else s) for p, s in job.providers.items()
        }
        job.attempt_count = 0
        job.status = "pending"
        job.last_error = None
        job.next_attempt_at = self._clock() if now is None else now
        self._save()
        return job

    def clear_queue(self) -> int:
        """Abandon every queued job; log entries and stored hashes are untouched."""
        removed = len(self._state.jobs)
        self._state.jobs.clear()
        self._state.recent.clear()
        self._save()
        return removed

    # ------------------------------------------------------------------
    # notices
    # ------------------------------------------------------------------

    def notices(self) -> list[Notice]:
        return list(self._state.notices)

    def dismiss_notice(self, notice_id: str) -> bool:
        before = len(self._state.notices)
        self._state.notices = [n for n in self._state.notices if n.id != notice_id]
        if len(self._state.notices) == before:
            return False
        self._save()
        return True

    def _notify(self, job: QueueJob, provider: str, message: str, now: float) -> None:
        self._state.notices.append(
            Notice(
                id=uuid.uuid4().hex,
                job_id=job.id,
                provider=provider,
                message=message,
                created_at=now,
            )
        )
        diagnostics.warn(
            "queue",
            "anchoring failed permanently",
            job_id=job.id,
            provider=provider,
            document_id=job.record.document_id,
            error=message,
        )

    # ------------------------------------------------------------------
    # drain side
    # ------------------------------------------------------------------

    async def drain(
        self,
        dispatchers: Mapping[str, ProviderDispatcher],
        *,
        log: AnchorLog | None = None,
        now: float | None = None,
    ) -> list[DispatchOutcome]:
        """Dispatch every due job to its outstanding providers."""
        ts = self._clock() if now is None else now
        outcomes: list[DispatchOutcome] = []
        for job in self.due_jobs(ts):
            outcomes.extend(await self._run_job(job.id, dispatchers, log, ts))
        return outcomes

    async def drain_job(
        self,
        job_id: str,
        dispatchers: Mapping[str, ProviderDispatcher],
        *,
        log: AnchorLog | None = None,
        now: float | None = None,
    ) -> list[DispatchOutcome]:
        ts = self._clock() if now is None else now
        return await self._run_job(job_id, dispatchers, log, ts)

    async def _run_job(
        self,
        job_id: str,
        dispatchers: Mapping[str, ProviderDispatcher],
        log: AnchorLog | None,
        now: float,
    ) -> list[DispatchOutcome]:
        async with self._lock:
            job = self._state.jobs.get(job_id)
            if (
                job is None
                or job.status not in ("pending", "retry")
                or job_id in self._in_flight
            ):
                return []
            self._in_flight.add(job_id)
            record = job.record
            attempt = job.attempt_count + 1
            targets = [p for p in job.outstanding() if p in dispatchers]
            disabled = [p for p in job.outstanding() if p not in dispatchers]

        try:
            results = await asyncio.gather(
                *(_dispatch_safely(dispatchers[p], record) for p in targets)
            )
            outcomes = [
                DispatchOutcome(job_id=job_id, provider=p, attempt=attempt, result=r)
                for p, r in zip(targets, results)
            ]

            final: dict[str, LogStatus] = {}
            async with self._lock:
                current = self._state.jobs.get(job_id)
                if current is None:
                    diagnostics.info(
                        "queue",
                        "job cleared while in flight, results discarded",
                        job_id=job_id,
                    )
                else:
                    final = self._apply(current, outcomes, disabled, now)
                    if current.status == "done":
                        del self._state.jobs[job_id]
                    await self._save_async()
        finally:
            self._in_flight.discard(job_id)

        if log is not None:
            for outcome in outcomes:
                status = final.get(outcome.provider, outcome.result.status)
                await log.append(_log_entry(record, outcome, status, now))
        return outcomes

    def _apply(
        self,
        job: QueueJob,
        outcomes: list[DispatchOutcome],
        disabled: list[str],
        now: float,
    ) -> dict[str, LogStatus]:
        """Apply one attempt's results; returns the status logged per provider."""
        job.attempt_count += 1
        final: dict[str, LogStatus] = {}
        transient: list[DispatchOutcome] = []
        for provider in disabled:
            job.providers[provider] = "skipped"
            diagnostics.info(
                "queue",
                "provider no longer enabled, skipped",
                job_id=job.id,
                provider=provider,
            )
        for outcome in outcomes:
            result = outcome.result
            final[outcome.provider] = result.status
            if result.status == "anchored":
                job.providers[outcome.provider] = "done"
            elif result.status == "failed":
                job.providers[outcome.provider] = "failed"
                job.last_error = result.error
                self._notify(job, outcome.provider, result.error or "failed", now)
            else:
                job.providers[outcome.provider] = "retry"
                job.last_error = result.error
                transient.append(outcome)

        if transient and job.attempt_count >= self._policy.max_attempts:
            for outcome in transient:
                job.providers[outcome.provider] = "failed"
                final[outcome.provider] = "failed"
                self._notify(
                    job,
                    outcome.provider,
                    f"retries exhausted after {job.attempt_count} attempts: "
                    f"{outcome.result.error or 'unknown error'}",
                    now,
                )
            transient = []

        statuses = set(job.providers.values())
        if statuses <= {"done", "skipped"}:
            job.status = "done"
        elif transient:
            job.status = "retry"
            job.next_attempt_at = now + self._policy.delay(job.attempt_count)
        else:
            job.status = "failed"
        return final


async def _dispatch_safely(
    dispatcher: ProviderDispatcher, record: AnchorRecord
) -> DispatchResult:
    try:
        return await dispatcher.dispatch(record)
    except ProviderError as exc:
        return DispatchResult.from_error(exc)
    except Exception as exc:
        diagnostics.warn(
            "queue",
            "dispatcher raised unexpectedly",
            provider=getattr(dispatcher, "name", type(dispatcher).__name__),
            error=repr(exc),
        )
        return DispatchResult("retry", error=str(exc) or type(exc).__name__)


def _log_entry(
    record: AnchorRecord, outcome: DispatchOutcome, status: LogStatus, now: float
) -> AnchorLogEntry:
    result = outcome.result
    return AnchorLogEntry(
        job_id=outcome.job_id,
        provider=outcome.provider,
        status=status,
        document_id=record.document_id,
        post_type=record.post_type,
        hash_algorithm=record.hash_algorithm,
        hash_value=record.hash_value,
        hmac_value=record.hmac_value,
        integrity_mode=record.integrity_mode,
        attempt_number=outcome.attempt,
        anchor_url=result.anchor_url,
        error_message=result.error,
        http_status=result.http_status,
        log_index=result.details.get("log_index"),
        entry_uuid=result.details.get("uuid"),
        created_at=now,
    )


__all__ = [
    "AnchorQueue",
    "DispatchOutcome",
    "JobStatus",
    "Notice",
    "QueueJob",
    "RetryPolicy",
    "dedup_key",
]
