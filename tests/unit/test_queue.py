from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from docanchor.anchor_log import AnchorLog
from docanchor.documents import Document
from docanchor.errors import PermanentProviderError, QueueError
from docanchor.hashing import compute
from docanchor.providers.base import ConnectionCheck, DispatchResult
from docanchor.queue import AnchorQueue, RetryPolicy, dedup_key
from docanchor.record import AnchorRecord, build_anchor_record


def _record(content: str = "body", post_id: int = 1) -> AnchorRecord:
    doc = Document(post_id=post_id, author_id=1, content=content)
    return build_anchor_record(doc, compute(doc), producer_version="0.1.0")


class _StubDispatcher:
    def __init__(self, name: str, outcomes: list[DispatchResult | Exception]) -> None:
        self.name = name
        self.outcomes = outcomes
        self.calls = 0

    async def dispatch(self, record: AnchorRecord) -> DispatchResult:
        self.calls += 1
        outcome = self.outcomes[min(self.calls - 1, len(self.outcomes) - 1)]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def test_connection(self) -> ConnectionCheck:
        return ConnectionCheck(True, "ok")


OK = DispatchResult.anchored("https://anchor.example/1")
RETRY = DispatchResult("retry", error="HTTP 503")
FAIL = DispatchResult("failed", error="HTTP 401")


def test_backoff_grows_exponentially_with_ceiling() -> None:
    policy = RetryPolicy(max_attempts=5, base_delay=60, max_delay=600)
    assert [policy.delay(n) for n in range(1, 6)] == [60, 120, 240, 480, 600]


@pytest.mark.critical
def test_duplicate_enqueue_within_window_is_suppressed() -> None:
    queue = AnchorQueue(dedup_window=60)
    record = _record()

    first = queue.enqueue(record, ["a"], now=1000.0)
    second = queue.enqueue(record, ["a"], now=1030.0)
    third = queue.enqueue(record, ["a"], now=1061.0)

    assert first is not None and first.startswith("anchor_")
    assert second is None
    assert third is not None and third != first
    assert len(queue.jobs()) == 2


def test_different_hash_is_not_a_duplicate() -> None:
    queue = AnchorQueue()
    assert queue.enqueue(_record("v1"), ["a"], now=0.0)
    assert queue.enqueue(_record("v2"), ["a"], now=0.0)


def test_force_bypasses_dedup_and_empty_providers_noop() -> None:
    queue = AnchorQueue()
    record = _record()
    assert queue.enqueue(record, ["a"], now=0.0)
    assert queue.enqueue(record, ["a"], now=1.0, force=True)
    assert queue.enqueue(_record("other"), [], now=1.0) is None


def test_full_queue_drops_enqueue() -> None:
    queue = AnchorQueue(max_jobs=1)
    assert queue.enqueue(_record("one"), ["a"], now=0.0)
    assert queue.enqueue(_record("two"), ["a"], now=0.0) is None


def test_dedup_key_binds_document_and_hash() -> None:
    assert dedup_key("post-1", "sha256:aa") != dedup_key("post-1", "sha256:bb")
    assert dedup_key("post-1", "sha256:aa") != dedup_key("post-2", "sha256:aa")


@pytest.mark.asyncio
async def test_success_removes_job_and_logs() -> None:
    queue = AnchorQueue()
    log = AnchorLog()
    job_id = queue.enqueue(_record(), ["a"], now=0.0)

    outcomes = await queue.drain({"a": _StubDispatcher("a", [OK])}, log=log, now=0.0)

    assert [o.result.status for o in outcomes] == ["anchored"]
    assert queue.get(job_id or "") is None
    (entry,) = log.entries()
    assert entry.status == "anchored"
    assert entry.attempt_number == 1
    assert entry.anchor_url == "https://anchor.example/1"


@pytest.mark.asyncio
async def test_transient_failure_schedules_backoff_then_exhausts() -> None:
    policy = RetryPolicy(max_attempts=3, base_delay=10, max_delay=1000)
    queue = AnchorQueue(policy=policy)
    log = AnchorLog()
    stub = _StubDispatcher("a", [RETRY])
    job_id = queue.enqueue(_record(), ["a"], now=0.0) or ""

    await queue.drain({"a": stub}, log=log, now=0.0)
    job = queue.get(job_id)
    assert job is not None
    assert job.status == "retry"
    assert job.attempt_count == 1
    assert job.next_attempt_at == 10.0

    assert await queue.drain({"a": stub}, log=log, now=5.0) == []
    assert stub.calls == 1

    await queue.drain({"a": stub}, log=log, now=10.0)
    assert job.next_attempt_at == 30.0

    await queue.drain({"a": stub}, log=log, now=30.0)
    assert job.status == "failed"
    assert job.providers == {"a": "failed"}
    assert stub.calls == 3

    await queue.drain({"a": stub}, log=log, now=10_000.0)
    assert stub.calls == 3
    assert [e.attempt_number for e in reversed(log.entries())] == [1, 2, 3]
    assert [e.status for e in reversed(log.entries())] == ["retry", "retry", "failed"]
    assert any("retries exhausted" in n.message for n in queue.notices())


@pytest.mark.asyncio
async def test_permanent_failure_fails_without_retry() -> None:
    queue = AnchorQueue()
    stub = _StubDispatcher("a", [FAIL])
    job_id = queue.enqueue(_record(), ["a"], now=0.0) or ""

    await queue.drain({"a": stub}, now=0.0)
    job = queue.get(job_id)

    assert job is not None
    assert job.status == "failed"
    assert job.attempt_count == 1
    assert job.last_error == "HTTP 401"
    assert len(queue.notices()) == 1


@pytest.mark.critical
@pytest.mark.asyncio
async def test_providers_progress_independently() -> None:
    queue = AnchorQueue(policy=RetryPolicy(max_attempts=2, base_delay=1))
    good = _StubDispatcher("good", [OK])
    bad = _StubDispatcher("bad", [RETRY])
    dispatchers = {"good": good, "bad": bad}
    job_id = queue.enqueue(_record(), ["good", "bad"], now=0.0) or ""

    await queue.drain(dispatchers, now=0.0)
    job = queue.get(job_id)
    assert job is not None
    assert job.providers == {"good": "done", "bad": "retry"}
    assert job.status == "retry"

    await queue.drain(dispatchers, now=100.0)
    assert good.calls == 1
    assert bad.calls == 2
    assert job.providers == {"good": "done", "bad": "failed"}
    assert job.status == "failed"


@pytest.mark.asyncio
async def test_permanent_on_one_provider_keeps_other_retrying() -> None:
    queue = AnchorQueue()
    job_id = queue.enqueue(_record(), ["x", "y"], now=0.0) or ""
    await queue.drain(
        {"x": _StubDispatcher("x", [FAIL]), "y": _StubDispatcher("y", [RETRY])},
        now=0.0,
    )
    job = queue.get(job_id)
    assert job is not None
    assert job.providers == {"x": "failed", "y": "retry"}
    assert job.status == "retry"


@pytest.mark.asyncio
async def test_dispatcher_exceptions_are_contained() -> None:
    queue = AnchorQueue()
    job_id = queue.enqueue(_record(), ["boom", "perm"], now=0.0) or ""
    await queue.drain(
        {
            "boom": _StubDispatcher("boom", [RuntimeError("socket closed")]),
            "perm": _StubDispatcher(
                "perm", [PermanentProviderError("bad token", provider="perm")]
            ),
        },
        now=0.0,
    )
    job = queue.get(job_id)
    assert job is not None
    assert job.providers == {"boom": "retry", "perm": "failed"}


@pytest.mark.asyncio
async def test_disabled_provider_is_skipped() -> None:
    queue = AnchorQueue()
    log = AnchorLog()
    job_id = queue.enqueue(_record(), ["a", "ghost"], now=0.0) or ""
    outcomes = await queue.drain({"a": _StubDispatcher("a", [OK])}, log=log, now=0.0)

    assert [o.provider for o in outcomes] == ["a"]
    assert queue.get(job_id) is None
    assert queue.notices() == []
    assert [e.provider for e in log.entries()] == ["a"]


@pytest.mark.asyncio
async def test_job_with_only_disabled_providers_completes() -> None:
    queue = AnchorQueue()
    job_id = queue.enqueue(_record(), ["ghost"], now=0.0) or ""

    assert await queue.drain({}, now=0.0) == []
    assert queue.get(job_id) is None
    assert queue.notices() == []


@pytest.mark.asyncio
async def test_requeue_revives_failed_job() -> None:
    queue = AnchorQueue()
    job_id = queue.enqueue(_record(), ["a"], now=0.0) or ""
    await queue.drain({"a": _StubDispatcher("a", [FAIL])}, now=0.0)

    job = queue.requeue(job_id, now=50.0)
    assert job.status == "pending"
    assert job.attempt_count == 0
    assert job.providers == {"a": "pending"}

    await queue.drain({"a": _StubDispatcher("a", [OK])}, now=50.0)
    assert queue.get(job_id) is None

    with pytest.raises(QueueError):
        queue.requeue(job_id)


def test_requeue_rejects_active_job() -> None:
    queue = AnchorQueue()
    job_id = queue.enqueue(_record(), ["a"], now=0.0) or ""
    with pytest.raises(QueueError):
        queue.requeue(job_id)


@pytest.mark.asyncio
async def test_clear_queue_discards_in_flight_results() -> None:
    queue = AnchorQueue()
    log = AnchorLog()
    started = asyncio.Event()
    gate = asyncio.Event()

    class _Slow(_StubDispatcher):
        async def dispatch(self, record: AnchorRecord) -> DispatchResult:
            started.set()
            await gate.wait()
            return OK

    queue.enqueue(_record(), ["slow"], now=0.0)
    task = asyncio.create_task(
        queue.drain({"slow": _Slow("slow", [])}, log=log, now=0.0)
    )
    await started.wait()
    assert queue.clear_queue() == 1
    gate.set()
    outcomes = await task

    assert len(outcomes) == 1
    assert queue.jobs() == []
    assert len(log.entries()) == 1


def test_counts_and_notices() -> None:
    queue = AnchorQueue()
    queue.enqueue(_record("a"), ["x"], now=0.0)
    queue.enqueue(_record("b"), ["x"], now=0.0)
    assert queue.counts() == {"pending": 2, "retry": 0, "failed": 0, "total": 2}
    assert queue.notices() == []
    assert queue.dismiss_notice("missing") is False


@pytest.mark.asyncio
async def test_dismiss_notice() -> None:
    queue = AnchorQueue()
    queue.enqueue(_record(), ["a"], now=0.0)
    await queue.drain({"a": _StubDispatcher("a", [FAIL])}, now=0.0)

    (notice,) = queue.notices()
    assert notice.provider == "a"
    assert queue.dismiss_notice(notice.id) is True
    assert queue.notices() == []


@pytest.mark.asyncio
async def test_state_survives_restart(tmp_path: Path) -> None:
    state = tmp_path / "queue.json"
    queue = AnchorQueue(state_path=state)
    record = _record()
    job_id = queue.enqueue(record, ["a", "b"], now=0.0) or ""
    await queue.drain(
        {"a": _StubDispatcher("a", [OK]), "b": _StubDispatcher("b", [RETRY])}, now=0.0
    )

    reloaded = AnchorQueue(state_path=state)
    job = reloaded.get(job_id)
    assert job is not None
    assert job.record == record
    assert job.providers == {"a": "done", "b": "retry"}
    assert job.status == "retry"
    assert reloaded.enqueue(record, ["a"], now=1.0) is None
    assert json.loads(state.read_text())["version"] == 1


def test_corrupt_state_starts_empty(tmp_path: Path) -> None:
    state = tmp_path / "queue.json"
    state.write_text("{not json", encoding="utf-8")
    queue = AnchorQueue(state_path=state)
    assert queue.jobs() == []


@pytest.mark.critical
@pytest.mark.asyncio
async def test_overlapping_drains_dispatch_each_provider_once() -> None:
    queue = AnchorQueue()
    log = AnchorLog()
    gate = asyncio.Event()

    class _Slow(_StubDispatcher):
        async def dispatch(self, record: AnchorRecord) -> DispatchResult:
            self.calls += 1
            await gate.wait()
            return OK

    slow = _Slow("a", [])
    job_id = queue.enqueue(_record(), ["a"], now=0.0) or ""
    first = asyncio.create_task(queue.drain({"a": slow}, log=log, now=0.0))
    second = asyncio.create_task(queue.drain_job(job_id, {"a": slow}, log=log))
    await asyncio.sleep(0)
    assert queue.due_jobs(0.0) == []

    gate.set()
    outcomes = await asyncio.gather(first, second)

    assert slow.calls == 1
    assert sorted(len(o) for o in outcomes) == [0, 1]
    assert queue.get(job_id) is None
    assert len(log.entries()) == 1
