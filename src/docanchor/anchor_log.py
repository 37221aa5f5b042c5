"""
Append-only log of every dispatch attempt.

Entries are stored as JSON lines. Only ``prune`` and ``clear`` remove
entries; a retry always appends a new entry instead of touching an old one.
"""

from __future__ import annotations

import asyncio
import math
import os
import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Literal

import orjson

from . import diagnostics
from .record import TIMESTAMP_FORMAT

LogStatus = Literal["anchored", "retry", "failed"]
StatusFilter = Literal["all", "anchored", "retry", "failed"]

DEFAULT_PER_PAGE = 25
SECONDS_PER_DAY = 86_400


@dataclass(frozen=True)
class AnchorLogEntry:
    provider: str
    status: LogStatus
    document_id: str
    hash_algorithm: str
    hash_value: str
    created_at: float
    job_id: str = ""
    post_type: str = ""
    hmac_value: str | None = None
    integrity_mode: str = "Basic"
    attempt_number: int = 1
    anchor_url: str | None = None
    error_message: str | None = None
    http_status: int | None = None
    log_index: int | None = None
    entry_uuid: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def created_at_utc(self) -> str:
        return datetime.fromtimestamp(self.created_at, tz=timezone.utc).strftime(
            TIMESTAMP_FORMAT
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnchorLogEntry":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class LogPage:
    entries: list[AnchorLogEntry]
    total: int
    pages: int
    page: int


def _encode(entry: AnchorLogEntry) -> bytes:
    return orjson.dumps(entry.to_dict(), option=orjson.OPT_SORT_KEYS)


class AnchorLog:
    """JSON-lines anchor log; in memory when ``path`` is ``None``."""

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = Path(path) if path else None
        self._clock = clock
        self._lock = asyncio.Lock()
        self._entries: list[AnchorLogEntry] = self._load()

    def _load(self) -> list[AnchorLogEntry]:
        if self._path is None or not self._path.exists():
            return []
        entries: list[AnchorLogEntry] = []
        with open(self._path, "rb") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    entries.append(AnchorLogEntry.from_dict(orjson.loads(line)))
                except (ValueError, TypeError) as exc:
                    diagnostics.warn(
                        "anchor-log",
                        "skipping unreadable log line",
                        path=str(self._path),
                        line=lineno,
                        error=str(exc),
                    )
        return entries

    def _append_line(self, line: bytes) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "ab") as f:
            f.write(line + b"\n")
            f.flush()
            os.fsync(f.fileno())

    def _rewrite(self, entries: list[AnchorLogEntry]) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_suffix(".tmp")
        with open(temp_path, "wb") as f:
            for entry in entries:
                f.write(_encode(entry) + b"\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, self._path)

    async def append(self, entry: AnchorLogEntry) -> None:
        async with self._lock:
            if self._path is not None:
                line = _encode(entry)
                await asyncio.to_thread(self._append_line, line)
            self._entries.append(entry)

    def entries(self) -> list[AnchorLogEntry]:
        """All entries, newest first."""
        return sorted(self._entries, key=lambda e: e.created_at, reverse=True)

    def query(
        self,
        page: int = 1,
        per_page: int = DEFAULT_PER_PAGE,
        status: StatusFilter = "all",
    ) -> LogPage:
        if per_page < 1:
            raise ValueError("per_page must be at least 1")
        page = max(page, 1)
        selected = [
            e for e in self.entries() if status == "all" or e.status == status
        ]
        total = len(selected)
        start = (page - 1) * per_page
        return LogPage(
            entries=selected[start : start + per_page],
            total=total,
            pages=math.ceil(total / per_page) if total else 0,
            page=page,
        )

    def find_by_log_index(self, log_index: int) -> AnchorLogEntry | None:
        for entry in self.entries():
            if entry.log_index == log_index:
                return entry
        return None

    async def prune(self, days: int, *, now: float | None = None) -> int:
        """Delete entries older than ``days`` days; returns how many were removed."""
        if days < 1:
            raise ValueError("days must be at least 1")
        cutoff = (self._clock() if now is None else now) - days * SECONDS_PER_DAY
        async with self._lock:
            kept = [e for e in self._entries if e.created_at >= cutoff]
            removed = len(self._entries) - len(kept)
            if removed:
                await asyncio.to_thread(self._rewrite, kept)
                self._entries = kept
        if removed:
            diagnostics.info("anchor-log", "pruned log entries", removed=removed)
        return removed

    async def clear(self) -> int:
        async with self._lock:
            removed = len(self._entries)
            await asyncio.to_thread(self._rewrite, [])
            self._entries = []
        return removed

    def export_text(self, limit: int = 5000) -> str:
        """Plain-text audit export, newest first."""
        lines = [
            "Anchor log export",
            f"Generated: {datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)}",
            "",
        ]
        for entry in self.entries()[:limit]:
            lines.append(
                " | ".join(
                    [
                        entry.created_at_utc,
                        entry.status.upper(),
                        entry.provider,
                        entry.document_id,
                        f"{entry.hash_algorithm}:{entry.hash_value}",
                        f"attempt {entry.attempt_number}",
                        entry.anchor_url or "-",
                        entry.error_message or "",
                    ]
                ).rstrip(" |")
            )
        return "\n".join(lines) + "\n"


__all__ = [
    "AnchorLog",
    "AnchorLogEntry",
    "DEFAULT_PER_PAGE",
    "LogPage",
    "LogStatus",
    "StatusFilter",
]
