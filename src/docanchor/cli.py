"""
Operator command line for the anchoring engine.

Configuration comes from ``DOCANCHOR_*`` environment variables. Documents are
passed as JSON files with ``post_id``, ``author_id`` and ``content`` plus the
optional ``post_type``, ``title``, ``slug``, ``date_gmt``, ``document_id`` and
``packed_hash`` keys.

Exit codes: 0 success, 1 verification failure, 2 usage or configuration error.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from .documents import Document, InMemoryDocumentStore
from .engine import AnchorEngine
from .errors import DocAnchorError
from .hashing import hmac_status
from .queue import DispatchOutcome
from .settings import Settings


def _load_document(path: str) -> tuple[Document, str | None]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("document file must contain a JSON object")
    for required in ("post_id", "author_id", "content"):
        if required not in data:
            raise ValueError(f"document file is missing {required!r}")
    document = Document(
        post_id=data["post_id"],
        author_id=data["author_id"],
        content=data["content"],
        post_type=data.get("post_type", "post"),
        title=data.get("title", ""),
        slug=data.get("slug", ""),
        date_gmt=data.get("date_gmt", ""),
        document_id=data.get("document_id"),
    )
    return document, data.get("packed_hash")


def _emit(payload: dict[str, Any], output_format: str, text: str) -> None:
    if output_format == "json":
        print(json.dumps(payload, indent=2, sort_keys=True, default=str))
    else:
        print(text)


def _outcomes_payload(outcomes: list[DispatchOutcome]) -> dict[str, Any]:
    return {
        "dispatched": len(outcomes),
        "outcomes": [
            {
                "job_id": o.job_id,
                "provider": o.provider,
                "attempt": o.attempt,
                "status": o.result.status,
                "anchor_url": o.result.anchor_url,
                "error": o.result.error,
            }
            for o in outcomes
        ],
    }


def _outcomes_text(outcomes: list[DispatchOutcome]) -> str:
    if not outcomes:
        return "No jobs were due."
    lines = [f"Dispatched {len(outcomes)} provider attempt(s):"]
    for o in outcomes:
        detail = o.result.anchor_url or o.result.error or ""
        lines.append(
            f"  {o.job_id} {o.provider}: {o.result.status} "
            f"(attempt {o.attempt}) {detail}"
        )
    return "\n".join(lines)


async def _with_engine(
    settings: Settings,
    action: Callable[[AnchorEngine], Awaitable[int]],
) -> int:
    async with AnchorEngine(settings) as engine:
        return await action(engine)


def _cmd_process_queue(args: argparse.Namespace, settings: Settings) -> int:
    async def run(engine: AnchorEngine) -> int:
        outcomes = await engine.process_queue()
        _emit(_outcomes_payload(outcomes), args.output_format, _outcomes_text(outcomes))
        return 0

    return asyncio.run(_with_engine(settings, run))


def _cmd_anchor(args: argparse.Namespace, settings: Settings) -> int:
    document, _ = _load_document(args.document_file)

    async def run(engine: AnchorEngine) -> int:
        outcomes = await engine.anchor_now(document)
        _emit(_outcomes_payload(outcomes), args.output_format, _outcomes_text(outcomes))
        return 0

    return asyncio.run(_with_engine(settings, run))


def _cmd_hash(args: argparse.Namespace, settings: Settings) -> int:
    document, _ = _load_document(args.document_file)
    engine = AnchorEngine(settings, dispatchers={})
    result = engine.hash_document(document)
    payload = {
        "document_id": document.effective_id,
        "packed_hash": result.packed,
        "algorithm": result.algorithm,
        "requested_algorithm": result.requested_algorithm,
        "fallback": result.fallback,
        "mode": result.mode,
    }
    _emit(payload, args.output_format, result.packed)
    return 0


def _cmd_verify(args: argparse.Namespace, settings: Settings) -> int:
    document, stored_hash = _load_document(args.document_file)
    stored_hash = args.stored or stored_hash
    if not stored_hash:
        print("error: no stored hash (use --stored or packed_hash)", file=sys.stderr)
        return 2
    store = InMemoryDocumentStore()
    store.put(document, stored_hash)
    engine = AnchorEngine(settings, store=store, dispatchers={})
    report = engine.verify_hash(document.effective_id)
    text = "\n".join(
        [
            f"Document: {report.document_id}",
            f"Verified: {'yes' if report.verified else 'no'}",
            f"Stored:   {report.stored_hash}",
            f"Current:  {report.current_hash or '-'}",
            f"Mode:     {report.mode} ({report.algorithm})",
            report.message,
        ]
    )
    _emit(report.to_dict(), args.output_format, text)
    return 0 if report.verified else 1


def _cmd_verify_log_entry(args: argparse.Namespace, settings: Settings) -> int:
    async def run(engine: AnchorEngine) -> int:
        check = await engine.verify_log_entry(args.log_index)
        text = "\n".join(
            [
                f"Log index: {check.log_index}",
                f"Found: {'yes' if check.found else 'no'}",
                f"Recorded locally: {'yes' if check.locally_recorded else 'no'}",
                f"Index matches: {'yes' if check.log_index_matches else 'no'}",
                f"Inclusion proof: {'yes' if check.has_inclusion_proof else 'no'}",
                "Signed entry timestamp: "
                + ("yes" if check.has_signed_entry_timestamp else "no"),
            ]
            + ([f"Error: {check.error}"] if check.error else [])
        )
        _emit(check.to_dict(), args.output_format, text)
        return 0 if check.found and check.log_index_matches else 1

    return asyncio.run(_with_engine(settings, run))


def _cmd_prune_log(args: argparse.Namespace, settings: Settings) -> int:
    async def run(engine: AnchorEngine) -> int:
        removed = await engine.prune_log(args.days)
        _emit({"removed": removed}, args.output_format, f"Pruned {removed} entries.")
        return 0

    return asyncio.run(_with_engine(settings, run))


def _cmd_export_log(args: argparse.Namespace, settings: Settings) -> int:
    engine = AnchorEngine(settings, dispatchers={})
    limit = args.limit or settings.log.export_limit
    if args.output_format == "json":
        entries = [e.to_dict() for e in engine.log.entries()[:limit]]
        _emit({"entries": entries}, "json", "")
    else:
        sys.stdout.write(engine.log.export_text(limit))
    return 0


def _cmd_queue_status(args: argparse.Namespace, settings: Settings) -> int:
    engine = AnchorEngine(settings, dispatchers={})
    counts = engine.queue.counts()
    notices = engine.queue.notices()
    payload = {"counts": counts, "notices": [n.to_dict() for n in notices]}
    lines = [
        "Queue: "
        + ", ".join(f"{k}={v}" for k, v in counts.items()),
    ]
    for notice in notices:
        lines.append(f"  ! {notice.provider} {notice.job_id}: {notice.message}")
    _emit(payload, args.output_format, "\n".join(lines))
    return 0


def _cmd_hmac_status(args: argparse.Namespace, settings: Settings) -> int:
    status = hmac_status(settings.hash.hmac_enabled, settings.hash.key())
    _emit(asdict(status), args.output_format, status.notice_message)
    return 0 if status.notice_level in ("ok", "none") else 1


_COMMANDS: dict[str, Callable[[argparse.Namespace, Settings], int]] = {
    "process-queue": _cmd_process_queue,
    "anchor": _cmd_anchor,
    "hash": _cmd_hash,
    "verify": _cmd_verify,
    "verify-log-entry": _cmd_verify_log_entry,
    "prune-log": _cmd_prune_log,
    "export-log": _cmd_export_log,
    "queue-status": _cmd_queue_status,
    "hmac-status": _cmd_hmac_status,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="docanchor")
    sub = parser.add_subparsers(dest="command")

    def add(name: str, help_text: str) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        p.add_argument(
            "--format", dest="output_format", choices=["text", "json"], default="text"
        )
        return p

    add("process-queue", "Dispatch all due anchor jobs now")
    add("anchor", "Hash and anchor a document immediately").add_argument(
        "--document-file", required=True
    )
    add("hash", "Print the packed hash for a document").add_argument(
        "--document-file", required=True
    )
    v = add("verify", "Verify a document against its stored hash")
    v.add_argument("--document-file", required=True)
    v.add_argument("--stored", help="Stored packed hash (overrides the file)")
    add("verify-log-entry", "Cross-check a transparency log entry").add_argument(
        "log_index", type=int
    )
    add("prune-log", "Delete old anchor log entries").add_argument(
        "--days", type=int, default=None
    )
    add("export-log", "Export the anchor log").add_argument(
        "--limit", type=int, default=None
    )
    add("queue-status", "Show queue counts and operator notices")
    add("hmac-status", "Show HMAC integrity mode readiness")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = _COMMANDS.get(args.command or "")
    if handler is None:
        parser.print_help()
        return 2
    try:
        settings = Settings()
        return handler(args, settings)
    except ValidationError as exc:
        print(f"error: invalid configuration: {exc}", file=sys.stderr)
        return 2
    except DocAnchorError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 2
    except (OSError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
