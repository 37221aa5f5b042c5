from __future__ import annotations

import json
from datetime import datetime, timezone

from docanchor.canonical import (
    b64decode,
    b64encode,
    canonical_json_bytes,
    document_message,
    normalize_text,
    pretty_json,
)
from docanchor.documents import Document, InMemoryDocumentStore
from docanchor.hashing import compute, pack_hmac, unpack
from docanchor.record import AnchorRecord, build_anchor_record, format_timestamp

NOW = datetime(2024, 2, 3, 4, 5, 6, tzinfo=timezone.utc)
KEY = "0123456789abcdef0123456789abcdef"


def test_normalize_text() -> None:
    assert normalize_text("  a  \r\n b\r c \n\n") == "a\nb\nc"
    assert normalize_text("") == ""


def test_document_message_layout() -> None:
    assert document_message(5, 2, " hi ") == "post_id:5\nauthor_id:2\ncontent:\nhi"


def test_json_helpers() -> None:
    payload = {"b": 1, "a": "é"}
    assert canonical_json_bytes(payload) == '{"a":"é","b":1}'.encode("utf-8")
    assert pretty_json(payload).startswith('{\n  "a"')
    assert b64decode(b64encode(b"\x00\xff")) == b"\x00\xff"


def test_effective_document_id() -> None:
    assert Document(post_id=3, author_id=1, content="").effective_id == "post-3"
    assert (
        Document(post_id=3, author_id=1, content="", post_type="page").effective_id
        == "page-3"
    )
    assert (
        Document(post_id=3, author_id=1, content="", document_id="custom").effective_id
        == "custom"
    )


def test_in_memory_store() -> None:
    store = InMemoryDocumentStore()
    doc = Document(post_id=1, author_id=1, content="v1")
    store.put(doc, "sha256:00")
    store.update_content("post-1", "v2")

    stored = store.get("post-1")
    assert stored is not None
    assert stored.document.content == "v2"
    assert stored.packed_hash == "sha256:00"
    assert store.get("post-404") is None


def test_standard_record() -> None:
    doc = Document(post_id=11, author_id=4, content="x", title="Hello")
    result = compute(doc)
    record = build_anchor_record(
        doc, result, producer_version="1.2.3", site_url="https://s", now=NOW
    )

    assert record.document_id == "post-11"
    assert record.post_id == "11"
    assert record.author_id == "4"
    assert record.hash_algorithm == "sha256"
    assert record.hash_value == result.digest
    assert record.integrity_mode == "Basic"
    assert record.hmac_value is None
    assert record.created_at == "2024-02-03T04:05:06Z"
    assert record.packed_hash == result.packed
    assert "hmac_value" not in record.to_dict()


def test_hmac_record() -> None:
    doc = Document(post_id=11, author_id=4, content="x")
    packed = pack_hmac(doc, "sha512", KEY)
    record = build_anchor_record(doc, packed, producer_version="1", now=NOW)

    assert record.integrity_mode == "HMAC"
    assert record.hmac_value == unpack(packed).digest
    assert record.packed_hash == packed


def test_legacy_record_is_basic_sha256() -> None:
    doc = Document(post_id=1, author_id=1, content="x")
    digest = compute(doc).digest
    record = build_anchor_record(doc, digest, producer_version="1", now=NOW)

    assert record.integrity_mode == "Basic"
    assert record.hash_algorithm == "sha256"
    assert record.hash_value == digest


def test_record_json_round_trip_is_stable() -> None:
    doc = Document(post_id=2, author_id=2, content="y")
    record = build_anchor_record(doc, compute(doc), producer_version="1", now=NOW)
    text = record.to_json()

    assert AnchorRecord.from_json(text) == record
    assert list(json.loads(text)) == sorted(json.loads(text))
    assert record.created_datetime == NOW


def test_format_timestamp_treats_naive_as_utc() -> None:
    assert format_timestamp(datetime(2024, 1, 1, 12, 0, 0)) == "2024-01-01T12:00:00Z"
