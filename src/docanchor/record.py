"""
The anchor record distributed to every provider.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from typing import Any

from .canonical import pretty_json
from .documents import Document
from .hashing import HashResult, Hmac, Legacy, Standard, unpack

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


@dataclass(frozen=True)
class AnchorRecord:
    """Immutable proof payload; serialized identically for every provider."""

    document_id: str
    post_type: str
    hash_algorithm: str
    hash_value: str
    integrity_mode: str
    author_id: str
    created_at: str
    producer_version: str
    post_id: str | None = None
    post_title: str = ""
    hmac_value: str | None = None
    site_url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_json(self) -> str:
        return pretty_json(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnchorRecord":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_json(cls, text: str) -> "AnchorRecord":
        return cls.from_dict(json.loads(text))

    @property
    def packed_hash(self) -> str:
        """The packed form this record was built from."""
        if self.integrity_mode == "HMAC":
            return Hmac(self.hash_algorithm, self.hmac_value or self.hash_value).packed
        return Standard(self.hash_algorithm, self.hash_value).packed

    @property
    def created_datetime(self) -> datetime:
        return datetime.strptime(self.created_at, TIMESTAMP_FORMAT).replace(
            tzinfo=timezone.utc
        )


def build_anchor_record(
    document: Document,
    packed: str | HashResult,
    *,
    producer_version: str,
    site_url: str = "",
    now: datetime | None = None,
) -> AnchorRecord:
    """Construct the record for ``document`` from its packed hash."""
    packed_str = packed.packed if isinstance(packed, HashResult) else packed
    parsed = unpack(packed_str)
    match parsed:
        case Hmac(algorithm=algorithm, digest=digest):
            mode, hmac_value = "HMAC", digest
        case Standard(algorithm=algorithm, digest=digest) | Legacy(
            algorithm=algorithm, digest=digest
        ):
            mode, hmac_value = "Basic", None
    return AnchorRecord(
        document_id=document.effective_id,
        post_id=str(document.post_id),
        post_type=document.post_type,
        post_title=document.title,
        hash_algorithm=algorithm,
        hash_value=digest,
        hmac_value=hmac_value,
        integrity_mode=mode,
        author_id=str(document.author_id),
        created_at=format_timestamp(now or datetime.now(timezone.utc)),
        producer_version=producer_version,
        site_url=site_url,
    )


__all__ = [
    "AnchorRecord",
    "TIMESTAMP_FORMAT",
    "build_anchor_record",
    "format_timestamp",
]
