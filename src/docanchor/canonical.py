"""
Canonical text and JSON serialization helpers.

Anything that is hashed, signed or shipped to a provider goes through one of
these functions so that the same logical input always yields the same bytes.
"""

from __future__ import annotations

import base64
import json
from typing import Any


def normalize_text(content: str) -> str:
    """Normalize line endings to LF, trim every line and the whole text."""
    text = content.replace("\r\n", "\n").replace("\r", "\n")
    lines = [line.strip() for line in text.split("\n")]
    return "\n".join(lines).strip()


def document_message(post_id: int | str, author_id: int | str, content: str) -> str:
    """
    Build the message that is digested for a document.

    The structural header binds the digest to the owning entity and its
    author, so two documents with identical bodies never share a hash.
    """
    return (
        f"post_id:{post_id}\n"
        f"author_id:{author_id}\n"
        f"content:\n{normalize_text(content)}"
    )


def signing_message(
    post_id: int | str,
    title: str,
    slug: str,
    content: str,
    date_gmt: str,
) -> str:
    """Build the versioned message covered by the document's Ed25519 signature."""
    return "\n".join(
        [
            "mdsm-ed25519-v1",
            str(post_id),
            title,
            slug,
            normalize_text(content),
            date_gmt,
        ]
    )


def canonical_json_bytes(payload: dict[str, Any]) -> bytes:
    """Deterministic compact JSON: sorted keys, no whitespace, UTF-8."""
    serialized = json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return serialized.encode("utf-8")


def pretty_json(payload: dict[str, Any]) -> str:
    """Human readable JSON committed to git hosts and hashed for the log entry."""
    return json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(s: str) -> bytes:
    return base64.b64decode(s, validate=True)
