"""
Document input types and the document store boundary.

Document persistence belongs to the host application; the engine only needs
to read the current content and the packed hash stored alongside it.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Protocol


@dataclass(frozen=True)
class Document:
    """A document as received from the host on content change."""

    post_id: int | str
    author_id: int | str
    content: str
    post_type: str = "post"
    title: str = ""
    slug: str = ""
    date_gmt: str = ""
    document_id: str | None = None

    @property
    def effective_id(self) -> str:
        return self.document_id or f"{self.post_type}-{self.post_id}"


@dataclass(frozen=True)
class StoredDocument:
    """Current document state plus the packed hash recorded for it."""

    document: Document
    packed_hash: str | None = None


class DocumentStore(Protocol):
    def get(self, document_id: str) -> StoredDocument | None:
        """Return the document and its stored packed hash, if known."""


class InMemoryDocumentStore:
    """Dictionary-backed store used by the CLI and tests."""

    def __init__(self) -> None:
        self._docs: dict[str, StoredDocument] = {}

    def put(self, document: Document, packed_hash: str | None = None) -> None:
        self._docs[document.effective_id] = StoredDocument(document, packed_hash)

    def update_content(self, document_id: str, content: str) -> None:
        stored = self._docs[document_id]
        self._docs[document_id] = StoredDocument(
            replace(stored.document, content=content), stored.packed_hash
        )

    def get(self, document_id: str) -> StoredDocument | None:
        return self._docs.get(document_id)


__all__ = ["Document", "DocumentStore", "InMemoryDocumentStore", "StoredDocument"]
