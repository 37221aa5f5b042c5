"""
docanchor: tamper-evident integrity anchoring for documents.

Hash canonical document content into self-describing packed strings, sign it,
and distribute anchor records to independent external verifiers (a git host,
an RFC 3161 timestamp authority and a public transparency log) through a
durable retry queue.
"""

from ._version import __version__
from .anchor_log import AnchorLog, AnchorLogEntry, LogPage
from .documents import Document, DocumentStore, InMemoryDocumentStore, StoredDocument
from .engine import AnchorEngine, build_dispatchers
from .errors import (
    ConfigurationError,
    DocAnchorError,
    HmacKeyMissing,
    KeyMissing,
    MalformedResponse,
    PermanentProviderError,
    TransientProviderError,
    UnsupportedAlgorithm,
)
from .hashing import (
    Hmac,
    Legacy,
    Standard,
    compute,
    hmac_status,
    pack,
    pack_hmac,
    unpack,
    verify,
    verify_packed,
)
from .queue import AnchorQueue, QueueJob, RetryPolicy
from .record import AnchorRecord, build_anchor_record
from .settings import Settings
from .signing import DSSEEnvelope, SigningKeypair, make_dsse, pae, sign, verify_dsse
from .verify import HashReport, LogEntryCheck, Verifier

__all__ = [
    "AnchorEngine",
    "AnchorLog",
    "AnchorLogEntry",
    "AnchorQueue",
    "AnchorRecord",
    "ConfigurationError",
    "DSSEEnvelope",
    "DocAnchorError",
    "Document",
    "DocumentStore",
    "HashReport",
    "Hmac",
    "HmacKeyMissing",
    "InMemoryDocumentStore",
    "KeyMissing",
    "Legacy",
    "LogEntryCheck",
    "LogPage",
    "MalformedResponse",
    "PermanentProviderError",
    "QueueJob",
    "RetryPolicy",
    "Settings",
    "SigningKeypair",
    "Standard",
    "StoredDocument",
    "TransientProviderError",
    "UnsupportedAlgorithm",
    "Verifier",
    "__version__",
    "build_anchor_record",
    "build_dispatchers",
    "compute",
    "hmac_status",
    "make_dsse",
    "pack",
    "pack_hmac",
    "pae",
    "sign",
    "unpack",
    "verify",
    "verify_dsse",
    "verify_packed",
]
