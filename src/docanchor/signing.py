"""
Ed25519 detached signatures and DSSE envelopes.

A document's canonical signing message is always signed directly (the bare
signature). When DSSE is enabled the same message is additionally wrapped in
a Dead Simple Signing Envelope whose signature covers the Pre-Authentication
Encoding (PAE), binding it to a payload type. The bare signature is kept
either way so existing verifiers continue to work.

PAE length convention: ``len(payload)`` counts the raw payload bytes before
base64 encoding, for both signing and verification (DSSE v1).
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .canonical import b64decode, b64encode, signing_message
from .documents import Document
from .errors import KeyMissing

PAYLOAD_TYPE_DOCUMENT = "application/vnd.docanchor.document"
PAYLOAD_TYPE_MEDIA = "application/vnd.docanchor.media"

PUBLIC_KEY_BYTES = 32
SECRET_KEY_BYTES = 64

Provenance = Literal["site-longterm", "ephemeral"]


@dataclass(frozen=True)
class SigningKeypair:
    """Raw Ed25519 keys; ``private_key`` is the 64-byte seed||public form."""

    public_key: bytes
    private_key: bytes = field(repr=False)

    @classmethod
    def generate(cls) -> "SigningKeypair":
        sk = SigningKey.generate()
        pub = bytes(sk.verify_key)
        return cls(public_key=pub, private_key=bytes(sk) + pub)

    @classmethod
    def from_hex(cls, private_hex: str, public_hex: str) -> "SigningKeypair":
        try:
            private = bytes.fromhex(private_hex.strip())
            public = bytes.fromhex(public_hex.strip())
        except ValueError as exc:
            raise KeyMissing("signing keys must be hex encoded", cause=exc) from exc
        if len(private) != SECRET_KEY_BYTES:
            raise KeyMissing(
                "signing private key must be 64 bytes (128 hex characters)",
                length=len(private),
            )
        if len(public) != PUBLIC_KEY_BYTES:
            raise KeyMissing(
                "signing public key must be 32 bytes (64 hex characters)",
                length=len(public),
            )
        derived = bytes(SigningKey(private[:32]).verify_key)
        if derived != public:
            raise KeyMissing("signing public key does not match private key")
        return cls(public_key=public, private_key=private)

    @property
    def signing_key(self) -> SigningKey:
        return SigningKey(self.private_key[:32])


@dataclass(frozen=True)
class LongLivedKey:
    """Operator-supplied key; never persisted by the engine."""

    keypair: SigningKeypair
    provenance: Provenance = "site-longterm"


@dataclass(frozen=True)
class EphemeralKey:
    """Single-use key generated for one signing operation."""

    keypair: SigningKeypair
    provenance: Provenance = "ephemeral"


KeySource = Union[LongLivedKey, EphemeralKey]


def resolve_key_source(
    private_key_hex: str | None = None, public_key_hex: str | None = None
) -> KeySource:
    """Use the configured long-lived key when both halves exist, else a fresh one."""
    if private_key_hex and public_key_hex:
        return LongLivedKey(SigningKeypair.from_hex(private_key_hex, public_key_hex))
    return EphemeralKey(SigningKeypair.generate())


def keyid(public_key: bytes) -> str:
    """Content address of the raw public key bytes."""
    return hashlib.sha256(public_key).hexdigest()


def _as_bytes(message: str | bytes) -> bytes:
    return message.encode("utf-8") if isinstance(message, str) else message


def sign(message: str | bytes, keypair: SigningKeypair) -> bytes:
    return keypair.signing_key.sign(_as_bytes(message)).signature


def verify_signature(message: str | bytes, signature: bytes, public_key: bytes) -> bool:
    try:
        VerifyKey(public_key).verify(_as_bytes(message), signature)
    except (BadSignatureError, ValueError, TypeError):
        return False
    return True


def pae(payload_type: str, payload: bytes) -> bytes:
    """DSSE v1 Pre-Authentication Encoding."""
    type_bytes = payload_type.encode("utf-8")
    return b" ".join(
        [
            b"DSSEv1",
            str(len(type_bytes)).encode("ascii"),
            type_bytes,
            str(len(payload)).encode("ascii"),
            payload,
        ]
    )


@dataclass(frozen=True)
class DSSESignature:
    keyid: str
    sig: str


@dataclass(frozen=True)
class DSSEEnvelope:
    payload: str
    payload_type: str
    signatures: tuple[DSSESignature, ...]

    def __post_init__(self) -> None:
        if not self.signatures:
            raise ValueError("DSSE envelope requires at least one signature")

    def decoded_payload(self) -> bytes:
        return b64decode(self.payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "payload": self.payload,
            "payloadType": self.payload_type,
            "signatures": [{"keyid": s.keyid, "sig": s.sig} for s in self.signatures],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DSSEEnvelope":
        return cls(
            payload=data["payload"],
            payload_type=data["payloadType"],
            signatures=tuple(
                DSSESignature(keyid=s.get("keyid", ""), sig=s["sig"])
                for s in data.get("signatures", [])
            ),
        )


def make_dsse(
    message: str | bytes, payload_type: str, keypair: SigningKeypair
) -> DSSEEnvelope:
    payload = _as_bytes(message)
    signature = sign(pae(payload_type, payload), keypair)
    return DSSEEnvelope(
        payload=b64encode(payload),
        payload_type=payload_type,
        signatures=(
            DSSESignature(keyid=keyid(keypair.public_key), sig=b64encode(signature)),
        ),
    )


def verify_dsse(envelope: DSSEEnvelope, public_key: bytes) -> bool:
    """True when any signature in the envelope verifies over the rebuilt PAE."""
    try:
        payload = envelope.decoded_payload()
    except ValueError:
        return False
    message = pae(envelope.payload_type, payload)
    for entry in envelope.signatures:
        try:
            signature = b64decode(entry.sig)
        except ValueError:
            continue
        if verify_signature(message, signature, public_key):
            return True
    return False


@dataclass(frozen=True)
class SignatureBundle:
    """Everything stored alongside a document after signing it."""

    signature: str
    public_key: str
    keyid: str
    provenance: Provenance
    dsse: DSSEEnvelope | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "signature": self.signature,
            "public_key": self.public_key,
            "keyid": self.keyid,
            "key_type": self.provenance,
        }
        if self.dsse is not None:
            data["dsse"] = self.dsse.to_dict()
        return data


def sign_document(
    document: Document,
    key_source: KeySource,
    *,
    dsse_enabled: bool = False,
    payload_type: str = PAYLOAD_TYPE_DOCUMENT,
) -> SignatureBundle:
    message = signing_message(
        document.post_id,
        document.title,
        document.slug,
        document.content,
        document.date_gmt,
    )
    keypair = key_source.keypair
    envelope = make_dsse(message, payload_type, keypair) if dsse_enabled else None
    return SignatureBundle(
        signature=sign(message, keypair).hex(),
        public_key=keypair.public_key.hex(),
        keyid=keyid(keypair.public_key),
        provenance=key_source.provenance,
        dsse=envelope,
    )


def _spki(public_key: bytes, encoding: serialization.Encoding) -> bytes:
    if len(public_key) != PUBLIC_KEY_BYTES:
        raise KeyMissing("Ed25519 public key must be 32 bytes", length=len(public_key))
    return Ed25519PublicKey.from_public_bytes(public_key).public_bytes(
        encoding, serialization.PublicFormat.SubjectPublicKeyInfo
    )


def public_key_der(public_key: bytes) -> bytes:
    """SubjectPublicKeyInfo for a raw Ed25519 public key."""
    return _spki(public_key, serialization.Encoding.DER)


def public_key_pem(public_key: bytes) -> str:
    return _spki(public_key, serialization.Encoding.PEM).decode("ascii")


__all__ = [
    "DSSEEnvelope",
    "DSSESignature",
    "EphemeralKey",
    "KeySource",
    "LongLivedKey",
    "PAYLOAD_TYPE_DOCUMENT",
    "PAYLOAD_TYPE_MEDIA",
    "SignatureBundle",
    "SigningKeypair",
    "keyid",
    "make_dsse",
    "pae",
    "public_key_der",
    "public_key_pem",
    "resolve_key_source",
    "sign",
    "sign_document",
    "verify_dsse",
    "verify_signature",
]
