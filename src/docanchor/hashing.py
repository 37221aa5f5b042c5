"""
Hash registry and keyed (HMAC) integrity mode.

Documents are canonicalized, digested with a configured algorithm and packed
into a self-describing string:

- ``sha256:<hex>``        standard mode
- ``hmac-sha256:<hex>``   keyed mode
- ``<hex>``               legacy bare digest, read as standard SHA-256

``unpack`` turns a packed string into one of the ``Standard``/``Hmac``/
``Legacy`` variants; everything else dispatches on that variant.
"""

from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass
from typing import Callable, Literal, Union

import blake3

from . import diagnostics
from .canonical import document_message
from .documents import Document
from .errors import HmacKeyMissing, UnsupportedAlgorithm

DEFAULT_ALGORITHM = "sha256"
HMAC_KEY_MIN_LENGTH = 32
HMAC_PREFIX = "hmac-"

Category = Literal["standard", "experimental", "deprecated", "regional"]
Mode = Literal["standard", "hmac"]

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


@dataclass(frozen=True)
class AlgorithmInfo:
    name: str
    label: str
    category: Category
    digest_bits: int


ALGORITHMS: dict[str, AlgorithmInfo] = {
    info.name: info
    for info in (
        AlgorithmInfo("sha256", "SHA-256", "standard", 256),
        AlgorithmInfo("sha224", "SHA-224", "standard", 224),
        AlgorithmInfo("sha384", "SHA-384", "standard", 384),
        AlgorithmInfo("sha512", "SHA-512", "standard", 512),
        AlgorithmInfo("sha512-224", "SHA-512/224", "standard", 224),
        AlgorithmInfo("sha512-256", "SHA-512/256", "standard", 256),
        AlgorithmInfo("sha3-256", "SHA3-256", "standard", 256),
        AlgorithmInfo("sha3-512", "SHA3-512", "standard", 512),
        AlgorithmInfo("blake2b", "BLAKE2b-512", "standard", 512),
        AlgorithmInfo("blake2s", "BLAKE2s-256", "standard", 256),
        AlgorithmInfo("sha256d", "SHA-256d (double)", "standard", 256),
        AlgorithmInfo("ripemd160", "RIPEMD-160", "standard", 160),
        AlgorithmInfo("whirlpool", "Whirlpool-512", "standard", 512),
        AlgorithmInfo("blake3", "BLAKE3-256", "experimental", 256),
        AlgorithmInfo("shake128", "SHAKE128 (256-bit)", "experimental", 256),
        AlgorithmInfo("shake256", "SHAKE256 (512-bit)", "experimental", 512),
        AlgorithmInfo("gost", "GOST R 34.11-94", "regional", 256),
        AlgorithmInfo("gost-crypto", "GOST R 34.11-94 (CryptoPro)", "regional", 256),
        AlgorithmInfo("md5", "MD5", "deprecated", 128),
        AlgorithmInfo("sha1", "SHA-1", "deprecated", 160),
    )
}

# hashlib.new() names for algorithms not exposed as module attributes
_OPENSSL_NAMES = {
    "sha512-224": "sha512_224",
    "sha512-256": "sha512_256",
    "sha3-256": "sha3_256",
    "sha3-512": "sha3_512",
    "ripemd160": "ripemd160",
    "whirlpool": "whirlpool",
    "gost": "md_gost94",
    "gost-crypto": "md_gost94",
}

# primitives hashlib lacks; HMAC over these uses the RFC 2104 construction
_BLOCK_HASHES: dict[str, Callable[[bytes], bytes]] = {
    "sha256d": lambda b: hashlib.sha256(hashlib.sha256(b).digest()).digest(),
    "blake3": lambda b: blake3.blake3(b).digest(),
}


def _constructor(name: str) -> Callable[..., "hashlib._Hash"] | None:
    """Return a zero-arg-capable hash constructor usable with ``hmac``."""
    if name == "blake2b":
        return lambda data=b"": hashlib.blake2b(data, digest_size=64)
    if name == "blake2s":
        return lambda data=b"": hashlib.blake2s(data, digest_size=32)
    if name in ("sha256", "sha224", "sha384", "sha512", "md5", "sha1"):
        return getattr(hashlib, name)
    openssl_name = _OPENSSL_NAMES.get(name)
    if openssl_name is None:
        return None

    def _new(data: bytes = b"") -> "hashlib._Hash":
        return hashlib.new(openssl_name, data)

    return _new


def _raw_digest(name: str, data: bytes) -> bytes:
    if name in _BLOCK_HASHES:
        return _BLOCK_HASHES[name](data)
    if name == "shake128":
        return hashlib.shake_128(data).digest(32)
    if name == "shake256":
        return hashlib.shake_256(data).digest(64)
    ctor = _constructor(name)
    if ctor is None:
        raise UnsupportedAlgorithm(name)
    return ctor(data).digest()


def _raw_hmac(name: str, key: bytes, data: bytes) -> bytes:
    if name in _BLOCK_HASHES:
        return _hmac_rfc2104(_BLOCK_HASHES[name], key, data)
    ctor = _constructor(name)
    if ctor is None:
        raise UnsupportedAlgorithm(name)
    return hmac.new(key, data, ctor).digest()


def _hmac_rfc2104(
    h: Callable[[bytes], bytes], key: bytes, data: bytes, block_size: int = 64
) -> bytes:
    if len(key) > block_size:
        key = h(key)
    key = key.ljust(block_size, b"\x00")
    ipad = bytes(b ^ 0x36 for b in key)
    opad = bytes(b ^ 0x5C for b in key)
    return h(opad + h(ipad + data))


def is_available(algorithm: str, *, keyed: bool = False) -> bool:
    """Whether this host can compute ``algorithm`` (as HMAC when ``keyed``)."""
    if algorithm not in ALGORITHMS:
        return False
    if keyed and algorithm in ("shake128", "shake256"):
        return False
    try:
        if keyed:
            _raw_hmac(algorithm, b"k", b"")
        else:
            _raw_digest(algorithm, b"")
    except (ValueError, TypeError, UnsupportedAlgorithm):
        return False
    return True


def available_algorithms(*, keyed: bool = False) -> list[str]:
    return [name for name in ALGORITHMS if is_available(name, keyed=keyed)]


def resolve_algorithm(requested: str, *, keyed: bool = False) -> tuple[str, bool]:
    """
    Pick the algorithm actually used for ``requested``.

    Returns ``(algorithm, fallback)``. Unknown names raise
    ``UnsupportedAlgorithm``; known but unavailable ones fall back
    deterministically and report ``fallback=True``.
    """
    name = requested.strip().lower()
    if name not in ALGORITHMS:
        raise UnsupportedAlgorithm(requested)
    if is_available(name, keyed=keyed):
        return name, False
    used = DEFAULT_ALGORITHM
    diagnostics.warn(
        "hashing",
        "algorithm unavailable, falling back",
        requested=name,
        used=used,
        keyed=keyed,
    )
    return used, True


# ---------------------------------------------------------------------------
# Packed hash variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Standard:
    algorithm: str
    digest: str
    mode: Mode = "standard"

    @property
    def packed(self) -> str:
        return f"{self.algorithm}:{self.digest}"


@dataclass(frozen=True)
class Hmac:
    algorithm: str
    digest: str
    mode: Mode = "hmac"

    @property
    def packed(self) -> str:
        return f"{HMAC_PREFIX}{self.algorithm}:{self.digest}"


@dataclass(frozen=True)
class Legacy:
    """Bare hex digest written before packing existed; always SHA-256."""

    digest: str
    algorithm: str = DEFAULT_ALGORITHM
    mode: Mode = "standard"

    @property
    def packed(self) -> str:
        return self.digest


Unpacked = Union[Standard, Hmac, Legacy]


def unpack(packed: str) -> Unpacked:
    value = packed.strip()
    if ":" not in value:
        if value and _HEX_RE.match(value):
            return Legacy(digest=value.lower())
        raise UnsupportedAlgorithm(value, reason="not a packed hash")
    prefix, _, digest = value.partition(":")
    prefix = prefix.lower()
    digest = digest.lower()
    if prefix.startswith(HMAC_PREFIX):
        algorithm = prefix[len(HMAC_PREFIX) :]
        if algorithm not in ALGORITHMS:
            raise UnsupportedAlgorithm(algorithm)
        return Hmac(algorithm=algorithm, digest=digest)
    if prefix not in ALGORITHMS:
        raise UnsupportedAlgorithm(prefix)
    return Standard(algorithm=prefix, digest=digest)


@dataclass(frozen=True)
class HashResult:
    """Outcome of hashing one document."""

    value: Standard | Hmac
    requested_algorithm: str
    fallback: bool

    @property
    def packed(self) -> str:
        return self.value.packed

    @property
    def algorithm(self) -> str:
        return self.value.algorithm

    @property
    def digest(self) -> str:
        return self.value.digest

    @property
    def mode(self) -> Mode:
        return self.value.mode


def _message_bytes(document: Document) -> bytes:
    return document_message(
        document.post_id, document.author_id, document.content
    ).encode("utf-8")


def _key_bytes(key: str | bytes) -> bytes:
    return key.encode("utf-8") if isinstance(key, str) else key


def compute(
    document: Document,
    algorithm: str = DEFAULT_ALGORITHM,
    *,
    hmac_key: str | bytes | None = None,
) -> HashResult:
    """Hash ``document``; keyed mode is used whenever ``hmac_key`` is given."""
    data = _message_bytes(document)
    if hmac_key is not None:
        key = _key_bytes(hmac_key)
        if not key:
            raise HmacKeyMissing()
        if len(key) < HMAC_KEY_MIN_LENGTH:
            diagnostics.warn(
                "hashing",
                "HMAC key is shorter than recommended",
                length=len(key),
                minimum=HMAC_KEY_MIN_LENGTH,
            )
        used, fallback = resolve_algorithm(algorithm, keyed=True)
        value: Standard | Hmac = Hmac(used, _raw_hmac(used, key, data).hex())
    else:
        used, fallback = resolve_algorithm(algorithm)
        value = Standard(used, _raw_digest(used, data).hex())
    return HashResult(value=value, requested_algorithm=algorithm, fallback=fallback)


def pack(document: Document, algorithm: str = DEFAULT_ALGORITHM) -> str:
    return compute(document, algorithm).packed


def pack_hmac(
    document: Document, algorithm: str, key: str | bytes | None
) -> str:
    if key is None:
        raise HmacKeyMissing()
    return compute(document, algorithm, hmac_key=key).packed


@dataclass(frozen=True)
class HashVerification:
    verified: bool
    stored_hash: str
    current_hash: str | None
    mode: Mode
    algorithm: str
    hmac_key_missing: bool = False
    algorithm_unavailable: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "verified": self.verified,
            "stored_hash": self.stored_hash,
            "current_hash": self.current_hash,
            "mode": self.mode,
            "algorithm": self.algorithm,
            "hmac_key_missing": self.hmac_key_missing,
            "algorithm_unavailable": self.algorithm_unavailable,
        }


def verify_packed(
    document: Document,
    packed: str,
    *,
    hmac_key: str | bytes | None = None,
) -> HashVerification:
    """
    Recompute the digest with the algorithm recorded in ``packed`` and compare.

    Never raises on mismatch, missing key or an algorithm this host lacks;
    those are reported as flags. Unparseable algorithm names still raise
    ``UnsupportedAlgorithm``.
    """
    parsed = unpack(packed)
    data = _message_bytes(document)
    result = {
        "stored_hash": packed,
        "mode": parsed.mode,
        "algorithm": parsed.algorithm,
    }
    match parsed:
        case Hmac(algorithm=algo):
            if not hmac_key:
                return HashVerification(
                    verified=False, current_hash=None, hmac_key_missing=True, **result
                )
            if not is_available(algo, keyed=True):
                return HashVerification(
                    verified=False,
                    current_hash=None,
                    algorithm_unavailable=True,
                    **result,
                )
            current = Hmac(algo, _raw_hmac(algo, _key_bytes(hmac_key), data).hex())
        case Standard(algorithm=algo) | Legacy(algorithm=algo):
            if not is_available(algo):
                return HashVerification(
                    verified=False,
                    current_hash=None,
                    algorithm_unavailable=True,
                    **result,
                )
            current_digest = _raw_digest(algo, data).hex()
            current = (
                Legacy(current_digest)
                if isinstance(parsed, Legacy)
                else Standard(algo, current_digest)
            )
    verified = hmac.compare_digest(current.packed, parsed.packed)
    return HashVerification(verified=verified, current_hash=current.packed, **result)


def verify(
    document: Document, packed: str, *, hmac_key: str | bytes | None = None
) -> bool:
    """Boolean form of ``verify_packed``; a keyed hash without a key raises."""
    outcome = verify_packed(document, packed, hmac_key=hmac_key)
    if outcome.hmac_key_missing:
        raise HmacKeyMissing(algorithm=outcome.algorithm)
    return outcome.verified


@dataclass(frozen=True)
class HmacStatus:
    mode_enabled: bool
    key_defined: bool
    key_strong: bool
    ready: bool
    notice_level: Literal["ok", "warning", "error", "none"]
    notice_message: str


def hmac_status(enabled: bool, key: str | bytes | None) -> HmacStatus:
    key_bytes = _key_bytes(key) if key else b""
    defined = bool(key_bytes)
    strong = len(key_bytes) >= HMAC_KEY_MIN_LENGTH
    if not enabled:
        level, message = "none", "HMAC integrity mode is disabled."
    elif not defined:
        level, message = (
            "error",
            "HMAC mode is enabled but DOCANCHOR_HASH__HMAC_KEY is not set; "
            "new hashes cannot be produced in keyed mode.",
        )
    elif not strong:
        level, message = (
            "warning",
            f"HMAC key is shorter than {HMAC_KEY_MIN_LENGTH} characters.",
        )
    else:
        level, message = "ok", "HMAC integrity mode is active."
    return HmacStatus(
        mode_enabled=enabled,
        key_defined=defined,
        key_strong=strong,
        ready=enabled and defined,
        notice_level=level,
        notice_message=message,
    )


__all__ = [
    "ALGORITHMS",
    "DEFAULT_ALGORITHM",
    "HMAC_KEY_MIN_LENGTH",
    "AlgorithmInfo",
    "HashResult",
    "HashVerification",
    "Hmac",
    "HmacStatus",
    "Legacy",
    "Standard",
    "Unpacked",
    "available_algorithms",
    "compute",
    "hmac_status",
    "is_available",
    "pack",
    "pack_hmac",
    "resolve_algorithm",
    "unpack",
    "verify",
    "verify_packed",
]
