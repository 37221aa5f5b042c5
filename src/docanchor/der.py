"""
Minimal DER encoding and decoding.

Only the handful of universal types needed for RFC 3161 timestamp requests,
timestamp response inspection and Ed25519 SubjectPublicKeyInfo are covered.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

from .errors import MalformedResponse

TAG_BOOLEAN = 0x01
TAG_INTEGER = 0x02
TAG_OCTET_STRING = 0x04
TAG_NULL = 0x05
TAG_OID = 0x06
TAG_GENERALIZED_TIME = 0x18
TAG_SEQUENCE = 0x30


def encode_length(length: int) -> bytes:
    if length < 0:
        raise ValueError("negative DER length")
    if length < 0x80:
        return bytes([length])
    body = length.to_bytes((length.bit_length() + 7) // 8, "big")
    if len(body) > 4:
        raise ValueError("DER length too large")
    return bytes([0x80 | len(body)]) + body


def tlv(tag: int, value: bytes) -> bytes:
    return bytes([tag]) + encode_length(len(value)) + value


def sequence(*items: bytes) -> bytes:
    return tlv(TAG_SEQUENCE, b"".join(items))


def integer(value: int) -> bytes:
    if value == 0:
        return tlv(TAG_INTEGER, b"\x00")
    if value < 0:
        raise ValueError("negative integers are not supported")
    body = value.to_bytes((value.bit_length() + 7) // 8, "big")
    if body[0] & 0x80:
        body = b"\x00" + body
    return tlv(TAG_INTEGER, body)


def integer_from_bytes(raw: bytes) -> bytes:
    """Encode big-endian unsigned bytes as INTEGER, adding a sign pad if needed."""
    body = raw.lstrip(b"\x00") or b"\x00"
    if body[0] & 0x80:
        body = b"\x00" + body
    return tlv(TAG_INTEGER, body)


def boolean(value: bool) -> bytes:
    return tlv(TAG_BOOLEAN, b"\xff" if value else b"\x00")


def null() -> bytes:
    return tlv(TAG_NULL, b"")


def octet_string(value: bytes) -> bytes:
    return tlv(TAG_OCTET_STRING, value)


def oid(dotted: str) -> bytes:
    parts = [int(p) for p in dotted.split(".")]
    if len(parts) < 2:
        raise ValueError(f"invalid OID: {dotted}")
    body = bytearray([parts[0] * 40 + parts[1]])
    for part in parts[2:]:
        chunk = [part & 0x7F]
        part >>= 7
        while part:
            chunk.append(0x80 | (part & 0x7F))
            part >>= 7
        body.extend(reversed(chunk))
    return tlv(TAG_OID, bytes(body))


@dataclass(frozen=True)
class Element:
    tag: int
    value: bytes
    offset: int
    end: int

    @property
    def constructed(self) -> bool:
        return bool(self.tag & 0x20)

    def children(self) -> list["Element"]:
        return list(iter_elements(self.value))

    def as_int(self) -> int:
        if self.tag != TAG_INTEGER or not self.value:
            raise MalformedResponse("expected DER INTEGER")
        return int.from_bytes(self.value, "big", signed=True)


def read_element(data: bytes, offset: int = 0) -> Element:
    """Decode the TLV starting at ``offset``."""
    if offset + 2 > len(data):
        raise MalformedResponse("truncated DER element", offset=offset)
    tag = data[offset]
    first = data[offset + 1]
    pos = offset + 2
    if first < 0x80:
        length = first
    else:
        count = first & 0x7F
        if count == 0 or count > 4 or pos + count > len(data):
            raise MalformedResponse("invalid DER length", offset=offset)
        length = int.from_bytes(data[pos : pos + count], "big")
        pos += count
    end = pos + length
    if end > len(data):
        raise MalformedResponse("DER element overruns buffer", offset=offset)
    return Element(tag=tag, value=data[pos:end], offset=offset, end=end)


def iter_elements(data: bytes) -> Iterator[Element]:
    offset = 0
    while offset < len(data):
        element = read_element(data, offset)
        yield element
        offset = element.end


__all__ = [
    "Element",
    "TAG_GENERALIZED_TIME",
    "TAG_INTEGER",
    "TAG_SEQUENCE",
    "boolean",
    "encode_length",
    "integer",
    "integer_from_bytes",
    "iter_elements",
    "null",
    "octet_string",
    "oid",
    "read_element",
    "sequence",
    "tlv",
]
