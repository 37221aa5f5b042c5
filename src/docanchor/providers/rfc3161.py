"""
RFC 3161 timestamp dispatcher.

Builds a ``TimeStampReq`` over the record's content hash, POSTs it to the
configured Timestamp Authority and keeps the request/response pair on disk
(``.tsq``/``.tsr`` plus a JSON manifest) so the token can be verified offline
with ``openssl ts -verify``.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

import httpx

from .. import der, diagnostics
from ..errors import (
    MalformedResponse,
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)
from ..record import TIMESTAMP_FORMAT, AnchorRecord
from ..settings import RFC3161Settings
from .base import ConnectionCheck, DispatchResult, HttpDispatcherMixin
from .tsa_profiles import TSAProfile, get_profile, resolve_endpoint

SHA256_OID = "2.16.840.1.101.3.4.2.1"

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
PKI_STATUS_GRANTED = 0
PKI_STATUS_GRANTED_WITH_MODS = 1

ImprintMethod = Literal["direct", "sha256_of_hex"]

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def message_imprint(record: AnchorRecord) -> tuple[bytes, ImprintMethod]:
    """
    The 32 bytes the TSA timestamps for ``record``.

    A SHA-256 content hash is used as-is; any other algorithm's hex digest is
    itself hashed with SHA-256.
    """
    hex_value = record.hash_value
    if record.hash_algorithm.lower() == "sha256" and len(hex_value) == 64:
        return bytes.fromhex(hex_value), "direct"
    return hashlib.sha256(hex_value.encode("utf-8")).digest(), "sha256_of_hex"


def new_nonce() -> int:
    """Random positive 64-bit nonce (top bit cleared)."""
    raw = bytearray(secrets.token_bytes(8))
    raw[0] &= 0x7F
    return int.from_bytes(raw, "big")


def build_timestamp_request(digest: bytes, nonce: int | None = None) -> bytes:
    """DER ``TimeStampReq`` (version 1, SHA-256 imprint, nonce, certReq TRUE)."""
    if len(digest) != 32:
        raise ValueError("SHA-256 message imprint must be 32 bytes")
    imprint = der.sequence(
        der.sequence(der.oid(SHA256_OID), der.null()),
        der.octet_string(digest),
    )
    parts = [der.integer(1), imprint]
    if nonce is not None:
        parts.append(der.integer(nonce))
    parts.append(der.boolean(True))
    return der.sequence(*parts)


@dataclass(frozen=True)
class TimestampToken:
    status: int
    serial: int | None = None
    gen_time: str | None = None
    imprint: bytes | None = None
    nonce: int | None = None


def _find_tst_info(token: der.Element) -> der.Element | None:
    """Walk ContentInfo -> SignedData -> encapContentInfo -> TSTInfo."""
    items = token.children()
    if len(items) < 2 or items[0].tag != 0x06 or items[1].tag != 0xA0:
        return None
    signed_data = der.read_element(items[1].value)
    for child in signed_data.children():
        if child.tag != der.TAG_SEQUENCE:
            continue
        encap = child.children()
        if len(encap) == 2 and encap[0].tag == 0x06 and encap[1].tag == 0xA0:
            octets = der.read_element(encap[1].value)
            if octets.tag == 0x04:
                return der.read_element(octets.value)
    return None


def parse_timestamp_response(body: bytes) -> TimestampToken:
    """
    Validate a ``TimeStampResp`` and extract what we can from the token.

    Anything that is not a DER SEQUENCE with a granted PKIStatus raises
    ``MalformedResponse``. TSTInfo fields are read best-effort.
    """
    if len(body) < 10 or body[0] != der.TAG_SEQUENCE:
        raise MalformedResponse("Invalid TSA response: not a DER SEQUENCE")
    outer = der.read_element(body)
    parts = outer.children()
    if not parts or parts[0].tag != der.TAG_SEQUENCE:
        raise MalformedResponse("Invalid TSA response: missing PKIStatusInfo")
    status_info = parts[0].children()
    if not status_info:
        raise MalformedResponse("Invalid TSA response: empty PKIStatusInfo")
    status = status_info[0].as_int()
    if status > PKI_STATUS_GRANTED_WITH_MODS:
        raise MalformedResponse(
            f"Invalid TSA response: PKIStatus {status} (rejected)", pki_status=status
        )
    if len(parts) < 2:
        raise MalformedResponse("Invalid TSA response: granted without a token")

    try:
        tst_info = _find_tst_info(parts[1])
    except MalformedResponse:
        tst_info = None
    if tst_info is None:
        return TimestampToken(status=status)

    fields = tst_info.children()
    serial = gen_time = imprint = nonce = None
    try:
        # version, policy, messageImprint, serialNumber, genTime, ...
        imprint_parts = fields[2].children()
        imprint = imprint_parts[1].value
        serial = fields[3].as_int()
        if fields[4].tag == der.TAG_GENERALIZED_TIME:
            gen_time = fields[4].value.decode("ascii")
        for extra in fields[5:]:
            if extra.tag == der.TAG_INTEGER:
                nonce = extra.as_int()
                break
    except (IndexError, UnicodeDecodeError, MalformedResponse):
        diagnostics.debug("rfc3161", "could not read TSTInfo fields")
    return TimestampToken(
        status=status, serial=serial, gen_time=gen_time, imprint=imprint, nonce=nonce
    )


class RFC3161Dispatcher(HttpDispatcherMixin):
    """Timestamps anchor records with an RFC 3161 TSA."""

    name = "rfc3161"

    def __init__(
        self,
        config: RFC3161Settings,
        *,
        producer_version: str = "",
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._config = config
        self._producer_version = producer_version
        self._init_client(client, timeout)

    @property
    def endpoint(self) -> str:
        return resolve_endpoint(self._config.profile_slug, self._config.custom_url)

    @property
    def profile(self) -> TSAProfile | None:
        return get_profile(self._config.profile_slug)

    def _auth(self) -> httpx.BasicAuth | None:
        if self._config.username and self._config.password_value():
            return httpx.BasicAuth(
                self._config.username, self._config.password_value() or ""
            )
        return None

    async def _exchange(self, tsq: bytes) -> httpx.Response:
        resp = await self._request(
            "POST",
            self.endpoint,
            content=tsq,
            headers={
                "Content-Type": "application/timestamp-query",
                "Accept": "application/timestamp-reply",
            },
            auth=self._auth(),
        )
        if resp.status_code != 200 or not resp.content:
            message = f"TSA returned HTTP {resp.status_code}."
            if resp.status_code in RETRYABLE_STATUSES:
                raise TransientProviderError(
                    message, provider=self.name, http_status=resp.status_code
                )
            raise PermanentProviderError(
                message, provider=self.name, http_status=resp.status_code
            )
        return resp

    async def dispatch(self, record: AnchorRecord) -> DispatchResult:
        if not self.endpoint:
            return DispatchResult("failed", error="TSA endpoint is not configured")
        digest, method = message_imprint(record)
        nonce = new_nonce()
        tsq = build_timestamp_request(digest, nonce)
        try:
            resp = await self._exchange(tsq)
            token = parse_timestamp_response(resp.content)
            if token.imprint is not None and token.imprint != digest:
                raise MalformedResponse(
                    "Invalid TSA response: message imprint mismatch",
                    provider=self.name,
                )
            if token.nonce is not None and token.nonce != nonce:
                raise MalformedResponse(
                    "Invalid TSA response: nonce mismatch", provider=self.name
                )
        except ProviderError as exc:
            return DispatchResult.from_error(exc)

        tsr_path = await asyncio.to_thread(
            self._store, record, tsq, resp.content, method
        )
        return DispatchResult.anchored(
            str(tsr_path),
            http_status=resp.status_code,
            tsa=self.endpoint,
            serial=token.serial,
            gen_time=token.gen_time,
            imprint_method=method,
        )

    def _manifest(
        self, record: AnchorRecord, base: str, method: ImprintMethod
    ) -> dict[str, Any]:
        profile = self.profile
        cert_url = profile.cert_url if profile else ""
        verify_via = profile.verify_via if profile else "system_trust_store"
        if verify_via == "manual_cert" and cert_url:
            note = "Download the TSA certificate from cert_url, then run the command."
            command = (
                f"curl -sO {cert_url} && openssl ts -verify -in {base}.tsr "
                f"-queryfile {base}.tsq -CAfile tsa.crt"
            )
        else:
            note = "The TSA root certificate is in the system trust store."
            command = (
                f"openssl ts -verify -in {base}.tsr -queryfile {base}.tsq "
                "-CAfile /etc/ssl/certs/ca-certificates.crt"
            )
        # HMAC values are secret-derived and stay out of the manifest.
        return {
            "producer_version": self._producer_version,
            "created_utc": datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT),
            "document_id": record.document_id,
            "post_id": record.post_id,
            "post_title": record.post_title,
            "site_url": record.site_url,
            "author_id": record.author_id,
            "content_hash_algorithm": record.hash_algorithm,
            "content_hash_hex": record.hash_value,
            "integrity_mode": record.integrity_mode,
            "tsr_message_imprint": {"algorithm": "sha256", "method": method},
            "tsa_verification": {
                "endpoint": self.endpoint,
                "verify_via": verify_via,
                "cert_url": cert_url,
                "note": note,
            },
            "files": {
                "tsr": f"{base}.tsr",
                "tsq": f"{base}.tsq",
                "manifest": f"{base}.manifest.json",
            },
            "verification_command": command,
        }

    def _store(
        self, record: AnchorRecord, tsq: bytes, tsr: bytes, method: ImprintMethod
    ) -> Path:
        directory = Path(self._config.storage_dir)
        directory.mkdir(parents=True, exist_ok=True)
        slug = _SAFE_NAME.sub("-", record.document_id).strip("-") or "document"
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        base = f"{slug}-{stamp}"
        tsr_path = directory / f"{base}.tsr"
        (directory / f"{base}.tsq").write_bytes(tsq)
        tsr_path.write_bytes(tsr)
        manifest_path = directory / f"{base}.manifest.json"
        manifest_path.write_text(
            json.dumps(self._manifest(record, base, method), indent=2),
            encoding="utf-8",
        )
        try:
            os.chmod(tsr_path, 0o640)
        except OSError:
            diagnostics.debug("rfc3161", "could not restrict token permissions")
        return tsr_path

    async def test_connection(self) -> ConnectionCheck:
        if not self.endpoint:
            return ConnectionCheck(False, "TSA endpoint is not configured")
        digest = hashlib.sha256(b"docanchor-connection-test").digest()
        try:
            resp = await self._exchange(build_timestamp_request(digest, new_nonce()))
            parse_timestamp_response(resp.content)
        except ProviderError as exc:
            return ConnectionCheck(False, exc.message)
        label = self.profile.label if self.profile else self.endpoint
        return ConnectionCheck(True, f"{label} issued a valid timestamp token")


__all__ = [
    "RFC3161Dispatcher",
    "TimestampToken",
    "build_timestamp_request",
    "message_imprint",
    "new_nonce",
    "parse_timestamp_response",
]
