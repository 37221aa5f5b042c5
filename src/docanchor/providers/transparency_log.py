"""
Transparency-log dispatcher (Sigstore Rekor, ``hashedrekord`` v0.0.1).

The artifact is the anchor record's JSON; its SHA-256 digest is signed with
Ed25519 and submitted together with the public key. Provenance fields in
``customProperties`` are informational only; Rekor does not verify them.
"""

from __future__ import annotations

import hashlib
from typing import Any, Callable
from urllib.parse import quote

import httpx

from ..canonical import b64encode
from ..errors import (
    MalformedResponse,
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)
from ..record import AnchorRecord
from ..settings import TransparencyLogSettings
from ..signing import EphemeralKey, KeySource, keyid, public_key_pem, sign
from .base import ConnectionCheck, DispatchResult, HttpDispatcherMixin

REKOR_KIND = "hashedrekord"
REKOR_API_VERSION = "0.0.1"
WELL_KNOWN_PUBKEY_PATH = "/.well-known/ed25519-pubkey.txt"
SEARCH_BASE = "https://search.sigstore.dev/"
PROPERTY_PREFIX = "docanchor."


def artifact_hash(record: AnchorRecord) -> str:
    return hashlib.sha256(record.to_json().encode("utf-8")).hexdigest()


def build_entry(
    record: AnchorRecord,
    key_source: KeySource,
    *,
    producer_version: str = "",
) -> dict[str, Any]:
    """The ``hashedrekord`` request body for ``record`` signed by ``key_source``."""
    digest_hex = artifact_hash(record)
    keypair = key_source.keypair
    signature = sign(bytes.fromhex(digest_hex), keypair)
    ephemeral = isinstance(key_source, EphemeralKey)
    site_url = record.site_url.rstrip("/")
    properties = {
        "site_url": site_url,
        "document_id": record.document_id,
        "post_type": record.post_type,
        "hash_algorithm": record.hash_algorithm,
        "producer_version": record.producer_version or producer_version,
        "pubkey_fingerprint": "ephemeral" if ephemeral else keyid(keypair.public_key),
        "key_type": key_source.provenance,
        "pubkey_url": (
            "" if ephemeral or not site_url else site_url + WELL_KNOWN_PUBKEY_PATH
        ),
    }
    return {
        "kind": REKOR_KIND,
        "apiVersion": REKOR_API_VERSION,
        "spec": {
            "signature": {
                "format": "ed25519",
                "content": b64encode(signature),
                "publicKey": {
                    "content": b64encode(
                        public_key_pem(keypair.public_key).encode("ascii")
                    )
                },
            },
            "data": {"hash": {"algorithm": "sha256", "value": digest_hex}},
            "customProperties": {
                PROPERTY_PREFIX + k: v for k, v in properties.items() if v
            },
        },
    }


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    if isinstance(body, dict) and isinstance(body.get("message"), str):
        return body["message"]
    return f"HTTP {resp.status_code}"


class TransparencyLogDispatcher(HttpDispatcherMixin):
    """Submits signed anchor records to a Rekor transparency log."""

    name = "transparency_log"

    def __init__(
        self,
        config: TransparencyLogSettings,
        key_source_factory: Callable[[], KeySource],
        *,
        producer_version: str = "",
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._config = config
        self._key_source_factory = key_source_factory
        self._producer_version = producer_version
        self._init_client(client, timeout)

    @property
    def api_base(self) -> str:
        return self._config.api_base.rstrip("/")

    def search_url(self, log_index: int) -> str:
        return self._config.search_url_template.format(log_index=log_index)

    async def dispatch(self, record: AnchorRecord) -> DispatchResult:
        # Resolved per submission so an ephemeral key is never reused.
        key_source = self._key_source_factory()
        body = build_entry(record, key_source, producer_version=self._producer_version)
        try:
            resp = await self._request(
                "POST",
                f"{self.api_base}/log/entries",
                json=body,
                headers={"Accept": "application/json"},
            )
            return self._parse(resp, key_source)
        except ProviderError as exc:
            return DispatchResult.from_error(exc)

    def _parse(self, resp: httpx.Response, key_source: KeySource) -> DispatchResult:
        code = resp.status_code
        if code == 201:
            try:
                payload = resp.json()
                uuid, entry = next(iter(payload.items()))
            except (ValueError, AttributeError, StopIteration) as exc:
                raise MalformedResponse(
                    "Rekor returned an unreadable entry", provider=self.name, cause=exc
                ) from exc
            log_index = entry.get("logIndex") if isinstance(entry, dict) else None
            if isinstance(log_index, int):
                url = self.search_url(log_index)
            else:
                log_index = None
                url = f"{SEARCH_BASE}?uuid={quote(str(uuid))}"
            return DispatchResult.anchored(
                url,
                http_status=code,
                uuid=str(uuid),
                log_index=log_index,
                key_type=key_source.provenance,
            )
        message = _error_message(resp)
        if code == 409:
            try:
                existing = resp.json().get("uuid") or ""
            except (ValueError, AttributeError):
                existing = ""
            url = f"{SEARCH_BASE}?uuid={quote(existing)}" if existing else SEARCH_BASE
            return DispatchResult.anchored(
                url, http_status=code, uuid=existing or None, duplicate=True
            )
        if code == 429:
            raise TransientProviderError(
                f"Rekor rate limited: {message}", provider=self.name, http_status=code
            )
        if code in (400, 422):
            raise PermanentProviderError(
                f"Rekor rejected entry: {message}", provider=self.name, http_status=code
            )
        raise TransientProviderError(
            f"Rekor error: {message}", provider=self.name, http_status=code
        )

    async def fetch_entry(self, log_index: int) -> dict[str, Any] | None:
        """Read-only lookup of a log entry by index; ``None`` when absent."""
        resp = await self._request(
            "GET",
            f"{self.api_base}/log/entries",
            params={"logIndex": log_index},
            headers={"Accept": "application/json"},
        )
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise TransientProviderError(
                f"Rekor lookup failed: {_error_message(resp)}",
                provider=self.name,
                http_status=resp.status_code,
            )
        try:
            payload = resp.json()
            uuid, entry = next(iter(payload.items()))
            return {"uuid": uuid, **entry}
        except (ValueError, AttributeError, StopIteration, TypeError) as exc:
            raise MalformedResponse(
                "Rekor returned an unreadable entry", provider=self.name, cause=exc
            ) from exc

    async def test_connection(self) -> ConnectionCheck:
        try:
            resp = await self._request(
                "GET", f"{self.api_base}/log", headers={"Accept": "application/json"}
            )
        except TransientProviderError as exc:
            return ConnectionCheck(False, exc.message)
        if not 200 <= resp.status_code < 300:
            return ConnectionCheck(False, f"Rekor returned HTTP {resp.status_code}")
        try:
            tree_size = int(resp.json().get("treeSize", 0))
        except (ValueError, AttributeError, TypeError):
            tree_size = 0
        key_note = (
            "ephemeral keypairs will be used per submission"
            if isinstance(self._key_source_factory(), EphemeralKey)
            else "entries will use the site key"
        )
        return ConnectionCheck(
            True,
            f"Rekor reachable; log contains {tree_size:,} entries; {key_note}.",
        )


__all__ = [
    "TransparencyLogDispatcher",
    "artifact_hash",
    "build_entry",
]
