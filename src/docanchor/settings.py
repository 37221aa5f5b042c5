"""
Configuration models for the anchoring engine using Pydantic v2 Settings.

``Settings`` is read from ``DOCANCHOR_*`` environment variables (nested groups
use ``__``, e.g. ``DOCANCHOR_GIT__TOKEN``). The engine hands each component
only the group it needs; no component reads settings globally.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import (  # type: ignore[import-not-found]
    BaseSettings,
    NoDecode,
    SettingsConfigDict,
)

from ._version import __version__
from .hashing import ALGORITHMS, DEFAULT_ALGORITHM

ProviderName = Literal["git_host", "rfc3161", "transparency_log"]
PROVIDER_NAMES: tuple[ProviderName, ...] = ("git_host", "rfc3161", "transparency_log")


def _secret_value(secret: SecretStr | None) -> str | None:
    if secret is None:
        return None
    value = secret.get_secret_value()
    return value or None


class HashSettings(BaseModel):
    """Digest algorithm and keyed-mode configuration."""

    algorithm: str = Field(
        default=DEFAULT_ALGORITHM,
        description="Digest algorithm for newly hashed documents",
    )
    hmac_enabled: bool = Field(
        default=False, description="Produce keyed (HMAC) packed hashes"
    )
    hmac_key: SecretStr | None = Field(
        default=None,
        description="HMAC secret; read from the environment, never stored with data",
    )

    @field_validator("algorithm")
    @classmethod
    def _known_algorithm(cls, value: str) -> str:
        name = value.strip().lower()
        if name not in ALGORITHMS:
            raise ValueError(f"unknown hash algorithm: {value}")
        return name

    def key(self) -> str | None:
        return _secret_value(self.hmac_key)


class SigningSettings(BaseModel):
    private_key_hex: SecretStr | None = Field(
        default=None,
        description="Long-lived Ed25519 secret key (128 hex chars, seed||public)",
    )
    public_key_hex: str | None = Field(
        default=None, description="Long-lived Ed25519 public key (64 hex chars)"
    )
    dsse_enabled: bool = Field(
        default=False, description="Also wrap signatures in a DSSE envelope"
    )

    @field_validator("private_key_hex")
    @classmethod
    def _check_private(cls, value: SecretStr | None) -> SecretStr | None:
        if value is None or not value.get_secret_value():
            return None
        raw = value.get_secret_value().strip()
        if len(raw) != 128 or not all(c in "0123456789abcdefABCDEF" for c in raw):
            raise ValueError("private_key_hex must be 128 hex characters")
        return SecretStr(raw)

    @field_validator("public_key_hex")
    @classmethod
    def _check_public(cls, value: str | None) -> str | None:
        if not value:
            return None
        raw = value.strip()
        if len(raw) != 64 or not all(c in "0123456789abcdefABCDEF" for c in raw):
            raise ValueError("public_key_hex must be 64 hex characters")
        return raw

    def private_key(self) -> str | None:
        return _secret_value(self.private_key_hex)


class GitHostSettings(BaseModel):
    kind: Literal["github", "gitlab"] = Field(default="github")
    token: SecretStr | None = Field(default=None, description="Personal access token")
    owner: str = Field(default="", description="Repository owner or namespace")
    repo: str = Field(default="", description="Repository name")
    branch: str = Field(default="main")
    folder_path_template: str = Field(
        default="hashes/YYYY-MM-DD",
        description="Target folder; YYYY, MM and DD are replaced with the UTC date",
    )
    commit_message_template: str = Field(
        default="chore: anchor {doc_id}",
        description="Commit message; {doc_id} is replaced with the document id",
    )
    api_base: str | None = Field(
        default=None, description="Override the provider API base URL"
    )

    def token_value(self) -> str | None:
        return _secret_value(self.token)


class RFC3161Settings(BaseModel):
    profile_slug: str = Field(default="freetsa", description="TSA profile slug")
    custom_url: str | None = Field(
        default=None, description="Custom TSA endpoint; overrides the profile URL"
    )
    username: str | None = Field(default=None)
    password: SecretStr | None = Field(default=None)
    storage_dir: str = Field(
        default="tsr-timestamps",
        description="Directory for persisted .tsq/.tsr/.manifest.json files",
    )

    def password_value(self) -> str | None:
        return _secret_value(self.password)


class TransparencyLogSettings(BaseModel):
    api_base: str = Field(default="https://rekor.sigstore.dev/api/v1")
    search_url_template: str = Field(
        default="https://search.sigstore.dev/?logIndex={log_index}"
    )


class QueueSettings(BaseModel):
    state_path: str | None = Field(
        default=None, description="JSON state file; in-memory when unset"
    )
    dedup_window_seconds: float = Field(default=60.0, ge=0.0)
    max_attempts: int = Field(default=5, ge=1)
    base_delay_seconds: float = Field(default=60.0, gt=0.0)
    max_delay_seconds: float = Field(default=86_400.0, gt=0.0)
    max_jobs: int = Field(
        default=10_000, ge=1, description="Enqueue is dropped when the queue is full"
    )


class LogSettings(BaseModel):
    path: str | None = Field(
        default=None, description="JSON-lines anchor log; in-memory when unset"
    )
    retention_days: int = Field(
        default=0, ge=0, description="Prune entries older than this; 0 keeps forever"
    )
    export_limit: int = Field(default=5000, ge=1)


class Settings(BaseSettings):
    """Top-level configuration for the anchoring engine."""

    hash: HashSettings = Field(default_factory=HashSettings)
    signing: SigningSettings = Field(default_factory=SigningSettings)
    git: GitHostSettings = Field(default_factory=GitHostSettings)
    rfc3161: RFC3161Settings = Field(default_factory=RFC3161Settings)
    transparency_log: TransparencyLogSettings = Field(
        default_factory=TransparencyLogSettings
    )
    queue: QueueSettings = Field(default_factory=QueueSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    providers_enabled: Annotated[set[ProviderName], NoDecode] = Field(
        default_factory=set,
        description="Providers that receive anchor records",
    )
    site_url: str = Field(default="", description="Public URL of the producing site")
    producer_version: str = Field(default=__version__)
    http_timeout_seconds: float = Field(default=30.0, gt=0.0)
    internal_logging_enabled: bool = Field(
        default=True, description="Emit WARN/INFO diagnostics for internal events"
    )

    model_config = SettingsConfigDict(
        env_prefix="DOCANCHOR_",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("providers_enabled", mode="before")
    @classmethod
    def _parse_providers(cls, value: Any) -> Any:
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return set()
            if text.startswith("["):
                try:
                    return set(json.loads(text))
                except json.JSONDecodeError as exc:
                    raise ValueError(f"Invalid providers_enabled: {exc}") from exc
            return {part.strip() for part in text.split(",") if part.strip()}
        return value

    @field_validator("site_url")
    @classmethod
    def _strip_site_url(cls, value: str) -> str:
        return value.strip().rstrip("/")

    def to_dict(self) -> dict[str, object]:
        """Serializable view; secrets stay masked."""
        data = self.model_dump(mode="json", exclude_none=True)
        data["providers_enabled"] = sorted(self.providers_enabled)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


__all__ = [
    "GitHostSettings",
    "HashSettings",
    "LogSettings",
    "PROVIDER_NAMES",
    "ProviderName",
    "QueueSettings",
    "RFC3161Settings",
    "Settings",
    "SigningSettings",
    "TransparencyLogSettings",
]
