"""
Catalogue of known RFC 3161 Timestamp Authorities.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

VerifyVia = Literal["manual_cert", "system_trust_store"]


@dataclass(frozen=True)
class TSAProfile:
    slug: str
    label: str
    url: str
    auth: Literal["none", "basic"]
    cert_url: str
    verify_via: VerifyVia
    notes: str


PROFILES: dict[str, TSAProfile] = {
    p.slug: p
    for p in (
        TSAProfile(
            slug="freetsa",
            label="FreeTSA.org (Free)",
            url="https://freetsa.org/tsr",
            auth="none",
            cert_url="https://freetsa.org/files/tsa.crt",
            verify_via="manual_cert",
            notes=(
                "Free, no account required. Rate-limited to about one request per "
                "second. The TSA certificate must be downloaded from cert_url for "
                "offline verification."
            ),
        ),
        TSAProfile(
            slug="digicert",
            label="DigiCert TSA",
            url="http://timestamp.digicert.com",
            auth="none",
            cert_url="",
            verify_via="system_trust_store",
            notes=(
                "Public endpoint, no account required. HTTP only; the token is "
                "signed so transport encryption is not needed for integrity."
            ),
        ),
        TSAProfile(
            slug="globalsign",
            label="GlobalSign TSA",
            url="http://timestamp.globalsign.com/tsa/r6advanced1",
            auth="none",
            cert_url="",
            verify_via="system_trust_store",
            notes="Public endpoint, no account required. HTTP only.",
        ),
        TSAProfile(
            slug="sectigo",
            label="Sectigo TSA",
            url="https://timestamp.sectigo.com",
            auth="none",
            cert_url="",
            verify_via="system_trust_store",
            notes=(
                "Public endpoint, no account required. Throttled; space batched "
                "requests at least 15 seconds apart."
            ),
        ),
        TSAProfile(
            slug="custom",
            label="Custom TSA",
            url="",
            auth="basic",
            cert_url="",
            verify_via="system_trust_store",
            notes="Your own RFC 3161 endpoint; HTTP basic auth is optional.",
        ),
    )
}

DEFAULT_PROFILE = "freetsa"


def get_profile(slug: str) -> TSAProfile | None:
    return PROFILES.get(slug.strip().lower())


def resolve_endpoint(profile_slug: str, custom_url: str | None = None) -> str:
    """A custom URL always wins; unknown slugs use the default profile."""
    if custom_url and custom_url.strip():
        return custom_url.strip()
    profile = get_profile(profile_slug) or PROFILES[DEFAULT_PROFILE]
    return profile.url


__all__ = [
    "DEFAULT_PROFILE",
    "PROFILES",
    "TSAProfile",
    "get_profile",
    "resolve_endpoint",
]
