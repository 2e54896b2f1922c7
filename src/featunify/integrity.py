"""Fingerprints of hack plans.

A fingerprint is the SHA-256 of the RFC 8785 canonical JSON of the plan's
entries, sorted first so that construction order never matters.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from typing import Any

import rfc8785

from featunify.model import HackEntry, PackageIdentity

FINGERPRINT_VERSION = "sha256-rfc8785-v1"


def _identity_record(identity: PackageIdentity) -> dict[str, str]:
    return {"name": identity.name, "version": identity.version, "source": identity.source}


def canonical_records(entries: Iterable[HackEntry]) -> list[dict[str, Any]]:
    """JSON-safe records of *entries* in canonical order."""
    return [
        {
            "member": _identity_record(entry.member),
            "package": _identity_record(entry.package),
            "kind": entry.kind.value,
            "features": entry.features.sorted_names(),
            "default": entry.features.default,
        }
        for entry in sorted(entries, key=HackEntry.sort_key)
    ]


def fingerprint(entries: Iterable[HackEntry]) -> str:
    """Digest identifying the logical content of a hack plan."""
    payload = {"version": FINGERPRINT_VERSION, "entries": canonical_records(entries)}
    return hashlib.sha256(rfc8785.dumps(payload)).hexdigest()


def verify(stored: str, entries: Iterable[HackEntry]) -> bool:
    return stored == fingerprint(entries)
