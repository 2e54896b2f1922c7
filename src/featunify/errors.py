"""Exceptions raised by featunify."""

from __future__ import annotations

from pathlib import Path

from featunify.model import PackageIdentity


class FeatunifyError(Exception):
    """Base class for all featunify errors."""


class MalformedSnapshot(FeatunifyError):
    """The metadata snapshot is structurally invalid."""


class AmbiguousIdentity(FeatunifyError):
    """Two package entries share an identity but declare different features."""

    def __init__(self, identity: PackageIdentity) -> None:
        super().__init__(
            f"{identity} ({identity.source}) appears twice with different feature tables"
        )
        self.identity = identity


class AlreadyHacked(FeatunifyError):
    """The manifests already carry the hack the current plan would apply."""

    def __init__(self, fingerprint: str) -> None:
        super().__init__(f"workspace is already hacked (fingerprint {fingerprint[:12]})")
        self.fingerprint = fingerprint


class ChecksumMismatch(FeatunifyError):
    """The persisted hack no longer matches the dependency set."""

    def __init__(self, stored: str, current: str) -> None:
        super().__init__(
            "hack fingerprint mismatch: dependencies changed since the hack was applied, "
            "restore them, update and hack again"
        )
        self.stored = stored
        self.current = current


class MetadataError(FeatunifyError):
    """cargo or rustc could not produce the snapshot."""


class PlatformError(FeatunifyError):
    """A platform filter expression could not be parsed."""

    def __init__(self, expression: str, reason: str) -> None:
        super().__init__(f"invalid platform filter {expression!r}: {reason}")
        self.expression = expression


class ManifestError(FeatunifyError):
    """A manifest cannot be patched, or its persisted hack state is corrupt."""

    def __init__(self, path: Path | str, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = Path(path)
