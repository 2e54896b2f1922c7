"""Data model for resolved workspace graphs and unification plans."""

from __future__ import annotations

import functools
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

_SEMVER_RE = re.compile(
    r"^(\d+)\.(\d+)\.(\d+)(?:-([0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$"
)


def version_key(version: str) -> tuple:
    """Sort key implementing semantic-version precedence.

    Pre-releases sort before the release they precede; numeric pre-release
    identifiers sort before alphanumeric ones.  Strings that are not semver
    sort first, by their text.
    """
    m = _SEMVER_RE.match(version)
    if m is None:
        return (0, 0, 0, 0, (), version)
    major, minor, patch, pre = m.groups()
    if pre is None:
        pre_key: tuple = ()
        release = 1
    else:
        release = 0
        pre_key = tuple(
            (0, int(part), "") if part.isdigit() else (1, 0, part)
            for part in pre.split(".")
        )
    return (int(major), int(minor), int(patch), release, pre_key, version)


class DependencyKind(str, Enum):
    NORMAL = "normal"
    DEV = "dev"
    BUILD = "build"

    @classmethod
    def from_metadata(cls, kind: str | None) -> DependencyKind:
        """Map a cargo metadata ``kind`` (``None`` means normal) to a member."""
        if kind is None or kind == "normal":
            return cls.NORMAL
        return cls(kind)

    @property
    def table(self) -> str:
        """Manifest table holding declarations of this kind."""
        return {
            DependencyKind.NORMAL: "dependencies",
            DependencyKind.DEV: "dev-dependencies",
            DependencyKind.BUILD: "build-dependencies",
        }[self]


@functools.total_ordering
@dataclass(frozen=True)
class PackageIdentity:
    """A resolved package: (name, exact version, source origin)."""

    name: str
    version: str
    source: str

    def _key(self) -> tuple:
        return (self.name, version_key(self.version), self.source)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, PackageIdentity):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:
        return f"{self.name} v{self.version}"


@dataclass(frozen=True)
class FeatureSet:
    """Named features plus the marker for the ``default`` feature group."""

    names: frozenset[str] = frozenset()
    default: bool = False

    @classmethod
    def of(cls, names: Iterable[str] = (), default: bool = False) -> FeatureSet:
        collected = set(names)
        if "default" in collected:
            collected.discard("default")
            default = True
        return cls(frozenset(collected), default)

    def union(self, other: FeatureSet) -> FeatureSet:
        return FeatureSet(self.names | other.names, self.default or other.default)

    def issubset(self, other: FeatureSet) -> bool:
        return self.names <= other.names and (other.default or not self.default)

    def is_strict_subset(self, other: FeatureSet) -> bool:
        return self.issubset(other) and self != other

    def sorted_names(self) -> list[str]:
        return sorted(self.names)

    def __str__(self) -> str:
        names = self.sorted_names()
        if self.default:
            names.insert(0, "default")
        return "{" + ", ".join(names) + "}"


@dataclass(frozen=True)
class Declaration:
    """One entry of a package's dependency tables."""

    name: str  # package name
    key: str  # dependency key: the rename if there is one, else the name
    kind: DependencyKind = DependencyKind.NORMAL
    target: str | None = None
    optional: bool = False
    features: tuple[str, ...] = ()
    uses_default_features: bool = True
    req: str = "*"


@dataclass(frozen=True)
class DependencyEdge:
    """A declared dependency from one resolved package to another.

    ``activator`` is the source feature that has to be active for the edge to
    fire: ``None`` for the base package, ``dep:<key>`` for an optional
    dependency, or a named feature for edges coming from ``key/feat`` entries
    of the source's feature table.  ``weak`` edges (``key?/feat``) only fire
    once the dependency is enabled by something else.
    """

    source: PackageIdentity
    target: PackageIdentity
    key: str
    kind: DependencyKind = DependencyKind.NORMAL
    platform: str | None = None
    features: FeatureSet = FeatureSet()
    optional: bool = False
    activator: str | None = None
    weak: bool = False


@dataclass
class Package:
    """A node of the workspace graph."""

    identity: PackageIdentity
    is_member: bool = False
    # feature -> features and ``dep:<key>`` activations it implies
    features: dict[str, tuple[str, ...]] = field(default_factory=dict)
    declarations: list[Declaration] = field(default_factory=list)
    manifest_path: str | None = None
    package_id: str = ""

    @property
    def has_default(self) -> bool:
        return "default" in self.features

    @property
    def has_dev_dependencies(self) -> bool:
        return any(d.kind is DependencyKind.DEV for d in self.declarations)


@dataclass(frozen=True)
class BuildContext:
    """One hypothetical invocation of the build tool.

    ``dev`` models a test build: dev-dependencies of the root members are
    built too.
    """

    members: frozenset[PackageIdentity]
    dev: bool = False
    label: str = ""

    def __post_init__(self) -> None:
        if not self.members:
            raise ValueError("a build context needs at least one member")

    @classmethod
    def of(
        cls, members: Iterable[PackageIdentity], *, dev: bool = False, label: str = ""
    ) -> BuildContext:
        return cls(frozenset(members), dev, label)


@dataclass(frozen=True)
class HackEntry:
    """Force *features* on *package* in *member*'s manifest."""

    member: PackageIdentity
    package: PackageIdentity
    features: FeatureSet
    kind: DependencyKind = DependencyKind.NORMAL

    def sort_key(self) -> tuple:
        return (
            self.member,
            self.package,
            self.kind.value,
            tuple(self.features.sorted_names()),
            self.features.default,
        )


@dataclass(frozen=True)
class RestoreInstruction:
    """Remove a previously injected declaration of *package* from *member*."""

    member: PackageIdentity
    package: PackageIdentity
    kind: DependencyKind = DependencyKind.NORMAL


@dataclass
class HackPlan:
    entries: list[HackEntry]
    fingerprint: str

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def by_member(self) -> dict[PackageIdentity, list[HackEntry]]:
        grouped: dict[PackageIdentity, list[HackEntry]] = {}
        for entry in self.entries:
            grouped.setdefault(entry.member, []).append(entry)
        return grouped


@dataclass(frozen=True)
class CheckReport:
    unification_required: bool
    checksum_mismatch: bool = False

    @property
    def ok(self) -> bool:
        return not (self.unification_required or self.checksum_mismatch)


@dataclass(frozen=True)
class InjectedDependency:
    """A hack entry as persisted in a member manifest."""

    entry: HackEntry
    key: str
    # TOML source of the replaced value, or the fields of a replaced table
    original: str | dict[str, Any] | None = None


@dataclass
class HackState:
    """Hack provenance persisted in one member manifest."""

    member: PackageIdentity
    fingerprint: str
    injected: list[InjectedDependency] = field(default_factory=list)
    created_tables: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DeclarationOverride:
    """Replace (or drop, when *replacement* is None) a member declaration."""

    member: PackageIdentity
    kind: DependencyKind
    key: str
    replacement: Declaration | None = None


# ---------------------------------------------------------------------------
# Query results
# ---------------------------------------------------------------------------


class NodeTag(str, Enum):
    MEMBER = "member"
    FEATURE = "feature"
    PACKAGE = "package"


class EdgeTag(str, Enum):
    PLAIN = "plain"
    DEV_ONLY = "dev-only"
    MIXED = "mixed"  # dev and normal edges requesting different features


@dataclass(frozen=True)
class FeatureNode:
    """A package (``feature is None``) or one of its features."""

    package: PackageIdentity
    feature: str | None = None

    def sort_key(self) -> tuple:
        return (self.package, self.feature or "")

    def __str__(self) -> str:
        if self.feature is None:
            return str(self.package)
        return f"{self.package} / {self.feature}"


@dataclass
class AnnotatedGraph:
    """Subgraph handed to a renderer."""

    nodes: dict[FeatureNode, NodeTag] = field(default_factory=dict)
    edges: dict[tuple[FeatureNode, FeatureNode], EdgeTag] = field(default_factory=dict)
    focus: frozenset[FeatureNode] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not self.nodes
