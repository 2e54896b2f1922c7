"""Build a WorkspaceGraph from a ``cargo metadata`` snapshot."""

from __future__ import annotations

import logging
import os
from collections import defaultdict
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from featunify.errors import AmbiguousIdentity, MalformedSnapshot
from featunify.graph import WorkspaceGraph, fold_name
from featunify.model import (
    Declaration,
    DeclarationOverride,
    DependencyEdge,
    DependencyKind,
    FeatureSet,
    Package,
    PackageIdentity,
)
from featunify.platform import Platform

logger = logging.getLogger(__name__)

_LIB_KINDS = {"lib", "rlib", "dylib", "cdylib", "staticlib", "proc-macro"}


def package_identity(raw: Mapping[str, Any]) -> PackageIdentity:
    """Identity of one ``packages[]`` entry; path packages use their directory."""
    source = raw.get("source")
    if not source:
        manifest = raw.get("manifest_path") or raw["id"]
        source = "path+file://" + os.path.dirname(str(manifest))
    return PackageIdentity(raw["name"], raw["version"], source)


def workspace_manifests(snapshot: Mapping[str, Any]) -> list[tuple[PackageIdentity, Path]]:
    """(member identity, manifest path) for every workspace member."""
    members = set(snapshot.get("workspace_members") or [])
    found = []
    for raw in snapshot.get("packages") or []:
        if raw.get("id") in members and raw.get("manifest_path"):
            found.append((package_identity(raw), Path(raw["manifest_path"])))
    return sorted(found)


def build_graph(
    snapshot: Mapping[str, Any],
    platform: Platform,
    overrides: Iterable[DeclarationOverride] = (),
) -> WorkspaceGraph:
    """Turn *snapshot* into a frozen WorkspaceGraph for *platform*.

    *overrides* replace or drop member declarations before edges are built,
    which lets callers look at a hacked workspace as it was before the hack.
    """
    raw_packages = snapshot.get("packages")
    resolve = snapshot.get("resolve")
    raw_members = snapshot.get("workspace_members")
    if not isinstance(raw_packages, list):
        raise MalformedSnapshot("snapshot has no package list")
    if not isinstance(resolve, Mapping) or not isinstance(resolve.get("nodes"), list):
        raise MalformedSnapshot("snapshot has no dependency resolution")
    if not isinstance(raw_members, list):
        raise MalformedSnapshot("snapshot has no workspace member list")

    # metadata id -> identity; identity -> the package entry kept for it
    identities: dict[str, PackageIdentity] = {}
    entries: dict[PackageIdentity, Mapping[str, Any]] = {}
    for raw in raw_packages:
        try:
            identity = package_identity(raw)
            package_id = raw["id"]
        except KeyError as e:
            raise MalformedSnapshot(f"package entry without {e.args[0]!r}") from e
        seen = entries.get(identity)
        if seen is None:
            entries[identity] = raw
        elif (seen.get("features") or {}) != (raw.get("features") or {}):
            raise AmbiguousIdentity(identity)
        else:
            logger.debug("Collapsing duplicate package entry %s", package_id)
        identities[package_id] = identity

    unknown = [m for m in raw_members if m not in identities]
    if unknown:
        raise MalformedSnapshot(f"unknown workspace members: {', '.join(unknown)}")
    members = {identities[m] for m in raw_members}

    by_override = {(o.member, o.kind, o.key): o for o in overrides}
    graph = WorkspaceGraph(platform)
    dropped: dict[PackageIdentity, set[str]] = defaultdict(set)
    for identity, raw in entries.items():
        declarations = _declarations(raw)
        if identity in members and by_override:
            declarations = _apply_overrides(identity, declarations, by_override, dropped)
        graph.add_package(
            Package(
                identity=identity,
                is_member=identity in members,
                features=_feature_implications(raw.get("features") or {}, declarations),
                declarations=declarations,
                manifest_path=raw.get("manifest_path"),
                package_id=raw["id"],
            )
        )

    lib_names = {identity: _lib_name(raw) for identity, raw in entries.items()}

    # source -> dependency key -> [(declaration, resolved target)]
    resolved: dict[PackageIdentity, dict[str, list[tuple[Declaration, PackageIdentity]]]] = (
        defaultdict(lambda: defaultdict(list))
    )
    visited_nodes: set[PackageIdentity] = set()
    for node in resolve["nodes"]:
        source = identities.get(node.get("id"))
        if source is None:
            raise MalformedSnapshot(f"resolution node for unknown package {node.get('id')!r}")
        if source in visited_nodes:
            continue
        visited_nodes.add(source)
        declarations = graph.package(source).declarations
        for dep in node.get("deps") or []:
            target = identities.get(dep.get("pkg"))
            if target is None:
                raise MalformedSnapshot(
                    f"{node['id']} depends on unknown package {dep.get('pkg')!r}"
                )
            matched = _match_declarations(declarations, dep, target, lib_names[target])
            if not matched:
                if _is_dropped(dropped.get(source, ()), dep, target):
                    logger.debug("Skipping overridden dependency %s -> %s", source, target)
                    continue
                raise MalformedSnapshot(
                    f"{node['id']} has no declaration for resolved dependency {dep.get('name')!r}"
                )
            for decl in matched:
                resolved[source][decl.key].append((decl, target))

    discarded = 0
    for source, by_key in resolved.items():
        raw_table = entries[source].get("features") or {}
        for edge in _edges_for(graph.package(source), by_key, raw_table, graph):
            if platform.matches(edge.platform):
                graph.add_edge(edge)
            else:
                discarded += 1

    pruned = graph.retain(graph.reachable_from_members())
    logger.debug(
        "Graph for %s: %d packages, %d edges (%d edges for other targets, %d packages unreachable)",
        platform.triple,
        graph.node_count,
        graph.edge_count,
        discarded,
        pruned,
    )
    return graph.freeze()


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _declarations(raw: Mapping[str, Any]) -> list[Declaration]:
    declarations = []
    for dep in raw.get("dependencies") or []:
        try:
            name = dep["name"]
            kind = DependencyKind.from_metadata(dep.get("kind"))
        except (KeyError, ValueError) as e:
            raise MalformedSnapshot(f"bad dependency declaration in {raw.get('id')}: {e}") from e
        declarations.append(
            Declaration(
                name=name,
                key=dep.get("rename") or name,
                kind=kind,
                target=dep.get("target"),
                optional=bool(dep.get("optional", False)),
                features=tuple(dep.get("features") or ()),
                uses_default_features=bool(dep.get("uses_default_features", True)),
                req=dep.get("req") or "*",
            )
        )
    return declarations


def _apply_overrides(
    member: PackageIdentity,
    declarations: list[Declaration],
    by_override: Mapping[tuple, DeclarationOverride],
    dropped: dict[PackageIdentity, set[str]],
) -> list[Declaration]:
    result = []
    for decl in declarations:
        override = by_override.get((member, decl.kind, decl.key))
        if override is None or decl.target is not None:
            result.append(decl)
        elif override.replacement is None:
            dropped[member].add(fold_name(decl.key))
            dropped[member].add(fold_name(decl.name))
        else:
            result.append(override.replacement)
    return result


def _is_dropped(keys: Iterable[str], dep: Mapping[str, Any], target: PackageIdentity) -> bool:
    keys = set(keys)
    return fold_name(dep.get("name", "")) in keys or fold_name(target.name) in keys


def _lib_name(raw: Mapping[str, Any]) -> str:
    for target in raw.get("targets") or []:
        if _LIB_KINDS & set(target.get("kind") or ()):
            return target.get("name") or raw["name"]
    return raw["name"]


def _match_declarations(
    declarations: list[Declaration],
    dep: Mapping[str, Any],
    target: PackageIdentity,
    lib_name: str,
) -> list[Declaration]:
    """Declarations of the source package that produced resolved *dep*."""
    extern = fold_name(dep.get("name") or lib_name)
    dep_kinds = dep.get("dep_kinds")
    kinds = None
    if dep_kinds:
        kinds = {
            (DependencyKind.from_metadata(k.get("kind")), k.get("target")) for k in dep_kinds
        }

    matched = []
    for decl in declarations:
        if fold_name(decl.name) != fold_name(target.name):
            continue
        alias = decl.key if decl.key != decl.name else lib_name
        if fold_name(alias) != extern:
            continue
        if kinds is not None and (decl.kind, decl.target) not in kinds:
            continue
        matched.append(decl)
    return matched


def _feature_implications(
    table: Mapping[str, list[str]], declarations: list[Declaration]
) -> dict[str, tuple[str, ...]]:
    """Local consequences of each feature: other features and ``dep:`` activations.

    ``key/feat`` and ``key?/feat`` entries that reach into a dependency become
    edges, see ``_edges_for``; only the ``dep:key`` activation implied by a
    strong ``key/feat`` on an optional dependency is recorded here.
    """
    optional = {d.key for d in declarations if d.optional}
    explicit = {
        item[4:] for items in table.values() for item in items if item.startswith("dep:")
    }
    implications: dict[str, tuple[str, ...]] = {}
    for feature, items in table.items():
        implied: list[str] = []
        for item in items:
            if item.startswith("dep:"):
                implied.append(item)
            elif "/" in item:
                key, _, _ = item.partition("/")
                if not key.endswith("?") and key in optional:
                    implied.append(f"dep:{key}")
            else:
                implied.append(item)
        implications[feature] = tuple(dict.fromkeys(implied))
    # optional dependencies never named with dep: get an implicit feature
    for key in sorted(optional - explicit):
        implications.setdefault(key, (f"dep:{key}",))
    return implications


def _edges_for(
    package: Package,
    by_key: Mapping[str, list[tuple[Declaration, PackageIdentity]]],
    raw_table: Mapping[str, list[str]],
    graph: WorkspaceGraph,
) -> list[DependencyEdge]:
    source = package.identity
    edges = []
    for key, pairs in by_key.items():
        for decl, target in pairs:
            has_default = graph.package(target).has_default
            edges.append(
                DependencyEdge(
                    source=source,
                    target=target,
                    key=key,
                    kind=decl.kind,
                    platform=decl.target,
                    features=FeatureSet.of(
                        decl.features, default=decl.uses_default_features and has_default
                    ),
                    optional=decl.optional,
                    activator=f"dep:{key}" if decl.optional else None,
                )
            )

    for feature, items in raw_table.items():
        for item in items:
            if "/" not in item or item.startswith("dep:"):
                continue
            key, _, dep_feature = item.partition("/")
            weak = key.endswith("?")
            key = key.rstrip("?")
            for decl, target in by_key.get(key, ()):
                edges.append(
                    DependencyEdge(
                        source=source,
                        target=target,
                        key=key,
                        kind=decl.kind,
                        platform=decl.target,
                        features=FeatureSet.of([dep_feature]),
                        optional=decl.optional,
                        activator=feature,
                        weak=weak,
                    )
                )
    return edges
