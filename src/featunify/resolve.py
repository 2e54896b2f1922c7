"""Feature resolution for one build context."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable

from featunify.graph import WorkspaceGraph, is_active
from featunify.model import (
    BuildContext,
    DependencyEdge,
    DependencyKind,
    FeatureSet,
    HackEntry,
    PackageIdentity,
)

logger = logging.getLogger(__name__)

# (package, feature) with feature None standing for the package itself
Activation = tuple[PackageIdentity, str | None]


def resolve_features(
    graph: WorkspaceGraph,
    context: BuildContext,
    extra_requests: Iterable[HackEntry] = (),
) -> dict[PackageIdentity, set[str | None]]:
    """Fixed point of feature activation for *context*.

    Returns every activated package with its active features: ``None`` for
    the package itself, named features, and ``dep:<key>`` activations of
    optional dependencies.  *extra_requests* are synthetic dependencies of
    context members, used to model a hack that is already applied.

    Each ``(package, feature)`` pair is expanded at most once, so feature
    cycles terminate.
    """
    visited: set[Activation] = set()
    stack: list[Activation] = []
    # weak edges waiting for their dependency: (source, key) -> edges
    parked: dict[tuple[PackageIdentity, str], list[DependencyEdge]] = defaultdict(list)
    edge_cache: dict[PackageIdentity, list[DependencyEdge]] = {}

    def activate(package: PackageIdentity, feature: str | None) -> None:
        if (package, feature) not in visited:
            visited.add((package, feature))
            stack.append((package, feature))

    def request(target: PackageIdentity, features: FeatureSet) -> None:
        activate(target, None)
        if features.default:
            activate(target, "default")
        for name in features.sorted_names():
            activate(target, name)

    def active_edges(package: PackageIdentity) -> list[DependencyEdge]:
        edges = edge_cache.get(package)
        if edges is None:
            edges = [
                e for e in graph.out_edges(package) if is_active(e, context, graph.platform)
            ]
            edge_cache[package] = edges
        return edges

    def enabled(package: PackageIdentity, key: str) -> bool:
        if (package, f"dep:{key}") in visited:
            return True
        return any(
            e.key == key and not e.optional and e.activator is None
            for e in active_edges(package)
        )

    for member in sorted(context.members):
        activate(member, None)
        if graph.package(member).has_default:
            activate(member, "default")
    for entry in extra_requests:
        if entry.member not in context.members:
            continue
        if entry.kind is DependencyKind.DEV and not context.dev:
            continue
        request(entry.package, entry.features)

    while stack:
        package, feature = stack.pop()
        if feature is not None:
            activate(package, None)
            for implied in graph.package(package).features.get(feature, ()):
                activate(package, implied)
        for edge in active_edges(package):
            if edge.activator != feature:
                continue
            if edge.weak and not enabled(package, edge.key):
                parked[(package, edge.key)].append(edge)
                continue
            request(edge.target, edge.features)
        if feature is not None and feature.startswith("dep:"):
            for edge in parked.pop((package, feature[4:]), ()):
                request(edge.target, edge.features)

    active: dict[PackageIdentity, set[str | None]] = defaultdict(set)
    for package, feature in visited:
        active[package].add(feature)
    return dict(active)


def feature_set(features: Iterable[str | None]) -> FeatureSet:
    """Collapse raw activations into the FeatureSet a package is built with."""
    features = set(features)
    names = {f for f in features if f and f != "default" and not f.startswith("dep:")}
    return FeatureSet(frozenset(names), "default" in features)


def resolve_context(
    graph: WorkspaceGraph,
    context: BuildContext,
    extra_requests: Iterable[HackEntry] = (),
) -> dict[PackageIdentity, FeatureSet]:
    """Feature set of every external package built in *context*."""
    active = resolve_features(graph, context, extra_requests)
    resolved = {
        package: feature_set(features)
        for package, features in active.items()
        if not graph.is_member(package)
    }
    logger.debug(
        "Context %s resolves %d external packages",
        context.label or ", ".join(m.name for m in sorted(context.members)),
        len(resolved),
    )
    return resolved
