"""Read-only graph queries: explain, tree and dupes.

Explain and tree walk a feature-level view of the workspace graph: nodes are
packages and their features, edges are feature implications inside a package
and dependency edges from the feature that activates them to the features
they request.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable

from featunify.analysis import transitive_reduction
from featunify.graph import WorkspaceGraph, is_active
from featunify.model import (
    AnnotatedGraph,
    BuildContext,
    DependencyEdge,
    DependencyKind,
    EdgeTag,
    FeatureNode,
    NodeTag,
    PackageIdentity,
    version_key,
)
from featunify.resolve import resolve_features

logger = logging.getLogger(__name__)

# target node -> [(neighbour, dependency edge or None for a local implication)]
Links = dict[FeatureNode, list[tuple[FeatureNode, DependencyEdge | None]]]


def feature_view(graph: WorkspaceGraph, context: BuildContext) -> tuple[Links, Links]:
    """Forward and reverse adjacency of the feature-level view of *graph*."""
    forward: Links = defaultdict(list)
    reverse: Links = defaultdict(list)

    def link(src: FeatureNode, dst: FeatureNode, edge: DependencyEdge | None) -> None:
        forward[src].append((dst, edge))
        reverse[dst].append((src, edge))

    for package in graph.packages():
        pid = package.identity
        activations: set[str] = set()
        for feature, implied in package.features.items():
            link(FeatureNode(pid, feature), FeatureNode(pid), None)
            for item in implied:
                link(FeatureNode(pid, feature), FeatureNode(pid, item), None)
                if item.startswith("dep:"):
                    activations.add(item)
        for edge in graph.out_edges(pid):
            if not is_active(edge, context, graph.platform):
                continue
            if edge.activator is not None and edge.activator.startswith("dep:"):
                activations.add(edge.activator)
            src = FeatureNode(pid, edge.activator)
            for dst in _requested_nodes(edge):
                link(src, dst, edge)
        for activation in sorted(activations):
            link(FeatureNode(pid, activation), FeatureNode(pid), None)
    return forward, reverse


def _requested_nodes(edge: DependencyEdge) -> list[FeatureNode]:
    nodes = [FeatureNode(edge.target, name) for name in edge.features.sorted_names()]
    if edge.features.default:
        nodes.append(FeatureNode(edge.target, "default"))
    if not nodes:
        nodes.append(FeatureNode(edge.target))
    return nodes


def _workspace(graph: WorkspaceGraph, *, dev: bool) -> BuildContext:
    return BuildContext.of(graph.members, dev=dev, label="workspace")


# ---------------------------------------------------------------------------
# explain
# ---------------------------------------------------------------------------


def explain(
    graph: WorkspaceGraph,
    name: str,
    feature: str | None = None,
    version: str | None = None,
    *,
    reduce: bool = True,
    package_nodes: bool = False,
) -> AnnotatedGraph:
    """Why is *name* in the build?

    Walks dependency links backwards from the target until it reaches the
    workspace members that pull it in.  Members are kept as terminal nodes;
    links into them are not followed.  With *feature* only that feature of the
    target is traced.
    """
    targets = graph.find(name, version)
    if not graph.members or not targets:
        logger.debug("%s is not in use", name)
        return AnnotatedGraph()
    context = _workspace(graph, dev=True)
    active = resolve_features(graph, context)
    _, reverse = feature_view(graph, context)

    def admit(node: FeatureNode) -> bool:
        return node.feature in active.get(node.package, ())

    starts = [FeatureNode(t, feature) for t in targets]
    starts = [s for s in starts if admit(s)]
    if not starts:
        logger.debug("%s is not built with %s", name, feature or "anything")
        return AnnotatedGraph()

    collected = _walk(
        starts, reverse, stop=lambda n: graph.is_member(n.package), admit=admit
    )
    # links were collected pointing backwards; turn them around for display
    links = {(src, dst): edges for (dst, src), edges in collected.items()}
    return _annotate(graph, starts, links, reduce=reduce, package_nodes=package_nodes)


# ---------------------------------------------------------------------------
# tree
# ---------------------------------------------------------------------------


def tree(
    graph: WorkspaceGraph,
    name: str | None = None,
    feature: str | None = None,
    version: str | None = None,
    *,
    workspace_only: bool = False,
    reduce: bool = True,
    package_nodes: bool = False,
) -> AnnotatedGraph:
    """What does *name* (or the whole workspace) pull in?

    Starts from the target's features that are active in the whole-workspace
    build and follows dependency links forward to the leaves.
    """
    if not graph.members:
        return AnnotatedGraph()
    context = _workspace(graph, dev=False)
    active = resolve_features(graph, context)
    forward, _ = feature_view(graph, context)

    if name is None:
        roots: Iterable[PackageIdentity] = graph.members
    else:
        roots = graph.find(name, version)
    starts = [
        FeatureNode(pid, f)
        for pid in roots
        for f in sorted(active.get(pid, ()), key=lambda f: f or "")
        if feature is None or f == feature
    ]

    def stop(node: FeatureNode) -> bool:
        return workspace_only and not graph.is_member(node.package)

    def admit(node: FeatureNode) -> bool:
        if node.feature not in active.get(node.package, ()):
            return False
        return not (workspace_only and not graph.is_member(node.package))

    links = _walk(starts, forward, stop=stop, admit=admit)
    return _annotate(graph, starts, links, reduce=reduce, package_nodes=package_nodes)


def _walk(
    starts: list[FeatureNode],
    adjacency: Links,
    *,
    stop: Callable[[FeatureNode], bool],
    admit: Callable[[FeatureNode], bool] | None = None,
) -> dict[tuple[FeatureNode, FeatureNode], list[DependencyEdge | None]]:
    """Depth-first walk collecting every traversed link.

    Nodes for which *stop* holds are reached but not expanded, except when
    they are starting points.  Neighbours rejected by *admit* are skipped.
    """
    seen = set(starts)
    stack = list(starts)
    links: dict[tuple[FeatureNode, FeatureNode], list[DependencyEdge | None]] = {}
    start_set = set(starts)
    while stack:
        node = stack.pop()
        if node not in start_set and stop(node):
            continue
        for neighbour, edge in adjacency.get(node, ()):
            if admit is not None and not admit(neighbour):
                continue
            links.setdefault((node, neighbour), []).append(edge)
            if neighbour not in seen:
                seen.add(neighbour)
                stack.append(neighbour)
    return links


def _annotate(
    graph: WorkspaceGraph,
    starts: list[FeatureNode],
    links: dict[tuple[FeatureNode, FeatureNode], list[DependencyEdge | None]],
    *,
    reduce: bool,
    package_nodes: bool,
) -> AnnotatedGraph:
    if package_nodes:
        collapsed: dict[tuple[FeatureNode, FeatureNode], list[DependencyEdge | None]] = {}
        for (src, dst), edges in links.items():
            key = (FeatureNode(src.package), FeatureNode(dst.package))
            if key[0] != key[1]:
                collapsed.setdefault(key, []).extend(edges)
        links = collapsed
        starts = [FeatureNode(s.package) for s in starts]

    nodes: set[FeatureNode] = set(starts)
    for src, dst in links:
        nodes.add(src)
        nodes.add(dst)

    pair_tags = _pair_tags(links.values())
    result = AnnotatedGraph(
        nodes={n: _node_tag(graph, n) for n in sorted(nodes, key=FeatureNode.sort_key)},
        edges={
            (src, dst): _edge_tag(edges, pair_tags)
            for (src, dst), edges in sorted(
                links.items(), key=lambda kv: (kv[0][0].sort_key(), kv[0][1].sort_key())
            )
        },
        focus=frozenset(starts),
    )
    if reduce:
        result = transitive_reduction(result)
    return result


def _node_tag(graph: WorkspaceGraph, node: FeatureNode) -> NodeTag:
    if graph.is_member(node.package):
        return NodeTag.MEMBER
    if node.feature is not None:
        return NodeTag.FEATURE
    return NodeTag.PACKAGE


def _pair_tags(
    edge_lists: Iterable[list[DependencyEdge | None]],
) -> dict[tuple[PackageIdentity, PackageIdentity], EdgeTag]:
    """Tag each (source, target) package pair by the kinds of its dependency edges."""
    dev: dict[tuple, set] = defaultdict(set)
    other: dict[tuple, set] = defaultdict(set)
    for edges in edge_lists:
        for edge in edges:
            if edge is None:
                continue
            bucket = dev if edge.kind is DependencyKind.DEV else other
            bucket[(edge.source, edge.target)].add(edge.features)
    tags = {}
    for pair in dev.keys() | other.keys():
        if pair not in other:
            tags[pair] = EdgeTag.DEV_ONLY
        elif pair in dev and dev[pair] != other[pair]:
            tags[pair] = EdgeTag.MIXED
        else:
            tags[pair] = EdgeTag.PLAIN
    return tags


def _edge_tag(
    edges: list[DependencyEdge | None],
    pair_tags: dict[tuple[PackageIdentity, PackageIdentity], EdgeTag],
) -> EdgeTag:
    tags = {pair_tags[(e.source, e.target)] for e in edges if e is not None}
    if EdgeTag.MIXED in tags:
        return EdgeTag.MIXED
    if tags == {EdgeTag.DEV_ONLY}:
        return EdgeTag.DEV_ONLY
    return EdgeTag.PLAIN


# ---------------------------------------------------------------------------
# dupes
# ---------------------------------------------------------------------------


def dupes(graph: WorkspaceGraph) -> list[tuple[str, list[str]]]:
    """External packages present in more than one version."""
    versions: dict[str, set[str]] = defaultdict(set)
    for package in graph.packages():
        if not package.is_member:
            versions[package.identity.name].add(package.identity.version)
    return [
        (name, sorted(found, key=version_key))
        for name, found in sorted(versions.items())
        if len(found) > 1
    ]
