"""WorkspaceGraph: the resolved workspace as a NetworkX multigraph."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

import networkx as nx
from networkx import MultiDiGraph

from featunify.model import (
    BuildContext,
    DependencyEdge,
    DependencyKind,
    Package,
    PackageIdentity,
)
from featunify.platform import Platform


def is_active(edge: DependencyEdge, context: BuildContext, platform: Platform) -> bool:
    """Return True if *edge* takes part in a build of *context* for *platform*.

    Dev edges only count in test builds and only for the context's own
    members; normal and build edges always count.
    """
    if edge.kind is DependencyKind.DEV:
        if not context.dev or edge.source not in context.members:
            return False
    return platform.matches(edge.platform)


def fold_name(name: str) -> str:
    """Crate names compare case-insensitively with ``-`` and ``_`` equal."""
    return name.lower().replace("-", "_")


class WorkspaceGraph:
    """Resolved workspace graph.

    Wraps a NetworkX MultiDiGraph keyed by PackageIdentity.  Parallel edges
    between the same two packages are kept apart: kind and platform filter
    decide which build contexts activate each of them.  Once ``freeze`` is
    called the graph is read-only.
    """

    def __init__(self, platform: Platform) -> None:
        self.platform = platform
        self._graph: MultiDiGraph = nx.MultiDiGraph()

    # -- construction ------------------------------------------------------

    def add_package(self, package: Package) -> None:
        self._graph.add_node(package.identity, package=package)

    def add_edge(self, edge: DependencyEdge) -> None:
        if edge.source not in self._graph or edge.target not in self._graph:
            raise KeyError(f"edge {edge.source} -> {edge.target} references an unknown package")
        self._graph.add_edge(edge.source, edge.target, edge=edge)

    def retain(self, keep: Iterable[PackageIdentity]) -> int:
        """Drop every package not in *keep*; return how many were dropped."""
        keep = set(keep)
        doomed = [n for n in self._graph.nodes if n not in keep]
        self._graph.remove_nodes_from(doomed)
        return len(doomed)

    def freeze(self) -> WorkspaceGraph:
        nx.freeze(self._graph)
        return self

    @property
    def frozen(self) -> bool:
        return nx.is_frozen(self._graph)

    # -- queries -----------------------------------------------------------

    @property
    def node_count(self) -> int:
        return self._graph.number_of_nodes()

    @property
    def edge_count(self) -> int:
        return self._graph.number_of_edges()

    @property
    def members(self) -> list[PackageIdentity]:
        return sorted(p.identity for p in self.packages() if p.is_member)

    def has_package(self, identity: PackageIdentity) -> bool:
        return self._graph.has_node(identity)

    def package(self, identity: PackageIdentity) -> Package:
        return self._graph.nodes[identity]["package"]

    def packages(self) -> Iterator[Package]:
        for _, data in self._graph.nodes(data=True):
            yield data["package"]

    def is_member(self, identity: PackageIdentity) -> bool:
        return self.package(identity).is_member

    def out_edges(self, identity: PackageIdentity) -> list[DependencyEdge]:
        return [e for _, _, e in self._graph.out_edges(identity, data="edge")]

    def in_edges(self, identity: PackageIdentity) -> list[DependencyEdge]:
        return [e for _, _, e in self._graph.in_edges(identity, data="edge")]

    def edges(self) -> Iterator[DependencyEdge]:
        for _, _, e in self._graph.edges(data="edge"):
            yield e

    def find(self, name: str, version: str | None = None) -> list[PackageIdentity]:
        """Packages called *name* (optionally of exactly *version*)."""
        wanted = fold_name(name)
        found = [
            p.identity
            for p in self.packages()
            if fold_name(p.identity.name) == wanted
            and (version is None or p.identity.version == version.lstrip("v"))
        ]
        return sorted(found)

    def reachable_from_members(self) -> set[PackageIdentity]:
        reachable: set[PackageIdentity] = set()
        for member in self.members:
            reachable.add(member)
            reachable |= nx.descendants(self._graph, member)
        return reachable
