"""Post-query graph analysis (transitive reduction)."""

from __future__ import annotations

import networkx as nx

from featunify.model import AnnotatedGraph, FeatureNode


def _digraph(annotated: AnnotatedGraph) -> nx.DiGraph:
    g = nx.DiGraph()
    g.add_nodes_from(annotated.nodes)
    g.add_edges_from(annotated.edges)
    return g


def transitive_reduction(annotated: AnnotatedGraph) -> AnnotatedGraph:
    """Drop every edge whose endpoints stay connected without it.

    Reachability between any two nodes is preserved, node set and tags are
    untouched.  Feature graphs can contain cycles (features implying each
    other), where NetworkX refuses to reduce; those fall back to removing
    redundant edges one at a time.
    """
    g = _digraph(annotated)
    if nx.is_directed_acyclic_graph(g):
        kept = set(nx.transitive_reduction(g).edges)
    else:
        kept = _reduce_cyclic(g)
    return AnnotatedGraph(
        nodes=dict(annotated.nodes),
        edges={pair: tag for pair, tag in annotated.edges.items() if pair in kept},
        focus=annotated.focus,
    )


def _reduce_cyclic(g: nx.DiGraph) -> set[tuple[FeatureNode, FeatureNode]]:
    for src, dst in sorted(g.edges, key=lambda e: (e[0].sort_key(), e[1].sort_key())):
        g.remove_edge(src, dst)
        if not nx.has_path(g, src, dst):
            g.add_edge(src, dst)
    return set(g.edges)
