"""Render an AnnotatedGraph as Graphviz DOT text."""

from __future__ import annotations

from pathlib import Path
from string import Template

from featunify.model import AnnotatedGraph, EdgeTag, FeatureNode, NodeTag

_DOCUMENT = Template(
    """digraph $name {
    rankdir=LR;
    node [fontname="Helvetica", fontsize=10];
    edge [fontname="Helvetica", fontsize=9];
$nodes
$edges
}
"""
)

_SHAPES = {
    NodeTag.MEMBER: "box",
    NodeTag.FEATURE: "ellipse",
    NodeTag.PACKAGE: "octagon",
}

_STYLES = {
    EdgeTag.PLAIN: "solid",
    EdgeTag.DEV_ONLY: "dotted",
    EdgeTag.MIXED: "dashed",
}


def _quote(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return '"' + escaped + '"'


def _label(node: FeatureNode) -> str:
    if node.feature is None:
        return str(node.package)
    return f"{node.package.name}\n{node.feature}"


def render_dot(annotated: AnnotatedGraph, name: str = "featunify") -> str:
    """Return *annotated* as a DOT document.

    Node ids are assigned in node order so the output is stable for equal
    inputs.
    """
    ids = {node: f"n{i}" for i, node in enumerate(annotated.nodes)}

    node_lines = []
    for node, tag in annotated.nodes.items():
        attrs = [f"label={_quote(_label(node))}", f"shape={_SHAPES[tag]}"]
        if node.feature is None:
            attrs.append(f"tooltip={_quote(node.package.source)}")
        if node in annotated.focus:
            attrs.append('style=filled, fillcolor="lightgoldenrod1"')
        node_lines.append(f"    {ids[node]} [{', '.join(attrs)}];")

    edge_lines = [
        f"    {ids[src]} -> {ids[dst]} [style={_STYLES[tag]}];"
        for (src, dst), tag in annotated.edges.items()
    ]

    return _DOCUMENT.substitute(
        name=_quote(name),
        nodes="\n".join(node_lines),
        edges="\n".join(edge_lines),
    )


def write_dot(annotated: AnnotatedGraph, output_path: Path, name: str = "featunify") -> None:
    """Write the DOT rendering of *annotated* to *output_path*."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(render_dot(annotated, name))
