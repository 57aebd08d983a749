"""
Graphviz rendering of an expression graph.

Nodes are grouped in clusters: input leaves, constants, the forward
expression graph and the gradient nodes added by differentiation.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pygraphviz as pgv

if TYPE_CHECKING:
    from tapegrad import graph, nodes

CLUSTERS = ("Inputs", "Constants", "ExprGraph", "Gradients")
GRAPH_ATTRS = {"rankdir": "BT", "fontname": "Helvetica", "nodesep": "0.3"}
NODE_ATTRS = {
    "Inputs": {"shape": "box", "style": "filled", "fillcolor": "lightblue"},
    "Constants": {"shape": "box", "style": "filled", "fillcolor": "lightgrey"},
    "ExprGraph": {"shape": "ellipse"},
    "Gradients": {"shape": "ellipse", "style": "filled", "fillcolor": "mistyrose"},
}


def cluster_of(node: nodes.Node) -> str:
    if node.is_input:
        return "Inputs"
    if node.is_constant:
        return "Constants"
    return "Gradients" if node.deriv_of else "ExprGraph"


def node_name(node: nodes.Node) -> str:
    return f"n{node.id}"


def node_label(node: nodes.Node) -> str:
    head = node.name or ("input" if node.op is None else str(node.op))
    return f"{head}\n{node.shape.dims}"


def to_agraph(expr_graph: graph.ExprGraph) -> pgv.AGraph:
    agraph = pgv.AGraph(directed=True, strict=False, name=expr_graph.name, **GRAPH_ATTRS)
    subgraphs = {
        cluster: agraph.add_subgraph(name=f"cluster_{cluster}", label=cluster) for cluster in CLUSTERS
    }
    for node in expr_graph:
        cluster = cluster_of(node)
        subgraphs[cluster].add_node(node_name(node), label=node_label(node), **NODE_ATTRS[cluster])
    for node in expr_graph:
        for child in node.children:
            agraph.add_edge(f"n{child}", node_name(node))
        for target in node.deriv_of:
            agraph.add_edge(node_name(node), f"n{target}", style="dashed", constraint="false", label="d")
    return agraph


def to_dot(expr_graph: graph.ExprGraph) -> str:
    return to_agraph(expr_graph).to_string()


def write_dot(expr_graph: graph.ExprGraph, path: str | os.PathLike) -> None:
    to_agraph(expr_graph).write(path)
