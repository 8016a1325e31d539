"""
Graph Builder: derive the knowledge graph from a turn history.

The history is folded round by round. The accumulator carries the nodes and
edges emitted so far plus the current path tip, i.e. the id of the most
recently selected card. Every option of a round hangs off the tip that was
current when the round began.
"""

from functools import reduce
from typing import NamedTuple, Sequence

from .models import (
    ROOT_ID,
    DiscardedNode,
    GraphEdge,
    GraphNode,
    KnowledgeGraph,
    RootNode,
    SelectedNode,
    Turn,
)


class _Fold(NamedTuple):
    nodes: tuple[GraphNode, ...]
    edges: tuple[GraphEdge, ...]
    tip: str


def _fold_turn(acc: _Fold, indexed_turn: tuple[int, Turn]) -> _Fold:
    index, turn = indexed_turn
    round_num = index + 1
    selected_id = turn.selected_card.id if turn.selected_card else None

    nodes: list[GraphNode] = []
    edges: list[GraphEdge] = []
    for opt in turn.options:
        is_selected = opt.id == selected_id
        node_cls = SelectedNode if is_selected else DiscardedNode
        nodes.append(node_cls(
            id=opt.id,
            label=opt.title,
            round=round_num,
            description=opt.description,
        ))
        edges.append(GraphEdge(source=acc.tip, target=opt.id, weight=2 if is_selected else 1))

    # An undecided trailing turn adds its options but leaves the tip in place
    return _Fold(
        nodes=acc.nodes + tuple(nodes),
        edges=acc.edges + tuple(edges),
        tip=selected_id if selected_id is not None else acc.tip,
    )


def build_graph(history: Sequence[Turn], root_topic: str) -> KnowledgeGraph:
    """
    Build the full knowledge graph for a session.

    Pure and deterministic: the same history always yields the same nodes and
    edges in the same order (root first, then each round's options in the
    order they were offered).
    """
    start = _Fold(nodes=(RootNode(label=root_topic),), edges=(), tip=ROOT_ID)
    result = reduce(_fold_turn, enumerate(history), start)
    return KnowledgeGraph(nodes=result.nodes, edges=result.edges, path_tip=result.tip)


def selected_path(graph: KnowledgeGraph) -> list[SelectedNode]:
    """Follow weight-2 edges from the root and return the chosen nodes in order."""
    index = graph.node_index
    chosen_from = {edge.source: edge.target for edge in graph.edges if edge.weight == 2}

    path: list[SelectedNode] = []
    cursor = ROOT_ID
    while cursor in chosen_from:
        cursor = chosen_from[cursor]
        node = index.get(cursor)
        if not isinstance(node, SelectedNode) or len(path) > len(graph.nodes):
            break
        path.append(node)
    return path
