"""
Exploration session: one Turn Engine wired to one Layout Engine.

State flows one way. Engine transitions rebuild the knowledge graph and feed
it to the layout; drags and zooms only touch layout and view state.
"""

import logging
from typing import Callable

from .engine import TurnEngine
from .errors import ContractViolation
from .graph_builder import build_graph
from .layout import ForceLayout, LayoutFrame, ViewTransform
from .models import KnowledgeGraph, Phase, Turn
from .protocol import (
    LayoutFrameMessage,
    SegmentPayload,
    SessionStateMessage,
    ViewPayload,
)

logger = logging.getLogger(__name__)


class ExplorationSession:
    """Owns the derived graph, layout and view for a ``TurnEngine``."""

    def __init__(
        self,
        engine: TurnEngine,
        layout: ForceLayout,
        on_state: Callable[[SessionStateMessage], None] | None = None,
    ):
        self.engine = engine
        self.layout = layout
        self.view = ViewTransform.initial(layout.width)
        self._on_state = on_state
        self._graph_input: tuple[str, tuple[Turn, ...]] | None = None
        self.graph = KnowledgeGraph()
        self._sync_graph()
        engine.subscribe(self._on_engine_change)

    def graph_turns(self) -> tuple[Turn, ...]:
        """
        Turns shown in the graph: the completed history plus, while the user
        is choosing, the batch on offer as an undecided trailing turn.
        """
        turns = self.engine.history
        if self.engine.phase is Phase.PLAYING and self.engine.current_options:
            pending = Turn(round=len(turns) + 1, options=self.engine.current_options)
            turns = turns + (pending,)
        return turns

    def _sync_graph(self) -> None:
        graph_input = (self.engine.topic, self.graph_turns())
        if graph_input == self._graph_input:
            return
        self._graph_input = graph_input
        self.graph = build_graph(graph_input[1], graph_input[0])
        self.layout.set_graph(self.graph)

    def _on_engine_change(self, engine: TurnEngine) -> None:
        self._sync_graph()
        if self._on_state:
            self._on_state(self.state_message())

    # ------------------------------------------------------------------
    # Layout interaction
    # ------------------------------------------------------------------

    def drag(self, node_id: str, phase: str, x: float | None = None, y: float | None = None) -> None:
        """Forward a pointer drag (screen coordinates) to the layout."""
        if node_id not in self.layout.node_ids:
            raise ContractViolation(f"unknown graph node {node_id!r}")
        point = self.view.invert(x, y) if x is not None and y is not None else (None, None)
        if phase == "start":
            self.layout.drag_start(node_id, *point)
        elif phase == "move":
            if point[0] is None:
                raise ContractViolation("drag move needs x and y")
            try:
                self.layout.drag_to(node_id, *point)
            except KeyError:
                raise ContractViolation(f"drag move on {node_id!r} before drag start") from None
        else:
            self.layout.drag_end(node_id)

    def zoom(self, scale: float, x: float, y: float) -> None:
        self.view.zoom(scale, x, y)

    # ------------------------------------------------------------------
    # View models
    # ------------------------------------------------------------------

    def state_message(self) -> SessionStateMessage:
        engine = self.engine
        failed = engine.last_error
        return SessionStateMessage(
            phase=engine.phase,
            topic=engine.topic,
            round=min(len(engine.history) + 1, engine.total_rounds),
            total_rounds=engine.total_rounds,
            progress=engine.progress,
            options=list(engine.current_options),
            history=list(engine.history),
            summary=engine.summary,
            graph=self.graph,
            last_error=failed.message if failed else None,
            can_retry=failed is not None and engine.phase is Phase.PLAYING,
        )

    def frame_message(self, frame: LayoutFrame) -> LayoutFrameMessage:
        return LayoutFrameMessage(
            alpha=frame.alpha,
            positions=frame.positions,
            segments=[SegmentPayload(**seg._asdict()) for seg in frame.segments],
            view=ViewPayload(k=self.view.k, x=self.view.x, y=self.view.y),
        )
