"""
NeuroPath: turn-based, AI-guided knowledge exploration.

Architecture: Turn Engine (session state machine) → Graph Builder (history to
nodes/edges) → Layout Engine (force-directed positions) → WebSocket view.
"""

from .engine import TurnEngine
from .graph_builder import build_graph
from .layout import ForceLayout

__all__ = ["TurnEngine", "build_graph", "ForceLayout"]
