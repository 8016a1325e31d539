"""WebSocket message protocol between the presentation layer and the session."""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from .models import Card, KnowledgeGraph, LayoutPosition, Phase, Summary, Turn


# Outgoing messages (Server → Client)

class SessionStateMessage(BaseModel):
    """Turn Engine view model, sent after every state transition."""
    type: Literal["session_state"] = "session_state"
    phase: Phase
    topic: str
    round: int                   # Round currently being played (history length + 1)
    total_rounds: int
    progress: float              # (history length + 1) / total rounds
    options: list[Card]
    history: list[Turn]
    summary: Summary | None = None
    graph: KnowledgeGraph
    last_error: str | None = None
    can_retry: bool = False


class SegmentPayload(BaseModel):
    """One edge's endpoints in simulation coordinates."""
    source: str
    target: str
    weight: int
    x1: float
    y1: float
    x2: float
    y2: float


class ViewPayload(BaseModel):
    """Zoom/pan transform the client applies to the whole scene."""
    k: float
    x: float
    y: float


class LayoutFrameMessage(BaseModel):
    """Node positions and edge endpoints after a simulation tick."""
    type: Literal["layout_frame"] = "layout_frame"
    alpha: float
    positions: dict[str, LayoutPosition]
    segments: list[SegmentPayload]
    view: ViewPayload


class ErrorMessage(BaseModel):
    """Error occurred during processing."""
    type: Literal["error"] = "error"
    message: str
    code: str | None = None  # e.g. "GENERATION_ERROR", "CONTRACT_VIOLATION"


class StatusMessage(BaseModel):
    """Status update (e.g., generating the next round)."""
    type: Literal["status"] = "status"
    status: str


# Incoming messages (Client → Server)

class StartSessionRequest(BaseModel):
    type: Literal["start_session"] = "start_session"
    topic: str


class SelectCardRequest(BaseModel):
    type: Literal["select_card"] = "select_card"
    card_id: str


class RetryRequest(BaseModel):
    type: Literal["retry"] = "retry"


class ResetRequest(BaseModel):
    type: Literal["reset"] = "reset"


class DragRequest(BaseModel):
    """Pointer interaction on a graph node, in screen coordinates."""
    type: Literal["drag"] = "drag"
    node_id: str
    phase: Literal["start", "move", "end"]
    x: float | None = None
    y: float | None = None


class ZoomRequest(BaseModel):
    """New zoom/pan transform from the client."""
    type: Literal["zoom"] = "zoom"
    scale: float
    x: float
    y: float


IncomingMessage = Annotated[
    Union[
        StartSessionRequest,
        SelectCardRequest,
        RetryRequest,
        ResetRequest,
        DragRequest,
        ZoomRequest,
    ],
    Field(discriminator="type"),
]

incoming_adapter: TypeAdapter[IncomingMessage] = TypeAdapter(IncomingMessage)


# Type alias for all outgoing message types
OutgoingMessage = (
    SessionStateMessage
    | LayoutFrameMessage
    | ErrorMessage
    | StatusMessage
)


# Phase to user-friendly status mapping
PHASE_STATUS_MESSAGES = {
    Phase.IDLE: "Waiting for a topic...",
    Phase.LOADING: "Generating knowledge cards...",
    Phase.PLAYING: "Choose your next step",
    Phase.SUMMARY: "Journey complete",
}
