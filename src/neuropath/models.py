"""
Domain models for the NeuroPath exploration session.

Cards, turns and summaries are produced once and never mutated, so every
model here is frozen. Graph nodes form a tagged union on ``kind``; layout
positions are kept apart from topology and only appear as snapshots.
"""

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


ROOT_ID = "root"


class Phase(str, Enum):
    """Turn Engine phases."""

    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    SUMMARY = "summary"


class Card(BaseModel):
    """A knowledge card offered to the user."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Unique within its batch, e.g. 'round2-opt1'")
    title: str = Field(..., description="Short concept name")
    description: str = Field("", description="One or two sentences about the concept")
    reasoning: str = Field("", description="Why the generator offered this option")
    icon: str | None = Field(None, description="A single emoji representing the concept")


class Turn(BaseModel):
    """One round: the batch that was offered and, once made, the choice."""

    model_config = ConfigDict(frozen=True)

    round: int = Field(..., ge=1, description="1-based round number")
    options: tuple[Card, ...] = Field(..., description="Batch offered this round, in order")
    selected_card: Card | None = Field(None, description="The chosen option, absent while undecided")

    @model_validator(mode="after")
    def _selection_is_offered(self) -> "Turn":
        if self.selected_card is not None:
            if all(opt.id != self.selected_card.id for opt in self.options):
                raise ValueError(
                    f"selected card {self.selected_card.id!r} is not among the round {self.round} options"
                )
        return self


class Summary(BaseModel):
    """Closing summary of a completed journey."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    title: str
    summary: str
    key_takeaways: tuple[str, ...] = Field(..., alias="keyTakeaways")


# =============================================================================
# Knowledge graph
# =============================================================================

class RootNode(BaseModel):
    """The session topic, origin of the first round's edges."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["root"] = "root"
    id: str = ROOT_ID
    label: str
    round: Literal[0] = 0


class _CardNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    round: int = Field(..., ge=1)
    description: str | None = None


class SelectedNode(_CardNode):
    """An option the user chose."""

    kind: Literal["selected"] = "selected"


class DiscardedNode(_CardNode):
    """An option the user passed over."""

    kind: Literal["discarded"] = "discarded"


GraphNode = Annotated[Union[RootNode, SelectedNode, DiscardedNode], Field(discriminator="kind")]


class GraphEdge(BaseModel):
    """Directed edge from a path tip to an offered option."""

    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    weight: Literal[1, 2] = Field(..., description="2 when the target was selected, 1 otherwise")


class KnowledgeGraph(BaseModel):
    """Nodes and edges derived from a turn history, in insertion order."""

    model_config = ConfigDict(frozen=True)

    nodes: tuple[GraphNode, ...] = ()
    edges: tuple[GraphEdge, ...] = ()
    path_tip: str = ROOT_ID

    @property
    def node_index(self) -> dict[str, GraphNode]:
        """Nodes keyed by id. Later nodes win on id collisions."""
        return {node.id: node for node in self.nodes}


class LayoutPosition(BaseModel):
    """Snapshot of one node's simulated position."""

    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    pinned: bool = False
