"""
Layout Engine: force-directed positioning for the knowledge graph.

The simulation follows the classic velocity-Verlet style used by d3-force:
each tick decays ``alpha`` toward ``alpha_target``, accumulates velocity from
every force, damps it and moves every node that is not pinned. Five forces
are applied in order:

1. link      - springs each edge toward a fixed rest length
2. charge    - pairwise many-body repulsion
3. collide   - hard minimum centre distance (not scaled by alpha)
4. band      - pulls a node toward ``round * band_height`` on the y axis
5. center    - weakly pulls every node toward the horizontal midline

Positions live in numpy arrays indexed by node order and are exposed only as
``LayoutPosition`` snapshots keyed by node id, so topology data never carries
physics state.
"""

import asyncio
import logging
import math
from contextlib import suppress
from dataclasses import dataclass
from typing import Callable, NamedTuple

import numpy as np

from .models import KnowledgeGraph, LayoutPosition

logger = logging.getLogger(__name__)


# Golden-angle spiral used to place nodes that have no placed parent
INITIAL_RADIUS = 10.0
INITIAL_ANGLE = math.pi * (3 - math.sqrt(5))


@dataclass
class ForceParams:
    """Tuning constants for the simulation."""

    link_distance: float = 100.0
    charge_strength: float = -300.0
    distance_min: float = 1.0
    collide_radius: float = 40.0
    collide_strength: float = 1.0
    band_height: float = 80.0
    band_strength: float = 0.5
    center_strength: float = 0.05
    alpha_min: float = 0.001
    alpha_decay: float = 1 - 0.001 ** (1 / 300)
    velocity_decay: float = 0.4
    drag_alpha_target: float = 0.3
    seed_offset: float = 10.0


class EdgeSegment(NamedTuple):
    """Edge endpoints for redraw."""

    source: str
    target: str
    weight: int
    x1: float
    y1: float
    x2: float
    y2: float


@dataclass(frozen=True)
class LayoutFrame:
    """Everything a renderer needs after one tick."""

    positions: dict[str, LayoutPosition]
    segments: tuple[EdgeSegment, ...]
    alpha: float


class ForceLayout:
    """Force-directed simulation over a ``KnowledgeGraph``."""

    def __init__(
        self,
        width: float = 800.0,
        height: float = 600.0,
        params: ForceParams | None = None,
        seed: int | None = None,
    ):
        self.width = width
        self.height = height
        self.params = params or ForceParams()
        self._rng = np.random.default_rng(seed)

        self.alpha = 1.0
        self.alpha_target = 0.0
        self.tick_count = 0

        self._ids: list[str] = []
        self._index: dict[str, int] = {}
        self._pos = np.zeros((0, 2))
        self._vel = np.zeros((0, 2))
        self._rounds = np.zeros(0)
        self._radii = np.zeros(0)
        self._pins: dict[str, tuple[float, float]] = {}

        self._edges: list[tuple[str, str, int]] = []
        self._src = np.zeros(0, dtype=int)
        self._tgt = np.zeros(0, dtype=int)
        self._link_strength = np.zeros(0)
        self._link_bias = np.zeros(0)

        self._tick_listeners: list[Callable[[LayoutFrame], None]] = []
        self._restart_listeners: list[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_tick(self, callback: Callable[[LayoutFrame], None]) -> None:
        """Register a redraw callback invoked after every tick."""
        self._tick_listeners.append(callback)

    def on_restart(self, callback: Callable[[], None]) -> None:
        """Register a callback invoked whenever the simulation is reheated."""
        self._restart_listeners.append(callback)

    def restart(self) -> None:
        for callback in self._restart_listeners:
            callback()

    # ------------------------------------------------------------------
    # Graph (re)seeding
    # ------------------------------------------------------------------

    @property
    def node_ids(self) -> list[str]:
        return list(self._ids)

    def set_graph(self, graph: KnowledgeGraph) -> None:
        """
        Load a new node/edge set, carrying over state for known ids.

        Nodes already simulated keep their position and velocity. A new node
        starts next to its parent (the source of the first edge pointing at
        it); a node with no placed parent goes on a spiral around the band
        origin. Any change to the node set reheats the simulation.
        """
        index = graph.node_index
        ids = list(index)
        previous = dict(self._index)
        parents: dict[str, str] = {}
        for edge in graph.edges:
            parents.setdefault(edge.target, edge.source)

        pos = np.zeros((len(ids), 2))
        vel = np.zeros((len(ids), 2))
        placed: dict[str, int] = {}
        for i, node_id in enumerate(ids):
            if node_id in previous:
                pos[i] = self._pos[previous[node_id]]
                vel[i] = self._vel[previous[node_id]]
            elif parents.get(node_id) in placed:
                offset = self._rng.uniform(-1.0, 1.0, size=2) * self.params.seed_offset
                pos[i] = pos[placed[parents[node_id]]] + offset
            else:
                radius = INITIAL_RADIUS * math.sqrt(0.5 + i)
                angle = i * INITIAL_ANGLE
                pos[i] = (self.width / 2 + radius * math.cos(angle), radius * math.sin(angle))
            placed[node_id] = i

        grown = set(ids) != set(self._ids)

        self._ids = ids
        self._index = {node_id: i for i, node_id in enumerate(ids)}
        self._pos = pos
        self._vel = vel
        self._rounds = np.array([float(index[node_id].round) for node_id in ids])
        self._radii = np.full(len(ids), self.params.collide_radius)
        self._pins = {k: v for k, v in self._pins.items() if k in self._index}
        self._load_edges(graph)

        if grown:
            logger.debug("Layout reseeded with %d nodes, %d edges", len(ids), len(self._edges))
            self.alpha = 1.0
            self.restart()

    def _load_edges(self, graph: KnowledgeGraph) -> None:
        edges = [
            (e.source, e.target, e.weight) for e in graph.edges
            if e.source in self._index and e.target in self._index
        ]
        self._edges = edges
        self._src = np.array([self._index[s] for s, _, _ in edges], dtype=int)
        self._tgt = np.array([self._index[t] for _, t, _ in edges], dtype=int)

        count = np.zeros(len(self._ids))
        np.add.at(count, self._src, 1)
        np.add.at(count, self._tgt, 1)
        if edges:
            cs, ct = count[self._src], count[self._tgt]
            self._link_strength = 1.0 / np.minimum(cs, ct)
            self._link_bias = cs / (cs + ct)
        else:
            self._link_strength = np.zeros(0)
            self._link_bias = np.zeros(0)

    # ------------------------------------------------------------------
    # Dragging
    # ------------------------------------------------------------------

    def drag_start(self, node_id: str, x: float | None = None, y: float | None = None) -> None:
        """Pin a node where it is (or at ``x, y``) and reheat the layout."""
        i = self._index[node_id]
        px = float(self._pos[i, 0]) if x is None else x
        py = float(self._pos[i, 1]) if y is None else y
        self._pins[node_id] = (px, py)
        self.alpha_target = self.params.drag_alpha_target
        self.restart()

    def drag_to(self, node_id: str, x: float, y: float) -> None:
        if node_id not in self._pins:
            raise KeyError(node_id)
        self._pins[node_id] = (x, y)

    def drag_end(self, node_id: str) -> None:
        """Release a pinned node back into the simulation."""
        self._pins.pop(node_id, None)
        if not self._pins:
            self.alpha_target = 0.0

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    @property
    def is_settled(self) -> bool:
        return self.alpha < self.params.alpha_min and self.alpha_target < self.params.alpha_min

    def tick(self) -> LayoutFrame:
        """Advance the simulation one step and notify redraw listeners."""
        p = self.params
        self.alpha += (self.alpha_target - self.alpha) * p.alpha_decay
        self.tick_count += 1

        if self._ids:
            self._apply_link()
            self._apply_charge()
            self._apply_collide()
            self._vel[:, 1] += (self._rounds * p.band_height - self._pos[:, 1]) * p.band_strength * self.alpha
            self._vel[:, 0] += (self.width / 2 - self._pos[:, 0]) * p.center_strength * self.alpha

            self._vel *= 1 - p.velocity_decay
            self._pos += self._vel
            for node_id, (px, py) in self._pins.items():
                i = self._index[node_id]
                self._pos[i] = (px, py)
                self._vel[i] = 0.0

        frame = self.frame()
        for callback in self._tick_listeners:
            callback(frame)
        return frame

    def run(self, max_ticks: int = 1000) -> int:
        """Tick until settled or ``max_ticks``; returns ticks taken."""
        ticks = 0
        while not self.is_settled and ticks < max_ticks:
            self.tick()
            ticks += 1
        return ticks

    def _jiggle(self, shape) -> np.ndarray:
        return (self._rng.random(shape) - 0.5) * 1e-6

    def _apply_link(self) -> None:
        if not self._edges:
            return
        s, t = self._src, self._tgt
        delta = (self._pos[t] + self._vel[t]) - (self._pos[s] + self._vel[s])
        zero = ~delta.any(axis=1)
        if zero.any():
            delta[zero] = self._jiggle((int(zero.sum()), 2))
        length = np.linalg.norm(delta, axis=1)
        scale = (length - self.params.link_distance) / length * self.alpha * self._link_strength
        delta *= scale[:, None]
        bias = self._link_bias[:, None]
        np.add.at(self._vel, t, -delta * bias)
        np.add.at(self._vel, s, delta * (1 - bias))

    def _apply_charge(self) -> None:
        n = len(self._ids)
        if n < 2:
            return
        delta = self._pos[None, :, :] - self._pos[:, None, :]
        dist2 = (delta ** 2).sum(axis=2)
        coincident = dist2 == 0
        np.fill_diagonal(coincident, False)
        if coincident.any():
            delta[coincident] = self._jiggle((int(coincident.sum()), 2))
            dist2 = (delta ** 2).sum(axis=2)
        np.fill_diagonal(dist2, np.inf)
        dmin2 = self.params.distance_min ** 2
        dist2 = np.where(dist2 < dmin2, np.sqrt(dmin2 * dist2), dist2)
        weight = self.params.charge_strength * self.alpha / dist2
        self._vel += (delta * weight[:, :, None]).sum(axis=1)

    def _apply_collide(self) -> None:
        n = len(self._ids)
        if n < 2:
            return
        predicted = self._pos + self._vel
        delta = predicted[:, None, :] - predicted[None, :, :]
        dist = np.sqrt((delta ** 2).sum(axis=2))
        reach = self._radii[:, None] + self._radii[None, :]
        overlap = dist < reach
        np.fill_diagonal(overlap, False)
        if not overlap.any():
            return
        coincident = overlap & (dist == 0)
        if coincident.any():
            # Antisymmetric jiggle keeps pair corrections opposite and equal
            upper = np.triu(coincident)
            jitter = np.zeros_like(delta)
            jitter[upper] = self._jiggle((int(upper.sum()), 2))
            delta = delta + jitter - jitter.transpose(1, 0, 2)
            dist = np.sqrt((delta ** 2).sum(axis=2))
        safe = np.where(overlap, dist, 1.0)
        factor = np.where(overlap, (reach - safe) / safe * self.params.collide_strength, 0.0)
        r2 = self._radii ** 2
        share = r2[None, :] / (r2[:, None] + r2[None, :])
        self._vel += (delta * (factor * share)[:, :, None]).sum(axis=1)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def positions(self) -> dict[str, LayoutPosition]:
        return {
            node_id: LayoutPosition(
                x=float(self._pos[i, 0]),
                y=float(self._pos[i, 1]),
                pinned=node_id in self._pins,
            )
            for node_id, i in self._index.items()
        }

    def frame(self) -> LayoutFrame:
        segments = tuple(
            EdgeSegment(
                source, target, weight,
                float(self._pos[s, 0]), float(self._pos[s, 1]),
                float(self._pos[t, 0]), float(self._pos[t, 1]),
            )
            for (source, target, weight), s, t in zip(self._edges, self._src, self._tgt)
        )
        return LayoutFrame(positions=self.positions(), segments=segments, alpha=self.alpha)


@dataclass
class ViewTransform:
    """Zoom/pan applied to the rendered scene, independent of the simulation."""

    k: float = 1.0
    x: float = 0.0
    y: float = 0.0
    min_scale: float = 0.1
    max_scale: float = 4.0

    @classmethod
    def initial(cls, width: float) -> "ViewTransform":
        return cls(k=0.8, x=width / 2, y=50.0)

    def apply(self, px: float, py: float) -> tuple[float, float]:
        """Simulation coordinates to screen coordinates."""
        return px * self.k + self.x, py * self.k + self.y

    def invert(self, sx: float, sy: float) -> tuple[float, float]:
        """Screen coordinates to simulation coordinates."""
        return (sx - self.x) / self.k, (sy - self.y) / self.k

    def zoom(self, scale: float, x: float, y: float) -> None:
        self.k = min(max(scale, self.min_scale), self.max_scale)
        self.x = x
        self.y = y


class LayoutTicker:
    """Drives a ``ForceLayout`` on the event loop until it settles."""

    def __init__(self, layout: ForceLayout, interval: float = 0.016):
        self.layout = layout
        self.interval = interval
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None
        layout.on_restart(self._wake.set)

    def start(self) -> None:
        if self._task is None:
            self._wake.set()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while True:
            if self.layout.is_settled:
                self._wake.clear()
                await self._wake.wait()
                continue
            self.layout.tick()
            await asyncio.sleep(self.interval)
