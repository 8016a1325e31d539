"""Tests for the force-directed layout engine."""

import asyncio
import itertools
import math

import pytest

from neuropath.graph_builder import build_graph
from neuropath.layout import ForceLayout, ForceParams, LayoutTicker, ViewTransform
from neuropath.models import Turn

from conftest import make_batch, make_history


def settled_layout(rounds: int = 3, seed: int = 7) -> ForceLayout:
    layout = ForceLayout(seed=seed)
    layout.set_graph(build_graph(make_history(rounds), "Topic"))
    layout.run(max_ticks=2000)
    return layout


def min_pair_distance(positions) -> float:
    return min(
        math.dist((a.x, a.y), (b.x, b.y))
        for a, b in itertools.combinations(positions.values(), 2)
    )


def test_settles_within_budget():
    layout = ForceLayout(seed=1)
    layout.set_graph(build_graph(make_history(2), "Topic"))

    ticks = layout.run(max_ticks=2000)

    assert layout.is_settled
    assert ticks < 2000
    assert layout.alpha < layout.params.alpha_min


@pytest.mark.parametrize("rounds", [1, 4, 8])
def test_collision_keeps_minimum_distance(rounds):
    layout = settled_layout(rounds)
    positions = layout.positions()
    min_distance = 2 * layout.params.collide_radius

    assert min_pair_distance(positions) >= min_distance - 0.1


@pytest.mark.parametrize("seed", range(5))
def test_collision_holds_as_graph_grows_round_by_round(seed):
    """Offer a batch, settle, select, settle: the way a live session feeds the layout."""
    layout = ForceLayout(seed=seed)
    min_distance = 2 * layout.params.collide_radius

    for r in range(1, 9):
        pending = make_history(r - 1) + [Turn(round=r, options=make_batch(r))]
        layout.set_graph(build_graph(pending, "Topic"))
        layout.run(max_ticks=2000)
        assert min_pair_distance(layout.positions()) >= min_distance - 0.1

        layout.set_graph(build_graph(make_history(r), "Topic"))
        layout.run(max_ticks=2000)

    assert len(layout.node_ids) == 1 + 8 * 3
    assert min_pair_distance(layout.positions()) >= min_distance - 0.1


def test_rounds_band_top_to_bottom():
    layout = settled_layout(4)
    positions = layout.positions()
    graph = build_graph(make_history(4), "Topic")

    mean_y = {}
    for node in graph.nodes:
        mean_y.setdefault(node.round, []).append(positions[node.id].y)
    averages = [sum(ys) / len(ys) for _, ys in sorted(mean_y.items())]
    assert averages == sorted(averages)


def test_tick_notifies_redraw_listener():
    layout = ForceLayout(seed=3)
    layout.set_graph(build_graph(make_history(1), "Topic"))
    frames = []
    layout.on_tick(frames.append)

    layout.tick()
    layout.tick()

    assert len(frames) == 2
    frame = frames[-1]
    assert set(frame.positions) == {"root", "round1-opt1", "round1-opt2", "round1-opt3"}
    assert len(frame.segments) == 3
    seg = frame.segments[0]
    assert (seg.x1, seg.y1) == (frame.positions["root"].x, frame.positions["root"].y)


def test_drag_pins_node_and_reheats():
    layout = settled_layout(2)
    restarts = []
    layout.on_restart(lambda: restarts.append(True))

    layout.drag_start("round1-opt2")
    layout.drag_to("round1-opt2", 500.0, -200.0)
    for _ in range(20):
        layout.tick()

    pos = layout.positions()["round1-opt2"]
    assert (pos.x, pos.y) == (500.0, -200.0)
    assert pos.pinned
    assert restarts
    assert not layout.is_settled
    assert layout.alpha_target == pytest.approx(0.3)


def test_drag_end_unpins_and_lets_layout_settle():
    layout = settled_layout(2)
    layout.drag_start("round1-opt1", 400.0, 400.0)
    layout.tick()

    layout.drag_end("round1-opt1")
    assert not layout.positions()["round1-opt1"].pinned
    assert layout.alpha_target == 0.0

    layout.run(max_ticks=3000)
    assert layout.is_settled
    released = layout.positions()["round1-opt1"]
    assert (released.x, released.y) != (400.0, 400.0)


def test_drag_to_without_start_raises():
    layout = settled_layout(1)
    with pytest.raises(KeyError):
        layout.drag_to("round1-opt1", 0.0, 0.0)


def test_reseed_keeps_existing_positions():
    layout = settled_layout(2)
    before = layout.positions()

    history = make_history(2) + [Turn(round=3, options=make_batch(3))]
    layout.set_graph(build_graph(history, "Topic"))
    after = layout.positions()

    for node_id, pos in before.items():
        assert (after[node_id].x, after[node_id].y) == (pos.x, pos.y)
    assert layout.alpha == 1.0


def test_new_nodes_start_near_parent():
    params = ForceParams(seed_offset=10.0)
    layout = ForceLayout(params=params, seed=11)
    layout.set_graph(build_graph(make_history(2), "Topic"))
    layout.run(max_ticks=2000)
    parent = layout.positions()["round2-opt1"]

    history = make_history(2) + [Turn(round=3, options=make_batch(3))]
    layout.set_graph(build_graph(history, "Topic"))

    for i in range(1, 4):
        child = layout.positions()[f"round3-opt{i}"]
        assert abs(child.x - parent.x) <= 10.0
        assert abs(child.y - parent.y) <= 10.0


def test_same_node_set_does_not_reheat():
    layout = settled_layout(2)
    alpha = layout.alpha
    layout.set_graph(build_graph(make_history(2), "Topic"))
    assert layout.alpha == alpha
    assert layout.is_settled


def test_pins_dropped_for_removed_nodes():
    layout = settled_layout(2)
    layout.drag_start("round2-opt3")
    layout.set_graph(build_graph(make_history(1), "Topic"))

    assert "round2-opt3" not in layout.positions()
    layout.drag_end("round2-opt3")
    assert layout.alpha_target == 0.0


def test_single_root_stays_finite():
    layout = ForceLayout(seed=2)
    layout.set_graph(build_graph([], "Topic"))
    layout.run(max_ticks=500)
    root = layout.positions()["root"]
    assert math.isfinite(root.x) and math.isfinite(root.y)
    assert root.x == pytest.approx(layout.width / 2, abs=1.0)


class TestViewTransform:

    def test_initial_transform(self):
        view = ViewTransform.initial(800)
        assert (view.k, view.x, view.y) == (0.8, 400, 50.0)

    def test_apply_and_invert(self):
        view = ViewTransform(k=2.0, x=10.0, y=-5.0)
        assert view.apply(3.0, 4.0) == (16.0, 3.0)
        assert view.invert(16.0, 3.0) == (3.0, 4.0)

    def test_zoom_clamps_scale(self):
        view = ViewTransform()
        view.zoom(10.0, 0.0, 0.0)
        assert view.k == 4.0
        view.zoom(0.01, 0.0, 0.0)
        assert view.k == 0.1

    def test_zoom_does_not_touch_simulation(self):
        layout = settled_layout(1)
        before = layout.positions()
        ViewTransform.initial(layout.width).zoom(3.0, 100.0, 100.0)
        assert layout.positions() == before


@pytest.mark.asyncio
async def test_ticker_runs_until_settled_and_wakes_on_drag():
    layout = ForceLayout(params=ForceParams(alpha_decay=0.2), seed=5)
    layout.set_graph(build_graph(make_history(1), "Topic"))
    ticker = LayoutTicker(layout, interval=0)
    ticker.start()

    for _ in range(500):
        if layout.is_settled:
            break
        await asyncio.sleep(0)
    assert layout.is_settled
    settled_ticks = layout.tick_count

    layout.drag_start("round1-opt1")
    for _ in range(5):
        await asyncio.sleep(0)
    assert layout.tick_count > settled_ticks

    await ticker.stop()
