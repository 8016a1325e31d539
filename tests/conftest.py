"""Shared fixtures for NeuroPath backend tests.

This module provides pytest fixtures for:
- Settings overrides
- A scripted ContentGenerator double with failure and gating hooks
- Card/turn factories
"""

import asyncio
import json

import pytest

from neuropath.errors import GenerationError
from neuropath.models import Card, Summary, Turn


# ============================================================================
# Factories
# ============================================================================

def make_card(card_id: str, title: str | None = None) -> Card:
    """Create a card with predictable text fields."""
    return Card(
        id=card_id,
        title=title or f"Concept {card_id}",
        description=f"About {card_id}",
        reasoning=f"Because {card_id}",
        icon="💡",
    )


def make_batch(round_num: int, size: int = 3) -> list[Card]:
    """Round-numbered batch, ids like round2-opt1."""
    return [make_card(f"round{round_num}-opt{i}") for i in range(1, size + 1)]


def make_history(rounds: int, pick: int = 0) -> list[Turn]:
    """Completed history where option ``pick`` is chosen each round."""
    history = []
    for r in range(1, rounds + 1):
        batch = make_batch(r)
        history.append(Turn(round=r, options=batch, selected_card=batch[pick]))
    return history


CANNED_SUMMARY = Summary(
    title="The Coffee Odyssey",
    summary="From bean to cup.",
    key_takeaways=("Roasting matters", "Water temperature matters", "Grind size matters"),
)


# ============================================================================
# Generator double
# ============================================================================

class ScriptedGenerator:
    """ContentGenerator double with call recording, failures and an optional gate.

    Attributes:
        initial: batch returned by generate_initial_batch (default round 1 batch)
        fail_initial / fail_rounds: raise GenerationError for the initial batch
            or for the listed target rounds
        fail_summary: raise GenerationError from generate_summary
        gate: when set, every call awaits this event before answering
    """

    def __init__(self, batch_size: int = 3):
        self.batch_size = batch_size
        self.initial: list[Card] | None = None
        self.batches: dict[int, list[Card]] = {}
        self.fail_initial = False
        self.fail_rounds: set[int] = set()
        self.fail_summary = False
        self.gate: asyncio.Event | None = None
        self.calls: list[tuple] = []

    async def _wait(self):
        if self.gate is not None:
            await self.gate.wait()

    async def generate_initial_batch(self, topic):
        self.calls.append(("initial", topic))
        await self._wait()
        if self.fail_initial:
            raise GenerationError("initial batch unavailable")
        return self.initial if self.initial is not None else make_batch(1, self.batch_size)

    async def generate_next_batch(self, topic, history, target_round):
        self.calls.append(("next", topic, len(history), target_round))
        await self._wait()
        if target_round in self.fail_rounds:
            raise GenerationError(f"round {target_round} unavailable")
        return self.batches.get(target_round, make_batch(target_round, self.batch_size))

    async def generate_summary(self, topic, history):
        self.calls.append(("summary", topic, len(history)))
        await self._wait()
        if self.fail_summary:
            raise GenerationError("summary unavailable")
        return CANNED_SUMMARY


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def test_settings():
    """Override application settings for testing.

    Returns settings with:
    - langfuse_enabled=False: Disable observability
    - tick_interval_ms=5: Fast layout ticks so e2e tests settle quickly
    """
    from neuropath.config import Settings

    return Settings(
        host="127.0.0.1",
        port=8000,
        allowed_origins=["http://test"],
        model="test-model",
        tick_interval_ms=5,
        langfuse_enabled=False,
        langfuse_public_key=None,
        langfuse_secret_key=None,
        log_level="WARNING",
        log_format="text",
        log_module_levels={},
    )


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest.fixture
def engine(generator):
    from neuropath.engine import TurnEngine

    return TurnEngine(generator)


# ============================================================================
# Utility Functions
# ============================================================================

def ws_request(type_: str, **fields) -> str:
    """Create a JSON client request for WebSocket testing."""
    return json.dumps({"type": type_, **fields})


def receive_until(websocket, predicate, limit: int = 5000) -> dict:
    """Read messages until one matches ``predicate``; layout frames are skipped over."""
    for _ in range(limit):
        msg = json.loads(websocket.receive_text())
        if predicate(msg):
            return msg
    raise AssertionError("expected message never arrived")
