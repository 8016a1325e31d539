"""
Turn Engine: the exploration session state machine.

    idle -> loading -> playing -> loading -> playing ... -> loading -> summary

The engine owns the only mutable session state. Every operation that calls
the generator requires a stable (non-loading) phase first, so at most one
request is ever in flight. ``reset()`` bumps a generation counter; a response
that arrives for an older generation is dropped instead of applied.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

from .errors import ContractViolation, GenerationError, SessionStateError
from .generator import FALLBACK_SUMMARY, ContentGenerator
from .models import ROOT_ID, Card, Phase, Summary, Turn

logger = logging.getLogger(__name__)


TOTAL_ROUNDS = 8


@dataclass(frozen=True)
class FailedSelection:
    """A selection whose follow-up batch could not be fetched."""

    card: Card
    round: int
    message: str


Listener = Callable[["TurnEngine"], None]


class TurnEngine:
    """Drives one exploration session against a ``ContentGenerator``."""

    def __init__(self, generator: ContentGenerator, total_rounds: int = TOTAL_ROUNDS):
        self._generator = generator
        self.total_rounds = total_rounds

        self._phase = Phase.IDLE
        self._topic = ""
        self._history: tuple[Turn, ...] = ()
        self._options: tuple[Card, ...] = ()
        self._summary: Summary | None = None
        self._failed: FailedSelection | None = None
        self._generation = 0
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def history(self) -> tuple[Turn, ...]:
        return self._history

    @property
    def current_options(self) -> tuple[Card, ...]:
        return self._options

    @property
    def summary(self) -> Summary | None:
        return self._summary

    @property
    def last_error(self) -> FailedSelection | None:
        return self._failed

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def progress(self) -> float:
        """Fraction shown by the progress bar: the round being played over the total."""
        return min((len(self._history) + 1) / self.total_rounds, 1.0)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` after every state transition. Returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start_session(self, topic: str) -> None:
        """Begin a session on ``topic`` and fetch the first batch."""
        topic = topic.strip()
        if not topic:
            raise ValueError("topic must not be empty")
        self._require(Phase.IDLE, "start_session")

        self._clear()
        self._topic = topic
        self._set_phase(Phase.LOADING)
        generation = self._generation
        logger.info("Starting session: topic=%r", topic)

        try:
            cards = await self._generator.generate_initial_batch(topic)
            options = self._admit(cards, round_num=1)
        except Exception as e:
            if self._is_stale(generation, "initial batch failure"):
                return
            logger.error("Failed to start session: %s", e)
            self._clear()
            self._set_phase(Phase.IDLE)
            raise

        if self._is_stale(generation, "initial batch"):
            return
        self._options = options
        self._set_phase(Phase.PLAYING)

    async def select_card(self, card: Card | str) -> None:
        """
        Record the choice for the current round and fetch what comes next.

        After the final round the summary is requested instead of another
        batch. If a mid-game batch cannot be fetched, the round is rolled back:
        the previous options stay on offer and ``retry()`` repeats the choice.
        """
        self._require(Phase.PLAYING, "select_card")
        card_id = card if isinstance(card, str) else card.id
        chosen = next((opt for opt in self._options if opt.id == card_id), None)
        if chosen is None:
            offered = [opt.id for opt in self._options]
            raise ContractViolation(f"card {card_id!r} is not among the current options {offered}")

        round_num = len(self._history) + 1
        self._history = self._history + (Turn(round=round_num, options=self._options, selected_card=chosen),)
        self._failed = None
        self._set_phase(Phase.LOADING)
        generation = self._generation
        logger.info("Round %d/%d: selected %r", round_num, self.total_rounds, chosen.title)

        if round_num >= self.total_rounds:
            await self._finish(generation)
            return

        try:
            cards = await self._generator.generate_next_batch(self._topic, self._history, round_num + 1)
            options = self._admit(cards, round_num=round_num + 1)
        except Exception as e:
            if self._is_stale(generation, "next batch failure"):
                return
            logger.error("Failed to fetch round %d batch: %s", round_num + 1, e)
            self._history = self._history[:-1]
            self._failed = FailedSelection(card=chosen, round=round_num, message=str(e))
            self._set_phase(Phase.PLAYING)
            raise

        if self._is_stale(generation, "next batch"):
            return
        self._options = options
        self._set_phase(Phase.PLAYING)

    async def retry(self) -> None:
        """Repeat the last selection whose follow-up batch failed."""
        if self._phase is not Phase.PLAYING or self._failed is None:
            raise SessionStateError("nothing to retry")
        await self.select_card(self._failed.card.id)

    def reset(self) -> None:
        """Discard the session and return to idle. Any in-flight response becomes stale."""
        self._generation += 1
        self._clear()
        self._set_phase(Phase.IDLE)
        logger.info("Session reset (generation %d)", self._generation)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _finish(self, generation: int) -> None:
        try:
            summary = await self._generator.generate_summary(self._topic, self._history)
        except Exception as e:
            logger.error("Summary generation failed, using fallback: %s", e)
            summary = FALLBACK_SUMMARY

        if self._is_stale(generation, "summary"):
            return
        self._summary = summary
        self._options = ()
        self._set_phase(Phase.SUMMARY)
        logger.info("Session complete: %r", summary.title)

    def _admit(self, cards: Sequence[Card], round_num: int) -> tuple[Card, ...]:
        """Check a batch and rename ids already used elsewhere in the session."""
        if not cards:
            raise GenerationError(f"round {round_num} batch is empty")
        batch_ids = [c.id for c in cards]
        if len(set(batch_ids)) != len(batch_ids):
            raise GenerationError(f"round {round_num} batch repeats ids: {batch_ids}")

        used = {ROOT_ID} | {opt.id for turn in self._history for opt in turn.options}
        admitted = []
        for card in cards:
            if card.id in used:
                new_id = f"round{round_num}-{card.id}"
                suffix = 2
                while new_id in used or new_id in batch_ids:
                    new_id = f"round{round_num}-{card.id}-{suffix}"
                    suffix += 1
                logger.warning("Card id %r already used in this session, renamed to %r", card.id, new_id)
                card = card.model_copy(update={"id": new_id})
            used.add(card.id)
            admitted.append(card)
        return tuple(admitted)

    def _require(self, phase: Phase, operation: str) -> None:
        if self._phase is not phase:
            raise SessionStateError(
                f"{operation} requires phase {phase.value!r}, session is {self._phase.value!r}"
            )

    def _is_stale(self, generation: int, what: str) -> bool:
        if generation != self._generation:
            logger.info("Discarding stale %s for generation %d", what, generation)
            return True
        return False

    def _clear(self) -> None:
        self._topic = ""
        self._history = ()
        self._options = ()
        self._summary = None
        self._failed = None

    def _set_phase(self, phase: Phase) -> None:
        self._phase = phase
        for listener in list(self._listeners):
            listener(self)
