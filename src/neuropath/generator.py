"""
Content Generator: LLM-backed card batches and journey summaries.

The Turn Engine depends only on the ``ContentGenerator`` protocol. The
production implementation asks Claude (through the Claude Agent SDK) for a
strict JSON object and validates it with the domain models. Card calls raise
``GenerationError`` on any failure; the summary call degrades to a fixed
fallback so a finished session always has something to show.
"""

import json
import logging
import re
import time
from contextlib import contextmanager
from typing import Any, Iterator, Protocol, Sequence

from claude_agent_sdk import AssistantMessage, ClaudeAgentOptions, TextBlock, query
from langfuse import get_client
from pydantic import ValidationError

from .config import get_settings
from .errors import ContractViolation, GenerationError
from .models import Card, Summary, Turn

logger = logging.getLogger(__name__)


FALLBACK_SUMMARY = Summary(
    title="Journey Complete",
    summary="We successfully navigated the knowledge graph.",
    key_takeaways=("Exploration complete",),
)

CARDS_JSON_SHAPE = """Return ONLY a valid JSON object (no other text):
{
  "cards": [
    {
      "id": "round1-opt1",
      "title": "...",
      "description": "...",
      "reasoning": "why this option is worth exploring",
      "icon": "a single emoji representing the concept"
    }
  ]
}"""

SUMMARY_JSON_SHAPE = """Return ONLY a valid JSON object (no other text):
{
  "title": "...",
  "summary": "...",
  "keyTakeaways": ["...", "..."]
}"""

ARCHITECT_PROMPT = (
    "You are a specialized Knowledge Graph Architect. Your goal is to guide a user "
    "through a topic by offering branching paths of learning.\n\n" + CARDS_JSON_SHAPE
)

GUIDE_PROMPT = (
    "You are a Knowledge Guide. Maintain continuity but introduce novelty. If it's the "
    "final round ({total_rounds}), these cards should represent conclusions or final "
    "mastery concepts.\n\n" + CARDS_JSON_SHAPE
)

SUMMARIZER_PROMPT = (
    "You summarize learning journeys through a knowledge graph.\n\n" + SUMMARY_JSON_SHAPE
)


class ContentGenerator(Protocol):
    """What the Turn Engine needs from a content source."""

    async def generate_initial_batch(self, topic: str) -> list[Card]: ...

    async def generate_next_batch(
        self, topic: str, history: Sequence[Turn], target_round: int
    ) -> list[Card]: ...

    async def generate_summary(self, topic: str, history: Sequence[Turn]) -> Summary: ...


# =============================================================================
# Response parsing
# =============================================================================

def extract_json_object(text: str) -> dict[str, Any] | None:
    """
    Pull the first JSON object out of a model response.

    Tries, in order: a fenced ```json block, the outermost brace span, and
    the whole stripped text. Returns None when nothing parses to an object.
    """
    candidates = []
    code_block_match = re.search(r'```(?:json)?\s*(\{.*?\})\s*```', text, re.DOTALL)
    if code_block_match:
        candidates.append(code_block_match.group(1))

    start_idx, end_idx = text.find("{"), text.rfind("}")
    if start_idx != -1 and end_idx > start_idx:
        candidates.append(text[start_idx:end_idx + 1])

    candidates.append(text.strip())

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def parse_cards(text: str, batch_size: int) -> list[Card]:
    """Validate a card batch response. Raises GenerationError on any defect."""
    data = extract_json_object(text)
    if data is None:
        raise GenerationError(f"Generator returned no JSON object: {text[:120]!r}")

    raw_cards = data.get("cards")
    if not isinstance(raw_cards, list) or not raw_cards:
        raise GenerationError("Generator response has no cards")

    try:
        cards = [Card.model_validate(c) for c in raw_cards]
    except ValidationError as e:
        raise GenerationError(f"Generator returned malformed cards: {e.error_count()} errors") from e

    ids = [c.id for c in cards]
    if len(set(ids)) != len(ids):
        raise GenerationError(f"Generator returned duplicate card ids: {ids}")

    if len(cards) != batch_size:
        logger.warning("Expected %d cards, generator returned %d", batch_size, len(cards))
    return cards[:batch_size]


def parse_summary(text: str) -> Summary:
    data = extract_json_object(text)
    if data is None:
        raise GenerationError(f"Generator returned no JSON object: {text[:120]!r}")
    try:
        return Summary.model_validate(data)
    except ValidationError as e:
        raise GenerationError(f"Generator returned a malformed summary: {e.error_count()} errors") from e


# =============================================================================
# Prompts
# =============================================================================

def initial_prompt(topic: str, total_rounds: int, batch_size: int) -> str:
    return (
        f'The user wants to explore the topic: "{topic}".\n'
        f"This is the start of a {total_rounds}-round knowledge exploration game.\n"
        f'Generate {batch_size} distinct starting concepts or branches related to "{topic}".\n'
        "Ensure they are diverse and interesting.\n"
        "The 'id' should be unique (e.g., 'round1-opt1')."
    )


def next_prompt(
    topic: str, history: Sequence[Turn], target_round: int, total_rounds: int, batch_size: int
) -> str:
    selected = history[-1].selected_card
    path_summary = " -> ".join(t.selected_card.title for t in history if t.selected_card)
    return (
        "Context:\n"
        f'- Main Topic: "{topic}"\n'
        f"- Current Path: {path_summary}\n"
        f'- Just Selected: "{selected.title}" ({selected.description})\n'
        f"- Current Round: {target_round} of {total_rounds}.\n\n"
        "Task:\n"
        f"Generate {batch_size} new sub-concepts, deeper dives, or related tangential topics "
        f'based specifically on the choice of "{selected.title}".\n'
        "These should represent the next logical step in learning or exploring this branch.\n"
        f"The 'id' should be 'round{target_round}-opt1', etc."
    )


def summary_prompt(topic: str, history: Sequence[Turn]) -> str:
    path_details = "\n".join(
        f'Round {i + 1}: Chosen "{t.selected_card.title}" (Context: {t.selected_card.description})'
        for i, t in enumerate(history) if t.selected_card
    )
    return (
        "Analyze this learning path:\n"
        f"Topic: {topic}\n"
        f"Path:\n{path_details}\n\n"
        "Create a cohesive summary of this knowledge journey. Give the journey a cool title. "
        "List 3-5 key takeaways."
    )


# =============================================================================
# Claude-backed generator
# =============================================================================

# Langfuse client for generator tracing (lazy initialized)
_langfuse = None


def _get_langfuse():
    """Get or create the Langfuse client when observability is configured."""
    global _langfuse
    if _langfuse is not None:
        return _langfuse
    settings = get_settings()
    if settings.langfuse_enabled and settings.langfuse_public_key and settings.langfuse_secret_key:
        _langfuse = get_client()
    return _langfuse


@contextmanager
def _traced(name: str, payload: dict[str, Any]) -> Iterator[Any]:
    langfuse = _get_langfuse()
    span = langfuse.start_span(name=name, input=payload) if langfuse else None
    try:
        yield span
    except Exception as e:
        if span:
            span.update(output={"error": str(e)}, metadata={"status": "failed"})
        raise
    finally:
        if span:
            span.end()
            langfuse.flush()


class ClaudeContentGenerator:
    """``ContentGenerator`` that prompts Claude for strict JSON."""

    def __init__(
        self,
        model: str | None = None,
        total_rounds: int = 8,
        batch_size: int = 3,
    ):
        self.model = model
        self.total_rounds = total_rounds
        self.batch_size = batch_size

    async def _complete(self, prompt: str, system_prompt: str) -> str:
        options_kwargs: dict[str, Any] = {
            "system_prompt": system_prompt,
            "allowed_tools": [],
            "max_turns": 1,
        }
        if self.model:
            options_kwargs["model"] = self.model
        options = ClaudeAgentOptions(**options_kwargs)

        start = time.time()
        parts: list[str] = []
        try:
            async for event in query(prompt=prompt, options=options):
                if isinstance(event, AssistantMessage):
                    for block in event.content:
                        if isinstance(block, TextBlock):
                            parts.append(block.text)
        except Exception as e:
            logger.error("Generator query failed after %.1fs: %s", time.time() - start, e)
            raise GenerationError(f"Generator request failed: {e}") from e

        result_text = "".join(parts)
        logger.info(
            "Generator responded in %.1fs, length=%d, preview=%r",
            time.time() - start, len(result_text), result_text[:120],
        )
        return result_text

    async def generate_initial_batch(self, topic: str) -> list[Card]:
        with _traced("initial_batch", {"topic": topic}) as span:
            text = await self._complete(
                initial_prompt(topic, self.total_rounds, self.batch_size), ARCHITECT_PROMPT
            )
            cards = parse_cards(text, self.batch_size)
            if span:
                span.update(output={"cards": [c.id for c in cards]})
            return cards

    async def generate_next_batch(
        self, topic: str, history: Sequence[Turn], target_round: int
    ) -> list[Card]:
        if not history or history[-1].selected_card is None:
            raise ContractViolation("next batch requires a history ending in a selection")

        with _traced("next_batch", {"topic": topic, "target_round": target_round}) as span:
            system_prompt = GUIDE_PROMPT.replace("{total_rounds}", str(self.total_rounds))
            text = await self._complete(
                next_prompt(topic, history, target_round, self.total_rounds, self.batch_size),
                system_prompt,
            )
            cards = parse_cards(text, self.batch_size)
            if span:
                span.update(output={"cards": [c.id for c in cards]})
            return cards

    async def generate_summary(self, topic: str, history: Sequence[Turn]) -> Summary:
        try:
            with _traced("summary", {"topic": topic, "rounds": len(history)}):
                text = await self._complete(summary_prompt(topic, history), SUMMARIZER_PROMPT)
                return parse_summary(text)
        except GenerationError as e:
            logger.error("Error generating summary, using fallback: %s", e)
            return FALLBACK_SUMMARY
