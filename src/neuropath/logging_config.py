"""
Logging setup for NeuroPath.

Each WebSocket connection binds a ``SessionLogContext`` into a ContextVar.
The context object is shared, not copied, so the connection keeps it current
(phase, round, engine generation) and every task spawned for the session logs
with the live values. Text output shows a compact tag; JSON output emits the
fields individually.
"""

import logging
import sys
from contextvars import ContextVar
from dataclasses import asdict, dataclass
from uuid import uuid4

from pythonjsonlogger.json import JsonFormatter


@dataclass
class SessionLogContext:
    """Session state stamped onto log records."""

    session_id: str
    generation: int = 0
    phase: str = "idle"
    round: int = 0

    def track(self, phase: str, round_num: int, generation: int) -> None:
        self.phase = phase
        self.round = round_num
        self.generation = generation

    def tag(self) -> str:
        return f"{self.session_id} g{self.generation} r{self.round} {self.phase}"


_current_session: ContextVar[SessionLogContext | None] = ContextVar("neuropath_session", default=None)


def bind_session(session_id: str | None = None) -> SessionLogContext:
    """Bind a fresh context for the current task and everything it spawns."""
    context = SessionLogContext(session_id=session_id or uuid4().hex[:12])
    _current_session.set(context)
    return context


def current_session() -> SessionLogContext | None:
    return _current_session.get()


def unbind_session() -> None:
    _current_session.set(None)


class SessionTagFilter(logging.Filter):
    """Adds ``session_tag`` for the text format; "-" outside a session."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _current_session.get()
        record.session_tag = context.tag() if context else "-"
        return True


class JSONFormatter(JsonFormatter):
    """JSON records carrying the bound session fields."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.pop("session_tag", None)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        context = _current_session.get()
        if context is not None:
            # explicit extra= fields win over the session defaults
            for key, value in asdict(context).items():
                log_record.setdefault(key, value)


TEXT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s (%(session_tag)s): %(message)s"
JSON_FORMAT = "%(asctime)s %(message)s"


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "text",
    module_levels: dict[str, str] | None = None,
) -> None:
    """
    Install one stdout handler on the root logger.

    Args:
        log_level: root level name
        log_format: "json" or "text"
        module_levels: per-logger overrides, e.g. {"neuropath.layout": "DEBUG"}
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(SessionTagFilter())
    if log_format.lower() == "json":
        handler.setFormatter(JSONFormatter(JSON_FORMAT, rename_fields={"asctime": "timestamp"}))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%H:%M:%S"))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level.upper())

    for module_name, level in (module_levels or {}).items():
        logging.getLogger(module_name).setLevel(level.upper())

    logging.getLogger(__name__).debug("Logging configured: level=%s format=%s", log_level, log_format)
