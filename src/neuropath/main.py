"""FastAPI application with WebSocket endpoint for NeuroPath exploration sessions."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, Coroutine

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .config import Settings, get_settings
from .engine import TurnEngine
from .errors import NeuroPathError
from .generator import ClaudeContentGenerator, ContentGenerator
from .layout import ForceLayout, LayoutFrame, LayoutTicker
from .logging_config import SessionLogContext, bind_session, configure_logging
from .models import Phase
from .protocol import (
    DragRequest,
    ErrorMessage,
    IncomingMessage,
    OutgoingMessage,
    PHASE_STATUS_MESSAGES,
    ResetRequest,
    RetryRequest,
    SelectCardRequest,
    SessionStateMessage,
    StartSessionRequest,
    StatusMessage,
    ZoomRequest,
    incoming_adapter,
)
from .session import ExplorationSession

logger = logging.getLogger(__name__)


def get_generator() -> ContentGenerator:
    """Content generator for a new connection."""
    settings = get_settings()
    return ClaudeContentGenerator(
        model=settings.model,
        total_rounds=settings.total_rounds,
        batch_size=settings.cards_per_round,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format, settings.log_module_levels)
    logger.info("Starting NeuroPath backend on %s:%s", settings.host, settings.port)
    logger.info("Allowed origins: %s", settings.allowed_origins)
    yield
    logger.info("Shutting down NeuroPath backend")


app = FastAPI(
    title="NeuroPath Backend",
    description="AI-guided knowledge exploration with a live knowledge graph",
    version="0.1.0",
    lifespan=lifespan,
)


# Configure CORS for REST endpoints
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {"status": "healthy", "service": "neuropath-backend"}


class Connection:
    """
    Per-WebSocket state: one session, its layout ticker and an outbox.

    Engine listeners and layout redraws run synchronously, so they only queue
    messages; a single writer task drains the queue onto the socket.
    Layout frames are coalesced: the queue holds at most one frame marker and
    the writer sends whichever frame is newest when it reaches it.
    Generator-triggering commands run as tasks so the receive loop stays free
    to serve ``reset`` and drags while a request is in flight.
    """

    def __init__(
        self,
        websocket: WebSocket,
        generator: ContentGenerator,
        settings: Settings,
        log_context: SessionLogContext | None = None,
    ):
        self.websocket = websocket
        # None marks "send the latest layout frame here"
        self.outbox: asyncio.Queue[OutgoingMessage | None] = asyncio.Queue()
        self.tasks: set[asyncio.Task] = set()
        self.log_context = log_context
        self._writer: asyncio.Task | None = None
        self._last_phase: Phase | None = None
        self._latest_frame: LayoutFrame | None = None
        self._frame_queued = False

        engine = TurnEngine(generator, total_rounds=settings.total_rounds)
        layout = ForceLayout(width=settings.canvas_width, height=settings.canvas_height)
        self.session = ExplorationSession(engine, layout, on_state=self._on_state)
        layout.on_tick(self._on_frame)
        self.ticker = LayoutTicker(layout, interval=settings.tick_interval_ms / 1000)

    def send(self, msg: OutgoingMessage) -> None:
        self.outbox.put_nowait(msg)

    def _on_frame(self, frame: LayoutFrame) -> None:
        self._latest_frame = frame
        if not self._frame_queued:
            self._frame_queued = True
            self.outbox.put_nowait(None)

    def _on_state(self, msg: SessionStateMessage) -> None:
        if self.log_context is not None:
            self.log_context.track(msg.phase.value, msg.round, self.session.engine.generation)
        self.send(msg)
        if msg.phase != self._last_phase:
            self._last_phase = msg.phase
            self.send(StatusMessage(status=PHASE_STATUS_MESSAGES[msg.phase]))

    def _next_message(self, item: OutgoingMessage | None) -> OutgoingMessage:
        if item is not None:
            return item
        self._frame_queued = False
        return self.session.frame_message(self._latest_frame)

    async def _write_loop(self) -> None:
        while True:
            msg = self._next_message(await self.outbox.get())
            await self.websocket.send_text(msg.model_dump_json(by_alias=True))

    def start(self) -> None:
        self._writer = asyncio.create_task(self._write_loop())
        self.ticker.start()
        self._on_state(self.session.state_message())

    async def close(self) -> None:
        for task in list(self.tasks):
            task.cancel()
        await self.ticker.stop()
        if self._writer is not None:
            self._writer.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await self._writer

    def run_command(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(self._guarded(coro))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def _guarded(self, coro: Coroutine[Any, Any, None]) -> None:
        try:
            await coro
        except NeuroPathError as e:
            logger.warning("Command failed: %s", e)
            self.send(ErrorMessage(message=str(e), code=e.code))
        except Exception as e:
            logger.exception("Command crashed")
            self.send(ErrorMessage(message=f"Internal error: {e}", code="INTERNAL_ERROR"))


def dispatch(connection: Connection, request: IncomingMessage) -> None:
    """Route one validated client request to the session."""
    session = connection.session
    engine = session.engine

    match request:
        case StartSessionRequest(topic=topic):
            if not topic.strip():
                connection.send(ErrorMessage(message="Empty topic", code="INVALID_REQUEST"))
                return
            connection.run_command(engine.start_session(topic))
        case SelectCardRequest(card_id=card_id):
            connection.run_command(engine.select_card(card_id))
        case RetryRequest():
            connection.run_command(engine.retry())
        case ResetRequest():
            engine.reset()
        case DragRequest(node_id=node_id, phase=phase, x=x, y=y):
            session.drag(node_id, phase, x, y)
        case ZoomRequest(scale=scale, x=x, y=y):
            session.zoom(scale, x, y)


@app.websocket("/ws/session")
async def websocket_session(websocket: WebSocket):
    """
    WebSocket endpoint for one exploration session.

    Protocol:
    - Client sends: start_session, select_card, retry, reset, drag, zoom
    - Server sends: session_state, status, layout_frame, error messages
    """
    await websocket.accept()
    log_context = bind_session()
    connection = Connection(websocket, get_generator(), get_settings(), log_context)
    connection.start()
    logger.info("Session connected")

    try:
        while True:
            raw_data = await websocket.receive_text()

            try:
                data = json.loads(raw_data)
            except json.JSONDecodeError:
                connection.send(ErrorMessage(message="Invalid JSON", code="INVALID_REQUEST"))
                continue

            try:
                request = incoming_adapter.validate_python(data)
            except ValidationError:
                connection.send(ErrorMessage(message="Unknown or malformed message", code="INVALID_REQUEST"))
                continue

            try:
                dispatch(connection, request)
            except NeuroPathError as e:
                logger.warning("Request %s rejected: %s", request.type, e)
                connection.send(ErrorMessage(message=str(e), code=e.code))

    except WebSocketDisconnect:
        logger.info("Session disconnected")
    finally:
        await connection.close()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "neuropath.main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
    )
