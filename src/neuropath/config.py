"""Configuration management for the NeuroPath backend."""

import os
from functools import lru_cache
from pydantic import BaseModel
from dotenv import load_dotenv


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Server settings
    host: str = "127.0.0.1"
    port: int = 8000

    # CORS
    allowed_origins: list[str] = ["http://localhost:5173"]

    # Claude model (None = use SDK default)
    model: str | None = None

    # Session shape
    total_rounds: int = 8
    cards_per_round: int = 3

    # Graph canvas and simulation scheduling
    canvas_width: float = 800.0
    canvas_height: float = 600.0
    tick_interval_ms: int = 16

    # Langfuse observability
    langfuse_enabled: bool = False
    langfuse_public_key: str | None = None
    langfuse_secret_key: str | None = None
    langfuse_base_url: str = "https://us.cloud.langfuse.com"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "text"  # "json" or "text"
    log_module_levels: dict[str, str] = {}  # Module-specific log levels


def _parse_module_levels(raw: str) -> dict[str, str]:
    """Parse "module1:DEBUG,module2:INFO" into a dict."""
    module_levels = {}
    for item in raw.split(","):
        if ":" in item:
            module, level = item.split(":", 1)
            module_levels[module.strip()] = level.strip()
    return module_levels


@lru_cache
def get_settings() -> Settings:
    """Load settings from environment, cached for performance."""
    load_dotenv()

    origins_str = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173")
    origins = [o.strip() for o in origins_str.split(",") if o.strip()]

    return Settings(
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        allowed_origins=origins,
        model=os.getenv("CLAUDE_MODEL"),  # None = use SDK default
        total_rounds=int(os.getenv("TOTAL_ROUNDS", "8")),
        cards_per_round=int(os.getenv("CARDS_PER_ROUND", "3")),
        canvas_width=float(os.getenv("CANVAS_WIDTH", "800")),
        canvas_height=float(os.getenv("CANVAS_HEIGHT", "600")),
        tick_interval_ms=int(os.getenv("TICK_INTERVAL_MS", "16")),
        langfuse_enabled=os.getenv("LANGFUSE_ENABLED", "false").lower() == "true",
        langfuse_public_key=os.getenv("LANGFUSE_PUBLIC_KEY"),
        langfuse_secret_key=os.getenv("LANGFUSE_SECRET_KEY"),
        langfuse_base_url=os.getenv("LANGFUSE_BASE_URL", "https://us.cloud.langfuse.com"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_format=os.getenv("LOG_FORMAT", "text"),
        log_module_levels=_parse_module_levels(os.getenv("LOG_MODULE_LEVELS", "")),
    )
