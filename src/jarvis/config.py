"""Configuration loaded from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from .llm import DEFAULT_MODEL
from .memory import JSONStore, ProfileStore, SQLiteStore
from .notify import CONVERSATIONS_CHANNEL, FACTS_CHANNEL

STORE_BACKENDS = ("sqlite", "json")


@dataclass
class Settings:
    """Runtime settings for the relay."""

    groq_api_key: str | None = None
    groq_model: str = DEFAULT_MODEL
    telegram_token: str | None = None
    store_backend: str = "sqlite"
    data_dir: Path | None = None
    completion_timeout: float = 30.0
    extraction_timeout: float = 60.0
    max_stored_turns: int | None = None
    log_dir: Path | None = None
    webhooks: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.data_dir is None:
            self.data_dir = Path.home() / ".jarvis"
        if self.store_backend not in STORE_BACKENDS:
            raise ValueError(
                f"Unknown store backend {self.store_backend!r}, "
                f"expected one of {', '.join(STORE_BACKENDS)}"
            )


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def _optional_int_env(name: str) -> int | None:
    value = os.getenv(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def load_settings() -> Settings:
    """Load settings from environment variables."""
    data_dir = os.getenv("JARVIS_DATA_DIR")
    log_dir = os.getenv("JARVIS_LOG_DIR")

    return Settings(
        groq_api_key=os.getenv("GROQ_API_KEY"),
        groq_model=os.getenv("GROQ_MODEL", DEFAULT_MODEL),
        telegram_token=os.getenv("TELEGRAM_TOKEN"),
        store_backend=os.getenv("JARVIS_STORE", "sqlite").lower(),
        data_dir=Path(data_dir).expanduser() if data_dir else None,
        completion_timeout=_float_env("JARVIS_COMPLETION_TIMEOUT", 30.0),
        extraction_timeout=_float_env("JARVIS_EXTRACTION_TIMEOUT", 60.0),
        max_stored_turns=_optional_int_env("JARVIS_MAX_STORED_TURNS"),
        log_dir=Path(log_dir).expanduser() if log_dir else None,
        webhooks={
            FACTS_CHANNEL: os.getenv("NOTIFY_FACTS_WEBHOOK", ""),
            CONVERSATIONS_CHANNEL: os.getenv("NOTIFY_CONVERSATIONS_WEBHOOK", ""),
        },
    )


def build_store(settings: Settings) -> ProfileStore:
    """Create and initialize the configured store."""
    assert settings.data_dir is not None
    if settings.store_backend == "json":
        store: ProfileStore = JSONStore(settings.data_dir / "users")
    else:
        store = SQLiteStore(settings.data_dir / "memory.db")
    store.init()
    return store
