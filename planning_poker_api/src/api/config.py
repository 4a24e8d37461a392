import os
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_EMOJI = "🙂"


def _split_origins(raw: str) -> list[str]:
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or ["*"]


@dataclass(frozen=True)
class Settings:
    """Process settings resolved from the environment."""

    store_timeout_seconds: float = 5.0
    default_emoji: str = DEFAULT_EMOJI
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    log_file: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 3001


def load_settings() -> Settings:
    timeout_raw = os.getenv("POKER_STORE_TIMEOUT", "5")
    try:
        timeout = float(timeout_raw)
    except ValueError as e:
        raise ValueError(f"POKER_STORE_TIMEOUT must be a number of seconds, got {timeout_raw!r}") from e
    if timeout <= 0:
        raise ValueError("POKER_STORE_TIMEOUT must be positive")

    return Settings(
        store_timeout_seconds=timeout,
        default_emoji=os.getenv("POKER_DEFAULT_EMOJI") or DEFAULT_EMOJI,
        cors_origins=_split_origins(os.getenv("POKER_CORS_ORIGINS", "*")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE") or None,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3001")),
    )
