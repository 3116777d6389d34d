from __future__ import annotations

import logging
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    db_path: str
    provider_base_url: str
    provider_api_key: str
    chat_model: str
    fallback_model: str
    chat_timeout_seconds: float
    provider_max_retries: int
    provider_retry_base_delay: float
    rate_limit_max: int
    rate_limit_window_seconds: float
    default_timezone: str
    allowed_origins: tuple[str, ...]
    allow_anon: bool
    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:5173")
        return cls(
            db_path=os.getenv(
                "ASSISTANT_DB_PATH",
                str(Path(__file__).resolve().parent / "practice_assistant.sqlite"),
            ),
            provider_base_url=os.getenv("ASSISTANT_PROVIDER_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
            provider_api_key=(os.getenv("ASSISTANT_PROVIDER_API_KEY") or os.getenv("OPENAI_API_KEY") or "").strip(),
            chat_model=(os.getenv("ASSISTANT_CHAT_MODEL") or "gpt-4o-mini").strip(),
            fallback_model=(os.getenv("ASSISTANT_FALLBACK_MODEL") or "gpt-4o").strip(),
            chat_timeout_seconds=_env_float("ASSISTANT_CHAT_TIMEOUT_SECONDS", 25.0),
            provider_max_retries=max(0, _env_int("ASSISTANT_PROVIDER_MAX_RETRIES", 1)),
            provider_retry_base_delay=max(0.0, _env_float("ASSISTANT_PROVIDER_RETRY_BASE_DELAY", 0.5)),
            rate_limit_max=max(1, _env_int("ASSISTANT_RATE_LIMIT_MAX", 20)),
            rate_limit_window_seconds=_env_float("ASSISTANT_RATE_LIMIT_WINDOW_SECONDS", 60.0),
            default_timezone=(os.getenv("ASSISTANT_DEFAULT_TIMEZONE") or "America/New_York").strip(),
            allowed_origins=tuple(origin.strip() for origin in origins.split(",") if origin.strip()),
            allow_anon=_env_bool("ALLOW_ANON", False),
            log_level=(os.getenv("ASSISTANT_LOG_LEVEL") or "INFO").strip().upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not any(getattr(handler, "_practice_assistant", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._practice_assistant = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
