"""Environment configuration and logging setup for PageForge billing."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DEFAULT_LOG_LEVEL = "INFO"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def env_text(name: str, default: str = "") -> str:
    return clean_text(os.environ.get(name)) or default


def env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = env_text(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if minimum is not None:
        value = max(minimum, value)
    return value


def env_flag(name: str, default: bool = False) -> bool:
    raw = env_text(name).lower()
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    return default


def pageforge_home() -> Path:
    root = env_text("PAGEFORGE_HOME")
    if root:
        return Path(root).expanduser().resolve()
    return (Path.home() / ".pageforge").resolve()


def app_url() -> str:
    return env_text("PAGEFORGE_APP_URL").rstrip("/")


def stripe_secret_key() -> str:
    return env_text("PAGEFORGE_STRIPE_SECRET_KEY")


def stripe_mode(secret_key: str | None = None) -> str:
    key = clean_text(secret_key) if secret_key is not None else stripe_secret_key()
    if not key:
        return "unconfigured"
    return "live" if key.startswith("sk_live") else "test"


def load_env_file(path: Path | None = None) -> bool:
    """Load a `.env` file without overriding variables that are already set."""
    if path is not None:
        return load_dotenv(dotenv_path=path, override=False)
    return load_dotenv(override=False)


def configure_logging(level: str | None = None):
    name = (clean_text(level) or env_text("PAGEFORGE_LOG_LEVEL", DEFAULT_LOG_LEVEL)).upper()
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    logging.getLogger("pageforge_billing").setLevel(resolved)
