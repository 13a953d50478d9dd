"""Environment variable helpers."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Sequence

from dotenv import load_dotenv

from core.logging import get_logger

logger = get_logger(__name__)


def load_dotenv_if_available(path: Path | None = None) -> None:
    """Load environment variables from a .env file when the file exists."""

    env_path = path or Path(".env")
    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=False)
        logger.debug("Loaded environment variables from %s", env_path)


def require_env_vars(required: Sequence[str], *, context: str | None = None) -> None:
    """Raise an error when one or more required environment variables are missing."""

    missing = [name for name in required if not os.getenv(name)]
    if not missing:
        return
    prefix = f"[{context}] " if context else ""
    raise RuntimeError(
        f"{prefix}Missing required environment variables: {', '.join(sorted(missing))}. "
        "Populate your .env or configure runtime secrets."
    )


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def env_int(key: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        value = int(raw)
        if minimum is not None and value < minimum:
            raise ValueError
        return value
    except ValueError:
        logger.warning("Invalid %s value '%s'. Falling back to %d.", key, raw, default)
        return default


def env_float(key: str, default: float, *, minimum: Optional[float] = None) -> float:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        value = float(raw)
        if minimum is not None and value < minimum:
            raise ValueError
        return value
    except ValueError:
        logger.warning("Invalid %s value '%s'. Falling back to %.2f.", key, raw, default)
        return default


def env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    logger.warning("Invalid boolean env %s='%s'. Using default=%s.", key, raw, default)
    return default


__all__ = [
    "env_bool",
    "env_float",
    "env_int",
    "env_str",
    "load_dotenv_if_available",
    "require_env_vars",
]
