"""Utility functions for qqbridge."""

import os
from datetime import UTC, datetime
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the qqbridge data directory.

    Respects QQBRIDGE_HOME environment variable; falls back to ~/.qqbridge.
    """
    home = os.environ.get("QQBRIDGE_HOME", "").strip()
    if home:
        return ensure_dir(Path(home))
    return ensure_dir(Path.home() / ".qqbridge")


def get_cache_path() -> Path:
    """Get the transcoder scratch directory (~/.qqbridge/cache)."""
    return ensure_dir(get_data_path() / "cache")


def utc_now() -> datetime:
    return datetime.now(UTC)


def now_ms() -> int:
    """Current wall clock in milliseconds, the unit used by message records."""
    return int(utc_now().timestamp() * 1000)


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    """Truncate a string to max length, adding suffix if truncated."""
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix


def safe_filename(name: str) -> str:
    """Convert a string to a safe filename."""
    unsafe = '<>:"/\\|?*'
    for char in unsafe:
        name = name.replace(char, "_")
    return name.strip()
