"""Application settings constants."""

from __future__ import annotations

import os


def _env_or_default(name: str, default: str) -> str:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# External tool executables (resolved through PATH unless absolute).
YTDLP_BIN = _env_or_default("MEDIARELAY_YTDLP_BIN", "yt-dlp")
FFMPEG_BIN = _env_or_default("MEDIARELAY_FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = _env_or_default("MEDIARELAY_FFPROBE_BIN", "ffprobe")

# Seconds between SIGTERM and SIGKILL when a session is cancelled.
CANCEL_GRACE_SECONDS = _env_float("MEDIARELAY_CANCEL_GRACE_SECONDS", 2.0)

# Interval of the per-session client liveness watchdog.
WATCHDOG_INTERVAL_SECONDS = _env_float("MEDIARELAY_WATCHDOG_INTERVAL_SECONDS", 1.0)

# Upper bound for a single extraction or transcode invocation.
TOOL_TIMEOUT_SECONDS = _env_float("MEDIARELAY_TOOL_TIMEOUT_SECONDS", 3600.0)

# ffprobe runs are short; they get their own, tighter bound.
PROBE_TIMEOUT_SECONDS = _env_float("MEDIARELAY_PROBE_TIMEOUT_SECONDS", 30.0)

STREAM_CHUNK_SIZE = _env_int("MEDIARELAY_STREAM_CHUNK_SIZE", 1024 * 1024)

# Uploads larger than this are rejected before any tool runs.
MAX_UPLOAD_BYTES = _env_int("MEDIARELAY_MAX_UPLOAD_BYTES", 10 * 1024 * 1024 * 1024)

# Lines of tool stderr carried into error payloads.
STDERR_TAIL_LINES = _env_int("MEDIARELAY_STDERR_TAIL_LINES", 80)

# Cookie files handed to yt-dlp for platforms that gate content behind a login.
YOUTUBE_COOKIES_FILE = os.environ.get("MEDIARELAY_YOUTUBE_COOKIES_FILE") or None
INSTAGRAM_COOKIES_FILE = os.environ.get("MEDIARELAY_INSTAGRAM_COOKIES_FILE") or None
FACEBOOK_COOKIES_FILE = os.environ.get("MEDIARELAY_FACEBOOK_COOKIES_FILE") or None

# e.g. "chrome:Default"; ignored in production where no browser profile exists.
COOKIES_FROM_BROWSER = os.environ.get("MEDIARELAY_COOKIES_FROM_BROWSER") or None

APP_VERSION = _env_or_default("MEDIARELAY_VERSION", "0.1.0")
HOST = _env_or_default("MEDIARELAY_HOST", "127.0.0.1")
PORT = _env_int("MEDIARELAY_PORT", 8000)


def is_production_environment() -> bool:
    env = _env_or_default("MEDIARELAY_ENV", "development").lower()
    return env in {"prod", "production"}
