"""yt-dlp extraction: argv rendering, tracked execution and failure classification."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config import settings
from config.settings import STDERR_TAIL_LINES, YTDLP_BIN, is_production_environment
from engine.errors import MediaRelayError, NoOutputProduced, PlatformAuthRequired, ProcessAbnormalExit
from engine.json_utils import log_event
from engine.platforms import (
    PlatformStrategy,
    auth_guidance,
    classify_auth_failure,
    detect_platform,
    get_platform_strategy,
    render_platform_args,
)
from engine.process import redact_argv, run_tracked, tail_text
from engine.quality import QualitySpec, get_quality_spec
from engine.sessions import SessionState
from media.packaging import filter_media_files

logger = logging.getLogger(__name__)

OUTPUT_TEMPLATE = "%(title)s_%(id)s_%(playlist_index)s.%(ext)s"


@dataclass(frozen=True)
class ExtractionRequest:
    url: str
    quality: str = "high"
    filename: Optional[str] = None


@dataclass(frozen=True)
class ExtractionResult:
    platform: str
    strategy: PlatformStrategy
    files: tuple[Path, ...]


def build_extraction_argv(
    url: str,
    quality: QualitySpec,
    strategy: PlatformStrategy,
    output_template: str,
    *,
    cookies_file: Optional[str] = None,
    cookies_from_browser: Optional[str] = None,
    ytdlp_bin: str = YTDLP_BIN,
) -> list[str]:
    argv = [ytdlp_bin, "-f", quality.format_selector]
    if not quality.audio_only:
        argv.extend(["--merge-output-format", "mp4"])
    argv.extend(
        [
            "-o",
            output_template,
            "--restrict-filenames",
            "--embed-metadata",
            "--newline",
        ]
    )
    argv.extend(render_platform_args(strategy, url))
    if not quality.audio_only:
        if "--write-thumbnail" not in argv:
            argv.append("--write-thumbnail")
        argv.append("--embed-thumbnail")
    if cookies_file:
        argv.extend(["--cookies", cookies_file])
    elif cookies_from_browser:
        argv.extend(["--cookies-from-browser", cookies_from_browser])
    argv.append(url)
    return argv


def resolve_cookie_args(strategy: PlatformStrategy) -> tuple[Optional[str], Optional[str]]:
    """Return ``(cookies_file, cookies_from_browser)`` for a platform."""
    if not strategy.cookies_env:
        return None, None
    cookies_file = getattr(settings, strategy.cookies_env, None)
    if cookies_file and not os.path.isfile(cookies_file):
        logger.warning("Cookie file for %s not found: %s", strategy.tag, cookies_file)
        cookies_file = None
    if cookies_file:
        return cookies_file, None
    if settings.COOKIES_FROM_BROWSER and not is_production_environment():
        return None, settings.COOKIES_FROM_BROWSER
    return None, None


def classify_extraction_failure(
    platform: str,
    returncode: int,
    stderr: str,
    *,
    has_cookies: bool = False,
) -> MediaRelayError:
    diagnostics = tail_text(stderr, STDERR_TAIL_LINES) or None
    if classify_auth_failure(platform, stderr):
        is_production = is_production_environment()
        message, guidance = auth_guidance(platform, is_production=is_production)
        return PlatformAuthRequired(
            platform,
            message,
            guidance=guidance,
            is_production=is_production,
            auth_supported=has_cookies or not is_production,
            details=diagnostics,
        )
    return ProcessAbnormalExit(
        "yt-dlp",
        f"yt-dlp exited with code {returncode}",
        returncode=returncode,
        category="extraction_failed",
        details=diagnostics,
    )


def collect_output_files(temp_dir: Path) -> list[Path]:
    return filter_media_files(sorted(p for p in Path(temp_dir).rglob("*") if p.is_file()))


def run_extraction(registry, session, request: ExtractionRequest) -> ExtractionResult:
    """Download ``request.url`` into the session's temp dir.

    Returns the produced media files (sidecars removed). Every failure leaves
    as a ``MediaRelayError`` with the session marked failed or cancelled.
    """
    quality = get_quality_spec(request.quality)
    if quality is None:
        raise ValueError(f"Invalid quality option: {request.quality}")
    platform = detect_platform(request.url)
    strategy = get_platform_strategy(platform)
    cookies_file, cookies_from_browser = resolve_cookie_args(strategy)
    argv = build_extraction_argv(
        request.url,
        quality,
        strategy,
        str(Path(session.temp_dir) / OUTPUT_TEMPLATE),
        cookies_file=cookies_file,
        cookies_from_browser=cookies_from_browser,
    )
    log_event(
        logging.INFO,
        "EXTRACTION_START",
        key=session.key,
        session_id=session.session_id,
        url=request.url,
        platform=platform,
        quality=quality.tier,
        args=redact_argv(argv),
    )

    try:
        result = run_tracked(registry, session, argv)
        if result.returncode != 0:
            raise classify_extraction_failure(
                platform,
                result.returncode,
                result.stderr,
                has_cookies=bool(cookies_file or cookies_from_browser),
            )
        files = collect_output_files(session.temp_dir)
        if not files:
            raise NoOutputProduced(
                "No file was downloaded",
                details=tail_text(result.stderr, STDERR_TAIL_LINES) or None,
            )
    except MediaRelayError as exc:
        registry.mark(session, SessionState.FAILED)
        log_event(
            logging.WARNING,
            "EXTRACTION_FAILED",
            key=session.key,
            session_id=session.session_id,
            platform=platform,
            error_kind=exc.error_kind,
            error=exc.message,
        )
        raise

    registry.mark(session, SessionState.COMPLETED)
    log_event(
        logging.INFO,
        "EXTRACTION_DONE",
        key=session.key,
        session_id=session.session_id,
        platform=platform,
        files=[f.name for f in files],
        elapsed=round(result.elapsed, 3),
    )
    return ExtractionResult(platform=platform, strategy=strategy, files=tuple(files))
