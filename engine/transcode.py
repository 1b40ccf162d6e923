"""ffmpeg transcoding with optional channel remap and resolution scaling."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from config.settings import FFMPEG_BIN, STDERR_TAIL_LINES
from engine.errors import (
    AudioTopologyEmpty,
    MediaRelayError,
    NoOutputProduced,
    ProcessAbnormalExit,
    ProcessSpawnFailure,
)
from engine.json_utils import log_event
from engine.process import run_tracked, tail_text
from engine.quality import QualitySpec, get_quality_spec
from engine.sessions import SessionState
from media.channel_remap import ChannelMapping, RemapPlan, plan_channel_remap
from media.ffprobe import probe_audio_topology

logger = logging.getLogger(__name__)

VALID_FORMATS = ("mp4", "avi", "mov", "mkv", "webm", "mp3", "wav")
AUDIO_ONLY_FORMATS = frozenset({"mp3", "wav"})
VALID_RESOLUTIONS = ("original", "1920x1080", "1280x720", "854x480")

_H264_ARGS = ("-c:v:0", "libx264", "-c:a:0", "aac", "-pix_fmt", "yuv420p")
_WEB_H264_ARGS = _H264_ARGS + ("-profile:v", "baseline", "-movflags", "+faststart")

_CODEC_ARGS: dict[str, tuple[str, ...]] = {
    "webm": ("-c:v:0", "libvpx-vp9", "-c:a:0", "libopus"),
    "avi": _H264_ARGS,
    "mkv": _H264_ARGS,
    "mov": _WEB_H264_ARGS,
    "mp4": _WEB_H264_ARGS,
    "mp3": ("-vn", "-c:a", "libmp3lame", "-b:a", "192k"),
    "wav": ("-vn", "-c:a", "pcm_s16le"),
}

_STREAM_COPY_ARGS = ("-c:v", "copy", "-c:a", "copy", "-avoid_negative_ts", "make_zero")

# (category, markers, message); first match wins, markers are lowercase.
_FAILURE_SIGNALS: tuple[tuple[str, tuple[str, ...], str], ...] = (
    ("filter_graph", ("amerge",), "Audio merging failed - check channel configuration"),
    ("filter_graph", ("channelmap",), "Audio channel mapping failed - invalid channel indices"),
    ("filter_graph", ("filter graph", "filtergraph", "complex filters"), "Audio filter graph could not be built"),
    ("unsupported_codec", ("unknown encoder",), "Requested codec is not available in this FFmpeg build"),
    ("unsupported_codec", ("invalid argument",), "Invalid FFmpeg arguments or unsupported format"),
    ("input_not_found", ("no such file",), "Input file not found or inaccessible"),
    ("permission_denied", ("permission denied",), "Permission denied accessing file"),
    ("input_invalid", ("invalid data found",), "Input file is corrupted or invalid format"),
    ("input_invalid", ("does not contain any stream",), "Input file contains no valid streams"),
    ("network", ("protocol not found",), "Network protocol error - unable to access input"),
    ("network", ("connection refused",), "Network connection failed"),
    ("network", ("http error",), "HTTP error accessing input file"),
)

_UNSAFE_STEM = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class TranscodeRequest:
    source: str
    output_format: str = "mp4"
    quality: str = "medium"
    mapping: Optional[ChannelMapping] = None
    resolution: Optional[str] = None
    source_name: Optional[str] = None

    @property
    def target_format(self) -> str:
        return (self.output_format or "").strip().lower()

    @property
    def audio_only(self) -> bool:
        return self.target_format in AUDIO_ONLY_FORMATS

    @property
    def scaled(self) -> bool:
        return bool(self.resolution) and self.resolution != "original"

    @property
    def output_filename(self) -> str:
        name = self.source_name or Path(urlparse(self.source).path).name
        stem = _UNSAFE_STEM.sub("_", Path(name).stem).strip("._") or "output"
        return f"{stem}_converted.{self.target_format}"


def parse_resolution(value: str) -> tuple[int, int]:
    width, _, height = value.partition("x")
    return int(width), int(height)


def use_stream_copy(request: TranscodeRequest) -> bool:
    name = request.source_name or urlparse(request.source).path
    return (
        name.lower().endswith(".mp4")
        and request.target_format == "mp4"
        and request.quality == "medium"
        and request.mapping is None
        and not request.scaled
    )


def build_transcode_argv(
    request: TranscodeRequest,
    output_path,
    quality: QualitySpec,
    *,
    plan: Optional[RemapPlan] = None,
    has_audio: bool = True,
    ffmpeg_bin: str = FFMPEG_BIN,
) -> list[str]:
    """Render the ffmpeg command for ``request``; pure."""
    fmt = request.target_format
    stream_copy = use_stream_copy(request)
    argv = [ffmpeg_bin, "-hide_banner", "-nostdin", "-i", request.source]

    if plan is not None:
        argv.extend(["-filter_complex", plan.filter_complex])
        if not request.audio_only:
            argv.extend(["-map", "0:v:0?"])
        argv.extend(["-map", plan.map_target, "-avoid_negative_ts", "make_zero"])
    elif request.audio_only:
        argv.extend(["-map", "0:a:0"])
    else:
        argv.extend(["-map", "0:v:0"])
        if has_audio:
            argv.extend(["-map", "0:a:0?"])
        else:
            argv.append("-an")

    if stream_copy:
        argv.extend(_STREAM_COPY_ARGS)
        argv.extend(["-movflags", "+faststart"])
    else:
        if request.scaled and not request.audio_only:
            width, height = parse_resolution(request.resolution)
            argv.extend(
                [
                    "-vf",
                    f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
                    f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:black",
                ]
            )
        if not request.audio_only:
            argv.extend(["-crf", str(quality.crf), "-preset", quality.preset])
        argv.extend(_CODEC_ARGS[fmt])

    argv.extend(["-y", str(output_path)])
    return argv


def classify_transcode_failure(stderr: Optional[str]) -> tuple[str, str]:
    lower_msg = (stderr or "").lower()
    for category, markers, message in _FAILURE_SIGNALS:
        if any(marker in lower_msg for marker in markers):
            return category, message
    return "generic", "Unknown FFmpeg error"


def _validate(request: TranscodeRequest) -> QualitySpec:
    if request.target_format not in VALID_FORMATS:
        raise ValueError(f"Invalid output format: {request.output_format}")
    quality = get_quality_spec(request.quality)
    if quality is None or not quality.transcodable:
        raise ValueError(f"Invalid quality option: {request.quality}")
    if request.resolution and request.resolution not in VALID_RESOLUTIONS:
        raise ValueError(f"Invalid resolution: {request.resolution}")
    return quality


def _plan_audio(request: TranscodeRequest) -> tuple[Optional[RemapPlan], bool]:
    """Probe the source and return ``(remap plan, has_audio)``."""
    if request.mapping is not None:
        topology = probe_audio_topology(request.source)
        return plan_channel_remap(request.mapping, topology), True
    if use_stream_copy(request):
        return None, True
    try:
        probe_audio_topology(request.source)
    except AudioTopologyEmpty:
        if request.audio_only:
            raise AudioTopologyEmpty(
                f"Cannot convert video-only file to {request.target_format.upper()} format - "
                "no audio streams available"
            )
        return None, False
    except (ProcessAbnormalExit, ProcessSpawnFailure) as exc:
        if request.audio_only:
            raise
        logger.warning("Audio probe failed for %s; mapping audio optionally: %s", request.source, exc.message)
    return None, True


def run_transcode(registry, session, request: TranscodeRequest) -> Path:
    """Convert ``request.source`` into the session's temp dir and return the output path.

    Channel selection errors are raised before ffmpeg is started.
    """
    quality = _validate(request)
    output_path = Path(session.temp_dir) / request.output_filename
    try:
        plan, has_audio = _plan_audio(request)
        argv = build_transcode_argv(request, output_path, quality, plan=plan, has_audio=has_audio)
        log_event(
            logging.INFO,
            "TRANSCODE_START",
            key=session.key,
            session_id=session.session_id,
            source=request.source,
            format=request.target_format,
            quality=quality.tier,
            resolution=request.resolution,
            remap=plan.filter_complex if plan else None,
            stream_copy=use_stream_copy(request),
            args=argv,
        )
        result = run_tracked(registry, session, argv)
        if result.returncode != 0:
            category, message = classify_transcode_failure(result.stderr)
            raise ProcessAbnormalExit(
                "ffmpeg",
                f"FFmpeg conversion failed (code {result.returncode}): {message}",
                returncode=result.returncode,
                category=category,
                details=tail_text(result.stderr, STDERR_TAIL_LINES) or None,
            )
        if not output_path.is_file() or output_path.stat().st_size == 0:
            raise NoOutputProduced("Conversion completed but output file not found")
    except MediaRelayError as exc:
        registry.mark(session, SessionState.FAILED)
        log_event(
            logging.WARNING,
            "TRANSCODE_FAILED",
            key=session.key,
            session_id=session.session_id,
            error_kind=exc.error_kind,
            error=exc.message,
        )
        raise

    registry.mark(session, SessionState.COMPLETED)
    log_event(
        logging.INFO,
        "TRANSCODE_DONE",
        key=session.key,
        session_id=session.session_id,
        output=output_path.name,
        size=output_path.stat().st_size,
        elapsed=round(result.elapsed, 3),
    )
    return output_path
