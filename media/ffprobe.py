"""Wrapper utilities for describing a source's audio streams using ffprobe."""

from __future__ import annotations

import bisect
import json
import subprocess
from dataclasses import dataclass
from typing import Any, Optional

from config.settings import FFPROBE_BIN, PROBE_TIMEOUT_SECONDS
from engine.errors import AudioTopologyEmpty, ProcessAbnormalExit, ProcessSpawnFailure

_LAYOUT_DESCRIPTIONS: dict[str, tuple[str, ...]] = {
    "mono": ("Mono",),
    "stereo": ("Left", "Right"),
    "2.1": ("Left", "Right", "LFE (Subwoofer)"),
    "3.0": ("Left", "Right", "Center"),
    "4.0": ("Front Left", "Front Right", "Rear Left", "Rear Right"),
    "5.0": ("Front Left", "Front Right", "Center", "Rear Left", "Rear Right"),
    "5.1": ("Front Left", "Front Right", "Center", "LFE (Subwoofer)", "Rear Left", "Rear Right"),
    "7.1": (
        "Front Left",
        "Front Right",
        "Center",
        "LFE (Subwoofer)",
        "Rear Left",
        "Rear Right",
        "Side Left",
        "Side Right",
    ),
}


@dataclass(frozen=True)
class AudioStream:
    position: int  # index among the source's audio streams, i.e. the ``p`` in ``0:a:p``
    channel_count: int
    channel_layout: str = "unknown"
    codec_name: Optional[str] = None
    sample_rate: Optional[int] = None
    bit_rate: Optional[int] = None


@dataclass(frozen=True)
class AudioStreamTopology:
    """Ordered audio streams of one source.

    Channels are addressed by a single aggregate index: stream 0's channels
    come first, then stream 1's, and so on.
    """

    streams: tuple[AudioStream, ...]

    @property
    def stream_count(self) -> int:
        return len(self.streams)

    @property
    def channel_count(self) -> int:
        return sum(stream.channel_count for stream in self.streams)

    @property
    def offsets(self) -> tuple[int, ...]:
        starts = []
        total = 0
        for stream in self.streams:
            starts.append(total)
            total += stream.channel_count
        return tuple(starts)

    def resolve(self, index: int) -> tuple[int, int]:
        """Map an aggregate channel index to ``(stream position, channel within stream)``."""
        if index < 0 or index >= self.channel_count:
            raise IndexError(f"channel {index} out of range 0-{self.channel_count - 1}")
        offsets = self.offsets
        slot = bisect.bisect_right(offsets, index) - 1
        return self.streams[slot].position, index - offsets[slot]


def _parse_int(value: Any) -> Optional[int]:
    if value in (None, "", "N/A"):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_audio_topology(payload: dict, *, source: str = "") -> AudioStreamTopology:
    streams = []
    for raw in payload.get("streams") or []:
        if not isinstance(raw, dict):
            continue
        if raw.get("codec_type") not in (None, "audio"):
            continue
        channels = _parse_int(raw.get("channels")) or 1
        streams.append(
            AudioStream(
                position=len(streams),
                channel_count=max(channels, 1),
                channel_layout=str(raw.get("channel_layout") or "unknown"),
                codec_name=raw.get("codec_name"),
                sample_rate=_parse_int(raw.get("sample_rate")),
                bit_rate=_parse_int(raw.get("bit_rate")),
            )
        )
    if not streams:
        raise AudioTopologyEmpty(
            "No audio streams found in the source",
            details=source or None,
        )
    return AudioStreamTopology(streams=tuple(streams))


def probe_audio_topology(
    source: str,
    *,
    timeout: float = PROBE_TIMEOUT_SECONDS,
    ffprobe_bin: str = FFPROBE_BIN,
) -> AudioStreamTopology:
    """Return the audio stream topology of ``source`` (a path or URL).

    Raises:
        ProcessSpawnFailure: If ``ffprobe`` is missing.
        ProcessAbnormalExit: If ``ffprobe`` fails, times out or emits invalid JSON.
        AudioTopologyEmpty: If the source has no audio streams.
    """
    command = [
        ffprobe_bin,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_streams",
        "-select_streams",
        "a",
        source,
    ]

    try:
        completed = subprocess.run(
            command,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise ProcessSpawnFailure(
            "ffprobe", "ffprobe is not installed or not available in PATH", details=str(exc)
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise ProcessAbnormalExit(
            "ffprobe",
            f"ffprobe timed out while probing: {source}",
            category="probe_failed",
        ) from exc
    except subprocess.CalledProcessError as exc:
        stderr_text = (exc.stderr or "").strip()
        raise ProcessAbnormalExit(
            "ffprobe",
            f"Failed to probe audio channels: {stderr_text or exc}",
            returncode=exc.returncode,
            category="probe_failed",
            details=stderr_text or None,
        ) from exc

    try:
        payload = json.loads(completed.stdout or "{}")
    except json.JSONDecodeError as exc:
        raise ProcessAbnormalExit(
            "ffprobe",
            f"ffprobe returned invalid JSON for {source}",
            category="probe_failed",
        ) from exc
    if not isinstance(payload, dict):
        raise ProcessAbnormalExit(
            "ffprobe", f"ffprobe returned unexpected output for {source}", category="probe_failed"
        )
    return parse_audio_topology(payload, source=source)


def describe_channels(topology: AudioStreamTopology) -> list[dict[str, Any]]:
    channels = []
    index = 0
    for stream in topology.streams:
        names = _LAYOUT_DESCRIPTIONS.get(stream.channel_layout.lower(), ())
        for offset in range(stream.channel_count):
            description = names[offset] if offset < len(names) else f"Channel {offset + 1}"
            channels.append(
                {
                    "index": index,
                    "label": f"Stream {stream.position + 1} Ch {offset + 1}",
                    "description": description,
                    "stream": stream.position,
                }
            )
            index += 1
    return channels


def topology_summary(topology: AudioStreamTopology) -> dict[str, Any]:
    first = topology.streams[0]
    return {
        "has_audio": True,
        "channels": describe_channels(topology),
        "channel_count": topology.channel_count,
        "channel_layout": "multi-stream" if topology.stream_count > 1 else first.channel_layout,
        "stream_count": topology.stream_count,
        "codec": first.codec_name,
        "sample_rate": first.sample_rate,
        "bit_rate": first.bit_rate,
    }


def empty_topology_summary(message: str) -> dict[str, Any]:
    return {
        "has_audio": False,
        "channels": [],
        "channel_count": 0,
        "channel_layout": None,
        "stream_count": 0,
        "message": message,
    }
