from __future__ import annotations

import json
import subprocess
from types import SimpleNamespace

import pytest

from engine.errors import AudioTopologyEmpty, ProcessAbnormalExit, ProcessSpawnFailure
from media.ffprobe import (
    describe_channels,
    parse_audio_topology,
    probe_audio_topology,
    topology_summary,
)


def _payload(*streams):
    return {"streams": [dict(codec_type="audio", **s) for s in streams]}


def test_aggregate_indices_follow_stream_order() -> None:
    topology = parse_audio_topology(
        _payload(
            {"channels": 2, "channel_layout": "stereo"},
            {"channels": 1, "channel_layout": "mono"},
            {"channels": 6, "channel_layout": "5.1"},
        )
    )

    assert topology.stream_count == 3
    assert topology.channel_count == 9
    assert topology.offsets == (0, 2, 3)
    assert topology.resolve(0) == (0, 0)
    assert topology.resolve(1) == (0, 1)
    assert topology.resolve(2) == (1, 0)
    assert topology.resolve(3) == (2, 0)
    assert topology.resolve(8) == (2, 5)
    with pytest.raises(IndexError):
        topology.resolve(9)


def test_missing_or_zero_channel_count_counts_as_one() -> None:
    topology = parse_audio_topology(_payload({"channels": 0}, {}))

    assert [s.channel_count for s in topology.streams] == [1, 1]
    assert topology.channel_count == 2


def test_zero_audio_streams_is_empty_topology() -> None:
    with pytest.raises(AudioTopologyEmpty):
        parse_audio_topology({"streams": []})


def test_describe_channels_labels_by_layout() -> None:
    topology = parse_audio_topology(
        _payload({"channels": 2, "channel_layout": "stereo"}, {"channels": 3, "channel_layout": "weird"})
    )

    channels = describe_channels(topology)

    assert [c["index"] for c in channels] == [0, 1, 2, 3, 4]
    assert channels[0]["label"] == "Stream 1 Ch 1"
    assert channels[1]["description"] == "Right"
    assert channels[2]["label"] == "Stream 2 Ch 1"
    assert channels[4]["description"] == "Channel 3"


def test_topology_summary_reports_multi_stream_layout() -> None:
    topology = parse_audio_topology(
        _payload(
            {"channels": 2, "channel_layout": "stereo", "codec_name": "aac", "sample_rate": "48000"},
            {"channels": 2, "channel_layout": "stereo"},
        )
    )

    summary = topology_summary(topology)

    assert summary["has_audio"] is True
    assert summary["channel_layout"] == "multi-stream"
    assert summary["channel_count"] == 4
    assert summary["codec"] == "aac"
    assert summary["sample_rate"] == 48000


def test_probe_parses_ffprobe_output(monkeypatch) -> None:
    captured = {}

    def _run(command, **kwargs):
        captured["command"] = command
        return SimpleNamespace(stdout=json.dumps(_payload({"channels": 2, "channel_layout": "stereo"})))

    monkeypatch.setattr("media.ffprobe.subprocess.run", _run)

    topology = probe_audio_topology("/tmp/in.mp4", ffprobe_bin="ffprobe")

    assert topology.channel_count == 2
    assert captured["command"][:1] == ["ffprobe"]
    assert captured["command"][-3:] == ["-select_streams", "a", "/tmp/in.mp4"]


def test_probe_translates_tool_failures(monkeypatch) -> None:
    def _missing(command, **kwargs):
        raise FileNotFoundError("ffprobe")

    monkeypatch.setattr("media.ffprobe.subprocess.run", _missing)
    with pytest.raises(ProcessSpawnFailure):
        probe_audio_topology("/tmp/in.mp4")

    def _failed(command, **kwargs):
        raise subprocess.CalledProcessError(1, command, stderr="Invalid data found")

    monkeypatch.setattr("media.ffprobe.subprocess.run", _failed)
    with pytest.raises(ProcessAbnormalExit) as excinfo:
        probe_audio_topology("/tmp/in.mp4")
    assert excinfo.value.category == "probe_failed"

    monkeypatch.setattr("media.ffprobe.subprocess.run", lambda command, **kwargs: SimpleNamespace(stdout="not json"))
    with pytest.raises(ProcessAbnormalExit):
        probe_audio_topology("/tmp/in.mp4")
