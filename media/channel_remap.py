"""Turn a (left, right) aggregate channel selection into an ffmpeg filter graph."""

from __future__ import annotations

from dataclasses import dataclass

from engine.errors import ChannelIndexOutOfRange
from media.ffprobe import AudioStreamTopology

OUTPUT_LABEL = "aout"


@dataclass(frozen=True)
class ChannelMapping:
    left: int
    right: int


@dataclass(frozen=True)
class RemapPlan:
    filter_complex: str
    merged_inputs: int
    mapping: ChannelMapping
    output_label: str = OUTPUT_LABEL

    @property
    def map_target(self) -> str:
        return f"[{self.output_label}]"


def validate_mapping(mapping: ChannelMapping, topology: AudioStreamTopology) -> None:
    total = topology.channel_count
    for index in (mapping.left, mapping.right):
        if index < 0 or index >= total:
            raise ChannelIndexOutOfRange(mapping.left, mapping.right, total)


def plan_channel_remap(mapping: ChannelMapping, topology: AudioStreamTopology) -> RemapPlan:
    """Build the filter graph routing two aggregate channels to stereo L/R.

    Multiple streams are merged first so the aggregate index equals the
    channel index of the merged stream.
    """
    validate_mapping(mapping, topology)
    channel_map = f"channelmap=map={mapping.left}|{mapping.right}:channel_layout=stereo"
    if topology.stream_count > 1:
        inputs = "".join(f"[0:a:{stream.position}]" for stream in topology.streams)
        graph = (
            f"{inputs}amerge=inputs={topology.stream_count}[merged];"
            f"[merged]{channel_map}[{OUTPUT_LABEL}]"
        )
        merged = topology.stream_count
    else:
        graph = f"[0:a:0]{channel_map}[{OUTPUT_LABEL}]"
        merged = 0
    return RemapPlan(filter_complex=graph, merged_inputs=merged, mapping=mapping)
