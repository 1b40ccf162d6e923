"""Quality tiers: yt-dlp format selectors and ffmpeg CRF/preset pairs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class QualitySpec:
    tier: str
    label: str
    description: str
    selectors: tuple[str, ...]
    height_ceiling: Optional[int] = None
    audio_only: bool = False
    crf: Optional[int] = None
    preset: Optional[str] = None

    @property
    def format_selector(self) -> str:
        return "/".join(self.selectors)

    @property
    def transcodable(self) -> bool:
        return self.crf is not None and self.preset is not None


_CEILING_STEPS = (1080, 720, 480)


def _capped_selectors(height: int) -> tuple[str, ...]:
    # Every alternative carries a ceiling and ceilings only go down the chain;
    # there is no bare "best" escape hatch.
    chain: list[str] = []
    for ceiling in (step for step in _CEILING_STEPS if step <= height):
        chain.extend(
            (
                f"bestvideo[height<={ceiling}][ext=mp4]+bestaudio[ext=m4a]",
                f"best[height<={ceiling}][ext=mp4]",
                f"bestvideo[height<={ceiling}]+bestaudio",
                f"best[height<={ceiling}]",
            )
        )
    return tuple(chain)


def _floor_selectors(floors: tuple[int, ...]) -> tuple[str, ...]:
    chain = [f"bestvideo[height>={floor}]+bestaudio" for floor in floors]
    chain.extend(["bestvideo+bestaudio", "best"])
    return tuple(chain)


QUALITY_CATALOG: dict[str, QualitySpec] = {
    "maximum": QualitySpec(
        tier="maximum",
        label="Maximum Quality (4K/1440p/1080p+)",
        description="Best available quality up to 4K",
        selectors=_floor_selectors((2160, 1440, 1080)),
        crf=15,
        preset="veryslow",
    ),
    "high": QualitySpec(
        tier="high",
        label="High Quality (1080p)",
        description="Full HD 1080p maximum",
        selectors=_capped_selectors(1080),
        height_ceiling=1080,
        crf=18,
        preset="slow",
    ),
    "medium": QualitySpec(
        tier="medium",
        label="Medium Quality (720p)",
        description="HD 720p maximum",
        selectors=_capped_selectors(720),
        height_ceiling=720,
        crf=23,
        preset="medium",
    ),
    "low": QualitySpec(
        tier="low",
        label="Low Quality (480p)",
        description="SD 480p maximum",
        selectors=_capped_selectors(480),
        height_ceiling=480,
        crf=28,
        preset="fast",
    ),
    "audio": QualitySpec(
        tier="audio",
        label="Audio Only",
        description="Extract audio only (M4A/MP3)",
        selectors=("bestaudio[ext=m4a]", "bestaudio[ext=mp3]", "bestaudio"),
        audio_only=True,
    ),
}

DOWNLOAD_TIERS = tuple(QUALITY_CATALOG)
TRANSCODE_TIERS = tuple(tier for tier, spec in QUALITY_CATALOG.items() if spec.transcodable)


def get_quality_spec(tier: str) -> Optional[QualitySpec]:
    return QUALITY_CATALOG.get((tier or "").strip().lower())


def quality_options() -> list[dict[str, str]]:
    return [
        {"value": spec.tier, "label": spec.label, "description": spec.description}
        for spec in QUALITY_CATALOG.values()
    ]
