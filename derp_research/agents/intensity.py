"""Intensity ("derpification") level → behaviour band."""

from __future__ import annotations

import enum

from derp_research.config import Settings, settings


class IntensityBand(str, enum.Enum):
    DERP = "derp"        # 0-33: short, plain-language research
    AVERAGE = "average"  # 34-66: balanced depth
    SMART = "smart"      # 67-100: exhaustive, technical


def validate_intensity(level: int) -> int:
    if not 0 <= level <= 100:
        raise ValueError(f"intensity level must be between 0 and 100, got {level}")
    return level


def band_for(level: int) -> IntensityBand:
    validate_intensity(level)
    if level <= 33:
        return IntensityBand.DERP
    if level <= 66:
        return IntensityBand.AVERAGE
    return IntensityBand.SMART


def results_per_query(level: int, config: Settings | None = None) -> int:
    config = config or settings
    band = band_for(level)
    if band is IntensityBand.DERP:
        return config.search_results_low
    if band is IntensityBand.AVERAGE:
        return config.search_results_mid
    return config.search_results_high
