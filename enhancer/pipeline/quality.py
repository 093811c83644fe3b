"""
Quality Resolver
Maps a named quality tier to output dimensions that keep the source aspect ratio.
"""
import math
import logging
from typing import NamedTuple

from ..errors import DegenerateImageError

logger = logging.getLogger(__name__)


class TargetDimensions(NamedTuple):
    width: int
    height: int


# Nominal box per tier (width, height)
QUALITY_TIERS = {
    '720p': TargetDimensions(1280, 720),
    '1080p': TargetDimensions(1920, 1080),
    '2K': TargetDimensions(2560, 1440),
    '4K': TargetDimensions(3840, 2160),
}

DEFAULT_TIER = '1080p'


def tier_box(tier: str) -> TargetDimensions:
    """Nominal box for a tier, falling back to 1080p for unknown names."""
    box = QUALITY_TIERS.get(tier)
    if box is None:
        logger.warning(f"Unknown quality tier {tier!r}, using {DEFAULT_TIER}")
        box = QUALITY_TIERS[DEFAULT_TIER]
    return box


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def resolve(tier: str, source_width: int, source_height: int) -> TargetDimensions:
    """
    Fit the tier's box to the source aspect ratio.

    A source wider than the box keeps the box width; anything else (including
    an exact aspect match) keeps the box height.

    Raises:
        DegenerateImageError: if either source dimension is not positive
    """
    if source_width <= 0 or source_height <= 0:
        raise DegenerateImageError(source_width, source_height)

    box = tier_box(tier)
    aspect = source_width / source_height

    if aspect > box.width / box.height:
        width = box.width
        height = _round_half_up(width / aspect)
    else:
        height = box.height
        width = _round_half_up(height * aspect)

    target = TargetDimensions(max(width, 1), max(height, 1))
    logger.debug(f"Resolved {source_width}x{source_height} @ {tier} -> {target.width}x{target.height}")
    return target
