"""
Processing options submitted with a process request.
"""
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from .errors import ValidationError

DELTA_RANGE = (-50, 50)
FRAME_RATES = ('30fps', '60fps')
VIDEO_FORMATS = ('mp4', 'mkv', 'webm')


@dataclass(frozen=True)
class ProcessingOptions:
    """Immutable output settings for one run."""
    quality: str = '1080p'
    brightness: int = 0             # -50 .. 50
    contrast: int = 0               # -50 .. 50
    sharpen: bool = False

    # Video only
    frame_rate: str = '30fps'
    format: str = 'mp4'

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ProcessingOptions':
        """
        Build options from the request body's ``options`` object.

        Missing keys take their defaults; a missing object or an
        out-of-range value raises ValidationError.
        """
        if data is None:
            raise ValidationError("Processing options are required", error_code="OPTIONS_REQUIRED")
        if not isinstance(data, dict):
            raise ValidationError("Processing options must be an object", error_code="INVALID_OPTIONS")

        quality = data.get('quality') or cls.quality
        if not isinstance(quality, str):
            raise ValidationError("quality must be a string", error_code="INVALID_OPTIONS",
                                  details={"quality": quality})

        sharpen = data.get('sharpen', False)
        if not isinstance(sharpen, bool):
            raise ValidationError("sharpen must be a boolean", error_code="INVALID_OPTIONS",
                                  details={"sharpen": sharpen})

        frame_rate = data.get('frameRate', cls.frame_rate)
        if frame_rate not in FRAME_RATES:
            raise ValidationError(f"frameRate must be one of {', '.join(FRAME_RATES)}",
                                  error_code="INVALID_OPTIONS", details={"frameRate": frame_rate})

        video_format = data.get('format', cls.format)
        if video_format not in VIDEO_FORMATS:
            raise ValidationError(f"format must be one of {', '.join(VIDEO_FORMATS)}",
                                  error_code="INVALID_OPTIONS", details={"format": video_format})

        return cls(
            quality=quality,
            brightness=_delta(data, 'brightness'),
            contrast=_delta(data, 'contrast'),
            sharpen=sharpen,
            frame_rate=frame_rate,
            format=video_format,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Wire form, using the client's key names."""
        data = asdict(self)
        data['frameRate'] = data.pop('frame_rate')
        return data

    @property
    def has_filters(self) -> bool:
        return self.brightness != 0 or self.contrast != 0 or self.sharpen


def _delta(data, key):
    value = data.get(key, 0)
    if value is None:
        return 0
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer", error_code="INVALID_OPTIONS",
                              details={key: value})
    low, high = DELTA_RANGE
    if not low <= value <= high:
        raise ValidationError(f"{key} must be between {low} and {high}", error_code="INVALID_OPTIONS",
                              details={key: value})
    return value
