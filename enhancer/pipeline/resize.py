"""
Resize Stage
Resamples the source image to the resolved tier dimensions.

Sits between the quality resolver and the filter stage:
- Lanczos resampling straight to the target size (fill, no letterbox or crop)
- Fixed unsharp mask to compensate for resampling softness
- High quality JPEG intermediate for the filter stage to read
"""
import cv2
import numpy as np
import logging
from dataclasses import dataclass

from .quality import TargetDimensions

logger = logging.getLogger(__name__)


@dataclass
class ResizeConfig:
    """Configuration for the resize stage."""
    interpolation: int = cv2.INTER_LANCZOS4   # Best quality interpolation

    # Unsharp mask applied after every resample
    sharpen_amount: float = 0.5
    sharpen_radius: float = 1.0     # Gaussian sigma for unsharp mask

    # Intermediate encoding
    jpeg_quality: int = 95


class ResizeStage:
    """
    Resample and sharpen an image to exact target dimensions.

    Never touches the source file; writes only the intermediate path it is given.
    """

    def __init__(self, config: ResizeConfig = None):
        self.config = config or ResizeConfig()

    def resize(self, image: np.ndarray, target: TargetDimensions) -> np.ndarray:
        """
        Resample to exactly ``target`` and apply the baseline sharpen.

        Args:
            image: Source BGR image
            target: Output dimensions

        Returns:
            New image array of shape (target.height, target.width, channels)
        """
        h, w = image.shape[:2]

        resized = cv2.resize(
            image,
            (target.width, target.height),
            interpolation=self.config.interpolation
        )
        logger.debug(f"[Resize] {w}x{h} -> {target.width}x{target.height}")

        return self._sharpen(resized)

    def _sharpen(self, image: np.ndarray) -> np.ndarray:
        """
        Apply unsharp mask sharpening.
        original + amount * (original - blur)
        """
        cfg = self.config

        blur = cv2.GaussianBlur(image, (0, 0), cfg.sharpen_radius)

        sharpened = cv2.addWeighted(
            image, 1.0 + cfg.sharpen_amount,
            blur, -cfg.sharpen_amount,
            0
        )

        return sharpened

    def run(self, image: np.ndarray, target: TargetDimensions, intermediate_path: str) -> str:
        """
        Resize ``image`` and write the intermediate JPEG.

        Returns:
            Path of the intermediate artifact

        Raises:
            IOError: if the intermediate cannot be encoded or written
        """
        result = self.resize(image, target)

        ok = cv2.imwrite(
            intermediate_path,
            result,
            [int(cv2.IMWRITE_JPEG_QUALITY), self.config.jpeg_quality]
        )
        if not ok:
            raise IOError(f"Failed to write intermediate image to {intermediate_path}")

        logger.info(f"[Resize] Intermediate written: {intermediate_path}")
        return intermediate_path
