"""
Filter Stage
Optional brightness, contrast and convolution sharpening on top of the resized image.
"""
import os
import shutil
import logging

import cv2
import numpy as np

from ..options import ProcessingOptions

logger = logging.getLogger(__name__)

# Unity-gain high-pass sharpen
SHARPEN_KERNEL = np.array([
    [0, -1, 0],
    [-1, 5, -1],
    [0, -1, 0],
], dtype=np.float32)

# Output encodings the filter stage writes
JPEG_EXTENSIONS = ('.jpg', '.jpeg')
OUTPUT_JPEG_QUALITY = 100


def adjust_brightness(image: np.ndarray, delta: int) -> np.ndarray:
    """
    Shift brightness by ``delta / 100`` on a [-1, 1] scale.

    Negative values scale every channel toward black, positive values move
    it toward white by the same fraction of the remaining headroom.
    """
    value = delta / 100.0
    pixels = image.astype(np.float64)
    if value < 0:
        pixels *= 1.0 + value
    else:
        pixels += (255.0 - pixels) * value
    return np.clip(np.floor(pixels), 0, 255).astype(np.uint8)


def adjust_contrast(image: np.ndarray, delta: int) -> np.ndarray:
    """
    Scale contrast around mid-grey by ``delta / 100`` on a [-1, 1] scale.
    """
    value = delta / 100.0
    factor = (value + 1.0) / (1.0 - value)
    pixels = factor * (image.astype(np.float64) - 127.0) + 127.0
    return np.clip(np.floor(pixels), 0, 255).astype(np.uint8)


def sharpen(image: np.ndarray) -> np.ndarray:
    """3x3 convolution sharpen with replicated borders."""
    return cv2.filter2D(image, -1, SHARPEN_KERNEL, borderType=cv2.BORDER_REPLICATE)


def apply_filters(image: np.ndarray, options: ProcessingOptions) -> np.ndarray:
    """
    Apply the requested filters in order: brightness, contrast, sharpen.

    Filters whose trigger is zero/false are skipped entirely; with nothing
    requested the input array itself is returned.
    """
    result = image
    applied = []

    if options.brightness != 0:
        result = adjust_brightness(result, options.brightness)
        applied.append(f'brightness({options.brightness})')

    if options.contrast != 0:
        result = adjust_contrast(result, options.contrast)
        applied.append(f'contrast({options.contrast})')

    if options.sharpen:
        result = sharpen(result)
        applied.append('sharpen')

    if applied:
        logger.debug(f"[Filter] Applied: {applied}")
    return result


class FilterStage:
    """Reads the intermediate, filters it and writes the final artifact."""

    def run(self, intermediate_path: str, options: ProcessingOptions, output_path: str) -> str:
        """
        Raises:
            IOError: if the intermediate cannot be read or the output written
        """
        ext = os.path.splitext(output_path)[1].lower()

        if not options.has_filters and ext in JPEG_EXTENSIONS:
            # Same encoding as the intermediate, keep its bytes
            shutil.copyfile(intermediate_path, output_path)
            logger.info(f"[Filter] No filters requested, output copied: {output_path}")
            return output_path

        image = cv2.imread(intermediate_path, cv2.IMREAD_COLOR)
        if image is None:
            raise IOError(f"Failed to read intermediate image {intermediate_path}")

        result = apply_filters(image, options)

        params = []
        if ext in JPEG_EXTENSIONS:
            params = [int(cv2.IMWRITE_JPEG_QUALITY), OUTPUT_JPEG_QUALITY]

        if not cv2.imwrite(output_path, result, params):
            raise IOError(f"Failed to write output image to {output_path}")

        logger.info(f"[Filter] Output written: {output_path}")
        return output_path
