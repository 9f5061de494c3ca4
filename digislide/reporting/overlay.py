"""
TMA core overlays: circles and ids drawn over a slide level.
"""

from pathlib import Path
from typing import Iterable, Union

import cv2
import numpy as np
from PIL import Image

from digislide.utils.logging import get_logger

logger = get_logger(__name__)


def draw_tma_cores(
    img_array: np.ndarray,
    cores: Iterable,
    scale: float = 1.0,
    color=(0, 255, 0),
    text_color=(255, 255, 0),
    thickness: int = 2,
) -> np.ndarray:
    """
    Draw every core as a circle with its id at the centre.

    Args:
        img_array: RGB image (or grayscale, will be converted)
        cores: TMACore-like objects with id, center_x, center_y, radius in
            level-0 pixels
        scale: Factor from level-0 pixels to image pixels
        color: RGB circle colour
        text_color: RGB label colour
        thickness: Line thickness in pixels

    Returns:
        Annotated copy of the image (always RGB)
    """
    if img_array.ndim == 2:
        img_out = cv2.cvtColor(img_array, cv2.COLOR_GRAY2RGB)
    else:
        img_out = np.ascontiguousarray(img_array[:, :, :3]).copy()

    font_scale = max(0.3, min(img_out.shape[:2]) / 2000)
    for core in cores:
        center = (int(round(core.center_x * scale)), int(round(core.center_y * scale)))
        radius = max(1, int(round(core.radius * scale)))
        cv2.circle(img_out, center, radius, color, thickness, lineType=cv2.LINE_AA)

        label = str(core.id)
        (tw, th), _ = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, font_scale, 1)
        cv2.putText(img_out, label, (center[0] - tw // 2, center[1] + th // 2),
                    cv2.FONT_HERSHEY_SIMPLEX, font_scale, text_color, 1, cv2.LINE_AA)
    return img_out


def save_overlay(file_path: Union[str, Path], img_array: np.ndarray, quality: int = 90) -> Path:
    """Write an overlay with Pillow; the format follows the file extension."""
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    pil_img = Image.fromarray(img_array)
    if file_path.suffix.lower() in ('.jpg', '.jpeg'):
        pil_img.save(file_path, format='JPEG', quality=quality)
    else:
        pil_img.save(file_path)
    logger.info("Saved overlay to %s", file_path)
    return file_path
