"""Cut the document guide region out of a camera frame.

``crop_frame`` is the primitive the capture path calls on the frame thread:
it must stay synchronous and cheap, and it never raises for a bad frame.
An empty :class:`CropResult` means "nothing usable was captured".
"""
from __future__ import annotations

import base64
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from crop_region import CropRegion

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_FORMAT = ".png"


@dataclass(frozen=True)
class CropResult:
    base64_data: Optional[str] = None
    file_path: Optional[str] = None

    @property
    def ok(self) -> bool:
        return bool(self.base64_data) and bool(self.file_path)


def _ensure_bgr(image: np.ndarray) -> np.ndarray:
    """Return a 3-channel version of the image without cvtColor failures."""

    if image.ndim == 2:
        return np.repeat(image[:, :, None], 3, axis=2)

    if image.ndim == 3:
        channels = image.shape[2]
        if channels == 1:
            return np.repeat(image, 3, axis=2)
        if channels == 4:
            return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
        if channels >= 3:
            return image[:, :, :3]

    return image


def crop_frame(
    frame: Optional[np.ndarray],
    region: CropRegion,
    save_dir: Optional[str] = None,
    include_base64: bool = True,
    save_as_file: bool = True,
    image_format: str = DEFAULT_IMAGE_FORMAT,
) -> CropResult:
    """Crop ``region`` (percent units) from ``frame``, encode and optionally save it."""

    if frame is None or frame.size == 0:
        return CropResult()

    h, w = frame.shape[:2]
    x, y, cw, ch = region.to_pixels(w, h)
    if cw == 0 or ch == 0:
        logger.debug("Crop region %s is empty for a %dx%d frame", region, w, h)
        return CropResult()

    roi = np.ascontiguousarray(_ensure_bgr(frame[y : y + ch, x : x + cw]))

    try:
        ok, encoded = cv2.imencode(image_format, roi)
    except cv2.error as exc:
        logger.debug("Encoding crop failed: %s", exc)
        return CropResult()
    if not ok:
        return CropResult()

    base64_data = base64.b64encode(encoded.tobytes()).decode("ascii") if include_base64 else None

    file_path = None
    if save_as_file:
        directory = save_dir or tempfile.gettempdir()
        path = os.path.join(directory, f"crop_{uuid.uuid4().hex}{image_format}")
        try:
            os.makedirs(directory, exist_ok=True)
            # encoded bytes are reused so the file matches base64_data exactly
            with open(path, "wb") as fh:
                fh.write(encoded.tobytes())
        except OSError as exc:
            logger.warning("Could not save crop to %s: %s", path, exc)
            return CropResult()
        file_path = path

    return CropResult(base64_data=base64_data, file_path=file_path)


def draw_crop_guide(
    image: np.ndarray,
    region: CropRegion,
    color: Tuple[int, int, int] = (0, 255, 0),
    label: Optional[str] = None,
) -> np.ndarray:
    """Darken everything outside ``region`` and outline it, for the live preview."""

    h, w = image.shape[:2]
    x, y, cw, ch = region.to_pixels(w, h)
    vis = (image * 0.5).astype(image.dtype)
    vis[y : y + ch, x : x + cw] = image[y : y + ch, x : x + cw]
    cv2.rectangle(vis, (x, y), (x + cw, y + ch), color, 2)
    if label:
        cv2.putText(vis, label, (x + 5, max(20, y - 10)), cv2.FONT_HERSHEY_SIMPLEX, 0.7, color, 2)
    return vis
