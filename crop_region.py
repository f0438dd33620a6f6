"""Document guide geometry.

Computes where, in percent of the live frame, an ID card should be framed.
The region keeps the ISO/IEC 7810 ID-1 card ratio (85.6 x 54 mm) regardless
of the frame size, so it is recomputed whenever the viewport changes.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

ID_CARD_ASPECT_RATIO = 85.6 / 54
DEFAULT_MARGIN_PERCENT = 10
DEFAULT_TOP_PERCENT = 20


class InvalidViewportError(ValueError):
    """Raised when a viewport has a zero or negative dimension."""


@dataclass(frozen=True)
class ViewportSize:
    width: float
    height: float


@dataclass(frozen=True)
class CropRegion:
    left: float
    top: float
    width: float
    height: float

    def to_pixels(self, frame_width: int, frame_height: int) -> Tuple[int, int, int, int]:
        """Return ``(x, y, w, h)`` in pixels, clipped to the frame."""

        x = int(frame_width * self.left / 100)
        y = int(frame_height * self.top / 100)
        x = min(max(x, 0), frame_width)
        y = min(max(y, 0), frame_height)
        w = int(frame_width * self.width / 100)
        h = int(frame_height * self.height / 100)
        w = max(0, min(w, frame_width - x))
        h = max(0, min(h, frame_height - y))
        return x, y, w, h


FULL_FRAME_REGION = CropRegion(left=0, top=0, width=100, height=100)


def compute_crop_region(
    viewport: ViewportSize,
    target_aspect_ratio: float = ID_CARD_ASPECT_RATIO,
    margin_percent: float = DEFAULT_MARGIN_PERCENT,
    top_percent: float = DEFAULT_TOP_PERCENT,
) -> CropRegion:
    """Return a horizontally centred region with the card's aspect ratio.

    The width is fixed to ``100 - 2 * margin_percent`` percent of the viewport.
    The height follows from the physical width and the aspect ratio, and is
    rounded up to a whole percent so the guide never clips the card edge.
    The region is anchored at ``top_percent`` rather than centred. A height
    running past the bottom of the viewport is returned unchanged.
    """

    if viewport.width <= 0 or viewport.height <= 0:
        raise InvalidViewportError(
            f"Viewport must have positive dimensions, got {viewport.width}x{viewport.height}"
        )
    if target_aspect_ratio <= 0:
        raise ValueError(f"Aspect ratio must be positive, got {target_aspect_ratio}")
    if not 0 <= margin_percent < 50:
        raise ValueError(f"Margin must be within [0, 50), got {margin_percent}")

    width_percent = 100 - 2 * margin_percent
    region_width = viewport.width * width_percent / 100
    desired_height = region_width / target_aspect_ratio
    # round() first so float noise on an exact percentage does not bump it up
    height_percent = math.ceil(round(desired_height / viewport.height * 100, 6))

    return CropRegion(
        left=margin_percent,
        top=top_percent,
        width=width_percent,
        height=height_percent,
    )
