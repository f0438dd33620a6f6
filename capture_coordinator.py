"""One-shot capture hand-off between the frame thread and the application.

The camera calls :meth:`CaptureCoordinator.process_frame` for every frame
(30-60 times per second). The application arms a capture with
:meth:`CaptureCoordinator.trigger`; the next frame consumes the trigger,
crops the guide region and delivers a :class:`CaptureArtifact` through the
``deliver`` callback. ``deliver`` must not block: the session posts the
artifact onto the event loop and returns immediately.
"""
from __future__ import annotations

import base64
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Optional

import numpy as np

from crop_region import CropRegion
from frame_cropper import CropResult

logger = logging.getLogger(__name__)


class DocumentSlot(str, Enum):
    KTP = "ktp"
    FACE = "face"

    @property
    def display_name(self) -> str:
        return "KTP" if self is DocumentSlot.KTP else "Pas Foto"


@dataclass(frozen=True)
class CaptureArtifact:
    slot: DocumentSlot
    image_data: bytes
    storage_path: str

    @property
    def base64_data(self) -> str:
        return base64.b64encode(self.image_data).decode("ascii")


class OneShotTrigger:
    """Single-token flag shared between two threads.

    ``deque.append`` and ``deque.popleft`` are atomic, so consuming the token
    is a read-and-clear in one step and the frame thread never takes a lock.
    """

    def __init__(self) -> None:
        self._token: Deque[DocumentSlot] = deque(maxlen=1)

    @property
    def armed(self) -> bool:
        return bool(self._token)

    def arm(self, slot: DocumentSlot) -> bool:
        if self._token:
            return False
        self._token.append(slot)
        return True

    def consume(self) -> Optional[DocumentSlot]:
        try:
            return self._token.popleft()
        except IndexError:
            return None


class CaptureCoordinator:
    def __init__(
        self,
        crop: Callable[[np.ndarray, CropRegion], CropResult],
        deliver: Callable[[CaptureArtifact], None],
        region_for: Callable[[DocumentSlot], CropRegion],
    ) -> None:
        self._crop = crop
        self._deliver = deliver
        self._region_for = region_for
        self._trigger = OneShotTrigger()

    @property
    def armed(self) -> bool:
        return self._trigger.armed

    def trigger(self, slot: DocumentSlot = DocumentSlot.KTP) -> bool:
        """Arm a capture for ``slot``. Returns False if one is already pending."""

        armed = self._trigger.arm(slot)
        if not armed:
            logger.debug("Capture already pending, ignoring trigger for %s", slot.value)
        return armed

    def process_frame(self, frame: np.ndarray) -> Optional[CaptureArtifact]:
        """Frame-thread entry point. Delivers at most one artifact per trigger."""

        slot = self._trigger.consume()
        if slot is None:
            return None

        region = self._region_for(slot)
        result = self._crop(frame, region)
        if not result.ok:
            # the trigger stays consumed; the user has to capture again
            logger.debug("Crop for %s produced no data", slot.value)
            return None

        artifact = CaptureArtifact(
            slot=slot,
            image_data=base64.b64decode(result.base64_data),
            storage_path=result.file_path,
        )
        self._deliver(artifact)
        return artifact
