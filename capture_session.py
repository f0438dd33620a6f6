"""Capture session tying the live camera path to validation.

A session is created once per run and passed to whatever needs it. It lives
in two threads:

* the frame thread calls :meth:`CaptureSession.on_frame` for every frame;
* everything else, :meth:`CaptureSession.update_viewport` included, runs on
  ``loop``, the event loop that owns the pipeline.

The frame thread only reads the current crop region, which is replaced
whole on a viewport change. The only mutable state crossing between the
threads is the coordinator's one-shot trigger.
Artifacts come back to the loop through ``loop.call_soon_threadsafe``, which
never blocks the frame thread and keeps arrival order.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import os
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import numpy as np

from capture_coordinator import CaptureArtifact, CaptureCoordinator, DocumentSlot
from crop_region import FULL_FRAME_REGION, CropRegion, ViewportSize, compute_crop_region
from frame_cropper import CropResult, crop_frame
from validation_pipeline import Notice, ValidationPipeline

logger = logging.getLogger(__name__)

DEFAULT_CAPTURE_DIR = "captures"


def _remove_file(path: Optional[str]) -> None:
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove capture %s: %s", path, exc)


@dataclass
class CameraAccess:
    has_permission: bool = False
    is_active: bool = True

    def activate(self) -> None:
        self.is_active = True

    def deactivate(self) -> None:
        self.is_active = False


class CaptureSession:
    def __init__(
        self,
        pipeline: ValidationPipeline,
        viewport: ViewportSize,
        loop: asyncio.AbstractEventLoop,
        store=None,
        capture_dir: Optional[str] = None,
        crop: Callable[..., CropResult] = crop_frame,
        camera: Optional[CameraAccess] = None,
        notify: Optional[Callable[[Notice], None]] = None,
    ) -> None:
        self.pipeline = pipeline
        self.camera = camera or CameraAccess(has_permission=True)
        self.capture_dir = capture_dir or os.getenv("KTP_CAPTURE_DIR", DEFAULT_CAPTURE_DIR)
        self.loading = False
        self._loop = loop
        self._store = store
        self._crop_fn = crop
        self._notify = notify

        self.viewport = viewport
        self.crop_region = compute_crop_region(viewport)
        self.coordinator = CaptureCoordinator(
            crop=self._crop,
            deliver=self._hand_off,
            region_for=self.region_for,
        )

    # ----------------------------
    # Geometry
    # ----------------------------
    def update_viewport(self, viewport: ViewportSize) -> CropRegion:
        if viewport != self.viewport:
            self.crop_region = compute_crop_region(viewport)
            self.viewport = viewport
            logger.debug("Crop region for %sx%s is %s", viewport.width, viewport.height, self.crop_region)
        return self.crop_region

    def region_for(self, slot: DocumentSlot) -> CropRegion:
        # the portrait has no document guide
        return self.crop_region if slot is DocumentSlot.KTP else FULL_FRAME_REGION

    # ----------------------------
    # Frame thread
    # ----------------------------
    def on_frame(self, frame: np.ndarray) -> Optional[CaptureArtifact]:
        return self.coordinator.process_frame(frame)

    def _crop(self, frame: np.ndarray, region: CropRegion) -> CropResult:
        return self._crop_fn(frame, region, save_dir=self.capture_dir)

    def _hand_off(self, artifact: CaptureArtifact) -> None:
        self._loop.call_soon_threadsafe(self._accept, artifact)

    # ----------------------------
    # Application context
    # ----------------------------
    def trigger(self, slot: DocumentSlot = DocumentSlot.KTP) -> bool:
        """Take a photo for ``slot`` on the next frame."""

        if not (self.camera.has_permission and self.camera.is_active):
            logger.debug("Camera unavailable, ignoring capture for %s", slot.value)
            return False
        if self.pipeline.is_processed(slot):
            logger.debug("%s already captured, retake it first", slot.value)
            return False
        armed = self.coordinator.trigger(slot)
        if armed:
            self.loading = True
        return armed

    def retake(self, slot: DocumentSlot) -> None:
        previous = getattr(self.pipeline.slot_state(slot), "artifact", None)
        if previous is None:
            previous = self._load_artifact(slot)
        self.pipeline.reset(slot)
        if self._store is not None:
            self._store.delete(slot.value)
        if previous is not None:
            _remove_file(previous.storage_path)
        self.loading = False
        self.camera.activate()

    def submit(self) -> bool:
        allowed, reason = self.pipeline.check_submission()
        if allowed:
            self._emit(Notice("Saved successfully", level="success"))
        else:
            self._emit(Notice(reason, level="danger"))
        return allowed

    async def restore(self) -> int:
        """Re-validate artifacts persisted by an earlier run. Returns how many."""

        captured: Dict[DocumentSlot, CaptureArtifact] = {}
        for slot in DocumentSlot:
            artifact = self._load_artifact(slot)
            if artifact is not None:
                captured[slot] = artifact

        self.pipeline.restore_state(captured)
        for slot, artifact in captured.items():
            self.pipeline.submit(slot, artifact)
        if captured:
            logger.info("Restored %s", ", ".join(slot.display_name for slot in captured))
        return len(captured)

    def close(self) -> None:
        self.camera.deactivate()
        self.loading = False

    def _accept(self, artifact: CaptureArtifact) -> None:
        self.camera.deactivate()
        self.loading = False
        if self.pipeline.submit(artifact.slot, artifact) is None:
            _remove_file(artifact.storage_path)
            return
        self._save_artifact(artifact)

    def _save_artifact(self, artifact: CaptureArtifact) -> None:
        if self._store is None:
            return
        self._store.set(
            artifact.slot.value,
            {"image_data": artifact.base64_data, "storage_path": artifact.storage_path},
        )

    def _load_artifact(self, slot: DocumentSlot) -> Optional[CaptureArtifact]:
        if self._store is None:
            return None
        data = self._store.get(slot.value)
        if not isinstance(data, dict):
            return None
        try:
            image_data = base64.b64decode(data["image_data"], validate=True)
            storage_path = str(data["storage_path"])
        except (KeyError, TypeError, binascii.Error) as exc:
            logger.warning("Ignoring stored %s capture: %s", slot.value, exc)
            return None
        return CaptureArtifact(slot=slot, image_data=image_data, storage_path=storage_path)

    def _emit(self, notice: Notice) -> None:
        if self._notify is not None:
            self._notify(notice)
