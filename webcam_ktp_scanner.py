"""Webcam KTP capture and validation.

Opens the local webcam, shows the KTP guide and captures the KTP and a
portrait photo on demand. Each capture is validated in the background
(NIK via Tesseract, face presence via a Haar cascade).

Keys in the preview window:
    space  take the photo for the current slot
    k      retake the KTP
    f      retake the portrait photo
    s      submit
    q      quit
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
import threading
from typing import Optional

import cv2
import imutils

from capture_coordinator import DocumentSlot
from capture_session import CaptureSession
from crop_region import ViewportSize
from frame_cropper import draw_crop_guide
from ktp_engines import HaarFaceDetector, TesseractTextRecognizer, configure_tesseract
from slot_store import JsonSlotStore
from validation_pipeline import Notice, ValidationPipeline

PREVIEW_WIDTH = 900
WINDOW_NAME = "KTP Capture"


def _print_notice(notice: Notice) -> None:
    prefix = "✅" if notice.level == "success" else "❌"
    print(f"{prefix} {notice.message}")


def _call_on_loop(loop: asyncio.AbstractEventLoop, func, *args):
    """Run ``func`` on the session loop and wait for its result."""

    async def _call():
        return func(*args)

    return asyncio.run_coroutine_threadsafe(_call(), loop).result()


def _print_summary(session: CaptureSession) -> None:
    state = session.pipeline.snapshot()
    print("=== VALIDATION SUMMARY ===")
    print(f"KTP: {session.pipeline.status(DocumentSlot.KTP).value}")
    print(f"  NIK: {state.ktp_number or '-'}")
    print(f"  NIK readable: {state.is_ktp_valid}, face on card: {state.is_ktp_face_valid}")
    print(f"Pas Foto: {session.pipeline.status(DocumentSlot.FACE).value}")
    print(f"  Face detected: {state.is_face_valid}")


# ----------------------------
# Main capture loop
# ----------------------------
def run_capture_from_camera(cam_index: int = 0, max_frames: Optional[int] = None) -> Optional[bool]:
    """Run the interactive capture. Returns whether submission was accepted,
    or None if the camera could not be opened."""

    cap = cv2.VideoCapture(cam_index)
    if not cap.isOpened():
        print(f"❌ Cannot open camera index {cam_index}. Ensure the webcam is connected.")
        return None

    loop = asyncio.new_event_loop()
    loop_thread = threading.Thread(target=loop.run_forever, name="ktp-validation", daemon=True)
    loop_thread.start()

    store = JsonSlotStore()
    pipeline = ValidationPipeline(
        TesseractTextRecognizer(),
        HaarFaceDetector(),
        notify=_print_notice,
        store=store,
    )
    session: Optional[CaptureSession] = None
    submitted = False
    slot = DocumentSlot.KTP
    frame_count = 0

    print(f"✅ Camera index {cam_index} opened. Place the KTP inside the box and press space.")

    try:
        while True:
            ret, frame = cap.read()
            if not ret:
                print("❌ Failed to grab frame")
                break

            frame_count += 1
            frame_proc = imutils.resize(frame, width=PREVIEW_WIDTH)
            h, w = frame_proc.shape[:2]
            viewport = ViewportSize(width=w, height=h)

            if session is None:
                session = CaptureSession(pipeline, viewport, loop=loop, store=store, notify=_print_notice)
                asyncio.run_coroutine_threadsafe(session.restore(), loop).result()
            elif viewport != session.viewport:
                _call_on_loop(loop, session.update_viewport, viewport)

            if session.camera.is_active:
                session.on_frame(frame_proc)
                overlay = draw_crop_guide(frame_proc, session.region_for(slot), label=slot.display_name)
            else:
                overlay = frame_proc.copy()
                cv2.putText(overlay, "Press k / f to retake, s to submit", (20, 40),
                            cv2.FONT_HERSHEY_SIMPLEX, 0.7, (0, 255, 255), 2)
            if session.loading:
                cv2.putText(overlay, "Capturing...", (20, h - 20), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (0, 255, 255), 2)

            cv2.imshow(WINDOW_NAME, overlay)

            key = cv2.waitKey(1) & 0xFF
            if key == ord("q"):
                print("Interrupted by user.")
                break
            if key == ord(" "):
                if not _call_on_loop(loop, session.trigger, slot) and pipeline.is_processed(slot):
                    retake_key = "k" if slot is DocumentSlot.KTP else "f"
                    print(f"❌ {slot.display_name} already captured. Press {retake_key} to retake.")
            elif key in (ord("k"), ord("f")):
                slot = DocumentSlot.KTP if key == ord("k") else DocumentSlot.FACE
                _call_on_loop(loop, session.retake, slot)
            elif key == ord("s"):
                asyncio.run_coroutine_threadsafe(pipeline.drain(), loop).result()
                _print_summary(session)
                submitted = _call_on_loop(loop, session.submit)
                if submitted:
                    break

            if max_frames is not None and frame_count >= max_frames:
                print("Reached max frames. Stopping.")
                break
    finally:
        cap.release()
        cv2.destroyAllWindows()
        if session is not None:
            _call_on_loop(loop, session.close)
        loop.call_soon_threadsafe(loop.stop)
        loop_thread.join(timeout=5)
        loop.close()

    return submitted


# ----------------------------
# CLI entry point
# ----------------------------
def main() -> int:
    logging.basicConfig(
        level=os.getenv("KTP_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    configure_tesseract()
    cam_index = int(os.getenv("CAM_INDEX", "0"))
    result = run_capture_from_camera(cam_index=cam_index)

    if result is None:
        return 1
    if not result:
        print("Capture finished without a valid submission.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
