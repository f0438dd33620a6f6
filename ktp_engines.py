"""OCR and face-detection engines used by the validation pipeline.

Both engines are asynchronous from the caller's point of view: the blocking
Tesseract / OpenCV work runs in a worker thread so the event loop driving
the validation only suspends while waiting.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np
import pytesseract

from capture_coordinator import CaptureArtifact

logger = logging.getLogger(__name__)

DEFAULT_TESSERACT_WIN = r"C:\\Program Files\\Tesseract-OCR\\tesseract.exe"
DEFAULT_OCR_CONFIG = "--psm 6"
LANDMARK_MODES = ("none", "all")


class RecognitionError(RuntimeError):
    """Raised when an engine cannot produce a result for an artifact."""


# ----------------------------
# Tesseract configuration
# ----------------------------
def configure_tesseract() -> str:
    """Point pytesseract at a Tesseract binary and return its path.

    Lookup order: ``TESSERACT_CMD``, the Windows installer location, then
    whatever pytesseract is already set to, resolved against PATH.
    """

    preferred = os.getenv("TESSERACT_CMD")
    if not preferred and os.name == "nt" and os.path.exists(DEFAULT_TESSERACT_WIN):
        preferred = DEFAULT_TESSERACT_WIN
    if preferred:
        pytesseract.pytesseract.tesseract_cmd = preferred
        return preferred

    resolved = shutil.which(pytesseract.pytesseract.tesseract_cmd or "tesseract")
    if resolved is None:
        raise FileNotFoundError(
            "Tesseract executable not found. Install Tesseract or set TESSERACT_CMD to the full path."
        )
    logger.debug("Using Tesseract at %s", resolved)
    return resolved


# ----------------------------
# Artifact decoding
# ----------------------------
def decode_artifact(artifact: CaptureArtifact) -> np.ndarray:
    """Decode the artifact bytes, falling back to the saved file."""

    image = None
    if artifact.image_data:
        buf = np.frombuffer(artifact.image_data, dtype=np.uint8)
        image = cv2.imdecode(buf, cv2.IMREAD_COLOR)
    if image is None and artifact.storage_path and os.path.exists(artifact.storage_path):
        image = cv2.imread(artifact.storage_path)
    if image is None:
        raise RecognitionError(f"Cannot decode {artifact.slot.value} image")
    return image


# ----------------------------
# OCR
# ----------------------------
@dataclass(frozen=True)
class RecognizedText:
    text: str


def preprocess_for_ocr(image: np.ndarray) -> np.ndarray:
    """Grayscale, upscale small crops, then Otsu binarisation."""

    gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    h, w = gray.shape[:2]
    if w < 1000:
        scale = 1000 / w
        gray = cv2.resize(gray, (1000, int(h * scale)), interpolation=cv2.INTER_CUBIC)
    return cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)[1]


class TesseractTextRecognizer:
    def __init__(self, lang: Optional[str] = None, config: str = DEFAULT_OCR_CONFIG) -> None:
        self.lang = lang or os.getenv("TESSERACT_LANG", "eng")
        self.config = config

    def recognize_image(self, image: np.ndarray) -> RecognizedText:
        binary = preprocess_for_ocr(image)
        try:
            text = pytesseract.image_to_string(binary, lang=self.lang, config=self.config)
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as exc:
            raise RecognitionError(f"Tesseract failed: {exc}") from exc
        return RecognizedText(text=text)

    def _recognize_sync(self, artifact: CaptureArtifact) -> RecognizedText:
        return self.recognize_image(decode_artifact(artifact))

    async def recognize(self, artifact: CaptureArtifact) -> RecognizedText:
        result = await asyncio.to_thread(self._recognize_sync, artifact)
        logger.debug("OCR read %d characters from %s", len(result.text), artifact.slot.value)
        return result


# ----------------------------
# Face detection
# ----------------------------
@dataclass(frozen=True)
class DetectedFace:
    box: Tuple[int, int, int, int]
    landmarks: Dict[str, Tuple[int, int]] = field(default_factory=dict)


def _load_cascade(env_var: str, filename: str) -> Optional[cv2.CascadeClassifier]:
    """Load a Haar cascade, preferring the path in ``env_var``.

    Returns None if the file is missing or cannot be loaded.
    """

    custom = os.getenv(env_var)
    if custom and os.path.exists(custom):
        cascade = cv2.CascadeClassifier(custom)
        if not cascade.empty():
            return cascade

    default_path = os.path.join(cv2.data.haarcascades, filename)
    if os.path.exists(default_path):
        cascade = cv2.CascadeClassifier(default_path)
        if not cascade.empty():
            return cascade

    logger.warning("Haar cascade %s not found or failed to load. Set %s to a valid XML file.", filename, env_var)
    return None


class HaarFaceDetector:
    def __init__(
        self,
        face_cascade: Optional[cv2.CascadeClassifier] = None,
        eye_cascade: Optional[cv2.CascadeClassifier] = None,
        min_size: Tuple[int, int] = (30, 30),
    ) -> None:
        if face_cascade is None:
            face_cascade = _load_cascade("FACE_CASCADE_PATH", "haarcascade_frontalface_default.xml")
        if eye_cascade is None:
            eye_cascade = _load_cascade("EYE_CASCADE_PATH", "haarcascade_eye.xml")
        self.face_cascade = face_cascade
        self.eye_cascade = eye_cascade
        self.min_size = min_size

    def _eye_landmarks(self, gray: np.ndarray, box: Tuple[int, int, int, int]) -> Dict[str, Tuple[int, int]]:
        if self.eye_cascade is None:
            return {}
        x, y, w, h = box
        upper = gray[y : y + h // 2 + h // 8, x : x + w]
        eyes = self.eye_cascade.detectMultiScale(upper, scaleFactor=1.1, minNeighbors=5)
        centres = sorted((int(x + ex + ew // 2), int(y + ey + eh // 2)) for ex, ey, ew, eh in eyes)
        if len(centres) < 2:
            return {}
        # image left is the subject's right eye
        return {"right_eye": centres[0], "left_eye": centres[-1]}

    def detect_image(self, image: np.ndarray, landmark_mode: str = "none") -> List[DetectedFace]:
        if landmark_mode not in LANDMARK_MODES:
            raise ValueError(f"Unknown landmark mode {landmark_mode!r}")
        if self.face_cascade is None:
            raise RecognitionError("Face cascade is not available")

        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        boxes = self.face_cascade.detectMultiScale(gray, scaleFactor=1.1, minNeighbors=4, minSize=self.min_size)
        faces = []
        for x, y, w, h in sorted(boxes, key=lambda r: r[2] * r[3], reverse=True):
            box = (int(x), int(y), int(w), int(h))
            landmarks = self._eye_landmarks(gray, box) if landmark_mode == "all" else {}
            faces.append(DetectedFace(box=box, landmarks=landmarks))
        return faces

    def _detect_sync(self, artifact: CaptureArtifact, landmark_mode: str) -> List[DetectedFace]:
        return self.detect_image(decode_artifact(artifact), landmark_mode=landmark_mode)

    async def detect(self, artifact: CaptureArtifact, landmark_mode: str = "all") -> List[DetectedFace]:
        faces = await asyncio.to_thread(self._detect_sync, artifact, landmark_mode)
        logger.debug("Detected %d face(s) in %s", len(faces), artifact.slot.value)
        return faces
