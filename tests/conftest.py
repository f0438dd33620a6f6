import asyncio

import cv2
import numpy as np
import pytest

from capture_coordinator import CaptureArtifact, DocumentSlot
from ktp_engines import RecognizedText


class FakeTextRecognizer:
    def __init__(self, text="", error=None, gate=None):
        self.text = text
        self.error = error
        self.gate = gate
        self.calls = 0

    async def recognize(self, artifact):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return RecognizedText(text=self.text)


class FakeFaceDetector:
    def __init__(self, faces=1, error=None, gate=None):
        self.faces = faces
        self.error = error
        self.gate = gate
        self.calls = []

    async def detect(self, artifact, landmark_mode="all"):
        self.calls.append(landmark_mode)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return [object()] * self.faces


def make_artifact(slot=DocumentSlot.KTP, path="/tmp/ktp.png"):
    image = np.full((54, 86, 3), 200, dtype=np.uint8)
    ok, encoded = cv2.imencode(".png", image)
    assert ok
    return CaptureArtifact(slot=slot, image_data=encoded.tobytes(), storage_path=path)


@pytest.fixture
def artifact():
    return make_artifact()


@pytest.fixture
def face_artifact():
    return make_artifact(DocumentSlot.FACE, "/tmp/face.png")


@pytest.fixture
def frame():
    rng = np.random.default_rng(0)
    return rng.integers(0, 255, size=(480, 640, 3), dtype=np.uint8)


def run(coro):
    return asyncio.run(coro)
