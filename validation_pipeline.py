"""Validation of captured KTP and portrait photos.

Each document slot moves through ``EMPTY -> PENDING -> VALID | INVALID``.
All methods must be called from the event loop that owns the pipeline;
the pipeline itself never touches camera frames.

The text recognizer must provide ``async recognize(artifact)`` returning an
object with a ``text`` attribute, and the face detector
``async detect(artifact, landmark_mode=...)`` returning a sequence of faces.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Set, Tuple, Union

from capture_coordinator import CaptureArtifact, DocumentSlot
from nik_extractor import extract_identity_number

logger = logging.getLogger(__name__)

VALIDATION_KEY = "validation"


class SlotStatus(str, Enum):
    EMPTY = "empty"
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"


@dataclass(frozen=True)
class EmptySlot:
    @property
    def status(self) -> SlotStatus:
        return SlotStatus.EMPTY


@dataclass(frozen=True)
class PendingSlot:
    artifact: CaptureArtifact
    generation: int

    @property
    def status(self) -> SlotStatus:
        return SlotStatus.PENDING


@dataclass(frozen=True)
class ResolvedSlot:
    artifact: CaptureArtifact
    valid: bool

    @property
    def status(self) -> SlotStatus:
        return SlotStatus.VALID if self.valid else SlotStatus.INVALID


SlotState = Union[EmptySlot, PendingSlot, ResolvedSlot]


@dataclass
class ValidationState:
    is_ktp_valid: bool = False
    is_ktp_face_valid: bool = False
    is_face_valid: bool = False
    ktp_number: str = ""

    def snapshot(self) -> "ValidationState":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ValidationState":
        if not data:
            return cls()
        return cls(
            is_ktp_valid=bool(data.get("is_ktp_valid", False)),
            is_ktp_face_valid=bool(data.get("is_ktp_face_valid", False)),
            is_face_valid=bool(data.get("is_face_valid", False)),
            ktp_number=str(data.get("ktp_number", "")),
        )


_CLEARED_FIELDS = {
    DocumentSlot.KTP: {"is_ktp_valid": False, "is_ktp_face_valid": False, "ktp_number": ""},
    DocumentSlot.FACE: {"is_face_valid": False},
}


@dataclass(frozen=True)
class Notice:
    message: str
    level: str = "danger"


class ValidationPipeline:
    def __init__(
        self,
        text_recognizer,
        face_detector,
        notify: Optional[Callable[[Notice], None]] = None,
        store=None,
        landmark_mode: str = "all",
    ) -> None:
        self._text_recognizer = text_recognizer
        self._face_detector = face_detector
        self._notify = notify
        self._store = store
        self.landmark_mode = landmark_mode

        self.state = ValidationState()
        self._slots: Dict[DocumentSlot, SlotState] = {slot: EmptySlot() for slot in DocumentSlot}
        self._processed: Dict[DocumentSlot, bool] = {slot: False for slot in DocumentSlot}
        self._generation: Dict[DocumentSlot, int] = {slot: 0 for slot in DocumentSlot}
        self._tasks: Set[asyncio.Task] = set()

    # ----------------------------
    # Queries
    # ----------------------------
    def slot_state(self, slot: DocumentSlot) -> SlotState:
        return self._slots[slot]

    def status(self, slot: DocumentSlot) -> SlotStatus:
        return self._slots[slot].status

    def is_processed(self, slot: DocumentSlot) -> bool:
        return self._processed[slot]

    def snapshot(self) -> ValidationState:
        return self.state.snapshot()

    def check_submission(self) -> Tuple[bool, Optional[str]]:
        """Return ``(allowed, reason)`` for the document-level submission.

        The portrait only has to be present; its face check does not block.
        """

        if self.status(DocumentSlot.KTP) is SlotStatus.EMPTY:
            return False, "Take a photo of the KTP first"
        if self.status(DocumentSlot.FACE) is SlotStatus.EMPTY:
            return False, "Take a portrait photo first"
        if self.status(DocumentSlot.KTP) is not SlotStatus.VALID:
            return False, "The KTP photo could not be read clearly, please retake it"
        return True, None

    def can_submit(self) -> bool:
        return self.check_submission()[0]

    # ----------------------------
    # Transitions
    # ----------------------------
    def submit(self, slot: DocumentSlot, artifact: CaptureArtifact) -> Optional[asyncio.Task]:
        """Start validating ``artifact`` unless the slot was already processed.

        The processed flag is set before analysis starts, so a second artifact
        arriving for the same slot is dropped until :meth:`reset`.
        """

        if self._processed[slot]:
            logger.debug("Dropping %s artifact, slot already processed", slot.value)
            return None

        self._processed[slot] = True
        generation = self._generation[slot]
        self._slots[slot] = PendingSlot(artifact=artifact, generation=generation)
        logger.info("Validating %s capture", slot.display_name)

        task = asyncio.get_running_loop().create_task(self._analyse(slot, artifact, generation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def process(self, slot: DocumentSlot, artifact: CaptureArtifact) -> Optional[SlotStatus]:
        task = self.submit(slot, artifact)
        if task is None:
            return None
        await task
        return self.status(slot)

    def reset(self, slot: DocumentSlot) -> None:
        """Return ``slot`` to EMPTY; any analysis still running for it becomes stale."""

        self._generation[slot] += 1
        self._processed[slot] = False
        self._slots[slot] = EmptySlot()
        self.state = replace(self.state, **_CLEARED_FIELDS[slot])
        self._persist()
        logger.info("Reset %s slot", slot.display_name)

    async def drain(self) -> None:
        """Wait for every analysis in flight."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def restore_state(self, captured: Iterable[DocumentSlot]) -> None:
        """Load the last persisted state, keeping fields only for ``captured`` slots."""

        if self._store is None:
            return
        state = ValidationState.from_dict(self._store.get(VALIDATION_KEY))
        for slot in set(DocumentSlot) - set(captured):
            state = replace(state, **_CLEARED_FIELDS[slot])
        self.state = state

    # ----------------------------
    # Analysis
    # ----------------------------
    async def _run_ktp(self, artifact: CaptureArtifact) -> Tuple[bool, Dict[str, Any]]:
        results = await asyncio.gather(
            self._text_recognizer.recognize(artifact),
            self._face_detector.detect(artifact, landmark_mode=self.landmark_mode),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        recognized, faces = results

        nik = extract_identity_number(recognized.text)
        has_face = len(faces) > 0
        fields = {
            "is_ktp_valid": nik is not None,
            "is_ktp_face_valid": has_face,
            "ktp_number": nik or "",
        }
        return nik is not None and has_face, fields

    async def _run_face(self, artifact: CaptureArtifact) -> Tuple[bool, Dict[str, Any]]:
        faces = await self._face_detector.detect(artifact, landmark_mode=self.landmark_mode)
        has_face = len(faces) > 0
        return has_face, {"is_face_valid": has_face}

    def _is_stale(self, slot: DocumentSlot, generation: int) -> bool:
        return self._generation[slot] != generation

    async def _analyse(self, slot: DocumentSlot, artifact: CaptureArtifact, generation: int) -> None:
        run = self._run_ktp if slot is DocumentSlot.KTP else self._run_face
        try:
            valid, fields = await run(artifact)
        except Exception as exc:
            if self._is_stale(slot, generation):
                logger.info("Discarding failed %s analysis, slot was reset", slot.value)
                return
            logger.warning("Failed to read %s: %s", slot.value, exc)
            self._resolve(slot, artifact, False, _CLEARED_FIELDS[slot])
            self._emit(Notice(f"Failed to read {slot.display_name}", level="danger"))
            return

        if self._is_stale(slot, generation):
            logger.info("Discarding stale %s result, slot was reset", slot.value)
            return

        self._resolve(slot, artifact, valid, fields)
        logger.info("%s is %s", slot.display_name, "valid" if valid else "not valid")

    def _resolve(self, slot: DocumentSlot, artifact: CaptureArtifact, valid: bool, fields: Dict[str, Any]) -> None:
        self._slots[slot] = ResolvedSlot(artifact=artifact, valid=valid)
        self.state = replace(self.state, **fields)
        self._persist()

    def _persist(self) -> None:
        if self._store is not None:
            self._store.set(VALIDATION_KEY, self.state.to_dict())

    def _emit(self, notice: Notice) -> None:
        if self._notify is not None:
            self._notify(notice)
