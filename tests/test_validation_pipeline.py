import asyncio

from capture_coordinator import DocumentSlot
from conftest import FakeFaceDetector, FakeTextRecognizer, make_artifact, run
from ktp_engines import RecognitionError
from slot_store import JsonSlotStore
from validation_pipeline import (
    EmptySlot,
    PendingSlot,
    ResolvedSlot,
    SlotStatus,
    ValidationPipeline,
    ValidationState,
)

NIK_TEXT = "PROVINSI JAWA BARAT\nNIK : 3201010101990001\nNama : BUDI"


def _pipeline(text=NIK_TEXT, faces=1, **kwargs):
    notices = []
    ocr = kwargs.pop("ocr", None) or FakeTextRecognizer(text)
    detector = kwargs.pop("detector", None) or FakeFaceDetector(faces)
    pipeline = ValidationPipeline(ocr, detector, notify=notices.append, **kwargs)
    return pipeline, ocr, detector, notices


def test_initial_state():
    pipeline, *_ = _pipeline()

    for slot in DocumentSlot:
        assert pipeline.status(slot) is SlotStatus.EMPTY
        assert isinstance(pipeline.slot_state(slot), EmptySlot)
        assert not pipeline.is_processed(slot)
    assert pipeline.snapshot() == ValidationState()


def test_ktp_with_number_and_face_is_valid(artifact):
    pipeline, ocr, detector, notices = _pipeline()

    status = run(pipeline.process(DocumentSlot.KTP, artifact))

    assert status is SlotStatus.VALID
    state = pipeline.snapshot()
    assert state.is_ktp_valid
    assert state.is_ktp_face_valid
    assert state.ktp_number == "3201010101990001"
    assert detector.calls == ["all"]
    assert notices == []
    assert pipeline.slot_state(DocumentSlot.KTP) == ResolvedSlot(artifact=artifact, valid=True)


def test_ktp_without_face_is_invalid(artifact):
    pipeline, *_ = _pipeline(faces=0)

    status = run(pipeline.process(DocumentSlot.KTP, artifact))

    assert status is SlotStatus.INVALID
    state = pipeline.snapshot()
    assert state.is_ktp_valid
    assert not state.is_ktp_face_valid
    assert state.ktp_number == "3201010101990001"


def test_ktp_without_number_is_invalid(artifact):
    pipeline, *_ = _pipeline(text="KARTU TANDA PENDUDUK")

    status = run(pipeline.process(DocumentSlot.KTP, artifact))

    assert status is SlotStatus.INVALID
    assert not pipeline.snapshot().is_ktp_valid
    assert pipeline.snapshot().ktp_number == ""


def test_face_slot_only_runs_face_detection(face_artifact):
    pipeline, ocr, detector, _ = _pipeline()

    status = run(pipeline.process(DocumentSlot.FACE, face_artifact))

    assert status is SlotStatus.VALID
    assert pipeline.snapshot().is_face_valid
    assert ocr.calls == 0
    assert len(detector.calls) == 1


def test_face_slot_without_face(face_artifact):
    pipeline, *_ = _pipeline(faces=0)

    assert run(pipeline.process(DocumentSlot.FACE, face_artifact)) is SlotStatus.INVALID
    assert not pipeline.snapshot().is_face_valid


def test_second_artifact_for_same_slot_is_dropped(artifact):
    async def scenario():
        gate = asyncio.Event()
        pipeline, ocr, _, _ = _pipeline(ocr=FakeTextRecognizer(NIK_TEXT, gate=gate))

        first = pipeline.submit(DocumentSlot.KTP, artifact)
        assert pipeline.is_processed(DocumentSlot.KTP)
        assert isinstance(pipeline.slot_state(DocumentSlot.KTP), PendingSlot)
        second = pipeline.submit(DocumentSlot.KTP, make_artifact(path="/tmp/other.png"))

        gate.set()
        await pipeline.drain()
        return pipeline, ocr, first, second

    pipeline, ocr, first, second = run(scenario())

    assert first is not None
    assert second is None
    assert ocr.calls == 1
    assert pipeline.slot_state(DocumentSlot.KTP).artifact.storage_path == "/tmp/ktp.png"


def test_resolved_slot_does_not_revalidate(artifact):
    async def scenario():
        pipeline, ocr, _, _ = _pipeline()
        await pipeline.process(DocumentSlot.KTP, artifact)
        again = await pipeline.process(DocumentSlot.KTP, artifact)
        return pipeline, ocr, again

    pipeline, ocr, again = run(scenario())

    assert again is None
    assert ocr.calls == 1
    assert pipeline.status(DocumentSlot.KTP) is SlotStatus.VALID


def test_ocr_and_face_detection_run_concurrently(artifact):
    async def scenario():
        gate = asyncio.Event()
        ocr = FakeTextRecognizer(NIK_TEXT, gate=gate)
        detector = FakeFaceDetector(1, gate=gate)
        pipeline, *_ = _pipeline(ocr=ocr, detector=detector)

        task = pipeline.submit(DocumentSlot.KTP, artifact)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        # both collaborators were called before either finished
        started = (ocr.calls, len(detector.calls))
        assert pipeline.status(DocumentSlot.KTP) is SlotStatus.PENDING
        gate.set()
        await task
        return pipeline, started

    pipeline, started = run(scenario())

    assert started == (1, 1)
    assert pipeline.status(DocumentSlot.KTP) is SlotStatus.VALID


def test_reset_allows_new_cycle(artifact):
    async def scenario():
        pipeline, ocr, _, _ = _pipeline()
        await pipeline.process(DocumentSlot.KTP, artifact)
        pipeline.reset(DocumentSlot.KTP)
        after_reset = (pipeline.status(DocumentSlot.KTP), pipeline.is_processed(DocumentSlot.KTP), pipeline.snapshot())
        status = await pipeline.process(DocumentSlot.KTP, make_artifact(path="/tmp/retake.png"))
        return after_reset, status, ocr

    (status_after_reset, processed, state), status, ocr = run(scenario())

    assert status_after_reset is SlotStatus.EMPTY
    assert not processed
    assert state.ktp_number == ""
    assert not state.is_ktp_valid
    assert status is SlotStatus.VALID
    assert ocr.calls == 2


def test_reset_keeps_other_slot(artifact, face_artifact):
    async def scenario():
        pipeline, *_ = _pipeline()
        await pipeline.process(DocumentSlot.KTP, artifact)
        await pipeline.process(DocumentSlot.FACE, face_artifact)
        pipeline.reset(DocumentSlot.FACE)
        return pipeline

    pipeline = run(scenario())

    assert pipeline.status(DocumentSlot.KTP) is SlotStatus.VALID
    assert pipeline.snapshot().ktp_number == "3201010101990001"
    assert not pipeline.snapshot().is_face_valid


def test_stale_result_after_reset_is_discarded(artifact):
    async def scenario():
        gate = asyncio.Event()
        pipeline, *_ = _pipeline(ocr=FakeTextRecognizer(NIK_TEXT, gate=gate))

        pipeline.submit(DocumentSlot.KTP, artifact)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        pipeline.reset(DocumentSlot.KTP)
        gate.set()
        await pipeline.drain()
        return pipeline

    pipeline = run(scenario())

    assert pipeline.status(DocumentSlot.KTP) is SlotStatus.EMPTY
    assert pipeline.snapshot() == ValidationState()


def test_stale_result_does_not_overwrite_new_cycle(artifact):
    async def scenario():
        slow_gate = asyncio.Event()
        ocr = FakeTextRecognizer(NIK_TEXT, gate=slow_gate)
        pipeline, *_ = _pipeline(ocr=ocr)

        pipeline.submit(DocumentSlot.KTP, artifact)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        pipeline.reset(DocumentSlot.KTP)

        ocr.gate = None
        ocr.text = "no number here"
        await pipeline.process(DocumentSlot.KTP, make_artifact(path="/tmp/retake.png"))

        slow_gate.set()
        await pipeline.drain()
        return pipeline

    pipeline = run(scenario())

    assert pipeline.status(DocumentSlot.KTP) is SlotStatus.INVALID
    assert pipeline.slot_state(DocumentSlot.KTP).artifact.storage_path == "/tmp/retake.png"
    assert pipeline.snapshot().ktp_number == ""


def test_collaborator_failure_is_invalid_with_notice(artifact):
    pipeline, _, _, notices = _pipeline(ocr=FakeTextRecognizer(error=RecognitionError("tesseract crashed")))

    status = run(pipeline.process(DocumentSlot.KTP, artifact))

    assert status is SlotStatus.INVALID
    assert len(notices) == 1
    assert notices[0].message == "Failed to read KTP"
    assert notices[0].level == "danger"
    assert pipeline.snapshot() == ValidationState()


def test_face_failure_names_portrait_slot(face_artifact):
    pipeline, _, _, notices = _pipeline(detector=FakeFaceDetector(error=RuntimeError("boom")))

    assert run(pipeline.process(DocumentSlot.FACE, face_artifact)) is SlotStatus.INVALID
    assert notices[0].message == "Failed to read Pas Foto"


def test_submission_rules(artifact, face_artifact):
    async def scenario(faces_on_portrait):
        pipeline, _, detector, _ = _pipeline()
        checks = [pipeline.check_submission()]
        await pipeline.process(DocumentSlot.KTP, artifact)
        checks.append(pipeline.check_submission())
        detector.faces = faces_on_portrait
        await pipeline.process(DocumentSlot.FACE, face_artifact)
        checks.append(pipeline.check_submission())
        return checks

    checks = run(scenario(1))
    assert checks[0] == (False, "Take a photo of the KTP first")
    assert checks[1] == (False, "Take a portrait photo first")
    assert checks[2] == (True, None)

    # portrait without a detected face does not block submission
    assert run(scenario(0))[2] == (True, None)


def test_invalid_ktp_blocks_submission(artifact, face_artifact):
    async def scenario():
        pipeline, *_ = _pipeline(faces=0)
        await pipeline.process(DocumentSlot.KTP, artifact)
        await pipeline.process(DocumentSlot.FACE, face_artifact)
        return pipeline

    pipeline = run(scenario())

    assert not pipeline.can_submit()
    assert pipeline.check_submission()[1] == "The KTP photo could not be read clearly, please retake it"


def test_state_is_persisted(artifact, tmp_path):
    path = str(tmp_path / "store.json")
    pipeline, *_ = _pipeline(store=JsonSlotStore(path))

    run(pipeline.process(DocumentSlot.KTP, artifact))

    saved = JsonSlotStore(path).get("validation")
    assert saved["ktp_number"] == "3201010101990001"
    assert saved["is_ktp_valid"] is True

    pipeline.reset(DocumentSlot.KTP)
    assert JsonSlotStore(path).get("validation")["ktp_number"] == ""


def test_restore_state_keeps_only_captured_slots(tmp_path):
    store = JsonSlotStore(str(tmp_path / "store.json"))
    store.set("validation", {"is_ktp_valid": True, "is_ktp_face_valid": True, "is_face_valid": True, "ktp_number": "3201010101990001"})
    pipeline, *_ = _pipeline(store=store)

    pipeline.restore_state([DocumentSlot.KTP])

    state = pipeline.snapshot()
    assert state.ktp_number == "3201010101990001"
    assert not state.is_face_valid
