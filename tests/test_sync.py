import sqlite3

from noteme.models import AnalysisResult
from noteme.recordings import RecordingStore
from noteme.storage import DurableStore
from noteme.sync import DurableSync, audio_format_from_path

USER = "00000000-0000-0000-0000-000000000001"


def _setup(tmp_path):
    store = RecordingStore()
    durable = DurableStore(db_path=tmp_path / "noteme.db")
    return store, durable, DurableSync(durable)


def test_first_sync_creates_row_and_mapping(tmp_path):
    store, durable, sync = _setup(tmp_path)
    recording = store.create("rec_1", str(tmp_path / "rec_1.M4A"), size_bytes=4096, duration_seconds=3)

    durable_id = sync.sync_recording(recording, USER, "fpt")

    assert durable_id is not None
    assert sync.durable_id("rec_1") == durable_id
    row = durable.get(durable_id)
    assert row.metadata == {"recording_id": "rec_1"}
    assert row.audio_format == "m4a"
    assert row.audio_duration_ms == 3000
    assert row.audio_size_bytes == 4096
    assert row.status == "uploaded"
    assert row.stt_provider == "fpt"


def test_transcript_then_analysis_keeps_both(tmp_path):
    store, durable, sync = _setup(tmp_path)
    store.create("rec_1", str(tmp_path / "rec_1.wav"), size_bytes=2048)
    durable_id = sync.sync_recording(store.get("rec_1"), USER, "fpt")

    processed = store.mark_processed("rec_1", "chúng ta chốt deadline", 0.91)
    assert sync.sync_recording(processed, USER, "fpt", processing_time_ms=1200) == durable_id
    sync.sync_analysis("rec_1", AnalysisResult(context="meeting", summary=["Chốt deadline"]))

    row = durable.get(durable_id)
    assert row.transcript == "chúng ta chốt deadline"
    assert row.confidence == 0.91
    assert row.processing_time_ms == 1200
    assert row.status == "success"
    assert row.metadata["recording_id"] == "rec_1"
    assert row.metadata["ai_analysis"]["summary"] == ["Chốt deadline"]
    assert row.metadata["ai_analysis"]["zalo_brief"] == ""


def test_empty_fields_do_not_clobber_stored_values(tmp_path):
    store, durable, sync = _setup(tmp_path)
    store.create("rec_1", str(tmp_path / "rec_1.wav"), size_bytes=2048, duration_seconds=5)
    durable_id = sync.sync_recording(store.get("rec_1"), USER, "fpt")

    claimed, _ = store.claim("rec_1")
    claimed.duration_seconds = 0
    sync.sync_recording(claimed, USER, "fpt")

    row = durable.get(durable_id)
    assert row.audio_duration_ms == 5000
    assert row.status == "processing"


def test_successful_retry_clears_stored_error(tmp_path):
    store, durable, sync = _setup(tmp_path)
    store.create("rec_1", str(tmp_path / "rec_1.wav"), size_bytes=2048)
    durable_id = sync.sync_recording(store.get("rec_1"), USER, "fpt")
    store.claim("rec_1")
    sync.sync_recording(store.mark_failed("rec_1", "STT failed: timeout"), USER, "fpt")
    assert durable.get(durable_id).error_message == "STT failed: timeout"

    store.claim("rec_1")
    sync.sync_recording(store.mark_processed("rec_1", "xin chào", 0.8), USER, "fpt")

    row = durable.get(durable_id)
    assert row.status == "processed"
    assert row.transcript == "xin chào"
    assert not row.error_message


def test_analysis_without_mapping_is_skipped(tmp_path):
    _, durable, sync = _setup(tmp_path)
    sync.sync_analysis("rec_unknown", AnalysisResult(context="thinking"))
    assert durable.list_by_user(USER) == []


def test_without_store_everything_is_a_noop():
    store = RecordingStore()
    sync = DurableSync()
    recording = store.create("rec_1", "/tmp/rec_1.wav")

    assert not sync.enabled
    assert sync.sync_recording(recording, USER, "fpt") is None
    sync.sync_analysis("rec_1", AnalysisResult())
    assert sync.durable_id("rec_1") is None


def test_storage_errors_are_swallowed(tmp_path):
    store, durable, sync = _setup(tmp_path)
    recording = store.create("rec_1", str(tmp_path / "rec_1.wav"))

    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    durable.create = broken
    assert sync.sync_recording(recording, USER, "fpt") is None
    assert sync.durable_id("rec_1") is None


def test_audio_format_from_path():
    assert audio_format_from_path("/x/a.MP3") == "mp3"
    assert audio_format_from_path("/x/noext") is None
