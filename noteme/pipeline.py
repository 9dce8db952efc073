"""The recording pipeline: upload, transcription, cleaning, analysis and history.

:class:`RecordingService` is the single entry point used by the HTTP layer.
It owns no global state; every collaborator is injected when the application
is composed.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from pathlib import Path
from typing import List, Optional, Tuple

from .analyzer import AnalysisContext, AnalysisError, Analyzer
from .cleaner import TranscriptCleaner
from .models import AnalysisResult, DurableRecord, Recording
from .recordings import AnalysisCache, RecordingConflict, RecordingNotFound, RecordingStore
from .storage import RecordNotFound, StorageError
from .sync import DurableSync
from .transcriber import TranscriptionBackend, TranscriptionError

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "00000000-0000-0000-0000-000000000001"


class PipelineError(RuntimeError):
    """Base class for failures reported to API callers."""


class NotFoundError(PipelineError):
    """The requested recording, analysis or history entry does not exist."""


class ConflictError(PipelineError):
    """The recording is already being processed."""


class InvalidInputError(PipelineError):
    """The request cannot be served with the data provided."""


class UpstreamError(PipelineError):
    """A speech-to-text or language model call failed."""


class DurableStoreUnavailable(PipelineError):
    """History operations need a durable store, and none is configured."""


def new_recording_id() -> str:
    return f"rec_{uuid.uuid4().hex}"


class RecordingService:
    def __init__(
        self,
        store: RecordingStore,
        analyses: AnalysisCache,
        backend: Optional[TranscriptionBackend],
        analyzer: Optional[Analyzer] = None,
        cleaner: Optional[TranscriptCleaner] = None,
        sync: Optional[DurableSync] = None,
        *,
        provider_name: str = "",
        backend_error: str = "",
        default_user_id: str = DEFAULT_USER_ID,
    ) -> None:
        self.store = store
        self.analyses = analyses
        self.backend = backend
        self.analyzer = analyzer
        self.cleaner = cleaner
        self.sync = sync or DurableSync()
        self.provider_name = provider_name or (backend.name if backend is not None else "unknown")
        self.backend_error = backend_error
        self.default_user_id = default_user_id

    def _owner(self, owner_id: Optional[str]) -> str:
        return owner_id or self.default_user_id

    # Recordings -----------------------------------------------------------

    def create_recording(
        self,
        storage_path: Path,
        size_bytes: int = 0,
        duration_seconds: int = 0,
        owner_id: Optional[str] = None,
        recording_id: Optional[str] = None,
    ) -> Recording:
        recording = self.store.create(
            recording_id or new_recording_id(),
            str(storage_path),
            size_bytes=size_bytes,
            duration_seconds=duration_seconds,
        )
        logger.info("Created recording %s (%d bytes)", recording.id, size_bytes)
        self.sync.sync_recording(recording, self._owner(owner_id), self.provider_name)
        return recording

    def get_recording(self, recording_id: str) -> Recording:
        try:
            return self.store.get(recording_id)
        except RecordingNotFound as exc:
            raise NotFoundError(str(exc)) from exc

    def get_status(self, recording_id: str) -> Recording:
        return self.get_recording(recording_id)

    def process(self, recording_id: str, owner_id: Optional[str] = None) -> Tuple[Recording, bool]:
        """Transcribe and clean a recording.

        Returns the resulting snapshot and whether it was served from an
        earlier successful run. Failures leave the recording ``failed`` and
        raise :class:`UpstreamError`.
        """

        try:
            recording, claimed = self.store.claim(recording_id)
        except RecordingNotFound as exc:
            raise NotFoundError(str(exc)) from exc
        except RecordingConflict as exc:
            raise ConflictError(str(exc)) from exc
        if not claimed:
            logger.info("Recording %s already processed; returning cached transcript", recording_id)
            return recording, True

        owner = self._owner(owner_id)
        started = time.monotonic()
        try:
            return self._run(recording, owner, started), False
        except UpstreamError:
            raise
        except Exception as exc:
            logger.exception("Unexpected error while processing %s", recording_id)
            self._fail(recording_id, owner, f"processing failed: {exc}", started)
            raise UpstreamError(f"processing failed: {exc}") from exc

    def _run(self, recording: Recording, owner: str, started: float) -> Recording:
        recording_id = recording.id
        self.sync.sync_recording(recording, owner, self.provider_name)

        if self.backend is None:
            message = "STT provider not available"
            if self.backend_error:
                message = f"{message}: {self.backend_error}"
            self._fail(recording_id, owner, message)
            raise UpstreamError(message)

        try:
            result = self.backend.transcribe(Path(recording.storage_path))
        except TranscriptionError as exc:
            self._fail(recording_id, owner, f"STT failed: {exc}", started)
            raise UpstreamError(f"STT failed: {exc}") from exc
        except Exception as exc:
            logger.exception("Unexpected STT error for recording %s", recording_id)
            self._fail(recording_id, owner, f"STT failed: {exc}", started)
            raise UpstreamError(f"STT failed: {exc}") from exc

        text = result.text
        if self.cleaner is not None:
            text = self.cleaner.clean(text)
        if not text.strip():
            self._fail(recording_id, owner, "STT returned an empty transcript", started)
            raise UpstreamError("STT returned an empty transcript")

        recording = self.store.mark_processed(recording_id, text, result.confidence)
        elapsed = _elapsed_ms(started)
        logger.info(
            "Processed recording %s with %s in %d ms (confidence %.2f)",
            recording_id,
            result.provider,
            elapsed,
            result.confidence,
        )
        self.sync.sync_recording(recording, owner, self.provider_name, processing_time_ms=elapsed)
        return recording

    def _fail(
        self,
        recording_id: str,
        owner_id: str,
        message: str,
        started: Optional[float] = None,
    ) -> None:
        logger.warning("Processing of recording %s failed: %s", recording_id, message)
        recording = self.store.mark_failed(recording_id, message)
        elapsed = _elapsed_ms(started) if started is not None else None
        self.sync.sync_recording(recording, owner_id, self.provider_name, processing_time_ms=elapsed)

    # Analysis -------------------------------------------------------------

    def analyze(
        self, recording_id: str, context_hint: Optional[str] = None
    ) -> Tuple[AnalysisResult, bool]:
        """Return ``(analysis, cached)``; the model is called at most once per id."""

        recording = self.get_recording(recording_id)
        if not recording.transcript:
            raise InvalidInputError(
                f"Recording {recording_id} has no transcript; process it before analysing"
            )
        if self.analyzer is None:
            raise UpstreamError("AI analyzer not available")

        analyzer = self.analyzer
        try:
            result, cached = self.analyses.get_or_create(
                recording_id,
                lambda: analyzer.analyze(recording.transcript, context_hint),
            )
        except AnalysisError as exc:
            raise UpstreamError(f"AI analysis failed: {exc}") from exc

        if cached:
            logger.info("Serving cached analysis for recording %s", recording_id)
        else:
            self.sync.sync_analysis(recording_id, result)
        return result, cached

    def get_analysis(self, recording_id: str) -> AnalysisResult:
        self.get_recording(recording_id)
        result = self.analyses.get(recording_id)
        if result is None:
            raise NotFoundError(f"Analysis for recording {recording_id} not found")
        return result

    def ask(self, question: str) -> Tuple[str, int]:
        """Answer ``question`` from every analysed recording; return the count used."""

        if not question or not question.strip():
            raise InvalidInputError("question is required")
        if self.analyzer is None:
            raise UpstreamError("AI analyzer not available")

        entries: List[AnalysisContext] = []
        for recording_id, analysis in self.analyses.all().items():
            recording = self.store.find(recording_id)
            if recording is None:
                continue
            entries.append(
                AnalysisContext(
                    recording_id=recording_id,
                    created_at=recording.created_at,
                    analysis=analysis,
                    transcript=recording.transcript,
                )
            )
        if not entries:
            raise InvalidInputError("No analysed recordings available; analyse a recording first")

        try:
            answer = self.analyzer.ask(question, entries)
        except AnalysisError as exc:
            raise UpstreamError(f"AI ask failed: {exc}") from exc
        return answer, len(entries)

    # Durable history --------------------------------------------------------

    def _durable(self):
        if self.sync.store is None:
            raise DurableStoreUnavailable("Durable storage is not configured")
        return self.sync.store

    def history(
        self, owner_id: Optional[str] = None, limit: Optional[int] = None, offset: Optional[int] = None
    ) -> List[DurableRecord]:
        store = self._durable()
        try:
            return store.list_by_user(self._owner(owner_id), limit, offset)
        except (StorageError, sqlite3.Error) as exc:
            raise UpstreamError(f"Failed to list history: {exc}") from exc

    def search(
        self,
        query: str,
        owner_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[DurableRecord]:
        if not query or not query.strip():
            raise InvalidInputError("search query is required")
        store = self._durable()
        try:
            return store.search(self._owner(owner_id), query.strip(), limit, offset)
        except (StorageError, sqlite3.Error) as exc:
            raise UpstreamError(f"Failed to search history: {exc}") from exc

    def durable_record(self, durable_id: str) -> DurableRecord:
        store = self._durable()
        try:
            return store.get(durable_id)
        except RecordNotFound as exc:
            raise NotFoundError(str(exc)) from exc

    def rename(self, durable_id: str, title: str) -> DurableRecord:
        if not title or not title.strip():
            raise InvalidInputError("title is required")
        store = self._durable()
        try:
            return store.update_title(durable_id, title.strip())
        except RecordNotFound as exc:
            raise NotFoundError(str(exc)) from exc

    def delete(self, durable_id: str) -> None:
        store = self._durable()
        try:
            store.delete(durable_id)
        except RecordNotFound as exc:
            raise NotFoundError(str(exc)) from exc


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
