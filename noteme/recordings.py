"""In-memory registries for live recordings and their analyses.

Both stores own their dictionary and a lock. Every accessor hands back a copy,
so callers never share mutable state with the registry.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional, Tuple

from .models import (
    STATUS_FAILED,
    STATUS_PROCESSED,
    STATUS_PROCESSING,
    AnalysisResult,
    Recording,
)


class RecordingError(RuntimeError):
    """Base class for recording store failures."""


class RecordingNotFound(RecordingError):
    """Raised when a recording id is unknown."""


class RecordingConflict(RecordingError):
    """Raised when a recording is already being processed."""


class KeyedLocks:
    """Hand out one lock per key, creating them on demand."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield


class RecordingStore:
    """Registry of recordings keyed by id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._recordings: Dict[str, Recording] = {}

    def create(
        self,
        recording_id: str,
        storage_path: str,
        size_bytes: int = 0,
        duration_seconds: int = 0,
    ) -> Recording:
        recording = Recording(
            id=recording_id,
            storage_path=storage_path,
            size_bytes=size_bytes,
            duration_seconds=duration_seconds,
        )
        with self._lock:
            if recording_id in self._recordings:
                raise RecordingConflict(f"Recording {recording_id} already exists")
            self._recordings[recording_id] = recording
            return copy.copy(recording)

    def get(self, recording_id: str) -> Recording:
        with self._lock:
            return copy.copy(self._require(recording_id))

    def find(self, recording_id: str) -> Optional[Recording]:
        with self._lock:
            recording = self._recordings.get(recording_id)
            return copy.copy(recording) if recording is not None else None

    def claim(self, recording_id: str) -> Tuple[Recording, bool]:
        """Move a recording into ``processing``.

        Returns the snapshot and whether the caller now owns the processing
        run. A processed recording with a transcript is returned unclaimed so
        the caller can serve the cached transcript. Failed recordings can be
        claimed again; their previous error is cleared.
        """

        with self._lock:
            recording = self._require(recording_id)
            if recording.status == STATUS_PROCESSING:
                raise RecordingConflict(f"Recording {recording_id} is already being processed")
            if recording.status == STATUS_PROCESSED and recording.transcript:
                return copy.copy(recording), False
            recording.status = STATUS_PROCESSING
            recording.error_message = ""
            return copy.copy(recording), True

    def mark_processed(self, recording_id: str, transcript: str, confidence: float) -> Recording:
        with self._lock:
            recording = self._require(recording_id)
            recording.transcript = transcript
            recording.confidence = confidence
            recording.error_message = ""
            recording.status = STATUS_PROCESSED
            return copy.copy(recording)

    def mark_failed(self, recording_id: str, message: str) -> Recording:
        with self._lock:
            recording = self._require(recording_id)
            recording.transcript = ""
            recording.confidence = 0.0
            recording.error_message = message or "processing failed"
            recording.status = STATUS_FAILED
            return copy.copy(recording)

    def _require(self, recording_id: str) -> Recording:
        recording = self._recordings.get(recording_id)
        if recording is None:
            raise RecordingNotFound(f"Recording {recording_id} not found")
        return recording


class AnalysisCache:
    """Analyses keyed by recording id, created at most once per id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._analyses: Dict[str, AnalysisResult] = {}
        self._creators = KeyedLocks()

    def get(self, recording_id: str) -> Optional[AnalysisResult]:
        with self._lock:
            result = self._analyses.get(recording_id)
            return copy.deepcopy(result) if result is not None else None

    def put(self, recording_id: str, result: AnalysisResult) -> None:
        with self._lock:
            self._analyses[recording_id] = copy.deepcopy(result)

    def all(self) -> Dict[str, AnalysisResult]:
        with self._lock:
            return {key: copy.deepcopy(value) for key, value in self._analyses.items()}

    def get_or_create(
        self,
        recording_id: str,
        factory: Callable[[], AnalysisResult],
    ) -> Tuple[AnalysisResult, bool]:
        """Return ``(result, cached)``, running ``factory`` only on a miss.

        Creators for the same id are serialised so the factory succeeds at
        most once; the table lock is never held while the factory runs.
        """

        cached = self.get(recording_id)
        if cached is not None:
            return cached, True
        with self._creators.hold(recording_id):
            cached = self.get(recording_id)
            if cached is not None:
                return cached, True
            result = factory()
            self.put(recording_id, result)
            return copy.deepcopy(result), False
