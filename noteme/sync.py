"""Best-effort mirroring of in-memory recordings into the durable store."""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Dict, Optional

from .models import STATUS_FAILED, AnalysisResult, Recording
from .recordings import KeyedLocks
from .storage import DurableStore, StorageError

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"


def audio_format_from_path(path: str) -> Optional[str]:
    suffix = Path(path).suffix
    return suffix[1:].lower() if len(suffix) > 1 else None


class DurableSync:
    """Keep at most one durable row per recording id.

    Failures never reach the caller: without a store every call is a no-op
    and storage errors are logged and dropped.
    """

    def __init__(self, store: Optional[DurableStore] = None) -> None:
        self.store = store
        self._lock = threading.Lock()
        self._ids: Dict[str, str] = {}
        self._writers = KeyedLocks()

    @property
    def enabled(self) -> bool:
        return self.store is not None

    def durable_id(self, recording_id: str) -> Optional[str]:
        with self._lock:
            return self._ids.get(recording_id)

    def sync_recording(
        self,
        recording: Recording,
        owner_id: str,
        provider_name: str,
        processing_time_ms: Optional[int] = None,
    ) -> Optional[str]:
        """Create or update the durable row for ``recording``; return its id.

        Updates merge like :meth:`DurableStore.update_result`, except that
        ``error_message`` is cleared once the recording is no longer failed.
        """

        if self.store is None:
            logger.debug("No durable store configured; skipping sync of %s", recording.id)
            return None

        fields = dict(
            transcript=recording.transcript or None,
            confidence=recording.confidence if recording.transcript else None,
            error_message=recording.error_message or None,
            audio_duration_ms=recording.duration_seconds * 1000 if recording.duration_seconds > 0 else None,
            audio_size_bytes=recording.size_bytes if recording.size_bytes > 0 else None,
            processing_time_ms=processing_time_ms,
        )
        try:
            with self._writers.hold(recording.id):
                durable_id = self.durable_id(recording.id)
                if durable_id is not None:
                    if recording.status != STATUS_FAILED:
                        # Only failed rows carry an error; an empty value clears the stored one.
                        fields["error_message"] = ""
                    self.store.update_result(durable_id, status=recording.status, **fields)
                    logger.info("Updated durable record %s for recording %s", durable_id, recording.id)
                    return durable_id

                record = self.store.create(
                    owner_id,
                    recording.storage_path,
                    provider_name,
                    recording.status,
                    audio_format=audio_format_from_path(recording.storage_path),
                    metadata={"recording_id": recording.id},
                    created_at=recording.created_at,
                    **fields,
                )
                with self._lock:
                    self._ids[recording.id] = record.id
                logger.info("Synced recording %s to durable record %s", recording.id, record.id)
                return record.id
        except (StorageError, sqlite3.Error) as exc:
            logger.warning("Durable sync failed for recording %s: %s", recording.id, exc)
            return None

    def sync_analysis(self, recording_id: str, analysis: AnalysisResult) -> None:
        if self.store is None:
            return
        with self._writers.hold(recording_id):
            durable_id = self.durable_id(recording_id)
            if durable_id is None:
                logger.warning("No durable record for recording %s; skipping analysis sync", recording_id)
                return
            try:
                self.store.update_result(
                    durable_id,
                    status=STATUS_SUCCESS,
                    metadata={"recording_id": recording_id, "ai_analysis": analysis.to_dict()},
                )
            except (StorageError, sqlite3.Error) as exc:
                logger.warning("Durable analysis sync failed for recording %s: %s", recording_id, exc)
                return
        logger.info("Synced analysis for recording %s with status=%s", recording_id, STATUS_SUCCESS)
