"""Dataclasses describing the objects handled by noteme."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

STATUS_UPLOADED = "uploaded"
STATUS_PROCESSING = "processing"
STATUS_PROCESSED = "processed"
STATUS_FAILED = "failed"


@dataclass(slots=True)
class Recording:
    """One uploaded audio file and its processing state."""

    id: str
    storage_path: str
    status: str = STATUS_UPLOADED
    duration_seconds: int = 0
    size_bytes: int = 0
    transcript: str = ""
    confidence: float = 0.0
    error_message: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(slots=True)
class AnalysisResult:
    """Structured extraction derived from a transcript."""

    context: str = ""
    summary: List[str] = field(default_factory=list)
    action_items: List[str] = field(default_factory=list)
    key_points: List[str] = field(default_factory=list)
    brief: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context": self.context,
            "summary": list(self.summary),
            "action_items": list(self.action_items),
            "key_points": list(self.key_points),
            "zalo_brief": self.brief,
        }


@dataclass(slots=True)
class TranscriptionResult:
    """Uniform result returned by every STT backend."""

    text: str
    confidence: float
    provider: str
    raw_response: str = ""


@dataclass(slots=True)
class DurableRecord:
    """Mirror of a recording stored in the relational database."""

    id: str
    user_id: str
    audio_url: str
    stt_provider: str
    status: str
    created_at: datetime
    audio_format: Optional[str] = None
    audio_duration_ms: Optional[int] = None
    audio_size_bytes: Optional[int] = None
    language: Optional[str] = None
    model_version: Optional[str] = None
    title: Optional[str] = None
    transcript: Optional[str] = None
    confidence: Optional[float] = None
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Config:
    """Runtime configuration stored on disk."""

    stt_provider: str = "fpt"
    fpt_api_key: Optional[str] = None
    fpt_stt_url: str = "https://api.fpt.ai/hmi/asr/v1"
    google_project_id: Optional[str] = None
    google_key: Optional[str] = None
    stt_timeout: float = 90.0
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    llm_timeout: float = 60.0
    database_path: Optional[str] = None
    media_root: Optional[str] = None
    max_upload_bytes: int = 25 * 1024 * 1024
    default_user_id: str = "00000000-0000-0000-0000-000000000001"
    host: str = "127.0.0.1"
    port: int = 8080
    server_url: Optional[str] = None
    server_token: Optional[str] = None
    api_timeout: float = 180.0
    verify_ssl: bool = True
