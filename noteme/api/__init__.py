"""FastAPI application for the noteme recording service."""

from __future__ import annotations

import logging
import shutil
import wave
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import (
    APIRouter,
    FastAPI,
    File,
    Header,
    HTTPException,
    Query,
    Request,
    UploadFile,
    status,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..analyzer import Analyzer
from ..cleaner import TranscriptCleaner
from ..config import APP_DIR, ConfigError, load_config
from ..llm import OpenAIChatModel
from ..models import AnalysisResult, Config, DurableRecord, Recording
from ..pipeline import (
    ConflictError,
    DurableStoreUnavailable,
    InvalidInputError,
    NotFoundError,
    PipelineError,
    RecordingService,
    UpstreamError,
    new_recording_id,
)
from ..recordings import AnalysisCache, RecordingStore
from ..storage import DurableStore
from ..sync import DurableSync
from ..transcriber import TranscriptionBackend, build_backend

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
DEFAULT_MEDIA_ROOT = APP_DIR / "media"
ALLOWED_EXTENSIONS = {".m4a", ".mp3", ".wav", ".aac", ".ogg", ".caf", ".aiff", ".aif", ".flac"}

ERROR_STATUS = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    InvalidInputError: status.HTTP_400_BAD_REQUEST,
    UpstreamError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    DurableStoreUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class HealthResponse(BaseModel):
    status: str = "ok"
    stt_provider: str
    stt_available: bool
    durable_store: bool


class RecordingPayload(BaseModel):
    recording_id: str
    status: str
    duration: int = 0
    size: int = 0
    transcript: str = ""
    confidence: float = 0.0
    error: str = ""
    created_at: datetime


class UploadResponse(BaseModel):
    recording_id: str
    status: str
    duration: int = 0
    size: int = 0
    created_at: datetime


class ProcessResponse(BaseModel):
    recording_id: str
    status: str
    transcript: str
    confidence: float
    cached: bool = False


class StatusResponse(BaseModel):
    recording_id: str
    status: str
    error: str = ""


class AnalysisPayload(BaseModel):
    context: str
    summary: List[str] = Field(default_factory=list)
    action_items: List[str] = Field(default_factory=list)
    key_points: List[str] = Field(default_factory=list)
    zalo_brief: str = ""


class AnalysisResponse(BaseModel):
    recording_id: str
    analysis: AnalysisPayload
    cached: bool = False


class AskRequest(BaseModel):
    question: str = ""


class AskResponse(BaseModel):
    question: str
    answer: str
    recordings_used: int


class TitleUpdate(BaseModel):
    title: str = ""


class DurablePayload(BaseModel):
    id: str
    user_id: str
    audio_url: str
    audio_format: Optional[str] = None
    audio_duration_ms: Optional[int] = None
    audio_size_bytes: Optional[int] = None
    stt_provider: str
    language: Optional[str] = None
    model_version: Optional[str] = None
    title: Optional[str] = None
    transcript: Optional[str] = None
    confidence: Optional[float] = None
    status: str
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class HistoryResponse(BaseModel):
    items: List[DurablePayload]
    limit: int
    offset: int


def _recording_payload(recording: Recording) -> RecordingPayload:
    return RecordingPayload(
        recording_id=recording.id,
        status=recording.status,
        duration=recording.duration_seconds,
        size=recording.size_bytes,
        transcript=recording.transcript,
        confidence=recording.confidence,
        error=recording.error_message,
        created_at=recording.created_at,
    )


def _analysis_payload(result: AnalysisResult) -> AnalysisPayload:
    return AnalysisPayload(**result.to_dict())


def _durable_payload(record: DurableRecord) -> DurablePayload:
    return DurablePayload(
        id=record.id,
        user_id=record.user_id,
        audio_url=record.audio_url,
        audio_format=record.audio_format,
        audio_duration_ms=record.audio_duration_ms,
        audio_size_bytes=record.audio_size_bytes,
        stt_provider=record.stt_provider,
        language=record.language,
        model_version=record.model_version,
        title=record.title,
        transcript=record.transcript,
        confidence=record.confidence,
        status=record.status,
        error_message=record.error_message,
        processing_time_ms=record.processing_time_ms,
        metadata=record.metadata,
        created_at=record.created_at,
    )


def wav_duration(path: Path) -> int:
    """Return the duration of a WAV file in whole seconds, or 0 when unknown."""

    if path.suffix.lower() != ".wav":
        return 0
    try:
        with wave.open(str(path), "rb") as handle:
            rate = handle.getframerate()
            if rate <= 0:
                return 0
            return int(handle.getnframes() / rate)
    except (wave.Error, EOFError, OSError):
        return 0


def build_service(config: Optional[Config] = None) -> RecordingService:
    """Compose the pipeline from configuration. The STT backend is built once."""

    config = config or load_config()

    backend: Optional[TranscriptionBackend] = None
    backend_error = ""
    try:
        backend = build_backend(config)
    except ConfigError as exc:
        backend_error = str(exc)
        logger.warning("STT provider not available: %s", exc)

    chat = OpenAIChatModel(config.openai_api_key, config.openai_model, timeout=config.llm_timeout)
    if not config.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set; cleaning falls back to raw text and analysis fails")

    durable: Optional[DurableStore] = None
    if config.database_path:
        durable = DurableStore(Path(config.database_path).expanduser())
        logger.info("Durable store enabled at %s", durable.db_path)
    else:
        logger.info("No database configured; running with in-memory storage only")

    return RecordingService(
        RecordingStore(),
        AnalysisCache(),
        backend,
        analyzer=Analyzer(chat),
        cleaner=TranscriptCleaner(chat),
        sync=DurableSync(durable),
        provider_name=config.stt_provider,
        backend_error=backend_error,
        default_user_id=config.default_user_id,
    )


def create_app(
    service: Optional[RecordingService] = None,
    config: Optional[Config] = None,
) -> FastAPI:
    config = config or load_config()
    service = service or build_service(config)
    media_root = Path(config.media_root).expanduser() if config.media_root else DEFAULT_MEDIA_ROOT
    max_upload_bytes = config.max_upload_bytes

    app = FastAPI(
        title="noteme API",
        description="Voice recording transcription and analysis backend.",
        version="0.1.0",
    )
    app.state.service = service
    app.state.media_root = media_root

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
        code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
        return JSONResponse(status_code=code, content={"detail": str(exc)})

    @app.get("/health", response_model=HealthResponse)
    async def healthcheck() -> HealthResponse:
        return HealthResponse(
            stt_provider=service.provider_name,
            stt_available=service.backend is not None,
            durable_store=service.sync.enabled,
        )

    router = APIRouter(prefix=API_PREFIX)

    @router.post("/recordings", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
    async def upload_recording(
        audio_file: Optional[UploadFile] = File(None),
        audio: Optional[UploadFile] = File(None),
        file: Optional[UploadFile] = File(None),
        x_user_id: Optional[str] = Header(None),
    ) -> UploadResponse:
        upload = audio_file or audio or file
        if upload is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="audio_file is required")

        suffix = Path(upload.filename or "").suffix.lower()
        if suffix not in ALLOWED_EXTENSIONS:
            supported = ", ".join(sorted(ext.lstrip(".") for ext in ALLOWED_EXTENSIONS))
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"unsupported audio format. Supported: {supported}",
            )

        media_root.mkdir(parents=True, exist_ok=True)
        recording_id = new_recording_id()
        destination = media_root / f"{recording_id}{suffix}"
        with destination.open("wb") as output:
            await run_in_threadpool(shutil.copyfileobj, upload.file, output)

        size = destination.stat().st_size
        if size > max_upload_bytes:
            destination.unlink(missing_ok=True)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"file size exceeds {max_upload_bytes // (1024 * 1024)}MB limit",
            )

        duration = wav_duration(destination)
        recording = await run_in_threadpool(
            service.create_recording,
            destination,
            size,
            duration,
            x_user_id,
            recording_id,
        )
        return UploadResponse(
            recording_id=recording.id,
            status=recording.status,
            duration=recording.duration_seconds,
            size=recording.size_bytes,
            created_at=recording.created_at,
        )

    @router.post("/process/{recording_id}", response_model=ProcessResponse)
    async def process_recording(
        recording_id: str, x_user_id: Optional[str] = Header(None)
    ) -> ProcessResponse:
        recording, cached = await run_in_threadpool(service.process, recording_id, x_user_id)
        return ProcessResponse(
            recording_id=recording.id,
            status=recording.status,
            transcript=recording.transcript,
            confidence=recording.confidence,
            cached=cached,
        )

    @router.get("/recordings/{recording_id}", response_model=RecordingPayload)
    async def get_recording(recording_id: str) -> RecordingPayload:
        return _recording_payload(service.get_recording(recording_id))

    @router.get("/recordings/{recording_id}/status", response_model=StatusResponse)
    async def get_recording_status(recording_id: str) -> StatusResponse:
        recording = service.get_status(recording_id)
        return StatusResponse(
            recording_id=recording.id,
            status=recording.status,
            error=recording.error_message,
        )

    @router.post("/ai/analyze/{recording_id}", response_model=AnalysisResponse)
    async def analyze_recording(recording_id: str) -> AnalysisResponse:
        result, cached = await run_in_threadpool(service.analyze, recording_id)
        return AnalysisResponse(
            recording_id=recording_id,
            analysis=_analysis_payload(result),
            cached=cached,
        )

    @router.get("/ai/analyze/{recording_id}", response_model=AnalysisResponse)
    async def get_analysis(recording_id: str) -> AnalysisResponse:
        result = service.get_analysis(recording_id)
        return AnalysisResponse(
            recording_id=recording_id,
            analysis=_analysis_payload(result),
            cached=True,
        )

    @router.post("/ai/ask", response_model=AskResponse)
    async def ask(payload: AskRequest) -> AskResponse:
        answer, used = await run_in_threadpool(service.ask, payload.question)
        return AskResponse(question=payload.question.strip(), answer=answer, recordings_used=used)

    @router.get("/stt/history", response_model=HistoryResponse)
    async def history(
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
        x_user_id: Optional[str] = Header(None),
    ) -> HistoryResponse:
        records = await run_in_threadpool(service.history, x_user_id, limit, offset)
        return HistoryResponse(items=[_durable_payload(r) for r in records], limit=limit, offset=offset)

    @router.get("/stt/search", response_model=HistoryResponse)
    async def search(
        q: str = Query(""),
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
        x_user_id: Optional[str] = Header(None),
    ) -> HistoryResponse:
        records = await run_in_threadpool(service.search, q, x_user_id, limit, offset)
        return HistoryResponse(items=[_durable_payload(r) for r in records], limit=limit, offset=offset)

    @router.get("/stt/{durable_id}", response_model=DurablePayload)
    async def get_durable(durable_id: str) -> DurablePayload:
        record = await run_in_threadpool(service.durable_record, durable_id)
        return _durable_payload(record)

    @router.patch("/stt/{durable_id}", response_model=DurablePayload)
    async def rename_durable(durable_id: str, payload: TitleUpdate) -> DurablePayload:
        record = await run_in_threadpool(service.rename, durable_id, payload.title)
        return _durable_payload(record)

    @router.delete("/stt/{durable_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_durable(durable_id: str) -> None:
        await run_in_threadpool(service.delete, durable_id)

    app.include_router(router)
    return app
