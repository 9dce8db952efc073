"""Speech-to-text backends."""

from __future__ import annotations

import base64
import json
import logging
import subprocess
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, Protocol, Tuple

import httpx

from .config import ConfigError
from .models import Config, TranscriptionResult

logger = logging.getLogger(__name__)

MIN_AUDIO_BYTES = 1000
DEFAULT_TIMEOUT = 90.0
PREVIEW_CHARS = 500

GOOGLE_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
GOOGLE_API_ROOT = "https://speech.googleapis.com/v1"
GOOGLE_LANGUAGE = "vi-VN"

# Extensions the Google REST API cannot decode; converted to WAV first.
TRANSCODE_EXTENSIONS = {".m4a", ".aac"}

GOOGLE_AUDIO_CONFIG = {
    ".wav": ("LINEAR16", 44100),
    ".aiff": ("LINEAR16", 44100),
    ".aif": ("LINEAR16", 44100),
    ".caf": ("LINEAR16", 44100),
    ".m4a": ("LINEAR16", 44100),
    ".aac": ("LINEAR16", 44100),
    ".mp3": ("MP3", 44100),
    ".ogg": ("OGG_OPUS", 48000),
    ".flac": ("FLAC", 44100),
}
DEFAULT_AUDIO_CONFIG = ("LINEAR16", 16000)


class TranscriptionError(RuntimeError):
    """Raised when a backend cannot produce a transcript.

    ``raw_response`` keeps the provider body, when there was one, for
    diagnosis.
    """

    def __init__(self, message: str, raw_response: str = "") -> None:
        super().__init__(message)
        self.raw_response = raw_response


class AudioTooSmallError(TranscriptionError):
    """The payload is below the minimum size and was not sent upstream."""


class AudioConversionError(TranscriptionError):
    """ffmpeg could not convert the input to linear PCM."""


class ProviderRequestError(TranscriptionError):
    """The request never produced an HTTP response (network, timeout)."""


class ProviderHTTPError(TranscriptionError):
    """The provider answered with a non-success status code."""

    def __init__(self, message: str, status_code: int, raw_response: str = "") -> None:
        super().__init__(message, raw_response)
        self.status_code = status_code


class MalformedResponseError(TranscriptionError):
    """The provider body was not the JSON document we expect."""


class ProviderAPIError(TranscriptionError):
    """The provider reported an error inside a parsed response."""


class NoSpeechError(TranscriptionError):
    """The provider returned no hypotheses, results or alternatives."""


class EmptyTranscriptError(TranscriptionError):
    """The best hypothesis was blank after trimming."""


class TranscriptionBackend(Protocol):
    """Common interface for transcription backends."""

    name: str

    def transcribe(self, audio_path: Path) -> TranscriptionResult:
        """Return the best transcript for ``audio_path``."""


def _preview(body: str) -> str:
    if len(body) <= PREVIEW_CHARS:
        return body
    return body[:PREVIEW_CHARS] + "..."


def read_audio(audio_path: Path) -> bytes:
    """Read an audio file, rejecting payloads too small to hold speech."""

    try:
        audio_bytes = Path(audio_path).read_bytes()
    except OSError as exc:
        raise TranscriptionError(f"failed to read audio file: {exc}") from exc
    if len(audio_bytes) < MIN_AUDIO_BYTES:
        raise AudioTooSmallError(
            f"audio file too small ({len(audio_bytes)} bytes), may be empty or corrupted"
        )
    return audio_bytes


def audio_config_for(extension: str) -> Tuple[str, int]:
    """Return the Google ``(encoding, sample_rate)`` pair for a file extension."""

    return GOOGLE_AUDIO_CONFIG.get(extension.lower(), DEFAULT_AUDIO_CONFIG)


def _run_ffmpeg(input_path: Path, output_path: Path) -> None:
    subprocess.run(
        [
            "ffmpeg",
            "-i", str(input_path),
            "-acodec", "pcm_s16le",
            "-ar", "44100",
            "-ac", "1",
            "-y", str(output_path),
        ],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        check=True,
    )


@contextmanager
def transcoded_wav(input_path: Path) -> Iterator[Path]:
    """Convert ``input_path`` to mono 16-bit WAV for the duration of the block.

    The converted file is deleted on every exit path, including failures
    raised from inside the block.
    """

    input_path = Path(input_path)
    output_path = input_path.with_name(input_path.name + ".converted.wav")
    logger.info("Converting %s to WAV: %s", input_path, output_path)
    try:
        try:
            _run_ffmpeg(input_path, output_path)
        except subprocess.CalledProcessError as exc:
            stderr = exc.stderr.decode("utf-8", errors="replace") if exc.stderr else "no stderr"
            raise AudioConversionError(f"failed to convert audio to WAV: {stderr}") from exc
        except OSError as exc:
            raise AudioConversionError(f"failed to run ffmpeg: {exc}") from exc

        if not output_path.exists():
            raise AudioConversionError("converted file not found")
        size = output_path.stat().st_size
        if size < MIN_AUDIO_BYTES:
            raise AudioConversionError(
                f"converted file too small ({size} bytes), conversion may have failed"
            )
        yield output_path
    finally:
        if output_path.exists():
            try:
                output_path.unlink()
            except OSError as exc:
                logger.warning("Failed to clean up converted file %s: %s", output_path, exc)
            else:
                logger.info("Cleaned up converted file %s", output_path)


class FPTBackend:
    """FPT.AI speech-to-text: raw audio body, key in the ``api-key`` header."""

    name = "fpt"

    def __init__(
        self,
        api_key: str,
        url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not api_key:
            raise ConfigError("FPT_AI_API_KEY is required when STT_PROVIDER=fpt")
        self._api_key = api_key
        self._url = url
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def transcribe(self, audio_path: Path) -> TranscriptionResult:
        started = time.monotonic()
        audio_path = Path(audio_path)
        audio_bytes = read_audio(audio_path)
        logger.info(
            "[FPT STT] Processing %s (%d bytes, extension %s)",
            audio_path, len(audio_bytes), audio_path.suffix,
        )

        try:
            response = self._client.post(
                self._url,
                content=audio_bytes,
                headers={"api-key": self._api_key, "Content-Type": "text/plain"},
            )
        except httpx.HTTPError as exc:
            raise ProviderRequestError(f"failed to send request to FPT.AI: {exc}") from exc

        body = response.text
        logger.debug("[FPT STT] Response preview: %s", _preview(body))

        if not response.is_success:
            raise ProviderHTTPError(
                f"FPT.AI API returned status {response.status_code}: {body}",
                response.status_code,
                body,
            )
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(f"failed to parse FPT.AI response: {exc}", body) from exc
        if not isinstance(payload, dict):
            raise MalformedResponseError("FPT.AI response is not a JSON object", body)

        error_code = payload.get("errorCode") or 0
        if error_code:
            raise ProviderAPIError(
                f"FPT.AI API error {error_code}: {payload.get('message', '')}", body
            )

        hypotheses = payload.get("hypotheses") or []
        if not hypotheses:
            raise NoSpeechError("no speech detected in audio", body)

        best = hypotheses[0]
        text = str(best.get("utterance") or "").strip()
        if not text:
            raise EmptyTranscriptError("empty transcript returned", body)
        confidence = float(best.get("confidence") or 0.0)

        logger.info(
            "[FPT STT] Transcription successful: confidence=%.2f length=%d elapsed=%.2fs",
            confidence, len(text), time.monotonic() - started,
        )
        return TranscriptionResult(text=text, confidence=confidence, provider=self.name, raw_response=body)


TokenSource = Callable[[], str]


class CredentialsTokenSource:
    """Refresh a google-auth credentials object and hand out bearer tokens."""

    def __init__(self, credentials) -> None:
        self._credentials = credentials
        self._lock = threading.Lock()

    def __call__(self) -> str:
        from google.auth.exceptions import GoogleAuthError
        from google.auth.transport.requests import Request

        with self._lock:
            if not self._credentials.valid:
                try:
                    self._credentials.refresh(Request())
                except GoogleAuthError as exc:
                    raise ProviderRequestError(f"failed to refresh Google credentials: {exc}") from exc
            return self._credentials.token


def is_google_api_key(key_data: str) -> bool:
    key_data = key_data.strip()
    return len(key_data) == 39 and key_data.startswith("AIzaSy")


def google_token_source(key_data: Optional[str]) -> TokenSource:
    """Build a token source from a JSON string, a key file, or default credentials."""

    import google.auth
    from google.auth.exceptions import GoogleAuthError
    from google.oauth2 import service_account

    key_data = (key_data or "").strip()
    try:
        if not key_data:
            credentials, _ = google.auth.default(scopes=[GOOGLE_SCOPE])
        elif key_data.startswith("{"):
            logger.info("[Google STT] Using service account JSON from configuration")
            credentials = service_account.Credentials.from_service_account_info(
                json.loads(key_data), scopes=[GOOGLE_SCOPE]
            )
        else:
            logger.info("[Google STT] Reading key file %s", key_data)
            credentials = service_account.Credentials.from_service_account_file(
                key_data, scopes=[GOOGLE_SCOPE]
            )
    except (GoogleAuthError, ValueError, OSError) as exc:
        raise ConfigError(f"Failed to load Google credentials: {exc}") from exc
    return CredentialsTokenSource(credentials)


class GoogleBackend:
    """Google Cloud Speech-to-Text REST backend.

    Authenticates either with an API key passed as the ``key`` query
    parameter or with an OAuth bearer token from ``token_source``.
    """

    name = "google"

    def __init__(
        self,
        project_id: Optional[str] = None,
        api_key: Optional[str] = None,
        token_source: Optional[TokenSource] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if api_key is None and token_source is None:
            raise ConfigError("Google STT needs an API key or a credentials token source")
        if api_key is None and not project_id:
            raise ConfigError("GOOGLE_STT_PROJECT_ID is required when using a service account")
        self._project_id = project_id
        self._api_key = api_key
        self._token_source = token_source
        self._client = httpx.Client(timeout=timeout, transport=transport)

    @property
    def uses_api_key(self) -> bool:
        return self._api_key is not None

    def _endpoint(self) -> Tuple[str, dict, dict]:
        if self._api_key is not None:
            return f"{GOOGLE_API_ROOT}/speech:recognize", {"key": self._api_key}, {}
        token = self._token_source()
        return (
            f"{GOOGLE_API_ROOT}/projects/{self._project_id}:recognize",
            {},
            {"Authorization": f"Bearer {token}"},
        )

    def transcribe(self, audio_path: Path) -> TranscriptionResult:
        audio_path = Path(audio_path)
        extension = audio_path.suffix.lower()
        logger.info("[Google STT] Processing %s (extension %s)", audio_path, extension)
        if extension in TRANSCODE_EXTENSIONS:
            read_audio(audio_path)
            with transcoded_wav(audio_path) as converted:
                return self._recognize(converted)
        return self._recognize(audio_path)

    def _recognize(self, audio_path: Path) -> TranscriptionResult:
        started = time.monotonic()
        audio_bytes = read_audio(audio_path)
        encoding, sample_rate = audio_config_for(audio_path.suffix)
        request_body = {
            "config": {
                "encoding": encoding,
                "sampleRateHertz": sample_rate,
                "languageCode": GOOGLE_LANGUAGE,
                "enableAutomaticPunctuation": True,
                "model": "latest_long",
                "useEnhanced": True,
            },
            "audio": {"content": base64.b64encode(audio_bytes).decode("ascii")},
        }

        try:
            url, params, headers = self._endpoint()
            response = self._client.post(url, params=params, headers=headers, json=request_body)
        except httpx.HTTPError as exc:
            raise ProviderRequestError(
                f"failed to send request to Google Speech-to-Text: {exc}"
            ) from exc

        body = response.text
        logger.debug("[Google STT] Response preview: %s", _preview(body))

        if not response.is_success:
            message = _google_error_message(body)
            if message:
                raise ProviderHTTPError(
                    f"Google Speech-to-Text API error: {message}", response.status_code, body
                )
            raise ProviderHTTPError(
                f"Google Speech-to-Text API returned status {response.status_code}: {body}",
                response.status_code,
                body,
            )

        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(
                f"failed to parse Google Speech-to-Text response: {exc}", body
            ) from exc
        if not isinstance(payload, dict):
            raise MalformedResponseError("Google Speech-to-Text response is not a JSON object", body)

        error = payload.get("error")
        if error:
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            raise ProviderAPIError(f"Google Speech-to-Text API error: {message}", body)

        results = payload.get("results") or []
        if not results:
            raise NoSpeechError("no speech detected in audio", body)
        alternatives = results[0].get("alternatives") or []
        if not alternatives:
            raise NoSpeechError("no transcript alternatives returned", body)

        best = alternatives[0]
        text = str(best.get("transcript") or "").strip()
        if not text:
            raise EmptyTranscriptError("empty transcript returned", body)
        confidence = float(best.get("confidence") or 0.0)

        logger.info(
            "[Google STT] Transcription successful: confidence=%.2f length=%d elapsed=%.2fs",
            confidence, len(text), time.monotonic() - started,
        )
        return TranscriptionResult(text=text, confidence=confidence, provider=self.name, raw_response=body)


def _google_error_message(body: str) -> str:
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return ""
    if not isinstance(payload, dict):
        return ""
    error = payload.get("error", payload)
    if isinstance(error, dict):
        return str(error.get("message") or "")
    return ""


def build_backend(config: Config) -> TranscriptionBackend:
    """Construct the configured backend. Called once at startup."""

    provider = (config.stt_provider or "fpt").lower()
    if provider == "fpt":
        logger.info("Creating FPT STT backend")
        return FPTBackend(config.fpt_api_key or "", config.fpt_stt_url, timeout=config.stt_timeout)

    if provider == "google":
        key_data = (config.google_key or "").strip()
        if is_google_api_key(key_data):
            logger.info("Creating Google STT backend with API key")
            return GoogleBackend(api_key=key_data, timeout=config.stt_timeout)
        if not config.google_project_id:
            raise ConfigError("GOOGLE_STT_PROJECT_ID is required when using a service account")
        logger.info("Creating Google STT backend for project %s", config.google_project_id)
        return GoogleBackend(
            project_id=config.google_project_id,
            token_source=google_token_source(key_data),
            timeout=config.stt_timeout,
        )

    raise ConfigError(f"Unsupported STT provider: {provider}. Supported: fpt, google")
