import base64
import json
import subprocess

import httpx

from noteme import transcriber
from noteme.config import ConfigError
from noteme.models import Config
from noteme.transcriber import (
    AudioConversionError,
    AudioTooSmallError,
    EmptyTranscriptError,
    FPTBackend,
    GoogleBackend,
    MalformedResponseError,
    NoSpeechError,
    ProviderAPIError,
    ProviderHTTPError,
    ProviderRequestError,
    audio_config_for,
    build_backend,
    is_google_api_key,
)

FPT_URL = "https://api.fpt.ai/hmi/asr/v1"
API_KEY = "AIzaSy" + "x" * 33


def _audio(tmp_path, name="note.wav", size=4096):
    path = tmp_path / name
    path.write_bytes(b"\x01" * size)
    return path


def _recording_transport(handler, calls):
    def wrapped(request):
        calls.append(request)
        return handler(request)

    return httpx.MockTransport(wrapped)


def _fpt(handler, calls):
    return FPTBackend("secret", FPT_URL, transport=_recording_transport(handler, calls))


def test_fpt_rejects_small_file_without_network(tmp_path):
    calls = []
    backend = _fpt(lambda request: httpx.Response(200, json={}), calls)

    try:
        backend.transcribe(_audio(tmp_path, size=500))
    except AudioTooSmallError:
        pass
    else:
        raise AssertionError("Expected AudioTooSmallError")
    assert calls == []


def test_google_rejects_small_file_without_network(tmp_path):
    calls = []
    backend = GoogleBackend(
        api_key=API_KEY, transport=_recording_transport(lambda r: httpx.Response(200), calls)
    )

    try:
        backend.transcribe(_audio(tmp_path, name="note.m4a", size=500))
    except AudioTooSmallError:
        pass
    else:
        raise AssertionError("Expected AudioTooSmallError")
    assert calls == []


def test_fpt_sends_raw_audio_with_header_key(tmp_path):
    calls = []

    def handler(request):
        return httpx.Response(
            200, json={"hypotheses": [{"utterance": " xin chào các bạn ", "confidence": 0.87}]}
        )

    backend = _fpt(handler, calls)
    audio = _audio(tmp_path)
    result = backend.transcribe(audio)

    assert result.text == "xin chào các bạn"
    assert result.confidence == 0.87
    assert result.provider == "fpt"
    request = calls[0]
    assert request.method == "POST"
    assert str(request.url) == FPT_URL
    assert request.headers["api-key"] == "secret"
    assert request.content == audio.read_bytes()


def test_fpt_error_kinds_are_distinct(tmp_path):
    audio = _audio(tmp_path)
    cases = [
        (lambda r: httpx.Response(401, text="unauthorised"), ProviderHTTPError),
        (lambda r: httpx.Response(200, text="not json"), MalformedResponseError),
        (lambda r: httpx.Response(200, json={"errorCode": 9, "message": "quota"}), ProviderAPIError),
        (lambda r: httpx.Response(200, json={"hypotheses": []}), NoSpeechError),
        (lambda r: httpx.Response(200, json={"hypotheses": [{"utterance": "   "}]}), EmptyTranscriptError),
    ]
    for handler, expected in cases:
        backend = _fpt(handler, [])
        try:
            backend.transcribe(audio)
        except expected as exc:
            assert type(exc) is expected
        else:
            raise AssertionError(f"Expected {expected.__name__}")


def test_fpt_http_error_keeps_status_and_body(tmp_path):
    backend = _fpt(lambda r: httpx.Response(503, text="busy"), [])
    try:
        backend.transcribe(_audio(tmp_path))
    except ProviderHTTPError as exc:
        assert exc.status_code == 503
        assert exc.raw_response == "busy"
    else:
        raise AssertionError("Expected ProviderHTTPError")


def test_fpt_transport_failure_is_request_error(tmp_path):
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    backend = _fpt(handler, [])
    try:
        backend.transcribe(_audio(tmp_path))
    except ProviderRequestError:
        pass
    else:
        raise AssertionError("Expected ProviderRequestError")


def test_fpt_requires_api_key():
    try:
        FPTBackend("", FPT_URL)
    except ConfigError:
        pass
    else:
        raise AssertionError("Expected ConfigError without an API key")


def test_google_api_key_goes_in_query(tmp_path):
    calls = []

    def handler(request):
        return httpx.Response(
            200, json={"results": [{"alternatives": [{"transcript": "chào buổi sáng", "confidence": 0.9}]}]}
        )

    backend = GoogleBackend(api_key=API_KEY, transport=_recording_transport(handler, calls))
    audio = _audio(tmp_path, name="memo.mp3")
    result = backend.transcribe(audio)

    assert result.text == "chào buổi sáng"
    assert result.provider == "google"
    request = calls[0]
    assert request.url.path == "/v1/speech:recognize"
    assert request.url.params["key"] == API_KEY
    assert "Authorization" not in request.headers
    body = json.loads(request.content)
    assert body["config"]["encoding"] == "MP3"
    assert body["config"]["sampleRateHertz"] == 44100
    assert body["config"]["languageCode"] == "vi-VN"
    assert base64.b64decode(body["audio"]["content"]) == audio.read_bytes()


def test_google_bearer_token_uses_project_endpoint(tmp_path):
    calls = []

    def handler(request):
        return httpx.Response(200, json={"results": [{"alternatives": [{"transcript": "ok"}]}]})

    backend = GoogleBackend(
        project_id="demo",
        token_source=lambda: "token-123",
        transport=_recording_transport(handler, calls),
    )
    backend.transcribe(_audio(tmp_path, name="memo.flac"))

    request = calls[0]
    assert request.url.path == "/v1/projects/demo:recognize"
    assert request.headers["Authorization"] == "Bearer token-123"
    assert "key" not in request.url.params


def test_google_error_payloads(tmp_path):
    audio = _audio(tmp_path)
    cases = [
        (lambda r: httpx.Response(400, json={"error": {"message": "bad config"}}), ProviderHTTPError),
        (lambda r: httpx.Response(200, json={"error": {"message": "denied"}}), ProviderAPIError),
        (lambda r: httpx.Response(200, json={}), NoSpeechError),
        (lambda r: httpx.Response(200, json={"results": [{"alternatives": []}]}), NoSpeechError),
    ]
    for handler, expected in cases:
        backend = GoogleBackend(api_key=API_KEY, transport=httpx.MockTransport(handler))
        try:
            backend.transcribe(audio)
        except expected:
            pass
        else:
            raise AssertionError(f"Expected {expected.__name__}")


def _fake_ffmpeg(created):
    def run(input_path, output_path):
        output_path.write_bytes(b"\x02" * 4096)
        created.append(output_path)

    return run


def test_transcoded_artifact_removed_after_success(tmp_path, monkeypatch):
    created = []
    monkeypatch.setattr(transcriber, "_run_ffmpeg", _fake_ffmpeg(created))
    calls = []

    def handler(request):
        return httpx.Response(200, json={"results": [{"alternatives": [{"transcript": "xong"}]}]})

    backend = GoogleBackend(api_key=API_KEY, transport=_recording_transport(handler, calls))
    result = backend.transcribe(_audio(tmp_path, name="memo.m4a"))

    assert result.text == "xong"
    assert created and created[0].name == "memo.m4a.converted.wav"
    assert not created[0].exists()
    body = json.loads(calls[0].content)
    assert body["config"]["encoding"] == "LINEAR16"
    assert body["config"]["sampleRateHertz"] == 44100


def test_transcoded_artifact_removed_after_failure(tmp_path, monkeypatch):
    created = []
    monkeypatch.setattr(transcriber, "_run_ffmpeg", _fake_ffmpeg(created))
    backend = GoogleBackend(
        api_key=API_KEY, transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom"))
    )

    try:
        backend.transcribe(_audio(tmp_path, name="memo.aac"))
    except ProviderHTTPError:
        pass
    else:
        raise AssertionError("Expected ProviderHTTPError")
    assert created
    assert not created[0].exists()


def test_ffmpeg_failure_is_conversion_error(tmp_path, monkeypatch):
    def failing(input_path, output_path):
        output_path.write_bytes(b"partial")
        raise subprocess.CalledProcessError(1, ["ffmpeg"], stderr=b"invalid data")

    monkeypatch.setattr(transcriber, "_run_ffmpeg", failing)
    calls = []
    backend = GoogleBackend(
        api_key=API_KEY, transport=_recording_transport(lambda r: httpx.Response(200), calls)
    )
    audio = _audio(tmp_path, name="memo.m4a")

    try:
        backend.transcribe(audio)
    except AudioConversionError as exc:
        assert "invalid data" in str(exc)
    else:
        raise AssertionError("Expected AudioConversionError")
    assert calls == []
    assert not (tmp_path / "memo.m4a.converted.wav").exists()


def test_audio_config_table():
    assert audio_config_for(".wav") == ("LINEAR16", 44100)
    assert audio_config_for(".OGG") == ("OGG_OPUS", 48000)
    assert audio_config_for(".flac") == ("FLAC", 44100)
    assert audio_config_for(".webm") == ("LINEAR16", 16000)


def test_api_key_detection():
    assert is_google_api_key(API_KEY)
    assert not is_google_api_key(API_KEY[:-1])
    assert not is_google_api_key("/path/to/key.json")


def test_build_backend_selects_provider():
    fpt = build_backend(Config(stt_provider="fpt", fpt_api_key="secret"))
    assert isinstance(fpt, FPTBackend)

    google = build_backend(Config(stt_provider="google", google_key=API_KEY))
    assert isinstance(google, GoogleBackend)
    assert google.uses_api_key


def test_build_backend_rejects_bad_configuration():
    for cfg in (
        Config(stt_provider="fpt", fpt_api_key=None),
        Config(stt_provider="whisper"),
        Config(stt_provider="google", google_key="/missing.json", google_project_id=None),
    ):
        try:
            build_backend(cfg)
        except ConfigError:
            pass
        else:
            raise AssertionError(f"Expected ConfigError for {cfg.stt_provider}")
