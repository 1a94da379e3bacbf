"""EdgeVoice — OpenAI-compatible speech endpoint backed by Edge TTS."""
from __future__ import annotations
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional
import json
import logging
import time

import httpx
from pydantic import BaseModel, Field, ValidationError

from .config import Settings
from .errors import GatewayError, InvalidApiKeyError, MalformedRequestError, UpstreamSynthesisError
from .auth.session import SessionManager
from .gateway.mapping import VoiceMapper
from .gateway.translator import SynthesisRequest, SynthesisTranslator

logger = logging.getLogger("edgevoice")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,HEAD,POST,OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, x-api-key",
    "Access-Control-Max-Age": "86400",
}


def _setup_logging(log_level: str = "info"):
    """Configure structured logging for edgevoice."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.setLevel(level)
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    handler.setFormatter(formatter)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


_settings: Settings | None = None
_client: httpx.AsyncClient | None = None
_sessions: SessionManager | None = None
_translator: SynthesisTranslator | None = None
_voices: VoiceMapper | None = None


def _load_settings() -> Settings:
    for path in ["edgevoice.yaml", "edgevoice.example.yaml"]:
        if Path(path).exists():
            return Settings.from_yaml(path)
    return Settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _settings, _client, _sessions, _translator, _voices
    _settings = _load_settings()
    _setup_logging(_settings.server.log_level)
    logger.info("EdgeVoice starting on port %s...", _settings.server.port)

    _client = httpx.AsyncClient(timeout=_settings.upstream.timeout)
    _sessions = SessionManager(_client, _settings.upstream)
    _translator = SynthesisTranslator(
        _client, _sessions, _settings.upstream, _settings.synthesis
    )
    _voices = VoiceMapper(_settings.voice_mapping, _settings.synthesis.default_voice)
    logger.info(
        "Gateway initialized (default_voice=%s, refresh_margin=%ds, api_key=%s)",
        _settings.synthesis.default_voice,
        _settings.upstream.refresh_margin,
        "on" if _settings.server.api_key else "off",
    )

    yield

    await _client.aclose()
    logger.info("EdgeVoice shutting down...")


app = FastAPI(title="EdgeVoice", version="0.1.0", lifespan=lifespan)


class SpeechRequest(BaseModel):
    model: str = "tts-1"
    input: str = Field(min_length=1)
    voice: Optional[str] = None
    response_format: Optional[str] = None
    speed: float = Field(default=1.0, ge=0.25, le=4.0)
    download: bool = False


@app.middleware("http")
async def add_cors_headers(request: Request, call_next):
    if request.method == "OPTIONS":
        return _preflight(request)
    response = await call_next(request)
    for key, value in CORS_HEADERS.items():
        response.headers.setdefault(key, value)
    return response


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def _preflight(request: Request) -> Response:
    return Response(
        status_code=204,
        headers={
            **CORS_HEADERS,
            "Access-Control-Allow-Headers": request.headers.get(
                "access-control-request-headers", "Authorization"
            ),
        },
    )


def _check_api_key(request: Request) -> None:
    if not _settings or not _settings.server.api_key:
        return
    auth = request.headers.get("authorization", "")
    api_key = auth[7:] if auth.startswith("Bearer ") else None
    if api_key != _settings.server.api_key:
        raise InvalidApiKeyError()


async def _parse_speech_request(request: Request) -> SpeechRequest:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedRequestError(f"Request body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise MalformedRequestError("Request body must be a JSON object")
    try:
        return SpeechRequest.model_validate(body)
    except ValidationError as e:
        first = e.errors()[0]
        param = ".".join(str(p) for p in first.get("loc", ())) or None
        raise MalformedRequestError(f"Invalid request: {first.get('msg')}", param=param) from e


@app.get("/health")
async def health():
    session = _sessions.store.current if _sessions else None
    response = {
        "status": "ok",
        "session": {
            "present": session is not None,
            "expires_in": int(session.expires_at - time.time()) if session else None,
        },
    }
    return response


@app.post("/v1/audio/speech")
async def audio_speech(request: Request):
    _check_api_key(request)
    body = await _parse_speech_request(request)

    if not _translator or not _voices or not _settings:
        return JSONResponse(
            status_code=503,
            content=UpstreamSynthesisError(None, message="Gateway not initialized").to_payload(),
        )

    req = SynthesisRequest.from_speech(
        body.input,
        _voices.map(body.voice),
        speed=body.speed,
        response_format=body.response_format or _settings.synthesis.default_format,
        download=body.download,
        pitch_offset_percent=_settings.synthesis.pitch,
    )

    try:
        audio = await _translator.synthesize(req)
    except GatewayError as e:
        logger.error("TTS failed | code=%s text_preview='%s' voice=%s: %s",
                     e.code, req.text[:50], req.voice_name, e.message)
        raise
    except Exception as e:
        logger.exception("TTS failed | text_preview='%s' voice=%s", req.text[:50], req.voice_name)
        raise UpstreamSynthesisError(None, message=str(e)) from e

    logger.info(
        "TTS OK | text_preview='%s' voice=%s rate=%d%% model=%s",
        req.text[:50], req.voice_name, req.rate_offset_percent, body.model,
    )
    return StreamingResponse(
        audio.chunks,
        media_type=audio.media_type,
        headers=audio.headers,
        background=BackgroundTask(audio.close),
    )
