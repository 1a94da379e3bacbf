"""Edge TTS synthesis: OpenAI-style request -> SSML call -> streamed audio."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import AsyncIterator, Awaitable, Callable, Protocol

import httpx

from ..auth.session import Session
from ..config import SynthesisConfig, UpstreamConfig
from ..errors import MalformedRequestError, UpstreamSynthesisError
from .ssml import build_ssml

logger = logging.getLogger("edgevoice.gateway")

DEFAULT_OUTPUT_FORMAT = "audio-24khz-48kbitrate-mono-mp3"

# response_format -> (X-Microsoft-OutputFormat, media type, file extension)
OUTPUT_FORMATS: dict[str, tuple[str, str, str]] = {
    "mp3": (DEFAULT_OUTPUT_FORMAT, "audio/mpeg", "mp3"),
    "opus": ("ogg-24khz-16bit-mono-opus", "audio/ogg", "opus"),
    "wav": ("riff-24khz-16bit-mono-pcm", "audio/wav", "wav"),
    "pcm": ("raw-24khz-16bit-mono-pcm", "audio/pcm", "pcm"),
}

_BY_OUTPUT_FORMAT = {upstream: (media, ext) for upstream, media, ext in OUTPUT_FORMATS.values()}


class _SessionProvider(Protocol):
    async def get_session(self) -> Session: ...


def rate_offset_percent(speed: float) -> int:
    """Map an OpenAI speed multiplier to a prosody rate offset (1.5 -> 50).

    Halves round away from zero (1.125 -> 13, 0.875 -> -13).
    """
    offset = Decimal((speed - 1) * 100)
    return int(offset.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def resolve_output_format(response_format: str | None) -> str:
    """Edge output format for ``response_format``; unmapped values get MP3."""
    key = (response_format or "mp3").lower()
    if key not in OUTPUT_FORMATS:
        return DEFAULT_OUTPUT_FORMAT
    return OUTPUT_FORMATS[key][0]


@dataclass(frozen=True)
class SynthesisRequest:
    text: str
    voice_name: str = "zh-CN-XiaoxiaoNeural"
    rate_offset_percent: int = 0
    output_format: str = DEFAULT_OUTPUT_FORMAT
    pitch_offset_percent: int = 0
    download: bool = False

    def __post_init__(self):
        if not self.text or not self.text.strip():
            raise MalformedRequestError("'input' must be a non-empty string", param="input")

    @classmethod
    def from_speech(
        cls,
        text: str,
        voice_name: str,
        speed: float = 1.0,
        response_format: str | None = "mp3",
        download: bool = False,
        pitch_offset_percent: int = 0,
    ) -> "SynthesisRequest":
        return cls(
            text=text,
            voice_name=voice_name,
            rate_offset_percent=rate_offset_percent(speed),
            output_format=resolve_output_format(response_format),
            pitch_offset_percent=pitch_offset_percent,
            download=download,
        )

    @property
    def media_type(self) -> str:
        return _BY_OUTPUT_FORMAT.get(self.output_format, ("audio/mpeg", "mp3"))[0]

    @property
    def file_extension(self) -> str:
        return _BY_OUTPUT_FORMAT.get(self.output_format, ("audio/mpeg", "mp3"))[1]


@dataclass
class AudioStream:
    chunks: AsyncIterator[bytes]
    media_type: str
    close: Callable[[], Awaitable[None]]
    headers: dict[str, str] = field(default_factory=dict)


async def _relay(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    finally:
        await response.aclose()


class SynthesisTranslator:
    def __init__(
        self,
        client: httpx.AsyncClient,
        sessions: _SessionProvider,
        upstream: UpstreamConfig | None = None,
        synthesis: SynthesisConfig | None = None,
    ):
        self._client = client
        self._sessions = sessions
        self._upstream = upstream or UpstreamConfig()
        self._synthesis = synthesis or SynthesisConfig()

    def endpoint_url(self, session: Session) -> str:
        return self._upstream.tts_url_template.format(region=session.region)

    async def synthesize(self, req: SynthesisRequest) -> AudioStream:
        """Issue one upstream synthesis call and return the body as a stream.

        Raises:
            AuthFetchError: No session could be obtained.
            UpstreamSynthesisError: Non-2xx upstream status or transport failure.
        """
        session = await self._sessions.get_session()
        url = self.endpoint_url(session)
        body = build_ssml(
            req.text,
            req.voice_name,
            req.rate_offset_percent,
            req.pitch_offset_percent,
            self._synthesis,
        )
        request = self._client.build_request(
            "POST",
            url,
            headers={
                "Authorization": session.token,
                "Content-Type": "application/ssml+xml",
                "User-Agent": self._upstream.user_agent,
                "X-Microsoft-OutputFormat": req.output_format,
            },
            content=body.encode("utf-8"),
            timeout=self._upstream.timeout,
        )

        logger.info(
            "tts.request region=%s voice=%s rate=%d%% format=%s chars=%d",
            session.region,
            req.voice_name,
            req.rate_offset_percent,
            req.output_format,
            len(req.text),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error("tts.transport-error error=%r", e)
            raise UpstreamSynthesisError(None, message=f"Edge TTS request failed: {e!r}") from e

        if not response.is_success:
            try:
                await response.aread()
                error_text = response.text
            finally:
                await response.aclose()
            logger.warning(
                "tts.upstream-error status=%d body=%s", response.status_code, error_text[:200]
            )
            raise UpstreamSynthesisError(response.status_code, error_text)

        headers: dict[str, str] = {}
        if req.download:
            headers["Content-Disposition"] = (
                f'attachment; filename="{uuid.uuid4().hex}.{req.file_extension}"'
            )
        return AudioStream(
            chunks=_relay(response),
            media_type=req.media_type,
            close=response.aclose,
            headers=headers,
        )
