"""Tests for SSML building and the Edge synthesis call."""
import re

import httpx
import pytest

from edgevoice.auth.session import Session
from edgevoice.config import SynthesisConfig
from edgevoice.errors import AuthFetchError, MalformedRequestError, UpstreamSynthesisError
from edgevoice.gateway.ssml import build_ssml
from edgevoice.gateway.translator import (
    DEFAULT_OUTPUT_FORMAT,
    SynthesisRequest,
    SynthesisTranslator,
    rate_offset_percent,
    resolve_output_format,
)

SESSION = Session(endpoint={"r": "eastasia", "t": "tok.en.sig"}, token="tok.en.sig", expires_at=2_000_000_000)


class StubSessions:
    def __init__(self, session: Session | None = SESSION, error: Exception | None = None):
        self._session = session
        self._error = error
        self.calls = 0

    async def get_session(self) -> Session:
        self.calls += 1
        if self._error:
            raise self._error
        assert self._session is not None
        return self._session


class TrackingStream(httpx.AsyncByteStream):
    def __init__(self):
        self.closed = False

    async def __aiter__(self):
        yield b"audio-chunk"

    async def aclose(self) -> None:
        self.closed = True


class SynthesisEndpoint:
    def __init__(self, status: int = 200, body: bytes = b"ID3-audio-bytes", error: Exception | None = None):
        self.status = status
        self.body = body
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error:
            raise self.error
        return httpx.Response(self.status, content=self.body)


def make_translator(endpoint: SynthesisEndpoint, sessions: StubSessions | None = None) -> SynthesisTranslator:
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    return SynthesisTranslator(client, sessions or StubSessions())


async def collect(chunks) -> bytes:
    return b"".join([chunk async for chunk in chunks])


@pytest.mark.parametrize(
    "speed,expected",
    [(1.0, 0), (1.5, 50), (0.5, -50), (2.0, 100), (1.25, 25), (0.75, -25),
     (1.125, 13), (0.875, -13), (1.625, 63)],
)
def test_rate_offset_percent(speed: float, expected: int):
    assert rate_offset_percent(speed) == expected


def test_resolve_output_format_defaults_to_mp3():
    assert resolve_output_format(None) == DEFAULT_OUTPUT_FORMAT
    assert resolve_output_format("MP3") == DEFAULT_OUTPUT_FORMAT
    assert resolve_output_format("opus") == "ogg-24khz-16bit-mono-opus"


@pytest.mark.parametrize("response_format", ["flac", "aac", "AAC"])
def test_resolve_output_format_falls_back_to_mp3_for_unmapped(response_format: str):
    assert resolve_output_format(response_format) == DEFAULT_OUTPUT_FORMAT


def test_from_speech_unmapped_format_is_mp3():
    req = SynthesisRequest.from_speech("hello", "zh-CN-XiaoxiaoNeural", response_format="flac")

    assert req.media_type == "audio/mpeg"
    assert req.file_extension == "mp3"


def test_synthesis_request_requires_text():
    with pytest.raises(MalformedRequestError):
        _ = SynthesisRequest(text="   ")


def test_from_speech_maps_openai_fields():
    req = SynthesisRequest.from_speech("hello", "en-US-JennyNeural", speed=1.5, response_format="wav")

    assert req.rate_offset_percent == 50
    assert req.output_format == "riff-24khz-16bit-mono-pcm"
    assert req.media_type == "audio/wav"
    assert req.file_extension == "wav"
    assert req.download is False


def test_build_ssml_structure():
    ssml = build_ssml("你好", "zh-CN-XiaoxiaoNeural", rate_percent=-50)

    assert ssml.startswith('<speak xmlns="http://www.w3.org/2001/10/synthesis"')
    assert 'xml:lang="zh-CN"' in ssml
    assert '<voice name="zh-CN-XiaoxiaoNeural">' in ssml
    assert '<mstts:express-as style="general" styledegree="1.0" role="default">' in ssml
    assert '<prosody rate="-50%" pitch="0%" volume="50">你好</prosody>' in ssml


def test_build_ssml_escapes_markup_in_text_and_voice():
    ssml = build_ssml('a < b & "c"', 'voice"x', config=SynthesisConfig(language="en-US"))

    assert "a &lt; b &amp; \"c\"" in ssml
    assert '<voice name=\'voice"x\'>' in ssml
    assert 'xml:lang="en-US"' in ssml


@pytest.mark.anyio
async def test_synthesize_posts_ssml_with_session_token():
    endpoint = SynthesisEndpoint(body=b"mp3-audio")
    sessions = StubSessions()
    translator = make_translator(endpoint, sessions)

    audio = await translator.synthesize(SynthesisRequest.from_speech("hello", "zh-CN-XiaoxiaoNeural"))

    assert await collect(audio.chunks) == b"mp3-audio"
    assert audio.media_type == "audio/mpeg"
    assert "Content-Disposition" not in audio.headers
    assert sessions.calls == 1

    request = endpoint.requests[0]
    assert str(request.url) == "https://eastasia.tts.speech.microsoft.com/cognitiveservices/v1"
    assert request.headers["Authorization"] == "tok.en.sig"
    assert request.headers["Content-Type"] == "application/ssml+xml"
    assert request.headers["User-Agent"] == "okhttp/4.5.0"
    assert request.headers["X-Microsoft-OutputFormat"] == DEFAULT_OUTPUT_FORMAT
    body = request.content.decode()
    assert 'rate="0%"' in body
    assert ">hello</prosody>" in body


@pytest.mark.anyio
async def test_synthesize_relays_full_body():
    payload = bytes(range(256)) * 4096
    translator = make_translator(SynthesisEndpoint(body=payload))

    audio = await translator.synthesize(SynthesisRequest(text="long"))

    assert await collect(audio.chunks) == payload


@pytest.mark.anyio
async def test_download_adds_attachment_filename():
    translator = make_translator(SynthesisEndpoint())

    audio = await translator.synthesize(SynthesisRequest(text="hello", download=True))

    disposition = audio.headers["Content-Disposition"]
    assert re.fullmatch(r'attachment; filename="[0-9a-f]{32}\.mp3"', disposition)


@pytest.mark.anyio
async def test_upstream_error_status_raises_with_body():
    translator = make_translator(SynthesisEndpoint(status=400, body=b"bad ssml"))

    with pytest.raises(UpstreamSynthesisError) as exc_info:
        _ = await translator.synthesize(SynthesisRequest(text="hello"))

    err = exc_info.value
    assert err.upstream_status == 400
    assert err.body == "bad ssml"
    assert err.code == "edge_tts_error"
    assert err.message == "Edge TTS API error: 400 bad ssml"


@pytest.mark.anyio
async def test_upstream_timeout_is_a_synthesis_failure():
    translator = make_translator(SynthesisEndpoint(error=httpx.ReadTimeout("timed out")))

    with pytest.raises(UpstreamSynthesisError) as exc_info:
        _ = await translator.synthesize(SynthesisRequest(text="hello"))

    assert exc_info.value.upstream_status is None


@pytest.mark.anyio
async def test_session_failure_propagates_without_upstream_call():
    endpoint = SynthesisEndpoint()
    sessions = StubSessions(session=None, error=AuthFetchError("no credential"))
    translator = make_translator(endpoint, sessions)

    with pytest.raises(AuthFetchError):
        _ = await translator.synthesize(SynthesisRequest(text="hello"))

    assert endpoint.requests == []


@pytest.mark.anyio
async def test_close_releases_upstream_response_when_body_is_never_read():
    stream = TrackingStream()
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, stream=stream)))
    translator = SynthesisTranslator(client, StubSessions())

    audio = await translator.synthesize(SynthesisRequest(text="hello"))
    assert stream.closed is False

    await audio.close()

    assert stream.closed is True


@pytest.mark.anyio
async def test_relay_closes_upstream_response_after_last_chunk():
    stream = TrackingStream()
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, stream=stream)))
    translator = SynthesisTranslator(client, StubSessions())

    audio = await translator.synthesize(SynthesisRequest(text="hello"))

    assert await collect(audio.chunks) == b"audio-chunk"
    assert stream.closed is True
