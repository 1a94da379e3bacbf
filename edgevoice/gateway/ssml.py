"""SSML body for the Edge cognitiveservices endpoint."""
from __future__ import annotations

from xml.sax.saxutils import escape, quoteattr

from ..config import SynthesisConfig

_TEMPLATE = (
    '<speak xmlns="http://www.w3.org/2001/10/synthesis" '
    'xmlns:mstts="http://www.w3.org/2001/mstts" version="1.0" xml:lang={lang}>'
    "<voice name={voice}>"
    "<mstts:express-as style={style} styledegree={degree} role={role}>"
    "<prosody rate={rate} pitch={pitch} volume={volume}>{text}</prosody>"
    "</mstts:express-as>"
    "</voice>"
    "</speak>"
)


def build_ssml(
    text: str,
    voice_name: str,
    rate_percent: int = 0,
    pitch_percent: int = 0,
    config: SynthesisConfig | None = None,
) -> str:
    cfg = config or SynthesisConfig()
    return _TEMPLATE.format(
        lang=quoteattr(cfg.language),
        voice=quoteattr(voice_name),
        style=quoteattr(cfg.style),
        degree=quoteattr(cfg.style_degree),
        role=quoteattr(cfg.role),
        rate=quoteattr(f"{rate_percent}%"),
        pitch=quoteattr(f"{pitch_percent}%"),
        volume=quoteattr(cfg.volume),
        text=escape(text),
    )
