"""X-MT-Signature generation for the translator credential endpoint.

The signature is an HMAC-SHA256 over a canonical string built from the app
id, the percent-encoded target URL (scheme stripped), a lowercase RFC-1123
date and a 32-hex-character trace id. The same trace id must be sent as
``X-ClientTraceId`` alongside the signature.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import uuid
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Optional
from urllib.parse import quote

from ..errors import SigningError

APP_ID = "MSTranslatorAndroidApp"

_SECRET_B64 = "oik6PdDdMnOXemTbwvMn9de/h9lFnfBaCWbGMMZqqoSaQaqUOqjVGm5NqsmjcBI1x+sS9ugjB55HEJWRiFXYFw=="

# Characters encodeURIComponent leaves alone on top of quote()'s always-safe set.
_URI_COMPONENT_SAFE = "!*'()"


def new_trace_id() -> str:
    return uuid.uuid4().hex


def format_date(moment: Optional[datetime] = None) -> str:
    """Render ``moment`` as e.g. ``sat, 18 oct 2026 11:20:00 gmt``."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    rendered = format_datetime(moment.astimezone(timezone.utc), usegmt=True)
    return (rendered.replace("GMT", "").strip() + " GMT").lower()


def encode_url(url: str) -> str:
    _, sep, rest = url.partition("://")
    return quote(rest if sep else url, safe=_URI_COMPONENT_SAFE)


def canonical_string(app_id: str, encoded_url: str, formatted_date: str, trace_id: str) -> str:
    return f"{app_id}{encoded_url}{formatted_date}{trace_id}".lower()


def _secret() -> bytes:
    try:
        return base64.b64decode(_SECRET_B64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise SigningError(f"Cannot decode signing secret: {e}") from e


def sign(url: str, *, trace_id: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """Return the ``X-MT-Signature`` header value for ``url``.

    Args:
        url: Absolute URL of the credential endpoint.
        trace_id: Nonce to embed; a fresh one is generated when omitted.
        now: Signing time; defaults to the current UTC time.

    Raises:
        SigningError: If the secret or the HMAC primitive fails.
    """
    trace_id = trace_id or new_trace_id()
    formatted_date = format_date(now)
    payload = canonical_string(APP_ID, encode_url(url), formatted_date, trace_id)
    try:
        digest = hmac.new(_secret(), payload.encode("utf-8"), hashlib.sha256).digest()
    except (TypeError, ValueError) as e:
        raise SigningError(f"HMAC signing failed: {e}") from e
    signature = base64.b64encode(digest).decode("ascii")
    return f"{APP_ID}::{signature}::{formatted_date}::{trace_id}"
