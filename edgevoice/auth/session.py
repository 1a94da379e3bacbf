"""Upstream session cache with refresh-ahead and stale fallback."""
from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx
from pydantic import BaseModel, ValidationError

from ..config import UpstreamConfig
from ..errors import AuthFetchError
from .signer import new_trace_id, sign

logger = logging.getLogger("edgevoice.auth")


class TokenClaims(BaseModel):
    model_config = {"extra": "ignore"}

    exp: int


@dataclass(frozen=True)
class Session:
    endpoint: dict[str, Any] = field(repr=False)
    token: str = field(repr=False)
    expires_at: int

    @property
    def region(self) -> str:
        return str(self.endpoint.get("r", ""))

    def is_fresh(self, now: float, margin: float) -> bool:
        return now < self.expires_at - margin


def decode_token_claims(token: str) -> TokenClaims:
    """Decode the claims segment (second dot-delimited part) of ``token``."""
    parts = token.split(".")
    if len(parts) < 2 or not parts[1]:
        raise AuthFetchError("Malformed upstream token: missing claims segment")
    segment = parts[1]
    try:
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
        return TokenClaims.model_validate(json.loads(raw))
    except (binascii.Error, ValueError, ValidationError) as e:
        raise AuthFetchError(f"Malformed upstream token claims: {e}") from e


class SessionStore:
    """Holds the current session; replaced as a whole, never edited."""

    def __init__(self, session: Optional[Session] = None):
        self._session = session

    @property
    def current(self) -> Optional[Session]:
        return self._session

    def replace(self, session: Session) -> None:
        self._session = session


class SessionManager:
    def __init__(
        self,
        client: httpx.AsyncClient,
        config: UpstreamConfig | None = None,
        *,
        store: SessionStore | None = None,
        now_fn: Callable[[], float] | None = None,
    ):
        self._client = client
        self._config = config or UpstreamConfig()
        self._store = store or SessionStore()
        self._now_fn: Callable[[], float] = now_fn or time.time
        self._inflight: asyncio.Task[Session] | None = None

    @property
    def store(self) -> SessionStore:
        return self._store

    async def get_session(self) -> Session:
        cached = self._store.current
        now = self._now_fn()
        if cached and cached.is_fresh(now, self._config.refresh_margin):
            logger.debug(
                "session.cached expires_in=%.1fmin", (cached.expires_at - now) / 60
            )
            return cached

        try:
            return await self._join_refresh()
        except AuthFetchError as e:
            stale = self._store.current
            if stale is None:
                logger.error("session.refresh failed, no cached session: %s", e)
                raise
            logger.warning(
                "session.stale-fallback expires_in=%.1fmin error=%s",
                (stale.expires_at - self._now_fn()) / 60,
                e,
            )
            return stale

    async def _join_refresh(self) -> Session:
        # Concurrent callers share one credential fetch.
        if self._inflight is None:
            task = asyncio.ensure_future(self._refresh())
            task.add_done_callback(self._clear_inflight)
            self._inflight = task
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task[Session]) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _refresh(self) -> Session:
        url = self._config.endpoint_url
        trace_id = new_trace_id()
        headers = {
            "Accept-Language": self._config.accept_language,
            "X-ClientVersion": self._config.client_version,
            "X-UserId": self._config.user_id,
            "X-HomeGeographicRegion": self._config.home_region,
            "X-ClientTraceId": trace_id,
            "X-MT-Signature": sign(url, trace_id=trace_id),
            "User-Agent": self._config.user_agent,
            "Content-Type": "application/json; charset=utf-8",
        }

        try:
            resp = await self._client.post(
                url, headers=headers, content=b"", timeout=self._config.timeout
            )
        except httpx.HTTPError as e:
            raise AuthFetchError(f"Credential fetch failed: {e!r}") from e

        if not resp.is_success:
            raise AuthFetchError(
                f"Credential fetch failed: {resp.status_code}",
                upstream_status=resp.status_code,
            )

        try:
            endpoint = resp.json()
        except ValueError as e:
            raise AuthFetchError(f"Credential response is not JSON: {e}") from e
        token = endpoint.get("t") if isinstance(endpoint, dict) else None
        if not isinstance(token, str) or not token:
            raise AuthFetchError("Credential response has no token")

        claims = decode_token_claims(token)
        session = Session(endpoint=endpoint, token=token, expires_at=claims.exp)
        self._store.replace(session)
        logger.info(
            "session.refresh ok region=%s expires_in=%.1fmin",
            session.region,
            (session.expires_at - self._now_fn()) / 60,
        )
        return session
