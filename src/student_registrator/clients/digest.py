"""HTTP Digest (RFC 7616) requests over an aiohttp session.

ISAPI terminals answer every unauthenticated request with ``401`` and a
``WWW-Authenticate: Digest ...`` challenge. The handshake itself is done by
``aiohttp.DigestAuthMiddleware``; this module maps its outcomes onto the
registrator's transport errors, each carrying the device host.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

import structlog
from aiohttp import (
    encode_basic_auth,
    ClientError,
    ClientResponse,
    ClientSession,
    DigestAuthMiddleware,
    FormData,
    hdrs,
)

from student_registrator.core.exceptions import (
    AuthChallengeMissingError,
    AuthChallengeParseError,
    NetworkError,
)

logger = structlog.get_logger(__name__)

# DigestAuthMiddleware reports unusable challenges as plain ClientErrors.
_CHALLENGE_ERROR_MARKERS = ("digest auth challenge", "malformed digest", "hash algorithm")


@dataclass
class DeviceResponse:
    """Fully-read HTTP response; the aiohttp response is released before this is returned."""

    status: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.body)


async def _read(resp: ClientResponse) -> DeviceResponse:
    body = await resp.read()
    return DeviceResponse(status=resp.status, body=body, headers=dict(resp.headers))


class DigestAuthClient:
    """Issues digest-authenticated requests against a single device."""

    def __init__(self, session: ClientSession, *, username: str, password: str):
        self._session = session
        self._username = username
        self._password = password
        self._digest = DigestAuthMiddleware(username, password)

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any | None = None,
    ) -> DeviceResponse:
        host = urlsplit(url).netloc
        try:
            async with self._session.request(
                method, url, json=json, middlewares=(self._digest,)
            ) as resp:
                result = await _read(resp)
        except (ClientError, asyncio.TimeoutError) as exc:
            if _is_challenge_error(exc):
                raise AuthChallengeParseError(host, str(exc)) from exc
            raise NetworkError(host, _describe(exc)) from exc

        if result.status == 401:
            challenges = _challenge_headers(result.headers)
            if not challenges:
                raise AuthChallengeMissingError(host, "401 without WWW-Authenticate header")
            if not any(value.strip().lower().startswith("digest") for value in challenges):
                raise AuthChallengeParseError(host, f"Not a Digest challenge: {challenges[0]!r}")
            logger.warning("digest auth rejected", host=host)
        return result

    async def basic_request(self, method: str, url: str, *, data: FormData) -> DeviceResponse:
        """One-shot request with HTTP Basic credentials.

        Only for multipart bodies: a ``FormData`` payload is consumed by the
        first send and cannot be replayed for the digest round trip.
        """
        host = urlsplit(url).netloc
        headers = {hdrs.AUTHORIZATION: encode_basic_auth(self._username, self._password)}
        try:
            async with self._session.request(method, url, data=data, headers=headers) as resp:
                return await _read(resp)
        except (ClientError, asyncio.TimeoutError) as exc:
            raise NetworkError(host, _describe(exc)) from exc


def _challenge_headers(headers: dict[str, str]) -> list[str]:
    return [value for key, value in headers.items() if key.lower() == "www-authenticate" and value]


def _is_challenge_error(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.TimeoutError) or not isinstance(exc, ClientError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _CHALLENGE_ERROR_MARKERS)


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "request timed out"
    return str(exc) or exc.__class__.__name__
