"""Bot-check proxy for the external token verification service.

The browser obtains a challenge token and posts it to the gateway; the
gateway forwards it here together with the caller's IP and the configured
secret. The upstream answer is reduced to ``success`` plus a list of error
codes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from roomrelay.config import TURNSTILE_VERIFY_URL
from roomrelay.room.errors import VerificationUpstreamFailure

logger = logging.getLogger(__name__)

MISSING_SECRET = "missing-input-secret"
MISSING_TOKEN = "missing-input-response"
UPSTREAM_ERROR = "upstream-error"


@dataclass
class VerificationResult:
    success: bool
    errors: list[str] = field(default_factory=list)


class TokenVerifier:
    """Client for a siteverify-style endpoint."""

    def __init__(
        self,
        secret: str,
        url: str = TURNSTILE_VERIFY_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._secret = secret
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def siteverify(self, token: str, remote_ip: Optional[str] = None) -> VerificationResult:
        """Call the upstream service. Raises :class:`VerificationUpstreamFailure`."""
        data = {"secret": self._secret, "response": token}
        if remote_ip:
            data["remoteip"] = remote_ip

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self._url, data=data)
                resp.raise_for_status()
                body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise VerificationUpstreamFailure(str(exc)) from exc

        if not isinstance(body, dict):
            raise VerificationUpstreamFailure(f"Unexpected response body: {body!r}")
        errors = body.get("error-codes") or []
        return VerificationResult(
            success=bool(body.get("success", False)),
            errors=[str(e) for e in errors] if isinstance(errors, list) else [str(errors)],
        )

    async def verify(self, token: str, remote_ip: Optional[str] = None) -> VerificationResult:
        """Like :meth:`siteverify` but never raises."""
        if not self._secret:
            return VerificationResult(success=False, errors=[MISSING_SECRET])
        if not token:
            return VerificationResult(success=False, errors=[MISSING_TOKEN])
        try:
            return await self.siteverify(token, remote_ip)
        except VerificationUpstreamFailure as exc:
            logger.warning("Token verification failed upstream: %s", exc)
            return VerificationResult(success=False, errors=[UPSTREAM_ERROR])
