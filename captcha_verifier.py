"""
hCaptcha siteverify client.

Docs: https://docs.hcaptcha.com/#verify-the-user-response-server-side
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx

from errors import InternalError

logger = logging.getLogger(__name__)


@dataclass
class CaptchaVerdict:
    success: bool
    error_codes: list[str] = field(default_factory=list)


class HCaptchaVerifier:
    def __init__(
        self,
        client: httpx.AsyncClient,
        secret: str,
        site_key: str,
        verify_url: str = "https://api.hcaptcha.com/siteverify",
        timeout: float = 5.0,
    ):
        self.client = client
        self.secret = secret
        self.site_key = site_key
        self.verify_url = verify_url
        self.timeout = timeout

    async def verify(
        self,
        token: str,
        ekey: str,
        remote_ip: str,
        site_key: str,
    ) -> CaptchaVerdict:
        """
        Ask hCaptcha whether *token* is a valid solve.

        *ekey* is part of the widget output but has no siteverify field;
        it is accepted so callers can pass the widget result through
        unchanged.  The configured site key is always sent; a *site_key*
        that differs from it is a negative verdict without a request.

        Raises
        ------
        InternalError
            The API is unreachable, times out, or answers with something
            other than a JSON verdict.
        """
        if not (self.secret and self.site_key):
            raise InternalError("HCAPTCHA_SECRET_KEY and HCAPTCHA_SITE_KEY must be configured")
        if site_key != self.site_key:
            return CaptchaVerdict(success=False, error_codes=["sitekey-mismatch"])

        form = {
            "secret": self.secret,
            "response": token,
            "remoteip": remote_ip,
            "sitekey": self.site_key,
        }

        try:
            resp = await self.client.post(self.verify_url, data=form, timeout=self.timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise InternalError(f"hCaptcha request failed: {exc!r}") from exc

        if resp.status_code != 200:
            raise InternalError(f"hCaptcha returned status {resp.status_code}")

        try:
            payload = resp.json()
        except ValueError as exc:
            raise InternalError("hCaptcha returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise InternalError("hCaptcha returned unexpected payload")

        verdict = CaptchaVerdict(
            success=payload.get("success") is True,
            error_codes=list(payload.get("error-codes") or []),
        )
        if not verdict.success:
            logger.info("hCaptcha rejected token: %s", verdict.error_codes)
        return verdict
