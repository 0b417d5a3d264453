"""
Verification Orchestrator
=========================
Turns one redemption request into an authorization decision.

States::

    RECEIVED -> BUNDLE_VALIDATED -> CHALLENGE_MATCHED -> PROOF_DECRYPTED
             -> PROOF_CONSISTENT -> CAPTCHA_VERIFIED -> AUTHORIZED

Any guard failure jumps to REJECTED with no further work.  Nothing
before CAPTCHA_VERIFIED writes to the store, so a failed attempt leaves
the challenge live for another try until it expires.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Protocol

from pydantic import ValidationError

from captcha_verifier import CaptchaVerdict
from challenge_store import ChallengeStore
from errors import AuthenticationFailure, InternalError, MalformedRequest, VerificationError
from models import (
    PAYLOAD_VERSION_TYPE_ENCRYPTED,
    Challenge,
    ProofPayload,
    RedemptionRequest,
    VerificationMetadata,
)
from payload_codec import decrypt_proof

logger = logging.getLogger(__name__)


class RedemptionState(str, Enum):
    RECEIVED = "received"
    BUNDLE_VALIDATED = "bundle_validated"
    CHALLENGE_MATCHED = "challenge_matched"
    PROOF_DECRYPTED = "proof_decrypted"
    PROOF_CONSISTENT = "proof_consistent"
    CAPTCHA_VERIFIED = "captcha_verified"
    AUTHORIZED = "authorized"
    REJECTED = "rejected"


@dataclass
class RedemptionOutcome:
    state: RedemptionState
    user_id: str | None = None
    # Last state reached before a rejection.
    failed_after: RedemptionState | None = None
    error: VerificationError | None = None

    @property
    def authorized(self) -> bool:
        return self.state is RedemptionState.AUTHORIZED


class CaptchaVerifier(Protocol):
    async def verify(
        self, token: str, ekey: str, remote_ip: str, site_key: str
    ) -> CaptchaVerdict: ...


class RoleGranter(Protocol):
    async def grant(self, user_id: str) -> None: ...


# ──────────────────────────────────────────────
# Per-user single flight
# ──────────────────────────────────────────────

class KeyedLock:
    """An ``asyncio.Lock`` per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str, timeout: float | None = None) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with asyncio.timeout(timeout):
                await lock.acquire()
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


def _same(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def metadata_matches(sent: VerificationMetadata, stored: VerificationMetadata) -> bool:
    """All four fields must be identical; the key is compared in constant time."""
    return (
        sent.payload_version_type == stored.payload_version_type
        and sent.payload_version == stored.payload_version
        and sent.payload_version_seed == stored.payload_version_seed
        and _same(sent.token_key, stored.token_key)
    )


# ──────────────────────────────────────────────
# Orchestrator
# ──────────────────────────────────────────────

class VerificationOrchestrator:
    def __init__(
        self,
        store: ChallengeStore,
        captcha: CaptchaVerifier,
        granter: RoleGranter,
        site_key: str = "",
        min_confidence: float = 0.5,
        call_timeout: float = 10.0,
        lock_timeout: float = 30.0,
    ):
        self.store = store
        self.captcha = captcha
        self.granter = granter
        self.site_key = site_key
        self.min_confidence = min_confidence
        self.call_timeout = call_timeout
        self.lock_timeout = lock_timeout
        self._locks = KeyedLock()

    async def redeem(self, body: Any, client_address: str | None) -> RedemptionOutcome:
        """
        Run a redemption through every guard.

        Never raises for a rejected request; the returned outcome carries
        the error for logging.  The caller must not expose which guard
        failed.
        """
        state = RedemptionState.RECEIVED
        user_id: str | None = None

        def advance(new_state: RedemptionState) -> None:
            nonlocal state
            state = new_state

        try:
            # 1. Request shape.
            try:
                request = RedemptionRequest.model_validate(body)
            except ValidationError as exc:
                raise MalformedRequest("request body failed validation") from exc
            user_id = request.user_id
            advance(RedemptionState.BUNDLE_VALIDATED)

            try:
                async with self._locks.hold(user_id, self.lock_timeout):
                    await self._redeem_locked(request, client_address, advance)
            except TimeoutError as exc:
                raise InternalError("timed out waiting for redemption lock") from exc

        except VerificationError as exc:
            self._log_rejection(user_id, state, exc)
            return RedemptionOutcome(
                state=RedemptionState.REJECTED,
                user_id=user_id,
                failed_after=state,
                error=exc,
            )

        logger.info("User %s verified", user_id)
        return RedemptionOutcome(state=RedemptionState.AUTHORIZED, user_id=user_id)

    async def _redeem_locked(self, request: RedemptionRequest, client_address, advance) -> None:
        user_id = request.user_id

        # 2. A live challenge exists (absent and expired are the same).
        challenge = await self.store.get(user_id)
        if challenge is None:
            raise AuthenticationFailure("no such challenge or expired")

        # 3. Metadata echo matches what was issued.
        if not metadata_matches(request.metadata, challenge.metadata):
            raise AuthenticationFailure("metadata mismatch")
        advance(RedemptionState.CHALLENGE_MATCHED)

        # 4. Decrypt with the *stored* key.
        proof = self._open_proof(request, challenge)
        advance(RedemptionState.PROOF_DECRYPTED)

        # 5. Echoed code.  Codes are URL-safe base64, so no '+'/' ' folding.
        if not _same(proof.code, challenge.code):
            raise AuthenticationFailure("code mismatch")

        # 6. Device confidence.
        if proof.confident < self.min_confidence:
            raise AuthenticationFailure("low confidence")
        advance(RedemptionState.PROOF_CONSISTENT)

        # 7. Caller address.
        if not client_address:
            raise AuthenticationFailure("no client address")

        # 8. Third-party captcha verdict, always against the configured site key.
        if not self.site_key:
            raise InternalError("HCAPTCHA_SITE_KEY is not configured")
        if not _same(request.site_key, self.site_key):
            raise AuthenticationFailure("site key mismatch")
        verdict = await self._bounded(
            self.captcha.verify(proof.token, proof.ekey, client_address, self.site_key),
            "captcha verification",
        )
        if not verdict.success:
            raise AuthenticationFailure("captcha failed")
        advance(RedemptionState.CAPTCHA_VERIFIED)

        # Side effects from here on.  The claim keeps a second process
        # from granting in parallel; the grant itself is idempotent.
        if not await self.store.claim(user_id, challenge.code):
            raise AuthenticationFailure("challenge is already being redeemed")

        # 9. Authorization side effect.
        try:
            await self._bounded(self.granter.grant(user_id), "role grant")
        except BaseException:
            await self.store.release_claim(user_id, challenge.code)
            raise

        # 10. Single use.
        await self.store.consume(user_id)

        # 11.
        advance(RedemptionState.AUTHORIZED)

    @staticmethod
    def _open_proof(request: RedemptionRequest, challenge: Challenge) -> ProofPayload:
        if challenge.metadata.payload_version_type != PAYLOAD_VERSION_TYPE_ENCRYPTED:
            # Variant 2 carries no proof; nothing can be checked, so refuse it.
            raise AuthenticationFailure("payload variant without proof is not accepted")
        return decrypt_proof(request.payload, challenge.metadata.token_key)

    async def _bounded(self, aw, what: str):
        try:
            async with asyncio.timeout(self.call_timeout):
                return await aw
        except TimeoutError as exc:
            raise InternalError(f"{what} timed out") from exc

    @staticmethod
    def _log_rejection(
        user_id: str | None, state: RedemptionState, exc: VerificationError
    ) -> None:
        if isinstance(exc, InternalError):
            logger.error(
                "Redemption for user %s failed after %s: %s (%s)",
                user_id, state.value, exc, exc.kind,
                exc_info=exc.__cause__ is not None,
            )
        else:
            logger.warning(
                "Redemption for user %s rejected after %s: %s (%s)",
                user_id, state.value, exc, exc.kind,
            )
