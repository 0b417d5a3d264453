"""
Challenge Store
===============
Per-user challenge records kept in Redis with a TTL.

Keys
----
``verification:challenge:<userId>``
    JSON-encoded :class:`models.Challenge`, expires after the
    challenge TTL.  Absent and expired look the same.
``verification:claim:<userId>:<code>``
    Redemption claim.  Set with ``NX`` right before the side effect so
    that only one of several racing redemptions may proceed.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError
from redis.exceptions import RedisError

from errors import InternalError
from models import Challenge

logger = logging.getLogger(__name__)

CHALLENGE_KEY_PREFIX = "verification:challenge:"
CLAIM_KEY_PREFIX = "verification:claim:"


class ChallengeStore:
    """
    Lifecycle of a user's challenge against an async Redis client.

    *redis* is anything exposing ``get``, ``set(name, value, ex=, nx=)``
    and ``delete`` coroutines with ``decode_responses=True`` semantics.
    """

    def __init__(self, redis, ttl_seconds: int = 600):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _challenge_key(user_id: str) -> str:
        return f"{CHALLENGE_KEY_PREFIX}{user_id}"

    @staticmethod
    def _claim_key(user_id: str, code: str) -> str:
        return f"{CLAIM_KEY_PREFIX}{user_id}:{code}"

    async def get(self, user_id: str) -> Challenge | None:
        """Fetch the live challenge for *user_id*; does not touch the TTL."""
        try:
            raw = await self.redis.get(self._challenge_key(user_id))
        except RedisError as exc:
            raise InternalError("challenge store read failed") from exc

        if raw is None:
            return None
        try:
            return Challenge.from_json(raw)
        except ValidationError as exc:
            # Only this service writes these keys.
            raise InternalError("stored challenge is corrupt") from exc

    async def get_or_create(self, user_id: str) -> Challenge:
        """
        Return the live challenge, creating one if none exists.

        Creation is a single ``SET NX EX``: when two issuances race, the
        loser re-reads and returns the winner's record, so an in-flight
        link is never invalidated.
        """
        existing = await self.get(user_id)
        if existing is not None:
            return existing

        challenge = Challenge.issue(user_id)
        try:
            created = await self.redis.set(
                self._challenge_key(user_id),
                challenge.to_json(),
                ex=self.ttl_seconds,
                nx=True,
            )
        except RedisError as exc:
            raise InternalError("challenge store write failed") from exc

        if created:
            logger.info("Issued new challenge for user %s", user_id)
            return challenge

        winner = await self.get(user_id)
        if winner is None:
            # Expired between our SET NX and the re-read; try once more.
            return await self.get_or_create(user_id)
        return winner

    async def consume(self, user_id: str) -> bool:
        """Delete the challenge.  Returns whether anything was deleted."""
        try:
            deleted = await self.redis.delete(self._challenge_key(user_id))
        except RedisError as exc:
            raise InternalError("challenge store delete failed") from exc
        return bool(deleted)

    async def claim(self, user_id: str, code: str) -> bool:
        """Take the single redemption slot for this challenge."""
        try:
            claimed = await self.redis.set(
                self._claim_key(user_id, code), "1", ex=self.ttl_seconds, nx=True
            )
        except RedisError as exc:
            raise InternalError("claim write failed") from exc
        return bool(claimed)

    async def release_claim(self, user_id: str, code: str) -> None:
        """Give the slot back after a failed side effect so the user may retry."""
        try:
            await self.redis.delete(self._claim_key(user_id, code))
        except RedisError:
            logger.exception("Failed to release redemption claim for user %s", user_id)
