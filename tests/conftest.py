"""
Shared pytest fixtures.

Provides:
- FakeRedis: in-memory stand-in for the async Redis client, with a
  clock that tests advance to expire keys
- Stub captcha verifier and role granter
- Builders for valid redemption bodies
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from redis.exceptions import RedisError

from captcha_verifier import CaptchaVerdict
from challenge_store import ChallengeStore
from config import Settings
from models import Challenge
from orchestrator import VerificationOrchestrator
from payload_codec import encrypt_proof


class FakeRedis:
    """The slice of ``redis.asyncio.Redis`` the service uses."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expires_at: dict[str, float] = {}
        self.now = 0.0
        self.error: Exception | None = None

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _check(self) -> None:
        if self.error is not None:
            raise self.error

    def _alive(self, key: str) -> bool:
        deadline = self.expires_at.get(key)
        if deadline is not None and deadline <= self.now:
            self.data.pop(key, None)
            self.expires_at.pop(key, None)
        return key in self.data

    async def get(self, key: str) -> str | None:
        self._check()
        return self.data[key] if self._alive(key) else None

    async def set(self, key: str, value: str, ex: int | None = None, nx: bool = False):
        self._check()
        if nx and self._alive(key):
            return None
        self.data[key] = value
        if ex is not None:
            self.expires_at[key] = self.now + ex
        else:
            self.expires_at.pop(key, None)
        return True

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        if not self._alive(key):
            return False
        self.expires_at[key] = self.now + seconds
        return True

    async def ttl(self, key: str) -> int:
        if not self._alive(key):
            return -2
        deadline = self.expires_at.get(key)
        return -1 if deadline is None else int(deadline - self.now)

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self._alive(key):
                del self.data[key]
                self.expires_at.pop(key, None)
                removed += 1
        return removed

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        pass


class StubCaptcha:
    def __init__(self, success: bool = True, delay: float = 0.0, error: Exception | None = None):
        self.success = success
        self.delay = delay
        self.error = error
        self.calls: list[tuple[str, str, str, str]] = []

    async def verify(self, token: str, ekey: str, remote_ip: str, site_key: str) -> CaptchaVerdict:
        self.calls.append((token, ekey, remote_ip, site_key))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return CaptchaVerdict(success=self.success)


class StubGranter:
    def __init__(self, delay: float = 0.0, error: Exception | None = None):
        self.delay = delay
        self.error = error
        self.granted: list[str] = []

    async def grant(self, user_id: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.granted.append(user_id)


def proof_for(challenge: Challenge, **overrides: Any) -> str:
    fields = {"token": "t", "ekey": "e", "code": challenge.code, "confident": 0.9}
    fields.update(overrides)
    return encrypt_proof(fields, challenge.metadata.token_key)


def redemption_body(challenge: Challenge, payload: str | None = None, **metadata: Any) -> dict[str, Any]:
    """A body exactly as the verification page posts it."""
    wire = challenge.metadata.to_wire()
    wire.update(metadata)
    return {
        "_0": proof_for(challenge) if payload is None else payload,
        "_1": wire,
        "_2": challenge.user_id,
        "_3": "site-key",
    }


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def store(fake_redis: FakeRedis) -> ChallengeStore:
    return ChallengeStore(fake_redis, ttl_seconds=600)


@pytest.fixture
def captcha() -> StubCaptcha:
    return StubCaptcha()


@pytest.fixture
def granter() -> StubGranter:
    return StubGranter()


@pytest.fixture
def orchestrator(store, captcha, granter) -> VerificationOrchestrator:
    return VerificationOrchestrator(
        store, captcha, granter, site_key="site-key", call_timeout=1.0, lock_timeout=1.0
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        public_url="https://verify.example.com",
        hcaptcha_secret_key="secret",
        hcaptcha_site_key="site-key",
        discord_public_key="",
    )


@pytest.fixture
def redis_error() -> RedisError:
    return RedisError("connection refused")
