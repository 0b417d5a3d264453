"""
Challenge Issuance Flow.

Builds the redemption link a user opens to complete verification:

    {PUBLIC_URL}/verify?c=<code>&m=<bundle>
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlencode

from challenge_store import ChallengeStore
from models import Challenge
from payload_codec import encode_bundle

VERIFY_PATH = "/verify"


@dataclass
class IssuedLink:
    url: str
    challenge: Challenge


def build_redemption_link(public_url: str, challenge: Challenge) -> str:
    # The bundle is standard base64, so '+', '/' and '=' get percent-encoded.
    query = urlencode(
        {"c": challenge.code, "m": encode_bundle(challenge.metadata, challenge.user_id)}
    )
    return f"{public_url.rstrip('/')}{VERIFY_PATH}?{query}"


class IssuanceFlow:
    def __init__(self, store: ChallengeStore, public_url: str):
        self.store = store
        self.public_url = public_url

    async def issue(self, user_id: str) -> IssuedLink:
        """Reuse the user's live challenge or create one, and link to it."""
        challenge = await self.store.get_or_create(user_id)
        return IssuedLink(
            url=build_redemption_link(self.public_url, challenge),
            challenge=challenge,
        )
