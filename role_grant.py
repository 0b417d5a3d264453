"""
Role grant through the Discord REST API.

``PUT /guilds/{guild}/members/{user}/roles/{role}`` is idempotent on
Discord's side: granting a role the member already has is a no-op 204.
"""

from __future__ import annotations

import logging

import httpx

from errors import InternalError

logger = logging.getLogger(__name__)


class DiscordRoleGranter:
    def __init__(
        self,
        client: httpx.AsyncClient,
        bot_token: str,
        guild_id: str,
        role_id: str,
        api_base: str = "https://discord.com/api/v10",
        timeout: float = 5.0,
    ):
        self.client = client
        self.bot_token = bot_token
        self.guild_id = guild_id
        self.role_id = role_id
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    async def grant(self, user_id: str) -> None:
        """Add the configured role to *user_id*; raise InternalError unless it applied."""
        if not (self.bot_token and self.guild_id and self.role_id):
            raise InternalError("BOT_TOKEN, GUILD_ID and ROLE_ID must be configured")

        url = (
            f"{self.api_base}/guilds/{self.guild_id}"
            f"/members/{user_id}/roles/{self.role_id}"
        )
        try:
            resp = await self.client.put(
                url,
                headers={
                    "Authorization": f"Bot {self.bot_token}",
                    "X-Audit-Log-Reason": "Completed verification",
                },
                timeout=self.timeout,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise InternalError(f"role grant request failed: {exc!r}") from exc

        if resp.status_code == 404:
            raise InternalError(f"user {user_id} is not a member of guild {self.guild_id}")
        if not resp.is_success:
            raise InternalError(f"role grant returned status {resp.status_code}")

        logger.info("Granted role %s to user %s", self.role_id, user_id)
