"""
Discord HTTP interactions
=========================
The chat-side entry point for issuance.

  * ``/create_menu`` (admins) posts the verification menu with a
    "Verify" button.
  * Pressing the button replies, visible only to the presser, with a
    link button pointing at the redemption URL.

Discord signs every interaction with Ed25519; requests that fail the
check must be answered with 401.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from errors import InternalError
from issuance import IssuanceFlow

logger = logging.getLogger(__name__)

# Interaction types
PING = 1
APPLICATION_COMMAND = 2
MESSAGE_COMPONENT = 3

# Response types
PONG = 1
CHANNEL_MESSAGE_WITH_SOURCE = 4

EPHEMERAL = 1 << 6
ADMINISTRATOR = 1 << 3
GUILD_CONTEXT = 0

MENU_COMMAND = "create_menu"
VERIFY_BUTTON_ID = "verify"
EMBED_COLOR = 3311075

COMMANDS: list[dict[str, Any]] = [
    {
        "name": MENU_COMMAND,
        "description": "Create a menu",
        "type": 1,
        "contexts": [GUILD_CONTEXT],
        "default_member_permissions": str(ADMINISTRATOR),
    }
]


def verify_signature(public_key_hex: str, signature_hex: str, timestamp: str, body: bytes) -> bool:
    """Check Discord's ``X-Signature-Ed25519`` over ``timestamp + body``."""
    if not public_key_hex or not signature_hex or not timestamp:
        return False
    try:
        verify_key = VerifyKey(bytes.fromhex(public_key_hex))
        verify_key.verify(timestamp.encode("utf-8") + body, bytes.fromhex(signature_hex))
    except (BadSignatureError, ValueError):
        return False
    return True


def _embed(author: str, description: str, footer: str) -> dict[str, Any]:
    return {
        "description": f"```\n{description}\n```",
        "color": EMBED_COLOR,
        "fields": [],
        "author": {"name": author},
        "footer": {"text": footer},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def menu_message() -> dict[str, Any]:
    return {
        "type": CHANNEL_MESSAGE_WITH_SOURCE,
        "data": {
            "embeds": [
                _embed(
                    "Verification required",
                    "Click the button below to verify yourself.",
                    "Verification takes place on a website outside Discord.",
                )
            ],
            "components": [
                {
                    "type": 1,
                    "components": [
                        {
                            "type": 2,
                            "style": 1,
                            "label": "Verify",
                            "custom_id": VERIFY_BUTTON_ID,
                            "emoji": {"name": "\N{LOCK}"},
                        }
                    ],
                }
            ],
        },
    }


def link_message(url: str, ttl_seconds: int) -> dict[str, Any]:
    minutes = max(1, ttl_seconds // 60)
    return {
        "type": CHANNEL_MESSAGE_WITH_SOURCE,
        "data": {
            "flags": EPHEMERAL,
            "embeds": [
                _embed(
                    "Follow the instructions below",
                    "Press the \"Verification\" button below to open the website.\n"
                    f"Complete verification within {minutes} minutes.",
                    "The website opens outside Discord and is protected by hCaptcha.",
                )
            ],
            "components": [
                {
                    "type": 1,
                    "components": [
                        {"type": 2, "style": 5, "label": "Verification", "url": url}
                    ],
                }
            ],
        },
    }


def error_message(text: str) -> dict[str, Any]:
    return {
        "type": CHANNEL_MESSAGE_WITH_SOURCE,
        "data": {"flags": EPHEMERAL, "content": text},
    }


def interaction_user_id(interaction: dict[str, Any]) -> str | None:
    """Guild interactions carry the user under ``member``; DMs under ``user``."""
    member = interaction.get("member")
    user = member.get("user") if isinstance(member, dict) else interaction.get("user")
    if isinstance(user, dict) and user.get("id"):
        return str(user["id"])
    return None


async def handle_interaction(
    interaction: dict[str, Any],
    issuance: IssuanceFlow,
    ttl_seconds: int,
) -> dict[str, Any] | None:
    """
    Build the response for an already signature-checked interaction.

    Returns ``None`` for interactions this service does not handle.
    """
    kind = interaction.get("type")
    data = interaction.get("data") or {}

    if kind == PING:
        return {"type": PONG}

    if kind == APPLICATION_COMMAND and data.get("name") == MENU_COMMAND:
        return menu_message()

    if kind == MESSAGE_COMPONENT and data.get("custom_id") == VERIFY_BUTTON_ID:
        user_id = interaction_user_id(interaction)
        if user_id is None:
            return error_message("Could not determine who pressed the button.")
        try:
            issued = await issuance.issue(user_id)
        except InternalError:
            logger.exception("Issuance failed for user %s", user_id)
            return error_message("Something went wrong. Please try again later.")
        return link_message(issued.url, ttl_seconds)

    return None


async def register_commands(
    client: httpx.AsyncClient,
    api_base: str,
    application_id: str,
    bot_token: str,
) -> None:
    """Overwrite the application's global commands with :data:`COMMANDS`."""
    resp = await client.put(
        f"{api_base.rstrip('/')}/applications/{application_id}/commands",
        json=COMMANDS,
        headers={"Authorization": f"Bot {bot_token}"},
    )
    resp.raise_for_status()
    logger.info("Registered %d commands", len(COMMANDS))
