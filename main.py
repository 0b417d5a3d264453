"""
Verification Gate Service
=========================
A FastAPI service that issues single-use verification challenges and
redeems them, exactly once, for a Discord role.

Flow:

  1. A member presses "Verify" in Discord -> ``POST /interactions``
     replies with ``/verify?c=<code>&m=<bundle>``.
  2. ``GET /verify`` serves the page that runs hCaptcha, scores the
     device and encrypts the proof under the challenge's token key.
  3. ``POST /api/verify`` decrypts and cross-checks the proof, asks
     hCaptcha for its verdict, grants the role and deletes the challenge.

API:
  GET  /verify        ->  verification page
  POST /api/verify    ->  { success, message } or 401 { message }
  POST /interactions  ->  Discord interaction responses
  GET  /api/health    ->  { status, store }

Security:
  - Proofs are decrypted with the key held server-side, never with the
    key echoed by the client.
  - Every rejection returns the same 401 body, whichever check failed.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from redis.exceptions import RedisError

from captcha_verifier import HCaptchaVerifier
from challenge_store import ChallengeStore
from config import Settings
from interactions import handle_interaction, register_commands, verify_signature
from issuance import IssuanceFlow
from orchestrator import CaptchaVerifier, RoleGranter, VerificationOrchestrator
from role_grant import DiscordRoleGranter

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).parent / "static"
VERIFY_PAGE = STATIC_DIR / "verify.html"
SITE_KEY_PLACEHOLDER = "__HCAPTCHA_SITE_KEY__"

INVALID_REQUEST = "Invalid request."
VERIFIED = "Verification complete."


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def client_address(request: Request, trust_forwarded_for: bool = False) -> str | None:
    """The caller's IP, optionally taken from the first ``X-Forwarded-For`` hop."""
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",", 1)[0].strip()
        if first:
            return first
    if request.client is None:
        return None
    return request.client.host or None


def create_app(
    settings: Settings | None = None,
    *,
    redis: Any = None,
    http_client: httpx.AsyncClient | None = None,
    captcha: CaptchaVerifier | None = None,
    granter: RoleGranter | None = None,
) -> FastAPI:
    """
    Build the application.

    Collaborators that are not injected are created in the lifespan
    from *settings* and closed on shutdown.
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store_client = redis
        if store_client is None:
            store_client = aioredis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=settings.http_timeout_seconds,
            )
        client = http_client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)

        store = ChallengeStore(store_client, ttl_seconds=settings.challenge_ttl_seconds)
        app.state.settings = settings
        app.state.redis = store_client
        app.state.store = store
        app.state.issuance = IssuanceFlow(store, settings.public_url)
        app.state.orchestrator = VerificationOrchestrator(
            store,
            captcha
            or HCaptchaVerifier(
                client,
                settings.hcaptcha_secret_key,
                settings.hcaptcha_site_key,
                verify_url=settings.hcaptcha_verify_url,
                timeout=settings.http_timeout_seconds,
            ),
            granter
            or DiscordRoleGranter(
                client,
                settings.bot_token,
                settings.guild_id,
                settings.role_id,
                api_base=settings.discord_api_base,
                timeout=settings.http_timeout_seconds,
            ),
            site_key=settings.hcaptcha_site_key,
            min_confidence=settings.min_confidence,
            call_timeout=settings.http_timeout_seconds + 1.0,
            lock_timeout=settings.redeem_lock_seconds,
        )

        if settings.register_commands:
            try:
                await register_commands(
                    client, settings.discord_api_base, settings.application_id, settings.bot_token
                )
            except httpx.HTTPError:
                logger.exception("Command registration failed")

        try:
            yield
        finally:
            if http_client is None:
                await client.aclose()
            if redis is None:
                await store_client.aclose()

    app = FastAPI(
        title="Verification Gate",
        description="Single-use verification challenges redeemed for a Discord role.",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.public_url],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # ──────────────────────────────────────────────
    # Static files & pages
    # ──────────────────────────────────────────────
    app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")

    @app.get("/", response_class=HTMLResponse)
    async def root():
        """Service info page."""
        return (
            "<!DOCTYPE html>"
            '<html lang="en"><head>'
            '<meta charset="UTF-8" />'
            "<title>Verification Gate</title>"
            "<style>"
            "body { font-family: system-ui, sans-serif; max-width: 640px;"
            "       margin: 60px auto; padding: 0 20px; color: #333; }"
            "code { background: #f3f4f6; padding: 2px 6px; border-radius: 4px; }"
            "</style>"
            "</head><body>"
            "<h1>Verification Gate</h1>"
            "<p>This service is running.</p>"
            "<ul>"
            "<li><code>GET /verify?c=...&amp;m=...</code> - verification page</li>"
            "<li><code>POST /api/verify</code> - redeem a challenge</li>"
            "<li><code>POST /interactions</code> - Discord interactions endpoint</li>"
            "</ul>"
            "</body></html>"
        )

    @app.get("/verify", response_class=HTMLResponse)
    async def verify_page():
        """Serve the verification page with the hCaptcha site key filled in."""
        html = VERIFY_PAGE.read_text(encoding="utf-8")
        return html.replace(SITE_KEY_PLACEHOLDER, json.dumps(settings.hcaptcha_site_key))

    # ──────────────────────────────────────────────
    # API Endpoints
    # ──────────────────────────────────────────────

    @app.post("/api/verify")
    async def redeem(request: Request):
        """
        **POST /api/verify**

        Accepts JSON:

        ```json
        {
          "_0": "<base64 AES-GCM proof, or empty>",
          "_1": { "payloadVersionType": 1, "payloadVersion": 3,
                  "payloadVersionSeed": 123456, "tokenKey": "<base64>" },
          "_2": "<user id>",
          "_3": "<hCaptcha site key>"
        }
        ```

        Returns `{ "success": true, "message": ... }`, or 401 with
        `{ "message": "Invalid request." }` whatever the reason.
        """
        try:
            body = await request.json()
        except ValueError:
            body = None

        outcome = await app.state.orchestrator.redeem(
            body, client_address(request, settings.trust_forwarded_for)
        )
        if not outcome.authorized:
            return JSONResponse({"message": INVALID_REQUEST}, status_code=401)
        return {"success": True, "message": VERIFIED}

    @app.post("/interactions")
    async def interactions(request: Request):
        """**POST /interactions** - Discord interactions webhook."""
        raw = await request.body()
        if not verify_signature(
            settings.discord_public_key,
            request.headers.get("x-signature-ed25519", ""),
            request.headers.get("x-signature-timestamp", ""),
            raw,
        ):
            return JSONResponse({"error": "invalid request signature"}, status_code=401)

        try:
            interaction = json.loads(raw)
        except ValueError:
            return JSONResponse({"error": "invalid JSON"}, status_code=400)
        if not isinstance(interaction, dict):
            return JSONResponse({"error": "invalid interaction"}, status_code=400)

        response = await handle_interaction(
            interaction, app.state.issuance, settings.challenge_ttl_seconds
        )
        if response is None:
            return JSONResponse({"error": "unsupported interaction"}, status_code=400)
        return response

    @app.get("/api/health")
    async def health():
        """Liveness plus Session Store reachability."""
        store_ok = False
        try:
            store_ok = bool(await app.state.redis.ping())
        except (RedisError, OSError):
            logger.warning("Health check could not reach the challenge store")
        return {"status": "ok", "store": "connected" if store_ok else "unreachable"}

    return app


configure_logging(Settings.from_env().log_level)
app = create_app()


# ──────────────────────────────────────────────
# Run with: uvicorn main:app --reload
# ──────────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=3000, reload=True)
