"""
Multipost OAuth
===============
Google/YouTube OAuth round trip and the identity-provider exchanges used by
the token lifecycle.

State token (carried through the redirect):
    base64url(JSON{user_id, nonce}) + "." + base64url(HMAC-SHA256(encoded, OAUTH_STATE_SECRET))

Exports:
  - encode_state(payload) / decode_state(state)
  - create_youtube_auth_url(user_id)
  - exchange_code(code) -> RefreshedTokens
  - refresh_tokens(platform, refresh_token) -> RefreshedTokens
  - fetch_youtube_profile(access_token) -> dict
  - complete_youtube_connection(pool, code, state) -> ConnectedAccount
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from urllib.parse import urlencode

import httpx

from . import config
from . import crypto
from . import db as db_stage
from .errors import InvalidState, RefreshFailed, PublishError, ErrorCode
from .models import ConnectedAccount, Platform, RefreshedTokens

logger = logging.getLogger("multipost-worker")

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
YOUTUBE_CHANNELS_URL = "https://www.googleapis.com/youtube/v3/channels"

YOUTUBE_SCOPES = [
    "https://www.googleapis.com/auth/youtube.upload",
    "https://www.googleapis.com/auth/youtube.readonly",
]

# Google omits expires_in on some grants
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

HTTP_TIMEOUT = 20


# =====================================================================
# State token
# =====================================================================

def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _sign(encoded: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), encoded.encode("ascii"), hashlib.sha256).digest()
    return _b64url_encode(digest)


def encode_state(payload: Dict[str, str], secret: Optional[str] = None) -> str:
    """Sign {user_id, nonce} for the OAuth redirect round trip."""
    secret = secret or config.oauth_state_secret()
    encoded = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return f"{encoded}.{_sign(encoded, secret)}"


def decode_state(state: str, secret: Optional[str] = None) -> Dict[str, str]:
    """Verify and decode a state token. Raises InvalidState."""
    secret = secret or config.oauth_state_secret()
    encoded, _, signature = (state or "").partition(".")
    if not encoded or not signature:
        raise InvalidState("Invalid OAuth state")

    expected = _sign(encoded, secret)
    if not hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii", "replace")):
        raise InvalidState("Invalid OAuth state")

    try:
        payload = json.loads(_b64url_decode(encoded).decode("utf-8"))
    except (binascii.Error, ValueError):
        raise InvalidState("Invalid OAuth state")

    if not isinstance(payload, dict) or not payload.get("user_id") or not payload.get("nonce"):
        raise InvalidState("Invalid OAuth state")

    return {"user_id": str(payload["user_id"]), "nonce": str(payload["nonce"])}


# =====================================================================
# Google / YouTube
# =====================================================================

def create_youtube_auth_url(user_id: str) -> str:
    client_id, _, redirect_uri = config.google_oauth_config()
    state = encode_state({"user_id": user_id, "nonce": secrets.token_urlsafe(16)})
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
        "scope": " ".join(YOUTUBE_SCOPES),
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def _tokens_from_response(data: Dict[str, Any], now: Optional[datetime] = None) -> RefreshedTokens:
    now = now or datetime.now(timezone.utc)
    try:
        lifetime = float(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
    except (TypeError, ValueError):
        lifetime = DEFAULT_TOKEN_LIFETIME_SECONDS
    return RefreshedTokens(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or None,
        token_type=data.get("token_type") or None,
        scope=data.get("scope") or None,
        expires_at=now + timedelta(seconds=lifetime),
    )


async def exchange_code(code: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> RefreshedTokens:
    """Exchange an authorization code for tokens."""
    client_id, client_secret, redirect_uri = config.google_oauth_config()
    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=transport) as client:
        resp = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
    if resp.status_code >= 400:
        raise PublishError(
            f"Google code exchange failed: HTTP {resp.status_code}",
            code=ErrorCode.INVALID_STATE,
        )
    data = resp.json()
    if not data.get("access_token"):
        raise PublishError("Missing access token from Google", code=ErrorCode.MISSING_TOKEN)
    return _tokens_from_response(data)


async def _refresh_google_tokens(
    refresh_token: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RefreshedTokens:
    client_id, client_secret, _ = config.google_oauth_config()
    try:
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=transport) as client:
            resp = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
    except httpx.HTTPError as e:
        raise RefreshFailed(f"YouTube token refresh failed: {e.__class__.__name__}")

    if resp.status_code != 200:
        # never echo the response body; it can carry token material
        logger.warning(f"YouTube: Token refresh failed: HTTP {resp.status_code}")
        raise RefreshFailed(f"YouTube token refresh failed: HTTP {resp.status_code}")

    data = resp.json()
    if not data.get("access_token"):
        raise RefreshFailed("Failed to refresh YouTube access token")

    logger.info("YouTube: Token refreshed successfully")
    return _tokens_from_response(data)


async def refresh_tokens(
    platform: Platform,
    refresh_token: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RefreshedTokens:
    """Refresh exchange with the platform's identity provider."""
    if platform == Platform.YOUTUBE:
        return await _refresh_google_tokens(refresh_token, transport=transport)
    raise RefreshFailed(f"Token refresh is not available for {platform.value}")


async def fetch_youtube_profile(
    access_token: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Optional[str]]:
    """Look up the authenticated user's channel id and title."""
    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=transport) as client:
        resp = await client.get(
            YOUTUBE_CHANNELS_URL,
            params={"part": "snippet", "mine": "true"},
            headers={"Authorization": f"Bearer {access_token}"},
        )
    if resp.status_code != 200:
        logger.warning(f"YouTube: Channel lookup failed: HTTP {resp.status_code}")
        return {}

    items = resp.json().get("items") or []
    if not items:
        return {}

    channel = items[0]
    return {
        "external_user_id": channel.get("id"),
        "external_username": (channel.get("snippet") or {}).get("title"),
    }


async def complete_youtube_connection(
    pool,
    code: str,
    state: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ConnectedAccount:
    """
    OAuth callback: verify state, exchange the code, store encrypted tokens.

    Values the provider does not return (refresh token, scope, token type,
    profile ids) keep whatever the existing account already holds.
    """
    user_id = decode_state(state)["user_id"]
    tokens = await exchange_code(code, transport=transport)
    profile = await fetch_youtube_profile(tokens.access_token, transport=transport)

    existing = await db_stage.load_connected_account(pool, user_id, Platform.YOUTUBE)

    refresh_token = crypto.encrypt_string(tokens.refresh_token) if tokens.refresh_token else None
    if refresh_token is None and existing:
        refresh_token = existing.refresh_token

    account = ConnectedAccount(
        id=existing.id if existing else str(uuid.uuid4()),
        user_id=user_id,
        platform=Platform.YOUTUBE,
        access_token=crypto.encrypt_string(tokens.access_token),
        refresh_token=refresh_token,
        token_type=tokens.token_type or (existing.token_type if existing else None),
        scope=tokens.scope or (existing.scope if existing else None),
        expires_at=tokens.expires_at,
        is_active=True,
        external_user_id=profile.get("external_user_id") or (existing.external_user_id if existing else None),
        external_username=profile.get("external_username") or (existing.external_username if existing else None),
        external_page_id=existing.external_page_id if existing else None,
        external_ig_account_id=existing.external_ig_account_id if existing else None,
    )
    saved = await db_stage.upsert_connected_account(pool, account)
    logger.info(f"YouTube connected for user={user_id} channel={account.external_user_id}")
    return saved
