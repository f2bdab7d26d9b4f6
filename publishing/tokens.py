"""
Multipost Token Lifecycle
=========================
Hands out a valid platform access token for a user, refreshing it first when
it is about to expire.

States of a stored account token:
    FRESH        - expires after now + margin, use as is
    STALE        - expires within the margin (or has no expiry), refresh first
    REFRESHING   - transient, a refresh exchange is in flight
    UNRECOVERABLE- stale with no refresh token; the user must reconnect
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Dict, Tuple, Callable, Awaitable

from . import config
from . import crypto
from . import db as db_stage
from . import oauth as oauth_stage
from .errors import NotConnected, MissingToken, TokenUnrecoverable
from .models import ConnectedAccount, Platform, RefreshedTokens

logger = logging.getLogger("multipost-worker")

Refresher = Callable[[Platform, str], Awaitable[RefreshedTokens]]


class TokenState(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    REFRESHING = "refreshing"
    UNRECOVERABLE = "unrecoverable"


def classify_token(
    expires_at: Optional[datetime],
    now: Optional[datetime] = None,
    margin_seconds: int = config.TOKEN_REFRESH_MARGIN_SECONDS,
) -> TokenState:
    """FRESH when the token outlives now + margin, otherwise STALE."""
    if expires_at is None:
        return TokenState.STALE
    now = now or datetime.now(timezone.utc)
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at <= now + timedelta(seconds=margin_seconds):
        return TokenState.STALE
    return TokenState.FRESH


async def _default_refresher(platform: Platform, refresh_token: str) -> RefreshedTokens:
    # resolved at call time so tests can patch oauth.refresh_tokens
    return await oauth_stage.refresh_tokens(platform, refresh_token)


class TokenManager:
    """Valid-access-token provider backed by the connected_accounts table."""

    def __init__(
        self,
        pool,
        refresher: Optional[Refresher] = None,
        margin_seconds: int = config.TOKEN_REFRESH_MARGIN_SECONDS,
        serialize_refresh: bool = True,
    ):
        self.pool = pool
        self.refresher = refresher or _default_refresher
        self.margin_seconds = margin_seconds
        self.serialize_refresh = serialize_refresh
        self._locks: Dict[Tuple[str, Platform], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[str, Platform], int] = {}

    @asynccontextmanager
    async def _refresh_lock(self, user_id: str, platform: Platform):
        """Per-account lock, dropped once the last task holding or awaiting it leaves."""
        key = (user_id, platform)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _load_account(self, user_id: str, platform: Platform) -> ConnectedAccount:
        account = await db_stage.load_connected_account(self.pool, user_id, platform)
        if not account or not account.is_active:
            raise NotConnected(
                f"{platform.value.title()} account is not connected",
                details={"platform": platform.value},
            )
        if not account.access_token:
            raise MissingToken(
                f"{platform.value.title()} access token missing",
                details={"platform": platform.value},
            )
        return account

    def state_of(self, account: ConnectedAccount, now: Optional[datetime] = None) -> TokenState:
        state = classify_token(account.expires_at, now, self.margin_seconds)
        if state == TokenState.STALE and not account.refresh_token:
            return TokenState.UNRECOVERABLE
        return state

    async def get_valid_access_token(self, user_id: str, platform: Platform = Platform.YOUTUBE) -> str:
        account = await self._load_account(user_id, platform)
        # a tampered envelope fails here, whatever the expiry says
        access_token = crypto.decrypt_string(account.access_token)
        state = self.state_of(account)

        if state == TokenState.FRESH:
            return access_token
        if state == TokenState.UNRECOVERABLE:
            raise TokenUnrecoverable(
                f"Missing {platform.value.title()} refresh token",
                details={"platform": platform.value},
            )

        if not self.serialize_refresh:
            return await self._refresh(account)

        async with self._refresh_lock(user_id, platform):
            # another task may have refreshed while we waited
            account = await self._load_account(user_id, platform)
            access_token = crypto.decrypt_string(account.access_token)
            state = self.state_of(account)
            if state == TokenState.FRESH:
                return access_token
            if state == TokenState.UNRECOVERABLE:
                raise TokenUnrecoverable(
                    f"Missing {platform.value.title()} refresh token",
                    details={"platform": platform.value},
                )
            return await self._refresh(account)

    async def force_refresh(self, user_id: str, platform: Platform = Platform.YOUTUBE) -> str:
        """Refresh regardless of expiry. Used by the manual refresh route."""
        account = await db_stage.load_connected_account(self.pool, user_id, platform)
        if not account or not account.is_active:
            raise NotConnected(
                f"{platform.value.title()} account is not connected",
                details={"platform": platform.value},
            )
        if not account.refresh_token:
            raise TokenUnrecoverable(
                f"Missing {platform.value.title()} refresh token",
                details={"platform": platform.value},
            )
        return await self._refresh(account)

    async def _refresh(self, account: ConnectedAccount) -> str:
        refresh_token = crypto.decrypt_string(account.refresh_token)
        logger.info(f"Refreshing {account.platform.value} token for user={account.user_id}")

        tokens = await self.refresher(account.platform, refresh_token)

        await db_stage.save_refreshed_credentials(
            self.pool,
            account_id=account.id,
            access_token=crypto.encrypt_string(tokens.access_token),
            refresh_token=crypto.encrypt_string(tokens.refresh_token) if tokens.refresh_token else None,
            expires_at=tokens.expires_at,
            token_type=tokens.token_type or account.token_type,
            scope=tokens.scope or account.scope,
        )
        return tokens.access_token
