"""
Keyed bearer-token cache with single-flight refresh.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from ndc_shared.logging import get_logger
from ndc_shared.metrics import MetricsCollector
from service_ndc.app.models import TokenInfo, TokenStatus


@dataclass(frozen=True)
class CachedToken:
    value: str
    expires_at: float
    issued_at: float
    scope: str


Refresher = Callable[[], Awaitable[CachedToken]]


class TokenCache:
    """Bearer tokens keyed by credential scope.

    A token is served only while ``now < expires_at - safety_margin``. When no
    such token exists, concurrent callers for the same scope share a single
    refresh and all observe its token or its error. A failed refresh leaves
    the scope empty.

    Lookups and in-flight bookkeeping never await between check and update,
    which keeps them atomic on the event loop.
    """

    def __init__(self,
                 safety_margin: float = 30.0,
                 expiry_warning: float = 300.0,
                 clock: Callable[[], float] = time.time,
                 metrics: Optional[MetricsCollector] = None):
        self.safety_margin = safety_margin
        self.expiry_warning = expiry_warning
        self._clock = clock
        self._metrics = metrics
        self.logger = get_logger("ndc.token_cache")
        self._tokens: Dict[str, CachedToken] = {}
        self._inflight: Dict[str, "asyncio.Future[CachedToken]"] = {}
        self._waiters: Dict[str, int] = {}
        self.refresh_count = 0

    def _is_usable(self, token: CachedToken) -> bool:
        return self._clock() < token.expires_at - self.safety_margin

    def peek(self, scope: str) -> Optional[CachedToken]:
        """Cached token for ``scope`` if still usable, without refreshing."""
        token = self._tokens.get(scope)
        if token is not None and self._is_usable(token):
            return token
        return None

    async def get_token(self, scope: str, refresher: Refresher) -> CachedToken:
        """Serve a usable cached token or join/start the refresh for ``scope``."""
        cached = self.peek(scope)
        if cached is not None:
            self._record("hit")
            return cached

        self._record("expired" if scope in self._tokens else "miss")
        return await self._join_refresh(scope, refresher)

    async def force_refresh(self, scope: str, refresher: Refresher) -> CachedToken:
        """Discard the cached token and obtain a new one.

        A refresh already in flight for the scope is joined rather than
        duplicated; its result is fresher than anything in the cache.
        """
        self._tokens.pop(scope, None)
        self._update_size()
        self.logger.info("Forcing token refresh", scope=scope)
        return await self._join_refresh(scope, refresher)

    async def _join_refresh(self, scope: str, refresher: Refresher) -> CachedToken:
        future = self._inflight.get(scope)
        if future is None:
            future = asyncio.ensure_future(self._refresh(scope, refresher))
            self._inflight[scope] = future
            self.refresh_count += 1
        else:
            self.logger.debug("Joining in-flight token refresh", scope=scope)

        self._waiters[scope] = self._waiters.get(scope, 0) + 1
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            # the last waiter to leave takes the refresh down with it
            if self._waiters.get(scope, 0) <= 1 and not future.done():
                future.cancel()
            raise
        finally:
            remaining = self._waiters.get(scope, 1) - 1
            if remaining > 0:
                self._waiters[scope] = remaining
            else:
                self._waiters.pop(scope, None)

    async def _refresh(self, scope: str, refresher: Refresher) -> CachedToken:
        try:
            token = await refresher()
        except BaseException as e:
            self._tokens.pop(scope, None)
            self._record("refresh_error")
            self.logger.warning("Token refresh failed", scope=scope, error=str(e))
            raise
        finally:
            self._inflight.pop(scope, None)
            self._update_size()

        # stale scopes are dropped whenever a fresh token is written
        self.purge_expired()
        self._tokens[scope] = token
        self._update_size()
        self._record("refresh")
        self.logger.info(
            "Token cached",
            scope=scope,
            expires_at=datetime.fromtimestamp(token.expires_at, timezone.utc).isoformat()
        )
        return token

    def store(self, token: CachedToken) -> None:
        self._tokens[token.scope] = token
        self._update_size()

    def invalidate(self, scope: str) -> bool:
        """Drop the token for ``scope``. Returns whether one was cached."""
        deleted = self._tokens.pop(scope, None) is not None
        if deleted:
            self._update_size()
            self.logger.info("Token invalidated", scope=scope)
        return deleted

    def clear(self) -> None:
        size = len(self._tokens)
        self._tokens.clear()
        self._update_size()
        self.logger.info("Token cache cleared", cleared_count=size)

    def purge_expired(self) -> int:
        """Remove every token past its safety margin."""
        stale = [scope for scope, token in self._tokens.items() if not self._is_usable(token)]
        for scope in stale:
            del self._tokens[scope]
        if stale:
            self._update_size()
            self.logger.debug("Expired tokens cleaned up", removed_count=len(stale))
        return len(stale)

    def token_info(self, scope: str) -> TokenInfo:
        token = self._tokens.get(scope)
        if token is None:
            return TokenInfo(status=TokenStatus.NONE, authenticated=False, credential_hash=scope)

        expires_in = max(0.0, token.expires_at - self._clock())
        if not self._is_usable(token):
            status = TokenStatus.EXPIRED
        elif expires_in < self.expiry_warning:
            status = TokenStatus.EXPIRING_SOON
        else:
            status = TokenStatus.VALID

        return TokenInfo(
            token=token.value,
            status=status,
            authenticated=status != TokenStatus.EXPIRED,
            expires_in=int(expires_in),
            expires_at=datetime.fromtimestamp(token.expires_at, timezone.utc).isoformat(),
            credential_hash=scope
        )

    def get_stats(self) -> Dict[str, int]:
        valid = sum(1 for token in self._tokens.values() if self._is_usable(token))
        return {
            "total_cached": len(self._tokens),
            "valid_tokens": valid,
            "expired_tokens": len(self._tokens) - valid,
            "refreshes_in_flight": len(self._inflight),
            "refresh_count": self.refresh_count
        }

    def _record(self, result: str) -> None:
        if self._metrics:
            self._metrics.record_token_event(result)

    def _update_size(self) -> None:
        if self._metrics:
            self._metrics.set_token_cache_size(len(self._tokens))
