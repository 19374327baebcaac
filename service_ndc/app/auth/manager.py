"""
Credential exchange against the provider's auth endpoint.
"""

import base64
import json
import re
import time
from typing import Callable, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from ndc_shared.circuit_breaker import CircuitBreakerManager, breaker_key
from ndc_shared.errors import AuthenticationFailed, HttpStatusError
from ndc_shared.logging import get_logger
from ndc_shared.metrics import MetricsCollector
from ndc_shared.retry import RetryExecutor, RetryPolicy
from service_ndc.app.adapters.http_transport import HttpTransport, RawResponse
from service_ndc.app.auth.token_cache import CachedToken, TokenCache
from service_ndc.app.context import CallContext
from service_ndc.app.models import NdcCredentials, NdcOperation, TokenInfo


TOKEN_PATTERNS = [
    re.compile(r"<(?:\w+:)?Token>([^<]+)</(?:\w+:)?Token>", re.IGNORECASE),
    re.compile(r"<(?:\w+:)?AuthToken>([^<]+)</(?:\w+:)?AuthToken>", re.IGNORECASE),
    re.compile(r"<(?:\w+:)?SessionToken>([^<]+)</(?:\w+:)?SessionToken>", re.IGNORECASE),
    re.compile(r"<(?:\w+:)?BearerToken>([^<]+)</(?:\w+:)?BearerToken>", re.IGNORECASE),
]
REJECTED_STATUS_CODES = (401, 403)


def basic_auth_header(credentials: NdcCredentials) -> str:
    raw = f"{credentials.domain}\\{credentials.api_id}:{credentials.password}"
    return "Basic " + base64.b64encode(raw.encode("utf-8")).decode("ascii")


def extract_token(response: RawResponse) -> Tuple[Optional[str], Optional[float]]:
    """Pull ``(token, lifetime_seconds)`` out of an auth response."""
    body = (response.body or "").strip()

    if body.startswith("{"):
        try:
            document = json.loads(body)
        except ValueError:
            document = {}
        if isinstance(document, dict):
            token = document.get("token") or document.get("access_token") or document.get("accessToken")
            lifetime = document.get("expires_in") or document.get("expiresIn")
            if token:
                return str(token), float(lifetime) if lifetime else None

    for pattern in TOKEN_PATTERNS:
        match = pattern.search(body)
        if match:
            return match.group(1).strip(), None

    header_token = response.headers.get("x-auth-token") or response.headers.get("authorization")
    if header_token:
        return re.sub(r"^Bearer\s+", "", header_token, flags=re.IGNORECASE), None

    if body and len(body) < 500 and "<" not in body and not body.startswith("{"):
        return body, None

    return None, None


class AuthManager:
    """Obtains bearer tokens and keeps them in the ``TokenCache``.

    The auth endpoint is its own failure domain: it gets a dedicated breaker
    manager and retry policy so data-call failures never block sign-in and
    sign-in storms never trip data-call breakers.
    """

    def __init__(self,
                 transport: HttpTransport,
                 token_cache: TokenCache,
                 auth_url: str,
                 breakers: CircuitBreakerManager,
                 retry_policy: RetryPolicy,
                 retry_executor: Optional[RetryExecutor] = None,
                 default_validity: float = 1800.0,
                 timeout: float = 30.0,
                 clock: Callable[[], float] = time.time,
                 metrics: Optional[MetricsCollector] = None):
        self.transport = transport
        self.token_cache = token_cache
        self.auth_url = auth_url
        self.breakers = breakers
        self.retry_policy = retry_policy
        self.retry_executor = retry_executor or RetryExecutor(metrics=metrics)
        self.default_validity = default_validity
        self.timeout = timeout
        self._clock = clock
        self._metrics = metrics
        self.logger = get_logger("ndc.auth")
        self.breaker_key = breaker_key(NdcOperation.AUTH.value, urlsplit(auth_url).netloc)

    async def authenticate(self,
                           credentials: NdcCredentials,
                           force_refresh: bool = False,
                           context: Optional[CallContext] = None) -> TokenInfo:
        """Return token info for ``credentials``, exchanging them when needed."""
        await self._obtain(credentials, force_refresh, context)
        return self.token_cache.token_info(credentials.credential_hash)

    async def get_token(self, credentials: NdcCredentials,
                        context: Optional[CallContext] = None,
                        force_refresh: bool = False) -> str:
        """Bearer value for a data call."""
        token = await self._obtain(credentials, force_refresh, context)
        return token.value

    async def _obtain(self, credentials: NdcCredentials, force_refresh: bool,
                      context: Optional[CallContext]) -> CachedToken:
        scope = credentials.credential_hash
        correlation_id = context.correlation_id if context else None

        async def refresher() -> CachedToken:
            # shared by every waiter, so it must not inherit one caller's deadline or cancel token
            exchange_context = CallContext.start(NdcOperation.AUTH.value, correlation_id=correlation_id)
            exchange_context.credential_hash = scope
            return await self._exchange(credentials, exchange_context)

        if force_refresh:
            return await self.token_cache.force_refresh(scope, refresher)
        return await self.token_cache.get_token(scope, refresher)

    async def _exchange(self, credentials: NdcCredentials, context: CallContext) -> CachedToken:
        scope = credentials.credential_hash
        headers: Mapping[str, str] = {
            "Authorization": basic_auth_header(credentials),
            "Ocp-Apim-Subscription-Key": credentials.subscription_key,
        }

        async def attempt() -> RawResponse:
            try:
                return await self.transport.send(
                    self.auth_url,
                    "",
                    headers=dict(headers),
                    timeout=self.timeout,
                    correlation_id=context.correlation_id,
                    transaction_id=context.transaction_id
                )
            except HttpStatusError as e:
                if e.status_code in REJECTED_STATUS_CODES:
                    raise AuthenticationFailed(
                        "Provider rejected the credentials",
                        details={"status_code": e.status_code, "credential_hash": scope}
                    ) from e
                raise

        self.logger.info("Authenticating with provider", credential_hash=scope)
        breaker = self.breakers.get_circuit_breaker(self.breaker_key)
        try:
            response = await self.retry_executor.execute(attempt, self.retry_policy, context, breaker)
        except Exception as e:
            self._record("error")
            self.logger.error("Authentication failed", credential_hash=scope, error=str(e))
            raise

        token, lifetime = extract_token(response)
        if not token:
            self._record("error")
            raise AuthenticationFailed(
                "No token received from auth response",
                details={"credential_hash": scope, "status_code": response.status_code}
            )

        now = self._clock()
        lifetime = lifetime or self.default_validity
        self._record("success")
        self.logger.info("Authentication successful", credential_hash=scope, expires_in=lifetime)
        return CachedToken(value=token, expires_at=now + lifetime, issued_at=now, scope=scope)

    def token_info(self, credentials: NdcCredentials) -> TokenInfo:
        return self.token_cache.token_info(credentials.credential_hash)

    def has_valid_token(self, credentials: NdcCredentials) -> bool:
        return self.token_cache.peek(credentials.credential_hash) is not None

    def invalidate(self, credentials: NdcCredentials) -> bool:
        return self.token_cache.invalidate(credentials.credential_hash)

    def _record(self, status: str) -> None:
        if self._metrics:
            self._metrics.record_auth_request(status)
