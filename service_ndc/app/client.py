"""
NDC gateway client: one method per provider operation.

Every method returns an ``ApiResult`` envelope. Failures never escape as
exceptions (native ``asyncio`` task cancellation excepted); they come back
as ``success=False`` with a structured error and full metadata.
"""

import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlsplit

from ndc_shared.cancellation import CancellationToken, run_cancellable
from ndc_shared.circuit_breaker import CircuitBreakerManager, breaker_key
from ndc_shared.config import GatewaySettings
from ndc_shared.errors import (
    HttpStatusError,
    NdcGatewayException,
    ProviderBusinessError,
    RequestValidationError,
    wrap_unexpected,
)
from ndc_shared.logging import clear_context, get_logger
from ndc_shared.metrics import MetricsCollector
from ndc_shared.retry import RetryExecutor, RetryPolicy
from service_ndc.app.adapters.http_transport import HttpTransport
from service_ndc.app.adapters.provider_errors import inspect_body
from service_ndc.app.auth.manager import AuthManager
from service_ndc.app.context import CallContext
from service_ndc.app.models import (
    AirlineProfileRequest,
    AirShoppingRequest,
    ApiError,
    ApiResult,
    NdcCredentials,
    NdcOperation,
    NdcRequest,
    OfferPriceRequest,
    OrderChangeRequest,
    OrderCreateRequest,
    OrderQuoteRequest,
    OrderReshopRequest,
    OrderRetrieveRequest,
    ProviderResponse,
    ResponseMeta,
    SeatAvailabilityRequest,
    ServiceListRequest,
    TokenInfo,
)
from service_ndc.app.transactions import TransactionLog


Parser = Callable[[ProviderResponse], Any]

# 4xx answers that say nothing about the request content
NON_BUSINESS_STATUS_CODES = (401, 403, 404, 408, 429)


class NdcGatewayClient:
    """Composes token acquisition, retry, breakers and transport per operation."""

    def __init__(self,
                 settings: GatewaySettings,
                 transport: HttpTransport,
                 auth_manager: AuthManager,
                 breakers: CircuitBreakerManager,
                 retry_executor: RetryExecutor,
                 retry_policies: Mapping[str, RetryPolicy],
                 default_policy: RetryPolicy,
                 metrics: Optional[MetricsCollector] = None,
                 transactions: Optional[TransactionLog] = None):
        self.settings = settings
        self.transport = transport
        self.auth = auth_manager
        self.breakers = breakers
        self.retry_executor = retry_executor
        self.retry_policies = dict(retry_policies)
        self.default_policy = default_policy
        self.metrics = metrics
        self.transactions = transactions or TransactionLog()
        self.logger = get_logger("ndc.gateway")

    async def __aenter__(self) -> "NdcGatewayClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.transport.aclose()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def air_shopping(self, request: AirShoppingRequest, credentials: NdcCredentials,
                           **options) -> ApiResult:
        return await self.call(NdcOperation.AIR_SHOPPING, request, credentials, **options)

    async def offer_price(self, request: OfferPriceRequest, credentials: NdcCredentials,
                          **options) -> ApiResult:
        return await self.call(NdcOperation.OFFER_PRICE, request, credentials, **options)

    async def service_list(self, request: ServiceListRequest, credentials: NdcCredentials,
                           **options) -> ApiResult:
        return await self.call(NdcOperation.SERVICE_LIST, request, credentials, **options)

    async def seat_availability(self, request: SeatAvailabilityRequest, credentials: NdcCredentials,
                                **options) -> ApiResult:
        return await self.call(NdcOperation.SEAT_AVAILABILITY, request, credentials, **options)

    async def order_create(self, request: OrderCreateRequest, credentials: NdcCredentials,
                           **options) -> ApiResult:
        return await self.call(NdcOperation.ORDER_CREATE, request, credentials, **options)

    async def order_retrieve(self, request: OrderRetrieveRequest, credentials: NdcCredentials,
                             **options) -> ApiResult:
        return await self.call(NdcOperation.ORDER_RETRIEVE, request, credentials, **options)

    async def order_reshop(self, request: OrderReshopRequest, credentials: NdcCredentials,
                           **options) -> ApiResult:
        return await self.call(NdcOperation.ORDER_RESHOP, request, credentials, **options)

    async def order_quote(self, request: OrderQuoteRequest, credentials: NdcCredentials,
                          **options) -> ApiResult:
        return await self.call(NdcOperation.ORDER_QUOTE, request, credentials, **options)

    async def order_change(self, request: OrderChangeRequest, credentials: NdcCredentials,
                           **options) -> ApiResult:
        return await self.call(NdcOperation.ORDER_CHANGE, request, credentials, **options)

    async def airline_profile(self, request: AirlineProfileRequest, credentials: NdcCredentials,
                              **options) -> ApiResult:
        return await self.call(NdcOperation.AIRLINE_PROFILE, request, credentials, **options)

    async def authenticate(self,
                           credentials: NdcCredentials,
                           force_refresh: bool = False,
                           correlation_id: Optional[str] = None,
                           timeout: Optional[float] = None,
                           cancel_token: Optional[CancellationToken] = None) -> ApiResult:
        """Exchange credentials (or reuse a cached token) and report the token state."""
        context = CallContext.start(NdcOperation.AUTH.value, correlation_id, timeout, cancel_token)
        context.credential_hash = credentials.credential_hash
        context.bind_logging()
        try:
            info = await run_cancellable(
                self.auth.authenticate(credentials, force_refresh, context),
                context.cancel_token,
                context.deadline
            )
            return self._success(context, info, info)
        except Exception as e:
            return self._failure(context, e, self.auth.token_info(credentials))
        finally:
            clear_context()

    # ------------------------------------------------------------------
    # Core call path
    # ------------------------------------------------------------------

    async def call(self,
                   operation: NdcOperation,
                   request: NdcRequest,
                   credentials: NdcCredentials,
                   correlation_id: Optional[str] = None,
                   idempotency_key: Optional[str] = None,
                   timeout: Optional[float] = None,
                   cancel_token: Optional[CancellationToken] = None,
                   parser: Optional[Parser] = None) -> ApiResult:
        """Run one provider operation and wrap the outcome in an envelope.

        ``timeout`` bounds the whole call, retries and backoff included;
        ``cancel_token`` aborts it at any suspension point.
        """
        context = CallContext.start(operation.value, correlation_id, timeout, cancel_token, idempotency_key)
        context.credential_hash = credentials.credential_hash
        context.bind_logging()
        self.logger.info("NDC operation starting", credential_hash=context.credential_hash)

        try:
            try:
                payload = request.to_payload()
            except (TypeError, ValueError) as e:
                raise RequestValidationError(f"Could not build {operation.value} payload: {e}") from e
            self.transactions.start(context, payload)

            response = await self._execute(operation, payload, request.content_type, credentials, context)
            data = parser(response) if parser else response
            result = self._success(context, data, self.auth.token_info(credentials))
            self.transactions.complete(context, result)
            return result
        except Exception as e:
            result = self._failure(context, e, self.auth.token_info(credentials))
            self.transactions.complete(context, result)
            return result
        finally:
            clear_context()

    async def _execute(self,
                       operation: NdcOperation,
                       payload: str,
                       content_type: str,
                       credentials: NdcCredentials,
                       context: CallContext) -> ProviderResponse:
        bearer = await run_cancellable(
            self.auth.get_token(credentials, context),
            context.cancel_token,
            context.deadline
        )
        try:
            return await self._send(operation, payload, content_type, credentials, bearer, context)
        except HttpStatusError as e:
            if e.status_code != 401:
                raise
            # token rejected mid-session: refresh once and replay
            self.logger.warning("Provider rejected bearer token, forcing refresh")
            bearer = await run_cancellable(
                self.auth.get_token(credentials, context, force_refresh=True),
                context.cancel_token,
                context.deadline
            )
            return await self._send(operation, payload, content_type, credentials, bearer, context)

    async def _send(self,
                    operation: NdcOperation,
                    payload: str,
                    content_type: str,
                    credentials: NdcCredentials,
                    bearer: str,
                    context: CallContext) -> ProviderResponse:
        url = self.settings.endpoint_url(operation.value)
        headers: Dict[str, str] = {
            "Authorization": f"Bearer {bearer}",
            "Ocp-Apim-Subscription-Key": credentials.subscription_key,
            "Content-Type": content_type,
            "Accept": content_type,
            **self.settings.env_header,
        }
        if context.idempotency_key:
            headers["Idempotency-Key"] = context.idempotency_key

        timeout = self.settings.timeout_for(operation.value)

        async def attempt() -> ProviderResponse:
            started = time.monotonic()
            try:
                raw = await self.transport.send(
                    url,
                    payload,
                    headers=headers,
                    timeout=timeout,
                    correlation_id=context.correlation_id,
                    transaction_id=context.transaction_id
                )
            except HttpStatusError as e:
                self._record_exchange(context, started, e.status_code, e.body, e.code)
                if 400 <= e.status_code < 500 and e.status_code not in NON_BUSINESS_STATUS_CODES:
                    errors, _ = inspect_body(e.body or "")
                    if errors:
                        raise ProviderBusinessError(errors, details={"status_code": e.status_code}) from e
                raise
            except NdcGatewayException as e:
                self._record_exchange(context, started, None, None, e.code)
                raise

            self._record_exchange(context, started, raw.status_code, raw.body)
            errors, warnings = inspect_body(raw.body)
            if errors:
                self.logger.warning("Provider response contains errors", error_count=len(errors))
                raise ProviderBusinessError(errors, details={"status_code": raw.status_code})
            return ProviderResponse(
                status_code=raw.status_code,
                body=raw.body,
                content_type=raw.content_type,
                warnings=warnings
            )

        breaker = self.breakers.get_circuit_breaker(breaker_key(operation.value, urlsplit(url).netloc))
        return await self.retry_executor.execute(attempt, self.policy_for(operation), context, breaker)

    def policy_for(self, operation: NdcOperation) -> RetryPolicy:
        return self.retry_policies.get(operation.value, self.default_policy)

    def _record_exchange(self, context: CallContext, started: float, status_code: Optional[int],
                         body: Optional[str], error_code: Optional[str] = None) -> None:
        duration_ms = round((time.monotonic() - started) * 1000, 3)
        self.transactions.record_exchange(context, status_code, body, error_code, duration_ms)

    # ------------------------------------------------------------------
    # Envelopes
    # ------------------------------------------------------------------

    def _meta(self, context: CallContext, token_info: Optional[TokenInfo]) -> ResponseMeta:
        return ResponseMeta(
            transaction_id=context.transaction_id,
            correlation_id=context.correlation_id,
            timestamp=context.started_wall.isoformat(),
            duration=context.elapsed_ms(),
            operation=context.operation,
            attempts=context.attempt,
            token_info=token_info
        )

    def _success(self, context: CallContext, data: Any, token_info: Optional[TokenInfo]) -> ApiResult:
        meta = self._meta(context, token_info)
        if self.metrics:
            self.metrics.record_operation(context.operation, "success", meta.duration / 1000)
        self.logger.info("NDC operation succeeded", duration_ms=meta.duration, attempts=meta.attempts)
        return ApiResult(success=True, data=data, meta=meta)

    def _failure(self, context: CallContext, error: Exception,
                 token_info: Optional[TokenInfo]) -> ApiResult:
        gateway_error = wrap_unexpected(error)
        if gateway_error is not error:
            self.logger.exception("Unexpected error during NDC operation")
        meta = self._meta(context, token_info)

        if self.metrics:
            self.metrics.record_operation(context.operation, "error", meta.duration / 1000)
            self.metrics.record_error(context.operation, gateway_error.kind.value)
        self.logger.warning(
            "NDC operation failed",
            error_code=gateway_error.code,
            error=gateway_error.message,
            retryable=gateway_error.retryable,
            duration_ms=meta.duration
        )
        return ApiResult(
            success=False,
            error=ApiError.from_response(gateway_error.to_response()),
            meta=meta
        )

    def rejected(self, operation: str, error: NdcGatewayException,
                 correlation_id: Optional[str] = None) -> ApiResult:
        """Failure envelope for a call refused before reaching the provider."""
        context = CallContext.start(operation, correlation_id)
        return self._failure(context, error, None)

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        """Breaker state per key (data and auth) and token cache statistics."""
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "circuit_breakers": self.breakers.get_all_states(),
            "auth_circuit_breakers": self.auth.breakers.get_all_states(),
            "token_cache": self.auth.token_cache.get_stats(),
            "transactions": self.transactions.get_stats(),
        }

    def reset_breaker(self, key: str) -> bool:
        return self.breakers.reset(key) or self.auth.breakers.reset(key)
