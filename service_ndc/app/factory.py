"""
Composition root for the NDC gateway.

``build_gateway`` wires explicit instances of every collaborator. Nothing is
process-global: each call yields an isolated client with its own breakers,
token cache and metrics registry. Close it with ``await client.aclose()``.
"""

import time
from typing import Callable, Dict, Optional

import httpx

from ndc_shared.circuit_breaker import CircuitBreakerConfig, CircuitBreakerManager
from ndc_shared.config import GatewaySettings, get_settings
from ndc_shared.metrics import MetricsCollector, get_metrics_collector
from ndc_shared.retry import RetryExecutor, RetryPolicy
from service_ndc.app.adapters.http_transport import HttpTransport
from service_ndc.app.auth.manager import AuthManager
from service_ndc.app.auth.token_cache import TokenCache
from service_ndc.app.client import NdcGatewayClient
from service_ndc.app.models import NdcOperation
from service_ndc.app.transactions import TransactionLog


def breaker_config(settings: GatewaySettings) -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        failure_threshold=settings.breaker_failure_threshold,
        success_threshold=settings.breaker_success_threshold,
        cooldown=settings.breaker_cooldown,
        cooldown_multiplier=settings.breaker_cooldown_multiplier,
        max_cooldown=max(settings.breaker_max_cooldown, settings.breaker_cooldown),
        window_seconds=settings.breaker_window_seconds,
        failure_rate_threshold=settings.breaker_failure_rate_threshold,
        minimum_calls=settings.breaker_minimum_calls
    )


def auth_breaker_config(settings: GatewaySettings) -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        failure_threshold=settings.auth_breaker_failure_threshold,
        cooldown=settings.auth_breaker_cooldown,
        max_cooldown=max(settings.breaker_max_cooldown, settings.auth_breaker_cooldown)
    )


def retry_policy(settings: GatewaySettings, idempotent: bool = True) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        base_delay=settings.retry_base_delay,
        multiplier=settings.retry_multiplier,
        max_delay=settings.retry_max_delay,
        jitter=settings.retry_jitter,
        idempotent=idempotent
    )


def auth_retry_policy(settings: GatewaySettings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.auth_retry_max_attempts,
        base_delay=settings.auth_retry_base_delay,
        multiplier=settings.retry_multiplier,
        max_delay=settings.auth_retry_max_delay,
        jitter=settings.retry_jitter
    )


def operation_policies(settings: GatewaySettings) -> Dict[str, RetryPolicy]:
    return {
        op.value: retry_policy(settings, idempotent=op.value in settings.idempotent_operations)
        for op in NdcOperation
        if op != NdcOperation.AUTH
    }


def build_gateway(settings: Optional[GatewaySettings] = None,
                  http_client: Optional[httpx.AsyncClient] = None,
                  metrics: Optional[MetricsCollector] = None,
                  monotonic_clock: Callable[[], float] = time.monotonic,
                  wall_clock: Callable[[], float] = time.time,
                  retry_executor: Optional[RetryExecutor] = None) -> NdcGatewayClient:
    """Construct a fully wired ``NdcGatewayClient``."""
    settings = settings or get_settings()
    metrics = metrics or get_metrics_collector(settings.service_name)

    transport = HttpTransport(
        default_timeout=settings.request_timeout,
        max_connections=settings.max_connections,
        client=http_client,
        metrics=metrics
    )
    retry_executor = retry_executor or RetryExecutor(metrics=metrics)

    token_cache = TokenCache(
        safety_margin=settings.token_safety_margin,
        expiry_warning=settings.token_expiry_warning,
        clock=wall_clock,
        metrics=metrics
    )
    auth_manager = AuthManager(
        transport=transport,
        token_cache=token_cache,
        auth_url=settings.endpoint_url(NdcOperation.AUTH.value),
        breakers=CircuitBreakerManager(auth_breaker_config(settings), monotonic_clock, wall_clock, metrics),
        retry_policy=auth_retry_policy(settings),
        retry_executor=retry_executor,
        default_validity=settings.token_default_validity,
        timeout=settings.timeout_for(NdcOperation.AUTH.value),
        clock=wall_clock,
        metrics=metrics
    )

    return NdcGatewayClient(
        settings=settings,
        transport=transport,
        auth_manager=auth_manager,
        breakers=CircuitBreakerManager(breaker_config(settings), monotonic_clock, wall_clock, metrics),
        retry_executor=retry_executor,
        retry_policies=operation_policies(settings),
        default_policy=retry_policy(settings),
        metrics=metrics,
        transactions=TransactionLog(settings.transaction_log_size, settings.mask_sensitive_data)
    )
