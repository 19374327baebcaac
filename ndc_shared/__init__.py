"""
Shared utilities for the NDC distribution gateway.

This package aggregates the cross-cutting building blocks consumed by the
service packages:

- config: Gateway configuration via pydantic-settings
- logging: Structured logging with call correlation
- metrics: Prometheus metrics helpers
- errors: Closed error taxonomy, classification and responses
- circuit_breaker: Keyed circuit breakers guarding provider dependencies
- retry: Backoff policy and retry executor
- cancellation: Cancellation tokens and deadline enforcement

Do not import from service_* packages into ndc_shared/.
"""
