"""
Shared fixtures for NDC service tests.
"""

import json
from typing import Dict, List, Union

import httpx
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from ndc_shared.config import GatewaySettings
from ndc_shared.metrics import MetricsCollector
from ndc_shared.retry import RetryExecutor
from service_ndc.app.factory import build_gateway
from service_ndc.app.models import NdcCredentials


Scripted = Union[tuple, Exception]


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ProviderStub:
    """Scripted provider behind ``httpx.MockTransport``.

    Responses are queued per operation (last path segment). The last queued
    entry repeats. ``Auth`` answers with a fresh JSON token unless scripted.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.routes: Dict[str, List[Scripted]] = {}
        self.tokens_issued = 0

    def queue(self, operation: str, *responses: Scripted):
        self.routes.setdefault(operation, []).extend(responses)

    def calls(self, operation: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.rsplit("/", 1)[-1] == operation]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        operation = request.url.path.rsplit("/", 1)[-1]
        scripted = self.routes.get(operation)

        if not scripted:
            if operation == "Auth":
                self.tokens_issued += 1
                body = json.dumps({"token": f"token-{self.tokens_issued}", "expires_in": 3600})
                return httpx.Response(200, text=body, headers={"Content-Type": "application/json"})
            return httpx.Response(200, text=f"<{operation}RS><Success/></{operation}RS>",
                                  headers={"Content-Type": "application/xml"})

        entry = scripted.pop(0) if len(scripted) > 1 else scripted[0]
        if isinstance(entry, Exception):
            raise entry
        status_code, body = entry
        return httpx.Response(status_code, text=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def credentials():
    return NdcCredentials(
        domain="AGENCY",
        api_id="api-user",
        password="s3cret",
        subscription_key="sub-key-123"
    )


@pytest.fixture
def provider():
    return ProviderStub()


@pytest.fixture
def delays() -> List[float]:
    return []


@pytest.fixture
def retry_executor(delays):
    async def record_sleep(delay):
        delays.append(delay)

    return RetryExecutor(sleep=record_sleep, jitter_source=lambda low, high: 0.0)


@pytest.fixture
def settings():
    return GatewaySettings(
        breaker_failure_threshold=3,
        retry_max_attempts=3,
        retry_base_delay=0.1,
        retry_multiplier=2.0,
        retry_jitter=0.0
    )


@pytest.fixture
def gateway(settings, provider, retry_executor):
    return build_gateway(
        settings,
        http_client=provider.client(),
        metrics=MetricsCollector("test"),
        retry_executor=retry_executor
    )
