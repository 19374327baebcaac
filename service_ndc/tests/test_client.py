"""
Unit tests for NdcGatewayClient.
"""

import asyncio
from datetime import date

import httpx
import pytest

from ndc_shared.cancellation import CancellationToken
from ndc_shared.config import GatewaySettings
from ndc_shared.metrics import MetricsCollector
from ndc_shared.retry import RetryExecutor, RetryPolicy
from service_ndc.app.factory import build_gateway
from service_ndc.app.models import (
    AirlineProfileRequest,
    AirShoppingRequest,
    NdcOperation,
    OfferPriceRequest,
    OrderChangeRequest,
    OrderCreateRequest,
    OrderQuoteRequest,
    OrderReshopRequest,
    OrderRetrieveRequest,
    Passenger,
    ProviderResponse,
    SeatAvailabilityRequest,
    SelectedOffer,
    ServiceListRequest,
    TokenInfo,
    TokenStatus,
)


HOST = "ndc-api-uat.example.com"
BUSINESS_ERROR_BODY = (
    '<IATA_OrderViewRS><Errors><Error Code="911" Type="ERR">No availability on selected flight'
    '</Error></Errors></IATA_OrderViewRS>'
)


@pytest.fixture
def shopping_request():
    return AirShoppingRequest(origin="LHR", destination="JFK", departure_date=date(2026, 12, 1))


@pytest.fixture
def order_request():
    return OrderCreateRequest(
        selected_offers=[SelectedOffer(offer_id="OFFER-1", offer_item_ids=["ITEM-1"])],
        passengers=[Passenger(pax_id="PAX1", given_name="Ada", surname="Lovelace")]
    )


class TestNdcGatewayClient:
    """Test cases for NdcGatewayClient."""

    @pytest.mark.asyncio
    async def test_success_envelope(self, gateway, provider, credentials, shopping_request):
        provider.queue("AirShopping", (200, "<AirShoppingRS><Offers/></AirShoppingRS>"))

        result = await gateway.air_shopping(shopping_request, credentials, correlation_id="session-42")

        assert result.success is True
        assert result.error is None
        assert isinstance(result.data, ProviderResponse)
        assert result.data.body == "<AirShoppingRS><Offers/></AirShoppingRS>"
        assert result.meta.correlation_id == "session-42"
        assert result.meta.operation == "AirShopping"
        assert result.meta.attempts == 1
        assert result.meta.duration >= 0
        assert result.meta.transaction_id
        assert result.meta.token_info.status == TokenStatus.VALID

    @pytest.mark.asyncio
    async def test_provider_request_headers(self, gateway, provider, credentials, shopping_request):
        await gateway.air_shopping(shopping_request, credentials, correlation_id="session-42")

        request = provider.calls("AirShopping")[0]
        assert request.headers["Authorization"] == "Bearer token-1"
        assert request.headers["Ocp-Apim-Subscription-Key"] == "sub-key-123"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["NDCUAT"] == "uat"
        assert request.headers["X-Correlation-ID"] == "session-42"
        assert str(request.url) == f"https://{HOST}/ndc/Shopping/r3.x/v21.3/AirShopping"
        assert b'"origin":"LHR"' in request.content.replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_transaction_ids_unique_correlation_shared(self, gateway, credentials,
                                                             shopping_request):
        first = await gateway.air_shopping(shopping_request, credentials, correlation_id="session-1")
        second = await gateway.air_shopping(shopping_request, credentials, correlation_id="session-1")

        assert first.meta.correlation_id == second.meta.correlation_id == "session-1"
        assert first.meta.transaction_id != second.meta.transaction_id

    @pytest.mark.asyncio
    async def test_generated_correlation_id(self, gateway, credentials, shopping_request):
        result = await gateway.air_shopping(shopping_request, credentials)
        assert result.meta.correlation_id

    @pytest.mark.asyncio
    async def test_breaker_opens_and_short_circuits(self, provider, retry_executor, credentials,
                                                    shopping_request):
        """Three 503s open the breaker; the fourth call never reaches the provider."""
        gateway = build_gateway(
            GatewaySettings(breaker_failure_threshold=3, retry_max_attempts=1),
            http_client=provider.client(),
            metrics=MetricsCollector("test"),
            retry_executor=retry_executor
        )
        provider.queue("AirShopping", (503, "Service Unavailable"))

        for _ in range(3):
            result = await gateway.air_shopping(shopping_request, credentials)
            assert result.error.code == "NDC_HTTP_ERROR"

        result = await gateway.air_shopping(shopping_request, credentials)

        assert result.success is False
        assert result.error.code == "CIRCUIT_OPEN"
        assert result.error.retryable is True
        assert result.error.details["breaker_key"] == f"AirShopping@{HOST}"
        assert len(provider.calls("AirShopping")) == 3

    @pytest.mark.asyncio
    async def test_retries_timeouts_then_succeeds(self, gateway, provider, credentials,
                                                  shopping_request, delays):
        provider.queue(
            "AirShopping",
            httpx.ReadTimeout("read timed out"),
            httpx.ReadTimeout("read timed out"),
            (200, "<AirShoppingRS><Offers/></AirShoppingRS>"),
        )

        result = await gateway.air_shopping(shopping_request, credentials)

        assert result.success is True
        assert result.meta.attempts == 3
        assert delays == [pytest.approx(0.1), pytest.approx(0.2)]

    @pytest.mark.asyncio
    async def test_exhausted_retries(self, gateway, provider, credentials, shopping_request):
        provider.queue("AirShopping", (502, "Bad Gateway"))

        result = await gateway.air_shopping(shopping_request, credentials)

        assert result.success is False
        assert result.error.code == "NDC_HTTP_ERROR"
        assert result.error.retryable is False
        assert result.error.details["exhausted"] is True
        assert result.meta.attempts == 3
        assert len(provider.calls("AirShopping")) == 3

    @pytest.mark.asyncio
    async def test_breakers_isolated_per_operation(self, gateway, provider, credentials,
                                                   shopping_request, order_request):
        provider.queue("AirShopping", (503, "Service Unavailable"))
        provider.queue("OrderCreate", (200, "<OrderViewRS><Order/></OrderViewRS>"))

        await gateway.air_shopping(shopping_request, credentials)
        shopping = await gateway.air_shopping(shopping_request, credentials)
        order = await gateway.order_create(order_request, credentials)

        assert shopping.error.code == "CIRCUIT_OPEN"
        assert order.success is True

        status = gateway.get_status()
        assert status["circuit_breakers"][f"AirShopping@{HOST}"]["state"] == "open"
        assert status["circuit_breakers"][f"OrderCreate@{HOST}"]["state"] == "closed"

    @pytest.mark.asyncio
    async def test_business_error_in_success_body(self, gateway, provider, credentials,
                                                  order_request):
        provider.queue("OrderCreate", (200, BUSINESS_ERROR_BODY))

        result = await gateway.order_create(order_request, credentials)

        assert result.success is False
        assert result.error.code == "NDC_ERROR"
        assert result.error.message == "No availability on selected flight"
        assert result.error.provider_errors[0].code == "911"
        assert result.error.retryable is False
        assert result.meta.attempts == 1

    @pytest.mark.asyncio
    async def test_business_error_in_client_error_body(self, gateway, provider, credentials):
        provider.queue("OrderRetrieve", (400, '{"errors": [{"code": "OR-1", "message": "Unknown order"}]}'))

        result = await gateway.order_retrieve(OrderRetrieveRequest(order_id="ORD-1"), credentials)

        assert result.error.code == "NDC_ERROR"
        assert result.error.details["status_code"] == 400
        assert result.error.provider_errors[0].message == "Unknown order"

    @pytest.mark.asyncio
    async def test_provider_warnings_kept(self, gateway, provider, credentials, shopping_request):
        provider.queue("AirShopping", (200, "<AirShoppingRS><Warning Code='W1'>Cached fares</Warning></AirShoppingRS>"))

        result = await gateway.air_shopping(shopping_request, credentials)

        assert result.success is True
        assert result.data.warnings[0].message == "Cached fares"

    @pytest.mark.asyncio
    async def test_order_create_not_retried(self, gateway, provider, credentials, order_request):
        provider.queue("OrderCreate", (503, "Service Unavailable"))

        result = await gateway.order_create(order_request, credentials)

        assert result.success is False
        assert result.error.retryable is False
        assert result.error.details["retry_suppressed"] == "non_idempotent"
        assert len(provider.calls("OrderCreate")) == 1

    @pytest.mark.asyncio
    async def test_order_create_timeout_is_final(self, gateway, provider, credentials, order_request):
        provider.queue("OrderCreate", httpx.ReadTimeout("read timed out"))

        result = await gateway.order_create(order_request, credentials)

        assert result.success is False
        assert result.error.code == "NDC_TIMEOUT"
        assert result.error.retryable is False
        assert result.error.details["classified_retryable"] is True
        assert result.meta.attempts == 1
        assert len(provider.calls("OrderCreate")) == 1

    @pytest.mark.asyncio
    async def test_order_create_retried_with_idempotency_key(self, gateway, provider, credentials,
                                                             order_request):
        provider.queue("OrderCreate", (503, "Service Unavailable"), (200, "<OrderViewRS/>"))

        result = await gateway.order_create(order_request, credentials, idempotency_key="booking-77")

        assert result.success is True
        calls = provider.calls("OrderCreate")
        assert len(calls) == 2
        assert all(call.headers["Idempotency-Key"] == "booking-77" for call in calls)

    @pytest.mark.asyncio
    async def test_rejected_bearer_refreshed_once(self, gateway, provider, credentials,
                                                  shopping_request):
        provider.queue("AirShopping", (401, "Token expired"), (200, "<AirShoppingRS/>"))

        result = await gateway.air_shopping(shopping_request, credentials)

        assert result.success is True
        assert len(provider.calls("Auth")) == 2
        assert provider.calls("AirShopping")[1].headers["Authorization"] == "Bearer token-2"
        assert result.meta.attempts == 2

    @pytest.mark.asyncio
    async def test_auth_failure_surfaces_in_envelope(self, gateway, provider, credentials,
                                                     shopping_request):
        provider.queue("Auth", (401, "Invalid credentials"))

        result = await gateway.air_shopping(shopping_request, credentials)

        assert result.success is False
        assert result.error.code == "NDC_AUTH_FAILED"
        assert result.error.retryable is False
        assert result.meta.token_info.status == TokenStatus.NONE
        assert provider.calls("AirShopping") == []

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, gateway, provider, credentials, shopping_request):
        token = CancellationToken()
        token.cancel("user closed the search")

        result = await gateway.air_shopping(shopping_request, credentials, cancel_token=token)

        assert result.error.code == "CANCELLED"
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self, provider, credentials, shopping_request):
        token = CancellationToken()

        async def cancelling_sleep(delay):
            token.cancel()
            await asyncio.sleep(0)

        gateway = build_gateway(
            GatewaySettings(retry_jitter=0.0),
            http_client=provider.client(),
            metrics=MetricsCollector("test"),
            retry_executor=RetryExecutor(sleep=cancelling_sleep)
        )
        provider.queue("AirShopping", (503, "Service Unavailable"))

        result = await gateway.air_shopping(shopping_request, credentials, cancel_token=token)

        assert result.error.code == "CANCELLED"
        assert len(provider.calls("AirShopping")) == 1

    @pytest.mark.asyncio
    async def test_deadline_bounds_whole_call(self, gateway, provider, credentials, shopping_request):
        provider.queue("AirShopping", (503, "Service Unavailable"))
        gateway.retry_policies[NdcOperation.AIR_SHOPPING.value] = RetryPolicy(
            max_attempts=3, base_delay=30.0
        )

        result = await gateway.air_shopping(shopping_request, credentials, timeout=5.0)

        assert result.success is False
        assert result.error.details["exhausted"] is True
        assert len(provider.calls("AirShopping")) == 1

    @pytest.mark.asyncio
    async def test_parser_applied_to_success(self, gateway, provider, credentials, shopping_request):
        provider.queue("AirShopping", (200, "<AirShoppingRS><Offers/></AirShoppingRS>"))

        result = await gateway.call(
            NdcOperation.AIR_SHOPPING,
            shopping_request,
            credentials,
            parser=lambda response: {"length": len(response.body)}
        )

        assert result.data == {"length": 40}

    @pytest.mark.asyncio
    async def test_unexpected_parser_error_becomes_internal(self, gateway, credentials, shopping_request):
        def broken(response):
            raise RuntimeError("parser bug")

        result = await gateway.call(NdcOperation.AIR_SHOPPING, shopping_request, credentials, parser=broken)

        assert result.error.code == "INTERNAL_ERROR"
        assert result.error.details["exception_type"] == "RuntimeError"

    @pytest.mark.asyncio
    async def test_authenticate(self, gateway, credentials):
        result = await gateway.authenticate(credentials, correlation_id="login-1")

        assert result.success is True
        assert isinstance(result.data, TokenInfo)
        assert result.data.status == TokenStatus.VALID
        assert result.meta.operation == "Auth"

        payload = result.model_dump(mode="json", by_alias=True, exclude_none=True)
        assert payload["data"]["credentialHash"] == credentials.credential_hash
        assert "token" not in payload["data"]
        assert payload["meta"]["correlationId"] == "login-1"

    @pytest.mark.asyncio
    async def test_authenticate_force_refresh(self, gateway, provider, credentials):
        await gateway.authenticate(credentials)
        await gateway.authenticate(credentials)
        await gateway.authenticate(credentials, force_refresh=True)

        assert len(provider.calls("Auth")) == 2

    @pytest.mark.asyncio
    async def test_operation_methods_hit_their_endpoints(self, gateway, provider, credentials):
        offers = [SelectedOffer(offer_id="OFFER-1")]

        await gateway.offer_price(OfferPriceRequest(selected_offers=offers), credentials)
        await gateway.service_list(ServiceListRequest(selected_offers=offers), credentials)
        await gateway.seat_availability(SeatAvailabilityRequest(order_id="ORD-1"), credentials)
        await gateway.order_reshop(OrderReshopRequest(order_id="ORD-1"), credentials)
        await gateway.order_quote(OrderQuoteRequest(order_id="ORD-1"), credentials)
        await gateway.order_change(OrderChangeRequest(order_id="ORD-1"), credentials)
        await gateway.airline_profile(AirlineProfileRequest(owner_code="XX"), credentials)

        paths = [request.url.path for request in provider.requests if not request.url.path.endswith("/Auth")]
        assert paths == [
            "/ndc/Selling/r3.x/v21.3/OfferPrice",
            "/ndc/Selling/r3.x/v21.3/ServiceList",
            "/ndc/Selling/r3.x/v21.3/SeatAvailability",
            "/ndc/Servicing/r3.x/v21.3/OrderReshop",
            "/ndc/Servicing/r3.x/v21.3/OrderQuote",
            "/ndc/Servicing/r3.x/v21.3/OrderChange",
            "/ndc/Shopping/r3.x/v21.3/AirlineProfile",
        ]

    @pytest.mark.asyncio
    async def test_raw_xml_payload_sent_as_is(self, gateway, provider, credentials):
        request = OrderRetrieveRequest(order_id="ORD-1", raw_payload="<IATA_OrderRetrieveRQ/>")

        await gateway.order_retrieve(request, credentials)

        sent = provider.calls("OrderRetrieve")[0]
        assert sent.content == b"<IATA_OrderRetrieveRQ/>"
        assert sent.headers["Content-Type"] == "application/xml"

    @pytest.mark.asyncio
    async def test_status_and_reset(self, gateway, provider, credentials, shopping_request):
        provider.queue("AirShopping", (503, "Service Unavailable"))
        await gateway.air_shopping(shopping_request, credentials)
        key = f"AirShopping@{HOST}"

        status = gateway.get_status()
        assert status["circuit_breakers"][key]["state"] == "open"
        assert f"Auth@{HOST}" in status["auth_circuit_breakers"]
        assert status["token_cache"]["valid_tokens"] == 1

        assert gateway.reset_breaker(key) is True
        assert gateway.get_status()["circuit_breakers"][key]["state"] == "closed"
        assert gateway.reset_breaker("Unknown@host") is False

    @pytest.mark.asyncio
    async def test_operation_metrics(self, gateway, provider, credentials, shopping_request):
        provider.queue("AirShopping", (200, "<AirShoppingRS/>"), (400, "Bad request"))

        await gateway.air_shopping(shopping_request, credentials)
        await gateway.air_shopping(shopping_request, credentials)

        registry = gateway.metrics.registry
        assert registry.get_sample_value(
            "ndc_operations_total", {"operation": "AirShopping", "status": "success"}) == 1.0
        assert registry.get_sample_value(
            "ndc_operations_total", {"operation": "AirShopping", "status": "error"}) == 1.0
        assert registry.get_sample_value(
            "ndc_errors_total", {"operation": "AirShopping", "error_kind": "http_status"}) == 1.0

    @pytest.mark.asyncio
    async def test_failed_call_exchanges_recorded(self, gateway, provider, credentials):
        provider.queue("OrderRetrieve", (503, "Service Unavailable"))

        result = await gateway.order_retrieve(OrderRetrieveRequest(order_id="ORD-1"), credentials,
                                              correlation_id="session-audit")

        record = gateway.transactions.get(result.meta.transaction_id)
        assert record.correlation_id == "session-audit"
        assert record.success is False
        assert record.error_code == "NDC_HTTP_ERROR"
        assert "ORD-1" in record.request
        assert [(e.attempt, e.status_code, e.response) for e in record.exchanges] == [
            (1, 503, "Service Unavailable"),
            (2, 503, "Service Unavailable"),
            (3, 503, "Service Unavailable"),
        ]
        assert gateway.get_status()["transactions"]["total"] == 1

    @pytest.mark.asyncio
    async def test_timeout_exchange_recorded_without_response(self, gateway, provider, credentials,
                                                             order_request):
        provider.queue("OrderCreate", httpx.ReadTimeout("read timed out"))

        result = await gateway.order_create(order_request, credentials)

        exchange = gateway.transactions.get(result.meta.transaction_id).exchanges[0]
        assert exchange.status_code is None
        assert exchange.response is None
        assert exchange.error_code == "NDC_TIMEOUT"

    @pytest.mark.asyncio
    async def test_recorded_payment_data_masked(self, gateway, provider, credentials):
        request = OrderCreateRequest(
            selected_offers=[SelectedOffer(offer_id="OFFER-1")],
            passengers=[Passenger(pax_id="PAX1", given_name="Ada", surname="Lovelace")],
            raw_payload="<IATA_OrderCreateRQ><CardNumber>4111111111111111</CardNumber>"
                        "<SeriesCode>737</SeriesCode></IATA_OrderCreateRQ>"
        )

        result = await gateway.order_create(request, credentials, correlation_id="session-pay")

        assert result.success is True
        assert provider.calls("OrderCreate")[0].content.decode().count("4111111111111111") == 1
        record = gateway.transactions.by_correlation("session-pay")[0]
        assert "<CardNumber>4111********1111</CardNumber>" in record.request
        assert "737" not in record.request
        assert record.success is True

    @pytest.mark.asyncio
    async def test_context_manager_closes(self, settings, credentials):
        async with build_gateway(settings, metrics=MetricsCollector("test")) as gateway:
            assert gateway.get_status()["circuit_breakers"] == {}

        assert gateway.transport._client.is_closed is True
