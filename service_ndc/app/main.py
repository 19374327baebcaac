"""
NDC distribution service: HTTP boundary over the gateway client.
"""

from typing import Any, Dict, Optional, Tuple, Type

from fastapi import Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ndc_shared.base_service import BaseService
from ndc_shared.config import GatewaySettings, get_settings
from ndc_shared.errors import RequestValidationError, http_status_for
from service_ndc.app.client import NdcGatewayClient
from service_ndc.app.factory import build_gateway
from service_ndc.app.models import (
    AirlineProfileRequest,
    AirShoppingRequest,
    ApiResult,
    AuthRequest,
    NdcCredentials,
    NdcOperation,
    NdcRequest,
    OfferPriceRequest,
    OrderChangeRequest,
    OrderCreateRequest,
    OrderQuoteRequest,
    OrderReshopRequest,
    OrderRetrieveRequest,
    SeatAvailabilityRequest,
    ServiceListRequest,
)


CREDENTIAL_HEADERS = {
    "domain": "x-ndc-auth-domain",
    "api_id": "x-ndc-api-id",
    "password": "x-ndc-api-password",
    "subscription_key": "x-ndc-subscription-key",
}

ROUTES: Dict[str, Tuple[NdcOperation, Type[NdcRequest]]] = {
    "air-shopping": (NdcOperation.AIR_SHOPPING, AirShoppingRequest),
    "offer-price": (NdcOperation.OFFER_PRICE, OfferPriceRequest),
    "service-list": (NdcOperation.SERVICE_LIST, ServiceListRequest),
    "seat-availability": (NdcOperation.SEAT_AVAILABILITY, SeatAvailabilityRequest),
    "order-create": (NdcOperation.ORDER_CREATE, OrderCreateRequest),
    "order-retrieve": (NdcOperation.ORDER_RETRIEVE, OrderRetrieveRequest),
    "order-reshop": (NdcOperation.ORDER_RESHOP, OrderReshopRequest),
    "order-quote": (NdcOperation.ORDER_QUOTE, OrderQuoteRequest),
    "order-change": (NdcOperation.ORDER_CHANGE, OrderChangeRequest),
    "airline-profile": (NdcOperation.AIRLINE_PROFILE, AirlineProfileRequest),
}

def envelope_response(result: ApiResult) -> JSONResponse:
    """Serialize an envelope with an HTTP status mirroring its outcome."""
    if result.success:
        status_code = 200
    else:
        status_code = http_status_for(result.error.code)
    return JSONResponse(
        status_code=status_code,
        content=result.model_dump(mode="json", by_alias=True, exclude_none=True),
        headers={"X-Correlation-ID": result.meta.correlation_id}
    )


def extract_credentials(request: Request) -> NdcCredentials:
    values = {field: request.headers.get(header) for field, header in CREDENTIAL_HEADERS.items()}
    missing = [CREDENTIAL_HEADERS[field] for field, value in values.items() if not value]
    if missing:
        raise RequestValidationError(
            f"Missing required headers: {', '.join(missing)}",
            details={"missing_headers": missing}
        )
    return NdcCredentials(**values)


class NdcService(BaseService):
    """NDC distribution service implementation."""

    def __init__(self,
                 settings: Optional[GatewaySettings] = None,
                 gateway: Optional[NdcGatewayClient] = None):
        settings = settings or get_settings()
        if gateway is None:
            gateway = build_gateway(settings)
        self.gateway = gateway
        super().__init__(settings.service_name, 8000, settings=settings, metrics=gateway.metrics)

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.gateway.aclose()

        self._setup_ndc_routes()
        self.app.state.ndc_service = self

    def _setup_ndc_routes(self):
        """Set up NDC operation routes."""

        @self.app.post("/api/auth")
        async def authenticate(request: Request,
                               x_correlation_id: Optional[str] = Header(None)):
            """Exchange credentials for a provider token."""
            try:
                credentials = extract_credentials(request)
                auth_request = AuthRequest.model_validate(await self._json_body(request))
            except ValidationError as e:
                error = RequestValidationError(
                    "Invalid Auth request",
                    details={"errors": e.errors(include_url=False, include_context=False)}
                )
                return envelope_response(self.gateway.rejected(NdcOperation.AUTH.value, error, x_correlation_id))
            except RequestValidationError as e:
                return envelope_response(self.gateway.rejected(NdcOperation.AUTH.value, e, x_correlation_id))

            result = await self.gateway.authenticate(
                credentials,
                force_refresh=auth_request.force_refresh,
                correlation_id=x_correlation_id
            )
            return envelope_response(result)

        @self.app.post("/api/ndc/{operation_slug}")
        async def ndc_operation(operation_slug: str,
                                request: Request,
                                x_correlation_id: Optional[str] = Header(None),
                                idempotency_key: Optional[str] = Header(None)):
            """Run one provider operation."""
            route = ROUTES.get(operation_slug)
            if route is None:
                return JSONResponse(
                    status_code=404,
                    content={"code": "RESOURCE_NOT_FOUND",
                             "message": f"Unknown operation '{operation_slug}'",
                             "operations": sorted(ROUTES)}
                )
            operation, model = route

            try:
                credentials = extract_credentials(request)
                ndc_request = model.model_validate(await self._json_body(request))
            except ValidationError as e:
                error = RequestValidationError(
                    f"Invalid {operation.value} request",
                    details={"errors": e.errors(include_url=False, include_context=False)}
                )
                return envelope_response(self.gateway.rejected(operation.value, error, x_correlation_id))
            except RequestValidationError as e:
                return envelope_response(self.gateway.rejected(operation.value, e, x_correlation_id))

            result = await self.gateway.call(
                operation,
                ndc_request,
                credentials,
                correlation_id=x_correlation_id,
                idempotency_key=idempotency_key,
                timeout=self.config.call_deadline
            )
            return envelope_response(result)

        @self.app.get("/api/status")
        async def api_status():
            """Circuit breaker and token cache status."""
            return self.gateway.get_status()

        @self.app.get("/api/transactions")
        async def list_transactions(correlation_id: Optional[str] = Query(None),
                                    operation: Optional[str] = Query(None),
                                    success: Optional[bool] = Query(None),
                                    limit: int = Query(50, ge=1, le=1000)):
            """Recorded provider exchanges, newest first or by correlation id."""
            log = self.gateway.transactions
            if correlation_id:
                records = log.by_correlation(correlation_id)
            else:
                records = log.recent(limit=limit, operation=operation, success=success)
            return {"transactions": [record.to_dict() for record in records]}

        @self.app.get("/api/transactions/{transaction_id}")
        async def get_transaction(transaction_id: str):
            """One recorded transaction with masked request and responses."""
            record = self.gateway.transactions.get(transaction_id)
            if record is None:
                return JSONResponse(status_code=404, content={"code": "RESOURCE_NOT_FOUND",
                                                              "message": f"Unknown transaction '{transaction_id}'"})
            return record.to_dict()

        @self.app.post("/api/circuit-breakers/{key}/reset")
        async def reset_circuit_breaker(key: str):
            """Force a breaker back to closed."""
            if not self.gateway.reset_breaker(key):
                return JSONResponse(status_code=404, content={"code": "RESOURCE_NOT_FOUND",
                                                              "message": f"Unknown breaker '{key}'"})
            return {"breaker": key, "state": "closed"}

    async def _json_body(self, request: Request) -> Dict[str, Any]:
        raw = await request.body()
        if not raw:
            return {}
        try:
            body = await request.json()
        except ValueError as e:
            raise RequestValidationError("Request body is not valid JSON") from e
        if not isinstance(body, dict):
            raise RequestValidationError("Request body must be a JSON object")
        return body

    async def _check_dependencies(self) -> Dict[str, str]:
        """Report provider breakers that are not closed."""
        status = self.gateway.get_status()
        breakers = {**status["circuit_breakers"], **status["auth_circuit_breakers"]}
        return {name: ("ok" if state["state"] == "closed" else state["state"])
                for name, state in breakers.items()}


def create_app(settings: Optional[GatewaySettings] = None):
    """Create FastAPI application."""
    service = NdcService(settings)
    return service.app


if __name__ == "__main__":
    service = NdcService()
    service.run()
