"""
Typed models for the NDC distribution service.

Request models describe what a caller asks for; the provider payload built
from them is opaque to the gateway. Envelope models are immutable once
built and serialize with camelCase keys.
"""

import hashlib
import json
from datetime import date
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ndc_shared.errors import ErrorResponse, ProviderError


T = TypeVar("T")


class NdcOperation(str, Enum):
    """Provider operations, named as the provider names its endpoints."""
    AUTH = "Auth"
    AIR_SHOPPING = "AirShopping"
    AIRLINE_PROFILE = "AirlineProfile"
    OFFER_PRICE = "OfferPrice"
    SERVICE_LIST = "ServiceList"
    SEAT_AVAILABILITY = "SeatAvailability"
    ORDER_CREATE = "OrderCreate"
    ORDER_RETRIEVE = "OrderRetrieve"
    ORDER_RESHOP = "OrderReshop"
    ORDER_QUOTE = "OrderQuote"
    ORDER_CHANGE = "OrderChange"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenCamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class NdcCredentials(CamelModel):
    """Provider credentials for one agency/API identity."""

    domain: str
    api_id: str
    password: str = Field(repr=False)
    subscription_key: str = Field(repr=False)

    @property
    def credential_hash(self) -> str:
        """Stable short hash used as cache scope and in logs."""
        data = f"{self.domain}:{self.api_id}:{self.password}"
        return hashlib.sha256(data.encode("utf-8")).hexdigest()[:16]


class TokenStatus(str, Enum):
    VALID = "VALID"
    EXPIRING_SOON = "EXPIRING_SOON"
    EXPIRED = "EXPIRED"
    NONE = "NONE"


class TokenInfo(FrozenCamelModel):
    """Token metadata reported to callers. The bearer value is never serialized."""

    token: Optional[str] = Field(default=None, exclude=True, repr=False)
    status: TokenStatus
    authenticated: bool
    expires_in: int = 0
    expires_at: Optional[str] = None
    credential_hash: str


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class DistributionChain(CamelModel):
    owner_code: Optional[str] = None
    seller_org_code: Optional[str] = None
    seller_org_name: Optional[str] = None
    distributor_org_code: Optional[str] = None
    distributor_org_name: Optional[str] = None
    country_code: Optional[str] = None
    city_code: Optional[str] = None


class PassengerCount(CamelModel):
    ptc: str = "ADT"
    count: int = Field(default=1, ge=0)


class SelectedOffer(CamelModel):
    offer_id: str
    owner_code: Optional[str] = None
    offer_item_ids: List[str] = Field(default_factory=list)


class Passenger(CamelModel):
    pax_id: str
    ptc: str = "ADT"
    given_name: str
    surname: str
    birthdate: Optional[date] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class Payment(CamelModel):
    method: str
    amount: float
    currency: str
    card_type: Optional[str] = None


class NdcRequest(CamelModel):
    """Base for operation requests.

    ``raw_payload`` carries a pre-built provider document that is sent as is;
    otherwise the typed fields are sent as a JSON document.
    """

    raw_payload: Optional[str] = None
    distribution_chain: Optional[DistributionChain] = None

    def to_payload(self) -> str:
        if self.raw_payload is not None:
            return self.raw_payload
        body = self.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"raw_payload"})
        return json.dumps(body, sort_keys=True)

    @property
    def content_type(self) -> str:
        if self.raw_payload is not None and self.raw_payload.lstrip().startswith("<"):
            return "application/xml"
        return "application/json"


class AirShoppingRequest(NdcRequest):
    origin: str = Field(min_length=3, max_length=3)
    destination: str = Field(min_length=3, max_length=3)
    departure_date: date
    return_date: Optional[date] = None
    passengers: List[PassengerCount] = Field(default_factory=lambda: [PassengerCount()])
    cabin_preference: Optional[str] = None
    direct_flights_only: bool = False
    promo_code: Optional[str] = None


class OfferPriceRequest(NdcRequest):
    selected_offers: List[SelectedOffer]
    shopping_response_id: Optional[str] = None
    payment_card_type: Optional[str] = None


class ServiceListRequest(NdcRequest):
    selected_offers: List[SelectedOffer] = Field(default_factory=list)
    order_id: Optional[str] = None
    shopping_response_id: Optional[str] = None


class SeatAvailabilityRequest(NdcRequest):
    selected_offers: List[SelectedOffer] = Field(default_factory=list)
    order_id: Optional[str] = None
    segment_ids: List[str] = Field(default_factory=list)


class OrderCreateRequest(NdcRequest):
    selected_offers: List[SelectedOffer]
    passengers: List[Passenger]
    payments: List[Payment] = Field(default_factory=list)
    shopping_response_id: Optional[str] = None


class OrderRetrieveRequest(NdcRequest):
    order_id: str
    owner_code: Optional[str] = None


class OrderReshopRequest(NdcRequest):
    order_id: str
    owner_code: Optional[str] = None
    order_item_ids: List[str] = Field(default_factory=list)
    new_departure_date: Optional[date] = None


class OrderQuoteRequest(NdcRequest):
    order_id: str
    owner_code: Optional[str] = None
    selected_offers: List[SelectedOffer] = Field(default_factory=list)


class OrderChangeRequest(NdcRequest):
    order_id: str
    owner_code: Optional[str] = None
    selected_offers: List[SelectedOffer] = Field(default_factory=list)
    payments: List[Payment] = Field(default_factory=list)
    cancel_order_item_ids: List[str] = Field(default_factory=list)


class AirlineProfileRequest(NdcRequest):
    owner_code: Optional[str] = None


class AuthRequest(CamelModel):
    force_refresh: bool = False


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class ProviderResponse(FrozenCamelModel):
    """Successful provider answer, body untouched."""

    status_code: int
    body: str
    content_type: Optional[str] = None
    warnings: List[ProviderError] = Field(default_factory=list)


class ApiError(FrozenCamelModel):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    provider_errors: Optional[List[ProviderError]] = None
    retryable: bool

    @classmethod
    def from_response(cls, response: ErrorResponse) -> "ApiError":
        return cls(
            code=response.code,
            message=response.message,
            details=response.details or None,
            provider_errors=response.provider_errors or None,
            retryable=response.retryable
        )


class ResponseMeta(FrozenCamelModel):
    transaction_id: str
    correlation_id: str
    timestamp: str
    duration: float
    operation: str
    attempts: int = 0
    token_info: Optional[TokenInfo] = None


class ApiResult(FrozenCamelModel, Generic[T]):
    """Uniform success/error envelope returned by every gateway method."""

    success: bool
    data: Optional[T] = None
    error: Optional[ApiError] = None
    meta: ResponseMeta
