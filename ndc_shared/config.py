"""
Shared configuration management for the NDC distribution gateway.
"""

from typing import Dict, FrozenSet, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ENDPOINTS: Dict[str, str] = {
    "Auth": "/Selling/r3.x/Auth",
    "AirShopping": "/Shopping/r3.x/v21.3/AirShopping",
    "AirlineProfile": "/Shopping/r3.x/v21.3/AirlineProfile",
    "OfferPrice": "/Selling/r3.x/v21.3/OfferPrice",
    "ServiceList": "/Selling/r3.x/v21.3/ServiceList",
    "SeatAvailability": "/Selling/r3.x/v21.3/SeatAvailability",
    "OrderCreate": "/Selling/r3.x/v21.3/OrderCreate",
    "OrderRetrieve": "/Servicing/r3.x/v21.3/OrderRetrieve",
    "OrderReshop": "/Servicing/r3.x/v21.3/OrderReshop",
    "OrderQuote": "/Servicing/r3.x/v21.3/OrderQuote",
    "OrderChange": "/Servicing/r3.x/v21.3/OrderChange",
}

DEFAULT_IDEMPOTENT_OPERATIONS = frozenset({
    "AirShopping",
    "AirlineProfile",
    "OfferPrice",
    "ServiceList",
    "SeatAvailability",
    "OrderRetrieve",
    "OrderReshop",
    "OrderQuote",
})


class GatewaySettings(BaseSettings):
    """Gateway configuration, read from ``NDC_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="NDC_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"
    service_name: str = "ndc"

    # Provider
    provider_env: Literal["UAT", "PROD"] = "UAT"
    uat_base_url: str = "https://ndc-api-uat.example.com/ndc"
    uat_auth_url: str = "https://ndc-api-uat.example.com/ndc/api"
    uat_env_header: str = "uat"
    prod_base_url: str = "https://ndc-api.example.com/ndc"
    prod_auth_url: str = "https://ndc-api.example.com/ndc/api"
    prod_env_header: str = "prod"
    endpoints: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_ENDPOINTS))

    # Transport
    request_timeout: float = 45.0
    operation_timeouts: Dict[str, float] = Field(default_factory=dict)
    max_connections: int = 50
    # Overall budget for one inbound API call, retries and backoff included
    call_deadline: Optional[float] = 120.0

    # Circuit breaker (data operations)
    breaker_failure_threshold: int = 5
    breaker_success_threshold: int = 1
    breaker_cooldown: float = 30.0
    breaker_cooldown_multiplier: float = 1.0
    breaker_max_cooldown: float = 300.0
    breaker_window_seconds: float = 60.0
    breaker_failure_rate_threshold: Optional[float] = None
    breaker_minimum_calls: int = 10

    # Retry (data operations)
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_multiplier: float = 2.0
    retry_max_delay: float = 10.0
    retry_jitter: float = 0.3

    # Auth endpoint resilience
    auth_breaker_failure_threshold: int = 3
    auth_breaker_cooldown: float = 30.0
    auth_retry_max_attempts: int = 2
    auth_retry_base_delay: float = 0.5
    auth_retry_max_delay: float = 5.0

    # Token lifecycle
    token_default_validity: float = 1800.0
    token_safety_margin: float = 30.0
    token_expiry_warning: float = 300.0

    idempotent_operations: FrozenSet[str] = DEFAULT_IDEMPOTENT_OPERATIONS

    # Transaction log
    transaction_log_size: int = 1000
    mask_sensitive_data: bool = True

    @property
    def base_url(self) -> str:
        return self.uat_base_url if self.provider_env == "UAT" else self.prod_base_url

    @property
    def auth_url(self) -> str:
        return self.uat_auth_url if self.provider_env == "UAT" else self.prod_auth_url

    @property
    def env_header(self) -> Dict[str, str]:
        """Environment selector header attached to data calls."""
        if self.provider_env == "UAT":
            return {"NDCUAT": self.uat_env_header}
        return {"NDCPROD": self.prod_env_header}

    def endpoint_url(self, operation: str) -> str:
        """Absolute URL for an operation; Auth lives on the auth host."""
        path = self.endpoints.get(operation)
        if path is None:
            raise KeyError(f"No endpoint configured for operation {operation}")
        root = self.auth_url if operation == "Auth" else self.base_url
        return f"{root.rstrip('/')}{path}"

    def timeout_for(self, operation: str) -> float:
        return self.operation_timeouts.get(operation, self.request_timeout)


def get_settings(**overrides) -> GatewaySettings:
    """Build settings from the environment, with explicit overrides winning."""
    return GatewaySettings(**overrides)
