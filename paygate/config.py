"""
x402 PayGate Configuration Management
Uses pydantic-settings for type-safe environment variable loading
"""

from typing import Dict, List, Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewayConfig(BaseSettings):
    """Configuration for the payment gate and its management API"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Server Configuration
    gateway_host: str = Field(default="0.0.0.0", description="Host to bind the server to")
    gateway_port: int = Field(default=8402, description="Port to bind the server to")

    # Gate Routing
    exempt_paths: List[str] = Field(
        default=["/health", "/x402.json", "/docs", "/openapi.json", "/redoc"],
        description="Path prefixes forwarded without payment"
    )
    accepted_methods: List[str] = Field(
        default=["Bearer", "X402"],
        description="Authorization methods that may carry a payment token"
    )

    # Pricing
    price_per_request: int = Field(default=1000, description="Default price in smallest currency unit")
    currency: str = Field(default="USD")
    asset: str = Field(
        default="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        description="Asset contract the offers settle in"
    )
    description: str = Field(default="", description="Offer description, defaults to the price sentence")
    max_timeout_seconds: int = Field(default=60)
    endpoint_prices: Dict[str, int] = Field(
        default_factory=dict,
        description="Per-endpoint prices keyed by 'METHOD:/path', '/path' or '/prefix/*'"
    )

    # Schemes and Networks
    scheme: str = Field(default="exact", description="Default payment scheme")
    network: str = Field(default="eip155:84532", description="Default CAIP-2 network")
    accepted_schemes: List[str] = Field(default_factory=list)
    accepted_networks: List[str] = Field(default_factory=list)
    endpoint_schemes: Dict[str, List[str]] = Field(default_factory=dict)
    endpoint_networks: Dict[str, List[str]] = Field(default_factory=dict)

    # Recipients
    pay_to: str = Field(default="", description="Default recipient address")
    payment_addresses: Dict[str, str] = Field(
        default_factory=dict,
        description="Recipient overrides keyed by network"
    )

    # Facilitators
    facilitator_url: str = Field(default="https://x402.org/facilitator")
    facilitator_urls: Dict[str, str] = Field(
        default_factory=dict,
        description="Facilitator overrides keyed by network or network wildcard"
    )
    facilitator_api_key: str = Field(default="")
    facilitator_timeout: float = Field(default=10.0, description="Timeout in seconds")

    # Opaque Tokens
    token_prefix: str = Field(default="", description="Accept tokens with this prefix (testing only)")
    static_tokens: List[str] = Field(default_factory=list)
    token_verify_url: str = Field(default="")
    token_verify_api_key: str = Field(default="")

    # Card Processor
    stripe_secret_key: str = Field(default="")
    stripe_webhook_secret: str = Field(default="")
    stripe_api_base: str = Field(default="https://api.stripe.com/v1")
    stripe_sandbox: bool = Field(default=True)

    # Sessions
    sessions_enabled: bool = Field(default=True)
    session_default_duration: int = Field(default=3600, description="Seconds")
    session_default_max_requests: int = Field(default=100)
    session_price_per_hour: int = Field(default=100000)
    session_price_per_request: int = Field(default=1000)

    # Budgets
    budgets_enabled: bool = Field(default=True)
    budget_default_ttl: int = Field(default=7 * 24 * 3600, description="Seconds")
    require_payment_for_grants: bool = Field(
        default=True,
        description="Verify a payment proof before creating sessions or budgets"
    )

    # Metering
    metering_enabled: bool = Field(default=True)
    metering_capacity: int = Field(default=100000)
    metering_currency: str = Field(default="USDC")

    # Idempotency
    idempotency_enabled: bool = Field(default=True)
    idempotency_ttl: int = Field(default=24 * 3600, description="Seconds")

    # AI Agents
    agent_detection_enabled: bool = Field(default=True)
    agent_budget_awareness: bool = Field(default=True)
    agent_cost_estimation: bool = Field(default=True)
    agent_retry_hints: bool = Field(default=True)
    agent_retry_after: int = Field(default=5, description="Seconds suggested before retrying")
    agent_batch_pricing: bool = Field(default=True)
    agent_batch_discount: int = Field(default=10, description="Percent off per item")
    agent_min_batch_size: int = Field(default=5)

    # Management API
    management_prefix: str = Field(default="/x402")
    admin_api_key: str = Field(default="", description="Protects metrics when set")
    maintenance_interval: int = Field(default=60, description="Seconds between sweeps")

    # CORS Configuration
    cors_origins: List[str] = Field(default=["*"])

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Development
    debug: bool = Field(default=False)

    @field_validator("price_per_request", "session_price_per_hour", "session_price_per_request")
    @classmethod
    def validate_price(cls, v: int) -> int:
        """Prices are non-negative amounts in the smallest unit"""
        if v < 0:
            raise ValueError("price must be non-negative")
        return v

    @field_validator("endpoint_prices")
    @classmethod
    def validate_endpoint_prices(cls, v: Dict[str, int]) -> Dict[str, int]:
        for key, price in v.items():
            if price < 0:
                raise ValueError(f"price for {key} must be non-negative")
        return v

    @field_validator(
        "metering_capacity",
        "idempotency_ttl",
        "session_default_duration",
        "session_default_max_requests",
        "budget_default_ttl",
        "maintenance_interval",
        "max_timeout_seconds",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @field_validator("agent_batch_discount")
    @classmethod
    def validate_discount(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError("discount must be between 0 and 100")
        return v

    @field_validator("management_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        """Normalize to a leading slash with no trailing slash"""
        v = "/" + v.strip("/")
        return v

    @property
    def effective_schemes(self) -> List[str]:
        return self.accepted_schemes or [self.scheme]

    @property
    def effective_networks(self) -> List[str]:
        return self.accepted_networks or [self.network]

    def offer_description(self, price: int) -> str:
        if self.description:
            return self.description
        return f"Payment of {price} {self.currency} required"

    def recipient_for(self, network: str) -> str:
        return self.payment_addresses.get(network, self.pay_to)


# Singleton instance
_gateway_config: Optional[GatewayConfig] = None


def get_gateway_config() -> GatewayConfig:
    """Get or create gateway config singleton"""
    global _gateway_config
    if _gateway_config is None:
        _gateway_config = GatewayConfig()
    return _gateway_config


def reset_gateway_config() -> None:
    """Drop the cached config so the next access reloads the environment"""
    global _gateway_config
    _gateway_config = None
