"""
Delivery rule configuration documents - stored as JSONB on DeliveryRule.

Each variant family is a tagged union keyed by "type":
- auth:           none | api_key | basic | bearer | oauth1 | oauth2 | custom_headers
- transform:      passthrough | mapping | script
- delivery_mode:  immediate | delayed | recurring
"""
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter, model_validator

MAX_DELAY_SECONDS = 365 * 24 * 3600
MIN_RECURRING_INTERVAL_SECONDS = 60
MAX_OCCURRENCES = 365


# ---------------------------------------------------------------------------
# Outbound auth
# ---------------------------------------------------------------------------


class NoAuth(BaseModel):
    type: Literal["none"] = "none"


class ApiKeyAuth(BaseModel):
    type: Literal["api_key"] = "api_key"
    api_key: str
    header_name: str = "X-API-Key"
    location: Literal["header", "query"] = "header"
    query_param: str = "api_key"


class BasicAuth(BaseModel):
    type: Literal["basic"] = "basic"
    username: str
    password: str


class BearerAuth(BaseModel):
    type: Literal["bearer"] = "bearer"
    token: str


class OAuth1Auth(BaseModel):
    type: Literal["oauth1"] = "oauth1"
    consumer_key: str
    consumer_secret: str
    token: str = ""
    token_secret: str = ""
    realm: Optional[str] = None
    signature_method: Literal["HMAC-SHA256", "HMAC-SHA1"] = "HMAC-SHA256"


class OAuth2Auth(BaseModel):
    """client_credentials grant; the token is cached until shortly before expiry."""
    type: Literal["oauth2"] = "oauth2"
    token_url: str
    client_id: str
    client_secret: str
    scope: Optional[str] = None
    audience: Optional[str] = None
    credentials_in: Literal["body", "header"] = "body"


class CustomHeadersAuth(BaseModel):
    type: Literal["custom_headers"] = "custom_headers"
    headers: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _not_empty(self):
        if not self.headers:
            raise ValueError("custom_headers auth needs at least one header")
        return self


AuthConfig = Annotated[
    Union[NoAuth, ApiKeyAuth, BasicAuth, BearerAuth, OAuth1Auth, OAuth2Auth, CustomHeadersAuth],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Transformation
# ---------------------------------------------------------------------------


class LookupPolicy(BaseModel):
    """What lookup() returns for a code missing from the tenant's table."""
    unmapped: Literal["passthrough", "fail", "default"] = "passthrough"
    default_value: Optional[Any] = None


class FieldMapping(BaseModel):
    source: str
    target: str
    coerce: Optional[
        Literal["trim", "upper", "lower", "string", "number", "integer", "boolean", "date", "lookup"]
    ] = None
    default: Optional[Any] = None
    lookup_type: Optional[str] = None
    date_format: Optional[str] = None

    @property
    def has_default(self) -> bool:
        return self.default is not None

    @model_validator(mode="after")
    def _lookup_needs_type(self):
        if self.coerce == "lookup" and not self.lookup_type:
            raise ValueError("lookup coercion requires lookup_type")
        return self


class PassthroughTransform(BaseModel):
    type: Literal["passthrough"] = "passthrough"


class MappingTransform(BaseModel):
    type: Literal["mapping"] = "mapping"
    mappings: list[FieldMapping] = Field(default_factory=list)
    static_fields: dict[str, Any] = Field(default_factory=dict)
    include_unmapped: bool = False
    lookups: LookupPolicy = Field(default_factory=LookupPolicy)


class ScriptTransform(BaseModel):
    type: Literal["script"] = "script"
    script: str
    timeout_seconds: Optional[float] = Field(default=None, gt=0, le=60)
    lookups: LookupPolicy = Field(default_factory=LookupPolicy)


TransformConfig = Annotated[
    Union[PassthroughTransform, MappingTransform, ScriptTransform],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Delivery mode
# ---------------------------------------------------------------------------


class ImmediateMode(BaseModel):
    type: Literal["immediate"] = "immediate"


class DelayedMode(BaseModel):
    """Fire once: a fixed delay after the event, or at a timestamp read from the payload."""
    type: Literal["delayed"] = "delayed"
    delay_seconds: Optional[int] = Field(default=None, ge=0, le=MAX_DELAY_SECONDS)
    at_path: Optional[str] = None
    offset_seconds: int = 0

    @model_validator(mode="after")
    def _one_anchor(self):
        if (self.delay_seconds is None) == (self.at_path is None):
            raise ValueError("delayed mode needs exactly one of delay_seconds or at_path")
        return self


class RecurringMode(BaseModel):
    type: Literal["recurring"] = "recurring"
    interval_seconds: Optional[int] = Field(default=None, ge=MIN_RECURRING_INTERVAL_SECONDS)
    cron: Optional[str] = None
    first_delay_seconds: int = Field(default=0, ge=0, le=MAX_DELAY_SECONDS)
    max_occurrences: Optional[int] = Field(default=None, ge=1, le=MAX_OCCURRENCES)
    end_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _recurrence(self):
        if (self.interval_seconds is None) == (self.cron is None):
            raise ValueError("recurring mode needs exactly one of interval_seconds or cron")
        if self.max_occurrences is None and self.end_at is None:
            raise ValueError("recurring mode needs max_occurrences or end_at")
        if self.cron is not None:
            from croniter import croniter
            if not croniter.is_valid(self.cron):
                raise ValueError(f"Invalid cron expression: {self.cron!r}")
        return self


DeliveryModeConfig = Annotated[
    Union[ImmediateMode, DelayedMode, RecurringMode],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Retry and rate limit
# ---------------------------------------------------------------------------


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=3, ge=1, le=20, description="Total attempts allowed")
    validation: Literal["strict", "lax"] = "strict"
    # Consecutive infrastructure failures (5xx, 429, network, timeout) that
    # open the rule's circuit; 0 disables the breaker
    circuit_threshold: int = Field(default=10, ge=0, le=1000)
    circuit_recovery_seconds: int = Field(default=300, ge=1, le=86400)


class RateLimitConfig(BaseModel):
    max_requests: int = Field(..., ge=1)
    window_ms: int = Field(..., ge=1000)


# ---------------------------------------------------------------------------
# Rule documents
# ---------------------------------------------------------------------------


class RuleDefinition(BaseModel):
    """Full editable definition of a delivery rule."""
    tenant_id: Optional[str] = Field(default=None, description="None = global default rule")
    overrides_rule_id: Optional[str] = None
    name: str
    event_type: str = Field(..., description="Exact event type or '*'")
    condition: Optional[str] = None
    target_url: str
    http_method: Literal["POST", "PUT", "PATCH", "GET", "DELETE"] = "POST"
    content_type: Literal["application/json", "application/x-www-form-urlencoded"] = "application/json"
    auth: AuthConfig = Field(default_factory=NoAuth)
    transform: TransformConfig = Field(default_factory=PassthroughTransform)
    delivery_mode: DeliveryModeConfig = Field(default_factory=ImmediateMode)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    rate_limit: Optional[RateLimitConfig] = None
    signing_enabled: bool = False
    signing_secrets: list[str] = Field(default_factory=list)
    timeout_ms: int = Field(default=10000, ge=100, le=120000)
    is_active: bool = True


_auth_adapter = TypeAdapter(AuthConfig)
_transform_adapter = TypeAdapter(TransformConfig)
_mode_adapter = TypeAdapter(DeliveryModeConfig)


def parse_auth(data: Optional[dict]):
    return _auth_adapter.validate_python(data or {"type": "none"})


def parse_transform(data: Optional[dict]):
    return _transform_adapter.validate_python(data or {"type": "passthrough"})


def parse_delivery_mode(data: Optional[dict]):
    return _mode_adapter.validate_python(data or {"type": "immediate"})


def parse_retry_policy(data: Optional[dict]) -> RetryPolicy:
    return RetryPolicy.model_validate(data or {})


def parse_rate_limit(data: Optional[dict]) -> Optional[RateLimitConfig]:
    return RateLimitConfig.model_validate(data) if data else None
