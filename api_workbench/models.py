"""Internal data models for api-workbench.

All models use Pydantic v2. Value objects (headers, params, auth config,
prepared requests, execution responses, history records) are frozen; the
stored entities (requests, environments, collections) are mutated only
through their explicit methods, each of which bumps ``updated_at``.
"""

from __future__ import annotations

import base64
import math
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Generic, Mapping, Self, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

REDACTED = "********"

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_aware(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC so comparisons never mix naive and aware."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _pairs_to_rows(value: Any, key_name: str) -> Any:
    """Accept a {name: value} mapping where a list of rows is expected.

    YAML request files are much easier to write as mappings; rows keep
    their insertion order.
    """
    if isinstance(value, Mapping):
        return [{key_name: k, "value": v} for k, v in value.items()]
    return value


# =============================================================================
# Enumerations
# =============================================================================


class HttpMethod(str, Enum):
    """HTTP methods supported by request definitions."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"

    @property
    def supports_body(self) -> bool:
        return self in _BODY_METHODS


_BODY_METHODS = frozenset({HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH})


class BodyType(str, Enum):
    """Body content kind. Each maps to a canonical Content-Type."""

    NONE = "NONE"
    JSON = "JSON"
    XML = "XML"
    FORM_DATA = "FORM_DATA"
    RAW = "RAW"
    BINARY = "BINARY"

    @property
    def content_type(self) -> str:
        return _BODY_CONTENT_TYPES[self]

    @property
    def is_textual(self) -> bool:
        return self in _TEXTUAL_BODY_TYPES


_BODY_CONTENT_TYPES = {
    BodyType.NONE: "",
    BodyType.JSON: "application/json",
    BodyType.XML: "application/xml",
    BodyType.FORM_DATA: "application/x-www-form-urlencoded",
    BodyType.RAW: "text/plain",
    BodyType.BINARY: "application/octet-stream",
}

_TEXTUAL_BODY_TYPES = frozenset({BodyType.JSON, BodyType.XML, BodyType.FORM_DATA, BodyType.RAW})


class AuthType(str, Enum):
    """Closed set of supported auth kinds."""

    NONE = "NONE"
    BEARER_TOKEN = "BEARER_TOKEN"
    BASIC_AUTH = "BASIC_AUTH"
    API_KEY = "API_KEY"
    OAUTH2 = "OAUTH2"


class ErrorKind(str, Enum):
    """Coarse classification of transport failures (no response obtained)."""

    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection-refused"
    TLS_ERROR = "tls-error"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


# =============================================================================
# Value Objects
# =============================================================================


class Header(BaseModel):
    """One request or response header. Disabled headers are never sent."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    key: str = Field(description="Header name")
    value: str = Field(default="", description="Header value (None becomes empty)")
    enabled: bool = Field(default=True, description="Whether the header is sent")

    @field_validator("value", mode="before")
    @classmethod
    def coerce_missing_value(cls, v: Any) -> Any:
        return "" if v is None else v

    @classmethod
    def of(cls, key: str, value: str) -> Header:
        return cls(key=key, value=value)


class QueryParam(BaseModel):
    """One query parameter. Disabled parameters are never sent."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    key: str = Field(description="Parameter name")
    value: str = Field(default="", description="Parameter value (None becomes empty)")
    enabled: bool = Field(default=True, description="Whether the parameter is sent")

    @field_validator("value", mode="before")
    @classmethod
    def coerce_missing_value(cls, v: Any) -> Any:
        return "" if v is None else v


class EnvironmentVariable(BaseModel):
    """A named value available for {{placeholder}} resolution."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(description="Variable name referenced as {{name}}")
    value: str = Field(default="", description="Substituted value")
    enabled: bool = Field(default=True, description="Disabled variables are invisible to resolution")
    secret: bool = Field(default=False, description="Secret values are masked in repr")

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v: Any) -> Any:
        if v is None:
            return ""
        # YAML happily produces ints and bools for unquoted values
        if isinstance(v, (int, float, bool)):
            return str(v).lower() if isinstance(v, bool) else str(v)
        return v

    def __repr_args__(self):
        for name, value in super().__repr_args__():
            if name == "value" and self.secret:
                yield name, REDACTED
            else:
                yield name, value


_SECRET_AUTH_FIELDS = ("bearer_token", "basic_password", "api_key", "oauth2_access_token")


class AuthConfig(BaseModel):
    """Credentials for the selected auth kind.

    Only the fields relevant to the request's auth kind are populated.
    Secret fields are excluded from repr/str so they never reach logs.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    bearer_token: str | None = Field(default=None, repr=False)
    basic_username: str | None = Field(default=None)
    basic_password: str | None = Field(default=None, repr=False)
    api_key: str | None = Field(default=None, repr=False)
    api_key_header_name: str = Field(default="X-API-Key")
    api_key_location: str = Field(default="header", description="'header' or 'query'")
    oauth2_access_token: str | None = Field(default=None, repr=False)

    @field_validator("api_key_location")
    @classmethod
    def normalize_location(cls, v: str) -> str:
        return v.strip().lower()

    @classmethod
    def bearer(cls, token: str) -> AuthConfig:
        return cls(bearer_token=token)

    @classmethod
    def basic(cls, username: str, password: str) -> AuthConfig:
        return cls(basic_username=username, basic_password=password)

    @classmethod
    def api_key_auth(
        cls, key: str, header_name: str = "X-API-Key", location: str = "header"
    ) -> AuthConfig:
        return cls(api_key=key, api_key_header_name=header_name, api_key_location=location)

    @classmethod
    def oauth2(cls, access_token: str) -> AuthConfig:
        return cls(oauth2_access_token=access_token)

    @property
    def basic_auth_header(self) -> str | None:
        """`Basic <base64(username:password)>`, computed on every access."""
        if self.basic_username is None or self.basic_password is None:
            return None
        credentials = f"{self.basic_username}:{self.basic_password}".encode("utf-8")
        return "Basic " + base64.b64encode(credentials).decode("ascii")

    def redacted(self) -> dict[str, Any]:
        """Dump the populated fields with secret values masked."""
        data = self.model_dump(exclude_none=True)
        if self.api_key is None:
            data.pop("api_key_header_name", None)
            data.pop("api_key_location", None)
        for name in _SECRET_AUTH_FIELDS:
            if name in data:
                data[name] = REDACTED
        return data


# =============================================================================
# Stored Entities
# =============================================================================


class _Entity(BaseModel):
    """Shared identity handling: the id is set once, by the persistence layer."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: int | None = Field(default=None, description="Assigned once when persisted")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def assign_id(self, entity_id: int) -> None:
        if self.id is not None:
            raise RuntimeError(f"ID already assigned ({self.id})")
        BaseModel.__setattr__(self, "id", entity_id)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "id":
            raise AttributeError("id is set once through assign_id()")
        super().__setattr__(name, value)

    def _touch(self) -> None:
        self.updated_at = utcnow()


class ApiRequest(_Entity):
    """A stored, reusable request definition.

    Header and query lists keep insertion order. They are exposed as tuples
    and replaced only through set_headers/set_query_params.
    """

    name: str = Field(description="Display name")
    url: str = Field(description="URL template, may contain {{variables}}")
    method: HttpMethod = Field(default=HttpMethod.GET)
    description: str | None = Field(default=None)
    headers: tuple[Header, ...] = Field(default=())
    query_params: tuple[QueryParam, ...] = Field(default=())
    body: str | None = Field(default=None, description="Raw body payload")
    body_type: BodyType = Field(default=BodyType.NONE)
    auth_type: AuthType = Field(default=AuthType.NONE)
    auth_config: AuthConfig | None = Field(default=None)
    collection_id: int | None = Field(default=None)
    environment_id: int | None = Field(default=None)

    @field_validator("headers", "query_params", mode="before")
    @classmethod
    def accept_mappings(cls, v: Any) -> Any:
        if v is None:
            return ()
        return _pairs_to_rows(v, "key")

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("body_type", mode="before")
    @classmethod
    def default_body_type(cls, v: Any) -> Any:
        return BodyType.NONE if v is None else v

    @field_validator("auth_type", mode="before")
    @classmethod
    def default_auth_type(cls, v: Any) -> Any:
        return AuthType.NONE if v is None else v

    def rename(self, name: str) -> None:
        self.name = name
        self._touch()

    def update_url(self, url: str) -> None:
        self.url = url
        self._touch()

    def set_headers(self, headers: list[Header] | None) -> None:
        self.headers = tuple(headers or ())
        self._touch()

    def set_query_params(self, params: list[QueryParam] | None) -> None:
        self.query_params = tuple(params or ())
        self._touch()

    def update_body(self, body: str | None, body_type: BodyType | None) -> None:
        self.body = body
        self.body_type = body_type or BodyType.NONE
        self._touch()

    def configure_auth(self, auth_type: AuthType | None, auth_config: AuthConfig | None) -> None:
        self.auth_type = auth_type or AuthType.NONE
        self.auth_config = auth_config
        self._touch()

    @property
    def has_body(self) -> bool:
        return self.method.supports_body and bool(self.body)

    @property
    def enabled_headers(self) -> list[Header]:
        return [h for h in self.headers if h.enabled]

    @property
    def enabled_query_params(self) -> list[QueryParam]:
        return [p for p in self.query_params if p.enabled]


class Environment(_Entity):
    """A named set of variables used for placeholder resolution."""

    name: str = Field(description="Environment name")
    description: str | None = Field(default=None)
    active: bool = Field(default=False)
    variables: tuple[EnvironmentVariable, ...] = Field(default=())

    @field_validator("variables", mode="before")
    @classmethod
    def accept_mapping(cls, v: Any) -> Any:
        if v is None:
            return ()
        return _pairs_to_rows(v, "name")

    @classmethod
    def create(cls, name: str, description: str | None = None) -> Environment:
        return cls(name=name, description=description)

    def rename(self, name: str) -> None:
        self.name = name
        self._touch()

    def update_description(self, description: str | None) -> None:
        self.description = description
        self._touch()

    def activate(self) -> None:
        self.active = True
        self._touch()

    def deactivate(self) -> None:
        self.active = False
        self._touch()

    def set_variables(self, variables: list[EnvironmentVariable] | None) -> None:
        self.variables = tuple(variables or ())
        self._touch()

    def variables_map(self) -> Mapping[str, str]:
        """Enabled variables only; a repeated name keeps its last value."""
        resolved: dict[str, str] = {}
        for var in self.variables:
            if var.enabled:
                resolved[var.name] = var.value
        return MappingProxyType(resolved)


class Collection(_Entity):
    """A named group of request definitions (referenced by id)."""

    name: str = Field(description="Collection name (1-255 characters)")
    description: str | None = Field(default=None)
    request_ids: tuple[int, ...] = Field(default=())

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Collection name cannot be empty")
        if len(v) > 255:
            raise ValueError("Collection name cannot exceed 255 characters")
        return v

    @classmethod
    def create(cls, name: str, description: str | None = None) -> Collection:
        return cls(name=name, description=description)

    def rename(self, name: str) -> None:
        self.name = name
        self._touch()

    def update_description(self, description: str | None) -> None:
        self.description = description
        self._touch()

    def add_request(self, request_id: int) -> None:
        self.request_ids = (*self.request_ids, request_id)
        self._touch()

    def remove_request(self, request_id: int) -> None:
        self.request_ids = tuple(r for r in self.request_ids if r != request_id)
        self._touch()

    @property
    def request_count(self) -> int:
        return len(self.request_ids)


# =============================================================================
# Execution Models
# =============================================================================


class PreparedRequest(BaseModel):
    """A fully resolved request, ready to send.

    Headers are (key, value) pairs; repeated keys stay separate entries.
    URL, headers and query values can carry credentials, so they are kept
    out of repr.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    method: HttpMethod = Field(description="HTTP method")
    url: str = Field(description="Absolute URL including the query string", repr=False)
    headers: tuple[tuple[str, str], ...] = Field(default=(), repr=False)
    query_params: tuple[tuple[str, str], ...] = Field(
        default=(), repr=False, description="Resolved, enabled query params (already in url)"
    )
    body: str | bytes | None = Field(default=None, repr=False)
    content_type: str | None = Field(default=None)
    body_type: BodyType = Field(default=BodyType.NONE)
    auth_type: AuthType = Field(default=AuthType.NONE)
    auth_config: dict[str, Any] = Field(
        default_factory=dict, repr=False, description="Redacted auth config as used"
    )
    request_id: int | None = Field(default=None)
    request_name: str | None = Field(default=None)
    collection_id: int | None = Field(default=None)
    credential_headers: frozenset[int] = Field(
        default=frozenset(), description="Indexes into headers of entries added by auth"
    )
    credential_params: frozenset[int] = Field(
        default=frozenset(), description="Indexes into query_params of entries added by auth"
    )
    masked_url: str | None = Field(
        default=None, repr=False, description="url with credential query values masked"
    )

    def header_values(self, name: str) -> list[str]:
        lowered = name.lower()
        return [v for k, v in self.headers if k.lower() == lowered]

    def masked_headers(self) -> list[tuple[str, str]]:
        return _mask_pairs(self.headers, self.credential_headers)

    def masked_query_params(self) -> list[tuple[str, str]]:
        return _mask_pairs(self.query_params, self.credential_params)


def _mask_pairs(
    pairs: tuple[tuple[str, str], ...], positions: frozenset[int]
) -> list[tuple[str, str]]:
    return [(k, REDACTED if i in positions else v) for i, (k, v) in enumerate(pairs)]


class ExecutionResponse(BaseModel):
    """Normalized outcome of one execution.

    success=False means no HTTP response was obtained (timeout, refused
    connection, TLS failure, cancellation). A 4xx/5xx response is still
    success=True at this layer.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    status_code: int | None = Field(default=None, description="None when no response was received")
    status_text: str | None = Field(default=None)
    body: str | None = Field(default=None)
    body_encoding: str = Field(default="text", description="'text' or 'base64'")
    body_size: int = Field(default=0, description="Byte length of the received body")
    content_type: str | None = Field(default=None)
    headers: tuple[Header, ...] = Field(default=())
    response_time_ms: int = Field(default=0, description="Dispatch to full receipt or failure")
    request_url: str | None = Field(default=None, repr=False)
    request_method: str | None = Field(default=None)
    timestamp: datetime = Field(default_factory=utcnow)
    success: bool = Field(default=True)
    error_message: str | None = Field(default=None)
    error_type: ErrorKind | None = Field(default=None)
    protocol: str | None = Field(default=None, description="e.g. HTTP/1.1")

    @model_validator(mode="after")
    def check_outcome_fields(self) -> Self:
        if self.success and self.status_code is None:
            raise ValueError("a successful response requires a status code")
        if not self.success:
            if self.error_type is None:
                raise ValueError("a failed response requires an error type")
            if self.status_code is not None:
                raise ValueError("a failed response cannot carry a status code")
        return self

    def header(self, name: str) -> str | None:
        """First value of a response header (case-insensitive), or None."""
        lowered = name.lower()
        for h in self.headers:
            if h.key.lower() == lowered:
                return h.value
        return None


# =============================================================================
# History Models
# =============================================================================


class HistoryRecord(BaseModel):
    """Write-once snapshot of one execution.

    List/map valued request and response parts are stored as JSON strings.
    The id is assigned by the repository, which stores a copy.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: int | None = Field(default=None)
    url: str = Field(description="Resolved URL as sent")
    method: HttpMethod | None = Field(default=None)
    request_headers: str | None = Field(default=None, description="JSON [[key, value], ...]")
    query_params: str | None = Field(default=None, description="JSON [[key, value], ...]")
    request_body: str | None = Field(default=None)
    body_type: str | None = Field(default=None)
    auth_type: str | None = Field(default=None)
    auth_config: str | None = Field(default=None, description="JSON object, secrets masked")
    status_code: int | None = Field(default=None)
    status_text: str | None = Field(default=None)
    response_headers: str | None = Field(default=None, description="JSON [[key, value], ...]")
    response_body: str | None = Field(default=None)
    response_time: int | None = Field(default=None, description="Milliseconds")
    response_size: int | None = Field(default=None, description="Bytes")
    success: bool = Field(default=True)
    error_message: str | None = Field(default=None)
    error_type: str | None = Field(default=None)
    request_id: int | None = Field(default=None)
    request_name: str | None = Field(default=None)
    collection_id: int | None = Field(default=None)
    executed_at: datetime = Field(default_factory=utcnow)

    @field_validator("executed_at")
    @classmethod
    def make_aware(cls, v: datetime) -> datetime:
        return _ensure_aware(v)


class StatusMatch(str, Enum):
    """How HistoryFilter.status_code is compared."""

    BAND = "band"  # bucketed: 2xx, 3xx, or >=400
    EXACT = "exact"


class HistoryFilter(BaseModel):
    """Optional history predicates. Unset fields add no clause."""

    model_config = ConfigDict(extra="forbid")

    method: HttpMethod | None = Field(default=None)
    status_code: int | None = Field(default=None)
    status_match: StatusMatch = Field(default=StatusMatch.BAND)
    search: str | None = Field(default=None, description="Substring of the stored URL")
    start: datetime | None = Field(default=None, description="Inclusive lower bound")
    end: datetime | None = Field(default=None, description="Inclusive upper bound")

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("start", "end")
    @classmethod
    def make_aware(cls, v: datetime | None) -> datetime | None:
        return _ensure_aware(v)


class PageRequest(BaseModel):
    """Zero-based page index and page size. Both are required."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    page: int = Field(ge=0)
    size: int = Field(ge=1)

    @property
    def offset(self) -> int:
        return self.page * self.size


class Page(BaseModel, Generic[T]):
    """One page of results plus total-count metadata."""

    items: list[T] = Field(default_factory=list)
    total: int = Field(default=0, description="Matching records across all pages")
    page: int = Field(default=0)
    size: int = Field(default=1)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.size) if self.size else 0


class HistoryStats(BaseModel):
    """Aggregates over the full history set."""

    model_config = ConfigDict(extra="forbid")

    total_requests: int = 0
    success_count: int = 0
    error_count: int = 0
    avg_response_time: float = 0.0
    method_breakdown: dict[str, int] = Field(default_factory=dict)


class HistoryDetail(BaseModel):
    """A history record with its JSON columns parsed for display."""

    model_config = ConfigDict(extra="forbid")

    record: HistoryRecord
    request_headers: list[tuple[str, str]] = Field(default_factory=list)
    query_params: list[tuple[str, str]] = Field(default_factory=list)
    auth_config: dict[str, Any] = Field(default_factory=dict)
    response_headers: list[tuple[str, str]] = Field(default_factory=list)
    request_name: str | None = Field(default=None)
    collection_name: str | None = Field(default=None)


# =============================================================================
# Runtime Configuration Models
# =============================================================================


class RuntimeConfig(BaseModel):
    """Top-level runtime configuration file structure."""

    model_config = ConfigDict(extra="forbid")

    timeout_seconds: float = Field(default=30.0, gt=0, description="Connect and total response bound")
    follow_redirects: bool = Field(default=True)
    user_agent: str | None = Field(default=None, description="Overrides the default User-Agent")
    default_headers: dict[str, str] = Field(
        default_factory=dict,
        description="Headers added when a request does not set them (supports ${ENV_VAR})",
    )
    history_path: str | None = Field(default=None, description="JSON file for persisted history")
    history_retention_days: int | None = Field(default=None, ge=0)
    log_level: str = Field(default="WARNING")
