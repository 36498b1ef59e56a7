"""
api_models.py
-------------
MediFlow Clinical API Client - Pydantic Data Contracts
-------------------------------------------------------
Pydantic v2 models shared by the transport, the response cache, the request
interceptor and the entity façade.

Entity table
------------
``EntityType`` is the closed set of record kinds the client knows about.
``ENTITY_TABLE`` maps each one to its REST path segment and, where it
differs from the configured default, its cache freshness window.  Entity
names outside the enum are still accepted by ``resolve_entity()`` and are
routed with the fallback rule: lowercase the name and append ``"s"``.

Options
-------
``RequestOptions`` is the option bag every operation accepts.  Unknown keys
are kept (``extra="allow"``) so callers can pass UI-level passthrough fields
without the core rejecting them.  camelCase aliases (``retryDelay``,
``useCache``, ``cacheTTL``) are accepted alongside the snake_case names.
``ListOptions`` adds the paging / search fields that are forwarded to the
server as query parameters.

Public API
----------
    EntityType, EntitySpec, ENTITY_TABLE
    resolve_entity(), entity_name(), endpoint_for(), default_ttl_for()
    RequestOptions, ListOptions
    BatchOperation, BatchResult, BATCH_OPERATION_TYPES
    CacheEntry, ApiErrorContext, HealthCheckResult
    Pagination, ApiEnvelope

Project: MediFlow Clinical API Client
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Entity types
# ---------------------------------------------------------------------------

class EntityType(str, Enum):
    """Domain record kinds served by the REST API."""

    PATIENT = "Patient"
    APPOINTMENT = "Appointment"
    USER = "User"
    ORGANIZATION = "Organization"
    ENCOUNTER = "Encounter"
    PRESCRIPTION = "Prescription"
    LAB_ORDER = "LabOrder"
    BILLING = "Billing"
    CONSULTATION_TEMPLATE = "ConsultationTemplate"
    MEDICAL_DOCUMENT_TEMPLATE = "MedicalDocumentTemplate"

    def __str__(self) -> str:
        return self.value


class EntitySpec(BaseModel):
    """Static routing data for one entity type."""

    model_config = ConfigDict(frozen=True)

    endpoint: str
    # None means "use the configured default cache TTL".
    default_ttl_ms: Optional[int] = None


ENTITY_TABLE: Dict[EntityType, EntitySpec] = {
    EntityType.PATIENT: EntitySpec(endpoint="/patients"),
    # Schedules change throughout the day; keep appointment reads fresher.
    EntityType.APPOINTMENT: EntitySpec(endpoint="/appointments", default_ttl_ms=60_000),
    EntityType.USER: EntitySpec(endpoint="/users"),
    EntityType.ORGANIZATION: EntitySpec(endpoint="/organizations"),
    EntityType.ENCOUNTER: EntitySpec(endpoint="/encounters"),
    EntityType.PRESCRIPTION: EntitySpec(endpoint="/prescriptions"),
    EntityType.LAB_ORDER: EntitySpec(endpoint="/lab-orders"),
    EntityType.BILLING: EntitySpec(endpoint="/billing"),
    EntityType.CONSULTATION_TEMPLATE: EntitySpec(endpoint="/consultation-templates"),
    EntityType.MEDICAL_DOCUMENT_TEMPLATE: EntitySpec(endpoint="/medical-document-templates"),
}

EntityRef = Union[EntityType, str]


def resolve_entity(entity_type: EntityRef) -> EntityRef:
    """
    Normalise *entity_type* to an ``EntityType`` member when it names one.

    Unrecognised names are returned stripped so the fallback endpoint rule
    can still route them.

    Raises:
        ValueError: if *entity_type* is empty.
    """
    if isinstance(entity_type, EntityType):
        return entity_type
    name = str(entity_type or "").strip()
    if not name:
        raise ValueError("entity_type must be a non-empty entity name.")
    try:
        return EntityType(name)
    except ValueError:
        return name


def entity_name(entity_type: EntityRef) -> str:
    """Return the canonical name used in cache keys, e.g. ``"LabOrder"``."""
    resolved = resolve_entity(entity_type)
    return resolved.value if isinstance(resolved, EntityType) else resolved


def endpoint_for(entity_type: EntityRef) -> str:
    """
    Return the REST path segment for *entity_type*.

    Example::

        endpoint_for(EntityType.LAB_ORDER)   # "/lab-orders"
        endpoint_for("Invoice")              # "/invoices"  (fallback rule)
    """
    resolved = resolve_entity(entity_type)
    if isinstance(resolved, EntityType):
        return ENTITY_TABLE[resolved].endpoint
    return f"/{resolved.lower()}s"


def default_ttl_for(entity_type: EntityRef) -> Optional[int]:
    resolved = resolve_entity(entity_type)
    if isinstance(resolved, EntityType):
        return ENTITY_TABLE[resolved].default_ttl_ms
    return None


# ---------------------------------------------------------------------------
# Request options
# ---------------------------------------------------------------------------

class RequestOptions(BaseModel):
    """
    Option bag recognised by every façade operation.

    Unset fields (``None``) fall back to the client settings: 3 retries,
    1000 ms base delay, 300000 ms cache TTL, cache enabled for reads.
    """

    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )

    retries: Optional[int] = Field(default=None, ge=0)
    retry_delay_ms: Optional[float] = Field(default=None, ge=0, alias="retryDelay")
    use_cache: Optional[bool] = Field(default=None, alias="useCache")
    cache_ttl_ms: Optional[float] = Field(default=None, ge=0, alias="cacheTTL")
    cancel_event: Optional[asyncio.Event] = Field(default=None, exclude=True)

    @classmethod
    def coerce(cls, options: Union["RequestOptions", Dict[str, Any], None]) -> Any:
        """Return *options* as an instance of ``cls`` (``None`` -> defaults)."""
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        if isinstance(options, RequestOptions):
            data = options.model_dump(exclude_none=True)
            data["cancel_event"] = options.cancel_event
            return cls.model_validate(data)
        return cls.model_validate(options)

    def cache_params(self) -> Dict[str, Any]:
        """Every set option, cancellation excluded, for use in a cache key."""
        return self.model_dump(exclude_none=True)

    def reporting_dict(self) -> Dict[str, Any]:
        """JSON-safe view of the options for error reports."""
        return json.loads(json.dumps(self.cache_params(), default=str))


class ListOptions(RequestOptions):
    """Options for list / search calls; paging fields become query parameters."""

    page: Optional[int] = Field(default=None, ge=1)
    limit: Optional[int] = Field(default=None, ge=1)
    search: Optional[str] = None
    sort: Optional[str] = None
    order: Optional[Literal["asc", "desc"]] = None
    filters: Optional[Dict[str, Any]] = None

    def query_params(self) -> Dict[str, str]:
        """
        Query string for the list endpoint.

        ``filters`` are flattened beside the paging fields; ``None`` and
        empty-string values are dropped.  Control options and passthrough
        extras are never sent to the server.
        """
        raw: Dict[str, Any] = {
            "page": self.page,
            "limit": self.limit,
            "search": self.search,
            "sort": self.sort,
            "order": self.order,
        }
        for key, value in (self.filters or {}).items():
            raw.setdefault(key, value)

        params: Dict[str, str] = {}
        for key, value in raw.items():
            if value is None or value == "":
                continue
            if isinstance(value, bool):
                params[key] = "true" if value else "false"
            else:
                params[key] = str(value)
        return params


# ---------------------------------------------------------------------------
# Batch operations
# ---------------------------------------------------------------------------

BATCH_OPERATION_TYPES = ("list", "get", "create", "update", "delete")


class BatchOperation(BaseModel):
    """
    Declarative description of one façade call, not yet executed.

    ``type`` is deliberately a plain string: an unknown verb fails only its
    own batch slot, it does not reject the whole batch at validation time.
    """

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    type: str
    entity_type: Union[EntityType, str] = Field(alias="entityType")
    id: Optional[Union[str, int]] = None
    data: Any = None
    options: Optional[Union[RequestOptions, Dict[str, Any]]] = None

    @field_validator("entity_type")
    @classmethod
    def _resolve_entity_type(cls, value: Any) -> EntityRef:
        return resolve_entity(value)

    @field_validator("id")
    @classmethod
    def _id_as_str(cls, value: Any) -> Optional[str]:
        return None if value is None else str(value)


class BatchResult(BaseModel):
    """Outcome of one batch slot: a value or an error, never both."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    operation: BatchOperation
    success: bool
    data: Any = None
    error: Optional[BaseException] = None

    @model_validator(mode="after")
    def _value_xor_error(self) -> "BatchResult":
        if self.success and self.error is not None:
            raise ValueError("A successful batch result cannot carry an error.")
        if not self.success and self.error is None:
            raise ValueError("A failed batch result must carry its error.")
        if not self.success and self.data is not None:
            raise ValueError("A failed batch result cannot carry data.")
        return self


# ---------------------------------------------------------------------------
# Cache, error context, health
# ---------------------------------------------------------------------------

class CacheEntry(BaseModel):
    """One cached value; ``timestamp`` and ``ttl_ms`` are both milliseconds."""

    data: Any
    timestamp: float
    ttl_ms: float

    def is_valid(self, now_ms: float) -> bool:
        return now_ms - self.timestamp < self.ttl_ms


class ApiErrorContext(BaseModel):
    """Context attached to every reported request failure."""

    request_id: str
    timestamp: str
    url: str = "unknown"
    method: str = "unknown"
    status: Optional[int] = None
    response: Any = None
    options: Dict[str, Any] = Field(default_factory=dict)


class HealthCheckResult(BaseModel):
    status: Literal["healthy", "unhealthy"]
    response_time_ms: Optional[float] = None
    error: Optional[str] = None
    timestamp: str


class Pagination(BaseModel):
    page: Optional[int] = None
    limit: Optional[int] = None
    total: Optional[int] = None
    pages: Optional[int] = None


class ApiEnvelope(BaseModel):
    """
    Standard server response: ``{success, data, message?, pagination?}``.

    Error responses carry ``error: {code, message}`` instead of ``data``.
    """

    model_config = ConfigDict(extra="allow")

    success: bool = True
    data: Any = None
    message: Optional[str] = None
    pagination: Optional[Pagination] = None
    error: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None

    @property
    def items(self) -> List[Any]:
        """``data`` as a list; an absent payload is an empty list."""
        if self.data is None:
            return []
        if isinstance(self.data, list):
            return self.data
        return [self.data]
