"""
api_client.py
-------------
MediFlow Clinical API Client - Entity Façade and Batch Orchestrator
--------------------------------------------------------------------
Uniform CRUD surface over the MediFlow REST API.  Every entity type
(Patient, Appointment, User, Organization, Encounter, Prescription,
LabOrder, Billing, ConsultationTemplate, MedicalDocumentTemplate, or any
other name routed by the fallback rule) gets the same five operations:

    list(entity_type, options)             GET    <endpoint>?<query>
    get(entity_type, id, options)          GET    <endpoint>/<id>
    create(entity_type, data, options)     POST   <endpoint>
    update(entity_type, id, data, options) PUT    <endpoint>/<id>
    delete(entity_type, id, options)       DELETE <endpoint>/<id>

Request flow:
  1. Reads look in the response cache first (unless ``use_cache=False``).
  2. On a miss, the transport call runs inside the request interceptor
     (correlation id, timing, retry with backoff, failure reporting).
  3. Successful reads fill the cache under the option TTL, else the entity
     default TTL, else the configured default.  A read that overlapped an
     invalidation of its entity returns its result without caching it.
  4. Successful writes invalidate the entity's cached lists, and for
     update / delete the cached ``get`` of that id.

``batch_operation()`` runs many façade calls concurrently and returns one
``BatchResult`` per operation, in input order, whatever fails.
``health_check()`` probes the server-root ``/health`` endpoint and never
raises.

Usage::

    async with EnhancedApiClient() as client:
        patients = await client.patients.list({"page": 1, "limit": 20})
        patient  = await client.get("Patient", "p1", {"useCache": False})
        results  = await client.batch_operation([
            {"type": "get", "entityType": "Patient", "id": "p1"},
            {"type": "list", "entityType": "Appointment"},
        ])

Project: MediFlow Clinical API Client
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from api_config import ClientSettings
from api_models import (
    BATCH_OPERATION_TYPES,
    BatchOperation,
    BatchResult,
    EntityRef,
    EntityType,
    HealthCheckResult,
    ListOptions,
    RequestOptions,
    default_ttl_for,
    endpoint_for,
    entity_name,
)
from api_transport import ApiTransport
from request_interceptor import Notifier, RequestInterceptor, SessionHandler
from response_cache import MISSING, ResponseCache, make_key

logger = logging.getLogger(__name__)

OptionsLike = Union[RequestOptions, Dict[str, Any], None]


class UnknownOperationError(ValueError):
    """A batch operation named a verb other than list/get/create/update/delete."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class EntityNamespace:
    """CRUD calls bound to one entity type, e.g. ``client.patients.get("p1")``."""

    def __init__(self, client: "EnhancedApiClient", entity_type: EntityRef) -> None:
        self._client = client
        self.entity_type = entity_type

    async def list(self, options: OptionsLike = None) -> List[Any]:
        return await self._client.list(self.entity_type, options)

    async def search(
        self,
        query: str,
        filters: Optional[Dict[str, Any]] = None,
        options: OptionsLike = None,
    ) -> List[Any]:
        return await self._client.search(self.entity_type, query, filters, options)

    async def get(self, id: str, options: OptionsLike = None) -> Any:
        return await self._client.get(self.entity_type, id, options)

    async def create(self, data: Any, options: OptionsLike = None) -> Any:
        return await self._client.create(self.entity_type, data, options)

    async def update(self, id: str, data: Any, options: OptionsLike = None) -> Any:
        return await self._client.update(self.entity_type, id, data, options)

    async def delete(self, id: str, options: OptionsLike = None) -> Any:
        return await self._client.delete(self.entity_type, id, options)


# Attribute name on the client -> entity type.
NAMESPACES: Dict[str, EntityType] = {
    "patients": EntityType.PATIENT,
    "appointments": EntityType.APPOINTMENT,
    "users": EntityType.USER,
    "organizations": EntityType.ORGANIZATION,
    "encounters": EntityType.ENCOUNTER,
    "prescriptions": EntityType.PRESCRIPTION,
    "lab_orders": EntityType.LAB_ORDER,
    "billing": EntityType.BILLING,
    "consultation_templates": EntityType.CONSULTATION_TEMPLATE,
    "medical_document_templates": EntityType.MEDICAL_DOCUMENT_TEMPLATE,
}


class EnhancedApiClient:
    """
    Entity façade layered over the transport, the response cache and the
    request interceptor.

    Args:
        transport:   HTTP transport; built from *settings* when omitted.
        settings:    ``ClientSettings.from_env()`` when omitted.
        cache:       Response cache owned by this client (a fresh one by
                     default, so separate clients never share entries).
        interceptor: Request interceptor; built from the remaining
                     arguments when omitted.
        notifier:    User-facing message channel for the default interceptor.
        session:     401 capability for the default interceptor.  The
                     default clears this client's transport credential.
        on_navigate: Login redirect callback for the default session.
        sleep:       Backoff sleep for the default interceptor.
    """

    def __init__(
        self,
        transport: Optional[ApiTransport] = None,
        *,
        settings: Optional[ClientSettings] = None,
        cache: Optional[ResponseCache] = None,
        interceptor: Optional[RequestInterceptor] = None,
        notifier: Optional[Notifier] = None,
        session: Optional[SessionHandler] = None,
        on_navigate: Optional[Callable[[str], None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or (transport.settings if transport else ClientSettings.from_env())
        self.transport = transport or ApiTransport(settings=self.settings)
        self.cache = cache if cache is not None else ResponseCache(
            maxsize=self.settings.cache_max_entries
        )
        self.interceptor = interceptor or RequestInterceptor(
            settings=self.settings,
            notifier=notifier,
            session=session or SessionHandler(
                on_clear=lambda: self.transport.set_token(None),
                on_navigate=on_navigate,
                login_url=self.settings.login_url,
            ),
            sleep=sleep,
        )
        for attr, entity_type in NAMESPACES.items():
            setattr(self, attr, EntityNamespace(self, entity_type))

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        await self.transport.connect()

    async def close(self) -> None:
        await self.transport.close()

    async def __aenter__(self) -> "EnhancedApiClient":
        await self.connect()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    def entity(self, entity_type: EntityRef) -> EntityNamespace:
        """Namespace for any entity type, including ones outside the enum."""
        return EntityNamespace(self, entity_type)

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _ttl_ms(self, entity_type: EntityRef, options: RequestOptions) -> float:
        if options.cache_ttl_ms is not None:
            return options.cache_ttl_ms
        entity_default = default_ttl_for(entity_type)
        if entity_default is not None:
            return entity_default
        return self.settings.cache_ttl_ms

    def _invalidate_after_write(self, entity: str, id: Optional[str] = None) -> None:
        self.cache.invalidate_entity(entity, operation="list")
        if id is not None:
            self.cache.invalidate_entity(entity, operation="get", params=id)

    # ── Reads ────────────────────────────────────────────────────────────────

    async def list(self, entity_type: EntityRef, options: OptionsLike = None) -> List[Any]:
        """
        List records of *entity_type*.

        The cache key covers every option that was set, so two calls whose
        options differ only in key order share one entry.  Paging, search,
        sort and filter options are sent as query parameters.

        Returns:
            The ``data`` list of the response envelope; ``[]`` when absent.
        """
        opts = ListOptions.coerce(options)
        entity = entity_name(entity_type)
        key = make_key("list", entity, opts.cache_params())
        use_cache = opts.use_cache is not False

        generation = None
        if use_cache:
            cached = self.cache.get(key, MISSING)
            if cached is not MISSING:
                logger.debug("EnhancedApiClient: cache hit %s.", key)
                return cached
            generation = self.cache.generation(entity)

        endpoint = endpoint_for(entity_type)
        params = opts.query_params() or None

        async def _fetch() -> List[Any]:
            envelope = await self.transport.request(endpoint, params=params)
            return envelope.items

        items = await self.interceptor.intercept(_fetch, opts)
        if use_cache:
            self.cache.set(key, items, self._ttl_ms(entity_type, opts), generation=generation)
        return items

    async def search(
        self,
        entity_type: EntityRef,
        query: str,
        filters: Optional[Dict[str, Any]] = None,
        options: OptionsLike = None,
    ) -> List[Any]:
        """List call with ``search=<query>`` and *filters* merged into the options."""
        opts = ListOptions.coerce(options)
        merged_filters = {**(opts.filters or {}), **(filters or {})}
        opts = opts.model_copy(update={"search": query, "filters": merged_filters or None})
        return await self.list(entity_type, opts)

    async def get(self, entity_type: EntityRef, id: str, options: OptionsLike = None) -> Any:
        """Fetch one record by id; cached under ``get_<entity>_<id>``."""
        opts = RequestOptions.coerce(options)
        entity = entity_name(entity_type)
        id = str(id)
        key = make_key("get", entity, id)
        use_cache = opts.use_cache is not False

        generation = None
        if use_cache:
            cached = self.cache.get(key, MISSING)
            if cached is not MISSING:
                logger.debug("EnhancedApiClient: cache hit %s.", key)
                return cached
            generation = self.cache.generation(entity)

        path = f"{endpoint_for(entity_type)}/{id}"

        async def _fetch() -> Any:
            envelope = await self.transport.request(path)
            return envelope.data

        data = await self.interceptor.intercept(_fetch, opts)
        if use_cache:
            self.cache.set(key, data, self._ttl_ms(entity_type, opts), generation=generation)
        return data

    # ── Writes ───────────────────────────────────────────────────────────────

    async def create(self, entity_type: EntityRef, data: Any, options: OptionsLike = None) -> Any:
        """POST a new record; cached lists of the entity are dropped on success."""
        opts = RequestOptions.coerce(options)
        endpoint = endpoint_for(entity_type)

        async def _send() -> Any:
            envelope = await self.transport.request(endpoint, method="POST", json=data)
            return envelope.data

        created = await self.interceptor.intercept(_send, opts)
        self._invalidate_after_write(entity_name(entity_type))
        return created

    async def update(
        self,
        entity_type: EntityRef,
        id: str,
        data: Any,
        options: OptionsLike = None,
    ) -> Any:
        opts = RequestOptions.coerce(options)
        id = str(id)
        path = f"{endpoint_for(entity_type)}/{id}"

        async def _send() -> Any:
            envelope = await self.transport.request(path, method="PUT", json=data)
            return envelope.data

        updated = await self.interceptor.intercept(_send, opts)
        self._invalidate_after_write(entity_name(entity_type), id)
        return updated

    async def delete(self, entity_type: EntityRef, id: str, options: OptionsLike = None) -> Any:
        opts = RequestOptions.coerce(options)
        id = str(id)
        path = f"{endpoint_for(entity_type)}/{id}"

        async def _send() -> Any:
            envelope = await self.transport.request(path, method="DELETE")
            return envelope.data

        deleted = await self.interceptor.intercept(_send, opts)
        self._invalidate_after_write(entity_name(entity_type), id)
        return deleted

    # ── Batch ────────────────────────────────────────────────────────────────

    async def batch_operation(
        self,
        operations: Iterable[Union[BatchOperation, Dict[str, Any]]],
        options: OptionsLike = None,
    ) -> List[BatchResult]:
        """
        Run every operation concurrently and collect one result per slot.

        Operations are validated up front: a malformed list raises
        ``pydantic.ValidationError`` before anything is sent.  After that,
        no single failure aborts the batch; an unknown ``type`` fails only
        its own slot with ``UnknownOperationError``.

        Retries happen inside each operation's own façade call; the batch
        wrapper itself is never retried.

        Returns:
            ``BatchResult`` list, same length and order as *operations*.
        """
        ops = [
            op if isinstance(op, BatchOperation) else BatchOperation.model_validate(op)
            for op in operations
        ]
        batch_opts = RequestOptions.coerce(options).model_copy(update={"retries": 0})

        async def _run() -> List[BatchResult]:
            outcomes = await asyncio.gather(
                *(self._execute_operation(op) for op in ops),
                return_exceptions=True,
            )
            results = [_to_result(op, outcome) for op, outcome in zip(ops, outcomes)]
            failed = sum(1 for r in results if not r.success)
            logger.info(
                "EnhancedApiClient: batch complete - %d/%d succeeded, %d failed.",
                len(results) - failed, len(results), failed,
            )
            return results

        return await self.interceptor.intercept(_run, batch_opts)

    async def _execute_operation(self, op: BatchOperation) -> Any:
        if op.type not in BATCH_OPERATION_TYPES:
            raise UnknownOperationError(f"Unknown operation type: {op.type}")
        if op.type == "list":
            return await self.list(op.entity_type, op.options)
        if op.type == "create":
            return await self.create(op.entity_type, op.data, op.options)
        if op.id is None:
            raise ValueError(f"Batch '{op.type}' on {entity_name(op.entity_type)} requires an id.")
        if op.type == "get":
            return await self.get(op.entity_type, op.id, op.options)
        if op.type == "update":
            return await self.update(op.entity_type, op.id, op.data, op.options)
        return await self.delete(op.entity_type, op.id, op.options)

    # ── Cache surface ────────────────────────────────────────────────────────

    def clear_cache(self) -> None:
        self.cache.clear()

    def invalidate_cache(self, pattern: str) -> None:
        """Drop every cached entry whose key contains *pattern*."""
        self.cache.invalidate(pattern)

    # ── Health ───────────────────────────────────────────────────────────────

    async def health_check(self) -> HealthCheckResult:
        """
        Probe the health endpoint, bypassing cache and retries.

        Never raises: any failure becomes ``status="unhealthy"`` with the
        error message attached.
        """
        url = self.settings.resolve_health_url(self.transport.base_url)
        start = time.perf_counter()
        try:
            body = await self.transport.fetch_json(url)
        except Exception as exc:
            logger.warning("EnhancedApiClient: health check failed - %s", exc)
            return HealthCheckResult(
                status="unhealthy",
                error=str(exc) or type(exc).__name__,
                timestamp=_now_iso(),
            )
        response_time_ms = (time.perf_counter() - start) * 1000.0

        reported = None
        if isinstance(body, dict):
            data = body.get("data")
            reported = data.get("status") if isinstance(data, dict) else body.get("status")

        return HealthCheckResult(
            status="healthy" if reported == "healthy" else "unhealthy",
            response_time_ms=response_time_ms,
            timestamp=_now_iso(),
        )


def _to_result(op: BatchOperation, outcome: Any) -> BatchResult:
    if isinstance(outcome, BaseException):
        return BatchResult(operation=op, success=False, error=outcome)
    return BatchResult(operation=op, success=True, data=outcome)
