"""
test_api_models.py
------------------
MediFlow Clinical API Client - Test Suite for api_models.py
------------------------------------------------------------
Tests cover:
    - Entity resolution, endpoint table and the fallback plural rule
    - RequestOptions aliases, passthrough fields and coercion
    - ListOptions query parameter building
    - BatchOperation / BatchResult validation rules
    - ApiEnvelope payload unwrapping

Run:
    pytest tests/test_api_models.py -v --tb=short

Project: MediFlow Clinical API Client
"""

import asyncio
import os
import sys

import pytest
from pydantic import ValidationError

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from api_models import (
    ENTITY_TABLE,
    ApiEnvelope,
    BatchOperation,
    BatchResult,
    CacheEntry,
    EntityType,
    ListOptions,
    RequestOptions,
    default_ttl_for,
    endpoint_for,
    entity_name,
    resolve_entity,
)


# ── Entity table ───────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "entity, endpoint",
    [
        ("Patient", "/patients"),
        (EntityType.APPOINTMENT, "/appointments"),
        ("LabOrder", "/lab-orders"),
        ("Billing", "/billing"),
        ("ConsultationTemplate", "/consultation-templates"),
        ("MedicalDocumentTemplate", "/medical-document-templates"),
    ],
)
def test_endpoint_table(entity, endpoint):
    assert endpoint_for(entity) == endpoint


def test_every_entity_type_has_an_endpoint():
    assert set(ENTITY_TABLE) == set(EntityType)


def test_unknown_entity_uses_fallback_rule():
    assert resolve_entity("Invoice") == "Invoice"
    assert endpoint_for("Invoice") == "/invoices"
    assert entity_name("Invoice") == "Invoice"
    assert default_ttl_for("Invoice") is None


def test_known_name_resolves_to_enum():
    assert resolve_entity("Patient") is EntityType.PATIENT
    assert entity_name(EntityType.LAB_ORDER) == "LabOrder"


def test_empty_entity_rejected():
    with pytest.raises(ValueError):
        resolve_entity("  ")


def test_appointment_has_shorter_default_ttl():
    assert default_ttl_for("Appointment") == 60_000
    assert default_ttl_for("Patient") is None


# ── Options ────────────────────────────────────────────────────────────────────

def test_request_options_accept_camel_case_aliases():
    opts = RequestOptions.model_validate({"retryDelay": 50, "useCache": False, "cacheTTL": 10})
    assert opts.retry_delay_ms == 50
    assert opts.use_cache is False
    assert opts.cache_ttl_ms == 10


def test_request_options_keep_passthrough_fields():
    opts = RequestOptions.model_validate({"retries": 1, "screen": "dashboard"})
    assert opts.cache_params() == {"retries": 1, "screen": "dashboard"}


def test_negative_retries_rejected():
    with pytest.raises(ValidationError):
        RequestOptions(retries=-1)


def test_coerce_preserves_cancel_event_across_types():
    event = asyncio.Event()
    base = RequestOptions(retries=2, cancel_event=event)
    listed = ListOptions.coerce(base)
    assert isinstance(listed, ListOptions)
    assert listed.retries == 2
    assert listed.cancel_event is event
    assert "cancel_event" not in listed.cache_params()


def test_coerce_none_and_dict():
    assert RequestOptions.coerce(None) == RequestOptions()
    assert ListOptions.coerce({"page": 3}).page == 3


def test_list_query_params_flatten_filters_and_drop_controls():
    opts = ListOptions.model_validate(
        {
            "page": 2,
            "limit": 25,
            "search": "",
            "order": "desc",
            "filters": {"status": "active", "archived": False, "ward": None},
            "retries": 5,
            "useCache": False,
            "screen": "list-view",
        }
    )
    assert opts.query_params() == {
        "page": "2",
        "limit": "25",
        "order": "desc",
        "status": "active",
        "archived": "false",
    }


def test_list_options_reject_bad_order():
    with pytest.raises(ValidationError):
        ListOptions(order="sideways")


# ── Batch models ───────────────────────────────────────────────────────────────

def test_batch_operation_accepts_alias_and_numeric_id():
    op = BatchOperation.model_validate({"type": "get", "entityType": "Patient", "id": 7})
    assert op.entity_type is EntityType.PATIENT
    assert op.id == "7"


def test_batch_operation_keeps_unknown_type_for_later():
    op = BatchOperation(type="archive", entity_type="Patient")
    assert op.type == "archive"


def test_batch_operation_requires_entity_type():
    with pytest.raises(ValidationError):
        BatchOperation.model_validate({"type": "list"})


def test_batch_result_value_xor_error():
    op = BatchOperation(type="list", entity_type="Patient")
    assert BatchResult(operation=op, success=True, data=[1]).error is None
    assert BatchResult(operation=op, success=True, data=None).success is True
    with pytest.raises(ValidationError):
        BatchResult(operation=op, success=True, error=RuntimeError("x"))
    with pytest.raises(ValidationError):
        BatchResult(operation=op, success=False)


# ── Envelope / cache entry ─────────────────────────────────────────────────────

def test_envelope_items():
    assert ApiEnvelope(data=None).items == []
    assert ApiEnvelope(data=[1, 2]).items == [1, 2]
    assert ApiEnvelope(data={"id": 1}).items == [{"id": 1}]


def test_envelope_pagination_parsed():
    env = ApiEnvelope.model_validate(
        {"success": True, "data": [], "pagination": {"page": 1, "limit": 10, "total": 0, "pages": 0}}
    )
    assert env.pagination.total == 0


def test_cache_entry_validity_boundary():
    entry = CacheEntry(data=1, timestamp=1000.0, ttl_ms=500)
    assert entry.is_valid(1499.0)
    assert not entry.is_valid(1500.0)
