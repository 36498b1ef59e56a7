"""
test_end_to_end.py
------------------
MediFlow Clinical API Client - End-to-End Test Suite
-----------------------------------------------------
Runs the full stack (façade -> cache -> interceptor -> transport) against
the FastAPI backend in tests/mock_backend.py, mounted in-process through
httpx.ASGITransport.  No server process and no real waits are involved.

Tests cover:
    - Health probe against the server-root /health route
    - Login, bearer header and current user lookup
    - Read-after-write consistency through cache invalidation
    - Injected 503 recovered by retry; 404 surfaced with a user notice
    - Expired session: 401 evicts the token and redirects to login
    - Mixed batch with per-slot failures

Run:
    pytest tests/test_end_to_end.py -v --tb=short

Project: MediFlow Clinical API Client
"""

import asyncio
import os
import sys
from unittest.mock import MagicMock

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from api_client import EnhancedApiClient
from api_config import ClientSettings
from api_transport import ApiError, ApiTransport, CredentialStore
from request_interceptor import NOT_FOUND_MESSAGE, Notifier
from tests.mock_backend import VALID_TOKEN, create_app


BASE_URL = "http://testserver/api"
SETTINGS = ClientSettings(api_url=BASE_URL)

SEED = {
    "patients": [
        {"id": "p1", "name": "Ada Lovelace"},
        {"id": "p2", "name": "Grace Hopper"},
    ],
    "appointments": [{"id": "a1", "patientId": "p1"}],
}


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def make_stack(token=None, navigated=None):
    app = create_app(SEED)
    transport = ApiTransport(
        settings=SETTINGS,
        credentials=CredentialStore(token=token),
        http_transport=httpx.ASGITransport(app=app),
    )
    sleep = SleepRecorder()
    notifier = MagicMock(spec=Notifier)
    client = EnhancedApiClient(
        transport,
        settings=SETTINGS,
        notifier=notifier,
        on_navigate=navigated.append if navigated is not None else None,
        sleep=sleep,
    )
    return app, client, sleep, notifier


def run(client, scenario):
    async def _main():
        async with client:
            return await scenario()
    return asyncio.run(_main())


def test_health_probe():
    app, client, _, _ = make_stack()
    result = run(client, client.health_check)
    assert result.status == "healthy"
    assert ("GET", "/health") in app.state.hits


def test_login_then_current_user():
    app, client, _, _ = make_stack()
    app.state.require_auth = True

    async def scenario():
        await client.transport.login("dr@example.com", "secret")
        return await client.transport.get_current_user()

    assert run(client, scenario) == {"email": "dr@example.com"}
    assert client.transport.token == VALID_TOKEN


def test_read_after_write_sees_new_record():
    app, client, _, _ = make_stack()

    async def scenario():
        before = await client.patients.list()
        cached = await client.patients.list()
        created = await client.patients.create({"name": "Alan Turing"})
        after = await client.patients.list()
        return before, cached, created, after

    before, cached, created, after = run(client, scenario)

    assert len(before) == 2
    assert cached == before
    assert created["name"] == "Alan Turing"
    assert len(after) == 3
    assert app.state.hits.count(("GET", "/api/patients")) == 2


def test_update_then_get_returns_fresh_record():
    _, client, _, _ = make_stack()

    async def scenario():
        await client.patients.get("p2")
        await client.patients.update("p2", {"name": "Rear Admiral Hopper"})
        return await client.patients.get("p2")

    assert run(client, scenario)["name"] == "Rear Admiral Hopper"


def test_search_filters_server_side():
    _, client, _, _ = make_stack()
    result = run(client, lambda: client.patients.search("ada"))
    assert [r["id"] for r in result] == ["p1"]


def test_injected_unavailable_is_retried():
    app, client, sleep, _ = make_stack()
    app.state.fail_next["/api/appointments"] = [503]

    result = run(client, client.appointments.list)

    assert result == SEED["appointments"]
    assert app.state.hits.count(("GET", "/api/appointments")) == 2
    assert sleep.calls == [1.0]


def test_missing_record_raises_not_found_with_notice():
    _, client, sleep, notifier = make_stack()

    with pytest.raises(ApiError) as exc_info:
        run(client, lambda: client.patients.get("p404"))

    assert exc_info.value.status_code == 404
    assert exc_info.value.code == "NOT_FOUND"
    assert sleep.calls == []
    notifier.show_message.assert_called_once_with(NOT_FOUND_MESSAGE)


def test_expired_session_redirects_to_login():
    navigated = []
    app, client, sleep, _ = make_stack(token="expired", navigated=navigated)
    app.state.require_auth = True

    with pytest.raises(ApiError) as exc_info:
        run(client, client.patients.list)

    assert exc_info.value.status_code == 401
    assert client.transport.token is None
    assert navigated == ["/login"]
    assert sleep.calls == []


def test_batch_against_backend():
    _, client, _, _ = make_stack()

    results = run(
        client,
        lambda: client.batch_operation(
            [
                {"type": "get", "entityType": "Patient", "id": "p1"},
                {"type": "delete", "entityType": "Patient", "id": "ghost"},
                {"type": "list", "entityType": "Appointment"},
                {"type": "merge", "entityType": "Patient"},
            ]
        ),
    )

    assert [r.success for r in results] == [True, False, True, False]
    assert results[0].data["name"] == "Ada Lovelace"
    assert results[1].error.status_code == 404
    assert results[2].data == SEED["appointments"]
