from __future__ import annotations

import base64
from typing import List

import httpx
import pytest

from common.auth import BasicAuth
from common.backend_client import (
    BackendApiError,
    BackendConflictError,
    BackendError,
    BackendLockedError,
    BackendUnauthorizedError,
    StateBackendClient,
)
from state.blob_store import InMemoryBlobStore
from state.engine import StateEngine
from state.models import LockInfo


def _lambda_transport(engine: StateEngine) -> httpx.MockTransport:
    """Route httpx requests through the Lambda handler as API Gateway events."""
    from api import handler

    def _handle(request: httpx.Request) -> httpx.Response:
        body = request.read()
        event = {
            "version": "2.0",
            "rawPath": request.url.path,
            "headers": dict(request.headers),
            "requestContext": {"http": {"method": request.method, "path": request.url.path}},
            "body": base64.b64encode(body).decode("ascii") if body else None,
            "isBase64Encoded": bool(body),
        }
        resp = handler.handle(event, engine)
        raw = resp.get("body") or ""
        content = base64.b64decode(raw) if resp.get("isBase64Encoded") else raw.encode("utf-8")
        return httpx.Response(resp["statusCode"], headers=resp.get("headers") or {}, content=content)

    return httpx.MockTransport(_handle)


@pytest.fixture
def engine():
    return StateEngine(InMemoryBlobStore(), BasicAuth("tf", "pw"))


@pytest.fixture
def backend(engine):
    http = httpx.Client(transport=_lambda_transport(engine), base_url="https://backend.test")
    with StateBackendClient("https://backend.test", username="tf", password="pw", client=http) as c:
        yield c
    http.close()


def test_end_to_end_state_and_lock_cycle(backend):
    assert backend.list_states().states == []
    assert backend.get_state("prod") is None

    backend.put_state("prod", b'{"serial": 1}')
    assert backend.get_state("prod") == b'{"serial": 1}'

    mine = LockInfo(ID="lock-1", Operation="OperationTypeApply", Who="ci@runner")
    held = backend.lock("prod", mine)
    assert held.id == "lock-1"
    assert held.who == "ci@runner"

    with pytest.raises(BackendLockedError) as ei:
        backend.lock("prod", LockInfo(ID="lock-2"))
    assert ei.value.existing is not None and ei.value.existing.id == "lock-1"

    with pytest.raises(BackendConflictError) as ci:
        backend.unlock("prod", LockInfo(ID="lock-2"))
    assert ci.value.existing is not None and ci.value.existing.id == "lock-1"

    listing = backend.list_states()
    assert [i.id for i in listing.states] == ["states/prod.tfstate"]
    assert [i.id for i in listing.locks] == ["locks/prod.tfstate"]

    released = backend.unlock("prod", mine)
    assert released is not None and released.id == "lock-1"

    backend.delete_state("prod")
    listing = backend.list_states()
    assert listing.states == [] and listing.locks == []


def test_unlock_not_locked_is_conflict_without_record(backend):
    with pytest.raises(BackendConflictError) as ei:
        backend.unlock("prod", LockInfo(ID="x"))
    assert ei.value.existing is None
    assert "not locked" in str(ei.value)


def test_force_unlock(backend):
    backend.lock("prod", LockInfo(ID="stuck"))
    assert backend.unlock("prod") is None
    backend.lock("prod", LockInfo(ID="fresh"))


def test_wrong_credentials(engine):
    http = httpx.Client(transport=_lambda_transport(engine), base_url="https://backend.test")
    client = StateBackendClient("https://backend.test", username="tf", password="nope", client=http)
    with pytest.raises(BackendUnauthorizedError):
        client.list_states()


def test_retries_idempotent_requests_on_503():
    calls: List[str] = []
    sleeps: List[float] = []

    def _handle(request: httpx.Request) -> httpx.Response:
        calls.append(request.method)
        if len(calls) < 3:
            return httpx.Response(503)
        return httpx.Response(200, content=b"state")

    http = httpx.Client(transport=httpx.MockTransport(_handle), base_url="https://b")
    client = StateBackendClient("https://b", client=http, sleep=sleeps.append)
    assert client.get_state("prod") == b"state"
    assert calls == ["GET", "GET", "GET"]
    assert sleeps == [0.5, 1.0]


def test_lock_is_never_retried():
    calls: List[str] = []

    def _handle(request: httpx.Request) -> httpx.Response:
        calls.append(request.method)
        return httpx.Response(503)

    http = httpx.Client(transport=httpx.MockTransport(_handle), base_url="https://b")
    client = StateBackendClient("https://b", client=http, sleep=lambda _s: None)
    with pytest.raises(BackendApiError) as ei:
        client.lock("prod", LockInfo(ID="x"))
    assert ei.value.status_code == 503
    assert calls == ["LOCK"]


def test_transport_errors_exhaust_into_backend_error():
    def _handle(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    http = httpx.Client(transport=httpx.MockTransport(_handle), base_url="https://b")
    client = StateBackendClient("https://b", client=http, max_attempts=2, sleep=lambda _s: None)
    with pytest.raises(BackendError) as ei:
        client.delete_state("prod")
    assert isinstance(ei.value.__cause__, httpx.ConnectError)


def test_constructor_validation():
    with pytest.raises(ValueError):
        StateBackendClient("")
    with pytest.raises(ValueError):
        StateBackendClient("https://b", max_attempts=0)
