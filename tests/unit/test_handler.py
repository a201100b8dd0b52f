from __future__ import annotations

import base64
import json
from typing import Any, Dict, Optional

import pytest

from common.auth import BasicAuth, FailAuth, NoopAuth
from state.blob_store import BlobStoreError, InMemoryBlobStore
from state.engine import StateEngine


TEST_STATE = {"version": 4, "terraform_version": "1.2.3", "serial": 1, "lineage": "test-lineage"}
TEST_LOCK = {"ID": "test"}


def _event(
    method: str,
    path: str,
    body: Optional[bytes] = None,
    *,
    headers: Optional[Dict[str, str]] = None,
    b64: bool = True,
) -> Dict[str, Any]:
    ev: Dict[str, Any] = {
        "version": "2.0",
        "rawPath": path,
        "headers": headers or {},
        "requestContext": {"http": {"method": method, "path": path}},
        "isBase64Encoded": False,
    }
    if body is not None:
        if b64:
            ev["body"] = base64.b64encode(body).decode("ascii")
            ev["isBase64Encoded"] = True
        else:
            ev["body"] = body.decode("utf-8")
    return ev


def _body(resp: Dict[str, Any]) -> bytes:
    raw = resp.get("body") or ""
    return base64.b64decode(raw) if resp.get("isBase64Encoded") else raw.encode("utf-8")


@pytest.fixture
def store():
    return InMemoryBlobStore()


@pytest.fixture
def call(store):
    from api import handler

    engine = StateEngine(store, NoopAuth())

    def _call(method: str, path: str, body: Optional[bytes] = None, **kw):
        return handler.handle(_event(method, path, body, **kw), engine)

    return _call


def test_terraform_session_flow(call):
    """Mirrors a full Terraform run: list, write, read, lock, unlock, delete."""
    resp = call("GET", "/states")
    assert resp["statusCode"] == 200
    assert json.loads(_body(resp)) == {"states": [], "locks": []}

    assert call("POST", "/states/test", json.dumps(TEST_STATE).encode())["statusCode"] == 200

    resp = call("GET", "/states/test")
    assert resp["statusCode"] == 200
    assert json.loads(_body(resp)) == TEST_STATE

    resp = call("UNLOCK", "/states/test", json.dumps(TEST_LOCK).encode())
    assert resp["statusCode"] == 409
    assert b"not locked" in _body(resp)

    resp = call("LOCK", "/states/test", json.dumps(TEST_LOCK).encode())
    assert resp["statusCode"] == 200
    assert json.loads(_body(resp)) == TEST_LOCK

    resp = call("LOCK", "/states/test", json.dumps({"ID": "invalid"}).encode())
    assert resp["statusCode"] == 423
    assert json.loads(_body(resp)) == TEST_LOCK

    resp = call("GET", "/states")
    listing = json.loads(_body(resp))
    assert len(listing["states"]) == 1 and len(listing["locks"]) == 1
    assert listing["states"][0]["id"] == "states/test.tfstate"
    assert set(listing["states"][0]) == {"id", "size", "uploaded"}

    resp = call("UNLOCK", "/states/test", json.dumps({"ID": "invalid"}).encode())
    assert resp["statusCode"] == 409
    assert json.loads(_body(resp)) == TEST_LOCK

    resp = call("UNLOCK", "/states/test", json.dumps(TEST_LOCK).encode())
    assert resp["statusCode"] == 200
    assert json.loads(_body(resp)) == TEST_LOCK

    assert call("DELETE", "/states/test")["statusCode"] == 200

    resp = call("GET", "/states")
    assert json.loads(_body(resp)) == {"states": [], "locks": []}


def test_read_missing_is_404(call):
    assert call("GET", "/states/missing")["statusCode"] == 404


def test_plain_text_body_is_accepted(call):
    assert call("POST", "/states/prod", b'{"serial": 2}', b64=False)["statusCode"] == 200
    assert _body(call("GET", "/states/prod.tfstate")) == b'{"serial": 2}'


def test_empty_write_roundtrips(call):
    assert call("POST", "/states/empty")["statusCode"] == 200
    resp = call("GET", "/states/empty")
    assert resp["statusCode"] == 200
    assert _body(resp) == b""


def test_delete_missing_is_200(call):
    assert call("DELETE", "/states/ghost")["statusCode"] == 200


def test_force_unlock_with_empty_body(call, store):
    call("LOCK", "/states/prod", json.dumps({"ID": "someone"}).encode())
    resp = call("UNLOCK", "/states/prod")
    assert resp["statusCode"] == 200
    assert resp["body"] == ""
    assert store.get("locks/prod.tfstate") is None
    assert call("UNLOCK", "/states/prod")["statusCode"] == 200


def test_malformed_unlock_body_is_400(call):
    call("LOCK", "/states/prod", json.dumps(TEST_LOCK).encode())
    assert call("UNLOCK", "/states/prod", b"{not json")["statusCode"] == 400


def test_stage_prefix_is_ignored(call):
    call("POST", "/prod-stage/states/app", b"data")
    assert _body(call("GET", "/prod-stage/states/app")) == b"data"


def test_state_named_states_is_not_the_listing(call):
    call("POST", "/states/states", b"data")
    assert _body(call("GET", "/states/states")) == b"data"


@pytest.mark.parametrize(
    "path",
    ["/", "/other", "/states/-bad", "/states/a/b", "/states/.x", "/states/prodé", "/states/a٣", "/states/prod/states"],
)
def test_unknown_paths_are_404(call, path):
    assert call("GET", path)["statusCode"] == 404


def test_non_ascii_state_id_is_not_stored(call, store):
    assert call("POST", "/states/prodé", b"data")["statusCode"] == 404
    assert store.keys() == []


def test_nested_states_segment_is_not_the_listing(call):
    call("POST", "/states/prod", b"data")
    assert call("GET", "/states/prod/states")["statusCode"] == 404
    assert call("GET", "/api/v1/states")["statusCode"] == 200


@pytest.mark.parametrize("method", ["POST", "LOCK", "UNLOCK"])
def test_invalid_base64_body_is_400_and_writes_nothing(call, store, method):
    from api import handler

    call("POST", "/states/prod", b"original")
    event = _event(method, "/states/prod")
    event["body"] = "!!!"
    event["isBase64Encoded"] = True

    resp = handler.handle(event, StateEngine(store, NoopAuth()))
    assert resp["statusCode"] == 400
    assert store.get("states/prod.tfstate") == b"original"
    assert store.get("locks/prod.tfstate") is None


def test_unsupported_methods_are_405(call):
    assert call("PUT", "/states/prod", b"x")["statusCode"] == 405
    assert call("POST", "/states", b"x")["statusCode"] == 405


@pytest.mark.parametrize(
    "method, path, body",
    [
        ("GET", "/states", None),
        ("GET", "/states/prod", None),
        ("POST", "/states/prod", b"x"),
        ("DELETE", "/states/prod", None),
        ("LOCK", "/states/prod", b'{"ID": "1"}'),
        ("UNLOCK", "/states/prod", b'{"ID": "1"}'),
        ("UNLOCK", "/states/prod", None),
    ],
)
def test_fail_auth_returns_401_for_everything(method, path, body):
    from api import handler

    store = InMemoryBlobStore()
    resp = handler.handle(_event(method, path, body), StateEngine(store, FailAuth()))
    assert resp["statusCode"] == 401
    assert "www-authenticate" not in resp["headers"]
    assert store.keys() == []


def test_basic_auth_challenge_and_success():
    from api import handler

    engine = StateEngine(InMemoryBlobStore(), BasicAuth("tf", "pw"))

    resp = handler.handle(_event("GET", "/states"), engine)
    assert resp["statusCode"] == 401
    assert resp["headers"]["www-authenticate"].startswith("Basic")

    token = base64.b64encode(b"tf:pw").decode("ascii")
    resp = handler.handle(_event("GET", "/states", headers={"authorization": f"Basic {token}"}), engine)
    assert resp["statusCode"] == 200


def test_storage_failure_is_500_with_empty_body():
    from api import handler

    class _Broken(InMemoryBlobStore):
        def get(self, key):
            raise BlobStoreError("s3 down")

    resp = handler.handle(_event("GET", "/states/prod"), StateEngine(_Broken(), NoopAuth()))
    assert resp["statusCode"] == 500
    assert resp["body"] == ""


def test_lambda_handler_builds_engine_from_env(monkeypatch):
    from api import handler

    created = {}

    def fake_build_store(settings, **_kw):
        created["settings"] = settings
        return InMemoryBlobStore()

    monkeypatch.setenv("STATE_BUCKET", "tf-states")
    monkeypatch.setenv("AUTH_PLUGIN", "noop")
    monkeypatch.delenv("PARAM_PREFIX", raising=False)
    monkeypatch.setattr(handler, "build_store", fake_build_store)
    handler._engine.cache_clear()
    try:
        resp = handler.lambda_handler(_event("GET", "/states"), None)
        assert resp["statusCode"] == 200
        assert created["settings"].bucket == "tf-states"
        handler.lambda_handler(_event("GET", "/states"), None)
        assert handler._engine.cache_info().misses == 1
    finally:
        handler._engine.cache_clear()


def test_build_store_wraps_with_encryption_when_key_configured():
    from cryptography.fernet import Fernet

    from api import handler
    from common.config import Settings
    from state.encryption import EncryptedBlobStore
    from state.s3_store import S3BlobStore

    plain = handler.build_store(Settings(bucket="b"), s3=object())
    assert isinstance(plain, S3BlobStore)

    enc = handler.build_store(Settings(bucket="b", fernet_key=Fernet.generate_key().decode()), s3=object())
    assert isinstance(enc, EncryptedBlobStore)
    assert enc.supports_put_if_absent is True
