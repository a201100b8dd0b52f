from __future__ import annotations

import base64
import binascii
import functools
import logging
from typing import Any, Dict, Optional

from common.auth import AuthPlugin, BasicAuth, RequestContext, UnauthorizedError, build_auth_plugin
from common.config import Settings
from state.blob_store import BlobStore
from state.encryption import EncryptedBlobStore
from state.engine import (
    LockOwnershipError,
    MalformedLockError,
    NotLockedError,
    StateEngine,
    StateLockedError,
    StorageError,
)
from state.models import STATE_ID_RE, InvalidStateIdError
from state.s3_store import S3BlobStore


logger = logging.getLogger(__name__)

_STATES_SEGMENT = "states"

_STATE_METHODS = {"GET", "POST", "DELETE", "LOCK", "UNLOCK"}
_BASIC_CHALLENGE = 'Basic realm="terraform-state"'


class MalformedBodyError(ValueError):
    """Request body flagged as base64 does not decode."""


class _NoRoute(Exception):
    """Path does not address the listing or a single state."""


def _response(
    status: int,
    body: bytes = b"",
    *,
    content_type: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Build a Lambda proxy response; non-empty bodies are sent base64-encoded."""
    out_headers: Dict[str, str] = dict(headers or {})
    if content_type:
        out_headers["content-type"] = content_type
    if not body:
        return {"statusCode": status, "headers": out_headers, "body": "", "isBase64Encoded": False}
    return {
        "statusCode": status,
        "headers": out_headers,
        "body": base64.b64encode(body).decode("ascii"),
        "isBase64Encoded": True,
    }


def _text(status: int, text: str) -> Dict[str, Any]:
    return _response(status, text.encode("utf-8"), content_type="text/plain; charset=utf-8")


def _method(event: Dict[str, Any]) -> str:
    http = (event.get("requestContext") or {}).get("http") or {}
    return str(http.get("method") or event.get("httpMethod") or "").upper()


def _path(event: Dict[str, Any]) -> str:
    return str(event.get("rawPath") or event.get("path") or "/")


def _route(path: str) -> Optional[str]:
    """Return the state id addressed by `path`, or None for the listing.

    Segments before the first "states" segment (stage name, custom prefix)
    are ignored; at most one segment may follow it.
    """
    segments = [s for s in path.split("/") if s]
    try:
        idx = segments.index(_STATES_SEGMENT)
    except ValueError:
        raise _NoRoute(path) from None
    rest = segments[idx + 1 :]
    if len(rest) > 1:
        raise _NoRoute(path)
    return rest[0] if rest else None


def _body(event: Dict[str, Any]) -> bytes:
    raw = event.get("body")
    if raw in (None, ""):
        return b""
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedBodyError("request body is not valid base64") from e
    return str(raw).encode("utf-8")


def _unauthorized(auth: AuthPlugin) -> Dict[str, Any]:
    headers = {"www-authenticate": _BASIC_CHALLENGE} if isinstance(auth, BasicAuth) else None
    return _response(401, b"Unauthorized", content_type="text/plain; charset=utf-8", headers=headers)


def handle(event: Dict[str, Any], engine: StateEngine) -> Dict[str, Any]:
    """Route one HTTP event to the engine and map the outcome to a response.

    Status mapping
    - 200 success, 404 unknown path or missing state, 405 unsupported method
    - 401 rejected by the auth plugin
    - 423 already locked (body: current lock), 409 unlock conflict
    - 400 malformed unlock body or undecodable base64 body, 500 storage failure (empty body)
    """
    method = _method(event)
    try:
        state_id = _route(_path(event))
    except _NoRoute:
        return _text(404, "404 Not Found")

    if state_id is not None and not STATE_ID_RE.fullmatch(state_id):
        return _text(404, "404 Not Found")

    ctx = RequestContext.from_headers(event.get("headers"))

    try:
        if state_id is None:
            if method != "GET":
                return _text(405, "Method Not Allowed")
            listing = engine.list_states(ctx)
            return _response(200, listing.model_dump_json().encode("utf-8"), content_type="application/json")

        if method not in _STATE_METHODS:
            return _text(405, "Method Not Allowed")

        if method == "GET":
            data = engine.read_state(ctx, state_id)
            if data is None:
                return _text(404, "404 Not Found")
            return _response(200, data, content_type="application/octet-stream")

        if method == "POST":
            engine.write_state(ctx, state_id, _body(event))
            return _response(200)

        if method == "DELETE":
            engine.delete_state(ctx, state_id)
            return _response(200)

        if method == "LOCK":
            lock = engine.acquire_lock(ctx, state_id, _body(event))
            return _response(200, lock, content_type="application/json")

        released = engine.release_lock(ctx, state_id, _body(event))
        if not released:
            return _response(200)
        return _response(200, released, content_type="application/json")

    except UnauthorizedError:
        return _unauthorized(engine.auth)
    except StateLockedError as e:
        return _response(423, e.existing or b"", content_type="application/json")
    except LockOwnershipError as e:
        return _response(409, e.existing or b"", content_type="application/json")
    except NotLockedError as e:
        return _text(409, str(e))
    except (MalformedLockError, MalformedBodyError) as e:
        return _text(400, str(e))
    except InvalidStateIdError:
        return _text(404, "404 Not Found")
    except StorageError as e:
        # Already logged with traceback by the engine
        logger.error("Request %s %s failed: %s", method, _path(event), e)
        return _response(500)


def build_store(settings: Settings, *, s3: Optional[object] = None) -> BlobStore:
    store: BlobStore = S3BlobStore(s3=s3, bucket=settings.bucket, prefix=settings.prefix, region_name=settings.region)
    if settings.fernet_key:
        store = EncryptedBlobStore(store, settings.fernet_key)
    return store


@functools.lru_cache(maxsize=1)
def _engine() -> StateEngine:
    settings = Settings.from_env()
    logging.getLogger().setLevel(settings.log_level)
    auth = build_auth_plugin(
        settings.auth_plugin,
        username=settings.basic_username,
        password=settings.basic_password,
    )
    engine = StateEngine(build_store(settings), auth)
    logger.info("State backend ready (bucket=%s, auth=%s)", settings.bucket, auth.name)
    return engine


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entry for API Gateway HTTP API / Function URL events (payload 2.0).

    Environment:
    - STATE_BUCKET (required), STATE_PREFIX, AWS_REGION
    - AUTH_PLUGIN (fail|noop|basic), AUTH_BASIC_USERNAME, AUTH_BASIC_PASSWORD
    - PARAM_PREFIX: SSM prefix providing auth_basic_username, auth_basic_password, fernet_key
    - STATE_FERNET_KEY: enables at-rest encryption
    - LOG_LEVEL
    """
    return handle(event, _engine())
