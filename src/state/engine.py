"""
State and lock protocol engine for the Terraform HTTP backend.

Every operation canonicalizes the state id, asks the authorization plugin,
and only then touches the blob store. The engine keeps nothing in memory
between calls; all durable state lives in the store under
`states/<id>` and `locks/<id>`.

Lock acquisition reads the lock key and writes it when absent. With a store
that lacks a conditional put this check-then-write is not atomic: two
concurrent acquirers can both observe "absent" and both write, and the later
write wins silently. Stores offering `put_if_absent` (S3) close that window.
"""

from __future__ import annotations

import json
import logging
from typing import Callable, Optional, TypeVar

from pydantic import ValidationError

from common.auth import Action, AuthPlugin, RequestContext, UnauthorizedError, WILDCARD_RESOURCE

from .blob_store import BlobInfo, BlobStore, BlobStoreError
from .models import (
    LOCKS_PREFIX,
    STATES_PREFIX,
    InfoItem,
    LockInfo,
    StateListing,
    canonical_state_id,
    lock_key,
    state_key,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


class StateEngineError(Exception):
    """Base error for state engine operations."""


class StorageError(StateEngineError):
    """The blob store failed; carries the operation and key involved."""

    def __init__(self, operation: str, key: str) -> None:
        super().__init__(f"storage {operation} failed for {key}")
        self.operation = operation
        self.key = key


class MalformedLockError(StateEngineError):
    """Presented lock body is not a usable lock record."""


class LockConflictError(StateEngineError):
    """Lock request conflicts with the current lock state."""

    def __init__(self, message: str, existing: Optional[bytes] = None) -> None:
        super().__init__(message)
        self.existing = existing


class StateLockedError(LockConflictError):
    """Acquire attempted while a lock record exists; `existing` is that record."""


class LockOwnershipError(LockConflictError):
    """Unlock presented a lock ID different from the holder's."""


class NotLockedError(LockConflictError):
    """Unlock with a lock ID attempted on a state that is not locked."""

    def __init__(self) -> None:
        super().__init__("attempting to unlock but resource not locked")


def _info_item(blob: BlobInfo) -> InfoItem:
    return InfoItem(id=blob.key, size=blob.size, uploaded=blob.uploaded)


def _lock_id(raw: bytes) -> Optional[str]:
    """Return the ID field of a stored lock record, or None if unreadable."""
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    value = data.get("ID")
    return value if isinstance(value, str) else None


def parse_lock_body(body: bytes) -> LockInfo:
    """Parse an UNLOCK body into LockInfo; requires a non-empty string ID."""
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedLockError("lock body is not valid JSON") from exc
    if not isinstance(data, dict):
        raise MalformedLockError("lock body must be a JSON object")
    try:
        info = LockInfo.model_validate(data)
    except ValidationError as exc:
        raise MalformedLockError(f"invalid lock body: {exc}") from exc
    if not info.id:
        raise MalformedLockError("lock body has no ID")
    return info


class StateEngine:
    """
    Implements list/read/write/delete of state blobs and lock/unlock.

    - `store`: any BlobStore (S3, in-memory, encrypted wrapper).
    - `auth`: the authorization plugin chosen at startup.

    Not-found reads return None. Lock conflicts, authorization failures, store
    failures and malformed lock bodies are raised as distinct exceptions.
    """

    def __init__(self, store: BlobStore, auth: AuthPlugin) -> None:
        self._store = store
        self._auth = auth

    @property
    def auth(self) -> AuthPlugin:
        return self._auth

    # -------- Public API --------
    def list_states(self, ctx: RequestContext) -> StateListing:
        self._authorize(ctx, Action.LIST, WILDCARD_RESOURCE)
        states = self._storage("list", STATES_PREFIX, lambda: self._store.list(STATES_PREFIX))
        locks = self._storage("list", LOCKS_PREFIX, lambda: self._store.list(LOCKS_PREFIX))
        return StateListing(
            states=[_info_item(b) for b in states],
            locks=[_info_item(b) for b in locks],
        )

    def read_state(self, ctx: RequestContext, state_id: str) -> Optional[bytes]:
        sid = canonical_state_id(state_id)
        self._authorize(ctx, Action.READ, sid)
        key = state_key(sid)
        return self._storage("get", key, lambda: self._store.get(key))

    def write_state(self, ctx: RequestContext, state_id: str, data: bytes) -> None:
        # Lock possession is not checked here; Terraform coordinates via LOCK/UNLOCK.
        sid = canonical_state_id(state_id)
        self._authorize(ctx, Action.WRITE, sid)
        key = state_key(sid)
        self._storage("put", key, lambda: self._store.put(key, bytes(data)))

    def delete_state(self, ctx: RequestContext, state_id: str) -> None:
        sid = canonical_state_id(state_id)
        self._authorize(ctx, Action.DELETE, sid)
        key = state_key(sid)
        self._storage("delete", key, lambda: self._store.delete(key))

    def acquire_lock(self, ctx: RequestContext, state_id: str, lock_body: bytes) -> bytes:
        """Create the lock record for `state_id` and return `lock_body` unchanged.

        Raises StateLockedError carrying the current record when already locked.
        """
        sid = canonical_state_id(state_id)
        self._authorize(ctx, Action.WRITE, sid)
        key = lock_key(sid)
        body = bytes(lock_body)

        existing = self._storage("get", key, lambda: self._store.get(key))
        if existing is not None:
            logger.info("Lock request for %s rejected: already locked", sid)
            raise StateLockedError(f"{sid} is already locked", existing)

        if getattr(self._store, "supports_put_if_absent", False):
            created = self._storage("put_if_absent", key, lambda: self._store.put_if_absent(key, body))
            if not created:
                current = self._storage("get", key, lambda: self._store.get(key))
                logger.info("Lock request for %s lost a concurrent acquire", sid)
                raise StateLockedError(f"{sid} is already locked", current if current is not None else b"")
        else:
            self._storage("put", key, lambda: self._store.put(key, body))

        logger.info("Locked %s (lock id %s)", sid, _lock_id(body))
        return body

    def release_lock(self, ctx: RequestContext, state_id: str, body: bytes) -> bytes:
        """Release the lock on `state_id`.

        - Empty body: force-unlock. Terraform's `force-unlock` sends no lock
          identity, so the record is deleted whoever holds it; returns b"".
        - Otherwise the body's ID must match the holder's; returns the
          deleted record.
        """
        sid = canonical_state_id(state_id)
        self._authorize(ctx, Action.WRITE, sid)
        key = lock_key(sid)

        if not body:
            self._storage("delete", key, lambda: self._store.delete(key))
            logger.info("Force-unlocked %s", sid)
            return b""

        presented = parse_lock_body(bytes(body))

        existing = self._storage("get", key, lambda: self._store.get(key))
        if existing is None:
            raise NotLockedError()

        if _lock_id(existing) != presented.id:
            logger.info("Unlock of %s rejected: lock held by a different ID", sid)
            raise LockOwnershipError(f"{sid} is locked by another lock ID", existing)

        self._storage("delete", key, lambda: self._store.delete(key))
        logger.info("Unlocked %s (lock id %s)", sid, presented.id)
        return existing

    # -------- Internal --------
    def _authorize(self, ctx: RequestContext, action: Action, resource: str) -> None:
        try:
            self._auth.authorize(ctx, action, resource)
        except UnauthorizedError as e:
            logger.warning("Unauthorized %s on %s: %s", action.value, resource, e.message)
            raise

    @staticmethod
    def _storage(operation: str, key: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except BlobStoreError as e:
            logger.exception("Storage %s failed for %s", operation, key)
            raise StorageError(operation, key) from e


__all__ = [
    "LockConflictError",
    "LockOwnershipError",
    "MalformedLockError",
    "NotLockedError",
    "StateEngine",
    "StateEngineError",
    "StateLockedError",
    "StorageError",
    "parse_lock_body",
]
