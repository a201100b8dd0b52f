from __future__ import annotations

import time
from typing import Any, Callable, Optional

import httpx
from pydantic import ValidationError

from state.models import LockInfo, StateListing


class BackendError(RuntimeError):
    """Base error for the state backend client."""


class BackendApiError(BackendError):
    """Unexpected HTTP status or payload from the backend."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BackendUnauthorizedError(BackendError):
    """Backend rejected the credentials (HTTP 401)."""


class BackendLockedError(BackendError):
    """LOCK refused because the state is already locked (HTTP 423)."""

    def __init__(self, existing: Optional[LockInfo]) -> None:
        holder = existing.id if existing is not None else None
        super().__init__(f"state is locked (lock id: {holder})")
        self.existing = existing


class BackendConflictError(BackendError):
    """UNLOCK refused (HTTP 409): held by another ID, or not locked at all."""

    def __init__(self, message: str, existing: Optional[LockInfo] = None) -> None:
        super().__init__(message)
        self.existing = existing


def _parse_lock(data: bytes) -> Optional[LockInfo]:
    if not data:
        return None
    try:
        return LockInfo.model_validate_json(data)
    except ValidationError:
        return None


class StateBackendClient:
    """
    Minimal client for the Terraform HTTP state backend served by this project.

    Notes
    - Speaks the same routes Terraform uses: GET/POST/DELETE/LOCK/UNLOCK on
      `/states/<id>` and GET `/states` for the listing.
    - Retries transport errors and 502/503/504 with backoff, but only for
      idempotent requests; LOCK and UNLOCK are never retried.
    """

    _RETRY_STATUSES = (502, 503, 504)

    def __init__(
        self,
        base_url: str,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 15.0,
        max_attempts: int = 3,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._max_attempts = max_attempts
        self._sleep = sleep
        self._owns_client = client is None
        self._auth = httpx.BasicAuth(username, password) if username is not None and password is not None else None
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "StateBackendClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def list_states(self) -> StateListing:
        resp = self._request("GET", "/states", retry=True)
        self._raise_for_status(resp)
        try:
            return StateListing.model_validate_json(resp.content)
        except ValidationError as ve:
            raise BackendApiError(f"Failed to parse state listing: {ve}") from ve

    def get_state(self, state_id: str) -> Optional[bytes]:
        """Return the raw state bytes, or None if the state does not exist."""
        resp = self._request("GET", f"/states/{state_id}", retry=True)
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp)
        return resp.content

    def put_state(self, state_id: str, data: bytes) -> None:
        resp = self._request("POST", f"/states/{state_id}", content=data, retry=True)
        self._raise_for_status(resp)

    def delete_state(self, state_id: str) -> None:
        resp = self._request("DELETE", f"/states/{state_id}", retry=True)
        self._raise_for_status(resp)

    def lock(self, state_id: str, lock: LockInfo) -> LockInfo:
        """Acquire the lock; raises BackendLockedError with the holder's record."""
        resp = self._request("LOCK", f"/states/{state_id}", content=lock.to_json_bytes(), retry=False)
        if resp.status_code == 423:
            raise BackendLockedError(_parse_lock(resp.content))
        self._raise_for_status(resp)
        return _parse_lock(resp.content) or lock

    def unlock(self, state_id: str, lock: Optional[LockInfo] = None) -> Optional[LockInfo]:
        """Release the lock. Passing no lock performs a force-unlock.

        Returns the released lock record as reported by the backend (None for
        a force-unlock).
        """
        body = lock.to_json_bytes() if lock is not None else b""
        resp = self._request("UNLOCK", f"/states/{state_id}", content=body, retry=False)
        if resp.status_code == 409:
            existing = _parse_lock(resp.content)
            message = resp.text if existing is None else f"state is locked by {existing.id}"
            raise BackendConflictError(message or "unlock conflict", existing)
        self._raise_for_status(resp)
        return _parse_lock(resp.content)

    # --------------- Internal ---------------
    def _request(self, method: str, url: str, *, retry: bool, **kwargs: Any) -> httpx.Response:
        attempts = self._max_attempts if retry else 1
        if self._auth is not None:
            kwargs["auth"] = self._auth
        backoff = 0.5
        last_exc: Optional[Exception] = None
        resp: Optional[httpx.Response] = None
        for attempt in range(attempts):
            try:
                resp = self._client.request(method, url, **kwargs)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
                resp = None
            else:
                if resp.status_code not in self._RETRY_STATUSES:
                    return resp

            if attempt + 1 < attempts:
                self._sleep(backoff)
                backoff = min(backoff * 2, 8.0)

        if resp is not None:
            return resp
        raise BackendError(f"{method} {url} failed after {attempts} attempt(s)") from last_exc

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code == 200:
            return
        if resp.status_code == 401:
            raise BackendUnauthorizedError("backend rejected credentials")
        raise BackendApiError(
            f"HTTP {resp.status_code} from state backend: {resp.text[:200]}",
            status_code=resp.status_code,
        )


__all__ = [
    "BackendApiError",
    "BackendConflictError",
    "BackendError",
    "BackendLockedError",
    "BackendUnauthorizedError",
    "StateBackendClient",
]
