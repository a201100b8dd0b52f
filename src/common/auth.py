"""
Authorization plugins gating every state backend operation.

One plugin instance is built from configuration at cold start and handed to
the engine; it is never mutated afterwards. Each request's headers travel in
a `RequestContext` passed explicitly into `authorize()`.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple


logger = logging.getLogger(__name__)

WILDCARD_RESOURCE = "*"


class Action(str, Enum):
    LIST = "list"
    READ = "read"
    WRITE = "write"
    DELETE = "delete"


class UnauthorizedError(Exception):
    """Request rejected by the authorization plugin."""

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)
        self.message = message


@dataclass(frozen=True)
class RequestContext:
    """Identity context of a single request (header names are case-insensitive)."""

    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_headers(cls, headers: Optional[Mapping[str, str]]) -> "RequestContext":
        norm = {str(k).lower(): str(v) for k, v in (headers or {}).items() if v is not None}
        return cls(headers=norm)

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


class AuthPlugin(ABC):
    name: str = ""

    @abstractmethod
    def authorize(self, ctx: RequestContext, action: Action, resource: str) -> None:
        """Return normally to allow; raise UnauthorizedError to reject."""


class FailAuth(AuthPlugin):
    """Rejects everything. Used when no policy is configured."""

    name = "fail"

    def authorize(self, ctx: RequestContext, action: Action, resource: str) -> None:
        raise UnauthorizedError()


class NoopAuth(AuthPlugin):
    """Accepts everything. Only for trusted networks."""

    name = "noop"

    def authorize(self, ctx: RequestContext, action: Action, resource: str) -> None:
        return None


def _digest(value: str) -> bytes:
    return hashlib.sha256(value.encode("utf-8")).digest()


def credentials_match(
    expected_user: str, expected_password: str, provided_user: str, provided_password: str
) -> bool:
    """Compare both credential fields in constant time.

    Values are hashed first so the comparison runs over fixed-length digests and
    leaks neither the mismatch position nor the expected length. Both fields are
    always compared.
    """
    user_ok = hmac.compare_digest(_digest(expected_user), _digest(provided_user))
    password_ok = hmac.compare_digest(_digest(expected_password), _digest(provided_password))
    return user_ok & password_ok


def parse_basic_credentials(header: Optional[str]) -> Tuple[str, str]:
    """Extract (username, password) from a `Basic` Authorization header.

    Raises UnauthorizedError when the header is absent or malformed.
    """
    if not header:
        raise UnauthorizedError("Missing authorization header")

    scheme, _, encoded = header.strip().partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        raise UnauthorizedError("Invalid auth type")

    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise UnauthorizedError("Malformed credentials") from exc

    user, sep, password = decoded.partition(":")
    if not sep:
        raise UnauthorizedError("Malformed credentials")
    return user, password


class BasicAuth(AuthPlugin):
    """HTTP Basic credentials checked against one configured username/password."""

    name = "basic"

    def __init__(self, username: str, password: str) -> None:
        if not username or not password:
            raise ValueError("basic auth requires a non-empty username and password")
        self._username = username
        self._password = password

    def authorize(self, ctx: RequestContext, action: Action, resource: str) -> None:
        user, password = parse_basic_credentials(ctx.header("authorization"))
        if not credentials_match(self._username, self._password, user, password):
            raise UnauthorizedError()


def build_auth_plugin(
    name: Optional[str],
    *,
    username: Optional[str] = None,
    password: Optional[str] = None,
) -> AuthPlugin:
    """Create the configured plugin. An unset name yields FailAuth."""
    key = (name or FailAuth.name).strip().lower()
    if key == FailAuth.name:
        return FailAuth()
    if key == NoopAuth.name:
        logger.warning("Authorization disabled (AUTH_PLUGIN=noop); every request is allowed")
        return NoopAuth()
    if key == BasicAuth.name:
        return BasicAuth(username or "", password or "")
    raise ValueError(f"Unknown auth plugin: {name!r}")


__all__ = [
    "Action",
    "AuthPlugin",
    "BasicAuth",
    "FailAuth",
    "NoopAuth",
    "RequestContext",
    "UnauthorizedError",
    "WILDCARD_RESOURCE",
    "build_auth_plugin",
    "credentials_match",
    "parse_basic_credentials",
]
