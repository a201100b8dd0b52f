from __future__ import annotations

import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


STATE_SUFFIX = ".tfstate"
STATES_PREFIX = "states/"
LOCKS_PREFIX = "locks/"

# ASCII-only: \w must not admit letters or digits from other scripts
STATE_ID_RE = re.compile(r"[a-zA-Z0-9][\w\-.]*", re.ASCII)


class InvalidStateIdError(ValueError):
    """State identifier does not match the allowed naming pattern."""


def canonical_state_id(state_id: str) -> str:
    """Validate `state_id` and append the `.tfstate` suffix when missing.

    Idempotent: canonicalizing an already canonical id returns it unchanged.
    Raises InvalidStateIdError for ids not matching `[a-zA-Z0-9][\\w\\-.]*`.
    """
    if not isinstance(state_id, str) or not STATE_ID_RE.fullmatch(state_id):
        raise InvalidStateIdError(f"Invalid state id: {state_id!r}")
    if not state_id.endswith(STATE_SUFFIX):
        state_id = state_id + STATE_SUFFIX
    return state_id


def state_key(canonical_id: str) -> str:
    return f"{STATES_PREFIX}{canonical_id}"


def lock_key(canonical_id: str) -> str:
    return f"{LOCKS_PREFIX}{canonical_id}"


class LockInfo(BaseModel):
    """
    Lock metadata as sent by Terraform on LOCK/UNLOCK.

    Fields mirror Terraform's `statemgr.LockInfo` JSON (capitalized keys).
    All fields are optional: a force-unlock or a hand-written lock may carry
    only `ID`. Unknown keys are kept so a record survives a parse/dump cycle.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[str] = Field(default=None, alias="ID")
    operation: Optional[str] = Field(default=None, alias="Operation")
    info: Optional[str] = Field(default=None, alias="Info")
    who: Optional[str] = Field(default=None, alias="Who")
    version: Optional[str] = Field(default=None, alias="Version")
    created: Optional[str] = Field(default=None, alias="Created")
    path: Optional[str] = Field(default=None, alias="Path")

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


class InfoItem(BaseModel):
    """Listing entry for a stored state or lock object."""

    id: str = Field(..., description="Storage key, e.g. states/prod.tfstate")
    size: int = Field(..., ge=0, description="Object size in bytes")
    uploaded: datetime = Field(..., description="Last upload time (UTC)")


class StateListing(BaseModel):
    states: List[InfoItem] = Field(default_factory=list)
    locks: List[InfoItem] = Field(default_factory=list)
