"""
State backend core: storage keys, lock records, blob stores and the engine.

Terraform state blobs live under `states/<id>.tfstate` and lock records under
`locks/<id>.tfstate` in a single bucket. The engine treats both as opaque
bytes, reading only the lock `ID` for ownership checks.
"""

from .models import InfoItem, LockInfo, StateListing, canonical_state_id

__all__ = ["InfoItem", "LockInfo", "StateListing", "canonical_state_id"]
