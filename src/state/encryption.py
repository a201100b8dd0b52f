from __future__ import annotations

from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken

from .blob_store import BlobInfo, BlobStore, BlobStoreError


def _to_fernet(key: str | bytes) -> Fernet:
    """Build the cipher for STATE_FERNET_KEY, rejecting keys Fernet cannot use."""
    raw = key.strip().encode("ascii", "replace") if isinstance(key, str) else key
    try:
        return Fernet(raw)
    except (ValueError, TypeError) as ex:
        raise ValueError(
            "STATE_FERNET_KEY must be a url-safe base64-encoded 32-byte key "
            "(see cryptography.fernet.Fernet.generate_key)"
        ) from ex


class EncryptedBlobStore:
    """
    Wraps another BlobStore and encrypts object bodies at rest using Fernet.

    Notes
    - Keys are stored in clear; only bodies are encrypted.
    - Listing sizes are the ciphertext sizes reported by the inner store.
    - Conditional put is available exactly when the inner store offers it.
    """

    def __init__(self, inner: BlobStore, fernet_key: str | bytes) -> None:
        self._inner = inner
        self._fernet = _to_fernet(fernet_key)

    @property
    def supports_put_if_absent(self) -> bool:
        return bool(getattr(self._inner, "supports_put_if_absent", False))

    def get(self, key: str) -> Optional[bytes]:
        token = self._inner.get(key)
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token)
        except InvalidToken as ex:
            raise BlobStoreError(f"Failed to decrypt {key}: invalid Fernet token") from ex

    def put(self, key: str, data: bytes) -> None:
        self._inner.put(key, self._fernet.encrypt(data))

    def put_if_absent(self, key: str, data: bytes) -> bool:
        return self._inner.put_if_absent(key, self._fernet.encrypt(data))

    def delete(self, key: str) -> None:
        self._inner.delete(key)

    def list(self, prefix: str) -> List[BlobInfo]:
        return self._inner.list(prefix)


__all__ = ["EncryptedBlobStore"]
