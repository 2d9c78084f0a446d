"""Receipt file storage.

The storage backend is a collaborator exposing ``save(data, path) -> url``.
LocalReceiptStorage writes under RECEIPT_STORAGE_DIR and serves from
RECEIPT_PUBLIC_BASE_URL; deployments with object storage swap the instance
returned by get_receipt_storage().
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol


class ReceiptStorage(Protocol):
    def save(self, data: bytes, path: str) -> str:
        """Persist bytes at a relative path and return a retrievable URL."""
        ...


class LocalReceiptStorage:
    """Filesystem storage rooted at a single directory."""

    def __init__(self, root: str | os.PathLike[str], public_base_url: str) -> None:
        self._root = Path(root).resolve()
        self._public_base_url = public_base_url.rstrip("/")

    def save(self, data: bytes, path: str) -> str:
        target = (self._root / path).resolve()
        if self._root not in target.parents:
            raise ValueError("Receipt path escapes storage root")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return f"{self._public_base_url}/{path}"


_storage: ReceiptStorage | None = None


def get_receipt_storage() -> ReceiptStorage:
    """Process-wide storage instance (allows test injection)."""
    global _storage
    if _storage is None:
        _storage = LocalReceiptStorage(
            os.environ.get("RECEIPT_STORAGE_DIR", "./uploads"),
            os.environ.get("RECEIPT_PUBLIC_BASE_URL", "/uploads"),
        )
    return _storage
