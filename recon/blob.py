"""Blob store collaborator for original uploaded files."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Protocol

from .errors import NotFoundError, ValidationError

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]+")


class BlobStore(Protocol):
    def upload(self, data: bytes, key: str) -> str: ...

    def download(self, key: str) -> bytes: ...


def upload_key(run_id: str, side: str, filename: str) -> str:
    """Blob key for a run's uploaded source file."""
    name = _UNSAFE_CHARS_RE.sub("_", Path(filename).name).strip("._") or "upload"
    return f"runs/{run_id}/{side}/{name}"


class LocalBlobStore:
    """Store blobs as files under a root directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        parts = key.split("/")
        if not key or any(p in ("", ".", "..") for p in parts):
            raise ValidationError(f"Invalid blob key: {key!r}")
        return self.root.joinpath(*parts)

    def upload(self, data: bytes, key: str) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path.resolve().as_uri()

    def download(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise NotFoundError(f"Unknown blob: '{key}'")
        return path.read_bytes()
