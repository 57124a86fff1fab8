"""Abstractions for storing uploaded documents and streaming them back."""
from __future__ import annotations

from pathlib import Path
from typing import Iterator

from ..config import get_settings


STORAGE_ROOT = Path(get_settings().object_storage_root)


def _resolve(file_key: str) -> Path:
    """Map a file key onto the storage root, refusing paths that escape it."""
    root = STORAGE_ROOT.resolve()
    target = (root / file_key).resolve()
    if root not in target.parents:
        raise ValueError(f"File key escapes storage root: {file_key}")
    return target


def save_document_bytes(data: bytes, file_key: str) -> str:
    """Persist the provided document bytes.

    Production deployments plug into S3 or another object store via the same
    file key interface. The reference implementation stores payloads locally
    so tests can execute end-to-end.
    """

    target = _resolve(file_key)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)
    return file_key


def exists(file_key: str) -> bool:
    try:
        return _resolve(file_key).is_file()
    except ValueError:
        return False


def iter_bytes(file_key: str, chunk_size: int | None = None) -> Iterator[bytes]:
    """Yield the stored file in chunks."""

    size = chunk_size or get_settings().download_chunk_size
    with _resolve(file_key).open("rb") as handle:
        while True:
            chunk = handle.read(size)
            if not chunk:
                break
            yield chunk


__all__ = ["save_document_bytes", "exists", "iter_bytes"]
