"""JSON persistence for the listing store.

The store is one JSON document, ``{"newListings": {id: listing}}``. Older
exports hold the bare mapping without the root key; both shapes are read,
and :class:`ListingStore` remembers which one it found so a save writes
the same shape back.

Several worker processes update the same files, so every read-modify-write
runs under an inter-process lock on ``<file>.lock``.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from filelock import FileLock

from .config import STORE_ROOT_KEY
from .errors import StoreError

LOGGER = logging.getLogger(__name__)

Record = Dict[str, Any]
Listings = Dict[str, Record]

LOCK_TIMEOUT = 120.0


@dataclass
class ListingStore:
    """Listings mapping plus the path and shape it was loaded from."""

    listings: Listings = field(default_factory=dict)
    path: Optional[Path] = None
    root_key: Optional[str] = STORE_ROOT_KEY

    def to_document(self) -> Dict[str, Any]:
        if self.root_key is None:
            return self.listings
        return {self.root_key: self.listings}

    def save(self, path: Optional[Path] = None) -> Path:
        target = Path(path or self.path or "")
        if not str(target):
            raise StoreError("No path given for listing store")
        write_json_atomic(target, self.to_document())
        LOGGER.info("Wrote %d listings to %s", len(self.listings), target)
        return target


def read_json(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON through a temp file in the same directory, then rename."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, ensure_ascii=False, indent=2)
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _split_document(document: Any, root_key: str) -> tuple[Listings, Optional[str]]:
    if not isinstance(document, dict):
        raise ValueError("listing store must be a JSON object")
    if root_key in document:
        listings = document[root_key] or {}
        if not isinstance(listings, dict):
            raise ValueError(f"'{root_key}' must map ids to listings")
        return listings, root_key
    return document, None


def load_store(
    path: str | Path,
    *,
    required: bool = False,
    root_key: str = STORE_ROOT_KEY,
) -> ListingStore:
    """Load a listing store from ``path``.

    Parameters
    ----------
    path : str or Path
        JSON document to read
    required : bool
        When True a missing or unreadable file raises :class:`StoreError`;
        otherwise it is logged and an empty store is returned
    root_key : str
        Key wrapping the listings mapping

    Returns
    -------
    ListingStore
        Listings keyed by id, with the path and root key for saving
    """
    path = Path(path)
    if not path.exists():
        if required:
            raise StoreError(f"File not found: {path}", path=str(path))
        LOGGER.warning("No listing store at %s, starting empty", path)
        return ListingStore(path=path, root_key=root_key)

    try:
        listings, found_key = _split_document(read_json(path), root_key)
    except (OSError, ValueError) as exc:
        if required:
            raise StoreError(f"Could not read {path}: {exc}", path=str(path)) from exc
        LOGGER.warning("Listing store %s is unreadable (%s), starting empty", path, exc)
        return ListingStore(path=path, root_key=root_key)

    LOGGER.info("Read %d listings from %s", len(listings), path)
    return ListingStore(listings=listings, path=path, root_key=found_key)


def file_lock(path: str | Path, timeout: float = LOCK_TIMEOUT) -> FileLock:
    """Inter-process lock guarding ``path``, held in a sibling ``.lock`` file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return FileLock(str(path.with_name(f"{path.name}.lock")), timeout=timeout)


@contextmanager
def locked_store(
    path: str | Path,
    *,
    required: bool = False,
    root_key: str = STORE_ROOT_KEY,
) -> Iterator[ListingStore]:
    """Load the store while holding its lock; call ``save()`` before leaving."""
    with file_lock(path):
        yield load_store(path, required=required, root_key=root_key)
