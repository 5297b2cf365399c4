"""Reconciliation of scraped listings with the persisted store.

All functions work on plain JSON mappings and return new objects; inputs
are never mutated, so a crashed run can simply be repeated.
"""
from __future__ import annotations

import copy
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

from pydantic import ValidationError

from .config import STICKY_FIELDS
from .models import Listing, MergeStats
from .store import load_store, locked_store

LOGGER = logging.getLogger(__name__)

Record = Dict[str, Any]
Listings = Dict[str, Record]

ID_COLUMN = "ids"
STICKY_DEFAULTS: Dict[str, Any] = {
    "listingImages": [],
    "recommendedText": [],
    "isDetailSoldPresent": False,
}


def is_uuid(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        return str(uuid.UUID(value)) == value.lower()
    except ValueError:
        return False


def new_id() -> str:
    return str(uuid.uuid4())


def _is_blank(value: Any) -> bool:
    return value is None or value is False or value == "" or value == [] or value == {}


def merge_record(
    base: Mapping[str, Any],
    incoming: Mapping[str, Any],
    sticky_fields: Iterable[str] = STICKY_FIELDS,
) -> Record:
    """Overlay ``incoming`` on ``base`` and return the merged record.

    Top-level fields from ``incoming`` win, except sticky fields whose new
    value is empty. ``original`` is merged key by key and the id of
    ``base`` is kept whenever it has one.
    """
    merged: Record = copy.deepcopy(dict(base))
    merged.update(copy.deepcopy(dict(incoming)))

    base_original = base.get("original")
    incoming_original = incoming.get("original")
    if isinstance(base_original, dict) and isinstance(incoming_original, dict):
        merged["original"] = {**copy.deepcopy(base_original), **copy.deepcopy(incoming_original)}

    for name in sticky_fields:
        if _is_blank(incoming.get(name)) and not _is_blank(base.get(name)):
            merged[name] = copy.deepcopy(base[name])

    if base.get("id"):
        merged["id"] = base["id"]
    return merged


def zip_listings(
    columns: Mapping[str, Sequence[Any]],
    ids: Sequence[str],
    existing: Mapping[str, Record],
    sticky_fields: Iterable[str] = STICKY_FIELDS,
) -> Listings:
    """Turn columnar scrape output into listings keyed by id.

    Parameters
    ----------
    columns : mapping of str to sequence
        ``{field: [value for listing 0, value for listing 1, ...]}``
    ids : sequence of str
        Stable id for each index, usually from :func:`resolve_ids`
    existing : mapping
        Previously persisted listings keyed by id
    sticky_fields : iterable of str
        Fields whose existing non-empty value survives an empty scrape

    Returns
    -------
    dict
        Listings keyed by the id read from ``ids``
    """
    sticky_fields = tuple(sticky_fields)
    longest = max((len(values) for values in columns.values()), default=0)
    if longest > len(ids):
        LOGGER.warning("%d scraped rows have no id and are skipped", longest - len(ids))

    zipped: Listings = {}
    for index, listing_id in enumerate(ids):
        if listing_id in zipped:
            LOGGER.warning("Duplicate id %s at row %d, keeping the first row", listing_id, index)
            continue

        candidate: Record = {
            name: values[index]
            for name, values in columns.items()
            if name != ID_COLUMN and index < len(values)
        }
        previous = existing.get(listing_id, {})
        record = merge_record(previous, candidate, sticky_fields)
        for name in sticky_fields:
            if name not in record and name in STICKY_DEFAULTS:
                record[name] = copy.deepcopy(STICKY_DEFAULTS[name])
        record["id"] = listing_id
        zipped[listing_id] = record

    return zipped


def _normalize_address(value: Any) -> str:
    return " ".join(str(value or "").lower().split())


def resolve_ids(
    columns: Mapping[str, Sequence[Any]],
    existing: Mapping[str, Record],
) -> List[str]:
    """Assign an id to every scraped row.

    A row reuses the id of an existing listing with the same listing URL,
    or failing that the same address. Rows never seen before get a new
    UUID, and repeated rows within one scrape share the id of the first.
    """
    by_url: Dict[str, str] = {}
    by_address: Dict[str, str] = {}
    for key, record in existing.items():
        listing_id = record.get("id") or key
        if url := record.get("listingUrl"):
            by_url.setdefault(url, listing_id)
        if address := _normalize_address(record.get("address")):
            by_address.setdefault(address, listing_id)

    urls = columns.get("listingUrl", [])
    addresses = columns.get("address", [])
    length = max((len(values) for values in columns.values()), default=0)

    ids: List[str] = []
    for index in range(length):
        url = urls[index] if index < len(urls) else None
        address = _normalize_address(addresses[index] if index < len(addresses) else None)
        listing_id = (url and by_url.get(url)) or (address and by_address.get(address))
        if not listing_id:
            listing_id = new_id()
            LOGGER.debug("New listing %s for %s", listing_id, url or address)
        if url:
            by_url.setdefault(url, listing_id)
        if address:
            by_address.setdefault(address, listing_id)
        ids.append(listing_id)
    return ids


def merge_stores(
    base: Mapping[str, Record],
    incoming: Mapping[str, Record],
    sticky_fields: Iterable[str] = STICKY_FIELDS,
) -> Tuple[Listings, MergeStats]:
    """Merge ``incoming`` into ``base`` key by key.

    New keys are inserted as-is, getting a fresh id only when they carry
    none. Existing keys are merged with :func:`merge_record` and counted as
    updated only when the merge changed them, so merging a store into
    itself reports nothing added or updated.
    """
    sticky_fields = tuple(sticky_fields)
    merged: Listings = copy.deepcopy(dict(base))
    stats = MergeStats()

    for key, record in incoming.items():
        current = merged.get(key)
        if current is None:
            inserted = copy.deepcopy(record)
            if not inserted.get("id"):
                inserted["id"] = new_id()
            merged[key] = inserted
            stats.added += 1
            continue

        result = merge_record(current, record, sticky_fields)
        if result != current:
            merged[key] = result
            stats.updated += 1

    stats.total = len(merged)
    LOGGER.info(
        "Merged stores: added=%d updated=%d total=%d",
        stats.added,
        stats.updated,
        stats.total,
    )
    return merged, stats


def migrate_to_uuid(listings: Mapping[str, Record]) -> Tuple[Listings, int]:
    """Re-key a store by UUID.

    Records whose id (or key) is already a UUID keep it; others get a new
    UUID. Running the migration twice changes nothing the second time.

    Returns
    -------
    tuple of (dict, int)
        Re-keyed listings and the number of records that got a new id
    """
    migrated: Listings = {}
    assigned = 0
    for key, record in listings.items():
        record = copy.deepcopy(record)
        listing_id = record.get("id")
        if not is_uuid(listing_id):
            listing_id = key if is_uuid(key) else None
        if listing_id is None or listing_id in migrated:
            if listing_id is not None:
                LOGGER.warning("Id %s is used by more than one listing, assigning a new one", listing_id)
            listing_id = new_id()
            assigned += 1
        record["id"] = listing_id
        migrated[listing_id] = record

    LOGGER.info("Migrated %d listings, %d new ids", len(migrated), assigned)
    return migrated, assigned


def validate_listings(listings: Mapping[str, Record]) -> Dict[str, str]:
    """Check every record against :class:`Listing`; return errors by key."""
    errors: Dict[str, str] = {}
    for key, record in listings.items():
        try:
            Listing.model_validate(record)
        except ValidationError as exc:
            errors[key] = str(exc)
    if errors:
        LOGGER.warning("%d listings do not match the schema", len(errors))
    return errors


def merge_store_files(
    base_path: Path,
    incoming_path: Path,
    sticky_fields: Iterable[str] = STICKY_FIELDS,
) -> MergeStats:
    """Merge the store at ``incoming_path`` into the one at ``base_path``.

    Both files must exist; the merged store is written back to
    ``base_path`` in the shape it was read in.

    Raises
    ------
    StoreError
        If either file is missing or unreadable
    """
    incoming = load_store(incoming_path, required=True)
    with locked_store(base_path, required=True) as base:
        merged, stats = merge_stores(base.listings, incoming.listings, sticky_fields)
        base.listings = merged
        base.save()
    return stats
