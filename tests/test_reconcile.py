import copy
import uuid

import pytest

from listings_etl.errors import StoreError
from listings_etl.reconcile import (
    is_uuid,
    merge_record,
    merge_store_files,
    merge_stores,
    migrate_to_uuid,
    resolve_ids,
    validate_listings,
    zip_listings,
)
from listings_etl.store import load_store, write_json_atomic

ID_A = "0b7e1c3e-8f5a-4a51-9d2e-6f1f1d9a2c01"
ID_B = "5d6c2a48-1e7b-4c3f-b0a9-3c2f7e8d9a02"


def _columns(**overrides):
    columns = {
        "address": ["世田谷区桜新町1丁目", "目黒区中町2丁目"],
        "price": [49_800_000, 120_000_000],
        "listingUrl": ["https://example.com/1234/", "https://example.com/5678/"],
        "listingImages": [[], ["https://img/2.jpg"]],
        "tags": [["駐車場"], []],
    }
    columns.update(overrides)
    return columns


def test_zip_listings_builds_records_by_position():
    listings = zip_listings(_columns(), [ID_A, ID_B], {})

    assert list(listings) == [ID_A, ID_B]
    assert listings[ID_A]["id"] == ID_A
    assert listings[ID_A]["price"] == 49_800_000
    assert listings[ID_B]["listingImages"] == ["https://img/2.jpg"]
    assert listings[ID_A]["recommendedText"] == []
    assert listings[ID_A]["isDetailSoldPresent"] is False


def test_zip_listings_keeps_sticky_fields_from_existing():
    existing = {
        ID_A: {
            "id": ID_A,
            "price": 50_000_000,
            "listingImages": ["https://img/old.jpg"],
            "isDetailSoldPresent": True,
            "latLong": {"lat": 35.6, "long": 139.6},
        }
    }
    listings = zip_listings(_columns(), [ID_A, ID_B], existing)

    record = listings[ID_A]
    assert record["price"] == 49_800_000
    assert record["listingImages"] == ["https://img/old.jpg"]
    assert record["isDetailSoldPresent"] is True
    assert record["latLong"] == {"lat": 35.6, "long": 139.6}


def test_zip_listings_short_columns_contribute_nothing():
    columns = _columns(layout=["3LDK"])
    listings = zip_listings(columns, [ID_A, ID_B], {ID_B: {"id": ID_B, "layout": "4SLDK"}})

    assert listings[ID_A]["layout"] == "3LDK"
    assert listings[ID_B]["layout"] == "4SLDK"


def test_zip_listings_does_not_mutate_inputs():
    existing = {ID_A: {"id": ID_A, "listingImages": ["https://img/old.jpg"], "original": {"price": "x"}}}
    columns = _columns()
    snapshot = copy.deepcopy((existing, columns))

    zip_listings(columns, [ID_A, ID_B], existing)
    assert (existing, columns) == snapshot


def test_merge_record_deep_merges_original_and_keeps_base_id():
    base = {"id": ID_A, "price": 1, "original": {"price": "1万円", "tags": ["a"]}}
    incoming = {"id": ID_B, "price": 2, "original": {"price": "2万円"}}

    merged = merge_record(base, incoming)

    assert merged["id"] == ID_A
    assert merged["price"] == 2
    assert merged["original"] == {"price": "2万円", "tags": ["a"]}


def test_merge_record_custom_sticky_set():
    base = {"id": ID_A, "tags": ["a"], "listingImages": ["x"]}
    merged = merge_record(base, {"tags": [], "listingImages": []}, sticky_fields=["tags"])
    assert merged["tags"] == ["a"]
    assert merged["listingImages"] == []


def test_resolve_ids_reuses_existing_ids():
    existing = {
        ID_A: {"id": ID_A, "listingUrl": "https://example.com/1234/"},
        ID_B: {"id": ID_B, "address": "目黒区中町2丁目"},
    }
    ids = resolve_ids(_columns(listingUrl=["https://example.com/1234/", None]), existing)
    assert ids == [ID_A, ID_B]


def test_resolve_ids_mints_uuid_for_new_and_shares_within_batch():
    columns = {"listingUrl": ["https://example.com/new/", "https://example.com/new/"]}
    ids = resolve_ids(columns, {})
    assert ids[0] == ids[1]
    assert is_uuid(ids[0])


def test_ids_are_stable_across_rescrapes():
    columns = _columns()
    first = zip_listings(columns, resolve_ids(columns, {}), {})
    second = zip_listings(columns, resolve_ids(columns, first), first)
    assert set(first) == set(second)


def test_merge_stores_counts_and_preserves_base_id():
    base = {ID_A: {"id": ID_A, "price": 1, "listingImages": ["x"]}}
    incoming = {
        ID_A: {"id": "legacy-1", "price": 2, "listingImages": []},
        ID_B: {"price": 3},
    }

    merged, stats = merge_stores(base, incoming)

    assert (stats.added, stats.updated, stats.total) == (1, 1, 2)
    assert merged[ID_A]["id"] == ID_A
    assert merged[ID_A]["listingImages"] == ["x"]
    assert is_uuid(merged[ID_B]["id"])


def test_merge_stores_keeps_incoming_id_for_new_keys():
    merged, stats = merge_stores({}, {ID_B: {"id": ID_B}})
    assert merged[ID_B]["id"] == ID_B
    assert stats.added == 1


def test_self_merge_is_idempotent():
    store = {
        ID_A: {"id": ID_A, "price": 1, "original": {"price": "1万円"}, "listingImages": ["x"]},
        ID_B: {"id": ID_B, "tags": []},
    }
    merged, stats = merge_stores(store, store)
    assert (stats.added, stats.updated) == (0, 0)
    assert merged == store


def test_merge_stores_does_not_mutate_inputs():
    base = {ID_A: {"id": ID_A, "original": {"a": 1}}}
    incoming = {ID_A: {"original": {"b": 2}}, ID_B: {}}
    snapshot = copy.deepcopy((base, incoming))
    merge_stores(base, incoming)
    assert (base, incoming) == snapshot


def test_merge_stores_is_order_independent_per_key():
    base = {ID_A: {"id": ID_A, "price": 1}}
    incoming = {ID_A: {"price": 2}, ID_B: {"id": ID_B, "price": 3}}
    reversed_incoming = dict(reversed(list(incoming.items())))

    first, _ = merge_stores(base, incoming)
    second, _ = merge_stores(base, reversed_incoming)
    assert first == second


def test_migrate_to_uuid_is_idempotent():
    legacy = {
        "1": {"id": 1, "price": 1},
        ID_A: {"id": ID_A, "price": 2},
        "3": {"price": 3},
    }
    migrated, assigned = migrate_to_uuid(legacy)

    assert assigned == 2
    assert ID_A in migrated
    assert all(is_uuid(key) and migrated[key]["id"] == key for key in migrated)

    again, assigned_again = migrate_to_uuid(migrated)
    assert assigned_again == 0
    assert again == migrated


def test_migrate_to_uuid_splits_duplicate_ids():
    migrated, assigned = migrate_to_uuid({"a": {"id": ID_A}, "b": {"id": ID_A}})
    assert len(migrated) == 2
    assert assigned == 1


def test_validate_listings_reports_bad_records():
    errors = validate_listings({ID_A: {"id": ID_A, "price": "not a number"}, ID_B: {"id": ID_B}})
    assert list(errors) == [ID_A]


def test_is_uuid():
    assert is_uuid(str(uuid.uuid4()))
    assert not is_uuid("123")
    assert not is_uuid(None)


def test_merge_store_files_writes_base(tmp_path):
    base_path = tmp_path / "base.json"
    incoming_path = tmp_path / "incoming.json"
    write_json_atomic(base_path, {"newListings": {ID_A: {"id": ID_A, "price": 1}}})
    write_json_atomic(incoming_path, {"newListings": {ID_B: {"id": ID_B, "price": 2}}})

    stats = merge_store_files(base_path, incoming_path)

    assert stats.added == 1
    assert set(load_store(base_path).listings) == {ID_A, ID_B}


def test_merge_store_files_missing_input_is_fatal(tmp_path):
    base_path = tmp_path / "base.json"
    write_json_atomic(base_path, {"newListings": {}})
    with pytest.raises(StoreError):
        merge_store_files(base_path, tmp_path / "missing.json")
