from __future__ import annotations

import json

import pytest

from pageforge_billing.errors import LicenseStoreError
from pageforge_billing.license_db import SqliteLicenseStore
from pageforge_billing.license_store import (
    JsonFileLicenseStore,
    LicenseRecord,
    MemoryLicenseStore,
    merge_license,
    open_license_store,
)


@pytest.fixture(params=["memory", "json", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemoryLicenseStore()
    if request.param == "json":
        return JsonFileLicenseStore(tmp_path / "licenses.json")
    return SqliteLicenseStore(f"sqlite:///{tmp_path / 'licenses.db'}")


def test_upsert_then_get_normalizes_email(any_store):
    any_store.upsert("  Mixed@Example.COM ", {"plan": "monthly", "active": True, "customer_id": "cus_1"})

    record = any_store.get("mixed@example.com")
    assert record is not None
    assert record.email == "mixed@example.com"
    assert record.active is True
    assert any_store.get("MIXED@example.com") == record


def test_upsert_merges_and_last_write_wins(any_store):
    any_store.upsert("a@b.com", {"plan": "monthly", "active": True, "customer_id": "cus_1", "subscription_id": "sub_1"})
    any_store.upsert("a@b.com", {"active": False})
    any_store.upsert("A@B.com", {"plan": "lifetime", "active": True, "subscription_id": None})

    record = any_store.get("a@b.com")
    assert record.plan == "lifetime"
    assert record.active is True
    assert record.customer_id == "cus_1"
    assert record.subscription_id is None
    assert record.updated_at


def test_missing_record_is_none(any_store):
    assert any_store.get("nobody@example.com") is None
    assert any_store.get_by_customer_id("cus_missing") is None
    assert any_store.get_by_customer_id("") is None


def test_get_by_customer_id_prefers_latest_activation(any_store):
    any_store.upsert("old@example.com", {"active": True, "customer_id": "cus_shared", "activated_at": "2024-01-01T00:00:00Z"})
    any_store.upsert("new@example.com", {"active": True, "customer_id": "cus_shared", "activated_at": "2025-06-01T00:00:00Z"})
    any_store.upsert("other@example.com", {"active": True, "customer_id": "cus_other"})

    assert any_store.get_by_customer_id("cus_shared").email == "new@example.com"
    assert any_store.get_by_customer_id("cus_other").email == "other@example.com"


def test_upsert_rejects_unknown_fields_and_blank_email(any_store):
    with pytest.raises(ValueError):
        any_store.upsert("a@b.com", {"email": "other@b.com"})
    with pytest.raises(ValueError):
        any_store.upsert("   ", {"active": True})
    assert any_store.get("a@b.com") is None


def test_returned_records_are_copies():
    store = MemoryLicenseStore()
    store.upsert("a@b.com", {"active": True})
    record = store.get("a@b.com")
    record.active = False
    assert store.get("a@b.com").active is True


def test_merge_license_defaults_new_record():
    record = merge_license(None, "a@b.com", {"active": True}, now="2025-01-01T00:00:00Z")
    assert record == LicenseRecord(email="a@b.com", plan="monthly", active=True, updated_at="2025-01-01T00:00:00Z")


def test_json_store_persists_across_instances(tmp_path):
    path = tmp_path / "nested" / "licenses.json"
    JsonFileLicenseStore(path).upsert("a@b.com", {"plan": "lifetime", "active": True})

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["licenses"]["a@b.com"]["plan"] == "lifetime"
    assert JsonFileLicenseStore(path).get("a@b.com").plan == "lifetime"
    assert not path.with_name("licenses.json.tmp").exists()


def test_json_store_surfaces_corrupt_file(tmp_path):
    path = tmp_path / "licenses.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(LicenseStoreError):
        JsonFileLicenseStore(path).get("a@b.com")


def test_sqlite_store_persists_across_instances(tmp_path):
    url = f"sqlite:///{tmp_path / 'licenses.db'}"
    SqliteLicenseStore(url).upsert("a@b.com", {"plan": "monthly", "active": True, "failed_payments": 2})

    record = SqliteLicenseStore(url).get("a@b.com")
    assert record.active is True
    assert record.failed_payments == 2


def test_sqlite_rejects_in_memory_database():
    with pytest.raises(RuntimeError):
        SqliteLicenseStore("sqlite:///:memory:")


def test_open_license_store_selects_backend(tmp_path, monkeypatch):
    assert open_license_store().backend == "json"
    assert open_license_store("memory://").backend == "memory"
    assert open_license_store(f"sqlite:///{tmp_path / 'x.db'}").backend == "sqlite"

    monkeypatch.setenv("PAGEFORGE_DATABASE_URL", "memory://")
    assert open_license_store().backend == "memory"

    with pytest.raises(RuntimeError):
        open_license_store("mysql://localhost/db")


def test_default_json_store_lives_under_home(tmp_path, monkeypatch):
    monkeypatch.setenv("PAGEFORGE_HOME", str(tmp_path / "home"))
    store = open_license_store()
    assert store.path == (tmp_path / "home" / "licenses.json").resolve()
