"""License records and the email-keyed store contract.

Every store normalizes email keys to lower case before storage and lookup,
and supports reverse lookup by billing customer id so webhook events can be
joined back to a license. Upserts merge the supplied fields onto any existing
record (last write wins); records are never deleted.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import env_text, pageforge_home
from .errors import LicenseStoreError


logger = logging.getLogger(__name__)

PLAN_MONTHLY = "monthly"
PLAN_LIFETIME = "lifetime"
PLANS = (PLAN_MONTHLY, PLAN_LIFETIME)

MUTABLE_FIELDS = (
    "plan",
    "active",
    "customer_id",
    "subscription_id",
    "activated_at",
    "failed_payments",
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _clean_optional_text(value: Any) -> str | None:
    clean = _clean_text(value)
    return clean or None


def normalize_email(value: Any) -> str:
    return _clean_text(value).lower()


@dataclass
class LicenseRecord:
    email: str
    plan: str = PLAN_MONTHLY
    active: bool = False
    customer_id: str | None = None
    subscription_id: str | None = None
    activated_at: str | None = None
    failed_payments: int = 0
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "LicenseRecord":
        try:
            failed = int(payload.get("failed_payments") or 0)
        except (TypeError, ValueError):
            failed = 0
        return cls(
            email=normalize_email(payload.get("email")),
            plan=_clean_text(payload.get("plan")) or PLAN_MONTHLY,
            active=bool(payload.get("active")),
            customer_id=_clean_optional_text(payload.get("customer_id")),
            subscription_id=_clean_optional_text(payload.get("subscription_id")),
            activated_at=_clean_optional_text(payload.get("activated_at")),
            failed_payments=max(0, failed),
            updated_at=_clean_optional_text(payload.get("updated_at")),
        )


def merge_license(
    existing: LicenseRecord | None,
    email: str,
    fields: dict[str, Any],
    *,
    now: str | None = None,
) -> LicenseRecord:
    unknown = set(fields) - set(MUTABLE_FIELDS)
    if unknown:
        raise ValueError(f"unknown license fields: {', '.join(sorted(unknown))}")
    merged = existing.to_dict() if existing is not None else LicenseRecord(email=email).to_dict()
    merged.update(fields)
    merged["email"] = email
    merged["updated_at"] = now or _now_iso()
    return LicenseRecord.from_dict(merged)


def _latest(records: list[LicenseRecord]) -> LicenseRecord | None:
    if not records:
        return None
    records.sort(key=lambda record: record.activated_at or "", reverse=True)
    return records[0]


class LicenseStore:
    """Contract shared by every persistence backend."""

    backend = "abstract"

    def get(self, email: str) -> LicenseRecord | None:
        raise NotImplementedError

    def get_by_customer_id(self, customer_id: str) -> LicenseRecord | None:
        raise NotImplementedError

    def upsert(self, email: str, fields: dict[str, Any]) -> LicenseRecord:
        raise NotImplementedError

    def _require_email(self, email: str) -> str:
        key = normalize_email(email)
        if not key:
            raise ValueError("license email is required")
        return key


class MemoryLicenseStore(LicenseStore):
    """Process-local store for development and tests."""

    backend = "memory"

    def __init__(self):
        self._records: dict[str, LicenseRecord] = {}
        self._lock = threading.Lock()

    def get(self, email: str) -> LicenseRecord | None:
        with self._lock:
            record = self._records.get(normalize_email(email))
            return LicenseRecord.from_dict(record.to_dict()) if record else None

    def get_by_customer_id(self, customer_id: str) -> LicenseRecord | None:
        target = _clean_text(customer_id)
        if not target:
            return None
        with self._lock:
            matches = [
                LicenseRecord.from_dict(record.to_dict())
                for record in self._records.values()
                if record.customer_id == target
            ]
        return _latest(matches)

    def upsert(self, email: str, fields: dict[str, Any]) -> LicenseRecord:
        key = self._require_email(email)
        with self._lock:
            record = merge_license(self._records.get(key), key, fields)
            self._records[key] = record
            return LicenseRecord.from_dict(record.to_dict())


class JsonFileLicenseStore(LicenseStore):
    """Single JSON document on disk, rewritten atomically on each upsert."""

    backend = "json"

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("License store read failed (%s): %s", self.path, exc)
            raise LicenseStoreError(f"license_store_read_failed: {exc}") from exc
        licenses = payload.get("licenses") if isinstance(payload, dict) else None
        if not isinstance(licenses, dict):
            return {}
        return {str(key): value for key, value in licenses.items() if isinstance(value, dict)}

    def _save(self, licenses: dict[str, dict[str, Any]]):
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as f:
                json.dump({"licenses": licenses}, f, indent=2, ensure_ascii=False, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            logger.error("License store write failed (%s): %s", self.path, exc)
            raise LicenseStoreError(f"license_store_write_failed: {exc}") from exc

    def get(self, email: str) -> LicenseRecord | None:
        with self._lock:
            payload = self._load().get(normalize_email(email))
        return LicenseRecord.from_dict(payload) if payload else None

    def get_by_customer_id(self, customer_id: str) -> LicenseRecord | None:
        target = _clean_text(customer_id)
        if not target:
            return None
        with self._lock:
            licenses = self._load()
        matches = [
            LicenseRecord.from_dict(payload)
            for payload in licenses.values()
            if _clean_text(payload.get("customer_id")) == target
        ]
        return _latest(matches)

    def upsert(self, email: str, fields: dict[str, Any]) -> LicenseRecord:
        key = self._require_email(email)
        with self._lock:
            licenses = self._load()
            existing = licenses.get(key)
            record = merge_license(LicenseRecord.from_dict(existing) if existing else None, key, fields)
            licenses[key] = record.to_dict()
            self._save(licenses)
        return record


def license_store_path() -> Path:
    return pageforge_home() / "licenses.json"


def open_license_store(database_url: str | None = None) -> LicenseStore:
    """Pick a backend from `PAGEFORGE_DATABASE_URL`, falling back to a JSON file."""
    url = _clean_text(database_url) if database_url is not None else env_text("PAGEFORGE_DATABASE_URL")
    if not url:
        return JsonFileLicenseStore(license_store_path())
    if url == "memory://":
        return MemoryLicenseStore()
    if url.startswith("sqlite:///"):
        from .license_db import SqliteLicenseStore

        return SqliteLicenseStore(url)
    if url.startswith("postgres://") or url.startswith("postgresql://"):
        from .license_db import PostgresLicenseStore

        return PostgresLicenseStore(url)
    raise RuntimeError(
        "Unsupported PAGEFORGE_DATABASE_URL scheme. Use memory://, sqlite:///... or postgresql://..."
    )
