"""Durable SQL backends for the license store (SQLite and PostgreSQL)."""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

from .errors import LicenseStoreError
from .license_store import LicenseRecord, LicenseStore, merge_license, normalize_email


logger = logging.getLogger(__name__)

_TABLE_NAME = "pageforge_licenses"
_COLUMNS = (
    "email",
    "plan",
    "active",
    "customer_id",
    "subscription_id",
    "activated_at",
    "failed_payments",
    "updated_at",
)
_SELECT_COLUMNS = ", ".join(_COLUMNS)


def _clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _row_to_record(row: Any) -> LicenseRecord | None:
    if row is None:
        return None
    return LicenseRecord.from_dict(dict(zip(_COLUMNS, row)))


def _record_params(record: LicenseRecord) -> tuple[Any, ...]:
    payload = record.to_dict()
    return tuple(payload[column] for column in _COLUMNS)


def _upsert_sql(placeholder: str) -> str:
    values = ", ".join(placeholder for _ in _COLUMNS)
    updates = ",\n              ".join(f"{column} = excluded.{column}" for column in _COLUMNS[1:])
    return f"""
        INSERT INTO {_TABLE_NAME} ({_SELECT_COLUMNS})
        VALUES ({values})
        ON CONFLICT(email) DO UPDATE SET
              {updates}
        """


def _sqlite_path(database_url: str) -> str:
    raw_path = database_url[len("sqlite:///"):]
    if not raw_path:
        raise RuntimeError("PAGEFORGE_DATABASE_URL sqlite path is empty")
    if raw_path == ":memory:":
        raise RuntimeError("sqlite :memory: does not persist across connections; use memory:// instead")
    path = Path(raw_path).expanduser()
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    return str(path)


class SqliteLicenseStore(LicenseStore):
    backend = "sqlite"

    def __init__(self, database_url: str):
        self.path = _sqlite_path(database_url)
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30, isolation_level=None)
        with self._schema_lock:
            if not self._schema_ready:
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {_TABLE_NAME} (
                      email TEXT PRIMARY KEY,
                      plan TEXT NOT NULL,
                      active INTEGER NOT NULL,
                      customer_id TEXT,
                      subscription_id TEXT,
                      activated_at TEXT,
                      failed_payments INTEGER NOT NULL DEFAULT 0,
                      updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {_TABLE_NAME}_customer_id ON {_TABLE_NAME} (customer_id)"
                )
                self._schema_ready = True
        return conn

    def get(self, email: str) -> LicenseRecord | None:
        try:
            conn = self._connect()
            try:
                row = conn.execute(
                    f"SELECT {_SELECT_COLUMNS} FROM {_TABLE_NAME} WHERE email = ?",
                    (normalize_email(email),),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            logger.error("SQLite license lookup failed: %s", exc)
            raise LicenseStoreError(f"license_store_read_failed: {exc}") from exc
        return _row_to_record(row)

    def get_by_customer_id(self, customer_id: str) -> LicenseRecord | None:
        target = _clean_text(customer_id)
        if not target:
            return None
        try:
            conn = self._connect()
            try:
                row = conn.execute(
                    f"""
                    SELECT {_SELECT_COLUMNS} FROM {_TABLE_NAME}
                    WHERE customer_id = ?
                    ORDER BY activated_at DESC
                    LIMIT 1
                    """,
                    (target,),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            logger.error("SQLite customer lookup failed: %s", exc)
            raise LicenseStoreError(f"license_store_read_failed: {exc}") from exc
        return _row_to_record(row)

    def upsert(self, email: str, fields: dict[str, Any]) -> LicenseRecord:
        key = self._require_email(email)
        try:
            conn = self._connect()
            try:
                # IMMEDIATE takes the write lock before the read so merges on one key serialize.
                conn.execute("BEGIN IMMEDIATE")
                try:
                    existing = _row_to_record(
                        conn.execute(
                            f"SELECT {_SELECT_COLUMNS} FROM {_TABLE_NAME} WHERE email = ?",
                            (key,),
                        ).fetchone()
                    )
                    record = merge_license(existing, key, fields)
                    conn.execute(_upsert_sql("?"), _record_params(record))
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
            finally:
                conn.close()
        except sqlite3.Error as exc:
            logger.error("SQLite license upsert failed for %s: %s", key, exc)
            raise LicenseStoreError(f"license_store_write_failed: {exc}") from exc
        return record


class PostgresLicenseStore(LicenseStore):
    backend = "postgres"

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def _psycopg(self):
        try:
            import psycopg
        except Exception as exc:
            raise RuntimeError("psycopg is required for PostgreSQL PAGEFORGE_DATABASE_URL") from exc
        return psycopg

    def _ensure_schema(self, conn: Any):
        with self._schema_lock:
            if self._schema_ready:
                return
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {_TABLE_NAME} (
                      email TEXT PRIMARY KEY,
                      plan TEXT NOT NULL,
                      active BOOLEAN NOT NULL,
                      customer_id TEXT,
                      subscription_id TEXT,
                      activated_at TEXT,
                      failed_payments INTEGER NOT NULL DEFAULT 0,
                      updated_at TEXT NOT NULL
                    )
                    """
                )
                cur.execute(
                    f"CREATE INDEX IF NOT EXISTS {_TABLE_NAME}_customer_id ON {_TABLE_NAME} (customer_id)"
                )
            conn.commit()
            self._schema_ready = True

    def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> LicenseRecord | None:
        psycopg = self._psycopg()
        try:
            with psycopg.connect(self.database_url) as conn:
                self._ensure_schema(conn)
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    return _row_to_record(cur.fetchone())
        except psycopg.Error as exc:
            logger.error("PostgreSQL license lookup failed: %s", exc)
            raise LicenseStoreError(f"license_store_read_failed: {exc}") from exc

    def get(self, email: str) -> LicenseRecord | None:
        return self._fetch_one(
            f"SELECT {_SELECT_COLUMNS} FROM {_TABLE_NAME} WHERE email = %s",
            (normalize_email(email),),
        )

    def get_by_customer_id(self, customer_id: str) -> LicenseRecord | None:
        target = _clean_text(customer_id)
        if not target:
            return None
        return self._fetch_one(
            f"""
            SELECT {_SELECT_COLUMNS} FROM {_TABLE_NAME}
            WHERE customer_id = %s
            ORDER BY activated_at DESC NULLS LAST
            LIMIT 1
            """,
            (target,),
        )

    def upsert(self, email: str, fields: dict[str, Any]) -> LicenseRecord:
        key = self._require_email(email)
        psycopg = self._psycopg()
        try:
            with psycopg.connect(self.database_url) as conn:
                self._ensure_schema(conn)
                with conn.cursor() as cur:
                    cur.execute(
                        f"SELECT {_SELECT_COLUMNS} FROM {_TABLE_NAME} WHERE email = %s FOR UPDATE",
                        (key,),
                    )
                    record = merge_license(_row_to_record(cur.fetchone()), key, fields)
                    cur.execute(_upsert_sql("%s"), _record_params(record))
        except psycopg.Error as exc:
            logger.error("PostgreSQL license upsert failed for %s: %s", key, exc)
            raise LicenseStoreError(f"license_store_write_failed: {exc}") from exc
        return record
