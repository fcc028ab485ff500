"""Record storage for pending authorizations and account tokens."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Collection
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, TypeVar

from cryptography.fernet import Fernet, InvalidToken

from .errors import NotFoundError, OAuthLinkError, PersistenceError
from .models import Account, LinkBaseModel, PendingAuthorization

RecordT = TypeVar("RecordT", bound=LinkBaseModel)


class StoreError(Exception):
    """Base class for errors raised by store backends."""


class RecordNotFoundError(StoreError):
    """No record exists for the requested id."""


class DuplicateRecordError(StoreError):
    """A record with the same id already exists."""


def parse_store_error(exc: Exception) -> OAuthLinkError:
    """Translate a store error into the oauthlink error taxonomy."""
    if isinstance(exc, RecordNotFoundError):
        return NotFoundError(f"storage: Not found: {exc}")
    return PersistenceError(f"storage: Persistence error: {exc}")


class Store(Protocol):
    """Abstract interface for record persistence.

    Backends must ensure:
    - Ids are unique per record type; inserting a duplicate raises DuplicateRecordError.
    - Lookups of missing or expired records raise RecordNotFoundError.
    - ``commit_fields`` writes only the named fields.
    """

    def initialize(self) -> None: ...

    def close(self) -> None: ...

    def insert(self, record: LinkBaseModel) -> None: ...

    def find_one_by_id(self, model: type[RecordT], record_id: str) -> RecordT: ...

    def remove(self, model: type[LinkBaseModel], record_id: str) -> None: ...

    def commit_fields(
        self, record_id: str, record: LinkBaseModel, fields: Collection[str]
    ) -> None: ...

    def cleanup_expired(self) -> int: ...


@dataclass(frozen=True)
class _Table:
    name: str
    columns: tuple[str, ...]
    encrypted: frozenset[str]
    expires: bool = False


_TABLES: dict[type[LinkBaseModel], _Table] = {
    PendingAuthorization: _Table(
        name="pending_authorizations",
        columns=tuple(PendingAuthorization.model_fields),
        encrypted=frozenset({"remote_secret"}),
        expires=True,
    ),
    Account: _Table(
        name="accounts",
        columns=tuple(Account.model_fields),
        encrypted=frozenset({"provider_access_token", "provider_refresh_token"}),
    ),
}


class SqliteStore(Store):
    """SQLite-backed Store with optional Fernet encryption of secret columns."""

    def __init__(
        self,
        db_path: Path,
        encryption_key: str | bytes | None = None,
        *,
        allow_plaintext_tokens: bool = False,
    ) -> None:
        self.db_path = db_path
        self.allow_plaintext_tokens = allow_plaintext_tokens
        self._logger = logging.getLogger(__name__)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._fernet = self._build_fernet(encryption_key) if encryption_key else None
        if not self._fernet and self.allow_plaintext_tokens:
            self._logger.warning(
                "Storing provider tokens in plaintext because allow_plaintext_tokens=True and "
                "no encryption key was provided. This disables at-rest protection."
            )

    def initialize(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
                self._conn.row_factory = sqlite3.Row
                self._create_tables()
            except sqlite3.Error as exc:
                raise StoreError(f"Failed to open {self.db_path}: {exc}") from exc
            self._logger.debug(f"Opened record store at {self.db_path}")

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> SqliteStore:
        self.initialize()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ── Records ────────────────────────────────────────────────────────────────
    def insert(self, record: LinkBaseModel) -> None:
        table = self._table_for(type(record))
        payload = self._serialize(table, record.model_dump())
        if not payload.get("id"):
            raise StoreError(f"Cannot insert into {table.name} without an id")

        columns = ", ".join(table.columns)
        placeholders = ", ".join(f":{column}" for column in table.columns)
        with self._lock:
            conn = self._connection()
            try:
                conn.execute(
                    f"INSERT INTO {table.name} ({columns}) VALUES ({placeholders})", payload
                )
                conn.commit()
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecordError(f"{table.name} already contains this id") from exc
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

    def find_one_by_id(self, model: type[RecordT], record_id: str) -> RecordT:
        table = self._table_for(model)
        with self._lock:
            conn = self._connection()
            try:
                row = conn.execute(
                    f"SELECT * FROM {table.name} WHERE id = ?", (record_id,)
                ).fetchone()
                if not row:
                    raise RecordNotFoundError(f"No {table.name} record for this id")

                if table.expires and row["expires_at"] < time.time():
                    conn.execute(f"DELETE FROM {table.name} WHERE id = ?", (record_id,))
                    conn.commit()
                    raise RecordNotFoundError(f"{table.name} record has expired")
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

        return model.model_validate(self._deserialize(table, dict(row)))

    def remove(self, model: type[LinkBaseModel], record_id: str) -> None:
        table = self._table_for(model)
        with self._lock:
            conn = self._connection()
            try:
                cur = conn.execute(f"DELETE FROM {table.name} WHERE id = ?", (record_id,))
                conn.commit()
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc
        if cur.rowcount == 0:
            raise RecordNotFoundError(f"No {table.name} record for this id")

    def commit_fields(self, record_id: str, record: LinkBaseModel, fields: Collection[str]) -> None:
        table = self._table_for(type(record))
        unknown = (set(fields) - set(table.columns)) | (set(fields) & {"id"})
        if unknown:
            raise StoreError(f"Cannot commit fields {sorted(unknown)} on {table.name}")
        if not fields:
            return

        values = self._serialize(table, record.model_dump(include=set(fields)))
        assignments = ", ".join(f"{field} = :{field}" for field in fields)
        with self._lock:
            conn = self._connection()
            try:
                cur = conn.execute(
                    f"UPDATE {table.name} SET {assignments} WHERE id = :_record_id",
                    {**values, "_record_id": record_id},
                )
                conn.commit()
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc
        if cur.rowcount == 0:
            raise RecordNotFoundError(f"No {table.name} record for this id")

    # ── Cleanup ────────────────────────────────────────────────────────────────
    def cleanup_expired(self) -> int:
        """Delete expired pending authorizations and return how many were removed."""
        removed = 0
        now = time.time()
        with self._lock:
            conn = self._connection()
            try:
                for table in _TABLES.values():
                    if not table.expires:
                        continue
                    cur = conn.execute(f"DELETE FROM {table.name} WHERE expires_at < ?", (now,))
                    removed += cur.rowcount
                conn.commit()
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc
        if removed:
            self._logger.info(f"Removed {removed} expired pending authorizations")
        return removed

    # ── Internals ──────────────────────────────────────────────────────────────
    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("Store is not initialized")
        return self._conn

    def _create_tables(self) -> None:
        assert self._conn is not None
        cursor = self._conn.cursor()
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS pending_authorizations (
                id TEXT PRIMARY KEY,
                remote_callback TEXT NOT NULL,
                remote_state TEXT NOT NULL,
                remote_secret TEXT NOT NULL,
                type TEXT NOT NULL,
                version INTEGER NOT NULL,
                created_at REAL NOT NULL,
                expires_at REAL NOT NULL
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS accounts (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                provider_access_token TEXT,
                provider_refresh_token TEXT,
                provider_expires_at REAL
            )
            """
        )
        self._conn.commit()

    def _table_for(self, model: type[LinkBaseModel]) -> _Table:
        try:
            return _TABLES[model]
        except KeyError:
            raise StoreError(f"No table for record type {model.__name__}") from None

    def _serialize(self, table: _Table, values: dict[str, Any]) -> dict[str, Any]:
        return {
            key: self._encrypt(value) if key in table.encrypted else value
            for key, value in values.items()
        }

    def _deserialize(self, table: _Table, row: dict[str, Any]) -> dict[str, Any]:
        return {
            key: self._decrypt(value) if key in table.encrypted else value
            for key, value in row.items()
        }

    def _build_fernet(self, encryption_key: str | bytes) -> Fernet:
        """Normalize and validate a Fernet key (accepts bytes or str)."""
        key_bytes = (
            encryption_key.encode("utf-8") if isinstance(encryption_key, str) else encryption_key
        )
        try:
            return Fernet(key_bytes)
        except (TypeError, ValueError) as exc:
            raise ValueError(
                "Invalid Fernet key: expected urlsafe base64-encoded 32-byte value. "
                "Pass the raw bytes from Fernet.generate_key() or the same value as a string."
            ) from exc

    def _encrypt(self, value: str | None) -> str | None:
        if value is None:
            return None
        if self._fernet:
            return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")
        if not self.allow_plaintext_tokens:
            raise StoreError(
                "Token encryption key is required; set allow_plaintext_tokens=True to store "
                "tokens in plaintext."
            )
        return value

    def _decrypt(self, value: str | None) -> str | None:
        if value is None:
            return None
        if self._fernet:
            try:
                return self._fernet.decrypt(value.encode("utf-8")).decode("utf-8")
            except InvalidToken as exc:
                raise StoreError("Failed to decrypt stored token") from exc
        if not self.allow_plaintext_tokens:
            raise StoreError(
                "Token encryption key is required to decrypt stored tokens; plaintext tokens "
                "are disabled."
            )
        return value


__all__ = [
    "DuplicateRecordError",
    "RecordNotFoundError",
    "SqliteStore",
    "Store",
    "StoreError",
    "parse_store_error",
]
