"""Persistence collaborator: row CRUD keyed by owner, in memory or in a JSON file."""

from __future__ import annotations

import abc
import asyncio
import contextlib
import copy
import logging
import os
import platform
import shutil
import tempfile
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson

from zkvault.config import Config
from zkvault.errors import PersistenceError
from zkvault.util.timestamps import isoformat, parse_timestamp, utcnow

logger = logging.getLogger("zkvault.storage")

VAULT_ITEMS = "vault_items"
USER_SECURITY = "user_security"

Row = Dict[str, Any]

# Identity column per table; user_security has one row per owner.
_KEY_FIELD = {
    VAULT_ITEMS: "id",
    USER_SECURITY: "owner_id",
}


@contextlib.contextmanager
def persistence_errors(operation: str):
    """Re-raise collaborator failures as PersistenceError, keeping the message."""
    try:
        yield
    except PersistenceError:
        raise
    except Exception as exc:
        logger.error("Persistence failure during %s: %s", operation, exc)
        raise PersistenceError(f"{operation} failed: {exc}") from exc


_TIMESTAMP_COLUMNS = {"created_at"}
_NO_TIMESTAMP = datetime.min.replace(tzinfo=timezone.utc)


def _sort_value(column: str, value: Any) -> Any:
    """Sort key; timestamp columns compare as instants, not as strings."""
    if column in _TIMESTAMP_COLUMNS:
        try:
            return parse_timestamp(value)
        except ValueError:
            return _NO_TIMESTAMP
    return str(value or "")


def _key_field(table: str) -> str:
    try:
        return _KEY_FIELD[table]
    except KeyError:
        raise PersistenceError(f"Unknown table: {table}") from None


# ============================================================================
#  Interface
# ============================================================================
class PersistenceBackend(abc.ABC):
    """Async row store. Every predicate includes the owner id."""

    @abc.abstractmethod
    async def insert(self, table: str, row: Row) -> Row: ...

    async def insert_many(self, table: str, rows: List[Row]) -> List[Row]:
        return [await self.insert(table, row) for row in rows]

    @abc.abstractmethod
    async def select(
        self,
        table: str,
        owner_id: str,
        order_by: str = "created_at",
        descending: bool = True,
    ) -> List[Row]: ...

    @abc.abstractmethod
    async def select_one(self, table: str, owner_id: str) -> Optional[Row]: ...

    @abc.abstractmethod
    async def update(self, table: str, owner_id: str, row_id: str, fields: Row) -> Row: ...

    @abc.abstractmethod
    async def delete(self, table: str, owner_id: str, row_id: str) -> None: ...

    async def close(self) -> None:
        return None


# ============================================================================
#  MemoryBackend
# ============================================================================
class MemoryBackend(PersistenceBackend):
    """Dict-of-dicts store. Rows are copied on the way in and out."""

    def __init__(self, tables: Optional[Dict[str, Dict[str, Row]]] = None):
        self._tables: Dict[str, Dict[str, Row]] = {name: {} for name in _KEY_FIELD}
        if tables:
            for name, rows in tables.items():
                self._tables.setdefault(name, {}).update(copy.deepcopy(rows))

    def _table(self, table: str) -> Dict[str, Row]:
        _key_field(table)
        return self._tables.setdefault(table, {})

    async def insert(self, table: str, row: Row) -> Row:
        key_field = _key_field(table)
        rows = self._table(table)
        new_row = copy.deepcopy(row)

        if not new_row.get("owner_id"):
            raise PersistenceError("Row has no owner_id")
        if key_field == "id":
            new_row.setdefault("id", str(uuid.uuid4()))
        if table == VAULT_ITEMS and not new_row.get("created_at"):
            new_row["created_at"] = isoformat(utcnow())

        key = str(new_row[key_field])
        if key in rows:
            raise PersistenceError(
                f"duplicate key value violates unique constraint on {table}.{key_field}"
            )
        rows[key] = new_row
        return copy.deepcopy(new_row)

    async def insert_many(self, table: str, rows: List[Row]) -> List[Row]:
        """All rows or none."""
        snapshot = copy.deepcopy(self._tables)
        try:
            return [await MemoryBackend.insert(self, table, row) for row in rows]
        except BaseException:
            self._tables = snapshot
            raise

    async def select(
        self,
        table: str,
        owner_id: str,
        order_by: str = "created_at",
        descending: bool = True,
    ) -> List[Row]:
        matched = [r for r in self._table(table).values() if r.get("owner_id") == owner_id]
        if order_by:
            matched.sort(key=lambda r: _sort_value(order_by, r.get(order_by)), reverse=descending)
        return copy.deepcopy(matched)

    async def select_one(self, table: str, owner_id: str) -> Optional[Row]:
        for row in self._table(table).values():
            if row.get("owner_id") == owner_id:
                return copy.deepcopy(row)
        return None

    def _find(self, table: str, owner_id: str, row_id: str) -> Row:
        row = self._table(table).get(str(row_id))
        if row is None or row.get("owner_id") != owner_id:
            raise PersistenceError(f"No {table} row {row_id!r} for this owner")
        return row

    async def update(self, table: str, owner_id: str, row_id: str, fields: Row) -> Row:
        key_field = _key_field(table)
        if key_field in fields or "owner_id" in fields:
            raise PersistenceError("Row identity and owner cannot be changed")
        row = self._find(table, owner_id, row_id)
        row.update(copy.deepcopy(fields))
        return copy.deepcopy(row)

    async def delete(self, table: str, owner_id: str, row_id: str) -> None:
        self._find(table, owner_id, row_id)
        del self._table(table)[str(row_id)]


# ============================================================================
#  JsonFileBackend
# ============================================================================
class JsonFileBackend(MemoryBackend):
    """MemoryBackend persisted to one JSON file with atomic writes and a lock."""

    def __init__(self, store_path: Path):
        self.store_path = Path(store_path)
        self.backup_path = self.store_path.parent / (self.store_path.name + ".backup")
        self.lock_path = self.store_path.parent / (self.store_path.name + ".lock")
        self._lock_file = None
        self._write_lock = asyncio.Lock()

        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        if platform.system() != "Windows":
            try:
                os.chmod(self.store_path.parent, 0o700)
            except OSError:
                pass

        self._acquire_lock()
        try:
            super().__init__(self._load())
        except BaseException:
            self._release_lock()
            raise

    # -- locking ------------------------------------------------------------
    def _acquire_lock(self) -> None:
        try:
            self.lock_path.touch(mode=0o600, exist_ok=True)
            self._lock_file = open(self.lock_path, "r+b")
            if platform.system() != "Windows":
                import fcntl

                fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            if self._lock_file is not None:
                self._lock_file.close()
                self._lock_file = None
            raise PersistenceError("Store is already in use by another process") from exc

    def _release_lock(self) -> None:
        if self._lock_file:
            try:
                self._lock_file.close()
            finally:
                self._lock_file = None
            with contextlib.suppress(OSError):
                self.lock_path.unlink()

    # -- read / write -------------------------------------------------------
    def _load(self) -> Dict[str, Dict[str, Row]]:
        if not self.store_path.exists():
            return {}

        size = self.store_path.stat().st_size
        if size > Config.MAX_STORE_SIZE:
            raise PersistenceError(f"Store too large: {size} bytes (max {Config.MAX_STORE_SIZE})")

        if platform.system() != "Windows" and self.store_path.stat().st_mode & 0o077:
            logger.warning("Store permissions too open, fixing...")
            os.chmod(self.store_path, 0o600)

        try:
            document = orjson.loads(self.store_path.read_bytes())
        except orjson.JSONDecodeError as exc:
            raise PersistenceError(f"Store file is corrupted: {exc}") from exc
        if not isinstance(document, dict) or not isinstance(document.get("tables"), dict):
            raise PersistenceError("Store file has an unexpected layout")
        return document["tables"]

    def _write_atomic(self, data: bytes) -> None:
        if self.store_path.exists():
            shutil.copy2(self.store_path, self.backup_path)
            self._secure_permissions(self.backup_path)

        old_umask = os.umask(0o077) if os.name != "nt" else None
        try:
            with tempfile.NamedTemporaryFile(
                mode="wb",
                dir=self.store_path.parent,
                prefix="zkv_tmp_",
                suffix=".json",
                delete=False,
            ) as tmp:
                tmp.write(data)
                tmp.flush()
                os.fsync(tmp.fileno())
                temp_path = Path(tmp.name)
        finally:
            if old_umask is not None:
                os.umask(old_umask)

        self._secure_permissions(temp_path)
        temp_path.replace(self.store_path)
        self._secure_permissions(self.store_path)
        logger.debug("Store saved (%d bytes)", len(data))

    def _secure_permissions(self, path: Path) -> None:
        if platform.system() == "Windows":
            return
        try:
            os.chmod(path, 0o600)
        except OSError as exc:
            logger.warning("Error setting permissions on %s: %s", path, exc)

    def _serialise(self) -> bytes:
        document = {"saved_at": time.time(), "tables": self._tables}
        return orjson.dumps(document, option=orjson.OPT_INDENT_2)

    @contextlib.asynccontextmanager
    async def _transaction(self):
        """Apply an in-memory change, then flush; roll back if the flush fails."""
        async with self._write_lock:
            snapshot = copy.deepcopy(self._tables)
            try:
                yield
                await asyncio.to_thread(self._write_atomic, self._serialise())
            except OSError as exc:
                self._tables = snapshot
                raise PersistenceError(f"Could not write store: {exc}") from exc
            except BaseException:
                self._tables = snapshot
                raise

    # -- mutating operations ------------------------------------------------
    async def insert(self, table: str, row: Row) -> Row:
        async with self._transaction():
            result = await super().insert(table, row)
        return result

    async def insert_many(self, table: str, rows: List[Row]) -> List[Row]:
        async with self._transaction():
            result = await super().insert_many(table, rows)
        return result

    async def update(self, table: str, owner_id: str, row_id: str, fields: Row) -> Row:
        async with self._transaction():
            result = await super().update(table, owner_id, row_id, fields)
        return result

    async def delete(self, table: str, owner_id: str, row_id: str) -> None:
        async with self._transaction():
            await super().delete(table, owner_id, row_id)

    async def close(self) -> None:
        self._release_lock()

    def __del__(self):
        if getattr(self, "_lock_file", None):
            self._release_lock()
