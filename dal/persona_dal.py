"""Async Data Access Layer for the persona library tables.

Provides one DAL class per record kind, both compatible with
`utils.database_init.AsyncDatabaseInitializer`. Every write runs in a single
`BEGIN IMMEDIATE` transaction; on any failure it is rolled back and a
`StorageError` is raised, leaving the previous state untouched.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Generic, List, Optional, Sequence, Tuple, TypeVar

import aiosqlite

from models.persona_records import RequestSnapshot, ResultRecord, StructuredRecord
from utils.database_init import AsyncDatabaseInitializer

RecordT = TypeVar("RecordT", RequestSnapshot, ResultRecord)


class StorageError(RuntimeError):
    """Raised when a library write or read cannot be completed."""


def utc_now() -> str:
    """Return the current UTC time as a sortable ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def is_valid_key(key: Any) -> bool:
    """Only positive integers (not bools) address an existing record."""
    return isinstance(key, int) and not isinstance(key, bool) and key > 0


class _KeyedTableDAL(Generic[RecordT]):
    """Shared put/get/list/delete over one auto-increment table.

    Subclasses declare `_TABLE` and `_COLUMNS` (id, payload columns...,
    created_at, updated_at) and convert between rows and records.
    """

    _TABLE = ""
    _COLUMNS: Tuple[str, ...] = ()

    def __init__(self, db_initializer: AsyncDatabaseInitializer) -> None:
        self._db = db_initializer

    @property
    def _column_list(self) -> str:
        return ", ".join(self._COLUMNS)

    def _record_values(self, record: RecordT) -> Tuple[Any, ...]:
        raise NotImplementedError

    def _row_to_record(self, row: Sequence[Any]) -> RecordT:
        raise NotImplementedError

    def _check_writable(self, record: RecordT) -> None:
        """Hook for subclasses to reject a record before any I/O."""

    async def put(self, record: RecordT) -> int:
        """Insert or update a record and return its key.

        A positive integer `record.id` writes that key (preserving the stored
        `created_at` when the row exists); any other id inserts a new row.
        `record` is updated in place with the key and timestamps.
        """
        self._check_writable(record)
        async with self._db.connection() as conn:
            try:
                await conn.execute("BEGIN IMMEDIATE")
                key = await self._write(conn, record, record.id if is_valid_key(record.id) else None)
                await conn.commit()
            except (aiosqlite.Error, TypeError, ValueError) as exc:
                await conn.rollback()
                raise StorageError(f"Failed to write {self._TABLE} record: {exc}") from exc
        return key

    async def _write(self, conn: aiosqlite.Connection, record: RecordT, key: Optional[int]) -> int:
        now = utc_now()
        created_at = record.created_at or now
        if key is not None:
            cur = await conn.execute(f"SELECT created_at FROM {self._TABLE} WHERE id = ?", (key,))
            row = await cur.fetchone()
            if row:
                created_at = row[0]

        values = self._record_values(record)
        if key is None:
            columns = ", ".join(self._COLUMNS[1:])
            placeholders = ", ".join("?" for _ in self._COLUMNS[1:])
            cur = await conn.execute(
                f"INSERT INTO {self._TABLE} ({columns}) VALUES ({placeholders})",
                (*values, created_at, now),
            )
            key = cur.lastrowid
        else:
            placeholders = ", ".join("?" for _ in self._COLUMNS)
            await conn.execute(
                f"INSERT OR REPLACE INTO {self._TABLE} ({self._column_list}) VALUES ({placeholders})",
                (key, *values, created_at, now),
            )

        record.id = key
        record.created_at = created_at
        record.updated_at = now
        return key

    async def get(self, key: int) -> Optional[RecordT]:
        """Return the record stored under `key`, or None if not found."""
        if not is_valid_key(key):
            return None
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"SELECT {self._column_list} FROM {self._TABLE} WHERE id = ?",
                (key,),
            )
            row = await cur.fetchone()
            return self._row_to_record(row) if row else None

    async def list(self) -> List[RecordT]:
        """Return all records, most recently updated first."""
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"SELECT {self._column_list} FROM {self._TABLE} ORDER BY updated_at DESC, id DESC"
            )
            rows = await cur.fetchall()
            return [self._row_to_record(r) for r in rows]

    async def delete(self, key: int) -> bool:
        """Delete the record under `key`. Returns True if a row was deleted."""
        if not is_valid_key(key):
            return False
        async with self._db.connection() as conn:
            try:
                cur = await conn.execute(f"DELETE FROM {self._TABLE} WHERE id = ?", (key,))
                await conn.commit()
            except aiosqlite.Error as exc:
                await conn.rollback()
                raise StorageError(f"Failed to delete {self._TABLE} record {key}: {exc}") from exc
            return cur.rowcount > 0


class RequestSnapshotDAL(_KeyedTableDAL[RequestSnapshot]):
    """Data access layer for request snapshots (the prompt library).

    Args:
        db_initializer: Connection provider.
        max_record_bytes: Writes whose serialized payload exceeds this many
            bytes fail with `StorageError`; 0 disables the cap.
    """

    _TABLE = "request_snapshots"
    _COLUMNS = (
        "id",
        "concept",
        "subject_name",
        "point_of_view",
        "knowledge_base",
        "reference_description",
        "reference_image",
        "fingerprint",
        "created_at",
        "updated_at",
    )

    def __init__(self, db_initializer: AsyncDatabaseInitializer, max_record_bytes: int = 0) -> None:
        super().__init__(db_initializer)
        self.max_record_bytes = max_record_bytes

    def _record_values(self, record: RequestSnapshot) -> Tuple[Any, ...]:
        knowledge_base = json.dumps(record.knowledge_base) if record.knowledge_base is not None else None
        return (
            record.concept or "",
            record.subject_name or "",
            record.point_of_view or "first",
            knowledge_base,
            record.reference_description or "",
            record.reference_image or "",
            record.fingerprint or record.logical_fingerprint(),
        )

    def _check_writable(self, record: RequestSnapshot) -> None:
        if not self.max_record_bytes:
            return
        try:
            size = sum(len(str(v).encode("utf-8")) for v in self._record_values(record) if v is not None)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Request snapshot is not serializable: {exc}") from exc
        if size > self.max_record_bytes:
            raise StorageError(
                f"Request snapshot of {size} bytes exceeds the {self.max_record_bytes} byte limit"
            )

    def _row_to_record(self, row: Sequence[Any]) -> RequestSnapshot:
        knowledge_base = json.loads(row[4]) if row[4] else None
        return RequestSnapshot(
            id=row[0],
            concept=row[1],
            subject_name=row[2],
            point_of_view=row[3],
            knowledge_base=knowledge_base,
            reference_description=row[5],
            reference_image=row[6],
            fingerprint=row[7],
            created_at=row[8],
            updated_at=row[9],
        )

    async def upsert_by_fingerprint(self, record: RequestSnapshot) -> int:
        """Write `record`, overwriting (and reusing the key of) any stored
        snapshot with the same fingerprint.

        The lookup and the write share one transaction; concurrent writers of
        the same fingerprint resolve as last-write-wins.
        """
        self._check_writable(record)
        fingerprint = record.fingerprint or record.logical_fingerprint()
        record.fingerprint = fingerprint
        async with self._db.connection() as conn:
            try:
                await conn.execute("BEGIN IMMEDIATE")
                cur = await conn.execute(
                    f"SELECT id FROM {self._TABLE} WHERE fingerprint = ? ORDER BY updated_at DESC LIMIT 1",
                    (fingerprint,),
                )
                row = await cur.fetchone()
                existing = row[0] if row else None
                if existing is not None:
                    record.id = existing
                key = await self._write(conn, record, existing)
                await conn.commit()
            except (aiosqlite.Error, TypeError, ValueError) as exc:
                await conn.rollback()
                raise StorageError(f"Failed to write {self._TABLE} record: {exc}") from exc
        return key


class ResultRecordDAL(_KeyedTableDAL[ResultRecord]):
    """Data access layer for generated persona results (the card library)."""

    _TABLE = "result_records"
    _COLUMNS = (
        "id",
        "subject_name",
        "name",
        "description",
        "personality",
        "scenario",
        "first_message",
        "illustration",
        "illustration_type",
        "illustration_thumbnail",
        "created_at",
        "updated_at",
    )

    def _record_values(self, record: ResultRecord) -> Tuple[Any, ...]:
        structured = record.record
        return (
            record.subject_name or "",
            structured.name or "",
            structured.description or "",
            structured.personality or "",
            structured.scenario or "",
            structured.first_message or "",
            record.illustration,
            record.illustration_type,
            record.illustration_thumbnail,
        )

    def _row_to_record(self, row: Sequence[Any]) -> ResultRecord:
        return ResultRecord(
            id=row[0],
            subject_name=row[1],
            record=StructuredRecord(
                name=row[2],
                description=row[3],
                personality=row[4],
                scenario=row[5],
                first_message=row[6],
            ),
            illustration=row[7],
            illustration_type=row[8],
            illustration_thumbnail=row[9],
            created_at=row[10],
            updated_at=row[11],
        )
