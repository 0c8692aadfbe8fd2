"""
Offline local store.

Durable, schema-versioned client-side storage for cached questionnaires,
offline submissions, pending file blobs and the sync queue. All operations are
coroutines; writers are serialized by the store itself so callers never need
their own locking.

Two backends share one contract:

* ``SqlLocalStore`` - embedded SQLite through SQLAlchemy's asyncio extension
  (``sqlite+aiosqlite://``), survives restarts.
* ``InMemoryLocalStore`` - plain dictionaries, for tests and throwaway sessions.
"""
import asyncio
import copy
import dataclasses
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    JSON,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    delete,
    func,
    select,
    text,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from ..core.config import settings
from ..core.exceptions import LocalStoreError
from ..models.offline import ENTITY_CLASSES, PRIMARY_KEYS, UNIQUE_KEYS, EntityType

logger = logging.getLogger(__name__)

QueueListener = Callable[[], Awaitable[Any]]


class LocalStore(ABC):
    """Asynchronous key/index store for the four offline entity types."""

    async def open(self) -> None:
        """Prepare the backend (create or migrate the schema)."""

    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def get(self, entity_type: str, key: Any):
        ...

    @abstractmethod
    async def put(self, entity_type: str, entity):
        """Insert or overwrite one entity and return the stored copy.

        Sync queue entries without an ``id`` get one assigned.
        """

    @abstractmethod
    async def bulk_put(self, entity_type: str, entities: Sequence) -> List:
        """Write all entities or none of them."""

    @abstractmethod
    async def query(
        self,
        entity_type: str,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List:
        """Equality-filtered lookup, optionally ordered ascending by the given fields."""

    @abstractmethod
    async def delete(self, entity_type: str, key: Any) -> None:
        ...

    @abstractmethod
    async def update(self, entity_type: str, key: Any, expected: Optional[Dict[str, Any]] = None, **changes):
        """Apply ``changes`` to one entity atomically.

        When ``expected`` is given the change is only applied if the stored
        entity still has those field values. Returns the updated entity, or
        None if it is absent or did not match.
        """

    @abstractmethod
    async def count(self, entity_type: str, where: Optional[Dict[str, Any]] = None) -> int:
        ...

    @abstractmethod
    async def clear(self, entity_type: str) -> None:
        ...

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


async def notify_queue_changed(callback: Optional[QueueListener]) -> None:
    """Tell an observer that the sync queue changed. Observer failures are logged, not raised."""
    if callback is None:
        return
    try:
        await callback()
    except LocalStoreError as exc:
        logger.warning("Queue change notification failed: %s", exc)


def _check_entity_type(entity_type: str) -> None:
    if entity_type not in ENTITY_CLASSES:
        raise LocalStoreError(f"Unknown entity type '{entity_type}'. Choose from: {EntityType.ALL}")


def _to_row(entity_type: str, entity) -> Dict[str, Any]:
    _check_entity_type(entity_type)
    if not isinstance(entity, ENTITY_CLASSES[entity_type]):
        raise LocalStoreError(
            f"Expected {ENTITY_CLASSES[entity_type].__name__} for '{entity_type}', "
            f"got {type(entity).__name__}"
        )
    return dataclasses.asdict(entity)


def _from_row(entity_type: str, row: Dict[str, Any]):
    return ENTITY_CLASSES[entity_type](**row)


def _sort_key(fields: Sequence[str]):
    # None sorts first, like SQLite
    return lambda row: tuple((row[f] is not None, row[f]) for f in fields)


# ─────────────────────────────────────────────────────────────────────────────
# In-memory backend
# ─────────────────────────────────────────────────────────────────────────────

class InMemoryLocalStore(LocalStore):
    """Dictionary-backed store. Rows are deep-copied in and out."""

    def __init__(self):
        self._tables: Dict[str, Dict[Any, Dict[str, Any]]] = {name: {} for name in EntityType.ALL}
        self._next_queue_id = 1
        self._lock = asyncio.Lock()

    async def get(self, entity_type: str, key: Any):
        _check_entity_type(entity_type)
        row = self._tables[entity_type].get(key)
        return _from_row(entity_type, copy.deepcopy(row)) if row is not None else None

    async def put(self, entity_type: str, entity):
        stored = await self.bulk_put(entity_type, [entity])
        return stored[0]

    async def bulk_put(self, entity_type: str, entities: Sequence) -> List:
        rows = [copy.deepcopy(_to_row(entity_type, e)) for e in entities]
        async with self._lock:
            staged = dict(self._tables[entity_type])
            next_id = self._next_queue_id
            pk = PRIMARY_KEYS[entity_type]
            for row in rows:
                if row[pk] is None:
                    if entity_type != EntityType.SYNC_QUEUE:
                        raise LocalStoreError(f"Missing primary key '{pk}' for {entity_type}")
                    row[pk] = next_id
                    next_id += 1
                elif entity_type == EntityType.SYNC_QUEUE:
                    next_id = max(next_id, row[pk] + 1)
                self._check_unique(entity_type, row, staged)
                staged[row[pk]] = row
            self._tables[entity_type] = staged
            self._next_queue_id = next_id
        return [_from_row(entity_type, copy.deepcopy(row)) for row in rows]

    async def query(self, entity_type, where=None, order_by=None, limit=None) -> List:
        _check_entity_type(entity_type)
        rows = [
            row for row in self._tables[entity_type].values()
            if all(row.get(k) == v for k, v in (where or {}).items())
        ]
        if order_by:
            rows.sort(key=_sort_key(order_by))
        if limit is not None:
            rows = rows[:limit]
        return [_from_row(entity_type, copy.deepcopy(row)) for row in rows]

    async def delete(self, entity_type: str, key: Any) -> None:
        _check_entity_type(entity_type)
        async with self._lock:
            self._tables[entity_type].pop(key, None)

    async def update(self, entity_type: str, key: Any, expected=None, **changes):
        _check_entity_type(entity_type)
        async with self._lock:
            table = self._tables[entity_type]
            if key not in table:
                return None
            if expected and any(table[key].get(k) != v for k, v in expected.items()):
                return None
            row = dict(table[key])
            row.update(copy.deepcopy(changes))
            self._check_unique(entity_type, row, table)
            table[key] = row
            return _from_row(entity_type, copy.deepcopy(row))

    async def count(self, entity_type: str, where=None) -> int:
        return len(await self.query(entity_type, where=where))

    async def clear(self, entity_type: str) -> None:
        _check_entity_type(entity_type)
        async with self._lock:
            self._tables[entity_type] = {}

    @staticmethod
    def _check_unique(entity_type: str, row: Dict[str, Any], table: Dict[Any, Dict[str, Any]]) -> None:
        fields = UNIQUE_KEYS.get(entity_type)
        if not fields:
            return
        pk = PRIMARY_KEYS[entity_type]
        for other in table.values():
            if other[pk] != row[pk] and all(other[f] == row[f] for f in fields):
                raise LocalStoreError(
                    f"Duplicate {entity_type} entry for {dict((f, row[f]) for f in fields)}"
                )


# ─────────────────────────────────────────────────────────────────────────────
# SQLite backend
# ─────────────────────────────────────────────────────────────────────────────

SCHEMA_VERSION = 2

metadata = MetaData()

questionnaires_table = Table(
    EntityType.QUESTIONNAIRES,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("code", String(100), nullable=False, index=True),
    Column("version", Integer, nullable=False),
    Column("title", String(255), nullable=False),
    Column("schema", JSON, nullable=False),
    Column("permissions", JSON, nullable=False),
    Column("cached_at", DateTime, nullable=False, index=True),
    UniqueConstraint("code", "version", name="uq_questionnaires_code_version"),
)

submissions_table = Table(
    EntityType.SUBMISSIONS,
    metadata,
    Column("local_id", String(64), primary_key=True),
    Column("id", Integer, nullable=True, index=True),
    Column("questionnaire_id", Integer, nullable=False, index=True),
    Column("institution_id", Integer, nullable=False, index=True),
    Column("status", String(20), nullable=False),
    Column("answers", JSON, nullable=False),
    Column("synced", Boolean, nullable=False, default=False, index=True),
    Column("synced_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False, index=True),
    Column("updated_at", DateTime, nullable=False),
    Column("modified_questions", JSON, nullable=False),
)

files_table = Table(
    EntityType.FILES,
    metadata,
    Column("id", String(64), primary_key=True),
    Column("submission_local_id", String(64), nullable=False, index=True),
    Column("question_name", String(255), nullable=False),
    Column("file_name", String(255), nullable=False),
    Column("file_type", String(100), nullable=False),
    Column("file_size", Integer, nullable=False),
    Column("blob", LargeBinary, nullable=True),  # Dropped after upload
    Column("synced", Boolean, nullable=False, default=False, index=True),
    Column("uploaded_path", String(500), nullable=True),
    Column("created_at", DateTime, nullable=False),
)

sync_queue_table = Table(
    EntityType.SYNC_QUEUE,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("item_type", String(20), nullable=False, index=True),
    Column("item_id", String(64), nullable=False, index=True),
    Column("priority", Integer, nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_attempt_at", DateTime, nullable=True),
    Column("error", Text, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Index("ix_sync_queue_order", "priority", "created_at"),
    Index("uq_sync_queue_item", "item_type", "item_id", unique=True),
)

store_meta_table = Table(
    "store_meta",
    metadata,
    Column("key", String(50), primary_key=True),
    Column("value", String(255), nullable=False),
)

TABLES = {
    EntityType.QUESTIONNAIRES: questionnaires_table,
    EntityType.SUBMISSIONS: submissions_table,
    EntityType.FILES: files_table,
    EntityType.SYNC_QUEUE: sync_queue_table,
}


async def _migrate_to_v1(conn: AsyncConnection) -> None:
    """Baseline schema; the tables themselves come from ``metadata.create_all``."""


async def _migrate_to_v2(conn: AsyncConnection) -> None:
    """Enforce one queue entry per item, folding duplicates into the oldest entry."""
    rows = (
        await conn.execute(select(sync_queue_table).order_by(sync_queue_table.c.id))
    ).mappings().all()
    kept: Dict[tuple, Dict[str, Any]] = {}
    for row in rows:
        key = (row["item_type"], row["item_id"])
        first = kept.get(key)
        if first is None:
            kept[key] = dict(row)
            continue
        if row["priority"] < first["priority"]:
            first["priority"] = row["priority"]
            await conn.execute(
                update(sync_queue_table)
                .where(sync_queue_table.c.id == first["id"])
                .values(priority=row["priority"])
            )
        await conn.execute(delete(sync_queue_table).where(sync_queue_table.c.id == row["id"]))
    await conn.execute(
        text("CREATE UNIQUE INDEX IF NOT EXISTS uq_sync_queue_item ON sync_queue (item_type, item_id)")
    )


MIGRATIONS = {
    1: _migrate_to_v1,
    2: _migrate_to_v2,
}


class SqlLocalStore(LocalStore):
    """SQLite-backed store. Call ``open()`` (or use ``async with``) before use."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.LOCAL_DATABASE_URL
        self._engine: Optional[AsyncEngine] = None
        self._lock = asyncio.Lock()

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise LocalStoreError("Local store is not open")
        return self._engine

    async def open(self) -> None:
        if self._engine is not None:
            return
        self._engine = create_async_engine(self.url)
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
                current = await self._read_version(conn)
                for version in range(current + 1, SCHEMA_VERSION + 1):
                    logger.info("Migrating local store %s to schema v%d", self.url, version)
                    await MIGRATIONS[version](conn)
                if current != SCHEMA_VERSION:
                    await self._write_version(conn, SCHEMA_VERSION)
        except SQLAlchemyError as exc:
            await self._engine.dispose()
            self._engine = None
            raise LocalStoreError(f"Could not open local store: {exc}") from exc

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    async def schema_version(self) -> int:
        async with self.engine.connect() as conn:
            return await self._read_version(conn)

    @staticmethod
    async def _read_version(conn: AsyncConnection) -> int:
        value = (
            await conn.execute(
                select(store_meta_table.c.value).where(store_meta_table.c.key == "schema_version")
            )
        ).scalar_one_or_none()
        return int(value) if value is not None else 0

    @staticmethod
    async def _write_version(conn: AsyncConnection, version: int) -> None:
        stmt = sqlite_insert(store_meta_table).values(key="schema_version", value=str(version))
        await conn.execute(
            stmt.on_conflict_do_update(index_elements=["key"], set_={"value": str(version)})
        )

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def get(self, entity_type: str, key: Any):
        _check_entity_type(entity_type)
        table = TABLES[entity_type]
        pk = table.c[PRIMARY_KEYS[entity_type]]
        try:
            async with self.engine.connect() as conn:
                row = (await conn.execute(select(table).where(pk == key))).mappings().first()
        except SQLAlchemyError as exc:
            raise LocalStoreError(str(exc)) from exc
        return _from_row(entity_type, dict(row)) if row is not None else None

    async def put(self, entity_type: str, entity):
        stored = await self.bulk_put(entity_type, [entity])
        return stored[0]

    async def bulk_put(self, entity_type: str, entities: Sequence) -> List:
        rows = [_to_row(entity_type, e) for e in entities]
        table = TABLES[entity_type]
        pk = PRIMARY_KEYS[entity_type]
        stored = []
        async with self._lock:
            try:
                async with self.engine.begin() as conn:
                    for row in rows:
                        stored.append(await self._upsert(conn, entity_type, table, pk, row))
            except SQLAlchemyError as exc:
                raise LocalStoreError(f"Failed to write {entity_type}: {exc}") from exc
        return stored

    @staticmethod
    async def _upsert(conn: AsyncConnection, entity_type: str, table: Table, pk: str, row: Dict[str, Any]):
        if row[pk] is None:
            if entity_type != EntityType.SYNC_QUEUE:
                raise LocalStoreError(f"Missing primary key '{pk}' for {entity_type}")
            values = {k: v for k, v in row.items() if k != pk}
            result = await conn.execute(table.insert().values(**values))
            row = dict(row, **{pk: result.inserted_primary_key[0]})
        else:
            stmt = sqlite_insert(table).values(**row)
            stmt = stmt.on_conflict_do_update(
                index_elements=[pk],
                set_={k: stmt.excluded[k] for k in row if k != pk},
            )
            await conn.execute(stmt)
        return _from_row(entity_type, row)

    async def query(self, entity_type, where=None, order_by=None, limit=None) -> List:
        _check_entity_type(entity_type)
        table = TABLES[entity_type]
        stmt = select(table)
        for field_name, value in (where or {}).items():
            stmt = stmt.where(table.c[field_name] == value)
        if order_by:
            stmt = stmt.order_by(*[table.c[f] for f in order_by])
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            async with self.engine.connect() as conn:
                rows = (await conn.execute(stmt)).mappings().all()
        except SQLAlchemyError as exc:
            raise LocalStoreError(str(exc)) from exc
        return [_from_row(entity_type, dict(row)) for row in rows]

    async def delete(self, entity_type: str, key: Any) -> None:
        _check_entity_type(entity_type)
        table = TABLES[entity_type]
        async with self._lock:
            try:
                async with self.engine.begin() as conn:
                    await conn.execute(delete(table).where(table.c[PRIMARY_KEYS[entity_type]] == key))
            except SQLAlchemyError as exc:
                raise LocalStoreError(str(exc)) from exc

    async def update(self, entity_type: str, key: Any, expected=None, **changes):
        _check_entity_type(entity_type)
        table = TABLES[entity_type]
        pk = table.c[PRIMARY_KEYS[entity_type]]
        condition = pk == key
        for field_name, value in (expected or {}).items():
            condition = condition & (table.c[field_name] == value)
        async with self._lock:
            try:
                async with self.engine.begin() as conn:
                    row = (await conn.execute(select(table).where(condition))).mappings().first()
                    if row is None:
                        return None
                    if changes:
                        await conn.execute(update(table).where(pk == key).values(**changes))
                        row = (await conn.execute(select(table).where(pk == key))).mappings().first()
            except SQLAlchemyError as exc:
                raise LocalStoreError(f"Failed to update {entity_type} {key}: {exc}") from exc
        return _from_row(entity_type, dict(row)) if row is not None else None

    async def count(self, entity_type: str, where=None) -> int:
        _check_entity_type(entity_type)
        table = TABLES[entity_type]
        stmt = select(func.count()).select_from(table)
        for field_name, value in (where or {}).items():
            stmt = stmt.where(table.c[field_name] == value)
        try:
            async with self.engine.connect() as conn:
                return (await conn.execute(stmt)).scalar_one()
        except SQLAlchemyError as exc:
            raise LocalStoreError(str(exc)) from exc

    async def clear(self, entity_type: str) -> None:
        _check_entity_type(entity_type)
        async with self._lock:
            try:
                async with self.engine.begin() as conn:
                    await conn.execute(delete(TABLES[entity_type]))
            except SQLAlchemyError as exc:
                raise LocalStoreError(str(exc)) from exc
