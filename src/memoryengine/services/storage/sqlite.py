"""SQLite storage backend."""
import json
import struct
from datetime import datetime
from logging import Logger
from pathlib import Path
from typing import Any, Iterable, Optional

import aiosqlite

from scitrera_app_framework import Variables

from ...config import MEMORYENGINE_SQLITE_STORAGE_PATH, DEFAULT_MEMORYENGINE_SQLITE_STORAGE_PATH
from ...models.memory import MemoryEntry, MemoryCategory, MemoryRelationship, RelationshipType, normalize_keywords
from ...utils import parse_datetime_utc, utc_now
from .base import StorageBackend, StoragePluginBase

_MEMORY_COLUMNS = (
    "id", "user_id", "content", "category", "importance", "keywords", "embedding", "semantic_hash",
    "created_at", "last_accessed", "access_count", "update_count", "is_active", "metadata",
)
_UPDATABLE_MEMORY_COLUMNS = frozenset(_MEMORY_COLUMNS) - {"id", "user_id"}
_UPDATABLE_RELATIONSHIP_COLUMNS = frozenset({"confidence", "metadata", "type"})


class SQLiteStorageBackend(StorageBackend):
    """SQLite storage backend using aiosqlite.

    Embeddings are stored as packed float32 blobs, keywords and metadata as
    JSON text and timestamps as ISO-8601 strings.
    """

    def __init__(self, db_path: str = DEFAULT_MEMORYENGINE_SQLITE_STORAGE_PATH, v: Variables = None):
        super().__init__(v)
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        """Initialize storage connection."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.logger.info("Connecting to SQLite database at %s", Path(self.db_path).absolute())

        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        # WAL for concurrent readers while the worker pool writes
        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA foreign_keys = ON")

        await self._create_tables()
        self.logger.info("Connected to SQLite database at %s", self.db_path)

    async def disconnect(self) -> None:
        """Close storage connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            self.logger.info("Disconnected from SQLite database")

    async def health_check(self) -> bool:
        try:
            if self._connection:
                await self._connection.execute("SELECT 1")
                return True
            return False
        except Exception as e:
            self.logger.error("Health check failed: %s", e)
            return False

    async def _create_tables(self) -> None:
        await self._connection.executescript("""
            CREATE TABLE IF NOT EXISTS memories
            (
                id            TEXT PRIMARY KEY,
                user_id       TEXT    NOT NULL,
                content       TEXT    NOT NULL,
                category      TEXT    NOT NULL,
                importance    REAL    NOT NULL DEFAULT 0.5,
                keywords      TEXT    NOT NULL DEFAULT '[]',
                embedding     BLOB,
                semantic_hash TEXT,
                created_at    TEXT    NOT NULL,
                last_accessed TEXT    NOT NULL,
                access_count  INTEGER NOT NULL DEFAULT 0,
                update_count  INTEGER NOT NULL DEFAULT 1,
                is_active     INTEGER NOT NULL DEFAULT 1,
                metadata      TEXT    NOT NULL DEFAULT '{}'
            );
            CREATE INDEX IF NOT EXISTS idx_memories_user_active ON memories (user_id, is_active);
            CREATE INDEX IF NOT EXISTS idx_memories_user_hash ON memories (user_id, semantic_hash);

            CREATE TABLE IF NOT EXISTS relationships
            (
                id         TEXT PRIMARY KEY,
                user_id    TEXT NOT NULL,
                from_id    TEXT NOT NULL REFERENCES memories (id) ON DELETE CASCADE,
                to_id      TEXT NOT NULL REFERENCES memories (id) ON DELETE CASCADE,
                type       TEXT NOT NULL,
                confidence REAL NOT NULL DEFAULT 0.5,
                metadata   TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                UNIQUE (from_id, to_id, type)
            );
            CREATE INDEX IF NOT EXISTS idx_relationships_user ON relationships (user_id, type);
            CREATE INDEX IF NOT EXISTS idx_relationships_from ON relationships (from_id);
            CREATE INDEX IF NOT EXISTS idx_relationships_to ON relationships (to_id);
        """)
        await self._connection.commit()

    # ========== Memory Operations ==========

    def _memory_params(self, column: str, value: Any) -> Any:
        """Convert a model value into its column representation."""
        if column in ("keywords", "metadata"):
            return json.dumps(value or ([] if column == "keywords" else {}))
        if column == "embedding":
            return self._serialize_embedding(value) if value else None
        if column == "is_active":
            return 1 if value else 0
        if column == "category":
            return value.value if isinstance(value, MemoryCategory) else str(value)
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    async def create_memory(self, entry: MemoryEntry) -> MemoryEntry:
        data = entry.model_dump()
        values = [self._memory_params(col, data[col]) for col in _MEMORY_COLUMNS]
        await self._connection.execute(
            f"INSERT INTO memories ({', '.join(_MEMORY_COLUMNS)}) VALUES ({', '.join('?' * len(_MEMORY_COLUMNS))})",
            values,
        )
        await self._connection.commit()
        self.logger.debug("Created memory %s for user %s", entry.id, entry.user_id)
        return entry

    async def get_memory(self, memory_id: str) -> Optional[MemoryEntry]:
        async with self._connection.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)) as cursor:
            row = await cursor.fetchone()
        return self._row_to_memory(row) if row else None

    async def update_memory(self, memory_id: str, **updates) -> Optional[MemoryEntry]:
        set_parts = []
        values = []
        for key, value in updates.items():
            if key not in _UPDATABLE_MEMORY_COLUMNS:
                raise ValueError(f"Cannot update memory field: {key}")
            if key == "keywords":
                # same normalization as the model validator
                value = normalize_keywords(value)
            set_parts.append(f"{key} = ?")
            values.append(self._memory_params(key, value))

        if not set_parts:
            return await self.get_memory(memory_id)

        values.append(memory_id)
        cursor = await self._connection.execute(
            f"UPDATE memories SET {', '.join(set_parts)} WHERE id = ?",
            values,
        )
        await self._connection.commit()

        if cursor.rowcount == 0:
            return None
        return await self.get_memory(memory_id)

    async def delete_memory(self, memory_id: str, hard: bool = False) -> bool:
        if hard:
            cursor = await self._connection.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        else:
            cursor = await self._connection.execute(
                "UPDATE memories SET is_active = 0 WHERE id = ?", (memory_id,)
            )
        await self._connection.commit()
        return cursor.rowcount > 0

    async def list_memories(self, user_id: str, active_only: bool = True, limit: Optional[int] = None) -> list[MemoryEntry]:
        query = "SELECT * FROM memories WHERE user_id = ?"
        params: list[Any] = [user_id]
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY created_at, rowid"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        async with self._connection.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_memory(row) for row in rows]

    async def find_by_semantic_hash(self, user_id: str, semantic_hash: str) -> list[MemoryEntry]:
        async with self._connection.execute(
                "SELECT * FROM memories WHERE user_id = ? AND semantic_hash = ? AND is_active = 1",
                (user_id, semantic_hash),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_memory(row) for row in rows]

    async def find_by_content(self, user_id: str, content: str) -> Optional[MemoryEntry]:
        async with self._connection.execute(
                "SELECT * FROM memories WHERE user_id = ? AND is_active = 1 AND lower(content) = lower(?) "
                "ORDER BY created_at LIMIT 1",
                (user_id, content.strip()),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_memory(row) if row else None

    async def record_access(self, memory_ids: Iterable[str]) -> None:
        ids = list(memory_ids)
        if not ids:
            return
        now = utc_now().isoformat()
        await self._connection.executemany(
            "UPDATE memories SET access_count = access_count + 1, last_accessed = ? WHERE id = ?",
            [(now, memory_id) for memory_id in ids],
        )
        await self._connection.commit()

    async def list_user_ids(self) -> list[str]:
        async with self._connection.execute("SELECT DISTINCT user_id FROM memories ORDER BY user_id") as cursor:
            rows = await cursor.fetchall()
        return [row["user_id"] for row in rows]

    # ========== Relationship Operations ==========

    async def create_relationship(self, relationship: MemoryRelationship) -> MemoryRelationship:
        await self._connection.execute(
            """
            INSERT OR IGNORE INTO relationships (id, user_id, from_id, to_id, type, confidence, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                relationship.id, relationship.user_id, relationship.from_id, relationship.to_id,
                relationship.type.value, relationship.confidence, json.dumps(relationship.metadata),
                relationship.created_at.isoformat(),
            ),
        )
        await self._connection.commit()
        async with self._connection.execute(
                "SELECT * FROM relationships WHERE from_id = ? AND to_id = ? AND type = ?",
                (relationship.from_id, relationship.to_id, relationship.type.value),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_relationship(row)

    async def get_relationships(
            self,
            memory_ids: Iterable[str],
            types: Optional[Iterable[RelationshipType]] = None,
    ) -> list[MemoryRelationship]:
        ids = list(memory_ids)
        if not ids:
            return []
        placeholders = ', '.join('?' * len(ids))
        query = f"SELECT * FROM relationships WHERE (from_id IN ({placeholders}) OR to_id IN ({placeholders}))"
        params: list[Any] = ids + ids
        type_values = [RelationshipType(t).value for t in types] if types else []
        if type_values:
            query += f" AND type IN ({', '.join('?' * len(type_values))})"
            params.extend(type_values)
        query += " ORDER BY created_at"
        async with self._connection.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_relationship(row) for row in rows]

    async def get_user_relationships(
            self,
            user_id: str,
            types: Optional[Iterable[RelationshipType]] = None,
    ) -> list[MemoryRelationship]:
        query = "SELECT * FROM relationships WHERE user_id = ?"
        params: list[Any] = [user_id]
        type_values = [RelationshipType(t).value for t in types] if types else []
        if type_values:
            query += f" AND type IN ({', '.join('?' * len(type_values))})"
            params.extend(type_values)
        query += " ORDER BY created_at"
        async with self._connection.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_relationship(row) for row in rows]

    async def update_relationship(self, relationship_id: str, **updates) -> Optional[MemoryRelationship]:
        set_parts = []
        values = []
        for key, value in updates.items():
            if key not in _UPDATABLE_RELATIONSHIP_COLUMNS:
                raise ValueError(f"Cannot update relationship field: {key}")
            set_parts.append(f"{key} = ?")
            if key == "metadata":
                values.append(json.dumps(value))
            elif key == "type":
                values.append(RelationshipType(value).value)
            else:
                values.append(value)
        if set_parts:
            values.append(relationship_id)
            await self._connection.execute(
                f"UPDATE relationships SET {', '.join(set_parts)} WHERE id = ?", values
            )
            await self._connection.commit()
        async with self._connection.execute("SELECT * FROM relationships WHERE id = ?", (relationship_id,)) as cursor:
            row = await cursor.fetchone()
        return self._row_to_relationship(row) if row else None

    # ========== Row mapping ==========

    def _row_to_memory(self, row: aiosqlite.Row) -> MemoryEntry:
        """Convert database row to MemoryEntry domain model."""
        return MemoryEntry(
            id=row["id"],
            user_id=row["user_id"],
            content=row["content"],
            category=MemoryCategory(row["category"]),
            importance=row["importance"],
            keywords=json.loads(row["keywords"]) if row["keywords"] else [],
            embedding=self._deserialize_embedding(row["embedding"]) if row["embedding"] else None,
            semantic_hash=row["semantic_hash"],
            created_at=parse_datetime_utc(row["created_at"]),
            last_accessed=parse_datetime_utc(row["last_accessed"]),
            access_count=row["access_count"],
            update_count=row["update_count"],
            is_active=bool(row["is_active"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )

    @staticmethod
    def _row_to_relationship(row: aiosqlite.Row) -> MemoryRelationship:
        return MemoryRelationship(
            id=row["id"],
            user_id=row["user_id"],
            from_id=row["from_id"],
            to_id=row["to_id"],
            type=RelationshipType(row["type"]),
            confidence=row["confidence"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=parse_datetime_utc(row["created_at"]),
        )

    @staticmethod
    def _serialize_embedding(embedding: list[float]) -> bytes:
        """Serialize embedding to binary format for storage."""
        return struct.pack(f'{len(embedding)}f', *embedding)

    @staticmethod
    def _deserialize_embedding(blob: bytes) -> list[float]:
        """Deserialize embedding from binary format."""
        num_floats = len(blob) // 4
        return list(struct.unpack(f'{num_floats}f', blob))


class SqliteStorageBackendPlugin(StoragePluginBase):
    PROVIDER_NAME = 'sqlite'

    def initialize(self, v: Variables, logger: Logger) -> object | None:
        return SQLiteStorageBackend(
            db_path=v.environ(MEMORYENGINE_SQLITE_STORAGE_PATH, default=DEFAULT_MEMORYENGINE_SQLITE_STORAGE_PATH),
            v=v
        )
