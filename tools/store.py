"""
Analysis store: the shared datastore behind the cache and project memory.

``AnalysisStore`` is the repository interface every component is given.
``SQLiteStore`` implements it with aiosqlite:
- WAL mode so readers do not block the writer
- Counters and confidence deltas as single SQL statements
- Multi-statement updates in ``BEGIN IMMEDIATE`` transactions
- Embeddings stored as JSON, cosine similarity computed with numpy
"""
from __future__ import annotations

import asyncio
import functools
import json
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiosqlite
import numpy as np

from models.pydantic_models import (
    CacheEntry,
    PatternRecord,
    Project,
    ProjectMemory,
    MemoryEntry,
    LearningLoopEntry,
    ParsedRequest,
)
from .config import DB_PATH
from .errors import StoreError, NotFoundError

logger = logging.getLogger(__name__)


def utcnow() -> str:
    """ISO-8601 UTC timestamp; lexical order matches time order."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def to_utc_iso(value: str) -> str:
    """Normalize an ISO-8601 timestamp to the UTC form produced by ``utcnow``.

    A trailing ``Z`` is accepted and naive values are taken as UTC.

    Raises:
        ValueError: If the value is not an ISO-8601 timestamp.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="microseconds")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


# Collections and numeric fields that ``increment`` may touch
INCREMENTABLE = {
    "projects": (
        ("id",),
        {
            "total_requests_analyzed", "tokens_saved", "success_count",
            "failure_count", "partial_count", "feedback_events",
        },
    ),
    "cache": (
        ("project_id", "request_hash"),
        {"hit_count", "tokens_saved"},
    ),
    "patterns": (
        ("project_id", "pattern_type", "pattern_name"),
        {"times_seen"},
    ),
}

TABLES = {
    "projects": "projects",
    "cache": "similarity_cache",
    "patterns": "request_patterns",
}


class AnalysisStore(ABC):
    """Repository interface over the shared datastore.

    Two operations are the concurrency contract: ``increment`` (atomic
    numeric delta) and ``similarity_search`` (top-K vectors above a
    threshold). Everything else is plain reads and upserts.
    """

    async def initialize(self) -> None:
        """Prepare the backend. Idempotent."""

    async def close(self) -> None:
        """Release backend resources."""

    # Atomic primitives
    @abstractmethod
    async def increment(self, collection: str, key: Dict[str, Any], **deltas: float) -> Dict[str, float]:
        """Atomically add ``deltas`` to numeric fields; return the new values."""

    @abstractmethod
    async def similarity_search(
        self, project_id: str, vector: Sequence[float], threshold: float, limit: int
    ) -> List[Tuple[CacheEntry, float]]:
        """Cached entries of a project whose embedding is at least ``threshold`` similar."""

    @abstractmethod
    async def adjust_pattern_confidence(self, project_id: str, pattern_name: str, delta: float) -> int:
        """Atomically add a signed delta to a pattern's confidence, clamped to [0, 1]."""

    # Projects
    @abstractmethod
    async def create_project(self, project: Project) -> Project: ...

    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[Project]: ...

    @abstractmethod
    async def touch_project(self, project_id: str) -> None: ...

    @abstractmethod
    async def append_project_memory(
        self,
        project_id: str,
        note: Optional[str] = None,
        pattern: Optional[str] = None,
        exploit: Optional[Dict[str, Any]] = None,
        notes_limit: int = 5000,
        exploits_limit: int = 50,
    ) -> ProjectMemory: ...

    # Cache entries
    @abstractmethod
    async def get_cache_entry(self, project_id: str, request_hash: str, level: int = 1) -> Optional[CacheEntry]: ...

    @abstractmethod
    async def find_embedding(self, project_id: str, endpoint: str, method: str) -> Optional[List[float]]: ...

    @abstractmethod
    async def upsert_cache_entry(self, entry: CacheEntry) -> None: ...

    @abstractmethod
    async def list_cache_entries(self, project_id: str) -> List[CacheEntry]: ...

    @abstractmethod
    async def delete_expired_cache(self, now: Optional[str] = None) -> int: ...

    # Patterns
    @abstractmethod
    async def record_pattern(self, record: PatternRecord) -> None: ...

    @abstractmethod
    async def register_pattern(self, record: PatternRecord) -> bool: ...

    @abstractmethod
    async def find_patterns(
        self, project_id: str, pattern_type: str, names: Sequence[str], limit: int = 10
    ) -> List[PatternRecord]: ...

    @abstractmethod
    async def top_patterns(self, project_id: str, min_confidence: float, limit: int) -> List[PatternRecord]: ...

    @abstractmethod
    async def list_patterns(self, project_id: str) -> List[PatternRecord]: ...

    @abstractmethod
    async def prune_patterns(self, project_id: str, keep: int) -> int: ...

    # Memory and learning loops
    @abstractmethod
    async def upsert_memory(self, entry: MemoryEntry) -> None: ...

    @abstractmethod
    async def recent_memories(self, project_id: str, memory_type: str, limit: int) -> List[MemoryEntry]: ...

    @abstractmethod
    async def prune_memories(self, project_id: str, memory_type: str, keep: int) -> int: ...

    @abstractmethod
    async def add_learning_loop(self, entry: LearningLoopEntry) -> int: ...

    @abstractmethod
    async def recent_learning_loops(self, project_id: str, limit: int) -> List[LearningLoopEntry]: ...

    @abstractmethod
    async def learning_counts(self, project_id: str) -> Dict[str, int]: ...

    # Compressed requests
    @abstractmethod
    async def record_compressed_request(self, project_id: str, parsed: ParsedRequest) -> int: ...

    @abstractmethod
    async def get_request_patterns(self, project_id: str, request_id: int) -> List[str]: ...


def _store_op(func):
    """Initialize lazily and turn backend errors into StoreError."""
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            await self.initialize()
            return await func(self, *args, **kwargs)
        except (aiosqlite.Error, OSError) as exc:
            logger.error(f"[STORE] {func.__name__} failed: {exc}")
            raise StoreError(f"{func.__name__} failed: {exc}") from exc
    return wrapper


class SQLiteStore(AnalysisStore):
    """AnalysisStore backed by a single SQLite file."""

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path) if db_path else Path(DB_PATH)
        self._db: aiosqlite.Connection | None = None
        self._initialized = False
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self._initialized:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Autocommit; transactions are opened explicitly
        self._db = await aiosqlite.connect(str(self.db_path), isolation_level=None)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute("PRAGMA busy_timeout=5000")

        await self._create_schema()
        self._initialized = True

    async def _create_schema(self) -> None:
        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );

            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL DEFAULT '',
                url TEXT NOT NULL DEFAULT '',
                business_type TEXT NOT NULL DEFAULT 'unknown',
                ai_context TEXT NOT NULL DEFAULT '',
                learned_patterns TEXT NOT NULL DEFAULT '[]',
                success_exploits TEXT NOT NULL DEFAULT '[]',
                total_requests_analyzed INTEGER NOT NULL DEFAULT 0,
                tokens_saved INTEGER NOT NULL DEFAULT 0,
                success_count INTEGER NOT NULL DEFAULT 0,
                failure_count INTEGER NOT NULL DEFAULT 0,
                partial_count INTEGER NOT NULL DEFAULT 0,
                feedback_events INTEGER NOT NULL DEFAULT 0,
                last_analysis TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS similarity_cache (
                project_id TEXT NOT NULL,
                request_hash TEXT NOT NULL,
                cache_level INTEGER NOT NULL DEFAULT 1,
                request_summary TEXT NOT NULL DEFAULT '',
                endpoint TEXT NOT NULL DEFAULT '',
                method TEXT NOT NULL DEFAULT '',
                cached_analysis TEXT,
                embedding TEXT,
                hit_count INTEGER NOT NULL DEFAULT 0,
                tokens_saved INTEGER NOT NULL DEFAULT 0,
                expires_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (project_id, request_hash)
            );

            CREATE INDEX IF NOT EXISTS idx_cache_endpoint
                ON similarity_cache(project_id, endpoint, method);
            CREATE INDEX IF NOT EXISTS idx_cache_expires ON similarity_cache(expires_at);

            CREATE TABLE IF NOT EXISTS request_patterns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL,
                pattern_type TEXT NOT NULL,
                pattern_name TEXT NOT NULL,
                pattern_value TEXT NOT NULL DEFAULT '{}',
                attack_vectors TEXT NOT NULL DEFAULT '[]',
                confidence_score REAL NOT NULL DEFAULT 0.5,
                times_seen INTEGER NOT NULL DEFAULT 1,
                last_seen TEXT,
                UNIQUE (project_id, pattern_type, pattern_name)
            );

            CREATE TABLE IF NOT EXISTS ai_memory (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL,
                memory_type TEXT NOT NULL,
                memory_key TEXT NOT NULL,
                memory_value TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}',
                updated_at TEXT NOT NULL,
                UNIQUE (project_id, memory_type, memory_key)
            );

            CREATE TABLE IF NOT EXISTS learning_loops (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL,
                request_id INTEGER,
                suggestion TEXT NOT NULL DEFAULT '',
                user_action TEXT NOT NULL DEFAULT '',
                result TEXT NOT NULL DEFAULT '',
                feedback_type TEXT NOT NULL,
                pattern_learned TEXT,
                next_step TEXT,
                confidence REAL NOT NULL DEFAULT 0.3,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_loops_project ON learning_loops(project_id, created_at);

            CREATE TABLE IF NOT EXISTS compressed_requests (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL,
                request_hash TEXT NOT NULL,
                method TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                original_size INTEGER NOT NULL,
                compressed_size INTEGER NOT NULL,
                extracted_data TEXT NOT NULL DEFAULT '{}',
                patterns_detected TEXT NOT NULL DEFAULT '[]',
                category TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
        """)

        async with self._db.execute("SELECT version FROM schema_version") as cursor:
            row = await cursor.fetchone()
        if row is None:
            await self._db.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (self.SCHEMA_VERSION,)
            )

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            self._initialized = False

    @asynccontextmanager
    async def _transaction(self):
        """Serialize a multi-statement write against other writers."""
        async with self._write_lock:
            await self._db.execute("BEGIN IMMEDIATE")
            try:
                yield self._db
            except BaseException:
                await self._db.execute("ROLLBACK")
                raise
            else:
                await self._db.execute("COMMIT")

    async def _write(self, sql: str, params: Sequence[Any] = ()) -> aiosqlite.Cursor:
        async with self._write_lock:
            return await self._db.execute(sql, params)

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        async with self._db.execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    async def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        async with self._db.execute(sql, params) as cursor:
            return await cursor.fetchone()

    # ------------------------------------------------------------------
    # Atomic primitives
    # ------------------------------------------------------------------

    @_store_op
    async def increment(self, collection: str, key: Dict[str, Any], **deltas: float) -> Dict[str, float]:
        if collection not in INCREMENTABLE:
            raise ValueError(f"Unknown collection: {collection}")
        key_fields, allowed = INCREMENTABLE[collection]
        if set(key) != set(key_fields):
            raise ValueError(f"Key for {collection} must be {key_fields}, got {sorted(key)}")
        unknown = set(deltas) - allowed
        if unknown or not deltas:
            raise ValueError(f"Cannot increment {sorted(unknown) or 'nothing'} on {collection}")

        fields = sorted(deltas)
        set_clause = ", ".join(f"{f} = {f} + ?" for f in fields)
        where_clause = " AND ".join(f"{k} = ?" for k in key_fields)
        sql = (
            f"UPDATE {TABLES[collection]} SET {set_clause} "
            f"WHERE {where_clause} RETURNING {', '.join(fields)}"
        )
        params = [deltas[f] for f in fields] + [key[k] for k in key_fields]

        async with self._write_lock:
            async with self._db.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        if not rows:
            return {}
        return {f: rows[0][f] for f in fields}

    @_store_op
    async def similarity_search(
        self, project_id: str, vector: Sequence[float], threshold: float, limit: int
    ) -> List[Tuple[CacheEntry, float]]:
        rows = await self._fetchall(
            """
            SELECT * FROM similarity_cache
            WHERE project_id = ? AND embedding IS NOT NULL
              AND cached_analysis IS NOT NULL
              AND (expires_at IS NULL OR expires_at > ?)
            """,
            (project_id, utcnow())
        )
        matches: List[Tuple[CacheEntry, float]] = []
        for row in rows:
            entry = self._row_to_cache_entry(row)
            similarity = cosine_similarity(vector, entry.embedding or [])
            if similarity >= threshold:
                matches.append((entry, similarity))
        matches.sort(key=lambda m: m[1], reverse=True)
        return matches[:limit]

    @_store_op
    async def adjust_pattern_confidence(self, project_id: str, pattern_name: str, delta: float) -> int:
        cursor = await self._write(
            """
            UPDATE request_patterns
            SET confidence_score = MIN(1.0, MAX(0.0, confidence_score + ?))
            WHERE project_id = ? AND pattern_name = ?
            """,
            (delta, project_id, pattern_name)
        )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    @_store_op
    async def create_project(self, project: Project) -> Project:
        await self._write(
            """
            INSERT INTO projects (id, name, url, business_type, ai_context,
                                  learned_patterns, success_exploits, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                url = excluded.url,
                business_type = excluded.business_type
            """,
            (
                project.id, project.name, project.url, project.business_type,
                project.memory.ai_context_notes,
                json.dumps(project.memory.learned_patterns),
                json.dumps(project.memory.success_exploits),
                utcnow(),
            )
        )
        return await self.get_project(project.id)

    @_store_op
    async def get_project(self, project_id: str) -> Optional[Project]:
        row = await self._fetchone("SELECT * FROM projects WHERE id = ?", (project_id,))
        if row is None:
            return None
        return Project(
            id=row["id"],
            name=row["name"],
            url=row["url"],
            business_type=row["business_type"],
            memory=ProjectMemory(
                learned_patterns=json.loads(row["learned_patterns"]),
                success_exploits=json.loads(row["success_exploits"]),
                ai_context_notes=row["ai_context"],
            ),
            total_requests_analyzed=row["total_requests_analyzed"],
            tokens_saved=row["tokens_saved"],
            success_count=row["success_count"],
            failure_count=row["failure_count"],
            partial_count=row["partial_count"],
            feedback_events=row["feedback_events"],
            last_analysis=row["last_analysis"],
        )

    @_store_op
    async def touch_project(self, project_id: str) -> None:
        """Record the time of the last analysis."""
        await self._write(
            "UPDATE projects SET last_analysis = ? WHERE id = ?",
            (utcnow(), project_id)
        )

    @_store_op
    async def append_project_memory(
        self,
        project_id: str,
        note: Optional[str] = None,
        pattern: Optional[str] = None,
        exploit: Optional[Dict[str, Any]] = None,
        notes_limit: int = 5000,
        exploits_limit: int = 50,
    ) -> ProjectMemory:
        async with self._transaction() as db:
            async with db.execute(
                "SELECT ai_context, learned_patterns, success_exploits FROM projects WHERE id = ?",
                (project_id,)
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                raise NotFoundError(f"Project not found: {project_id}")

            notes = row["ai_context"] or ""
            patterns = json.loads(row["learned_patterns"])
            exploits = json.loads(row["success_exploits"])

            if note:
                notes = f"{notes}\n{note}".strip()
                if len(notes) > notes_limit:
                    # Oldest text goes first
                    notes = notes[-notes_limit:]
            if pattern and pattern not in patterns:
                patterns.append(pattern)
            if exploit:
                exploits.append(exploit)
                exploits = exploits[-exploits_limit:]

            await db.execute(
                """
                UPDATE projects SET ai_context = ?, learned_patterns = ?, success_exploits = ?
                WHERE id = ?
                """,
                (notes, json.dumps(patterns), json.dumps(exploits), project_id)
            )

        return ProjectMemory(
            learned_patterns=patterns,
            success_exploits=exploits,
            ai_context_notes=notes,
        )

    # ------------------------------------------------------------------
    # Cache entries
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_cache_entry(row: aiosqlite.Row) -> CacheEntry:
        return CacheEntry(
            project_id=row["project_id"],
            request_hash=row["request_hash"],
            cache_level=row["cache_level"],
            request_summary=row["request_summary"],
            endpoint=row["endpoint"],
            method=row["method"],
            cached_analysis=row["cached_analysis"],
            embedding=json.loads(row["embedding"]) if row["embedding"] else None,
            hit_count=row["hit_count"],
            tokens_saved=row["tokens_saved"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @_store_op
    async def get_cache_entry(self, project_id: str, request_hash: str, level: int = 1) -> Optional[CacheEntry]:
        row = await self._fetchone(
            """
            SELECT * FROM similarity_cache
            WHERE project_id = ? AND request_hash = ? AND cache_level = ?
              AND (expires_at IS NULL OR expires_at > ?)
            """,
            (project_id, request_hash, level, utcnow())
        )
        return self._row_to_cache_entry(row) if row else None

    @_store_op
    async def find_embedding(self, project_id: str, endpoint: str, method: str) -> Optional[List[float]]:
        row = await self._fetchone(
            """
            SELECT embedding FROM similarity_cache
            WHERE project_id = ? AND endpoint = ? AND method = ? AND embedding IS NOT NULL
            ORDER BY updated_at DESC LIMIT 1
            """,
            (project_id, endpoint, method)
        )
        if row is None:
            return None
        return json.loads(row["embedding"])

    @_store_op
    async def upsert_cache_entry(self, entry: CacheEntry) -> None:
        now = utcnow()
        # Counters are only ever changed through increment()
        await self._write(
            """
            INSERT INTO similarity_cache (
                project_id, request_hash, cache_level, request_summary, endpoint, method,
                cached_analysis, embedding, hit_count, tokens_saved, expires_at,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 0, ?, ?, ?)
            ON CONFLICT(project_id, request_hash) DO UPDATE SET
                cached_analysis = excluded.cached_analysis,
                embedding = COALESCE(excluded.embedding, similarity_cache.embedding),
                request_summary = excluded.request_summary,
                expires_at = excluded.expires_at,
                updated_at = excluded.updated_at
            """,
            (
                entry.project_id, entry.request_hash, entry.cache_level,
                entry.request_summary, entry.endpoint, entry.method,
                entry.cached_analysis,
                json.dumps(entry.embedding) if entry.embedding is not None else None,
                to_utc_iso(entry.expires_at) if entry.expires_at else None, now, now,
            )
        )

    @_store_op
    async def list_cache_entries(self, project_id: str) -> List[CacheEntry]:
        rows = await self._fetchall(
            "SELECT * FROM similarity_cache WHERE project_id = ?",
            (project_id,)
        )
        return [self._row_to_cache_entry(row) for row in rows]

    @_store_op
    async def delete_expired_cache(self, now: Optional[str] = None) -> int:
        cursor = await self._write(
            "DELETE FROM similarity_cache WHERE expires_at IS NOT NULL AND expires_at < ?",
            (to_utc_iso(now) if now else utcnow(),)
        )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_pattern(row: aiosqlite.Row) -> PatternRecord:
        return PatternRecord(
            project_id=row["project_id"],
            pattern_type=row["pattern_type"],
            pattern_name=row["pattern_name"],
            confidence_score=row["confidence_score"],
            times_seen=row["times_seen"],
            last_seen=row["last_seen"],
            pattern_value=json.loads(row["pattern_value"]),
            attack_vectors=json.loads(row["attack_vectors"]),
        )

    @_store_op
    async def record_pattern(self, record: PatternRecord) -> None:
        """Create the pattern or bump ``times_seen`` in one statement."""
        await self._write(
            """
            INSERT INTO request_patterns (
                project_id, pattern_type, pattern_name, pattern_value,
                attack_vectors, confidence_score, times_seen, last_seen
            )
            VALUES (?, ?, ?, ?, ?, ?, 1, ?)
            ON CONFLICT(project_id, pattern_type, pattern_name) DO UPDATE SET
                times_seen = request_patterns.times_seen + 1,
                last_seen = excluded.last_seen,
                pattern_value = excluded.pattern_value,
                attack_vectors = excluded.attack_vectors
            """,
            (
                record.project_id, record.pattern_type, record.pattern_name,
                json.dumps(record.pattern_value, default=str),
                json.dumps(record.attack_vectors),
                record.confidence_score, record.last_seen or utcnow(),
            )
        )

    @_store_op
    async def register_pattern(self, record: PatternRecord) -> bool:
        """Insert a pattern unless it already exists. Returns True if created."""
        cursor = await self._write(
            """
            INSERT INTO request_patterns (
                project_id, pattern_type, pattern_name, pattern_value,
                attack_vectors, confidence_score, times_seen, last_seen
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(project_id, pattern_type, pattern_name) DO NOTHING
            """,
            (
                record.project_id, record.pattern_type, record.pattern_name,
                json.dumps(record.pattern_value, default=str),
                json.dumps(record.attack_vectors),
                record.confidence_score, record.times_seen, record.last_seen or utcnow(),
            )
        )
        return cursor.rowcount > 0

    @_store_op
    async def find_patterns(
        self, project_id: str, pattern_type: str, names: Sequence[str], limit: int = 10
    ) -> List[PatternRecord]:
        if not names:
            return []
        placeholders = ", ".join("?" for _ in names)
        rows = await self._fetchall(
            f"""
            SELECT * FROM request_patterns
            WHERE project_id = ? AND pattern_type = ? AND pattern_name IN ({placeholders})
            ORDER BY times_seen DESC, id ASC
            LIMIT ?
            """,
            (project_id, pattern_type, *names, limit)
        )
        return [self._row_to_pattern(row) for row in rows]

    @_store_op
    async def top_patterns(self, project_id: str, min_confidence: float, limit: int) -> List[PatternRecord]:
        rows = await self._fetchall(
            """
            SELECT * FROM request_patterns
            WHERE project_id = ? AND confidence_score > ?
            ORDER BY times_seen DESC, id ASC
            LIMIT ?
            """,
            (project_id, min_confidence, limit)
        )
        return [self._row_to_pattern(row) for row in rows]

    @_store_op
    async def list_patterns(self, project_id: str) -> List[PatternRecord]:
        rows = await self._fetchall(
            "SELECT * FROM request_patterns WHERE project_id = ? ORDER BY times_seen DESC, id ASC",
            (project_id,)
        )
        return [self._row_to_pattern(row) for row in rows]

    @_store_op
    async def prune_patterns(self, project_id: str, keep: int) -> int:
        cursor = await self._write(
            """
            DELETE FROM request_patterns
            WHERE project_id = ? AND id NOT IN (
                SELECT id FROM request_patterns
                WHERE project_id = ?
                ORDER BY times_seen DESC, id ASC
                LIMIT ?
            )
            """,
            (project_id, project_id, keep)
        )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Memory and learning loops
    # ------------------------------------------------------------------

    @_store_op
    async def upsert_memory(self, entry: MemoryEntry) -> None:
        await self._write(
            """
            INSERT INTO ai_memory (project_id, memory_type, memory_key, memory_value, metadata, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(project_id, memory_type, memory_key) DO UPDATE SET
                memory_value = excluded.memory_value,
                metadata = excluded.metadata,
                updated_at = excluded.updated_at
            """,
            (
                entry.project_id, entry.memory_type, entry.memory_key, entry.memory_value,
                json.dumps(entry.metadata, default=str), entry.updated_at or utcnow(),
            )
        )

    @_store_op
    async def recent_memories(self, project_id: str, memory_type: str, limit: int) -> List[MemoryEntry]:
        rows = await self._fetchall(
            """
            SELECT * FROM ai_memory
            WHERE project_id = ? AND memory_type = ?
            ORDER BY updated_at DESC, id DESC
            LIMIT ?
            """,
            (project_id, memory_type, limit)
        )
        return [
            MemoryEntry(
                project_id=row["project_id"],
                memory_type=row["memory_type"],
                memory_key=row["memory_key"],
                memory_value=row["memory_value"],
                metadata=json.loads(row["metadata"]),
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    @_store_op
    async def prune_memories(self, project_id: str, memory_type: str, keep: int) -> int:
        cursor = await self._write(
            """
            DELETE FROM ai_memory
            WHERE project_id = ? AND memory_type = ? AND id NOT IN (
                SELECT id FROM ai_memory
                WHERE project_id = ? AND memory_type = ?
                ORDER BY updated_at DESC, id DESC
                LIMIT ?
            )
            """,
            (project_id, memory_type, project_id, memory_type, keep)
        )
        return cursor.rowcount

    @_store_op
    async def add_learning_loop(self, entry: LearningLoopEntry) -> int:
        cursor = await self._write(
            """
            INSERT INTO learning_loops (
                project_id, request_id, suggestion, user_action, result,
                feedback_type, pattern_learned, next_step, confidence, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.project_id, entry.request_id, entry.suggestion, entry.user_action,
                entry.result, entry.feedback_type.value, entry.pattern_learned,
                entry.next_step, entry.confidence, entry.created_at or utcnow(),
            )
        )
        return cursor.lastrowid

    @_store_op
    async def recent_learning_loops(self, project_id: str, limit: int) -> List[LearningLoopEntry]:
        rows = await self._fetchall(
            """
            SELECT * FROM learning_loops
            WHERE project_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (project_id, limit)
        )
        return [
            LearningLoopEntry(
                id=row["id"],
                project_id=row["project_id"],
                request_id=row["request_id"],
                suggestion=row["suggestion"],
                user_action=row["user_action"],
                result=row["result"],
                feedback_type=row["feedback_type"],
                pattern_learned=row["pattern_learned"],
                next_step=row["next_step"],
                confidence=row["confidence"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    @_store_op
    async def learning_counts(self, project_id: str) -> Dict[str, int]:
        rows = await self._fetchall(
            "SELECT feedback_type, COUNT(*) AS n FROM learning_loops WHERE project_id = ? GROUP BY feedback_type",
            (project_id,)
        )
        return {row["feedback_type"]: row["n"] for row in rows}

    # ------------------------------------------------------------------
    # Compressed requests
    # ------------------------------------------------------------------

    @_store_op
    async def record_compressed_request(self, project_id: str, parsed: ParsedRequest) -> int:
        cursor = await self._write(
            """
            INSERT INTO compressed_requests (
                project_id, request_hash, method, endpoint, original_size,
                compressed_size, extracted_data, patterns_detected, category, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                project_id, parsed.hash, parsed.method, parsed.endpoint,
                parsed.original_size, parsed.compressed_size,
                json.dumps(parsed.body, default=str), json.dumps(parsed.patterns),
                parsed.category.value, utcnow(),
            )
        )
        return cursor.lastrowid

    @_store_op
    async def get_request_patterns(self, project_id: str, request_id: int) -> List[str]:
        row = await self._fetchone(
            "SELECT patterns_detected FROM compressed_requests WHERE id = ? AND project_id = ?",
            (request_id, project_id)
        )
        if row is None:
            return []
        return json.loads(row["patterns_detected"])
