#!/usr/bin/env python3
"""
Data model and storage operations for InfoDash.

Holds the value types passed between the acquisition modules (feed items,
sources, parse/fetch/discovery/validation results) and the SQLite-backed
DatabaseQueue that serialises every storage operation through one worker
task, so concurrent per-source inserts never interleave a duplicate check
with another source's insert.
"""

from os import path, access, R_OK
from time import time
import json
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from dataclasses import dataclass, field, asdict
from enum import Enum
from uuid import uuid4
from typing import Dict, List, Optional, Any, Tuple

from config import config, get_logger
from errors import StorageError
from telemetry import trace_span

logger = get_logger("models")


class SourceType(str, Enum):
    RSS = "rss"
    ZHIHU = "zhihu"
    WEIBO = "weibo"
    XIAOHONGSHU = "xiaohongshu"
    FORUM = "forum"

    @classmethod
    def parse(cls, value: str) -> "SourceType":
        """Accept the canonical names plus the older "-hot" aliases."""
        normalized = (value or "").strip().lower()
        aliases = {"zhihu-hot": cls.ZHIHU, "weibo-hot": cls.WEIBO}
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


HOT_TOPIC_TYPES = (SourceType.ZHIHU, SourceType.WEIBO, SourceType.XIAOHONGSHU)


@dataclass
class FeedItem:
    """A normalized entry ready for storage."""
    title: str
    link: Optional[str]
    publish_time: int
    summary: str = ""
    tags: List[str] = field(default_factory=list)
    source_name: str = ""
    source_type: str = SourceType.RSS.value
    favicon_url: Optional[str] = None
    source_id: Optional[str] = None

    def identity(self) -> Tuple:
        if self.link:
            return ("link", self.link)
        return ("title", self.title, self.publish_time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Source:
    id: str
    name: str
    type: str
    url: Optional[str] = None
    enabled: bool = True
    favicon_url: Optional[str] = None
    icon: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)
    created_at: int = 0

    @classmethod
    def from_row(cls, row) -> "Source":
        raw_config = row["config"]
        try:
            parsed = json.loads(raw_config) if raw_config else {}
        except ValueError:
            logger.warning(f"Ignoring malformed config JSON for source {row['id']}")
            parsed = {}
        return cls(
            id=row["id"],
            name=row["name"],
            type=row["type"],
            url=row["url"],
            enabled=bool(row["enabled"]),
            favicon_url=row["favicon_url"],
            icon=row["icon"],
            config=parsed if isinstance(parsed, dict) else {},
            created_at=row["created_at"] or 0,
        )


@dataclass
class FeedMetadata:
    title: str = ""
    description: str = ""
    link: Optional[str] = None


@dataclass
class ParseResult:
    """Outcome of decoding one document; ``ok`` is False when nothing feed-like was found."""
    items: List[FeedItem] = field(default_factory=list)
    metadata: Optional[FeedMetadata] = None
    ok: bool = False
    error: Optional[str] = None


@dataclass
class FetchAttempt:
    """One strategy's outcome inside a transport cascade."""
    strategy: str
    target: str
    ok: bool = False
    error: Optional[str] = None
    blocked: bool = False
    content: Optional[str] = field(default=None, repr=False)


@dataclass
class DiscoveryResult:
    found: bool
    url: Optional[str] = None
    metadata: Optional[FeedMetadata] = None
    warning: Optional[str] = None
    attempted_paths: List[str] = field(default_factory=list)
    item_count: int = 0
    error: Optional[str] = None
    blocked: bool = False


@dataclass
class ValidationResult:
    valid: bool
    url: Optional[str] = None
    metadata: Optional[FeedMetadata] = None
    warning: Optional[str] = None
    attempted_paths: List[str] = field(default_factory=list)
    error: Optional[str] = None
    is_url_changed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape used by the HTTP adapter."""
        out: Dict[str, Any] = {"valid": self.valid}
        if self.url:
            out["url"] = self.url
            out["isUrlChanged"] = self.is_url_changed
        if self.metadata:
            out["metadata"] = asdict(self.metadata)
        if self.warning:
            out["warning"] = self.warning
        if self.attempted_paths:
            out["attemptedPaths"] = list(self.attempted_paths)
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class FetchSummary:
    success: int = 0
    failed: int = 0
    total_items: int = 0
    new_items: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "sourcesSucceeded": self.success,
            "sourcesFailed": self.failed,
            "fetchedCount": self.total_items,
            "newItems": self.new_items,
        }


def initialize_database(conn) -> None:
    """Create tables from schema.sql when the database is new."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='sources'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists with proper schema")
    except Error as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    schema_path = config.SCHEMA_FILE_PATH
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    with open(schema_path, 'r', encoding='utf-8') as f:
        return f.read()


class DatabaseQueue:
    """A queue for database operations so one connection serves every task.

    Callers run ``await db.execute("operation_name", **params)``; the worker
    dispatches to the synchronous method of the same name and hands back its
    return value, or raises StorageError with the worker-side message.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready: Optional[Event] = None

    async def start(self) -> None:
        """Start the database worker and wait until the schema is in place."""
        if self.running:
            return

        self.running = True
        self._ready = Event()
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self.conn is None:
            self.running = False
            # Surfaces the connection/schema error raised inside the worker
            await self.worker_task
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting on an operation
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        try:
            conn = connect(self.db_path)
            conn.row_factory = Row
            conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(conn)
            self.conn = conn
        finally:
            self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith("_") or not callable(method):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation."""
        if not self.running:
            raise StorageError("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StorageError(f"Database stopped before {operation_name} completed")
            if "error" in result:
                raise StorageError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Source operations
    def list_sources(self) -> List[Source]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM sources ORDER BY created_at, rowid")
            return [Source.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def list_enabled_sources(self) -> List[Source]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM sources WHERE enabled = 1 ORDER BY created_at, rowid")
            return [Source.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def list_sources_by_type(self, source_type: str, enabled_only: bool = True) -> List[Source]:
        cursor = self.conn.cursor()
        try:
            query = "SELECT * FROM sources WHERE type = ?"
            if enabled_only:
                query += " AND enabled = 1"
            cursor.execute(query + " ORDER BY created_at, rowid", (source_type,))
            return [Source.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def get_source(self, source_id: str) -> Optional[Source]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM sources WHERE id = ?", (source_id,))
            row = cursor.fetchone()
            return Source.from_row(row) if row else None
        finally:
            cursor.close()

    def create_source(self, name: str, type: str, url: Optional[str] = None, enabled: bool = True,
                      icon: Optional[str] = None, favicon_url: Optional[str] = None,
                      config: Optional[Dict[str, Any]] = None, source_id: Optional[str] = None) -> Source:
        """Insert a new source and return it."""
        source_type = SourceType.parse(type).value
        if source_type == SourceType.RSS.value and not url:
            raise ValueError("rss sources require a url")
        source = Source(
            id=source_id or str(uuid4()),
            name=name,
            type=source_type,
            url=url,
            enabled=enabled,
            favicon_url=favicon_url,
            icon=icon,
            config=dict(config or {}),
            created_at=int(time()),
        )
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT INTO sources (id, name, type, url, enabled, favicon_url, icon, config, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (source.id, source.name, source.type, source.url, int(source.enabled), source.favicon_url,
                 source.icon, json.dumps(source.config, ensure_ascii=False), source.created_at),
            )
            self.conn.commit()
        finally:
            cursor.close()
        logger.info(f"Created {source.type} source '{source.name}' ({source.id})")
        return source

    def set_source_enabled(self, source_id: str, enabled: bool) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute("UPDATE sources SET enabled = ? WHERE id = ?", (int(enabled), source_id))
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def delete_source(self, source_id: str) -> int:
        """Delete a source and the items it produced. Returns the number of items removed."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("DELETE FROM items WHERE source_id = ?", (source_id,))
            items_deleted = cursor.rowcount
            cursor.execute("DELETE FROM sources WHERE id = ?", (source_id,))
            self.conn.commit()
            logger.info(f"Deleted source {source_id} and {items_deleted} items")
            return items_deleted
        except Error:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def set_source_favicon(self, source_id: str, favicon_url: str) -> Optional[str]:
        """Store ``favicon_url`` unless the source already has one; return the cached value."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE sources SET favicon_url = ? WHERE id = ? AND (favicon_url IS NULL OR favicon_url = '')",
                (favicon_url, source_id),
            )
            self.conn.commit()
            cursor.execute("SELECT favicon_url FROM sources WHERE id = ?", (source_id,))
            row = cursor.fetchone()
            return row["favicon_url"] if row else None
        finally:
            cursor.close()

    def seed_default_sources(self, sources: Optional[List[Dict[str, Any]]] = None) -> int:
        """Insert the configured default sources when the table is empty."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT COUNT(*) FROM sources")
            if cursor.fetchone()[0] > 0:
                return 0
        finally:
            cursor.close()
        created = 0
        for entry in sources if sources is not None else config.DEFAULT_SOURCES:
            self.create_source(
                name=entry["name"],
                type=entry["type"],
                url=entry.get("url"),
                enabled=entry.get("enabled", True),
                icon=entry.get("icon"),
                config=entry.get("config"),
            )
            created += 1
        logger.info(f"Seeded {created} default sources")
        return created

    # Item operations
    def _item_exists(self, cursor, item: FeedItem) -> bool:
        if item.link:
            cursor.execute("SELECT 1 FROM items WHERE link = ? LIMIT 1", (item.link,))
            if cursor.fetchone() is not None:
                return True
        cursor.execute(
            "SELECT 1 FROM items WHERE title = ? AND publish_time = ? LIMIT 1",
            (item.title, item.publish_time),
        )
        return cursor.fetchone() is not None

    def save_items(self, items: List[FeedItem]) -> int:
        """Insert items that are not already stored. Returns how many were inserted.

        An item is already stored when its link exists, or when an item with the
        same title and publish time exists.
        """
        if not items:
            return 0
        now = int(time())
        inserted = 0
        cursor = self.conn.cursor()
        try:
            for item in items:
                if not item.title:
                    continue
                if self._item_exists(cursor, item):
                    continue
                cursor.execute(
                    "INSERT OR IGNORE INTO items (source_id, source_name, source_type, title, link, summary, "
                    "tags, favicon_url, publish_time, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (item.source_id, item.source_name, item.source_type, item.title, item.link or None,
                     item.summary, json.dumps(item.tags, ensure_ascii=False), item.favicon_url,
                     int(item.publish_time), now),
                )
                inserted += cursor.rowcount
            self.conn.commit()
            return inserted
        except Error:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def count_items(self, source_name: Optional[str] = None) -> int:
        cursor = self.conn.cursor()
        try:
            if source_name is None:
                cursor.execute("SELECT COUNT(*) FROM items")
            else:
                cursor.execute("SELECT COUNT(*) FROM items WHERE source_name = ?", (source_name,))
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        finally:
            cursor.close()

    def list_items(self, limit: int = 50, source_type: Optional[str] = None) -> List[FeedItem]:
        """Newest items first."""
        cursor = self.conn.cursor()
        try:
            if source_type:
                cursor.execute(
                    "SELECT * FROM items WHERE source_type = ? ORDER BY publish_time DESC, id DESC LIMIT ?",
                    (source_type, limit),
                )
            else:
                cursor.execute("SELECT * FROM items ORDER BY publish_time DESC, id DESC LIMIT ?", (limit,))
            items = []
            for row in cursor.fetchall():
                try:
                    tags = json.loads(row["tags"]) if row["tags"] else []
                except ValueError:
                    tags = []
                items.append(FeedItem(
                    title=row["title"],
                    link=row["link"],
                    publish_time=row["publish_time"],
                    summary=row["summary"] or "",
                    tags=tags,
                    source_name=row["source_name"],
                    source_type=row["source_type"],
                    favicon_url=row["favicon_url"],
                    source_id=row["source_id"],
                ))
            return items
        finally:
            cursor.close()

    def expire_old_items(self, expiration_days: int) -> int:
        """Delete items published more than ``expiration_days`` ago."""
        if expiration_days <= 0:
            logger.warning("Invalid expiration_days value, skipping expiration")
            return 0
        cutoff_timestamp = int(time()) - (expiration_days * 24 * 60 * 60)
        cursor = self.conn.cursor()
        try:
            cursor.execute("DELETE FROM items WHERE publish_time < ?", (cutoff_timestamp,))
            deleted = cursor.rowcount
            self.conn.commit()
            if deleted:
                logger.info(f"Database maintenance: deleted {deleted} items older than {expiration_days} days")
            return deleted
        except Error:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def delete_items_by_source(self, source_name: str) -> int:
        cursor = self.conn.cursor()
        try:
            cursor.execute("DELETE FROM items WHERE source_name = ?", (source_name,))
            self.conn.commit()
            return cursor.rowcount
        finally:
            cursor.close()
