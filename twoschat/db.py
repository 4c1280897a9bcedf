import asyncio
import json
import logging
import os
import sqlite3
import threading

from .constants import (
    SCHEMA_VERSION,
    STATUS_ERROR,
    STATUS_IDLE,
    STATUS_SUCCESS,
    STATUS_SYNCING,
)
from .errors import CacheStoreError, TwosChatError
from .paths import get_db_path
from .schema import CACHE_SCHEMA_SQL, CACHE_TABLES, SCHEMA_SQL
from .state import StateCell
from .twos import fetch_twos_snapshot
from .utils import json_dumps, normalize_tags, normalize_text, record_id, scalar

logger = logging.getLogger("TwosChat")

_READ_BATCH = 500


class TwosCacheStore:
    """Local SQLite mirror of the Twos export (entries + posts).

    The cache is read-only from the app's point of view: every successful
    sync replaces both tables inside one transaction.
    """

    def __init__(self, db_path=None, settings=None, fetch=None):
        self.db_path = db_path or get_db_path()
        self.settings = settings
        self._fetch = fetch or fetch_twos_snapshot
        self.sync_status = StateCell(STATUS_IDLE, name="sync_status")
        self.tasks = StateCell([], name="tasks")
        self._sync_lock = asyncio.Lock()
        self._db_lock = threading.RLock()
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        self._conn = self._connect()
        self._init_db()

    def _connect(self):
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        return conn

    def close(self):
        with self._db_lock:
            self._conn.close()

    def _init_db(self):
        conn = self._conn
        try:
            with self._db_lock:
                conn.executescript(SCHEMA_SQL)
                stored = self._stored_schema_version(conn)
                if stored is not None and stored != SCHEMA_VERSION:
                    logger.info(
                        "Cache schema v%s -> v%s, rebuilding cache tables", stored, SCHEMA_VERSION
                    )
                    for table in CACHE_TABLES:
                        conn.execute(f"DROP TABLE IF EXISTS {table}")
                conn.executescript(CACHE_SCHEMA_SQL)
                conn.execute(
                    "INSERT OR REPLACE INTO meta(key,value) VALUES('schema_version', ?)",
                    (str(SCHEMA_VERSION),),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise CacheStoreError(f"Database not initialized: {e}") from e

    @staticmethod
    def _stored_schema_version(conn):
        row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
        if not row:
            return None
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return None

    # ── sync ──

    async def replace_all(self, user_id=None, token=None):
        """Fetch the Twos snapshot and replace the whole cache with it.

        Never raises for sync failures; returns ``{"success": False, "error": ...}``
        and sets ``sync_status`` to ``error`` instead.
        """
        async with self._sync_lock:
            if user_id is None and token is None and self.settings is not None:
                user_id, token = self.settings.credentials()
            if not user_id or not token:
                self.sync_status.set(STATUS_ERROR)
                return {"success": False, "error": "Twos User ID and Token are required"}

            logger.info("Starting sync with userId: %s", user_id)
            self.sync_status.set(STATUS_SYNCING)
            try:
                data = await self._fetch(user_id, token)
                counts = self._replace_tables(data.get("entries") or [], data.get("posts") or [])
            except (TwosChatError, sqlite3.Error) as e:
                logger.error("Sync error: %s", e)
                self.sync_status.set(STATUS_ERROR)
                return {"success": False, "error": str(e)}

            self.get_all_tasks()
            self.sync_status.set(STATUS_SUCCESS)
            logger.info("Sync completed: entries=%d posts=%d", counts["entries"], counts["posts"])
            return {"success": True, "counts": counts}

    def _replace_tables(self, entries, posts):
        entry_rows = [self._entry_row(e) for e in entries]
        post_rows = [self._post_row(p) for p in posts]

        with self._db_lock:
            conn = self._conn
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("DELETE FROM entries")
                conn.execute("DELETE FROM posts")
                logger.debug("Adding entries: %d", len(entry_rows))
                conn.executemany(
                    "INSERT INTO entries(id,title,lastModified,raw_json) VALUES(?,?,?,?)",
                    entry_rows,
                )
                logger.debug("Adding posts: %d", len(post_rows))
                conn.executemany(
                    """
                    INSERT INTO posts(id,entry_id,text,type,lastModified,url,tags_json,raw_json)
                    VALUES(?,?,?,?,?,?,?,?)
                    """,
                    post_rows,
                )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise CacheStoreError(f"Transaction failed: {e}") from e

        return {"entries": len(entry_rows), "posts": len(post_rows)}

    @staticmethod
    def _entry_row(entry):
        rid = record_id(entry)
        if rid is None:
            raise CacheStoreError("Failed to add entry: record has no id")
        return (
            rid,
            normalize_text(entry.get("title")),
            scalar(entry.get("lastModified")),
            json_dumps(entry),
        )

    @staticmethod
    def _post_row(post):
        rid = record_id(post)
        if rid is None:
            raise CacheStoreError("Failed to add post: record has no id")
        entry_id = post.get("entry_id")
        return (
            rid,
            None if entry_id is None else str(entry_id),
            normalize_text(post.get("text")),
            scalar(post.get("type")),
            scalar(post.get("lastModified")),
            scalar(post.get("url")),
            json_dumps(normalize_tags(post.get("tags"))),
            json_dumps(post),
        )

    # ── reads ──

    def _iter_table(self, table):
        """Yield records of one cache table in insertion order."""
        cursor = self._conn.execute(f"SELECT id, raw_json FROM {table} ORDER BY rowid")
        while True:
            rows = cursor.fetchmany(_READ_BATCH)
            if not rows:
                break
            for row in rows:
                yield self._row_to_record(row)

    @staticmethod
    def _row_to_record(row):
        record = json.loads(row["raw_json"])
        record["id"] = row["id"]
        return record

    @staticmethod
    def _group_posts(posts):
        grouped = {}
        for post in posts:
            entry_id = post.get("entry_id")
            if entry_id is None:
                continue
            grouped.setdefault(str(entry_id), []).append(post)
        return grouped

    def _read_all(self):
        with self._db_lock:
            entries = list(self._iter_table("entries"))
            posts = list(self._iter_table("posts"))
        logger.debug("Collected entries=%d posts=%d", len(entries), len(posts))
        return entries, posts

    def get_all_tasks(self):
        entries, posts = self._read_all()
        by_entry = self._group_posts(posts)
        tasks = [{**entry, "posts": by_entry.get(entry["id"], [])} for entry in entries]
        self.tasks.set(tasks)
        return tasks

    def get_task_by_id(self, task_id):
        with self._db_lock:
            row = self._conn.execute(
                "SELECT id, raw_json FROM entries WHERE id = ?", (str(task_id),)
            ).fetchone()
            if row is None:
                logger.debug("No entry found for id: %s", task_id)
                return None
            post_rows = self._conn.execute(
                "SELECT id, raw_json FROM posts WHERE entry_id = ? ORDER BY rowid",
                (row["id"],),
            ).fetchall()
        return {**self._row_to_record(row), "posts": [self._row_to_record(r) for r in post_rows]}

    def search_tasks(self, query):
        query = normalize_text(query)
        if not query.strip():
            return self.get_all_tasks()

        q = query.lower()
        entries, posts = self._read_all()
        by_entry = self._group_posts(posts)
        results = []
        for entry in entries:
            title_match = q in normalize_text(entry.get("title")).lower()
            # A title match keeps every post; otherwise only posts whose text matches.
            matched = [
                p
                for p in by_entry.get(entry["id"], [])
                if title_match or q in normalize_text(p.get("text")).lower()
            ]
            if matched:
                results.append({**entry, "posts": matched})

        logger.debug("Search results: %d", len(results))
        self.tasks.set(results)
        return results

    def counts(self):
        with self._db_lock:
            entries = self._conn.execute("SELECT COUNT(*) AS n FROM entries").fetchone()["n"]
            posts = self._conn.execute("SELECT COUNT(*) AS n FROM posts").fetchone()["n"]
        return {"entries": entries, "posts": posts}
