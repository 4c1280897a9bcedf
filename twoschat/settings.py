import json
import logging
import os
import sqlite3

from .constants import (
    KEY_FILE_IDS,
    KEY_INDEX_CONFIG,
    KEY_OPENAI_ID,
    KEY_TWOS_TOKEN,
    KEY_TWOS_USER_ID,
)
from .paths import get_db_path
from .schema import SCHEMA_SQL

logger = logging.getLogger("TwosChat")

DEFAULT_INSTRUCTIONS = (
    "You are a helpful assistant that provides information based on the user's TwosApp data.\n"
    "Use the vector store to search through their notes and provide relevant information.\n"
    "When answering questions, try to:\n"
    "    1. Search for relevant content in the vector store\n"
    "    2. Provide specific examples from the user's notes when applicable\n"
    "    3. Include relevant dates and context from the stored data\n"
    "    4. Quote specific parts of notes when they directly answer the user's question\n"
    "    5. ALWAYS RETURN MARKDOWN\n"
    "    6. don't add file references in the response\n"
)

DEFAULT_INDEX_CONFIG = {
    "base_url": "https://api.openai.com/v1",
    "model": "gpt-4o",
    "timeout": 60,
    "vector_store_name": "Twoschat store",
    "assistant_name": "Twosapp Chat",
    "instructions": DEFAULT_INSTRUCTIONS,
}

_DEFAULT_KEYS = (KEY_OPENAI_ID, KEY_TWOS_USER_ID, KEY_TWOS_TOKEN)


class SettingsStore:
    """Key-value persistence for credentials and remote resource IDs.

    Values are read from SQLite on every call so rotated credentials apply
    to the next operation without rebuilding the services.
    """

    def __init__(self, db_path=None):
        self.db_path = db_path or get_db_path()
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        conn = self._connect()
        try:
            conn.executescript(SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    def _connect(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        return conn

    def get(self, key, default=""):
        conn = self._connect()
        try:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        return row["value"] if row else default

    def set(self, key, value):
        conn = self._connect()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO settings(key, value) VALUES(?, ?)",
                (key, "" if value is None else str(value)),
            )
            conn.commit()
        finally:
            conn.close()

    def remove(self, key):
        conn = self._connect()
        try:
            conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def ensure_defaults(self):
        conn = self._connect()
        try:
            for key in _DEFAULT_KEYS:
                conn.execute("INSERT OR IGNORE INTO settings(key, value) VALUES(?, '')", (key,))
            conn.commit()
        finally:
            conn.close()

    def all(self) -> dict:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT key, value FROM settings ORDER BY key").fetchall()
        finally:
            conn.close()
        return {row["key"]: row["value"] for row in rows if row["key"] != KEY_INDEX_CONFIG}

    def credentials(self) -> tuple[str, str]:
        return self.get(KEY_TWOS_USER_ID).strip(), self.get(KEY_TWOS_TOKEN).strip()

    # ── indexing service config ──

    def get_index_config(self) -> dict:
        raw = self.get(KEY_INDEX_CONFIG, "")
        if raw:
            try:
                stored = json.loads(raw)
                if isinstance(stored, dict):
                    return {**DEFAULT_INDEX_CONFIG, **stored}
            except (json.JSONDecodeError, TypeError):
                logger.warning("Ignoring unreadable index config")
        return dict(DEFAULT_INDEX_CONFIG)

    def set_index_config(self, config: dict):
        merged = {**self.get_index_config(), **(config or {})}
        self.set(KEY_INDEX_CONFIG, json.dumps(merged, ensure_ascii=False))
        return merged

    # ── uploaded file tracking ──

    def get_file_ids(self) -> list[str]:
        raw = self.get(KEY_FILE_IDS, "")
        if not raw:
            return []
        try:
            stored = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Ignoring unreadable file id list")
            return []
        if not isinstance(stored, list):
            return []
        return [str(file_id) for file_id in stored if file_id]

    def set_file_ids(self, file_ids):
        if file_ids:
            self.set(KEY_FILE_IDS, json.dumps(list(file_ids)))
        else:
            self.remove(KEY_FILE_IDS)
