SCHEMA_SQL = r"""
PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS meta (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);
"""

# Cache tables are dropped and rebuilt when the stored schema version is older.
CACHE_SCHEMA_SQL = r"""
CREATE TABLE IF NOT EXISTS entries (
  id TEXT PRIMARY KEY,
  title TEXT NOT NULL DEFAULT '',
  lastModified,
  raw_json TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS posts (
  id TEXT PRIMARY KEY,
  entry_id TEXT,
  text TEXT NOT NULL DEFAULT '',
  type TEXT,
  lastModified,
  url TEXT,
  tags_json TEXT NOT NULL DEFAULT '[]',
  raw_json TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_entries_title ON entries(title);
CREATE INDEX IF NOT EXISTS idx_entries_last_modified ON entries(lastModified);
CREATE INDEX IF NOT EXISTS idx_posts_entry_id ON posts(entry_id);
CREATE INDEX IF NOT EXISTS idx_posts_text ON posts(text);
CREATE INDEX IF NOT EXISTS idx_posts_last_modified ON posts(lastModified);
CREATE INDEX IF NOT EXISTS idx_posts_type ON posts(type);
"""

CACHE_TABLES = ("entries", "posts")
