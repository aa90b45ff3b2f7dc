"""Local SQLite store with FTS5 search, typed tables and sync state for synced API data."""

__version__ = "0.1.0"