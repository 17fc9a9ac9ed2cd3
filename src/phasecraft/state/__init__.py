"""Project state: domain models and the SQLite-backed store."""
