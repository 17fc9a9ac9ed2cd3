"""SQLite storage primitives: engine policy, ORM tables, migrations."""
