"""SQLite storage primitives shared by task repositories."""
