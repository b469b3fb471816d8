"""Task backlog domain: models, readiness rules and SQLite persistence."""
