"""Core infrastructure: configuration, database, timezone."""
