"""Core infrastructure: configuration, database, credentials and errors."""
