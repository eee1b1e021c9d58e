"""Sync, cache, search and eviction services."""
