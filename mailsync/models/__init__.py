"""Data models for the sync engine."""
