"""Tests for the mail sync engine."""
