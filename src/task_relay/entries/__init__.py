"""Bulk entry creation and the writers it persists through."""
