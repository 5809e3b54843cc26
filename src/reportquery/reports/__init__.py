"""Saved, owner-scoped report definitions."""
