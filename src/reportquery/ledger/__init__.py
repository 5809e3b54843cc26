"""Execution records and their lifecycle."""
