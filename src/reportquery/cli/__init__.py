"""Command line interface for the report query engine."""
