"""Execution engine: pooled connections, retries, normalization and post-fetch operations."""
