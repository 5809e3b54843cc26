"""DuckDB persistence for execution records and custom reports."""
