"""Serialized access to the DuckDB database backing the ledger and reports."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import duckdb

from reportquery.storage.schemas import apply_all_schemas

log = logging.getLogger("reportquery.storage.gateway")

DuckDBConnection = duckdb.DuckDBPyConnection
MEMORY = Path(":memory:")


@dataclass(frozen=True)
class StorageConfig:
    """Define how the DuckDB database is opened."""

    db_path: Path = MEMORY
    read_only: bool = False
    apply_schema: bool = True

    @classmethod
    def in_memory(cls) -> StorageConfig:
        """
        Build a configuration for an in-memory database.

        Returns
        -------
        StorageConfig
            Writable in-memory configuration with schemas applied.
        """
        return cls(db_path=MEMORY)


class StorageGateway:
    """
    Own one DuckDB connection and serialize statements across threads.

    Repositories run statements inside :meth:`connection`; callers needing
    read-modify-write atomicity hold :meth:`connection` for the whole step.
    """

    def __init__(self, config: StorageConfig, con: DuckDBConnection) -> None:
        self.config = config
        self._con = con
        self._lock = threading.RLock()
        self._closed = False

    @contextmanager
    def connection(self) -> Iterator[DuckDBConnection]:
        """
        Hold the gateway lock and yield the connection.

        Yields
        ------
        DuckDBConnection
            Live connection.

        Raises
        ------
        RuntimeError
            If the gateway has been closed.
        """
        with self._lock:
            if self._closed:
                message = f"Storage gateway for {self.config.db_path} is closed"
                raise RuntimeError(message)
            yield self._con

    def close(self) -> None:
        """Close the connection; later use raises RuntimeError."""
        with self._lock:
            if not self._closed:
                log.info("Closing DuckDB connection to %s", self.config.db_path)
                self._con.close()
                self._closed = True


def _connect(config: StorageConfig) -> DuckDBConnection:
    if not config.read_only and config.db_path != MEMORY:
        config.db_path.parent.mkdir(parents=True, exist_ok=True)
    log.info("Connecting to DuckDB at %s (read_only=%s)", config.db_path, config.read_only)
    con = duckdb.connect(str(config.db_path), read_only=config.read_only)
    if config.apply_schema and not config.read_only:
        apply_all_schemas(con)
    return con


def open_gateway(config: StorageConfig) -> StorageGateway:
    """
    Create a StorageGateway bound to a DuckDB database.

    Parameters
    ----------
    config
        Storage configuration describing connection options.

    Returns
    -------
    StorageGateway
        Gateway with schemas applied.
    """
    return StorageGateway(config, _connect(config))


def open_memory_gateway() -> StorageGateway:
    """
    Create an in-memory StorageGateway for tests and ephemeral services.

    Returns
    -------
    StorageGateway
        Gateway backed by an in-memory DuckDB connection.
    """
    return open_gateway(StorageConfig.in_memory())
