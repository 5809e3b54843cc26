"""Custom report entity."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from reportquery.sources import SourceKind


@dataclass(frozen=True)
class CustomReport:
    """
    Named query definition saved by a user.

    ``query_definition`` holds the raw (camelCase) definition as submitted;
    it is re-validated against the current catalog on every execution.
    Deleted reports are kept with ``is_active`` false.
    """

    id: str
    owner_id: str
    name: str
    source: SourceKind
    query_definition: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    description: str = ""
    is_favorite: bool = False
    is_active: bool = True
    execution_count: int = 0
    last_executed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize for API and CLI output.

        Returns
        -------
        dict[str, Any]
            camelCase mapping.
        """
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "name": self.name,
            "description": self.description,
            "source": self.source.value,
            "queryDefinition": self.query_definition,
            "isFavorite": self.is_favorite,
            "isActive": self.is_active,
            "executionCount": self.execution_count,
            "lastExecutedAt": self.last_executed_at.isoformat() if self.last_executed_at else None,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
