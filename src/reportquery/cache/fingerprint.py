"""Deterministic query fingerprints."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any

from reportquery.compilers.base import NativeQuery
from reportquery.services.credentials import Credential


def compute_fingerprint(
    native: NativeQuery, credential: Credential, parameters: Mapping[str, Any] | None = None
) -> str:
    """
    Hash everything that determines a query's result.

    The digest covers the source, credential id and version, the native
    query's canonical form, the supplied parameter values and the catalog
    version the query was compiled against.

    Returns
    -------
    str
        Hex SHA-256 digest.
    """
    document = {
        "source": native.source.value,
        "credential_id": credential.id,
        "credential_version": credential.version,
        "native": native.canonical(),
        "parameters": dict(parameters or {}),
        "catalog_version": native.catalog_version,
    }
    raw = json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
