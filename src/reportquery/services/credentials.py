"""Credential contract consumed from the external credential store."""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Protocol

from reportquery.services.errors import CredentialError
from reportquery.sources import SourceKind, require_source

LOG = logging.getLogger("reportquery.services.credentials")
ENV_PREFIX = "env:"


@dataclass(frozen=True)
class Credential:
    """
    Resolved credential for one backend tenant.

    ``settings`` holds non-secret connection parameters (server, base DN,
    tenant id); ``secrets`` holds resolved secret material. ``version`` is
    bumped by the store on every rotation and participates in cache
    fingerprints, so results are never shared across credential versions.
    """

    id: str
    source: SourceKind
    version: int = 1
    settings: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, str] = field(default_factory=dict, repr=False)

    def setting(self, key: str, default: str | None = None) -> str | None:
        """
        Return a connection setting.

        Returns
        -------
        str | None
            Setting value or ``default`` when missing.
        """
        return self.settings.get(key, default)

    def secret(self, key: str) -> str:
        """
        Return a required secret.

        Returns
        -------
        str
            Secret value.

        Raises
        ------
        CredentialError
            If the secret is not present on the credential.
        """
        value = self.secrets.get(key)
        if value is None:
            message = f"Credential {self.id} has no secret {key!r}"
            raise CredentialError(self.id, message)
        return value


class CredentialStore(Protocol):
    """Lookup of stored credentials by id."""

    def get_credential(self, credential_id: str) -> Credential:
        """Return the resolved credential or raise CredentialError."""
        ...


class InMemoryCredentialStore:
    """Thread-safe credential store used by tests and the CLI."""

    def __init__(self, credentials: Mapping[str, Credential] | None = None) -> None:
        self._lock = threading.Lock()
        self._credentials: dict[str, Credential] = dict(credentials or {})

    def put(self, credential: Credential) -> None:
        """Register or replace a credential."""
        with self._lock:
            self._credentials[credential.id] = credential

    def rotate(self, credential_id: str, secrets: Mapping[str, str]) -> Credential:
        """
        Replace the secrets of a credential and bump its version.

        Returns
        -------
        Credential
            The rotated credential.

        Raises
        ------
        CredentialError
            If the credential is unknown.
        """
        with self._lock:
            current = self._credentials.get(credential_id)
            if current is None:
                message = f"Unknown credential: {credential_id}"
                raise CredentialError(credential_id, message)
            rotated = replace(current, version=current.version + 1, secrets=dict(secrets))
            self._credentials[credential_id] = rotated
        LOG.info("Rotated credential %s to version %d", credential_id, rotated.version)
        return rotated

    def get_credential(self, credential_id: str) -> Credential:
        """
        Return a stored credential.

        Returns
        -------
        Credential
            Stored credential.

        Raises
        ------
        CredentialError
            If the credential is unknown.
        """
        with self._lock:
            credential = self._credentials.get(credential_id)
        if credential is None:
            message = f"Unknown credential: {credential_id}"
            raise CredentialError(credential_id, message)
        return credential


def _resolve_secret(credential_id: str, key: str, value: str) -> str:
    if not value.startswith(ENV_PREFIX):
        return value
    name = value[len(ENV_PREFIX) :]
    resolved = os.environ.get(name)
    if resolved is None:
        message = f"Environment variable {name} for secret {key!r} is not set"
        raise CredentialError(credential_id, message)
    return resolved


def _credential_from_dict(entry: Mapping[str, Any]) -> Credential:
    credential_id = str(entry["id"])
    secrets = {
        str(key): _resolve_secret(credential_id, str(key), str(value))
        for key, value in (entry.get("secrets") or {}).items()
    }
    return Credential(
        id=credential_id,
        source=require_source(entry["source"]),
        version=int(entry.get("version", 1)),
        settings={str(k): str(v) for k, v in (entry.get("settings") or {}).items()},
        secrets=secrets,
    )


def load_credential_file(path: Path) -> InMemoryCredentialStore:
    """
    Load credentials from a JSON document.

    The document is a list of objects with ``id``, ``source``, ``settings``
    and ``secrets``. A secret written as ``env:NAME`` is read from the
    environment variable ``NAME``.

    Parameters
    ----------
    path:
        JSON file to read.

    Returns
    -------
    InMemoryCredentialStore
        Store holding every credential in the file.

    Raises
    ------
    ValueError
        If the document is not a list of credential objects.
    """
    document = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(document, list):
        message = f"{path} must contain a JSON list of credentials"
        raise ValueError(message)
    try:
        credentials = [_credential_from_dict(entry) for entry in document]
    except (KeyError, TypeError, AttributeError) as exc:
        message = f"{path} contains a malformed credential: {exc}"
        raise ValueError(message) from exc
    LOG.info("Loaded %d credentials from %s", len(credentials), path)
    return InMemoryCredentialStore({c.id: c for c in credentials})
