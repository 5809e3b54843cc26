"""Credential store lookups, rotation and JSON file loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from reportquery.services.credentials import InMemoryCredentialStore, load_credential_file
from reportquery.services.errors import CredentialError
from reportquery.sources import SourceKind
from tests._helpers.expect import expect_equal
from tests._helpers.fakes import make_credential

ROTATED_VERSION = 2


def _write(path: Path, document: object) -> Path:
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


def test_unknown_credential_raises_credential_error() -> None:
    """Lookups of missing ids raise a 401 problem."""
    store = InMemoryCredentialStore()
    with pytest.raises(CredentialError) as excinfo:
        store.get_credential("missing")
    expect_equal(excinfo.value.credential_id, "missing")
    expect_equal(excinfo.value.problem_detail.status, 401)


def test_rotate_bumps_version_and_replaces_secrets() -> None:
    """Rotation keeps settings, swaps secrets and increments the version."""
    store = InMemoryCredentialStore({"cred-directory": make_credential(SourceKind.DIRECTORY)})
    rotated = store.rotate("cred-directory", {"password": "n3w"})
    expect_equal(rotated.version, ROTATED_VERSION)
    expect_equal(store.get_credential("cred-directory").secret("password"), "n3w")
    expect_equal(rotated.setting("base_dn"), "DC=example,DC=test")
    with pytest.raises(CredentialError):
        store.rotate("missing", {})


def test_missing_secret_raises() -> None:
    """Reading an absent secret is a credential error."""
    credential = make_credential(SourceKind.CLOUD_SUITE, secrets={})
    with pytest.raises(CredentialError, match="client_secret"):
        credential.secret("client_secret")


def test_load_file_resolves_env_secrets(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """``env:NAME`` secrets are read from the environment; sources accept aliases."""
    monkeypatch.setenv("AZ_SECRET", "from-env")
    path = _write(
        tmp_path / "credentials.json",
        [
            {
                "id": "tenant-a",
                "source": "azure",
                "version": 3,
                "settings": {"tenant_id": "t-a", "client_id": "c-a"},
                "secrets": {"client_secret": "env:AZ_SECRET"},
            },
            {"id": "dc", "source": "ad", "secrets": {"password": "literal"}},
        ],
    )
    store = load_credential_file(path)

    azure = store.get_credential("tenant-a")
    expect_equal(azure.source, SourceKind.CLOUD_DIRECTORY)
    expect_equal(azure.version, 3)
    expect_equal(azure.secret("client_secret"), "from-env")
    expect_equal(store.get_credential("dc").secret("password"), "literal")


def test_load_file_fails_on_unset_env_secret(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    """A secret naming an unset variable fails loading."""
    monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
    path = _write(
        tmp_path / "credentials.json",
        [{"id": "x", "source": "directory", "secrets": {"password": "env:NOT_SET_ANYWHERE"}}],
    )
    with pytest.raises(CredentialError, match="NOT_SET_ANYWHERE"):
        load_credential_file(path)


@pytest.mark.parametrize(
    ("document", "message"),
    [
        ({"id": "x"}, "JSON list"),
        ([{"source": "directory"}], "malformed credential"),
    ],
)
def test_load_file_rejects_malformed_documents(
    tmp_path: Path, document: object, message: str
) -> None:
    """Non-list documents and entries without ids are rejected."""
    path = _write(tmp_path / "credentials.json", document)
    with pytest.raises(ValueError, match=message):
        load_credential_file(path)
