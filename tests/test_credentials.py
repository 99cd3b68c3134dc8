"""Test merchant credential persistence."""

import datetime
from unittest.mock import MagicMock

import pytest
from conftest import START, FrozenClock
from sqlalchemy.exc import OperationalError

from square_bff.core.credentials import CredentialRepository
from square_bff.core.errors import AlreadyExists, NotFound, StorageError
from square_bff.storage.sql import SqlCredentialStore

EXPIRES = START + datetime.timedelta(days=30)


def test_create_stamps_timestamps_and_ttl(credentials: CredentialRepository) -> None:
    credential = credentials.create("M1", "access", "refresh", EXPIRES)

    assert credential.created_at == START
    assert credential.updated_at == START
    assert credential.environment == "sandbox"
    assert credential.ttl == int((START + datetime.timedelta(days=365)).timestamp())

    stored = credentials.get("M1")
    assert stored is not None
    assert stored.access_token == "access"
    assert stored.refresh_token == "refresh"
    assert stored.expires_at == EXPIRES


def test_create_existing_merchant_leaves_record_untouched(
    credentials: CredentialRepository,
) -> None:
    credentials.create("M1", "access", "refresh", EXPIRES)

    with pytest.raises(AlreadyExists):
        credentials.create("M1", "other_access", "other_refresh", EXPIRES)

    stored = credentials.get("M1")
    assert stored is not None
    assert stored.access_token == "access"


def test_update_replaces_token_triple(
    credentials: CredentialRepository, clock: FrozenClock
) -> None:
    credentials.create("M1", "access", "refresh", EXPIRES)
    clock.advance(3600)
    new_expiry = EXPIRES + datetime.timedelta(days=1)

    updated = credentials.update("M1", "access_2", "refresh_2", new_expiry)

    assert updated.access_token == "access_2"
    assert updated.refresh_token == "refresh_2"
    assert updated.expires_at == new_expiry
    assert updated.created_at == START
    assert updated.updated_at == START + datetime.timedelta(hours=1)


def test_update_missing_merchant_writes_nothing(credentials: CredentialRepository) -> None:
    with pytest.raises(NotFound):
        credentials.update("GHOST", "access", "refresh", EXPIRES)

    assert credentials.get("GHOST") is None


def test_upsert_creates_then_updates(credentials: CredentialRepository) -> None:
    first, created = credentials.upsert("M1", "access", "refresh", EXPIRES)
    second, created_again = credentials.upsert("M1", "access_2", "refresh_2", EXPIRES)

    assert created is True
    assert created_again is False
    assert first.created_at == second.created_at
    assert credentials.require("M1").access_token == "access_2"


def test_upsert_recreates_when_deleted_between_writes(clock: FrozenClock) -> None:
    """Test the path where a revocation removes the record after the create conflict."""
    store = MagicMock()
    store.insert.side_effect = [AlreadyExists(), None]
    store.replace_tokens.side_effect = NotFound()
    repository = CredentialRepository(store, clock=clock)

    credential, created = repository.upsert("M1", "access", "refresh", EXPIRES)

    assert created is True
    assert credential.merchant_id == "M1"
    assert store.insert.call_count == 2


def test_require_missing_merchant(credentials: CredentialRepository) -> None:
    with pytest.raises(NotFound):
        credentials.require("GHOST")


def test_delete_is_idempotent(credentials: CredentialRepository) -> None:
    credentials.create("M1", "access", "refresh", EXPIRES)

    credentials.delete("M1")
    credentials.delete("M1")

    assert credentials.get("M1") is None


def test_list_is_ordered_and_limited(credentials: CredentialRepository) -> None:
    for merchant_id in ("M3", "M1", "M2"):
        credentials.create(merchant_id, "access", "refresh", EXPIRES)

    assert [c.merchant_id for c in credentials.list()] == ["M1", "M2", "M3"]
    assert [c.merchant_id for c in credentials.list(limit=2)] == ["M1", "M2"]


def test_tokens_are_hidden_from_repr(credentials: CredentialRepository) -> None:
    credential = credentials.create("M1", "secret_access", "secret_refresh", EXPIRES)

    assert "secret_access" not in repr(credential)
    assert "secret_refresh" not in repr(credential)


def test_database_failures_become_storage_errors() -> None:
    session_factory = MagicMock(side_effect=OperationalError("SELECT", {}, Exception("locked")))
    store = SqlCredentialStore(session_factory)

    with pytest.raises(StorageError):
        store.get("M1")
