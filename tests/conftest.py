"""Shared test fixtures."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

import pytest

from zkvault.crypto.engine import AeadCodec, EncryptionKey
from zkvault.crypto.formats import KEY_SIZE
from zkvault.storage.backend import VAULT_ITEMS, MemoryBackend
from zkvault.util.timestamps import isoformat
from zkvault.vault.manager import VaultStore
from zkvault.vault.session import SessionKeyHolder

FIXED_SALT = "00112233445566778899aabbccddeeff"
PASSWORD = "correct horse battery staple"
OWNER = "user-1"
OTHER_OWNER = "user-2"


class FailingBackend(MemoryBackend):
    """MemoryBackend whose selected operations fail like a dropped connection."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_on: set = set()

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail_on:
            raise RuntimeError("connection reset by peer")

    async def insert(self, table, row):
        self._maybe_fail("insert")
        return await super().insert(table, row)

    async def insert_many(self, table, rows):
        self._maybe_fail("insert_many")
        return await super().insert_many(table, rows)

    async def update(self, table, owner_id, row_id, fields):
        self._maybe_fail("update")
        return await super().update(table, owner_id, row_id, fields)

    async def delete(self, table, owner_id, row_id):
        self._maybe_fail("delete")
        return await super().delete(table, owner_id, row_id)

    async def select(self, table, owner_id, order_by="created_at", descending=True):
        self._maybe_fail("select")
        return await super().select(table, owner_id, order_by, descending)


def random_key() -> EncryptionKey:
    return EncryptionKey(secrets.token_bytes(KEY_SIZE))


def seed_row(owner_id, name, *, key, minutes_ago=0, item_type="login", secret="s3cret", **meta):
    """A vault_items row with an explicit creation time."""
    created = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc) - timedelta(minutes=minutes_ago)
    return {
        "owner_id": owner_id,
        "type": item_type,
        "metadata": {"name": name, **meta},
        "encrypted_blob": AeadCodec.encrypt(secret, key),
        "created_at": isoformat(created),
    }


@pytest.fixture
def key():
    return random_key()


@pytest.fixture
def holder(key):
    h = SessionKeyHolder()
    h.set(key)
    return h


@pytest.fixture
def backend():
    return FailingBackend()


@pytest.fixture
def store(backend, holder):
    return VaultStore(backend, holder)


@pytest.fixture
async def seeded_store(store, backend, key):
    """Three login items for OWNER, newest first: c, b, a."""
    for minutes_ago, name in ((20, "alpha"), (10, "bravo"), (0, "charlie")):
        await backend.insert(VAULT_ITEMS, seed_row(OWNER, name, key=key, minutes_ago=minutes_ago))
    await store.list(OWNER)
    return store
