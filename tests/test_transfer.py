"""Tests for export documents and import validation."""

from datetime import datetime, timezone

import orjson
import pytest

from zkvault.errors import ImportFormatError
from zkvault.vault.models import VaultItem
from zkvault.vault.transfer import (
    build_export,
    dumps_export,
    export_filename,
    parse_import,
)

from .conftest import OWNER, random_key, seed_row

NOW = datetime(2024, 3, 5, 8, 30, tzinfo=timezone.utc)


def make_items(count=2):
    key = random_key()
    rows = [
        {**seed_row(OWNER, f"item-{i}", key=key, minutes_ago=i), "id": f"id-{i}"}
        for i in range(count)
    ]
    return [VaultItem.from_row(row) for row in rows]


class TestExport:
    def test_document_shape(self):
        items = make_items()
        document = build_export(items, now=NOW)

        assert document["version"] == 1
        assert document["exportedAt"] == "2024-03-05T08:30:00Z"
        assert len(document["items"]) == 2
        entry = document["items"][0]
        assert set(entry) == {"type", "metadata", "encrypted_blob", "created_at"}
        assert entry["encrypted_blob"] == items[0].encrypted_blob
        assert entry["metadata"]["name"] == "item-0"

    def test_no_ids_or_owner(self):
        raw = dumps_export(build_export(make_items(), now=NOW))
        assert b"id-0" not in raw
        assert OWNER.encode() not in raw

    def test_dumps_is_json(self):
        document = build_export(make_items(), now=NOW)
        assert orjson.loads(dumps_export(document)) == document

    def test_filename(self):
        assert export_filename(NOW) == "zkvault-export-2024-03-05.json"


class TestImport:
    def test_accepts_export(self):
        items = make_items(3)
        entries = parse_import(dumps_export(build_export(items, now=NOW)))
        assert [e.metadata["name"] for e in entries] == ["item-0", "item-1", "item-2"]
        assert [e.encrypted_blob for e in entries] == [i.encrypted_blob for i in items]

    def test_accepts_str_and_dict(self):
        document = build_export(make_items(1), now=NOW)
        assert len(parse_import(document)) == 1
        assert len(parse_import(dumps_export(document).decode())) == 1

    def test_to_row_assigns_owner_and_keeps_created_at(self):
        items = make_items(1)
        (entry,) = parse_import(build_export(items, now=NOW))
        row = entry.to_row("someone-else")
        assert row["owner_id"] == "someone-else"
        assert "id" not in row
        assert row["created_at"] == "2024-01-01T12:00:00Z"

    def test_created_at_is_optional(self):
        blob = "00" * 12 + ":" + "11" * 16
        (entry,) = parse_import(
            {"items": [{"type": "note", "metadata": {"name": "n"}, "encrypted_blob": blob}]}
        )
        assert "created_at" not in entry.to_row(OWNER)

    def test_created_at_is_normalised(self):
        document = build_export(make_items(1), now=NOW)
        document["items"][0]["created_at"] = "2024-01-01T13:00:00+01:00"
        (entry,) = parse_import(document)
        assert entry.created_at == "2024-01-01T12:00:00Z"

    @pytest.mark.parametrize(
        "document",
        [
            b"not json",
            b"[]",
            b"{}",
            b'{"items": {}}',
            b'{"version": 2, "items": []}',
        ],
    )
    def test_rejects_bad_documents(self, document):
        with pytest.raises(ImportFormatError):
            parse_import(document)

    @pytest.mark.parametrize(
        "mutate",
        [
            lambda e: e.pop("type"),
            lambda e: e.update(type=""),
            lambda e: e.update(metadata="nope"),
            lambda e: e.update(metadata={"note": "nameless"}),
            lambda e: e.update(encrypted_blob="plaintext"),
            lambda e: e.update(encrypted_blob="ab:cd"),
            lambda e: e.update(created_at="yesterday"),
        ],
    )
    def test_one_bad_entry_rejects_all(self, mutate):
        document = build_export(make_items(3), now=NOW)
        mutate(document["items"][1])
        with pytest.raises(ImportFormatError, match="Item 1"):
            parse_import(document)

    def test_rejects_oversized(self, monkeypatch):
        monkeypatch.setattr("zkvault.config.Config.MAX_IMPORT_SIZE", 10)
        with pytest.raises(ImportFormatError, match="too large"):
            parse_import(b'{"version": 1, "items": []}')

    def test_unknown_keys_ignored(self):
        document = build_export(make_items(1), now=NOW)
        document["items"][0]["id"] = "old-id"
        document["items"][0]["owner_id"] = "old-owner"
        (entry,) = parse_import(document)
        row = entry.to_row(OWNER)
        assert row["owner_id"] == OWNER
        assert "id" not in row
