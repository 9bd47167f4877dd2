"""Portable export documents: ciphertext and cleartext metadata, no ids or owners."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from zkvault.config import Config
from zkvault.crypto.formats import is_well_formed_token
from zkvault.errors import ImportFormatError, InvalidItem
from zkvault.util.timestamps import isoformat, parse_timestamp, utcnow
from zkvault.vault.models import VaultItem, parse_metadata

logger = logging.getLogger("zkvault.transfer")


class ExportEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = Field(min_length=1)
    metadata: Dict[str, Any]
    encrypted_blob: str
    created_at: Optional[str] = None

    @field_validator("encrypted_blob")
    @classmethod
    def _blob_is_token(cls, v: str) -> str:
        if not is_well_formed_token(v):
            raise ValueError("encrypted_blob is not a <hex>:<hex> token")
        return v

    @field_validator("created_at")
    @classmethod
    def _normalise_created_at(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        try:
            return isoformat(parse_timestamp(v))
        except (ValueError, InvalidItem) as exc:
            raise ValueError(f"created_at is not an ISO-8601 timestamp: {v!r}") from exc

    def to_row(self, owner_id: str) -> Dict[str, Any]:
        meta = parse_metadata(self.type, self.metadata)
        row = {
            "owner_id": owner_id,
            "type": self.type,
            "metadata": meta.to_wire(),
            "encrypted_blob": self.encrypted_blob,
        }
        if self.created_at:
            row["created_at"] = self.created_at
        return row


# ---------------------------------------------------------------------------
#  Export
# ---------------------------------------------------------------------------
def build_export(items: Iterable[VaultItem], now: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "version": Config.EXPORT_VERSION,
        "exportedAt": isoformat(now or utcnow()),
        "items": [
            {
                "type": item.type,
                "metadata": item.metadata.to_wire(),
                "encrypted_blob": item.encrypted_blob,
                "created_at": isoformat(item.created_at),
            }
            for item in items
        ],
    }


def dumps_export(document: Dict[str, Any]) -> bytes:
    return orjson.dumps(document, option=orjson.OPT_INDENT_2)


def export_filename(now: Optional[datetime] = None) -> str:
    return f"{Config.EXPORT_PREFIX}-{(now or utcnow()).date().isoformat()}.json"


# ---------------------------------------------------------------------------
#  Import
# ---------------------------------------------------------------------------
def parse_import(document: Union[bytes, str, Dict[str, Any]]) -> List[ExportEntry]:
    """Validate an export document and return its entries.

    The whole document is rejected when any entry is invalid.
    """
    if isinstance(document, (bytes, str)):
        raw = document.encode("utf-8") if isinstance(document, str) else document
        if len(raw) > Config.MAX_IMPORT_SIZE:
            raise ImportFormatError(f"Import file too large: {len(raw)} bytes")
        try:
            document = orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            raise ImportFormatError(f"Import file is not valid JSON: {exc}") from exc

    if not isinstance(document, dict) or not isinstance(document.get("items"), list):
        raise ImportFormatError("Invalid file: expected an object with an 'items' list")

    version = document.get("version", Config.EXPORT_VERSION)
    if version != Config.EXPORT_VERSION:
        raise ImportFormatError(f"Unsupported export version: {version!r}")

    entries = []
    for index, raw_entry in enumerate(document["items"]):
        try:
            entry = ExportEntry.model_validate(raw_entry)
            parse_metadata(entry.type, entry.metadata)
        except ValidationError as exc:
            err = exc.errors()[0]
            loc = ".".join(str(part) for part in err["loc"])
            raise ImportFormatError(f"Item {index}: {loc}: {err['msg']}") from exc
        except InvalidItem as exc:
            raise ImportFormatError(f"Item {index}: {exc}") from exc
        entries.append(entry)

    logger.debug("Import document validated: %d item(s)", len(entries))
    return entries
