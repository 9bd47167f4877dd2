"""VaultItem, its per-type metadata, and the per-user SecurityRecord."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from zkvault.errors import InvalidItem
from zkvault.util.timestamps import isoformat, parse_timestamp


class ItemType(str, Enum):
    CRYPTO = "crypto"
    LOGIN = "login"
    NOTE = "note"
    CARD = "card"


# ============================================================================
#  Metadata (cleartext, tagged by item type)
# ============================================================================
class BaseMetadata(BaseModel):
    """Fields shared by every item type. Unknown keys are preserved."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    name: str
    note: Optional[str] = None
    is_favorite: bool = Field(default=False, alias="isFavorite")
    deleted_at: Optional[str] = Field(default=None, alias="deletedAt")

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("name must not be empty")
        return v

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def evolve(self, **changes: Any) -> BaseMetadata:
        """Return a validated copy with *changes* applied (field names, not aliases)."""
        data = self.model_dump()
        data.update(changes)
        try:
            return type(self).model_validate(data)
        except ValidationError as exc:
            raise InvalidItem(f"Invalid metadata: {exc.errors()[0]['msg']}") from exc

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class CryptoMetadata(BaseMetadata):
    symbol: Optional[str] = None
    network: Optional[str] = None
    address: Optional[str] = None


class LoginMetadata(BaseMetadata):
    username: Optional[str] = None
    url: Optional[str] = None


class NoteMetadata(BaseMetadata):
    content: Optional[str] = None


class CardMetadata(BaseMetadata):
    cardholder: Optional[str] = None
    brand: Optional[str] = None
    last4: Optional[str] = None


class GenericMetadata(BaseMetadata):
    """Catch-all for item types this version does not know about."""


METADATA_BY_TYPE: Dict[str, Type[BaseMetadata]] = {
    ItemType.CRYPTO.value: CryptoMetadata,
    ItemType.LOGIN.value: LoginMetadata,
    ItemType.NOTE.value: NoteMetadata,
    ItemType.CARD.value: CardMetadata,
}


def parse_metadata(item_type: str, data: Any) -> BaseMetadata:
    if isinstance(data, BaseMetadata):
        data = data.model_dump()
    if not isinstance(data, dict):
        raise InvalidItem("metadata must be an object")
    cls = METADATA_BY_TYPE.get(item_type, GenericMetadata)
    try:
        return cls.model_validate(data)
    except ValidationError as exc:
        raise InvalidItem(f"Invalid {item_type!r} metadata: {exc.errors()[0]['msg']}") from exc


# ============================================================================
#  VaultItem
# ============================================================================
@dataclass(frozen=True)
class VaultItem:
    id: str
    owner_id: str
    type: str
    metadata: BaseMetadata
    encrypted_blob: str
    created_at: datetime

    def __post_init__(self):
        if not self.type:
            raise InvalidItem("Item type is required")
        if not isinstance(self.metadata, METADATA_BY_TYPE.get(self.type, GenericMetadata)):
            object.__setattr__(self, "metadata", parse_metadata(self.type, self.metadata))

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def is_deleted(self) -> bool:
        return self.metadata.is_deleted

    @property
    def is_favorite(self) -> bool:
        return self.metadata.is_favorite

    def evolve(self, **changes: Any) -> VaultItem:
        return dataclasses.replace(self, **changes)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "type": self.type,
            "metadata": self.metadata.to_wire(),
            "encrypted_blob": self.encrypted_blob,
            "created_at": isoformat(self.created_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> VaultItem:
        try:
            item_type = row["type"]
            return cls(
                id=str(row["id"]),
                owner_id=str(row["owner_id"]),
                type=item_type,
                metadata=parse_metadata(item_type, row.get("metadata") or {}),
                encrypted_blob=row["encrypted_blob"],
                created_at=parse_timestamp(row["created_at"]),
            )
        except KeyError as exc:
            raise InvalidItem(f"Vault row is missing {exc.args[0]!r}") from exc
        except ValueError as exc:
            raise InvalidItem(f"Vault row has an invalid created_at: {exc}") from exc


# ============================================================================
#  SecurityRecord
# ============================================================================
@dataclass(frozen=True)
class SecurityRecord:
    owner_id: str
    salt: str
    auth_hash: Optional[str] = None

    @property
    def is_provisioned(self) -> bool:
        return self.auth_hash is not None

    def to_row(self) -> Dict[str, Any]:
        return {"owner_id": self.owner_id, "salt": self.salt, "auth_hash": self.auth_hash}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> SecurityRecord:
        return cls(
            owner_id=str(row["owner_id"]),
            salt=row["salt"],
            auth_hash=row.get("auth_hash"),
        )
