"""VaultStore: listing, filtering and lifecycle transitions of vault items."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Union

from zkvault.crypto.engine import AeadCodec, DecryptResult
from zkvault.errors import InvalidItem, InvalidTransition, VaultLocked
from zkvault.storage.backend import VAULT_ITEMS, PersistenceBackend, persistence_errors
from zkvault.util.timestamps import isoformat, utcnow
from zkvault.vault import transfer
from zkvault.vault.models import BaseMetadata, VaultItem, parse_metadata
from zkvault.vault.session import SessionKeyHolder

logger = logging.getLogger("zkvault.vault")

ItemRef = Union[VaultItem, str]

# Managed by dedicated transitions, never by edit()
_LIFECYCLE_FIELDS = {"is_favorite", "isFavorite", "deleted_at", "deletedAt"}


class VaultStore:
    """In-memory view of one owner's items, written through to the backend.

    Local state only changes after the backend confirms a write. Writes to
    the same item are serialised in call order; a write that has started
    is shielded from caller cancellation so it either lands completely
    (remote and local) or fails.
    """

    def __init__(
        self,
        backend: PersistenceBackend,
        session: SessionKeyHolder,
        codec: Optional[AeadCodec] = None,
    ):
        self.backend = backend
        self.session = session
        self.codec = codec or AeadCodec()
        self.owner_id: Optional[str] = None
        self.items: List[VaultItem] = []
        self._item_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def cache(self):
        return self.session.cache

    # ------------------------------------------------------------------
    #  Listing
    # ------------------------------------------------------------------
    async def list(self, owner_id: str) -> List[VaultItem]:
        """Reload all items of *owner_id*, newest first."""
        with persistence_errors("list vault items"):
            rows = await self.backend.select(VAULT_ITEMS, owner_id, "created_at", True)

        items = []
        for row in rows:
            try:
                items.append(VaultItem.from_row(row))
            except InvalidItem as exc:
                logger.warning("Skipping invalid vault row id=%s: %s", row.get("id"), exc)

        if owner_id != self.owner_id:
            self.cache.clear()
        else:
            live = {item.id for item in items}
            for item_id in self.cache:
                if item_id not in live:
                    self.cache.evict(item_id)

        self.owner_id = owner_id
        self.items = items
        logger.info("Loaded %d vault item(s) for owner=%s", len(items), owner_id)
        return list(items)

    @staticmethod
    def _matches(item: VaultItem, query: str, item_type: Optional[str]) -> bool:
        if item_type and item_type != "all" and item.type != item_type:
            return False
        if not query:
            return True
        name = (item.metadata.name or "").lower()
        note = (item.metadata.note or "").lower()
        return query in name or query in note

    def active(
        self,
        query: str = "",
        item_type: Optional[str] = None,
        favorites_only: bool = False,
    ) -> List[VaultItem]:
        q = query.strip().lower()
        result = [
            item
            for item in self.items
            if not item.is_deleted
            and self._matches(item, q, item_type)
            and (item.is_favorite or not favorites_only)
        ]
        # sorted() is stable: listing order survives inside each group
        return sorted(result, key=lambda item: not item.is_favorite)

    def trash(self, query: str = "", item_type: Optional[str] = None) -> List[VaultItem]:
        q = query.strip().lower()
        return [item for item in self.items if item.is_deleted and self._matches(item, q, item_type)]

    def _find(self, item_id: str) -> Optional[VaultItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def get(self, ref: ItemRef) -> VaultItem:
        item_id = ref.id if isinstance(ref, VaultItem) else ref
        item = self._find(item_id)
        if item is None:
            raise InvalidTransition(f"Unknown vault item {item_id!r}")
        return item

    # ------------------------------------------------------------------
    #  Write helpers
    # ------------------------------------------------------------------
    def _replace_local(self, updated: VaultItem) -> None:
        self.items = [updated if it.id == updated.id else it for it in self.items]

    async def _write_update(
        self,
        current: VaultItem,
        updated: VaultItem,
        fields: Dict[str, Any],
        evict: bool = False,
    ) -> VaultItem:
        async def apply() -> VaultItem:
            with persistence_errors("update vault item"):
                await self.backend.update(VAULT_ITEMS, current.owner_id, current.id, fields)
            self._replace_local(updated)
            if evict:
                self.cache.evict(current.id)
            return updated

        return await asyncio.shield(apply())

    def _require_active(self, item: VaultItem, action: str) -> None:
        if item.is_deleted:
            raise InvalidTransition(f"Cannot {action} an item in the trash; restore it first")

    # ------------------------------------------------------------------
    #  Create
    # ------------------------------------------------------------------
    async def create(
        self,
        owner_id: str,
        item_type: str,
        metadata: Union[Mapping[str, Any], BaseMetadata],
        secret: str,
    ) -> VaultItem:
        if not item_type:
            raise InvalidItem("Item type is required")
        if not secret or not secret.strip():
            raise InvalidItem("Secret must not be empty")

        meta = parse_metadata(item_type, dict(metadata) if isinstance(metadata, Mapping) else metadata)
        meta = meta.evolve(deleted_at=None)

        key = self.session.require()
        blob = await self.codec.encrypt_async(secret, key)
        row = {
            "owner_id": owner_id,
            "type": item_type,
            "metadata": meta.to_wire(),
            "encrypted_blob": blob,
        }

        async def apply() -> VaultItem:
            with persistence_errors("create vault item"):
                stored = await self.backend.insert(VAULT_ITEMS, row)
            item = VaultItem.from_row(stored)
            if self.owner_id in (None, owner_id):
                self.owner_id = owner_id
                self.items = [item] + self.items
            return item

        item = await asyncio.shield(apply())
        logger.info("Created %s item id=%s", item_type, item.id)
        return item

    # ------------------------------------------------------------------
    #  Edit
    # ------------------------------------------------------------------
    async def edit(
        self,
        ref: ItemRef,
        fields: Optional[Mapping[str, Any]] = None,
        secret: Optional[str] = None,
    ) -> VaultItem:
        """Update cleartext metadata and, when *secret* is non-blank, re-encrypt.

        A blank or missing *secret* leaves ``encrypted_blob`` untouched.
        """
        fields = dict(fields or {})
        forbidden = _LIFECYCLE_FIELDS.intersection(fields)
        if forbidden:
            raise InvalidItem(f"Use the dedicated operation to change {sorted(forbidden)}")

        async with self._item_locks[self.get(ref).id]:
            current = self.get(ref)
            self._require_active(current, "edit")

            meta = current.metadata.evolve(**fields) if fields else current.metadata
            updates: Dict[str, Any] = {"metadata": meta.to_wire()}
            blob = current.encrypted_blob

            new_secret = secret is not None and secret.strip() != ""
            if new_secret:
                blob = await self.codec.encrypt_async(secret, self.session.require())
                updates["encrypted_blob"] = blob

            updated = await self._write_update(
                current,
                current.evolve(metadata=meta, encrypted_blob=blob),
                updates,
                evict=new_secret,
            )

        logger.info("Edited item id=%s (secret %s)", current.id, "replaced" if new_secret else "kept")
        return updated

    # ------------------------------------------------------------------
    #  Favorite / trash / restore / purge
    # ------------------------------------------------------------------
    async def toggle_favorite(self, ref: ItemRef) -> VaultItem:
        async with self._item_locks[self.get(ref).id]:
            current = self.get(ref)
            self._require_active(current, "favorite")
            meta = current.metadata.evolve(is_favorite=not current.is_favorite)
            return await self._write_update(
                current, current.evolve(metadata=meta), {"metadata": meta.to_wire()}
            )

    async def soft_delete(self, ref: ItemRef) -> VaultItem:
        async with self._item_locks[self.get(ref).id]:
            current = self.get(ref)
            if current.is_deleted:
                raise InvalidTransition("Item is already in the trash")
            meta = current.metadata.evolve(deleted_at=isoformat(utcnow()))
            updated = await self._write_update(
                current, current.evolve(metadata=meta), {"metadata": meta.to_wire()}
            )
        logger.info("Moved item id=%s to trash", current.id)
        return updated

    async def restore(self, ref: ItemRef) -> VaultItem:
        async with self._item_locks[self.get(ref).id]:
            current = self.get(ref)
            if not current.is_deleted:
                return current
            meta = current.metadata.evolve(deleted_at=None)
            updated = await self._write_update(
                current, current.evolve(metadata=meta), {"metadata": meta.to_wire()}
            )
        logger.info("Restored item id=%s", current.id)
        return updated

    async def purge(self, ref: ItemRef) -> None:
        item_id = self.get(ref).id
        async with self._item_locks[item_id]:
            current = self.get(ref)
            if not current.is_deleted:
                raise InvalidTransition("Only items in the trash can be purged")

            async def apply() -> None:
                with persistence_errors("purge vault item"):
                    await self.backend.delete(VAULT_ITEMS, current.owner_id, current.id)
                self.items = [it for it in self.items if it.id != current.id]
                self.cache.evict(current.id)

            await asyncio.shield(apply())
        self._item_locks.pop(item_id, None)
        logger.info("Purged item id=%s", item_id)

    # ------------------------------------------------------------------
    #  Reveal
    # ------------------------------------------------------------------
    async def reveal(self, ref: ItemRef) -> DecryptResult:
        """Decrypt and cache the secret; failures come back as DecryptionFailure.

        Ordered with the writes to the same item, so a cached value always
        belongs to the item's current ``encrypted_blob``.
        """
        async with self._item_locks[self.get(ref).id]:
            item = self.get(ref)
            cached = self.cache.get(item.id)
            if cached is not None:
                return cached

            key = self.session.require()
            result = await self.codec.decrypt_async(item.encrypted_blob, key)
            # the session may have been locked while decrypting
            if not self.session.is_unlocked or self.session.get() is not key:
                raise VaultLocked("Vault was locked during reveal")

            # a reload may have dropped or replaced the item meanwhile
            current = self._find(item.id)
            if current is not None and current.encrypted_blob == item.encrypted_blob:
                self.cache.put(item.id, result)
            return result

    def hide(self, ref: ItemRef) -> bool:
        item_id = ref.id if isinstance(ref, VaultItem) else ref
        return self.cache.evict(item_id)

    async def toggle_reveal(self, ref: ItemRef) -> Optional[DecryptResult]:
        if self.hide(ref):
            return None
        return await self.reveal(ref)

    # ------------------------------------------------------------------
    #  Export / import
    # ------------------------------------------------------------------
    def export(self, items: Optional[List[VaultItem]] = None) -> Dict[str, Any]:
        return transfer.build_export(self.items if items is None else items)

    async def import_document(self, document: Any, owner_id: str) -> int:
        """Insert every exported entry under *owner_id*; ciphertext is not touched."""
        entries = transfer.parse_import(document)
        rows = [entry.to_row(owner_id) for entry in entries]
        if not rows:
            return 0

        with persistence_errors("import vault items"):
            await asyncio.shield(self.backend.insert_many(VAULT_ITEMS, rows))

        logger.info("Imported %d item(s) for owner=%s", len(rows), owner_id)
        if self.owner_id in (None, owner_id):
            await self.list(owner_id)
        return len(rows)
