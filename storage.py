"""
Storage Module for Role Reactor.

Persists temporary role grants and supporter grants in a JSON document
store. Temporary roles are kept as a list of documents, either one per
user or one per bulk assignment (with a ``user_ids`` array), and are
flattened on read into a guild -> user -> role mapping.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger("reactor.storage")


class StorageError(Exception):
    """Raised when the store cannot be written."""


def as_utc(moment: datetime) -> datetime:
    """Return an aware UTC datetime. Naive values are taken to be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


# ============================================================================
# Record Models
# ============================================================================


class TemporaryRoleGrant(BaseModel):
    """A single member's temporary role, as seen by callers."""
    guild_id: int
    user_id: int
    role_id: int
    expires_at: datetime
    notify_expiry: bool = False

    @field_validator("expires_at")
    @classmethod
    def normalise_expires_at(cls, value: datetime) -> datetime:
        return as_utc(value)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check whether the grant has lapsed."""
        now = as_utc(now) if now else datetime.now(timezone.utc)
        return self.expires_at <= now


class TemporaryRoleDocument(BaseModel):
    """A stored temporary role document (single or multi-user)."""
    guild_id: int
    role_id: int
    user_id: Optional[int] = None
    user_ids: Optional[list[int]] = None
    expires_at: datetime
    notify_expiry: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("expires_at")
    @classmethod
    def normalise_expires_at(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def members(self) -> list[int]:
        """User IDs covered by this document."""
        if self.user_ids is not None:
            return list(self.user_ids)
        return [self.user_id] if self.user_id is not None else []

    def grants(self) -> list[TemporaryRoleGrant]:
        """Expand the document into per-user grants."""
        return [
            TemporaryRoleGrant(
                guild_id=self.guild_id,
                user_id=user_id,
                role_id=self.role_id,
                expires_at=self.expires_at,
                notify_expiry=self.notify_expiry,
            )
            for user_id in self.members
        ]


class SupporterGrant(BaseModel):
    """A permanent supporter role record."""
    guild_id: int
    user_id: int
    role_id: int
    assigned_at: datetime
    reason: str = "No reason provided"
    is_active: bool = True


# ============================================================================
# Temporary Role Store
# ============================================================================


class TemporaryRoleStore:
    """
    JSON-backed store for temporary roles and supporters.

    The file layout is::

        {
          "temporary_roles": [<TemporaryRoleDocument>, ...],
          "supporters": {"<guild_id>": {"<user_id>": <SupporterGrant>}}
        }

    Writes are serialised with an asyncio lock. The store keeps at most one
    grant per (guild, user, role) by stripping a user from older documents
    whenever a newer one is written for the same guild and role.
    """

    def __init__(self, path: str = "data/temporary_roles.json"):
        """
        Initialize the store.

        Args:
            path: Path to the JSON data file.
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._documents: list[TemporaryRoleDocument] = []
        self._supporters: dict[str, dict[str, SupporterGrant]] = {}
        self._lock = asyncio.Lock()
        self._load()

    def _load(self) -> None:
        """Load documents from disk."""
        if not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            documents = [
                TemporaryRoleDocument.model_validate(doc)
                for doc in raw.get("temporary_roles", [])
            ]
            supporters = {
                guild_id: {
                    user_id: SupporterGrant.model_validate(record)
                    for user_id, record in users.items()
                }
                for guild_id, users in raw.get("supporters", {}).items()
            }
        except (json.JSONDecodeError, ValidationError, AttributeError, IOError) as e:
            logger.error(f"Failed to read {self.path}, starting empty: {e}")
            return

        self._documents = documents
        self._supporters = supporters
        logger.info(f"Loaded {len(self._documents)} temporary role documents from {self.path}")

    def _save(self) -> None:
        """Write all documents to disk."""
        payload: dict[str, Any] = {
            "temporary_roles": [doc.model_dump(mode="json") for doc in self._documents],
            "supporters": {
                guild_id: {
                    user_id: record.model_dump(mode="json")
                    for user_id, record in users.items()
                }
                for guild_id, users in self._supporters.items()
            },
        }
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            tmp_path.replace(self.path)
        except OSError as e:
            raise StorageError(f"Failed to write {self.path}: {e}") from e

    def _strip_users(self, guild_id: int, role_id: int, user_ids: set[int]) -> None:
        """Remove users from every document for the guild and role."""
        kept: list[TemporaryRoleDocument] = []
        for doc in self._documents:
            if doc.guild_id != guild_id or doc.role_id != role_id:
                kept.append(doc)
                continue
            if doc.user_ids is not None:
                remaining = [u for u in doc.user_ids if u not in user_ids]
                if remaining:
                    kept.append(doc.model_copy(update={"user_ids": remaining}))
            elif doc.user_id not in user_ids:
                kept.append(doc)
        self._documents = kept

    # ========================================================================
    # Temporary Roles
    # ========================================================================

    async def add_temporary_role(
        self,
        guild_id: int,
        user_id: int,
        role_id: int,
        expires_at: datetime,
        notify_expiry: bool = False,
    ) -> bool:
        """
        Upsert a single-user grant.

        Returns:
            True if the grant was written, False otherwise.
        """
        async with self._lock:
            snapshot = list(self._documents)
            self._strip_users(guild_id, role_id, {user_id})
            self._documents.append(
                TemporaryRoleDocument(
                    guild_id=guild_id,
                    user_id=user_id,
                    role_id=role_id,
                    expires_at=expires_at,
                    notify_expiry=notify_expiry,
                )
            )
            try:
                self._save()
            except StorageError as e:
                logger.error(str(e))
                self._documents = snapshot
                return False
        return True

    async def add_multiple_temporary_roles(
        self,
        guild_id: int,
        user_ids: list[int],
        role_id: int,
        expires_at: datetime,
        notify_expiry: bool = False,
    ) -> None:
        """
        Insert one document covering several users.

        Raises:
            StorageError: If the document could not be written.
        """
        async with self._lock:
            snapshot = list(self._documents)
            self._strip_users(guild_id, role_id, set(user_ids))
            self._documents.append(
                TemporaryRoleDocument(
                    guild_id=guild_id,
                    user_ids=list(user_ids),
                    role_id=role_id,
                    expires_at=expires_at,
                    notify_expiry=notify_expiry,
                )
            )
            try:
                self._save()
            except StorageError:
                self._documents = snapshot
                raise

    async def remove_temporary_role(self, guild_id: int, user_id: int, role_id: int) -> bool:
        """
        Remove a user's grant for a role, from single or multi-user documents.

        Returns:
            True if a grant was removed.
        """
        async with self._lock:
            before = sum(
                1 for g in self._iter_grants()
                if (g.guild_id, g.user_id, g.role_id) == (guild_id, user_id, role_id)
            )
            if not before:
                return False
            snapshot = list(self._documents)
            self._strip_users(guild_id, role_id, {user_id})
            try:
                self._save()
            except StorageError as e:
                logger.error(str(e))
                self._documents = snapshot
                return False
        return True

    def _iter_grants(self):
        for doc in self._documents:
            yield from doc.grants()

    async def get_all_temporary_roles(self) -> dict[int, dict[int, dict[int, TemporaryRoleGrant]]]:
        """Get every grant as guild_id -> user_id -> role_id -> grant."""
        result: dict[int, dict[int, dict[int, TemporaryRoleGrant]]] = {}
        for grant in self._iter_grants():
            result.setdefault(grant.guild_id, {}).setdefault(grant.user_id, {})[grant.role_id] = grant
        return result

    async def find_expired(self, now: Optional[datetime] = None) -> list[TemporaryRoleGrant]:
        """Get every grant whose expiry has passed."""
        now = now or datetime.now(timezone.utc)
        return [g for g in self._iter_grants() if g.is_expired(now)]

    async def delete_grants(self, grants: list[TemporaryRoleGrant]) -> int:
        """
        Delete a batch of grants.

        Returns:
            Number of grants that were present and removed.

        Raises:
            StorageError: If the deletion could not be written.
        """
        async with self._lock:
            snapshot = list(self._documents)
            present = {(g.guild_id, g.user_id, g.role_id) for g in self._iter_grants()}
            removed = 0
            for grant in grants:
                key = (grant.guild_id, grant.user_id, grant.role_id)
                if key in present:
                    self._strip_users(grant.guild_id, grant.role_id, {grant.user_id})
                    present.discard(key)
                    removed += 1
            if removed:
                try:
                    self._save()
                except StorageError:
                    self._documents = snapshot
                    raise
        return removed

    # ========================================================================
    # Supporters
    # ========================================================================

    async def add_supporter(
        self,
        guild_id: int,
        user_id: int,
        role_id: int,
        assigned_at: datetime,
        reason: str,
    ) -> bool:
        """Record a permanent supporter role for a user."""
        async with self._lock:
            guild = self._supporters.setdefault(str(guild_id), {})
            previous = guild.get(str(user_id))
            guild[str(user_id)] = SupporterGrant(
                guild_id=guild_id,
                user_id=user_id,
                role_id=role_id,
                assigned_at=assigned_at,
                reason=reason,
            )
            try:
                self._save()
            except StorageError as e:
                logger.error(str(e))
                if previous is None:
                    del guild[str(user_id)]
                else:
                    guild[str(user_id)] = previous
                return False
        return True

    async def remove_supporter(self, guild_id: int, user_id: int) -> bool:
        """Delete a supporter record. Returns False if none existed."""
        async with self._lock:
            guild = self._supporters.get(str(guild_id), {})
            record = guild.pop(str(user_id), None)
            if record is None:
                return False
            try:
                self._save()
            except StorageError as e:
                logger.error(str(e))
                guild[str(user_id)] = record
                return False
        return True

    async def get_supporters(self, guild_id: int) -> list[SupporterGrant]:
        """Get all supporter records for a guild."""
        return list(self._supporters.get(str(guild_id), {}).values())
