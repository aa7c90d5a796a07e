"""
Temporary Roles Module for Role Reactor.

This module contains the TemporaryRoleManager class, which keeps a member's
Discord role and the durable record of that role's expiry in step:

- a role is recorded only after Discord accepted the grant
- a grant whose record cannot be written is rolled back on Discord
- bulk grants resolve the guild and role once and mutate in one batch call

Expected failures (missing guild/member/role, Discord rejections, storage
errors) are logged and reported through return values, never raised.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from discord import Forbidden, HTTPException

from gateway import RoleGateway
from notifications import NotificationDispatcher
from storage import StorageError, SupporterGrant, TemporaryRoleGrant, TemporaryRoleStore

logger = logging.getLogger("reactor.temp_roles")

MAX_USERS_PER_ASSIGNMENT = 10

ROLLBACK_REASON = "Failed to store temporary role in database"

GATEWAY_ERRORS = (Forbidden, HTTPException, asyncio.TimeoutError)


def assignment_reason(expires_at: datetime) -> str:
    """Audit log reason for a temporary role grant."""
    return f"Temporary role assignment - expires at {expires_at.isoformat()}"


# ============================================================================
# Result Classes
# ============================================================================


@dataclass
class MemberAssignmentResult:
    """Outcome of a bulk grant for one user."""
    user_id: Any
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"user_id": self.user_id, "success": self.success}
        if self.message is not None:
            data["message"] = self.message
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class BulkAssignmentResult:
    """Report returned by a bulk grant. Not persisted."""
    success: int = 0
    failed: int = 0
    results: list[MemberAssignmentResult] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }
        if self.error is not None:
            data["error"] = self.error
        return data


# ============================================================================
# Temporary Role Manager
# ============================================================================


class TemporaryRoleManager:
    """
    Grants, revokes and lists temporary roles.

    Grants touch both Discord (through the gateway) and the store; revokes
    touch the store only. Callers removing a role early are expected to
    remove it on Discord themselves.
    """

    def __init__(
        self,
        gateway: RoleGateway,
        store: TemporaryRoleStore,
        notifier: Optional[NotificationDispatcher] = None,
        max_users_per_assignment: int = MAX_USERS_PER_ASSIGNMENT,
    ):
        """
        Initialize the manager.

        Args:
            gateway: Access to guilds, members and roles.
            store: Durable record of grants.
            notifier: Dispatcher for DM notifications.
            max_users_per_assignment: Bulk cap, enforced before any Discord call.
        """
        self.gateway = gateway
        self.store = store
        self.notifier = notifier or NotificationDispatcher()
        self.max_users_per_assignment = max_users_per_assignment

    # ========================================================================
    # Single Grants
    # ========================================================================

    async def grant_temporary_role(
        self,
        guild_id: int,
        user_id: int,
        role_id: int,
        expires_at: datetime,
        notify_expiry: bool = False,
    ) -> bool:
        """
        Give a member a role that expires, and record it.

        Args:
            guild_id: Guild to operate in.
            user_id: Member receiving the role.
            role_id: Role to grant.
            expires_at: When the expiry sweep should remove the role.
            notify_expiry: Whether the member is DMed when the role expires.

        Returns:
            True if the member holds the role and the grant is recorded.
        """
        guild = self.gateway.resolve_guild(guild_id)
        if not guild:
            logger.error(f"Guild {guild_id} not found for temporary role assignment")
            return False

        member = await self.gateway.resolve_member(guild, user_id)
        if not member:
            logger.error(f"Member {user_id} not found in guild {guild_id}")
            return False

        role = self.gateway.resolve_role(guild, role_id)
        if not role:
            logger.error(f"Role {role_id} not found in guild {guild_id}")
            return False

        granted_now = False
        if self.gateway.has_role(member, role):
            logger.info(f"User {user_id} already has role {role.name}, skipping Discord assignment")
        else:
            try:
                await self.gateway.grant_role(member, role, assignment_reason(expires_at))
            except GATEWAY_ERRORS as e:
                logger.error(f"Failed to assign role {role.name} to user {user_id}: {e}")
                return False
            granted_now = True
            logger.info(f"Assigned temporary role {role.name} to user {user_id}")

        try:
            stored = await self.store.add_temporary_role(guild_id, user_id, role_id, expires_at, notify_expiry)
        except StorageError as e:
            logger.error(f"Storage error for temporary role of user {user_id}: {e}")
            stored = False

        if stored:
            return True

        logger.error(f"Failed to store temporary role for user {user_id}")
        if granted_now:
            try:
                await self.gateway.revoke_role(member, role, ROLLBACK_REASON)
                logger.info(f"Removed role {role.name} from user {user_id} due to storage failure")
            except GATEWAY_ERRORS as e:
                logger.error(f"Failed to roll back role {role.name} for user {user_id}: {e}")
        return False

    async def assign_temporary_role(
        self,
        guild_id: int,
        user_id: int,
        role_id: int,
        expires_at: datetime,
        notify: bool = False,
        notify_expiry: bool = False,
    ) -> BulkAssignmentResult:
        """
        Grant one member a temporary role, reported the same way as a bulk grant.

        Members who already hold the role are recorded but not notified.
        """
        guild = self.gateway.resolve_guild(guild_id)
        member = await self.gateway.resolve_member(guild, user_id) if guild else None
        role = self.gateway.resolve_role(guild, role_id) if guild else None
        already_held = bool(member and role and self.gateway.has_role(member, role))

        if not await self.grant_temporary_role(guild_id, user_id, role_id, expires_at, notify_expiry):
            return BulkAssignmentResult(
                success=0,
                failed=1,
                results=[MemberAssignmentResult(user_id, False, error="Failed to assign role")],
            )

        if already_held:
            return BulkAssignmentResult(
                success=1,
                results=[MemberAssignmentResult(user_id, True, message="Already has role")],
            )

        if notify:
            self.notifier.notify_assignment(member, role, expires_at, guild)
        return BulkAssignmentResult(
            success=1,
            results=[MemberAssignmentResult(user_id, True, message="Role assigned")],
        )

    async def revoke_temporary_role(self, guild_id: int, user_id: int, role_id: int) -> bool:
        """
        Delete the record of a temporary role.

        The Discord role itself is left untouched.

        Returns:
            True if a record was removed.
        """
        try:
            return await self.store.remove_temporary_role(guild_id, user_id, role_id)
        except StorageError as e:
            logger.error(f"Failed to remove temporary role record for user {user_id}: {e}")
            return False

    async def remove_temporary_roles(
        self,
        guild,
        role,
        user_ids: list[int],
        reason: str,
        removed_by=None,
        notify: bool = False,
    ) -> list[tuple[int, bool, str]]:
        """
        Take a role away from members before it expires.

        Each member loses the Discord role first; only then is the record
        revoked, so a rejected removal leaves the grant to expire normally.

        Returns:
            One (user_id, removed, detail) tuple per user, in input order.
        """
        results: list[tuple[int, bool, str]] = []
        for user_id in user_ids:
            member = await self.gateway.resolve_member(guild, user_id)
            if not member:
                results.append((user_id, False, "User not found"))
                continue
            if not self.gateway.has_role(member, role):
                results.append((user_id, False, "User does not have this role"))
                continue
            try:
                await self.gateway.revoke_role(member, role, f"Temporary role removed: {reason}")
            except GATEWAY_ERRORS as e:
                logger.error(f"Failed to remove role {role.name} from user {user_id}: {e}")
                results.append((user_id, False, "Failed to remove role"))
                continue

            was_temporary = await self.revoke_temporary_role(guild.id, user_id, role.id)
            results.append((user_id, True, "Role removed" if was_temporary else "Role removed (not temporary)"))
            if notify and removed_by is not None:
                self.notifier.notify_removal(member, role, guild, reason, removed_by)
        return results

    # ========================================================================
    # Bulk Grants
    # ========================================================================

    async def grant_temporary_roles_bulk(
        self,
        guild_id: int,
        user_ids: list[int],
        role_id: int,
        expires_at: datetime,
        notify: bool = False,
        notify_expiry: bool = False,
    ) -> BulkAssignmentResult:
        """
        Give several members a temporary role in one batch.

        Args:
            guild_id: Guild to operate in.
            user_ids: Members to grant, at most ``max_users_per_assignment``.
            role_id: Role to grant.
            expires_at: When the role should be removed.
            notify: DM each newly granted member now.
            notify_expiry: DM members when the role expires.

        Returns:
            BulkAssignmentResult with one entry per attempted user.
        """
        if len(user_ids) > self.max_users_per_assignment:
            error = (
                f"Too many users. Maximum allowed: {self.max_users_per_assignment}, "
                f"requested: {len(user_ids)}"
            )
            logger.warning(error)
            return BulkAssignmentResult(
                success=0,
                failed=len(user_ids),
                results=[MemberAssignmentResult("system", False, error=error)],
                error=error,
            )

        guild = self.gateway.resolve_guild(guild_id)
        if not guild:
            logger.error(f"Guild {guild_id} not found for temporary role assignment")
            return BulkAssignmentResult(success=0, failed=len(user_ids))

        role = self.gateway.resolve_role(guild, role_id)
        if not role:
            logger.error(f"Role {role_id} not found in guild {guild_id}")
            return BulkAssignmentResult(success=0, failed=len(user_ids))

        results: list[MemberAssignmentResult] = []
        pending: list[tuple[int, Any]] = []

        for user_id in user_ids:
            member = await self.gateway.resolve_member(guild, user_id)
            if not member:
                logger.error(f"User {user_id} not found in guild {guild_id}")
                results.append(MemberAssignmentResult(user_id, False, error="User not found"))
                continue
            if self.gateway.has_role(member, role):
                logger.info(f"User {user_id} already has role {role.name}")
                results.append(MemberAssignmentResult(user_id, True, message="Already has role"))
                continue
            pending.append((user_id, member))

        granted: list[tuple[int, Any]] = []
        if pending:
            outcomes = await self.gateway.bulk_grant_role(
                [(member, role) for _, member in pending],
                assignment_reason(expires_at),
            )
            for (user_id, member), outcome in zip(pending, outcomes):
                if outcome.success:
                    results.append(MemberAssignmentResult(user_id, True, message="Role assigned"))
                    granted.append((user_id, member))
                else:
                    results.append(
                        MemberAssignmentResult(
                            user_id,
                            False,
                            error=outcome.error or "Failed to assign role",
                        )
                    )

        if notify:
            for _, member in granted:
                self.notifier.notify_assignment(member, role, expires_at, guild)

        success_count = sum(1 for r in results if r.success)
        failed_count = len(results) - success_count

        if success_count > 0:
            # The whole requested list is recorded, including users that failed above
            try:
                await self.store.add_multiple_temporary_roles(
                    guild_id, list(user_ids), role_id, expires_at, notify_expiry
                )
                logger.info(f"Stored temporary role assignment for {success_count} users")
            except (StorageError, OSError) as e:
                logger.error(f"Failed to store temporary roles: {e}")
                await self._rollback(granted, role)
                return BulkAssignmentResult(success=0, failed=len(user_ids), results=results)

        return BulkAssignmentResult(success=success_count, failed=failed_count, results=results)

    async def _rollback(self, granted: list[tuple[int, Any]], role) -> None:
        """Undo grants made by this call after a storage failure."""
        if not granted:
            return
        outcomes = await self.gateway.bulk_revoke_role(
            [(member, role) for _, member in granted],
            ROLLBACK_REASON,
        )
        for (user_id, _), outcome in zip(granted, outcomes):
            if outcome.success:
                logger.info(f"Removed role {role.name} from user {user_id} due to storage failure")
            else:
                logger.error(f"Failed to roll back role {role.name} for user {user_id}: {outcome.error}")

    # ========================================================================
    # Read Accessors
    # ========================================================================

    async def get_user_temporary_roles(self, guild_id: int, user_id: int) -> list[TemporaryRoleGrant]:
        """Get a member's active temporary roles in a guild."""
        try:
            all_roles = await self.store.get_all_temporary_roles()
        except StorageError as e:
            logger.error(f"Failed to read temporary roles: {e}")
            return []
        return list(all_roles.get(guild_id, {}).get(user_id, {}).values())

    async def get_temporary_roles_for_guild(self, guild_id: int) -> list[TemporaryRoleGrant]:
        """Get every temporary role in a guild, soonest expiry first."""
        try:
            all_roles = await self.store.get_all_temporary_roles()
        except StorageError as e:
            logger.error(f"Failed to read temporary roles: {e}")
            return []
        grants = [
            grant
            for user_roles in all_roles.get(guild_id, {}).values()
            for grant in user_roles.values()
        ]
        return sorted(grants, key=lambda g: g.expires_at)

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
        """Record a permanent supporter role."""
        added = await self.store.add_supporter(guild_id, user_id, role_id, assigned_at, reason)
        if added:
            logger.info(f"Added supporter role for user {user_id} in guild {guild_id}")
        return added

    async def remove_supporter(self, guild_id: int, user_id: int) -> bool:
        """Delete a supporter record."""
        removed = await self.store.remove_supporter(guild_id, user_id)
        if removed:
            logger.info(f"Removed supporter role for user {user_id} in guild {guild_id}")
        return removed

    async def get_supporters(self, guild_id: int) -> list[SupporterGrant]:
        """List a guild's supporters."""
        return await self.store.get_supporters(guild_id)
