"""
Role expiration scheduler.

Periodically sweeps the store for expired temporary roles, removes them
from members in bulk, DMs members who asked for an expiry notice, and
deletes the records.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from typing import Optional

from discord.ext import tasks

from gateway import RoleGateway
from notifications import NotificationDispatcher
from storage import StorageError, TemporaryRoleGrant, TemporaryRoleStore

logger = logging.getLogger("reactor.scheduler")

EXPIRY_REASON = "Temporary role expired"


class RoleExpirationScheduler:
    """Runs the expiry sweep on a fixed interval."""

    def __init__(
        self,
        gateway: RoleGateway,
        store: TemporaryRoleStore,
        notifier: NotificationDispatcher,
        interval_seconds: float = 60.0,
        cooldown_seconds: float = 30.0,
    ):
        self.gateway = gateway
        self.store = store
        self.notifier = notifier
        self.interval_seconds = interval_seconds
        self.cooldown_seconds = cooldown_seconds
        self._last_cleanup: Optional[float] = None
        self._loop = tasks.loop(seconds=interval_seconds)(self._tick)

    @property
    def is_running(self) -> bool:
        return self._loop.is_running()

    def start(self) -> None:
        """Start the periodic sweep. The first sweep runs immediately."""
        if self.is_running:
            logger.warning("Role expiration scheduler is already running")
            return
        self._loop.start()
        logger.info(f"Role expiration scheduler started (runs every {self.interval_seconds:.0f} seconds)")

    def stop(self) -> None:
        """Stop the periodic sweep."""
        if self.is_running:
            self._loop.cancel()
        logger.info("Role expiration scheduler stopped")

    async def _tick(self) -> None:
        try:
            await self.cleanup_expired_roles()
        except Exception:
            # Keep the loop alive; the next tick retries
            logger.exception("Error in role expiration scheduler")

    async def cleanup_expired_roles(self) -> int:
        """
        Remove every expired temporary role.

        Returns:
            Number of expired grants processed, 0 if the sweep was skipped.
        """
        now = time.monotonic()
        if self._last_cleanup is not None and now - self._last_cleanup < self.cooldown_seconds:
            logger.debug("Cleanup skipped - too soon since last run")
            return 0
        self._last_cleanup = now

        expired = await self.store.find_expired()
        if not expired:
            logger.debug("No expired temporary roles found")
            return 0

        logger.info(f"Found {len(expired)} expired temporary role(s)")

        by_guild: dict[int, list[TemporaryRoleGrant]] = defaultdict(list)
        for grant in expired:
            by_guild[grant.guild_id].append(grant)

        for guild_id, grants in by_guild.items():
            await self._process_guild(guild_id, grants)

        try:
            removed = await self.store.delete_grants(expired)
            logger.info(f"Cleaned up {removed} expired temporary role record(s)")
        except StorageError as e:
            logger.error(f"Error cleaning up expired roles from storage: {e}")

        return len(expired)

    async def _process_guild(self, guild_id: int, grants: list[TemporaryRoleGrant]) -> None:
        guild = self.gateway.resolve_guild(guild_id)
        if not guild:
            logger.warning(f"Guild {guild_id} not found, dropping {len(grants)} expired record(s)")
            return

        removals = []
        for grant in grants:
            member = await self.gateway.resolve_member(guild, grant.user_id)
            role = self.gateway.resolve_role(guild, grant.role_id)
            if not member:
                logger.warning(f"Member {grant.user_id} not found in guild {guild.name}, dropping record")
                continue
            if not role:
                logger.warning(f"Role {grant.role_id} not found in guild {guild.name}, dropping record")
                continue
            if not self.gateway.has_role(member, role):
                continue
            removals.append((grant, member, role))

        if not removals:
            return

        logger.info(f"Removing {len(removals)} expired role(s) in guild {guild.name}")
        outcomes = await self.gateway.bulk_revoke_role(
            [(member, role) for _, member, role in removals],
            EXPIRY_REASON,
        )

        failures = 0
        for (grant, member, role), outcome in zip(removals, outcomes):
            if not outcome.success:
                failures += 1
                continue
            if grant.notify_expiry:
                self.notifier.notify_expiry(member, role, guild)

        if failures:
            logger.warning(f"Failed to remove {failures} expired role(s) in guild {guild.name}")
