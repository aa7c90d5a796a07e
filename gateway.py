"""
Role Gateway Module for Role Reactor.

Wraps the discord.py guild, member and role APIs used by the temporary
role manager and the expiry scheduler. Member lookups go through a TTL
cache, and bulk role changes are batched behind a soft rate limiter.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

import discord
from discord import Forbidden, Guild, HTTPException, Member, NotFound, Role

logger = logging.getLogger("reactor.gateway")


# ============================================================================
# Result Classes
# ============================================================================


@dataclass
class RoleOperationResult:
    """Outcome of a single member/role mutation."""
    success: bool
    member_id: int
    role_id: int
    error: Optional[str] = None


# ============================================================================
# Member Cache
# ============================================================================


class MemberCache:
    """
    Short-lived cache of fetched guild members.

    Entries expire after ``ttl`` seconds; ``cleanup`` evicts stale entries
    and ``max_size`` bounds the number kept.
    """

    def __init__(self, ttl: float = 300.0, max_size: int = 5000):
        self.ttl = ttl
        self.max_size = max_size
        self._entries: dict[tuple[int, int], tuple[Member, float]] = {}

    def get(self, guild_id: int, user_id: int) -> Optional[Member]:
        """Get a cached member if still fresh."""
        key = (guild_id, user_id)
        cached = self._entries.get(key)
        if cached and time.monotonic() - cached[1] < self.ttl:
            return cached[0]
        self._entries.pop(key, None)
        return None

    def set(self, guild_id: int, user_id: int, member: Member) -> None:
        """Store a member."""
        if len(self._entries) >= self.max_size:
            self.cleanup()
            if len(self._entries) >= self.max_size:
                oldest = min(self._entries, key=lambda k: self._entries[k][1])
                del self._entries[oldest]
        self._entries[(guild_id, user_id)] = (member, time.monotonic())

    def invalidate(self, guild_id: int, user_id: int) -> None:
        """Drop a single member."""
        self._entries.pop((guild_id, user_id), None)

    def cleanup(self) -> int:
        """Evict expired entries. Returns the number removed."""
        now = time.monotonic()
        stale = [k for k, (_, ts) in self._entries.items() if now - ts >= self.ttl]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# ============================================================================
# Rate Limiter
# ============================================================================


class RateLimiter:
    """
    Soft rate limiter for role mutations.

    - Tracks a rolling one-minute window of calls
    - Slows down progressively as the window fills
    - Waits out the window when the limit is reached
    """

    def __init__(
        self,
        max_calls_per_minute: int = 50,
        min_delay_seconds: float = 0.0,
        batch_delay_seconds: float = 0.1,
    ):
        """
        Initialize the rate limiter.

        Args:
            max_calls_per_minute: Maximum calls allowed per rolling minute.
            min_delay_seconds: Minimum delay between calls in seconds.
            batch_delay_seconds: Pause between batches of a bulk operation.
        """
        self.max_calls_per_minute = max_calls_per_minute
        self.min_delay = min_delay_seconds
        self.batch_delay_seconds = batch_delay_seconds
        self._call_times: list[float] = []
        self._lock = asyncio.Lock()
        self._last_call_time: float = 0

    async def acquire(self) -> None:
        """Wait until a call is allowed."""
        async with self._lock:
            now = asyncio.get_event_loop().time()

            time_since_last = now - self._last_call_time
            if time_since_last < self.min_delay:
                await asyncio.sleep(self.min_delay - time_since_last)
                now = asyncio.get_event_loop().time()

            self._call_times = [t for t in self._call_times if now - t < 60]

            call_count = len(self._call_times)
            if call_count >= self.max_calls_per_minute:
                wait_time = 60 - (now - self._call_times[0]) + 1.0
                if wait_time > 0:
                    logger.warning(f"Rate limit reached, waiting {wait_time:.2f}s")
                    await asyncio.sleep(wait_time)
            elif call_count >= self.max_calls_per_minute * 0.8:
                logger.debug(f"Approaching rate limit ({call_count}/{self.max_calls_per_minute})")
                await asyncio.sleep(0.5)

            self._call_times.append(asyncio.get_event_loop().time())
            self._last_call_time = asyncio.get_event_loop().time()

    async def batch_delay(self) -> None:
        """Pause between batches."""
        await asyncio.sleep(self.batch_delay_seconds)


# ============================================================================
# Role Gateway
# ============================================================================


class RoleGateway:
    """
    Access to Discord guilds, members and roles for role management.

    All mutation methods raise ``discord.Forbidden`` / ``discord.HTTPException``
    on failure except the bulk variants, which report per-pair outcomes.
    """

    BULK_BATCH_SIZE = 5

    def __init__(
        self,
        client: discord.Client,
        member_cache: Optional[MemberCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        request_timeout: float = 15.0,
    ):
        """
        Initialize the gateway.

        Args:
            client: The connected discord.py client.
            member_cache: Cache used by ``resolve_member``.
            rate_limiter: Limiter applied to role mutations.
            request_timeout: Seconds before a single mutation is abandoned.
        """
        self.client = client
        self.member_cache = member_cache or MemberCache()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.request_timeout = request_timeout

    # ========================================================================
    # Lookups
    # ========================================================================

    def resolve_guild(self, guild_id: int) -> Optional[Guild]:
        """Get a guild from the client cache."""
        return self.client.get_guild(guild_id)

    async def resolve_member(self, guild: Guild, user_id: int) -> Optional[Member]:
        """Get a member, fetching from the API on a cache miss."""
        cached = self.member_cache.get(guild.id, user_id)
        if cached is not None:
            return cached

        member = guild.get_member(user_id)
        if member is None:
            try:
                member = await guild.fetch_member(user_id)
            except (NotFound, Forbidden, HTTPException) as e:
                logger.debug(f"Failed to fetch member {user_id} in guild {guild.id}: {e}")
                return None

        self.member_cache.set(guild.id, user_id, member)
        return member

    def resolve_role(self, guild: Guild, role_id: int) -> Optional[Role]:
        """Get a role from the guild cache."""
        return guild.get_role(role_id)

    def has_role(self, member: Member, role: Role) -> bool:
        """Check whether the member currently holds the role."""
        return member.get_role(role.id) is not None

    def check_bot_permissions(self, guild: Guild, *required: str) -> tuple[bool, str]:
        """
        Check if the bot has the required permissions in a guild.

        Returns:
            Tuple of (has_permissions, error_message).
        """
        bot_member = guild.me
        if not bot_member:
            return False, "Bot member not found in guild"

        permissions = bot_member.guild_permissions
        missing = [perm for perm in required if not getattr(permissions, perm, False)]
        if missing:
            return False, f"Missing permissions: {', '.join(missing)}"
        return True, ""

    def can_manage_role(self, guild: Guild, role: Role) -> tuple[bool, str]:
        """
        Check whether a role may be assigned by the bot.

        Returns:
            Tuple of (allowed, error_message).
        """
        if role.managed:
            return False, f"The role **{role.name}** is managed by Discord or an integration and cannot be assigned."
        if role.tags is not None and role.tags.bot_id:
            return False, f"The role **{role.name}** is a bot role and cannot be assigned."
        bot_member = guild.me
        if bot_member is None or role.position >= bot_member.top_role.position:
            return False, f"The role **{role.name}** is higher than or equal to my highest role."
        return True, ""

    # ========================================================================
    # Mutations
    # ========================================================================

    async def grant_role(self, member: Member, role: Role, reason: str) -> None:
        """Add a role to a member."""
        await self.rate_limiter.acquire()
        await asyncio.wait_for(member.add_roles(role, reason=reason), timeout=self.request_timeout)
        self.member_cache.invalidate(member.guild.id, member.id)

    async def revoke_role(self, member: Member, role: Role, reason: str) -> None:
        """Remove a role from a member."""
        await self.rate_limiter.acquire()
        await asyncio.wait_for(member.remove_roles(role, reason=reason), timeout=self.request_timeout)
        self.member_cache.invalidate(member.guild.id, member.id)

    async def bulk_grant_role(
        self,
        assignments: list[tuple[Member, Role]],
        reason: str,
    ) -> list[RoleOperationResult]:
        """
        Add roles to many members.

        Returns:
            One result per input pair, in input order.
        """
        return await self._bulk(assignments, reason, self.grant_role, "add")

    async def bulk_revoke_role(
        self,
        removals: list[tuple[Member, Role]],
        reason: str,
    ) -> list[RoleOperationResult]:
        """
        Remove roles from many members.

        Returns:
            One result per input pair, in input order.
        """
        return await self._bulk(removals, reason, self.revoke_role, "remove")

    async def _bulk(self, pairs, reason, operation, verb: str) -> list[RoleOperationResult]:
        results: list[RoleOperationResult] = []

        async def run(member: Member, role: Role) -> RoleOperationResult:
            try:
                await operation(member, role, reason)
                return RoleOperationResult(True, member.id, role.id)
            except Forbidden:
                error = "Bot lacks permission to manage this role"
            except HTTPException as e:
                error = f"Discord API error: {e.text}"
            except asyncio.TimeoutError:
                error = "Timed out waiting for Discord"
            logger.error(f"Failed to {verb} role {role.name} for {member}: {error}")
            return RoleOperationResult(False, member.id, role.id, error)

        for start in range(0, len(pairs), self.BULK_BATCH_SIZE):
            batch = pairs[start:start + self.BULK_BATCH_SIZE]
            results.extend(await asyncio.gather(*(run(m, r) for m, r in batch)))
            if start + self.BULK_BATCH_SIZE < len(pairs):
                await self.rate_limiter.batch_delay()

        return results
