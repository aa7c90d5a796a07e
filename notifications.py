"""
Notification Module for Role Reactor.

Direct-message notifications for temporary role assignment, removal and
expiry. Every notification runs as a fire-and-forget task: delivery never
blocks or fails the role operation that triggered it, but its outcome is
recorded and can be inspected or awaited.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import discord

from durations import discord_timestamp, format_timedelta

logger = logging.getLogger("reactor.notifications")

FOOTER_TEXT = "Role Reactor"


@dataclass
class NotificationOutcome:
    """Result of one DM attempt."""
    user_id: int
    kind: str
    delivered: bool
    error: Optional[str] = None


# ============================================================================
# Embed Builders
# ============================================================================


def build_assignment_embed(role: discord.Role, expires_at: datetime, guild: discord.Guild) -> discord.Embed:
    """Build the DM embed sent when a temporary role is assigned."""
    remaining = expires_at - datetime.now(timezone.utc)
    embed = discord.Embed(
        title="Role Assignment Notification",
        description=f"You have been assigned the **{role.name}** role in **{guild.name}**",
        color=role.color if role.color.value else discord.Color.green(),
        timestamp=discord.utils.utcnow(),
    )
    embed.add_field(
        name="Duration",
        value=f"{format_timedelta(remaining)} • Expires {discord_timestamp(expires_at)}",
        inline=False,
    )
    embed.set_footer(text=f"{FOOTER_TEXT} • {guild.name}")
    return embed


def build_removal_embed(
    role: discord.Role,
    guild: discord.Guild,
    reason: Optional[str],
    removed_by: discord.abc.User,
) -> discord.Embed:
    """Build the DM embed sent when a role is removed by a moderator."""
    embed = discord.Embed(
        title="Role Removal Notification",
        description=f"Your **{role.name}** role has been removed from **{guild.name}**",
        color=discord.Color.orange(),
        timestamp=discord.utils.utcnow(),
    )
    embed.add_field(name="Removed by", value=removed_by.name, inline=True)
    embed.add_field(name="Reason", value=reason or "No reason provided", inline=True)
    embed.add_field(
        name="Timestamp",
        value=discord_timestamp(datetime.now(timezone.utc), "F"),
        inline=False,
    )
    embed.set_footer(text=f"{FOOTER_TEXT} • {guild.name}")
    return embed


def build_expiry_embed(role: discord.Role, guild: discord.Guild) -> discord.Embed:
    """Build the DM embed sent when a temporary role expires."""
    embed = discord.Embed(
        title="⏰ Role Expired",
        description=f"Your **{role.name}** role in **{guild.name}** has been automatically removed",
        color=discord.Color.red(),
        timestamp=discord.utils.utcnow(),
    )
    embed.add_field(
        name="Expired",
        value=discord_timestamp(datetime.now(timezone.utc)),
        inline=False,
    )
    embed.set_footer(text=f"{FOOTER_TEXT} • {guild.name}")
    return embed


# ============================================================================
# Dispatcher
# ============================================================================


class NotificationDispatcher:
    """
    Sends DM notifications as background tasks.

    Outcomes are appended to ``history`` (bounded) and pending tasks can be
    awaited with ``drain``.
    """

    def __init__(self, history_size: int = 200):
        self.history: deque[NotificationOutcome] = deque(maxlen=history_size)
        self._pending: set[asyncio.Task] = set()

    def notify_assignment(
        self,
        member: discord.Member,
        role: discord.Role,
        expires_at: datetime,
        guild: discord.Guild,
    ) -> asyncio.Task:
        """Schedule the role-assigned DM."""
        return self._dispatch(
            member,
            "assignment",
            lambda: build_assignment_embed(role, expires_at, guild),
        )

    def notify_removal(
        self,
        member: discord.Member,
        role: discord.Role,
        guild: discord.Guild,
        reason: Optional[str],
        removed_by: discord.abc.User,
    ) -> asyncio.Task:
        """Schedule the role-removed DM."""
        return self._dispatch(
            member,
            "removal",
            lambda: build_removal_embed(role, guild, reason, removed_by),
        )

    def notify_expiry(
        self,
        member: discord.Member,
        role: discord.Role,
        guild: discord.Guild,
    ) -> asyncio.Task:
        """Schedule the role-expired DM."""
        return self._dispatch(member, "expiry", lambda: build_expiry_embed(role, guild))

    def _dispatch(
        self,
        member: discord.Member,
        kind: str,
        build: Callable[[], discord.Embed],
    ) -> asyncio.Task:
        task = asyncio.create_task(self._deliver(member, kind, build))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(
        self,
        member: discord.Member,
        kind: str,
        build: Callable[[], discord.Embed],
    ) -> NotificationOutcome:
        try:
            await member.send(embed=build())
            outcome = NotificationOutcome(member.id, kind, True)
            logger.info(f"Sent {kind} notification to {member}")
        except Exception as e:
            # Delivery failures are recorded, never raised
            outcome = NotificationOutcome(member.id, kind, False, str(e))
            logger.warning(f"Failed to send {kind} notification to {member}: {e}")
        self.history.append(outcome)
        return outcome

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> list[NotificationOutcome]:
        """Wait for every pending notification and return their outcomes."""
        if not self._pending:
            return []
        done = await asyncio.gather(*list(self._pending))
        return list(done)

    def outcomes_for(self, user_id: int) -> list[NotificationOutcome]:
        return [o for o in self.history if o.user_id == user_id]
