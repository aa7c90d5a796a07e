"""Embeds for slash command replies."""

from __future__ import annotations

from typing import Optional

import discord

from durations import discord_timestamp, format_remaining_time
from storage import SupporterGrant, TemporaryRoleGrant
from temp_roles import BulkAssignmentResult

MAX_LIST_ENTRIES = 25


def error_embed(title: str, description: str, solution: Optional[str] = None) -> discord.Embed:
    """Build a red error embed."""
    embed = discord.Embed(
        title=f"❌ {title}",
        description=description,
        color=discord.Color.red(),
    )
    if solution:
        embed.add_field(name="💡 Solution", value=solution, inline=False)
    return embed


def assignment_embed(
    role: discord.Role,
    duration_text: str,
    reason: str,
    result: BulkAssignmentResult,
) -> discord.Embed:
    """Summarise a temporary role assignment."""
    if result.failed == 0:
        color = discord.Color.green()
    elif result.success == 0:
        color = discord.Color.red()
    else:
        color = discord.Color.orange()

    embed = discord.Embed(
        title="⏰ Temporary Role Assignment",
        description=f"Assigned **{role.name}** for **{duration_text}**",
        color=color,
        timestamp=discord.utils.utcnow(),
    )
    embed.add_field(name="📝 Reason", value=reason, inline=False)

    lines = []
    for entry in result.results[:MAX_LIST_ENTRIES]:
        target = f"<@{entry.user_id}>" if entry.user_id != "system" else "System"
        if entry.success:
            lines.append(f"✅ {target} - {entry.message or 'Role assigned'}")
        else:
            lines.append(f"❌ {target} - {entry.error or 'Failed'}")
    if lines:
        embed.add_field(name="👥 Results", value="\n".join(lines)[:1024], inline=False)

    embed.set_footer(text=f"✅ {result.success} succeeded | ❌ {result.failed} failed")
    return embed


def temp_roles_list_embed(
    guild: discord.Guild,
    grants: list[TemporaryRoleGrant],
    target: Optional[discord.abc.User] = None,
) -> discord.Embed:
    """List temporary roles for a guild or one member."""
    title = f"⏰ Temporary Roles for {target.display_name}" if target else "⏰ Temporary Roles"
    embed = discord.Embed(
        title=title,
        color=discord.Color.blue(),
        timestamp=discord.utils.utcnow(),
    )

    lines = []
    for grant in grants[:MAX_LIST_ENTRIES]:
        role = guild.get_role(grant.role_id)
        role_text = role.mention if role else f"Unknown Role ({grant.role_id})"
        remaining = format_remaining_time(grant.expires_at)
        line = f"<@{grant.user_id}> • {role_text} • {remaining} ({discord_timestamp(grant.expires_at)})"
        if grant.notify_expiry:
            line += " 🔔"
        lines.append(line)

    embed.description = "\n".join(lines) if lines else "No temporary roles found."
    if len(grants) > MAX_LIST_ENTRIES:
        embed.set_footer(text=f"Showing {MAX_LIST_ENTRIES} of {len(grants)} temporary roles")
    else:
        embed.set_footer(text=f"{len(grants)} temporary role(s)")
    return embed


def removal_embed(
    role: discord.Role,
    reason: str,
    results: list[tuple[int, bool, str]],
) -> discord.Embed:
    """Summarise an early temporary role removal."""
    success = sum(1 for _, ok, _ in results if ok)
    failed = len(results) - success
    embed = discord.Embed(
        title="🗑️ Temporary Role Removal",
        description=f"Removed **{role.name}**",
        color=discord.Color.green() if failed == 0 else discord.Color.orange(),
        timestamp=discord.utils.utcnow(),
    )
    embed.add_field(name="📝 Reason", value=reason, inline=False)
    lines = [
        f"{'✅' if ok else '❌'} <@{user_id}> - {detail}"
        for user_id, ok, detail in results[:MAX_LIST_ENTRIES]
    ]
    if lines:
        embed.add_field(name="👥 Results", value="\n".join(lines)[:1024], inline=False)
    embed.set_footer(text=f"✅ {success} removed | ❌ {failed} failed")
    return embed


def supporters_embed(guild: discord.Guild, supporters: list[SupporterGrant]) -> discord.Embed:
    """List a guild's supporters."""
    embed = discord.Embed(title="💖 Supporters", color=discord.Color.purple())
    if not supporters:
        embed.description = "No supporters recorded. Use `/supporters add` to add one."
        return embed

    lines = []
    for record in supporters[:MAX_LIST_ENTRIES]:
        role = guild.get_role(record.role_id)
        role_text = role.mention if role else f"Unknown Role ({record.role_id})"
        lines.append(
            f"<@{record.user_id}> • {role_text} • since {discord_timestamp(record.assigned_at, 'D')}"
            f"\n   ↳ _{record.reason}_"
        )
    embed.description = "\n".join(lines)
    embed.set_footer(text=f"{len(supporters)} supporter(s)")
    return embed
