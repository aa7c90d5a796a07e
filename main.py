"""
Role Reactor Discord Bot - Main Entry Point.

A Discord bot that assigns temporary roles which expire automatically,
and keeps a registry of permanent supporter roles.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sys
import time
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

import discord
import yaml
from discord import app_commands, Interaction
from discord.ext import commands

from durations import format_timedelta, parse_duration, validate_duration
from embeds import (
    assignment_embed,
    error_embed,
    removal_embed,
    supporters_embed,
    temp_roles_list_embed,
)
from gateway import MemberCache, RateLimiter, RoleGateway
from notifications import NotificationDispatcher
from scheduler import RoleExpirationScheduler
from storage import TemporaryRoleStore
from temp_roles import (
    GATEWAY_ERRORS,
    MAX_USERS_PER_ASSIGNMENT,
    TemporaryRoleManager,
)

# ============================================================================
# Configuration Loading
# ============================================================================

# Numeric settings that must be positive when present
POSITIVE_SETTINGS = {
    "temp_roles": (
        "max_users_per_assignment",
        "min_duration_minutes",
        "max_duration_days",
        "member_cache_ttl_seconds",
    ),
    "scheduler": ("interval_seconds", "cooldown_seconds"),
}


def load_config(config_path: str = "config.yml") -> dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to the configuration file.

    Returns:
        Configuration dictionary.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        yaml.YAMLError: If config file is invalid.
        ValueError: If the token is missing or a numeric setting is not positive.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            "Please create a config.yml file based on config.yml.example"
        )

    with open(path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    # Validate required fields
    if not config.get("discord", {}).get("token"):
        raise ValueError("Discord token not found in config.yml")

    for section, keys in POSITIVE_SETTINGS.items():
        values = config.get(section) or {}
        for key in keys:
            value = values.get(key)
            if value is not None and (not isinstance(value, (int, float)) or value <= 0):
                raise ValueError(f"{section}.{key} must be a positive number, got {value!r}")

    return config


# ============================================================================
# Logging Setup
# ============================================================================

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(config: dict[str, Any]) -> logging.Logger:
    """
    Set up the ``reactor`` logger hierarchy.

    Console and rotating file output share one format. discord.py's own
    logger writes to the same handlers at WARNING.

    Args:
        config: Full configuration dictionary; only ``logging`` is read.

    Returns:
        The ``reactor`` logger.
    """
    log_config = config.get("logging", {})
    log_level = getattr(logging, log_config.get("level", "INFO").upper())
    log_path = Path(log_config.get("file", "logs/reactor.log"))
    formatter = logging.Formatter(log_config.get("format", DEFAULT_LOG_FORMAT))

    # Create logs directory if needed
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
        # File handler with rotation
        RotatingFileHandler(
            log_path,
            maxBytes=log_config.get("max_size_mb", 10) * 1024 * 1024,
            backupCount=log_config.get("backup_count", 5),
            encoding="utf-8",
        ),
    ]
    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(formatter)

    logger = logging.getLogger("reactor")
    logger.setLevel(log_level)
    discord_logger = logging.getLogger("discord")
    discord_logger.setLevel(logging.WARNING)

    # A repeated call replaces the handlers of the previous one
    for old in list(logger.handlers):
        logger.removeHandler(old)
        discord_logger.removeHandler(old)
        old.close()
    for handler in handlers:
        logger.addHandler(handler)
        discord_logger.addHandler(handler)

    return logger


# ============================================================================
# User List Parsing
# ============================================================================


_MENTION_PATTERN = re.compile(r"^<@!?(\d+)>$")
_USER_ID_PATTERN = re.compile(r"^\d{17,19}$")


def parse_user_list(users: str) -> tuple[list[int], list[str]]:
    """
    Parse a list of user mentions or IDs.

    Entries are separated by commas, semicolons or whitespace. Duplicates
    are dropped, order is kept.

    Returns:
        Tuple of (user_ids, invalid_entries).
    """
    user_ids: list[int] = []
    invalid: list[str] = []
    for token in re.split(r"[,;\s]+", users or ""):
        if not token:
            continue
        match = _MENTION_PATTERN.match(token)
        if match:
            user_id = int(match.group(1))
        elif _USER_ID_PATTERN.match(token):
            user_id = int(token)
        else:
            invalid.append(token)
            continue
        if user_id not in user_ids:
            user_ids.append(user_id)
    return user_ids, invalid


# ============================================================================
# Bot Class
# ============================================================================


class ReactorBot(commands.Bot):
    """
    The Role Reactor Discord bot.

    Owns the temporary role store, the Discord gateway, the notification
    dispatcher and the expiry scheduler.
    """

    def __init__(self, config: dict[str, Any]):
        """
        Initialize the bot.

        Args:
            config: Configuration dictionary loaded from config.yml.
        """
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True

        prefix = config.get("discord", {}).get("prefix", "!")

        super().__init__(
            command_prefix=prefix,
            intents=intents,
            help_command=None,
        )

        self.config = config
        self.logger = logging.getLogger("reactor.bot")
        self.started_at = time.time()

        temp_config = config.get("temp_roles", {})
        scheduler_config = config.get("scheduler", {})
        self.min_duration = timedelta(minutes=temp_config.get("min_duration_minutes", 1))
        self.max_duration = timedelta(days=temp_config.get("max_duration_days", 365))

        self.store = TemporaryRoleStore(
            config.get("storage", {}).get("path", "data/temporary_roles.json")
        )
        self.gateway = RoleGateway(
            self,
            member_cache=MemberCache(ttl=temp_config.get("member_cache_ttl_seconds", 300)),
            rate_limiter=RateLimiter(),
        )
        self.notifier = NotificationDispatcher()
        self.temp_roles = TemporaryRoleManager(
            self.gateway,
            self.store,
            self.notifier,
            max_users_per_assignment=temp_config.get(
                "max_users_per_assignment", MAX_USERS_PER_ASSIGNMENT
            ),
        )
        self.expiration_scheduler = RoleExpirationScheduler(
            self.gateway,
            self.store,
            self.notifier,
            interval_seconds=scheduler_config.get("interval_seconds", 60),
            cooldown_seconds=scheduler_config.get("cooldown_seconds", 30),
        )

    async def setup_hook(self) -> None:
        """Set up the bot before it starts."""
        self.logger.info("Setting up Role Reactor bot...")

        try:
            synced = await self.tree.sync()
            self.logger.info(f"Synced {len(synced)} slash commands")
        except discord.HTTPException as e:
            self.logger.error(f"Failed to sync commands: {e}")

    async def close(self) -> None:
        """Clean up resources when the bot shuts down."""
        self.logger.info("Shutting down Role Reactor bot...")
        self.expiration_scheduler.stop()
        await self.notifier.drain()
        await super().close()

    async def on_ready(self) -> None:
        """Handle bot ready event."""
        self.logger.info(f"Logged in as {self.user} (ID: {self.user.id})")
        self.logger.info(f"Connected to {len(self.guilds)} guilds")

        # Guild cache must be populated before the first sweep
        self.expiration_scheduler.start()

        await self.change_presence(
            activity=discord.Activity(
                type=discord.ActivityType.watching,
                name="temporary roles",
            )
        )


# ============================================================================
# Slash Commands
# ============================================================================


async def send_error(interaction: Interaction, title: str, description: str, solution: Optional[str] = None) -> None:
    """Reply with an ephemeral error embed, whether or not the response was deferred."""
    embed = error_embed(title, description, solution)
    if interaction.response.is_done():
        await interaction.followup.send(embed=embed, ephemeral=True)
    else:
        await interaction.response.send_message(embed=embed, ephemeral=True)


def setup_commands(bot: ReactorBot) -> None:
    """
    Set up slash commands for the bot.

    Args:
        bot: The ReactorBot instance.
    """

    temp_roles_group = app_commands.Group(
        name="temp-roles",
        description="Manage temporary role assignments",
        default_permissions=discord.Permissions(manage_roles=True),
        guild_only=True,
    )

    @temp_roles_group.command(
        name="assign",
        description="Assign a temporary role to users that expires after a set time",
    )
    @app_commands.describe(
        users="User mentions or IDs, separated by commas or spaces",
        role="The role to assign temporarily",
        duration="How long the role should last (e.g., 30m, 2h, 1d, 1w)",
        reason="Reason for assigning the temporary role",
        notify="Send a DM to users now (default: false)",
        notify_expiry="Send a DM when the role expires (default: false)",
    )
    @app_commands.rename(notify_expiry="notify-expiry")
    async def assign_command(
        interaction: Interaction,
        users: str,
        role: discord.Role,
        duration: str,
        reason: Optional[str] = None,
        notify: bool = False,
        notify_expiry: bool = False,
    ) -> None:
        """Assign a temporary role to one or more users."""
        guild = interaction.guild
        reason = reason or "No reason provided"
        await interaction.response.defer(ephemeral=True, thinking=True)

        has_perms, error = bot.gateway.check_bot_permissions(guild, "manage_roles")
        if not has_perms:
            await send_error(
                interaction,
                "Missing Bot Permissions",
                error,
                "Go to Server Settings → Roles → Find my role → Enable Manage Roles",
            )
            return

        allowed, error = bot.gateway.can_manage_role(guild, role)
        if not allowed:
            await send_error(
                interaction,
                "Invalid Role",
                error,
                "Move my role above this role in Server Settings → Roles, or choose a different role.",
            )
            return

        valid, error = validate_duration(duration, bot.min_duration, bot.max_duration)
        if not valid:
            await send_error(interaction, "Invalid Duration", error, "Use formats like: 30m, 2h, 1d, 1w")
            return

        user_ids, invalid = parse_user_list(users)
        if not user_ids:
            await send_error(
                interaction,
                "Invalid Users",
                "No valid users found.",
                "Provide user IDs or mentions separated by commas, semicolons, or spaces.",
            )
            return
        if invalid:
            bot.logger.warning(f"Invalid users in temporary role assignment: {', '.join(invalid)}")

        expires_at = datetime.now(timezone.utc) + parse_duration(duration)

        if len(user_ids) == 1:
            result = await bot.temp_roles.assign_temporary_role(
                guild.id, user_ids[0], role.id, expires_at, notify, notify_expiry
            )
        else:
            result = await bot.temp_roles.grant_temporary_roles_bulk(
                guild.id, user_ids, role.id, expires_at, notify, notify_expiry
            )

        if result.error:
            await send_error(interaction, "Too Many Users", result.error, "Split the assignment into smaller groups.")
            return

        await interaction.followup.send(
            embed=assignment_embed(role, format_timedelta(expires_at - datetime.now(timezone.utc)), reason, result),
            ephemeral=True,
        )
        bot.logger.info(
            f"{interaction.user} assigned temporary role {role.name} in {guild.name}: "
            f"{result.success} succeeded, {result.failed} failed"
        )

    @temp_roles_group.command(
        name="list",
        description="List temporary roles for a user or all users",
    )
    @app_commands.describe(user="The user to check (leave empty for all users)")
    async def list_command(
        interaction: Interaction,
        user: Optional[discord.Member] = None,
    ) -> None:
        """List active temporary roles."""
        guild = interaction.guild
        if user:
            grants = await bot.temp_roles.get_user_temporary_roles(guild.id, user.id)
            grants.sort(key=lambda g: g.expires_at)
        else:
            grants = await bot.temp_roles.get_temporary_roles_for_guild(guild.id)

        await interaction.response.send_message(
            embed=temp_roles_list_embed(guild, grants, user),
            ephemeral=True,
        )

    @temp_roles_group.command(
        name="remove",
        description="Remove a temporary role from users before it expires",
    )
    @app_commands.describe(
        users="User mentions or IDs, separated by commas or spaces",
        role="The temporary role to remove",
        reason="Reason for removing the temporary role",
        notify="Send a DM to users about the removal (default: false)",
    )
    async def remove_command(
        interaction: Interaction,
        users: str,
        role: discord.Role,
        reason: Optional[str] = None,
        notify: bool = False,
    ) -> None:
        """Remove a temporary role early, on Discord and in storage."""
        guild = interaction.guild
        reason = reason or "No reason provided"
        await interaction.response.defer(ephemeral=True, thinking=True)

        user_ids, _ = parse_user_list(users)
        if not user_ids:
            await send_error(
                interaction,
                "Invalid User List",
                "No valid users found.",
                "Provide user IDs or mentions separated by commas, semicolons, or spaces.",
            )
            return

        results = await bot.temp_roles.remove_temporary_roles(
            guild, role, user_ids, reason, removed_by=interaction.user, notify=notify
        )

        await interaction.followup.send(embed=removal_embed(role, reason, results), ephemeral=True)
        bot.logger.info(
            f"{interaction.user} removed temporary role {role.name} in {guild.name}: "
            f"{sum(1 for _, ok, _ in results if ok)}/{len(results)} succeeded"
        )

    bot.tree.add_command(temp_roles_group)

    supporters_group = app_commands.Group(
        name="supporters",
        description="Manage permanent supporter roles",
        default_permissions=discord.Permissions(manage_roles=True),
        guild_only=True,
    )

    @supporters_group.command(name="add", description="Give a user a permanent supporter role")
    @app_commands.describe(
        user="The supporter",
        role="The supporter role to assign",
        reason="Why this user is a supporter",
    )
    async def supporter_add_command(
        interaction: Interaction,
        user: discord.Member,
        role: discord.Role,
        reason: Optional[str] = None,
    ) -> None:
        """Assign and record a supporter role."""
        guild = interaction.guild
        reason = reason or "No reason provided"

        allowed, error = bot.gateway.can_manage_role(guild, role)
        if not allowed:
            await send_error(interaction, "Invalid Role", error)
            return

        if not bot.gateway.has_role(user, role):
            try:
                await bot.gateway.grant_role(user, role, f"Supporter role: {reason}")
            except GATEWAY_ERRORS as e:
                await send_error(interaction, "Assignment Failed", f"Could not assign the role: {e}")
                return

        if not await bot.temp_roles.add_supporter(guild.id, user.id, role.id, datetime.now(timezone.utc), reason):
            await send_error(interaction, "Storage Error", "The supporter role was assigned but could not be recorded.")
            return

        await interaction.response.send_message(
            f"✅ {user.mention} is now a supporter with {role.mention}.",
            ephemeral=True,
        )

    @supporters_group.command(name="remove", description="Remove a user's supporter role")
    @app_commands.describe(user="The supporter to remove")
    async def supporter_remove_command(
        interaction: Interaction,
        user: discord.Member,
    ) -> None:
        """Remove a supporter record and its role."""
        guild = interaction.guild
        records = {r.user_id: r for r in await bot.temp_roles.get_supporters(guild.id)}
        record = records.get(user.id)
        if not record:
            await interaction.response.send_message(
                f"ℹ️ {user.mention} is not a recorded supporter.",
                ephemeral=True,
            )
            return

        role = guild.get_role(record.role_id)
        if role and bot.gateway.has_role(user, role):
            try:
                await bot.gateway.revoke_role(user, role, "Supporter role removed")
            except GATEWAY_ERRORS as e:
                await send_error(interaction, "Removal Failed", f"Could not remove the role: {e}")
                return

        if not await bot.temp_roles.remove_supporter(guild.id, user.id):
            await send_error(
                interaction,
                "Storage Error",
                "The supporter role was removed but the record could not be deleted.",
                "Run the command again to retry.",
            )
            return

        await interaction.response.send_message(
            f"✅ {user.mention} is no longer a supporter.",
            ephemeral=True,
        )

    @supporters_group.command(name="list", description="List this server's supporters")
    async def supporter_list_command(interaction: Interaction) -> None:
        """Show the supporter registry."""
        supporters = await bot.temp_roles.get_supporters(interaction.guild.id)
        await interaction.response.send_message(
            embed=supporters_embed(interaction.guild, supporters),
            ephemeral=True,
        )

    bot.tree.add_command(supporters_group)

    @bot.tree.command(
        name="reactor-info",
        description="Display information about the Role Reactor bot",
    )
    async def info_command(interaction: Interaction) -> None:
        """Display bot information."""
        embed = discord.Embed(
            title="⏰ Role Reactor",
            description=(
                "Role Reactor assigns temporary roles that are removed "
                "automatically when they expire."
            ),
            color=discord.Color.blue(),
        )
        embed.add_field(
            name="📝 Commands",
            value=(
                "`/temp-roles assign` - Assign a role for a limited time\n"
                "`/temp-roles list` - Show active temporary roles\n"
                "`/temp-roles remove` - Remove a temporary role early\n"
                "`/supporters add|remove|list` - Manage supporter roles"
            ),
            inline=False,
        )
        embed.add_field(name="🌐 Servers", value=str(len(bot.guilds)), inline=True)
        if interaction.guild:
            active = await bot.temp_roles.get_temporary_roles_for_guild(interaction.guild.id)
            embed.add_field(name="⏰ Active Temporary Roles", value=str(len(active)), inline=True)
        uptime = timedelta(seconds=int(time.time() - bot.started_at))
        embed.add_field(name="⏱️ Uptime", value=format_timedelta(uptime), inline=True)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @bot.tree.error
    async def on_app_command_error(
        interaction: Interaction,
        error: app_commands.AppCommandError,
    ) -> None:
        """Handle slash command errors."""
        if isinstance(error, app_commands.MissingPermissions):
            await send_error(interaction, "Permission Denied", "You need the Manage Roles permission to use this command.")
            return

        bot.logger.error(f"Command error in /{interaction.command.qualified_name if interaction.command else '?'}: {error}", exc_info=error)
        try:
            await send_error(interaction, "Error", "Something went wrong while processing this command.", "Please try again or contact a server administrator.")
        except discord.HTTPException as e:
            bot.logger.error(f"Failed to send error response: {e}")


# ============================================================================
# Main Entry Point
# ============================================================================


async def main() -> None:
    """Main entry point for the Role Reactor bot."""
    try:
        config = load_config()
    except FileNotFoundError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except yaml.YAMLError as e:
        print(f"Error parsing config.yml: {e}")
        sys.exit(1)
    except ValueError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)

    logger = setup_logging(config)
    logger.info("Starting Role Reactor bot...")

    bot = ReactorBot(config)
    setup_commands(bot)

    token = config["discord"]["token"]

    try:
        async with bot:
            await bot.start(token)
    except discord.LoginFailure:
        logger.error("Invalid Discord token. Please check your config.yml")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
