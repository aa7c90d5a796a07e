"""Shared fakes for Discord objects and the role gateway."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Optional

import discord
import pytest

from gateway import RoleOperationResult
from notifications import NotificationDispatcher
from storage import StorageError, TemporaryRoleStore
from temp_roles import TemporaryRoleManager

GUILD_ID = 100000000000000001
ROLE_ID = 200000000000000001
USER_A = 300000000000000001
USER_B = 300000000000000002
USER_C = 300000000000000003


def http_response(status: int = 403, reason: str = "Forbidden"):
    return SimpleNamespace(status=status, reason=reason)


class FakeRole:
    def __init__(self, role_id: int, name: str = "Event", position: int = 1, managed: bool = False):
        self.id = role_id
        self.name = name
        self.position = position
        self.managed = managed
        self.tags = None
        self.color = discord.Color.default()

    @property
    def mention(self) -> str:
        return f"<@&{self.id}>"


class FakeMember:
    def __init__(self, user_id: int, guild: "FakeGuild", role_ids: Optional[set[int]] = None, dm_error: Optional[Exception] = None):
        self.id = user_id
        self.guild = guild
        self.name = f"user{user_id}"
        self.display_name = self.name
        self.role_ids = set(role_ids or ())
        self.dm_error = dm_error
        self.sent: list[discord.Embed] = []

    @property
    def mention(self) -> str:
        return f"<@{self.id}>"

    def get_role(self, role_id: int):
        return self.guild.get_role(role_id) if role_id in self.role_ids else None

    async def send(self, embed=None):
        if self.dm_error:
            raise self.dm_error
        self.sent.append(embed)

    async def add_roles(self, role, reason=None):
        self.role_ids.add(role.id)

    async def remove_roles(self, role, reason=None):
        self.role_ids.discard(role.id)

    def __str__(self) -> str:
        return self.name


class FakeGuild:
    def __init__(self, guild_id: int = GUILD_ID, name: str = "Test Guild"):
        self.id = guild_id
        self.name = name
        self.roles: dict[int, FakeRole] = {}
        self.members: dict[int, FakeMember] = {}
        self.me = None

    def add_role(self, role: FakeRole) -> FakeRole:
        self.roles[role.id] = role
        return role

    def add_member(self, user_id: int, **kwargs) -> FakeMember:
        member = FakeMember(user_id, self, **kwargs)
        self.members[user_id] = member
        return member

    def get_role(self, role_id: int):
        return self.roles.get(role_id)

    def get_member(self, user_id: int):
        return self.members.get(user_id)


class FakeGateway:
    """In-memory stand-in for RoleGateway that records every mutation."""

    def __init__(self, *guilds: FakeGuild):
        self.guilds = {g.id: g for g in guilds}
        self.grant_calls: list[tuple[int, int, str]] = []
        self.revoke_calls: list[tuple[int, int, str]] = []
        self.bulk_grant_calls: list[list[int]] = []
        self.bulk_revoke_calls: list[list[int]] = []
        self.fail_grant_for: set[int] = set()
        self.fail_revoke_for: set[int] = set()

    def resolve_guild(self, guild_id):
        return self.guilds.get(guild_id)

    async def resolve_member(self, guild, user_id):
        return guild.get_member(user_id)

    def resolve_role(self, guild, role_id):
        return guild.get_role(role_id)

    def has_role(self, member, role):
        return role.id in member.role_ids

    def check_bot_permissions(self, guild, *required):
        return True, ""

    def can_manage_role(self, guild, role):
        return True, ""

    async def grant_role(self, member, role, reason):
        self.grant_calls.append((member.id, role.id, reason))
        if member.id in self.fail_grant_for:
            raise discord.Forbidden(http_response(), "Missing Permissions")
        member.role_ids.add(role.id)

    async def revoke_role(self, member, role, reason):
        self.revoke_calls.append((member.id, role.id, reason))
        if member.id in self.fail_revoke_for:
            raise discord.HTTPException(http_response(500, "Server Error"), "boom")
        member.role_ids.discard(role.id)

    async def bulk_grant_role(self, assignments, reason):
        self.bulk_grant_calls.append([m.id for m, _ in assignments])
        results = []
        for member, role in assignments:
            if member.id in self.fail_grant_for:
                results.append(RoleOperationResult(False, member.id, role.id, "Missing Permissions"))
            else:
                member.role_ids.add(role.id)
                results.append(RoleOperationResult(True, member.id, role.id))
        return results

    async def bulk_revoke_role(self, removals, reason):
        self.bulk_revoke_calls.append([m.id for m, _ in removals])
        results = []
        for member, role in removals:
            self.revoke_calls.append((member.id, role.id, reason))
            if member.id in self.fail_revoke_for:
                results.append(RoleOperationResult(False, member.id, role.id, "boom"))
            else:
                member.role_ids.discard(role.id)
                results.append(RoleOperationResult(True, member.id, role.id))
        return results


class BrokenStore(TemporaryRoleStore):
    """Store whose temporary role writes always fail."""

    async def add_temporary_role(self, *args, **kwargs) -> bool:
        return False

    async def add_multiple_temporary_roles(self, *args, **kwargs) -> None:
        raise StorageError("disk full")


@pytest.fixture
def guild() -> FakeGuild:
    g = FakeGuild()
    g.add_role(FakeRole(ROLE_ID))
    return g


@pytest.fixture
def gateway(guild) -> FakeGateway:
    return FakeGateway(guild)


@pytest.fixture
def store(tmp_path) -> TemporaryRoleStore:
    return TemporaryRoleStore(str(tmp_path / "roles.json"))


@pytest.fixture
def notifier() -> NotificationDispatcher:
    return NotificationDispatcher()


@pytest.fixture
def manager(gateway, store, notifier) -> TemporaryRoleManager:
    return TemporaryRoleManager(gateway, store, notifier)


@pytest.fixture
def expires_at() -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=1)
