import logging
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler
from types import SimpleNamespace

import pytest

from conftest import GUILD_ID, ROLE_ID, USER_C
from main import load_config, parse_user_list, setup_commands, setup_logging
from storage import StorageError

USER_ID = "300000000000000001"
OTHER_ID = "300000000000000002"


def test_parse_user_list_accepts_mentions_and_ids():
    ids, invalid = parse_user_list(f"<@{USER_ID}>, <@!{OTHER_ID}>;{USER_ID}  12345 bob")

    assert ids == [int(USER_ID), int(OTHER_ID)]
    assert invalid == ["12345", "bob"]


def test_parse_user_list_empty():
    assert parse_user_list("") == ([], [])
    assert parse_user_list(" , ;") == ([], [])


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "config.yml"))


def test_load_config_requires_token(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("discord:\n  prefix: '!'\n", encoding="utf-8")

    with pytest.raises(ValueError, match="token"):
        load_config(str(path))


def test_load_config_reads_sections(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        "discord:\n"
        "  token: abc\n"
        "temp_roles:\n"
        "  max_users_per_assignment: 5\n"
        "scheduler:\n"
        "  interval_seconds: 120\n",
        encoding="utf-8",
    )

    config = load_config(str(path))

    assert config["discord"]["token"] == "abc"
    assert config["temp_roles"]["max_users_per_assignment"] == 5
    assert config["scheduler"]["interval_seconds"] == 120


def test_load_config_rejects_non_positive_settings(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("discord:\n  token: abc\nscheduler:\n  interval_seconds: 0\n", encoding="utf-8")

    with pytest.raises(ValueError, match="scheduler.interval_seconds"):
        load_config(str(path))


def test_setup_logging_replaces_handlers_on_repeat(tmp_path):
    config = {"logging": {"level": "debug", "file": str(tmp_path / "logs" / "reactor.log")}}

    setup_logging(config)
    logger = setup_logging(config)

    try:
        assert logger.name == "reactor"
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 2
        assert any(isinstance(h, RotatingFileHandler) for h in logger.handlers)
        assert (tmp_path / "logs").is_dir()
        assert all(h in logging.getLogger("discord").handlers for h in logger.handlers)
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            logging.getLogger("discord").removeHandler(handler)
            handler.close()


# ============================================================================
# Slash commands
# ============================================================================


class FakeTree:
    def __init__(self):
        self.commands = {}

    def add_command(self, command):
        self.commands[command.name] = command

    def command(self, name, description):
        def decorator(func):
            self.commands[name] = func
            return func
        return decorator

    def error(self, func):
        self.on_error = func
        return func


class FakeResponse:
    def __init__(self):
        self.deferred = False
        self.messages = []

    def is_done(self):
        return self.deferred or bool(self.messages)

    async def defer(self, **kwargs):
        self.deferred = True

    async def send_message(self, content=None, **kwargs):
        self.messages.append((content, kwargs))


class FakeFollowup:
    def __init__(self):
        self.messages = []

    async def send(self, content=None, **kwargs):
        self.messages.append((content, kwargs))


class FakeInteraction:
    def __init__(self, guild, user):
        self.guild = guild
        self.user = user
        self.command = None
        self.response = FakeResponse()
        self.followup = FakeFollowup()

    def replies(self):
        return self.response.messages + self.followup.messages


@pytest.fixture
def bot(gateway, manager, notifier):
    bot = SimpleNamespace(
        tree=FakeTree(),
        gateway=gateway,
        temp_roles=manager,
        notifier=notifier,
        logger=logging.getLogger("reactor.bot"),
        min_duration=timedelta(minutes=1),
        max_duration=timedelta(days=365),
        guilds=[],
    )
    setup_commands(bot)
    return bot


@pytest.fixture
def moderator(guild):
    return guild.add_member(USER_C)


def subcommand(bot, group, name):
    return bot.tree.commands[group].get_command(name).callback


async def test_assign_single_existing_holder_reports_and_skips_dm(bot, guild, notifier, moderator):
    member = guild.add_member(int(USER_ID), role_ids={ROLE_ID})
    interaction = FakeInteraction(guild, moderator)

    await subcommand(bot, "temp-roles", "assign")(
        interaction, users=USER_ID, role=guild.get_role(ROLE_ID), duration="2h", notify=True
    )
    await notifier.drain()

    _, kwargs = interaction.followup.messages[0]
    results = next(f.value for f in kwargs["embed"].fields if f.name == "👥 Results")
    assert "Already has role" in results
    assert member.sent == []


async def test_remove_command_revokes_role_then_record(bot, guild, gateway, store, notifier, moderator, expires_at):
    member = guild.add_member(int(USER_ID))
    await bot.temp_roles.grant_temporary_role(GUILD_ID, int(USER_ID), ROLE_ID, expires_at)
    interaction = FakeInteraction(guild, moderator)

    await subcommand(bot, "temp-roles", "remove")(
        interaction, users=f"<@{USER_ID}> {OTHER_ID}", role=guild.get_role(ROLE_ID), reason="done", notify=True
    )
    await notifier.drain()

    assert interaction.response.deferred
    _, kwargs = interaction.followup.messages[0]
    assert kwargs["embed"].footer.text == "✅ 1 removed | ❌ 1 failed"
    assert ROLE_ID not in member.role_ids
    assert await store.get_all_temporary_roles() == {}
    assert member.sent[0].title == "Role Removal Notification"


async def test_supporter_remove_reports_storage_failure(bot, guild, store, moderator, monkeypatch):
    member = guild.add_member(int(USER_ID), role_ids={ROLE_ID})
    await store.add_supporter(GUILD_ID, int(USER_ID), ROLE_ID, datetime.now(timezone.utc), "Patreon")

    def fail():
        raise StorageError("read-only filesystem")

    monkeypatch.setattr(store, "_save", fail)
    interaction = FakeInteraction(guild, moderator)

    await subcommand(bot, "supporters", "remove")(interaction, user=member)

    content, kwargs = interaction.response.messages[0]
    assert content is None
    assert kwargs["embed"].title == "❌ Storage Error"
    assert len(await store.get_supporters(GUILD_ID)) == 1


async def test_supporter_remove_success(bot, guild, store, moderator):
    member = guild.add_member(int(USER_ID), role_ids={ROLE_ID})
    await store.add_supporter(GUILD_ID, int(USER_ID), ROLE_ID, datetime.now(timezone.utc), "Patreon")
    interaction = FakeInteraction(guild, moderator)

    await subcommand(bot, "supporters", "remove")(interaction, user=member)

    content, _ = interaction.response.messages[0]
    assert "no longer a supporter" in content
    assert ROLE_ID not in member.role_ids
    assert await store.get_supporters(GUILD_ID) == []
