import asyncio
from types import SimpleNamespace

import pytest
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError

from keybot.bot import handlers
from keybot.bot.anti_fraud import SimpleRateLimit
from keybot.bot.handlers import claimant_name, ensure_member, error_text, key_message, parse_int
from keybot.errors import (
    AgeRequirementNotMet, AlreadyClaimedThisRound, AlreadyCompleted, NoActiveRound,
    NoKeysAvailable, NotFound, RoundConflict, StorageError,
)
from keybot.keys import add_keys, key_stats
from keybot.rounds import end_round, start_round
from keybot.settings import Settings


@pytest.mark.parametrize("err, fragment", [
    (AgeRequirementNotMet(2, 5), "at least 5 days"),
    (NoActiveRound(), "no active giveaway"),
    (AlreadyClaimedThisRound(), "already claimed"),
    (NoKeysAvailable(), "All keys"),
    (RoundConflict(), "already running"),
    (NotFound(), "No such round"),
    (AlreadyCompleted(), "already completed"),
    (StorageError("boom"), "try again later"),
])
def test_error_text(err, fragment):
    assert fragment in error_text(err)


def test_storage_error_text_hides_details():
    assert "boom" not in error_text(StorageError("boom"))


def test_parse_int():
    assert parse_int(None) is None
    assert parse_int("  ") is None
    assert parse_int("120") == 120
    with pytest.raises(ValueError):
        parse_int("2h")


def test_claimant_name_uses_stable_id():
    assert claimant_name(SimpleNamespace(id=777, username="nick")) == "777"


def test_key_message_escapes_code():
    assert "<code>A&lt;B</code>" in key_message("A<B")


# ------------------------
# Handlers against a fake Telegram API
# ------------------------
# registered long before the newest id anchor, so old enough to claim
PLAYER = SimpleNamespace(id=300_000_000, username="player", first_name="Pat", full_name="Pat", is_bot=False)
ADMIN = SimpleNamespace(id=1, username="boss", first_name="Boss", full_name="Boss", is_bot=False)


def forbidden():
    return TelegramForbiddenError(method=None, message="Forbidden: bot can't initiate conversation with a user")


class FakeBot:
    def __init__(self, status="member", unreachable=()):
        self.status = status
        self.unreachable = set(unreachable)
        self.sent = []

    async def get_chat_member(self, chat_id, user_id):
        return SimpleNamespace(status=self.status)

    async def send_message(self, chat_id, text, **kwargs):
        if chat_id in self.unreachable:
            raise forbidden()
        self.sent.append((chat_id, text))


class FakeCallback:
    def __init__(self, bot, data, user=PLAYER):
        self.bot = bot
        self.data = data
        self.from_user = user
        self.answers = []

    async def answer(self, text=None, show_alert=False, **kwargs):
        self.answers.append(text)


class FakeMessage:
    def __init__(self, bot, user, reply_to=None, chat_type="private"):
        self.bot = bot
        self.from_user = user
        self.chat = SimpleNamespace(type=chat_type)
        self.reply_to_message = SimpleNamespace(from_user=reply_to) if reply_to else None
        self.answers = []

    async def answer(self, text, **kwargs):
        self.answers.append(text)


@pytest.fixture
def bot_env(monkeypatch, session_factory):
    monkeypatch.setattr(handlers, "SessionLocal", session_factory)
    monkeypatch.setattr(handlers, "rate_limiter", SimpleRateLimit())
    monkeypatch.setattr(handlers, "ADMIN_IDS", {ADMIN.id})
    return session_factory


def open_round(session_factory, settings, *codes):
    with session_factory() as s:
        add_keys(s, codes)
        return start_round(s, settings).round_id


def unclaimed(session_factory):
    with session_factory() as s:
        return key_stats(s).unclaimed


def test_ensure_member():
    assert asyncio.run(ensure_member(FakeBot(status="left"), PLAYER.id, None)) is True
    assert asyncio.run(ensure_member(FakeBot(status="member"), PLAYER.id, "@keydrops")) is True
    assert asyncio.run(ensure_member(FakeBot(status="creator"), PLAYER.id, "@keydrops")) is True
    assert asyncio.run(ensure_member(FakeBot(status="left"), PLAYER.id, "@keydrops")) is False
    assert asyncio.run(ensure_member(FakeBot(status="kicked"), PLAYER.id, "@keydrops")) is False


def test_ensure_member_when_bot_cannot_see_chat():
    class NoAccessBot(FakeBot):
        async def get_chat_member(self, chat_id, user_id):
            raise TelegramBadRequest(method=None, message="Bad Request: chat not found")

    assert asyncio.run(ensure_member(NoAccessBot(), PLAYER.id, "@gone")) is False


def test_button_claim_sends_key(bot_env, settings):
    rid = open_round(bot_env, settings, "K-1")
    bot = FakeBot()
    cb = FakeCallback(bot, f"claim:{rid}")

    asyncio.run(handlers.user_claim_button(cb, settings))

    assert cb.answers == ["✅ Key sent to your private messages."]
    assert bot.sent[0][0] == PLAYER.id
    assert "K-1" in bot.sent[0][1]
    assert unclaimed(bot_env) == 0


def test_non_member_cannot_claim(bot_env, settings):
    gated = Settings({**settings, "required_chat": "@keydrops"})
    rid = open_round(bot_env, gated, "K-1")
    bot = FakeBot(status="left")

    cb = FakeCallback(bot, f"claim:{rid}")
    asyncio.run(handlers.user_claim_button(cb, gated))
    assert "Only members of @keydrops" in cb.answers[0]

    msg = FakeMessage(bot, PLAYER)
    asyncio.run(handlers.user_claim(msg, gated))
    assert "Only members of @keydrops" in msg.answers[0]

    assert bot.sent == []
    assert unclaimed(bot_env) == 1


def test_member_claims_by_command(bot_env, settings):
    gated = Settings({**settings, "required_chat": "-1001234567890"})
    open_round(bot_env, gated, "K-1")
    msg = FakeMessage(FakeBot(status="member"), PLAYER)

    asyncio.run(handlers.user_claim(msg, gated))

    assert "<code>K-1</code>" in msg.answers[0]
    assert unclaimed(bot_env) == 0


def test_button_from_an_earlier_round_is_refused(bot_env, settings):
    first = open_round(bot_env, settings, "K-1", "K-2")
    with bot_env() as s:
        end_round(s, first)
        second = start_round(s, settings).round_id
    assert second != first

    cb = FakeCallback(FakeBot(), f"claim:{first}")
    asyncio.run(handlers.user_claim_button(cb, settings))

    assert cb.answers == ["⌛ This giveaway is over."]
    assert unclaimed(bot_env) == 2


def test_button_with_garbled_round_is_refused(bot_env, settings):
    open_round(bot_env, settings, "K-1")
    cb = FakeCallback(FakeBot(), "claim:abc")

    asyncio.run(handlers.user_claim_button(cb, settings))

    assert cb.answers == ["⌛ This giveaway is over."]
    assert unclaimed(bot_env) == 1


def test_give_falls_back_to_admin_dm(bot_env):
    with bot_env() as s:
        add_keys(s, ["SECRET-KEY-1"])
    bot = FakeBot(unreachable={PLAYER.id})
    msg = FakeMessage(bot, ADMIN, reply_to=PLAYER)

    asyncio.run(handlers.admin_give(msg))

    assert bot.sent[0][0] == ADMIN.id
    assert "SECRET-KEY-1" in bot.sent[0][1]
    assert "sent to you instead" in msg.answers[0]


def test_give_with_nobody_reachable_reports_masked_key(bot_env):
    with bot_env() as s:
        add_keys(s, ["SECRET-KEY-1"])
    bot = FakeBot(unreachable={PLAYER.id, ADMIN.id})
    msg = FakeMessage(bot, ADMIN, reply_to=PLAYER)

    asyncio.run(handlers.admin_give(msg))

    assert bot.sent == []
    assert len(msg.answers) == 1
    assert "SECR…" in msg.answers[0]
    assert "SECRET-KEY-1" not in msg.answers[0]
    # the grant itself stands
    assert unclaimed(bot_env) == 0
