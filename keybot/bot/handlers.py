# keybot/bot/handlers.py
from __future__ import annotations

import asyncio
import logging
from html import escape
from typing import Optional, Set

from aiogram import Bot, Router, F
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError
from aiogram.filters import Command, CommandObject
from aiogram.types import Message, CallbackQuery

from ..claims import claim_key, key_hint
from ..db import SessionLocal
from ..errors import (
    GiveawayError, RoundConflict, NotFound, AlreadyCompleted, NoActiveRound,
    AgeRequirementNotMet, AlreadyClaimedThisRound, NoKeysAvailable, StorageError, ConfigError,
)
from ..keys import grant_key, key_stats
from ..rounds import current_round, end_round, list_rounds, start_round
from ..settings import Settings, set_config_value
from .anti_fraud import estimate_account_age_days, looks_like_fake, rate_limiter
from .config import ADMIN_IDS
from .keyboards import giveaway_kb

log = logging.getLogger(__name__)

router = Router()

# ------------------------
# Helpers
# ------------------------
def is_admin(user_id: int) -> bool:
    return user_id in set(ADMIN_IDS or [])

def claimant_name(user) -> str:
    # usernames can change hands; the numeric id cannot
    return str(user.id)

def fmt_dt(dt) -> str:
    return dt.strftime("%Y-%m-%d %H:%M") if dt else "—"

def key_message(code: str) -> str:
    return (
        "🎉 Congratulations, you have been given a key!\n"
        "You can redeem it by entering it into Steam.\n"
        f"Your key is: <code>{escape(code)}</code>"
    )

def error_text(err: GiveawayError) -> str:
    """User-facing text for a domain error."""
    if isinstance(err, AgeRequirementNotMet):
        return (
            "⛔ Your account is too new to claim a key. "
            f"It must be at least {err.age_bound} days old."
        )
    if isinstance(err, NoActiveRound):
        return "⏳ There is no active giveaway right now."
    if isinstance(err, AlreadyClaimedThisRound):
        return "✅ You already claimed a key in this giveaway."
    if isinstance(err, NoKeysAvailable):
        return "😔 All keys have been given away."
    if isinstance(err, RoundConflict):
        return "⚠️ A giveaway round is already running. End it first with /end_round."
    if isinstance(err, NotFound):
        return "❌ No such round."
    if isinstance(err, AlreadyCompleted):
        return "❌ That round is already completed."
    if isinstance(err, StorageError):
        return "⚠️ Could not reach the key store, please try again later."
    return "⚠️ Something went wrong, please try again later."

def parse_int(args: Optional[str]) -> Optional[int]:
    txt = (args or "").strip()
    if not txt:
        return None
    if not txt.isdigit():
        raise ValueError(txt)
    return int(txt)

# giveaway posts waiting to be closed
_PENDING: Set[asyncio.Task] = set()

async def close_post_later(message: Message, seconds: int) -> None:
    await asyncio.sleep(seconds)
    try:
        await message.edit_text("This key giveaway is over!", reply_markup=None)
    except TelegramBadRequest as e:
        log.warning("Could not close giveaway post %s: %s", message.message_id, e)

def schedule_close(message: Message, seconds: int) -> None:
    task = asyncio.create_task(close_post_later(message, seconds))
    _PENDING.add(task)
    task.add_done_callback(_PENDING.discard)

async def ensure_member(bot: Bot, user_id: int, chat: Optional[str]) -> bool:
    """Check membership in the required channel/group. No chat configured means everyone passes."""
    if not chat:
        return True
    try:
        m = await bot.get_chat_member(chat, user_id)
    except (TelegramBadRequest, TelegramForbiddenError) as e:
        # bot has no access or the chat is gone: treat as not a member
        log.warning("Membership check in %s failed for %s: %s", chat, user_id, e)
        return False
    # statuses: creator/administrator/member/restricted/left/kicked
    return m.status in ("creator", "administrator", "member", "restricted")

def not_member_text(chat: str) -> str:
    return f"🔒 Only members of {escape(chat)} can claim keys. Join it and try again."

def posted_round_id(data: str) -> Optional[int]:
    # callback data like: claim:<round_id>
    try:
        return int(data.split(":", 1)[1])
    except (IndexError, ValueError):
        return None

async def send_text(bot: Bot, user_id: int, text: str) -> bool:
    """DM a user; False if they have not opened a chat with the bot."""
    try:
        await bot.send_message(user_id, text)
        return True
    except (TelegramForbiddenError, TelegramBadRequest) as e:
        log.info("Could not DM %s: %s", user_id, e)
        return False

async def send_key(bot: Bot, user_id: int, code: str) -> bool:
    return await send_text(bot, user_id, key_message(code))

# ------------------------
# Everyone
# ------------------------
@router.message(Command("start", "help"))
async def start(message: Message):
    text = (
        "🎁 Key giveaway bot\n\n"
        "When a giveaway is running, press <b>Get key</b> under the giveaway post "
        "or send /claim here. One key per person per giveaway."
    )
    if is_admin(message.from_user.id):
        text += (
            "\n\n🛠 Admin:\n"
            "/start_round [seconds] — start a giveaway here\n"
            "/end_round [id] — end the current (or given) round\n"
            "/round, /rounds, /stats\n"
            "/give — reply to a user's message to give them a key\n"
            "/setconfig &lt;key&gt; &lt;value&gt;"
        )
    await message.answer(text)

@router.message(Command("claim"))
async def user_claim(message: Message, settings: Settings):
    user = message.from_user
    if message.chat.type != "private":
        # keys are never printed into a group
        await message.answer("🔒 Send /claim to me in a private chat, or use the giveaway button.")
        return
    if looks_like_fake(user):
        await message.answer("⛔ This account cannot claim keys.")
        return
    if not await ensure_member(message.bot, user.id, settings.required_chat):
        await message.answer(not_member_text(settings.required_chat))
        return
    try:
        with SessionLocal() as db:
            code = claim_key(db, settings, claimant_name(user), estimate_account_age_days(user.id))
    except GiveawayError as e:
        await message.answer(error_text(e))
        return
    await message.answer(key_message(code))

@router.callback_query(F.data.startswith("claim:"))
async def user_claim_button(cb: CallbackQuery, settings: Settings):
    user = cb.from_user
    if not rate_limiter.allow(f"claim:{user.id}", limit=3, per_seconds=10):
        await cb.answer("⏳ Slow down, try again in a few seconds.")
        return
    if looks_like_fake(user):
        await cb.answer("⛔ This account cannot claim keys.", show_alert=True)
        return
    if not await ensure_member(cb.bot, user.id, settings.required_chat):
        await cb.answer(not_member_text(settings.required_chat), show_alert=True)
        return

    posted = posted_round_id(cb.data)
    try:
        with SessionLocal() as db:
            # a post left over from an earlier round must not hand out keys
            if posted is None or current_round(db).round_id != posted:
                await cb.answer("⌛ This giveaway is over.", show_alert=True)
                return
            code = claim_key(db, settings, claimant_name(user), estimate_account_age_days(user.id))
    except GiveawayError as e:
        await cb.answer(error_text(e), show_alert=True)
        return

    if await send_key(cb.bot, user.id, code):
        await cb.answer("✅ Key sent to your private messages.", show_alert=True)
    else:
        # alerts are only visible to the user who pressed the button
        await cb.answer(f"🎉 Your key: {code}", show_alert=True)

# ------------------------
# Admin: rounds
# ------------------------
@router.message(Command("start_round"))
async def admin_start_round(message: Message, command: CommandObject, settings: Settings):
    if not is_admin(message.from_user.id):
        await message.answer("⛔ Admins only.")
        return
    try:
        duration = parse_int(command.args)
    except ValueError:
        await message.answer("❌ Usage: /start_round [seconds]")
        return

    try:
        with SessionLocal() as db:
            rnd = start_round(db, settings, duration)
            rid, ends_at = rnd.round_id, rnd.ends_at
    except ValueError:
        await message.answer("❌ Duration must be a positive number of seconds.")
        return
    except GiveawayError as e:
        await message.answer(error_text(e))
        return

    seconds = duration or settings.giveaway_duration
    post = await message.answer(
        f"🎁 <b>Key giveaway #{rid}</b>\n\n"
        "Click the button below to get a key.\n"
        f"⏳ Ends: <b>{fmt_dt(ends_at)}</b>",
        reply_markup=giveaway_kb(rid),
    )
    schedule_close(post, seconds)

@router.message(Command("end_round"))
async def admin_end_round(message: Message, command: CommandObject):
    if not is_admin(message.from_user.id):
        await message.answer("⛔ Admins only.")
        return
    try:
        rid = parse_int(command.args)
    except ValueError:
        await message.answer("❌ Usage: /end_round [id]")
        return

    try:
        with SessionLocal() as db:
            if rid is None:
                rid = current_round(db).round_id
            end_round(db, rid)
    except GiveawayError as e:
        await message.answer(error_text(e))
        return
    await message.answer(f"🏁 Round #{rid} completed.")

@router.message(Command("round"))
async def admin_current_round(message: Message):
    if not is_admin(message.from_user.id):
        await message.answer("⛔ Admins only.")
        return
    try:
        with SessionLocal() as db:
            rnd = current_round(db)
            text = (
                f"🎁 Round #{rnd.round_id} is active\n"
                f"Started: {fmt_dt(rnd.started_at)}\n"
                f"Ends: {fmt_dt(rnd.ends_at)}"
            )
    except GiveawayError as e:
        await message.answer(error_text(e))
        return
    await message.answer(text)

@router.message(Command("rounds"))
async def admin_list_rounds(message: Message):
    if not is_admin(message.from_user.id):
        await message.answer("⛔ Admins only.")
        return
    try:
        with SessionLocal() as db:
            lines = ["📄 <b>Rounds:</b>\n"]
            for rnd, claimed in list_rounds(db, limit=15):
                status = "🟢" if rnd.is_active else "⚪"
                lines.append(f"{status} #{rnd.round_id} — {fmt_dt(rnd.started_at)} — {claimed} keys claimed")
    except GiveawayError as e:
        await message.answer(error_text(e))
        return
    if len(lines) == 1:
        await message.answer("📄 No rounds yet.")
        return
    await message.answer("\n".join(lines))

@router.message(Command("stats"))
async def admin_stats(message: Message):
    if not is_admin(message.from_user.id):
        await message.answer("⛔ Admins only.")
        return
    try:
        with SessionLocal() as db:
            stats = key_stats(db)
    except GiveawayError as e:
        await message.answer(error_text(e))
        return
    await message.answer(
        f"🔑 Keys: <b>{stats.total}</b>\n"
        f"✅ Claimed: <b>{stats.claimed}</b>\n"
        f"📦 Left: <b>{stats.unclaimed}</b>"
    )

# ------------------------
# Admin: manual grant & config
# ------------------------
@router.message(Command("give"))
async def admin_give(message: Message):
    if not is_admin(message.from_user.id):
        await message.answer("⛔ Admins only.")
        return
    target = message.reply_to_message.from_user if message.reply_to_message else None
    if target is None:
        await message.answer("❌ Reply to a message of the user who should get a key.")
        return
    if target.is_bot:
        await message.answer("❌ You can't give a key to a bot!")
        return

    try:
        with SessionLocal() as db:
            code = grant_key(db, claimant_name(target))
    except GiveawayError as e:
        await message.answer(f"Could not get key, please try again later\n\nError: {escape(error_text(e))}")
        return

    if await send_key(message.bot, target.id, code):
        await message.answer(f"✅ Key sent to {escape(target.full_name)}")
        return
    # fall back to the admin's private chat so the key is not lost
    if await send_text(
        message.bot,
        message.from_user.id,
        f"⚠️ Could not DM {escape(target.full_name)}. Pass this key on yourself: <code>{escape(code)}</code>",
    ):
        await message.answer("⚠️ User has no private chat with the bot; the key was sent to you instead.")
        return
    # nobody could be messaged; the grant still shows under recent claims in the admin panel
    log.warning("Key %s granted to %s but could not be delivered to them or admin %s",
                code, claimant_name(target), message.from_user.id)
    await message.answer(
        f"⚠️ Key {escape(key_hint(code))} was granted to {escape(target.full_name)} but nobody could be messaged. "
        "Open a private chat with me, or look it up under recent claims in the admin panel."
    )

@router.message(Command("setconfig"))
async def admin_set_config(message: Message, command: CommandObject):
    if not is_admin(message.from_user.id):
        await message.answer("⛔ Admins only.")
        return
    parts = (command.args or "").split(maxsplit=1)
    if len(parts) != 2:
        await message.answer("❌ Usage: /setconfig &lt;key&gt; &lt;value&gt;")
        return
    key, value = parts[0], parts[1].strip()
    try:
        with SessionLocal() as db:
            set_config_value(db, key, value)
    except ConfigError as e:
        await message.answer(f"❌ {escape(str(e))}")
        return
    except GiveawayError as e:
        await message.answer(error_text(e))
        return
    await message.answer(f"✅ {escape(key)} = {escape(value)} (applies after restart)")
