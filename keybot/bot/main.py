import asyncio
import logging
from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramNetworkError
from .config import BOT_TOKEN, KEYS_FILE, KEYS_POLL_SECONDS
from .handlers import router
from ..db import SessionLocal, init_db
from ..errors import GiveawayError
from ..keys import load_keys_file
from ..settings import load_settings


log = logging.getLogger(__name__)

def load_keys_once(path) -> int:
    with SessionLocal() as db:
        return load_keys_file(db, path)

async def poll_keys_file(path, every: int) -> None:
    """Pick up keys appended to ``path`` while the bot is running."""
    while True:
        try:
            # file and database I/O run off the event loop
            added = await asyncio.to_thread(load_keys_once, path)
            if added:
                log.info("Loaded %s keys from %s", added, path)
        except (GiveawayError, OSError) as e:
            log.error("Error reading keys from %s: %s", path, e)
        await asyncio.sleep(every)

async def main():
    if not BOT_TOKEN:
        raise RuntimeError("BOT_TOKEN is empty. Put BOT_TOKEN into .env or environment variables.")

    init_db()
    with SessionLocal() as db:
        settings = load_settings(db)

    bot = Bot(
        token=BOT_TOKEN,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML)
    )

    # settings is injected into handlers that ask for it
    dp = Dispatcher(settings=settings)
    dp.include_router(router)

    keys_task = asyncio.create_task(poll_keys_file(KEYS_FILE, KEYS_POLL_SECONDS))

    try:
        await dp.start_polling(
            bot,
            allowed_updates=dp.resolve_used_update_types(),
            polling_timeout=60,
        )
    except TelegramNetworkError as e:
        # Let the process manager (systemd/pm2/docker) restart it, but keep message clear in logs.
        log.exception("TelegramNetworkError (polling). Check network / proxy: %s", e)
        raise
    finally:
        keys_task.cancel()
        await bot.session.close()

def run():
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())

if __name__ == "__main__":
    run()
