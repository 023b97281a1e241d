import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env reliably both locally and on server (regardless of current working directory)
BASE_DIR = Path(__file__).resolve().parents[2]  # project root
ENV_PATH = BASE_DIR / ".env"
load_dotenv(ENV_PATH if ENV_PATH.exists() else None)

BOT_TOKEN = os.getenv("BOT_TOKEN", "").strip()

# ADMIN_IDS=123,456 in .env
ADMIN_IDS = set(
    int(x.strip())
    for x in os.getenv("ADMIN_IDS", "").split(",")
    if x.strip().isdigit()
)

# new keys dropped into this file are picked up while the bot runs
KEYS_FILE = Path(os.getenv("KEYS_FILE", "").strip() or BASE_DIR / "fresh_keys.txt")
KEYS_POLL_SECONDS = int(os.getenv("KEYS_POLL_SECONDS", "30") or 30)
