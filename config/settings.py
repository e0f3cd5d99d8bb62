import os
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

VERSION = "1.0.0"

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", BASE_DIR / "data"))
LOGS_DIR = Path(os.getenv("LOGS_DIR", BASE_DIR / "logs"))

DATA_DIR.mkdir(exist_ok=True)
LOGS_DIR.mkdir(exist_ok=True)

TELEGRAM_BOT_TOKEN = os.environ["TELEGRAM_BOT_TOKEN"]

# Cycles fetched per user when forecasting, newest first
HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", "12"))

REMINDER_HOUR = int(os.getenv("REMINDER_HOUR", "9"))
TIMEZONE = ZoneInfo(os.getenv("TIMEZONE", "UTC"))

DB_PATH = DATA_DIR / "cyclecast.db"
