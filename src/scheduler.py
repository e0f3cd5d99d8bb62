import logging
from datetime import date, datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from telegram.ext import Application

from config.settings import REMINDER_HOUR, TIMEZONE
from src.cycle import days_until
from src.db import Database
from src.handlers import watch_user
from src.models import PredictionResult

logger = logging.getLogger(__name__)

PERIOD_HEADS_UP_DAYS = 2


def _today() -> date:
    """Today's date in the timezone the reminder job runs in."""
    return datetime.now(TIMEZONE).date()


def reminder_text(prediction: PredictionResult, today: date) -> str | None:
    """Return the reminder to send today, or None if today isn't a milestone."""
    until_period = days_until(prediction.next_period_date, today)
    if until_period == PERIOD_HEADS_UP_DAYS:
        return f"🩸 Heads up: your period is expected in {PERIOD_HEADS_UP_DAYS} days ({prediction.next_period_date})."
    if until_period == 0:
        return "🩸 Your period is expected to start today. Log it with /period when it does!"
    if today == prediction.fertile_window.start:
        return f"🌱 Your fertile window opens today and runs until {prediction.fertile_window.end}."
    if today == prediction.ovulation_date:
        return "🥚 Today is your predicted ovulation day."
    return None


async def send_daily_reminder(app: Application):
    """Send forecast milestone reminders to users who have them enabled."""
    db: Database = app.bot_data["db"]
    today = _today()

    for user in db.get_all_users():
        chat_id = user["chat_id"]
        if not user["reminders_enabled"]:
            continue

        watch_user(app.bot_data, chat_id)
        prediction = app.bot_data["forecasts"].get(chat_id)
        if prediction is None:
            continue

        text = reminder_text(prediction, today)
        if text is None:
            logger.info(f"User {chat_id}: no reminder today")
            continue

        try:
            await app.bot.send_message(chat_id=chat_id, text=text)
            logger.info(f"Sent reminder to {chat_id}")
        except Exception as e:
            logger.error(f"Failed to send reminder to {chat_id}: {e}")


def setup_scheduler(app: Application) -> AsyncIOScheduler:
    """Set up APScheduler for daily reminders."""
    scheduler = AsyncIOScheduler(timezone=TIMEZONE)
    scheduler.add_job(
        send_daily_reminder,
        trigger="cron",
        hour=REMINDER_HOUR,
        minute=0,
        args=[app],
        id="daily_reminder",
        replace_existing=True,
    )
    return scheduler
