import logging
from logging.handlers import RotatingFileHandler

from telegram import BotCommand
from telegram.ext import (
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
)

from config.settings import TELEGRAM_BOT_TOKEN, DB_PATH, LOGS_DIR
from src.db import Database
from src.handlers import (
    start_command,
    about_command,
    period_command,
    next_command,
    stats_command,
    history_command,
    calendar_command,
    note_command,
    delete_command,
    edit_command,
    log_command,
    settings_command,
    button_handler,
    watch_user,
)
from src.scheduler import setup_scheduler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        RotatingFileHandler(
            LOGS_DIR / "cyclecast.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
        ),
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger(__name__)

COMMANDS = [
    ("start", start_command, "Welcome & main menu"),
    ("period", period_command, "Log a period start"),
    ("next", next_command, "Forecast next period & fertile window"),
    ("stats", stats_command, "Cycle statistics"),
    ("history", history_command, "Logged cycles"),
    ("calendar", calendar_command, "Month calendar with forecast"),
    ("note", note_command, "Add a note to a cycle"),
    ("delete", delete_command, "Delete a cycle"),
    ("edit", edit_command, "Correct a cycle or period length"),
    ("log", log_command, "Log today's flow, mood & symptoms"),
    ("settings", settings_command, "View/update settings"),
    ("about", about_command, "About this bot"),
]


async def post_init(application):
    """Register the command menu and start forecast subscriptions for known users."""
    await application.bot.set_my_commands(
        [BotCommand(name, description) for name, _, description in COMMANDS]
    )

    db: Database = application.bot_data["db"]
    users = db.get_all_users()
    for user in users:
        watch_user(application.bot_data, user["chat_id"])
    logger.info(f"Watching cycle history for {len(users)} users")

    scheduler = setup_scheduler(application)
    scheduler.start()
    logger.info("Scheduler started.")


def create_app() -> None:
    """Create and run the bot application."""
    logger.info("Starting Cyclecast bot...")

    db = Database(DB_PATH)

    app = ApplicationBuilder().token(TELEGRAM_BOT_TOKEN).post_init(post_init).build()
    app.bot_data["db"] = db
    app.bot_data["forecasts"] = {}

    for name, handler, _ in COMMANDS:
        app.add_handler(CommandHandler(name, handler))
    app.add_handler(CallbackQueryHandler(button_handler))

    logger.info("Bot is running. Press Ctrl+C to stop.")
    app.run_polling(drop_pending_updates=True)


if __name__ == "__main__":
    create_app()
