import calendar
import functools
import logging
from datetime import date, datetime, timedelta

from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.ext import ContextTypes

from config.settings import HISTORY_LIMIT, VERSION
from src.cycle import (
    compute_forecast,
    compute_statistics,
    cycle_insight,
    days_until,
    fertility_score,
    fertility_status,
    get_cycle_day,
    top_symptoms,
)
from src.db import FLOW_LEVELS, Database
from src.models import CycleRecord, CycleStatistics, PredictionResult, TimeRange

MAX_NOTE_LENGTH = 500
MIN_PERIOD_LENGTH = 1
MAX_PERIOD_LENGTH = 10
MIN_CYCLE_LENGTH = 15
MAX_CYCLE_LENGTH = 90
MIN_LUTEAL_LENGTH = 10
MAX_LUTEAL_LENGTH = 18

logger = logging.getLogger(__name__)


def _escape_markdown(text: str) -> str:
    """Escape Markdown V1 special characters in user-generated text."""
    for char in ('*', '_', '`', '['):
        text = text.replace(char, '\\' + char)
    return text


MAIN_KEYBOARD = InlineKeyboardMarkup([
    [
        InlineKeyboardButton("🔮 Forecast", callback_data="next"),
        InlineKeyboardButton("📊 Statistics", callback_data="stats"),
    ],
    [
        InlineKeyboardButton("📋 History", callback_data="history"),
        InlineKeyboardButton("⚙️ Settings", callback_data="settings"),
    ],
])

BACK_KEYBOARD = InlineKeyboardMarkup([
    [InlineKeyboardButton("🔙 Back to Menu", callback_data="menu")],
])

NOT_REGISTERED_TEXT = "Please send /start first so I can keep track of your cycles."


# ── Access decorators ──────────────────────────────────────────────

def registered(func):
    """Decorator: user has run /start."""
    @functools.wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE):
        chat_id = update.effective_chat.id
        db = get_db(context)
        if not db.is_registered(chat_id):
            if update.message:
                await update.message.reply_text(NOT_REGISTERED_TEXT)
            return
        return await func(update, context)
    return wrapper


def registered_callback(func):
    """Decorator for callback query handlers."""
    @functools.wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE):
        chat_id = update.effective_chat.id
        db = get_db(context)
        if not db.is_registered(chat_id):
            await update.callback_query.answer("Please run /start first")
            return
        return await func(update, context)
    return wrapper


# ── Helpers ─────────────────────────────────────────────────────────

def get_db(context: ContextTypes.DEFAULT_TYPE) -> Database:
    return context.bot_data["db"]


def watch_user(bot_data: dict, chat_id: int):
    """Keep bot_data["forecasts"][chat_id] in step with the user's cycle history."""
    watchers = bot_data.setdefault("watchers", {})
    if chat_id in watchers:
        return
    db: Database = bot_data["db"]
    forecasts = bot_data.setdefault("forecasts", {})

    def on_history(history):
        forecasts[chat_id] = compute_forecast(history[:HISTORY_LIMIT])

    watchers[chat_id] = db.subscribe(chat_id, on_history)
    on_history(db.get_cycles(chat_id, HISTORY_LIMIT))


def get_forecast(context: ContextTypes.DEFAULT_TYPE, chat_id: int) -> PredictionResult | None:
    watch_user(context.bot_data, chat_id)
    return context.bot_data["forecasts"].get(chat_id)


def parse_symptoms_and_note(args: list[str]) -> tuple[list[str], str]:
    """Split `/log` arguments: symptoms before a `--`, free-text note after it."""
    if "--" in args:
        idx = args.index("--")
        symptom_args, note_args = args[:idx], args[idx + 1:]
    else:
        symptom_args, note_args = args, []
    symptoms = []
    for arg in symptom_args:
        for part in arg.split(","):
            part = part.strip().lower()
            if part and part not in symptoms:
                symptoms.append(part)
    return symptoms, " ".join(note_args)[:MAX_NOTE_LENGTH]


def parse_daily_log(args: list[str]) -> dict:
    """Parse `/log` arguments, pulling out `flow:<level>` and `mood:<word>` tags.

    Tags are only recognised before the `--` note separator. Raises ValueError
    for a flow level outside FLOW_LEVELS.
    """
    end = args.index("--") if "--" in args else len(args)
    flow, mood, rest = "", "", []
    for arg in args[:end]:
        key, sep, value = arg.partition(":")
        key = key.lower()
        if sep and key == "flow":
            flow = value.strip().lower()
            if flow not in FLOW_LEVELS:
                raise ValueError(f"Unknown flow level: {value}")
        elif sep and key == "mood":
            mood = value.strip().lower()[:32]
        else:
            rest.append(arg)
    symptoms, note = parse_symptoms_and_note(rest + args[end:])
    return {"symptoms": symptoms, "note": note, "flow": flow, "mood": mood}


def _relative_days(target: date, today: date) -> str:
    days = days_until(target, today)
    if days > 0:
        return f"in {days} days"
    if days == 0:
        return "today"
    return f"{-days} days ago"


def format_forecast(prediction: PredictionResult | None, today: date) -> str:
    if prediction is None:
        return (
            "🔮 *Forecast*\n\n"
            "I need at least 3 completed cycles before I can predict anything.\n"
            "Keep logging each period start with /period 💛"
        )
    window = prediction.fertile_window
    status = fertility_status(prediction, today)
    score = fertility_score(prediction, today)
    fertility = "High — fertile window active" if status == "high" else "Low — not in fertile window"

    late_by = -days_until(prediction.next_period_date, today)
    if late_by > 0:
        period_line = (
            f"⏰ Period expected *{prediction.next_period_date}*, now {late_by} days late.\n"
            f"Log it with /period when it starts.\n"
        )
    else:
        period_line = (
            f"🩸 Next period: *{prediction.next_period_date}* "
            f"({_relative_days(prediction.next_period_date, today)})\n"
        )
    return (
        f"🔮 *Forecast*\n\n"
        f"{period_line}"
        f"🥚 Ovulation: *{prediction.ovulation_date}* "
        f"({_relative_days(prediction.ovulation_date, today)})\n"
        f"🌱 Fertile window: *{window.start}* → *{window.end}*\n"
        f"Fertility: {fertility} ({score}%)\n\n"
        f"Based on {prediction.cycles_used} cycles, average {prediction.avg_cycle_length} days"
    )


def format_statistics(stats: CycleStatistics | None, time_range: TimeRange) -> str:
    label = "all time" if time_range is TimeRange.ALL else f"last {time_range.months} months"
    if stats is None:
        return f"📊 No completed cycles for {label} yet."
    period = f"{stats.avg_period_length} days" if stats.avg_period_length is not None else "—"
    return (
        f"📊 *Cycle Statistics ({label})*\n\n"
        f"Cycles tracked: *{stats.total_cycles}*\n"
        f"Average cycle: *{stats.avg_cycle_length}* days\n"
        f"Average period: *{period}*\n"
        f"Regularity score: *{stats.regularity_score}%*\n"
        f"Consistency: *{stats.consistency_label}* (varies by {stats.cycle_variability} days)\n"
        f"Recent trend: *{stats.trend}*\n"
        f"Longest: {stats.longest_cycle.length} days ({stats.longest_cycle.start_date})\n"
        f"Shortest: {stats.shortest_cycle.length} days ({stats.shortest_cycle.start_date})"
    )


def format_history(db: Database, chat_id: int) -> str:
    cycles = db.get_cycles(chat_id, HISTORY_LIMIT)
    if not cycles:
        return "📋 No cycles logged yet.\nUse /period to log a period start!"

    lines = ["📋 *Your Cycles:*\n"]
    for cycle in cycles:
        length = f"{cycle.cycle_length} days" if cycle.is_complete else "in progress"
        line = f"#{cycle.cycle_id} 📅 {cycle.start_date} — {length}"
        if cycle.period_length:
            line += f", period {cycle.period_length} days"
        if cycle.symptoms:
            line += f"\n🤒 {_escape_markdown(', '.join(cycle.symptoms))}"
        if cycle.notes:
            line += f"\n📝 {_escape_markdown(cycle.notes)}"
        lines.append(line)
    return "\n".join(lines)


def format_settings(settings: dict) -> str:
    reminders = "on" if settings["reminders_enabled"] else "off"
    return (
        f"⚙️ *Settings*\n\n"
        f"🩸 Typical period length: *{settings['period_length']}* days\n"
        f"🌙 Luteal phase length: *{settings['luteal_phase_length']}* days "
        f"(forecasts assume 14)\n"
        f"🔔 Reminders: *{reminders}*\n\n"
        f"Change with:\n`/settings period 6`\n`/settings luteal 13`\n`/settings reminders off`"
    )


CALENDAR_MARKS = {
    "period": "P",
    "ovulation": "O",
    "fertile": "F",
    "predicted": "p",
}


def format_calendar(
    year: int,
    month: int,
    cycles: list[CycleRecord],
    logs: list[dict],
    prediction: PredictionResult | None,
    default_period_length: int,
) -> str:
    """Render one month as a monospace grid with period and fertility marks."""
    marks: dict[date, str] = {}

    if prediction:
        for offset in range(default_period_length):
            marks[prediction.next_period_date + timedelta(days=offset)] = CALENDAR_MARKS["predicted"]
        window = prediction.fertile_window
        day = window.start
        while day <= window.end:
            marks[day] = CALENDAR_MARKS["fertile"]
            day += timedelta(days=1)
        marks[prediction.ovulation_date] = CALENDAR_MARKS["ovulation"]

    for cycle in cycles:
        for offset in range(cycle.period_length or default_period_length):
            marks[cycle.start_date + timedelta(days=offset)] = CALENDAR_MARKS["period"]
    for log in logs:
        if log.get("flow") and log["flow"] != "none":
            marks[date.fromisoformat(log["date"])] = CALENDAR_MARKS["period"]

    rows = ["".join(f"{name[:2]:>3} " for name in calendar.day_abbr).rstrip()]
    for week in calendar.Calendar().monthdayscalendar(year, month):
        cells = []
        for day_number in week:
            if day_number == 0:
                cells.append("    ")
            else:
                mark = marks.get(date(year, month, day_number), " ")
                cells.append(f"{day_number:>3}{mark}")
        rows.append("".join(cells).rstrip())

    grid = "\n".join(rows)
    return (
        f"📅 *{calendar.month_name[month]} {year}*\n"
        f"```\n{grid}\n```\n"
        f"P period · p predicted period · F fertile · O ovulation"
    )


def _parse_int_arg(value: str) -> int | None:
    try:
        return int(value.lstrip("#"))
    except ValueError:
        return None


# ── Commands ────────────────────────────────────────────────────────

async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = update.effective_chat.id
    db = get_db(context)
    is_new = db.add_user(chat_id)
    watch_user(context.bot_data, chat_id)

    if is_new:
        logger.info(f"Registered user {chat_id}")
        text = (
            "Hey there! 🌙\n\n"
            "I'm *Cyclecast*, your cycle companion.\n"
            "Log the first day of each period with `/period` "
            "(or `/period 2026-02-15` for a past date).\n"
            "After 3 cycles I'll start forecasting your next period and fertile window."
        )
    else:
        cycles = db.get_cycles(chat_id, 1)
        if cycles:
            day = get_cycle_day(cycles[0].start_date, date.today())
            text = f"🌙 *Cyclecast*\n\n📅 Today is day *{day}* of your cycle."
        else:
            text = "🌙 *Cyclecast*\n\nNo cycles yet. Use /period to log your last period start."
    await update.message.reply_text(text, parse_mode="Markdown", reply_markup=MAIN_KEYBOARD)


async def about_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await update.message.reply_text(
        f"🌙 *Cyclecast* v{VERSION}\n\n"
        "Forecasts are averages of your own logged cycles and assume a 14-day luteal phase.\n"
        "They're an estimate, not medical or contraceptive advice.",
        parse_mode="Markdown",
    )


@registered
async def period_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Log a period start: `/period [YYYY-MM-DD] [period_days] [symptoms] [-- note]`."""
    chat_id = update.effective_chat.id
    db = get_db(context)
    args = list(context.args or [])

    period_date = date.today()
    if args and "-" in args[0]:
        try:
            period_date = date.fromisoformat(args.pop(0))
        except ValueError:
            await update.message.reply_text(
                "Wrong date format. Use this:\n`/period 2026-02-25`\n\n"
                "Or just `/period` to log today.",
                parse_mode="Markdown",
            )
            return
        if period_date > date.today():
            await update.message.reply_text("That date is in the future! Use a past or today's date.")
            return

    settings = db.get_user_settings(chat_id)
    period_length = settings["period_length"]
    if args and _parse_int_arg(args[0]) is not None:
        period_length = _parse_int_arg(args.pop(0))
        if not MIN_PERIOD_LENGTH <= period_length <= MAX_PERIOD_LENGTH:
            await update.message.reply_text(
                f"Period length should be between {MIN_PERIOD_LENGTH} and {MAX_PERIOD_LENGTH} days."
            )
            return
    symptoms, note = parse_symptoms_and_note(args)

    watch_user(context.bot_data, chat_id)
    try:
        db.add_cycle(chat_id, period_date, period_length=period_length, symptoms=symptoms, notes=note)
    except ValueError:
        await update.message.reply_text(f"You already logged a period starting {period_date}.")
        return

    cycles = db.get_cycles(chat_id, 2)
    lines = [f"✅ Period start logged for *{period_date}*."]
    if symptoms:
        lines.append(f"🤒 {_escape_markdown(', '.join(symptoms))}")
    if len(cycles) > 1 and cycles[0].start_date == period_date and cycles[1].is_complete:
        lines.append(f"📏 Your previous cycle was *{cycles[1].cycle_length}* days.")
    prediction = get_forecast(context, chat_id)
    if prediction:
        lines.append(f"🔮 Next period expected around *{prediction.next_period_date}*.")
    await update.message.reply_text("\n\n".join(lines), parse_mode="Markdown", reply_markup=MAIN_KEYBOARD)


@registered
async def next_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    prediction = get_forecast(context, update.effective_chat.id)
    await update.message.reply_text(
        format_forecast(prediction, date.today()),
        parse_mode="Markdown",
        reply_markup=MAIN_KEYBOARD,
    )


@registered
async def stats_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """`/stats [3|6|12|all]` — statistics for a time range."""
    chat_id = update.effective_chat.id
    db = get_db(context)
    time_range = TimeRange.ALL
    if context.args:
        try:
            time_range = TimeRange.parse(context.args[0])
        except ValueError:
            await update.message.reply_text(
                "Pick a range: `/stats 3`, `/stats 6`, `/stats 12` or `/stats all`",
                parse_mode="Markdown",
            )
            return

    cycles = db.get_cycles(chat_id)
    stats = compute_statistics(cycles, time_range)
    text = format_statistics(stats, time_range)

    insight = cycle_insight(cycles[:HISTORY_LIMIT])
    if insight:
        text += f"\n\n💡 *{insight.title}*: {insight.message}"
    symptoms = top_symptoms(db.get_recent_logs(chat_id, 30))
    if symptoms:
        text += f"\n🤒 You frequently experience: {', '.join(symptoms)}"

    await update.message.reply_text(text, parse_mode="Markdown", reply_markup=MAIN_KEYBOARD)


@registered
async def history_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    text = format_history(get_db(context), update.effective_chat.id)
    await update.message.reply_text(text, parse_mode="Markdown", reply_markup=MAIN_KEYBOARD)


@registered
async def calendar_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """`/calendar [YYYY-MM]` — month view of logged periods and the forecast."""
    chat_id = update.effective_chat.id
    db = get_db(context)

    month_start = date.today().replace(day=1)
    if context.args:
        try:
            month_start = datetime.strptime(context.args[0], "%Y-%m").date()
        except ValueError:
            await update.message.reply_text(
                "Wrong month format. Use this:\n`/calendar 2026-03`",
                parse_mode="Markdown",
            )
            return

    last_day = calendar.monthrange(month_start.year, month_start.month)[1]
    month_end = month_start.replace(day=last_day)
    settings = db.get_user_settings(chat_id)
    text = format_calendar(
        month_start.year,
        month_start.month,
        db.get_cycles(chat_id),
        db.get_logs_between(chat_id, month_start, month_end),
        get_forecast(context, chat_id),
        settings["period_length"],
    )
    await update.message.reply_text(text, parse_mode="Markdown", reply_markup=MAIN_KEYBOARD)


@registered
async def note_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """`/note <cycle_id> <text>` — annotate a cycle."""
    args = context.args or []
    cycle_id = _parse_int_arg(args[0]) if args else None
    if cycle_id is None or len(args) < 2:
        await update.message.reply_text(
            "Usage: `/note <cycle number> <text>`\nCycle numbers are shown in /history",
            parse_mode="Markdown",
        )
        return

    note = " ".join(args[1:])[:MAX_NOTE_LENGTH]
    db = get_db(context)
    if not db.update_cycle(update.effective_chat.id, cycle_id, notes=note):
        await update.message.reply_text(f"I couldn't find cycle #{cycle_id}.")
        return
    await update.message.reply_text(
        f"✅ Note saved on cycle #{cycle_id}\n📝 {_escape_markdown(note)}",
        parse_mode="Markdown",
    )


@registered
async def delete_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """`/delete <cycle_id>` — remove a cycle logged by mistake."""
    args = context.args or []
    cycle_id = _parse_int_arg(args[0]) if args else None
    if cycle_id is None:
        await update.message.reply_text(
            "Usage: `/delete <cycle number>`\nCycle numbers are shown in /history",
            parse_mode="Markdown",
        )
        return

    db = get_db(context)
    if not db.delete_cycle(update.effective_chat.id, cycle_id):
        await update.message.reply_text(f"I couldn't find cycle #{cycle_id}.")
        return
    await update.message.reply_text(f"🗑 Cycle #{cycle_id} deleted.", reply_markup=MAIN_KEYBOARD)


@registered
async def edit_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """`/edit <cycle_id> cycle|period <days>` — correct a logged length."""
    args = context.args or []
    bounds = {
        "cycle": ("cycle_length", MIN_CYCLE_LENGTH, MAX_CYCLE_LENGTH),
        "period": ("period_length", MIN_PERIOD_LENGTH, MAX_PERIOD_LENGTH),
    }
    cycle_id = _parse_int_arg(args[0]) if args else None
    if cycle_id is None or len(args) < 3 or args[1].lower() not in bounds:
        await update.message.reply_text(
            "Usage: `/edit <cycle number> cycle <days>` or `/edit <cycle number> period <days>`\n"
            "Cycle numbers are shown in /history",
            parse_mode="Markdown",
        )
        return

    name = args[1].lower()
    field, low, high = bounds[name]
    number = _parse_int_arg(args[2])
    if number is None or not low <= number <= high:
        await update.message.reply_text(f"{name.capitalize()} length must be between {low} and {high} days.")
        return

    db = get_db(context)
    chat_id = update.effective_chat.id
    watch_user(context.bot_data, chat_id)
    if not db.update_cycle(chat_id, cycle_id, **{field: number}):
        await update.message.reply_text(f"I couldn't find cycle #{cycle_id}.")
        return
    logger.info(f"User {chat_id}: cycle {cycle_id} {field} set to {number}")
    await update.message.reply_text(
        f"✅ Cycle #{cycle_id}: {name} length set to {number} days.",
        reply_markup=MAIN_KEYBOARD,
    )


@registered
async def log_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """`/log flow:light mood:calm cramps, headache -- rough day` — daily log."""
    usage = (
        "📝 Tell me how today went:\n`/log flow:light mood:tired cramps bloating -- rough day`\n"
        f"Flow is one of: {', '.join(FLOW_LEVELS)}"
    )
    try:
        entry = parse_daily_log(list(context.args or []))
    except ValueError:
        await update.message.reply_text(usage, parse_mode="Markdown")
        return
    if not any(entry.values()):
        await update.message.reply_text(usage, parse_mode="Markdown")
        return

    db = get_db(context)
    db.add_daily_log(update.effective_chat.id, **entry)
    lines = ["✅ Logged for today!"]
    if entry["flow"]:
        lines.append(f"🩸 Flow: {entry['flow']}")
    if entry["mood"]:
        lines.append(f"🙂 Mood: {_escape_markdown(entry['mood'])}")
    symptoms, note = entry["symptoms"], entry["note"]
    if symptoms:
        lines.append(f"🤒 {_escape_markdown(', '.join(symptoms))}")
    if note:
        lines.append(f"📝 {_escape_markdown(note)}")
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown", reply_markup=MAIN_KEYBOARD)


@registered
async def settings_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = update.effective_chat.id
    db = get_db(context)
    args = context.args or []

    if len(args) >= 2:
        name, value = args[0].lower(), args[1].lower()
        if name == "reminders" and value in ("on", "off"):
            db.update_user_settings(chat_id, reminders_enabled=value == "on")
            await update.message.reply_text(f"✅ Reminders turned {value}.")
            return
        bounds = {
            "period": ("period_length", MIN_PERIOD_LENGTH, MAX_PERIOD_LENGTH),
            "luteal": ("luteal_phase_length", MIN_LUTEAL_LENGTH, MAX_LUTEAL_LENGTH),
        }
        if name in bounds:
            field, low, high = bounds[name]
            number = _parse_int_arg(value)
            if number is None or not low <= number <= high:
                await update.message.reply_text(f"{name.capitalize()} length must be between {low} and {high} days.")
                return
            db.update_user_settings(chat_id, **{field: number})
            await update.message.reply_text(f"✅ {name.capitalize()} length set to {number} days.")
            return

    await update.message.reply_text(
        format_settings(db.get_user_settings(chat_id)),
        parse_mode="Markdown",
        reply_markup=MAIN_KEYBOARD,
    )


# ── Inline keyboard ────────────────────────────────────────────────

@registered_callback
async def button_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle all inline keyboard button presses."""
    query = update.callback_query
    await query.answer()
    chat_id = query.message.chat_id
    db = get_db(context)
    data = query.data

    if data == "next":
        text = format_forecast(get_forecast(context, chat_id), date.today())
    elif data == "stats":
        text = format_statistics(compute_statistics(db.get_cycles(chat_id)), TimeRange.ALL)
    elif data == "history":
        text = format_history(db, chat_id)
    elif data == "settings":
        text = format_settings(db.get_user_settings(chat_id))
    else:
        await query.edit_message_text(
            "🌙 *Cyclecast — Main Menu*\n\nWhat would you like to see?",
            parse_mode="Markdown",
            reply_markup=MAIN_KEYBOARD,
        )
        return
    await query.edit_message_text(text, parse_mode="Markdown", reply_markup=BACK_KEYBOARD)
