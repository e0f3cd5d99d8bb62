from datetime import date

from config.settings import VERSION
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
    NOT_REGISTERED_TEXT,
)


def _reply(update):
    return update.message.reply_text.call_args[0][0]


# ── /start ───────────────────────────────────────────────────────

class TestStartCommand:
    async def test_registers_new_user(self, make_update, mock_context):
        update = make_update(chat_id=3000)
        await start_command(update, mock_context)
        assert mock_context.bot_data["db"].is_registered(3000)
        assert "Cyclecast" in _reply(update)

    async def test_existing_user_sees_cycle_day(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        await start_command(update, mock_context)
        assert "day" in _reply(update).lower()

    async def test_existing_user_without_cycles(self, make_update, mock_context):
        update = make_update(chat_id=2000)
        await start_command(update, mock_context)
        assert "/period" in _reply(update)


class TestAboutCommand:
    async def test_shows_version(self, make_update, mock_context):
        update = make_update(chat_id=3000)
        await about_command(update, mock_context)
        assert VERSION in _reply(update)


# ── registration gate ────────────────────────────────────────────

class TestRegistrationGate:
    async def test_unregistered_user_blocked(self, make_update, mock_context):
        update = make_update(chat_id=3000)
        await next_command(update, mock_context)
        assert _reply(update) == NOT_REGISTERED_TEXT


# ── /period ──────────────────────────────────────────────────────

class TestPeriodCommand:
    async def test_logs_past_date_and_updates_forecast(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["2026-02-20"]
        await period_command(update, mock_context)
        reply = _reply(update)
        assert "2026-02-20" in reply
        # 29, 29, 28, 22 -> average 27
        assert "*22*" in reply
        assert "2026-03-19" in reply
        assert mock_context.bot_data["forecasts"][1000].next_period_date.isoformat() == "2026-03-19"

    async def test_custom_period_length(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["2026-02-20", "7"]
        await period_command(update, mock_context)
        latest = mock_context.bot_data["db"].get_cycles(1000)[0]
        assert latest.period_length == 7

    async def test_symptoms_and_note(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["2026-02-20", "6", "cramps,", "Fatigue", "--", "started", "at", "night"]
        await period_command(update, mock_context)
        latest = mock_context.bot_data["db"].get_cycles(1000)[0]
        assert latest.period_length == 6
        assert latest.symptoms == ("cramps", "fatigue")
        assert latest.notes == "started at night"
        assert "cramps, fatigue" in _reply(update)

    async def test_symptoms_without_length_use_default(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["2026-02-20", "headache"]
        await period_command(update, mock_context)
        latest = mock_context.bot_data["db"].get_cycles(1000)[0]
        assert latest.period_length == 5
        assert latest.symptoms == ("headache",)

    async def test_invalid_date(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["2026-13-01"]
        await period_command(update, mock_context)
        assert "format" in _reply(update).lower()

    async def test_future_date(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["2099-01-01"]
        await period_command(update, mock_context)
        assert "future" in _reply(update).lower()

    async def test_period_length_out_of_range(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["2026-02-20", "15"]
        await period_command(update, mock_context)
        assert "between" in _reply(update).lower()

    async def test_duplicate(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["2026-01-01"]
        await period_command(update, mock_context)
        assert "already" in _reply(update).lower()


# ── /next ────────────────────────────────────────────────────────

class TestNextCommand:
    async def test_forecast(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        await next_command(update, mock_context)
        reply = _reply(update)
        # 29, 29, 28 -> 28.7 rounds to 29 days after Jan 29
        assert "2026-02-27" in reply
        assert "2026-02-13" in reply
        assert "2026-02-08" in reply

    async def test_not_enough_cycles(self, make_update, mock_context):
        update = make_update(chat_id=2000)
        await next_command(update, mock_context)
        assert "at least 3" in _reply(update)


# ── /stats ───────────────────────────────────────────────────────

class TestStatsCommand:
    async def test_all_time(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        await stats_command(update, mock_context)
        reply = _reply(update)
        assert "95%" in reply
        assert "Regular" in reply
        assert "Regular Cycle" in reply

    async def test_includes_top_symptoms(self, make_update, mock_context):
        mock_context.bot_data["db"].add_daily_log(1000, ["cramps"])
        update = make_update(chat_id=1000)
        await stats_command(update, mock_context)
        assert "cramps" in _reply(update)

    async def test_bad_range(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["bogus"]
        await stats_command(update, mock_context)
        assert "range" in _reply(update).lower()

    async def test_no_cycles(self, make_update, mock_context):
        update = make_update(chat_id=2000)
        mock_context.args = ["all"]
        await stats_command(update, mock_context)
        assert "No completed cycles" in _reply(update)


# ── /history, /calendar, /note, /delete, /edit ─────────────────

class TestHistoryCommand:
    async def test_lists_cycles(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        await history_command(update, mock_context)
        reply = _reply(update)
        assert "in progress" in reply
        assert "2025-11-04" in reply

    async def test_empty(self, make_update, mock_context):
        update = make_update(chat_id=2000)
        await history_command(update, mock_context)
        assert "No cycles" in _reply(update)


class TestCalendarCommand:
    async def test_marks_period_fertile_window_and_ovulation(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["2026-02"]
        await calendar_command(update, mock_context)
        reply = _reply(update)
        assert "February 2026" in reply
        # Jan 29 period runs five days into February
        assert "  1P" in reply and "  2P" in reply
        assert "  3P" not in reply
        # Fertile window Feb 8-13, ovulation Feb 13, next period Feb 27
        assert "  8F" in reply
        assert " 12F" in reply
        assert " 13O" in reply
        assert " 27p" in reply

    async def test_flow_log_marks_period_day(self, make_update, mock_context):
        db = mock_context.bot_data["db"]
        db.add_daily_log(1000, [], log_date=date(2026, 2, 20), flow="light")
        db.add_daily_log(1000, [], log_date=date(2026, 2, 21), flow="none")
        update = make_update(chat_id=1000)
        mock_context.args = ["2026-02"]
        await calendar_command(update, mock_context)
        reply = _reply(update)
        assert " 20P" in reply
        assert " 21P" not in reply

    async def test_bad_month(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["February"]
        await calendar_command(update, mock_context)
        assert "format" in _reply(update).lower()

    async def test_without_forecast(self, make_update, mock_context):
        update = make_update(chat_id=2000)
        mock_context.args = ["2026-02"]
        await calendar_command(update, mock_context)
        reply = _reply(update)
        assert "  8F" not in reply
        assert " 13O" not in reply
        assert " 28" in reply


class TestNoteCommand:
    async def test_saves_note(self, make_update, mock_context):
        db = mock_context.bot_data["db"]
        cycle_id = db.get_cycles(1000)[0].cycle_id
        update = make_update(chat_id=1000)
        mock_context.args = [str(cycle_id), "very", "*tired*"]
        await note_command(update, mock_context)
        assert "Note saved" in _reply(update)
        assert db.get_cycles(1000)[0].notes == "very *tired*"

    async def test_usage(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = []
        await note_command(update, mock_context)
        assert "Usage" in _reply(update)

    async def test_other_users_cycle(self, make_update, mock_context):
        cycle_id = mock_context.bot_data["db"].get_cycles(1000)[0].cycle_id
        update = make_update(chat_id=2000)
        mock_context.args = [str(cycle_id), "hi"]
        await note_command(update, mock_context)
        assert "couldn't find" in _reply(update)


class TestDeleteCommand:
    async def test_deletes(self, make_update, mock_context):
        db = mock_context.bot_data["db"]
        cycle_id = db.get_cycles(1000)[0].cycle_id
        update = make_update(chat_id=1000)
        mock_context.args = [f"#{cycle_id}"]
        await delete_command(update, mock_context)
        assert "deleted" in _reply(update)
        assert len(db.get_cycles(1000)) == 3

    async def test_not_a_number(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["abc"]
        await delete_command(update, mock_context)
        assert "Usage" in _reply(update)


class TestEditCommand:
    async def test_sets_period_length(self, make_update, mock_context):
        db = mock_context.bot_data["db"]
        cycle_id = db.get_cycles(1000)[0].cycle_id
        update = make_update(chat_id=1000)
        mock_context.args = [f"#{cycle_id}", "period", "7"]
        await edit_command(update, mock_context)
        assert "period length set to 7" in _reply(update)
        assert db.get_cycles(1000)[0].period_length == 7

    async def test_sets_cycle_length_and_refreshes_forecast(self, make_update, mock_context):
        db = mock_context.bot_data["db"]
        # Dec 3 cycle: 29 -> 32, so 29, 32, 28 averages 29.7 -> 30
        cycle_id = db.get_cycles(1000)[2].cycle_id
        update = make_update(chat_id=1000)
        mock_context.args = [str(cycle_id), "Cycle", "32"]
        await edit_command(update, mock_context)
        assert db.get_cycles(1000)[2].cycle_length == 32
        assert mock_context.bot_data["forecasts"][1000].next_period_date.isoformat() == "2026-02-28"

    async def test_length_out_of_range(self, make_update, mock_context):
        db = mock_context.bot_data["db"]
        cycle_id = db.get_cycles(1000)[1].cycle_id
        update = make_update(chat_id=1000)
        mock_context.args = [str(cycle_id), "cycle", "120"]
        await edit_command(update, mock_context)
        assert "between 15 and 90" in _reply(update)
        assert db.get_cycles(1000)[1].cycle_length == 28

    async def test_period_length_out_of_range(self, make_update, mock_context):
        cycle_id = mock_context.bot_data["db"].get_cycles(1000)[0].cycle_id
        update = make_update(chat_id=1000)
        mock_context.args = [str(cycle_id), "period", "0"]
        await edit_command(update, mock_context)
        assert "between 1 and 10" in _reply(update)

    async def test_unknown_field(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["1", "luteal", "12"]
        await edit_command(update, mock_context)
        assert "Usage" in _reply(update)

    async def test_missing_value(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["1", "cycle"]
        await edit_command(update, mock_context)
        assert "Usage" in _reply(update)

    async def test_other_users_cycle(self, make_update, mock_context):
        cycle_id = mock_context.bot_data["db"].get_cycles(1000)[0].cycle_id
        update = make_update(chat_id=2000)
        mock_context.args = [str(cycle_id), "period", "4"]
        await edit_command(update, mock_context)
        assert "couldn't find" in _reply(update)


# ── /log ─────────────────────────────────────────────────────────

class TestLogCommand:
    async def test_no_args(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = []
        await log_command(update, mock_context)
        assert "flow" in _reply(update).lower()

    async def test_symptoms_and_note(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["Cramps,", "bloating", "--", "rough", "day"]
        await log_command(update, mock_context)
        log = mock_context.bot_data["db"].get_recent_logs(1000, 1)[0]
        assert log["symptoms"] == ["cramps", "bloating"]
        assert log["note"] == "rough day"
        assert log["flow"] == ""

    async def test_flow_and_mood(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["flow:Heavy", "mood:anxious", "cramps", "--", "mood:ignored"]
        await log_command(update, mock_context)
        log = mock_context.bot_data["db"].get_recent_logs(1000, 1)[0]
        assert log["flow"] == "heavy"
        assert log["mood"] == "anxious"
        assert log["symptoms"] == ["cramps"]
        assert log["note"] == "mood:ignored"
        assert "Flow: heavy" in _reply(update)

    async def test_flow_only(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["flow:none"]
        await log_command(update, mock_context)
        log = mock_context.bot_data["db"].get_recent_logs(1000, 1)[0]
        assert log["flow"] == "none"
        assert log["symptoms"] == []

    async def test_unknown_flow(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["flow:gushing"]
        await log_command(update, mock_context)
        assert "none, light, medium, heavy" in _reply(update)
        assert mock_context.bot_data["db"].get_recent_logs(1000) == []


# ── /settings ────────────────────────────────────────────────────

class TestSettingsCommand:
    async def test_show(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        await settings_command(update, mock_context)
        assert "Settings" in _reply(update)

    async def test_set_luteal(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["luteal", "12"]
        await settings_command(update, mock_context)
        assert mock_context.bot_data["db"].get_user_settings(1000)["luteal_phase_length"] == 12

    async def test_luteal_out_of_range(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["luteal", "30"]
        await settings_command(update, mock_context)
        assert "between" in _reply(update)

    async def test_reminders_off(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        mock_context.args = ["reminders", "off"]
        await settings_command(update, mock_context)
        assert mock_context.bot_data["db"].get_user_settings(1000)["reminders_enabled"] is False


# ── inline buttons ───────────────────────────────────────────────

class TestButtonHandler:
    async def test_next(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        update.callback_query.data = "next"
        await button_handler(update, mock_context)
        text = update.callback_query.edit_message_text.call_args[0][0]
        assert "2026-02-27" in text

    async def test_menu(self, make_update, mock_context):
        update = make_update(chat_id=1000)
        update.callback_query.data = "menu"
        await button_handler(update, mock_context)
        text = update.callback_query.edit_message_text.call_args[0][0]
        assert "Main Menu" in text

    async def test_unregistered(self, make_update, mock_context):
        update = make_update(chat_id=3000)
        update.callback_query.data = "next"
        await button_handler(update, mock_context)
        update.callback_query.answer.assert_called_once_with("Please run /start first")
