import os

# Set test environment variables before any source imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "test-token")

from datetime import date

import pytest
from unittest.mock import AsyncMock, MagicMock

from src.db import Database
from src.models import CycleRecord


@pytest.fixture
def db(tmp_path):
    """Fresh Database instance using temp file (real SQLite, WAL mode)."""
    return Database(tmp_path / "test.db")


@pytest.fixture
def db_with_user(db):
    """Pre-populated: user 1000 with four logged cycles, user 2000 with none."""
    db.add_user(1000)
    for start in ("2025-11-04", "2025-12-03", "2026-01-01", "2026-01-29"):
        db.add_cycle(1000, date.fromisoformat(start), period_length=5)
    db.add_user(2000)
    return db


@pytest.fixture
def make_history():
    """Factory: build a newest-first history from (start_date, cycle_length) pairs."""
    def _factory(*pairs, period_length=5):
        return [
            CycleRecord(start_date=date.fromisoformat(start), cycle_length=length, period_length=period_length)
            for start, length in pairs
        ]
    return _factory


@pytest.fixture
def mock_context(db_with_user):
    """Mock Telegram context with bot_data['db'] pointing to test DB."""
    context = MagicMock()
    context.bot_data = {"db": db_with_user}
    context.args = []
    context.bot = AsyncMock()
    return context


@pytest.fixture
def make_update():
    """Factory creating mock Telegram Update with given chat_id and text."""
    def _factory(chat_id=1000, text="/start"):
        update = MagicMock()
        update.effective_chat.id = chat_id
        update.message = MagicMock()
        update.message.text = text
        update.message.reply_text = AsyncMock()
        update.callback_query = MagicMock()
        update.callback_query.answer = AsyncMock()
        update.callback_query.data = ""
        update.callback_query.message.chat_id = chat_id
        update.callback_query.edit_message_text = AsyncMock()
        return update
    return _factory
