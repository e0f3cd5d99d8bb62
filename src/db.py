import json
import logging
import sqlite3
from collections import defaultdict
from datetime import date
from pathlib import Path
from typing import Callable

from src.models import CycleRecord, parse_cycle_record

logger = logging.getLogger(__name__)

HistoryCallback = Callable[[list[CycleRecord]], None]

DEFAULT_PERIOD_LENGTH = 5
DEFAULT_LUTEAL_PHASE_LENGTH = 14
SETTINGS_FIELDS = ("period_length", "luteal_phase_length", "reminders_enabled")
FLOW_LEVELS = ("none", "light", "medium", "heavy")


class Database:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False, timeout=10)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._subscribers: dict[int, list[HistoryCallback]] = defaultdict(list)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        return self._conn

    def _init_db(self):
        with self._get_conn() as conn:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS users (
                    chat_id INTEGER PRIMARY KEY,
                    period_length INTEGER NOT NULL DEFAULT {DEFAULT_PERIOD_LENGTH},
                    luteal_phase_length INTEGER NOT NULL DEFAULT {DEFAULT_LUTEAL_PHASE_LENGTH},
                    reminders_enabled INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL DEFAULT (datetime('now'))
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS cycles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chat_id INTEGER NOT NULL,
                    start_date TEXT NOT NULL,
                    cycle_length INTEGER,
                    period_length INTEGER,
                    symptoms TEXT NOT NULL DEFAULT '[]',
                    notes TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL DEFAULT (datetime('now')),
                    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
                    UNIQUE (chat_id, start_date),
                    FOREIGN KEY (chat_id) REFERENCES users(chat_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS daily_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chat_id INTEGER NOT NULL,
                    date TEXT NOT NULL,
                    symptoms TEXT NOT NULL DEFAULT '[]',
                    note TEXT NOT NULL DEFAULT '',
                    flow TEXT NOT NULL DEFAULT '',
                    mood TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL DEFAULT (datetime('now')),
                    FOREIGN KEY (chat_id) REFERENCES users(chat_id)
                )
            """)
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(daily_logs)")}
            for column in ("flow", "mood"):
                if column not in columns:
                    conn.execute(f"ALTER TABLE daily_logs ADD COLUMN {column} TEXT NOT NULL DEFAULT ''")
                    logger.info(f"Added daily_logs.{column} column")

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_cycles_chat
                ON cycles(chat_id, start_date DESC)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_daily_logs_chat
                ON daily_logs(chat_id, created_at DESC)
            """)

    # ── Users & settings ────────────────────────────────────────────

    def add_user(self, chat_id: int) -> bool:
        """Register a user. Returns False if they were already registered."""
        with self._get_conn() as conn:
            cur = conn.execute(
                "INSERT INTO users (chat_id) VALUES (?) ON CONFLICT(chat_id) DO NOTHING",
                (chat_id,),
            )
            return cur.rowcount == 1

    def is_registered(self, chat_id: int) -> bool:
        with self._get_conn() as conn:
            row = conn.execute("SELECT 1 FROM users WHERE chat_id = ?", (chat_id,)).fetchone()
            return row is not None

    def get_all_users(self) -> list[dict]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT chat_id, reminders_enabled FROM users ORDER BY created_at"
            ).fetchall()
            return [dict(r) for r in rows]

    def get_user_settings(self, chat_id: int) -> dict | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT period_length, luteal_phase_length, reminders_enabled FROM users WHERE chat_id = ?",
                (chat_id,),
            ).fetchone()
            if not row:
                return None
            settings = dict(row)
            settings["reminders_enabled"] = bool(settings["reminders_enabled"])
            return settings

    def update_user_settings(self, chat_id: int, **fields):
        unknown = set(fields) - set(SETTINGS_FIELDS)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [int(v) for v in fields.values()]
        with self._get_conn() as conn:
            conn.execute(
                f"UPDATE users SET {assignments} WHERE chat_id = ?",
                (*values, chat_id),
            )

    # ── Subscriptions ───────────────────────────────────────────────

    def subscribe(self, chat_id: int, callback: HistoryCallback) -> Callable[[], None]:
        """Call ``callback`` with a fresh cycle snapshot after every change for this user.

        Returns a function that removes the subscription.
        """
        self._subscribers[chat_id].append(callback)

        def unsubscribe():
            callbacks = self._subscribers.get(chat_id, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def _notify(self, chat_id: int):
        callbacks = list(self._subscribers.get(chat_id, []))
        if not callbacks:
            return
        snapshot = self.get_cycles(chat_id)
        for callback in callbacks:
            try:
                callback(list(snapshot))
            except Exception:
                logger.exception(f"History subscriber failed for {chat_id}")

    # ── Cycles ──────────────────────────────────────────────────────

    def get_cycles(self, chat_id: int, limit: int | None = None) -> list[CycleRecord]:
        """Return the user's cycles newest first, skipping rows that don't validate."""
        sql = "SELECT * FROM cycles WHERE chat_id = ? ORDER BY start_date DESC"
        params: tuple = (chat_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (chat_id, limit)
        with self._get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()

        records = []
        for row in rows:
            record = parse_cycle_record(dict(row))
            if record is None:
                logger.warning(f"Skipping malformed cycle row {row['id']} for {chat_id}")
                continue
            records.append(record)
        return records

    def _neighbours(self, conn, chat_id: int, start: str) -> tuple[sqlite3.Row | None, sqlite3.Row | None]:
        prev_row = conn.execute(
            "SELECT id, start_date FROM cycles WHERE chat_id = ? AND start_date < ? "
            "ORDER BY start_date DESC LIMIT 1",
            (chat_id, start),
        ).fetchone()
        next_row = conn.execute(
            "SELECT id, start_date FROM cycles WHERE chat_id = ? AND start_date > ? "
            "ORDER BY start_date ASC LIMIT 1",
            (chat_id, start),
        ).fetchone()
        return prev_row, next_row

    def add_cycle(
        self,
        chat_id: int,
        start_date: date,
        period_length: int | None = None,
        symptoms: list[str] | None = None,
        notes: str = "",
    ) -> int:
        """Log a new period start and back-fill the previous cycle's length."""
        start = start_date.isoformat()
        with self._get_conn() as conn:
            exists = conn.execute(
                "SELECT 1 FROM cycles WHERE chat_id = ? AND start_date = ?",
                (chat_id, start),
            ).fetchone()
            if exists:
                raise ValueError(f"A cycle starting {start} is already logged")

            prev_row, next_row = self._neighbours(conn, chat_id, start)
            cycle_length = None
            if next_row:
                cycle_length = (date.fromisoformat(next_row["start_date"]) - start_date).days

            cur = conn.execute(
                "INSERT INTO cycles (chat_id, start_date, cycle_length, period_length, symptoms, notes) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (chat_id, start, cycle_length, period_length, json.dumps(symptoms or []), notes),
            )
            cycle_id = cur.lastrowid

            if prev_row:
                gap = (start_date - date.fromisoformat(prev_row["start_date"])).days
                conn.execute(
                    "UPDATE cycles SET cycle_length = ?, updated_at = datetime('now') WHERE id = ?",
                    (gap, prev_row["id"]),
                )

        logger.info(f"User {chat_id}: cycle logged starting {start}")
        self._notify(chat_id)
        return cycle_id

    def update_cycle(
        self,
        chat_id: int,
        cycle_id: int,
        *,
        notes: str | None = None,
        period_length: int | None = None,
        cycle_length: int | None = None,
    ) -> bool:
        """Edit notes or correct lengths on one of the user's cycles."""
        changes = {}
        if notes is not None:
            changes["notes"] = notes
        if period_length is not None:
            changes["period_length"] = period_length
        if cycle_length is not None:
            changes["cycle_length"] = cycle_length
        if not changes:
            return False

        assignments = ", ".join(f"{name} = ?" for name in changes)
        with self._get_conn() as conn:
            cur = conn.execute(
                f"UPDATE cycles SET {assignments}, updated_at = datetime('now') "
                "WHERE id = ? AND chat_id = ?",
                (*changes.values(), cycle_id, chat_id),
            )
            updated = cur.rowcount == 1

        if updated:
            self._notify(chat_id)
        return updated

    def delete_cycle(self, chat_id: int, cycle_id: int) -> bool:
        """Delete a cycle and re-link the previous cycle to whatever follows it."""
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT start_date FROM cycles WHERE id = ? AND chat_id = ?",
                (cycle_id, chat_id),
            ).fetchone()
            if not row:
                return False

            prev_row, next_row = self._neighbours(conn, chat_id, row["start_date"])
            conn.execute("DELETE FROM cycles WHERE id = ?", (cycle_id,))

            if prev_row:
                gap = None
                if next_row:
                    gap = (
                        date.fromisoformat(next_row["start_date"])
                        - date.fromisoformat(prev_row["start_date"])
                    ).days
                conn.execute(
                    "UPDATE cycles SET cycle_length = ?, updated_at = datetime('now') WHERE id = ?",
                    (gap, prev_row["id"]),
                )

        logger.info(f"User {chat_id}: cycle {cycle_id} deleted")
        self._notify(chat_id)
        return True

    # ── Daily symptom logs ──────────────────────────────────────────

    def add_daily_log(
        self,
        chat_id: int,
        symptoms: list[str],
        note: str = "",
        log_date: date | None = None,
        flow: str = "",
        mood: str = "",
    ):
        """Store one day's log. `flow` is "" (not recorded) or one of FLOW_LEVELS."""
        if flow and flow not in FLOW_LEVELS:
            raise ValueError(f"Unknown flow level: {flow}")
        log_date = log_date or date.today()
        with self._get_conn() as conn:
            conn.execute(
                "INSERT INTO daily_logs (chat_id, date, symptoms, note, flow, mood) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (chat_id, log_date.isoformat(), json.dumps(symptoms), note, flow, mood),
            )

    def _log_rows(self, query: str, params: tuple) -> list[dict]:
        with self._get_conn() as conn:
            rows = conn.execute(query, params).fetchall()
        logs = []
        for row in rows:
            log = dict(row)
            log["symptoms"] = json.loads(log["symptoms"] or "[]")
            logs.append(log)
        return logs

    def get_recent_logs(self, chat_id: int, limit: int = 10) -> list[dict]:
        return self._log_rows(
            "SELECT date, symptoms, note, flow, mood, created_at FROM daily_logs WHERE chat_id = ? "
            "ORDER BY created_at DESC, id DESC LIMIT ?",
            (chat_id, limit),
        )

    def get_logs_between(self, chat_id: int, start: date, end: date) -> list[dict]:
        """Logs dated within [start, end], oldest first."""
        return self._log_rows(
            "SELECT date, symptoms, note, flow, mood, created_at FROM daily_logs "
            "WHERE chat_id = ? AND date BETWEEN ? AND ? ORDER BY date, id",
            (chat_id, start.isoformat(), end.isoformat()),
        )
