"""SQLite database shared by accounts, ledger and disputes.

One connection per process. Every balance-affecting change runs inside
``transaction()`` so the status change, balance deltas and ledger rows of
a dispute operation commit together or not at all.
"""

import sqlite3
import threading
from contextlib import contextmanager


class Database:
    """SQLite connection with explicit transactions."""

    def __init__(self, db_path: str = ":memory:"):
        # isolation_level=None: we issue BEGIN/COMMIT ourselves
        self.db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._init_db()

    def _init_db(self):
        # Enable WAL mode for safe concurrent reads during writes
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("PRAGMA foreign_keys=ON")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS users (
                telegram_id INTEGER PRIMARY KEY,
                first_name TEXT NOT NULL DEFAULT '',
                last_name TEXT,
                username TEXT,
                balance INTEGER NOT NULL DEFAULT 0,
                win_rate REAL NOT NULL DEFAULT 1.0,
                is_admin INTEGER NOT NULL DEFAULT 0,
                is_banned INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(telegram_id),
                amount INTEGER NOT NULL,
                kind TEXT NOT NULL,
                game TEXT NOT NULL DEFAULT 'none',
                dispute_id TEXT,
                created_at REAL NOT NULL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS disputes (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL DEFAULT 'pending',
                creator_id INTEGER NOT NULL REFERENCES users(telegram_id),
                opponent_id INTEGER REFERENCES users(telegram_id),
                question TEXT NOT NULL,
                amount INTEGER NOT NULL,
                creator_side TEXT NOT NULL,
                creator_ready INTEGER NOT NULL DEFAULT 0,
                opponent_ready INTEGER NOT NULL DEFAULT 0,
                creator_choice INTEGER,
                opponent_choice INTEGER,
                result TEXT,
                winner_id INTEGER,
                commission INTEGER NOT NULL DEFAULT 0,
                payout INTEGER NOT NULL DEFAULT 0,
                is_draw INTEGER NOT NULL DEFAULT 0,
                voting_deadline REAL,
                chat_id INTEGER,
                message_id INTEGER,
                inline_message_id TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                completed_at REAL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS dispute_votes (
                dispute_id TEXT NOT NULL REFERENCES disputes(id),
                voter_id INTEGER NOT NULL REFERENCES users(telegram_id),
                vote_for TEXT NOT NULL,
                created_at REAL NOT NULL,
                PRIMARY KEY (dispute_id, voter_id)
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_disputes_status ON disputes(status)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_disputes_creator ON disputes(creator_id)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_disputes_opponent ON disputes(opponent_id)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_tx_user ON transactions(user_id)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_tx_dispute ON transactions(dispute_id)")

    @contextmanager
    def transaction(self):
        """Serialize writers and commit atomically.

        Nested use joins the outer transaction.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self.db
                finally:
                    self._depth -= 1
                return
            self.db.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self.db
            except BaseException:
                self.db.execute("ROLLBACK")
                raise
            else:
                self.db.execute("COMMIT")
            finally:
                self._depth = 0

    def execute(self, sql: str, params: tuple = ()):
        with self._lock:
            return self.db.execute(sql, params)

    def fetchone(self, sql: str, params: tuple = ()):
        with self._lock:
            return self.db.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()):
        with self._lock:
            return self.db.execute(sql, params).fetchall()

    def close(self):
        self.db.close()
