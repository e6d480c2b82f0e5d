"""Append-only record of balance-affecting events."""

import time

from protocol import LedgerKind, GAMES
from casino.db import Database


class Ledger:
    """Insert-only transaction log. Callers own the surrounding transaction."""

    def __init__(self, db: Database):
        self.db = db

    def record(self, user_id: int, amount: int, kind: str, game: str = "dispute",
               dispute_id: str | None = None) -> int:
        LedgerKind(kind)  # raises ValueError on unknown kinds
        if game not in GAMES:
            raise ValueError(f"Unknown game: {game}")
        cursor = self.db.execute(
            "INSERT INTO transactions (user_id, amount, kind, game, dispute_id, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (user_id, amount, kind, game, dispute_id, time.time()),
        )
        return cursor.lastrowid

    def for_dispute(self, dispute_id: str) -> list[dict]:
        rows = self.db.fetchall(
            "SELECT * FROM transactions WHERE dispute_id = ? ORDER BY id",
            (dispute_id,),
        )
        return [self._row_to_dict(r) for r in rows]

    def for_user(self, user_id: int, limit: int = 50) -> list[dict]:
        rows = self.db.fetchall(
            "SELECT * FROM transactions WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        )
        return [self._row_to_dict(r) for r in rows]

    def net_for_dispute(self, dispute_id: str) -> int:
        """Sum of all entries tagged to a dispute. -commission once settled."""
        row = self.db.fetchone(
            "SELECT COALESCE(SUM(amount), 0) AS total FROM transactions WHERE dispute_id = ?",
            (dispute_id,),
        )
        return int(row["total"])

    def _row_to_dict(self, row) -> dict:
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            "amount": row["amount"],
            "kind": row["kind"],
            "game": row["game"],
            "dispute_id": row["dispute_id"],
            "created_at": row["created_at"],
        }
