"""Dispute storage.

SQLite-backed CRUD + query by status/participant. Status changes go through
``transition()``, a compare-and-swap on the previous status validated
against the state machine in protocol.py.
"""

import time
import uuid

from protocol import (
    DisputeState, STATE_TRANSITIONS, ROLE_CREATOR, ROLE_OPPONENT, complement,
)
from casino.db import Database


class DisputeStore:
    """SQLite-backed dispute storage with state machine enforcement."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, creator_id: int, opponent_id: int | None, question: str, amount: int,
               creator_side: str) -> str:
        """Store a new pending dispute. Returns dispute ID."""
        dispute_id = uuid.uuid4().hex[:16]
        now = time.time()
        self.db.execute(
            "INSERT INTO disputes (id, status, creator_id, opponent_id, question, amount, creator_side, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (dispute_id, DisputeState.PENDING.value, creator_id, opponent_id, question, amount, creator_side, now, now),
        )
        return dispute_id

    def get(self, dispute_id: str) -> dict | None:
        row = self.db.fetchone("SELECT * FROM disputes WHERE id = ?", (dispute_id,))
        if not row:
            return None
        return self._row_to_dict(row)

    def list_for_user(self, user_id: int, limit: int = 50) -> list[dict]:
        rows = self.db.fetchall(
            "SELECT * FROM disputes WHERE creator_id = ? OR opponent_id = ? ORDER BY created_at DESC LIMIT ?",
            (user_id, user_id, limit),
        )
        return [self._row_to_dict(r) for r in rows]

    def list_pending_by_creator(self, creator_id: int, limit: int = 10) -> list[dict]:
        rows = self.db.fetchall(
            "SELECT * FROM disputes WHERE creator_id = ? AND status = 'pending' ORDER BY created_at DESC LIMIT ?",
            (creator_id, limit),
        )
        return [self._row_to_dict(r) for r in rows]

    def list_votings(self, now: float, expired: bool, limit: int = 100) -> list[dict]:
        op = "<=" if expired else ">"
        rows = self.db.fetchall(
            f"SELECT * FROM disputes WHERE status = 'voting' AND voting_deadline {op} ? ORDER BY voting_deadline LIMIT ?",
            (now, limit),
        )
        return [self._row_to_dict(r) for r in rows]

    def transition(self, dispute_id: str, from_status: str, to_status: str, **fields) -> bool:
        """Move a dispute from ``from_status`` to ``to_status``.

        Conditioned on the stored status still being ``from_status``; returns
        False when another writer got there first. Extra keyword arguments
        are written in the same UPDATE.
        """
        try:
            current_state = DisputeState(from_status)
            new_state = DisputeState(to_status)
        except ValueError:
            raise ValueError(f"Invalid state: {from_status} -> {to_status}")
        if new_state not in STATE_TRANSITIONS.get(current_state, set()):
            raise ValueError(f"Invalid state transition: {from_status} -> {to_status}")

        fields["status"] = to_status
        fields["updated_at"] = time.time()
        assignments = ", ".join(f"{k} = ?" for k in fields)
        cursor = self.db.execute(
            f"UPDATE disputes SET {assignments} WHERE id = ? AND status = ?",
            (*fields.values(), dispute_id, from_status),
        )
        return cursor.rowcount > 0

    def set_ready(self, dispute_id: str, role: str, ready: bool) -> bool:
        """Set a readiness flag while the dispute is active."""
        column = self._role_column(role, "ready")
        cursor = self.db.execute(
            f"UPDATE disputes SET {column} = ?, updated_at = ? WHERE id = ? AND status = 'active'",
            (1 if ready else 0, time.time(), dispute_id),
        )
        return cursor.rowcount > 0

    def set_choice(self, dispute_id: str, role: str, choice: bool) -> bool:
        """Record a participant's answer once. False if already chosen or not active."""
        column = self._role_column(role, "choice")
        cursor = self.db.execute(
            f"UPDATE disputes SET {column} = ?, updated_at = ? WHERE id = ? AND status = 'active' AND {column} IS NULL",
            (1 if choice else 0, time.time(), dispute_id),
        )
        return cursor.rowcount > 0

    def attach_message(self, dispute_id: str, chat_id: int | None = None, message_id: int | None = None,
                       inline_message_id: str | None = None) -> bool:
        """Remember where the dispute was posted, for in-place edits."""
        cursor = self.db.execute(
            "UPDATE disputes SET chat_id = COALESCE(?, chat_id), message_id = COALESCE(?, message_id), inline_message_id = COALESCE(?, inline_message_id), updated_at = ? WHERE id = ?",
            (chat_id, message_id, inline_message_id, time.time(), dispute_id),
        )
        return cursor.rowcount > 0

    # --- Votes ---

    def add_vote(self, dispute_id: str, voter_id: int, vote_for: str) -> bool:
        """Insert a vote. False if this voter already voted on the dispute."""
        cursor = self.db.execute(
            "INSERT OR IGNORE INTO dispute_votes (dispute_id, voter_id, vote_for, created_at) VALUES (?, ?, ?, ?)",
            (dispute_id, voter_id, vote_for, time.time()),
        )
        return cursor.rowcount > 0

    def vote_counts(self, dispute_id: str) -> dict:
        rows = self.db.fetchall(
            "SELECT vote_for, COUNT(*) AS n FROM dispute_votes WHERE dispute_id = ? GROUP BY vote_for",
            (dispute_id,),
        )
        counts = {ROLE_CREATOR: 0, ROLE_OPPONENT: 0}
        for r in rows:
            counts[r["vote_for"]] = r["n"]
        return counts

    @staticmethod
    def _role_column(role: str, suffix: str) -> str:
        if role not in (ROLE_CREATOR, ROLE_OPPONENT):
            raise ValueError(f"Invalid role: {role}")
        return f"{role}_{suffix}"

    def _row_to_dict(self, row) -> dict:
        def _choice(v):
            return None if v is None else bool(v)

        return {
            "id": row["id"],
            "status": row["status"],
            "creator_id": row["creator_id"],
            "opponent_id": row["opponent_id"],
            "question": row["question"],
            "amount": row["amount"],
            "creator_side": row["creator_side"],
            "opponent_side": complement(row["creator_side"]),
            "creator_ready": bool(row["creator_ready"]),
            "opponent_ready": bool(row["opponent_ready"]),
            "creator_choice": _choice(row["creator_choice"]),
            "opponent_choice": _choice(row["opponent_choice"]),
            "result": row["result"],
            "winner_id": row["winner_id"],
            "commission": row["commission"],
            "payout": row["payout"],
            "is_draw": bool(row["is_draw"]),
            "voting_deadline": row["voting_deadline"],
            "chat_id": row["chat_id"],
            "message_id": row["message_id"],
            "inline_message_id": row["inline_message_id"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "completed_at": row["completed_at"],
        }
