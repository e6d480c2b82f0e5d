"""Player accounts: balance, win-rate modifier, ban flag.

Balances only move together with a ledger entry, inside the caller's
transaction.
"""

import logging
import time
from dataclasses import dataclass

from protocol import MAX_BALANCE
from casino.db import Database
from casino.errors import InsufficientFunds, NotFound, ValidationFailed
from casino.ledger import Ledger

logger = logging.getLogger(__name__)


@dataclass
class Account:
    telegram_id: int
    first_name: str = ""
    last_name: str | None = None
    username: str | None = None
    balance: int = 0
    win_rate: float = 1.0
    is_admin: bool = False
    is_banned: bool = False
    created_at: float = 0.0

    @property
    def display_name(self) -> str:
        if self.username:
            return f"@{self.username}"
        name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return name or f"user {self.telegram_id}"

    def to_dict(self) -> dict:
        return {
            "telegram_id": self.telegram_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "username": self.username,
            "name": self.display_name,
            "balance": self.balance,
            "win_rate": self.win_rate,
            "is_admin": self.is_admin,
            "is_banned": self.is_banned,
            "created_at": self.created_at,
        }


class AccountStore:
    """SQLite-backed accounts."""

    def __init__(self, db: Database, ledger: Ledger):
        self.db = db
        self.ledger = ledger

    def register(self, telegram_id: int, first_name: str = "", last_name: str | None = None,
                 username: str | None = None) -> Account:
        """Create the account or refresh its profile. Balance is untouched."""
        with self.db.transaction():
            self.db.execute(
                """INSERT INTO users (telegram_id, first_name, last_name, username, created_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(telegram_id) DO UPDATE SET
                     first_name = excluded.first_name,
                     last_name = excluded.last_name,
                     username = excluded.username""",
                (telegram_id, first_name or "", last_name, username, time.time()),
            )
        return self.get(telegram_id)

    def get(self, telegram_id: int) -> Account | None:
        row = self.db.fetchone("SELECT * FROM users WHERE telegram_id = ?", (telegram_id,))
        if not row:
            return None
        return self._row_to_account(row)

    def require(self, telegram_id: int) -> Account:
        account = self.get(telegram_id)
        if account is None:
            raise NotFound(f"User {telegram_id} not found")
        return account

    def display_name(self, telegram_id: int | None) -> str:
        if telegram_id is None:
            return "Unknown"
        account = self.get(telegram_id)
        return account.display_name if account else "Unknown"

    def debit(self, telegram_id: int, amount: int, kind: str, game: str = "dispute",
              dispute_id: str | None = None) -> int:
        """Take ``amount`` from a balance. Must run inside a transaction.

        The balance guard is part of the UPDATE, so a concurrent debit can
        never drive the balance negative. Returns the new balance.
        """
        if amount <= 0:
            raise ValidationFailed("Debit amount must be positive")
        cursor = self.db.execute(
            "UPDATE users SET balance = balance - ? WHERE telegram_id = ? AND balance >= ?",
            (amount, telegram_id, amount),
        )
        if cursor.rowcount == 0:
            if self.get(telegram_id) is None:
                raise NotFound(f"User {telegram_id} not found")
            raise InsufficientFunds("Insufficient funds", user_id=telegram_id)
        self.ledger.record(telegram_id, -amount, kind, game=game, dispute_id=dispute_id)
        return self.get(telegram_id).balance

    def credit(self, telegram_id: int, amount: int, kind: str, game: str = "dispute",
               dispute_id: str | None = None) -> int:
        """Add ``amount`` to a balance. Must run inside a transaction."""
        if amount <= 0:
            raise ValidationFailed("Credit amount must be positive")
        cursor = self.db.execute(
            "UPDATE users SET balance = balance + ? WHERE telegram_id = ?",
            (amount, telegram_id),
        )
        if cursor.rowcount == 0:
            raise NotFound(f"User {telegram_id} not found")
        self.ledger.record(telegram_id, amount, kind, game=game, dispute_id=dispute_id)
        return self.get(telegram_id).balance

    def admin_adjust(self, telegram_id: int, delta: int) -> Account:
        """Manual balance correction from the admin surface."""
        if delta == 0:
            raise ValidationFailed("Adjustment must be non-zero")
        if abs(delta) > MAX_BALANCE:
            raise ValidationFailed(f"Adjustment cannot exceed {MAX_BALANCE} coins")
        with self.db.transaction():
            if self.require(telegram_id).balance + delta > MAX_BALANCE:
                raise ValidationFailed(f"Balance cannot exceed {MAX_BALANCE} coins")
            if delta > 0:
                self.credit(telegram_id, delta, "admin_adjustment", game="none")
            else:
                self.debit(telegram_id, -delta, "admin_adjustment", game="none")
        logger.info("Admin adjusted balance of %s by %+d", telegram_id, delta)
        return self.get(telegram_id)

    def set_balance(self, telegram_id: int, amount: int) -> Account:
        """Set an absolute balance; the difference is logged as an adjustment."""
        if amount < 0:
            raise ValidationFailed("Balance cannot be negative")
        if amount > MAX_BALANCE:
            raise ValidationFailed(f"Balance cannot exceed {MAX_BALANCE} coins")
        with self.db.transaction():
            delta = amount - self.require(telegram_id).balance
            if delta:
                self.admin_adjust(telegram_id, delta)
        return self.get(telegram_id)

    def set_win_rate(self, telegram_id: int, win_rate: float) -> Account:
        win_rate = max(0.0, min(1.0, win_rate))
        with self.db.transaction():
            cursor = self.db.execute(
                "UPDATE users SET win_rate = ? WHERE telegram_id = ?",
                (win_rate, telegram_id),
            )
            if cursor.rowcount == 0:
                raise NotFound(f"User {telegram_id} not found")
        return self.get(telegram_id)

    def set_banned(self, telegram_id: int, banned: bool) -> Account:
        with self.db.transaction():
            cursor = self.db.execute(
                "UPDATE users SET is_banned = ? WHERE telegram_id = ?",
                (1 if banned else 0, telegram_id),
            )
            if cursor.rowcount == 0:
                raise NotFound(f"User {telegram_id} not found")
        logger.info("User %s %s", telegram_id, "banned" if banned else "unbanned")
        return self.get(telegram_id)

    def _row_to_account(self, row) -> Account:
        return Account(
            telegram_id=row["telegram_id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            username=row["username"],
            balance=row["balance"],
            win_rate=row["win_rate"],
            is_admin=bool(row["is_admin"]),
            is_banned=bool(row["is_banned"]),
            created_at=row["created_at"],
        )
