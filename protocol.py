"""Shared constants and interfaces for the casino dispute server.

All modules import from here to avoid circular dependencies.
"""

from decimal import Decimal, ROUND_FLOOR
from enum import Enum

# --- Protocol Constants ---

COMMISSION_RATE = Decimal("0.05")  # house share of the total pot on settlement
MAX_QUESTION_LENGTH = 200
MIN_STAKE = 1
MAX_STAKE = 10**12
MAX_BALANCE = 10**15  # keeps every balance and pot inside SQLite's 64-bit INTEGER
MAX_TELEGRAM_ID = 2**53
DEFAULT_VOTING_HOURS = 24
DEFAULT_FLIP_DELAY = 3  # seconds both clients spend on the flip animation
DEFAULT_SWEEP_INTERVAL = 60
INIT_DATA_MAX_AGE = 86400

HEADS = "heads"
TAILS = "tails"
SIDES = (HEADS, TAILS)

ROLE_CREATOR = "creator"
ROLE_OPPONENT = "opponent"
ROLES = (ROLE_CREATOR, ROLE_OPPONENT)


def complement(side: str) -> str:
    """The other face of the coin."""
    if side == HEADS:
        return TAILS
    if side == TAILS:
        return HEADS
    raise ValueError(f"Invalid side: {side}")


def other_role(role: str) -> str:
    return ROLE_OPPONENT if role == ROLE_CREATOR else ROLE_CREATOR


def split_pot(stake: int) -> tuple[int, int, int]:
    """Return (total_pot, commission, payout) for a two-sided stake.

    Commission is floored to a whole coin: stake 33 -> (66, 3, 63).
    """
    total_pot = stake * 2
    commission = int((Decimal(total_pot) * COMMISSION_RATE).to_integral_value(rounding=ROUND_FLOOR))
    return total_pot, commission, total_pot - commission


# --- State Machine ---

class DisputeState(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    VOTING = "voting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


# Valid state transitions: current_state -> set of valid next states
STATE_TRANSITIONS = {
    DisputeState.PENDING: {DisputeState.ACTIVE, DisputeState.CANCELLED, DisputeState.REJECTED},
    DisputeState.ACTIVE: {DisputeState.COMPLETED, DisputeState.VOTING},
    DisputeState.VOTING: {DisputeState.COMPLETED},
    DisputeState.COMPLETED: set(),
    DisputeState.CANCELLED: set(),
    DisputeState.REJECTED: set(),
}

TERMINAL_STATES = {DisputeState.COMPLETED, DisputeState.CANCELLED, DisputeState.REJECTED}


def can_transition(current: str, new: str) -> bool:
    try:
        return DisputeState(new) in STATE_TRANSITIONS[DisputeState(current)]
    except ValueError:
        return False


# --- Ledger ---

class LedgerKind(Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    BET = "bet"
    WIN = "win"
    REFUND = "refund"
    ADMIN_ADJUSTMENT = "admin_adjustment"


GAMES = {"slots", "roulette", "guessnumber", "miner", "crush", "dispute", "none"}


# --- Room ---

class RoomStatus(Enum):
    WAITING = "waiting"
    FLIPPING = "flipping"  # both ready, resolution scheduled
    FINISHED = "finished"
