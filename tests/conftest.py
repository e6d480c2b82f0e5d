import sys
import os

# Ensure the project root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from casino.accounts import AccountStore
from casino.db import Database
from casino.engine import DisputeEngine
from casino.ledger import Ledger
from casino.rng import SeededRandomSource


CREATOR = 101
OPPONENT = 202
STRANGER = 909
VOTERS = (301, 302, 303, 304, 305)
START_BALANCE = 1000
T0 = 1_700_000_000.0


class RecordingNotifier:
    """Collects (user_id, text) instead of talking to Telegram."""

    def __init__(self):
        self.sent = []

    def send(self, user_id, text):
        self.sent.append((user_id, text))

    def to(self, user_id):
        return [text for uid, text in self.sent if uid == user_id]


class FailingNotifier:
    def send(self, user_id, text):
        raise RuntimeError("telegram is down")


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def fund(accounts, telegram_id, amount=START_BALANCE, first_name=None):
    """Register a player and give them ``amount`` coins."""
    accounts.register(telegram_id, first_name=first_name or f"Player{telegram_id}")
    if amount:
        accounts.admin_adjust(telegram_id, amount)
    return accounts.get(telegram_id)


def make_engine(rng=None, clock=None, notifier=None, voting_hours=24, balances=None):
    """Engine over an in-memory database with the standard cast funded."""
    db = Database(":memory:")
    ledger = Ledger(db)
    accounts = AccountStore(db, ledger)
    engine = DisputeEngine(
        db, accounts, ledger,
        notifier=notifier if notifier is not None else RecordingNotifier(),
        rng=rng or SeededRandomSource(42),
        voting_hours=voting_hours,
        clock=clock or FakeClock(),
    )
    balances = balances or {}
    for uid in (CREATOR, OPPONENT, STRANGER, *VOTERS):
        fund(accounts, uid, balances.get(uid, START_BALANCE))
    return engine


def active_dispute(engine, amount=100, question="Who wins?"):
    """Create and accept a dispute between CREATOR and OPPONENT. Returns its id."""
    d = engine.create(CREATOR, OPPONENT, question, amount).unwrap()
    engine.accept(d["id"], OPPONENT).unwrap()
    return d["id"]


def voting_dispute(engine, amount=100):
    """Active dispute where the parties disagree, so voting is open."""
    dispute_id = active_dispute(engine, amount)
    engine.make_choice(dispute_id, CREATOR, True).unwrap()
    engine.make_choice(dispute_id, OPPONENT, False).unwrap()
    return dispute_id


def balance(engine, telegram_id):
    return engine.accounts.get(telegram_id).balance


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(clock, notifier):
    return make_engine(clock=clock, notifier=notifier)


@pytest.fixture
def db():
    return Database(":memory:")


@pytest.fixture
def ledger(db):
    return Ledger(db)


@pytest.fixture
def accounts(db, ledger):
    return AccountStore(db, ledger)
