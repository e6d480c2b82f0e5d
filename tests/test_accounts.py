"""Tests for casino/accounts.py and casino/ledger.py."""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import pytest
from casino.errors import InsufficientFunds, NotFound, ValidationFailed
from conftest import fund
from protocol import MAX_BALANCE


# --- Registration ---

def test_register_creates_account(accounts):
    acct = accounts.register(1, first_name="Ann", username="ann")
    assert acct.telegram_id == 1
    assert acct.balance == 0
    assert acct.win_rate == 1.0
    assert not acct.is_banned


def test_register_twice_keeps_balance(accounts):
    fund(accounts, 1, 500)
    acct = accounts.register(1, first_name="Renamed")
    assert acct.balance == 500
    assert acct.first_name == "Renamed"


def test_display_name_prefers_username(accounts):
    accounts.register(1, first_name="Ann", last_name="Lee", username="ann")
    accounts.register(2, first_name="Bob", last_name="Ray")
    accounts.register(3)
    assert accounts.display_name(1) == "@ann"
    assert accounts.display_name(2) == "Bob Ray"
    assert accounts.display_name(3) == "user 3"


def test_display_name_unknown(accounts):
    assert accounts.display_name(None) == "Unknown"
    assert accounts.display_name(42) == "Unknown"


def test_require_missing(accounts):
    with pytest.raises(NotFound):
        accounts.require(42)


# --- Balance moves ---

def test_debit_writes_ledger(accounts, ledger):
    fund(accounts, 1, 100)
    new_balance = accounts.debit(1, 30, "bet", dispute_id="d1")
    assert new_balance == 70
    rows = ledger.for_dispute("d1")
    assert len(rows) == 1
    assert rows[0]["amount"] == -30
    assert rows[0]["kind"] == "bet"


def test_debit_never_goes_negative(accounts, ledger):
    fund(accounts, 1, 10)
    with pytest.raises(InsufficientFunds):
        accounts.debit(1, 11, "bet", dispute_id="d1")
    assert accounts.get(1).balance == 10
    assert ledger.for_dispute("d1") == []


def test_debit_unknown_user(accounts):
    with pytest.raises(NotFound):
        accounts.debit(99, 1, "bet")


def test_credit_requires_positive(accounts):
    fund(accounts, 1, 0)
    with pytest.raises(ValidationFailed):
        accounts.credit(1, 0, "win")


def test_debit_rolls_back_with_transaction(db, accounts, ledger):
    fund(accounts, 1, 100)
    fund(accounts, 2, 5)
    with pytest.raises(InsufficientFunds):
        with db.transaction():
            accounts.debit(1, 50, "bet", dispute_id="d1")
            accounts.debit(2, 50, "bet", dispute_id="d1")
    assert accounts.get(1).balance == 100
    assert ledger.for_dispute("d1") == []


# --- Admin ---

def test_admin_adjust_records_kind(accounts, ledger):
    fund(accounts, 1, 0)
    accounts.admin_adjust(1, 250)
    accounts.admin_adjust(1, -50)
    assert accounts.get(1).balance == 200
    kinds = [r["kind"] for r in ledger.for_user(1)]
    assert kinds == ["admin_adjustment", "admin_adjustment"]
    assert {r["game"] for r in ledger.for_user(1)} == {"none"}


def test_admin_adjust_refuses_overdraft(accounts):
    fund(accounts, 1, 10)
    with pytest.raises(InsufficientFunds):
        accounts.admin_adjust(1, -20)
    assert accounts.get(1).balance == 10


def test_admin_adjust_zero(accounts):
    fund(accounts, 1, 10)
    with pytest.raises(ValidationFailed):
        accounts.admin_adjust(1, 0)


def test_set_balance_logs_delta(accounts, ledger):
    fund(accounts, 1, 300)
    acct = accounts.set_balance(1, 120)
    assert acct.balance == 120
    assert ledger.for_user(1)[0]["amount"] == -180


def test_set_balance_same_value_no_entry(accounts, ledger):
    fund(accounts, 1, 300)
    accounts.set_balance(1, 300)
    assert len(ledger.for_user(1)) == 1


def test_set_balance_negative(accounts):
    fund(accounts, 1, 300)
    with pytest.raises(ValidationFailed):
        accounts.set_balance(1, -1)


def test_set_balance_above_cap(accounts, ledger):
    fund(accounts, 1, 300)
    with pytest.raises(ValidationFailed):
        accounts.set_balance(1, MAX_BALANCE + 1)
    assert accounts.set_balance(1, MAX_BALANCE).balance == MAX_BALANCE


def test_admin_adjust_above_cap(accounts):
    fund(accounts, 1, 300)
    with pytest.raises(ValidationFailed):
        accounts.admin_adjust(1, MAX_BALANCE)
    with pytest.raises(ValidationFailed):
        accounts.admin_adjust(1, -10**20)
    assert accounts.get(1).balance == 300


def test_win_rate_clamped(accounts):
    fund(accounts, 1, 0)
    assert accounts.set_win_rate(1, 1.7).win_rate == 1.0
    assert accounts.set_win_rate(1, -0.2).win_rate == 0.0
    assert accounts.set_win_rate(1, 0.35).win_rate == pytest.approx(0.35)


def test_ban_flag(accounts):
    fund(accounts, 1, 0)
    assert accounts.set_banned(1, True).is_banned
    assert not accounts.set_banned(1, False).is_banned


def test_flags_unknown_user(accounts):
    with pytest.raises(NotFound):
        accounts.set_banned(7, True)
    with pytest.raises(NotFound):
        accounts.set_win_rate(7, 0.5)


# --- Ledger ---

def test_ledger_rejects_unknown_kind(accounts, ledger):
    fund(accounts, 1, 0)
    with pytest.raises(ValueError):
        ledger.record(1, 10, "jackpot")


def test_ledger_rejects_unknown_game(accounts, ledger):
    fund(accounts, 1, 0)
    with pytest.raises(ValueError):
        ledger.record(1, 10, "win", game="poker")


def test_ledger_for_user_newest_first(accounts, ledger):
    fund(accounts, 1, 0)
    ledger.record(1, 5, "deposit", game="none")
    ledger.record(1, -2, "bet", game="slots")
    rows = ledger.for_user(1)
    assert [r["amount"] for r in rows] == [-2, 5]
    assert ledger.for_user(1, limit=1)[0]["game"] == "slots"


def test_net_for_dispute(accounts, ledger):
    fund(accounts, 1, 0)
    ledger.record(1, -100, "bet", dispute_id="d")
    ledger.record(1, 190, "win", dispute_id="d")
    assert ledger.net_for_dispute("d") == 90
    assert ledger.net_for_dispute("other") == 0
