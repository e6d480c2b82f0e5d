"""Tests for the crowd-voting resolution path: choices, votes, deadline, sweep."""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

from casino.errors import Forbidden, InvalidState, NotFound, ValidationFailed
from conftest import (
    CREATOR, OPPONENT, STRANGER, VOTERS, START_BALANCE, T0,
    active_dispute, balance, voting_dispute,
)

DAY = 24 * 3600


# --- Choices ---

def test_different_choices_open_voting(engine, notifier):
    dispute_id = active_dispute(engine)
    first = engine.make_choice(dispute_id, CREATOR, True).unwrap()
    assert first["status"] == "active"
    assert first["creator"]["choice"] is True
    assert first["opponent"]["choice"] is None

    snap = engine.make_choice(dispute_id, OPPONENT, False).unwrap()
    assert snap["status"] == "voting"
    assert snap["voting"]["deadline"] == T0 + DAY
    assert any("Voting is open for about 24h" in t for t in notifier.to(CREATOR))
    assert any("Voting is open" in t for t in notifier.to(OPPONENT))


def test_same_choices_refund_immediately(engine):
    dispute_id = active_dispute(engine)
    engine.make_choice(dispute_id, CREATOR, True).unwrap()
    snap = engine.make_choice(dispute_id, OPPONENT, True).unwrap()
    assert snap["status"] == "completed"
    assert snap["is_draw"]
    assert snap["winner_id"] is None
    assert snap["commission"] == 0
    assert balance(engine, CREATOR) == START_BALANCE
    assert balance(engine, OPPONENT) == START_BALANCE
    assert engine.ledger.net_for_dispute(dispute_id) == 0


def test_choice_only_once(engine):
    dispute_id = active_dispute(engine)
    engine.make_choice(dispute_id, CREATOR, True).unwrap()
    result = engine.make_choice(dispute_id, CREATOR, False)
    assert isinstance(result.error, InvalidState)
    assert engine.get(dispute_id).unwrap()["creator"]["choice"] is True


def test_choice_by_stranger(engine):
    dispute_id = active_dispute(engine)
    assert isinstance(engine.make_choice(dispute_id, STRANGER, True).error, Forbidden)


def test_choice_on_pending(engine):
    d = engine.create(CREATOR, OPPONENT, "q", 10).unwrap()
    assert isinstance(engine.make_choice(d["id"], CREATOR, True).error, InvalidState)


def test_start_voting_needs_both_choices(engine):
    dispute_id = active_dispute(engine)
    engine.make_choice(dispute_id, CREATOR, True).unwrap()
    result = engine.start_voting(dispute_id)
    assert isinstance(result.error, InvalidState)


def test_start_voting_when_already_voting(engine):
    dispute_id = voting_dispute(engine)
    assert isinstance(engine.start_voting(dispute_id).error, InvalidState)


def test_coinflip_blocked_once_voting(engine):
    dispute_id = voting_dispute(engine)
    assert isinstance(engine.resolve_coinflip(dispute_id).error, InvalidState)


# --- Votes ---

def test_vote_counts(engine):
    dispute_id = voting_dispute(engine)
    engine.add_vote(dispute_id, VOTERS[0], "creator").unwrap()
    engine.add_vote(dispute_id, VOTERS[1], "opponent").unwrap()
    engine.add_vote(dispute_id, VOTERS[2], "creator").unwrap()
    snap = engine.get(dispute_id).unwrap()
    assert snap["voting"]["votes"] == {"creator": 2, "opponent": 1}
    assert snap["voting"]["total"] == 3


def test_participant_cannot_vote(engine):
    dispute_id = voting_dispute(engine)
    assert isinstance(engine.add_vote(dispute_id, CREATOR, "creator").error, Forbidden)
    assert isinstance(engine.add_vote(dispute_id, OPPONENT, "creator").error, Forbidden)


def test_double_vote(engine):
    dispute_id = voting_dispute(engine)
    engine.add_vote(dispute_id, VOTERS[0], "creator").unwrap()
    result = engine.add_vote(dispute_id, VOTERS[0], "opponent")
    assert isinstance(result.error, InvalidState)
    assert result.error.message == "Already voted"
    assert engine.get(dispute_id).unwrap()["voting"]["votes"] == {"creator": 1, "opponent": 0}


def test_vote_for_must_be_a_side(engine):
    dispute_id = voting_dispute(engine)
    assert isinstance(engine.add_vote(dispute_id, VOTERS[0], "heads").error, ValidationFailed)


def test_unregistered_voter(engine):
    dispute_id = voting_dispute(engine)
    assert isinstance(engine.add_vote(dispute_id, 424242, "creator").error, NotFound)


def test_banned_voter(engine):
    dispute_id = voting_dispute(engine)
    engine.accounts.set_banned(VOTERS[0], True)
    assert isinstance(engine.add_vote(dispute_id, VOTERS[0], "creator").error, Forbidden)


def test_vote_on_active_dispute(engine):
    dispute_id = active_dispute(engine)
    assert isinstance(engine.add_vote(dispute_id, VOTERS[0], "creator").error, InvalidState)


def test_vote_after_deadline_settles(engine, clock):
    dispute_id = voting_dispute(engine)
    engine.add_vote(dispute_id, VOTERS[0], "opponent").unwrap()
    clock.advance(DAY)
    result = engine.add_vote(dispute_id, VOTERS[1], "creator")
    assert isinstance(result.error, InvalidState)
    assert result.error.message == "Voting has ended"
    snap = engine.get(dispute_id).unwrap()
    assert snap["status"] == "completed"
    assert snap["winner_id"] == OPPONENT


# --- Resolution ---

def test_resolve_before_deadline(engine, clock):
    dispute_id = voting_dispute(engine)
    clock.advance(DAY - 1)
    result = engine.resolve_by_voting(dispute_id)
    assert isinstance(result.error, InvalidState)
    assert result.error.message == "Voting is still open"


def test_majority_wins(engine, clock):
    dispute_id = voting_dispute(engine)
    for voter in VOTERS[:3]:
        engine.add_vote(dispute_id, voter, "creator").unwrap()
    engine.add_vote(dispute_id, VOTERS[3], "opponent").unwrap()
    clock.advance(DAY)

    snap = engine.resolve_by_voting(dispute_id).unwrap()
    assert snap["status"] == "completed"
    assert snap["winner_id"] == CREATOR
    assert snap["result"] is None
    assert snap["commission"] == 10
    assert balance(engine, CREATOR) == START_BALANCE - 100 + 190
    assert balance(engine, OPPONENT) == START_BALANCE - 100
    assert engine.ledger.net_for_dispute(dispute_id) == -10


def test_tie_is_draw(engine, clock):
    dispute_id = voting_dispute(engine)
    engine.add_vote(dispute_id, VOTERS[0], "creator").unwrap()
    engine.add_vote(dispute_id, VOTERS[1], "opponent").unwrap()
    clock.advance(DAY)
    snap = engine.resolve_by_voting(dispute_id).unwrap()
    assert snap["is_draw"]
    assert snap["winner_id"] is None
    assert balance(engine, CREATOR) == START_BALANCE
    assert balance(engine, OPPONENT) == START_BALANCE


def test_zero_votes_is_draw(engine, clock):
    dispute_id = voting_dispute(engine)
    clock.advance(DAY)
    snap = engine.resolve_by_voting(dispute_id).unwrap()
    assert snap["is_draw"]
    assert snap["commission"] == 0
    rows = engine.ledger.for_dispute(dispute_id)
    assert sorted(r["kind"] for r in rows) == ["bet", "bet", "refund", "refund"]
    assert engine.ledger.net_for_dispute(dispute_id) == 0


def test_resolve_twice_pays_once(engine, clock):
    dispute_id = voting_dispute(engine)
    engine.add_vote(dispute_id, VOTERS[0], "opponent").unwrap()
    clock.advance(DAY)
    first = engine.resolve_by_voting(dispute_id).unwrap()
    second = engine.resolve_by_voting(dispute_id).unwrap()
    assert first["winner_id"] == second["winner_id"] == OPPONENT
    assert balance(engine, OPPONENT) == START_BALANCE - 100 + 190


def test_resolve_not_voting(engine):
    dispute_id = active_dispute(engine)
    assert isinstance(engine.resolve_by_voting(dispute_id).error, InvalidState)


def test_read_finalizes_expired_voting(engine, clock, notifier):
    dispute_id = voting_dispute(engine)
    engine.add_vote(dispute_id, VOTERS[0], "creator").unwrap()
    clock.advance(DAY + 5)
    snap = engine.get(dispute_id).unwrap()
    assert snap["status"] == "completed"
    assert snap["winner_id"] == CREATOR
    assert "You won 190" in notifier.to(CREATOR)[-1]


# --- Sweep ---

def test_sweep_resolves_only_expired(engine, clock):
    old = voting_dispute(engine)
    clock.advance(DAY / 2)
    fresh = voting_dispute(engine)
    clock.advance(DAY / 2)

    assert [d["id"] for d in engine.list_active_votings().unwrap()] == [fresh]
    assert engine.resolve_expired_votings() == [old]
    assert engine.store.get(old)["status"] == "completed"
    assert engine.store.get(fresh)["status"] == "voting"
    # Running again finds nothing new
    assert engine.resolve_expired_votings() == []


def test_active_votings_excludes_other_states(engine):
    active_dispute(engine)
    engine.create(CREATOR, None, "q", 5).unwrap()
    dispute_id = voting_dispute(engine)
    assert [d["id"] for d in engine.list_active_votings().unwrap()] == [dispute_id]
