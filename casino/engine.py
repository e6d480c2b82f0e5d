"""Dispute engine: state machine, escrow, settlement and crowd voting.

Lifecycle::

    pending --accept--> active --both ready--> completed   (coinflip)
    active --choices differ--> voting --deadline--> completed   (crowd)
    pending --cancel/decline--> cancelled / rejected

Stakes are escrowed from both parties on accept. Settlement happens exactly
once: inside one transaction the dispute moves out of ``active``/``voting``
with a status-conditioned UPDATE, and only the writer that wins it credits
balances and writes ledger rows. A losing caller re-reads the finished
dispute and returns it unchanged.
"""

import functools
import logging
import time

from protocol import (
    MAX_QUESTION_LENGTH, MIN_STAKE, MAX_STAKE, DEFAULT_VOTING_HOURS, SIDES,
    ROLE_CREATOR, ROLE_OPPONENT, ROLES, DisputeState, split_pot,
)
from casino import messages
from casino.accounts import AccountStore
from casino.db import Database
from casino.errors import (
    AlreadySettled, DisputeError, Forbidden, InsufficientFunds, InvalidState,
    NotFound, Result, ValidationFailed,
)
from casino.ledger import Ledger
from casino.notifier import Notifier, notify
from casino.rng import RandomSource, SystemRandomSource, flip
from casino.store import DisputeStore

logger = logging.getLogger(__name__)

ACTIVE = DisputeState.ACTIVE.value
PENDING = DisputeState.PENDING.value
VOTING = DisputeState.VOTING.value
COMPLETED = DisputeState.COMPLETED.value


def _as_result(method):
    """Run an engine operation and wrap its outcome in a Result."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        # Entries are queued only after their transaction committed
        outbox = []
        try:
            return Result.success(method(self, outbox, *args, **kwargs))
        except DisputeError as e:
            logger.debug("%s refused (%s): %s", method.__name__, e.kind, e.message)
            return Result.failure(e)
        finally:
            for user_id, text in outbox:
                notify(self.notifier, user_id, text)
    return wrapper


class DisputeEngine:
    """Owns the dispute entity and every balance movement it causes."""

    def __init__(self, db: Database, accounts: AccountStore, ledger: Ledger,
                 store: DisputeStore | None = None, notifier: Notifier | None = None,
                 rng: RandomSource | None = None, voting_hours: float = DEFAULT_VOTING_HOURS,
                 clock=time.time):
        self.db = db
        self.accounts = accounts
        self.ledger = ledger
        self.store = store or DisputeStore(db)
        self.notifier = notifier
        self.rng = rng or SystemRandomSource()
        self.voting_seconds = voting_hours * 3600
        self.clock = clock

    # --- Reads ---

    @_as_result
    def get(self, outbox, dispute_id: str) -> dict:
        """Snapshot of a dispute. Finalizes an expired voting on the way."""
        d = self._require(dispute_id)
        if d["status"] == VOTING and self._voting_expired(d):
            d = self._settle_voting(outbox, dispute_id)
        return self.snapshot(d)

    @_as_result
    def list_for_user(self, outbox, user_id: int, limit: int = 50) -> list[dict]:
        self.accounts.require(user_id)
        return [self._user_view(self.snapshot(d), user_id) for d in self.store.list_for_user(user_id, limit)]

    @_as_result
    def list_active_votings(self, outbox, limit: int = 50) -> list[dict]:
        return [self.snapshot(d) for d in self.store.list_votings(self.clock(), expired=False, limit=limit)]

    def pending_for_creator(self, creator_id: int, limit: int = 10) -> list[dict]:
        return [self.snapshot(d) for d in self.store.list_pending_by_creator(creator_id, limit)]

    # --- Lifecycle ---

    @_as_result
    def create(self, outbox, creator_id: int, opponent_id: int | None, question: str, amount: int) -> dict:
        question = (question or "").strip()
        if not question:
            raise ValidationFailed("Question cannot be empty")
        if len(question) > MAX_QUESTION_LENGTH:
            raise ValidationFailed(f"Question is longer than {MAX_QUESTION_LENGTH} characters")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < MIN_STAKE:
            raise ValidationFailed("Stake must be a positive whole number")
        if amount > MAX_STAKE:
            raise ValidationFailed(f"Stake cannot exceed {MAX_STAKE} coins")

        creator = self._require_player(creator_id)
        if opponent_id is not None:
            if opponent_id == creator_id:
                raise ValidationFailed("Cannot dispute with yourself")
            self._require_player(opponent_id)
            # Only checked here; nothing moves until accept
            if creator.balance < amount:
                raise InsufficientFunds("Creator has insufficient funds", user_id=creator_id, role=ROLE_CREATOR)

        creator_side = self.rng.choice(SIDES)
        with self.db.transaction():
            dispute_id = self.store.create(creator_id, opponent_id, question, amount, creator_side)
        logger.info("Dispute %s created by %s (stake %d, side %s)", dispute_id, creator_id, amount, creator_side)
        return self.snapshot(self.store.get(dispute_id))

    @_as_result
    def accept(self, outbox, dispute_id: str, user_id: int) -> dict:
        """Opponent takes the wager. Escrows the stake from both sides."""
        with self.db.transaction():
            d = self._require(dispute_id)
            if d["status"] != PENDING:
                raise InvalidState("Dispute already processed")
            if user_id == d["creator_id"]:
                raise Forbidden("Cannot accept your own dispute")
            if d["opponent_id"] is not None and d["opponent_id"] != user_id:
                raise Forbidden("Not a participant of this dispute")

            opponent = self._require_player(user_id)
            creator = self.accounts.require(d["creator_id"])
            amount = d["amount"]
            if creator.balance < amount:
                raise InsufficientFunds("Creator has insufficient funds", user_id=creator.telegram_id, role=ROLE_CREATOR)
            if opponent.balance < amount:
                raise InsufficientFunds("Opponent has insufficient funds", user_id=user_id, role=ROLE_OPPONENT)

            if not self.store.transition(dispute_id, PENDING, ACTIVE, opponent_id=user_id):
                raise InvalidState("Dispute already processed")
            # Either both debits land or the transaction rolls back
            self.accounts.debit(creator.telegram_id, amount, "bet", dispute_id=dispute_id)
            self.accounts.debit(user_id, amount, "bet", dispute_id=dispute_id)

        logger.info("Dispute %s accepted by %s, %d escrowed per side", dispute_id, user_id, amount)
        snap = self.snapshot(self.store.get(dispute_id))
        outbox.append((snap["creator"]["telegram_id"], messages.accepted(snap)))
        return snap

    @_as_result
    def decline(self, outbox, dispute_id: str, user_id: int) -> dict:
        snap = self._close_pending(dispute_id, user_id, DisputeState.REJECTED.value)
        outbox.append((snap["creator"]["telegram_id"], messages.declined(snap)))
        return snap

    @_as_result
    def cancel(self, outbox, dispute_id: str, user_id: int) -> dict:
        snap = self._close_pending(dispute_id, user_id, DisputeState.CANCELLED.value)
        outbox.append((snap["opponent"]["telegram_id"], messages.cancelled(snap)))
        return snap

    def _close_pending(self, dispute_id: str, user_id: int, to_status: str) -> dict:
        with self.db.transaction():
            d = self._require(dispute_id)
            if d["status"] != PENDING:
                raise InvalidState("Dispute already processed")
            if to_status == DisputeState.CANCELLED.value:
                if user_id != d["creator_id"]:
                    raise Forbidden("Only the creator can cancel a dispute")
            else:
                if user_id == d["creator_id"]:
                    raise Forbidden("The creator cannot decline; cancel instead")
                if d["opponent_id"] is not None and d["opponent_id"] != user_id:
                    raise Forbidden("Not a participant of this dispute")
            fields = {"completed_at": self.clock()}
            if to_status == DisputeState.REJECTED.value and d["opponent_id"] is None:
                fields["opponent_id"] = user_id
            if not self.store.transition(dispute_id, PENDING, to_status, **fields):
                raise InvalidState("Dispute already processed")
        logger.info("Dispute %s %s by %s", dispute_id, to_status, user_id)
        return self.snapshot(self.store.get(dispute_id))

    # --- Coinflip path ---

    @_as_result
    def set_ready(self, outbox, dispute_id: str, user_id: int, ready: bool = True) -> dict:
        """Flip the caller's readiness bit. Returns the dispute and both_ready."""
        with self.db.transaction():
            d = self._require(dispute_id)
            role = self._role_or_forbidden(d, user_id)
            if d["status"] != ACTIVE:
                raise InvalidState(f"Dispute is {d['status']}, not active")
            self.store.set_ready(dispute_id, role, bool(ready))
            d = self.store.get(dispute_id)
        snap = self.snapshot(d)
        return {"dispute": snap, "both_ready": snap["both_ready"], "role": role}

    @_as_result
    def resolve_coinflip(self, outbox, dispute_id: str) -> dict:
        """Draw the coin and settle. Safe to call from both clients at once."""
        result = flip(self.rng)
        try:
            with self.db.transaction():
                d = self._require(dispute_id)
                if d["status"] == COMPLETED:
                    raise AlreadySettled()
                if d["status"] != ACTIVE:
                    raise InvalidState(f"Dispute is {d['status']}, cannot flip")
                if not (d["creator_ready"] and d["opponent_ready"]):
                    raise InvalidState("Both players must be ready")
                winner_id = d["creator_id"] if d["creator_side"] == result else d["opponent_id"]
                self._settle(d, ACTIVE, winner_id=winner_id, result=result)
        except AlreadySettled:
            logger.info("Dispute %s already settled, returning stored outcome", dispute_id)
            return self.snapshot(self.store.get(dispute_id))

        snap = self.snapshot(self.store.get(dispute_id))
        logger.info("Dispute %s flipped %s, winner %s, commission %d",
                    dispute_id, result, snap["winner_id"], snap["commission"])
        self._queue_results(outbox, snap)
        return snap

    # --- Voting path ---

    @_as_result
    def make_choice(self, outbox, dispute_id: str, user_id: int, choice: bool) -> dict:
        """Record a participant's answer. Both answers in: vote or draw."""
        with self.db.transaction():
            d = self._require(dispute_id)
            role = self._role_or_forbidden(d, user_id)
            self._require_player(user_id)
            if d["status"] != ACTIVE:
                raise InvalidState(f"Dispute is {d['status']}, not active")
            if not self.store.set_choice(dispute_id, role, bool(choice)):
                raise InvalidState("Choice already made")
            d = self.store.get(dispute_id)
            both_chosen = d["creator_choice"] is not None and d["opponent_choice"] is not None
            if both_chosen:
                if d["creator_choice"] == d["opponent_choice"]:
                    # Same answer: nothing to judge, refund both
                    self._settle(d, ACTIVE, winner_id=None, is_draw=True)
                else:
                    self._open_voting(d)

        snap = self.snapshot(self.store.get(dispute_id))
        if snap["status"] == VOTING:
            for uid in self._participants(snap):
                outbox.append((uid, messages.voting_started(snap, self.clock())))
        elif snap["status"] == COMPLETED:
            self._queue_results(outbox, snap)
        return snap

    @_as_result
    def start_voting(self, outbox, dispute_id: str) -> dict:
        with self.db.transaction():
            d = self._require(dispute_id)
            if d["status"] != ACTIVE:
                raise InvalidState(f"Dispute is {d['status']}, not active")
            if d["creator_choice"] is None or d["opponent_choice"] is None:
                raise InvalidState("Both participants must choose first")
            if d["creator_choice"] == d["opponent_choice"]:
                raise InvalidState("Participants agree, nothing to vote on")
            self._open_voting(d)
        snap = self.snapshot(self.store.get(dispute_id))
        for uid in self._participants(snap):
            outbox.append((uid, messages.voting_started(snap, self.clock())))
        return snap

    def _open_voting(self, d: dict) -> None:
        deadline = self.clock() + self.voting_seconds
        if not self.store.transition(d["id"], ACTIVE, VOTING, voting_deadline=deadline):
            raise InvalidState("Dispute already processed")
        logger.info("Dispute %s voting open until %.0f", d["id"], deadline)

    @_as_result
    def add_vote(self, outbox, dispute_id: str, voter_id: int, vote_for: str) -> dict:
        if vote_for not in ROLES:
            raise ValidationFailed("vote_for must be 'creator' or 'opponent'")
        d = self._require(dispute_id)
        if d["status"] == VOTING and self._voting_expired(d):
            self._settle_voting(outbox, dispute_id)
            raise InvalidState("Voting has ended")
        with self.db.transaction():
            d = self._require(dispute_id)
            if d["status"] != VOTING:
                raise InvalidState(f"Dispute is {d['status']}, not open for voting")
            if voter_id in (d["creator_id"], d["opponent_id"]):
                raise Forbidden("Participants cannot vote in their own dispute")
            self._require_player(voter_id)
            if not self.store.add_vote(dispute_id, voter_id, vote_for):
                raise InvalidState("Already voted")
        return self.snapshot(self.store.get(dispute_id))

    @_as_result
    def resolve_by_voting(self, outbox, dispute_id: str) -> dict:
        """Finalize a voting dispute whose deadline has passed."""
        d = self._require(dispute_id)
        if d["status"] == COMPLETED:
            return self.snapshot(d)
        if d["status"] != VOTING:
            raise InvalidState(f"Dispute is {d['status']}, not voting")
        if not self._voting_expired(d):
            raise InvalidState("Voting is still open")
        return self.snapshot(self._settle_voting(outbox, dispute_id))

    def resolve_expired_votings(self, limit: int = 100) -> list[str]:
        """Sweep: settle every voting dispute past its deadline.

        Safe to run concurrently with itself and with read-triggered checks.
        """
        resolved = []
        for d in self.store.list_votings(self.clock(), expired=True, limit=limit):
            result = self.resolve_by_voting(d["id"])
            if result.ok:
                resolved.append(d["id"])
            else:
                logger.warning("Sweep could not resolve %s: %s", d["id"], result.error)
        if resolved:
            logger.info("Sweep resolved %d expired voting(s)", len(resolved))
        return resolved

    def _settle_voting(self, outbox, dispute_id: str) -> dict:
        try:
            with self.db.transaction():
                d = self._require(dispute_id)
                if d["status"] != VOTING:
                    raise AlreadySettled()
                votes = self.store.vote_counts(dispute_id)
                if votes[ROLE_CREATOR] > votes[ROLE_OPPONENT]:
                    self._settle(d, VOTING, winner_id=d["creator_id"])
                elif votes[ROLE_OPPONENT] > votes[ROLE_CREATOR]:
                    self._settle(d, VOTING, winner_id=d["opponent_id"])
                else:
                    # Tie, including zero votes
                    self._settle(d, VOTING, winner_id=None, is_draw=True)
        except AlreadySettled:
            return self.store.get(dispute_id)
        d = self.store.get(dispute_id)
        logger.info("Dispute %s resolved by vote: winner %s, draw %s", dispute_id, d["winner_id"], d["is_draw"])
        self._queue_results(outbox, self.snapshot(d))
        return d

    # --- Settlement ---

    def _settle(self, d: dict, from_status: str, winner_id: int | None, result: str | None = None,
                is_draw: bool = False) -> None:
        """Close the dispute and move money. Caller holds the transaction.

        The status CAS comes first: if another settlement already won it,
        AlreadySettled propagates and the transaction rolls back untouched.
        """
        dispute_id, amount = d["id"], d["amount"]
        if is_draw:
            commission, payout = 0, 0
        else:
            _, commission, payout = split_pot(amount)
        won = self.store.transition(
            dispute_id, from_status, COMPLETED,
            result=result, winner_id=winner_id, commission=commission, payout=payout,
            is_draw=1 if is_draw else 0, completed_at=self.clock(),
        )
        if not won:
            logger.warning("Dispute %s: lost settlement race", dispute_id)
            raise AlreadySettled()
        if is_draw:
            self.accounts.credit(d["creator_id"], amount, "refund", dispute_id=dispute_id)
            self.accounts.credit(d["opponent_id"], amount, "refund", dispute_id=dispute_id)
        else:
            self.accounts.credit(winner_id, payout, "win", dispute_id=dispute_id)

    def _queue_results(self, outbox, snap: dict) -> None:
        for uid in self._participants(snap):
            outbox.append((uid, messages.result_for(snap, uid)))

    # --- Presentation linkage ---

    @_as_result
    def attach_message(self, outbox, dispute_id: str, chat_id: int | None = None,
                       message_id: int | None = None, inline_message_id: str | None = None) -> dict:
        self._require(dispute_id)
        with self.db.transaction():
            self.store.attach_message(dispute_id, chat_id, message_id, inline_message_id)
        return self.snapshot(self.store.get(dispute_id))

    # --- Helpers ---

    def role_of(self, d: dict, user_id: int) -> str | None:
        if user_id == d["creator_id"]:
            return ROLE_CREATOR
        if d["opponent_id"] is not None and user_id == d["opponent_id"]:
            return ROLE_OPPONENT
        return None

    def _role_or_forbidden(self, d: dict, user_id: int) -> str:
        role = self.role_of(d, user_id)
        if role is None:
            raise Forbidden("Not a participant of this dispute")
        return role

    def _require(self, dispute_id: str) -> dict:
        d = self.store.get(dispute_id)
        if d is None:
            raise NotFound("Dispute not found")
        return d

    def _require_player(self, user_id: int):
        account = self.accounts.require(user_id)
        if account.is_banned:
            raise Forbidden("Account is banned")
        return account

    def _voting_expired(self, d: dict) -> bool:
        return d["voting_deadline"] is not None and self.clock() >= d["voting_deadline"]

    @staticmethod
    def _participants(snap: dict) -> list[int]:
        return [p["telegram_id"] for p in (snap["creator"], snap["opponent"]) if p["telegram_id"] is not None]

    def snapshot(self, d: dict) -> dict:
        """Public view of a dispute with party names and vote tallies."""
        votes = self.store.vote_counts(d["id"])
        return {
            "id": d["id"],
            "status": d["status"],
            "question": d["question"],
            "amount": d["amount"],
            "creator": {
                "telegram_id": d["creator_id"],
                "name": self.accounts.display_name(d["creator_id"]),
                "side": d["creator_side"],
                "ready": d["creator_ready"],
                "choice": d["creator_choice"],
            },
            "opponent": {
                "telegram_id": d["opponent_id"],
                "name": self.accounts.display_name(d["opponent_id"]),
                "side": d["opponent_side"],
                "ready": d["opponent_ready"],
                "choice": d["opponent_choice"],
            },
            "both_ready": d["creator_ready"] and d["opponent_ready"],
            "result": d["result"],
            "winner_id": d["winner_id"],
            "winner_name": self.accounts.display_name(d["winner_id"]) if d["winner_id"] else None,
            "commission": d["commission"],
            "payout": d["payout"],
            "is_draw": d["is_draw"],
            "voting": {
                "deadline": d["voting_deadline"],
                "votes": votes,
                "total": votes[ROLE_CREATOR] + votes[ROLE_OPPONENT],
            },
            "chat_id": d["chat_id"],
            "message_id": d["message_id"],
            "inline_message_id": d["inline_message_id"],
            "created_at": d["created_at"],
            "completed_at": d["completed_at"],
        }

    def _user_view(self, snap: dict, user_id: int) -> dict:
        """Adds the caller's perspective, as the history screen shows it."""
        role = ROLE_CREATOR if snap["creator"]["telegram_id"] == user_id else ROLE_OPPONENT
        snap["user_role"] = role
        snap["user_side"] = snap[role]["side"]
        snap["user_won"] = snap["status"] == COMPLETED and snap["winner_id"] == user_id
        return snap
