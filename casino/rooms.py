"""Room coordinator: the readiness handshake in front of the coinflip.

The two web clients never talk to each other. Each one joins the room,
presses Ready and then polls ``get_status`` until the dispute completes.
When the second Ready lands, the flip is scheduled after a short delay so
both clients can play the animation; the engine's own status check keeps
the settlement single even if the flip fires twice.
"""

import logging
import threading
import time
from dataclasses import dataclass, field

from protocol import DEFAULT_FLIP_DELAY, RoomStatus, other_role
from casino import messages
from casino.engine import DisputeEngine
from casino.errors import DisputeError, Forbidden, InvalidState, Result
from casino.notifier import notify

logger = logging.getLogger(__name__)

# A scheduled flip this many seconds overdue is run by the next poll instead
OVERDUE_GRACE = 2.0


def timer_scheduler(delay: float, fn):
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    timer.start()
    return timer


@dataclass
class Room:
    dispute_id: str
    creator_joined: bool = False
    opponent_joined: bool = False
    creator_ready: bool = False
    opponent_ready: bool = False
    status: str = RoomStatus.WAITING.value
    flip_at: float | None = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "dispute_id": self.dispute_id,
            "creator_joined": self.creator_joined,
            "opponent_joined": self.opponent_joined,
            "creator_ready": self.creator_ready,
            "opponent_ready": self.opponent_ready,
            "both_ready": self.creator_ready and self.opponent_ready,
            "status": self.status,
            "flip_at": self.flip_at,
            "created_at": self.created_at,
        }


class RoomCoordinator:
    """In-memory rooms keyed by dispute id."""

    def __init__(self, engine: DisputeEngine, flip_delay: float = DEFAULT_FLIP_DELAY,
                 scheduler=None, clock=time.time):
        self.engine = engine
        self.flip_delay = flip_delay
        self.scheduler = scheduler or timer_scheduler
        self.clock = clock
        self._rooms: dict[str, Room] = {}
        self._timers: dict[str, object] = {}
        self._lock = threading.Lock()

    def join(self, dispute_id: str, user_id: int) -> Result:
        """Enter the room. Idempotent; the other side hears about the first join."""
        try:
            snap, role = self._participant_snapshot(dispute_id, user_id)
            if snap["status"] == "pending":
                raise InvalidState("Dispute has not been accepted yet")
            with self._lock:
                room = self._room(dispute_id)
                first_join = not getattr(room, f"{role}_joined")
                setattr(room, f"{role}_joined", True)
                self._sync(room, snap)
                view = room.to_dict()
        except DisputeError as e:
            return Result.failure(e)
        if first_join:
            notify(self.engine.notifier, snap[other_role(role)]["telegram_id"],
                   messages.opponent_joined(snap, role))
        return Result.success({"room": view, "dispute": snap, "role": role})

    create_room = join

    def set_ready(self, dispute_id: str, user_id: int, ready: bool = True) -> Result:
        result = self.engine.set_ready(dispute_id, user_id, ready)
        if not result.ok:
            return result
        snap, role = result.value["dispute"], result.value["role"]
        schedule = False
        with self._lock:
            room = self._room(dispute_id)
            setattr(room, f"{role}_joined", True)
            self._sync(room, snap)
            if snap["both_ready"]:
                # First observer of both-ready schedules the flip
                if room.status == RoomStatus.WAITING.value:
                    room.status = RoomStatus.FLIPPING.value
                    room.flip_at = self.clock() + self.flip_delay
                    schedule = True
            elif room.status == RoomStatus.FLIPPING.value:
                room.status = RoomStatus.WAITING.value
                room.flip_at = None
                self._cancel_timer(dispute_id)

        if ready and not snap["both_ready"]:
            notify(self.engine.notifier, snap[other_role(role)]["telegram_id"],
                   messages.opponent_ready(snap, role))
        if schedule:
            logger.info("Room %s: both ready, flipping in %.1fs", dispute_id, self.flip_delay)
            if self.flip_delay <= 0:
                self._fire(dispute_id)
            else:
                handle = self.scheduler(self.flip_delay, lambda: self._fire(dispute_id))
                with self._lock:
                    self._timers[dispute_id] = handle
        return self.get_status(dispute_id, user_id)

    def get_status(self, dispute_id: str, user_id: int | None = None) -> Result:
        """Poll. Runs an overdue flip itself if the timer never fired."""
        result = self.engine.get(dispute_id)
        if not result.ok:
            return result
        snap = result.value
        if user_id is not None and self.engine.role_of(self._ids(snap), user_id) is None:
            return Result.failure(Forbidden("Not a participant of this dispute"))

        overdue = False
        with self._lock:
            room = self._rooms.get(dispute_id)
            if room is not None:
                self._sync(room, snap)
                overdue = (room.status == RoomStatus.FLIPPING.value and snap["status"] == "active"
                           and room.flip_at is not None and self.clock() >= room.flip_at + OVERDUE_GRACE)
            else:
                # Session lost (e.g. restart) after both sides were ready
                overdue = snap["status"] == "active" and snap["both_ready"]
        if overdue:
            logger.warning("Room %s: flip overdue, resolving on poll", dispute_id)
            self._fire(dispute_id)
            snap = self.engine.get(dispute_id).value
            with self._lock:
                room = self._rooms.get(dispute_id)
                if room is not None:
                    self._sync(room, snap)

        with self._lock:
            room = self._rooms.get(dispute_id)
            view = room.to_dict() if room else self._detached_view(snap)
        return Result.success({"room": view, "dispute": snap})

    def close_room(self, dispute_id: str, user_id: int) -> Result:
        try:
            self._participant_snapshot(dispute_id, user_id)
        except DisputeError as e:
            return Result.failure(e)
        with self._lock:
            room = self._rooms.pop(dispute_id, None)
            self._cancel_timer(dispute_id)
        # Readiness persisted on the dispute survives; only the session goes away
        return Result.success({"closed": room is not None, "dispute_id": dispute_id})

    def _fire(self, dispute_id: str) -> None:
        with self._lock:
            self._timers.pop(dispute_id, None)
        result = self.engine.resolve_coinflip(dispute_id)
        if not result.ok:
            logger.warning("Room %s: flip skipped: %s", dispute_id, result.error)
            return
        with self._lock:
            room = self._rooms.get(dispute_id)
            if room is not None:
                self._sync(room, result.value)

    # --- Helpers ---

    def _room(self, dispute_id: str) -> Room:
        room = self._rooms.get(dispute_id)
        if room is None:
            room = Room(dispute_id=dispute_id, created_at=self.clock())
            self._rooms[dispute_id] = room
        return room

    def _participant_snapshot(self, dispute_id: str, user_id: int) -> tuple[dict, str]:
        snap = self.engine.get(dispute_id).unwrap()
        role = self.engine.role_of(self._ids(snap), user_id)
        if role is None:
            raise Forbidden("Not a participant of this dispute")
        return snap, role

    def _cancel_timer(self, dispute_id: str) -> None:
        handle = self._timers.pop(dispute_id, None)
        if handle is not None and hasattr(handle, "cancel"):
            handle.cancel()

    @staticmethod
    def _ids(snap: dict) -> dict:
        return {"creator_id": snap["creator"]["telegram_id"], "opponent_id": snap["opponent"]["telegram_id"]}

    @staticmethod
    def _sync(room: Room, snap: dict) -> None:
        room.creator_ready = snap["creator"]["ready"]
        room.opponent_ready = snap["opponent"]["ready"]
        if snap["status"] not in ("active", "pending"):
            room.status = RoomStatus.FINISHED.value

    @staticmethod
    def _detached_view(snap: dict) -> dict:
        finished = snap["status"] not in ("active", "pending")
        return {
            "dispute_id": snap["id"],
            "creator_joined": False,
            "opponent_joined": False,
            "creator_ready": snap["creator"]["ready"],
            "opponent_ready": snap["opponent"]["ready"],
            "both_ready": snap["both_ready"],
            "status": RoomStatus.FINISHED.value if finished else RoomStatus.WAITING.value,
            "flip_at": None,
            "created_at": None,
        }
