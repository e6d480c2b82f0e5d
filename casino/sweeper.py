"""Background sweep that finalizes votings past their deadline.

Without it a dispute nobody looks at would sit in ``voting`` forever.
"""

import logging
import threading

from protocol import DEFAULT_SWEEP_INTERVAL
from casino.engine import DisputeEngine

logger = logging.getLogger(__name__)


class VotingSweeper:
    """Daemon thread calling ``resolve_expired_votings`` on an interval."""

    def __init__(self, engine: DisputeEngine, interval: float = DEFAULT_SWEEP_INTERVAL):
        self.engine = engine
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> list[str]:
        try:
            return self.engine.resolve_expired_votings()
        except Exception as e:
            # Keep sweeping; the next tick retries whatever failed
            logger.exception("Voting sweep failed: %s", e)
            return []

    def _loop(self):
        while not self._stop.wait(self.interval):
            self.run_once()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="voting-sweeper", daemon=True)
        self._thread.start()
        logger.info("Voting sweeper running every %.0fs", self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
