from __future__ import annotations

import logging
import threading

from radisync.config_manager import ConfigManager
from radisync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 30


class SyncScheduler:
    """Drives ``SyncEngine.run_once`` from a daemon thread.

    One run happens at startup, then one per configured interval. A manual
    trigger wakes the thread early; the interval restarts after each run.
    """

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._worker: threading.Thread | None = None
        self._halt = threading.Event()
        self._wake = threading.Event()

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._halt.clear()
        self._worker = threading.Thread(target=self._serve, name="radisync-scheduler", daemon=True)
        self._worker.start()

    def stop(self, timeout: float = 5) -> None:
        self._halt.set()
        self._wake.set()
        if self._worker is not None:
            self._worker.join(timeout=timeout)

    def trigger_manual(self) -> None:
        self._wake.set()

    def _interval(self) -> int:
        return max(MIN_INTERVAL_SECONDS, self.config_manager.load().sync.interval_seconds)

    def _run(self, trigger: str) -> None:
        try:
            self.sync_engine.run_once(trigger=trigger)
        except Exception:
            # run_once reports pass failures itself; this keeps the thread alive.
            logger.exception("Sync run crashed (%s)", trigger)

    def _serve(self) -> None:
        trigger = "startup"
        while not self._halt.is_set():
            self._run(trigger)
            woken = self._wake.wait(timeout=self._interval())
            self._wake.clear()
            trigger = "manual" if woken else "scheduled"
