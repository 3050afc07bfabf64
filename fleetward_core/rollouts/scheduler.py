from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any

from fleetward_core.logging import get_logger
from fleetward_core.rollouts.controller import RolloutController

logger = get_logger(__name__)


class RolloutScheduler:
    """Periodically runs auto-expand evaluation for every active rollout."""

    def __init__(self, controller: RolloutController, interval_seconds: int) -> None:
        self._controller = controller
        self._interval_seconds = max(1, interval_seconds)
        self._lock = threading.Lock()
        self._last_run: dict[str, Any] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="rollout-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Rollout scheduler started",
            extra={"interval_seconds": self._interval_seconds},
        )

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        self._thread = None

    def snapshot(self) -> dict[str, Any] | None:
        with self._lock:
            if not self._last_run:
                return None
            return dict(self._last_run)

    def run_once(self) -> int:
        results = self._controller.evaluate_active()
        with self._lock:
            self._last_run = {
                "updated_at": datetime.now(timezone.utc).isoformat(),
                "evaluated": len(results),
            }
        return len(results)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as exc:
                logger.exception(
                    "Rollout scheduler tick failed",
                    extra={"error_message": str(exc)},
                )
            self._stop.wait(self._interval_seconds)
