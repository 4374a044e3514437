from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Optional

from filebroker.engine import Broker

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Periodic self-check for a broker; restarts it when the directory or watcher fails.

    The monitor only observes and restarts. It never handles requests.
    """

    def __init__(self, broker: Broker, interval: Optional[float] = None) -> None:
        self.broker = broker
        self.interval = broker.config.health_interval if interval is None else interval
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._pending_reason: Optional[str] = None
        self.checks = 0
        self.failures = 0
        self.last: Optional[Dict[str, Any]] = None
        broker.on_watcher_fault = self.request_restart

    def request_restart(self, reason: str) -> None:
        """Ask for a check-and-restart as soon as possible (watcher fault path)."""
        logger.warning("Restart requested: %s", reason)
        self._pending_reason = reason
        self._wake.set()

    def check_once(self) -> Dict[str, Any]:
        broker = self.broker
        directory_ok = broker.directory.reachable()
        watcher_alive = broker.watcher_alive()
        reason = self._pending_reason
        self._pending_reason = None

        if not directory_ok:
            reason = f"directory unreachable: {broker.root}"
        elif not watcher_alive:
            reason = reason or "watcher not running"
        elif reason is not None and broker.watcher is not None and broker.watcher.fault is None:
            # The fault was already cleared by an earlier restart.
            reason = None

        state = broker.snapshot()
        report: Dict[str, Any] = {
            "healthy": reason is None,
            "directory_ok": directory_ok,
            "watcher_alive": watcher_alive,
            "in_flight": state["in_flight"],
            "processed_total": state["processed_total"],
            "failed_total": state["failed_total"],
            "restarts": state["restarts"],
            "reason": reason,
            "checked_at": time.time(),
            "restarted": False,
        }
        self.checks += 1

        if reason is None:
            logger.info(
                "Health check: in flight %d, processed %d, failed %d",
                report["in_flight"],
                report["processed_total"],
                report["failed_total"],
            )
        else:
            self.failures += 1
            logger.error("Health check failed: %s", reason)
            report["restarted"] = broker.restart()
            report["restarts"] = broker.restarts
        self.last = report
        return report

    def _loop(self) -> None:
        while not self._stop.is_set():
            self._wake.wait(self.interval)
            self._wake.clear()
            if self._stop.is_set():
                break
            try:
                self.check_once()
            except Exception as exc:  # pragma: no cover - loop safety
                logger.error("Health monitor error: %s", exc)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="filebroker-health", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2)
