from __future__ import annotations

import dataclasses
import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set

from watchdog.observers import Observer

from filebroker.config import BrokerConfig
from filebroker.errors import BrokerError, MalformedRequest, ResponderFailure, TransientIOError
from filebroker.payload import build_error_response, build_response
from filebroker.responder import Responder, template_responder
from filebroker.store import ERRORS, PROCESSED, SharedDirectory
from filebroker.watcher import DirectoryWatcher, DiscoveryEvent, Lister, list_directory

logger = logging.getLogger(__name__)


@dataclass
class Broker:
    """One broker over one shared directory.

    Owns its Processing Set, watcher, discovery channel and worker pool; two
    brokers never share state. The Processing Set only deduplicates work
    inside this process. It is not a lock between broker processes.
    """

    root: Path
    config: BrokerConfig = field(default_factory=BrokerConfig)
    responder: Responder = template_responder
    sleep: Callable[[float], None] = time.sleep
    observer_factory: Optional[Callable[[], Any]] = Observer
    lister: Lister = list_directory

    def __post_init__(self) -> None:
        self.root = Path(self.root).resolve()
        self.codec = self.config.codec()
        self.directory = SharedDirectory(self.root, self.codec)
        self.events: "queue.Queue[DiscoveryEvent]" = queue.Queue()
        self.watcher: Optional[DirectoryWatcher] = None
        self.on_watcher_fault: Optional[Callable[[str], None]] = None

        self._processing: Set[str] = set()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._dispatcher: Optional[threading.Thread] = None
        self._pool: Optional[ThreadPoolExecutor] = None

        self.processed_total = 0
        self.failed_total = 0
        self.restarts = 0
        self.started_at: Optional[str] = None

    @classmethod
    def build(
        cls,
        root: Path,
        config: Optional[BrokerConfig] = None,
        responder: Optional[Responder] = None,
        **overrides: Any,
    ) -> "Broker":
        """Create a broker; config field names in ``overrides`` patch the config."""
        base = config or BrokerConfig()
        config_fields = {f.name for f in dataclasses.fields(BrokerConfig)}
        patch = {key: overrides.pop(key) for key in list(overrides) if key in config_fields}
        if patch:
            base = base.replace(**patch)
        return cls(root=Path(root), config=base, responder=responder or template_responder, **overrides)

    # Lifecycle

    def start(self) -> None:
        if self.watcher is not None:
            return
        self.directory.ensure_layout()
        self._stop.clear()
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=max(1, int(self.config.max_concurrent)),
                thread_name_prefix="filebroker-job",
            )
        if self._dispatcher is None or not self._dispatcher.is_alive():
            self._dispatcher = threading.Thread(target=self._dispatch_loop, name="filebroker-dispatch", daemon=True)
            self._dispatcher.start()

        watcher = DirectoryWatcher(
            self.directory,
            emit=self.events.put,
            poll_interval=self.config.poll_interval,
            observer_factory=self.observer_factory,
            lister=self.lister,
            on_fault=self._watcher_fault,
        )
        self.watcher = watcher
        watcher.start()
        self.started_at = datetime.now(timezone.utc).isoformat()
        logger.info("Broker started on %s", self.root)

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        self._close_watcher()
        dispatcher, self._dispatcher = self._dispatcher, None
        if dispatcher is not None and dispatcher is not threading.current_thread():
            dispatcher.join(timeout=2)
        pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)
        logger.info("Broker stopped on %s", self.root)

    def restart(self, cooldown: Optional[float] = None) -> bool:
        logger.info("Restarting broker on %s", self.root)
        self._close_watcher()
        with self._lock:
            self._processing.clear()
            self.restarts += 1
        self.sleep(self.config.restart_cooldown if cooldown is None else cooldown)
        try:
            self.start()
        except OSError as exc:
            logger.error("Failed to restart broker on %s: %s", self.root, exc)
            self._close_watcher()
            return False
        logger.info("Broker restarted on %s", self.root)
        return True

    def _close_watcher(self) -> None:
        watcher, self.watcher = self.watcher, None
        if watcher is not None:
            watcher.close()

    def _watcher_fault(self, reason: str) -> None:
        if self.on_watcher_fault is not None:
            self.on_watcher_fault(reason)

    def watcher_alive(self) -> bool:
        watcher = self.watcher
        return watcher is not None and watcher.is_alive()

    # Discovery -> Claimed

    def _dispatch_loop(self) -> None:
        while not self._stop.is_set():
            try:
                event = self.events.get(timeout=0.25)
            except queue.Empty:
                continue
            try:
                self.discover(event.path)
            except Exception as exc:  # pragma: no cover - loop safety
                logger.error("Dispatch error for %s: %s", event.path, exc)

    def _claim(self, name: str) -> bool:
        with self._lock:
            if name in self._processing:
                return False
            self._processing.add(name)
            return True

    def _release(self, name: str) -> None:
        with self._lock:
            self._processing.discard(name)

    def in_flight(self) -> Set[str]:
        with self._lock:
            return set(self._processing)

    def discover(self, path: Path) -> bool:
        """Claim a discovered request and hand it to the worker pool.

        Returns False when the same file is already in flight.
        """
        path = Path(path)
        if not self._claim(path.name):
            logger.debug("Already in flight, ignoring: %s", path.name)
            return False
        pool = self._pool
        if pool is None:
            self._run_claimed(path)
            return True
        try:
            pool.submit(self._run_claimed, path)
        except RuntimeError:
            self._release(path.name)
            raise
        return True

    def process(self, path: Path) -> Optional[Dict[str, Any]]:
        """Claim and handle one request synchronously.

        Returns the response payload written, or None when nothing was done
        (duplicate, vanished request, or a name without a session id).
        """
        path = Path(path)
        if not self._claim(path.name):
            logger.debug("Already in flight, ignoring: %s", path.name)
            return None
        return self._run_claimed(path)

    def process_pending(self) -> int:
        handled = 0
        for path in self.directory.list_requests():
            if self.process(path) is not None:
                handled += 1
        return handled

    def _run_claimed(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            return self._handle(path)
        except Exception:
            logger.exception("Unexpected error while processing %s", path.name)
            return None
        finally:
            self._release(path.name)

    # Claimed -> Read -> Responded -> Archived

    def _handle(self, path: Path) -> Optional[Dict[str, Any]]:
        name = path.name
        if not path.exists():
            return None

        session_id = self.codec.decode_request(name)
        if session_id is None:
            logger.warning("Skipping file with invalid format: %s", name)
            archived = self.directory.archive(path, ERRORS)
            self.directory.record_error(
                archived,
                {
                    "file": name,
                    "sessionId": None,
                    "errorKind": MalformedRequest.__name__,
                    "error": "request file name carries no session id",
                    "attempts": 0,
                },
            )
            with self._lock:
                self.failed_total += 1
            return None

        if self.directory.has_fresh_response(path):
            # Answered before a crash; only the archive step is missing.
            logger.info("Archiving already answered request: %s", name)
            self.directory.archive(path, PROCESSED)
            return None

        max_attempts = max(1, int(self.config.max_attempts))
        last_error: Optional[BrokerError] = None
        attempt = 0
        for attempt in range(1, max_attempts + 1):
            logger.info("Processing %s (attempt %d)", name, attempt)
            try:
                payload = self._attempt(path, session_id, attempt)
            except BrokerError as exc:
                last_error = exc
                if not exc.retryable:
                    break
                logger.warning("Error processing %s (attempt %d): %s", name, attempt, exc)
                if attempt < max_attempts:
                    self.sleep(self.config.backoff_for(attempt))
                continue
            if payload is None:
                logger.info("Request vanished before it was read: %s", name)
            return payload

        if not path.exists():
            logger.info("Request handled elsewhere while retrying: %s", name)
            return None
        return self._fail(path, session_id, last_error, attempt)

    def _attempt(self, path: Path, session_id: str, attempt: int) -> Optional[Dict[str, Any]]:
        instruction = self.directory.read_request(path, session_id=session_id)
        if instruction is None:
            return None
        instruction = instruction.strip()
        if not instruction:
            age = self.directory.age_of(path)
            if age is not None and age < self.config.settle_time:
                raise TransientIOError("request body still empty, writer may not be done", session_id=session_id)
            raise MalformedRequest("empty request body: nothing to process", session_id=session_id)

        if self.config.processing_delay > 0:
            self.sleep(self.config.processing_delay)

        started = time.monotonic()
        try:
            text = self.responder(instruction, session_id)
        except Exception as exc:
            raise ResponderFailure(f"responder failed: {exc}", session_id=session_id) from exc
        if not isinstance(text, str):
            raise ResponderFailure(
                f"responder returned {type(text).__name__}, expected str", session_id=session_id
            )
        if not text.strip():
            raise ResponderFailure("responder returned an empty response", session_id=session_id)
        elapsed = time.monotonic() - started

        payload = build_response(session_id, text, attempts=attempt, processing_time=elapsed)
        self.directory.write_response(session_id, payload)
        self.directory.archive(path, PROCESSED)
        with self._lock:
            self.processed_total += 1
        logger.info("Successfully processed %s in %.0fms", path.name, elapsed * 1000)
        return payload

    def _fail(
        self,
        path: Path,
        session_id: str,
        error: Optional[BrokerError],
        attempts: int,
    ) -> Dict[str, Any]:
        message = str(error) if error is not None else "unknown error"
        kind = error.kind if error is not None else BrokerError.__name__
        payload = build_error_response(session_id, message, kind, attempts)
        try:
            self.directory.write_response(session_id, payload)
        except TransientIOError as exc:
            logger.error("Could not write error response for %s: %s", session_id, exc)

        archived = self.directory.archive(path, ERRORS)
        self.directory.record_error(
            archived,
            {
                "file": path.name,
                "sessionId": session_id,
                "errorKind": kind,
                "error": message,
                "attempts": attempts,
            },
        )
        with self._lock:
            self.failed_total += 1
        logger.error("Moved failed request to errors: %s (%s)", path.name, message)
        return payload

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            in_flight = sorted(self._processing)
            processed_total = self.processed_total
            failed_total = self.failed_total
            restarts = self.restarts
        return {
            "root": str(self.root),
            "started_at": self.started_at,
            "in_flight": len(in_flight),
            "in_flight_files": in_flight,
            "queued": self.events.qsize(),
            "processed_total": processed_total,
            "failed_total": failed_total,
            "restarts": restarts,
            "watcher": self.watcher.status() if self.watcher is not None else None,
        }
