"""Request discovery for the shared directory.

Two independent producers feed one channel of :class:`DiscoveryEvent`:

* ``notify``: a watchdog observer reporting request files that were closed
  after writing or renamed into place;
* ``poll``: a thread that lists the directory every ``poll_interval`` seconds
  and emits names it has not seen (or whose mtime changed) once their size
  and mtime hold still across two scans.

Both can report the same file. Consumers deduplicate.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from filebroker.store import SharedDirectory

logger = logging.getLogger(__name__)

STARTUP = "startup"
NOTIFY = "notify"
POLL = "poll"


class DiscoveryEvent(NamedTuple):
    path: Path
    source: str


Signature = Tuple[int, int]
Lister = Callable[[Path], Iterable[Tuple[str, int, int]]]
Emit = Callable[[DiscoveryEvent], None]


def list_directory(root: Path) -> List[Tuple[str, int, int]]:
    """Return ``(name, mtime_ns, size)`` for every regular file directly under ``root``."""
    entries: List[Tuple[str, int, int]] = []
    with os.scandir(root) as it:
        for entry in it:
            try:
                if entry.is_file():
                    stat = entry.stat()
                    entries.append((entry.name, stat.st_mtime_ns, stat.st_size))
            except FileNotFoundError:
                continue
    return entries


class _RequestEventHandler(FileSystemEventHandler):
    def __init__(self, watcher: "DirectoryWatcher") -> None:
        super().__init__()
        self.watcher = watcher

    def on_closed(self, event: FileSystemEvent) -> None:
        # Close-after-write; a created event fires before the writer is done.
        if not event.is_directory:
            self.watcher._notified(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic writers rename a temp file into place.
        if not event.is_directory:
            self.watcher._notified(event.dest_path)


class DirectoryWatcher:
    def __init__(
        self,
        directory: SharedDirectory,
        emit: Emit,
        poll_interval: float = 2.0,
        observer_factory: Optional[Callable[[], Any]] = Observer,
        lister: Lister = list_directory,
        on_fault: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.directory = directory
        self.codec = directory.codec
        self.emit = emit
        self.poll_interval = poll_interval
        self.observer_factory = observer_factory
        self.lister = lister
        self.on_fault = on_fault

        self._seen: Dict[str, Signature] = {}
        self._settling: Dict[str, Signature] = {}
        self._seen_lock = threading.Lock()
        self._stop = threading.Event()
        self._observer: Any = None
        self._poller: Optional[threading.Thread] = None
        self._closed = True
        self.fault: Optional[str] = None
        self.events_emitted = 0

    def start(self) -> None:
        self._stop.clear()
        self._closed = False
        self.fault = None
        self.startup_scan()
        self._start_poller()
        self._start_notifier()

    def startup_scan(self) -> List[Path]:
        """Emit every request already waiting, including ones answered before a crash.

        The broker archives answered ones without calling the responder again.
        """
        found: List[Path] = []
        for name, mtime_ns, size in self._safe_list():
            if not self.codec.is_request(name):
                continue
            with self._seen_lock:
                self._seen[name] = (mtime_ns, size)
            path = self.directory.root / name
            logger.info("Found existing request: %s", name)
            found.append(path)
            self._emit(path, STARTUP)
        return found

    def poll_once(self) -> List[Path]:
        """Emit requests whose size and mtime are unchanged since the previous scan."""
        found: List[Path] = []
        listed = {
            name: (mtime_ns, size)
            for name, mtime_ns, size in self._safe_list()
            if self.codec.is_request(name)
        }
        with self._seen_lock:
            for known in (self._seen, self._settling):
                for name in list(known):
                    if name not in listed:
                        del known[name]
            for name, signature in listed.items():
                if self._seen.get(name) == signature:
                    continue
                if self._settling.get(name) != signature:
                    # Still being written, or first sighting.
                    self._settling[name] = signature
                    continue
                del self._settling[name]
                self._seen[name] = signature
                found.append(self.directory.root / name)
        for path in found:
            self._emit(path, POLL)
        return found

    def _safe_list(self) -> List[Tuple[str, int, int]]:
        try:
            return list(self.lister(self.directory.root))
        except OSError as exc:
            logger.error("Could not list %s: %s", self.directory.root, exc)
            return []

    def _emit(self, path: Path, source: str) -> None:
        with self._seen_lock:
            self.events_emitted += 1
        logger.debug("[%s] request discovered: %s", source, path.name)
        self.emit(DiscoveryEvent(path=path, source=source))

    def _notified(self, raw_path: Any) -> None:
        path = Path(os.fsdecode(raw_path))
        if path.parent != self.directory.root or not self.codec.is_request(path.name):
            return
        logger.info("New request detected: %s", path.name)
        self._emit(path, NOTIFY)

    def _start_poller(self) -> None:
        if self._poller is not None and self._poller.is_alive():
            return
        self._poller = threading.Thread(target=self._poll_loop, name="filebroker-poller", daemon=True)
        self._poller.start()

    def _poll_loop(self) -> None:
        while not self._stop.wait(self.poll_interval):
            try:
                self.poll_once()
            except Exception as exc:  # pragma: no cover - loop safety
                logger.error("Poller error: %s", exc)

    def _start_notifier(self) -> None:
        if self.observer_factory is None:
            return
        try:
            observer = self.observer_factory()
            observer.schedule(_RequestEventHandler(self), str(self.directory.root), recursive=False)
            observer.start()
        except Exception as exc:
            self._fault(f"notifier failed to start: {exc}")
            return
        self._observer = observer
        logger.info("Watching %s for %s", self.directory.root, self.codec.request_glob())

    def _fault(self, reason: str) -> None:
        self.fault = reason
        logger.error("Watcher fault: %s (polling continues)", reason)
        if self.on_fault is not None:
            self.on_fault(reason)

    def notifier_alive(self) -> bool:
        if self.observer_factory is None:
            return True
        return self._observer is not None and bool(self._observer.is_alive())

    def poller_alive(self) -> bool:
        return self._poller is not None and self._poller.is_alive()

    def is_alive(self) -> bool:
        if self._closed:
            return False
        return self.notifier_alive() and self.poller_alive()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        observer, self._observer = self._observer, None
        if observer is not None:
            try:
                observer.stop()
                observer.join(timeout=2)
            except Exception as exc:
                logger.warning("Error stopping notifier: %s", exc)
        poller, self._poller = self._poller, None
        if poller is not None and poller is not threading.current_thread():
            poller.join(timeout=2)
        logger.info("Watcher closed: %s", self.directory.root)

    def status(self) -> Dict[str, Any]:
        return {
            "alive": self.is_alive(),
            "notifier_alive": self.notifier_alive(),
            "poller_alive": self.poller_alive(),
            "fault": self.fault,
            "tracked": len(self._seen),
            "events_emitted": self.events_emitted,
        }
