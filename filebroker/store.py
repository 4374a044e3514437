from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from filebroker.codec import SessionCodec
from filebroker.errors import TransientIOError

logger = logging.getLogger(__name__)

PROCESSED = "processed"
ERRORS = "errors"
ARCHIVE_AREAS = (PROCESSED, ERRORS)
ERROR_SIDECAR_SUFFIX = ".error.json"


class SharedDirectory:
    """The broker's shared directory: request/response artifacts plus two archives."""

    def __init__(self, root: Path, codec: SessionCodec) -> None:
        self.root = Path(root)
        self.codec = codec
        self.processed_dir = self.root / PROCESSED
        self.errors_dir = self.root / ERRORS

    def ensure_layout(self) -> None:
        for path in (self.root, self.processed_dir, self.errors_dir):
            if not path.exists():
                path.mkdir(parents=True, exist_ok=True)
                logger.info("Created directory: %s", path)

    def reachable(self) -> bool:
        return self.root.is_dir() and os.access(self.root, os.R_OK | os.W_OK | os.X_OK)

    @staticmethod
    def _atomic_write_text(path: Path, text: str) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        tmp.replace(path)
        try:
            dir_fd = os.open(str(path.parent), os.O_RDONLY)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)
        except OSError:
            pass

    def request_path(self, session_id: str) -> Path:
        return self.root / self.codec.request_name(session_id)

    def response_path(self, session_id: str) -> Path:
        return self.root / self.codec.response_name(session_id)

    def list_requests(self) -> List[Path]:
        return self._list(self.codec.is_request)

    def list_responses(self) -> List[Path]:
        return self._list(lambda name: self.codec.decode_response(name) is not None)

    def _list(self, accept: Any) -> List[Path]:
        if not self.root.is_dir():
            return []
        return sorted(p for p in self.root.iterdir() if p.is_file() and accept(p.name))

    def list_archive(self, area: str) -> List[Path]:
        folder = self._area_dir(area)
        if not folder.is_dir():
            return []
        return sorted(
            p for p in folder.iterdir() if p.is_file() and not p.name.endswith(ERROR_SIDECAR_SUFFIX)
        )

    def write_request(self, session_id: str, instruction: str) -> Path:
        path = self.request_path(session_id)
        self._atomic_write_text(path, instruction)
        return path

    def read_request(self, path: Path, session_id: Optional[str] = None) -> Optional[str]:
        """Read a request body; ``None`` means the artifact is already gone."""
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise TransientIOError(f"Could not read {path.name}: {exc}", session_id=session_id) from exc

    def write_response(self, session_id: str, payload: Dict[str, Any]) -> Path:
        path = self.response_path(session_id)
        try:
            self._atomic_write_text(path, json.dumps(payload, indent=2) + "\n")
        except OSError as exc:
            raise TransientIOError(f"Could not write {path.name}: {exc}", session_id=session_id) from exc
        return path

    def read_response_raw(self, session_id: str) -> Optional[str]:
        try:
            return self.response_path(session_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def age_of(self, path: Path) -> Optional[float]:
        """Seconds since ``path`` was last modified, or ``None`` when it is gone."""
        try:
            return max(0.0, time.time() - path.stat().st_mtime)
        except FileNotFoundError:
            return None

    def has_fresh_response(self, request: Path) -> bool:
        """True when a response for the request's session is newer than the request itself."""
        session_id = self.codec.decode_request(request.name)
        if session_id is None:
            return False
        try:
            return self.response_path(session_id).stat().st_mtime_ns >= request.stat().st_mtime_ns
        except FileNotFoundError:
            return False

    def _area_dir(self, area: str) -> Path:
        if area not in ARCHIVE_AREAS:
            raise ValueError(f"Unknown archive area: {area}")
        return self.root / area

    def archive(self, path: Path, area: str) -> Optional[Path]:
        """Move a request artifact into an archive area.

        Falls back to deleting it when the rename fails. Returns the archived
        path, or ``None`` when the artifact was deleted or already gone.
        """
        folder = self._area_dir(area)
        folder.mkdir(parents=True, exist_ok=True)
        target = folder / f"{int(time.time() * 1000)}-{path.name}"
        try:
            path.rename(target)
            return target
        except FileNotFoundError:
            logger.info("Request already moved by another handler: %s", path.name)
            return None
        except OSError as exc:
            logger.warning("Could not archive %s to %s: %s", path.name, area, exc)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not delete %s: %s", path.name, exc)
        return None

    def record_error(self, archived: Optional[Path], record: Dict[str, Any]) -> Optional[Path]:
        entry = dict(record)
        entry.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        if archived is not None:
            sidecar = archived.with_name(archived.name + ERROR_SIDECAR_SUFFIX)
        else:
            name = entry.get("file") or "unknown"
            sidecar = self.errors_dir / f"{int(time.time() * 1000)}-{name}{ERROR_SIDECAR_SUFFIX}"
        try:
            self.errors_dir.mkdir(parents=True, exist_ok=True)
            self._atomic_write_text(sidecar, json.dumps(entry, indent=2) + "\n")
        except OSError as exc:
            logger.warning("Could not record error for %s: %s", entry.get("file"), exc)
            return None
        return sidecar

    def iter_error_records(self) -> List[Dict[str, Any]]:
        if not self.errors_dir.is_dir():
            return []
        records: List[Dict[str, Any]] = []
        for path in sorted(self.errors_dir.glob("*" + ERROR_SIDECAR_SUFFIX)):
            try:
                with path.open("r", encoding="utf-8") as fh:
                    item = json.load(fh)
            except (OSError, ValueError):
                # Skip unreadable sidecars instead of failing the whole scan.
                continue
            if isinstance(item, dict):
                records.append(item)
        return records
