from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from filebroker.codec import is_valid_session_id, new_session_id
from filebroker.config import BrokerConfig
from filebroker.payload import STATUS_COMPLETED, STATUS_FAILED, validate_response
from filebroker.store import SharedDirectory

logger = logging.getLogger(__name__)

MALFORMED = "malformed"
TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class WaitResult:
    session_id: str
    status: str
    payload: Optional[Dict[str, Any]] = None
    problems: Optional[List[str]] = None
    waited: float = 0.0

    @property
    def completed(self) -> bool:
        return self.status == STATUS_COMPLETED

    @property
    def failed(self) -> bool:
        return self.status == STATUS_FAILED

    @property
    def malformed(self) -> bool:
        return self.status == MALFORMED

    @property
    def timed_out(self) -> bool:
        return self.status == TIMED_OUT

    @property
    def error(self) -> Optional[str]:
        if self.payload is not None and self.payload.get("error"):
            return str(self.payload["error"])
        if self.problems:
            return "; ".join(self.problems)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "status": self.status,
            "payload": self.payload,
            "problems": self.problems or [],
            "waited": round(self.waited, 3),
        }


class BrokerClient:
    """Caller-side helper: writes request artifacts and polls for response artifacts.

    Reading never mutates or deletes a response; any number of readers may
    poll the same session at once.
    """

    def __init__(
        self,
        root: Path,
        config: Optional[BrokerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or BrokerConfig()
        self.directory = SharedDirectory(Path(root), self.config.codec())
        self.clock = clock
        self.sleep = sleep

    def enqueue(self, instruction: str, session_id: Optional[str] = None) -> str:
        if not isinstance(instruction, str) or not instruction.strip():
            raise ValueError("instruction must be a non-empty string")
        sid = new_session_id() if session_id is None else session_id
        if not is_valid_session_id(sid):
            raise ValueError(f"invalid session id: {sid!r}")
        self.directory.root.mkdir(parents=True, exist_ok=True)
        path = self.directory.write_request(sid, instruction)
        logger.info("Request written: %s", path.name)
        return sid

    def read_response(self, session_id: str) -> Optional[WaitResult]:
        """Look once; ``None`` means no readable response yet."""
        if not is_valid_session_id(session_id):
            raise ValueError(f"invalid session id: {session_id!r}")
        try:
            raw = self.directory.read_response_raw(session_id)
        except UnicodeDecodeError as exc:
            return WaitResult(session_id=session_id, status=MALFORMED, problems=[f"not valid UTF-8: {exc}"])
        except OSError as exc:
            # Not readable yet; callers keep polling until their deadline.
            logger.debug("Response for %s not readable: %s", session_id, exc)
            return None
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except ValueError as exc:
            return WaitResult(session_id=session_id, status=MALFORMED, problems=[f"invalid JSON: {exc}"])
        problems = validate_response(data, session_id=session_id)
        if problems:
            return WaitResult(
                session_id=session_id,
                status=MALFORMED,
                payload=data if isinstance(data, dict) else None,
                problems=problems,
            )
        return WaitResult(session_id=session_id, status=str(data["status"]), payload=data)

    def wait_for_response(
        self,
        session_id: str,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> WaitResult:
        limit = self.config.response_timeout if timeout is None else timeout
        interval = self.config.response_poll_interval if poll_interval is None else poll_interval
        started = self.clock()
        deadline = started + max(0.0, float(limit))
        while True:
            result = self.read_response(session_id)
            now = self.clock()
            if result is not None:
                if result.malformed:
                    logger.warning("Malformed response for %s: %s", session_id, result.error)
                return WaitResult(
                    session_id=result.session_id,
                    status=result.status,
                    payload=result.payload,
                    problems=result.problems,
                    waited=now - started,
                )
            if now >= deadline:
                logger.info("Timed out waiting for %s after %.1fs", session_id, now - started)
                return WaitResult(session_id=session_id, status=TIMED_OUT, waited=now - started)
            self.sleep(max(0.01, min(interval, deadline - now)))
