"""Response artifact schema.

A response artifact is a JSON object::

    {
      "success": true,
      "sessionId": "1749298312437-a1b2c3",
      "timestamp": "2025-06-07T12:11:52.437000+00:00",
      "response": "...",
      "status": "completed",
      "attempts": 1,
      "processingTime": 0.004
    }

Failed sessions carry ``success: false``, ``status: "failed"``, an ``error``
message and the ``errorKind`` that ended processing.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

REQUIRED_FIELDS = ("success", "sessionId", "timestamp", "response", "status")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_response(
    session_id: str,
    response: str,
    attempts: int = 1,
    processing_time: Optional[float] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "success": True,
        "sessionId": session_id,
        "timestamp": _now(),
        "response": response,
        "status": STATUS_COMPLETED,
        "attempts": attempts,
    }
    if processing_time is not None:
        payload["processingTime"] = round(processing_time, 4)
    return payload


def build_error_response(session_id: str, error: str, error_kind: str, attempts: int) -> Dict[str, Any]:
    return {
        "success": False,
        "sessionId": session_id,
        "timestamp": _now(),
        "response": "",
        "status": STATUS_FAILED,
        "error": error,
        "errorKind": error_kind,
        "attempts": attempts,
    }


def validate_response(value: Any, session_id: Optional[str] = None) -> List[str]:
    """Return the list of structural problems with a decoded response payload."""
    if not isinstance(value, dict):
        return ["payload is not a JSON object"]

    problems: List[str] = []
    missing = [key for key in REQUIRED_FIELDS if key not in value]
    if missing:
        problems.append(f"missing fields: {', '.join(missing)}")

    if "success" in value and not isinstance(value["success"], bool):
        problems.append("success must be a boolean")
    if "sessionId" in value:
        if not isinstance(value["sessionId"], str) or not value["sessionId"]:
            problems.append("sessionId must be a non-empty string")
        elif session_id is not None and value["sessionId"] != session_id:
            problems.append(f"sessionId mismatch: expected {session_id}, got {value['sessionId']}")
    if "timestamp" in value:
        try:
            datetime.fromisoformat(str(value["timestamp"]))
        except ValueError:
            problems.append("timestamp is not ISO-8601")
    if "response" in value and not isinstance(value["response"], str):
        problems.append("response must be a string")
    if "status" in value and value["status"] not in STATUSES:
        problems.append(f"status must be one of: {', '.join(STATUSES)}")

    if not problems:
        completed = value["status"] == STATUS_COMPLETED
        if value["success"] != completed:
            problems.append("success and status disagree")
        elif completed and not value["response"]:
            problems.append("completed response is empty")
    return problems
