from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional, Pattern

REQUEST = "request"
RESPONSE = "response"

_FORBIDDEN_ID_CHARS = ("/", "\\", "\x00")


def is_valid_session_id(session_id: object) -> bool:
    if not isinstance(session_id, str) or not session_id:
        return False
    if session_id in {".", ".."}:
        return False
    return not any(ch in session_id for ch in _FORBIDDEN_ID_CHARS)


def new_session_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


@dataclass(frozen=True)
class SessionCodec:
    """Maps session ids to artifact file names and back.

    Names look like ``<prefix>-request-<id>.<request_ext>`` and
    ``<prefix>-response-<id>.<response_ext>``. Decoding a name that does not
    have that shape returns ``None``; it is not an error.
    """

    prefix: str = "comm"
    request_ext: str = "txt"
    response_ext: str = "json"
    _request_re: Pattern[str] = field(init=False, repr=False, compare=False)
    _response_re: Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_request_re", self._compile(REQUEST, self.request_ext))
        object.__setattr__(self, "_response_re", self._compile(RESPONSE, self.response_ext))

    def _compile(self, kind: str, ext: str) -> Pattern[str]:
        return re.compile(rf"^{re.escape(self.prefix)}-{kind}-(.+)\.{re.escape(ext)}$", re.DOTALL)

    def request_name(self, session_id: str) -> str:
        return f"{self.prefix}-{REQUEST}-{session_id}.{self.request_ext}"

    def response_name(self, session_id: str) -> str:
        return f"{self.prefix}-{RESPONSE}-{session_id}.{self.response_ext}"

    def request_glob(self) -> str:
        return f"{self.prefix}-{REQUEST}-*.{self.request_ext}"

    def response_glob(self) -> str:
        return f"{self.prefix}-{RESPONSE}-*.{self.response_ext}"

    def decode_request(self, name: str) -> Optional[str]:
        match = self._request_re.match(name)
        return match.group(1) if match else None

    def decode_response(self, name: str) -> Optional[str]:
        match = self._response_re.match(name)
        return match.group(1) if match else None

    def decode(self, name: str) -> Optional[str]:
        session_id = self.decode_request(name)
        if session_id is None:
            session_id = self.decode_response(name)
        return session_id

    def kind_of(self, name: str) -> Optional[str]:
        if self.decode_request(name) is not None:
            return REQUEST
        if self.decode_response(name) is not None:
            return RESPONSE
        return None

    def is_request(self, name: str) -> bool:
        return self.decode_request(name) is not None
