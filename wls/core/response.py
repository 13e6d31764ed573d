"""
HTTP response serialization.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict

JSON_CONTENT_TYPE = "application/json"

# Only 200 has its own reason phrase; every other status reports "Bad Request"
REASON_PHRASES = {200: "OK"}
DEFAULT_REASON = "Bad Request"


def reason_phrase(status_code: int) -> str:
    return REASON_PHRASES.get(status_code, DEFAULT_REASON)


@dataclass(frozen=True)
class OutgoingResponse:
    status_code: int
    body: str
    content_type: str = JSON_CONTENT_TYPE

    def to_bytes(self) -> bytes:
        """Serialize into a complete HTTP/1.1 response (connection closes after it)."""
        body = self.body.encode("utf-8")
        head = (
            f"HTTP/1.1 {self.status_code} {reason_phrase(self.status_code)}\r\n"
            f"Content-Type: {self.content_type}\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        return head.encode("latin-1") + body


def json_response(status_code: int, payload: Dict[str, Any]) -> OutgoingResponse:
    return OutgoingResponse(status_code, json.dumps(payload, separators=(",", ":")))


def error_response(status_code: int, message: str) -> OutgoingResponse:
    return json_response(status_code, {"error": message})
