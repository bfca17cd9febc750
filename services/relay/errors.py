"""Error taxonomy for the relay.

Every relay error renders to the shared body
`{"error": {"code": "<status>", "message": ..., "details": ...}}`.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class RelayError(Exception):
    """Base class for failures surfaced to the relay caller."""

    status_code = 500

    def __init__(self, message: str, details: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": str(self.status_code),
                "message": self.message,
                "details": self.details,
            }
        }


class CallerConfigurationError(RelayError):
    """Missing credential or target address; raised before any network call."""

    status_code = 400


class UpstreamRejection(RelayError):
    """The provider answered with a non-success status after all credential strategies."""

    def __init__(self, status_code: int, message: str, raw_body: str) -> None:
        super().__init__(message, details=raw_body, status_code=status_code)
        self.raw_body = raw_body


class TransportFailure(RelayError):
    """No response at all from the provider (connection, DNS, timeout...)."""

    status_code = 500
