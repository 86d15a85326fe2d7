"""
Base error type for the zipIQ archival server.

Every domain exception raised by the server inherits from ZipiqError.
Sub-packages define their own subclasses next to the code that raises them.

Invariants:
    - All errors carry a stable machine-readable code
    - transient=True means the failed operation may succeed if retried unchanged
    - Error details never contain key material
"""

from __future__ import annotations

from typing import Any


class ZipiqError(Exception):
    """Base exception for all zipIQ server errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    transient: bool = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ZIPIQ_ERROR"
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logs and health reports."""
        return {
            "code": self.code,
            "message": self.message,
            "transient": self.transient,
            "details": self.details,
        }
