from __future__ import annotations

from typing import Any, Dict, Optional


class StoreUnavailableError(Exception):
    """Raised when the credential store cannot be reached.

    Distinct from every domain outcome: callers treat it as transient and
    retryable, and token verification fails closed on it.
    """

    retryable = True

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["StoreUnavailableError"]
