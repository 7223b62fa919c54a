"""Classification of adapter errors into retryable and permanent failures."""

from __future__ import annotations

import socket
from dataclasses import dataclass
from typing import FrozenSet, Optional


RETRYABLE_STATUS = frozenset({408, 409, 412, 425, 429, 500, 502, 503, 504})


class PermanentApplyError(Exception):
    """Raised by an apply port to reject an operation for good."""


def status_code_of(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    resp = getattr(exc, "resp", None) or getattr(exc, "response", None)
    status = resp is not None and (
        getattr(resp, "status", None) or getattr(resp, "status_code", None)
    )
    try:
        return int(status) if status else None
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class ErrorPolicy:
    """Configurable boundary between retryable and permanent failures.

    Timeouts and connection errors are always retryable. HTTP-style status
    codes in ``retryable_status`` are retryable, any other 4xx is permanent and
    other statuses follow ``retry_unknown``.
    """

    retryable_status: FrozenSet[int] = RETRYABLE_STATUS
    retry_unknown: bool = True

    def is_retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, PermanentApplyError):
            return False
        if isinstance(exc, (TimeoutError, socket.timeout, ConnectionError)):
            return True
        status = status_code_of(exc)
        if status is None:
            return self.retry_unknown
        if status in self.retryable_status:
            return True
        if 400 <= status < 500:
            return False
        if status >= 500:
            return True
        return self.retry_unknown


DEFAULT_POLICY = ErrorPolicy()


__all__ = [
    "DEFAULT_POLICY",
    "ErrorPolicy",
    "PermanentApplyError",
    "RETRYABLE_STATUS",
    "status_code_of",
]
