"""Exception hierarchy for the Sikka integration."""

from __future__ import annotations

from typing import Any


class SikkaError(Exception):
    """Base class for every Sikka integration failure."""


class SikkaConfigError(SikkaError):
    """Raised at construction when app credentials are missing."""


class SikkaAPIError(SikkaError):
    """Raised when a Sikka API call fails after all retries."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: Any = None,
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class SikkaAuthError(SikkaAPIError):
    """Raised when practice discovery, token acquisition or refresh fails."""


class WritebackTimeoutError(SikkaError):
    """Raised when a writeback does not reach a terminal state in time."""

    def __init__(self, message: str, writeback_id: str, attempts: int):
        self.writeback_id = writeback_id
        self.attempts = attempts
        super().__init__(message)
