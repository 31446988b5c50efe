from __future__ import annotations

from typing import Optional


class ConfigurationError(RuntimeError):
    """Fatal misconfiguration detected while the process starts."""


class CompletionError(Exception):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(CompletionError):
    pass


class RequestTooLargeError(CompletionError):
    pass


class InvalidCompletionRequestError(CompletionError):
    pass


class PoolExhaustedError(CompletionError):
    """Every attempt in one gateway call was rejected as rate limited."""

    def __init__(self, attempts: int, last_error: Optional[BaseException]) -> None:
        detail = str(last_error) if last_error is not None else "no attempt made"
        super().__init__(f"all {attempts} api keys are rate limited: {detail}", status_code=429)
        self.attempts = attempts
        self.last_error = last_error


class StoreUnavailableError(Exception):
    pass
