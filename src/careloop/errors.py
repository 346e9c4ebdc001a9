# errors.py
# Failures that escape the agent loop.
#
# Parse and capability failures never reach these classes: the harness turns
# them into observations. Only provider and transport failures propagate.

from typing import Any


class CareloopError(Exception):
    """Base class for failures surfaced to callers."""

    retryable: bool = False

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable
        # Set by the harness to the RunResult committed before the failure.
        self.partial_result: Any = None


class ProviderError(CareloopError):
    """The text-generation back-end failed. `retryable` marks rate limits and outages."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        status_code: int | None = None,
        provider: str | None = None,
    ) -> None:
        super().__init__(message, retryable=retryable)
        self.status_code = status_code
        self.provider = provider


class TransportError(CareloopError):
    """The progress stream could not be delivered or read."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, retryable=status_code is None or status_code >= 500)
        self.status_code = status_code


class RunStateError(RuntimeError):
    """A run was driven outside its lifecycle (e.g. finished twice)."""


class JudgeError(CareloopError):
    """The judge model's verdict could not be read as a JSON object."""

    def __init__(self, message: str, *, content: str = "") -> None:
        super().__init__(message)
        self.content = content
