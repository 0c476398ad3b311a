"""Error taxonomy for environment lifecycle operations.

PROPAGATION POLICY:
- ValidationError, ConflictError and NotFoundError are raised before any
  mutating remote call. Nothing has changed remotely when they surface.
- WaitTimeoutError, ConsistencyError and StackOperationError are raised after
  mutating calls were issued. The remote side may still be converging; no
  compensating action is attempted.
- RemoteError wraps an unexpected failure of an AWS collaborator. It is only
  reinterpreted where "resource absent" is a meaningful terminal status.
"""

from __future__ import annotations


class EnvStackError(Exception):
    """Base class for all handled failures."""

    pass


class ValidationError(EnvStackError):
    """Raised when required local configuration or caller input is missing or invalid."""

    pass


class ConflictError(EnvStackError):
    """Raised when an operation would clash with existing remote state."""

    pass


class NotFoundError(EnvStackError):
    """Raised when a stack, zone, repository or certificate was expected but not found."""

    pass


class WaitTimeoutError(EnvStackError, TimeoutError):
    """Raised when a bounded poll loop exhausts its try budget.

    Attributes:
        tries: Number of polls performed.
        seconds: Total seconds budgeted across those polls.
    """

    def __init__(self, description: str, tries: int, seconds: float) -> None:
        self.description = description
        self.tries = tries
        self.seconds = seconds
        super().__init__(
            f"Timed out waiting for {description} after {tries} tries ({seconds:.0f} seconds)"
        )


class ConsistencyError(EnvStackError):
    """Raised when stack outputs did not reflect a completed change in time."""

    pass


class StackOperationError(EnvStackError):
    """Raised when a wait finished in a terminal status other than the expected one."""

    def __init__(self, operation: str, status: str) -> None:
        self.operation = operation
        self.status = status
        super().__init__(f"Stack {operation} failed with status '{status}'")


class RemoteError(EnvStackError):
    """Raised when an AWS collaborator fails unexpectedly.

    Attributes:
        operation: Name of the remote operation (e.g. "DescribeStacks").
        code: AWS error code when the service returned one.
    """

    def __init__(self, message: str, operation: str = "", code: str | None = None) -> None:
        self.operation = operation
        self.code = code
        super().__init__(message)
