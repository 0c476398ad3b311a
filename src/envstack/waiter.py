"""Bounded polling for long-running remote operations.

Every asynchronous AWS operation (stack apply/delete, prefix list propagation,
DNS change propagation, certificate validation, task completion) is observed
through the same loop:

1. Poll once.
2. If the observed status is terminal, stop. Success means the terminal
   status equals the caller's expected status.
3. Otherwise sleep for the policy interval and poll again, until the try
   budget is exhausted.

Exhausting the budget raises WaitTimeoutError. That is always fatal to the
calling workflow; the operation is never re-submitted from here.

A terminal status that differs from the expected one is a completed-but-failed
operation and is reported through WaitResult.success, not as an exception.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from .errors import NotFoundError, WaitTimeoutError

logger = logging.getLogger(__name__)

# Status reported when the probed resource no longer exists
DELETED_STATUS = "DELETED"

# Suffixes marking a non-terminal status across services
IN_PROGRESS_SUFFIXES: tuple[str, ...] = ("_IN_PROGRESS", "-in-progress")


@dataclass(frozen=True)
class WaitPolicy:
    """Try budget and interval for one kind of wait.

    A max_tries of 0 means unbounded.
    """

    max_tries: int
    interval_seconds: float

    def __post_init__(self) -> None:
        if self.max_tries < 0:
            raise ValueError("max_tries cannot be negative")
        if self.interval_seconds < 0:
            raise ValueError("interval_seconds cannot be negative")

    @property
    def unbounded(self) -> bool:
        return self.max_tries == 0

    @property
    def budget_seconds(self) -> float:
        """Total time the policy allows, 0 when unbounded."""
        return self.max_tries * self.interval_seconds


# Stack create/update/delete: up to an hour
LONG_WAIT = WaitPolicy(max_tries=60, interval_seconds=60)

# Prefix list and DNS propagation: about 30 seconds
SHORT_WAIT = WaitPolicy(max_tries=10, interval_seconds=3)

# Stack outputs appear shortly after a terminal success status
OUTPUTS_WAIT = WaitPolicy(max_tries=10, interval_seconds=2)

# Secret store listing
SECRETS_WAIT = WaitPolicy(max_tries=60, interval_seconds=5)

# Certificate validation can take many minutes
CERTIFICATE_WAIT = WaitPolicy(max_tries=60, interval_seconds=30)

# One-shot tasks such as migrations
TASK_WAIT = WaitPolicy(max_tries=120, interval_seconds=10)


@dataclass(frozen=True)
class WaitTick:
    """Progress report emitted after each non-terminal poll."""

    tries: int
    max_tries: int
    interval_seconds: float
    status: str | None

    @property
    def elapsed_seconds(self) -> float:
        return self.tries * self.interval_seconds

    @property
    def remaining_seconds(self) -> float | None:
        """Seconds left in the budget, None when unbounded."""
        if self.max_tries == 0:
            return None
        return max(self.max_tries - self.tries, 0) * self.interval_seconds


@dataclass(frozen=True)
class WaitResult:
    """Outcome of a completed wait."""

    status: str
    success: bool
    tries: int


def is_in_progress(status: str) -> bool:
    """Check whether a status string carries an in-progress marker."""
    return status.endswith(IN_PROGRESS_SUFFIXES)


PollFn = Callable[[], str | None]
TickFn = Callable[[WaitTick], None]


def wait(
    poll: PollFn,
    policy: WaitPolicy,
    expected_status: str,
    *,
    description: str = "operation",
    in_progress: Callable[[str], bool] = is_in_progress,
    missing_status: str | None = None,
    on_tick: TickFn | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> WaitResult:
    """Poll until a terminal status is observed or the try budget runs out.

    Args:
        poll: Performs one status check. Returns the current status, or None
            while no status is available yet (treated as in progress).
        policy: Try budget and interval.
        expected_status: Terminal status that counts as success.
        description: Human-readable name used in logs and timeout errors.
        in_progress: Predicate marking a status as non-terminal.
        missing_status: When set, a NotFoundError raised by ``poll`` is read
            as this terminal status instead of propagating.
        on_tick: Presentation callback invoked after each non-terminal poll.
            It never influences timing.
        sleep: Sleep function, injectable for tests.

    Returns:
        WaitResult with the terminal status and whether it matched.

    Raises:
        WaitTimeoutError: If no terminal status was observed within the budget.
    """
    tries = 0
    status: str | None = None

    while policy.unbounded or tries < policy.max_tries:
        tries += 1
        try:
            status = poll()
        except NotFoundError:
            if missing_status is None:
                raise
            status = missing_status
            logger.debug(
                "Resource gone while waiting, treating as terminal",
                extra={"description": description, "status": status},
            )
            return WaitResult(status=status, success=status == expected_status, tries=tries)

        if status is not None and not in_progress(status):
            success = status == expected_status
            logger.info(
                "Wait finished",
                extra={
                    "description": description,
                    "status": status,
                    "success": success,
                    "tries": tries,
                },
            )
            return WaitResult(status=status, success=success, tries=tries)

        if not policy.unbounded and tries >= policy.max_tries:
            break

        if on_tick is not None:
            on_tick(WaitTick(tries, policy.max_tries, policy.interval_seconds, status))
        sleep(policy.interval_seconds)

    logger.error(
        "Wait timed out",
        extra={"description": description, "tries": tries, "last_status": status},
    )
    raise WaitTimeoutError(description, tries, tries * policy.interval_seconds)
