"""Stack lifecycle operations for one environment.

Submitting operations return immediately; callers observe completion through
wait(). Status is re-probed on every call and never cached, so an interrupted
run resumes by probing rather than trusting local state.

FAILURE SEMANTICS:
- status() reads any remote failure as "no stack".
- wait() for DELETED reads a vanished stack as DELETED.
- Every other remote failure propagates unchanged.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

from .errors import (
    ConflictError,
    ConsistencyError,
    NotFoundError,
    StackOperationError,
    WaitTimeoutError,
)
from .loader import load_template
from .parameters import create_parameters, render_template, update_parameters
from .stacks import StackClient, StackIdentity, StackStatus, can_transition
from .waiter import DELETED_STATUS, LONG_WAIT, OUTPUTS_WAIT, TickFn, WaitPolicy, WaitResult, wait

logger = logging.getLogger(__name__)

# Outputs consumed after the stack was created
PROVISION_OUTPUT_KEYS: tuple[str, ...] = (
    "DomainName",
    "DBHost",
    "DBPort",
    "DBAdminAccessPrefixListId",
    "AppAccessPrefixListId",
    "CacheEndpointAddress",
    "CacheEndpointPort",
    "QueueUrl",
    "BucketName",
    "DBSecurityGroupId",
    "ContainersSecurityGroupId",
    "CacheSecurityGroupId",
    "MigrationTaskDefinitionArn",
    "Subnet1Id",
)

# Outputs that change once the stack runs with its secrets
REFRESHED_OUTPUT_KEYS: tuple[str, ...] = ("MigrationTaskDefinitionArn", "ContainerClusterArn")
VOLATILE_OUTPUT_KEY = "MigrationTaskDefinitionArn"

DB_ID_OUTPUT_KEY = "DBId"

_OUTPUTS_READY = "OUTPUTS_READY"


def require_success(result: WaitResult, operation: str) -> WaitResult:
    """Turn a completed-but-failed wait into StackOperationError."""
    if not result.success:
        raise StackOperationError(operation, result.status)
    return result


class StackOrchestrator:
    """Drives one environment's stack through create, update and delete."""

    def __init__(
        self,
        stacks: StackClient,
        template_path: Path,
        stack_wait: WaitPolicy = LONG_WAIT,
        outputs_wait: WaitPolicy = OUTPUTS_WAIT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._stacks = stacks
        self._template_path = template_path
        self._stack_wait = stack_wait
        self._outputs_wait = outputs_wait
        self._sleep = sleep

    @property
    def identity(self) -> StackIdentity:
        return self._stacks.identity

    @property
    def stack_name(self) -> str:
        return self._stacks.stack_name

    def status(self) -> StackStatus | None:
        """Single probe. None when no stack exists for the environment."""
        return self._stacks.status()

    def require_stack(self, target: StackStatus) -> StackStatus:
        """Check that a stack exists and may move to ``target``.

        Raises:
            NotFoundError: If no stack exists.
            ConflictError: If the current status does not allow the transition.
        """
        current = self.status()
        if current is None:
            raise NotFoundError(
                f"Stack does not exist for the '{self.identity.environment}' environment"
            )
        if not can_transition(current, target):
            raise ConflictError(
                f"Stack '{self.stack_name}' is {current.value} and cannot move to {target.value}"
            )
        return current

    def _identity_values(self) -> dict[str, Any]:
        return {
            "ProjectName": self.identity.project_name,
            "ProjectId": self.identity.project_id,
            "EnvironmentName": self.identity.environment,
        }

    def create(self, values: Mapping[str, Any]) -> str:
        """Submit a create request with every parameter set.

        The stack starts disabled. Identity parameters are filled in here.

        Raises:
            ValidationError: If the template is missing or a parameter is unset.
            ConflictError: If a stack already exists. Nothing is submitted.
        """
        template = render_template(load_template(self._template_path))
        parameters = create_parameters({"Enabled": False, **values, **self._identity_values()})

        current = self.status()
        if current is not None:
            raise ConflictError(
                f"Stack exists for '{self.identity.environment}' environment ({current.value})"
            )

        return self._stacks.create(parameters, template)

    def update(
        self,
        enabled: bool,
        secrets: Mapping[str, str],
        changes: Mapping[str, Any] | None = None,
    ) -> bool:
        """Submit an update carrying the given secrets block.

        Keys absent from ``changes`` (or None) keep their previous value.
        The secrets mapping must already be complete: an incomplete block
        silently drops references from the running stack.

        Returns:
            False when there was nothing to change.

        Raises:
            NotFoundError: If no stack exists.
            ConflictError: If the stack cannot be updated in its current status.
        """
        template = render_template(load_template(self._template_path), secrets)
        parameters = update_parameters({**(changes or {}), "Enabled": enabled})

        self.require_stack(StackStatus.UPDATE_IN_PROGRESS)
        return self._stacks.update(parameters, template)

    def delete(self) -> None:
        """Submit a delete request.

        Raises:
            NotFoundError: If no stack exists.
            ConflictError: If the stack is already being deleted.
        """
        self.require_stack(StackStatus.DELETE_IN_PROGRESS)
        self._stacks.delete()

    def _probe(self) -> str | None:
        raw = self._stacks.probe_status()
        if raw is None:
            return None
        # Unknown statuses fail here instead of looping until timeout
        return StackStatus.parse(raw).value

    def wait(self, expected: StackStatus, on_tick: TickFn | None = None) -> WaitResult:
        """Wait for the stack to reach a terminal status.

        Waiting for DELETED treats a vanished stack as deleted.

        Raises:
            WaitTimeoutError: If the stack is still in progress after the budget.
        """
        return wait(
            self._probe,
            self._stack_wait,
            expected.value,
            description=f"stack {self.stack_name}",
            missing_status=DELETED_STATUS if expected == StackStatus.DELETED else None,
            on_tick=on_tick,
            sleep=self._sleep,
        )

    def outputs(self, keys: Sequence[str]) -> dict[str, str]:
        """The requested outputs that are currently published."""
        return self._stacks.outputs(list(keys))

    def wait_for_outputs(
        self,
        keys: Sequence[str],
        previous: Mapping[str, str] | None = None,
        on_tick: TickFn | None = None,
    ) -> dict[str, str]:
        """Poll until every key is published and differs from ``previous``.

        Args:
            keys: Output keys that must all be present.
            previous: Values that must have changed (a refresh check).
            on_tick: Progress callback.

        Raises:
            ConsistencyError: If outputs are incomplete or stale after the budget.
        """
        previous = previous or {}
        current: dict[str, str] = {}

        def poll() -> str | None:
            nonlocal current
            current = self.outputs(keys)
            if any(key not in current for key in keys):
                return None
            if any(current.get(key) == value for key, value in previous.items()):
                return None
            return _OUTPUTS_READY

        try:
            wait(
                poll,
                self._outputs_wait,
                _OUTPUTS_READY,
                description=f"outputs of stack {self.stack_name}",
                on_tick=on_tick,
                sleep=self._sleep,
            )
        except WaitTimeoutError as e:
            missing = sorted(set(keys) - set(current))
            stale = sorted(k for k, v in previous.items() if current.get(k) == v)
            detail = f"missing: {missing}" if missing else f"unchanged: {stale}"
            raise ConsistencyError(
                f"Stack '{self.stack_name}' outputs were not available after "
                f"{e.tries} tries ({detail})"
            ) from e
        return current
