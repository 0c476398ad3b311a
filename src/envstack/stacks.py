"""CloudFormation stack access and the stack status state machine.

A stack is addressed by a deterministic name built from project name, project
id and environment. Status is always read from CloudFormation and never cached
between calls.

STATE MACHINE:
    ABSENT -> CREATE_IN_PROGRESS -> CREATE_COMPLETE | CREATE_FAILED | ROLLBACK_*
    CREATE_COMPLETE -> UPDATE_IN_PROGRESS -> UPDATE_COMPLETE | UPDATE_FAILED | UPDATE_ROLLBACK_*
    any non-absent state -> DELETE_IN_PROGRESS -> DELETED | DELETE_FAILED

Terminal states need operator attention when they are failures; no automatic
rollback or retry is attempted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .aws import aws_errors
from .errors import NotFoundError, RemoteError
from .waiter import DELETED_STATUS, IN_PROGRESS_SUFFIXES

logger = logging.getLogger(__name__)

# Capabilities the template needs for its IAM roles
STACK_CAPABILITIES: tuple[str, ...] = ("CAPABILITY_IAM", "CAPABILITY_NAMED_IAM")

MAX_STACK_NAME_LENGTH = 128

# CloudFormation rejects an update that changes nothing with this message
NO_UPDATES_MARKER = "No updates are to be performed"


class StackStatus(str, Enum):
    """Every status a stack can report, plus ABSENT and DELETED."""

    ABSENT = "ABSENT"
    REVIEW_IN_PROGRESS = "REVIEW_IN_PROGRESS"
    CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
    CREATE_COMPLETE = "CREATE_COMPLETE"
    CREATE_FAILED = "CREATE_FAILED"
    ROLLBACK_IN_PROGRESS = "ROLLBACK_IN_PROGRESS"
    ROLLBACK_COMPLETE = "ROLLBACK_COMPLETE"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    UPDATE_IN_PROGRESS = "UPDATE_IN_PROGRESS"
    UPDATE_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_COMPLETE = "UPDATE_COMPLETE"
    UPDATE_FAILED = "UPDATE_FAILED"
    UPDATE_ROLLBACK_IN_PROGRESS = "UPDATE_ROLLBACK_IN_PROGRESS"
    UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_ROLLBACK_COMPLETE = "UPDATE_ROLLBACK_COMPLETE"
    UPDATE_ROLLBACK_FAILED = "UPDATE_ROLLBACK_FAILED"
    IMPORT_IN_PROGRESS = "IMPORT_IN_PROGRESS"
    IMPORT_COMPLETE = "IMPORT_COMPLETE"
    IMPORT_ROLLBACK_IN_PROGRESS = "IMPORT_ROLLBACK_IN_PROGRESS"
    IMPORT_ROLLBACK_COMPLETE = "IMPORT_ROLLBACK_COMPLETE"
    IMPORT_ROLLBACK_FAILED = "IMPORT_ROLLBACK_FAILED"
    DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
    DELETE_FAILED = "DELETE_FAILED"
    DELETED = "DELETED"

    @classmethod
    def parse(cls, raw: str) -> StackStatus:
        """Parse a status string reported by CloudFormation.

        DELETE_COMPLETE (reported when addressing a stack by id) maps to DELETED.

        Raises:
            RemoteError: For a status this state machine does not know.
        """
        if raw == "DELETE_COMPLETE":
            return cls.DELETED
        try:
            return cls(raw)
        except ValueError as e:
            raise RemoteError(f"Unknown stack status '{raw}'", "DescribeStacks") from e

    @property
    def in_progress(self) -> bool:
        return self.value.endswith(IN_PROGRESS_SUFFIXES)

    @property
    def terminal(self) -> bool:
        return not self.in_progress

    @property
    def failed(self) -> bool:
        """Terminal states where the last operation did not take effect."""
        return self in _FAILED_STATES

    @property
    def exists(self) -> bool:
        return self not in (StackStatus.ABSENT, StackStatus.DELETED)


_FAILED_STATES: frozenset[StackStatus] = frozenset({
    StackStatus.CREATE_FAILED,
    StackStatus.ROLLBACK_COMPLETE,
    StackStatus.ROLLBACK_FAILED,
    StackStatus.UPDATE_FAILED,
    StackStatus.UPDATE_ROLLBACK_COMPLETE,
    StackStatus.UPDATE_ROLLBACK_FAILED,
    StackStatus.IMPORT_ROLLBACK_COMPLETE,
    StackStatus.IMPORT_ROLLBACK_FAILED,
    StackStatus.DELETE_FAILED,
})

# Stable states from which an update may be submitted
_UPDATABLE_STATES: frozenset[StackStatus] = frozenset({
    StackStatus.CREATE_COMPLETE,
    StackStatus.UPDATE_COMPLETE,
    StackStatus.UPDATE_ROLLBACK_COMPLETE,
    StackStatus.IMPORT_COMPLETE,
    StackStatus.IMPORT_ROLLBACK_COMPLETE,
})

_S = StackStatus

# Exhaustive transition table: every status maps to the statuses it may move to
TRANSITIONS: dict[StackStatus, frozenset[StackStatus]] = {
    _S.ABSENT: frozenset({_S.CREATE_IN_PROGRESS, _S.REVIEW_IN_PROGRESS}),
    _S.REVIEW_IN_PROGRESS: frozenset({_S.CREATE_IN_PROGRESS, _S.IMPORT_IN_PROGRESS}),
    _S.CREATE_IN_PROGRESS: frozenset(
        {_S.CREATE_COMPLETE, _S.CREATE_FAILED, _S.ROLLBACK_IN_PROGRESS}
    ),
    _S.CREATE_FAILED: frozenset({_S.ROLLBACK_IN_PROGRESS}),
    _S.ROLLBACK_IN_PROGRESS: frozenset({_S.ROLLBACK_COMPLETE, _S.ROLLBACK_FAILED}),
    _S.UPDATE_IN_PROGRESS: frozenset(
        {
            _S.UPDATE_COMPLETE_CLEANUP_IN_PROGRESS,
            _S.UPDATE_COMPLETE,
            _S.UPDATE_FAILED,
            _S.UPDATE_ROLLBACK_IN_PROGRESS,
        }
    ),
    _S.UPDATE_COMPLETE_CLEANUP_IN_PROGRESS: frozenset({_S.UPDATE_COMPLETE}),
    _S.UPDATE_FAILED: frozenset({_S.UPDATE_ROLLBACK_IN_PROGRESS}),
    _S.UPDATE_ROLLBACK_IN_PROGRESS: frozenset(
        {_S.UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS, _S.UPDATE_ROLLBACK_FAILED}
    ),
    _S.UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS: frozenset({_S.UPDATE_ROLLBACK_COMPLETE}),
    _S.IMPORT_IN_PROGRESS: frozenset({_S.IMPORT_COMPLETE, _S.IMPORT_ROLLBACK_IN_PROGRESS}),
    _S.IMPORT_ROLLBACK_IN_PROGRESS: frozenset(
        {_S.IMPORT_ROLLBACK_COMPLETE, _S.IMPORT_ROLLBACK_FAILED}
    ),
    _S.DELETE_IN_PROGRESS: frozenset({_S.DELETED, _S.DELETE_FAILED}),
    _S.DELETED: frozenset({_S.CREATE_IN_PROGRESS, _S.REVIEW_IN_PROGRESS}),
}

# Stable states accept updates and deletes; ROLLBACK_COMPLETE and failed
# deletes only accept another delete
for _status in _UPDATABLE_STATES:
    TRANSITIONS[_status] = frozenset(
        {_S.UPDATE_IN_PROGRESS, _S.IMPORT_IN_PROGRESS, _S.DELETE_IN_PROGRESS}
    )
for _status in (
    _S.ROLLBACK_COMPLETE,
    _S.ROLLBACK_FAILED,
    _S.UPDATE_ROLLBACK_FAILED,
    _S.IMPORT_ROLLBACK_FAILED,
    _S.DELETE_FAILED,
):
    TRANSITIONS[_status] = frozenset({_S.DELETE_IN_PROGRESS})

# Deleting is allowed from any existing state that is not already deleting
for _status in _S:
    if _status.exists and _status != _S.DELETE_IN_PROGRESS:
        TRANSITIONS[_status] = TRANSITIONS.get(_status, frozenset()) | {_S.DELETE_IN_PROGRESS}

del _status


def can_transition(current: StackStatus, target: StackStatus) -> bool:
    """Check whether a stack in ``current`` may move to ``target``."""
    return target in TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class StackIdentity:
    """Identity of one environment's stack. Stable, never regenerated."""

    project_name: str
    project_id: str
    environment: str

    def __post_init__(self) -> None:
        if not self.project_name or not self.project_id or not self.environment:
            raise ValueError("project_name, project_id and environment are required")

    @property
    def stack_name(self) -> str:
        name = f"{self.project_name}-{self.project_id}-{self.environment}"
        return name[:MAX_STACK_NAME_LENGTH]

    @property
    def parameter_path(self) -> str:
        """Secret store path prefix for this environment's variables."""
        return f"/{self.project_name}-{self.project_id}/{self.environment}/"

    def resource_tags(self) -> list[dict[str, str]]:
        """Tags applied to every resource created for this environment."""
        return [
            {"Key": "Project", "Value": self.project_name},
            {"Key": "ProjectId", "Value": self.project_id},
            {"Key": "Environment", "Value": self.environment},
            {"Key": "ManagedBy", "Value": "envstack"},
        ]


class StackClient:
    """Thin CloudFormation collaborator for one stack."""

    def __init__(self, client: Any, identity: StackIdentity) -> None:
        self._client = client
        self._identity = identity

    @property
    def identity(self) -> StackIdentity:
        return self._identity

    @property
    def stack_name(self) -> str:
        return self._identity.stack_name

    def describe(self) -> dict[str, Any]:
        """Describe the stack.

        Raises:
            NotFoundError: If no stack exists.
            RemoteError: On any other failure.
        """
        with aws_errors("DescribeStacks"):
            result = self._client.describe_stacks(StackName=self.stack_name)

        stacks = result.get("Stacks") or []
        if not stacks:
            raise NotFoundError(f"Stack '{self.stack_name}' does not exist")
        return stacks[0]

    def probe_status(self) -> str | None:
        """Read the raw status string, None when CloudFormation did not report one.

        Raises:
            NotFoundError: If no stack exists.
        """
        stack = self.describe()
        raw = stack.get("StackStatus")
        if raw == "DELETE_COMPLETE":
            return DELETED_STATUS
        return raw

    def status(self) -> StackStatus | None:
        """Single status probe. None when no stack exists.

        Remote failures are read as "no stack" here and only here.
        """
        try:
            raw = self.probe_status()
        except (NotFoundError, RemoteError) as e:
            logger.debug(
                "Stack status unavailable",
                extra={"stack_name": self.stack_name, "reason": str(e)},
            )
            return None

        if raw is None:
            return None
        status = StackStatus.parse(raw)
        return status if status.exists else None

    def create(
        self,
        parameters: list[dict[str, Any]],
        template_body: str,
    ) -> str:
        """Submit a create request. Returns the stack id."""
        logger.info("Submitting stack create", extra={"stack_name": self.stack_name})
        with aws_errors("CreateStack"):
            result = self._client.create_stack(
                StackName=self.stack_name,
                TemplateBody=template_body,
                Parameters=parameters,
                Capabilities=list(STACK_CAPABILITIES),
                Tags=self._identity.resource_tags(),
            )
        return result.get("StackId", "")

    def update(
        self,
        parameters: list[dict[str, Any]],
        template_body: str,
    ) -> bool:
        """Submit an update request.

        Returns:
            False when CloudFormation found nothing to change, so no
            operation was started.
        """
        logger.info("Submitting stack update", extra={"stack_name": self.stack_name})
        try:
            with aws_errors("UpdateStack"):
                self._client.update_stack(
                    StackName=self.stack_name,
                    TemplateBody=template_body,
                    Parameters=parameters,
                    Capabilities=list(STACK_CAPABILITIES),
                )
        except RemoteError as e:
            if e.code == "ValidationError" and NO_UPDATES_MARKER in str(e):
                logger.info("Stack is already up to date", extra={"stack_name": self.stack_name})
                return False
            raise
        return True

    def delete(self) -> None:
        logger.info("Submitting stack delete", extra={"stack_name": self.stack_name})
        with aws_errors("DeleteStack"):
            self._client.delete_stack(StackName=self.stack_name)

    def outputs(self, keys: list[str]) -> dict[str, str]:
        """Read the requested outputs that are currently published.

        Missing keys are simply absent from the result; outputs appear
        asynchronously after a terminal status.
        """
        stack = self.describe()
        wanted = set(keys)
        return {
            output["OutputKey"]: output["OutputValue"]
            for output in stack.get("Outputs") or []
            if output.get("OutputKey") in wanted
        }
