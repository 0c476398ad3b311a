"""Parameter reconciliation for stack create and update requests.

The infrastructure engine rejects requests that omit a known parameter key, so
every request carries one directive per key:

- CREATE: every key has an explicit value. A missing value is a caller
  contract violation (ValidationError).
- UPDATE: a key gets an explicit value when the caller supplied a non-null
  one, otherwise it keeps its previous value. Identity keys, immutable
  database facts and running image references always keep their previous
  value on update; they are never mutated through this path.

Secrets are not parameters. They are rendered into the template body at a
literal marker line (see render_template).
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import ValidationError


class ReconcileMode(str, Enum):
    """Request kind being reconciled."""

    CREATE = "create"
    UPDATE = "update"


# Every parameter the infrastructure template declares, in submission order
STACK_PARAMETER_KEYS: tuple[str, ...] = (
    "Enabled",
    "ProjectName",
    "ProjectId",
    "EnvironmentName",
    "DomainName",
    "RootDomainName",
    "HostedZoneId",
    "CertificateArn",
    "DBStorageSize",
    "DBInstanceClass",
    "DBAvailabilityZone",
    "DBVersion",
    "DBMasterUsername",
    "DBMasterPassword",
    "CacheNodeType",
    "ApplicationImage",
    "WebserverImage",
    "TaskDefinitionCpu",
    "TaskDefinitionMemory",
)

# Keys never changed through an update
ALWAYS_PREVIOUS_KEYS: frozenset[str] = frozenset({
    # Identity
    "ProjectName",
    "ProjectId",
    "EnvironmentName",
    # Immutable database facts
    "DBAvailabilityZone",
    "DBVersion",
    "DBMasterUsername",
    "DBMasterPassword",
    # Currently running images, replaced by deployments rather than updates
    "ApplicationImage",
    "WebserverImage",
})

# Database engine version pinned at create time
DB_ENGINE_VERSION = "8.0.25"

# Literal marker line in the template that receives the secrets block
SECRETS_MARKER = "#ENVSTACK_SECRETS#"
_SECRETS_MARKER_LINE = re.compile(
    r"^(?P<indent>[ \t]*)Secrets:[ \t]*"
    + re.escape(SECRETS_MARKER)
    + r"[ \t]*(?P<eol>\r?\n|\Z)",
    re.MULTILINE,
)


@dataclass(frozen=True)
class ParameterDirective:
    """One entry of a create/update parameter list.

    Exactly one of value / use_previous holds.
    """

    key: str
    value: str | None = None
    use_previous: bool = False

    def __post_init__(self) -> None:
        if self.use_previous == (self.value is not None):
            raise ValueError(
                f"Parameter '{self.key}' must have either a value or use_previous, not both"
            )

    def to_api(self) -> dict[str, Any]:
        """Convert to the CloudFormation Parameters entry format."""
        if self.use_previous:
            return {"ParameterKey": self.key, "UsePreviousValue": True}
        return {"ParameterKey": self.key, "ParameterValue": self.value}


def format_parameter_value(value: Any) -> str:
    """Render a Python value the way the template expects it."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def reconcile_parameters(
    known_keys: Sequence[str],
    values: Mapping[str, Any],
    mode: ReconcileMode,
    always_previous: frozenset[str] = frozenset(),
) -> list[ParameterDirective]:
    """Build the complete directive list for one request.

    Args:
        known_keys: Every key the template declares, in submission order.
        values: Caller-supplied values. None means "not supplied".
        mode: CREATE or UPDATE.
        always_previous: Keys forced to use-previous in UPDATE mode.

    Returns:
        One directive per known key, in known_keys order.

    Raises:
        ValidationError: On unknown keys, or missing values in CREATE mode.
    """
    unknown = sorted(set(values) - set(known_keys))
    if unknown:
        raise ValidationError(f"Unknown stack parameters: {', '.join(unknown)}")

    if mode == ReconcileMode.CREATE:
        missing = [key for key in known_keys if values.get(key) is None]
        if missing:
            raise ValidationError(
                f"Missing required stack parameters: {', '.join(missing)}"
            )
        return [ParameterDirective(key, format_parameter_value(values[key])) for key in known_keys]

    directives: list[ParameterDirective] = []
    for key in known_keys:
        value = values.get(key)
        if key in always_previous or value is None:
            directives.append(ParameterDirective(key, use_previous=True))
        else:
            directives.append(ParameterDirective(key, format_parameter_value(value)))
    return directives


def create_parameters(values: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Parameter list for a stack create request."""
    directives = reconcile_parameters(STACK_PARAMETER_KEYS, values, ReconcileMode.CREATE)
    return [d.to_api() for d in directives]


def update_parameters(values: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Parameter list for a stack update request."""
    directives = reconcile_parameters(
        STACK_PARAMETER_KEYS,
        values,
        ReconcileMode.UPDATE,
        always_previous=ALWAYS_PREVIOUS_KEYS,
    )
    return [d.to_api() for d in directives]


def render_secrets_block(secrets: Mapping[str, str], indent: str) -> str:
    """Render container secret references as a YAML block.

    Args:
        secrets: Secret name to ARN mapping.
        indent: Indentation of the ``Secrets:`` key.

    Returns:
        The block without a trailing newline, or "" when there are no secrets.
    """
    if not secrets:
        return ""

    lines = [f"{indent}Secrets:"]
    for name in sorted(secrets):
        lines.append(f"{indent}  - Name: {name}")
        lines.append(f"{indent}    ValueFrom: {secrets[name]}")
    return "\n".join(lines)


def render_template(contents: str, secrets: Mapping[str, str] | None = None) -> str:
    """Substitute the secrets marker line of a template body.

    Every marker line is replaced. With no secrets the line is removed.

    Raises:
        ValidationError: If secrets are given but the template has no marker.
    """
    secrets = secrets or {}

    if secrets and not _SECRETS_MARKER_LINE.search(contents):
        raise ValidationError(
            f"Template has no 'Secrets: {SECRETS_MARKER}' line to receive "
            f"{len(secrets)} secret reference(s)"
        )

    def _replace(match: re.Match[str]) -> str:
        if not secrets:
            return ""
        return render_secrets_block(secrets, match.group("indent")) + match.group("eol")

    return _SECRETS_MARKER_LINE.sub(_replace, contents)
