"""Runtime configuration with validation.

All values are validated at construction time. Invalid configurations raise
ConfigurationError before any AWS client is created.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .errors import ValidationError
from .waiter import (
    CERTIFICATE_WAIT,
    LONG_WAIT,
    OUTPUTS_WAIT,
    SECRETS_WAIT,
    SHORT_WAIT,
    TASK_WAIT,
    WaitPolicy,
)


class Environment(str, Enum):
    """Named cloud environments."""

    STAGE = "stage"
    PRODUCTION = "production"


class ConfigurationError(ValidationError):
    """Raised when configuration validation fails."""

    pass


# Default locations relative to the project root
DEFAULT_PROJECT_FILE = "envstack.yaml"
DEFAULT_TEMPLATE_PATH = ".cloudformation/infrastructure.yml"

# Wait budget bounds
MIN_STACK_WAIT_INTERVAL_SECONDS = 5
MAX_STACK_WAIT_INTERVAL_SECONDS = 300
MAX_STACK_WAIT_TRIES = 240

# Migration task defaults
DEFAULT_MIGRATION_COMMAND: tuple[str, ...] = ("php", "artisan", "migrate", "--force")
DEFAULT_MIGRATION_CONTAINER = "application"


@dataclass(frozen=True)
class Config:
    """Configuration for one command invocation against one environment."""

    environment: Environment
    project_root: Path = field(default_factory=Path.cwd)
    aws_profile: str | None = None

    # Paths, resolved against project_root when relative
    project_file: Path = field(default_factory=lambda: Path(DEFAULT_PROJECT_FILE))
    template_path: Path = field(default_factory=lambda: Path(DEFAULT_TEMPLATE_PATH))

    # Wait policies
    stack_wait: WaitPolicy = LONG_WAIT
    propagation_wait: WaitPolicy = SHORT_WAIT
    certificate_wait: WaitPolicy = CERTIFICATE_WAIT
    outputs_wait: WaitPolicy = OUTPUTS_WAIT
    secrets_wait: WaitPolicy = SECRETS_WAIT
    task_wait: WaitPolicy = TASK_WAIT

    # Migration task
    migration_command: tuple[str, ...] = DEFAULT_MIGRATION_COMMAND
    migration_container: str = DEFAULT_MIGRATION_CONTAINER

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not isinstance(self.environment, Environment):
            errors.append(f"environment must be one of {[e.value for e in Environment]}")

        if not self.project_root.is_dir():
            errors.append(f"Project root does not exist: {self.project_root}")

        if not (
            MIN_STACK_WAIT_INTERVAL_SECONDS
            <= self.stack_wait.interval_seconds
            <= MAX_STACK_WAIT_INTERVAL_SECONDS
        ):
            errors.append(
                f"ENVSTACK_STACK_WAIT_INTERVAL must be between {MIN_STACK_WAIT_INTERVAL_SECONDS} "
                f"and {MAX_STACK_WAIT_INTERVAL_SECONDS} seconds"
            )

        if not 1 <= self.stack_wait.max_tries <= MAX_STACK_WAIT_TRIES:
            errors.append(f"ENVSTACK_STACK_WAIT_TRIES must be between 1 and {MAX_STACK_WAIT_TRIES}")

        if not self.migration_command:
            errors.append("ENVSTACK_MIGRATION_COMMAND cannot be empty")

        if not self.migration_container:
            errors.append("ENVSTACK_MIGRATION_CONTAINER cannot be empty")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def project_file_path(self) -> Path:
        return self._resolve(self.project_file)

    @property
    def template_file_path(self) -> Path:
        return self._resolve(self.template_path)

    def _resolve(self, path: Path) -> Path:
        return path if path.is_absolute() else self.project_root / path

    @classmethod
    def from_env(
        cls,
        environment: str | None = None,
        project_root: Path | None = None,
    ) -> Config:
        """Load configuration from environment variables.

        Explicit arguments take precedence over the environment.

        Environment Variables:
            ENVSTACK_ENVIRONMENT: stage or production
            ENVSTACK_PROJECT_ROOT: Project directory (default: current directory)
            ENVSTACK_PROJECT_FILE: Project file (default: envstack.yaml)
            ENVSTACK_TEMPLATE_PATH: Template (default: .cloudformation/infrastructure.yml)
            AWS_PROFILE: Named AWS credentials profile
            ENVSTACK_STACK_WAIT_TRIES: Stack wait try budget (default: 60)
            ENVSTACK_STACK_WAIT_INTERVAL: Seconds between stack polls (default: 60)
            ENVSTACK_SECRETS_WAIT_TRIES: Secret listing try budget, 0 for unbounded (default: 60)
            ENVSTACK_MIGRATION_COMMAND: Migration command line
                (default: php artisan migrate --force)
            ENVSTACK_MIGRATION_CONTAINER: Container receiving the command (default: application)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_environment(value: str | None) -> Environment:
            if not value:
                raise ConfigurationError("ENVSTACK_ENVIRONMENT is required")
            try:
                return Environment(value)
            except ValueError as e:
                valid = [env.value for env in Environment]
                raise ConfigurationError(
                    f"ENVSTACK_ENVIRONMENT must be one of {valid}: {value}"
                ) from e

        root = project_root or Path(os.environ.get("ENVSTACK_PROJECT_ROOT", "."))

        migration_command = os.environ.get("ENVSTACK_MIGRATION_COMMAND")

        try:
            secrets_wait = WaitPolicy(
                max_tries=get_int("ENVSTACK_SECRETS_WAIT_TRIES", SECRETS_WAIT.max_tries),
                interval_seconds=SECRETS_WAIT.interval_seconds,
            )
            stack_wait = WaitPolicy(
                max_tries=get_int("ENVSTACK_STACK_WAIT_TRIES", LONG_WAIT.max_tries),
                interval_seconds=get_int(
                    "ENVSTACK_STACK_WAIT_INTERVAL", int(LONG_WAIT.interval_seconds)
                ),
            )
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        return cls(
            environment=get_environment(environment or os.environ.get("ENVSTACK_ENVIRONMENT")),
            project_root=root.resolve(),
            aws_profile=os.environ.get("AWS_PROFILE") or None,
            project_file=Path(os.environ.get("ENVSTACK_PROJECT_FILE", DEFAULT_PROJECT_FILE)),
            template_path=Path(os.environ.get("ENVSTACK_TEMPLATE_PATH", DEFAULT_TEMPLATE_PATH)),
            stack_wait=stack_wait,
            secrets_wait=secrets_wait,
            migration_command=(
                tuple(shlex.split(migration_command))
                if migration_command is not None
                else DEFAULT_MIGRATION_COMMAND
            ),
            migration_container=os.environ.get(
                "ENVSTACK_MIGRATION_CONTAINER", DEFAULT_MIGRATION_CONTAINER
            ),
        )
