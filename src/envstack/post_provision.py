"""Steps that run once after a stack was created successfully.

The steps form an explicit ordered list, each gated on the previous one:

1. grant_database_access    allow the operator's address on the DB admin list
2. create_schema            create the application schema
3. revoke_database_access   remove the temporary grant
4. store_variables          write application variables, wait until listed
5. update_stack             enable the stack with the complete secrets block
6. refresh_outputs          wait until outputs reflect the update
7. run_migrations           run the migration task and wait for it
8. grant_application_access allow the operator's address on the app list

The grant from step 1 is registered on an ExitStack, so it is revoked when
step 3 runs and also when any step before it fails.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum

from .config import Config, Environment
from .database import create_schema, generate_app_key, schema_name
from .errors import ConsistencyError
from .orchestrator import (
    REFRESHED_OUTPUT_KEYS,
    VOLATILE_OUTPUT_KEY,
    StackOrchestrator,
    require_success,
)
from .prefix_lists import TARGET_ME, PrefixListClient
from .secrets_store import SsmParameterStore
from .stacks import StackStatus
from .tasks import EcsTaskRunner, TaskNetwork
from .waiter import TickFn

logger = logging.getLogger(__name__)


# Names written by application_variables, in write order
APPLICATION_VARIABLE_NAMES: tuple[str, ...] = (
    "APP_ENV",
    "APP_KEY",
    "CACHE_DRIVER",
    "DB_CONNECTION",
    "DB_HOST",
    "DB_PORT",
    "DB_DATABASE",
    "LOG_CHANNEL",
    "QUEUE_CONNECTION",
    "MAIL_DRIVER",
    "AWS_DEFAULT_REGION",
    "REDIS_HOST",
    "REDIS_PORT",
    "SQS_QUEUE",
    "AWS_BUCKET",
)


class ProvisionStep(str, Enum):
    """Post-provision steps in execution order."""

    GRANT_DATABASE_ACCESS = "grant_database_access"
    CREATE_SCHEMA = "create_schema"
    REVOKE_DATABASE_ACCESS = "revoke_database_access"
    STORE_VARIABLES = "store_variables"
    UPDATE_STACK = "update_stack"
    REFRESH_OUTPUTS = "refresh_outputs"
    RUN_MIGRATIONS = "run_migrations"
    GRANT_APPLICATION_ACCESS = "grant_application_access"


def application_variables(
    environment: str,
    region: str,
    schema: str,
    outputs: Mapping[str, str],
    app_key: str,
) -> dict[str, str]:
    """Variables the application reads at runtime."""
    return {
        "APP_ENV": environment,
        "APP_KEY": app_key,
        "CACHE_DRIVER": "redis",
        "DB_CONNECTION": "mysql",
        "DB_HOST": outputs["DBHost"],
        "DB_PORT": outputs["DBPort"],
        "DB_DATABASE": schema,
        "LOG_CHANNEL": "errorlog",
        "QUEUE_CONNECTION": "sqs",
        "MAIL_DRIVER": "ses" if environment == Environment.PRODUCTION.value else "smtp",
        "AWS_DEFAULT_REGION": region,
        "REDIS_HOST": outputs["CacheEndpointAddress"],
        "REDIS_PORT": outputs["CacheEndpointPort"],
        "SQS_QUEUE": outputs["QueueUrl"],
        "AWS_BUCKET": outputs["BucketName"],
    }


@dataclass(frozen=True)
class DatabaseCredentials:
    username: str
    password: str = field(repr=False)


@dataclass
class ProvisionReport:
    """What the coordinator did, in order."""

    completed: list[ProvisionStep] = field(default_factory=list)
    schema: str | None = None
    variables: list[str] = field(default_factory=list)
    task_arn: str | None = None
    application_cidr: str | None = None

    @property
    def finished(self) -> bool:
        return len(self.completed) == len(ProvisionStep)


@dataclass
class _RunState:
    outputs: Mapping[str, str]
    credentials: DatabaseCredentials
    region: str
    on_tick: TickFn | None
    cleanup: ExitStack
    secrets: dict[str, str] = field(default_factory=dict)
    refreshed: dict[str, str] = field(default_factory=dict)


class PostProvisionCoordinator:
    """Runs the post-create steps for one environment."""

    def __init__(
        self,
        orchestrator: StackOrchestrator,
        prefix_lists: PrefixListClient,
        parameters: SsmParameterStore,
        tasks: EcsTaskRunner,
        config: Config,
        schema_creator: Callable[..., None] = create_schema,
        app_key_factory: Callable[[], str] = generate_app_key,
    ) -> None:
        self._orchestrator = orchestrator
        self._prefix_lists = prefix_lists
        self._parameters = parameters
        self._tasks = tasks
        self._config = config
        self._schema_creator = schema_creator
        self._app_key_factory = app_key_factory
        self._report = ProvisionReport()

        self._steps: list[tuple[ProvisionStep, Callable[[_RunState], None]]] = [
            (ProvisionStep.GRANT_DATABASE_ACCESS, self._grant_database_access),
            (ProvisionStep.CREATE_SCHEMA, self._create_schema),
            (ProvisionStep.REVOKE_DATABASE_ACCESS, self._revoke_database_access),
            (ProvisionStep.STORE_VARIABLES, self._store_variables),
            (ProvisionStep.UPDATE_STACK, self._update_stack),
            (ProvisionStep.REFRESH_OUTPUTS, self._refresh_outputs),
            (ProvisionStep.RUN_MIGRATIONS, self._run_migrations),
            (ProvisionStep.GRANT_APPLICATION_ACCESS, self._grant_application_access),
        ]

    def run(
        self,
        outputs: Mapping[str, str],
        credentials: DatabaseCredentials,
        region: str,
        on_tick: TickFn | None = None,
    ) -> ProvisionReport:
        """Run every step in order.

        Args:
            outputs: Stack outputs read after create (PROVISION_OUTPUT_KEYS).
            credentials: Master credentials submitted with the create request.
            region: Region the environment runs in.
            on_tick: Progress callback forwarded to every wait.

        Returns:
            Report of the completed run.

        Raises:
            EnvStackError: From the first failing step. Later steps do not run;
                a pending database grant is still revoked.
        """
        self._report = ProvisionReport()

        with ExitStack() as cleanup:
            state = _RunState(
                outputs=outputs,
                credentials=credentials,
                region=region,
                on_tick=on_tick,
                cleanup=cleanup,
            )
            for step, action in self._steps:
                logger.info("Running post-provision step", extra={"step": step.value})
                action(state)
                self._report.completed.append(step)

        return self._report

    def _grant_database_access(self, state: _RunState) -> None:
        state.cleanup.enter_context(
            self._prefix_lists.temporary_access(
                state.outputs["DBAdminAccessPrefixListId"], TARGET_ME, state.on_tick
            )
        )

    def _create_schema(self, state: _RunState) -> None:
        identity = self._orchestrator.identity
        name = schema_name(identity.project_name, identity.environment)
        self._schema_creator(
            state.outputs["DBHost"],
            state.outputs["DBPort"],
            state.credentials.username,
            state.credentials.password,
            name,
        )
        self._report.schema = name

    def _revoke_database_access(self, state: _RunState) -> None:
        state.cleanup.close()

    def _store_variables(self, state: _RunState) -> None:
        variables = application_variables(
            self._orchestrator.identity.environment,
            state.region,
            self._report.schema or "",
            state.outputs,
            self._app_key_factory(),
        )
        self._parameters.put_all(variables)
        state.secrets = self._parameters.wait_for_secrets(
            variables, self._config.secrets_wait, state.on_tick
        )
        self._report.variables = sorted(variables)

    def _update_stack(self, state: _RunState) -> None:
        if self._orchestrator.update(True, state.secrets):
            result = self._orchestrator.wait(StackStatus.UPDATE_COMPLETE, state.on_tick)
            require_success(result, "update")

    def _refresh_outputs(self, state: _RunState) -> None:
        previous = state.outputs.get(VOLATILE_OUTPUT_KEY)
        if previous is None:
            raise ConsistencyError(f"Stack output '{VOLATILE_OUTPUT_KEY}' was never published")
        state.refreshed = self._orchestrator.wait_for_outputs(
            REFRESHED_OUTPUT_KEYS,
            previous={VOLATILE_OUTPUT_KEY: previous},
            on_tick=state.on_tick,
        )

    def _run_migrations(self, state: _RunState) -> None:
        cluster = state.refreshed["ContainerClusterArn"]
        network = TaskNetwork(
            subnets=(state.outputs["Subnet1Id"],),
            security_groups=(
                state.outputs["DBSecurityGroupId"],
                state.outputs["CacheSecurityGroupId"],
                state.outputs["ContainersSecurityGroupId"],
            ),
        )
        task_arn = self._tasks.run_task(
            cluster,
            state.refreshed[VOLATILE_OUTPUT_KEY],
            network,
            self._config.migration_container,
            self._config.migration_command,
        )
        self._report.task_arn = task_arn
        self._tasks.wait_for_task(cluster, task_arn, self._config.task_wait, state.on_tick)

    def _grant_application_access(self, state: _RunState) -> None:
        grant = self._prefix_lists.allow(
            state.outputs["AppAccessPrefixListId"], TARGET_ME, state.on_tick
        )
        self._report.application_cidr = grant.entry.cidr

    @property
    def report(self) -> ProvisionReport:
        """Report of the latest run, partial when it failed."""
        return self._report

