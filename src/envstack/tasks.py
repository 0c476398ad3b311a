"""One-shot ECS task execution (database migrations)."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from .aws import aws_errors
from .errors import RemoteError
from .waiter import TASK_WAIT, TickFn, WaitPolicy, wait

logger = logging.getLogger(__name__)

LAUNCH_TYPE = "FARGATE"
STOPPED = "STOPPED"

# Synthetic terminal statuses derived from container exit codes
TASK_SUCCEEDED = "SUCCEEDED"
TASK_FAILED = "FAILED"


@dataclass(frozen=True)
class TaskNetwork:
    """VPC placement for a task."""

    subnets: tuple[str, ...]
    security_groups: tuple[str, ...]
    assign_public_ip: bool = True

    def to_api(self) -> dict[str, Any]:
        return {
            "awsvpcConfiguration": {
                "subnets": list(self.subnets),
                "securityGroups": list(self.security_groups),
                "assignPublicIp": "ENABLED" if self.assign_public_ip else "DISABLED",
            }
        }


class EcsTaskRunner:
    """Starts a task and observes its completion."""

    def __init__(self, client: Any, sleep: Callable[[float], None] = time.sleep) -> None:
        self._client = client
        self._sleep = sleep

    def run_task(
        self,
        cluster: str,
        task_definition: str,
        network: TaskNetwork,
        container: str,
        command: Sequence[str],
    ) -> str:
        """Start one task overriding a container's command. Returns the task ARN."""
        with aws_errors("RunTask"):
            result = self._client.run_task(
                cluster=cluster,
                taskDefinition=task_definition,
                launchType=LAUNCH_TYPE,
                count=1,
                networkConfiguration=network.to_api(),
                overrides={
                    "containerOverrides": [{"name": container, "command": list(command)}]
                },
            )

        tasks = result.get("tasks") or []
        if not tasks:
            reasons = ", ".join(
                f.get("reason", "unknown") for f in result.get("failures") or []
            )
            raise RemoteError(f"Task did not start: {reasons or 'no task returned'}", "RunTask")

        task_arn = tasks[0]["taskArn"]
        logger.info("Started task", extra={"cluster": cluster, "task_arn": task_arn})
        return task_arn

    def task_outcome(self, cluster: str, task_arn: str) -> str | None:
        """Single probe: None while running, else SUCCEEDED or FAILED."""
        with aws_errors("DescribeTasks"):
            result = self._client.describe_tasks(cluster=cluster, tasks=[task_arn])

        tasks = result.get("tasks") or []
        if not tasks or tasks[0].get("lastStatus") != STOPPED:
            return None

        containers = tasks[0].get("containers") or []
        if containers and all(c.get("exitCode") == 0 for c in containers):
            return TASK_SUCCEEDED
        return TASK_FAILED

    def wait_for_task(
        self,
        cluster: str,
        task_arn: str,
        policy: WaitPolicy = TASK_WAIT,
        on_tick: TickFn | None = None,
    ) -> None:
        """Wait for a task to stop.

        Raises:
            WaitTimeoutError: If the task is still running after the budget.
            RemoteError: If any container exited non-zero.
        """
        result = wait(
            lambda: self.task_outcome(cluster, task_arn),
            policy,
            TASK_SUCCEEDED,
            description=f"task {task_arn}",
            on_tick=on_tick,
            sleep=self._sleep,
        )
        if not result.success:
            raise RemoteError(f"Task {task_arn} finished with a non-zero exit code", "RunTask")
