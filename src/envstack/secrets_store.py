"""Application variables in the SSM parameter store.

Variables live under ``/<project>-<id>/<environment>/<NAME>`` as SecureString
parameters. Writes become visible to listing asynchronously, so a stack update
that references them must first wait until every required name is listed
(wait_for_secrets). Referencing a not-yet-listed ARN breaks the update.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from typing import Any

from .aws import aws_errors
from .errors import ValidationError
from .waiter import SECRETS_WAIT, TickFn, WaitPolicy, wait

logger = logging.getLogger(__name__)

PARAMETER_TYPE = "SecureString"
_ALL_LISTED = "ALL_LISTED"


class SsmParameterStore:
    """Secret store for one environment's variables."""

    def __init__(
        self,
        client: Any,
        path: str,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not path.startswith("/") or not path.endswith("/"):
            raise ValueError(f"Parameter path must start and end with '/': {path}")
        self._client = client
        self._path = path
        self._sleep = sleep

    @property
    def path(self) -> str:
        return self._path

    def _full_name(self, name: str) -> str:
        if not name or "/" in name:
            raise ValidationError(f"Invalid variable name '{name}'")
        return self._path + name

    def put(self, name: str, value: str) -> None:
        """Create or overwrite one variable."""
        with aws_errors("PutParameter"):
            self._client.put_parameter(
                Name=self._full_name(name),
                Value=value,
                Type=PARAMETER_TYPE,
                Overwrite=True,
            )
        logger.info("Stored variable", extra={"variable": name})

    def put_all(self, values: dict[str, str]) -> None:
        for name, value in values.items():
            self.put(name, value)

    def delete(self, name: str) -> None:
        with aws_errors("DeleteParameter"):
            self._client.delete_parameter(Name=self._full_name(name))
        logger.info("Deleted variable", extra={"variable": name})

    def _list(self) -> list[dict[str, Any]]:
        with aws_errors("GetParametersByPath"):
            paginator = self._client.get_paginator("get_parameters_by_path")
            return [
                parameter
                for page in paginator.paginate(
                    Path=self._path, Recursive=True, WithDecryption=False
                )
                for parameter in page.get("Parameters", [])
            ]

    def list_names(self) -> list[str]:
        """Names of the variables currently listed, without the path prefix."""
        return sorted(p["Name"].removeprefix(self._path) for p in self._list())

    def list_arns(self) -> dict[str, str]:
        """Currently listed variables as name to ARN."""
        return {p["Name"].removeprefix(self._path): p["ARN"] for p in self._list()}

    def wait_for_secrets(
        self,
        required: Iterable[str],
        policy: WaitPolicy = SECRETS_WAIT,
        on_tick: TickFn | None = None,
    ) -> dict[str, str]:
        """List repeatedly until every required name is present.

        Args:
            required: Variable names that must be listed.
            policy: Try budget; max_tries 0 waits without limit.
            on_tick: Progress callback.

        Returns:
            The complete name to ARN mapping from the final listing.

        Raises:
            WaitTimeoutError: If names are still missing after the budget.
        """
        required_names = set(required)
        listed: dict[str, str] = {}

        def poll() -> str | None:
            nonlocal listed
            listed = self.list_arns()
            missing = required_names - set(listed)
            if missing:
                logger.debug(
                    "Variables not listed yet",
                    extra={"missing": sorted(missing)},
                )
                return None
            return _ALL_LISTED

        wait(
            poll,
            policy,
            _ALL_LISTED,
            description=f"variables under {self._path}",
            on_tick=on_tick,
            sleep=self._sleep,
        )
        return listed
