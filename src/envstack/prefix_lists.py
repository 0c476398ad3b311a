"""Managed prefix list (network allow-list) access.

A managed prefix list is a versioned set of CIDR entries shared by every
stack that references it. Mutations must name the current version, so:

1. The version is re-read immediately before every mutation.
2. A stale-version rejection is a retryable conflict, retried a bounded
   number of times with a fresh version.
3. After a mutation, the list is polled until it leaves its in-progress state.

There is no locking across invocations; two operators mutating the same list
concurrently rely on the version check above.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import requests

from .aws import aws_errors
from .errors import ConflictError, EnvStackError, NotFoundError, RemoteError, ValidationError
from .waiter import SHORT_WAIT, TickFn, WaitPolicy, wait

logger = logging.getLogger(__name__)

# Service returning the caller's public address as plain text
CHECK_IP_URL = "https://checkip.amazonaws.com"
CHECK_IP_TIMEOUT_SECONDS = 10

# Special allow-list targets
TARGET_ME = "me"
TARGET_PUBLIC = "public"

PUBLIC_CIDR = "0.0.0.0/0"
PRIVATE_ACCESS_DESCRIPTION = "Private Access"
PUBLIC_ACCESS_DESCRIPTION = "Public Access"

# Error codes returned when CurrentVersion is stale
STALE_VERSION_ERROR_CODES: frozenset[str] = frozenset({
    "PrefixListVersionMismatch",
    "IncorrectState",
})
MAX_VERSION_CONFLICT_RETRIES = 3

MODIFY_COMPLETE_STATE = "modify-complete"


@dataclass(frozen=True)
class PrefixListEntry:
    """One CIDR entry of a managed prefix list."""

    cidr: str
    description: str = ""


@dataclass(frozen=True)
class PrefixListGrant:
    """Result of an allow call. ``added`` is False when the entry was already present."""

    entry: PrefixListEntry
    added: bool


def lookup_public_ip() -> str:
    """Ask checkip.amazonaws.com for this machine's public address.

    Raises:
        RemoteError: If the lookup fails.
    """
    try:
        response = requests.get(CHECK_IP_URL, timeout=CHECK_IP_TIMEOUT_SECONDS)
        response.raise_for_status()
    except requests.RequestException as e:
        raise RemoteError(f"Failed to determine public IP address: {e}", "CheckIp") from e
    return response.text.strip()


def entry_for_target(
    target: str,
    ip_lookup: Callable[[], str] = lookup_public_ip,
) -> PrefixListEntry:
    """Resolve an allow-list target to a CIDR entry.

    Args:
        target: "me" for the operator's public address, "public" for
            0.0.0.0/0, or a literal IPv4 address.
        ip_lookup: Public address lookup, injectable for tests.
    """
    if target == TARGET_ME:
        return PrefixListEntry(f"{ip_lookup()}/32", PRIVATE_ACCESS_DESCRIPTION)
    if target == TARGET_PUBLIC:
        return PrefixListEntry(PUBLIC_CIDR, PUBLIC_ACCESS_DESCRIPTION)

    octets = target.split(".")
    if len(octets) != 4 or not all(o.isdigit() and 0 <= int(o) <= 255 for o in octets):
        raise ValidationError(f"Invalid IP address '{target}'")
    return PrefixListEntry(f"{target}/32", PRIVATE_ACCESS_DESCRIPTION)


class PrefixListClient:
    """EC2 managed prefix list collaborator."""

    def __init__(
        self,
        client: Any,
        propagation_wait: WaitPolicy = SHORT_WAIT,
        ip_lookup: Callable[[], str] = lookup_public_ip,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._propagation_wait = propagation_wait
        self._ip_lookup = ip_lookup
        self._sleep = sleep

    def describe(self, prefix_list_id: str) -> dict[str, Any]:
        """Describe a prefix list (state and version).

        Raises:
            NotFoundError: If the list does not exist.
        """
        with aws_errors("DescribeManagedPrefixLists"):
            result = self._client.describe_managed_prefix_lists(PrefixListIds=[prefix_list_id])

        prefix_lists = result.get("PrefixLists") or []
        if not prefix_lists:
            raise NotFoundError(f"Prefix list '{prefix_list_id}' does not exist")
        return prefix_lists[0]

    def current_version(self, prefix_list_id: str) -> int:
        return int(self.describe(prefix_list_id)["Version"])

    def entries(self, prefix_list_id: str) -> list[PrefixListEntry]:
        with aws_errors("GetManagedPrefixListEntries"):
            paginator = self._client.get_paginator("get_managed_prefix_list_entries")
            entries = [
                PrefixListEntry(entry["Cidr"], entry.get("Description", ""))
                for page in paginator.paginate(PrefixListId=prefix_list_id)
                for entry in page.get("Entries", [])
            ]
        return entries

    def allow(
        self,
        prefix_list_id: str,
        target: str,
        on_tick: TickFn | None = None,
    ) -> PrefixListGrant:
        """Add an entry for a target and wait for the list to settle.

        Adding a CIDR that is already present is a no-op.

        Returns:
            The entry that is now present and whether this call added it.
        """
        entry = entry_for_target(target, self._ip_lookup)

        if any(existing.cidr == entry.cidr for existing in self.entries(prefix_list_id)):
            logger.info(
                "Prefix list entry already present",
                extra={"prefix_list_id": prefix_list_id, "cidr": entry.cidr},
            )
            return PrefixListGrant(entry, added=False)

        self._modify(
            prefix_list_id,
            AddEntries=[{"Cidr": entry.cidr, "Description": entry.description}],
        )
        self.wait_for_update(prefix_list_id, on_tick)
        logger.info(
            "Prefix list entry added",
            extra={"prefix_list_id": prefix_list_id, "cidr": entry.cidr},
        )
        return PrefixListGrant(entry, added=True)

    def revoke(
        self,
        prefix_list_id: str,
        cidr: str,
        on_tick: TickFn | None = None,
    ) -> None:
        """Remove an entry by CIDR and wait for the list to settle.

        Removing an absent CIDR is a no-op.
        """
        if not any(existing.cidr == cidr for existing in self.entries(prefix_list_id)):
            logger.info(
                "Prefix list entry already absent",
                extra={"prefix_list_id": prefix_list_id, "cidr": cidr},
            )
            return

        self._modify(prefix_list_id, RemoveEntries=[{"Cidr": cidr}])
        self.wait_for_update(prefix_list_id, on_tick)
        logger.info(
            "Prefix list entry removed",
            extra={"prefix_list_id": prefix_list_id, "cidr": cidr},
        )

    def _modify(self, prefix_list_id: str, **changes: Any) -> None:
        for attempt in range(1, MAX_VERSION_CONFLICT_RETRIES + 1):
            version = self.current_version(prefix_list_id)
            try:
                with aws_errors("ModifyManagedPrefixList"):
                    self._client.modify_managed_prefix_list(
                        PrefixListId=prefix_list_id,
                        CurrentVersion=version,
                        **changes,
                    )
                return
            except RemoteError as e:
                if e.code not in STALE_VERSION_ERROR_CODES:
                    raise
                logger.warning(
                    "Prefix list version changed before modification, retrying",
                    extra={
                        "prefix_list_id": prefix_list_id,
                        "version": version,
                        "attempt": attempt,
                    },
                )
                # Let an in-flight modification by someone else settle
                self.wait_for_update(prefix_list_id)

        raise ConflictError(
            f"Prefix list '{prefix_list_id}' kept changing; gave up after "
            f"{MAX_VERSION_CONFLICT_RETRIES} attempts"
        )

    def wait_for_update(self, prefix_list_id: str, on_tick: TickFn | None = None) -> None:
        """Wait for a prefix list to leave its in-progress state.

        Raises:
            WaitTimeoutError: If the list is still changing after the budget.
            RemoteError: If the modification ended in a failed state.
        """

        def poll() -> str | None:
            return self.describe(prefix_list_id).get("State")

        result = wait(
            poll,
            self._propagation_wait,
            MODIFY_COMPLETE_STATE,
            description=f"prefix list {prefix_list_id}",
            on_tick=on_tick,
            sleep=self._sleep,
        )
        # A list that was never modified reports create-complete
        if not result.success and not result.status.endswith("-complete"):
            raise RemoteError(
                f"Prefix list '{prefix_list_id}' ended in state '{result.status}'",
                "ModifyManagedPrefixList",
            )

    @contextmanager
    def temporary_access(
        self,
        prefix_list_id: str,
        target: str = TARGET_ME,
        on_tick: TickFn | None = None,
    ) -> Iterator[PrefixListEntry]:
        """Grant access for the duration of a block.

        The entry is revoked afterwards only when this grant added it; an entry
        that was already on the shared list stays. When the block raises, a
        revoke failure is logged and the original error propagates.
        """
        grant = self.allow(prefix_list_id, target, on_tick)
        entry = grant.entry
        try:
            yield entry
        except BaseException:
            if grant.added:
                try:
                    self.revoke(prefix_list_id, entry.cidr, on_tick)
                except EnvStackError:
                    logger.exception(
                        "Failed to revoke temporary prefix list access",
                        extra={"prefix_list_id": prefix_list_id, "cidr": entry.cidr},
                    )
            raise
        if grant.added:
            self.revoke(prefix_list_id, entry.cidr, on_tick)
