"""TLS certificate issuance through DNS validation.

The workflow composes three collaborators and two waits:

1. Request a certificate for the domain (DNS validation).
2. Poll until ACM publishes the validation record.
3. Upsert the record into the domain's hosted zone and wait for the
   change to propagate (short wait).
4. Wait for the certificate to leave PENDING_VALIDATION (long wait).

Requesting is not idempotent: re-running without reusing the returned ARN
creates a duplicate certificate. Pass ``existing_arn`` to resume.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .aws import aws_errors
from .errors import NotFoundError, RemoteError
from .models import root_domain_from
from .waiter import CERTIFICATE_WAIT, SHORT_WAIT, TickFn, WaitPolicy, wait

logger = logging.getLogger(__name__)

VALIDATION_METHOD_DNS = "DNS"

# ACM certificate statuses
PENDING_VALIDATION = "PENDING_VALIDATION"
ISSUED = "ISSUED"

# Route 53 change statuses
CHANGE_PENDING = "PENDING"
CHANGE_INSYNC = "INSYNC"

# Sentinel status while waiting for the validation record to be published
_RECORD_READY = "RECORD_READY"

HOSTED_ZONE_PREFIX = "/hostedzone/"
VALIDATION_RECORD_TTL = 300


@dataclass(frozen=True)
class DnsRecord:
    """A DNS record ACM asks us to publish."""

    name: str
    type: str
    value: str

    def to_change(self, action: str = "UPSERT") -> dict[str, Any]:
        return {
            "Action": action,
            "ResourceRecordSet": {
                "Name": self.name,
                "Type": self.type,
                "TTL": VALIDATION_RECORD_TTL,
                "ResourceRecords": [{"Value": self.value}],
            },
        }


@dataclass(frozen=True)
class Certificate:
    """Outcome of an issuance run."""

    arn: str
    domain: str
    status: str
    validation_record: DnsRecord | None = None

    @property
    def issued(self) -> bool:
        return self.status == ISSUED


class AcmClient:
    """ACM collaborator."""

    def __init__(self, client: Any, sleep: Callable[[float], None] = time.sleep) -> None:
        self._client = client
        self._sleep = sleep

    def request_certificate(self, domain: str, tags: list[dict[str, str]]) -> str:
        """Request a DNS-validated certificate. Returns its ARN."""
        logger.info("Requesting certificate", extra={"domain": domain})
        with aws_errors("RequestCertificate"):
            result = self._client.request_certificate(
                DomainName=domain,
                ValidationMethod=VALIDATION_METHOD_DNS,
                Tags=tags,
            )
        return result["CertificateArn"]

    def describe(self, arn: str) -> dict[str, Any]:
        with aws_errors("DescribeCertificate"):
            result = self._client.describe_certificate(CertificateArn=arn)
        return result["Certificate"]

    def status(self, arn: str) -> str:
        """Current certificate status (e.g. ISSUED, PENDING_VALIDATION)."""
        return self.describe(arn).get("Status", "UNKNOWN")

    def validation_record(
        self,
        arn: str,
        policy: WaitPolicy = SHORT_WAIT,
        on_tick: TickFn | None = None,
    ) -> DnsRecord:
        """Wait until ACM publishes the DNS validation record and return it."""
        found: list[DnsRecord] = []

        def poll() -> str | None:
            options = self.describe(arn).get("DomainValidationOptions") or []
            record = options[0].get("ResourceRecord") if options else None
            if not record:
                return None
            found.append(DnsRecord(record["Name"], record["Type"], record["Value"]))
            return _RECORD_READY

        wait(
            poll,
            policy,
            _RECORD_READY,
            description=f"validation record of {arn}",
            on_tick=on_tick,
            sleep=self._sleep,
        )
        return found[-1]

    def wait_for_validation(
        self,
        arn: str,
        policy: WaitPolicy = CERTIFICATE_WAIT,
        on_tick: TickFn | None = None,
    ) -> str:
        """Wait for the certificate to leave PENDING_VALIDATION.

        Returns:
            The terminal status.

        Raises:
            RemoteError: If validation ended in a status other than ISSUED.
        """
        result = wait(
            lambda: self.status(arn),
            policy,
            ISSUED,
            description=f"certificate {arn}",
            in_progress=lambda status: status == PENDING_VALIDATION,
            on_tick=on_tick,
            sleep=self._sleep,
        )
        if not result.success:
            raise RemoteError(
                f"Certificate {arn} validation ended with status '{result.status}'",
                "DescribeCertificate",
            )
        return result.status


class DnsClient:
    """Route 53 collaborator."""

    def __init__(self, client: Any, sleep: Callable[[float], None] = time.sleep) -> None:
        self._client = client
        self._sleep = sleep

    def find_hosted_zone_id(self, domain: str) -> str:
        """Find the hosted zone serving a domain's root domain.

        Raises:
            NotFoundError: If no zone matches.
        """
        zone_name = root_domain_from(domain) + "."

        with aws_errors("ListHostedZones"):
            paginator = self._client.get_paginator("list_hosted_zones")
            for page in paginator.paginate():
                for zone in page.get("HostedZones", []):
                    if zone.get("Name") == zone_name:
                        return zone["Id"].removeprefix(HOSTED_ZONE_PREFIX)

        raise NotFoundError(f"No hosted zone found for domain '{domain}'")

    def upsert_records(self, hosted_zone_id: str, records: list[DnsRecord]) -> str:
        """Upsert records into a zone. Returns the change id."""
        with aws_errors("ChangeResourceRecordSets"):
            result = self._client.change_resource_record_sets(
                HostedZoneId=hosted_zone_id,
                ChangeBatch={"Changes": [record.to_change() for record in records]},
            )
        return result["ChangeInfo"]["Id"]

    def wait_for_change(
        self,
        change_id: str,
        policy: WaitPolicy = SHORT_WAIT,
        on_tick: TickFn | None = None,
    ) -> None:
        def poll() -> str | None:
            with aws_errors("GetChange"):
                result = self._client.get_change(Id=change_id)
            return result["ChangeInfo"]["Status"]

        result = wait(
            poll,
            policy,
            CHANGE_INSYNC,
            description=f"DNS change {change_id}",
            in_progress=lambda status: status == CHANGE_PENDING,
            on_tick=on_tick,
            sleep=self._sleep,
        )
        if not result.success:
            raise RemoteError(
                f"DNS change {change_id} ended with status '{result.status}'",
                "GetChange",
            )


class CertificateWorkflow:
    """Request, validate through DNS and wait for one certificate."""

    def __init__(
        self,
        acm: AcmClient,
        dns: DnsClient,
        propagation_wait: WaitPolicy = SHORT_WAIT,
        certificate_wait: WaitPolicy = CERTIFICATE_WAIT,
    ) -> None:
        self._acm = acm
        self._dns = dns
        self._propagation_wait = propagation_wait
        self._certificate_wait = certificate_wait

    def issue(
        self,
        domain: str,
        hosted_zone_id: str,
        tags: list[dict[str, str]],
        existing_arn: str | None = None,
        on_tick: TickFn | None = None,
    ) -> Certificate:
        """Run the full issuance sequence.

        Args:
            domain: Fully qualified domain the certificate covers.
            hosted_zone_id: Zone that receives the validation record.
            tags: Resource tags for a new request.
            existing_arn: Resume with this certificate instead of requesting one.
            on_tick: Progress callback forwarded to every wait.

        Returns:
            The issued certificate.
        """
        if existing_arn:
            arn = existing_arn
            logger.info("Reusing certificate", extra={"domain": domain, "arn": arn})
        else:
            arn = self._acm.request_certificate(domain, tags)

        if self._acm.status(arn) == ISSUED:
            return Certificate(arn=arn, domain=domain, status=ISSUED)

        record = self._acm.validation_record(arn, self._propagation_wait, on_tick)
        change_id = self._dns.upsert_records(hosted_zone_id, [record])
        self._dns.wait_for_change(change_id, self._propagation_wait, on_tick)
        status = self._acm.wait_for_validation(arn, self._certificate_wait, on_tick)

        logger.info("Certificate issued", extra={"domain": domain, "arn": arn})
        return Certificate(arn=arn, domain=domain, status=status, validation_record=record)
