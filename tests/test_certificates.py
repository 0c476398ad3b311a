"""Tests for certificate issuance through DNS validation."""

from __future__ import annotations

import pytest

from aws_mock import HOSTED_ZONE_ID, MockAwsContext, MockCertificate
from envstack.certificates import (
    ISSUED,
    AcmClient,
    CertificateWorkflow,
    DnsClient,
    DnsRecord,
)
from envstack.errors import NotFoundError, RemoteError, WaitTimeoutError
from envstack.waiter import WaitPolicy

TAGS = [{"Key": "Project", "Value": "shop"}]
ARN = "arn:aws:acm:eu-west-1:123456789012:certificate/existing"


@pytest.fixture
def acm(aws: MockAwsContext) -> AcmClient:
    return AcmClient(aws.client("acm"), aws.sleep)


@pytest.fixture
def dns(aws: MockAwsContext) -> DnsClient:
    aws.state.hosted_zones["example.com."] = HOSTED_ZONE_ID
    return DnsClient(aws.client("route53"), aws.sleep)


@pytest.fixture
def workflow(acm: AcmClient, dns: DnsClient) -> CertificateWorkflow:
    return CertificateWorkflow(acm, dns, WaitPolicy(5, 3), WaitPolicy(5, 30))


class TestDnsRecord:
    """Tests for DnsRecord."""

    def test_to_change(self) -> None:
        record = DnsRecord("_acme.example.com.", "CNAME", "_validate.acm-validations.aws.")

        assert record.to_change() == {
            "Action": "UPSERT",
            "ResourceRecordSet": {
                "Name": "_acme.example.com.",
                "Type": "CNAME",
                "TTL": 300,
                "ResourceRecords": [{"Value": "_validate.acm-validations.aws."}],
            },
        }


class TestDnsClient:
    """Tests for DnsClient."""

    def test_find_zone_for_subdomain(self, dns: DnsClient) -> None:
        assert dns.find_hosted_zone_id("stage.shop.example.com") == HOSTED_ZONE_ID

    def test_zone_not_found(self, dns: DnsClient) -> None:
        with pytest.raises(NotFoundError):
            dns.find_hosted_zone_id("stage.example.org")

    def test_upsert_and_wait(self, aws: MockAwsContext, dns: DnsClient) -> None:
        record = DnsRecord("_acme.stage.example.com.", "CNAME", "target.")

        change_id = dns.upsert_records(HOSTED_ZONE_ID, [record])
        dns.wait_for_change(change_id)

        assert aws.state.records[0]["Name"] == "_acme.stage.example.com."
        assert aws.state.operations("route53").count("get_change") == 1

    def test_change_pending_until_insync(self, aws: MockAwsContext, dns: DnsClient) -> None:
        aws.state.changes["/change/C1"] = ["PENDING", "PENDING", "INSYNC"]

        dns.wait_for_change("/change/C1", WaitPolicy(5, 3))

        assert aws.sleeps == [3, 3]


class TestAcmClient:
    """Tests for AcmClient."""

    def test_request(self, aws: MockAwsContext, acm: AcmClient) -> None:
        arn = acm.request_certificate("stage.example.com", TAGS)

        certificate = aws.state.certificates[arn]
        assert certificate.domain == "stage.example.com"
        assert certificate.tags == TAGS
        assert acm.status(arn) == "PENDING_VALIDATION"

    def test_validation_record_polled_until_published(
        self, aws: MockAwsContext, acm: AcmClient
    ) -> None:
        aws.state.certificates[ARN] = MockCertificate(
            ARN, "stage.example.com", record_hidden_for=2
        )

        record = acm.validation_record(ARN, WaitPolicy(5, 3))

        assert record.name == "_acme.stage.example.com."
        assert aws.state.operations("acm").count("describe_certificate") == 3

    def test_validation_failed(self, aws: MockAwsContext, acm: AcmClient) -> None:
        aws.state.certificates[ARN] = MockCertificate(ARN, "stage.example.com", status="FAILED")

        with pytest.raises(RemoteError):
            acm.wait_for_validation(ARN, WaitPolicy(5, 30))

    def test_validation_timeout(self, aws: MockAwsContext, acm: AcmClient) -> None:
        aws.state.certificates[ARN] = MockCertificate(ARN, "stage.example.com")

        with pytest.raises(WaitTimeoutError):
            acm.wait_for_validation(ARN, WaitPolicy(3, 30))

    def test_missing_certificate(self, acm: AcmClient) -> None:
        with pytest.raises(NotFoundError):
            acm.status(ARN)


class TestCertificateWorkflow:
    """Tests for the full issuance sequence."""

    def test_issue(self, aws: MockAwsContext, workflow: CertificateWorkflow) -> None:
        certificate = workflow.issue("stage.example.com", HOSTED_ZONE_ID, TAGS)

        assert certificate.issued
        assert certificate.validation_record is not None
        assert aws.state.records[0]["Name"] == certificate.validation_record.name
        assert aws.state.certificates[certificate.arn].status == ISSUED
        assert aws.state.mutating_calls() == [
            ("acm", "request_certificate"),
            ("route53", "change_resource_record_sets"),
        ]

    def test_resume_existing(self, aws: MockAwsContext, workflow: CertificateWorkflow) -> None:
        """Resuming with an ARN never requests a duplicate."""
        aws.state.certificates[ARN] = MockCertificate(ARN, "stage.example.com")

        certificate = workflow.issue("stage.example.com", HOSTED_ZONE_ID, TAGS, existing_arn=ARN)

        assert certificate.arn == ARN
        assert certificate.issued
        assert "request_certificate" not in aws.state.operations("acm")

    def test_already_issued(self, aws: MockAwsContext, workflow: CertificateWorkflow) -> None:
        aws.state.certificates[ARN] = MockCertificate(ARN, "stage.example.com", status=ISSUED)

        certificate = workflow.issue("stage.example.com", HOSTED_ZONE_ID, TAGS, existing_arn=ARN)

        assert certificate.issued
        assert aws.state.mutating_calls() == []
