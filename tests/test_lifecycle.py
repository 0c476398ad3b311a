"""Integration tests for the create, update and delete workflows.

These run every workflow end to end against the in-memory AWS mock.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from aws_mock import (
    CREATE_OUTPUTS,
    HOSTED_ZONE_ID,
    OPERATOR_CIDR,
    MockAwsContext,
    MockParameter,
    MockStack,
)
from conftest import COMMIT
from envstack.config import Config, Environment
from envstack.errors import (
    ConflictError,
    NotFoundError,
    StackOperationError,
    ValidationError,
    WaitTimeoutError,
)
from envstack.lifecycle import EnvironmentLifecycle, build_lifecycle
from envstack.models import EnvironmentRequest, ProjectConfig, StackChanges
from envstack.post_provision import APPLICATION_VARIABLE_NAMES, ProvisionStep
from envstack.stacks import StackIdentity, StackStatus

CERT_ARN = "arn:aws:acm:eu-west-1:123456789012:certificate/given"
PATH = "/shop-ab12cd/stage/"
REGISTRY = "123456789012.dkr.ecr.eu-west-1.amazonaws.com"


@pytest.fixture
def seeded(aws: MockAwsContext, identity: StackIdentity) -> MockAwsContext:
    aws.seed_environment(identity, COMMIT)
    return aws


@pytest.fixture
def existing(seeded: MockAwsContext, identity: StackIdentity) -> MockStack:
    """A running stack with its outputs."""
    stack = MockStack(
        name=identity.stack_name,
        status="UPDATE_COMPLETE",
        parameters=[],
        template="",
        outputs=dict(CREATE_OUTPUTS),
    )
    seeded.state.stacks[stack.name] = stack
    seeded.seed_variables(identity)
    return stack


def seed_variable(aws: MockAwsContext, name: str) -> None:
    aws.state.parameters[PATH + name] = MockParameter(
        PATH + name, "value", f"arn:aws:ssm:eu-west-1:123456789012:parameter{PATH}{name}"
    )


def parameter_values(stack: MockStack) -> dict[str, str]:
    return {
        p["ParameterKey"]: p["ParameterValue"] for p in stack.parameters if "ParameterValue" in p
    }


class TestCreate:
    """Tests for the create workflow."""

    def test_create(
        self, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle, identity: StackIdentity
    ) -> None:
        result = lifecycle.create(EnvironmentRequest(domain="stage.example.com"), COMMIT)

        assert result.status == "CREATE_COMPLETE"
        assert result.provision.finished

        stack = seeded.state.stacks[identity.stack_name]
        # The final update keeps create-time values and enables the stack
        assert {p["ParameterKey"] for p in stack.parameters if p.get("UsePreviousValue")} >= {
            "DBMasterPassword",
            "ApplicationImage",
        }
        assert parameter_values(stack) == {"Enabled": "true"}

        create_call = seeded.state.calls.index(("cloudformation", "create_stack"))
        certificate_calls = [
            i for i, call in enumerate(seeded.state.calls) if call[0] in ("acm", "route53")
        ]
        assert max(certificate_calls) < create_call
        assert seeded.state.prefix_lists["pl-0app"].cidrs == [OPERATOR_CIDR]

    def test_create_submits_every_value(
        self, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle, identity: StackIdentity
    ) -> None:
        seeded.state.create_result = ["ROLLBACK_COMPLETE"]
        request = EnvironmentRequest(
            domain="stage.example.com", certificate_arn=CERT_ARN, db_instance_class="db.t3.small"
        )

        with pytest.raises(StackOperationError, match="ROLLBACK_COMPLETE"):
            lifecycle.create(request, COMMIT)

        values = parameter_values(seeded.state.stacks[identity.stack_name])
        assert values["Enabled"] == "false"
        assert values["DomainName"] == "stage.example.com"
        assert values["RootDomainName"] == "example.com"
        assert values["HostedZoneId"] == HOSTED_ZONE_ID
        assert values["CertificateArn"] == CERT_ARN
        assert values["DBInstanceClass"] == "db.t3.small"
        assert values["DBAvailabilityZone"] == "eu-west-1a"
        assert values["DBVersion"] == "8.0.25"
        assert values["ApplicationImage"].endswith("/shop-ab12cd-stage/application:commit-3f2a9c1")
        assert values["WebserverImage"].endswith("/shop-ab12cd-stage/webserver:commit-3f2a9c1")
        # Post-provision never started
        assert seeded.state.operations("ec2") == []
        assert "request_certificate" not in seeded.state.operations("acm")

    def test_existing_stack(
        self, existing: MockStack, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        with pytest.raises(ConflictError):
            lifecycle.create(EnvironmentRequest(domain="stage.example.com"), COMMIT)

        assert seeded.state.mutating_calls() == []

    def test_existing_variables_need_purge(
        self, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        seed_variable(seeded, "OLD")

        with pytest.raises(ConflictError) as exc_info:
            lifecycle.create(EnvironmentRequest(domain="stage.example.com"), COMMIT)

        assert "OLD" in str(exc_info.value)
        assert seeded.state.mutating_calls() == []

    def test_purge_variables(
        self, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        seed_variable(seeded, "OLD")

        lifecycle.create(
            EnvironmentRequest(domain="stage.example.com"), COMMIT, purge_variables=True
        )

        assert seeded.state.mutating_calls()[0] == ("ssm", "delete_parameter")
        assert PATH + "OLD" not in seeded.state.parameters

    def test_missing_image(self, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle) -> None:
        with pytest.raises(NotFoundError):
            lifecycle.create(EnvironmentRequest(domain="stage.example.com"), "0000000")

        assert seeded.state.mutating_calls() == []

    def test_missing_template(
        self, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle, config: Config
    ) -> None:
        config.template_file_path.unlink()

        with pytest.raises(ValidationError):
            lifecycle.create(EnvironmentRequest(domain="stage.example.com"), COMMIT)

        assert seeded.state.calls == []

    def test_unknown_domain(self, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle) -> None:
        with pytest.raises(NotFoundError):
            lifecycle.create(EnvironmentRequest(domain="stage.example.org"), COMMIT)

        assert seeded.state.mutating_calls() == []

    def test_unknown_domain_keeps_variables(
        self, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        """A missing hosted zone is found before any variable is purged."""
        seed_variable(seeded, "OLD")

        with pytest.raises(NotFoundError, match="hosted zone"):
            lifecycle.create(
                EnvironmentRequest(domain="stage.example.org"), COMMIT, purge_variables=True
            )

        assert seeded.state.mutating_calls() == []
        assert PATH + "OLD" in seeded.state.parameters


class TestUpdate:
    """Tests for the update workflow."""

    def test_update_changes(
        self, existing: MockStack, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        result = lifecycle.update(StackChanges(db_instance_class="db.t3.small"))

        assert result is not None
        assert result.status == "UPDATE_COMPLETE"
        assert parameter_values(existing) == {"Enabled": "true", "DBInstanceClass": "db.t3.small"}
        assert f"ValueFrom: arn:aws:ssm:eu-west-1:123456789012:parameter{PATH}APP_KEY" in (
            existing.template
        )

    def test_application_variables_waited_for(
        self,
        existing: MockStack,
        seeded: MockAwsContext,
        lifecycle: EnvironmentLifecycle,
        identity: StackIdentity,
        config: Config,
    ) -> None:
        """Application variables are required even when the project file lists none."""
        del seeded.state.parameters[PATH + "APP_KEY"]
        seeded.state.parameter_listing_lag = 1
        seeded.collaborators(identity, config).parameters.put("APP_KEY", "key")

        lifecycle.update(refresh=True)

        assert f"ValueFrom: arn:aws:ssm:eu-west-1:123456789012:parameter{PATH}APP_KEY" in (
            existing.template
        )
        assert seeded.state.operations("ssm").count("get_parameters_by_path") == 2

    def test_missing_application_variable(
        self, existing: MockStack, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        del seeded.state.parameters[PATH + "APP_KEY"]

        with pytest.raises(WaitTimeoutError):
            lifecycle.update(refresh=True)

        assert "update_stack" not in seeded.state.operations("cloudformation")

    def test_refresh(
        self, existing: MockStack, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        result = lifecycle.update(StackChanges(db_instance_class="db.t3.small"), refresh=True)

        assert result is not None
        assert parameter_values(existing) == {"Enabled": "true"}

    def test_nothing_to_update(
        self, existing: MockStack, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        seeded.state.no_updates = True

        assert lifecycle.update(refresh=True) is None
        assert seeded.sleeps == []

    def test_new_domain(
        self, existing: MockStack, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        lifecycle.update(domain="shop.example.com")

        values = parameter_values(existing)
        assert values["DomainName"] == "shop.example.com"
        assert values["HostedZoneId"] == HOSTED_ZONE_ID
        assert values["CertificateArn"] in seeded.state.certificates

    def test_update_failure(
        self, existing: MockStack, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        seeded.state.update_result = ["UPDATE_ROLLBACK_IN_PROGRESS", "UPDATE_ROLLBACK_COMPLETE"]

        with pytest.raises(StackOperationError) as exc_info:
            lifecycle.update(refresh=True)

        assert exc_info.value.status == "UPDATE_ROLLBACK_COMPLETE"

    def test_missing_stack(self, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle) -> None:
        with pytest.raises(NotFoundError):
            lifecycle.update(refresh=True)

        assert seeded.state.mutating_calls() == []

    def test_required_variables_waited_for(
        self,
        seeded: MockAwsContext,
        project: ProjectConfig,
        project_root: Path,
    ) -> None:
        """Variables listed in the project file must all be listed before updating."""
        config = Config(environment=Environment.PRODUCTION, project_root=project_root)
        identity = StackIdentity("shop", "ab12cd", "production")
        seeded.state.stacks[identity.stack_name] = MockStack(
            name=identity.stack_name, status="UPDATE_COMPLETE", parameters=[], template=""
        )
        production = EnvironmentLifecycle(
            project, config, seeded.collaborators(identity, config), sleep=seeded.sleep
        )
        store = seeded.collaborators(identity, config).parameters
        seeded.seed_variables(
            identity, [n for n in APPLICATION_VARIABLE_NAMES if n not in ("APP_KEY", "DB_HOST")]
        )
        seeded.state.parameter_listing_lag = 2
        store.put_all({"APP_KEY": "key", "DB_HOST": "db"})

        production.update(refresh=True)

        template = seeded.state.stacks[identity.stack_name].template
        assert "- Name: APP_KEY" in template
        assert "- Name: DB_HOST" in template
        assert seeded.state.operations("ssm").count("get_parameters_by_path") == 3


class TestDelete:
    """Tests for the delete workflow."""

    def test_delete(
        self, existing: MockStack, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        result = lifecycle.delete()

        assert result.status == StackStatus.DELETED.value
        assert existing.name not in seeded.state.stacks

    def test_deletion_protected(
        self, existing: MockStack, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        seeded.state.db_instances[CREATE_OUTPUTS["DBId"]] = True

        with pytest.raises(ConflictError) as exc_info:
            lifecycle.delete()

        assert "Deletion protection" in str(exc_info.value)
        assert seeded.state.mutating_calls() == []

    def test_disable_deletion_protection(
        self, existing: MockStack, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        seeded.state.db_instances[CREATE_OUTPUTS["DBId"]] = True

        lifecycle.delete(disable_deletion_protection=True)

        assert seeded.state.mutating_calls() == [
            ("rds", "modify_db_instance"),
            ("cloudformation", "delete_stack"),
        ]
        assert seeded.state.db_instances[CREATE_OUTPUTS["DBId"]] is False

    def test_missing_database_id(
        self,
        existing: MockStack,
        seeded: MockAwsContext,
        lifecycle: EnvironmentLifecycle,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        del existing.outputs["DBId"]

        lifecycle.delete()

        assert "Failed to find database ID" in caplog.text
        assert "rds" not in {service for service, _ in seeded.state.calls}

    def test_missing_stack(self, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle) -> None:
        with pytest.raises(NotFoundError):
            lifecycle.delete()

    def test_delete_failed(
        self, existing: MockStack, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        seeded.state.delete_result = ["DELETE_IN_PROGRESS", "DELETE_FAILED"]

        with pytest.raises(StackOperationError, match="DELETE_FAILED"):
            lifecycle.delete()


class TestRepositories:
    """Tests for the image repository workflows."""

    def test_create(self, aws: MockAwsContext, lifecycle: EnvironmentLifecycle) -> None:
        uris = lifecycle.create_repositories()

        assert uris == {
            "application": f"{REGISTRY}/shop-ab12cd-stage/application",
            "webserver": f"{REGISTRY}/shop-ab12cd-stage/webserver",
        }
        settings = aws.state.repository_settings["shop-ab12cd-stage/application"]
        assert settings["imageTagMutability"] == "IMMUTABLE"
        assert {"Key": "Environment", "Value": "stage"} in settings["tags"]

    def test_create_existing(self, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle) -> None:
        with pytest.raises(ConflictError, match="already exist"):
            lifecycle.create_repositories()

        assert seeded.state.mutating_calls() == []

    def test_delete(self, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle) -> None:
        deleted = lifecycle.delete_repositories()

        assert deleted == ["shop-ab12cd-stage/application", "shop-ab12cd-stage/webserver"]
        assert seeded.state.repositories == {}
        assert seeded.state.images == set()

    def test_delete_with_stack(
        self, existing: MockStack, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        with pytest.raises(ConflictError, match="delete that first"):
            lifecycle.delete_repositories()

        assert seeded.state.mutating_calls() == []

    def test_delete_missing(
        self,
        aws: MockAwsContext,
        lifecycle: EnvironmentLifecycle,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        lifecycle.create_repositories()
        del aws.state.repositories["shop-ab12cd-stage/webserver"]

        assert lifecycle.delete_repositories() == ["shop-ab12cd-stage/application"]
        assert "Image repository not found" in caplog.text

    def test_uris(self, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle) -> None:
        uris = lifecycle.repository_uris()

        assert list(uris) == ["application", "webserver"]
        assert uris["webserver"].endswith("/shop-ab12cd-stage/webserver")

    def test_uris_missing(self, aws: MockAwsContext, lifecycle: EnvironmentLifecycle) -> None:
        with pytest.raises(NotFoundError):
            lifecycle.repository_uris()


class TestCertificates:
    """Tests for certificate commands on the lifecycle."""

    def test_issue_and_status(
        self, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        certificate = lifecycle.issue_certificate("stage.example.com")

        assert certificate.issued
        assert lifecycle.certificate_status(certificate.arn) == "ISSUED"
        tags = seeded.state.certificates[certificate.arn].tags
        assert {"Key": "ManagedBy", "Value": "envstack"} in tags


class TestBuildLifecycle:
    """Tests for wiring a lifecycle to AWS clients."""

    def test_build(self, aws: MockAwsContext, project: ProjectConfig, config: Config) -> None:
        lifecycle = build_lifecycle(project, config, sleep=aws.sleep)

        assert lifecycle.identity.stack_name == "shop-ab12cd-stage"
        assert lifecycle.status() is None
        assert aws.state.operations() == ["describe_stacks"]

    def test_missing_region(self, aws: MockAwsContext, config: Config) -> None:
        project = ProjectConfig(projectName="shop", projectId="ab12cd")

        with pytest.raises(ValidationError):
            build_lifecycle(project, config)


class TestProvisionReport:
    def test_completed_steps_in_order(
        self, seeded: MockAwsContext, lifecycle: EnvironmentLifecycle
    ) -> None:
        result = lifecycle.create(EnvironmentRequest(domain="stage.example.com"), COMMIT)

        assert result.provision.completed[0] == ProvisionStep.GRANT_DATABASE_ACCESS
        assert result.provision.completed[-1] == ProvisionStep.GRANT_APPLICATION_ACCESS
