"""Environment workflows: create, update and delete.

Every workflow runs its checks first and only then issues mutating calls:

- create: template, region, images, no stack, no stale variables, hosted zone
- update: stack exists and is updatable, template
- delete: stack exists and is deletable, database deletion protection
- repositories: none exist yet (create), no stack (delete)

ValidationError, ConflictError and NotFoundError therefore leave the
environment untouched. Failures after the first mutation are surfaced as-is;
no compensating action is attempted.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .aws import ClientFactory
from .certificates import AcmClient, Certificate, CertificateWorkflow, DnsClient
from .config import Config
from .database import (
    RdsInstances,
    create_schema,
    generate_app_key,
    generate_password,
    generate_username,
)
from .errors import ConflictError, NotFoundError
from .images import IMAGE_KINDS, EcrImages, image_tag, repository_name
from .loader import load_template
from .models import EnvironmentRequest, ProjectConfig, StackChanges
from .orchestrator import (
    DB_ID_OUTPUT_KEY,
    PROVISION_OUTPUT_KEYS,
    StackOrchestrator,
    require_success,
)
from .parameters import DB_ENGINE_VERSION
from .post_provision import (
    APPLICATION_VARIABLE_NAMES,
    DatabaseCredentials,
    PostProvisionCoordinator,
    ProvisionReport,
)
from .prefix_lists import PrefixListClient
from .secrets_store import SsmParameterStore
from .stacks import StackClient, StackIdentity, StackStatus
from .tasks import EcsTaskRunner
from .waiter import TickFn, WaitResult

logger = logging.getLogger(__name__)


@dataclass
class Collaborators:
    """AWS collaborators for one environment."""

    stacks: StackClient
    images: EcrImages
    parameters: SsmParameterStore
    prefix_lists: PrefixListClient
    acm: AcmClient
    dns: DnsClient
    rds: RdsInstances
    tasks: EcsTaskRunner

    @classmethod
    def from_factory(
        cls,
        factory: ClientFactory,
        identity: StackIdentity,
        config: Config,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Collaborators:
        return cls(
            stacks=StackClient(factory.client("cloudformation"), identity),
            images=EcrImages(factory.client("ecr")),
            parameters=SsmParameterStore(factory.client("ssm"), identity.parameter_path, sleep),
            prefix_lists=PrefixListClient(
                factory.client("ec2"), config.propagation_wait, sleep=sleep
            ),
            acm=AcmClient(factory.client("acm"), sleep),
            dns=DnsClient(factory.client("route53"), sleep),
            rds=RdsInstances(factory.client("rds")),
            tasks=EcsTaskRunner(factory.client("ecs"), sleep),
        )


@dataclass(frozen=True)
class CreateChecks:
    """What the create preconditions resolved."""

    images: dict[str, str]
    hosted_zone_id: str


@dataclass(frozen=True)
class CreateResult:
    status: str
    provision: ProvisionReport


class EnvironmentLifecycle:
    """Create, update and delete one environment."""

    def __init__(
        self,
        project: ProjectConfig,
        config: Config,
        aws: Collaborators,
        sleep: Callable[[float], None] = time.sleep,
        schema_creator: Callable[..., None] = create_schema,
        app_key_factory: Callable[[], str] = generate_app_key,
    ) -> None:
        self._project = project
        self._config = config
        self._aws = aws
        self._orchestrator = StackOrchestrator(
            aws.stacks,
            config.template_file_path,
            stack_wait=config.stack_wait,
            outputs_wait=config.outputs_wait,
            sleep=sleep,
        )
        self._certificates = CertificateWorkflow(
            aws.acm,
            aws.dns,
            propagation_wait=config.propagation_wait,
            certificate_wait=config.certificate_wait,
        )
        self._coordinator = PostProvisionCoordinator(
            self._orchestrator,
            aws.prefix_lists,
            aws.parameters,
            aws.tasks,
            config,
            schema_creator=schema_creator,
            app_key_factory=app_key_factory,
        )

    @property
    def environment(self) -> str:
        return self._config.environment.value

    @property
    def identity(self) -> StackIdentity:
        return self._orchestrator.identity

    @property
    def orchestrator(self) -> StackOrchestrator:
        return self._orchestrator

    @property
    def coordinator(self) -> PostProvisionCoordinator:
        return self._coordinator

    def status(self) -> StackStatus | None:
        return self._orchestrator.status()

    def wait(self, expected: StackStatus, on_tick: TickFn | None = None) -> WaitResult:
        return self._orchestrator.wait(expected, on_tick)

    # -------------------------------------------------------------------------
    # Certificates
    # -------------------------------------------------------------------------

    def issue_certificate(
        self,
        domain: str,
        existing_arn: str | None = None,
        on_tick: TickFn | None = None,
    ) -> Certificate:
        hosted_zone_id = self.find_hosted_zone(domain)
        return self._certificates.issue(
            domain,
            hosted_zone_id,
            self.identity.resource_tags(),
            existing_arn=existing_arn,
            on_tick=on_tick,
        )

    def certificate_status(self, arn: str) -> str:
        return self._aws.acm.status(arn)

    def find_hosted_zone(self, domain: str) -> str:
        """Hosted zone id for a domain's root domain.

        Raises:
            NotFoundError: If no hosted zone matches.
        """
        hosted_zone_id = self._aws.dns.find_hosted_zone_id(domain)
        logger.info("Found hosted zone", extra={"domain": domain, "hosted_zone_id": hosted_zone_id})
        return hosted_zone_id

    def _certificate_for(
        self,
        domain: str,
        hosted_zone_id: str,
        certificate_arn: str | None,
        on_tick: TickFn | None,
    ) -> str:
        if certificate_arn:
            return certificate_arn
        certificate = self._certificates.issue(
            domain, hosted_zone_id, self.identity.resource_tags(), on_tick=on_tick
        )
        return certificate.arn

        certificate = self._certificates.issue(
            domain, hosted_zone_id, self.identity.resource_tags(), on_tick=on_tick
        )
        return hosted_zone_id, certificate.arn

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def check_create(
        self, commit: str, domain: str, purge_variables: bool = False
    ) -> CreateChecks:
        """Run every create precondition. Nothing is mutated.

        Returns:
            Image references by kind and the hosted zone for the domain.

        Raises:
            ValidationError: Missing template, region or bad commit.
            NotFoundError: Missing image repository, tag or hosted zone.
            ConflictError: Existing stack, or variables without purge opt-in.
        """
        load_template(self._config.template_file_path)
        self._project.region_for(self.environment)

        tag = image_tag(commit)
        images = {
            kind: self._aws.images.image_reference(repository_name(self.identity, kind), tag)
            for kind in IMAGE_KINDS
        }

        current = self.status()
        if current is not None:
            raise ConflictError(
                f"Stack exists for '{self.environment}' environment ({current.value})"
            )

        existing = self._aws.parameters.list_names()
        if existing and not purge_variables:
            raise ConflictError(
                f"Variables exist for the '{self.environment}' environment: "
                f"{', '.join(existing)}"
            )

        return CreateChecks(images=images, hosted_zone_id=self.find_hosted_zone(domain))

    def existing_variables(self) -> list[str]:
        return self._aws.parameters.list_names()

    def create(
        self,
        request: EnvironmentRequest,
        commit: str,
        purge_variables: bool = False,
        on_tick: TickFn | None = None,
    ) -> CreateResult:
        """Create the environment and run every post-provision step.

        Raises:
            StackOperationError: If the stack did not reach CREATE_COMPLETE.
            ConsistencyError: If outputs did not appear or refresh in time.
        """
        checks = self.check_create(commit, request.domain, purge_variables)
        images = checks.images
        region = self._project.region_for(self.environment)

        for name in self._aws.parameters.list_names():
            self._aws.parameters.delete(name)

        certificate_arn = self._certificate_for(
            request.domain, checks.hosted_zone_id, request.certificate_arn, on_tick
        )
        settings = request.to_settings(checks.hosted_zone_id, certificate_arn)
        credentials = DatabaseCredentials(generate_username(), generate_password())

        values: dict[str, Any] = {
            **settings.to_parameter_values(),
            "DBAvailabilityZone": f"{region}a",
            "DBVersion": DB_ENGINE_VERSION,
            "DBMasterUsername": credentials.username,
            "DBMasterPassword": credentials.password,
            "ApplicationImage": images["application"],
            "WebserverImage": images["webserver"],
        }

        self._orchestrator.create(values)
        result = require_success(
            self._orchestrator.wait(StackStatus.CREATE_COMPLETE, on_tick), "creation"
        )
        logger.info("Stack created", extra={"stack_name": self.identity.stack_name})

        outputs = self._orchestrator.wait_for_outputs(PROVISION_OUTPUT_KEYS, on_tick=on_tick)
        report = self._coordinator.run(outputs, credentials, region, on_tick)
        return CreateResult(status=result.status, provision=report)

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    def required_variables(self) -> list[str]:
        """Variables every update must reference.

        The application variables written after create, plus any extra names
        the project file lists for this environment.
        """
        extra = self._project.environment(self.environment).variables
        return sorted({*APPLICATION_VARIABLE_NAMES, *extra})

    def update(
        self,
        changes: StackChanges | None = None,
        domain: str | None = None,
        certificate_arn: str | None = None,
        refresh: bool = False,
        on_tick: TickFn | None = None,
    ) -> WaitResult | None:
        """Update the environment with its current variables.

        Args:
            changes: Sizing and certificate changes; ignored in refresh mode.
            domain: New domain; hosted zone and certificate are re-resolved.
            certificate_arn: Certificate for the new domain, issued when unset.
            refresh: Re-submit with current variables and no changes.
            on_tick: Progress callback.

        Returns:
            The wait result, or None when there was nothing to change.
        """
        self._orchestrator.require_stack(StackStatus.UPDATE_IN_PROGRESS)
        load_template(self._config.template_file_path)

        values: dict[str, Any] = {}
        if not refresh:
            changes = changes or StackChanges()
            if domain:
                hosted_zone_id = self.find_hosted_zone(domain)
                resolved_arn = self._certificate_for(
                    domain, hosted_zone_id, certificate_arn, on_tick
                )
                changes = changes.model_copy(
                    update={
                        "domain": domain,
                        "hosted_zone_id": hosted_zone_id,
                        "certificate_arn": resolved_arn,
                    }
                )
            values = changes.to_parameter_values()

        secrets = self._aws.parameters.wait_for_secrets(
            self.required_variables(), self._config.secrets_wait, on_tick
        )

        if not self._orchestrator.update(True, secrets, values):
            return None
        return require_success(
            self._orchestrator.wait(StackStatus.UPDATE_COMPLETE, on_tick), "update"
        )

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete(
        self,
        disable_deletion_protection: bool = False,
        on_tick: TickFn | None = None,
    ) -> WaitResult:
        """Delete the environment's stack.

        Raises:
            NotFoundError: If no stack exists.
            ConflictError: If the database is deletion protected and
                disabling it was not allowed.
            StackOperationError: If the stack did not reach DELETED.
        """
        self._orchestrator.require_stack(StackStatus.DELETE_IN_PROGRESS)

        db_id = self._orchestrator.outputs([DB_ID_OUTPUT_KEY]).get(DB_ID_OUTPUT_KEY)
        protected = False
        if db_id:
            try:
                protected = self._aws.rds.deletion_protection(db_id)
            except NotFoundError:
                logger.warning("Database from stack outputs not found", extra={"db_id": db_id})
        else:
            logger.warning(
                "Failed to find database ID to check for deletion protection",
                extra={"stack_name": self.identity.stack_name},
            )

        if protected and not disable_deletion_protection:
            raise ConflictError(
                f"Deletion protection is enabled for the '{self.environment}' "
                "environment's database"
            )

        if protected:
            self._aws.rds.set_deletion_protection(db_id, False)

        self._orchestrator.delete()
        return require_success(self._orchestrator.wait(StackStatus.DELETED, on_tick), "deletion")


    # -------------------------------------------------------------------------
    # Image repositories
    # -------------------------------------------------------------------------

    def repository_uris(self) -> dict[str, str]:
        """Repository URIs by image kind.

        Raises:
            NotFoundError: If a repository does not exist.
        """
        return {
            kind: self._aws.images.repository_uri(repository_name(self.identity, kind))
            for kind in IMAGE_KINDS
        }

    def create_repositories(self) -> dict[str, str]:
        """Create the application and webserver repositories.

        Returns:
            Repository URIs by image kind.

        Raises:
            ConflictError: If any repository already exists. Nothing is created.
        """
        names = {kind: repository_name(self.identity, kind) for kind in IMAGE_KINDS}
        existing = [name for name in names.values() if self._aws.images.repository_exists(name)]
        if existing:
            raise ConflictError(f"Image repositories already exist: {', '.join(existing)}")

        tags = self.identity.resource_tags()
        return {
            kind: self._aws.images.create_repository(name, tags) for kind, name in names.items()
        }

    def delete_repositories(self) -> list[str]:
        """Delete the environment's repositories and their images.

        Returns:
            Names of the repositories that were deleted.

        Raises:
            ConflictError: If a stack exists for the environment.
        """
        current = self.status()
        if current is not None:
            raise ConflictError(
                f"Stack exists for '{self.environment}' environment ({current.value}); "
                "delete that first"
            )

        deleted = []
        for kind in IMAGE_KINDS:
            name = repository_name(self.identity, kind)
            try:
                self._aws.images.delete_repository(name)
            except NotFoundError:
                logger.warning("Image repository not found", extra={"repository": name})
                continue
            deleted.append(name)
        return deleted


def build_lifecycle(
    project: ProjectConfig,
    config: Config,
    sleep: Callable[[float], None] = time.sleep,
) -> EnvironmentLifecycle:
    """Wire an EnvironmentLifecycle to real AWS clients.

    Raises:
        ValidationError: If no region is on record for the environment.
    """
    environment = config.environment.value
    region = project.region_for(environment)
    identity = StackIdentity(project.project_name, project.project_id, environment)
    factory = ClientFactory(region, config.aws_profile)
    return EnvironmentLifecycle(
        project,
        config,
        Collaborators.from_factory(factory, identity, config, sleep),
        sleep=sleep,
    )
