"""Pydantic models for the project file and stack inputs.

These models provide:
1. Type-safe YAML parsing of the project file
2. Validation of stack sizing choices at the boundary (fail fast)
3. Clean transformation to stack parameter values
"""

from __future__ import annotations

import re
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import ValidationError

# =============================================================================
# Sizing choices
# =============================================================================

DB_INSTANCE_CLASSES: tuple[str, ...] = (
    "db.t3.micro",
    "db.t3.small",
    "db.t3.medium",
    "db.t3.large",
    "db.t3.xlarge",
    "db.t3.2xlarge",
    "db.m5.large",
    "db.m5.xlarge",
    "db.m5.2xlarge",
)

CACHE_NODE_TYPES: tuple[str, ...] = (
    "cache.t3.micro",
    "cache.t3.small",
    "cache.t3.medium",
    "cache.m5.large",
    "cache.m5.xlarge",
)

DB_STORAGE_MIN_GB = 20
DB_STORAGE_MAX_GB = 1024

# Fargate CPU units to valid memory sizes (MiB)
FARGATE_CPU_MEMORY: dict[str, tuple[str, ...]] = {
    "256": ("512", "1024", "2048"),
    "512": tuple(str(mb) for mb in range(1024, 4097, 1024)),
    "1024": tuple(str(mb) for mb in range(2048, 8193, 1024)),
    "2048": tuple(str(mb) for mb in range(4096, 16385, 1024)),
    "4096": tuple(str(mb) for mb in range(8192, 30721, 1024)),
}

CERTIFICATE_ARN_PATTERN = r"^arn:aws:acm:.+:certificate/.+$"
HOSTED_ZONE_ID_PATTERN = r"^Z[A-Z0-9]+$"
PROJECT_NAME_PATTERN = r"^[a-z][a-z0-9-]{0,30}[a-z0-9]$"
PROJECT_ID_PATTERN = r"^[a-z0-9]{4,16}$"
AWS_REGION_PATTERN = r"^[a-z]{2}(-gov)?-[a-z]+-\d$"


def root_domain_from(domain: str) -> str:
    """Derive the root domain (last two labels) from a fully qualified domain.

    Raises:
        ValidationError: If the domain is not a lowercase dotted name.
    """
    if "." not in domain or domain.lower() != domain or domain.startswith("."):
        raise ValidationError(f"Invalid domain '{domain}'")
    return ".".join(domain.rstrip(".").split(".")[-2:])


# =============================================================================
# Project file
# =============================================================================


class EnvironmentSettings(BaseModel):
    """Per-environment settings recorded in the project file."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    aws_region: str | None = Field(None, alias="awsRegion")
    # Application variable names the running stack must receive as secrets
    variables: list[str] = Field(default_factory=list)

    @field_validator("aws_region")
    @classmethod
    def validate_region(cls, v: str | None) -> str | None:
        if v is not None and not re.match(AWS_REGION_PATTERN, v):
            raise ValueError(f"awsRegion must be an AWS region name: {v}")
        return v


class ProjectConfig(BaseModel):
    """The project file (envstack.yaml)."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    project_name: Annotated[str, Field(alias="projectName", pattern=PROJECT_NAME_PATTERN)]
    project_id: Annotated[str, Field(alias="projectId", pattern=PROJECT_ID_PATTERN)]
    environments: dict[str, EnvironmentSettings] = Field(default_factory=dict)

    def environment(self, name: str) -> EnvironmentSettings:
        """Get settings for one environment.

        Raises:
            ValidationError: If the environment is not in the project file.
        """
        settings = self.environments.get(name)
        if settings is None:
            raise ValidationError(f"Environment '{name}' is not configured in the project file")
        return settings

    def region_for(self, name: str) -> str:
        """Get the AWS region recorded for an environment.

        Raises:
            ValidationError: If no region is on record.
        """
        region = self.environment(name).aws_region
        if not region:
            raise ValidationError(
                f"AWS region is not set for the '{name}' environment; "
                "create image repositories first"
            )
        return region

    def with_region(self, name: str, region: str) -> ProjectConfig:
        """Copy with the region set for an environment, adding it if absent."""
        current = self.environments.get(name) or EnvironmentSettings()
        settings = EnvironmentSettings.model_validate(
            {"awsRegion": region, "variables": current.variables}
        )
        return self.model_copy(update={"environments": {**self.environments, name: settings}})


# =============================================================================
# Stack inputs
# =============================================================================


class _SizingValidators(BaseModel):
    """Shared validators for create and update inputs."""

    model_config = {"extra": "forbid"}

    @field_validator("db_instance_class", check_fields=False)
    @classmethod
    def validate_db_instance_class(cls, v: str | None) -> str | None:
        if v is not None and v not in DB_INSTANCE_CLASSES:
            raise ValueError(f"db_instance_class must be one of {DB_INSTANCE_CLASSES}")
        return v

    @field_validator("cache_node_type", check_fields=False)
    @classmethod
    def validate_cache_node_type(cls, v: str | None) -> str | None:
        if v is not None and v not in CACHE_NODE_TYPES:
            raise ValueError(f"cache_node_type must be one of {CACHE_NODE_TYPES}")
        return v

    @field_validator("certificate_arn", check_fields=False)
    @classmethod
    def validate_certificate_arn(cls, v: str | None) -> str | None:
        if v is not None and not re.match(CERTIFICATE_ARN_PATTERN, v):
            raise ValueError("certificate_arn must be an ACM certificate ARN")
        return v

    @field_validator("domain", check_fields=False)
    @classmethod
    def validate_domain(cls, v: str | None) -> str | None:
        if v is not None and ("." not in v or v.lower() != v):
            raise ValueError("domain must be a lowercase fully qualified domain name")
        return v


def _check_cpu_memory(cpu: str | None, memory: str | None) -> None:
    if cpu is None and memory is None:
        return
    if cpu is None or memory is None:
        raise ValueError("task_cpu and task_memory must be changed together")
    if cpu not in FARGATE_CPU_MEMORY:
        raise ValueError(f"task_cpu must be one of {list(FARGATE_CPU_MEMORY)}")
    if memory not in FARGATE_CPU_MEMORY[cpu]:
        raise ValueError(f"task_memory for {cpu} CPU must be one of {FARGATE_CPU_MEMORY[cpu]}")


class StackSettings(_SizingValidators):
    """Caller choices for a new stack."""

    domain: str
    hosted_zone_id: Annotated[str, Field(pattern=HOSTED_ZONE_ID_PATTERN)]
    certificate_arn: str
    db_instance_class: str = DB_INSTANCE_CLASSES[0]
    db_storage_size: Annotated[int, Field(ge=DB_STORAGE_MIN_GB, le=DB_STORAGE_MAX_GB)] = (
        DB_STORAGE_MIN_GB
    )
    cache_node_type: str = CACHE_NODE_TYPES[0]
    task_cpu: str = "256"
    task_memory: str = "512"

    @model_validator(mode="after")
    def validate_task_size(self) -> StackSettings:
        _check_cpu_memory(self.task_cpu, self.task_memory)
        return self

    @property
    def root_domain(self) -> str:
        return root_domain_from(self.domain)

    def to_parameter_values(self) -> dict[str, Any]:
        """Convert to stack parameter values (caller-chosen keys only)."""
        return {
            "DomainName": self.domain,
            "RootDomainName": self.root_domain,
            "HostedZoneId": self.hosted_zone_id,
            "CertificateArn": self.certificate_arn,
            "DBStorageSize": self.db_storage_size,
            "DBInstanceClass": self.db_instance_class,
            "CacheNodeType": self.cache_node_type,
            "TaskDefinitionCpu": self.task_cpu,
            "TaskDefinitionMemory": self.task_memory,
        }


class StackChanges(_SizingValidators):
    """Partial changes for an existing stack. Unset fields keep their previous value."""

    domain: str | None = None
    hosted_zone_id: Annotated[str, Field(pattern=HOSTED_ZONE_ID_PATTERN)] | None = None
    certificate_arn: str | None = None
    db_instance_class: str | None = None
    db_storage_size: Annotated[int, Field(ge=DB_STORAGE_MIN_GB, le=DB_STORAGE_MAX_GB)] | None = None
    cache_node_type: str | None = None
    task_cpu: str | None = None
    task_memory: str | None = None

    @model_validator(mode="after")
    def validate_consistency(self) -> StackChanges:
        _check_cpu_memory(self.task_cpu, self.task_memory)
        if self.domain is not None and (
            self.hosted_zone_id is None or self.certificate_arn is None
        ):
            raise ValueError("a new domain requires its hosted_zone_id and certificate_arn")
        return self

    @property
    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)

    def to_parameter_values(self) -> dict[str, Any]:
        """Convert to stack parameter values. None means keep previous."""
        return {
            "DomainName": self.domain,
            "RootDomainName": root_domain_from(self.domain) if self.domain else None,
            "HostedZoneId": self.hosted_zone_id,
            "CertificateArn": self.certificate_arn,
            "DBStorageSize": self.db_storage_size,
            "DBInstanceClass": self.db_instance_class,
            "CacheNodeType": self.cache_node_type,
            "TaskDefinitionCpu": self.task_cpu,
            "TaskDefinitionMemory": self.task_memory,
        }


class EnvironmentRequest(_SizingValidators):
    """Caller choices for creating an environment.

    Hosted zone and certificate are resolved from the domain during the
    workflow, after every precondition passed.
    """

    domain: str
    certificate_arn: str | None = None
    db_instance_class: str = DB_INSTANCE_CLASSES[0]
    db_storage_size: Annotated[int, Field(ge=DB_STORAGE_MIN_GB, le=DB_STORAGE_MAX_GB)] = (
        DB_STORAGE_MIN_GB
    )
    cache_node_type: str = CACHE_NODE_TYPES[0]
    task_cpu: str = "256"
    task_memory: str = "512"

    @model_validator(mode="after")
    def validate_task_size(self) -> EnvironmentRequest:
        _check_cpu_memory(self.task_cpu, self.task_memory)
        return self

    def to_settings(self, hosted_zone_id: str, certificate_arn: str) -> StackSettings:
        return StackSettings(
            domain=self.domain,
            hosted_zone_id=hosted_zone_id,
            certificate_arn=certificate_arn,
            db_instance_class=self.db_instance_class,
            db_storage_size=self.db_storage_size,
            cache_node_type=self.cache_node_type,
            task_cpu=self.task_cpu,
            task_memory=self.task_memory,
        )
