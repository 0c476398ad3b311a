"""Pytest configuration and fixtures."""

import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for aws_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from aws_mock import MockAwsContext  # noqa: E402
from envstack.config import Config, Environment  # noqa: E402
from envstack.lifecycle import EnvironmentLifecycle  # noqa: E402
from envstack.loader import load_project_config  # noqa: E402
from envstack.models import ProjectConfig  # noqa: E402
from envstack.stacks import StackIdentity  # noqa: E402

COMMIT = "3f2a9c1"
APP_KEY = "base64:dGVzdGtleQ=="

PROJECT_FILE = """\
projectName: shop
projectId: ab12cd
environments:
  stage:
    awsRegion: eu-west-1
  production:
    awsRegion: eu-central-1
    variables:
      - APP_KEY
      - DB_HOST
"""

TEMPLATE = """\
AWSTemplateFormatVersion: "2010-09-09"
Resources:
  ApplicationTaskDefinition:
    Type: AWS::ECS::TaskDefinition
    Properties:
      ContainerDefinitions:
        - Name: application
          Image: !Ref ApplicationImage
          Secrets: #ENVSTACK_SECRETS#
"""


class SchemaRecorder:
    """Records create_schema calls instead of connecting to MySQL."""

    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.error = error

    def __call__(self, *args: Any) -> None:
        self.calls.append(args)
        if self.error is not None:
            raise self.error


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """Project directory with a project file and an infrastructure template."""
    (tmp_path / "envstack.yaml").write_text(PROJECT_FILE)
    template_dir = tmp_path / ".cloudformation"
    template_dir.mkdir()
    (template_dir / "infrastructure.yml").write_text(TEMPLATE)
    return tmp_path


@pytest.fixture
def config(project_root: Path) -> Config:
    return Config(environment=Environment.STAGE, project_root=project_root)


@pytest.fixture
def project(config: Config) -> ProjectConfig:
    return load_project_config(config.project_file_path)


@pytest.fixture
def identity() -> StackIdentity:
    return StackIdentity("shop", "ab12cd", "stage")


@pytest.fixture
def aws() -> Iterator[MockAwsContext]:
    with MockAwsContext() as ctx:
        yield ctx


@pytest.fixture
def schema_recorder() -> SchemaRecorder:
    return SchemaRecorder()


@pytest.fixture
def lifecycle(
    project: ProjectConfig,
    config: Config,
    identity: StackIdentity,
    aws: MockAwsContext,
    schema_recorder: SchemaRecorder,
) -> EnvironmentLifecycle:
    """Lifecycle for the stage environment wired to the mock AWS state."""
    return EnvironmentLifecycle(
        project,
        config,
        aws.collaborators(identity, config),
        sleep=aws.sleep,
        schema_creator=schema_recorder,
        app_key_factory=lambda: APP_KEY,
    )
