"""Project file and template loading with validation.

File operations enforce size limits, and all input is validated at the
boundary. Failures are ValidationError so they abort a command before any
remote call is made.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import ProjectConfig

logger = logging.getLogger(__name__)

MAX_PROJECT_FILE_SIZE_BYTES = 64 * 1024
# CloudFormation accepts template bodies up to 51,200 bytes
MAX_TEMPLATE_SIZE_BYTES = 51_200


def _read_bounded(path: Path, max_bytes: int, kind: str) -> str:
    if not path.exists():
        raise ValidationError(f"{kind} does not exist at path '{path}'")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ValidationError(f"Failed to stat {kind.lower()} {path}: {e}") from e

    if file_size > max_bytes:
        raise ValidationError(f"{kind} exceeds maximum size of {max_bytes} bytes: {path}")

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"Failed to read {kind.lower()} {path}: {e}") from e


def load_project_config(path: Path) -> ProjectConfig:
    """Load and validate the project file.

    Args:
        path: Path to envstack.yaml.

    Returns:
        Validated ProjectConfig.

    Raises:
        ValidationError: If the file is missing, malformed or invalid.
    """
    content = _read_bounded(path, MAX_PROJECT_FILE_SIZE_BYTES, "Project file")

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise ValidationError(f"Project file must contain a YAML mapping: {path}")

    try:
        config = ProjectConfig.model_validate(raw_data)
    except PydanticValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")

        error_list = "\n".join(errors)
        raise ValidationError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info("Loaded project file for '%s' from %s", config.project_name, path)
    return config


def load_template(path: Path) -> str:
    """Read the infrastructure template verbatim.

    The body is not parsed; the secrets marker is substituted later with
    parameters.render_template.

    Raises:
        ValidationError: If the template is missing or too large.
    """
    template = _read_bounded(path, MAX_TEMPLATE_SIZE_BYTES, "Template")
    logger.debug("Loaded template from %s (%d bytes)", path, len(template))
    return template


def record_region(path: Path, environment: str, region: str) -> None:
    """Write an environment's AWS region into the project file.

    Other keys are kept as they are; comments are not preserved.

    Raises:
        ValidationError: If the file cannot be read, parsed or written.
    """
    content = _read_bounded(path, MAX_PROJECT_FILE_SIZE_BYTES, "Project file")
    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(raw_data, dict):
        raise ValidationError(f"Project file must contain a YAML mapping: {path}")

    environments = raw_data.get("environments") or {}
    settings = environments.get(environment) or {}
    settings["awsRegion"] = region
    environments[environment] = settings
    raw_data["environments"] = environments

    try:
        path.write_text(yaml.safe_dump(raw_data, sort_keys=False), encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"Failed to write project file {path}: {e}") from e
    logger.info("Recorded region %s for '%s' in %s", region, environment, path)
