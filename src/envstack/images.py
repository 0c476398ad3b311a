"""Container image repositories and lookups in ECR.

Each environment has one repository per image kind, named
``<project>-<id>-<environment>/<kind>``. Tags are immutable, so a commit tag
always names the image that was built for that commit.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from .aws import aws_errors
from .errors import NotFoundError, ValidationError
from .stacks import StackIdentity

logger = logging.getLogger(__name__)

# Images the stack runs, one repository each
IMAGE_KINDS: tuple[str, ...] = ("application", "webserver")

IMAGE_TAG_MUTABILITY = "IMMUTABLE"

COMMIT_PATTERN = re.compile(r"^[0-9a-f]{7,40}$")


def image_tag(commit: str) -> str:
    """Tag published for a commit.

    Raises:
        ValidationError: If the commit is not a hex hash.
    """
    if not COMMIT_PATTERN.match(commit):
        raise ValidationError(f"Invalid commit '{commit}'")
    return f"commit-{commit}"


def repository_name(identity: StackIdentity, kind: str) -> str:
    if kind not in IMAGE_KINDS:
        raise ValueError(f"Unknown image kind '{kind}'")
    return f"{identity.project_name}-{identity.project_id}-{identity.environment}/{kind}"


class EcrImages:
    """ECR collaborator."""

    def __init__(self, client: Any) -> None:
        self._client = client

    def create_repository(self, name: str, tags: list[dict[str, str]]) -> str:
        """Create a repository with immutable tags.

        Returns:
            The repository URI.

        Raises:
            RemoteError: If the repository already exists or creation fails.
        """
        with aws_errors("CreateRepository"):
            result = self._client.create_repository(
                repositoryName=name,
                imageTagMutability=IMAGE_TAG_MUTABILITY,
                tags=tags,
            )
        uri = result["repository"]["repositoryUri"]
        logger.info("Created ECR repository", extra={"repository": name, "uri": uri})
        return uri

    def delete_repository(self, name: str) -> None:
        """Delete a repository together with its images.

        Raises:
            NotFoundError: If the repository does not exist.
        """
        with aws_errors("DeleteRepository"):
            self._client.delete_repository(repositoryName=name, force=True)
        logger.info("Deleted ECR repository", extra={"repository": name})

    def repository_exists(self, name: str) -> bool:
        try:
            self.repository_uri(name)
        except NotFoundError:
            return False
        return True

    def repository_uri(self, name: str) -> str:
        """Raises NotFoundError if the repository does not exist."""
        with aws_errors("DescribeRepositories"):
            result = self._client.describe_repositories(repositoryNames=[name])

        repositories = result.get("repositories") or []
        if not repositories:
            raise NotFoundError(f"ECR repository '{name}' does not exist")
        return repositories[0]["repositoryUri"]

    def image_tag_exists(self, name: str, tag: str) -> bool:
        try:
            with aws_errors("DescribeImages"):
                result = self._client.describe_images(
                    repositoryName=name,
                    imageIds=[{"imageTag": tag}],
                )
        except NotFoundError:
            return False
        return bool(result.get("imageDetails"))

    def image_reference(self, name: str, tag: str) -> str:
        """Full image reference (uri:tag) after checking the tag exists.

        Raises:
            NotFoundError: If the repository or the tag is missing.
        """
        uri = self.repository_uri(name)
        if not self.image_tag_exists(name, tag):
            raise NotFoundError(f"Failed to find tag '{tag}' in ECR repository '{name}'")
        return f"{uri}:{tag}"
