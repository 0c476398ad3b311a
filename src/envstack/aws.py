"""AWS session handling and error translation.

Every collaborator receives a low-level boto3 client from ClientFactory and
wraps its calls in ``aws_errors`` so that botocore exceptions never leave the
collaborator layer:

- Recognized "resource absent" codes become NotFoundError.
- Everything else becomes RemoteError, carrying the AWS error code.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import NotFoundError, RemoteError

logger = logging.getLogger(__name__)

# Error codes that mean the addressed resource does not exist
NOT_FOUND_ERROR_CODES: frozenset[str] = frozenset({
    "ResourceNotFoundException",
    "ParameterNotFound",
    "NoSuchHostedZone",
    "NoSuchChange",
    "RepositoryNotFoundException",
    "ImageNotFoundException",
    "DBInstanceNotFound",
    "DBInstanceNotFoundFault",
    "InvalidPrefixListID.NotFound",
    "InvalidPrefixListId.NotFound",
    "ClusterNotFoundException",
})

# CloudFormation reports a missing stack as a generic ValidationError
STACK_MISSING_MARKER = "does not exist"

# Adaptive retries for throttling inside a single remote call
BOTO_RETRY_CONFIG = BotoConfig(retries={"max_attempts": 5, "mode": "adaptive"})


def error_code(error: ClientError) -> str:
    """Extract the AWS error code from a ClientError."""
    return error.response.get("Error", {}).get("Code", "ClientError")


def error_message(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Message", str(error))


def is_not_found(error: ClientError) -> bool:
    """Check whether a ClientError means the resource is absent."""
    code = error_code(error)
    if code in NOT_FOUND_ERROR_CODES:
        return True
    return code == "ValidationError" and STACK_MISSING_MARKER in error_message(error)


@contextmanager
def aws_errors(operation: str) -> Iterator[None]:
    """Translate botocore failures raised inside the block.

    Args:
        operation: Remote operation name used in messages and logs.

    Raises:
        NotFoundError: For recognized resource-absent errors.
        RemoteError: For every other AWS failure.
    """
    try:
        yield
    except ClientError as e:
        code = error_code(e)
        message = error_message(e)
        if is_not_found(e):
            logger.debug(
                "Remote resource not found",
                extra={"operation": operation, "error_code": code},
            )
            raise NotFoundError(f"{operation}: {message}") from e
        logger.error(
            "AWS API call failed",
            extra={"operation": operation, "error_code": code, "error": message},
        )
        raise RemoteError(f"{operation} failed ({code}): {message}", operation, code) from e
    except BotoCoreError as e:
        logger.error("AWS client error", extra={"operation": operation, "error": str(e)})
        raise RemoteError(f"{operation} failed: {e}", operation) from e


class ClientFactory:
    """Creates low-level boto3 clients for one region and credentials profile."""

    def __init__(self, region: str, profile: str | None = None) -> None:
        if not region:
            raise ValueError("region cannot be empty")

        self._region = region
        self._profile = profile
        self._session = boto3.Session(profile_name=profile, region_name=region)
        self._clients: dict[str, Any] = {}

    @property
    def region(self) -> str:
        return self._region

    @property
    def profile(self) -> str | None:
        return self._profile

    def client(self, service: str, region: str | None = None) -> Any:
        """Get a cached client for a service.

        Args:
            service: boto3 service name (e.g. "cloudformation").
            region: Override region, for global services such as ACM for CloudFront.
        """
        key = f"{service}:{region or self._region}"
        if key not in self._clients:
            logger.debug(
                "Creating AWS client",
                extra={"service": service, "region": region or self._region},
            )
            self._clients[key] = self._session.client(
                service,
                region_name=region or self._region,
                config=BOTO_RETRY_CONFIG,
            )
        return self._clients[key]
