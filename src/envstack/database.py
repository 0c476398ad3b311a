"""Database credentials, schema creation and deletion protection."""

from __future__ import annotations

import base64
import logging
import re
import secrets
import string
from collections.abc import Callable
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError

from .aws import aws_errors
from .errors import NotFoundError, RemoteError, ValidationError

logger = logging.getLogger(__name__)

CHARACTER_SET = "utf8mb4"
COLLATION = "utf8mb4_unicode_ci"
DRIVER = "mysql+pymysql"
CONNECT_TIMEOUT_SECONDS = 10

_ALPHANUMERIC = string.ascii_letters + string.digits
_SCHEMA_NAME = re.compile(r"^[A-Za-z0-9_]{1,64}$")


def _random_string(alphabet: str, length: int) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_username() -> str:
    """A leading lowercase letter followed by 10-15 alphanumerics."""
    length = 10 + secrets.randbelow(6)
    return secrets.choice(string.ascii_lowercase) + _random_string(_ALPHANUMERIC, length)


def generate_password() -> str:
    """32-40 alphanumerics."""
    return _random_string(_ALPHANUMERIC, 32 + secrets.randbelow(9))


def generate_app_key() -> str:
    """Application encryption key: base64 of 32 random bytes."""
    return "base64:" + base64.b64encode(secrets.token_bytes(32)).decode("ascii")


def schema_name(project_name: str, environment: str) -> str:
    name = f"{project_name.replace('-', '_')}_{environment}"
    if not _SCHEMA_NAME.match(name):
        raise ValidationError(f"Invalid schema name '{name}'")
    return name


def create_schema(
    host: str,
    port: int | str,
    username: str,
    password: str,
    name: str,
    engine_factory: Callable[[URL], Engine] | None = None,
) -> None:
    """Create an empty schema on a MySQL server.

    Raises:
        ValidationError: If the schema name is not a plain identifier.
        RemoteError: If the server cannot be reached or rejects the statement.
    """
    if not _SCHEMA_NAME.match(name):
        raise ValidationError(f"Invalid schema name '{name}'")

    url = URL.create(DRIVER, username=username, password=password, host=host, port=int(port))
    factory = engine_factory or (
        lambda u: create_engine(u, connect_args={"connect_timeout": CONNECT_TIMEOUT_SECONDS})
    )
    engine = factory(url)
    try:
        with engine.begin() as connection:
            connection.execute(
                text(f"CREATE DATABASE `{name}` CHARACTER SET {CHARACTER_SET} COLLATE {COLLATION}")
            )
    except SQLAlchemyError as e:
        raise RemoteError(f"Failed to create database schema '{name}': {e}", "CreateSchema") from e
    finally:
        engine.dispose()

    logger.info("Created database schema", extra={"schema": name, "host": host})


class RdsInstances:
    """RDS collaborator for deletion protection."""

    def __init__(self, client: Any) -> None:
        self._client = client

    def deletion_protection(self, db_id: str) -> bool:
        with aws_errors("DescribeDBInstances"):
            result = self._client.describe_db_instances(DBInstanceIdentifier=db_id)

        instances = result.get("DBInstances") or []
        if not instances:
            raise NotFoundError(f"Database instance '{db_id}' does not exist")
        return bool(instances[0].get("DeletionProtection"))

    def set_deletion_protection(self, db_id: str, enabled: bool) -> None:
        with aws_errors("ModifyDBInstance"):
            self._client.modify_db_instance(
                DBInstanceIdentifier=db_id,
                DeletionProtection=enabled,
                ApplyImmediately=True,
            )
        logger.info(
            "Changed database deletion protection",
            extra={"db_id": db_id, "enabled": enabled},
        )
