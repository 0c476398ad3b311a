"""AWS API mock for integration testing.

In-memory implementations of the CloudFormation, SSM, EC2, ACM, Route 53,
ECR, RDS and ECS operations envstack calls, so workflows can be exercised
end to end without AWS connectivity.

Key Features:
- Shared in-memory state for every service
- Stack lifecycle simulation (in progress, complete, failed, vanished)
- Eventually consistent parameter listing
- Prefix list version conflicts
- Error injection per operation

Usage:
    from aws_mock import MockAwsContext

    with MockAwsContext() as ctx:
        ctx.seed_environment(identity, commit)
        ...
        assert ctx.state.mutating_calls() == []
"""

from .clients import CLIENT_CLASSES, MockPaginator
from .context import (
    APP_PREFIX_LIST_ID,
    CREATE_OUTPUTS,
    DB_ADMIN_PREFIX_LIST_ID,
    HOSTED_ZONE_ID,
    OPERATOR_CIDR,
    OPERATOR_IP,
    UPDATE_OUTPUTS,
    MockAwsContext,
    MockSession,
)
from .state import (
    ACCOUNT_ID,
    REGION,
    MockAwsState,
    MockCertificate,
    MockParameter,
    MockPrefixList,
    MockStack,
    MockTask,
    client_error,
)

__all__ = [
    "ACCOUNT_ID",
    "APP_PREFIX_LIST_ID",
    "CLIENT_CLASSES",
    "CREATE_OUTPUTS",
    "DB_ADMIN_PREFIX_LIST_ID",
    "HOSTED_ZONE_ID",
    "OPERATOR_CIDR",
    "OPERATOR_IP",
    "REGION",
    "UPDATE_OUTPUTS",
    "MockAwsContext",
    "MockAwsState",
    "MockCertificate",
    "MockPaginator",
    "MockParameter",
    "MockPrefixList",
    "MockSession",
    "MockStack",
    "MockTask",
    "client_error",
]
