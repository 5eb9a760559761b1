"""
Shared pytest fixtures.

Nothing here talks to AWS: sessions hand out MagicMock clients and failures
are real botocore ClientError instances, so the code under test takes the
same branches it would against a live account.
"""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from capprobe.config import ProbeConfig


def make_client_error(code, message="", operation="Operation"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def set_pages(client, pages_by_operation):
    """
    Wire `client.get_paginator(op).paginate(...)` to return canned pages.

    A value that is an exception instance is raised instead.
    """
    def get_paginator(operation):
        paginator = MagicMock(name=f"paginator:{operation}")
        value = pages_by_operation.get(operation, [{}])
        if isinstance(value, Exception):
            paginator.paginate.side_effect = value
        elif callable(value):
            paginator.paginate.side_effect = value
        else:
            paginator.paginate.return_value = list(value)
        return paginator

    client.get_paginator.side_effect = get_paginator
    return client


class FakeSession:
    """
    Stand-in for boto3.Session: one MagicMock client per service name.

    `client_errors` maps a service name, or a `(name, region)` pair, to an
    exception raised when that client is built.
    """

    def __init__(self, available=None, client_errors=None):
        self.clients = {}
        self.available = available
        self.client_errors = dict(client_errors or {})
        self.client_calls = []

    def client(self, name, region_name=None, config=None):
        self.client_calls.append((name, region_name))
        error = self.client_errors.get((name, region_name)) or self.client_errors.get(name)
        if error is not None:
            raise error
        if name not in self.clients:
            self.clients[name] = MagicMock(name=f"client:{name}")
        return self.clients[name]

    def get_available_services(self):
        if self.available is not None:
            return list(self.available)
        return sorted(set(self.clients) | {
            "sts", "iam", "ec2", "s3", "lambda", "rds", "dynamodb", "ecs", "eks", "ecr",
            "cloudformation", "apigateway", "apigatewayv2", "sns", "sqs", "cloudwatch",
            "logs", "secretsmanager", "ssm", "service-quotas", "cloudtrail",
        })


@pytest.fixture()
def client_error():
    return make_client_error


@pytest.fixture()
def session():
    return FakeSession()


@pytest.fixture()
def user_identity():
    return {
        "UserId": "AIDAEXAMPLE",
        "Account": "123456789012",
        "Arn": "arn:aws:iam::123456789012:user/alice",
    }


@pytest.fixture()
def role_identity():
    return {
        "UserId": "AROAEXAMPLE:session-42",
        "Account": "123456789012",
        "Arn": "arn:aws:sts::123456789012:assumed-role/DeployRole/session-42",
    }


@pytest.fixture()
def config(tmp_path):
    return ProbeConfig(
        regions=["us-west-2"],
        output_dir=str(tmp_path),
        show_progress=False,
    )
