"""Pytest configuration and shared fixtures for analytics-collector tests."""

import json
import os
from datetime import datetime, timedelta, timezone

import boto3
import pytest
from moto import mock_aws

TABLE_NAME = "test-analytics"
JWT_SECRET = "test-secret"


@pytest.fixture(autouse=True)
def set_env_vars(monkeypatch):
    """Set required environment variables for all tests."""
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("APP_NAME", "analytics-collector")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("TABLE_NAME", TABLE_NAME)
    monkeypatch.setenv("SALT_SECRET", "test-salt-secret")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-west-2")
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")


@pytest.fixture(autouse=True)
def reset_cached_state():
    """Drop module-level clients, secrets and the service between tests."""
    from analytics_collector import auth, handler

    def _reset():
        handler._dynamodb = None
        handler._service = None
        auth._ssm_client = None
        auth._jwt_secret = None

    _reset()
    yield
    _reset()


@pytest.fixture
def aws_credentials():
    """Mocked AWS Credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-west-2"


def _create_table(dynamodb):
    # Schema: pk = "SITE#{siteId}", sk = "<TYPE>#..."
    # GSI1: by owner / day / event name / goal; GSI2: by visitor
    table = dynamodb.create_table(
        TableName=TABLE_NAME,
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "gsi1pk", "AttributeType": "S"},
            {"AttributeName": "gsi1sk", "AttributeType": "S"},
            {"AttributeName": "gsi2pk", "AttributeType": "S"},
            {"AttributeName": "gsi2sk", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "GSI1",
                "KeySchema": [
                    {"AttributeName": "gsi1pk", "KeyType": "HASH"},
                    {"AttributeName": "gsi1sk", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
            {
                "IndexName": "GSI2",
                "KeySchema": [
                    {"AttributeName": "gsi2pk", "KeyType": "HASH"},
                    {"AttributeName": "gsi2sk", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    table.wait_until_exists()
    return table


@pytest.fixture
def mock_dynamodb(aws_credentials):
    """Create the mocked single analytics table."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-west-2")
        table = _create_table(dynamodb)
        yield dynamodb, table


@pytest.fixture
def mock_aws_services(aws_credentials):
    """Mocked analytics table plus the JWT secret in SSM."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-west-2")
        table = _create_table(dynamodb)

        ssm = boto3.client("ssm", region_name="us-west-2")
        ssm.put_parameter(
            Name="/test/analytics-collector/secrets/jwt_secret",
            Value=JWT_SECRET,
            Type="SecureString",
        )
        yield dynamodb, table, ssm


class FakeClock:
    """Settable UTC clock for deterministic TTL and session tests."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    from analytics_collector.config import Settings

    return Settings.from_env()


@pytest.fixture
def service(mock_dynamodb, settings, clock):
    """CollectorService over the mocked table with a fake clock."""
    from analytics_collector.service import CollectorService

    _, table = mock_dynamodb
    return CollectorService(settings, table, clock=clock)


@pytest.fixture
def api_event():
    """Factory for API Gateway HTTP API (v2.0) events."""

    def _make(
        route_key,
        raw_path,
        body=None,
        path_params=None,
        query=None,
        headers=None,
        source_ip="203.0.113.7",
        user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.0 Safari/605.1.15",
    ):
        method = route_key.split(" ", 1)[0] if " " in route_key else "GET"
        return {
            "version": "2.0",
            "routeKey": route_key,
            "rawPath": raw_path,
            "headers": {"content-type": "application/json", "user-agent": user_agent, **(headers or {})},
            "pathParameters": path_params or {},
            "queryStringParameters": query or {},
            "body": json.dumps(body) if body is not None else None,
            "isBase64Encoded": False,
            "requestContext": {
                "domainName": "collect.example.com",
                "http": {"method": method, "path": raw_path, "sourceIp": source_ip, "userAgent": user_agent},
            },
        }

    return _make
