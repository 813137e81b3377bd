import json

import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.stub import Stubber

from materoom.aws import secrets


@pytest.fixture
def stubbed_client(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    client = boto3.session.Session().client("secretsmanager", region_name="ap-south-1")

    class StubSession:
        def client(self, **kwargs):
            return client

    monkeypatch.setattr(secrets.boto3.session, "Session", StubSession)
    with Stubber(client) as stubber:
        yield stubber


class TestGetSecret:
    def test_returns_parsed_secret(self, stubbed_client):
        stubbed_client.add_response(
            "get_secret_value",
            {"SecretString": json.dumps({"host": "db.internal", "port": 5432})},
            {"SecretId": "materoom/db"},
        )

        assert secrets.get_secret("materoom/db") == {"host": "db.internal", "port": 5432}

    def test_missing_secret_raises(self, stubbed_client):
        stubbed_client.add_client_error("get_secret_value", service_error_code="ResourceNotFoundException")

        with pytest.raises(ClientError):
            secrets.get_secret("materoom/missing")

    def test_non_object_secret_is_rejected(self, stubbed_client):
        stubbed_client.add_response("get_secret_value", {"SecretString": "[1, 2]"})

        with pytest.raises(ValueError):
            secrets.get_secret("materoom/db")
