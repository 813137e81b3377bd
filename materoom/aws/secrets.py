"""
AWS Secrets Manager lookup for infrastructure credentials.
"""
import json
from typing import Any, Dict

import boto3
from botocore.exceptions import ClientError
import logging

logger = logging.getLogger(__name__)


def get_secret(secret_name: str, region_name: str = "ap-south-1") -> Dict[str, Any]:
    """
    Fetch a JSON secret from Secrets Manager and return it as a dict.

    Args:
        secret_name: Name/path of the secret, e.g. "materoom/db"
        region_name: AWS region

    Raises:
        ClientError: If the secret is missing or access is denied
        ValueError: If the secret is not a JSON object
    """
    client = boto3.session.Session().client(
        service_name="secretsmanager",
        region_name=region_name,
    )
    try:
        response = client.get_secret_value(SecretId=secret_name)
    except ClientError as e:
        code = e.response["Error"]["Code"]
        logger.error("Secret %s could not be read: %s", secret_name, code)
        raise

    logger.info("Secret %s retrieved", secret_name)
    value = json.loads(response["SecretString"])
    if not isinstance(value, dict):
        raise ValueError(f"Secret {secret_name} is not a JSON object")
    return value
