"""API key lookup from a cloud secret manager.

WORKOS_SECRET_KEY may hold the key itself or a reference:

    aws-secret://<name>[#<json field>]   AWS Secrets Manager (AWS_REGION)
    gcp-secret://<name>                  GCP Secret Manager, latest version
                                         of <name> in GCP_PROJECT_ID
    gcp-secret://projects/.../versions/N full GCP resource name

The cloud SDKs are optional extras and only imported when a reference
needs them.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Callable

logger = logging.getLogger("migration.secrets")


def resolve_secret(value: str) -> str:
    """Return the plaintext behind `value`, or `value` itself if it is not a reference."""
    scheme, sep, ref = value.partition("://")
    resolver = _RESOLVERS.get(scheme) if sep else None
    if resolver is None:
        return value
    logger.info("Resolving API key from %s", scheme)
    return resolver(ref)


def _resolve_aws_secret(ref: str) -> str:
    import boto3

    secret_id, _, field = ref.partition("#")
    client = boto3.client("secretsmanager", region_name=os.environ.get("AWS_REGION", "us-east-1"))
    secret = client.get_secret_value(SecretId=secret_id)["SecretString"]
    if not field:
        return secret
    return str(json.loads(secret)[field])


def _gcp_version_name(ref: str) -> str:
    if ref.startswith("projects/"):
        return ref
    project = os.environ.get("GCP_PROJECT_ID", "")
    if not project:
        raise ValueError(f"gcp-secret://{ref} needs GCP_PROJECT_ID to be set")
    return f"projects/{project}/secrets/{ref}/versions/latest"


def _resolve_gcp_secret(ref: str) -> str:
    name = _gcp_version_name(ref)

    from google.cloud import secretmanager

    response = secretmanager.SecretManagerServiceClient().access_secret_version(
        request={"name": name}
    )
    return response.payload.data.decode("utf-8")


_RESOLVERS: dict[str, Callable[[str], str]] = {
    "aws-secret": lambda ref: _resolve_aws_secret(ref),
    "gcp-secret": lambda ref: _resolve_gcp_secret(ref),
}
