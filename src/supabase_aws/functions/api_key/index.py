import base64
import hashlib
import hmac
import json
import time
from typing import Any, Dict

import boto3

# This module-level client is the target for mocking in tests.
secretsmanager_client = boto3.client("secretsmanager")


def base64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def generate_token(payload: Dict[str, Any], secret: str) -> str:
    """Sign an HS256 JSON Web Token."""
    header = {"alg": "HS256", "typ": "JWT"}
    segments = [
        base64url_encode(json.dumps(header, separators=(",", ":")).encode("utf-8")),
        base64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8")),
    ]
    signing_input = ".".join(segments).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest()
    segments.append(base64url_encode(signature))
    return ".".join(segments)


def handler(event, context):
    """Custom resource handler returning a signed API key as NoEcho data."""
    request_type = event["RequestType"]
    print(f"RequestType: {request_type}")

    props = event["ResourceProperties"]
    role = props["Role"]

    if request_type == "Delete":
        return {"PhysicalResourceId": event["PhysicalResourceId"]}

    secret = secretsmanager_client.get_secret_value(SecretId=props["JwtSecretArn"])["SecretString"]

    # Custom resource properties arrive as strings
    issued_at = int(time.time())
    payload = {
        "role": role,
        "iss": props.get("Issuer", "supabase"),
        "iat": issued_at,
        "exp": issued_at + int(props["ExpiresIn"]),
    }

    return {
        "PhysicalResourceId": f"{role}-api-key",
        "Data": {"Value": generate_token(payload, secret)},
        "NoEcho": True,
    }
