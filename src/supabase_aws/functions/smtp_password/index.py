import base64
import hashlib
import hmac
import json

import boto3

# This module-level client is the target for mocking in tests.
secretsmanager_client = boto3.client("secretsmanager")

# Constants of the SES SMTP credential derivation
DATE = "11111111"
SERVICE = "ses"
MESSAGE = "SendRawEmail"
TERMINAL = "aws4_request"
VERSION = 0x04


def sign(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def calculate_smtp_password(secret_access_key: str, region: str) -> str:
    """Derive the SES SMTP password for an IAM secret access key."""
    signature = sign(("AWS4" + secret_access_key).encode("utf-8"), DATE)
    signature = sign(signature, region)
    signature = sign(signature, SERVICE)
    signature = sign(signature, TERMINAL)
    signature = sign(signature, MESSAGE)
    signature_and_version = bytes([VERSION]) + signature
    return base64.b64encode(signature_and_version).decode("utf-8")


def handler(event, context):
    """Custom resource handler returning the SMTP password as NoEcho data."""
    request_type = event["RequestType"]
    print(f"RequestType: {request_type}")

    if request_type == "Delete":
        return {"PhysicalResourceId": event["PhysicalResourceId"]}

    props = event["ResourceProperties"]
    response = secretsmanager_client.get_secret_value(SecretId=props["SecretId"])
    credentials = json.loads(response["SecretString"])

    password = calculate_smtp_password(credentials["secretAccessKey"], props["Region"])

    return {
        "PhysicalResourceId": credentials["accessKeyId"],
        "Data": {"Password": password},
        "NoEcho": True,
    }
