"""Shared AWS helpers for service clients."""
from __future__ import annotations

import os
from typing import Any, Optional

import boto3
from botocore.config import Config as BotoConfig


def create_boto3_client(
    service_name: str,
    *,
    region_name: Optional[str] = None,
    timeout: Optional[float] = None,
    max_attempts: int = 2,
):
    """Instantiate a boto3 client, with explicit credentials from the environment if set.

    ``timeout`` bounds both the connect and the read phase of every request so
    a stalled Polly or S3 call cannot outlive the stage that issued it.
    """
    client_kwargs: dict[str, Any] = {
        "region_name": region_name or os.environ.get("AWS_REGION", "eu-west-2"),
    }

    access_key = os.environ.get("AWS_ACCESS_KEY_ID")
    secret_key = os.environ.get("AWS_SECRET_ACCESS_KEY")
    if access_key and secret_key:
        client_kwargs["aws_access_key_id"] = access_key
        client_kwargs["aws_secret_access_key"] = secret_key

    config_kwargs: dict[str, Any] = {"retries": {"max_attempts": max_attempts, "mode": "standard"}}
    if timeout is not None:
        config_kwargs["connect_timeout"] = max(1, min(10, int(timeout)))
        config_kwargs["read_timeout"] = max(1, int(timeout))
    client_kwargs["config"] = BotoConfig(**config_kwargs)

    return boto3.client(service_name, **client_kwargs)


__all__ = ["create_boto3_client"]
