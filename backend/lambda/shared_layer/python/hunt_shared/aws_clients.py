"""hunt_shared.aws_clients — Lazy-singleton AWS service clients.

Clients are built on first use and reused for the lifetime of the Lambda
container, so cold starts only pay for the clients a function touches.
"""

from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config

from hunt_shared.config import DYNAMODB_REGION, S3_REGION

__all__ = [
    "_get_ddb",
    "_get_s3",
]

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_ddb = None
_s3 = None


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the DynamoDB client singleton."""
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=region or DYNAMODB_REGION,
            # hunt_shared.retry owns retries.
            config=Config(retries={"max_attempts": 1, "mode": "standard"}, connect_timeout=3, read_timeout=5),
        )
    return _ddb


def _get_s3(region: Optional[str] = None):
    """Get (or create) the S3 client singleton."""
    global _s3
    if _s3 is None:
        _s3 = boto3.client(
            "s3",
            region_name=region or S3_REGION,
            config=Config(retries={"max_attempts": 1, "mode": "standard"}, connect_timeout=3, read_timeout=10),
        )
    return _s3
