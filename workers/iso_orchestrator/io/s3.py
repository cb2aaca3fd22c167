"""S3-compatible client factory shared by the status channel and artifact store."""

from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


def build_s3_client(
    endpoint_url: Optional[str],
    access_key: Optional[str],
    secret_key: Optional[str],
    region: str = "us-east-1",
    connect_timeout: float = 5.0,
    read_timeout: float = 15.0,
):
    """Create a path-style, SigV4 S3 client with bounded timeouts.

    Args:
        endpoint_url: Object store endpoint (``None`` for AWS S3)
        access_key: Access key (``None`` to use the default credential chain)
        secret_key: Secret key
        region: Region name
        connect_timeout: Seconds to wait for a connection
        read_timeout: Seconds to wait for a response
    """
    return boto3.client(
        "s3",
        endpoint_url=endpoint_url or None,
        aws_access_key_id=access_key or None,
        aws_secret_access_key=secret_key or None,
        region_name=region,
        config=Config(
            signature_version="s3v4",
            s3={"addressing_style": "path"},
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": 2, "mode": "standard"},
        ),
    )


def is_not_found(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") in NOT_FOUND_CODES
