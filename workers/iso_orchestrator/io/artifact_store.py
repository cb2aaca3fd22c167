"""Artifact store: where workers place finished images and grants are issued."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from iso_orchestrator.io.s3 import is_not_found

logger = logging.getLogger(__name__)


class ArtifactStore:
    """Object-store wrapper for built images."""

    def __init__(self, s3_client, bucket: str, prefix: str = "images"):
        """Initialize the store.

        Args:
            s3_client: boto3 S3 client
            bucket: Downloads bucket
            prefix: Key prefix for images
        """
        self._client = s3_client
        self.bucket = bucket
        self.prefix = prefix.strip("/")

    def destination_key(self, build_id: str, image_name: str) -> str:
        """Agreed artifact location for a build.

        Layout: <prefix>/<image_name>-<build_id[:8]>.iso
        """
        return f"{self.prefix}/{image_name}-{build_id[:8]}.iso"

    def coordinates(self, build_id: str, image_name: str) -> dict:
        return {"bucket": self.bucket, "key": self.destination_key(build_id, image_name)}

    def get_metadata(self, key: str) -> Optional[dict]:
        """Object metadata, or ``None`` if the object does not exist.

        Transport errors propagate; only a definite not-found maps to ``None``.
        """
        try:
            response = self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return {
            "size": response["ContentLength"],
            "last_modified": response.get("LastModified"),
            "content_type": response.get("ContentType"),
        }

    def exists(self, key: str) -> bool:
        try:
            return self.get_metadata(key) is not None
        except (ClientError, BotoCoreError) as e:
            logger.warning("Could not check artifact %s: %s", key, e)
            return False

    def presign(self, key: str, ttl_seconds: int, now: Optional[datetime] = None) -> tuple[str, datetime]:
        """Presigned GET URL for *key* and its expiry time."""
        issued = now or datetime.now(timezone.utc)
        url = self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=ttl_seconds,
        )
        return url, issued + timedelta(seconds=ttl_seconds)

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
            logger.info("Deleted artifact %s", key)
        except (ClientError, BotoCoreError) as e:
            logger.warning("Could not delete artifact %s: %s", key, e)
