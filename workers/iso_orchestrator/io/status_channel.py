"""Status channel: one overwritten JSON object per build in the object store.

Workers write ``{stage, progress, message, timestamp}`` to
``<prefix>/<build_id>.json``; the orchestrator and external pollers only read
it.  There is no connection between worker and orchestrator: a missing object
simply means the worker has not reported yet.
"""

import json
import logging
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from iso_orchestrator.io.s3 import is_not_found
from iso_orchestrator.io.schema import BuildRecord, BuildStatus, StatusReport

logger = logging.getLogger(__name__)


class StatusChannel:
    """Reader/writer for per-build status objects."""

    def __init__(self, s3_client, bucket: str, prefix: str = "build-status"):
        """Initialize the channel.

        Args:
            s3_client: boto3 S3 client
            bucket: Bucket holding status objects
            prefix: Key prefix for status objects
        """
        self._client = s3_client
        self.bucket = bucket
        self.prefix = prefix.strip("/")

    def key_for(self, build_id: str) -> str:
        return f"{self.prefix}/{build_id}.json"

    def coordinates(self, build_id: str) -> dict:
        """Where a worker must write its status (part of the startup payload)."""
        return {"bucket": self.bucket, "key": self.key_for(build_id)}

    def read(self, build_id: str) -> Optional[StatusReport]:
        """Return the latest report, or ``None`` if absent or unreadable."""
        key = self.key_for(build_id)
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            body = response["Body"].read()
        except ClientError as e:
            if is_not_found(e):
                return None
            logger.warning("Failed to read status object %s: %s", key, e)
            return None
        except BotoCoreError as e:
            logger.warning("Status channel unreachable for %s: %s", key, e)
            return None

        try:
            return StatusReport.model_validate(json.loads(body))
        except (ValueError, ValidationError) as e:
            logger.warning("Discarding malformed status object %s: %s", key, e)
            return None

    def write(self, build_id: str, report: StatusReport) -> None:
        self._client.put_object(
            Bucket=self.bucket,
            Key=self.key_for(build_id),
            Body=report.model_dump_json().encode("utf-8"),
            ContentType="application/json",
        )

    def delete(self, build_id: str) -> None:
        """Remove a build's status object; missing objects are fine."""
        try:
            self._client.delete_object(Bucket=self.bucket, Key=self.key_for(build_id))
        except (ClientError, BotoCoreError) as e:
            logger.warning("Could not delete status object for %s: %s", build_id, e)

    def check_connection(self) -> bool:
        try:
            self._client.head_bucket(Bucket=self.bucket)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error("Status bucket check failed: %s", e)
            return False


def effective_status(record: BuildRecord, report: Optional[StatusReport]) -> BuildStatus:
    """Status a reader should assume for *record* given the channel contents.

    With no report yet, a build without a worker reads as ``queued`` and one
    with a worker as ``provisioning``.
    """
    if report is None and record.status in (BuildStatus.QUEUED, BuildStatus.PROVISIONING):
        return BuildStatus.PROVISIONING if record.worker_ref else BuildStatus.QUEUED
    return record.status
