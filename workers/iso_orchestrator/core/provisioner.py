"""EC2 worker provisioner: one ephemeral instance per build.

``provision`` creates the instance with the rendered startup script as user
data and returns its instance id.  ``terminate`` is best-effort and
idempotent.  Every call goes through a botocore client configured with short
timeouts and a single attempt: a slow or exhausted compute API surfaces as a
provisioning failure instead of an unbounded wait.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from iso_orchestrator.io.schema import BuildRecord
from iso_orchestrator.policy.errors import ProvisioningFailed

logger = logging.getLogger(__name__)

INSTANCE_NOT_FOUND_CODES = frozenset({"InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"})


class WorkerState(str, Enum):
    """Coarse worker state as seen by the orchestrator."""
    RUNNING = "running"
    STOPPED = "stopped"
    GONE = "gone"
    UNKNOWN = "unknown"


_EC2_STATE_MAP = {
    "pending": WorkerState.RUNNING,
    "running": WorkerState.RUNNING,
    "stopping": WorkerState.STOPPED,
    "stopped": WorkerState.STOPPED,
    "shutting-down": WorkerState.GONE,
    "terminated": WorkerState.GONE,
}


@dataclass
class ComputeConfig:
    """Instance shape and placement for build workers."""
    region: str = "us-west-2"
    ami_id: str = ""
    instance_type: str = "m6i.4xlarge"
    gpu_instance_type: str = "g5.4xlarge"
    root_volume_gb: int = 500
    subnet_id: Optional[str] = None
    security_group_ids: list[str] = field(default_factory=list)
    instance_profile: Optional[str] = None
    environment: str = "development"
    name_prefix: str = "iso-build"
    connect_timeout: float = 10.0
    read_timeout: float = 60.0


def build_ec2_client(config: ComputeConfig):
    return boto3.client(
        "ec2",
        region_name=config.region,
        config=Config(
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            retries={"max_attempts": 1, "mode": "standard"},
        ),
    )


class WorkerProvisioner:
    """Creates, inspects and destroys build workers."""

    def __init__(self, ec2_client, config: ComputeConfig):
        """Initialize provisioner.

        Args:
            ec2_client: boto3 EC2 client (see ``build_ec2_client``)
            config: Instance shape and placement
        """
        self._client = ec2_client
        self.config = config

    def worker_name(self, build_id: str) -> str:
        return f"{self.config.name_prefix}-{build_id[:8]}"

    def _instance_request(self, build: BuildRecord, user_data: str) -> dict:
        cfg = self.config
        instance_type = cfg.gpu_instance_type if build.requested_config.gpu else cfg.instance_type
        request = {
            "ImageId": cfg.ami_id,
            "InstanceType": instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "UserData": user_data,
            "InstanceInitiatedShutdownBehavior": "terminate",
            "ClientToken": build.build_id,
            "BlockDeviceMappings": [
                {
                    "DeviceName": "/dev/sda1",
                    "Ebs": {
                        "VolumeSize": cfg.root_volume_gb,
                        "VolumeType": "gp3",
                        "DeleteOnTermination": True,
                    },
                }
            ],
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": [
                        {"Key": "Name", "Value": self.worker_name(build.build_id)},
                        {"Key": "purpose", "Value": "iso-builder"},
                        {"Key": "build-id", "Value": build.build_id},
                        {"Key": "environment", "Value": cfg.environment},
                    ],
                }
            ],
        }
        if cfg.subnet_id:
            request["SubnetId"] = cfg.subnet_id
        if cfg.security_group_ids:
            request["SecurityGroupIds"] = list(cfg.security_group_ids)
        if cfg.instance_profile:
            request["IamInstanceProfile"] = {"Name": cfg.instance_profile}
        return request

    def provision(self, build: BuildRecord, user_data: str) -> str:
        """Start one worker for *build* and return its instance id.

        ``ClientToken`` is the build id, so a duplicated request for the same
        build cannot start a second instance.

        Raises:
            ProvisioningFailed: on any compute API error or timeout (no retry)
        """
        name = self.worker_name(build.build_id)
        logger.info("Creating worker %s for build %s", name, build.build_id)
        try:
            response = self._client.run_instances(**self._instance_request(build, user_data))
        except (ClientError, BotoCoreError) as e:
            logger.error("Worker creation failed for build %s: %s", build.build_id, e)
            raise ProvisioningFailed(f"Could not create worker: {e}") from e

        instances = response.get("Instances") or []
        if not instances:
            raise ProvisioningFailed("Compute API returned no instance")
        instance_id = instances[0]["InstanceId"]
        logger.info("Worker %s created as %s", name, instance_id)
        return instance_id

    def terminate(self, worker_ref: str) -> bool:
        """Best-effort, idempotent teardown.  Never raises.

        Returns:
            True if the instance is gone or termination was accepted
        """
        try:
            self._client.terminate_instances(InstanceIds=[worker_ref])
            logger.info("Termination issued for worker %s", worker_ref)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in INSTANCE_NOT_FOUND_CODES:
                logger.info("Worker %s already gone", worker_ref)
                return True
            logger.warning("Failed to terminate worker %s: %s", worker_ref, e)
            return False
        except BotoCoreError as e:
            logger.warning("Failed to terminate worker %s: %s", worker_ref, e)
            return False

    def describe(self, worker_ref: str) -> WorkerState:
        """Current coarse state of a worker; ``UNKNOWN`` if the API fails."""
        try:
            response = self._client.describe_instances(InstanceIds=[worker_ref])
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in INSTANCE_NOT_FOUND_CODES:
                return WorkerState.GONE
            logger.debug("describe_instances failed for %s: %s", worker_ref, e)
            return WorkerState.UNKNOWN
        except BotoCoreError as e:
            logger.debug("describe_instances failed for %s: %s", worker_ref, e)
            return WorkerState.UNKNOWN

        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                state = instance.get("State", {}).get("Name", "")
                return _EC2_STATE_MAP.get(state, WorkerState.UNKNOWN)
        return WorkerState.GONE

    def check_connection(self) -> bool:
        try:
            self._client.describe_instances(MaxResults=5)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error("Compute API check failed: %s", e)
            return False
