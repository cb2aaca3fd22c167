"""
Shared pytest fixtures for iso_orchestrator tests.

No cloud access: the compute API is a recording fake, the object store is a
dict behind the subset of the boto3 S3 client interface the orchestrator
uses, and the repository is the in-memory implementation.  Time is driven
explicitly through ``FakeClock``.
"""
import io
from datetime import datetime, timedelta, timezone

import pytest
from botocore.exceptions import ClientError

from iso_orchestrator.core.provisioner import WorkerState
from iso_orchestrator.core.service import Orchestrator
from iso_orchestrator.io.artifact_store import ArtifactStore
from iso_orchestrator.io.repository import InMemoryBuildRepository
from iso_orchestrator.io.schema import StatusReport
from iso_orchestrator.io.status_channel import StatusChannel
from iso_orchestrator.policy.errors import ProvisioningFailed
from iso_orchestrator.policy.profile import OrchestratorProfile

BUCKET = "test-downloads"
T0 = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3Client:
    """Dict-backed stand-in for the boto3 S3 client calls we make."""

    def __init__(self):
        self.objects: dict[tuple[str, str], bytes] = {}
        self.deleted: list[str] = []

    def put_object(self, Bucket, Key, Body, ContentType=None):
        self.objects[(Bucket, Key)] = Body if isinstance(Body, bytes) else Body.encode("utf-8")
        return {}

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise _client_error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}

    def head_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise _client_error("404", "HeadObject")
        return {"ContentLength": len(self.objects[(Bucket, Key)]), "ContentType": "application/octet-stream"}

    def delete_object(self, Bucket, Key):
        self.objects.pop((Bucket, Key), None)
        self.deleted.append(Key)
        return {}

    def head_bucket(self, Bucket):
        return {}

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        return f"https://s3.test/{Params['Bucket']}/{Params['Key']}?X-Amz-Expires={ExpiresIn}&sig={len(self.deleted)}"


class FakeProvisioner:
    """Recording compute API double with the WorkerProvisioner interface."""

    def __init__(self):
        self.created: list[str] = []
        self.user_data: dict[str, str] = {}
        self.terminated: list[str] = []
        self.states: dict[str, WorkerState] = {}
        self.fail_with: str | None = None
        self.on_provision = None

    def provision(self, build, user_data):
        if self.fail_with:
            raise ProvisioningFailed(self.fail_with)
        if self.on_provision is not None:
            self.on_provision(build)
        worker_ref = f"i-{len(self.created) + 1:08d}"
        self.created.append(worker_ref)
        self.user_data[build.build_id] = user_data
        self.states[worker_ref] = WorkerState.RUNNING
        return worker_ref

    def terminate(self, worker_ref):
        self.terminated.append(worker_ref)
        self.states[worker_ref] = WorkerState.GONE
        return True

    def describe(self, worker_ref):
        return self.states.get(worker_ref, WorkerState.GONE)

    def check_connection(self):
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def s3():
    return FakeS3Client()


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def repository():
    return InMemoryBuildRepository()


@pytest.fixture
def profile():
    return OrchestratorProfile.v1()


@pytest.fixture
def status_channel(s3, profile):
    return StatusChannel(s3, BUCKET, profile.status_prefix)


@pytest.fixture
def artifact_store(s3, profile):
    return ArtifactStore(s3, BUCKET, profile.artifact_prefix)


@pytest.fixture
def orchestrator(repository, provisioner, status_channel, artifact_store, profile, clock):
    return Orchestrator(
        repository=repository,
        provisioner=provisioner,
        status_channel=status_channel,
        artifact_store=artifact_store,
        profile=profile,
        pipeline_command='log "pipeline"',
        clock=clock,
    )


@pytest.fixture
def report_writer(status_channel, clock):
    """Write a worker status report stamped with the current fake time."""

    def _write(build_id, stage, progress, message="", artifact=None):
        status_channel.write(
            build_id,
            StatusReport(
                stage=stage,
                progress=progress,
                message=message,
                timestamp=clock(),
                artifact=artifact,
            ),
        )

    return _write


@pytest.fixture
def running_build(orchestrator):
    """Submit and dispatch a build; return its bound record."""

    def _start(services=("openwebui",), models=(), requester="alice", **kwargs):
        record = orchestrator.submit(
            services=list(services), models=list(models), requester=requester, **kwargs
        )
        return orchestrator.dispatch(record.build_id)

    return _start
