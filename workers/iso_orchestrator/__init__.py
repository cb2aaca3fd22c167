"""
iso_orchestrator: custom installation image build orchestration

Admits build requests, provisions one ephemeral worker per build, follows
worker progress through an out-of-band status channel, terminates stalled or
runaway builds and hands back expiring download grants.

The worker-side image pipeline is opaque: it is started through the
startup payload and only observed through its status records.
"""

__version__ = "1.0.0"
ORCHESTRATOR_NAME = "iso_orchestrator"
STATUS_SCHEMA_VERSION = "v1"
