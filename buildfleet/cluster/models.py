"""Registry records: build nodes, their system stats, and in-flight jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from buildfleet.builds.request import BuildRequest


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeStatus(str, Enum):
    """Node lifecycle status.

    Attributes:
        AVAILABLE: Accepting jobs (subject to capacity).
        BUSY: Reported busy by the node itself.
        MAINTENANCE: Drained by an operator.
        OFFLINE: Heartbeat expired; only a fresh heartbeat revives it.
    """

    AVAILABLE = "available"
    BUSY = "busy"
    MAINTENANCE = "maintenance"
    OFFLINE = "offline"


class JobOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class BuildNode:
    """A single compilation node known to the registry.

    Attributes:
        node_id: Caller-supplied unique identifier.
        architecture: Target tag the node compiles for (e.g. "linux-x64").
        endpoint: Base URL used to hand jobs to the node.
        capabilities: Capability tags (e.g. "tailwind-v4").
        max_concurrent: Maximum number of simultaneous jobs.
        status: Current NodeStatus.
        current_jobs: Jobs in flight; never exceeds max_concurrent.
        registered_at: UTC timestamp of registration.
        last_heartbeat: UTC timestamp of most recent heartbeat.
        total_builds: Completed jobs (successes and failures).
        successful_builds: Completed jobs that succeeded.
        success_rate: successful_builds / total_builds, 1.0 before any build.
        average_build_time: Rolling mean job duration in seconds.
    """

    node_id: str
    architecture: str
    endpoint: str
    capabilities: list[str] = field(default_factory=list)
    max_concurrent: int = 1
    status: NodeStatus = NodeStatus.AVAILABLE
    current_jobs: int = 0
    registered_at: datetime = field(default_factory=utcnow)
    last_heartbeat: datetime = field(default_factory=utcnow)
    total_builds: int = 0
    successful_builds: int = 0
    success_rate: float = 1.0
    average_build_time: float = 0.0

    @property
    def has_capacity(self) -> bool:
        return self.current_jobs < self.max_concurrent

    def can_accept_job(self) -> bool:
        """Admission check: spare capacity and AVAILABLE status."""
        return self.has_capacity and self.status == NodeStatus.AVAILABLE

    def to_dict(self) -> dict[str, Any]:
        """Serialise to JSON-safe dictionary."""
        return {
            "node_id": self.node_id,
            "architecture": self.architecture,
            "endpoint": self.endpoint,
            "capabilities": list(self.capabilities),
            "max_concurrent": self.max_concurrent,
            "status": self.status.value,
            "current_jobs": self.current_jobs,
            "registered_at": self.registered_at.isoformat(),
            "last_heartbeat": self.last_heartbeat.isoformat(),
            "total_builds": self.total_builds,
            "successful_builds": self.successful_builds,
            "success_rate": self.success_rate,
            "average_build_time": self.average_build_time,
        }


@dataclass
class NodeStats:
    """System aggregates reported in heartbeat payloads."""

    node_id: str
    system_load: float = 0.0
    memory_usage: float = 0.0
    disk_space: Optional[float] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "system_load": self.system_load,
            "memory_usage": self.memory_usage,
            "disk_space": self.disk_space,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class ActiveJob:
    """A job handed to a node and not yet reported complete."""

    job_id: str
    node_id: str
    request: BuildRequest
    started_at: datetime


@dataclass(frozen=True)
class JobCompletion:
    """Inbound notice that a node finished a job.

    Delivered to :meth:`NodeRegistry.on_job_completed` by whatever transport
    the deployment wires up; the registry only consumes it.
    """

    job_id: str
    outcome: JobOutcome
    detail: Optional[str] = None
    node_id: Optional[str] = None
