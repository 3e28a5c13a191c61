"""Node registry: coordinator-side tracking of build nodes and in-flight jobs.

The registry is the single owner of ``BuildNode``, ``NodeStats`` and
``ActiveJob`` records. Every mutation goes through one of its commands
(register, heartbeat, deregister, sweep, reserve/confirm/release, complete)
and runs under one ``asyncio.Lock``, so an admission check and the matching
``current_jobs`` increment can never interleave with another caller's.
Queries return copies; callers never hold a live record.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any, Optional

import structlog

from buildfleet.builds.request import BuildRequest
from buildfleet.cluster.models import (
    ActiveJob,
    BuildNode,
    JobCompletion,
    JobOutcome,
    NodeStats,
    NodeStatus,
    utcnow,
)
from buildfleet.cluster.selector import select_node
from buildfleet.config import FleetSettings
from buildfleet.errors import (
    DuplicateJobError,
    MissingFieldsError,
    NodeBusyError,
    NodeNotFoundError,
    ValidationError,
)

logger = structlog.get_logger(__name__)

REQUIRED_NODE_FIELDS = ("node_id", "architecture", "endpoint", "capabilities")


def _copy_node(node: BuildNode) -> BuildNode:
    return dataclasses.replace(node, capabilities=list(node.capabilities))


class NodeRegistry:
    """Serialized registry of build nodes.

    Args:
        settings: Fleet settings (heartbeat timeout is read from here).
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        settings: Optional[FleetSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or FleetSettings()
        self._clock = clock
        self._nodes: dict[str, BuildNode] = {}
        self._stats: dict[str, NodeStats] = {}
        # Keyed by (node_id, job_id): job ids are assigned per node.
        self._jobs: dict[tuple[str, str], ActiveJob] = {}
        self._lock = asyncio.Lock()

    # ── Registration ──────────────────────────────────────────────

    async def register(self, info: Mapping[str, Any]) -> str:
        """Register (or re-register) a node. Returns the caller-supplied node_id.

        Raises:
            MissingFieldsError: node_id, architecture, endpoint or
                capabilities absent or None.
            ValidationError: max_concurrent is not a positive integer.
        """
        missing = [f for f in REQUIRED_NODE_FIELDS if info.get(f) is None]
        if missing:
            raise MissingFieldsError(missing)

        max_concurrent = info.get("max_concurrent", 1)
        if not isinstance(max_concurrent, int) or isinstance(max_concurrent, bool) or max_concurrent < 1:
            raise ValidationError("max_concurrent", max_concurrent, "must be a positive integer")

        node_id = str(info["node_id"])
        async with self._lock:
            now = self._clock()
            replaced = node_id in self._nodes
            self._nodes[node_id] = BuildNode(
                node_id=node_id,
                architecture=str(info["architecture"]),
                endpoint=str(info["endpoint"]).rstrip("/"),
                capabilities=list(info["capabilities"]),
                max_concurrent=max_concurrent,
                registered_at=now,
                last_heartbeat=now,
            )
            self._stats[node_id] = NodeStats(node_id=node_id)
            await logger.ainfo(
                "node_registered",
                node_id=node_id,
                architecture=info["architecture"],
                max_concurrent=max_concurrent,
                replaced=replaced,
            )
        return node_id

    async def deregister(self, node_id: str) -> bool:
        """Remove a node, its stats and its jobs. Returns True if it existed.

        Jobs bound to the node are dropped from bookkeeping; the node itself
        is not contacted.
        """
        async with self._lock:
            if node_id not in self._nodes:
                return False
            del self._nodes[node_id]
            self._stats.pop(node_id, None)
            dropped = [key for key in self._jobs if key[0] == node_id]
            for key in dropped:
                del self._jobs[key]
            await logger.ainfo("node_deregistered", node_id=node_id, dropped_jobs=len(dropped))
            return True

    # ── Heartbeat / health ────────────────────────────────────────

    async def heartbeat(self, node_id: str, status_info: Optional[Mapping[str, Any]] = None) -> bool:
        """Refresh a node's heartbeat and apply any reported state.

        ``status_info`` may carry ``status``, ``current_jobs`` and
        ``system_info`` (``load``, ``memory``, ``disk``). Returns False for
        an unknown node, which is logged and otherwise ignored.
        """
        status_info = status_info or {}
        async with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                await logger.awarning("heartbeat_unknown_node", node_id=node_id)
                return False

            now = self._clock()
            node.last_heartbeat = now

            if "status" in status_info:
                try:
                    node.status = NodeStatus(status_info["status"])
                except ValueError:
                    await logger.awarning(
                        "heartbeat_invalid_status",
                        node_id=node_id,
                        status=status_info["status"],
                    )

            if status_info.get("current_jobs") is not None:
                try:
                    reported = int(status_info["current_jobs"])
                except (TypeError, ValueError):
                    await logger.awarning(
                        "heartbeat_invalid_current_jobs",
                        node_id=node_id,
                        current_jobs=status_info["current_jobs"],
                    )
                else:
                    node.current_jobs = max(0, min(reported, node.max_concurrent))

            system_info = status_info.get("system_info")
            if system_info:
                stats = self._stats.setdefault(node_id, NodeStats(node_id=node_id))
                stats.system_load = system_info.get("load", stats.system_load)
                stats.memory_usage = system_info.get("memory", stats.memory_usage)
                stats.disk_space = system_info.get("disk", stats.disk_space)
                stats.updated_at = now
            return True

    async def sweep_stale(self) -> list[str]:
        """Mark nodes whose heartbeat is older than the timeout as offline.

        Fresh nodes are untouched and offline nodes are never revived here.
        Returns the ids that transitioned to offline on this sweep.
        """
        timeout = self.settings.heartbeat_timeout_seconds
        async with self._lock:
            now = self._clock()
            newly_offline = []
            for node_id, node in self._nodes.items():
                silent_for = (now - node.last_heartbeat).total_seconds()
                if silent_for > timeout and node.status != NodeStatus.OFFLINE:
                    node.status = NodeStatus.OFFLINE
                    newly_offline.append(node_id)
                    await logger.awarning(
                        "node_marked_offline",
                        node_id=node_id,
                        last_heartbeat_ago=silent_for,
                    )
            return newly_offline

    # ── Job bookkeeping ───────────────────────────────────────────

    async def reserve_slot(self, node_id: str) -> BuildNode:
        """Admission control: claim one job slot on ``node_id``.

        Check and increment happen in one critical section. Returns a copy
        of the node after the increment.

        Raises:
            NodeNotFoundError: Unknown node.
            NodeBusyError: Node is full or not AVAILABLE. Nothing changes.
        """
        async with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise NodeNotFoundError(node_id)
            if not node.can_accept_job():
                raise NodeBusyError(node_id, node.current_jobs, node.max_concurrent, node.status.value)
            node.current_jobs += 1
            return _copy_node(node)

    async def release_slot(self, node_id: str) -> None:
        """Undo a reservation whose hand-off failed."""
        async with self._lock:
            node = self._nodes.get(node_id)
            if node is not None:
                node.current_jobs = max(0, node.current_jobs - 1)

    async def confirm_job(self, job_id: str, node_id: str, request: BuildRequest) -> Optional[ActiveJob]:
        """Record a job the node accepted.

        Returns None (and records nothing) if the node was deregistered
        while the hand-off was in flight.

        Raises:
            DuplicateJobError: The node already has ``job_id`` in flight. The
                reservation is released and the existing job is kept.
        """
        async with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                await logger.awarning("job_confirm_node_gone", job_id=job_id, node_id=node_id)
                return None
            key = (node_id, job_id)
            if key in self._jobs:
                node.current_jobs = max(0, node.current_jobs - 1)
                await logger.awarning("job_id_reused", job_id=job_id, node_id=node_id)
                raise DuplicateJobError(node_id, job_id)
            job = ActiveJob(job_id=job_id, node_id=node_id, request=request, started_at=self._clock())
            self._jobs[key] = job
            await logger.ainfo("job_started", job_id=job_id, node_id=node_id)
            return job

    async def complete_job(
        self,
        job_id: str,
        outcome: JobOutcome,
        node_id: Optional[str] = None,
    ) -> Optional[BuildNode]:
        """Fold a completion into the owning node's rolling statistics.

        Without ``node_id`` the job id must be unique across nodes; a
        notice matching jobs on several nodes is logged and ignored.
        Unknown (duplicate or late) job ids are logged and ignored too.
        Returns a copy of the updated node, or None when nothing changed.
        """
        async with self._lock:
            if node_id is not None:
                keys = [(node_id, job_id)] if (node_id, job_id) in self._jobs else []
            else:
                keys = [key for key in self._jobs if key[1] == job_id]
            if not keys:
                await logger.awarning("completion_unknown_job", job_id=job_id, node_id=node_id)
                return None
            if len(keys) > 1:
                await logger.awarning(
                    "completion_ambiguous_job",
                    job_id=job_id,
                    node_ids=sorted(key[0] for key in keys),
                )
                return None
            job = self._jobs.pop(keys[0])

            duration = (self._clock() - job.started_at).total_seconds()
            node = self._nodes.get(job.node_id)
            if node is None:
                return None

            previous_total = node.total_builds
            node.total_builds = previous_total + 1
            node.average_build_time = (
                node.average_build_time * previous_total + duration
            ) / node.total_builds
            if outcome == JobOutcome.SUCCESS:
                node.successful_builds += 1
            node.success_rate = node.successful_builds / node.total_builds
            node.current_jobs = max(0, node.current_jobs - 1)

            await logger.ainfo(
                "job_completed",
                job_id=job_id,
                node_id=node.node_id,
                outcome=outcome.value,
                duration_seconds=duration,
            )
            return _copy_node(node)

    async def on_job_completed(self, event: JobCompletion) -> Optional[BuildNode]:
        """Event-consumer entry point for completion notices."""
        return await self.complete_job(event.job_id, event.outcome, event.node_id)

    # ── Queries ───────────────────────────────────────────────────

    def list_nodes(self, *, include_offline: bool = True) -> list[BuildNode]:
        """Copies of all nodes, optionally without offline ones."""
        return [
            _copy_node(n)
            for n in self._nodes.values()
            if include_offline or n.status != NodeStatus.OFFLINE
        ]

    def get_node(self, node_id: str) -> Optional[BuildNode]:
        node = self._nodes.get(node_id)
        return _copy_node(node) if node else None

    def node_stats(self, node_id: str) -> Optional[NodeStats]:
        stats = self._stats.get(node_id)
        return dataclasses.replace(stats) if stats else None

    def active_jobs(self) -> list[ActiveJob]:
        return list(self._jobs.values())

    def find_available_node(
        self,
        architecture: str,
        requirements: Optional[Mapping[str, Any]] = None,
    ) -> BuildNode:
        """Best eligible node for ``architecture`` (advisory; see reserve_slot).

        Raises:
            NoAvailableNodesError: No node qualifies.
        """
        return select_node(self.list_nodes(), architecture, requirements)

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    def cluster_health(self) -> dict[str, Any]:
        """Return cluster-wide health metrics."""
        nodes = list(self._nodes.values())
        online = [n for n in nodes if n.status != NodeStatus.OFFLINE]
        capacity = sum(n.max_concurrent for n in online)
        in_flight = sum(n.current_jobs for n in online)
        return {
            "total_nodes": len(nodes),
            "online_nodes": len(online),
            "by_status": {s.value: sum(1 for n in nodes if n.status == s) for s in NodeStatus},
            "architectures": sorted({n.architecture for n in online}),
            "capacity": capacity,
            "current_jobs": in_flight,
            "active_jobs": len(self._jobs),
            "utilisation": in_flight / capacity if capacity else 0.0,
        }
