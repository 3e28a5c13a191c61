"""Coordinator MCP tools: node registration, heartbeat, dispatch.

Build nodes call these tools over streamable-HTTP to register themselves and
send heartbeats; operators use the list/dispatch tools.

Usage::

    from buildfleet.cluster.coordinator_tools import register_coordinator_tools
    register_coordinator_tools(app, registry, dispatcher, token="shared-secret")
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from mcp.server.fastmcp import FastMCP

from buildfleet.builds.request import BuildRequest
from buildfleet.cluster.dispatcher import JobDispatcher
from buildfleet.cluster.registry import NodeRegistry
from buildfleet.errors import FleetError

logger = structlog.get_logger(__name__)


def register_coordinator_tools(
    app: FastMCP,
    registry: NodeRegistry,
    dispatcher: JobDispatcher,
    token: Optional[str] = None,
) -> None:
    """Register node management tools on the MCP server app.

    Args:
        app: The FastMCP application instance.
        registry: The NodeRegistry tracking build nodes.
        dispatcher: Dispatcher used by ``dispatch_build``.
        token: Shared token nodes must present. Defaults to
            ``settings.node_token``; empty leaves the tools open.
    """
    if token is None:
        token = registry.settings.node_token

    def _validate_token(provided: str) -> bool:
        if not token:
            return True
        return provided == token

    # ── Node → Coordinator tools ──────────────────────────────────

    @app.tool()
    async def node_register(
        node_id: str,
        architecture: str,
        endpoint: str,
        capabilities: list[str],
        max_concurrent: int = 1,
        auth_token: str = "",
    ) -> dict[str, Any]:
        """Register a build node with the coordinator.

        Args:
            node_id: Unique node identifier (e.g. "node-linux-x64-001")
            architecture: Architecture the node builds for (e.g. "linux-x64")
            endpoint: Base URL the coordinator uses to hand jobs to the node
            capabilities: Capability tags (e.g. ["tailwind-v3", "tailwind-v4"])
            max_concurrent: Maximum simultaneous jobs
            auth_token: Shared node token

        Returns:
            Registration confirmation or the validation error
        """
        if not _validate_token(auth_token):
            return {"error": "Invalid node token", "registered": False}

        try:
            registered_id = await registry.register(
                {
                    "node_id": node_id,
                    "architecture": architecture,
                    "endpoint": endpoint,
                    "capabilities": capabilities,
                    "max_concurrent": max_concurrent,
                }
            )
        except FleetError as e:
            return {"registered": False, **e.to_dict()}
        return {"registered": True, "node_id": registered_id}

    @app.tool()
    async def node_heartbeat(
        node_id: str,
        status: Optional[str] = None,
        current_jobs: Optional[int] = None,
        system_info: Optional[dict[str, float]] = None,
        auth_token: str = "",
    ) -> dict[str, Any]:
        """Report that a node is alive, with optional status and load.

        Args:
            node_id: The node's id
            status: available, busy, maintenance or offline
            current_jobs: Jobs currently running on the node
            system_info: Optional {"load", "memory", "disk"} figures
            auth_token: Shared node token

        Returns:
            Confirmation with current server time
        """
        if not _validate_token(auth_token):
            return {"error": "Invalid node token", "alive": False}

        status_info: dict[str, Any] = {}
        if status is not None:
            status_info["status"] = status
        if current_jobs is not None:
            status_info["current_jobs"] = current_jobs
        if system_info:
            status_info["system_info"] = system_info

        if not await registry.heartbeat(node_id, status_info):
            return {"alive": False, "error": f"Node {node_id} not found, re-register"}
        return {"alive": True, "server_time": datetime.now(timezone.utc).isoformat()}

    @app.tool()
    async def node_deregister(node_id: str, auth_token: str = "") -> dict[str, Any]:
        """Remove a node; its in-flight jobs are dropped from bookkeeping."""
        if not _validate_token(auth_token):
            return {"error": "Invalid node token"}
        removed = await registry.deregister(node_id)
        return {"deregistered": removed, "node_id": node_id}

    # ── Operator tools ────────────────────────────────────────────

    @app.tool()
    async def node_list(include_offline: bool = True) -> dict[str, Any]:
        """List nodes together with cluster health metrics."""
        nodes = registry.list_nodes(include_offline=include_offline)
        return {
            "nodes": [n.to_dict() for n in nodes],
            "cluster_health": registry.cluster_health(),
        }

    @app.tool()
    async def node_details(node_id: str) -> dict[str, Any]:
        """A node's record and its latest system stats."""
        node = registry.get_node(node_id)
        if not node:
            return {"error": f"Node {node_id} not found"}
        stats = registry.node_stats(node_id)
        return {**node.to_dict(), "stats": stats.to_dict() if stats else None}

    @app.tool()
    async def dispatch_build(
        version: str,
        target_arch: str,
        plugins: Optional[list[dict[str, str]]] = None,
        config: Optional[dict[str, Any]] = None,
        capabilities: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        """Send a build to the best available node for ``target_arch``.

        Returns:
            job_id and node_id, or the rejection reason
        """
        try:
            request = BuildRequest.create(
                version=version, target_arch=target_arch, plugins=plugins, config=config
            )
            dispatched = await dispatcher.dispatch(request, {"capabilities": capabilities or []})
        except FleetError as e:
            await logger.awarning("dispatch_build_rejected", **e.to_dict())
            return {"dispatched": False, **e.to_dict()}
        return {
            "dispatched": True,
            "job_id": dispatched.job_id,
            "node_id": dispatched.node_id,
            "source_checksum": request.source_checksum,
        }

    # ── MCP Resources ─────────────────────────────────────────────

    @app.resource("buildfleet://nodes")
    def get_nodes_resource() -> str:
        """All known nodes as JSON."""
        return json.dumps([n.to_dict() for n in registry.list_nodes()], indent=2)

    @app.resource("buildfleet://cluster-health")
    def get_cluster_health_resource() -> str:
        """Cluster-wide health metrics as JSON."""
        return json.dumps(registry.cluster_health(), indent=2)
