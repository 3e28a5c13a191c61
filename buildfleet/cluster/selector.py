"""Node selection: pure scoring over registry snapshots.

Score = 0.6 * load headroom + 0.4 * success rate.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Optional

from buildfleet.cluster.models import BuildNode, NodeStatus
from buildfleet.errors import NoAvailableNodesError

LOAD_WEIGHT = 0.6
SUCCESS_WEIGHT = 0.4


def score_node(node: BuildNode) -> float:
    """Weighted load headroom plus historical success rate, in [0, 1]."""
    headroom = 1.0 - (node.current_jobs / node.max_concurrent)
    return headroom * LOAD_WEIGHT + node.success_rate * SUCCESS_WEIGHT


def required_capabilities(requirements: Optional[Mapping[str, Any]]) -> set[str]:
    if not requirements:
        return set()
    caps = requirements.get("capabilities") or []
    if isinstance(caps, str):
        caps = [caps]
    return set(caps)


def is_eligible(node: BuildNode, architecture: str, capabilities: set[str]) -> bool:
    return (
        node.architecture == architecture
        and node.status == NodeStatus.AVAILABLE
        and node.current_jobs < node.max_concurrent
        and capabilities.issubset(node.capabilities)
    )


def select_node(
    nodes: Iterable[BuildNode],
    architecture: str,
    requirements: Optional[Mapping[str, Any]] = None,
) -> BuildNode:
    """Pick the best eligible node for ``architecture``.

    Eligible nodes match the architecture, are AVAILABLE, have spare
    capacity and carry every capability in ``requirements["capabilities"]``.
    Ties on score go to the node with fewer current jobs, then to the
    smallest node id, so the result never depends on iteration order.

    Raises:
        NoAvailableNodesError: No node passes the filter.
    """
    caps = required_capabilities(requirements)
    candidates = [n for n in nodes if is_eligible(n, architecture, caps)]
    if not candidates:
        raise NoAvailableNodesError(architecture, sorted(caps))

    return min(candidates, key=lambda n: (-score_node(n), n.current_jobs, n.node_id))
