"""Build node cluster: registry, health sweep, selection and dispatch.

The coordinator keeps one ``NodeRegistry``; nodes register and heartbeat
into it, the ``HealthMonitor`` demotes silent nodes, and the
``JobDispatcher`` hands builds to the best eligible node.
"""

from buildfleet.cluster.dispatcher import Dispatch, JobDispatcher
from buildfleet.cluster.health import HealthMonitor
from buildfleet.cluster.models import ActiveJob, BuildNode, JobCompletion, JobOutcome, NodeStats, NodeStatus
from buildfleet.cluster.registry import NodeRegistry
from buildfleet.cluster.selector import score_node, select_node

__all__ = [
    "ActiveJob",
    "BuildNode",
    "Dispatch",
    "HealthMonitor",
    "JobCompletion",
    "JobDispatcher",
    "JobOutcome",
    "NodeRegistry",
    "NodeStats",
    "NodeStatus",
    "score_node",
    "select_node",
]
