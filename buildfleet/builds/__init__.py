"""Build requests, the remote build client and strategy selection."""

from buildfleet.builds.remote import RemoteBuildClient, RemoteBuildResult
from buildfleet.builds.request import BuildRequest, PluginSpec, compute_source_checksum, normalize_plugins
from buildfleet.builds.strategy import (
    BuildOutcome,
    BuildStrategy,
    StrategyOverride,
    StrategySelector,
    determine_strategy,
    get_host_architecture,
)

__all__ = [
    "BuildOutcome",
    "BuildRequest",
    "BuildStrategy",
    "PluginSpec",
    "RemoteBuildClient",
    "RemoteBuildResult",
    "StrategyOverride",
    "StrategySelector",
    "compute_source_checksum",
    "determine_strategy",
    "get_host_architecture",
    "normalize_plugins",
]
