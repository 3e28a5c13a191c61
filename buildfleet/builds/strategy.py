"""Build strategy selection: local, remote or CI with one-level fallback.

Decision table (explicit override wins)::

    local_only / remote_only / ci  -> that strategy
    no target, or target == host    -> local
    target != host                  -> remote

A failed local build is retried once remotely when the coordinator answers
its liveness check and the caller has not disabled fallback. Remote is the
last tier: its failures propagate unchanged.
"""

from __future__ import annotations

import platform
from enum import Enum
from typing import Any, Optional, Protocol, Union

import structlog
from pydantic import BaseModel, Field

from buildfleet.builds.remote import RemoteBuildClient, RemoteBuildResult, validate_target_arch
from buildfleet.builds.request import BuildRequest
from buildfleet.config import FleetSettings
from buildfleet.errors import CompileError, FleetError, MissingConfigurationError, ValidationError

logger = structlog.get_logger(__name__)


class BuildStrategy(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    CI = "ci"


class StrategyOverride(str, Enum):
    LOCAL_ONLY = "local_only"
    REMOTE_ONLY = "remote_only"
    CI = "ci"


OVERRIDE_STRATEGIES = {
    StrategyOverride.LOCAL_ONLY: BuildStrategy.LOCAL,
    StrategyOverride.REMOTE_ONLY: BuildStrategy.REMOTE,
    StrategyOverride.CI: BuildStrategy.CI,
}


class LocalCompiler(Protocol):
    """Compiles on this host. Returns artifact paths keyed by name."""

    async def compile(self, version: str, source_path: str, target_arch: str) -> dict[str, str]: ...


class CIBuilder(Protocol):
    """Triggers a CI-hosted build (e.g. a workflow dispatch)."""

    async def trigger_build(self, request: BuildRequest) -> dict[str, Any]: ...


def get_host_architecture(system: Optional[str] = None, machine: Optional[str] = None) -> str:
    """Host architecture as ``<os>-<cpu>`` (e.g. ``linux-x64``, ``darwin-arm64``)."""
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()

    if system == "darwin":
        os_name = "darwin"
    elif system == "linux":
        os_name = "linux"
    elif system == "freebsd":
        os_name = "freebsd"
    elif system.startswith("win"):
        os_name = "win32"
    else:
        os_name = "unknown"

    if "x86_64" in machine or "amd64" in machine:
        cpu = "x64"
    elif "aarch64" in machine or "arm64" in machine:
        cpu = "arm64"
    elif "arm" in machine:
        cpu = "arm"
    else:
        cpu = "unknown"

    return f"{os_name}-{cpu}"


def determine_strategy(
    strategy: Union[StrategyOverride, str, None] = None,
    target_arch: Optional[str] = None,
    host_arch: Optional[str] = None,
) -> BuildStrategy:
    """Pick the build strategy for a request.

    Raises:
        ValidationError: ``strategy`` is not a known override.
    """
    if strategy is not None:
        try:
            return OVERRIDE_STRATEGIES[StrategyOverride(strategy)]
        except ValueError:
            raise ValidationError(
                "strategy", strategy, f"expected one of {[s.value for s in StrategyOverride]}"
            ) from None

    host_arch = host_arch or get_host_architecture()
    if target_arch is None or target_arch == host_arch:
        return BuildStrategy.LOCAL
    return BuildStrategy.REMOTE


class BuildOutcome(BaseModel):
    """What a strategy produced.

    Attributes:
        strategy_used: Strategy that produced the result.
        fallback_from: Set when the result came from a fallback attempt.
        artifacts: Artifact paths keyed by name.
        remote: Remote build details, for remote builds.
        ci: CI trigger response, for CI builds.
    """

    version: str
    target_arch: str
    strategy_used: BuildStrategy
    fallback_from: Optional[BuildStrategy] = None
    artifacts: dict[str, str] = Field(default_factory=dict)
    remote: Optional[RemoteBuildResult] = None
    ci: Optional[dict[str, Any]] = None


class StrategySelector:
    """Chooses and runs a build strategy.

    Args:
        settings: Fleet settings (``auto_fallback`` default).
        local_compiler: Executor for native builds.
        remote_client: Client for the remote coordinator.
        ci_builder: Optional CI trigger.
        host_arch: Override of the detected host architecture.
    """

    def __init__(
        self,
        settings: Optional[FleetSettings] = None,
        local_compiler: Optional[LocalCompiler] = None,
        remote_client: Optional[RemoteBuildClient] = None,
        ci_builder: Optional[CIBuilder] = None,
        host_arch: Optional[str] = None,
    ) -> None:
        self.settings = settings or FleetSettings()
        self.local_compiler = local_compiler
        self.remote_client = remote_client
        self.ci_builder = ci_builder
        self.host_arch = host_arch or get_host_architecture()
        self._executors = {
            BuildStrategy.LOCAL: self._run_local,
            BuildStrategy.REMOTE: self._run_remote,
            BuildStrategy.CI: self._run_ci,
        }

    def determine_strategy(
        self,
        strategy: Union[StrategyOverride, str, None] = None,
        target_arch: Optional[str] = None,
    ) -> BuildStrategy:
        return determine_strategy(strategy, target_arch, self.host_arch)

    async def build(
        self,
        version: str,
        source_path: str,
        target_arch: Optional[str] = None,
        strategy: Union[StrategyOverride, str, None] = None,
        plugins: Any = None,
        config: Optional[dict[str, Any]] = None,
        priority: Optional[str] = None,
        auto_fallback: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> BuildOutcome:
        """Build ``version`` with the selected strategy, falling back once."""
        if not version:
            raise ValidationError("version", version, "is required")
        if not source_path:
            raise ValidationError("source_path", source_path, "is required")

        chosen = self.determine_strategy(strategy, target_arch)
        opts = {
            "version": version,
            "source_path": source_path,
            "target_arch": target_arch,
            "plugins": plugins,
            "config": config,
            "priority": priority,
            "timeout": timeout,
        }

        await logger.ainfo(
            "smart_build_start", version=version, target_arch=target_arch, strategy=chosen.value
        )
        try:
            outcome = await self._executors[chosen](opts)
        except FleetError as e:
            await logger.awarning("smart_build_error", strategy=chosen.value, **e.to_dict())
            if chosen != BuildStrategy.LOCAL:
                raise
            return await self._fallback_to_remote(e, opts, auto_fallback)

        await logger.ainfo("smart_build_success", strategy=chosen.value, version=version)
        return outcome

    async def _fallback_to_remote(
        self,
        local_error: FleetError,
        opts: dict[str, Any],
        auto_fallback: Optional[bool],
    ) -> BuildOutcome:
        enabled = self.settings.auto_fallback if auto_fallback is None else auto_fallback
        if not enabled or self.remote_client is None:
            raise local_error
        if not await self.remote_client.coordinator_available():
            await logger.ainfo("fallback_skipped_coordinator_unreachable")
            raise local_error

        await logger.ainfo("local_build_fallback", error=str(local_error))
        outcome = await self._run_remote(opts)
        outcome.fallback_from = BuildStrategy.LOCAL
        await logger.ainfo("smart_build_success", strategy=BuildStrategy.REMOTE.value, fallback=True)
        return outcome

    # ── Executors ────────────────────────────────────────────────────

    async def _run_local(self, opts: dict[str, Any]) -> BuildOutcome:
        if self.local_compiler is None:
            raise MissingConfigurationError("local_compiler")
        target_arch = opts["target_arch"] or self.host_arch
        await logger.ainfo("building_locally", version=opts["version"], target_arch=target_arch)
        try:
            artifacts = await self.local_compiler.compile(opts["version"], opts["source_path"], target_arch)
        except FleetError as e:
            e.step = e.step or "compile"
            raise
        except Exception as e:
            raise CompileError(str(e), step="compile") from e
        return BuildOutcome(
            version=opts["version"],
            target_arch=target_arch,
            strategy_used=BuildStrategy.LOCAL,
            artifacts=dict(artifacts or {}),
        )

    async def _run_remote(self, opts: dict[str, Any]) -> BuildOutcome:
        if self.remote_client is None:
            raise MissingConfigurationError("coordinator_url")
        target_arch = opts["target_arch"] or self.host_arch
        await logger.ainfo("building_remotely", version=opts["version"], target_arch=target_arch)
        result = await self.remote_client.build_remote(
            version=opts["version"],
            target_arch=target_arch,
            source_path=opts["source_path"],
            plugins=opts["plugins"],
            config=opts["config"],
            priority=opts["priority"],
            timeout=opts["timeout"],
        )
        return BuildOutcome(
            version=opts["version"],
            target_arch=target_arch,
            strategy_used=BuildStrategy.REMOTE,
            artifacts={"binary": result.binary_path},
            remote=result,
        )

    async def _run_ci(self, opts: dict[str, Any]) -> BuildOutcome:
        if self.ci_builder is None:
            raise MissingConfigurationError("ci_builder")
        target_arch = validate_target_arch(opts["target_arch"] or self.host_arch)
        request = BuildRequest.create(
            version=opts["version"],
            target_arch=target_arch,
            plugins=opts["plugins"],
            config=opts["config"],
            priority=opts["priority"],
        )
        await logger.ainfo("building_with_ci", version=opts["version"], target_arch=target_arch)
        response = await self.ci_builder.trigger_build(request)
        return BuildOutcome(
            version=opts["version"],
            target_arch=target_arch,
            strategy_used=BuildStrategy.CI,
            ci=dict(response or {}),
        )

    # ── Capabilities ─────────────────────────────────────────────────

    async def build_capabilities(self) -> dict[str, Any]:
        """Summarise what each strategy can do from this host."""
        remote: dict[str, Any] = {"available": False, "coordinator_status": "unavailable"}
        if self.remote_client is not None:
            try:
                architectures = await self.remote_client.supported_architectures()
            except FleetError as e:
                await logger.awarning("remote_capabilities_unavailable", error=str(e))
            else:
                remote = {
                    "available": True,
                    "coordinator_status": "available",
                    "supported_architectures": architectures,
                }

        return {
            "host_architecture": self.host_arch,
            "local": {
                "available": self.local_compiler is not None,
                "native_architecture": self.host_arch,
                "supported_versions": ["3.x", "4.x"],
                "cross_compilation": False,
            },
            "remote": remote,
            "ci": {"available": self.ci_builder is not None},
            "recommended_strategy": {
                "native": BuildStrategy.LOCAL.value,
                "cross_platform": BuildStrategy.REMOTE.value,
                "ci": BuildStrategy.CI.value,
            },
        }
