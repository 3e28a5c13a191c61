"""Remote build client: submit, poll and retrieve against a build coordinator.

Usage::

    async with RemoteBuildClient(FleetSettings.from_env()) as client:
        result = await client.build_remote(
            version="4.1.13",
            target_arch="linux-x64",
            source_path="/tmp/tailwind-source",
            plugins=[{"name": "daisyui", "version": "^5.1.13"}],
        )

Pipeline steps (each failure is re-raised tagged with its step):
  1. ``validate``: options and configuration, before any network call.
  2. ``coordinator_available``: liveness check.
  3. ``create_build_request``: normalize plugins, compute the cache key.
  4. ``submit_build``: ``POST /builds``; 409 reuses the existing build id.
  5. ``wait_completion``: poll ``GET /builds/{id}`` until terminal or timeout.
  6. ``download_binary``: stream the artifact, verify, mark executable.

A caller that times out simply stops polling; no cancel request is sent, so
the coordinator may keep building.
"""

from __future__ import annotations

import asyncio
import os
import re
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from buildfleet.builds.request import BuildRequest
from buildfleet.config import FleetSettings
from buildfleet.errors import (
    BuildFailedError,
    BuildTimeoutError,
    CoordinatorUnavailableError,
    EmptyDownloadError,
    FleetError,
    HttpError,
    MissingConfigurationError,
    RequestFailedError,
    ValidationError,
)

logger = structlog.get_logger(__name__)

TARGET_ARCH_PATTERN = re.compile(r"^[a-z]+-[a-z0-9]+$")

BINARY_NAMES = {
    "linux-x64": "tailwindcss-linux-x64",
    "linux-arm64": "tailwindcss-linux-arm64",
    "darwin-x64": "tailwindcss-macos-x64",
    "darwin-arm64": "tailwindcss-macos-arm64",
    "win32-x64": "tailwindcss-windows-x64.exe",
}

TERMINAL_STATUSES = ("completed", "failed")


def binary_filename(target_arch: str) -> str:
    """Artifact file name for a target architecture."""
    return BINARY_NAMES.get(target_arch, f"tailwindcss-{target_arch}")


def validate_target_arch(target_arch: Optional[str]) -> str:
    if not target_arch:
        raise ValidationError("target_arch", target_arch, "is required")
    if not TARGET_ARCH_PATTERN.match(target_arch):
        raise ValidationError("target_arch", target_arch, "expected '<os>-<cpu>', e.g. 'linux-x64'")
    return target_arch


class RemoteBuildResult(BaseModel):
    """Outcome of a finished remote build."""

    version: str
    target_arch: str
    compilation_method: str = "remote"
    build_id: str
    binary_path: str
    source_checksum: str
    build_time_ms: Optional[float] = Field(default=None, description="Coordinator-reported build time")
    node_id: Optional[str] = Field(default=None, description="Node that ran the build")


class RemoteBuildClient:
    """Client for a remote build coordinator.

    Args:
        settings: Coordinator URL, API key, poll timeout/interval.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
        clock: Monotonic seconds source used by the poll loop.
        sleep: Coroutine used to wait between polls.
    """

    def __init__(
        self,
        settings: Optional[FleetSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or FleetSettings()
        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "RemoteBuildClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ── HTTP plumbing ────────────────────────────────────────────────

    @property
    def coordinator_url(self) -> str:
        url = self.settings.coordinator_url
        if not url:
            raise MissingConfigurationError("coordinator_url")
        return url.rstrip("/")

    def _require_credentials(self) -> None:
        if not self.settings.coordinator_url:
            raise MissingConfigurationError("coordinator_url")
        if not self.settings.api_key:
            raise MissingConfigurationError("api_key")

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.settings.api_key:
                headers["Authorization"] = f"Bearer {self.settings.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.coordinator_url,
                headers=headers,
                timeout=httpx.Timeout(self.settings.request_timeout_seconds),
                transport=self._transport,
            )
        return self._client

    def _is_coordinator_url(self, url: str) -> bool:
        """True for relative URLs and URLs on the coordinator's own origin."""
        target = httpx.URL(url)
        if target.is_relative_url:
            return True
        base = httpx.URL(self.coordinator_url)
        return (target.scheme, target.host, target.port) == (base.scheme, base.host, base.port)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_http_client()
        try:
            return await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise RequestFailedError(f"{self.coordinator_url}{path}", str(e)) from e

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    # ── Coordinator queries ──────────────────────────────────────────

    async def coordinator_available(self) -> bool:
        """Liveness check; False when unconfigured or unreachable, never raises."""
        if not self.settings.coordinator_url:
            return False
        try:
            client = await self._get_http_client()
            response = await client.get("/health", timeout=self.settings.health_check_timeout_seconds)
        except httpx.HTTPError as e:
            await logger.adebug("coordinator_check_failed", error=str(e))
            return False
        return response.status_code == 200

    async def supported_architectures(self) -> list[str]:
        response = await self._request("GET", "/architectures")
        body = self._json(response)
        if response.status_code != 200 or not isinstance(body, dict):
            raise HttpError(response.status_code, body, "/architectures")
        return list(body.get("architectures", []))

    async def supports_architecture(self, target_arch: str) -> bool:
        try:
            return target_arch in await self.supported_architectures()
        except FleetError as e:
            await logger.awarning("architectures_unavailable", error=str(e))
            return False

    async def queue_status(self) -> dict[str, Any]:
        response = await self._request("GET", "/queue/status")
        body = self._json(response)
        if response.status_code != 200:
            raise HttpError(response.status_code, body, "/queue/status")
        return body

    # ── Build protocol ───────────────────────────────────────────────

    async def submit_build(self, request: BuildRequest) -> str:
        """Submit a build; returns the new or already-existing build id."""
        await logger.ainfo(
            "remote_build_submitting",
            version=request.version,
            target_arch=request.target_arch,
            source_checksum=request.source_checksum,
        )
        response = await self._request("POST", "/builds", json=request.to_payload())
        body = self._json(response)

        if response.status_code in (200, 201) and isinstance(body, dict) and body.get("build_id"):
            await logger.ainfo(
                "remote_build_submitted",
                build_id=body["build_id"],
                queue_position=body.get("queue_position"),
                estimated_time=body.get("estimated_time"),
            )
            return str(body["build_id"])

        if response.status_code == 409 and isinstance(body, dict) and body.get("build_id"):
            await logger.ainfo("remote_build_cache_hit", build_id=body["build_id"])
            return str(body["build_id"])

        raise HttpError(response.status_code, body, "/builds")

    async def check_build_status(self, build_id: str) -> dict[str, Any]:
        path = f"/builds/{build_id}"
        response = await self._request("GET", path)
        body = self._json(response)
        if response.status_code != 200 or not isinstance(body, dict):
            raise HttpError(response.status_code, body, path)
        return body

    async def wait_for_completion(
        self,
        build_id: str,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> dict[str, Any]:
        """Poll until the build completes, fails, or ``timeout`` elapses.

        Query errors are logged and polling continues; only the overall
        timeout bounds them.

        Raises:
            BuildFailedError: Coordinator reported ``failed``.
            BuildTimeoutError: No terminal status within ``timeout`` seconds.
        """
        timeout = timeout if timeout is not None else self.settings.poll_timeout_seconds
        poll_interval = poll_interval if poll_interval is not None else self.settings.poll_interval_seconds
        started = self._clock()

        await logger.ainfo("remote_build_waiting", build_id=build_id, timeout=timeout)

        while True:
            elapsed = self._clock() - started
            if elapsed >= timeout:
                raise BuildTimeoutError(build_id, elapsed, timeout)

            try:
                status = await self.check_build_status(build_id)
            except FleetError as e:
                await logger.awarning("remote_build_status_error", build_id=build_id, error=str(e))
                await self._sleep(poll_interval)
                continue

            state = status.get("status")
            if state == "completed":
                await logger.ainfo("remote_build_completed", build_id=build_id)
                return status
            if state == "failed":
                raise BuildFailedError(build_id, str(status.get("error") or "unknown error"))

            await logger.ainfo(
                "remote_build_progress",
                build_id=build_id,
                status=state,
                progress=status.get("progress"),
            )
            await self._sleep(poll_interval)

    async def download_binary(
        self,
        build_result: dict[str, Any],
        target_arch: str,
        source_path: str,
    ) -> Path:
        """Stream the artifact to ``<source_path>/dist/<binary name>``.

        The API key is only sent when ``binary_url`` is on the coordinator's
        origin; other hosts (object storage, presigned links) get a plain
        request. A zero-byte or interrupted download is removed before raising.
        """
        binary_url = build_result.get("binary_url")
        if not binary_url:
            raise ValidationError("binary_url", binary_url, "completed build did not report one")

        output_dir = Path(source_path) / "dist"
        output_dir.mkdir(parents=True, exist_ok=True)
        output_path = output_dir / binary_filename(target_arch)

        await logger.ainfo("remote_binary_downloading", url=binary_url, path=str(output_path))

        if self._is_coordinator_url(binary_url):
            client = await self._get_http_client()
            external = None
        else:
            client = external = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.request_timeout_seconds),
                transport=self._transport,
            )
        try:
            async with client.stream("GET", binary_url) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise HttpError(response.status_code, body, binary_url)
                with open(output_path, "wb") as fh:
                    async for chunk in response.aiter_bytes():
                        fh.write(chunk)
        except httpx.HTTPError as e:
            output_path.unlink(missing_ok=True)
            raise RequestFailedError(binary_url, str(e)) from e
        except BaseException:
            output_path.unlink(missing_ok=True)
            raise
        finally:
            if external is not None:
                await external.aclose()

        size = output_path.stat().st_size
        if size == 0:
            output_path.unlink(missing_ok=True)
            raise EmptyDownloadError(str(output_path))

        os.chmod(output_path, 0o755)
        await logger.ainfo("remote_binary_downloaded", path=str(output_path), size=size)
        return output_path

    # ── Full pipeline ────────────────────────────────────────────────

    async def build_remote(
        self,
        version: str,
        target_arch: str,
        source_path: str,
        plugins: Any = None,
        config: Optional[dict[str, Any]] = None,
        priority: Optional[str] = None,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> RemoteBuildResult:
        """Run the full submit → poll → retrieve pipeline."""
        await logger.ainfo(
            "remote_build_start",
            version=version,
            target_arch=target_arch,
            coordinator=self.settings.coordinator_url,
        )

        step = "validate"
        try:
            if not version:
                raise ValidationError("version", version, "is required")
            if not source_path:
                raise ValidationError("source_path", source_path, "is required")
            validate_target_arch(target_arch)
            self._require_credentials()

            step = "coordinator_available"
            if not await self.coordinator_available():
                raise CoordinatorUnavailableError(self.coordinator_url)

            step = "create_build_request"
            request = BuildRequest.create(
                version=version,
                target_arch=target_arch,
                plugins=plugins,
                config=config,
                priority=priority,
            )

            step = "submit_build"
            build_id = await self.submit_build(request)

            step = "wait_completion"
            status = await self.wait_for_completion(build_id, timeout, poll_interval)

            step = "download_binary"
            binary_path = await self.download_binary(status, target_arch, source_path)
        except FleetError as e:
            if e.step is None:
                e.step = step
            await logger.aerror("remote_build_failed", **e.to_dict())
            raise

        build_seconds = status.get("build_time_seconds")
        result = RemoteBuildResult(
            version=version,
            target_arch=target_arch,
            build_id=build_id,
            binary_path=str(binary_path),
            source_checksum=request.source_checksum,
            build_time_ms=build_seconds * 1000 if build_seconds is not None else None,
            node_id=status.get("node_id"),
        )
        await logger.ainfo("remote_build_success", **result.model_dump())
        return result
