"""Tests for the remote build client protocol (submit → poll → retrieve)."""

import json
import os
from pathlib import Path
from typing import Any

import httpx
import pytest

from buildfleet.builds.remote import RemoteBuildClient, binary_filename
from buildfleet.builds.request import BuildRequest
from buildfleet.config import FleetSettings
from buildfleet.errors import (
    BuildFailedError,
    BuildTimeoutError,
    CoordinatorUnavailableError,
    EmptyDownloadError,
    HttpError,
    MissingConfigurationError,
    ValidationError,
)


class PollClock:
    """Monotonic clock that only moves when the poll loop sleeps."""

    def __init__(self) -> None:
        self.t = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds


class FakeCoordinator:
    """In-memory coordinator behind an httpx.MockTransport."""

    def __init__(self) -> None:
        self.healthy = True
        self.submit_status = 201
        self.statuses: list[Any] = [{"status": "completed"}]
        self.binary = b"\x7fELF fake tailwind binary"
        self.binary_status = 200
        self.requests: list[httpx.Request] = []
        self.submitted: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/health"):
            return httpx.Response(200 if self.healthy else 503, json={"status": "ok"})
        if path.endswith("/architectures"):
            return httpx.Response(200, json={"architectures": ["linux-x64", "darwin-arm64"]})
        if path.endswith("/queue/status"):
            return httpx.Response(200, json={"queued": 2, "running": 1})
        if path.endswith("/builds") and request.method == "POST":
            self.submitted.append(json.loads(request.content))
            return httpx.Response(
                self.submit_status,
                json={"build_id": "b-123", "queue_position": 1, "estimated_time": 90},
            )
        if "/builds/" in path:
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            if isinstance(status, Exception):
                raise status
            if isinstance(status, int):
                return httpx.Response(status, json={"error": "oops"})
            body = {"binary_url": "http://artifacts.test/b-123/bin", **status}
            return httpx.Response(200, json=body)
        if path.endswith("/bin"):
            return httpx.Response(self.binary_status, content=self.binary)
        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def coordinator() -> FakeCoordinator:
    """Create an in-memory coordinator."""
    return FakeCoordinator()


@pytest.fixture
def poll_clock() -> PollClock:
    """Create a clock that advances only on sleep."""
    return PollClock()


@pytest.fixture
def client(settings: FleetSettings, coordinator: FakeCoordinator, poll_clock: PollClock) -> RemoteBuildClient:
    """Create a RemoteBuildClient wired to the fake coordinator."""
    return RemoteBuildClient(
        settings,
        transport=httpx.MockTransport(coordinator),
        clock=poll_clock,
        sleep=poll_clock.sleep,
    )


def make_request() -> BuildRequest:
    return BuildRequest.create(version="4.1.13", target_arch="linux-x64", plugins=["daisyui"])


class TestCoordinatorQueries:
    """Test coordinator liveness and query endpoints."""

    @pytest.mark.asyncio
    async def test_coordinator_available(self, client: RemoteBuildClient, coordinator: FakeCoordinator) -> None:
        """Test the liveness check follows /health."""
        assert await client.coordinator_available() is True
        coordinator.healthy = False
        assert await client.coordinator_available() is False

    @pytest.mark.asyncio
    async def test_requests_use_base_url_prefix(self, client: RemoteBuildClient, coordinator: FakeCoordinator) -> None:
        """Test requests keep the coordinator's path prefix."""
        await client.coordinator_available()
        assert str(coordinator.requests[0].url) == "http://coordinator.test/api/v1/health"

    @pytest.mark.asyncio
    async def test_unconfigured_coordinator_is_unavailable(self) -> None:
        """Test an unconfigured client reports unavailable."""
        assert await RemoteBuildClient(FleetSettings()).coordinator_available() is False

    @pytest.mark.asyncio
    async def test_unreachable_coordinator_is_unavailable(self, settings: FleetSettings) -> None:
        """Test connection errors report unavailable instead of raising."""
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused")

        client = RemoteBuildClient(settings, transport=httpx.MockTransport(refuse))
        assert await client.coordinator_available() is False
        assert await client.supports_architecture("linux-x64") is False

    @pytest.mark.asyncio
    async def test_architectures_and_queue(self, client: RemoteBuildClient) -> None:
        """Test the architectures and queue endpoints."""
        assert await client.supported_architectures() == ["linux-x64", "darwin-arm64"]
        assert await client.supports_architecture("darwin-arm64") is True
        assert await client.supports_architecture("win32-x64") is False
        assert await client.queue_status() == {"queued": 2, "running": 1}

    @pytest.mark.asyncio
    async def test_requests_carry_bearer_token(self, client: RemoteBuildClient, coordinator: FakeCoordinator) -> None:
        """Test coordinator requests carry the API key."""
        await client.queue_status()
        assert coordinator.requests[0].headers["authorization"] == "Bearer test-key"


class TestSubmit:
    """Test build submission."""

    @pytest.mark.asyncio
    async def test_created(self, client: RemoteBuildClient, coordinator: FakeCoordinator) -> None:
        """Test a new build returns its id."""
        request = make_request()
        assert await client.submit_build(request) == "b-123"
        assert coordinator.submitted[0]["source_checksum"] == request.source_checksum

    @pytest.mark.asyncio
    async def test_conflict_reuses_existing_build(self, client: RemoteBuildClient, coordinator: FakeCoordinator) -> None:
        """Test a 409 reuses the existing build id."""
        coordinator.submit_status = 409
        assert await client.submit_build(make_request()) == "b-123"

    @pytest.mark.asyncio
    async def test_other_status_is_http_error(self, client: RemoteBuildClient, coordinator: FakeCoordinator) -> None:
        """Test other statuses raise HttpError with the body."""
        coordinator.submit_status = 422
        with pytest.raises(HttpError) as exc:
            await client.submit_build(make_request())
        assert exc.value.status_code == 422
        assert exc.value.body["build_id"] == "b-123"


class TestPolling:
    """Test waiting for a build to finish."""

    @pytest.mark.asyncio
    async def test_polls_until_completed(
        self, client: RemoteBuildClient, coordinator: FakeCoordinator, poll_clock: PollClock
    ) -> None:
        """Test polling stops at completed."""
        coordinator.statuses = [
            {"status": "queued"},
            {"status": "running", "progress": 40},
            {"status": "completed", "build_time_seconds": 95, "node_id": "node-7"},
        ]
        result = await client.wait_for_completion("b-123")

        assert result["status"] == "completed"
        assert result["node_id"] == "node-7"
        assert poll_clock.sleeps == [5.0, 5.0]

    @pytest.mark.asyncio
    async def test_failed_build(self, client: RemoteBuildClient, coordinator: FakeCoordinator) -> None:
        """Test a failed status raises BuildFailedError."""
        coordinator.statuses = [{"status": "failed", "error": "npm install exited 1"}]
        with pytest.raises(BuildFailedError) as exc:
            await client.wait_for_completion("b-123")
        assert exc.value.message == "npm install exited 1"
        assert exc.value.build_id == "b-123"

    @pytest.mark.asyncio
    async def test_transient_errors_keep_polling(
        self, client: RemoteBuildClient, coordinator: FakeCoordinator, poll_clock: PollClock
    ) -> None:
        """Test query errors do not stop polling."""
        coordinator.statuses = [
            httpx.ReadTimeout("slow"),
            502,
            {"status": "completed"},
        ]
        result = await client.wait_for_completion("b-123", poll_interval=2.0)

        assert result["status"] == "completed"
        assert poll_clock.sleeps == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_times_out_when_never_terminal(
        self, client: RemoteBuildClient, coordinator: FakeCoordinator, poll_clock: PollClock
    ) -> None:
        """Test polling gives up after the timeout."""
        coordinator.statuses = [{"status": "running", "progress": 10}]
        with pytest.raises(BuildTimeoutError) as exc:
            await client.wait_for_completion("b-123", timeout=30, poll_interval=5)

        assert isinstance(exc.value, TimeoutError)
        assert exc.value.elapsed >= 30
        assert exc.value.timeout == 30
        assert len(poll_clock.sleeps) == 6


class TestDownload:
    """Test artifact download."""

    @pytest.mark.asyncio
    async def test_download_writes_executable(self, client: RemoteBuildClient, tmp_path: Path) -> None:
        """Test the binary lands in dist/ and is executable."""
        path = await client.download_binary(
            {"binary_url": "http://artifacts.test/b-123/bin"}, "darwin-arm64", str(tmp_path)
        )
        assert path == tmp_path / "dist" / "tailwindcss-macos-arm64"
        assert path.read_bytes() == b"\x7fELF fake tailwind binary"
        assert os.stat(path).st_mode & 0o777 == 0o755

    @pytest.mark.asyncio
    async def test_empty_download_is_removed(
        self, client: RemoteBuildClient, coordinator: FakeCoordinator, tmp_path: Path
    ) -> None:
        """Test an empty artifact is deleted and reported."""
        coordinator.binary = b""
        with pytest.raises(EmptyDownloadError):
            await client.download_binary(
                {"binary_url": "http://artifacts.test/b-123/bin"}, "linux-x64", str(tmp_path)
            )
        assert not (tmp_path / "dist" / "tailwindcss-linux-x64").exists()

    @pytest.mark.asyncio
    async def test_failed_download_is_removed(
        self, client: RemoteBuildClient, coordinator: FakeCoordinator, tmp_path: Path
    ) -> None:
        """Test a failed download leaves no file behind."""
        coordinator.binary_status = 404
        with pytest.raises(HttpError) as exc:
            await client.download_binary(
                {"binary_url": "http://artifacts.test/b-123/bin"}, "linux-x64", str(tmp_path)
            )
        assert exc.value.status_code == 404
        assert not (tmp_path / "dist" / "tailwindcss-linux-x64").exists()

    @pytest.mark.asyncio
    async def test_external_download_sends_no_credentials(
        self, client: RemoteBuildClient, coordinator: FakeCoordinator, tmp_path: Path
    ) -> None:
        """Test an object-storage binary URL is fetched without the API key."""
        url = "https://bucket.s3.amazonaws.com/b-123/bin?X-Amz-Signature=1"

        path = await client.download_binary({"binary_url": url}, "linux-x64", str(tmp_path))

        fetched = coordinator.requests[-1]
        assert fetched.url.host == "bucket.s3.amazonaws.com"
        assert "authorization" not in fetched.headers
        assert path.read_bytes() == coordinator.binary

    @pytest.mark.asyncio
    async def test_coordinator_download_keeps_credentials(
        self, client: RemoteBuildClient, coordinator: FakeCoordinator, tmp_path: Path
    ) -> None:
        """Test a coordinator-relative binary URL is fetched with the API key."""
        await client.download_binary({"binary_url": "/artifacts/b-123/bin"}, "linux-x64", str(tmp_path))

        fetched = coordinator.requests[-1]
        assert str(fetched.url) == "http://coordinator.test/api/v1/artifacts/b-123/bin"
        assert fetched.headers["authorization"] == "Bearer test-key"

    def test_binary_filenames(self) -> None:
        """Test the per-architecture binary names."""
        assert binary_filename("linux-x64") == "tailwindcss-linux-x64"
        assert binary_filename("win32-x64") == "tailwindcss-windows-x64.exe"
        assert binary_filename("freebsd-x64") == "tailwindcss-freebsd-x64"


class TestBuildRemote:
    """Test the full remote build pipeline."""

    @pytest.mark.asyncio
    async def test_full_pipeline(
        self, client: RemoteBuildClient, coordinator: FakeCoordinator, tmp_path: Path
    ) -> None:
        """Test submit, poll and download end to end."""
        coordinator.statuses = [
            {"status": "queued"},
            {"status": "completed", "build_time_seconds": 12.5, "node_id": "node-3"},
        ]
        result = await client.build_remote(
            version="4.1.13",
            target_arch="linux-x64",
            source_path=str(tmp_path),
            plugins=[{"name": "daisyui", "version": "^5.1.13"}],
        )

        assert result.build_id == "b-123"
        assert result.compilation_method == "remote"
        assert result.node_id == "node-3"
        assert result.build_time_ms == pytest.approx(12500)
        assert Path(result.binary_path).read_bytes() == coordinator.binary
        assert result.source_checksum == coordinator.submitted[0]["source_checksum"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides,setting",
        [({"coordinator_url": None}, "coordinator_url"), ({"api_key": None}, "api_key")],
    )
    async def test_missing_configuration_fails_before_network(
        self, settings: FleetSettings, coordinator: FakeCoordinator, tmp_path: Path, overrides: dict, setting: str
    ) -> None:
        """Test missing settings fail at validate without network calls."""
        client = RemoteBuildClient(
            settings.model_copy(update=overrides), transport=httpx.MockTransport(coordinator)
        )
        with pytest.raises(MissingConfigurationError) as exc:
            await client.build_remote("4.1.13", "linux-x64", str(tmp_path))

        assert exc.value.setting == setting
        assert exc.value.step == "validate"
        assert coordinator.requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("arch", ["linux_x64", "Linux-x64", "x64", ""])
    async def test_invalid_target_arch(
        self, client: RemoteBuildClient, coordinator: FakeCoordinator, tmp_path: Path, arch: str
    ) -> None:
        """Test malformed architectures fail before network calls."""
        with pytest.raises(ValidationError) as exc:
            await client.build_remote("4.1.13", arch, str(tmp_path))
        assert exc.value.field == "target_arch"
        assert coordinator.requests == []

    @pytest.mark.asyncio
    async def test_unreachable_coordinator_step(
        self, client: RemoteBuildClient, coordinator: FakeCoordinator, tmp_path: Path
    ) -> None:
        """Test an unreachable coordinator fails at coordinator_available."""
        coordinator.healthy = False
        with pytest.raises(CoordinatorUnavailableError) as exc:
            await client.build_remote("4.1.13", "linux-x64", str(tmp_path))
        assert exc.value.step == "coordinator_available"
        assert coordinator.submitted == []

    @pytest.mark.asyncio
    async def test_errors_are_tagged_with_step(
        self, client: RemoteBuildClient, coordinator: FakeCoordinator, tmp_path: Path
    ) -> None:
        """Test errors carry the pipeline step that raised them."""
        coordinator.statuses = [{"status": "failed", "error": "oom"}]
        with pytest.raises(BuildFailedError) as exc:
            await client.build_remote("4.1.13", "linux-x64", str(tmp_path))
        assert exc.value.step == "wait_completion"

        coordinator.statuses = [{"status": "completed"}]
        coordinator.binary = b""
        with pytest.raises(EmptyDownloadError) as exc2:
            await client.build_remote("4.1.13", "linux-x64", str(tmp_path))
        assert exc2.value.step == "download_binary"
