"""Tests for job dispatch and completion accounting."""

import json

import httpx
import pytest

from buildfleet.builds.request import BuildRequest
from buildfleet.cluster.dispatcher import JobDispatcher
from buildfleet.cluster.registry import NodeRegistry
from buildfleet.errors import (
    DuplicateJobError,
    HttpError,
    NoAvailableNodesError,
    NodeBusyError,
    NodeNotFoundError,
    RequestFailedError,
    ValidationError,
)
from tests.conftest import FakeClock, node_info


def make_request() -> BuildRequest:
    return BuildRequest.create(
        version="4.1.13",
        target_arch="linux-x64",
        plugins=[{"name": "daisyui", "version": "^5.1.13"}],
    )


class NodeStub:
    """Records hand-offs and answers with a configurable response."""

    def __init__(self, status_code: int = 200, body=None, error: Exception = None) -> None:
        self.status_code = status_code
        self.body = body
        self.error = error
        self.requests: list[httpx.Request] = []
        self._counter = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        self._counter += 1
        body = self.body if self.body is not None else {"job_id": f"job-{self._counter}"}
        return httpx.Response(self.status_code, json=body)


def make_dispatcher(registry: NodeRegistry, stub: NodeStub) -> JobDispatcher:
    """Create a JobDispatcher whose HTTP client talks to the stub."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    return JobDispatcher(registry, http_client=client)


class TestSubmit:
    """Admission control and node hand-off."""

    @pytest.mark.asyncio
    async def test_submit_records_job_and_increments(self, registry: NodeRegistry) -> None:
        """Test a successful hand-off records the job and takes a slot."""
        await registry.register(node_info("node-a", endpoint="http://node-a:9000/"))
        stub = NodeStub()
        dispatcher = make_dispatcher(registry, stub)

        job_id = await dispatcher.submit("node-a", make_request())

        assert job_id == "job-1"
        assert registry.get_node("node-a").current_jobs == 1
        jobs = registry.active_jobs()
        assert [(j.job_id, j.node_id) for j in jobs] == [("job-1", "node-a")]

        sent = stub.requests[0]
        assert sent.method == "POST"
        assert str(sent.url) == "http://node-a:9000/build"
        payload = json.loads(sent.content)
        assert payload["version"] == "4.1.13"
        assert payload["plugins"] == [{"name": "daisyui", "version": "^5.1.13"}]
        assert payload["source_checksum"] == make_request().source_checksum

    @pytest.mark.asyncio
    async def test_submit_to_full_node_is_rejected_without_mutation(self, registry: NodeRegistry) -> None:
        """Test a full node is rejected before any network call."""
        await registry.register(node_info("node-a", max_concurrent=1))
        stub = NodeStub()
        dispatcher = make_dispatcher(registry, stub)
        await dispatcher.submit("node-a", make_request())
        before = (registry.list_nodes(), registry.active_jobs())

        with pytest.raises(NodeBusyError):
            await dispatcher.submit("node-a", make_request())

        assert (registry.list_nodes(), registry.active_jobs()) == before
        assert len(stub.requests) == 1

    @pytest.mark.asyncio
    async def test_submit_unknown_node(self, registry: NodeRegistry) -> None:
        """Test submitting to an unknown node raises NodeNotFoundError."""
        stub = NodeStub()
        with pytest.raises(NodeNotFoundError):
            await make_dispatcher(registry, stub).submit("ghost", make_request())
        assert stub.requests == []

    @pytest.mark.asyncio
    async def test_http_error_releases_slot(self, registry: NodeRegistry) -> None:
        """Test a rejected hand-off gives the slot back."""
        await registry.register(node_info("node-a"))
        dispatcher = make_dispatcher(registry, NodeStub(status_code=503, body={"error": "draining"}))

        with pytest.raises(HttpError) as exc:
            await dispatcher.submit("node-a", make_request())

        assert exc.value.status_code == 503
        assert registry.get_node("node-a").current_jobs == 0
        assert registry.active_jobs() == []

    @pytest.mark.asyncio
    async def test_unreachable_node_releases_slot(self, registry: NodeRegistry) -> None:
        """Test a connection failure gives the slot back."""
        await registry.register(node_info("node-a"))
        stub = NodeStub(error=httpx.ConnectError("connection refused"))

        with pytest.raises(RequestFailedError):
            await make_dispatcher(registry, stub).submit("node-a", make_request())

        assert registry.get_node("node-a").current_jobs == 0

    @pytest.mark.asyncio
    async def test_response_without_job_id_is_an_error(self, registry: NodeRegistry) -> None:
        """Test a response without job_id is treated as a failure."""
        await registry.register(node_info("node-a"))
        dispatcher = make_dispatcher(registry, NodeStub(body={"accepted": True}))

        with pytest.raises(HttpError):
            await dispatcher.submit("node-a", make_request())
        assert registry.get_node("node-a").current_jobs == 0


class TestDispatch:
    """Test selection plus submission."""

    @pytest.mark.asyncio
    async def test_dispatch_picks_best_node(self, registry: NodeRegistry) -> None:
        """Test dispatch submits to the highest scoring node."""
        await registry.register(node_info("loaded", max_concurrent=2))
        await registry.register(node_info("idle", max_concurrent=2))
        await registry.heartbeat("loaded", {"current_jobs": 1})
        dispatcher = make_dispatcher(registry, NodeStub())

        dispatched = await dispatcher.dispatch(make_request())

        assert dispatched.node_id == "idle"
        assert dispatched.job_id == "job-1"

    @pytest.mark.asyncio
    async def test_dispatch_without_candidates(self, registry: NodeRegistry) -> None:
        """Test dispatch raises when no node qualifies."""
        await registry.register(node_info("node-a", architecture="darwin-arm64"))
        with pytest.raises(NoAvailableNodesError):
            await make_dispatcher(registry, NodeStub()).dispatch(make_request())


class TestComplete:
    """Test completion notices."""

    @pytest.mark.asyncio
    async def test_complete_accepts_bool_and_strings(self, registry: NodeRegistry, clock: FakeClock) -> None:
        """Test outcomes may be bools or strings."""
        await registry.register(node_info("node-a", max_concurrent=3))
        dispatcher = make_dispatcher(registry, NodeStub())
        jobs = [await dispatcher.submit("node-a", make_request()) for _ in range(3)]
        clock.advance(60)

        assert await dispatcher.complete(jobs[0], True) is True
        assert await dispatcher.complete(jobs[1], "failure") is True
        assert await dispatcher.complete(jobs[2], "SUCCESS") is True

        node = registry.get_node("node-a")
        assert node.total_builds == 3
        assert node.success_rate == pytest.approx(2 / 3)
        assert node.average_build_time == pytest.approx(60.0)
        assert node.current_jobs == 0

    @pytest.mark.asyncio
    async def test_nodes_with_colliding_job_ids_keep_separate_accounting(self, registry: NodeRegistry) -> None:
        """Test per-node job counters returning the same id do not cross nodes."""
        await registry.register(node_info("node-a", max_concurrent=1))
        await registry.register(node_info("node-b", max_concurrent=1))
        dispatcher = make_dispatcher(registry, NodeStub(body={"job_id": "job-1"}))

        assert await dispatcher.submit("node-a", make_request()) == "job-1"
        assert await dispatcher.submit("node-b", make_request()) == "job-1"
        assert len(registry.active_jobs()) == 2

        assert await dispatcher.complete("job-1", True) is False
        assert await dispatcher.complete("job-1", True, node_id="node-a") is True

        node_a, node_b = registry.get_node("node-a"), registry.get_node("node-b")
        assert (node_a.current_jobs, node_a.total_builds) == (0, 1)
        assert (node_b.current_jobs, node_b.total_builds) == (1, 0)
        assert [(j.node_id, j.job_id) for j in registry.active_jobs()] == [("node-b", "job-1")]

    @pytest.mark.asyncio
    async def test_reused_in_flight_job_id_releases_slot(self, registry: NodeRegistry) -> None:
        """Test a node answering with a live job id is rejected and its slot freed."""
        await registry.register(node_info("node-a", max_concurrent=2))
        dispatcher = make_dispatcher(registry, NodeStub(body={"job_id": "job-1"}))
        await dispatcher.submit("node-a", make_request())

        with pytest.raises(DuplicateJobError):
            await dispatcher.submit("node-a", make_request())

        assert registry.get_node("node-a").current_jobs == 1
        assert len(registry.active_jobs()) == 1

    @pytest.mark.asyncio
    async def test_complete_unknown_job(self, registry: NodeRegistry) -> None:
        """Test an unknown job id is ignored."""
        dispatcher = make_dispatcher(registry, NodeStub())
        assert await dispatcher.complete("nope", True) is False

    @pytest.mark.asyncio
    async def test_complete_rejects_unknown_result(self, registry: NodeRegistry) -> None:
        """Test an unrecognized outcome raises ValidationError."""
        dispatcher = make_dispatcher(registry, NodeStub())
        with pytest.raises(ValidationError):
            await dispatcher.complete("job-1", "maybe")
