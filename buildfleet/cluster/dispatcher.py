"""Job dispatch: admission control, node hand-off, completion accounting.

Selection is advisory; submission is authoritative. ``submit`` claims a slot
through the registry (atomic check-and-increment), performs the HTTP hand-off
outside the registry lock, then either records the ActiveJob or gives the
slot back, so a failed or rejected submission leaves the node as it was.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

import httpx
import structlog

from buildfleet.builds.request import BuildRequest
from buildfleet.cluster.models import JobOutcome
from buildfleet.cluster.registry import NodeRegistry
from buildfleet.errors import HttpError, NodeNotFoundError, RequestFailedError, ValidationError

logger = structlog.get_logger(__name__)

ACCEPTED_STATUSES = (200, 201, 202)


@dataclass(frozen=True)
class Dispatch:
    job_id: str
    node_id: str


def _coerce_outcome(result: Union[JobOutcome, bool, str]) -> JobOutcome:
    if isinstance(result, JobOutcome):
        return result
    if isinstance(result, bool):
        return JobOutcome.SUCCESS if result else JobOutcome.FAILURE
    try:
        return JobOutcome(str(result).lower())
    except ValueError:
        raise ValidationError("result", result, "expected 'success' or 'failure'") from None


class JobDispatcher:
    """Hands build requests to nodes and reconciles their completions.

    Args:
        registry: The node registry that owns all job bookkeeping.
        http_client: Optional shared client; one is created on demand otherwise.
    """

    def __init__(self, registry: NodeRegistry, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self.registry = registry
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.registry.settings.dispatch_timeout_seconds,
                headers={"Content-Type": "application/json"},
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def submit(self, node_id: str, request: BuildRequest) -> str:
        """Submit ``request`` to ``node_id``. Returns the node-assigned job id.

        Raises:
            NodeNotFoundError: Unknown node (or removed during hand-off).
            NodeBusyError: Node full or not available.
            DuplicateJobError: Node answered with a job id it already has
                in flight; the slot is released.
            HttpError: Node answered with a non-success status.
            RequestFailedError: Node could not be reached.
        """
        node = await self.registry.reserve_slot(node_id)
        try:
            job_id = await self._send_build_to_node(node.endpoint, request)
        except BaseException:
            # Cancellation included: the reservation must not leak.
            await self.registry.release_slot(node_id)
            raise

        job = await self.registry.confirm_job(job_id, node_id, request)
        if job is None:
            raise NodeNotFoundError(node_id)

        await logger.ainfo(
            "build_dispatched",
            job_id=job_id,
            node_id=node_id,
            version=request.version,
            target_arch=request.target_arch,
        )
        return job_id

    async def dispatch(
        self,
        request: BuildRequest,
        requirements: Optional[Mapping[str, Any]] = None,
    ) -> Dispatch:
        """Select the best node for the request's architecture and submit."""
        node = self.registry.find_available_node(request.target_arch, requirements)
        job_id = await self.submit(node.node_id, request)
        return Dispatch(job_id=job_id, node_id=node.node_id)

    async def complete(
        self,
        job_id: str,
        result: Union[JobOutcome, bool, str],
        node_id: Optional[str] = None,
    ) -> bool:
        """Apply a completion notice. Returns False for unknown or ambiguous job ids."""
        updated = await self.registry.complete_job(job_id, _coerce_outcome(result), node_id)
        return updated is not None

    async def _send_build_to_node(self, endpoint: str, request: BuildRequest) -> str:
        url = f"{endpoint}/build"
        client = await self._get_http_client()
        try:
            response = await client.post(url, json=request.to_payload())
        except httpx.HTTPError as e:
            await logger.awarning("node_handoff_failed", url=url, error=str(e))
            raise RequestFailedError(url, str(e)) from e

        if response.status_code not in ACCEPTED_STATUSES:
            raise HttpError(response.status_code, response.text, url)

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict) or not body.get("job_id"):
            raise HttpError(response.status_code, body if body is not None else response.text, url)
        return str(body["job_id"])
