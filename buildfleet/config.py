"""Runtime settings for the build fleet.

Every component receives a ``FleetSettings`` instance at construction time.
The environment is consulted only by :meth:`FleetSettings.from_env`.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field


class FleetSettings(BaseModel):
    """Settings shared by the registry, dispatcher and remote build client."""

    coordinator_url: Optional[str] = Field(
        default=None,
        description="Base URL of the remote build coordinator (may include an /api/v1 prefix)",
    )
    api_key: Optional[str] = Field(default=None, description="Bearer token for the coordinator")

    poll_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Give up waiting for a remote build after this long"
    )
    poll_interval_seconds: float = Field(
        default=5.0, gt=0, description="Delay between remote build status queries"
    )
    heartbeat_timeout_seconds: float = Field(
        default=60.0, gt=0, description="Nodes silent for longer than this are marked offline"
    )
    health_check_interval_seconds: float = Field(
        default=30.0, gt=0, description="Period of the registry health sweep"
    )

    request_timeout_seconds: float = Field(default=30.0, gt=0, description="Coordinator HTTP timeout")
    health_check_timeout_seconds: float = Field(
        default=5.0, gt=0, description="Timeout of the coordinator liveness check"
    )
    dispatch_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout when handing a job to a node"
    )

    auto_fallback: bool = Field(
        default=True, description="Retry a failed local build remotely when possible"
    )
    node_token: str = Field(default="", description="Shared token nodes must present (empty = open)")

    @classmethod
    def from_env(cls, prefix: str = "BUILDFLEET_", **overrides) -> "FleetSettings":
        """Build settings from ``<prefix><FIELD>`` environment variables.

        Explicit keyword overrides win over the environment.
        """
        values: dict = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{prefix}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
