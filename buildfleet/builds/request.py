"""Build requests and their content hash.

Two requests for the same version, plugin set and config always hash to the
same ``source_checksum`` no matter how the plugins were written down. The
coordinator uses that checksum to deduplicate builds.
"""

import hashlib
import json
from collections.abc import Mapping
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Iterable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from buildfleet import __version__
from buildfleet.errors import ValidationError

PluginInput = Union[str, Mapping, tuple, list, "PluginSpec"]


def _freeze(value: Any) -> Any:
    """Read-only deep copy: mappings become proxies, lists become tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_thaw(v) for v in value]
    return value


class PluginSpec(BaseModel):
    """A plugin pinned to a version (or ``"latest"``)."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    version: str = "latest"


def _plugin_from(item: Any) -> PluginSpec:
    if isinstance(item, PluginSpec):
        return item
    if isinstance(item, str):
        if not item:
            raise ValidationError("plugin", item, "empty plugin name")
        return PluginSpec(name=item)
    if isinstance(item, Mapping):
        name = item.get("name")
        if not name:
            raise ValidationError("plugin", item, "mapping has no 'name'")
        version = item.get("version")
        return PluginSpec(name=str(name), version=str(version) if version is not None else "latest")
    if isinstance(item, (tuple, list)) and len(item) == 2 and item[0]:
        name, version = item
        return PluginSpec(name=str(name), version=str(version))
    raise ValidationError("plugin", item, "expected a name, a {name, version} mapping or a pair")


def normalize_plugins(plugins: Optional[Union[Iterable[PluginInput], Mapping]]) -> list[PluginSpec]:
    """Canonicalize plugin declarations to ``PluginSpec`` sorted by name.

    Accepted shapes, freely mixed::

        "daisyui"                               -> daisyui@latest
        {"name": "daisyui", "version": "^5"}    -> daisyui@^5
        ("daisyui", "^5")                       -> daisyui@^5
        {"daisyui": "^5", "forms": "0.5"}       (whole mapping of name -> version)
    """
    if not plugins:
        return []
    if isinstance(plugins, Mapping):
        if "name" in plugins:
            items: Iterable[Any] = [plugins]
        else:
            items = list(plugins.items())
    elif isinstance(plugins, str):
        items = [plugins]
    else:
        items = plugins
    return sorted((_plugin_from(p) for p in items), key=lambda p: (p.name, p.version))


def content_hash(struct: Any) -> str:
    """Stable sha256 hex digest of a JSON-compatible structure."""
    encoded = json.dumps(struct, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def compute_source_checksum(
    version: str,
    plugins: Optional[Union[Iterable[PluginInput], Mapping]] = None,
    config: Optional[Mapping] = None,
) -> str:
    """Cache key over version, normalized plugins and config."""
    return content_hash(
        {
            "version": version,
            "plugins": [p.model_dump() for p in normalize_plugins(plugins)],
            "config": _thaw(config or {}),
        }
    )


class BuildRequest(BaseModel):
    """Immutable description of one build.

    ``config`` and ``metadata`` are stored as read-only mappings, so the
    checksum always matches the content it was computed from.

    Attributes:
        version: Version to compile.
        target_arch: Architecture tag of the wanted binary.
        plugins: Normalized, name-sorted plugin list.
        config: Opaque build configuration.
        source_checksum: Content hash of (version, plugins, config).
        priority: Scheduling hint forwarded to the coordinator.
        metadata: Submission metadata (client version, request time).
    """

    model_config = ConfigDict(frozen=True)

    version: str = Field(min_length=1)
    target_arch: str = Field(min_length=1)
    plugins: tuple[PluginSpec, ...] = ()
    config: Mapping[str, Any] = Field(default_factory=dict, validate_default=True)
    source_checksum: str
    priority: str = "normal"
    metadata: Mapping[str, Any] = Field(default_factory=dict, validate_default=True)

    @field_validator("config", "metadata")
    @classmethod
    def read_only(cls, v: Mapping[str, Any]) -> Mapping[str, Any]:
        return _freeze(v)

    @field_serializer("config", "metadata")
    def plain_mapping(self, v: Mapping[str, Any]) -> dict[str, Any]:
        return _thaw(v)

    @classmethod
    def create(
        cls,
        version: str,
        target_arch: str,
        plugins: Optional[Union[Iterable[PluginInput], Mapping]] = None,
        config: Optional[Mapping] = None,
        priority: Optional[str] = None,
        metadata: Optional[Mapping] = None,
    ) -> "BuildRequest":
        normalized = normalize_plugins(plugins)
        meta = {
            "client_version": __version__,
            "requested_at": datetime.now(timezone.utc).isoformat(),
        }
        meta.update(metadata or {})
        return cls(
            version=version,
            target_arch=target_arch,
            plugins=tuple(normalized),
            config=dict(config or {}),
            source_checksum=compute_source_checksum(version, normalized, config),
            priority=priority or "normal",
            metadata=meta,
        )

    def to_payload(self) -> dict[str, Any]:
        """JSON body for ``POST /builds`` and node hand-off."""
        return self.model_dump(mode="json")
