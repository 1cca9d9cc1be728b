from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ResourceKind:
    """A watched core/v1 resource kind and the payload fields compared for changes."""

    name: str
    list_method: str
    payload_fields: tuple[str, ...]


CONFIG_MAP = ResourceKind(
    name="ConfigMap",
    list_method="list_config_map_for_all_namespaces",
    payload_fields=("data", "binary_data"),
)
SECRET = ResourceKind(
    name="Secret",
    list_method="list_secret_for_all_namespaces",
    payload_fields=("data", "string_data"),
)


@dataclass(frozen=True)
class WatchedResource:
    """Snapshot of a ConfigMap or Secret as last observed from the API server."""

    kind: str
    namespace: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    payloads: dict[str, dict[str, str]] = field(default_factory=dict)
    resource_version: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    def payload(self, field_name: str) -> dict[str, str]:
        return self.payloads.get(field_name, {})


def _normalize_mapping(raw: Any) -> dict[str, str]:
    """Coerce a ``data``-like field into a stable ``dict[str, str]``.

    ``None`` values become empty strings and non-dict inputs an empty dict,
    so an absent field and an empty one compare equal.
    """
    if not isinstance(raw, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw.items()
        if isinstance(k, str)
    }


def snapshot(kind: ResourceKind, obj: Any) -> WatchedResource | None:
    """Build a :class:`WatchedResource` from an API object, or ``None`` if it has no identity."""
    metadata = getattr(obj, "metadata", None)
    if metadata is None:
        return None
    name = getattr(metadata, "name", None)
    if not name:
        return None

    return WatchedResource(
        kind=kind.name,
        namespace=getattr(metadata, "namespace", None) or "",
        name=name,
        labels=_normalize_mapping(getattr(metadata, "labels", None)),
        payloads={
            field_name: _normalize_mapping(getattr(obj, field_name, None))
            for field_name in kind.payload_fields
        },
        resource_version=getattr(metadata, "resource_version", None),
    )
