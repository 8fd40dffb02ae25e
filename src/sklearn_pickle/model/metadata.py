"""Operator schema lookups backed by the bundled ``sklearn-metadata.json``."""

from __future__ import annotations

import copy
import json
import logging
import math
import threading
from collections.abc import Mapping as _Mapping
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from ..config import DEFAULT_METADATA_RESOURCE

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from .factory import Host

logger = logging.getLogger(__name__)

Renderer = Callable[[str], str]


def _identity(text: str) -> str:
    return text


def is_equivalent(a: Any, b: Any) -> bool:
    """Loose equality used to compare decoded values with schema defaults."""

    if a is b:
        return True
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    if isinstance(a, float) and isinstance(b, float) and math.isnan(a) and math.isnan(b):
        return True
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(is_equivalent(x, y) for x, y in zip(a, b))
    if isinstance(a, _Mapping) and isinstance(b, _Mapping):
        if set(a) != set(b):
            return False
        return all(is_equivalent(a[key], b[key]) for key in a)
    if isinstance(a, (list, tuple, _Mapping)) or isinstance(b, (list, tuple, _Mapping)):
        return False
    try:
        return bool(a == b)
    except (TypeError, ValueError):
        return False


class OperatorMetadata:
    """Schemas keyed by operator name (the last segment of a type name)."""

    def __init__(self, data: Optional[str] = None, *, render: Renderer = _identity) -> None:
        self._map: Dict[str, Dict[str, Any]] = {}
        self._attribute_maps: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._render = render
        if data:
            items = json.loads(data)
            if not isinstance(items, list):
                raise ValueError("operator metadata must be a JSON list")
            for item in items:
                if not isinstance(item, dict):
                    continue
                name = item.get("name")
                schema = item.get("schema")
                if name and isinstance(schema, dict):
                    self._map[name] = schema

    def __contains__(self, operator: object) -> bool:
        return operator in self._map

    def __len__(self) -> int:
        return len(self._map)

    def schema(self, operator: str) -> Optional[Dict[str, Any]]:
        return self._map.get(operator)

    def operator_documentation(self, operator: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the schema with every description rendered."""

        schema = self._map.get(operator)
        if schema is None:
            return None
        schema = copy.deepcopy(schema)
        schema["name"] = operator
        if schema.get("description"):
            schema["description"] = self._render(schema["description"])
        for section in ("attributes", "inputs", "outputs", "references"):
            for entry in schema.get(section) or []:
                if isinstance(entry, dict) and entry.get("description"):
                    entry["description"] = self._render(entry["description"])
        return schema

    def operator_category(self, operator: str) -> Optional[str]:
        schema = self._map.get(operator)
        if schema:
            return schema.get("category") or None
        return None

    def _attribute(self, operator: str, name: str) -> Optional[Dict[str, Any]]:
        attributes = self._attribute_maps.get(operator)
        if attributes is None:
            schema = self._map.get(operator) or {}
            attributes = {
                entry["name"]: entry
                for entry in schema.get("attributes") or []
                if isinstance(entry, dict) and "name" in entry
            }
            self._attribute_maps[operator] = attributes
        return attributes.get(name)

    def attribute_visible(self, operator: str, name: str, value: Any) -> bool:
        """Decide whether an attribute is worth showing.

        Optional attributes holding ``None`` are hidden, an explicit
        ``visible`` flag wins next, and otherwise values equal to the
        declared default are hidden.
        """

        attribute = self._attribute(operator, name)
        if attribute is None:
            return True
        if attribute.get("option") == "optional" and value is None:
            return False
        if "visible" in attribute:
            return bool(attribute["visible"])
        if "default" in attribute:
            return not is_equivalent(attribute["default"], value)
        return True


class MetadataCache:
    """Loads :class:`OperatorMetadata` once and hands the same instance out.

    Loading goes through the host's resource request. A resource that cannot
    be read yields empty metadata so models still open.
    """

    def __init__(self, resource: str = DEFAULT_METADATA_RESOURCE, *, render: Renderer = _identity) -> None:
        self._resource = resource
        self._render = render
        self._lock = threading.Lock()
        self._metadata: Optional[OperatorMetadata] = None

    @property
    def resource(self) -> str:
        return self._resource

    @property
    def loaded(self) -> bool:
        return self._metadata is not None

    def open(self, host: "Host") -> OperatorMetadata:
        metadata = self._metadata
        if metadata is not None:
            return metadata
        with self._lock:
            if self._metadata is None:
                self._metadata = self._load(host)
            return self._metadata

    def _load(self, host: "Host") -> OperatorMetadata:
        try:
            metadata = OperatorMetadata(host.request(self._resource, "utf-8"), render=self._render)
        except (OSError, LookupError, ValueError) as exc:
            logger.warning("Unable to load operator metadata %s: %s", self._resource, exc)
            metadata = OperatorMetadata(render=self._render)
        logger.debug("Loaded %d operator schemas from %s", len(metadata), self._resource)
        return metadata

    def reset(self) -> None:
        with self._lock:
            self._metadata = None


__all__ = ["MetadataCache", "OperatorMetadata", "Renderer", "is_equivalent"]
