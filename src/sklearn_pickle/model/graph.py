"""Graph view over a decoded scikit-learn object."""

from __future__ import annotations

import json
from collections.abc import Mapping as _Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..config import LoaderOptions
from ..decoding.reducers import TENSOR_TYPE_NAMES, ReconstructedObject
from ..errors import SklearnError
from ..tensor import Tensor, TensorType
from .metadata import OperatorMetadata

FORMAT_NAME = "scikit-learn"


def _json_default(value: Any) -> Any:
    if isinstance(value, ReconstructedObject):
        return {"__type__": value.type_name, **value.fields}
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if isinstance(value, complex):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def format_value(value: Any) -> str:
    try:
        return json.dumps(value, default=_json_default)
    except (TypeError, ValueError):
        # Non-string keys and reference cycles have no JSON form.
        return repr(value)


def is_tensor_value(value: Any) -> bool:
    return isinstance(value, ReconstructedObject) and value.type_name in TENSOR_TYPE_NAMES


@dataclass(frozen=True)
class Connection:
    initializer: Tensor
    type: Optional[TensorType]


@dataclass(frozen=True)
class NodeInput:
    name: str
    connections: List[Connection] = field(default_factory=list)


class SklearnAttribute:
    def __init__(self, node: "SklearnNode", name: str, value: Any) -> None:
        self._node = node
        self._name = name
        self._value = value

    @property
    def name(self) -> str:
        return self._name

    @property
    def raw_value(self) -> Any:
        return self._value

    @property
    def value(self) -> str:
        return format_value(self._value)

    @property
    def visible(self) -> bool:
        return self._node.metadata.attribute_visible(self._node.operator, self._name, self._value)

    def __repr__(self) -> str:
        return f"SklearnAttribute({self._name!r}, {self.value})"


class SklearnNode:
    """One decoded model object.

    Fields whose names start with ``_`` are skipped. Numpy arrays become
    tensor initializers; everything else becomes an attribute.
    """

    def __init__(self, obj: ReconstructedObject, metadata: OperatorMetadata, options: LoaderOptions) -> None:
        self._obj = obj
        self._metadata = metadata
        self._operator = obj.type_name.split(".")[-1]
        self._attributes: List[SklearnAttribute] = []
        self._initializers: List[Tensor] = []
        for key, value in obj.fields.items():
            if key.startswith("_"):
                continue
            if is_tensor_value(value):
                self._initializers.append(
                    Tensor.from_array(
                        key,
                        value,
                        preview_limit=options.preview_limit,
                        value_limit=options.value_limit,
                    )
                )
            else:
                self._attributes.append(SklearnAttribute(self, key, value))

    @property
    def operator(self) -> str:
        return self._operator

    @property
    def type_name(self) -> str:
        return self._obj.type_name

    @property
    def resolved(self) -> bool:
        return self._obj.resolved

    @property
    def metadata(self) -> OperatorMetadata:
        return self._metadata

    @property
    def documentation(self) -> Optional[Dict[str, Any]]:
        return self._metadata.operator_documentation(self._operator)

    @property
    def category(self) -> Optional[str]:
        return self._metadata.operator_category(self._operator)

    @property
    def attributes(self) -> List[SklearnAttribute]:
        return list(self._attributes)

    @property
    def initializers(self) -> List[Tensor]:
        return list(self._initializers)

    @property
    def inputs(self) -> List[NodeInput]:
        return [
            NodeInput(tensor.name, [Connection(initializer=tensor, type=tensor.type)])
            for tensor in self._initializers
        ]

    @property
    def outputs(self) -> List[NodeInput]:
        return []

    def __repr__(self) -> str:
        return f"SklearnNode({self._operator!r}, resolved={self.resolved})"


class SklearnGraph:
    def __init__(self, objects: List[ReconstructedObject], metadata: OperatorMetadata, options: LoaderOptions) -> None:
        self._nodes = [SklearnNode(obj, metadata, options) for obj in objects]

    @property
    def inputs(self) -> List[NodeInput]:
        return []

    @property
    def outputs(self) -> List[NodeInput]:
        return []

    @property
    def nodes(self) -> List[SklearnNode]:
        return list(self._nodes)


def _root_objects(obj: Any) -> List[ReconstructedObject]:
    if isinstance(obj, ReconstructedObject):
        return [obj]
    if isinstance(obj, _Mapping):
        values = list(obj.values())
    elif isinstance(obj, (list, tuple)):
        values = list(obj)
    else:
        raise SklearnError(f"Unsupported root object of type '{type(obj).__name__}'.")
    if not values or not all(isinstance(value, ReconstructedObject) for value in values):
        raise SklearnError("Root container does not hold scikit-learn objects.")
    return values


class SklearnModel:
    def __init__(self, obj: Any, metadata: OperatorMetadata, options: Optional[LoaderOptions] = None) -> None:
        options = options or LoaderOptions()
        objects = _root_objects(obj)
        self._format = FORMAT_NAME
        version = objects[0].get("_sklearn_version")
        if version:
            self._format += " " + str(version)
        self._graphs = [SklearnGraph(objects, metadata, options)]

    @property
    def format(self) -> str:
        return self._format

    @property
    def graphs(self) -> List[SklearnGraph]:
        return list(self._graphs)


__all__ = [
    "Connection",
    "FORMAT_NAME",
    "NodeInput",
    "SklearnAttribute",
    "SklearnGraph",
    "SklearnModel",
    "SklearnNode",
    "format_value",
    "is_tensor_value",
]
