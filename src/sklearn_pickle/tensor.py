"""Tensor descriptors and the element-limited decoder for raw numpy payloads."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as _np

from .config import DEFAULT_PREVIEW_LIMIT
from .decoding.reducers import NumpyArray, NumpyArrayWrapper, NumpyDType, ReconstructedObject, as_payload
from .errors import SklearnError, TensorNotDecodable

TRUNCATION_MARKER = "..."

# Element type -> (numpy type code without byte order, item size in bytes).
ELEMENT_TYPES: Dict[str, Tuple[str, int]] = {
    "float32": ("f4", 4),
    "float64": ("f8", 8),
    "int32": ("i4", 4),
    "uint32": ("u4", 4),
    "int64": ("i8", 8),
    "uint64": ("u8", 8),
}

NestedValues = Union[List[Any], int, float, str]


@dataclass(frozen=True)
class TensorType:
    """Element type name paired with a shape."""

    data_type: str
    shape: Optional[Tuple[int, ...]] = None

    def __post_init__(self) -> None:
        if self.shape is not None:
            object.__setattr__(self, "shape", tuple(int(dim) for dim in self.shape))

    def __str__(self) -> str:
        if self.shape is None:
            return self.data_type
        return self.data_type + "[" + ",".join(str(dim) for dim in self.shape) + "]"


@dataclass
class DecodeContext:
    """Per-call cursor state; discarded after one decode."""

    data: memoryview
    dtype: _np.dtype
    shape: Tuple[int, ...]
    limit: int
    index: int = 0
    count: int = 0


def _element_count(shape: Sequence[int]) -> int:
    count = 1
    for dim in shape:
        count *= dim
    return count


def _check(tensor_type: Optional[TensorType], data: Optional[memoryview]) -> Optional[str]:
    if tensor_type is None:
        return "Tensor has no data type."
    if data is None or len(data) == 0:
        return "Tensor data is empty."
    if tensor_type.data_type not in ELEMENT_TYPES:
        return f"Tensor data type '{tensor_type.data_type}' is not implemented."
    if tensor_type.shape is None:
        return "Tensor has no shape."
    itemsize = ELEMENT_TYPES[tensor_type.data_type][1]
    if _element_count(tensor_type.shape) * itemsize > len(data):
        return "Tensor data is too short."
    return None


def _read(context: DecodeContext, count: int) -> List[Any]:
    if count <= 0:
        return []
    values = _np.frombuffer(context.data, dtype=context.dtype, count=count, offset=context.index).tolist()
    context.index += count * context.dtype.itemsize
    context.count += count
    return values


def _decode(context: DecodeContext, dimension: int) -> List[Any]:
    size = context.shape[dimension]
    if dimension == len(context.shape) - 1:
        available = max(0, min(size, context.limit + 1 - context.count))
        results = _read(context, available)
        if available < size:
            results.append(TRUNCATION_MARKER)
        return results
    results: List[Any] = []
    for _ in range(size):
        if context.count > context.limit:
            results.append(TRUNCATION_MARKER)
            return results
        results.append(_decode(context, dimension + 1))
    return results


def decode_tensor(
    tensor_type: Optional[TensorType],
    data: Any,
    limit: int = sys.maxsize,
    *,
    byte_order: str = "<",
) -> NestedValues:
    """Decode *data* into nested lists following ``tensor_type.shape``.

    At most ``limit + 1`` elements are read; once the running count passes
    ``limit`` the remaining entries at each nesting level collapse into a
    single :data:`TRUNCATION_MARKER`. Raises :class:`TensorNotDecodable` when
    the type is missing or unsupported or the payload is empty or short.
    """

    payload = as_payload(data)
    state = _check(tensor_type, payload)
    if state is not None:
        raise TensorNotDecodable(state)
    code, _ = ELEMENT_TYPES[tensor_type.data_type]
    order = ">" if byte_order == ">" else "<"
    context = DecodeContext(
        data=payload,
        dtype=_np.dtype(order + code),
        shape=tensor_type.shape,
        limit=limit,
    )
    if not context.shape:
        return _read(context, 1)[0]
    return _decode(context, 0)


class Tensor:
    """Named, typed view over a raw payload, decoded on demand.

    Nothing is cached: every access walks the payload again, so concurrent
    readers never share mutable state.
    """

    def __init__(
        self,
        name: str,
        tensor_type: Optional[TensorType],
        data: Any,
        *,
        kind: Optional[str] = None,
        byte_order: str = "<",
        preview_limit: int = DEFAULT_PREVIEW_LIMIT,
        value_limit: int = sys.maxsize,
    ) -> None:
        self._name = name
        self._type = tensor_type
        self._data = as_payload(data)
        self._kind = kind
        self._byte_order = byte_order
        self._preview_limit = preview_limit
        self._value_limit = value_limit

    @classmethod
    def from_array(cls, name: str, value: ReconstructedObject, **kwargs: Any) -> "Tensor":
        """Build a tensor from a reconstructed numpy array or joblib wrapper."""

        if not isinstance(value, (NumpyArray, NumpyArrayWrapper)):
            raise SklearnError(f"Unsupported tensor value '{value.type_name}'.")
        descriptor = value.descriptor
        shape = value.shape
        tensor_type = None
        byte_order = "<"
        if isinstance(descriptor, NumpyDType):
            dims = tuple(shape) if isinstance(shape, (tuple, list)) else None
            tensor_type = TensorType(descriptor.name, dims)
            byte_order = descriptor.byteorder
        return cls(name, tensor_type, value.payload, kind=value.kind, byte_order=byte_order, **kwargs)

    @property
    def id(self) -> str:
        return self._name

    @property
    def name(self) -> str:
        return self._name

    @property
    def type(self) -> Optional[TensorType]:
        return self._type

    @property
    def kind(self) -> Optional[str]:
        return self._kind

    @property
    def data(self) -> Optional[memoryview]:
        return self._data

    @property
    def state(self) -> Optional[str]:
        """Reason the tensor cannot be decoded, or ``None`` when it can."""

        return _check(self._type, self._data)

    def decode(self, limit: int) -> NestedValues:
        return decode_tensor(self._type, self._data, limit, byte_order=self._byte_order)

    @property
    def value(self) -> Optional[NestedValues]:
        try:
            return self.decode(self._value_limit)
        except TensorNotDecodable:
            return None

    def preview(self) -> str:
        try:
            value = self.decode(self._preview_limit)
        except TensorNotDecodable:
            return ""
        return json.dumps(value, indent=4)

    def __str__(self) -> str:
        return self.preview()

    def __repr__(self) -> str:
        return f"Tensor({self._name!r}, {str(self._type) if self._type else None!r})"


__all__ = [
    "DecodeContext",
    "ELEMENT_TYPES",
    "TRUNCATION_MARKER",
    "Tensor",
    "TensorType",
    "decode_tensor",
]
