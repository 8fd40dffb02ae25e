"""Reconstructed object types and the registry that maps pickle globals to them.

Pickle streams rebuild objects by calling a global by name with positional
arguments and, optionally, restoring state afterwards. The classes below play
the role of those globals: constructing one is the first phase and
:meth:`ReconstructedObject.restore` is the second. Plain functions in this
module return ordinary Python values instead of tagged objects.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping as _Mapping
from typing import Any, Callable, Dict, Iterable, Iterator, Mapping, Optional, Sequence, Tuple

from ..errors import MalformedState, MalformedDescriptorState, MalformedStream, UnknownDataType
from .reader import BinaryReader

logger = logging.getLogger(__name__)

Reducer = Callable[..., Any]


class GlobalReference(str):
    """Dotted ``module.name`` pushed by the ``GLOBAL`` family of opcodes."""

    __slots__ = ()

    def __repr__(self) -> str:
        return f"GlobalReference({str.__repr__(self)})"


def _as_text(value: object) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("latin-1")
    raise UnknownDataType(f"Unknown dtype '{value!r}'.")


def as_payload(value: object) -> Optional[memoryview]:
    """Return *value* as a byte view, converting Python 2 strings with latin-1."""

    if value is None:
        return None
    if isinstance(value, memoryview):
        return value
    if isinstance(value, (bytes, bytearray)):
        return memoryview(value)
    if isinstance(value, str):
        return memoryview(value.encode("latin-1"))
    return None


class ReconstructedObject:
    """Object rebuilt from a pickle global, tagged with the global's name.

    ``fields`` maps attribute names to decoded values. Instances compare by
    identity so shared references in the stream stay shared.
    """

    resolved = True

    def __init__(self, type_name: str, fields: Optional[Mapping[str, Any]] = None) -> None:
        if not type_name:
            raise ValueError("type_name must be non-empty")
        self.type_name = str(type_name)
        self.fields: Dict[str, Any] = dict(fields) if fields else {}

    def __getitem__(self, key: str) -> Any:
        return self.fields[key]

    def __contains__(self, key: object) -> bool:
        return key in self.fields

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def keys(self) -> Iterable[str]:
        return self.fields.keys()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.type_name!r}, fields={sorted(self.fields)!r})"

    def restore(self, state: Any, reader: Optional[BinaryReader] = None) -> None:
        """Apply the state record that follows construction.

        The default accepts an attribute mapping, or the ``(dict, slots)``
        pair Python emits for objects with ``__slots__``.
        """

        if isinstance(state, _Mapping):
            self._update(state)
            return
        if isinstance(state, tuple) and len(state) == 2:
            attributes, slots = state
            if (attributes is None or isinstance(attributes, _Mapping)) and (
                slots is None or isinstance(slots, _Mapping)
            ):
                if attributes:
                    self._update(attributes)
                if slots:
                    self._update(slots)
                return
        raise MalformedState(
            f"Unsupported state of type '{type(state).__name__}' for '{self.type_name}'."
        )

    def _update(self, values: Mapping[Any, Any]) -> None:
        for key, value in values.items():
            self.fields[str(key)] = value

    def append_items(self, items: Sequence[Any]) -> None:
        raise MalformedStream(f"Cannot append items to '{self.type_name}'.")

    def set_items(self, pairs: Sequence[Tuple[Any, Any]]) -> None:
        raise MalformedStream(f"Cannot set items on '{self.type_name}'.")


class UnresolvedObject(ReconstructedObject):
    """Placeholder for a global that has no registered reducer.

    The placeholder keeps an empty field set no matter what the stream tries
    to attach to it, so callers can tell it apart from resolved objects.
    """

    resolved = False

    def __init__(self, type_name: str, *args: Any, **kwargs: Any) -> None:
        super().__init__(type_name)

    def restore(self, state: Any, reader: Optional[BinaryReader] = None) -> None:
        logger.debug("Discarding state for unresolved type %s", self.type_name)

    def append_items(self, items: Sequence[Any]) -> None:
        logger.debug("Discarding %d items for unresolved type %s", len(items), self.type_name)

    def set_items(self, pairs: Sequence[Tuple[Any, Any]]) -> None:
        logger.debug("Discarding %d entries for unresolved type %s", len(pairs), self.type_name)


class Estimator(ReconstructedObject):
    """Model object whose attributes arrive entirely through its state dict."""

    def __init__(self, type_name: str, *args: Any, **kwargs: Any) -> None:
        super().__init__(type_name)


class NumpyDType(ReconstructedObject):
    """``numpy.dtype(obj, align, copy)`` reduced to a name and item size."""

    TYPE_CODES: Dict[str, Tuple[str, int]] = {
        "i4": ("int32", 4),
        "i8": ("int64", 8),
        "f4": ("float32", 4),
        "f8": ("float64", 8),
    }
    STATE_FIELDS: Tuple[str, ...] = (
        "version",
        "byteorder",
        "subarray",
        "names",
        "fields",
        "elsize",
        "alignment",
        "int_dtypeflags",
    )

    def __init__(self, type_name: str, obj: object = None, align: object = False, copy: object = False) -> None:
        super().__init__(type_name)
        code = _as_text(obj)
        entry = self.TYPE_CODES.get(code)
        if entry is not None:
            name, itemsize = entry
        elif code.startswith("V") and code[1:].isdigit():
            itemsize = int(code[1:])
            name = f"void{itemsize * 8}"
        else:
            raise UnknownDataType(f"Unknown dtype '{code}'.")
        self.fields.update(name=name, itemsize=itemsize, align=align, copy=copy)

    @property
    def name(self) -> str:
        return self.fields["name"]

    @property
    def itemsize(self) -> int:
        return self.fields["itemsize"]

    @property
    def byteorder(self) -> str:
        return self.fields.get("byteorder") or "<"

    def restore(self, state: Any, reader: Optional[BinaryReader] = None) -> None:
        if not isinstance(state, (tuple, list)) or len(state) != len(self.STATE_FIELDS):
            length = len(state) if isinstance(state, (tuple, list)) else type(state).__name__
            raise MalformedDescriptorState(f"Unknown numpy.dtype setstate length '{length}'.")
        for key, value in zip(self.STATE_FIELDS, state):
            self.fields[key] = value


class NumpyArray(ReconstructedObject):
    """``numpy.core.multiarray._reconstruct(subtype, shape, dtype)``.

    The state tuple carries the real shape, the dtype and the raw bytes
    inline, so no extra stream reads are needed.
    """

    kind = "Array"

    def __init__(self, type_name: str, subtype: object = None, shape: object = None, dtype: object = None) -> None:
        super().__init__(type_name)
        self.fields.update(subtype=subtype, shape=shape, dtype=dtype)

    def restore(self, state: Any, reader: Optional[BinaryReader] = None) -> None:
        if not isinstance(state, (tuple, list)) or len(state) not in (4, 5):
            raise MalformedState(f"Unsupported ndarray state for '{self.type_name}'.")
        if len(state) == 4:
            state = (None, *state)
        version, shape, typecode, is_f_order, rawdata = state
        self.fields.update(
            version=version,
            shape=shape,
            typecode=typecode,
            is_f_order=is_f_order,
            rawdata=rawdata,
        )

    @property
    def descriptor(self) -> Any:
        return self.fields.get("typecode")

    @property
    def shape(self) -> Any:
        return self.fields.get("shape")

    @property
    def payload(self) -> Optional[memoryview]:
        return as_payload(self.fields.get("rawdata"))


class NumpyArrayWrapper(ReconstructedObject):
    """joblib ``NumpyArrayWrapper`` whose array bytes follow it in the stream."""

    kind = "Array Wrapper"
    STATE_FIELDS: Tuple[str, ...] = ("subclass", "dtype", "shape", "order", "allow_mmap")

    def __init__(self, type_name: str, subtype: object = None, shape: object = None, dtype: object = None) -> None:
        super().__init__(type_name)
        if subtype is not None:
            self.fields.update(subclass=subtype, shape=shape, dtype=dtype)

    def restore(self, state: Any, reader: Optional[BinaryReader] = None) -> None:
        if not isinstance(state, _Mapping):
            raise MalformedState(f"Unsupported state for '{self.type_name}'.")
        if reader is None:
            raise MalformedStream(f"'{self.type_name}' requires access to the stream.")
        for key in self.STATE_FIELDS:
            self.fields[key] = state.get(key)
        dtype = self.fields["dtype"]
        shape = self.fields["shape"]
        if not isinstance(dtype, NumpyDType) or not isinstance(shape, (tuple, list)):
            raise MalformedState(f"Array wrapper '{self.type_name}' is missing dtype or shape.")
        size = dtype.itemsize
        for dimension in shape:
            if isinstance(dimension, bool) or not isinstance(dimension, int) or dimension < 0:
                raise MalformedState(f"Array wrapper '{self.type_name}' has invalid dimension {dimension!r}.")
            size *= dimension
        alignment = state.get("numpy_array_alignment_bytes")
        if alignment is not None:
            self.fields["numpy_array_alignment_bytes"] = alignment
            padding = reader.read_byte()
            reader.skip(padding)
        logger.debug("Reading %d payload bytes for %s at %d", size, self.type_name, reader.position)
        self.fields["data"] = reader.read_view(size)

    @property
    def descriptor(self) -> Any:
        return self.fields.get("dtype")

    @property
    def shape(self) -> Any:
        return self.fields.get("shape")

    @property
    def payload(self) -> Optional[memoryview]:
        return as_payload(self.fields.get("data"))


class Tree(ReconstructedObject):
    """``sklearn.tree._tree.Tree(n_features, n_classes, n_outputs)``."""

    STATE_FIELDS: Tuple[str, ...] = ("max_depth", "node_count", "nodes", "values")

    def __init__(
        self,
        type_name: str,
        n_features: object = None,
        n_classes: object = None,
        n_outputs: object = None,
    ) -> None:
        super().__init__(type_name)
        self.fields.update(n_features=n_features, n_classes=n_classes, n_outputs=n_outputs)

    def restore(self, state: Any, reader: Optional[BinaryReader] = None) -> None:
        if not isinstance(state, _Mapping):
            raise MalformedState(f"Unsupported state for '{self.type_name}'.")
        for key in self.STATE_FIELDS:
            self.fields[key] = state.get(key)


def numpy_scalar(type_name: str, dtype: object, data: object = b"") -> int:
    """``numpy.core.multiarray.scalar(dtype, data)`` for the supported types."""

    if not isinstance(dtype, NumpyDType):
        raise UnknownDataType(f"Unknown scalar type '{dtype!r}'.")
    if dtype.name != "int64":
        raise UnknownDataType(f"Unknown scalar type '{dtype.name}'.")
    payload = as_payload(data)
    if payload is None or len(payload) < dtype.itemsize:
        raise MalformedState(f"Scalar payload for '{dtype.name}' is shorter than {dtype.itemsize} bytes.")
    return int.from_bytes(payload[: dtype.itemsize], "little", signed=True)


def codecs_encode(type_name: str, text: object, encoding: str = "latin1") -> bytes:
    """``_codecs.encode`` as written by Python 3 for protocol 2 byte strings."""

    if isinstance(text, (bytes, bytearray)):
        return bytes(text)
    return str(text).encode(encoding)


def ordered_dict(type_name: str, items: Iterable[Any] = ()) -> dict:
    return dict(items)


def builtin_set(type_name: str, items: Iterable[Any] = ()) -> set:
    return set(items)


def builtin_frozenset(type_name: str, items: Iterable[Any] = ()) -> frozenset:
    return frozenset(items)


def builtin_bytearray(type_name: str, source: object = b"", encoding: Optional[str] = None) -> bytearray:
    # An integer source is an allocation size, never pickled contents.
    if isinstance(source, int):
        raise MalformedStream(f"'{type_name}' expects a byte string, not an integer size.")
    if isinstance(source, str):
        return bytearray(source, encoding or "latin-1")
    return bytearray(source)


def builtin_complex(type_name: str, real: float = 0.0, imag: float = 0.0) -> complex:
    return complex(real, imag)


NUMPY_ARRAY_WRAPPER_NAMES: Tuple[str, ...] = (
    "joblib.numpy_pickle.NumpyArrayWrapper",
    "sklearn.externals.joblib.numpy_pickle.NumpyArrayWrapper",
)
NUMPY_RECONSTRUCT_NAMES: Tuple[str, ...] = (
    "numpy.core.multiarray._reconstruct",
    "numpy._core.multiarray._reconstruct",
)
NUMPY_SCALAR_NAMES: Tuple[str, ...] = (
    "numpy.core.multiarray.scalar",
    "numpy._core.multiarray.scalar",
)
TENSOR_TYPE_NAMES = frozenset(NUMPY_ARRAY_WRAPPER_NAMES + NUMPY_RECONSTRUCT_NAMES)

RECONSTRUCTOR_NAMES = frozenset({"copy_reg._reconstructor", "copyreg._reconstructor"})
BASE_OBJECT_NAMES = frozenset({"__builtin__.object", "builtins.object"})

ESTIMATOR_NAMES: Tuple[str, ...] = (
    "sklearn.linear_model.LogisticRegression",
    "sklearn.linear_model.logistic.LogisticRegression",
    "sklearn.linear_model._logistic.LogisticRegression",
    "sklearn.naive_bayes.GaussianNB",
    "sklearn.preprocessing.data.Binarizer",
    "sklearn.preprocessing._data.Binarizer",
    "sklearn.svm.classes.SVC",
    "sklearn.svm._classes.SVC",
    "sklearn.tree.tree.DecisionTreeClassifier",
    "sklearn.tree._classes.DecisionTreeClassifier",
    "sklearn.tree.tree.ExtraTreeClassifier",
    "sklearn.tree._classes.ExtraTreeClassifier",
    "sklearn.ensemble.forest.RandomForestClassifier",
    "sklearn.ensemble._forest.RandomForestClassifier",
    "sklearn.ensemble.forest.ExtraTreesClassifier",
    "sklearn.ensemble._forest.ExtraTreesClassifier",
    "sklearn.ensemble.weight_boosting.AdaBoostClassifier",
    "sklearn.ensemble._weight_boosting.AdaBoostClassifier",
)


def default_reducers() -> Dict[str, Reducer]:
    """Return a fresh copy of the built-in name to reducer table."""

    table: Dict[str, Reducer] = {"numpy.dtype": NumpyDType, "sklearn.tree._tree.Tree": Tree}
    for name in NUMPY_RECONSTRUCT_NAMES:
        table[name] = NumpyArray
    for name in NUMPY_ARRAY_WRAPPER_NAMES:
        table[name] = NumpyArrayWrapper
    for name in NUMPY_SCALAR_NAMES:
        table[name] = numpy_scalar
    for name in ESTIMATOR_NAMES:
        table[name] = Estimator
    table["_codecs.encode"] = codecs_encode
    table["collections.OrderedDict"] = ordered_dict
    for module in ("builtins", "__builtin__"):
        table[f"{module}.set"] = builtin_set
        table[f"{module}.frozenset"] = builtin_frozenset
        table[f"{module}.bytearray"] = builtin_bytearray
        table[f"{module}.complex"] = builtin_complex
    return table


class ReducerRegistry:
    """Closed name to reducer table consulted for every object construction.

    Reducers are called as ``reducer(type_name, *args, **kwargs)``. Looking up
    an unknown name returns ``None``; the decoder turns that into an
    :class:`UnresolvedObject`.
    """

    def __init__(self, reducers: Optional[Mapping[str, Reducer]] = None, *, include_defaults: bool = True) -> None:
        self._reducers: Dict[str, Reducer] = default_reducers() if include_defaults else {}
        if reducers:
            for name, reducer in reducers.items():
                self.register(name, reducer)

    def register(self, type_name: str, reducer: Reducer) -> None:
        if not type_name:
            raise ValueError("type_name must be non-empty")
        if not callable(reducer):
            raise TypeError(f"Reducer for {type_name!r} must be callable")
        self._reducers[type_name] = reducer

    def resolve(self, type_name: str) -> Optional[Reducer]:
        return self._reducers.get(type_name)

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._reducers

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._reducers))

    def __len__(self) -> int:
        return len(self._reducers)


__all__ = [
    "BASE_OBJECT_NAMES",
    "ESTIMATOR_NAMES",
    "Estimator",
    "GlobalReference",
    "NUMPY_ARRAY_WRAPPER_NAMES",
    "NUMPY_RECONSTRUCT_NAMES",
    "NUMPY_SCALAR_NAMES",
    "NumpyArray",
    "NumpyArrayWrapper",
    "NumpyDType",
    "RECONSTRUCTOR_NAMES",
    "ReconstructedObject",
    "Reducer",
    "ReducerRegistry",
    "TENSOR_TYPE_NAMES",
    "Tree",
    "UnresolvedObject",
    "as_payload",
    "codecs_encode",
    "default_reducers",
    "numpy_scalar",
]
