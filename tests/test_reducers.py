"""Tests for the reconstructed object types and the reducer registry."""

from __future__ import annotations

import struct

import pytest

from sklearn_pickle.decoding.reader import BinaryReader
from sklearn_pickle.decoding.reducers import (
    ESTIMATOR_NAMES,
    Estimator,
    NumpyArray,
    NumpyArrayWrapper,
    NumpyDType,
    ReconstructedObject,
    ReducerRegistry,
    Tree,
    UnresolvedObject,
    builtin_bytearray,
    codecs_encode,
    numpy_scalar,
)
from sklearn_pickle.errors import (
    MalformedDescriptorState,
    MalformedState,
    MalformedStream,
    UnknownDataType,
)

_DTYPE_STATE = (3, "<", None, None, None, -1, -1, 0)


def _dtype(code: str) -> NumpyDType:
    dtype = NumpyDType("numpy.dtype", code, False, True)
    dtype.restore(_DTYPE_STATE)
    return dtype


@pytest.mark.parametrize(
    "code, name, itemsize",
    [
        ("i4", "int32", 4),
        ("i8", "int64", 8),
        ("f4", "float32", 4),
        ("f8", "float64", 8),
        ("V8", "void64", 8),
        ("V56", "void448", 56),
    ],
)
def test_dtype_codes(code: str, name: str, itemsize: int) -> None:
    dtype = NumpyDType("numpy.dtype", code, False, True)

    assert dtype.name == name
    assert dtype.itemsize == itemsize


def test_dtype_accepts_python2_byte_string() -> None:
    assert NumpyDType("numpy.dtype", b"f8").name == "float64"


@pytest.mark.parametrize("code", ["b1", "u4", "V", "Vx", "<f4", "S10"])
def test_unknown_dtype_codes(code: str) -> None:
    with pytest.raises(UnknownDataType):
        NumpyDType("numpy.dtype", code)


def test_dtype_state_fields() -> None:
    dtype = NumpyDType("numpy.dtype", "f4")
    dtype.restore((3, ">", None, None, None, -1, -1, 0))

    assert dtype.fields["version"] == 3
    assert dtype.fields["elsize"] == -1
    assert dtype.fields["int_dtypeflags"] == 0
    assert dtype.byteorder == ">"


@pytest.mark.parametrize("length", [0, 7, 9])
def test_dtype_state_length_mismatch(length: int) -> None:
    dtype = NumpyDType("numpy.dtype", "f4")

    with pytest.raises(MalformedDescriptorState) as excinfo:
        dtype.restore(tuple(range(length)))

    assert isinstance(excinfo.value, MalformedState)
    assert f"'{length}'" in str(excinfo.value)


def test_int64_scalar() -> None:
    assert numpy_scalar("numpy.core.multiarray.scalar", _dtype("i8"), struct.pack("<q", 5)) == 5
    assert numpy_scalar("numpy.core.multiarray.scalar", _dtype("i8"), struct.pack("<q", -2)) == -2


def test_int64_scalar_from_latin1_text() -> None:
    text = struct.pack("<q", 300).decode("latin-1")

    assert numpy_scalar("numpy.core.multiarray.scalar", _dtype("i8"), text) == 300


@pytest.mark.parametrize("code", ["f8", "i4"])
def test_other_scalars_are_rejected(code: str) -> None:
    with pytest.raises(UnknownDataType):
        numpy_scalar("numpy.core.multiarray.scalar", _dtype(code), b"\x00" * 8)


@pytest.mark.parametrize("payload", [b"", b"\x05\x00\x00\x00", None])
def test_short_int64_scalar_payload(payload: object) -> None:
    with pytest.raises(MalformedState):
        numpy_scalar("numpy.core.multiarray.scalar", _dtype("i8"), payload)


def test_bytearray_sources() -> None:
    assert builtin_bytearray("builtins.bytearray", b"\x01\x02") == bytearray(b"\x01\x02")
    assert builtin_bytearray("__builtin__.bytearray", "\xff", "latin-1") == bytearray(b"\xff")
    with pytest.raises(MalformedStream):
        builtin_bytearray("builtins.bytearray", 2**70)


def test_codecs_encode() -> None:
    assert codecs_encode("_codecs.encode", "\x00\xff", "latin1") == b"\x00\xff"


def test_reconstructed_objects_compare_by_identity() -> None:
    first = ReconstructedObject("pkg.Thing", {"a": 1})
    second = ReconstructedObject("pkg.Thing", {"a": 1})

    assert first != second
    assert first["a"] == 1
    assert "a" in first
    assert first.get("missing", 3) == 3


def test_generic_restore_accepts_dict_and_slots() -> None:
    obj = ReconstructedObject("pkg.Thing")
    obj.restore(({"a": 1}, {"b": 2}))
    obj.restore((None, {"c": 3}))

    assert obj.fields == {"a": 1, "b": 2, "c": 3}


def test_generic_restore_rejects_other_state() -> None:
    obj = ReconstructedObject("pkg.Thing")

    with pytest.raises(MalformedState):
        obj.restore([1, 2, 3])
    with pytest.raises(MalformedStream):
        obj.append_items([1])


def test_unresolved_object_discards_everything() -> None:
    obj = UnresolvedObject("pkg.Missing", 1, 2, key="value")
    obj.restore({"a": 1})
    obj.append_items([1, 2])
    obj.set_items([("b", 2)])

    assert obj.fields == {}
    assert obj.resolved is False


def test_estimator_takes_fields_from_state() -> None:
    estimator = Estimator("sklearn.svm.classes.SVC")
    estimator.restore({"C": 1.0, "kernel": "rbf"})

    assert estimator.fields == {"C": 1.0, "kernel": "rbf"}
    assert estimator.resolved


@pytest.mark.parametrize("version_prefix", [(1,), ()])
def test_ndarray_state(version_prefix: tuple) -> None:
    array = NumpyArray("numpy.core.multiarray._reconstruct", "numpy.ndarray", (0,), b"b")
    dtype = _dtype("f4")
    array.restore(version_prefix + ((2,), dtype, False, b"\x00" * 8))

    assert array.shape == (2,)
    assert array.descriptor is dtype
    assert bytes(array.payload) == b"\x00" * 8
    assert array.kind == "Array"


def test_ndarray_rejects_mapping_state() -> None:
    array = NumpyArray("numpy.core.multiarray._reconstruct")

    with pytest.raises(MalformedState):
        array.restore({"shape": (2,)})


def _wrapper_state(**extra: object) -> dict:
    state = {
        "subclass": "numpy.ndarray",
        "dtype": _dtype("f4"),
        "shape": (2, 3),
        "order": "C",
        "allow_mmap": False,
    }
    state.update(extra)
    return state


def test_array_wrapper_reads_payload_from_stream() -> None:
    payload = bytes(range(24))
    reader = BinaryReader(payload + b".")
    wrapper = NumpyArrayWrapper("joblib.numpy_pickle.NumpyArrayWrapper")

    wrapper.restore(_wrapper_state(), reader)

    assert bytes(wrapper.payload) == payload
    assert wrapper.shape == (2, 3)
    assert wrapper.descriptor.name == "float32"
    assert reader.remaining == 1


def test_array_wrapper_skips_alignment_padding() -> None:
    payload = bytes(range(24))
    reader = BinaryReader(b"\x03" + b"\xff" * 3 + payload)
    wrapper = NumpyArrayWrapper("joblib.numpy_pickle.NumpyArrayWrapper")

    wrapper.restore(_wrapper_state(numpy_array_alignment_bytes=16), reader)

    assert bytes(wrapper.payload) == payload
    assert reader.at_end


def test_array_wrapper_needs_stream() -> None:
    wrapper = NumpyArrayWrapper("joblib.numpy_pickle.NumpyArrayWrapper")

    with pytest.raises(MalformedStream):
        wrapper.restore(_wrapper_state())


@pytest.mark.parametrize("dimension", [float("inf"), 2.0, -1, True, None])
def test_array_wrapper_rejects_invalid_dimensions(dimension: object) -> None:
    reader = BinaryReader(b"\x00" * 64)
    wrapper = NumpyArrayWrapper("joblib.numpy_pickle.NumpyArrayWrapper")

    with pytest.raises(MalformedState, match="invalid dimension"):
        wrapper.restore(_wrapper_state(shape=(2, dimension)), reader)
    assert reader.position == 0


def test_tree_state() -> None:
    tree = Tree("sklearn.tree._tree.Tree", 4, [3], 1)
    tree.restore({"max_depth": 2, "node_count": 3, "nodes": [], "values": [], "extra": 1})

    assert tree.fields["n_features"] == 4
    assert tree.fields["node_count"] == 3
    assert "extra" not in tree

    with pytest.raises(MalformedState):
        tree.restore((1, 2))


def test_registry_defaults_and_registration() -> None:
    registry = ReducerRegistry()

    assert "numpy.dtype" in registry
    assert "numpy._core.multiarray.scalar" in registry
    assert all(name in registry for name in ESTIMATOR_NAMES)
    assert registry.resolve("pkg.Unknown") is None

    registry.register("pkg.Custom", Estimator)
    assert registry.resolve("pkg.Custom") is Estimator

    with pytest.raises(TypeError):
        registry.register("pkg.Bad", "not callable")  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        registry.register("", Estimator)


def test_registry_without_defaults() -> None:
    registry = ReducerRegistry({"pkg.Custom": Estimator}, include_defaults=False)

    assert list(registry) == ["pkg.Custom"]
    assert len(registry) == 1
