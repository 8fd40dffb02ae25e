"""Builders for hand-written pickle opcode streams used across the tests."""

from __future__ import annotations

import struct
from typing import Iterable, Sequence, Tuple

MARK = b"("
STOP = b"."
TUPLE = b"t"
EMPTY_TUPLE = b")"
EMPTY_LIST = b"]"
EMPTY_DICT = b"}"
APPENDS = b"e"
SETITEMS = b"u"
REDUCE = b"R"
BUILD = b"b"
NONE = b"N"
NEWTRUE = b"\x88"
NEWFALSE = b"\x89"


def proto(version: int = 2) -> bytes:
    return b"\x80" + bytes([version])


def global_(module: str, name: str) -> bytes:
    return b"c" + f"{module}\n{name}\n".encode("utf-8")


def text(value: str) -> bytes:
    data = value.encode("utf-8")
    return b"X" + struct.pack("<I", len(data)) + data


def short_binstring(value: bytes) -> bytes:
    return b"U" + bytes([len(value)]) + value


def binbytes(value: bytes) -> bytes:
    return b"B" + struct.pack("<I", len(value)) + value


def binint(value: int) -> bytes:
    return b"J" + struct.pack("<i", value)


def binfloat(value: float) -> bytes:
    return b"G" + struct.pack(">d", value)


def tuple_of(*items: bytes) -> bytes:
    return MARK + b"".join(items) + TUPLE


def call(module: str, name: str, *args: bytes) -> bytes:
    return global_(module, name) + tuple_of(*args) + REDUCE


def dict_of(*pairs: Tuple[bytes, bytes]) -> bytes:
    body = b"".join(key + value for key, value in pairs)
    return EMPTY_DICT + MARK + body + SETITEMS


def list_of(*items: bytes) -> bytes:
    return EMPTY_LIST + MARK + b"".join(items) + APPENDS


def numpy_dtype(code: str, byteorder: str = "<") -> bytes:
    state = tuple_of(
        binint(3),
        text(byteorder),
        NONE,
        NONE,
        NONE,
        binint(-1),
        binint(-1),
        binint(0),
    )
    return call("numpy", "dtype", text(code), NEWFALSE, NEWTRUE) + state + BUILD


def reconstructor(module: str, name: str, *, py3: bool = False) -> bytes:
    if py3:
        helper = global_("copyreg", "_reconstructor")
        base = global_("builtins", "object")
    else:
        helper = global_("copy_reg", "_reconstructor")
        base = global_("__builtin__", "object")
    return helper + tuple_of(global_(module, name), base, NONE) + REDUCE


def shape_of(shape: Sequence[int]) -> bytes:
    return tuple_of(*(binint(dim) for dim in shape))


def array_wrapper(
    shape: Sequence[int],
    code: str,
    payload: bytes,
    *,
    module: str = "joblib.numpy_pickle",
    alignment_padding: bytes | None = None,
) -> bytes:
    """joblib wrapper object followed by its raw array bytes."""

    pairs = [
        (text("subclass"), global_("numpy", "ndarray")),
        (text("dtype"), numpy_dtype(code)),
        (text("shape"), shape_of(shape)),
        (text("order"), text("C")),
        (text("allow_mmap"), NEWFALSE),
    ]
    trailer = payload
    if alignment_padding is not None:
        pairs.append((text("numpy_array_alignment_bytes"), binint(16)))
        trailer = bytes([len(alignment_padding)]) + alignment_padding + payload
    return reconstructor(module, "NumpyArrayWrapper") + dict_of(*pairs) + BUILD + trailer


def legacy_array(shape: Sequence[int], code: str, payload: bytes) -> bytes:
    """``numpy.core.multiarray._reconstruct`` with its inline state tuple."""

    head = call(
        "numpy.core.multiarray",
        "_reconstruct",
        global_("numpy", "ndarray"),
        tuple_of(binint(0)),
        binbytes(b"b"),
    )
    state = tuple_of(binint(1), shape_of(shape), numpy_dtype(code), NEWFALSE, binbytes(payload))
    return head + state + BUILD


def estimator(module: str, name: str, pairs: Iterable[Tuple[bytes, bytes]]) -> bytes:
    return reconstructor(module, name) + dict_of(*pairs) + BUILD


def stream(body: bytes, protocol: int = 2) -> bytes:
    return proto(protocol) + body + STOP


def pack_floats(values: Sequence[float], fmt: str = "<f") -> bytes:
    return b"".join(struct.pack(fmt, value) for value in values)
