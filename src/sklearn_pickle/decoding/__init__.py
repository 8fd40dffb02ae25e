"""Pickle stream decoding: byte reader, reducer registry and stack machine."""

from .reader import BinaryReader
from .reducers import (
    GlobalReference,
    NumpyArray,
    NumpyArrayWrapper,
    NumpyDType,
    ReconstructedObject,
    ReducerRegistry,
    Tree,
    UnresolvedObject,
)
from .unpickler import Unpickler, loads

__all__ = [
    "BinaryReader",
    "GlobalReference",
    "NumpyArray",
    "NumpyArrayWrapper",
    "NumpyDType",
    "ReconstructedObject",
    "ReducerRegistry",
    "Tree",
    "Unpickler",
    "UnresolvedObject",
    "loads",
]
