"""Decode arrays and scalars pickled by numpy itself."""

from __future__ import annotations

import pickle

import numpy as np
import pytest

from sklearn_pickle.decoding import NumpyArray, loads
from sklearn_pickle.tensor import Tensor


@pytest.mark.parametrize("protocol", [2, 3, 4])
@pytest.mark.parametrize("dtype", ["float32", "float64", "int32", "int64"])
def test_ndarray_round_trips_through_tensor(protocol: int, dtype: str) -> None:
    array = np.arange(6, dtype=dtype).reshape(2, 3)

    result = loads(pickle.dumps(array, protocol=protocol))

    assert isinstance(result, NumpyArray)
    tensor = Tensor.from_array("weights", result)
    assert str(tensor.type) == f"{dtype}[2,3]"
    assert tensor.value == array.tolist()


@pytest.mark.parametrize("protocol", [2, 3, 4])
def test_int64_scalar(protocol: int) -> None:
    assert loads(pickle.dumps(np.int64(5), protocol=protocol)) == 5


def test_dtype_inside_container() -> None:
    result = loads(pickle.dumps({"dtype": np.dtype("float64")}, protocol=2))

    assert result["dtype"].name == "float64"
    assert result["dtype"].itemsize == 8
