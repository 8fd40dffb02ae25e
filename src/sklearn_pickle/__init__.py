"""Read scikit-learn ``.pkl``/``.joblib`` files without executing pickled code."""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Any

from .errors import (
    CapabilityUnavailable,
    MalformedDescriptorState,
    MalformedState,
    MalformedStream,
    SklearnError,
    TensorNotDecodable,
    UnexpectedEndOfStream,
    UnknownDataType,
    UnresolvedTypeName,
)

_LAZY_ATTRIBUTES = {
    "LoaderOptions": "sklearn_pickle.config",
    "Host": "sklearn_pickle.model.factory",
    "ModelContext": "sklearn_pickle.model.factory",
    "SklearnModelFactory": "sklearn_pickle.model.factory",
    "open_model": "sklearn_pickle.model.factory",
    "SklearnModel": "sklearn_pickle.model.graph",
    "ReducerRegistry": "sklearn_pickle.decoding.reducers",
    "Unpickler": "sklearn_pickle.decoding.unpickler",
    "Tensor": "sklearn_pickle.tensor",
    "TensorType": "sklearn_pickle.tensor",
    "decode_tensor": "sklearn_pickle.tensor",
}

__all__ = sorted(
    [
        "CapabilityUnavailable",
        "MalformedDescriptorState",
        "MalformedState",
        "MalformedStream",
        "SklearnError",
        "TensorNotDecodable",
        "UnexpectedEndOfStream",
        "UnknownDataType",
        "UnresolvedTypeName",
        *_LAZY_ATTRIBUTES,
    ]
)


def __getattr__(name: str) -> Any:
    """Import the numpy-backed parts of the package on first use."""

    module_name = _LAZY_ATTRIBUTES.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    value = getattr(importlib.import_module(module_name), name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    return sorted(list(__all__) + list(globals().keys()))


if TYPE_CHECKING:  # pragma: no cover - imported for static analyzers
    from .config import LoaderOptions  # noqa: F401
    from .decoding.reducers import ReducerRegistry  # noqa: F401
    from .decoding.unpickler import Unpickler  # noqa: F401
    from .model.factory import Host, ModelContext, SklearnModelFactory, open_model  # noqa: F401
    from .model.graph import SklearnModel  # noqa: F401
    from .tensor import Tensor, TensorType, decode_tensor  # noqa: F401
