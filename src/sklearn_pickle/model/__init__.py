"""Model view assembled from decoded scikit-learn objects."""

from .factory import Host, ModelContext, SklearnModelFactory, open_model
from .graph import SklearnAttribute, SklearnGraph, SklearnModel, SklearnNode
from .metadata import MetadataCache, OperatorMetadata

__all__ = [
    "Host",
    "MetadataCache",
    "ModelContext",
    "OperatorMetadata",
    "SklearnAttribute",
    "SklearnGraph",
    "SklearnModel",
    "SklearnModelFactory",
    "SklearnNode",
    "open_model",
]
