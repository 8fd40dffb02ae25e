"""Loader configuration."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Tuple

DEFAULT_EXTENSIONS: Tuple[str, ...] = ("pkl", "joblib")
DEFAULT_METADATA_RESOURCE = "sklearn-metadata.json"
DEFAULT_PREVIEW_LIMIT = 10000


@dataclass(frozen=True)
class LoaderOptions:
    """Knobs controlling how model files are matched, decoded and rendered."""

    extensions: Tuple[str, ...] = DEFAULT_EXTENSIONS
    capability: str = "pickle"
    metadata_resource: str = DEFAULT_METADATA_RESOURCE
    preview_limit: int = DEFAULT_PREVIEW_LIMIT
    value_limit: int = sys.maxsize

    def __post_init__(self) -> None:
        if not self.extensions:
            raise ValueError("extensions must not be empty")
        normalised = tuple(ext.lower().lstrip(".") for ext in self.extensions)
        object.__setattr__(self, "extensions", normalised)
        if not self.capability:
            raise ValueError("capability must be a non-empty module name")
        if not self.metadata_resource:
            raise ValueError("metadata_resource must be a non-empty resource name")
        if self.preview_limit < 0:
            raise ValueError("preview_limit must be non-negative")
        if self.value_limit < self.preview_limit:
            raise ValueError("value_limit must be >= preview_limit")


__all__ = ["DEFAULT_EXTENSIONS", "DEFAULT_METADATA_RESOURCE", "DEFAULT_PREVIEW_LIMIT", "LoaderOptions"]
