"""Entry point that turns a ``.pkl``/``.joblib`` buffer into a :class:`SklearnModel`."""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from importlib import resources
from types import ModuleType
from typing import Any, Dict, Optional

from ..config import LoaderOptions
from ..decoding.reader import BufferLike
from ..decoding.reducers import ReducerRegistry
from ..errors import CapabilityUnavailable, SklearnError
from .graph import SklearnModel
from .metadata import MetadataCache

logger = logging.getLogger(__name__)

CAPABILITY_MODULES: Dict[str, str] = {
    "pickle": "sklearn_pickle.decoding.unpickler",
}


@dataclass(frozen=True)
class ModelContext:
    """File name and the complete file contents."""

    identifier: str
    buffer: BufferLike

    @property
    def extension(self) -> str:
        return self.identifier.split(".")[-1].lower()


class Host:
    """Environment services the loader depends on.

    Subclasses can swap any of these, for example to serve the metadata
    resource from elsewhere or to collect diagnostics.
    """

    resource_package = "sklearn_pickle.model"

    def require(self, name: str) -> ModuleType:
        """Return the capability module registered under *name*."""

        module_name = CAPABILITY_MODULES.get(name)
        if module_name is None:
            raise CapabilityUnavailable(f"Unknown capability '{name}'.")
        try:
            return importlib.import_module(module_name)
        except ImportError as exc:
            raise CapabilityUnavailable(f"Unable to load capability '{name}': {exc}") from exc

    def request(self, name: str, encoding: str = "utf-8") -> str:
        """Read a bundled resource as text."""

        return resources.files(self.resource_package).joinpath(name).read_text(encoding=encoding)

    def exception(self, error: BaseException, fatal: bool = False) -> None:
        """Receive a diagnostic; non-fatal ones do not stop loading."""

        if fatal:
            logger.error("%s", error)
        else:
            logger.warning("%s", error)


_SHARED_METADATA = MetadataCache()


class SklearnModelFactory:
    """Matches scikit-learn pickle files and opens them.

    The metadata cache is shared by every factory that does not bring its
    own, so the schema resource is read once per process.
    """

    def __init__(
        self,
        options: Optional[LoaderOptions] = None,
        *,
        registry: Optional[ReducerRegistry] = None,
        metadata_cache: Optional[MetadataCache] = None,
    ) -> None:
        self._options = options or LoaderOptions()
        self._registry = registry if registry is not None else ReducerRegistry()
        if metadata_cache is None:
            if self._options.metadata_resource == _SHARED_METADATA.resource:
                metadata_cache = _SHARED_METADATA
            else:
                metadata_cache = MetadataCache(self._options.metadata_resource)
        self._metadata_cache = metadata_cache

    @property
    def options(self) -> LoaderOptions:
        return self._options

    @property
    def registry(self) -> ReducerRegistry:
        return self._registry

    @property
    def metadata_cache(self) -> MetadataCache:
        return self._metadata_cache

    def match(self, context: ModelContext) -> bool:
        return context.extension in self._options.extensions

    def decode(self, context: ModelContext, host: Host) -> Any:
        """Decode the object graph without building the model view."""

        capability = host.require(self._options.capability)
        unpickler = capability.Unpickler(
            context.buffer,
            registry=self._registry,
            on_unresolved=lambda error: host.exception(error, False),
        )
        return unpickler.load()

    def open(self, context: ModelContext, host: Optional[Host] = None) -> SklearnModel:
        """Decode *context* and assemble the model.

        Capability and decoding errors propagate unchanged. Failures while
        assembling the model are reported as :class:`SklearnError`.
        """

        host = host if host is not None else Host()
        obj = self.decode(context, host)
        try:
            metadata = self._metadata_cache.open(host)
            return SklearnModel(obj, metadata, self._options)
        except SklearnError:
            raise
        except Exception as exc:
            raise SklearnError(str(exc)) from exc


def open_model(
    identifier: str,
    buffer: BufferLike,
    *,
    host: Optional[Host] = None,
    options: Optional[LoaderOptions] = None,
) -> SklearnModel:
    """Open *buffer* (the contents of *identifier*) as a scikit-learn model."""

    factory = SklearnModelFactory(options)
    context = ModelContext(identifier, buffer)
    if not factory.match(context):
        raise SklearnError(f"Unsupported file extension '{context.extension}' for '{identifier}'.")
    return factory.open(context, host)


__all__ = [
    "CAPABILITY_MODULES",
    "Host",
    "ModelContext",
    "SklearnModelFactory",
    "open_model",
]
