"""Error taxonomy shared by the decoder, the tensor materializer and the loader."""

from __future__ import annotations


class SklearnError(RuntimeError):
    """Base class for every failure raised while loading a scikit-learn model."""

    title = "Error loading scikit-learn model."


class CapabilityUnavailable(SklearnError):
    """Raised when the host cannot provide the deserialization capability."""


class MalformedStream(SklearnError):
    """Raised for structural violations of the pickle opcode stream."""


class UnexpectedEndOfStream(MalformedStream):
    """Raised when a read needs more bytes than the stream holds."""


class UnknownDataType(SklearnError):
    """Raised for numpy type codes outside the supported table."""


class MalformedState(SklearnError):
    """Raised when a state payload does not have the shape a type demands."""


class MalformedDescriptorState(MalformedState):
    """Raised when a ``numpy.dtype`` state tuple has an unexpected length."""


class UnresolvedTypeName(SklearnError):
    """Diagnostic reported to the host for type names without a reducer."""

    def __init__(self, type_name: str) -> None:
        super().__init__(f"Unknown function '{type_name}'.")
        self.type_name = type_name


class TensorNotDecodable(SklearnError):
    """Raised when a tensor payload cannot be turned into values."""


__all__ = [
    "CapabilityUnavailable",
    "MalformedDescriptorState",
    "MalformedState",
    "MalformedStream",
    "SklearnError",
    "TensorNotDecodable",
    "UnexpectedEndOfStream",
    "UnknownDataType",
    "UnresolvedTypeName",
]
