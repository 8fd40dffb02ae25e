"""Forward-only binary reader over an in-memory pickle stream."""

from __future__ import annotations

import struct
from typing import Union

from ..errors import UnexpectedEndOfStream

BufferLike = Union[bytes, bytearray, memoryview]

_UINT16 = struct.Struct("<H")
_INT32 = struct.Struct("<i")
_UINT32 = struct.Struct("<I")
_UINT64 = struct.Struct("<Q")
_FLOAT32 = struct.Struct("<f")
_FLOAT64 = struct.Struct("<d")
_FLOAT64_BE = struct.Struct(">d")


class BinaryReader:
    """Sequential typed reads over an immutable byte buffer.

    Every read advances :attr:`position` by the number of bytes consumed and
    raises :class:`~sklearn_pickle.errors.UnexpectedEndOfStream` when the
    buffer does not hold enough bytes. Slices returned by :meth:`read_view`
    share memory with the original buffer.
    """

    __slots__ = ("_view", "_position", "_length")

    def __init__(self, buffer: BufferLike) -> None:
        view = buffer if isinstance(buffer, memoryview) else memoryview(buffer)
        if view.format != "B" or view.ndim != 1:
            view = view.cast("B")
        self._view = view.toreadonly()
        self._position = 0
        self._length = len(self._view)

    @property
    def position(self) -> int:
        return self._position

    @property
    def length(self) -> int:
        return self._length

    @property
    def remaining(self) -> int:
        return self._length - self._position

    @property
    def at_end(self) -> bool:
        return self._position >= self._length

    def _advance(self, size: int) -> int:
        if size < 0:
            raise UnexpectedEndOfStream(f"Invalid read length {size} at position {self._position}")
        start = self._position
        end = start + size
        if end > self._length:
            raise UnexpectedEndOfStream(
                f"Unexpected end of stream at position {start}: "
                f"{size} bytes requested, {self._length - start} available"
            )
        self._position = end
        return start

    def skip(self, size: int) -> None:
        self._advance(size)

    def read_view(self, size: int) -> memoryview:
        start = self._advance(size)
        return self._view[start : start + size]

    def read_bytes(self, size: int) -> bytes:
        return self.read_view(size).tobytes()

    def read_byte(self) -> int:
        start = self._advance(1)
        return self._view[start]

    def read_uint16(self) -> int:
        return _UINT16.unpack_from(self._view, self._advance(2))[0]

    def read_int32(self) -> int:
        return _INT32.unpack_from(self._view, self._advance(4))[0]

    def read_uint32(self) -> int:
        return _UINT32.unpack_from(self._view, self._advance(4))[0]

    def read_uint64(self) -> int:
        return _UINT64.unpack_from(self._view, self._advance(8))[0]

    def read_float32(self) -> float:
        return _FLOAT32.unpack_from(self._view, self._advance(4))[0]

    def read_float64(self) -> float:
        return _FLOAT64.unpack_from(self._view, self._advance(8))[0]

    def read_float64_be(self) -> float:
        return _FLOAT64_BE.unpack_from(self._view, self._advance(8))[0]

    def read_length_prefixed(self, width: int) -> memoryview:
        """Read a run whose little-endian length prefix is *width* bytes wide."""

        if width == 1:
            size = self.read_byte()
        elif width == 4:
            size = self.read_uint32()
        elif width == 8:
            size = self.read_uint64()
        else:
            raise ValueError(f"Unsupported length prefix width {width}")
        return self.read_view(size)

    def read_line(self) -> bytes:
        """Read up to and including the next newline; the newline is stripped."""

        start = self._position
        view = self._view
        index = start
        while index < self._length:
            if view[index] == 0x0A:
                self._position = index + 1
                return view[start:index].tobytes()
            index += 1
        raise UnexpectedEndOfStream(f"Unterminated line starting at position {start}")


__all__ = ["BinaryReader", "BufferLike"]
