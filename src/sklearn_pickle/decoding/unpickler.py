"""Stack machine that interprets pickle opcode streams (protocols 0 to 5).

Objects are never rebuilt by importing and calling Python code. Every global
the stream calls is looked up in a :class:`ReducerRegistry`; names without a
reducer become :class:`UnresolvedObject` placeholders and are reported
through ``on_unresolved`` while decoding carries on.
"""

from __future__ import annotations

import codecs
import logging
from collections.abc import Mapping as _Mapping
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional

from ..errors import MalformedStream, SklearnError, UnresolvedTypeName
from .reader import BinaryReader, BufferLike
from .reducers import (
    BASE_OBJECT_NAMES,
    RECONSTRUCTOR_NAMES,
    GlobalReference,
    ReconstructedObject,
    ReducerRegistry,
    UnresolvedObject,
)

logger = logging.getLogger(__name__)

HIGHEST_PROTOCOL = 5

# Opcode bytes, named as in pickletools.
MARK = ord("(")
STOP = ord(".")
POP = ord("0")
POP_MARK = ord("1")
DUP = ord("2")
FLOAT = ord("F")
INT = ord("I")
BININT = ord("J")
BININT1 = ord("K")
LONG = ord("L")
BININT2 = ord("M")
NONE = ord("N")
PERSID = ord("P")
BINPERSID = ord("Q")
REDUCE = ord("R")
STRING = ord("S")
BINSTRING = ord("T")
SHORT_BINSTRING = ord("U")
UNICODE = ord("V")
BINUNICODE = ord("X")
APPEND = ord("a")
BUILD = ord("b")
GLOBAL = ord("c")
DICT = ord("d")
EMPTY_DICT = ord("}")
APPENDS = ord("e")
GET = ord("g")
BINGET = ord("h")
INST = ord("i")
LONG_BINGET = ord("j")
LIST = ord("l")
EMPTY_LIST = ord("]")
OBJ = ord("o")
PUT = ord("p")
BINPUT = ord("q")
LONG_BINPUT = ord("r")
SETITEM = ord("s")
TUPLE = ord("t")
EMPTY_TUPLE = ord(")")
SETITEMS = ord("u")
BINFLOAT = ord("G")
# Protocol 2
PROTO = 0x80
NEWOBJ = 0x81
EXT1 = 0x82
EXT2 = 0x83
EXT4 = 0x84
TUPLE1 = 0x85
TUPLE2 = 0x86
TUPLE3 = 0x87
NEWTRUE = 0x88
NEWFALSE = 0x89
LONG1 = 0x8A
LONG4 = 0x8B
# Protocol 3
BINBYTES = ord("B")
SHORT_BINBYTES = ord("C")
# Protocol 4
SHORT_BINUNICODE = 0x8C
BINUNICODE8 = 0x8D
BINBYTES8 = 0x8E
EMPTY_SET = 0x8F
ADDITEMS = 0x90
FROZENSET = 0x91
NEWOBJ_EX = 0x92
STACK_GLOBAL = 0x93
MEMOIZE = 0x94
FRAME = 0x95
# Protocol 5
BYTEARRAY8 = 0x96
NEXT_BUFFER = 0x97
READONLY_BUFFER = 0x98

UnresolvedCallback = Callable[[UnresolvedTypeName], None]
PersistentLoad = Callable[[Any], Any]


def _decode_latin1(data: Any) -> str:
    return bytes(data).decode("latin-1")


def _parse_int_line(line: bytes) -> Any:
    if line == b"01":
        return True
    if line == b"00":
        return False
    return int(line, 0)


def _parse_long_line(line: bytes) -> int:
    if line.endswith(b"L"):
        line = line[:-1]
    return int(line, 0)


def _unquote_string(line: bytes) -> str:
    if len(line) >= 2 and line[0] == line[-1] and line[:1] in (b'"', b"'"):
        return _decode_latin1(codecs.escape_decode(line[1:-1])[0])
    raise ValueError("the STRING opcode argument must be quoted")


class Unpickler:
    """Decode one pickle stream into an object graph.

    Parameters
    ----------
    buffer:
        The complete stream. It is read forward-only and never copied.
    registry:
        Reducers for the globals the stream may call. A fresh default
        registry is used when omitted.
    on_unresolved:
        Receives an :class:`UnresolvedTypeName` for each construction that
        names an unknown global.
    persistent_load, buffers:
        Optional support for persistent ids and protocol 5 out-of-band
        buffers. Streams that use them fail without these.
    """

    def __init__(
        self,
        buffer: BufferLike,
        *,
        registry: Optional[ReducerRegistry] = None,
        on_unresolved: Optional[UnresolvedCallback] = None,
        persistent_load: Optional[PersistentLoad] = None,
        buffers: Optional[Iterable[Any]] = None,
    ) -> None:
        self._reader = BinaryReader(buffer)
        self._registry = registry if registry is not None else ReducerRegistry()
        self._on_unresolved = on_unresolved
        self._persistent_load = persistent_load
        self._buffers: Optional[Iterator[Any]] = iter(buffers) if buffers is not None else None
        self._stack: List[Any] = []
        self._metastack: List[List[Any]] = []
        self._memo: Dict[int, Any] = {}
        self._protocol = 0
        self._dispatch: Dict[int, Callable[[], None]] = self._build_dispatch()

    @property
    def protocol(self) -> int:
        return self._protocol

    @property
    def reader(self) -> BinaryReader:
        return self._reader

    def load(self) -> Any:
        """Run the stream to its ``STOP`` opcode and return the single result."""

        reader = self._reader
        while True:
            position = reader.position
            opcode = reader.read_byte()
            if opcode == STOP:
                return self._finish(position)
            handler = self._dispatch.get(opcode)
            if handler is None:
                raise MalformedStream(f"Unknown opcode 0x{opcode:02x} at position {position}.")
            try:
                handler()
            except SklearnError:
                raise
            except (ValueError, TypeError, IndexError, KeyError, OverflowError, UnicodeDecodeError) as exc:
                raise MalformedStream(
                    f"Invalid opcode 0x{opcode:02x} at position {position}: {exc}"
                ) from exc

    def _finish(self, position: int) -> Any:
        if self._metastack:
            raise MalformedStream(f"Unterminated mark at STOP (position {position}).")
        if len(self._stack) != 1:
            raise MalformedStream(
                f"Expected exactly one value on the stack at STOP (position {position}), "
                f"found {len(self._stack)}."
            )
        return self._stack.pop()

    # Stack helpers -----------------------------------------------------

    def _push(self, value: Any) -> None:
        self._stack.append(value)

    def _pop(self) -> Any:
        if not self._stack:
            raise MalformedStream(f"Stack underflow at position {self._reader.position}.")
        return self._stack.pop()

    def _top(self) -> Any:
        if not self._stack:
            raise MalformedStream(f"Stack underflow at position {self._reader.position}.")
        return self._stack[-1]

    def _pop_mark(self) -> List[Any]:
        if not self._metastack:
            raise MalformedStream(f"Mark not found at position {self._reader.position}.")
        items = self._stack
        self._stack = self._metastack.pop()
        return items

    def _memo_get(self, index: int) -> Any:
        try:
            return self._memo[index]
        except KeyError:
            raise MalformedStream(f"Memo value not found at index {index}.") from None

    def _memo_put(self, index: int) -> None:
        if index < 0:
            raise MalformedStream(f"Negative memo index {index}.")
        self._memo[index] = self._top()

    # Object construction -------------------------------------------------

    def call(self, name: Any, args: Iterable[Any] = (), kwargs: Optional[Mapping[str, Any]] = None) -> Any:
        """Construct ``name(*args, **kwargs)`` through the reducer registry."""

        if not isinstance(name, GlobalReference):
            raise MalformedStream(f"Cannot call value of type '{type(name).__name__}'.")
        args = tuple(args)
        if (
            name in RECONSTRUCTOR_NAMES
            and len(args) >= 2
            and isinstance(args[1], GlobalReference)
            and args[1] in BASE_OBJECT_NAMES
        ):
            name = args[0]
            args = ()
            kwargs = None
            if not isinstance(name, GlobalReference):
                raise MalformedStream(f"Cannot reconstruct value of type '{type(name).__name__}'.")
        reducer = self._registry.resolve(name)
        if reducer is None:
            logger.debug("No reducer registered for %s", name)
            if self._on_unresolved is not None:
                self._on_unresolved(UnresolvedTypeName(str(name)))
            return UnresolvedObject(str(name))
        logger.debug("Reducing %s with %d arguments", name, len(args))
        try:
            return reducer(str(name), *args, **(kwargs or {}))
        except TypeError as exc:
            raise MalformedStream(f"Invalid arguments for '{name}': {exc}") from exc

    def _build(self, state: Any, inst: Any) -> None:
        if isinstance(inst, ReconstructedObject):
            inst.restore(state, self._reader)
        elif isinstance(inst, dict) and isinstance(state, _Mapping):
            inst.update(state)
        else:
            raise MalformedStream(f"Cannot apply state to value of type '{type(inst).__name__}'.")

    # Opcode handlers ---------------------------------------------------

    def _build_dispatch(self) -> Dict[int, Callable[[], None]]:
        return {
            PROTO: self._load_proto,
            FRAME: self._load_frame,
            MARK: self._load_mark,
            POP: self._load_pop,
            POP_MARK: self._load_pop_mark,
            DUP: self._load_dup,
            NONE: lambda: self._push(None),
            NEWTRUE: lambda: self._push(True),
            NEWFALSE: lambda: self._push(False),
            INT: self._load_int,
            BININT: lambda: self._push(self._reader.read_int32()),
            BININT1: lambda: self._push(self._reader.read_byte()),
            BININT2: lambda: self._push(self._reader.read_uint16()),
            LONG: lambda: self._push(_parse_long_line(self._reader.read_line())),
            LONG1: lambda: self._load_long(self._reader.read_byte()),
            LONG4: self._load_long4,
            FLOAT: lambda: self._push(float(self._reader.read_line())),
            BINFLOAT: lambda: self._push(self._reader.read_float64_be()),
            STRING: lambda: self._push(_unquote_string(self._reader.read_line())),
            BINSTRING: self._load_binstring,
            SHORT_BINSTRING: lambda: self._push(_decode_latin1(self._reader.read_length_prefixed(1))),
            BINBYTES: lambda: self._push(bytes(self._reader.read_length_prefixed(4))),
            SHORT_BINBYTES: lambda: self._push(bytes(self._reader.read_length_prefixed(1))),
            BINBYTES8: lambda: self._push(bytes(self._reader.read_length_prefixed(8))),
            BYTEARRAY8: lambda: self._push(bytearray(self._reader.read_length_prefixed(8))),
            UNICODE: lambda: self._push(self._reader.read_line().decode("raw-unicode-escape")),
            BINUNICODE: lambda: self._push(self._load_text(4)),
            SHORT_BINUNICODE: lambda: self._push(self._load_text(1)),
            BINUNICODE8: lambda: self._push(self._load_text(8)),
            EMPTY_TUPLE: lambda: self._push(()),
            TUPLE: lambda: self._push(tuple(self._pop_mark())),
            TUPLE1: self._load_tuple1,
            TUPLE2: self._load_tuple2,
            TUPLE3: self._load_tuple3,
            EMPTY_LIST: lambda: self._push([]),
            LIST: lambda: self._push(self._pop_mark()),
            EMPTY_DICT: lambda: self._push({}),
            DICT: self._load_dict,
            EMPTY_SET: lambda: self._push(set()),
            FROZENSET: lambda: self._push(frozenset(self._pop_mark())),
            APPEND: self._load_append,
            APPENDS: self._load_appends,
            SETITEM: self._load_setitem,
            SETITEMS: self._load_setitems,
            ADDITEMS: self._load_additems,
            GET: lambda: self._push(self._memo_get(int(self._reader.read_line()))),
            BINGET: lambda: self._push(self._memo_get(self._reader.read_byte())),
            LONG_BINGET: lambda: self._push(self._memo_get(self._reader.read_uint32())),
            PUT: lambda: self._memo_put(int(self._reader.read_line())),
            BINPUT: lambda: self._memo_put(self._reader.read_byte()),
            LONG_BINPUT: lambda: self._memo_put(self._reader.read_uint32()),
            MEMOIZE: lambda: self._memo_put(len(self._memo)),
            GLOBAL: self._load_global,
            STACK_GLOBAL: self._load_stack_global,
            REDUCE: self._load_reduce,
            NEWOBJ: self._load_newobj,
            NEWOBJ_EX: self._load_newobj_ex,
            INST: self._load_inst,
            OBJ: self._load_obj,
            BUILD: self._load_build,
            PERSID: lambda: self._push(self._persistent(self._reader.read_line().decode("ascii"))),
            BINPERSID: lambda: self._push(self._persistent(self._pop())),
            EXT1: lambda: self._extension(self._reader.read_byte()),
            EXT2: lambda: self._extension(self._reader.read_uint16()),
            EXT4: lambda: self._extension(self._reader.read_int32()),
            NEXT_BUFFER: self._load_next_buffer,
            READONLY_BUFFER: self._load_readonly_buffer,
        }

    def _load_proto(self) -> None:
        protocol = self._reader.read_byte()
        if protocol > HIGHEST_PROTOCOL:
            raise MalformedStream(f"Unsupported pickle protocol {protocol}.")
        logger.debug("Pickle protocol %d", protocol)
        self._protocol = protocol

    def _load_frame(self) -> None:
        size = self._reader.read_uint64()
        if size > self._reader.remaining:
            raise MalformedStream(
                f"Frame of {size} bytes exceeds the {self._reader.remaining} bytes left in the stream."
            )
        logger.debug("Frame of %d bytes", size)

    def _load_mark(self) -> None:
        self._metastack.append(self._stack)
        self._stack = []

    def _load_pop(self) -> None:
        if self._stack:
            self._stack.pop()
        else:
            self._pop_mark()

    def _load_pop_mark(self) -> None:
        self._pop_mark()

    def _load_dup(self) -> None:
        self._push(self._top())

    def _load_int(self) -> None:
        self._push(_parse_int_line(self._reader.read_line()))

    def _load_long(self, size: int) -> None:
        data = self._reader.read_view(size)
        self._push(int.from_bytes(data, "little", signed=True))

    def _load_long4(self) -> None:
        size = self._reader.read_int32()
        if size < 0:
            raise MalformedStream("LONG4 pickle has negative byte count.")
        self._load_long(size)

    def _load_binstring(self) -> None:
        size = self._reader.read_int32()
        if size < 0:
            raise MalformedStream("BINSTRING pickle has negative byte count.")
        self._push(_decode_latin1(self._reader.read_view(size)))

    def _load_text(self, width: int) -> str:
        return bytes(self._reader.read_length_prefixed(width)).decode("utf-8", "surrogatepass")

    def _load_tuple1(self) -> None:
        self._push((self._pop(),))

    def _load_tuple2(self) -> None:
        second = self._pop()
        first = self._pop()
        self._push((first, second))

    def _load_tuple3(self) -> None:
        third = self._pop()
        second = self._pop()
        first = self._pop()
        self._push((first, second, third))

    def _load_dict(self) -> None:
        items = self._pop_mark()
        if len(items) % 2:
            raise MalformedStream("DICT requires an even number of items.")
        self._push({items[i]: items[i + 1] for i in range(0, len(items), 2)})

    def _extend(self, target: Any, items: List[Any]) -> None:
        if isinstance(target, list):
            target.extend(items)
        elif isinstance(target, ReconstructedObject):
            target.append_items(items)
        else:
            raise MalformedStream(f"Cannot append to value of type '{type(target).__name__}'.")

    def _load_append(self) -> None:
        value = self._pop()
        self._extend(self._top(), [value])

    def _load_appends(self) -> None:
        items = self._pop_mark()
        self._extend(self._top(), items)

    def _set_items(self, target: Any, items: List[Any]) -> None:
        if len(items) % 2:
            raise MalformedStream("SETITEMS requires an even number of items.")
        pairs = [(items[i], items[i + 1]) for i in range(0, len(items), 2)]
        if isinstance(target, dict):
            target.update(pairs)
        elif isinstance(target, ReconstructedObject):
            target.set_items(pairs)
        else:
            raise MalformedStream(f"Cannot set items on value of type '{type(target).__name__}'.")

    def _load_setitem(self) -> None:
        value = self._pop()
        key = self._pop()
        self._set_items(self._top(), [key, value])

    def _load_setitems(self) -> None:
        items = self._pop_mark()
        self._set_items(self._top(), items)

    def _load_additems(self) -> None:
        items = self._pop_mark()
        target = self._top()
        if isinstance(target, set):
            target.update(items)
        elif isinstance(target, ReconstructedObject):
            target.append_items(items)
        else:
            raise MalformedStream(f"Cannot add items to value of type '{type(target).__name__}'.")

    def _read_global_name(self) -> GlobalReference:
        module = self._reader.read_line().decode("utf-8")
        name = self._reader.read_line().decode("utf-8")
        return GlobalReference(f"{module}.{name}")

    def _load_global(self) -> None:
        self._push(self._read_global_name())

    def _load_stack_global(self) -> None:
        name = self._pop()
        module = self._pop()
        if not isinstance(module, str) or not isinstance(name, str):
            raise MalformedStream("STACK_GLOBAL requires str")
        self._push(GlobalReference(f"{module}.{name}"))

    def _load_reduce(self) -> None:
        args = self._pop()
        func = self._pop()
        self._push(self.call(func, args))

    def _load_newobj(self) -> None:
        args = self._pop()
        cls = self._pop()
        self._push(self.call(cls, args))

    def _load_newobj_ex(self) -> None:
        kwargs = self._pop()
        args = self._pop()
        cls = self._pop()
        self._push(self.call(cls, args, kwargs))

    def _load_inst(self) -> None:
        name = self._read_global_name()
        args = self._pop_mark()
        self._push(self.call(name, args))

    def _load_obj(self) -> None:
        args = self._pop_mark()
        if not args:
            raise MalformedStream("OBJ requires a class on the stack.")
        cls = args.pop(0)
        self._push(self.call(cls, args))

    def _load_build(self) -> None:
        state = self._pop()
        self._build(state, self._top())

    def _persistent(self, pid: Any) -> Any:
        if self._persistent_load is None:
            raise MalformedStream("A load persistent id instruction was encountered, but no persistent_load was given.")
        return self._persistent_load(pid)

    def _extension(self, code: int) -> None:
        raise MalformedStream(f"Unsupported extension code {code}.")

    def _load_next_buffer(self) -> None:
        if self._buffers is None:
            raise MalformedStream("Pickle stream refers to out-of-band data but no buffers were given.")
        try:
            self._push(next(self._buffers))
        except StopIteration:
            raise MalformedStream("Not enough out-of-band buffers.") from None

    def _load_readonly_buffer(self) -> None:
        value = self._top()
        if isinstance(value, bytearray):
            self._stack[-1] = bytes(value)
        elif isinstance(value, memoryview):
            self._stack[-1] = value.toreadonly()


def loads(
    buffer: BufferLike,
    *,
    registry: Optional[ReducerRegistry] = None,
    on_unresolved: Optional[UnresolvedCallback] = None,
) -> Any:
    """Decode *buffer* with a fresh :class:`Unpickler`."""

    return Unpickler(buffer, registry=registry, on_unresolved=on_unresolved).load()


__all__ = ["HIGHEST_PROTOCOL", "Unpickler", "loads"]
