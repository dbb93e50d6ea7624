"""Schema compilation: message definitions to binary readers and writers.

Codecs are compiled lazily, the first time a channel or service is used,
and cached by schema name for the lifetime of the session.

Backend selection:
  - ROS 2 sessions (CDR) parse `ros2msg` definitions with mcap_ros2; `ros2idl`
    definitions are parsed with rosbags and re-rendered as message definitions
    first.
  - ROS 1 sessions parse `ros1msg` definitions with the genpy copy shipped in
    mcap_ros1.
"""

import io
import logging
import re
from typing import Any, Callable

from mcap_ros2._dynamic import generate_dynamic, serialize_dynamic

from rosfox.protocol import Channel, MessageSchema, Service

logger = logging.getLogger("rosfox.codecs")

Reader = Callable[[bytes], Any]
Writer = Callable[[Any], bytes]
# (schema_name, schema_text, schema_encoding, ros2) -> codec
ReaderCompiler = Callable[[str, str, "str | None", bool], Reader]
WriterCompiler = Callable[[str, str, "str | None", bool], Writer]

IDL_ENCODING = "ros2idl"


class RosfoxError(Exception):
    """Base class for errors raised by rosfox."""


class SchemaMissing(RosfoxError):
    """The descriptor carries no usable schema text."""


def short_name(schema_name: str) -> str:
    """'pkg/msg/Name' -> 'pkg/Name'."""
    parts = schema_name.split("/")
    if len(parts) == 3:
        return f"{parts[0]}/{parts[2]}"
    return schema_name


def to_plain(value: Any) -> Any:
    """Convert a decoded message object into dicts and lists."""
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    slots = getattr(type(value), "__slots__", None)
    if slots and not isinstance(value, (str, bytes)):
        return {
            name: to_plain(getattr(value, name))
            for name in slots
            if not name.startswith("_")
        }
    return value


# ── ROS 2 ────────────────────────────────────────────────────────────────


def _lookup(funcs: dict[str, Any], schema_name: str) -> Any:
    func = funcs.get(schema_name) or funcs.get(short_name(schema_name))
    if func is None:
        raise ValueError(f"No definition generated for {schema_name}")
    return func


_IDL_SEPARATOR = re.compile(r"^=+\n(?:IDL: \S+\n)?", re.MULTILINE)


def idl_to_msgdef(schema_name: str, schema: str) -> str:
    """Render a (possibly concatenated) IDL schema as a ros2msg definition."""
    from rosbags.typesys import Stores, get_types_from_idl, get_typestore

    typestore = get_typestore(Stores.EMPTY)
    for chunk in _IDL_SEPARATOR.split(schema):
        if chunk.strip():
            typestore.register(get_types_from_idl(chunk))
    msgdef, _ = typestore.generate_msgdef(schema_name, ros_version=2)
    # mcap_ros2 expects field types as 'pkg/Name'
    return re.sub(r"\b(\w+)/msg/(\w+)\b", r"\1/\2", msgdef)


def _ros2_definition(schema_name: str, schema: str, schema_encoding: str | None) -> str:
    if schema_encoding == IDL_ENCODING:
        return idl_to_msgdef(schema_name, schema)
    return schema


def _ros2_reader(schema_name: str, schema: str, schema_encoding: str | None) -> Reader:
    definition = _ros2_definition(schema_name, schema, schema_encoding)
    decode = _lookup(generate_dynamic(schema_name, definition), schema_name)

    def read(data: bytes) -> Any:
        return to_plain(decode(data))

    return read


def _ros2_writer(schema_name: str, schema: str, schema_encoding: str | None) -> Writer:
    definition = _ros2_definition(schema_name, schema, schema_encoding)
    return _lookup(serialize_dynamic(schema_name, definition), schema_name)


# ── ROS 1 ────────────────────────────────────────────────────────────────


def _ros1_classes(schema_name: str, schema: str) -> dict[str, Any]:
    from mcap_ros1._vendor.genpy.dynamic import generate_dynamic as generate_ros1

    return generate_ros1(schema_name, schema)


def _ros1_field(classes: dict[str, Any], slot_type: str, value: Any) -> Any:
    from mcap_ros1._vendor.genpy import Duration, Time

    base = slot_type.split("[", 1)[0]
    if "[" in slot_type:
        if base in ("uint8", "char") or value is None:
            return value
        return [_ros1_field(classes, base, item) for item in value]
    if isinstance(value, dict):
        if base == "time":
            return Time(value.get("secs", 0), value.get("nsecs", 0))
        if base == "duration":
            return Duration(value.get("secs", 0), value.get("nsecs", 0))
        if base == "Header":
            base = "std_msgs/Header"
        cls = classes.get(base)
        if cls is not None:
            return _ros1_build(classes, cls, value)
    return value


def _ros1_build(classes: dict[str, Any], cls: Any, value: Any) -> Any:
    if not isinstance(value, dict):
        return value
    msg = cls()
    for slot, slot_type in zip(cls.__slots__, cls._slot_types):
        if slot in value:
            setattr(msg, slot, _ros1_field(classes, slot_type, value[slot]))
    return msg


def _ros1_reader(schema_name: str, schema: str, schema_encoding: str | None) -> Reader:
    cls = _lookup(_ros1_classes(schema_name, schema), schema_name)

    def read(data: bytes) -> Any:
        return to_plain(cls().deserialize(data))

    return read


def _ros1_writer(schema_name: str, schema: str, schema_encoding: str | None) -> Writer:
    classes = _ros1_classes(schema_name, schema)
    cls = _lookup(classes, schema_name)

    def write(msg: Any) -> bytes:
        buf = io.BytesIO()
        _ros1_build(classes, cls, msg).serialize(buf)
        return buf.getvalue()

    return write


def compile_reader(
    schema_name: str, schema: str, schema_encoding: str | None, ros2: bool
) -> Reader:
    if ros2:
        return _ros2_reader(schema_name, schema, schema_encoding)
    return _ros1_reader(schema_name, schema, schema_encoding)


def compile_writer(
    schema_name: str, schema: str, schema_encoding: str | None, ros2: bool
) -> Writer:
    if ros2:
        return _ros2_writer(schema_name, schema, schema_encoding)
    return _ros1_writer(schema_name, schema, schema_encoding)


# ── Cache ────────────────────────────────────────────────────────────────


def _service_half_name(service: Service, half: MessageSchema, suffix: str, ros2: bool) -> str:
    if half.name:
        return half.name
    # ROS 2 names service halves 'pkg/srv/Name_Request', ROS 1 'pkg/NameRequest'
    return f"{service.type}_{suffix}" if ros2 else f"{service.type}{suffix}"


class SchemaCodecs:
    """Memoized readers and writers, keyed by schema name."""

    def __init__(
        self,
        ros2: bool = True,
        reader_compiler: ReaderCompiler = compile_reader,
        writer_compiler: WriterCompiler = compile_writer,
    ):
        self.ros2 = ros2
        self._compile_reader = reader_compiler
        self._compile_writer = writer_compiler
        self._readers: dict[str, Reader] = {}
        self._writers: dict[str, Writer] = {}

    def reader(self, descriptor: Channel | Service) -> Reader:
        """Reader for a channel's messages or a service's responses."""
        key = self._key(descriptor)
        reader = self._readers.get(key)
        if reader is None:
            name, schema, encoding = self._resolve(descriptor, "Response")
            logger.debug("Compiling reader for %s", key)
            reader = self._compile_reader(name, schema, encoding, self.ros2)
            self._readers[key] = reader
        return reader

    def writer(self, descriptor: Channel | Service) -> Writer:
        """Writer for a channel's messages or a service's requests."""
        key = self._key(descriptor)
        writer = self._writers.get(key)
        if writer is None:
            name, schema, encoding = self._resolve(descriptor, "Request")
            logger.debug("Compiling writer for %s", key)
            writer = self._compile_writer(name, schema, encoding, self.ros2)
            self._writers[key] = writer
        return writer

    @staticmethod
    def _key(descriptor: Channel | Service) -> str:
        if isinstance(descriptor, Channel):
            return descriptor.schema_name
        return descriptor.type

    def _resolve(
        self, descriptor: Channel | Service, suffix: str
    ) -> tuple[str, str, str | None]:
        if isinstance(descriptor, Channel):
            name = descriptor.schema_name
            schema = descriptor.schema
            encoding = descriptor.schema_encoding
        else:
            half = descriptor.response if suffix == "Response" else descriptor.request
            if half is None:
                raise SchemaMissing(
                    f"Service {descriptor.name} has no {suffix.lower()} schema"
                )
            name = _service_half_name(descriptor, half, suffix, self.ros2)
            schema = half.schema
            encoding = half.schema_encoding
        if not isinstance(schema, str):
            raise SchemaMissing(f"No schema text for {self._key(descriptor)}")
        return name, schema, encoding

    def __len__(self) -> int:
        return len(set(self._readers) | set(self._writers))
