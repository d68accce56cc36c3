"""
Property Graph Model
====================

In-memory tree built from a GVAS property stream.

| Node         | Holds                                                     |
|--------------|-----------------------------------------------------------|
| ScalarNode   | numbers, strings, enums, bools, fixed-layout structs      |
| StructNode   | ordered (name, node) fields of a property-list struct     |
| ArrayNode    | ordered elements                                          |
| MapNode      | ordered (key, value) pairs + keys-to-remove               |
| SetNode      | ordered elements + removed elements                       |
| RawBlobNode  | ArrayProperty<ByteProperty> bytes + decoded entity        |
| OpaqueNode   | bytes that were readable but not modeled                  |

Tagged nodes keep their PropertyTag; the serializer re-emits the tag header
bytes as read. ScalarNodes keep their original value bytes and re-emit them
while the value is unchanged.

The tree never holds references across branches. Links between entities are
identifier fields resolved through sav_entities.EntityIndex.
"""

import math
import struct
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from sav_archive import (ArchiveReader, ArchiveWriter, guid_from_str, guid_to_str,
                         is_guid_text, normalize_guid)
from sav_errors import InvalidTag, OutOfBounds
from sav_hints import PropertyPath

# =============================================================================
# Value encodings
# =============================================================================

SCALAR_FORMATS = {
    "Int8Property": "<b",
    "Int16Property": "<h",
    "IntProperty": "<i",
    "Int64Property": "<q",
    "UInt16Property": "<H",
    "UInt32Property": "<I",
    "UInt64Property": "<Q",
    "FloatProperty": "<f",
    "DoubleProperty": "<d",
}

STRING_TYPES = ("StrProperty", "NameProperty", "ObjectProperty", "EnumProperty")

# Fixed-layout structs: (UE5 double layout, UE4 float layout)
BINARY_STRUCT_FORMATS = {
    "Vector": ("<3d", "<3f"),
    "Rotator": ("<3d", "<3f"),
    "Quat": ("<4d", "<4f"),
    "Vector2D": ("<2d", "<2f"),
    "LinearColor": ("<4f",),
    "IntPoint": ("<2i",),
    "IntVector": ("<3i",),
    "DateTime": ("<q",),
    "Timespan": ("<q",),
    "Color": ("<4B",),
}

ENC_FORMAT = "fmt"
ENC_STRING = "fstring"
ENC_GUID = "guid"
ENC_BOOL = "bool"


def is_binary_struct(struct_type: Optional[str]) -> bool:
    return struct_type == "Guid" or struct_type in BINARY_STRUCT_FORMATS


def binary_struct_format(struct_type: str, size: Optional[int] = None) -> str:
    """Format for a fixed-layout struct; `size` picks float vs double layout."""
    formats = BINARY_STRUCT_FORMATS[struct_type]
    if size is None:
        return formats[0]
    for fmt in formats:
        if struct.calcsize(fmt) == size:
            return fmt
    raise InvalidTag(f"{struct_type} struct of unexpected size {size}")


def pack_value(encoding: str, value: Any, fmt: Optional[str] = None, wide: bool = False) -> bytes:
    if encoding == ENC_FORMAT:
        if isinstance(value, bool) or (isinstance(value, (list, tuple)) and any(isinstance(v, bool) for v in value)):
            raise TypeError("bool is not a number")
        if isinstance(value, (list, tuple)):
            return struct.pack(fmt, *value)
        return struct.pack(fmt, value)
    if encoding == ENC_STRING:
        if value is not None and not isinstance(value, str):
            raise TypeError(f"expected string, got {type(value).__name__}")
        writer = ArchiveWriter()
        writer.fstring(value, wide)
        return writer.getvalue()
    if encoding == ENC_GUID:
        if not is_guid_text(value):
            raise ValueError(f"not a guid: {value!r}")
        return guid_from_str(value)
    if encoding == ENC_BOOL:
        if not isinstance(value, bool):
            raise TypeError(f"expected bool, got {type(value).__name__}")
        return b'\x01' if value else b'\x00'
    raise ValueError(f"unknown scalar encoding {encoding!r}")


def unpack_value(reader: ArchiveReader, encoding: str, fmt: Optional[str] = None) -> Tuple[Any, bool]:
    """Read one scalar. Returns (value, wide)."""
    if encoding == ENC_FORMAT:
        values = struct.unpack(fmt, reader.read(struct.calcsize(fmt)))
        return (values[0] if len(values) == 1 else values), False
    if encoding == ENC_STRING:
        return reader.fstring_ex()
    if encoding == ENC_GUID:
        return guid_to_str(reader.guid()), False
    if encoding == ENC_BOOL:
        return reader.u8() != 0, False
    raise ValueError(f"unknown scalar encoding {encoding!r}")


def same_value(a, b) -> bool:
    """Equality that treats NaN as equal to NaN."""
    if isinstance(a, float) and isinstance(b, float):
        return a == b or (math.isnan(a) and math.isnan(b))
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(same_value(x, y) for x, y in zip(a, b))
    return type(a) is type(b) and a == b


# =============================================================================
# Tags
# =============================================================================

@dataclass
class PropertyTag:
    """Tag of one tagged property. `header_raw` is everything between size and value."""
    name: str
    type_name: str
    size: int
    header_raw: bytes = b''
    struct_type: Optional[str] = None
    struct_guid: Optional[bytes] = None
    enum_name: Optional[str] = None
    inner_type: Optional[str] = None
    key_type: Optional[str] = None
    value_type: Optional[str] = None
    bool_value: int = 0
    guid: Optional[bytes] = None
    offset: int = 0

    def __str__(self):
        extra = self.struct_type or self.inner_type or self.enum_name or ""
        if self.key_type:
            extra = f"{self.key_type},{self.value_type}"
        return f"Tag({self.name}: {self.type_name}<{extra}>, size={self.size}, offset=0x{self.offset:X})"


# =============================================================================
# Nodes
# =============================================================================

class PropertyNode:
    kind = "node"

    def __init__(self, path: PropertyPath, tag: Optional[PropertyTag] = None):
        self.path = path
        self.tag = tag

    @property
    def name(self) -> str:
        return self.tag.name if self.tag else self.path.name

    def to_plain(self) -> Any:
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}({self.path.text!r})"


class ScalarNode(PropertyNode):
    kind = "scalar"

    def __init__(self, path, type_name: str, encoding: str, value, raw: bytes,
                 fmt: Optional[str] = None, wide: bool = False, tag=None):
        super().__init__(path, tag)
        self.type_name = type_name
        self.encoding = encoding
        self.fmt = fmt
        self.wide = wide
        self.value = value
        self.original = value
        self.raw = raw

    @property
    def changed(self) -> bool:
        return not same_value(self.value, self.original)

    def check_value(self, value):
        """Value as it would be stored; OutOfBounds if it cannot be encoded in this slot."""
        if isinstance(value, list):
            value = tuple(value)
        if self.encoding == ENC_GUID and isinstance(value, str):
            value = normalize_guid(value)
        try:
            pack_value(self.encoding, value, self.fmt, self.wide)
        except (struct.error, TypeError, ValueError, OverflowError) as e:
            raise OutOfBounds(f"value {value!r} does not fit {self.type_name}: {e}",
                              target=self.path.text) from e
        return value

    def set_value(self, value) -> None:
        self.value = self.check_value(value)

    def pack(self) -> bytes:
        if not self.changed:
            return self.raw
        return pack_value(self.encoding, self.value, self.fmt, self.wide)

    def to_plain(self):
        return self.value


class StructNode(PropertyNode):
    """Property-list struct. Field order is stream order; duplicate names are kept."""
    kind = "struct"

    def __init__(self, path, struct_type: Optional[str] = None, tag=None):
        super().__init__(path, tag)
        self.struct_type = struct_type
        self.fields: List[Tuple[str, PropertyNode]] = []

    def add(self, name: str, node: PropertyNode) -> None:
        self.fields.append((name, node))

    def get(self, name: str, default=None):
        for field_name, node in self.fields:
            if field_name == name:
                return node
        return default

    def __getitem__(self, name: str) -> PropertyNode:
        node = self.get(name)
        if node is None:
            raise KeyError(name)
        return node

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def keys(self) -> List[str]:
        return [name for name, _ in self.fields]

    def find(self, dotted: str) -> Optional[PropertyNode]:
        """Walk nested struct fields by a dotted name ("SaveParameter.Level")."""
        node: PropertyNode = self
        for part in dotted.split("."):
            if not isinstance(node, StructNode):
                return None
            node = node.get(part)
            if node is None:
                return None
        return node

    def to_plain(self):
        return {"struct_type": self.struct_type,
                "fields": [[name, node.to_plain()] for name, node in self.fields]}


class ArrayNode(PropertyNode):
    kind = "array"

    def __init__(self, path, inner_type: str, tag=None, inner_tag: Optional[PropertyTag] = None):
        super().__init__(path, tag)
        self.inner_type = inner_type
        self.inner_tag = inner_tag
        self.elements: List[PropertyNode] = []

    def to_plain(self):
        return {"inner_type": self.inner_type, "elements": [e.to_plain() for e in self.elements]}


class MapNode(PropertyNode):
    kind = "map"

    def __init__(self, path, key_type: str, value_type: str, tag=None):
        super().__init__(path, tag)
        self.key_type = key_type
        self.value_type = value_type
        self.removed: List[PropertyNode] = []
        self.entries: List[Tuple[PropertyNode, PropertyNode]] = []

    def to_plain(self):
        return {"key_type": self.key_type, "value_type": self.value_type,
                "removed": [k.to_plain() for k in self.removed],
                "entries": [[k.to_plain(), v.to_plain()] for k, v in self.entries]}


class SetNode(PropertyNode):
    kind = "set"

    def __init__(self, path, inner_type: str, tag=None):
        super().__init__(path, tag)
        self.inner_type = inner_type
        self.removed: List[PropertyNode] = []
        self.elements: List[PropertyNode] = []

    def to_plain(self):
        return {"inner_type": self.inner_type,
                "removed": [e.to_plain() for e in self.removed],
                "elements": [e.to_plain() for e in self.elements]}


class RawBlobNode(PropertyNode):
    """Byte array whose content has its own layout; `entity` is set by the raw-domain pass."""
    kind = "raw"

    def __init__(self, path, data: bytes, tag=None):
        super().__init__(path, tag)
        self.data = data
        self.entity = None

    def to_plain(self):
        return {"raw_len": len(self.data), "entity": type(self.entity).__name__ if self.entity else None}


class OpaqueNode(PropertyNode):
    """Unmodeled value bytes, written back unchanged."""
    kind = "opaque"

    def __init__(self, path, raw: bytes, reason: str = "", tag=None):
        super().__init__(path, tag)
        self.raw = raw
        self.reason = reason

    def to_plain(self):
        return {"opaque_len": len(self.raw), "reason": self.reason}


def walk(node: PropertyNode):
    """Depth-first iteration over a node and everything below it."""
    yield node
    if isinstance(node, StructNode):
        for _, child in node.fields:
            yield from walk(child)
    elif isinstance(node, (ArrayNode, SetNode)):
        for child in node.elements:
            yield from walk(child)
    elif isinstance(node, MapNode):
        for key, value in node.entries:
            yield from walk(key)
            yield from walk(value)


# =============================================================================
# Document
# =============================================================================

@dataclass
class GvasHeader:
    """GVAS file header (everything before the first property)"""
    save_game_version: int
    package_version_ue4: int
    package_version_ue5: Optional[int]
    engine_version: Tuple[int, int, int, int, Optional[str]]
    custom_version_format: int
    custom_versions: List[Tuple[str, int]]
    save_game_class_name: Optional[str]
    raw_bytes: bytes = b''

    MAGIC = b'GVAS'

    @classmethod
    def parse(cls, reader: ArchiveReader) -> 'GvasHeader':
        start = reader.pos
        magic = reader.read(4)
        if magic != cls.MAGIC:
            raise InvalidTag(f"bad GVAS magic {magic!r}", offset=start)

        save_game_version = reader.i32()
        package_version_ue4 = reader.i32()
        package_version_ue5 = reader.i32() if save_game_version >= 3 else None
        engine_version = (reader.u16(), reader.u16(), reader.u16(), reader.u32(), reader.fstring())
        custom_version_format = reader.i32()
        count = reader.u32()
        custom_versions = []
        for _ in range(count):
            custom_versions.append((guid_to_str(reader.guid()), reader.i32()))
        save_game_class_name = reader.fstring()

        return cls(save_game_version=save_game_version,
                   package_version_ue4=package_version_ue4,
                   package_version_ue5=package_version_ue5,
                   engine_version=engine_version,
                   custom_version_format=custom_version_format,
                   custom_versions=custom_versions,
                   save_game_class_name=save_game_class_name,
                   raw_bytes=reader.data[start:reader.pos])

    def __str__(self):
        major, minor, patch, changelist, branch = self.engine_version
        return (f"GVAS(v{self.save_game_version}, ue4={self.package_version_ue4}, "
                f"ue5={self.package_version_ue5}, engine={major}.{minor}.{patch}-{changelist}+{branch}, "
                f"class={self.save_game_class_name})")


@dataclass
class SaveDocument:
    header: GvasHeader
    root: StructNode
    trailer: bytes = b''
    diagnostics: List[Any] = field(default_factory=list)

    def to_plain(self):
        return {"class": self.header.save_game_class_name, "root": self.root.to_plain(),
                "trailer_len": len(self.trailer)}
