#!/usr/bin/env python3
"""
GVAS Property Graph Serializer
==============================

Writes a SaveDocument back to a GVAS payload.

Layout written:
    GVAS header      raw bytes as parsed
    property list    tagged properties, "None" terminated
    trailer          raw bytes as parsed

Sizes are recomputed for every tagged value. Everything else comes from the
tree: tag headers as read, unchanged scalars as their original bytes, opaque
values verbatim. A RawBlobNode whose entity was mutated is re-encoded by that
entity's codec; an untouched blob writes its original bytes.
"""

import logging
import struct

from sav_archive import ArchiveWriter
from sav_errors import EncodeFailed, SaveCodecError
from sav_properties import (ArrayNode, MapNode, OpaqueNode, PropertyNode, RawBlobNode,
                            ScalarNode, SaveDocument, SetNode, StructNode)

logger = logging.getLogger(__name__)


def serialize(document: SaveDocument) -> bytes:
    """Full GVAS payload for a document."""
    writer = ArchiveWriter()
    writer.write(document.header.raw_bytes)
    _write_property_list(writer, document.root)
    writer.write(document.trailer)
    return writer.getvalue()


def serialize_properties(node: StructNode) -> bytes:
    """Bare property list of one struct, terminator included."""
    writer = ArchiveWriter()
    _write_property_list(writer, node)
    return writer.getvalue()


# =============================================================================
# Writers
# =============================================================================

def _write_property_list(writer: ArchiveWriter, node: StructNode) -> None:
    for _, child in node.fields:
        _write_tagged(writer, child)
    writer.fstring("None")


def _write_tagged(writer: ArchiveWriter, node: PropertyNode) -> None:
    tag = node.tag
    if tag is None:
        raise EncodeFailed("struct field has no tag", path=node.path.text)

    writer.fstring(tag.name)
    writer.fstring(tag.type_name)
    size_pos = writer.reserve_u64()

    header = tag.header_raw
    if tag.type_name == "BoolProperty" and isinstance(node, ScalarNode) and node.changed:
        # the value of a BoolProperty lives in its tag
        header = (b'\x01' if node.value else b'\x00') + header[1:]
    writer.write(header)

    start = len(writer)
    if not (tag.type_name == "BoolProperty" and isinstance(node, ScalarNode)):
        _write_value(writer, node)
    writer.patch_u64(size_pos, len(writer) - start)


def _write_value(writer: ArchiveWriter, node: PropertyNode) -> None:
    if isinstance(node, OpaqueNode):
        writer.write(node.raw)
    elif isinstance(node, ScalarNode):
        writer.write(_pack_scalar(node))
    elif isinstance(node, StructNode):
        _write_property_list(writer, node)
    elif isinstance(node, RawBlobNode):
        data = blob_bytes(node)
        writer.u32(len(data))
        writer.write(data)
    elif isinstance(node, ArrayNode):
        _write_array(writer, node)
    elif isinstance(node, MapNode):
        writer.u32(len(node.removed))
        for key in node.removed:
            _write_value(writer, key)
        writer.u32(len(node.entries))
        for key, value in node.entries:
            _write_value(writer, key)
            _write_value(writer, value)
    elif isinstance(node, SetNode):
        writer.u32(len(node.removed))
        for element in node.removed:
            _write_value(writer, element)
        writer.u32(len(node.elements))
        for element in node.elements:
            _write_value(writer, element)
    else:
        raise EncodeFailed(f"cannot encode {type(node).__name__}", path=node.path.text)


def _write_array(writer: ArchiveWriter, node: ArrayNode) -> None:
    writer.u32(len(node.elements))
    if node.inner_tag is None:
        for element in node.elements:
            _write_value(writer, element)
        return

    inner = node.inner_tag
    writer.fstring(inner.name)
    writer.fstring(inner.type_name)
    size_pos = writer.reserve_u64()
    writer.write(inner.header_raw)
    start = len(writer)
    for element in node.elements:
        _write_value(writer, element)
    writer.patch_u64(size_pos, len(writer) - start)


def _pack_scalar(node: ScalarNode) -> bytes:
    try:
        return node.pack()
    except (struct.error, TypeError, ValueError) as e:
        raise EncodeFailed(f"cannot encode {node.type_name} value {node.value!r}: {e}",
                           path=node.path.text) from e


def blob_bytes(node: RawBlobNode) -> bytes:
    """Current content of a raw blob: re-encoded if its entity changed."""
    entity = node.entity
    if entity is None or not entity.mutated:
        return node.data
    try:
        data = entity.encode()
    except SaveCodecError as e:
        if isinstance(e, EncodeFailed):
            raise
        raise EncodeFailed(f"raw codec failed: {e.message}", path=node.path.text) from e
    except (struct.error, TypeError, ValueError) as e:
        raise EncodeFailed(f"raw codec failed: {e}", path=node.path.text) from e
    logger.debug("%s re-encoded: %d -> %d bytes", node.path, len(node.data), len(data))
    return data
