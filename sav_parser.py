#!/usr/bin/env python3
"""
GVAS Property Graph Parser
==========================

Builds a SaveDocument from the inner (wrapper-decoded) payload.

Tagged property layout:
----------------------
| Field   | Type    | Notes                                          |
|---------|---------|------------------------------------------------|
| name    | FString | "None" ends the property list                  |
| type    | FString | e.g. IntProperty, StructProperty, MapProperty  |
| size    | u64     | byte length of the value                       |
| header  | varies  | struct type + guid, inner/key/value types ...  |
| hasGuid | u8      | followed by a 16-byte guid when non-zero       |
| value   | size    |                                                |

Map keys/values and set elements of type StructProperty carry no struct
name; those are looked up in the HintRegistry by path. On a miss one
inference step is taken (property-list signature -> StructProperty,
otherwise Guid) and a MissingHint diagnostic is recorded.

Fallback:
--------
Every tagged value is parsed inside a reader bounded to its declared size.
If that fails and the value used an inferred hint, the last inferred type is
rejected and the whole payload is parsed again (one fallback pass). With no
inference involved, or once every candidate for a path is rejected, the value
is kept as an OpaqueNode holding its exact bytes. The number of passes is
capped; discoveries reach the registry only after a successful parse.
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from sav_archive import ArchiveReader, looks_like_fstring
from sav_errors import FallbackBoundExceeded, InvalidTag, MissingHint, SaveCodecError
from sav_hints import KIND_MAP, HintRegistry, PropertyPath, TypeHint
from sav_properties import (BINARY_STRUCT_FORMATS, ENC_BOOL, ENC_FORMAT, ENC_GUID,
                            ENC_STRING, SCALAR_FORMATS, STRING_TYPES, ArrayNode,
                            GvasHeader, MapNode, OpaqueNode, PropertyNode,
                            PropertyTag, RawBlobNode, ScalarNode, SaveDocument,
                            SetNode, StructNode, binary_struct_format, unpack_value)

logger = logging.getLogger(__name__)

DEFAULT_MAX_FALLBACK_PASSES = 64

STRUCT_PROPERTY = "StructProperty"
INFERENCE_CANDIDATES = (STRUCT_PROPERTY, "Guid")


@dataclass
class ParseOutcome:
    document: SaveDocument
    passes: int
    hint_count_start: int
    hint_count_end: int
    diagnostics: List[MissingHint] = field(default_factory=list)
    disabled_skips: int = 0


class PassBudget:
    """
    Fallback passes allowed for one file. The graph parse and every nested
    property-list parse of the same file (character blobs) draw from it.
    """

    def __init__(self, max_passes: int = DEFAULT_MAX_FALLBACK_PASSES,
                 on_fallback_pass: Optional[Callable[[int, str], None]] = None):
        self.max_passes = max_passes
        self.on_fallback_pass = on_fallback_pass
        self.used = 0

    @property
    def remaining(self) -> int:
        return self.max_passes - self.used


class _RejectHint(Exception):
    """Internal: an inferred hint broke a value; start a new pass without it."""

    def __init__(self, path: PropertyPath, type_name: str):
        super().__init__(f"{path}: {type_name}")
        self.path = path
        self.type_name = type_name


class _HintsExhausted(Exception):
    """Internal: every inference candidate for a path has been rejected."""

    def __init__(self, path: PropertyPath):
        super().__init__(str(path))
        self.path = path


# =============================================================================
# Per-pass state
# =============================================================================

class _ParseContext:
    """
    State for one pass. `discovered` and `rejected` are shared by every pass
    of one decode; `used` lists discovered paths consulted in this pass.
    """

    def __init__(self, hints: HintRegistry, discovered: Dict[PropertyPath, TypeHint],
                 rejected: Dict[PropertyPath, Set[str]], diagnostics: List[MissingHint]):
        self.hints = hints
        self.discovered = discovered
        self.rejected = rejected
        self.diagnostics = diagnostics
        self.used: List[PropertyPath] = []
        self.inferred_now: Set[PropertyPath] = set()
        self.disabled_skips = 0
        self.stats = {'properties': 0, 'opaque': 0}

    def struct_hint(self, path: PropertyPath, reader: ArchiveReader) -> TypeHint:
        hint = self.discovered.get(path)
        if hint is not None:
            self.used.append(path)
            return hint

        hint = self.hints.resolve(path)
        if hint is None:
            hint = self._container_hint(path)
        if hint is not None:
            return hint

        return self._infer(path, reader)

    def _container_hint(self, path: PropertyPath) -> Optional[TypeHint]:
        """Key/value type from a MapProperty<K,V> hint on the parent path."""
        parent_text, _, leaf = path.text.rpartition(".")
        if not parent_text or leaf not in ("Key", "Value"):
            return None
        parent = self.hints.resolve(parent_text)
        if parent is None or parent.kind != KIND_MAP:
            return None
        type_name = parent.key_type if leaf == "Key" else parent.value_type
        if type_name == STRUCT_PROPERTY or type_name in BINARY_STRUCT_FORMATS or type_name == "Guid":
            return TypeHint.from_text(type_name)
        return None

    def _infer(self, path: PropertyPath, reader: ArchiveReader) -> TypeHint:
        rejected = self.rejected.get(path, set())
        if _looks_like_property_list(reader):
            candidates = INFERENCE_CANDIDATES
        else:
            candidates = tuple(reversed(INFERENCE_CANDIDATES))

        choice = next((c for c in candidates if c not in rejected), None)
        if choice is None:
            raise _HintsExhausted(path)

        hint = TypeHint.from_text(choice)
        self.discovered[path] = hint
        self.used.append(path)
        self.inferred_now.add(path)

        diagnostic = MissingHint(path.text, choice, offset=reader.pos)
        self.diagnostics.append(diagnostic)
        logger.warning("%s", diagnostic)
        return hint

    def forget_region(self, mark: int) -> None:
        """Drop usages (and unconfirmed inferences) made after `mark`."""
        for path in self.used[mark:]:
            if path in self.inferred_now:
                self.discovered.pop(path, None)
        del self.used[mark:]


def _looks_like_property_list(reader: ArchiveReader) -> bool:
    probe = looks_like_fstring(reader.data, reader.pos, reader.end)
    if probe is None:
        return False
    name, next_offset = probe
    if name == "None":
        return True
    type_probe = looks_like_fstring(reader.data, next_offset, reader.end)
    return type_probe is not None and type_probe[0].endswith("Property")


# =============================================================================
# Parser
# =============================================================================

class PropertyParser:
    """
    Hint-driven GVAS parser.

    `on_fallback_pass(pass_number, unresolved_path)` is called before each
    re-parse. With a shared `budget`, pass numbers and the bound cover every
    parse made against that budget; otherwise each parse gets its own.
    """

    def __init__(self, hints: HintRegistry, max_passes: int = DEFAULT_MAX_FALLBACK_PASSES,
                 on_fallback_pass: Optional[Callable[[int, str], None]] = None,
                 budget: Optional[PassBudget] = None):
        self.hints = hints
        self.max_passes = max_passes
        self.on_fallback_pass = on_fallback_pass
        self.budget = budget

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def parse(self, payload: bytes) -> ParseOutcome:
        """Parse a whole GVAS payload."""

        def attempt(ctx):
            reader = ArchiveReader(payload)
            header = GvasHeader.parse(reader)
            root = self._read_property_list(ctx, reader, PropertyPath(""))
            trailer = reader.read(reader.remaining())
            return SaveDocument(header=header, root=root, trailer=trailer)

        return self._run(attempt)

    def parse_properties(self, data: bytes, base_path) -> Tuple[StructNode, int, ParseOutcome]:
        """
        Parse a bare property list (ending in "None") from the start of `data`.

        Returns (struct, bytes consumed, outcome) where outcome.document is None.
        """
        base = PropertyPath(base_path)

        def attempt(ctx):
            reader = ArchiveReader(data, path=base.text)
            struct_node = self._read_property_list(ctx, reader, base)
            return struct_node, reader.pos

        outcome = self._run(attempt)
        struct_node, consumed = outcome.document
        outcome.document = None
        return struct_node, consumed, outcome

    def _run(self, attempt) -> ParseOutcome:
        budget = self.budget
        if budget is None:
            budget = PassBudget(self.max_passes, self.on_fallback_pass)
        hint_count_start = len(self.hints)
        discovered: Dict[PropertyPath, TypeHint] = {}
        rejected: Dict[PropertyPath, Set[str]] = {}
        unresolved: List[PropertyPath] = []
        diagnostics: List[MissingHint] = []
        passes = 0

        while True:
            ctx = _ParseContext(self.hints, discovered, rejected, diagnostics)
            try:
                result = attempt(ctx)
                break
            except _RejectHint as reject:
                rejected.setdefault(reject.path, set()).add(reject.type_name)
                discovered.pop(reject.path, None)
                if reject.path not in unresolved:
                    unresolved.append(reject.path)
                if budget.remaining <= 0:
                    first = next((p for p in unresolved if p not in discovered), reject.path)
                    raise FallbackBoundExceeded(
                        f"hint resolution did not converge in {budget.max_passes} fallback passes",
                        path=first.text) from None
                passes += 1
                budget.used += 1
                logger.info("fallback pass %d/%d: %s is not %s",
                            budget.used, budget.max_passes, reject.path, reject.type_name)
                if budget.on_fallback_pass:
                    budget.on_fallback_pass(budget.used, reject.path.text)

        for path, hint in discovered.items():
            self.hints.record_discovered(path, hint)

        return ParseOutcome(document=result, passes=passes,
                            hint_count_start=hint_count_start,
                            hint_count_end=len(self.hints),
                            diagnostics=list(diagnostics),
                            disabled_skips=ctx.disabled_skips)

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    def _read_tag(self, reader: ArchiveReader, parent: PropertyPath) -> Optional[PropertyTag]:
        """Read one tag; None at the "None" terminator."""
        offset = reader.pos
        name = reader.fstring()
        if name is None:
            raise InvalidTag("null property name", path=parent.text, offset=offset)
        if name == "None":
            return None

        type_name = reader.fstring()
        if not type_name:
            raise InvalidTag(f"property {name!r} has no type", path=parent.child(name).text, offset=offset)
        size = reader.u64()

        header_start = reader.pos
        tag = PropertyTag(name=name, type_name=type_name, size=size, offset=offset)
        if type_name == STRUCT_PROPERTY:
            tag.struct_type = reader.fstring()
            tag.struct_guid = reader.guid()
        elif type_name == "BoolProperty":
            tag.bool_value = reader.u8()
        elif type_name in ("ByteProperty", "EnumProperty"):
            tag.enum_name = reader.fstring()
        elif type_name in ("ArrayProperty", "SetProperty"):
            tag.inner_type = reader.fstring()
        elif type_name == "MapProperty":
            tag.key_type = reader.fstring()
            tag.value_type = reader.fstring()

        if reader.u8():
            tag.guid = reader.guid()
        tag.header_raw = reader.data[header_start:reader.pos]
        return tag

    def _read_property_list(self, ctx: _ParseContext, reader: ArchiveReader,
                            path: PropertyPath, struct_type: Optional[str] = None,
                            tag: Optional[PropertyTag] = None) -> StructNode:
        node = StructNode(path, struct_type, tag)
        while True:
            child_tag = self._read_tag(reader, path)
            if child_tag is None:
                return node
            child_path = path.child(child_tag.name)
            node.add(child_tag.name, self._read_tagged_value(ctx, reader, child_tag, child_path))

    def _read_tagged_value(self, ctx: _ParseContext, reader: ArchiveReader,
                           tag: PropertyTag, path: PropertyPath) -> PropertyNode:
        ctx.stats['properties'] += 1
        start = reader.pos

        # disabled byte arrays stay RawBlobNodes; the raw codec registry keeps them opaque
        is_blob = tag.type_name == "ArrayProperty" and tag.inner_type == "ByteProperty"
        if ctx.hints.is_disabled(path) and not is_blob:
            ctx.disabled_skips += 1
            logger.debug("disabled path %s kept opaque (%d bytes)", path, tag.size)
            return OpaqueNode(path, reader.bounded(tag.size, path.text).read(tag.size),
                              reason="disabled", tag=tag)

        region = reader.bounded(tag.size, path.text)
        mark = len(ctx.used)
        try:
            node = self._read_value(ctx, region, tag, path)
            if not region.at_end():
                raise InvalidTag(f"value used {region.pos - start} of {tag.size} declared bytes",
                                 path=path.text, offset=region.pos)
            return node
        except (SaveCodecError, _HintsExhausted) as e:
            used = ctx.used[mark:]
            if used and not isinstance(e, _HintsExhausted):
                last = used[-1]
                hint = ctx.discovered.get(last)
                if hint is not None:
                    raise _RejectHint(last, hint.type_name) from None
            ctx.forget_region(mark)
            ctx.stats['opaque'] += 1
            logger.debug("%s kept opaque: %s", path, e)
            return OpaqueNode(path, reader.data[start:start + tag.size], reason=str(e), tag=tag)

    # -------------------------------------------------------------------------
    # Values
    # -------------------------------------------------------------------------

    def _read_value(self, ctx, reader, tag: PropertyTag, path) -> PropertyNode:
        type_name = tag.type_name

        if type_name == "BoolProperty":
            return ScalarNode(path, type_name, ENC_BOOL, tag.bool_value != 0, b'', tag=tag)
        if type_name == "ByteProperty" and tag.enum_name not in (None, "None"):
            return self._read_scalar(reader, "EnumProperty", path, tag)
        if type_name == STRUCT_PROPERTY:
            return self._read_struct(ctx, reader, tag.struct_type, path, tag.size, tag)
        if type_name == "ArrayProperty":
            return self._read_array(ctx, reader, tag, path)
        if type_name == "MapProperty":
            return self._read_map(ctx, reader, tag, path)
        if type_name == "SetProperty":
            return self._read_set(ctx, reader, tag, path)
        if _scalar_encoding(type_name) is not None:
            return self._read_scalar(reader, type_name, path, tag)

        return OpaqueNode(path, reader.read(reader.remaining()), reason=f"unmodeled {type_name}", tag=tag)

    def _read_scalar(self, reader, type_name: str, path, tag=None) -> ScalarNode:
        encoding = _scalar_encoding(type_name)
        if encoding is None:
            raise InvalidTag(f"unsupported element type {type_name}", path=path.text, offset=reader.pos)
        fmt = SCALAR_FORMATS.get(type_name, '<B' if type_name == "ByteProperty" else None)
        start = reader.pos
        value, wide = unpack_value(reader, encoding, fmt)
        return ScalarNode(path, type_name, encoding, value, reader.data[start:reader.pos],
                          fmt=fmt, wide=wide, tag=tag)

    def _read_struct(self, ctx, reader, struct_type: Optional[str], path,
                     size: Optional[int] = None, tag=None) -> PropertyNode:
        start = reader.pos
        if struct_type == "Guid":
            value, _ = unpack_value(reader, ENC_GUID)
            return ScalarNode(path, struct_type, ENC_GUID, value, reader.data[start:reader.pos], tag=tag)
        if struct_type in BINARY_STRUCT_FORMATS:
            fmt = binary_struct_format(struct_type, size)
            value, _ = unpack_value(reader, ENC_FORMAT, fmt)
            return ScalarNode(path, struct_type, ENC_FORMAT, value, reader.data[start:reader.pos],
                              fmt=fmt, tag=tag)
        return self._read_property_list(ctx, reader, path, struct_type, tag)

    def _read_untagged(self, ctx, reader, type_name: str, path) -> PropertyNode:
        """Map key/value or set element: only the value bytes are in the stream."""
        if type_name != STRUCT_PROPERTY:
            return self._read_scalar(reader, type_name, path)

        hint = ctx.struct_hint(path, reader)
        if hint.is_property_list:
            return self._read_property_list(ctx, reader, path)
        if hint.type_name == "Guid" or hint.type_name in BINARY_STRUCT_FORMATS:
            return self._read_struct(ctx, reader, hint.type_name, path)
        raise InvalidTag(f"hint {hint} is not a struct layout", path=path.text, offset=reader.pos)

    def _read_array(self, ctx, reader, tag: PropertyTag, path) -> PropertyNode:
        inner = tag.inner_type
        count = reader.u32()

        if inner == "ByteProperty":
            return RawBlobNode(path, reader.read(count), tag=tag)

        node = ArrayNode(path, inner, tag=tag)
        if inner == STRUCT_PROPERTY:
            inner_tag = self._read_tag(reader, path)
            if inner_tag is None or inner_tag.type_name != STRUCT_PROPERTY:
                raise InvalidTag("struct array without element header", path=path.text, offset=reader.pos)
            node.inner_tag = inner_tag
            element_path = path.child(inner_tag.name)
            elements = reader.bounded(inner_tag.size, path.text)
            element_size = inner_tag.size // count if count else None
            for _ in range(count):
                node.elements.append(self._read_struct(ctx, elements, inner_tag.struct_type,
                                                       element_path, element_size))
            if not elements.at_end():
                raise InvalidTag("struct array elements shorter than declared",
                                 path=path.text, offset=elements.pos)
            return node

        for _ in range(count):
            node.elements.append(self._read_scalar(reader, inner, path))
        return node

    def _read_map(self, ctx, reader, tag: PropertyTag, path) -> MapNode:
        node = MapNode(path, tag.key_type, tag.value_type, tag=tag)
        key_path = path.child("Key")
        value_path = path.child("Value")

        for _ in range(reader.u32()):
            node.removed.append(self._read_untagged(ctx, reader, tag.key_type, key_path))
        for _ in range(reader.u32()):
            key = self._read_untagged(ctx, reader, tag.key_type, key_path)
            value = self._read_untagged(ctx, reader, tag.value_type, value_path)
            node.entries.append((key, value))
        return node

    def _read_set(self, ctx, reader, tag: PropertyTag, path) -> SetNode:
        node = SetNode(path, tag.inner_type, tag=tag)
        element_path = path.child("Element")

        for _ in range(reader.u32()):
            node.removed.append(self._read_untagged(ctx, reader, tag.inner_type, element_path))
        for _ in range(reader.u32()):
            node.elements.append(self._read_untagged(ctx, reader, tag.inner_type, element_path))
        return node


def _scalar_encoding(type_name: str) -> Optional[str]:
    if type_name in SCALAR_FORMATS or type_name == "ByteProperty":
        return ENC_FORMAT
    if type_name == "BoolProperty":
        return ENC_BOOL
    if type_name in STRING_TYPES:
        return ENC_STRING
    return None


def parse(payload: bytes, hints: HintRegistry, max_passes: int = DEFAULT_MAX_FALLBACK_PASSES,
          on_fallback_pass=None) -> ParseOutcome:
    return PropertyParser(hints, max_passes, on_fallback_pass).parse(payload)


# =============================================================================
# Debug dump
# =============================================================================

def dump_tree(node: PropertyNode, indent: int = 0, max_depth: int = 4, out=None):
    """Print a readable outline of the tree."""
    out = out or sys.stdout
    pad = "  " * indent
    label = node.name or "<root>"

    if isinstance(node, StructNode):
        print(f"{pad}{label}: {node.struct_type or 'struct'} ({len(node.fields)} fields)", file=out)
        if indent < max_depth:
            for _, child in node.fields:
                dump_tree(child, indent + 1, max_depth, out)
    elif isinstance(node, MapNode):
        print(f"{pad}{label}: Map<{node.key_type},{node.value_type}> ({len(node.entries)} entries)", file=out)
    elif isinstance(node, (ArrayNode, SetNode)):
        print(f"{pad}{label}: {node.kind}<{node.inner_type}> ({len(node.elements)} elements)", file=out)
    elif isinstance(node, RawBlobNode):
        entity = type(node.entity).__name__ if node.entity else "undecoded"
        print(f"{pad}{label}: RawData {len(node.data)} bytes [{entity}]", file=out)
    elif isinstance(node, OpaqueNode):
        print(f"{pad}{label}: opaque {len(node.raw)} bytes ({node.reason})", file=out)
    else:
        print(f"{pad}{label}: {node.to_plain()!r}", file=out)


def main():
    parser = argparse.ArgumentParser(
        description='GVAS Parser - Outline the property tree of a decompressed save payload',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python sav_parser.py Level.gvas              # Outline to depth 4
  python sav_parser.py Level.gvas --depth 8    # Deeper outline
        """
    )
    parser.add_argument('input', help='Decompressed GVAS payload')
    parser.add_argument('--depth', type=int, default=4, help='Maximum outline depth')
    args = parser.parse_args()

    with open(args.input, 'rb') as f:
        payload = f.read()

    try:
        outcome = parse(payload, HintRegistry())
    except SaveCodecError as e:
        print(f"ERROR: {e}")
        return 1

    print("=" * 70)
    print(outcome.document.header)
    print(f"Fallback passes: {outcome.passes}, missing hints: {len(outcome.diagnostics)}")
    print("=" * 70)
    dump_tree(outcome.document.root, max_depth=args.depth)
    return 0


if __name__ == '__main__':
    sys.exit(main())
