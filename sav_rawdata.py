#!/usr/bin/env python3
"""
Raw Codec Registry
==================

Decoders/encoders for the byte blobs (ArrayProperty<ByteProperty> "RawData")
that hold a second, differently shaped object inside a property.

Registered layouts:
------------------
| Domain          | Path (under worldSaveData)                    | Layout                                     |
|-----------------|-----------------------------------------------|--------------------------------------------|
| character       | CharacterSaveParameterMap.Value.RawData       | property list, 4 bytes, group Guid         |
| base_camp       | BaseCampSaveData.Value.RawData                | Guid id, FString name, u8 state,           |
|                 |                                               | 80B transform, f32 area_range, Guid group, |
|                 |                                               | 80B fast-travel transform, Guid owner      |
| worker_director | BaseCampSaveData.Value.WorkerDirector.RawData | Guid id, 80B spawn transform, u8 order,    |
|                 |                                               | u8 battle, Guid container_id               |
| container_slot  | CharacterContainerSaveData.Value.Slots.Slots  | empty, or Guid player_uid,                 |
|                 | .RawData                                      | Guid instance_id, u8 permission_tribe_id   |

Other known blobs (groups, item containers, foliage, dynamic items, work
collections, guild storage) are registered as passthrough.

Decode outcome:
    no codec / passthrough / disabled / failure  -> OpaqueRaw
    modeled fields consume every byte            -> KnownDecoded
    bytes left after the last modeled field      -> HybridRaw (tail kept verbatim)
"""

import argparse
import logging
import struct
import sys
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sav_archive import (ArchiveReader, ArchiveWriter, guid_from_str, guid_to_str,
                         is_guid_text, normalize_guid)
from sav_errors import (DisabledPathSkipped, EncodeFailed, EntityNotEditable, MissingHint,
                        OutOfBounds, RawCodecDecodeFailure, SaveCodecError, UnknownTarget)
from sav_hints import HintRegistry, PropertyPath, normalize
from sav_parser import DEFAULT_MAX_FALLBACK_PASSES, ParseOutcome, PassBudget, PropertyParser
from sav_properties import RawBlobNode, ScalarNode, StructNode, walk
from sav_roundtrip import DecodedEntity, HybridRaw, KnownDecoded, OpaqueRaw
from sav_serializer import serialize_properties

logger = logging.getLogger(__name__)

CHARACTER_PATH = "worldSaveData.CharacterSaveParameterMap.Value.RawData"
BASE_CAMP_PATH = "worldSaveData.BaseCampSaveData.Value.RawData"
WORKER_DIRECTOR_PATH = "worldSaveData.BaseCampSaveData.Value.WorkerDirector.RawData"
CONTAINER_SLOT_PATH = "worldSaveData.CharacterContainerSaveData.Value.Slots.Slots.RawData"

PASSTHROUGH_PATHS = (
    "worldSaveData.GroupSaveDataMap.Value.RawData",
    "worldSaveData.ItemContainerSaveData.Value.RawData",
    "worldSaveData.ItemContainerSaveData.Value.Slots.Slots.RawData",
    "worldSaveData.DynamicItemSaveData.DynamicItemSaveData.RawData",
    "worldSaveData.FoliageGridSaveDataMap.Value.ModelMap.Value.RawData",
    "worldSaveData.FoliageGridSaveDataMap.Value.ModelMap.Value.InstanceDataMap.Value.RawData",
    "worldSaveData.BaseCampSaveData.Value.WorkCollection.RawData",
    "worldSaveData.GuildExtraSaveDataMap.Value.GuildItemStorage.RawData",
    "worldSaveData.GuildExtraSaveDataMap.Value.Lab.RawData",
)

# Field kinds besides struct format strings
GUID = "guid"
FSTRING = "fstring"
TRANSFORM = "transform"
TRANSFORM_SIZE = 80


# =============================================================================
# Models
# =============================================================================

def check_model_value(name: str, kind: str, value: Any) -> Any:
    """Validate `value` for a field of `kind`; returns the value to store."""
    if kind == GUID:
        if not is_guid_text(value):
            raise OutOfBounds(f"{name}: {value!r} is not a guid")
        return normalize_guid(value)
    if kind == FSTRING:
        if value is not None and not isinstance(value, str):
            raise OutOfBounds(f"{name}: expected string, got {type(value).__name__}")
        return value
    if kind == TRANSFORM:
        if isinstance(value, str):
            try:
                value = bytes.fromhex(value)
            except ValueError as e:
                raise OutOfBounds(f"{name}: bad hex: {e}") from e
        if not isinstance(value, (bytes, bytearray)) or len(value) != TRANSFORM_SIZE:
            raise OutOfBounds(f"{name}: transform must be {TRANSFORM_SIZE} bytes")
        return bytes(value)

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise OutOfBounds(f"{name}: expected number, got {type(value).__name__}")
    if kind in ('<f', '<d'):
        value = float(value)
    elif not isinstance(value, int):
        raise OutOfBounds(f"{name}: expected integer, got {value!r}")
    try:
        struct.pack(kind, value)
    except (struct.error, OverflowError) as e:
        raise OutOfBounds(f"{name}: {value!r} out of range ({e})") from e
    return value


class RawModel:
    """Fixed-layout model; FIELD_FORMATS lists the editable fields in stream order."""

    FIELD_FORMATS: Dict[str, str] = {}

    def get_field(self, name: str) -> Any:
        if name not in self.FIELD_FORMATS:
            raise UnknownTarget(f"{type(self).__name__} has no field {name!r}")
        return getattr(self, name)

    def check_field(self, name: str, value: Any) -> Any:
        kind = self.FIELD_FORMATS.get(name)
        if kind is None:
            raise UnknownTarget(f"{type(self).__name__} has no field {name!r}")
        return check_model_value(name, kind, value)

    def set_field(self, name: str, value: Any) -> None:
        setattr(self, name, self.check_field(name, value))


@dataclass
class BaseCampRaw(RawModel):
    id: str
    name: Optional[str]
    state: int
    transform: bytes
    area_range: float
    group_id_belong_to: str
    fast_travel_local_transform: bytes
    owner_map_object_instance_id: str
    name_wide: bool = False

    FIELD_FORMATS = {
        'id': GUID,
        'name': FSTRING,
        'state': '<B',
        'transform': TRANSFORM,
        'area_range': '<f',
        'group_id_belong_to': GUID,
        'fast_travel_local_transform': TRANSFORM,
        'owner_map_object_instance_id': GUID,
    }


@dataclass
class WorkerDirectorRaw(RawModel):
    id: str
    spawn_transform: bytes
    current_order_type: int
    current_battle_type: int
    container_id: str

    FIELD_FORMATS = {
        'id': GUID,
        'spawn_transform': TRANSFORM,
        'current_order_type': '<B',
        'current_battle_type': '<B',
        'container_id': GUID,
    }


@dataclass
class ContainerSlotRaw(RawModel):
    is_empty: bool
    player_uid: Optional[str] = None
    instance_id: Optional[str] = None
    permission_tribe_id: Optional[int] = None

    FIELD_FORMATS = {
        'player_uid': GUID,
        'instance_id': GUID,
        'permission_tribe_id': '<B',
    }

    def check_field(self, name, value):
        if self.is_empty:
            raise EntityNotEditable("empty container slot has no fields")
        return super().check_field(name, value)


@dataclass
class CharacterRaw(RawModel):
    """
    Character blob: a property list, 4 unknown bytes, then the group guid.

    Fields other than `group_id` are dotted names into the property list,
    e.g. "SaveParameter.Level"; only scalar leaves can be read or set.
    """
    properties: StructNode
    unknown_bytes: bytes
    group_id: str

    FIELD_FORMATS = {'group_id': GUID}

    def _leaf(self, name: str) -> ScalarNode:
        node = self.properties.find(name)
        if not isinstance(node, ScalarNode):
            raise UnknownTarget(f"character has no scalar field {name!r}")
        return node

    def get_field(self, name):
        if name in self.FIELD_FORMATS:
            return super().get_field(name)
        return self._leaf(name).value

    def check_field(self, name, value):
        if name in self.FIELD_FORMATS:
            return super().check_field(name, value)
        return self._leaf(name).check_value(value)

    def set_field(self, name, value):
        if name in self.FIELD_FORMATS:
            super().set_field(name, value)
        else:
            self._leaf(name).set_value(value)

    @property
    def save_parameter(self) -> Optional[StructNode]:
        node = self.properties.get("SaveParameter")
        return node if isinstance(node, StructNode) else None


# =============================================================================
# Codecs
# =============================================================================

class RawCodec:
    """
    decode(bytes) -> (model, bytes consumed); encode(model) -> bytes.

    decode_in_file() is what the registry calls while attaching a document;
    codecs that parse nested property lists override it to draw on the
    file's fallback budget and hand back their ParseOutcome.
    """
    domain = "raw"

    def decode(self, data: bytes) -> Tuple[Any, int]:
        raise NotImplementedError

    def decode_in_file(self, data: bytes,
                       budget: Optional[PassBudget]) -> Tuple[Any, int, Optional[ParseOutcome]]:
        model, consumed = self.decode(data)
        return model, consumed, None

    def encode(self, model) -> bytes:
        raise NotImplementedError


class PassthroughCodec(RawCodec):
    """Known blob that is deliberately left undecoded."""
    domain = "passthrough"

    def decode(self, data):
        raise RawCodecDecodeFailure("passthrough codec does not decode")

    def encode(self, model):
        raise EncodeFailed("passthrough codec does not encode")


PASSTHROUGH = PassthroughCodec()


class BaseCampCodec(RawCodec):
    domain = "base_camp"

    def decode(self, data):
        r = ArchiveReader(data, path=BASE_CAMP_PATH)
        camp_id = guid_to_str(r.guid())
        name, name_wide = r.fstring_ex()
        model = BaseCampRaw(
            id=camp_id,
            name=name,
            state=r.u8(),
            transform=r.read(TRANSFORM_SIZE),
            area_range=r.f32(),
            group_id_belong_to=guid_to_str(r.guid()),
            fast_travel_local_transform=r.read(TRANSFORM_SIZE),
            owner_map_object_instance_id=guid_to_str(r.guid()),
            name_wide=name_wide,
        )
        return model, r.pos

    def encode(self, model: BaseCampRaw):
        w = ArchiveWriter()
        w.guid(guid_from_str(model.id))
        w.fstring(model.name, model.name_wide)
        w.u8(model.state)
        w.write(model.transform)
        w.f32(model.area_range)
        w.guid(guid_from_str(model.group_id_belong_to))
        w.write(model.fast_travel_local_transform)
        w.guid(guid_from_str(model.owner_map_object_instance_id))
        return w.getvalue()


class WorkerDirectorCodec(RawCodec):
    domain = "worker_director"

    def decode(self, data):
        r = ArchiveReader(data, path=WORKER_DIRECTOR_PATH)
        model = WorkerDirectorRaw(
            id=guid_to_str(r.guid()),
            spawn_transform=r.read(TRANSFORM_SIZE),
            current_order_type=r.u8(),
            current_battle_type=r.u8(),
            container_id=guid_to_str(r.guid()),
        )
        return model, r.pos

    def encode(self, model: WorkerDirectorRaw):
        w = ArchiveWriter()
        w.guid(guid_from_str(model.id))
        w.write(model.spawn_transform)
        w.u8(model.current_order_type)
        w.u8(model.current_battle_type)
        w.guid(guid_from_str(model.container_id))
        return w.getvalue()


class ContainerSlotCodec(RawCodec):
    domain = "container_slot"

    def decode(self, data):
        if not data:
            return ContainerSlotRaw(is_empty=True), 0
        r = ArchiveReader(data, path=CONTAINER_SLOT_PATH)
        model = ContainerSlotRaw(
            is_empty=False,
            player_uid=guid_to_str(r.guid()),
            instance_id=guid_to_str(r.guid()),
            permission_tribe_id=r.u8(),
        )
        return model, r.pos

    def encode(self, model: ContainerSlotRaw):
        if model.is_empty:
            return b''
        w = ArchiveWriter()
        w.guid(guid_from_str(model.player_uid))
        w.guid(guid_from_str(model.instance_id))
        w.u8(model.permission_tribe_id)
        return w.getvalue()


class CharacterCodec(RawCodec):
    """Needs the hint registry: the blob starts with a full property list."""
    domain = "character"

    def __init__(self, hints: HintRegistry, max_passes: int = DEFAULT_MAX_FALLBACK_PASSES):
        self.hints = hints
        self.max_passes = max_passes

    def decode(self, data):
        model, consumed, _ = self.decode_in_file(data, None)
        return model, consumed

    def decode_in_file(self, data, budget):
        parser = PropertyParser(self.hints, self.max_passes, budget=budget)
        properties, consumed, outcome = parser.parse_properties(data, CHARACTER_PATH)
        r = ArchiveReader(data, consumed, path=CHARACTER_PATH)
        unknown_bytes = r.read(4)
        group_id = guid_to_str(r.guid())
        model = CharacterRaw(properties=properties, unknown_bytes=unknown_bytes, group_id=group_id)
        return model, r.pos, outcome

    def encode(self, model: CharacterRaw):
        return (serialize_properties(model.properties) + model.unknown_bytes
                + guid_from_str(model.group_id))


# =============================================================================
# Registry
# =============================================================================

@dataclass
class RawDomainStats:
    """Per-document result of attaching entities, nested property-list parses included."""
    entity_counts: Dict[str, int] = field(default_factory=dict)
    skipped: int = 0
    blobs: int = 0
    fallback_passes: int = 0
    diagnostics: List[MissingHint] = field(default_factory=list)

    def add_outcome(self, outcome: ParseOutcome) -> None:
        self.fallback_passes += outcome.passes
        self.diagnostics.extend(outcome.diagnostics)
        self.skipped += outcome.disabled_skips


class RawCodecRegistry:
    """
    Normalized path -> codec. One registry can serve many decodes at once;
    the only shared counter is `skip_count`.
    """

    def __init__(self, hints: HintRegistry, max_passes: int = DEFAULT_MAX_FALLBACK_PASSES,
                 register_defaults: bool = True):
        self.hints = hints
        self._codecs: Dict[PropertyPath, RawCodec] = {}
        self._lock = threading.Lock()
        self.skip_count = 0

        if register_defaults:
            self.register(CHARACTER_PATH, CharacterCodec(hints, max_passes))
            self.register(BASE_CAMP_PATH, BaseCampCodec())
            self.register(WORKER_DIRECTOR_PATH, WorkerDirectorCodec())
            self.register(CONTAINER_SLOT_PATH, ContainerSlotCodec())
            for path in PASSTHROUGH_PATHS:
                self.register(path, PASSTHROUGH)

    def register(self, path, codec: RawCodec) -> None:
        self._codecs[normalize(path)] = codec

    def codec_for(self, path) -> Optional[RawCodec]:
        """Codec that decode() would use; None for disabled or unregistered paths."""
        path = normalize(path)
        if self.hints.is_disabled(path):
            return None
        return self._codecs.get(path)

    def _count_skip(self) -> None:
        with self._lock:
            self.skip_count += 1

    def decode(self, path, data: bytes) -> DecodedEntity:
        entity, _ = self.decode_in_file(path, data)
        return entity

    def decode_in_file(self, path, data: bytes, budget: Optional[PassBudget] = None
                       ) -> Tuple[DecodedEntity, Optional[ParseOutcome]]:
        """decode() that also returns the nested parse outcome, if the codec made one."""
        path = normalize(path)

        if self.hints.is_disabled(path):
            self._count_skip()
            logger.debug("%s", DisabledPathSkipped("raw blob kept opaque", path=path.text))
            return OpaqueRaw(path.text, data, reason="disabled"), None

        codec = self._codecs.get(path)
        if codec is None:
            return OpaqueRaw(path.text, data, reason="no codec"), None
        if isinstance(codec, PassthroughCodec):
            return OpaqueRaw(path.text, data, reason="passthrough"), None

        try:
            model, consumed, outcome = codec.decode_in_file(data, budget)
        except (SaveCodecError, struct.error, ValueError) as e:
            self._count_skip()
            failure = RawCodecDecodeFailure(f"{codec.domain} decode failed: {e}", path=path.text)
            logger.warning("%s", failure)
            return OpaqueRaw(path.text, data, reason="decode failed"), None

        if consumed < len(data):
            return HybridRaw(path.text, data, model, codec, data[consumed:]), outcome
        return KnownDecoded(path.text, data, model, codec), outcome

    def encode(self, path, entity: DecodedEntity) -> bytes:
        try:
            return entity.encode()
        except EncodeFailed:
            raise
        except (SaveCodecError, struct.error, TypeError, ValueError) as e:
            raise EncodeFailed(f"raw codec failed: {e}", path=normalize(path).text) from e

    def attach(self, root, budget: Optional[PassBudget] = None) -> RawDomainStats:
        """
        Decode every RawBlobNode under `root` that has no entity yet.

        Nested property-list parses share `budget` (the file's fallback
        budget); without one each blob gets its own.
        """
        stats = RawDomainStats()
        counts = Counter()
        for node in walk(root):
            if not isinstance(node, RawBlobNode) or node.entity is not None:
                continue
            entity, outcome = self.decode_in_file(node.path, node.data, budget)
            node.entity = entity
            stats.blobs += 1
            if outcome is not None:
                stats.add_outcome(outcome)
            if isinstance(entity, OpaqueRaw):
                counts["opaque"] += 1
                if entity.reason in ("disabled", "decode failed"):
                    stats.skipped += 1
            else:
                counts[entity.domain] += 1
        stats.entity_counts = dict(counts)
        return stats


def main():
    parser = argparse.ArgumentParser(
        description='Raw Codec - Decode one RawData blob against a registered layout',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python sav_rawdata.py basecamp.bin worldSaveData.BaseCampSaveData.Value.RawData
  python sav_rawdata.py slot.bin worldSaveData.CharacterContainerSaveData.Value.Slots.Slots.RawData
        """
    )
    parser.add_argument('input', help='Raw blob bytes')
    parser.add_argument('path', help='Property path the blob was found at')
    args = parser.parse_args()

    with open(args.input, 'rb') as f:
        data = f.read()

    registry = RawCodecRegistry(HintRegistry())
    entity = registry.decode(args.path, data)

    print("=" * 70)
    print(f"{args.path}: {len(data)} bytes -> {entity.representation}")
    print("=" * 70)
    if isinstance(entity, OpaqueRaw):
        print(f"Reason: {entity.reason}")
        return 0
    for name in entity.known.FIELD_FORMATS:
        value = entity.get_field(name)
        if isinstance(value, bytes):
            value = value.hex()
        print(f"  {name:30s} {value}")
    if isinstance(entity, HybridRaw):
        print(f"  {'<unknown tail>':30s} {len(entity.opaque_unknown)} bytes")
    return 0


if __name__ == '__main__':
    sys.exit(main())
