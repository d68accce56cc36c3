"""
Entity lookup tables built after decode.

| Kind            | target_id                     | Source                                         |
|-----------------|-------------------------------|------------------------------------------------|
| character       | InstanceId of the map key     | CharacterSaveParameterMap value RawData        |
| base_camp       | base camp id (map key)        | BaseCampSaveData value RawData                 |
| worker_director | base camp id (map key)        | BaseCampSaveData value WorkerDirector.RawData  |
| container_slot  | "<container id>:<slot index>" | CharacterContainerSaveData value Slots[].RawData |

Entities point at each other only through identifier fields (a worker
director's container_id, a slot's instance_id); assignments() joins them.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from sav_archive import is_guid_text, normalize_guid
from sav_properties import (ArrayNode, MapNode, PropertyNode, RawBlobNode, ScalarNode,
                            SaveDocument, StructNode)
from sav_roundtrip import DecodedEntity, OpaqueRaw

logger = logging.getLogger(__name__)

ZERO_GUID_TEXT = "0" * 32

CHARACTER = "character"
BASE_CAMP = "base_camp"
WORKER_DIRECTOR = "worker_director"
CONTAINER_SLOT = "container_slot"

ENTITY_KINDS = (CHARACTER, BASE_CAMP, WORKER_DIRECTOR, CONTAINER_SLOT)


@dataclass
class EntityRef:
    kind: str
    target_id: str
    file_id: str
    node: RawBlobNode

    @property
    def entity(self) -> DecodedEntity:
        return self.node.entity


@dataclass
class Assignment:
    base_id: str
    container_id: str
    instance_id: str
    slot_index: int


def normalize_target_id(kind: str, target_id: str) -> str:
    target_id = str(target_id).strip()
    if kind == CONTAINER_SLOT:
        container, sep, index = target_id.rpartition(":")
        if not sep:
            return target_id
        return f"{normalize_guid(container)}:{index.strip()}"
    return normalize_guid(target_id)


def _guid_value(node: Optional[PropertyNode]) -> Optional[str]:
    if isinstance(node, ScalarNode) and is_guid_text(node.value):
        return normalize_guid(node.value)
    return None


def _raw_child(struct: PropertyNode, *names: str) -> Optional[RawBlobNode]:
    node = struct
    for name in names:
        if not isinstance(node, StructNode):
            return None
        node = node.get(name)
    if isinstance(node, RawBlobNode) and node.entity is not None:
        return node
    return None


class EntityIndex:
    """(kind, target_id) -> EntityRef over every decoded file of an artifact."""

    def __init__(self):
        self._refs: Dict[Tuple[str, str], EntityRef] = {}

    @classmethod
    def build(cls, documents: Dict[str, SaveDocument]) -> 'EntityIndex':
        index = cls()
        for file_id, document in documents.items():
            index.add_document(file_id, document)
        return index

    def _add(self, kind: str, target_id: str, file_id: str, node: RawBlobNode) -> None:
        key = (kind, target_id)
        if key in self._refs:
            logger.debug("duplicate %s %s in %s ignored", kind, target_id, file_id)
            return
        self._refs[key] = EntityRef(kind, target_id, file_id, node)

    def add_document(self, file_id: str, document: SaveDocument) -> None:
        world = document.root.get("worldSaveData")
        if not isinstance(world, StructNode):
            return

        characters = world.get("CharacterSaveParameterMap")
        if isinstance(characters, MapNode):
            for key, value in characters.entries:
                instance_id = _guid_value(key.get("InstanceId")) if isinstance(key, StructNode) else None
                raw = _raw_child(value, "RawData")
                if instance_id and raw:
                    self._add(CHARACTER, instance_id, file_id, raw)

        camps = world.get("BaseCampSaveData")
        if isinstance(camps, MapNode):
            for key, value in camps.entries:
                base_id = _guid_value(key)
                if base_id is None:
                    continue
                raw = _raw_child(value, "RawData")
                if raw:
                    self._add(BASE_CAMP, base_id, file_id, raw)
                director = _raw_child(value, "WorkerDirector", "RawData")
                if director:
                    self._add(WORKER_DIRECTOR, base_id, file_id, director)

        containers = world.get("CharacterContainerSaveData")
        if isinstance(containers, MapNode):
            for key, value in containers.entries:
                container_id = _guid_value(key.get("ID")) if isinstance(key, StructNode) else None
                slots = value.get("Slots") if isinstance(value, StructNode) else None
                if container_id is None or not isinstance(slots, ArrayNode):
                    continue
                for position, slot in enumerate(slots.elements):
                    raw = _raw_child(slot, "RawData")
                    if raw is None:
                        continue
                    slot_index = slot.get("SlotIndex")
                    index = slot_index.value if isinstance(slot_index, ScalarNode) else position
                    self._add(CONTAINER_SLOT, f"{container_id}:{index}", file_id, raw)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get(self, kind: str, target_id: str) -> Optional[EntityRef]:
        return self._refs.get((kind, normalize_target_id(kind, target_id)))

    def refs(self, kind: Optional[str] = None) -> Iterator[EntityRef]:
        for (ref_kind, _), ref in self._refs.items():
            if kind is None or ref_kind == kind:
                yield ref

    def counts(self) -> Dict[str, int]:
        return dict(Counter(kind for kind, _ in self._refs))

    def __len__(self):
        return len(self._refs)

    def assignments(self) -> List[Assignment]:
        """Base camp -> worker container -> occupied slot, in index order."""
        slots_by_container: Dict[str, List[Tuple[int, str]]] = {}
        for ref in self.refs(CONTAINER_SLOT):
            entity = ref.entity
            if isinstance(entity, OpaqueRaw) or entity.known.is_empty:
                continue
            instance_id = entity.known.instance_id
            if instance_id == ZERO_GUID_TEXT:
                continue
            container_id, _, index = ref.target_id.rpartition(":")
            slots_by_container.setdefault(container_id, []).append((int(index), instance_id))

        result = []
        for ref in self.refs(WORKER_DIRECTOR):
            entity = ref.entity
            if isinstance(entity, OpaqueRaw):
                continue
            container_id = entity.known.container_id
            for slot_index, instance_id in sorted(slots_by_container.get(container_id, [])):
                result.append(Assignment(base_id=ref.target_id, container_id=container_id,
                                         instance_id=instance_id, slot_index=slot_index))
        return result
