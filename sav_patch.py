"""
Differential Patch / Export Engine
==================================

Applies a patchset to a decoded ImportArtifact and exports the result.

Operations:
----------
| op_type       | target_kind                                   | target_id                       | payload           |
|---------------|-----------------------------------------------|---------------------------------|-------------------|
| set_field     | character / base_camp / worker_director       | guid                            | {field, value}    |
| set_field     | container_slot                                | "<container guid>:<slot index>" | {field, value}    |
| set_property  | property                                      | "<file>:<dotted struct path>"   | {value}           |

Operations run in ascending sequence order. Every operation is resolved and
validated before the first one is applied, so an invalid operation leaves
the graph untouched. Export re-encodes only the files a mutation landed in;
every other file is copied byte for byte.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sav_artifact import ImportArtifact
from sav_entities import ENTITY_KINDS, EntityIndex
from sav_errors import (EncodeFailed, InvalidOperationType, PatchError, SaveCodecError,
                        UnknownTarget)
from sav_properties import ScalarNode
from sav_serializer import serialize
from sav_wrapper import WrapperCodec

logger = logging.getLogger(__name__)

OP_SET_FIELD = "set_field"
OP_SET_PROPERTY = "set_property"
OP_TYPES = (OP_SET_FIELD, OP_SET_PROPERTY)

TARGET_PROPERTY = "property"


class PatchOperation(BaseModel):
    """One edit. `sequence` orders operations inside a patchset."""

    model_config = ConfigDict(extra="ignore")

    sequence: int = Field(gt=0)
    op_type: str
    target_kind: str
    target_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def target_label(self) -> str:
        return f"{self.target_kind}:{self.target_id}"


class PatchSet(BaseModel):
    model_config = ConfigDict(extra="ignore")

    operations: List[PatchOperation] = Field(default_factory=list)

    @field_validator("operations")
    @classmethod
    def unique_sequences(cls, operations: List[PatchOperation]) -> List[PatchOperation]:
        seen = set()
        for op in operations:
            if op.sequence in seen:
                raise ValueError(f"duplicate sequence {op.sequence}")
            seen.add(op.sequence)
        return operations


@dataclass
class Mutation:
    sequence: int
    file_id: str
    target_kind: str
    target_id: str
    field: Optional[str]
    old_value: Any
    new_value: Any


@dataclass
class MutationSet:
    mutations: List[Mutation] = field(default_factory=list)

    @property
    def file_ids(self) -> Set[str]:
        return {m.file_id for m in self.mutations}

    def __len__(self):
        return len(self.mutations)

    def __iter__(self):
        return iter(self.mutations)


# =============================================================================
# Engine
# =============================================================================

class PatchEngine:
    """Resolves targets through an EntityIndex over the artifact's decoded files."""

    def __init__(self, artifact: ImportArtifact):
        self.artifact = artifact
        self.index = EntityIndex.build(artifact.documents())

    def apply(self, operations: Union[PatchSet, Iterable[PatchOperation]]) -> MutationSet:
        if not isinstance(operations, PatchSet):
            operations = PatchSet(operations=list(operations))
        ordered = sorted(operations.operations, key=lambda op: op.sequence)

        steps = [self._plan(op) for op in ordered]
        mutations = MutationSet([step() for step in steps])
        logger.info("applied %d operations touching %d files", len(mutations), len(mutations.file_ids))
        return mutations

    def _plan(self, op: PatchOperation) -> Callable[[], Mutation]:
        try:
            if op.op_type not in OP_TYPES:
                raise InvalidOperationType(f"unknown op_type {op.op_type!r}")
            if op.target_kind == TARGET_PROPERTY:
                return self._plan_property(op)
            if op.target_kind in ENTITY_KINDS:
                return self._plan_entity(op)
            raise UnknownTarget(f"unknown target_kind {op.target_kind!r}")
        except PatchError as e:
            if e.sequence is not None:
                raise
            raise type(e)(e.reason, sequence=op.sequence, target=op.target_label) from e

    def _plan_entity(self, op: PatchOperation) -> Callable[[], Mutation]:
        if op.op_type != OP_SET_FIELD:
            raise InvalidOperationType(f"{op.op_type} does not apply to {op.target_kind} targets")
        field_name = op.payload.get("field")
        if not isinstance(field_name, str) or "value" not in op.payload:
            raise InvalidOperationType("set_field payload needs 'field' and 'value'")

        ref = self.index.get(op.target_kind, op.target_id)
        if ref is None:
            raise UnknownTarget(f"no {op.target_kind} with id {op.target_id}")

        entity = ref.entity
        new_value = entity.check_field(field_name, op.payload["value"])

        def step():
            old_value = entity.get_field(field_name)
            entity.set_field(field_name, new_value)
            return Mutation(op.sequence, ref.file_id, op.target_kind, ref.target_id,
                            field_name, old_value, new_value)
        return step

    def _plan_property(self, op: PatchOperation) -> Callable[[], Mutation]:
        if op.op_type != OP_SET_PROPERTY:
            raise InvalidOperationType(f"{op.op_type} does not apply to property targets")
        if "value" not in op.payload:
            raise InvalidOperationType("set_property payload needs 'value'")

        file_id, sep, dotted = op.target_id.partition(":")
        decoded = self.artifact.decoded.get(file_id)
        if not sep or not dotted or decoded is None:
            raise UnknownTarget(f"no decoded file for property target {op.target_id!r}")
        node = decoded.document.root.find(dotted)
        if not isinstance(node, ScalarNode):
            raise UnknownTarget(f"{dotted} is not a scalar property in {file_id}")

        new_value = node.check_value(op.payload["value"])

        def step():
            old_value = node.value
            node.set_value(new_value)
            return Mutation(op.sequence, file_id, TARGET_PROPERTY, op.target_id,
                            None, old_value, new_value)
        return step


def apply(artifact: ImportArtifact, operations) -> MutationSet:
    return PatchEngine(artifact).apply(operations)


def changed_files(artifact: ImportArtifact, mutations: MutationSet) -> Set[str]:
    """Files holding at least one mutated target."""
    return {file_id for file_id in mutations.file_ids if file_id in artifact.files}


def export(artifact: ImportArtifact, mutations: MutationSet,
           wrapper_codec: Optional[WrapperCodec] = None) -> Dict[str, bytes]:
    """
    Bytes for every file of the artifact.

    Changed files are serialized and re-wrapped; the rest are the import
    bytes. Nothing is returned unless every changed file encoded.
    """
    wrapper_codec = wrapper_codec or WrapperCodec()
    changed = changed_files(artifact, mutations)
    output = {}

    for path, original in artifact.files.items():
        if path not in changed:
            output[path] = original
            continue
        decoded = artifact.decoded.get(path)
        if decoded is None:
            raise EncodeFailed("changed file was never decoded", path=path)
        try:
            inner = serialize(decoded.document)
            output[path] = wrapper_codec.recompress(original, inner, True, path)
        except EncodeFailed:
            raise
        except SaveCodecError as e:
            raise EncodeFailed(f"re-encode failed: {e}", path=path) from e
        logger.info("%s re-encoded (%d -> %d bytes)", path, len(original), len(output[path]))

    return output
