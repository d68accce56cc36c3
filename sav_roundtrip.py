"""
Round-Trip Preservation Model
=============================

What the raw-domain pass attaches to each RawBlobNode.

| Entity        | Holds                           | encode()                      | Editable |
|---------------|---------------------------------|-------------------------------|----------|
| OpaqueRaw     | original bytes                  | original bytes                | no       |
| KnownDecoded  | model, codec                    | codec.encode(model)           | yes      |
| HybridRaw     | model, codec, unknown tail      | codec.encode(model) + tail    | yes      |

The class an entity gets is decided once, at decode time. Setting a field
marks the entity mutated; only mutated entities are re-encoded on export.
"""

from typing import Any, Optional

from sav_errors import EntityNotEditable


class DecodedEntity:
    representation = "entity"

    def __init__(self, path: str, original_bytes: bytes):
        self.path = path
        self.original_bytes = original_bytes
        self.mutated = False

    @property
    def domain(self) -> Optional[str]:
        return None

    def get_field(self, name: str) -> Any:
        raise NotImplementedError

    def check_field(self, name: str, value: Any) -> Any:
        """Validate without changing anything. Returns the value as it would be stored."""
        raise NotImplementedError

    def set_field(self, name: str, value: Any) -> None:
        raise NotImplementedError

    def encode(self) -> bytes:
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}({self.path!r}, {len(self.original_bytes)} bytes)"


class OpaqueRaw(DecodedEntity):
    """Bytes kept exactly as read. `reason` says why nothing was modeled."""
    representation = "opaque"

    def __init__(self, path: str, original_bytes: bytes, reason: str = "no codec"):
        super().__init__(path, original_bytes)
        self.reason = reason

    def get_field(self, name):
        raise EntityNotEditable(f"opaque blob ({self.reason}) has no field {name!r}", target=self.path)

    def check_field(self, name, value):
        raise EntityNotEditable(f"opaque blob ({self.reason}) cannot be edited", target=self.path)

    def set_field(self, name, value):
        self.check_field(name, value)

    def encode(self) -> bytes:
        return self.original_bytes


class KnownDecoded(DecodedEntity):
    """Fully modeled blob; encoding depends only on the model."""
    representation = "known"

    def __init__(self, path: str, original_bytes: bytes, known, codec):
        super().__init__(path, original_bytes)
        self.known = known
        self.codec = codec

    @property
    def domain(self) -> Optional[str]:
        return self.codec.domain

    def get_field(self, name):
        return self.known.get_field(name)

    def check_field(self, name, value):
        return self.known.check_field(name, value)

    def set_field(self, name, value):
        self.known.set_field(name, value)
        self.mutated = True

    def encode(self) -> bytes:
        return self.codec.encode(self.known)


class HybridRaw(KnownDecoded):
    """Modeled prefix plus an unknown tail that is written back unchanged."""
    representation = "hybrid"

    def __init__(self, path: str, original_bytes: bytes, known, codec, opaque_unknown: bytes):
        super().__init__(path, original_bytes, known, codec)
        self.opaque_unknown = opaque_unknown

    def encode(self) -> bytes:
        return self.codec.encode(self.known) + self.opaque_unknown
