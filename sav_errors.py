"""
Error taxonomy for the save codec pipeline.

Every error carries the property path (or file path) it concerns and, where
known, the byte offset. Both are rendered into the message so a user-visible
failure never reads as a generic "decode failed".

| Error                  | Raised by          | Fatal to          |
|------------------------|--------------------|-------------------|
| CorruptHeader          | wrapper decode     | the file          |
| UnsupportedVariant     | wrapper de/encode  | the file          |
| Truncated / InvalidTag | graph parse        | the file          |
| MissingHint            | graph parse        | nothing (record)  |
| FallbackBoundExceeded  | graph parse        | the file          |
| RawCodecDecodeFailure  | raw codec decode   | nothing (record)  |
| DisabledPathSkipped    | raw codec decode   | nothing (record)  |
| UnknownTarget ...      | patch validation   | the whole patch   |
| EncodeFailed           | export             | the export        |
| DecodeTimeout          | pipeline           | the attempt       |
| InvalidArtifact        | world import       | the whole import  |
"""

from typing import Optional


class SaveCodecError(ValueError):
    """Base class. `path` and `offset` are optional context."""

    def __init__(self, message: str, path: Optional[str] = None,
                 offset: Optional[int] = None):
        self.message = message
        self.path = path
        self.offset = offset
        super().__init__(self._render())

    def _render(self) -> str:
        parts = [self.message]
        if self.path:
            parts.append(f"path={self.path}")
        if self.offset is not None:
            parts.append(f"offset=0x{self.offset:X}")
        return " | ".join(parts)


# Wrapper -------------------------------------------------------------------

class CorruptHeader(SaveCodecError):
    pass


class UnsupportedVariant(SaveCodecError):
    pass


# Property graph ------------------------------------------------------------

class Truncated(SaveCodecError):
    pass


class InvalidTag(SaveCodecError):
    pass


class MissingHint(SaveCodecError):
    """Non-fatal: recorded as a diagnostic when a path had to be inferred."""

    def __init__(self, path: str, inferred: str, offset: Optional[int] = None):
        self.inferred = inferred
        super().__init__(f"missing hint, inferred {inferred}", path=path, offset=offset)


class FallbackBoundExceeded(SaveCodecError):
    pass


# Raw codecs ----------------------------------------------------------------

class RawCodecDecodeFailure(SaveCodecError):
    pass


class DisabledPathSkipped(SaveCodecError):
    pass


class EncodeFailed(SaveCodecError):
    pass


# Patch validation ----------------------------------------------------------

class PatchError(SaveCodecError):
    """Rejects a whole patchset. `sequence` names the first invalid operation."""

    def __init__(self, message: str, sequence: Optional[int] = None,
                 target: Optional[str] = None):
        self.reason = message
        self.sequence = sequence
        self.target = target
        if sequence is not None:
            message = f"operation #{sequence}: {message}"
        super().__init__(message, path=target)


class UnknownTarget(PatchError):
    pass


class OutOfBounds(PatchError):
    pass


class InvalidOperationType(PatchError):
    pass


class EntityNotEditable(PatchError):
    pass


# Pipeline ------------------------------------------------------------------

class DecodeTimeout(SaveCodecError):
    pass


class InvalidArtifact(SaveCodecError):
    """World ZIP/directory layout problem (unsafe entry name, no world root)."""
