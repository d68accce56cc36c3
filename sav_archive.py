"""
Archive Primitives
==================

Little-endian reader/writer for the GVAS property stream.

| Type    | Encoding                                                        |
|---------|-----------------------------------------------------------------|
| intN    | little-endian, fixed width                                      |
| FString | i32 length; >0 Latin-1 + NUL, <0 UTF-16LE + NUL (chars), 0 null |
| Guid    | 16 raw bytes, displayed as four LE u32 in hex                   |

Every read is bounded: a reader never looks past its `end`, and a read
that would cross it raises Truncated with the absolute offset.
"""

import struct
from typing import Optional, Tuple

from sav_errors import InvalidTag, Truncated

GUID_SIZE = 16
ZERO_GUID = b'\x00' * GUID_SIZE

# FString lengths beyond this are treated as a broken tag, not a real string
MAX_FSTRING_CHARS = 1 << 24


# =============================================================================
# GUID helpers
# =============================================================================

def guid_to_str(raw: bytes) -> str:
    """32 uppercase hex chars, four little-endian u32 words."""
    if len(raw) != GUID_SIZE:
        raise ValueError(f"guid must be {GUID_SIZE} bytes, got {len(raw)}")
    return '%08X%08X%08X%08X' % struct.unpack('<4I', raw)


def normalize_guid(text: str) -> str:
    """Canonical guid text: dashes stripped, upper case, "0" is the zero guid."""
    text = text.strip()
    if text == "0":
        return "0" * 32
    return text.replace("-", "").upper()


def guid_from_str(text: str) -> bytes:
    text = normalize_guid(text)
    if len(text) != 32:
        raise ValueError(f"guid text must have 32 hex digits: {text!r}")
    words = [int(text[i:i + 8], 16) for i in range(0, 32, 8)]
    return struct.pack('<4I', *words)


def is_guid_text(text) -> bool:
    if not isinstance(text, str):
        return False
    text = normalize_guid(text)
    if len(text) != 32:
        return False
    try:
        int(text, 16)
    except ValueError:
        return False
    return True


# =============================================================================
# Reader
# =============================================================================

class ArchiveReader:
    """Cursor over `data[pos:end]`. Offsets in errors are absolute."""

    def __init__(self, data: bytes, pos: int = 0, end: Optional[int] = None,
                 path: Optional[str] = None):
        self.data = data
        self.pos = pos
        self.end = len(data) if end is None else end
        self.path = path

    def remaining(self) -> int:
        return self.end - self.pos

    def at_end(self) -> bool:
        return self.pos >= self.end

    def read(self, size: int) -> bytes:
        if size < 0 or self.pos + size > self.end:
            raise Truncated(f"need {size} bytes, {self.remaining()} left",
                            path=self.path, offset=self.pos)
        chunk = self.data[self.pos:self.pos + size]
        self.pos += size
        return chunk

    def peek(self, size: int) -> bytes:
        return self.data[self.pos:min(self.pos + size, self.end)]

    def bounded(self, size: int, path: Optional[str] = None) -> 'ArchiveReader':
        """Child reader over the next `size` bytes; the parent skips past them."""
        if size < 0 or self.pos + size > self.end:
            raise Truncated(f"declared size {size} exceeds {self.remaining()} remaining bytes",
                            path=path or self.path, offset=self.pos)
        child = ArchiveReader(self.data, self.pos, self.pos + size, path or self.path)
        self.pos += size
        return child

    def _unpack(self, fmt: str, size: int):
        return struct.unpack(fmt, self.read(size))[0]

    def u8(self) -> int:
        return self._unpack('<B', 1)

    def i8(self) -> int:
        return self._unpack('<b', 1)

    def u16(self) -> int:
        return self._unpack('<H', 2)

    def i16(self) -> int:
        return self._unpack('<h', 2)

    def u32(self) -> int:
        return self._unpack('<I', 4)

    def i32(self) -> int:
        return self._unpack('<i', 4)

    def u64(self) -> int:
        return self._unpack('<Q', 8)

    def i64(self) -> int:
        return self._unpack('<q', 8)

    def f32(self) -> float:
        return self._unpack('<f', 4)

    def f64(self) -> float:
        return self._unpack('<d', 8)

    def guid(self) -> bytes:
        return self.read(GUID_SIZE)

    def fstring_ex(self) -> Tuple[Optional[str], bool]:
        """Read an FString. Returns (value, wide); value is None for length 0."""
        start = self.pos
        length = self.i32()
        if length == 0:
            return None, False

        wide = length < 0
        chars = -length if wide else length
        if chars > MAX_FSTRING_CHARS:
            raise InvalidTag(f"implausible string length {length}", path=self.path, offset=start)

        if wide:
            raw = self.read(chars * 2)
            if raw[-2:] != b'\x00\x00':
                raise InvalidTag("wide string missing terminator", path=self.path, offset=start)
            try:
                return raw[:-2].decode('utf-16-le'), True
            except UnicodeDecodeError as e:
                raise InvalidTag(f"bad UTF-16 string: {e}", path=self.path, offset=start) from e

        raw = self.read(chars)
        if raw[-1:] != b'\x00':
            raise InvalidTag("string missing terminator", path=self.path, offset=start)
        return raw[:-1].decode('latin-1'), False

    def fstring(self) -> Optional[str]:
        return self.fstring_ex()[0]


def looks_like_fstring(data: bytes, offset: int, limit: int) -> Optional[Tuple[str, int]]:
    """
    Non-raising probe for a short narrow FString at `offset`.

    Returns (text, next_offset) when the bytes hold a printable ASCII string
    ending in NUL, else None.
    """
    if offset + 4 > limit:
        return None
    length = struct.unpack_from('<i', data, offset)[0]
    if length <= 1 or length > 256 or offset + 4 + length > limit:
        return None
    raw = data[offset + 4:offset + 4 + length]
    if raw[-1] != 0:
        return None
    body = raw[:-1]
    if not all(0x20 <= b < 0x7F for b in body):
        return None
    return body.decode('ascii'), offset + 4 + length


# =============================================================================
# Writer
# =============================================================================

class ArchiveWriter:
    """Append-only little-endian writer."""

    def __init__(self):
        self.buf = bytearray()

    def __len__(self):
        return len(self.buf)

    def getvalue(self) -> bytes:
        return bytes(self.buf)

    def write(self, data: bytes) -> None:
        self.buf += data

    def u8(self, value: int) -> None:
        self.buf += struct.pack('<B', value)

    def i8(self, value: int) -> None:
        self.buf += struct.pack('<b', value)

    def u16(self, value: int) -> None:
        self.buf += struct.pack('<H', value)

    def i16(self, value: int) -> None:
        self.buf += struct.pack('<h', value)

    def u32(self, value: int) -> None:
        self.buf += struct.pack('<I', value)

    def i32(self, value: int) -> None:
        self.buf += struct.pack('<i', value)

    def u64(self, value: int) -> None:
        self.buf += struct.pack('<Q', value)

    def i64(self, value: int) -> None:
        self.buf += struct.pack('<q', value)

    def f32(self, value: float) -> None:
        self.buf += struct.pack('<f', value)

    def f64(self, value: float) -> None:
        self.buf += struct.pack('<d', value)

    def guid(self, raw: bytes) -> None:
        if len(raw) != GUID_SIZE:
            raise ValueError(f"guid must be {GUID_SIZE} bytes, got {len(raw)}")
        self.buf += raw

    def fstring(self, value: Optional[str], wide: bool = False) -> None:
        if value is None:
            self.i32(0)
            return
        if not wide:
            try:
                encoded = value.encode('latin-1')
            except UnicodeEncodeError:
                wide = True
        if wide:
            encoded = value.encode('utf-16-le') + b'\x00\x00'
            self.i32(-(len(encoded) // 2))
        else:
            encoded += b'\x00'
            self.i32(len(encoded))
        self.buf += encoded

    def reserve_u64(self) -> int:
        """Write a u64 placeholder; returns its position for patch_u64."""
        pos = len(self.buf)
        self.u64(0)
        return pos

    def patch_u64(self, pos: int, value: int) -> None:
        struct.pack_into('<Q', self.buf, pos, value)
