#!/usr/bin/env python3
"""
Save Wrapper Codec
==================

Strips and re-applies the compression wrapper around the GVAS payload.

File Structure:
--------------
| Offset | Size | Field                                   |
|--------|------|-----------------------------------------|
| 0x00   | 12   | optional "CNK" chunk prefix (opaque)    |
| +0x00  | 4    | uncompressed size (u32)                 |
| +0x04  | 4    | compressed size (u32)                   |
| +0x08  | 3    | magic "PlZ" / "PlM"                     |
| +0x0B  | 1    | save type                               |
| +0x0C  | ...  | payload                                 |

Variants:
--------
| Magic | Type | Variant | Payload                                   |
|-------|------|---------|-------------------------------------------|
| PlZ   | 0x31 | 1       | zlib                                      |
| PlZ   | 0x32 | 1       | zlib(zlib); compressed size = inner zlib  |
| PlM   | 0x31 | 2       | Oodle (Kraken) blocks, decode only        |

Only the zlib family is ever written. A block-variant file that changed is
re-emitted as PlZ 0x32; an unchanged one is copied byte for byte.
"""

import logging
import struct
import zlib
from dataclasses import dataclass
from typing import Callable, Optional

import ooz

from sav_errors import CorruptHeader, UnsupportedVariant

logger = logging.getLogger(__name__)

CHUNK_PREFIX = b'CNK'
CHUNK_PREFIX_SIZE = 12
HEADER_SIZE = 12

MAGIC_ZLIB = b'PlZ'
MAGIC_BLOCK = b'PlM'

SAVE_TYPE_ZLIB = 0x31
SAVE_TYPE_DOUBLE_ZLIB = 0x32

VARIANT_ZLIB = 1
VARIANT_BLOCK = 2

VARIANTS = {
    (MAGIC_ZLIB, SAVE_TYPE_ZLIB): VARIANT_ZLIB,
    (MAGIC_ZLIB, SAVE_TYPE_DOUBLE_ZLIB): VARIANT_ZLIB,
    (MAGIC_BLOCK, SAVE_TYPE_ZLIB): VARIANT_BLOCK,
}


@dataclass
class WrapperHeader:
    """12-byte wrapper header plus the chunk prefix that preceded it (if any)"""
    uncompressed_size: int
    compressed_size: int
    magic: bytes
    save_type: int
    raw_bytes: bytes
    chunk_prefix: bytes = b''

    @classmethod
    def parse(cls, data: bytes, path: Optional[str] = None) -> 'WrapperHeader':
        prefix = b''
        offset = 0
        if data.startswith(CHUNK_PREFIX):
            if len(data) < CHUNK_PREFIX_SIZE:
                raise CorruptHeader("truncated chunk prefix", path=path, offset=0)
            prefix = data[:CHUNK_PREFIX_SIZE]
            offset = CHUNK_PREFIX_SIZE

        if len(data) < offset + HEADER_SIZE:
            raise CorruptHeader(f"file too short for wrapper header ({len(data)} bytes)",
                                path=path, offset=offset)

        raw = data[offset:offset + HEADER_SIZE]
        uncompressed_size, compressed_size = struct.unpack('<II', raw[:8])
        return cls(uncompressed_size=uncompressed_size, compressed_size=compressed_size,
                   magic=raw[8:11], save_type=raw[11], raw_bytes=raw, chunk_prefix=prefix)

    @property
    def payload_offset(self) -> int:
        return len(self.chunk_prefix) + HEADER_SIZE

    @property
    def variant(self) -> Optional[int]:
        return VARIANTS.get((self.magic, self.save_type))

    @property
    def label(self) -> str:
        return f"{self.magic.decode('latin-1')} 0x{self.save_type:02X}"

    def __str__(self):
        return (f"Wrapper({self.label}, uncompressed={self.uncompressed_size}, "
                f"compressed={self.compressed_size}, cnk={bool(self.chunk_prefix)})")


def oodle_decompress(payload: bytes, size: int) -> bytes:
    """Decode an Oodle block stream into exactly `size` bytes."""
    return bytes(ooz.decompress(payload, size))


@dataclass
class WrappedSave:
    header: WrapperHeader
    inner_payload: bytes

    @property
    def variant(self) -> int:
        return self.header.variant


class WrapperCodec:
    """
    Wrapper decode/encode.

    `block_decompressor` handles the PlM payload; it takes the compressed
    bytes and the expected output size and returns the decompressed bytes.
    The default is the open Oodle decoder from pyooz.
    """

    def __init__(self, block_decompressor: Optional[Callable[[bytes, int], bytes]] = None):
        self.block_decompressor = block_decompressor or oodle_decompress

    def decode(self, data: bytes, path: Optional[str] = None) -> WrappedSave:
        header = WrapperHeader.parse(data, path)
        variant = header.variant
        if variant is None:
            raise UnsupportedVariant(f"unsupported wrapper {header.magic!r} type 0x{header.save_type:02X}",
                                     path=path, offset=header.payload_offset - 4)

        offset = header.payload_offset
        if header.magic == MAGIC_ZLIB and header.save_type == SAVE_TYPE_DOUBLE_ZLIB:
            # compressed_size describes the inner stream, not the file payload
            first = self._inflate(data[offset:], path, offset)
            if len(first) != header.compressed_size:
                raise CorruptHeader(f"inner stream is {len(first)} bytes, header says {header.compressed_size}",
                                    path=path, offset=offset)
            inner = self._inflate(first, path, offset)
        else:
            payload = data[offset:offset + header.compressed_size]
            if len(payload) < header.compressed_size:
                raise CorruptHeader(f"payload is {len(payload)} bytes, header says {header.compressed_size}",
                                    path=path, offset=offset)
            if variant == VARIANT_BLOCK:
                try:
                    inner = self.block_decompressor(payload, header.uncompressed_size)
                except Exception as e:  # the native decoder raises untyped errors
                    raise CorruptHeader(f"block stream error: {e}", path=path, offset=offset) from e
            else:
                inner = self._inflate(payload, path, offset)

        if len(inner) != header.uncompressed_size:
            raise CorruptHeader(f"decompressed {len(inner)} bytes, header says {header.uncompressed_size}",
                                path=path, offset=offset)

        logger.debug("%s: %s -> %d bytes", path or "<bytes>", header.label, len(inner))
        return WrappedSave(header=header, inner_payload=inner)

    @staticmethod
    def _inflate(data: bytes, path, offset) -> bytes:
        try:
            return zlib.decompress(data)
        except zlib.error as e:
            raise CorruptHeader(f"zlib stream error: {e}", path=path, offset=offset) from e

    def encode(self, inner_payload: bytes, variant: int = VARIANT_ZLIB,
               save_type: int = SAVE_TYPE_DOUBLE_ZLIB, chunk_prefix: bytes = b'',
               path: Optional[str] = None) -> bytes:
        if variant != VARIANT_ZLIB:
            raise UnsupportedVariant(f"cannot encode wrapper variant {variant}; only zlib is writable",
                                     path=path)
        if save_type not in (SAVE_TYPE_ZLIB, SAVE_TYPE_DOUBLE_ZLIB):
            raise UnsupportedVariant(f"unsupported zlib save type 0x{save_type:02X}", path=path)

        compressed = zlib.compress(inner_payload)
        if save_type == SAVE_TYPE_DOUBLE_ZLIB:
            payload = zlib.compress(compressed)
        else:
            payload = compressed

        header = struct.pack('<II', len(inner_payload), len(compressed)) + MAGIC_ZLIB + bytes([save_type])
        return chunk_prefix + header + payload

    def recompress(self, original: bytes, inner_payload: bytes, changed: bool,
                   path: Optional[str] = None) -> bytes:
        """Original bytes when unchanged; otherwise re-wrapped with the zlib variant."""
        if not changed:
            return original

        header = WrapperHeader.parse(original, path)
        save_type = header.save_type if header.variant == VARIANT_ZLIB else SAVE_TYPE_DOUBLE_ZLIB
        if header.variant == VARIANT_BLOCK:
            logger.info("%s: block-compressed source re-emitted as PlZ 0x32", path or "<bytes>")
        return self.encode(inner_payload, VARIANT_ZLIB, save_type, header.chunk_prefix, path)
