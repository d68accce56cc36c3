import struct
import zlib

import pytest

from gvas_builders import OODLE_STORED_BLOCK, gvas, int_prop, level_payload, wrap_block, wrap_zlib
from sav_errors import CorruptHeader, UnsupportedVariant
from sav_wrapper import (SAVE_TYPE_DOUBLE_ZLIB, SAVE_TYPE_ZLIB, VARIANT_BLOCK, VARIANT_ZLIB,
                         WrapperCodec, WrapperHeader)


@pytest.fixture
def payload():
    return gvas(int_prop("Version", 100), int_prop("Counter", 7))


@pytest.fixture
def codec():
    return WrapperCodec()


@pytest.mark.parametrize("save_type", [SAVE_TYPE_ZLIB, SAVE_TYPE_DOUBLE_ZLIB])
def test_zlib_variants_decode(codec, payload, save_type):
    data = wrap_zlib(payload, save_type=save_type)
    wrapped = codec.decode(data, "Level.sav")
    assert wrapped.inner_payload == payload
    assert wrapped.variant == VARIANT_ZLIB
    assert wrapped.header.save_type == save_type


def test_double_zlib_compressed_size_is_inner_stream(codec, payload):
    data = wrap_zlib(payload, save_type=SAVE_TYPE_DOUBLE_ZLIB)
    header = WrapperHeader.parse(data)
    first_pass = zlib.decompress(data[header.payload_offset:])
    assert header.compressed_size == len(first_pass)
    assert header.uncompressed_size == len(payload)


def test_block_variant_decodes_oodle_stream(codec, payload):
    wrapped = codec.decode(wrap_block(payload))
    assert wrapped.variant == VARIANT_BLOCK
    assert wrapped.inner_payload == payload
    assert wrapped.header.label == "PlM 0x31"


def test_block_variant_decodes_level_payload(codec):
    payload = level_payload()
    stream = OODLE_STORED_BLOCK + payload
    data = struct.pack('<II', len(payload), len(stream)) + b'PlM\x31' + stream
    assert codec.decode(data, "Level.sav").inner_payload == payload


def test_block_decompressor_is_injectable(payload):
    calls = []

    def fake(data, size):
        calls.append((len(data), size))
        return payload

    header = struct.pack('<II', len(payload), 4) + b'PlM\x31'
    wrapped = WrapperCodec(block_decompressor=fake).decode(header + b'\x01\x02\x03\x04')
    assert calls == [(4, len(payload))]
    assert wrapped.inner_payload == payload


def test_chunk_prefix_is_kept(codec, payload):
    prefix = b'CNK' + bytes(range(9))
    data = wrap_zlib(payload, chunk_prefix=prefix)
    wrapped = codec.decode(data)
    assert wrapped.header.chunk_prefix == prefix
    assert wrapped.inner_payload == payload

    rewritten = codec.recompress(data, payload + b'\x00', changed=True)
    assert rewritten.startswith(prefix)
    assert codec.decode(rewritten).inner_payload == payload + b'\x00'


def test_unchanged_recompress_returns_original(codec, payload):
    data = wrap_block(payload)
    assert codec.recompress(data, payload, changed=False) is data


def test_changed_block_file_becomes_double_zlib(codec, payload):
    rewritten = codec.recompress(wrap_block(payload), payload, changed=True, path="Players/x.sav")
    header = WrapperHeader.parse(rewritten)
    assert header.magic == b'PlZ'
    assert header.save_type == SAVE_TYPE_DOUBLE_ZLIB
    assert codec.decode(rewritten).inner_payload == payload


def test_changed_zlib_file_keeps_save_type(codec, payload):
    rewritten = codec.recompress(wrap_zlib(payload, save_type=SAVE_TYPE_ZLIB), payload, changed=True)
    assert WrapperHeader.parse(rewritten).save_type == SAVE_TYPE_ZLIB


def test_short_header(codec):
    with pytest.raises(CorruptHeader, match="too short.*path=Level.sav"):
        codec.decode(b'\x00' * 8, "Level.sav")


def test_unknown_magic(codec, payload):
    data = struct.pack('<II', len(payload), 0) + b'XYZ\x31' + payload
    with pytest.raises(UnsupportedVariant, match="unsupported wrapper"):
        codec.decode(data, "Level.sav")


def test_unknown_save_type(codec, payload):
    data = bytearray(wrap_zlib(payload, save_type=SAVE_TYPE_ZLIB))
    data[11] = 0x39
    with pytest.raises(UnsupportedVariant):
        codec.decode(bytes(data))


def test_uncompressed_size_mismatch(codec, payload):
    data = bytearray(wrap_zlib(payload, save_type=SAVE_TYPE_ZLIB))
    struct.pack_into('<I', data, 0, len(payload) + 1)
    with pytest.raises(CorruptHeader, match="decompressed"):
        codec.decode(bytes(data))


def test_truncated_payload(codec, payload):
    data = wrap_zlib(payload, save_type=SAVE_TYPE_ZLIB)
    with pytest.raises(CorruptHeader, match="header says"):
        codec.decode(data[:-3])


def test_broken_zlib_stream(codec, payload):
    data = bytearray(wrap_zlib(payload, save_type=SAVE_TYPE_DOUBLE_ZLIB))
    data[14] ^= 0xFF
    data[15] ^= 0xFF
    with pytest.raises(CorruptHeader):
        codec.decode(bytes(data))


def test_broken_block_stream(codec, payload):
    # low nibble of an Oodle block header is always 0xC
    stream = b'\x00\x06' + payload
    data = struct.pack('<II', len(payload), len(stream)) + b'PlM\x31' + stream
    with pytest.raises(CorruptHeader):
        codec.decode(data, "Level.sav")


def test_block_decoder_errors_become_corrupt_header(payload):
    def failing(data, size):
        raise RuntimeError("bad block")

    data = wrap_block(payload)
    with pytest.raises(CorruptHeader, match="block stream error: bad block.*offset=0xC"):
        WrapperCodec(block_decompressor=failing).decode(data, "Level.sav")


def test_block_variant_cannot_be_encoded(codec, payload):
    with pytest.raises(UnsupportedVariant, match="only zlib"):
        codec.encode(payload, variant=VARIANT_BLOCK)
