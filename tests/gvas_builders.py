"""
Byte builders for test fixtures.

Everything is assembled with the library's own ArchiveWriter so the
fixtures follow the same FString/Guid conventions the parser expects.
"""

import struct

from sav_archive import ArchiveWriter, guid_from_str
from sav_wrapper import WrapperCodec

ZERO_GUID_BYTES = b'\x00' * 16

BASE_ID = "11111111222222223333333344444444"
GROUP_ID = "55555555666666667777777788888888"
OWNER_ID = "99999999AAAAAAAABBBBBBBBCCCCCCCC"
DIRECTOR_ID = "0000000100000002000000030000000D"
CONTAINER_ID = "C0C0C0C0000000000000000000000001"
PLAYER_UID = "00000000000000000000000000000001"
PAL_INSTANCE_ID = "ABCDEF01ABCDEF01ABCDEF01ABCDEF01"
PLAYER_FILE = "Players/00000000000000000000000000000001.sav"
PLAYER_INSTANCE_ID = "FEDCBA98FEDCBA98FEDCBA98FEDCBA98"

TRANSFORM = bytes(range(80))
FAST_TRAVEL_TRANSFORM = bytes(range(80, 160))
BASE_CAMP_TAIL = b'\xAA\xBB\xCC\xDD\xEE'


def fstr(value, wide=False) -> bytes:
    w = ArchiveWriter()
    w.fstring(value, wide)
    return w.getvalue()


NONE = fstr("None")


def u32(value) -> bytes:
    return struct.pack('<I', value)


def guid(text) -> bytes:
    return guid_from_str(text)


# =============================================================================
# Tagged properties
# =============================================================================

def prop(name, type_name, value: bytes, header: bytes = b'') -> bytes:
    """Tagged property: header is the type-specific part; the hasGuid byte is appended."""
    return fstr(name) + fstr(type_name) + struct.pack('<Q', len(value)) + header + b'\x00' + value


def int_prop(name, value):
    return prop(name, "IntProperty", struct.pack('<i', value))


def int64_prop(name, value):
    return prop(name, "Int64Property", struct.pack('<q', value))


def float_prop(name, value):
    return prop(name, "FloatProperty", struct.pack('<f', value))


def str_prop(name, value, wide=False):
    return prop(name, "StrProperty", fstr(value, wide))


def name_prop(name, value):
    return prop(name, "NameProperty", fstr(value))


def bool_prop(name, value):
    return fstr(name) + fstr("BoolProperty") + struct.pack('<Q', 0) + bytes([1 if value else 0]) + b'\x00'


def enum_prop(name, enum_type, value):
    return prop(name, "EnumProperty", fstr(value), header=fstr(enum_type))


def property_list(*props) -> bytes:
    return b''.join(props) + NONE


def struct_prop(name, struct_type, body: bytes):
    return prop(name, "StructProperty", body, header=fstr(struct_type) + ZERO_GUID_BYTES)


def guid_prop(name, text):
    return struct_prop(name, "Guid", guid(text))


def vector_prop(name, x, y, z):
    return struct_prop(name, "Vector", struct.pack('<3d', x, y, z))


def byte_array_prop(name, data: bytes):
    return prop(name, "ArrayProperty", u32(len(data)) + data, header=fstr("ByteProperty"))


def int_array_prop(name, values):
    body = u32(len(values)) + b''.join(struct.pack('<i', v) for v in values)
    return prop(name, "ArrayProperty", body, header=fstr("IntProperty"))


def struct_array_prop(name, inner_name, struct_type, elements):
    body = b''.join(elements)
    inner = (fstr(inner_name) + fstr("StructProperty") + struct.pack('<Q', len(body))
             + fstr(struct_type) + ZERO_GUID_BYTES + b'\x00')
    return prop(name, "ArrayProperty", u32(len(elements)) + inner + body,
                header=fstr("StructProperty"))


def map_prop(name, key_type, value_type, entries, removed=()):
    """entries: (key bytes, value bytes) pairs, already encoded."""
    body = u32(len(removed)) + b''.join(removed)
    body += u32(len(entries)) + b''.join(k + v for k, v in entries)
    return prop(name, "MapProperty", body, header=fstr(key_type) + fstr(value_type))


def set_prop(name, inner_type, elements):
    body = u32(0) + u32(len(elements)) + b''.join(elements)
    return prop(name, "SetProperty", body, header=fstr(inner_type))


# =============================================================================
# GVAS
# =============================================================================

def gvas_header(class_name="/Script/Pal.PalWorldSaveGame") -> bytes:
    w = ArchiveWriter()
    w.write(b'GVAS')
    w.i32(3)
    w.i32(522)
    w.i32(1009)
    w.u16(5)
    w.u16(1)
    w.u16(1)
    w.u32(0)
    w.fstring("++UE5+Release-5.1")
    w.i32(3)
    w.u32(1)
    w.guid(guid("2EB5FDBD01AC4D10A136D38F3AF3A7D8"))
    w.i32(7)
    w.fstring(class_name)
    return w.getvalue()


def gvas(*props, trailer=b'\x00\x00\x00\x00', class_name="/Script/Pal.PalWorldSaveGame") -> bytes:
    return gvas_header(class_name) + property_list(*props) + trailer


# =============================================================================
# Raw blobs
# =============================================================================

def base_camp_blob(name="Camp One", area_range=3500.0, state=1, tail=BASE_CAMP_TAIL) -> bytes:
    w = ArchiveWriter()
    w.guid(guid(BASE_ID))
    w.fstring(name)
    w.u8(state)
    w.write(TRANSFORM)
    w.f32(area_range)
    w.guid(guid(GROUP_ID))
    w.write(FAST_TRAVEL_TRANSFORM)
    w.guid(guid(OWNER_ID))
    return w.getvalue() + tail


def worker_director_blob(order=2, battle=1) -> bytes:
    w = ArchiveWriter()
    w.guid(guid(DIRECTOR_ID))
    w.write(TRANSFORM)
    w.u8(order)
    w.u8(battle)
    w.guid(guid(CONTAINER_ID))
    return w.getvalue()


def container_slot_blob(instance_id=PAL_INSTANCE_ID, permission=0) -> bytes:
    return guid(PLAYER_UID) + guid(instance_id) + bytes([permission])


def character_blob(level=12, nickname="Lamball", is_player=False, extra=()) -> bytes:
    parameter = property_list(
        int_prop("Level", level),
        str_prop("NickName", nickname),
        bool_prop("IsPlayer", is_player),
    )
    properties = property_list(
        struct_prop("SaveParameter", "PalIndividualCharacterSaveParameter", parameter), *extra)
    return properties + b'\x00\x00\x00\x00' + guid(GROUP_ID)


# =============================================================================
# World files
# =============================================================================

def character_entry(instance_id, level=12, nickname="Lamball", extra=()):
    key = property_list(guid_prop("PlayerUId", PLAYER_UID),
                        guid_prop("InstanceId", instance_id),
                        str_prop("DebugName", nickname))
    value = property_list(byte_array_prop("RawData", character_blob(level, nickname, extra=extra)))
    return key, value


def level_payload(module_map_bytes=b'\xDE\xAD\xBE\xEF' * 5) -> bytes:
    characters = map_prop("CharacterSaveParameterMap", "StructProperty", "StructProperty", [
        character_entry(PAL_INSTANCE_ID, 12, "Lamball"),
        character_entry(PLAYER_INSTANCE_ID, 30, "Player"),
    ])

    camp_value = property_list(
        byte_array_prop("RawData", base_camp_blob()),
        struct_prop("WorkerDirector", "PalWorkerDirectorSaveData",
                    property_list(byte_array_prop("RawData", worker_director_blob()))),
        prop("ModuleMap", "MapProperty", module_map_bytes,
             header=fstr("EnumProperty") + fstr("StructProperty")),
    )
    camps = map_prop("BaseCampSaveData", "StructProperty", "StructProperty",
                     [(guid(BASE_ID), camp_value)])

    slots = [
        property_list(int_prop("SlotIndex", 0), byte_array_prop("RawData", container_slot_blob())),
        property_list(int_prop("SlotIndex", 1), byte_array_prop("RawData", b'')),
    ]
    container_key = property_list(guid_prop("ID", CONTAINER_ID))
    container_value = property_list(
        struct_array_prop("Slots", "Slots", "CharacterContainerSlotSaveData", slots))
    containers = map_prop("CharacterContainerSaveData", "StructProperty", "StructProperty",
                          [(container_key, container_value)])

    groups = map_prop("GroupSaveDataMap", "StructProperty", "StructProperty",
                      [(guid(GROUP_ID), property_list(byte_array_prop("RawData", b'\x01\x02\x03\x04')))])

    game_time = struct_prop("GameTimeSaveData", "PalGameTimeSaveData", property_list(
        int64_prop("GameDateTimeTicks", 638000000000000000),
        int64_prop("RealDateTimeTicks", 638000000123456789),
    ))

    world = struct_prop("worldSaveData", "PalWorldSaveData", property_list(
        characters, camps, containers, groups, game_time,
    ))
    return gvas(int_prop("Version", 100), str_prop("Timestamp", "2024-01-20"), world)


def player_payload() -> bytes:
    save_data = struct_prop("SaveData", "PalWorldPlayerSaveData", property_list(
        guid_prop("PlayerUId", PLAYER_UID),
        vector_prop("LastTransform", 1.5, -2.25, 100.0),
        int_array_prop("UnlockedRecipes", [1, 2, 3]),
    ))
    return gvas(int_prop("Version", 100), save_data,
                class_name="/Script/Pal.PalWorldPlayerSaveGame")


def meta_payload() -> bytes:
    return gvas(struct_prop("SaveData", "PalWorldBaseInfoSaveData",
                            property_list(str_prop("WorldName", "Test World"),
                                          int_prop("HostPlayerLevel", 30))),
                class_name="/Script/Pal.PalWorldBaseInfoSaveGame")


# =============================================================================
# Wrapper
# =============================================================================

def wrap_zlib(payload: bytes, save_type=0x32, chunk_prefix=b'') -> bytes:
    return WrapperCodec().encode(payload, save_type=save_type, chunk_prefix=chunk_prefix)


# Oodle block header: uncompressed block, decoder restart, Kraken
OODLE_STORED_BLOCK = b'\xcc\x06'
OODLE_BLOCK_SIZE = 0x40000


def oodle_stored(payload: bytes) -> bytes:
    """Oodle stream of stored (uncompressed) blocks, one header per 256 KiB."""
    out = bytearray()
    for start in range(0, len(payload), OODLE_BLOCK_SIZE):
        out += OODLE_STORED_BLOCK + payload[start:start + OODLE_BLOCK_SIZE]
    return bytes(out)


def wrap_block(payload: bytes) -> bytes:
    compressed = oodle_stored(payload)
    return struct.pack('<II', len(payload), len(compressed)) + b'PlM\x31' + compressed
