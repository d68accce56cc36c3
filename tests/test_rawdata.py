import pytest

from gvas_builders import (BASE_CAMP_TAIL, BASE_ID, CONTAINER_ID, GROUP_ID, PAL_INSTANCE_ID,
                           base_camp_blob, character_blob, container_slot_blob,
                           worker_director_blob)
from sav_errors import EntityNotEditable, OutOfBounds, UnknownTarget
from sav_hints import HintRegistry
from sav_paltypes import DISABLED_PROPERTIES, PALWORLD_TYPE_HINTS
from sav_parser import parse
from sav_rawdata import (BASE_CAMP_PATH, CHARACTER_PATH, CONTAINER_SLOT_PATH, PASSTHROUGH_PATHS,
                         WORKER_DIRECTOR_PATH, BaseCampCodec, RawCodec, RawCodecRegistry)
from sav_roundtrip import HybridRaw, KnownDecoded, OpaqueRaw


@pytest.mark.parametrize("path,data,representation", [
    (BASE_CAMP_PATH, base_camp_blob(), "hybrid"),
    (BASE_CAMP_PATH, base_camp_blob(tail=b''), "known"),
    (WORKER_DIRECTOR_PATH, worker_director_blob(), "known"),
    (CONTAINER_SLOT_PATH, container_slot_blob(), "known"),
    (CONTAINER_SLOT_PATH, b'', "known"),
    (CHARACTER_PATH, character_blob(), "known"),
    (CHARACTER_PATH, character_blob() + b'\x07\x07', "hybrid"),
    (PASSTHROUGH_PATHS[0], b'\x01\x02\x03', "opaque"),
    ("worldSaveData.Unregistered.RawData", b'\x09' * 8, "opaque"),
], ids=["camp-hybrid", "camp-known", "director", "slot", "slot-empty", "character",
        "character-hybrid", "passthrough", "no-codec"])
def test_unmutated_entities_encode_to_original_bytes(raw_codecs, path, data, representation):
    entity = raw_codecs.decode(path, data)
    assert entity.representation == representation
    assert entity.encode() == data
    assert raw_codecs.encode(path, entity) == data


def test_base_camp_fields(raw_codecs):
    entity = raw_codecs.decode("." + BASE_CAMP_PATH, base_camp_blob())
    assert isinstance(entity, HybridRaw)
    assert entity.domain == "base_camp"
    assert entity.get_field("id") == BASE_ID
    assert entity.get_field("name") == "Camp One"
    assert entity.get_field("area_range") == 3500.0
    assert entity.get_field("group_id_belong_to") == GROUP_ID
    assert entity.opaque_unknown == BASE_CAMP_TAIL


def test_hybrid_tail_survives_field_change(raw_codecs):
    entity = raw_codecs.decode(BASE_CAMP_PATH, base_camp_blob())
    entity.set_field("area_range", 4000.0)
    assert entity.mutated
    assert entity.encode() == base_camp_blob(area_range=4000.0)
    assert entity.encode().endswith(BASE_CAMP_TAIL)


def test_base_camp_rename_changes_length(raw_codecs):
    entity = raw_codecs.decode(BASE_CAMP_PATH, base_camp_blob())
    entity.set_field("name", "A much longer camp name")
    assert entity.encode() == base_camp_blob(name="A much longer camp name")


@pytest.mark.parametrize("field,value", [
    ("state", 256),
    ("state", -1),
    ("state", "3"),
    ("area_range", "wide"),
    ("group_id_belong_to", "not-a-guid"),
    ("transform", b'\x00' * 79),
    ("name", 12),
])
def test_base_camp_rejects_bad_values(raw_codecs, field, value):
    entity = raw_codecs.decode(BASE_CAMP_PATH, base_camp_blob())
    with pytest.raises(OutOfBounds):
        entity.check_field(field, value)
    assert not entity.mutated


def test_unknown_field(raw_codecs):
    entity = raw_codecs.decode(WORKER_DIRECTOR_PATH, worker_director_blob())
    with pytest.raises(UnknownTarget, match="no field 'speed'"):
        entity.set_field("speed", 1)


def test_worker_director_fields(raw_codecs):
    entity = raw_codecs.decode(WORKER_DIRECTOR_PATH, worker_director_blob(order=2, battle=1))
    assert isinstance(entity, KnownDecoded)
    assert entity.get_field("container_id") == CONTAINER_ID
    entity.set_field("current_order_type", 5)
    assert entity.encode() == worker_director_blob(order=5, battle=1)


def test_container_slot_guid_normalized(raw_codecs):
    entity = raw_codecs.decode(CONTAINER_SLOT_PATH, container_slot_blob())
    assert entity.get_field("instance_id") == PAL_INSTANCE_ID
    dashed = "00000000-0000-0000-0000-000000000042"
    entity.set_field("instance_id", dashed)
    assert entity.get_field("instance_id") == "00000000000000000000000000000042"
    assert entity.encode() == container_slot_blob(instance_id="00000000000000000000000000000042")


def test_empty_container_slot_not_editable(raw_codecs):
    entity = raw_codecs.decode(CONTAINER_SLOT_PATH, b'')
    assert entity.known.is_empty
    with pytest.raises(EntityNotEditable):
        entity.set_field("instance_id", PAL_INSTANCE_ID)


def test_character_fields(raw_codecs):
    entity = raw_codecs.decode(CHARACTER_PATH, character_blob(level=12, nickname="Lamball"))
    assert entity.get_field("SaveParameter.Level") == 12
    assert entity.get_field("SaveParameter.NickName") == "Lamball"
    assert entity.get_field("group_id") == GROUP_ID

    entity.set_field("SaveParameter.Level", 40)
    entity.set_field("SaveParameter.NickName", "Boss")
    assert entity.encode() == character_blob(level=40, nickname="Boss")

    with pytest.raises(OutOfBounds):
        entity.check_field("SaveParameter.Level", 2 ** 40)
    with pytest.raises(UnknownTarget):
        entity.get_field("SaveParameter.Missing")


def test_opaque_entities_reject_edits(raw_codecs):
    entity = raw_codecs.decode(PASSTHROUGH_PATHS[0], b'\x01\x02')
    assert isinstance(entity, OpaqueRaw)
    assert entity.reason == "passthrough"
    with pytest.raises(EntityNotEditable, match="passthrough"):
        entity.set_field("anything", 1)
    assert entity.encode() == b'\x01\x02'


def test_decode_failure_is_opaque_and_counted(raw_codecs, caplog):
    entity = raw_codecs.decode(WORKER_DIRECTOR_PATH, b'\x01\x02\x03')
    assert isinstance(entity, OpaqueRaw)
    assert entity.reason == "decode failed"
    assert raw_codecs.skip_count == 1
    assert "worker_director decode failed" in caplog.text
    assert WORKER_DIRECTOR_PATH in caplog.text


class ExplodingCodec(RawCodec):
    domain = "exploding"

    def __init__(self):
        self.calls = 0

    def decode(self, data):
        self.calls += 1
        return object(), len(data)

    def encode(self, model):
        raise AssertionError("never encoded")


def test_disabled_path_is_opaque_even_with_working_codec():
    path = "worldSaveData.Custom.RawData"
    hints = HintRegistry(defaults={path: "ArrayProperty<ByteProperty>"}, disabled={path})
    registry = RawCodecRegistry(hints, register_defaults=False)
    codec = ExplodingCodec()
    registry.register(path, codec)

    for expected in (1, 2, 3):
        entity = registry.decode("." + path.upper(), b'\x00\x01')
        assert isinstance(entity, OpaqueRaw)
        assert entity.reason == "disabled"
        assert registry.skip_count == expected

    assert codec.calls == 0
    assert registry.codec_for(path) is None


def test_disabled_default_hint_decodes_opaque(level_bytes):
    """A path with a compiled default hint that is also disabled stays opaque."""
    defaults = dict(PALWORLD_TYPE_HINTS)
    defaults[".worldSaveData.BaseCampSaveData.Value.RawData"] = "ArrayProperty<ByteProperty>"
    hints = HintRegistry(defaults=defaults,
                         disabled=set(DISABLED_PROPERTIES) | {BASE_CAMP_PATH})
    registry = RawCodecRegistry(hints)
    assert isinstance(registry._codecs[hints.normalize(BASE_CAMP_PATH)], BaseCampCodec)

    document = parse(level_bytes, hints).document
    stats = registry.attach(document.root)

    camp_value = document.root.find("worldSaveData.BaseCampSaveData").entries[0][1]
    entity = camp_value["RawData"].entity
    assert isinstance(entity, OpaqueRaw)
    assert not isinstance(entity, KnownDecoded)
    assert hints.resolve(BASE_CAMP_PATH) is None
    assert stats.skipped == 1
    assert "base_camp" not in stats.entity_counts

    # the worker director next to it is still decoded
    director = camp_value["WorkerDirector"]["RawData"].entity
    assert director.representation == "known"


def test_attach_counts_domains(hints, raw_codecs, level_bytes):
    document = parse(level_bytes, hints).document
    stats = raw_codecs.attach(document.root)
    assert stats.entity_counts == {
        "character": 2,
        "base_camp": 1,
        "worker_director": 1,
        "container_slot": 2,
        "opaque": 1,
    }
    assert stats.blobs == 7
    assert stats.skipped == 0

    # a second attach leaves existing entities alone
    assert raw_codecs.attach(document.root).blobs == 0
