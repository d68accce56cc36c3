import threading

import pytest

from sav_hints import (DISCOVERY_FILE_HEADER, KIND_MAP, KIND_STRUCT, HintRegistry, PropertyPath,
                       TypeHint, normalize)
from sav_paltypes import DISABLED_PROPERTIES, PALWORLD_TYPE_HINTS


def test_path_equality_ignores_leading_dot_and_case():
    a = normalize(".worldSaveData.BaseCampSaveData.Key")
    b = normalize("WORLDSAVEDATA.basecampsavedata.key")
    assert a == b
    assert hash(a) == hash(b)
    assert a.text == "worldSaveData.BaseCampSaveData.Key"


def test_path_children_and_ancestors():
    path = PropertyPath("worldSaveData").child("BaseCampSaveData").child("Value")
    assert path.text == "worldSaveData.BaseCampSaveData.Value"
    assert path.name == "Value"
    assert [p.text for p in path.ancestors()] == [
        "worldSaveData.BaseCampSaveData.Value",
        "worldSaveData.BaseCampSaveData",
        "worldSaveData",
    ]


@pytest.mark.parametrize("text,kind,key,value", [
    ("StructProperty", KIND_STRUCT, None, None),
    ("Guid", "scalar", None, None),
    ("MapProperty<Guid,StructProperty>", KIND_MAP, "Guid", "StructProperty"),
    ("ArrayProperty<ByteProperty>", "array", None, "ByteProperty"),
])
def test_type_hint_text_forms(text, kind, key, value):
    hint = TypeHint.from_text(text)
    assert (hint.kind, hint.key_type, hint.value_type) == (kind, key, value)
    assert hint.to_text() == text


@pytest.mark.parametrize("text", ["", "MapProperty<Guid>", "ArrayProperty<", "Foo<A,B>"])
def test_malformed_type_hints(text):
    with pytest.raises(ValueError):
        TypeHint.from_text(text)


def test_defaults_resolve_with_or_without_dot():
    registry = HintRegistry()
    assert registry.resolve(".worldSaveData.BaseCampSaveData.Key").type_name == "Guid"
    assert registry.resolve("worldsavedata.basecampsavedata.key").type_name == "Guid"
    assert registry.resolve("worldSaveData.NoSuchMap.Key") is None


def test_disabled_paths_never_resolve():
    disabled = ".worldSaveData.BaseCampSaveData.Value.ModuleMap"
    assert disabled in DISABLED_PROPERTIES
    registry = HintRegistry()

    # a compiled default exists below the disabled path
    assert ".worldSaveData.BaseCampSaveData.Value.ModuleMap.Value" in PALWORLD_TYPE_HINTS
    assert registry.is_disabled("worldSaveData.BaseCampSaveData.Value.ModuleMap.Value")
    assert registry.resolve("worldSaveData.BaseCampSaveData.Value.ModuleMap.Value") is None
    assert "worldSaveData.BaseCampSaveData.Value.ModuleMap.Value" not in registry.hints()


def test_disabled_wins_over_defaults_and_discoveries():
    path = "worldSaveData.Thing.Value"
    registry = HintRegistry(defaults={path: "StructProperty"}, disabled={path})
    assert registry.resolve(path) is None
    assert registry.record_discovered(path, "Guid") is False
    assert registry.resolve(path) is None


def test_session_discovery_overrides_default():
    path = "worldSaveData.Thing.Key"
    registry = HintRegistry(defaults={path: "StructProperty"}, disabled=())
    registry.record_discovered(path, "Guid")
    assert registry.resolve(path).type_name == "Guid"

    # most recent discovery wins within the session
    registry.record_discovered(path, "StructProperty")
    assert registry.resolve(path).type_name == "StructProperty"


def test_record_discovered_persists_once(tmp_path):
    store = tmp_path / "data" / "hints.txt"
    registry = HintRegistry(defaults={}, disabled=(), discovery_file=store)

    assert registry.record_discovered(".Foo.Key", "Guid") is True
    assert registry.record_discovered("foo.key", "Guid") is False
    registry.record_discovered("Foo.Value", "StructProperty")

    lines = store.read_text(encoding="utf-8").splitlines()
    assert lines[0] + "\n" == DISCOVERY_FILE_HEADER
    assert lines[1:] == ["Foo.Key|Guid", "Foo.Value|StructProperty"]


def test_persisted_hints_load_in_new_process(tmp_path):
    store = tmp_path / "hints.txt"
    store.write_text("# comment\n"
                     "worldSaveData.Thing.Key|Guid\n"
                     "this line is malformed\n"
                     "worldSaveData.Bad|Map<\n"
                     "\n"
                     "worldSaveData.Thing.Value|StructProperty\n", encoding="utf-8")

    registry = HintRegistry(defaults={"worldSaveData.Thing.Key": "StructProperty"},
                            disabled=(), discovery_file=store)
    assert registry.resolve("worldSaveData.Thing.Key").type_name == "Guid"
    assert registry.resolve("worldSaveData.Thing.Value").is_property_list
    assert registry.resolve("worldSaveData.Bad") is None

    # already persisted: nothing appended
    registry.record_discovered("worldSaveData.Thing.Key", "Guid")
    assert store.read_text(encoding="utf-8").count("Thing.Key|Guid") == 1


def test_unwritable_discovery_file_is_not_fatal(tmp_path, caplog):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    registry = HintRegistry(defaults={}, disabled=(), discovery_file=blocker / "hints.txt")

    assert registry.record_discovered("A.Key", "Guid") is True
    assert registry.resolve("A.Key").type_name == "Guid"
    assert "failed to persist" in caplog.text


def test_concurrent_discoveries_are_written_once(tmp_path):
    store = tmp_path / "hints.txt"
    registry = HintRegistry(defaults={}, disabled=(), discovery_file=store)
    paths = [f"Map{i}.Key" for i in range(20)]

    def record():
        for path in paths:
            registry.record_discovered(path, "Guid")

    threads = [threading.Thread(target=record) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    lines = [line for line in store.read_text(encoding="utf-8").splitlines()
             if not line.startswith("#")]
    assert sorted(lines) == sorted(f"{p}|Guid" for p in paths)
    assert len(registry) == 20


def test_from_config_uses_discovery_file(tmp_path):
    from sav_config import CodecConfig

    config = CodecConfig(hint_discovery_file=tmp_path / "h.txt")
    registry = HintRegistry.from_config(config)
    assert registry.discovery_file == tmp_path / "h.txt"
    assert len(registry) > 0
