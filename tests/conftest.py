"""Shared fixtures: hint/codec registries and a small synthetic world."""

import io
import zipfile

import pytest

from gvas_builders import (PLAYER_FILE, level_payload, meta_payload, player_payload, wrap_block,
                           wrap_zlib)
from sav_artifact import ImportArtifact
from sav_hints import HintRegistry
from sav_rawdata import RawCodecRegistry


@pytest.fixture
def hints():
    return HintRegistry()


@pytest.fixture
def raw_codecs(hints):
    return RawCodecRegistry(hints)


@pytest.fixture
def level_bytes():
    return level_payload()


@pytest.fixture
def world_files():
    """Level.sav as PlZ 0x32, LevelMeta.sav as PlZ 0x31, the player file block-compressed."""
    return {
        "Level.sav": wrap_zlib(level_payload(), save_type=0x32),
        "LevelMeta.sav": wrap_zlib(meta_payload(), save_type=0x31),
        PLAYER_FILE: wrap_block(player_payload()),
    }


@pytest.fixture
def artifact(world_files, hints, raw_codecs):
    artifact = ImportArtifact(world_files)
    artifact.decode_all(hints, raw_codecs, max_workers=2, timeout_s=30.0, require_all=True)
    return artifact


@pytest.fixture
def world_zip(world_files):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        for path, data in world_files.items():
            archive.writestr(f"SaveGames/0/WORLD/{path}", data)
        archive.writestr("SaveGames/0/WORLD/backup/world/Level.sav", b"old")
        archive.writestr("SaveGames/0/WORLD/readme.txt", b"notes")
    return buf.getvalue()
