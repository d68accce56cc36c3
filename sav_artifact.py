"""
World Artifact
==============

A world save as imported from a ZIP archive or a directory.

Expected layout under the world root:

    Level.sav
    LevelMeta.sav        (optional)
    LocalData.sav        (optional)
    WorldOption.sav      (optional)
    Players/<uid>.sav

The world root is the shallowest directory holding both Level.sav and
Players/*.sav. Archives using the legacy Player/ directory are rejected.
Only the files above are kept; paths are stored relative to the root.
"""

import concurrent.futures
import io
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, Optional

from sav_errors import InvalidArtifact, SaveCodecError
from sav_hints import HintRegistry
from sav_parser import DEFAULT_MAX_FALLBACK_PASSES
from sav_pipeline import DecodedSaveFile, decode_with_timeout
from sav_rawdata import RawCodecRegistry

logger = logging.getLogger(__name__)

SUPPORTED_ROOT_FILES = ("Level.sav", "LevelMeta.sav", "LocalData.sav", "WorldOption.sav")
PLAYERS_DIR = "Players"
LEGACY_PLAYER_DIR = "Player"


def sanitize_zip_path(name: str) -> str:
    """Relative POSIX path for a ZIP entry; InvalidArtifact for unsafe names."""
    text = name.replace("\\", "/")
    if text.startswith("/") or (len(text) > 1 and text[1] == ":"):
        raise InvalidArtifact("absolute path in archive", path=name)

    parts = []
    for part in PurePosixPath(text).parts:
        if part == "..":
            raise InvalidArtifact("parent directory reference in archive", path=name)
        if part in (".", ""):
            continue
        parts.append(part)
    if not parts:
        raise InvalidArtifact("empty path in archive", path=name)
    return "/".join(parts)


def _join(root: str, name: str) -> str:
    return f"{root}/{name}" if root else name


def _depth(path: str) -> int:
    return path.count("/") + 1 if path else 0


def detect_world_root(paths: Iterable[str]) -> str:
    """Directory ("" for the archive root) that holds the world files."""
    paths = set(paths)
    candidates = set()
    for path in paths:
        parent, _, name = path.rpartition("/")
        if name == "Level.sav":
            candidates.add(parent)

    saw_legacy = False
    for root in sorted(candidates, key=lambda r: (_depth(r), r)):
        players_prefix = _join(root, PLAYERS_DIR) + "/"
        legacy_prefix = _join(root, LEGACY_PLAYER_DIR) + "/"
        has_players = any(p.startswith(players_prefix) and p.endswith(".sav")
                          and "/" not in p[len(players_prefix):] for p in paths)
        has_legacy = any(p.startswith(legacy_prefix) for p in paths)
        if has_players and not has_legacy:
            return root
        if has_legacy:
            saw_legacy = True

    if saw_legacy:
        raise InvalidArtifact("ZIP uses Player/ directory; only Players/ is supported")
    raise InvalidArtifact("no directory with Level.sav and Players/*.sav found")


def is_supported_world_file(relative_path: str) -> bool:
    if relative_path in SUPPORTED_ROOT_FILES:
        return True
    directory, sep, name = relative_path.partition("/")
    return bool(sep) and directory == PLAYERS_DIR and "/" not in name and name.endswith(".sav")


@dataclass
class FileFailure:
    path: str
    error: SaveCodecError

    def __str__(self):
        return f"{self.path}: {type(self.error).__name__}: {self.error}"


class ImportArtifact:
    """Source bytes of one world, plus what decode_all() made of them."""

    def __init__(self, files: Dict[str, bytes], world_root: str = ""):
        self.files = dict(sorted(files.items()))
        self.world_root = world_root
        self.decoded: Dict[str, DecodedSaveFile] = {}
        self.failures: Dict[str, FileFailure] = {}

    @classmethod
    def _from_entries(cls, entries: Dict[str, bytes]) -> 'ImportArtifact':
        root = detect_world_root(entries)
        prefix = root + "/" if root else ""
        files = {}
        skipped = 0
        for path, data in entries.items():
            if not path.startswith(prefix):
                continue
            relative = path[len(prefix):]
            if is_supported_world_file(relative):
                files[relative] = data
            else:
                skipped += 1
        logger.info("world root %r: %d save files (%d other entries ignored)",
                    root or ".", len(files), skipped)
        return cls(files, root)

    @classmethod
    def from_zip(cls, data: bytes) -> 'ImportArtifact':
        try:
            archive = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as e:
            raise InvalidArtifact(f"not a ZIP archive: {e}") from e

        entries = {}
        with archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                entries[sanitize_zip_path(info.filename)] = archive.read(info)
        return cls._from_entries(entries)

    @classmethod
    def from_directory(cls, directory) -> 'ImportArtifact':
        directory = Path(directory)
        if not directory.is_dir():
            raise InvalidArtifact("not a directory", path=str(directory))
        entries = {}
        for path in sorted(directory.rglob("*")):
            if path.is_file():
                entries[path.relative_to(directory).as_posix()] = path.read_bytes()
        return cls._from_entries(entries)

    # -------------------------------------------------------------------------
    # Decode
    # -------------------------------------------------------------------------

    def decode_all(self, hints: HintRegistry, raw_codecs: RawCodecRegistry,
                   max_workers: int = 4, timeout_s: float = 120.0,
                   require_all: bool = False, progress=None,
                   max_passes: int = DEFAULT_MAX_FALLBACK_PASSES) -> Dict[str, DecodedSaveFile]:
        """
        Decode every file on a thread pool.

        A failing file is recorded in `failures` and does not stop the others;
        with require_all the first failure (by path) is raised afterwards.
        """
        self.decoded = {}
        self.failures = {}
        results = {}

        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers,
                                                   thread_name_prefix="artifact") as pool:
            futures = {
                pool.submit(decode_with_timeout, path, data, hints, raw_codecs,
                            timeout_s, progress, max_passes): path
                for path, data in self.files.items()
            }
            for future in concurrent.futures.as_completed(futures):
                path = futures[future]
                try:
                    results[path] = future.result()
                except SaveCodecError as e:
                    self.failures[path] = FileFailure(path, e)
                    logger.error("%s: %s", path, e)

        self.decoded = dict(sorted(results.items()))
        self.failures = dict(sorted(self.failures.items()))
        if require_all and self.failures:
            raise next(iter(self.failures.values())).error
        return self.decoded

    def documents(self):
        return {path: decoded.document for path, decoded in self.decoded.items()}

    def original(self, path: str) -> Optional[bytes]:
        return self.files.get(path)

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    def export_zip(self, files: Dict[str, bytes]) -> bytes:
        """ZIP of `files` (relative paths) placed under the original world root."""
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for path in sorted(files):
                archive.writestr(_join(self.world_root, path), files[path])
        return buf.getvalue()
