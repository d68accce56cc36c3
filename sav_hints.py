"""
Hint Registry
=============

Path -> TypeHint lookup for the parts of the property stream that are not
self-describing.

Layers, lowest precedence first:

| Layer      | Source                                        |
|------------|-----------------------------------------------|
| defaults   | sav_paltypes.PALWORLD_TYPE_HINTS              |
| persisted  | discovery file (`path|hint` lines) at startup |
| session    | record_discovered() calls in this process     |

A path listed in DISABLED_PROPERTIES (or lying under one) never resolves,
whatever layer holds a hint for it.

The registry is a plain object handed to every decode; there is no module
level cache. record_discovered() is the only mutation and takes a lock.
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, Mapping, Optional, Union

from sav_paltypes import DISABLED_PROPERTIES, PALWORLD_TYPE_HINTS

logger = logging.getLogger(__name__)

DISCOVERY_FILE_HEADER = "# discovered type hints: <path>|<hint>\n"


# =============================================================================
# PropertyPath
# =============================================================================

class PropertyPath:
    """
    Dot-separated field location.

    `text` keeps the case it was built with (minus any leading "."), `key` is
    the casefolded form used for equality and hashing.
    """

    __slots__ = ("text", "key")

    def __init__(self, text: Union[str, 'PropertyPath'] = ""):
        if isinstance(text, PropertyPath):
            text = text.text
        self.text = text.lstrip(".")
        self.key = self.text.casefold()

    def child(self, name: str) -> 'PropertyPath':
        return PropertyPath(f"{self.text}.{name}" if self.text else name)

    def ancestors(self) -> Iterator['PropertyPath']:
        """This path and every prefix of it, longest first."""
        parts = self.text.split(".")
        for end in range(len(parts), 0, -1):
            yield PropertyPath(".".join(parts[:end]))

    @property
    def name(self) -> str:
        return self.text.rsplit(".", 1)[-1]

    def __eq__(self, other):
        if isinstance(other, str):
            other = PropertyPath(other)
        if not isinstance(other, PropertyPath):
            return NotImplemented
        return self.key == other.key

    def __hash__(self):
        return hash(self.key)

    def __str__(self):
        return self.text

    def __repr__(self):
        return f"PropertyPath({self.text!r})"


def normalize(path: Union[str, PropertyPath]) -> PropertyPath:
    return PropertyPath(path)


# =============================================================================
# TypeHint
# =============================================================================

KIND_STRUCT = "struct"
KIND_MAP = "map"
KIND_ARRAY = "array"
KIND_SCALAR = "scalar"


@dataclass(frozen=True)
class TypeHint:
    """Declared shape of one path."""
    kind: str
    type_name: str
    key_type: Optional[str] = None
    value_type: Optional[str] = None

    @classmethod
    def from_text(cls, text: str) -> 'TypeHint':
        text = text.strip()
        if not text:
            raise ValueError("empty type hint")

        if "<" in text:
            if not text.endswith(">"):
                raise ValueError(f"malformed type hint: {text!r}")
            outer, args = text[:-1].split("<", 1)
            params = [p.strip() for p in args.split(",")]
            if outer == "MapProperty" and len(params) == 2 and all(params):
                return cls(KIND_MAP, outer, key_type=params[0], value_type=params[1])
            if outer in ("ArrayProperty", "SetProperty") and len(params) == 1 and params[0]:
                return cls(KIND_ARRAY, outer, value_type=params[0])
            raise ValueError(f"malformed type hint: {text!r}")

        if text == "StructProperty":
            return cls(KIND_STRUCT, text)
        return cls(KIND_SCALAR, text)

    def to_text(self) -> str:
        if self.kind == KIND_MAP:
            return f"{self.type_name}<{self.key_type},{self.value_type}>"
        if self.kind == KIND_ARRAY:
            return f"{self.type_name}<{self.value_type}>"
        return self.type_name

    @property
    def is_property_list(self) -> bool:
        return self.kind == KIND_STRUCT

    def __str__(self):
        return self.to_text()


def _coerce_hint(hint: Union[str, TypeHint]) -> TypeHint:
    return hint if isinstance(hint, TypeHint) else TypeHint.from_text(hint)


# =============================================================================
# Registry
# =============================================================================

class HintRegistry:
    """Process-scoped hint handle. Safe to share between decode threads."""

    def __init__(self, defaults: Optional[Mapping[str, str]] = None,
                 disabled: Optional[Iterable[str]] = None,
                 discovery_file: Optional[Path] = None):
        if defaults is None:
            defaults = PALWORLD_TYPE_HINTS
        if disabled is None:
            disabled = DISABLED_PROPERTIES

        self.discovery_file = Path(discovery_file) if discovery_file else None
        self._lock = threading.Lock()
        self._disabled = {normalize(p) for p in disabled}
        self._defaults: Dict[PropertyPath, TypeHint] = {
            normalize(p): _coerce_hint(h) for p, h in defaults.items()
        }
        self._persisted: Dict[PropertyPath, TypeHint] = {}
        self._session: Dict[PropertyPath, TypeHint] = {}
        self._persisted_lines = set()
        self._load_persisted()

    @classmethod
    def from_config(cls, config) -> 'HintRegistry':
        return cls(discovery_file=config.hint_discovery_file)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    @staticmethod
    def normalize(path: Union[str, PropertyPath]) -> PropertyPath:
        return normalize(path)

    def is_disabled(self, path: Union[str, PropertyPath]) -> bool:
        return any(p in self._disabled for p in normalize(path).ancestors())

    def resolve(self, path: Union[str, PropertyPath]) -> Optional[TypeHint]:
        path = normalize(path)
        if self.is_disabled(path):
            return None
        with self._lock:
            for layer in (self._session, self._persisted, self._defaults):
                hint = layer.get(path)
                if hint is not None:
                    return hint
        return None

    def hints(self) -> Dict[str, str]:
        """Merged snapshot of every resolvable path, as text."""
        merged: Dict[PropertyPath, TypeHint] = {}
        with self._lock:
            for layer in (self._defaults, self._persisted, self._session):
                merged.update(layer)
        return {p.text: h.to_text() for p, h in merged.items() if not self.is_disabled(p)}

    def __len__(self):
        return len(self.hints())

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def record_discovered(self, path: Union[str, PropertyPath],
                          hint: Union[str, TypeHint]) -> bool:
        """
        Remember a hint found by inference. Returns True if anything changed.

        The same path|hint pair is appended to the discovery file at most once.
        File errors are logged and otherwise ignored.
        """
        path = normalize(path)
        hint = _coerce_hint(hint)
        if self.is_disabled(path):
            logger.debug("not recording hint for disabled path %s", path)
            return False

        line = f"{path.text}|{hint.to_text()}"
        with self._lock:
            changed = self._session.get(path) != hint
            self._session[path] = hint
            if line.casefold() in self._persisted_lines:
                return changed
            self._persisted_lines.add(line.casefold())
            if self.discovery_file is not None:
                self._append_line(line)
        return True

    def _append_line(self, line: str) -> None:
        try:
            self.discovery_file.parent.mkdir(parents=True, exist_ok=True)
            is_new = not self.discovery_file.exists()
            with open(self.discovery_file, "a", encoding="utf-8") as f:
                if is_new:
                    f.write(DISCOVERY_FILE_HEADER)
                f.write(line + "\n")
        except OSError as e:
            logger.warning("failed to persist discovered hint %s: %s", line, e)

    def _load_persisted(self) -> None:
        if self.discovery_file is None or not self.discovery_file.exists():
            return
        try:
            lines = self.discovery_file.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            logger.warning("cannot read hint discovery file %s: %s", self.discovery_file, e)
            return

        for lineno, line in enumerate(lines, 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            raw_path, sep, raw_hint = line.partition("|")
            if not sep or not raw_path.strip() or not raw_hint.strip():
                logger.debug("%s:%d: skipping malformed line", self.discovery_file, lineno)
                continue
            try:
                hint = TypeHint.from_text(raw_hint)
            except ValueError as e:
                logger.debug("%s:%d: %s", self.discovery_file, lineno, e)
                continue
            path = normalize(raw_path.strip())
            self._persisted[path] = hint
            self._persisted_lines.add(f"{path.text}|{hint.to_text()}".casefold())

        logger.debug("loaded %d persisted hints from %s", len(self._persisted), self.discovery_file)
