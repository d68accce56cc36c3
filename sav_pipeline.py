"""
File pipeline: wrapper decode -> graph parse -> raw-domain decode.

Progress goes to a callback as ProgressEvents, in this order and with a
strictly increasing completion estimate:

| Phase              | Estimate         |
|--------------------|------------------|
| wrapper decode     | 0.05             |
| graph parse        | 0.20             |
| fallback pass N    | 0.20 .. 0.80     |
| raw-domain decode  | 0.85             |
| done               | 1.00             |

The graph parse and the character blobs of one file share a single fallback
budget (`max_passes`); passes spent inside blobs are reported at the
raw-domain estimate.
"""

import concurrent.futures
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional

from sav_errors import DecodeTimeout, MissingHint, SaveCodecError
from sav_hints import HintRegistry
from sav_parser import DEFAULT_MAX_FALLBACK_PASSES, PassBudget, PropertyParser
from sav_properties import RawBlobNode, SaveDocument, ScalarNode, walk
from sav_rawdata import RawCodecRegistry
from sav_serializer import serialize
from sav_wrapper import WrapperCodec, WrapperHeader

logger = logging.getLogger(__name__)

PHASE_WRAPPER = "wrapper decode"
PHASE_GRAPH = "graph parse"
PHASE_FALLBACK = "fallback pass"
PHASE_RAW = "raw-domain decode"
PHASE_DONE = "done"


@dataclass
class ProgressEvent:
    phase: str
    fraction: float
    file: Optional[str] = None
    unresolved_path: Optional[str] = None


class ProgressReporter:
    """Delivers ProgressEvents to `callback`; estimates never go backwards."""

    def __init__(self, callback: Optional[Callable[[ProgressEvent], None]] = None,
                 file: Optional[str] = None, max_passes: int = DEFAULT_MAX_FALLBACK_PASSES):
        self.callback = callback
        self.file = file
        self.max_passes = max_passes
        self.last = 0.0

    def emit(self, phase: str, fraction: float, unresolved_path: Optional[str] = None) -> None:
        fraction = min(1.0, max(fraction, self.last))
        self.last = fraction
        if self.callback is not None:
            self.callback(ProgressEvent(phase, fraction, self.file, unresolved_path))

    def wrapper_decode(self):
        self.emit(PHASE_WRAPPER, 0.05)

    def graph_parse(self):
        self.emit(PHASE_GRAPH, 0.20)

    def fallback_pass(self, number: int, unresolved_path: str):
        self.emit(f"{PHASE_FALLBACK} {number}", 0.20 + 0.60 * number / (self.max_passes + 1),
                  unresolved_path)

    def raw_domain(self):
        self.emit(PHASE_RAW, 0.85)

    def done(self):
        self.emit(PHASE_DONE, 1.0)


@dataclass
class ParseMetrics:
    wrapper_decode_ms: float = 0.0
    graph_parse_ms: float = 0.0
    fallback_pass_count: int = 0
    hint_count_start: int = 0
    hint_count_end: int = 0
    entity_counts: Dict[str, int] = field(default_factory=dict)
    disabled_path_skips: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DecodedSaveFile:
    relative_path: str
    original_bytes: bytes
    wrapper: WrapperHeader
    document: SaveDocument
    metrics: ParseMetrics
    diagnostics: List[MissingHint] = field(default_factory=list)

    @property
    def mutated(self) -> bool:
        for node in walk(self.document.root):
            if isinstance(node, ScalarNode) and node.changed:
                return True
            if isinstance(node, RawBlobNode) and node.entity is not None and node.entity.mutated:
                return True
        return False


def _ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000.0, 3)


def decode_file(relative_path: str, data: bytes, hints: HintRegistry,
                raw_codecs: RawCodecRegistry, progress=None,
                max_passes: int = DEFAULT_MAX_FALLBACK_PASSES,
                wrapper_codec: Optional[WrapperCodec] = None) -> DecodedSaveFile:
    """
    Decode one save file.

    `progress` is a ProgressReporter or a plain callback taking ProgressEvent.
    Raises the wrapper/graph errors of sav_errors; raw-domain problems only
    degrade blobs to OpaqueRaw.
    """
    if not isinstance(progress, ProgressReporter):
        progress = ProgressReporter(progress, relative_path, max_passes)
    wrapper_codec = wrapper_codec or WrapperCodec()
    metrics = ParseMetrics()

    progress.wrapper_decode()
    start = time.perf_counter()
    wrapped = wrapper_codec.decode(data, relative_path)
    metrics.wrapper_decode_ms = _ms(start)

    progress.graph_parse()
    start = time.perf_counter()
    budget = PassBudget(max_passes, progress.fallback_pass)
    parser = PropertyParser(hints, max_passes, budget=budget)
    try:
        outcome = parser.parse(wrapped.inner_payload)
    except SaveCodecError as e:
        logger.error("%s: graph parse failed: %s", relative_path, e)
        raise
    metrics.graph_parse_ms = _ms(start)
    metrics.hint_count_start = outcome.hint_count_start

    progress.raw_domain()
    stats = raw_codecs.attach(outcome.document.root, budget)
    metrics.fallback_pass_count = budget.used
    metrics.hint_count_end = len(hints)
    metrics.entity_counts = stats.entity_counts
    metrics.disabled_path_skips = outcome.disabled_skips + stats.skipped

    diagnostics = outcome.diagnostics + stats.diagnostics
    outcome.document.diagnostics = diagnostics
    progress.done()

    logger.info("%s: %s, %d fallback passes, %d blobs, %.1f ms",
                relative_path, wrapped.header.label, budget.used, stats.blobs,
                metrics.wrapper_decode_ms + metrics.graph_parse_ms)
    return DecodedSaveFile(relative_path=relative_path, original_bytes=data,
                           wrapper=wrapped.header, document=outcome.document,
                           metrics=metrics, diagnostics=diagnostics)


def encode_file(decoded: Optional[DecodedSaveFile], original_bytes: bytes,
                wrapper_codec: Optional[WrapperCodec] = None) -> bytes:
    """Original bytes when nothing changed; otherwise serialize + re-wrap."""
    if decoded is None or not decoded.mutated:
        return original_bytes
    wrapper_codec = wrapper_codec or WrapperCodec()
    inner = serialize(decoded.document)
    return wrapper_codec.recompress(original_bytes, inner, True, decoded.relative_path)


def decode_with_timeout(relative_path: str, data: bytes, hints: HintRegistry,
                        raw_codecs: RawCodecRegistry, timeout_s: float, progress=None,
                        max_passes: int = DEFAULT_MAX_FALLBACK_PASSES) -> DecodedSaveFile:
    """
    decode_file on a worker thread with a wall-clock limit.

    On timeout the attempt is abandoned (its result is never returned) and
    DecodeTimeout is raised. Hints are only recorded by a parse that
    finishes, so an abandoned attempt leaves the registry consistent.
    """
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="decode")
    future = executor.submit(decode_file, relative_path, data, hints, raw_codecs,
                             progress, max_passes)
    try:
        return future.result(timeout=timeout_s)
    except concurrent.futures.TimeoutError:
        future.cancel()
        logger.warning("%s: decode abandoned after %.1fs", relative_path, timeout_s)
        raise DecodeTimeout(f"decode exceeded {timeout_s}s", path=relative_path) from None
    finally:
        executor.shutdown(wait=False)
