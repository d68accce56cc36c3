#!/usr/bin/env python3
"""
Save Probe - Decode Palworld world saves and report what was found
==================================================================

Decodes every supported file of a world (ZIP, directory or a single .sav)
and prints, per file, the wrapper variant, decode status, parse metrics and
entity counts. Nothing is written back.

Configuration comes from PALSAVE_* environment variables (see sav_config.py).
Discovered type hints are appended to the hint discovery file, so a second
run over the same world needs fewer fallback passes.

Usage:
------
    python save_probe.py world.zip                   # Every file of a world ZIP
    python save_probe.py ./SaveGames/0/ABCD/         # World directory
    python save_probe.py Level.sav                   # One file
    python save_probe.py world.zip --json report.json
"""

import sys
import os
import json
import argparse

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sav_artifact import ImportArtifact
from sav_config import load_config
from sav_entities import EntityIndex
from sav_errors import SaveCodecError
from sav_hints import HintRegistry
from sav_logging import configure_logging
from sav_pipeline import decode_with_timeout
from sav_rawdata import RawCodecRegistry


# =============================================================================
# REPORT
# =============================================================================

def load_artifact(input_path: str):
    """(artifact, is_single_file) for a ZIP file, world directory or one save file."""
    if os.path.isdir(input_path):
        return ImportArtifact.from_directory(input_path), False
    with open(input_path, 'rb') as f:
        data = f.read()
    if data[:2] == b'PK':
        return ImportArtifact.from_zip(data), False
    return ImportArtifact({os.path.basename(input_path): data}), True


def build_report(artifact: ImportArtifact) -> dict:
    index = EntityIndex.build(artifact.documents())
    files = []
    for path in artifact.files:
        entry = {'path': path, 'size': len(artifact.files[path])}
        decoded = artifact.decoded.get(path)
        if decoded is not None:
            entry['status'] = 'ok'
            entry['wrapper'] = decoded.wrapper.label
            entry['metrics'] = decoded.metrics.to_dict()
            entry['missing_hints'] = [{'path': d.path, 'inferred': d.inferred}
                                      for d in decoded.diagnostics]
        else:
            failure = artifact.failures.get(path)
            entry['status'] = 'failed'
            entry['error'] = str(failure.error) if failure else 'not decoded'
        files.append(entry)

    return {
        'world_root': artifact.world_root,
        'files': files,
        'entities': index.counts(),
        'assignments': len(index.assignments()),
    }


def print_report(report: dict, verbose: bool = False) -> None:
    for entry in report['files']:
        print(f"{entry['path']}:")
        print(f"  Size:             {entry['size']:10d} bytes")
        if entry['status'] != 'ok':
            print("  Status:           FAILED")
            print(f"  Error:            {entry['error']}")
            print()
            continue

        metrics = entry['metrics']
        print(f"  Wrapper:          {entry['wrapper']}")
        print("  Status:           OK")
        print(f"  Wrapper decode:   {metrics['wrapper_decode_ms']:10.1f} ms")
        print(f"  Graph parse:      {metrics['graph_parse_ms']:10.1f} ms")
        print(f"  Fallback passes:  {metrics['fallback_pass_count']:10d}")
        print(f"  Hints:            {metrics['hint_count_start']} -> {metrics['hint_count_end']}")
        print(f"  Disabled skips:   {metrics['disabled_path_skips']:10d}")
        for domain, count in sorted(metrics['entity_counts'].items()):
            print(f"    {domain:16s} {count:8d}")
        if verbose:
            for hint in entry['missing_hints']:
                print(f"  Missing hint:     {hint['path']} (inferred {hint['inferred']})")
        print()

    print("Entities:")
    for kind, count in sorted(report['entities'].items()):
        print(f"  {kind:16s} {count:8d}")
    print(f"  {'assignments':16s} {report['assignments']:8d}")


def main():
    parser = argparse.ArgumentParser(
        description='Save Probe - Decode Palworld world saves and report metrics',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python save_probe.py world.zip                    # Every file of a world ZIP
  python save_probe.py ./world/                     # World directory
  python save_probe.py Level.sav -v                 # One file, list missing hints
  python save_probe.py world.zip --json report.json # Also write a JSON report
        """
    )

    parser.add_argument('input', help='World ZIP, world directory or .sav file')
    parser.add_argument('--json', dest='json_output', help='Write the report as JSON to this file')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='List every missing type hint')

    args = parser.parse_args()

    config = load_config()
    configure_logging(config.log_level, config.log_json)

    print("=" * 70)
    print("Save Probe for Palworld")
    print("=" * 70)
    print()
    print(f"Input:            {args.input}")

    hints = HintRegistry.from_config(config)
    raw_codecs = RawCodecRegistry(hints, config.max_fallback_passes)

    try:
        artifact, single = load_artifact(args.input)
    except (OSError, SaveCodecError) as e:
        print(f"ERROR: {e}")
        return 1

    if single:
        path, data = next(iter(artifact.files.items()))
        try:
            artifact.decoded[path] = decode_with_timeout(
                path, data, hints, raw_codecs, config.decode_timeout_s,
                max_passes=config.max_fallback_passes)
        except SaveCodecError as e:
            print(f"ERROR: {e}")
            return 1
    else:
        print(f"World root:       {artifact.world_root or '.'}")
        artifact.decode_all(hints, raw_codecs, max_workers=config.max_workers,
                            timeout_s=config.decode_timeout_s,
                            max_passes=config.max_fallback_passes)
    print(f"Files:            {len(artifact.files)}")
    print()

    report = build_report(artifact)
    print_report(report, args.verbose)

    if args.json_output:
        with open(args.json_output, 'w') as f:
            json.dump(report, f, indent=2)
        print()
        print(f"Report:           {args.json_output}")

    return 1 if artifact.failures else 0


if __name__ == '__main__':
    sys.exit(main())
