#!/usr/bin/env python3
"""
Save Patch - Apply a patchset to a Palworld world and export it
===============================================================

Decodes the world, applies every operation of the patchset (all or nothing),
and writes a ZIP in which only the files holding a changed target were
re-encoded. Every other file is copied byte for byte.

Patchset format (JSON):
----------------------
    {
      "operations": [
        {"sequence": 1, "op_type": "set_field", "target_kind": "base_camp",
         "target_id": "<guid>", "payload": {"field": "area_range", "value": 4000.0}},
        {"sequence": 2, "op_type": "set_property", "target_kind": "property",
         "target_id": "Level.sav:worldSaveData.GameTimeSaveData.GameDateTimeTicks",
         "payload": {"value": 123}}
      ]
    }

Usage:
------
    python save_patch.py world.zip patch.json -o patched.zip
    python save_patch.py ./world/ patch.json -o patched.zip --dry-run
"""

import sys
import os
import argparse

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pydantic import ValidationError

from sav_artifact import ImportArtifact
from sav_config import load_config
from sav_errors import PatchError, SaveCodecError
from sav_hints import HintRegistry
from sav_logging import configure_logging
from sav_patch import PatchSet, apply, changed_files, export
from sav_rawdata import RawCodecRegistry


def load_world(input_path: str) -> ImportArtifact:
    if os.path.isdir(input_path):
        return ImportArtifact.from_directory(input_path)
    with open(input_path, 'rb') as f:
        return ImportArtifact.from_zip(f.read())


def main():
    parser = argparse.ArgumentParser(
        description='Save Patch - Apply a JSON patchset to a Palworld world save',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python save_patch.py world.zip patch.json -o patched.zip
  python save_patch.py ./world/ patch.json -o patched.zip
  python save_patch.py world.zip patch.json --dry-run     # Validate only
        """
    )

    parser.add_argument('input', help='World ZIP or world directory')
    parser.add_argument('patchset', help='Patchset JSON file')
    parser.add_argument('-o', '--output', help='Output ZIP')
    parser.add_argument('--dry-run', action='store_true',
                        help='Apply in memory and report, write nothing')

    args = parser.parse_args()
    if not args.dry_run and not args.output:
        parser.error("--output is required unless --dry-run is given")

    config = load_config()
    configure_logging(config.log_level, config.log_json)

    print("=" * 70)
    print("Save Patch for Palworld")
    print("=" * 70)
    print()
    print(f"Input:            {args.input}")
    print(f"Patchset:         {args.patchset}")

    try:
        with open(args.patchset, 'r', encoding='utf-8') as f:
            patchset = PatchSet.model_validate_json(f.read())
    except (OSError, ValidationError) as e:
        print(f"ERROR: invalid patchset: {e}")
        return 1
    print(f"Operations:       {len(patchset.operations)}")

    hints = HintRegistry.from_config(config)
    raw_codecs = RawCodecRegistry(hints, config.max_fallback_passes)

    try:
        artifact = load_world(args.input)
        artifact.decode_all(hints, raw_codecs, max_workers=config.max_workers,
                            timeout_s=config.decode_timeout_s, require_all=True,
                            max_passes=config.max_fallback_passes)
    except (OSError, SaveCodecError) as e:
        print(f"ERROR: decode failed: {e}")
        return 1

    try:
        mutations = apply(artifact, patchset)
    except PatchError as e:
        print(f"ERROR: patchset rejected, nothing applied: {e}")
        return 1

    changed = changed_files(artifact, mutations)
    print(f"Applied:          {len(mutations)} operations")
    print()
    for mutation in mutations:
        target = f"{mutation.target_kind}:{mutation.target_id}"
        if mutation.field:
            target += f".{mutation.field}"
        print(f"  #{mutation.sequence:<4d} {target}")
        print(f"         {mutation.old_value!r} -> {mutation.new_value!r}")
    print()
    print("Changed files:")
    for path in sorted(changed):
        print(f"  {path}")

    if args.dry_run:
        print()
        print("Dry run, nothing written.")
        return 0

    try:
        files = export(artifact, mutations)
    except SaveCodecError as e:
        print(f"ERROR: export failed, nothing written: {e}")
        return 1

    with open(args.output, 'wb') as f:
        f.write(artifact.export_zip(files))
    print()
    print(f"Output:           {args.output} ({len(files)} files)")
    return 0


if __name__ == '__main__':
    sys.exit(main())
