#!/usr/bin/env python3
"""CLI: Rescale humanoid .glb / .vrm avatars to target in-VR proportions."""

import argparse
import logging
import sys
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import fields, replace
from pathlib import Path

from immersive_scaler.converter import preview, rescale
from immersive_scaler.scaler import ScalingParameters
from immersive_scaler.skeleton import Avatar

AVATAR_SUFFIXES = (".glb", ".vrm")


def gather_inputs(paths):
    """Resolve input paths to a list of avatar files."""
    files = []
    for p in paths:
        p = Path(p)
        if p.is_file() and p.suffix.lower() in AVATAR_SUFFIXES:
            files.append(p)
        elif p.is_dir():
            files.extend(sorted(f for f in p.iterdir() if f.suffix.lower() in AVATAR_SUFFIXES))
        else:
            print(f"Warning: skipping {p} (not a .glb/.vrm file or directory)", file=sys.stderr)
    return files


def add_parameter_flags(parser):
    """One flag per ScalingParameters field; unset flags keep the file/default value."""
    group = parser.add_argument_group("scaling parameters")
    for f in fields(ScalingParameters):
        flag = "--" + f.name.replace("_", "-")
        if f.type is bool:
            group.add_argument(flag, action=argparse.BooleanOptionalAction, default=None)
        elif f.type is str:
            group.add_argument(flag, type=str, default=None)
        else:
            group.add_argument(flag, type=float, default=None)


def build_parameters(args) -> ScalingParameters:
    params = ScalingParameters.from_yaml(args.params) if args.params else ScalingParameters()
    overrides = {f.name: getattr(args, f.name) for f in fields(ScalingParameters)
                 if getattr(args, f.name) is not None}
    params = replace(params, **overrides)
    params.validate()
    return params


def rescale_one(args):
    """Wrapper for ProcessPoolExecutor."""
    in_path, out_path, params = args
    try:
        rescale(in_path, out_path, params)
        return str(in_path), None
    except Exception as e:
        return str(in_path), str(e)


def print_preview(path, params):
    before, after = preview(Avatar.load(str(path)), params)
    print(f"{path.name}:")
    print(f"  {'measurement':<34}{'before':>10}{'after':>10}")
    for key, value in before.items():
        print(f"  {key:<34}{value:>10.4f}{after[key]:>10.4f}")


def main():
    parser = argparse.ArgumentParser(
        description="Rescale humanoid .glb/.vrm avatars to target height and proportions"
    )
    parser.add_argument("input", nargs="+", help="Input .glb/.vrm file(s) or directory")
    parser.add_argument("--params", type=str, default=None,
                        help="YAML file with scaling parameters")
    parser.add_argument("--output-dir", type=str, default="./output",
                        help="Output directory for rescaled avatars")
    parser.add_argument("--workers", type=int, default=1,
                        help="Number of parallel workers (default: 1)")
    parser.add_argument("--overwrite", action="store_true",
                        help="Overwrite existing output files")
    parser.add_argument("--dry-run", action="store_true",
                        help="Print before/after measurements without writing anything")
    add_parameter_flags(parser)

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s | %(message)s")

    files = gather_inputs(args.input)
    if not files:
        print("No .glb/.vrm files found.", file=sys.stderr)
        sys.exit(1)

    params = build_parameters(args)

    if args.dry_run:
        failed = []
        for f in files:
            try:
                print_preview(f, params)
            except (OSError, ValueError) as e:
                failed.append(f)
                print(f"FAIL: {f.name}: {e}", file=sys.stderr)
        if failed:
            sys.exit(1)
        return

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    tasks = []
    for f in files:
        out_path = output_dir / f.name
        if out_path.exists() and not args.overwrite:
            print(f"Skipping {f.name} (exists, use --overwrite)")
            continue
        tasks.append((str(f), str(out_path), params))

    if not tasks:
        print("Nothing to do.")
        return

    print(f"Rescaling {len(tasks)} file(s) with {args.workers} worker(s)...")

    failed = []

    def _report(name, err):
        if err:
            failed.append(name)
            print(f"FAIL: {Path(name).name}: {err}", file=sys.stderr)
        else:
            print(f"OK: {Path(name).name}")

    if args.workers <= 1:
        for task in tasks:
            _report(*rescale_one(task))
    else:
        with ProcessPoolExecutor(max_workers=args.workers) as pool:
            futures = {pool.submit(rescale_one, t): t for t in tasks}
            for future in as_completed(futures):
                _report(*future.result())

    print("Done.")
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
