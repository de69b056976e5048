#!/usr/bin/env python3
"""CLI: Print the measurements of humanoid .glb / .vrm avatars."""

import argparse
import logging
import sys
from pathlib import Path

import yaml

from immersive_scaler.converter import export_scene
from immersive_scaler.measurements import MEASUREMENTS, measure_all
from immersive_scaler.scaler import ScalingParameters, current_parameters
from immersive_scaler.skeleton import Avatar
from rescale_avatar import gather_inputs


def main():
    parser = argparse.ArgumentParser(description="Measure humanoid .glb/.vrm avatars")
    parser.add_argument("input", nargs="+", help="Input .glb/.vrm file(s) or directory")
    parser.add_argument("--params", type=str, default=None,
                        help="YAML file selecting the measurement methods")
    parser.add_argument("--current-params", action="store_true",
                        help="Print the scaling parameters that describe each avatar as YAML")
    parser.add_argument("--visualize", nargs="*", metavar="KEY", default=None,
                        help=f"Write a debug .glb with these measurements "
                             f"({', '.join(MEASUREMENTS)})")
    parser.add_argument("--output-dir", type=str, default="./output",
                        help="Output directory for debug scenes")

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s | %(message)s")

    files = gather_inputs(args.input)
    if not files:
        print("No .glb/.vrm files found.", file=sys.stderr)
        sys.exit(1)

    params = ScalingParameters.from_yaml(args.params) if args.params else ScalingParameters()

    for f in files:
        try:
            avatar = Avatar.load(str(f))
        except (OSError, ValueError) as e:
            print(f"FAIL: {f.name}: {e}", file=sys.stderr)
            continue

        print(f"{f.name}:")
        for key, value in measure_all(avatar, params).items():
            print(f"  {key:<34}{value:>10.4f}")

        if args.current_params:
            current = current_parameters(avatar, params)
            print(yaml.safe_dump(current.to_dict(), sort_keys=False))

        if args.visualize is not None:
            out_path = Path(args.output_dir) / f"{f.stem}_measurements.glb"
            export_scene(avatar, out_path, args.visualize, params)
            print(f"OK: {out_path}")


if __name__ == "__main__":
    main()
