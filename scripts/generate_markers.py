#!/usr/bin/env python3
"""Write printable ArUco markers as PNG files.

Print them at the physical size given by marker_length_m in the pipeline
config, otherwise the estimated distances are off by the same factor.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import cv2

from marker_pipeline.errors import DetectorInitError
from marker_pipeline.synthetic import create_marker_image


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate printable ArUco markers")
    parser.add_argument(
        "--output-dir",
        type=str,
        default="markers",
        help="Output directory (default: markers)"
    )
    parser.add_argument(
        "--marker-ids",
        type=int,
        nargs="+",
        required=True,
        help="Marker IDs to generate (e.g., 0 1 2 3)"
    )
    parser.add_argument("--dict", type=str, default="4x4_50", help="ArUco dictionary (default: 4x4_50)")
    parser.add_argument("--size", type=int, default=400, help="Marker size in pixels (default: 400)")
    parser.add_argument("--border-bits", type=int, default=1)
    parser.add_argument(
        "--margin",
        type=int,
        default=40,
        help="White quiet zone around the marker in pixels (default: 40)"
    )

    args = parser.parse_args()

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    for marker_id in args.marker_ids:
        try:
            img = create_marker_image(marker_id, args.dict, args.size, args.border_bits)
        except DetectorInitError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        if args.margin > 0:
            m = args.margin
            img = cv2.copyMakeBorder(img, m, m, m, m, cv2.BORDER_CONSTANT, value=255)

        output_path = output_dir / f"{args.dict}_id{marker_id}.png"
        cv2.imwrite(str(output_path), img)
        print(f"Created marker: {output_path}")

    print(f"Generated {len(args.marker_ids)} markers in {output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
