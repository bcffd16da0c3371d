#!/usr/bin/env python3
"""Compare a probe photo against the reference categories.

This script aligns and embeds the first face of a photo, scans the stored
reference faces and prints every match at or above the threshold, highest
similarity first.

Usage:
    python scripts/compare_face.py --image path/to/probe.jpg
    python scripts/compare_face.py --image probe.jpg --threshold 0.85 --save-dir out/
    python scripts/compare_face.py --image probe.jpg --categories regular user_custom
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import cv2

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from vigil.config import Config
from vigil.logging_config import setup_logging
from vigil.pipeline import FacePipeline

logger = setup_logging(__name__)


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Compare a probe photo against stored reference faces",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--image",
        type=str,
        required=True,
        help="Path to the probe photo",
    )

    parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Match threshold (overrides .env MATCH_THRESH value)",
    )

    parser.add_argument(
        "--categories",
        nargs="+",
        default=None,
        help="Categories to scan (default: all searchable categories)",
    )

    parser.add_argument(
        "--save-dir",
        type=str,
        default=None,
        help="Directory to write the matched reference faces to",
    )

    return parser.parse_args()


def print_section(title: str) -> None:
    """Print a section divider."""
    print()
    print("=" * 70)
    print(f"  {title}")
    print("=" * 70)


def main() -> None:
    """Main function."""
    args = parse_args()

    print_section("Face Comparison - Probe vs Reference Categories")

    image_path = Path(args.image)
    if not image_path.exists():
        logger.error(f"Image file not found: {image_path}")
        print(f"Error: Image file not found: {image_path}")
        return

    config = Config.from_env()
    logger.info(f"Loaded config: data_dir={config.data_dir}, thresh={config.match_threshold}")

    threshold = args.threshold if args.threshold is not None else config.match_threshold

    print(f"Probe image:   {image_path}")
    print(f"Data dir:      {config.data_dir}")
    print(f"Threshold:     {threshold:.2f}")
    print()

    # Step 1: Load models and store
    print_section("Step 1: Loading Models and Reference Store")

    try:
        pipeline = FacePipeline.from_config(config)
    except RuntimeError as e:
        logger.error(str(e))
        print(f"Error: {e}")
        return

    if not pipeline.embedder.available:
        print(f"Warning: embedding model not loaded from {config.model_path}")
        print("Every comparison will report that no face was found.")

    for category in pipeline.store.categories:
        searchable = category in pipeline.store.searchable_categories
        print(
            f"  - {category:12s}: {pipeline.store.count(category):5d} faces"
            f"{'' if searchable else '  (opt-in)'}"
        )

    # Step 2: Compare
    print_section("Step 2: Comparing")

    try:
        result = pipeline.compare_faces(
            image_path, threshold=threshold, categories=args.categories
        )
    except (KeyError, ValueError) as e:
        logger.error(str(e))
        print(f"Error: {e}")
        return

    print(f"Result: {result.message}")

    if not result.found:
        return

    print()
    print(f"  {'#':>3s}  {'Similarity':>10s}  {'Category':12s}  Key")
    for rank, match in enumerate(result.matches, start=1):
        print(f"  {rank:3d}  {match.similarity:10.4f}  {match.category:12s}  {match.key}")

    # Step 3: Save matched faces
    if args.save_dir:
        print_section("Step 3: Saving Matched Faces")

        save_dir = Path(args.save_dir)
        save_dir.mkdir(parents=True, exist_ok=True)

        for rank, match in enumerate(result.matches, start=1):
            out_path = save_dir / f"{rank:03d}_{match.category}_{match.similarity:.3f}.jpg"
            if cv2.imwrite(str(out_path), match.image):
                print(f"Saved: {out_path}")
            else:
                logger.warning(f"Failed to write {out_path}")

    print()
    print("Done!")


if __name__ == "__main__":
    main()
