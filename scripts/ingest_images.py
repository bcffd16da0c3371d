#!/usr/bin/env python3
"""Populate a reference category from local photos or image URLs.

Every photo is aligned, embedded and saved into the category unless a
near-identical face is already stored there. URL lists are plain text files
with one URL per line; blank lines and lines starting with '#' are ignored.

Usage:
    python scripts/ingest_images.py --category regular --dir photos/wanted
    python scripts/ingest_images.py --category retail --urls retail_urls.txt
    python scripts/ingest_images.py --category unsolved --urls urls.txt --ignore-days 7
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from vigil.config import Config
from vigil.ingestion import IngestionService, IngestOutcome, VisitedUrlLedger
from vigil.logging_config import setup_logging
from vigil.pipeline import FacePipeline

logger = setup_logging(__name__)


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Ingest reference photos into a face category",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--category",
        type=str,
        required=True,
        help="Target category (regular, retail, unsolved, user_custom)",
    )

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--dir",
        type=str,
        help="Directory of image files to ingest",
    )
    source.add_argument(
        "--urls",
        type=str,
        help="Text file with one image URL per line",
    )

    parser.add_argument(
        "--ledger",
        type=str,
        default=None,
        help="Visited-URL ledger file (default: <data dir>/visited_urls.json)",
    )

    parser.add_argument(
        "--ignore-days",
        type=float,
        default=14,
        help="Skip URLs visited within this many days",
    )

    return parser.parse_args()


def print_section(title: str) -> None:
    """Print a section divider."""
    print()
    print("=" * 70)
    print(f"  {title}")
    print("=" * 70)


def read_url_file(path: Path) -> list[str]:
    """Read URLs from a text file, skipping blanks and comments."""
    urls = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#"):
                urls.append(line)
    return urls


def main() -> None:
    """Main function."""
    args = parse_args()

    print_section("Reference Ingestion")

    config = Config.from_env()
    logger.info(f"Loaded config: data_dir={config.data_dir}")

    if args.category not in config.category_map:
        print(f"Error: unknown category '{args.category}'")
        print(f"Known categories: {', '.join(config.category_map)}")
        return

    print(f"Category:      {args.category}")
    print(f"Source:        {args.dir or args.urls}")
    print(f"Data dir:      {config.data_dir}")
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
        print(f"Error: embedding model not loaded from {config.model_path}")
        return

    before = pipeline.store.count(args.category)
    print(f"'{args.category}' holds {before} faces")

    # Step 2: Ingest
    print_section("Step 2: Ingesting")

    if args.dir:
        directory = Path(args.dir)
        if not directory.is_dir():
            print(f"Error: directory not found: {directory}")
            return

        service = IngestionService(
            pipeline,
            max_workers=config.download_workers,
            timeout=config.download_timeout,
        )
        report = service.ingest_directory(directory, args.category)
    else:
        url_file = Path(args.urls)
        if not url_file.is_file():
            print(f"Error: URL file not found: {url_file}")
            return

        ledger_path = (
            Path(args.ledger) if args.ledger else config.data_dir / "visited_urls.json"
        )
        ledger = VisitedUrlLedger(ledger_path, ignore_days=args.ignore_days)
        print(f"Ledger:        {ledger_path} ({len(ledger)} URLs known)")

        service = IngestionService(
            pipeline,
            ledger=ledger,
            max_workers=config.download_workers,
            timeout=config.download_timeout,
        )
        report = service.ingest_urls(read_url_file(url_file), args.category)

    # Step 3: Summary
    print_section("Step 3: Summary")

    print(f"Processed:     {report.total}")
    for outcome in IngestOutcome:
        print(f"  - {outcome.value:12s}: {report.count(outcome):5d}")
    if report.skipped:
        print(f"  - {'skipped':12s}: {len(report.skipped):5d}  (visited recently)")
    print(f"'{args.category}' now holds {pipeline.store.count(args.category)} faces")

    print()
    print("Done!")


if __name__ == "__main__":
    main()
