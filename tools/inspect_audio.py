"""CLI helper that reports duration, leading silence and envelope for audio files."""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Sequence

from audio.analysis import describe_audio_file, leading_silence_from_file
from audio.envelope import DISPLAY_ENVELOPE_BUCKETS, MIN_ENVELOPE_BUCKETS

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Inspect audio files the way the engine does before placing clips.",
    )
    parser.add_argument("paths", nargs="+", type=Path, help="Audio files to inspect.")
    parser.add_argument(
        "--buckets",
        type=int,
        default=DISPLAY_ENVELOPE_BUCKETS,
        help="Number of envelope buckets to compute (default: %(default)s).",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print one JSON document per file including the envelope.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    args = parse_args(argv)
    if args.buckets < MIN_ENVELOPE_BUCKETS:
        raise SystemExit(f"--buckets must be at least {MIN_ENVELOPE_BUCKETS}")

    failures = 0
    for raw_path in args.paths:
        path = raw_path.expanduser().resolve()
        description = describe_audio_file(path, bucket_count=args.buckets)
        if description is None:
            logger.error("Could not decode %s", path)
            failures += 1
            continue
        silence = leading_silence_from_file(path)
        if args.json:
            print(
                json.dumps(
                    {
                        "path": str(path),
                        "duration_seconds": round(description.duration_seconds, 6),
                        "sample_rate": description.sample_rate,
                        "channels": description.channels,
                        "leading_silence_seconds": round(silence, 6),
                        "peaks": description.peaks,
                    }
                )
            )
        else:
            print(
                f"{path.name}: {description.duration_seconds:.3f}s | "
                f"{description.sample_rate} Hz x{description.channels} | "
                f"leading silence {silence:.4f}s | "
                f"peak {max(description.peaks, default=0.0):.4f}"
            )
    return 1 if failures else 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
