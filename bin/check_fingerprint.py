#!/usr/bin/env python3
"""Quick check: download one image URL and print its fingerprint. Run from project root."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

# Ensure project root is on path
root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(root))

import yaml
from imgmirror.connectors.images import HTTPImageFetcher
from imgmirror.errors import MirrorError
from imgmirror.selection.fingerprint import build_fingerprint_engine


def main() -> None:
    if len(sys.argv) != 2:
        print("usage: check_fingerprint.py <image-url>", file=sys.stderr)
        sys.exit(2)

    config_path = root / "config.yaml"
    config = {}
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}

    fetcher = HTTPImageFetcher(config)
    engine = build_fingerprint_engine(config)
    try:
        fetched = asyncio.run(fetcher.fetch(sys.argv[1]))
        fp = engine.fingerprint(fetched.image)
    except MirrorError as e:
        print(f"Failed: {e.message}", file=sys.stderr)
        sys.exit(1)

    print(f"Format: {fetched.format} {fetched.image.size[0]}x{fetched.image.size[1]}")
    print(f"Fingerprint ({engine.name}): {engine.format(fp)}")


if __name__ == "__main__":
    main()
