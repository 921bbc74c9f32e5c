#!/usr/bin/env python3
"""
Fetch axe-core

Downloads the pinned axe-core build into site_audit/static/axe.min.js, where
the accessibility analyzer loads it from. Run once after install and again
when bumping the version.
"""

import argparse
import sys
from pathlib import Path

import httpx

AXE_VERSION = "4.10.2"
CDN_URL = "https://cdn.jsdelivr.net/npm/axe-core@{version}/axe.min.js"
TARGET = Path(__file__).resolve().parent.parent / "site_audit" / "static" / "axe.min.js"


def fetch_axe_core(version: str, target: Path) -> int:
    """Download axe-core and write it to ``target``; returns bytes written"""
    url = CDN_URL.format(version=version)
    response = httpx.get(url, timeout=30.0, follow_redirects=True)
    response.raise_for_status()

    body = response.text
    if "axe" not in body[:2000]:
        raise ValueError(f"Unexpected payload from {url}")

    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(body, encoding="utf-8")
    return len(body)


def main() -> int:
    parser = argparse.ArgumentParser(description="Download the axe-core engine bundle")
    parser.add_argument("--version", default=AXE_VERSION, help="axe-core version to fetch")
    parser.add_argument("--target", type=Path, default=TARGET, help="Where to write axe.min.js")
    args = parser.parse_args()

    try:
        size = fetch_axe_core(args.version, args.target)
    except (httpx.HTTPError, ValueError, OSError) as e:
        print(f"✗ Failed to fetch axe-core {args.version}: {e}", file=sys.stderr)
        return 1

    print(f"✓ axe-core {args.version} written to {args.target} ({size} bytes)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
