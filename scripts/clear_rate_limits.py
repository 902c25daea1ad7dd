#!/usr/bin/env python3
"""Close open rate limit windows for a client address.

Usage:
    python scripts/clear_rate_limits.py 203.0.113.7
    python scripts/clear_rate_limits.py 203.0.113.7 --class login --class register

Environment Variables:
    REDIS_URL: Redis holding the shared counters (required)
    JWT_SECRET: Signing key, needed because the full runtime is loaded
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def clear_rate_limits(address: str, classes: Optional[List[str]] = None) -> int:
    """Delete counters for ``address``; every configured class when none given."""
    from authgate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if classes:
            unknown = [name for name in classes if name not in runtime.rate_limiter.rules]
            if unknown:
                raise ValueError(f"unknown endpoint class(es): {', '.join(unknown)}")
        return await runtime.rate_limiter.reset(address, classes or None)
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Clear authgate rate limit counters for one client address",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("address", help="Client address as resolved by the service")
    parser.add_argument(
        "--class",
        dest="classes",
        action="append",
        help="Endpoint class to clear (repeatable; default: all)",
    )
    args = parser.parse_args()

    try:
        removed = asyncio.run(clear_rate_limits(args.address, args.classes))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Cleared {removed} rate limit window(s) for {args.address}")


if __name__ == "__main__":
    main()
