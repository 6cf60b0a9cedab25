#!/usr/bin/env python3
"""Purge expired OTPs, stale revocations and old failed attempts once.

Usage:
    REDIS_URL=redis://localhost:6379/0 JWT_SECRET=... python scripts/run_cleanup.py

Suitable for a crontab entry; exits non-zero when the store is unreachable.
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main():
    parser = argparse.ArgumentParser(
        description="Run the credential cleanup job once",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the report as JSON",
    )
    args = parser.parse_args()

    from taptab.service.runtime import get_runtime
    from taptab.storage.errors import StoreUnavailableError

    runtime = get_runtime()
    try:
        report = runtime.auth.run_cleanup()
    except StoreUnavailableError as e:
        print(f"Error: {e.message}")
        sys.exit(2)
    finally:
        runtime.close()

    if args.json:
        print(json.dumps(report.as_dict()))
    else:
        print(f"Purged OTPs:            {report.purged_otps}")
        print(f"Purged revocations:     {report.purged_revocations}")
        print(f"Purged failed attempts: {report.purged_failed_attempts}")


if __name__ == "__main__":
    main()
