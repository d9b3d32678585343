"""
Run the daily AI provider health sweep.

Usage:
  python scripts/check_providers.py
  python scripts/check_providers.py --tenant-id t1 --provider-id p1
"""

from __future__ import annotations

import argparse
import json
import sys

from zyria import providers
from zyria.ingestion_worker import run_provider_sweep


def main() -> None:
    parser = argparse.ArgumentParser(description="Health-check configured AI providers.")
    parser.add_argument("--tenant-id", help="Only check providers visible to this tenant.")
    parser.add_argument("--provider-id", help="Check a single provider instead of sweeping.")
    parser.add_argument("--fail-on-unhealthy", action="store_true", help="Exit 2 if any provider is unhealthy.")
    args = parser.parse_args()

    if args.provider_id:
        result = providers.run_health_check(args.provider_id)
        unhealthy = 0 if result["healthy"] else 1
    else:
        result = run_provider_sweep(tenant_id=args.tenant_id)
        unhealthy = result["unhealthy"]
    print(json.dumps(result, ensure_ascii=False, indent=2))
    if args.fail_on_unhealthy and unhealthy:
        sys.exit(2)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(1)
