#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging

from app.services import create_services_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Repair request documents whose GitHub facts are stale.")
    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Scan at most N of the most recently updated requests.",
    )
    parser.add_argument("--request-id", default="", help="Sync a single request instead of sweeping.")
    parser.add_argument("--force", action="store_true", help="Sync even when the repair policy says no.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    services = create_services_from_env()
    if args.request_id:
        result = services.reconciler.sync(args.request_id, force=args.force)
        print(json.dumps({"success": True, "sync": result.as_dict()["sync"]}, ensure_ascii=True))
        return 0
    stats = services.reconciler.sync_all(limit=args.limit)
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
