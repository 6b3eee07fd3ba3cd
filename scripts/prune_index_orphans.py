#!/usr/bin/env python3
"""Remove username/email index entries that point at deleted or never-written users.

A registration or deletion interrupted by a store failure can leave such
entries behind. They are harmless to lookups, which treat them as absent, but
they block the identifier from being registered again until pruned.

Usage:
    python scripts/prune_index_orphans.py --client-id <clientId> [--client-id ...]
    python scripts/prune_index_orphans.py --all
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def prune(client_ids: List[str], all_clients: bool) -> dict:
    from oauthabl.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if all_clients:
            client_ids = [client.id for client in await runtime.clients.list()]
        return {
            client_id: await runtime.indexes.prune_orphans(client_id)
            for client_id in client_ids
        }
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Prune orphaned lookup index entries",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--client-id", action="append", default=[], dest="client_ids")
    parser.add_argument("--all", action="store_true", help="Prune every registered client")
    args = parser.parse_args()

    if not args.client_ids and not args.all:
        print("Error: --client-id or --all required")
        sys.exit(1)

    try:
        pruned = asyncio.run(prune(args.client_ids, args.all))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    for client_id, count in pruned.items():
        print(f"{client_id}: {count} orphaned index entries removed")


if __name__ == "__main__":
    main()
