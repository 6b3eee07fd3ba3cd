#!/usr/bin/env python3
"""Register a tenant client application and print its credentials.

Usage:
    # Using environment variables:
    CLIENT_NAME=acme REDIS_URL=redis://localhost:6379/0 python scripts/bootstrap_client.py

    # Or with command line args:
    python scripts/bootstrap_client.py --name acme

Environment Variables:
    CLIENT_NAME: Display name of the client
    REDIS_URL: Redis connection string (uses the in-memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_client(name: str, dry_run: bool = False) -> dict:
    """Create a client unless one with the same name already exists.

    Returns:
        dict with client_id, name, status ('created', 'exists' or 'dry_run')
        and, when created, the secret
    """
    # Import here to avoid loading config before env vars are set
    from oauthabl.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        existing = [c for c in await runtime.clients.list() if c.name == name]
        if existing:
            print(f"Client {name} already exists (id: {existing[0].id})")
            return {"client_id": existing[0].id, "name": name, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create client: {name}")
            return {"client_id": None, "name": name, "status": "dry_run"}

        client = await runtime.clients.create(name)
        return {
            "client_id": client.id,
            "name": name,
            "status": "created",
            "secret": client.secret,
        }
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Register a tenant client for oauthabl",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("CLIENT_NAME"),
        help="Client name (or set CLIENT_NAME env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.name:
        print("Error: --name or CLIENT_NAME environment variable required")
        sys.exit(1)

    if not os.environ.get("REDIS_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set REDIS_URL for persistence)")

    try:
        result = asyncio.run(bootstrap_client(args.name, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nClient created successfully!")
        print(f"  Name: {result['name']}")
        print(f"  Client ID: {result['client_id']}")
        # Shown once; the tenant sends it as "Authorization: Bearer <secret>"
        print(f"  Secret: {result['secret']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - client already registered.")


if __name__ == "__main__":
    main()
