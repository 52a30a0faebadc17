#!/usr/bin/env python3
"""Provision an API token from the command line.

Typically used once to mint the first ``admin:*`` token, which then unlocks
the stats endpoint. The identity service is not consulted; whoever can run
this script against the database is already trusted.

Usage:
    # First admin token against the configured database:
    python scripts/provision_token.py --subject ops-admin --service operator --scope admin:*

    # Short-lived token, several scopes:
    python scripts/provision_token.py --subject svc-billing --service billing \\
        --scope invoices:read --scope invoices:write --ttl 3600

Environment Variables:
    TOKEN_SIGNING_KEY: HMAC key (required in production)
    DATABASE_URL: PostgreSQL connection string (memory store is used if unset)
    REDIS_URL: Redis connection string
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def provision(
    subject_id: str,
    service_name: str,
    scopes: List[str],
    ttl_seconds: Optional[int] = None,
    dry_run: bool = False,
) -> dict:
    """Provision a token through the configured runtime.

    Returns:
        dict with token_id, token (plaintext, only shown once), expires_at and status
    """
    # Import here to avoid loading config before env vars are set
    from tokenwarden.service.runtime import get_runtime
    from tokenwarden.service.scopes import parse_scopes

    canonical = [str(scope) for scope in parse_scopes(scopes)]
    if dry_run:
        print(f"[DRY RUN] Would provision {canonical} for {subject_id} ({service_name})")
        return {"token_id": None, "status": "dry_run", "scope": canonical}

    runtime = get_runtime()
    try:
        result = await runtime.engine.provision(subject_id, canonical, service_name, ttl_seconds)
        await runtime.audit.flush()
    finally:
        await runtime.shutdown()
    return {
        "token_id": result.token_id,
        "token": result.token,
        "scope": result.scope,
        "expires_at": result.expires_at.isoformat(),
        "rate_limit_tier": result.rate_limit.tier,
        "status": "created",
    }


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Provision a tokenwarden API token",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--subject", required=True, help="Subject (identity) id")
    parser.add_argument("--service", required=True, help="Service name bound to the token")
    parser.add_argument(
        "--scope",
        action="append",
        default=[],
        help="Scope as resource:action; repeat for several",
    )
    parser.add_argument("--ttl", type=int, default=None, help="Lifetime in seconds")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.scope:
        print("Error: at least one --scope is required")
        return 1
    if args.ttl is not None and args.ttl <= 0:
        print("Error: --ttl must be a positive number of seconds")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            provision(args.subject, args.service, args.scope, args.ttl, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "created":
        print("\nToken provisioned. It will not be shown again:")
        print(f"  Token ID: {result['token_id']}")
        print(f"  Token:    {result['token']}")
        print(f"  Scope:    {', '.join(result['scope'])}")
        print(f"  Expires:  {result['expires_at']}")
        print(f"  Tier:     {result['rate_limit_tier']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
