#!/usr/bin/env python3
"""
check_api_health.py
-------------------
MediFlow Clinical API Client - Connectivity Check
--------------------------------------------------
Operator script that exercises the client against a running backend:

  Step 1  HEALTH  - probe the server-root /health endpoint
  Step 2  LOGIN   - optional, when --email and --password are given
  Step 3  LIST    - list one page of the chosen entity type through the
                    full interceptor / cache path
  Step 4  CACHE   - list again and confirm the second call was served from
                    the response cache

Exits with code 1 when the backend is unhealthy or any step fails.

Usage:
    python scripts/check_api_health.py [--base-url http://localhost:3001/api]
                                       [--entity Patient] [--limit 5]
                                       [--email admin@example.com --password ...]

Project: MediFlow Clinical API Client
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Optional

# ── Path bootstrap ────────────────────────────────────────────────────────────
_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_REPO_ROOT = os.path.dirname(_SCRIPT_DIR)
sys.path.insert(0, _REPO_ROOT)

from api_client import EnhancedApiClient       # noqa: E402
from api_config import ClientSettings          # noqa: E402
from api_transport import ApiError, ApiTransport  # noqa: E402

# ── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("check_api_health")

_SEPARATOR = "-" * 68


def _fail(reason: str) -> None:
    log.error("FAIL  %s", reason)
    log.info(_SEPARATOR)
    sys.exit(1)


async def run_check(
    base_url: Optional[str],
    entity: str,
    limit: int,
    email: Optional[str],
    password: Optional[str],
) -> None:
    settings = ClientSettings.from_env(os.path.join(_REPO_ROOT, ".env"))
    if base_url:
        settings = settings.model_copy(update={"api_url": base_url.rstrip("/")})

    transport = ApiTransport(settings=settings)
    async with EnhancedApiClient(transport, settings=settings) as client:
        log.info(_SEPARATOR)
        log.info("Target API: %s", transport.base_url)

        # ── Step 1: health ────────────────────────────────────────────────────
        health = await client.health_check()
        log.info(
            "Step 1  HEALTH  status=%s response_time_ms=%s",
            health.status,
            f"{health.response_time_ms:.1f}" if health.response_time_ms is not None else "-",
        )
        if health.status != "healthy":
            _fail(f"Backend reported unhealthy: {health.error or 'no detail'}")

        # ── Step 2: login ─────────────────────────────────────────────────────
        if email and password:
            try:
                user = await transport.login(email, password)
            except ApiError as exc:
                _fail(f"Login failed (HTTP {exc.status_code}): {exc}")
            log.info("Step 2  LOGIN   user=%s", (user.get("user") or {}).get("email", email))
        else:
            log.info("Step 2  LOGIN   skipped (no --email/--password)")

        # ── Step 3: list ──────────────────────────────────────────────────────
        options = {"page": 1, "limit": limit, "retries": 1}
        try:
            records = await client.list(entity, options)
        except ApiError as exc:
            _fail(f"List {entity} failed (HTTP {exc.status_code}): {exc}")
        log.info("Step 3  LIST    %s -> %d record(s)", entity, len(records))

        # ── Step 4: cache ─────────────────────────────────────────────────────
        active_before = client.interceptor.active_count
        cached = await client.list(entity, options)
        if cached != records:
            _fail("Second list returned different data; cache was not used.")
        log.info(
            "Step 4  CACHE   hit (entries=%d, active_requests=%d)",
            len(client.cache),
            active_before,
        )

    log.info(_SEPARATOR)
    log.info("PASS  API client round-trip completed.")
    log.info(_SEPARATOR)


# ── CLI ───────────────────────────────────────────────────────────────────────

def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Check connectivity, authentication and caching against a MediFlow backend.",
    )
    parser.add_argument(
        "--base-url",
        default=None,
        metavar="URL",
        help="API base URL (default: MEDIFLOW_API_URL or http://localhost:3001/api)",
    )
    parser.add_argument("--entity", default="Patient", help="Entity type to list (default: Patient)")
    parser.add_argument("--limit", type=int, default=5, help="Page size for the list call (default: 5)")
    parser.add_argument("--email", default=None, help="Login email (optional)")
    parser.add_argument("--password", default=None, help="Login password (optional)")
    return parser.parse_args()


if __name__ == "__main__":
    args = _parse_args()
    asyncio.run(
        run_check(
            base_url=args.base_url,
            entity=args.entity,
            limit=args.limit,
            email=args.email,
            password=args.password,
        )
    )
