#!/usr/bin/env python3
"""
Delete expired native auth pending results.

Expired rows are already ignored on read and swept on every write; this is for
deployments that want the table emptied on a schedule.

Usage:
    docker compose exec backend python scripts/purge_pending_results.py
"""

import asyncio
import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.database import async_session_maker, engine
from app.services.pending_store import PendingResultStore


async def purge() -> None:
    store = PendingResultStore(session_factory=async_session_maker)
    removed = await store.purge_expired()
    print(f"Removed {removed} expired pending results")
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(purge())
