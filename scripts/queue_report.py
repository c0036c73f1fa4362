"""
Queue report — prints queue statistics straight from the durable store.

Usage:
    python scripts/queue_report.py

Read-only: loads the working set the API process would load on start-up
and prints the statistics.  Matching and maintenance belong to the API
process alone, since it owns the in-memory queue; a second writer would
commit rows that process never sees.
"""

import argparse
import asyncio
import json

from p2p_settlement.queue_engine.store import QueueStore
from p2p_settlement.queue_engine.reporter import build_queue_stats


async def main():
    """Load the queue and print the report."""
    store = QueueStore()
    await store.load()
    try:
        stats = build_queue_stats(store)
        print("\n=== P2P Queue Report ===")
        print(json.dumps(stats, indent=2, default=str))
        print(f"\nPending withdrawals: {stats['pending_withdrawals']}")
        print(f"Pending deposits: {stats['pending_deposits']}")
        print(f"Matches awaiting approval: {stats['pending_matches']}")
        print(f"Success rate ({stats['window_hours']:g}h): {stats['success_rate']}%")
    finally:
        store.close()
        from p2p_settlement.database import engine as db_engine
        await db_engine.dispose()


if __name__ == "__main__":
    argparse.ArgumentParser(description=__doc__.splitlines()[1]).parse_args()
    asyncio.run(main())
