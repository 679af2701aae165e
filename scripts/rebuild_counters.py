#!/usr/bin/env python3
"""
Counter reconciliation and counter-store rebuild.

  reconcile — recompute every post's and user's denormalized counters in the
              record store from Like / Follow / Share / Comment rows
  rebuild   — reload the counter store (likers, follow sets, stats hashes,
              feed scopes) from the record store after a cache loss

Run this:
  • reconcile: periodically (cron) to close gaps left by failed enqueues
  • rebuild:   after Redis lost its data; stop the API and let the sync
               workers drain their topics first, or in-flight jobs will be
               re-applied on top of the rebuilt counters

  python scripts/rebuild_counters.py reconcile
  python scripts/rebuild_counters.py rebuild
  python scripts/rebuild_counters.py all
"""
import argparse
import asyncio
import logging
import sys

from feedledger.config import Settings
from feedledger.container import build_ledger

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger("rebuild_counters")


async def run(action: str, settings: Settings) -> int:
    ledger = build_ledger(settings)
    await ledger.start(create_tables=False)
    try:
        if action in ("reconcile", "all"):
            report = await ledger.reconcile.reconcile_all()
            print(
                f"Reconciled {report['posts']} posts ({report['posts_fixed']} fixed), "
                f"{report['users']} users ({report['users_fixed']} fixed)"
            )
        if action in ("rebuild", "all"):
            report = await ledger.reconcile.rebuild_counter_store()
            print(f"Rebuilt counter store for {report['posts']} posts and {report['users']} users")
    except Exception as exc:
        logger.error("%s failed: %s", action, exc)
        return 1
    finally:
        await ledger.stop()
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reconcile counters and rebuild the counter store")
    parser.add_argument("action", choices=["reconcile", "rebuild", "all"])
    args = parser.parse_args()
    sys.exit(asyncio.run(run(args.action, Settings())))
