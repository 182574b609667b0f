"""Run one subscription renewal cycle.

Usage:
    python scripts/run_renewals.py
Cron:
    0 0 * * * cd /path/to/apps/api && python scripts/run_renewals.py
"""

import asyncio
import logging
import os
import sys
from datetime import datetime, timezone

# Add parent dir to path to find services
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.renewals import run_renewal_cycle


async def run_renewals_async() -> int:
    print("🔄 Starting subscription renewals...")
    print(f"⏰ Timestamp: {datetime.now(timezone.utc).isoformat()}")

    try:
        result = await run_renewal_cycle()
    except Exception as exc:
        print(f"💥 Fatal error during renewal process: {exc}")
        return 1

    print("✅ Renewal process completed")
    print("📊 Results:")
    print(f"   - Lapsed cancellations expired: {result['expired']}")
    print(f"   - Ended trials expired: {result['trials_expired']}")
    print(f"   - Total processed: {len(result['results'])}")
    print(f"   - Successfully renewed: {result['renewed']}")
    print(f"   - Skipped: {result['skipped']}")
    print(f"   - Failed: {result['failed']}")

    if result["failed"] > 0:
        print("❌ Failed renewals:")
        for row in result["results"]:
            if not row["success"]:
                print(f"   - Subscription {row['subscription_id']}: {row['error']}")
        return 1
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    sys.exit(asyncio.run(run_renewals_async()))
