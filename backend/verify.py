"""
backend/verify.py

Purpose:
    CLI entrypoint for the bet consistency check. Exits non-zero unless the
    report is HEALTHY.

Dependencies:
    - betmenow.database
    - betmenow.checks.consistency_check
"""

import asyncio
import os
import sys
from pprint import pprint

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from betmenow.checks.consistency_check import BetConsistencyCheck
from betmenow.database import close_db, connect_db


async def main() -> int:
    print("\nBETMENOW CONSISTENCY CHECK")
    print("=" * 50)

    try:
        await connect_db()
        report = await BetConsistencyCheck.run()

        print("\n--- REPORT ---")
        pprint(report, indent=2)
        print("-" * 50)

        if report.get("status") == "HEALTHY":
            print("\nOK: stored bet statuses match their recipients.")
            return 0

        print(f"\nFAILED: status is {report.get('status')}")
        return 1
    except Exception as e:
        print(f"FATAL ERROR: {e}")
        return 1
    finally:
        await close_db()


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
