"""Generate capacity slots for the upcoming booking horizon."""

import argparse
import asyncio

from washbook.common.db import SessionLocal
from washbook.common.logging import configure_logging
from washbook.services.capacity.service import CapacityService


async def run(days: int | None) -> int:
    return await CapacityService(SessionLocal).populate_upcoming(days)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create missing capacity slots for every active partner.")
    parser.add_argument("--days", type=int, default=None, help="defaults to SLOT_POPULATE_DAYS")
    args = parser.parse_args()
    configure_logging()
    created = asyncio.run(run(args.days))
    print(f"slots_created={created}")
