#!/usr/bin/env python3
"""
Recompute H3 cell columns for every stored listing.

Run after changing the supported resolutions, or after importing listings
with raw SQL that skipped ListingStore.add_listing.

Usage:
    python scripts/backfill_cells.py
    python scripts/backfill_cells.py --db data/dwelligence.db
"""

import argparse
import logging
import os
import sys

from dotenv import load_dotenv

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import ListingStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    load_dotenv()
    parser = argparse.ArgumentParser(description="Recompute listing cell ids")
    parser.add_argument("--db", default=os.environ.get("DWELLIGENCE_DB_PATH"),
                        help="SQLite path (default: $DWELLIGENCE_DB_PATH)")
    args = parser.parse_args()

    if not args.db:
        parser.error("--db or DWELLIGENCE_DB_PATH is required")

    store = ListingStore(args.db)
    store.init_db()
    updated = store.backfill_cells()
    logger.info("Updated %d listings", updated)


if __name__ == "__main__":
    main()
