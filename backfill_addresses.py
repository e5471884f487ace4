# Fills trips.start_address / end_address in the background
# Runs apart from the processor so geocoding latency never slows segmentation

import sys
import time
import logging

from config import BACKFILL_LIMIT, GEOCODING_DELAY
from database import get_connection, get_placeholder, init_db
from services.geocoding import reverse_geocode

logger = logging.getLogger(__name__)


def pending_trips(c, limit=BACKFILL_LIMIT):
    """Newest trips with at least one endpoint still missing its address."""
    c.execute(f"""
        SELECT id, start_latitude, start_longitude, start_address,
               end_latitude, end_longitude, end_address
        FROM trips
        WHERE start_address IS NULL OR end_address IS NULL
        ORDER BY started_at DESC, id DESC
        LIMIT {get_placeholder(1)}
    """, (limit,))
    return c.fetchall()


def backfill_addresses(limit=BACKFILL_LIMIT, delay=GEOCODING_DELAY, geocode=reverse_geocode):
    """
    Geocodes missing endpoint addresses, committing trip by trip so an
    interrupted run keeps what it already resolved.

    Returns:
        Number of trips updated.
    """
    conn = get_connection()
    c = conn.cursor()
    ph = get_placeholder(1)

    logger.info("🔍 Looking for trips without addresses...")
    pending = pending_trips(c, limit)
    if not pending:
        logger.info("✅ No trips pending geocoding.")
        conn.close()
        return 0

    logger.info("📦 %d trips to geocode.", len(pending))
    updated = 0

    try:
        for trip_id, s_lat, s_lon, s_addr, e_lat, e_lon, e_addr in pending:
            new_start, new_end = s_addr, e_addr

            if s_addr is None:
                new_start = geocode(s_lat, s_lon)
                # Nominatim usage policy: at most ~1 request per second
                time.sleep(delay)
            if e_addr is None:
                new_end = geocode(e_lat, e_lon)
                time.sleep(delay)

            if (new_start, new_end) == (s_addr, e_addr):
                continue
            c.execute(f"""
                UPDATE trips SET start_address = {ph}, end_address = {ph}
                WHERE id = {ph}
            """, (new_start, new_end, trip_id))
            conn.commit()
            updated += 1
            logger.info("📍 Trip %s: %s -> %s", trip_id, new_start, new_end)
    finally:
        conn.close()

    logger.info("✨ Done. %d trips updated.", updated)
    return updated


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    init_db()
    limit = int(sys.argv[1]) if len(sys.argv) > 1 else BACKFILL_LIMIT
    try:
        backfill_addresses(limit)
    except KeyboardInterrupt:
        logger.info("🛑 Interrupted by user.")
