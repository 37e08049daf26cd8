import logging
from pharmalink.db import get_db

logger = logging.getLogger(__name__)

STATS_ID = "global"
STAT_FIELDS = ("totalRequests", "totalCustomers", "totalPharmacies", "activeRequests")


class StatsService:
    """Aggregate counters in the ``stats.global`` document. Informational only."""

    def __init__(self, db=None):
        self.db = db if db is not None else get_db()

    async def increment(self, **deltas: int) -> None:
        deltas = {key: value for key, value in deltas.items() if key in STAT_FIELDS and value}
        if not deltas:
            return
        try:
            await self.db["stats"].update_one({"_id": STATS_ID}, {"$inc": deltas}, upsert=True)
        except Exception as e:
            logger.warning(f"Failed to update global stats {deltas}: {e}")

    async def get(self) -> dict:
        doc = await self.db["stats"].find_one({"_id": STATS_ID}) or {}
        return {field: doc.get(field, 0) for field in STAT_FIELDS}
