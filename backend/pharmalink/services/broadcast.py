import asyncio
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Set, Union
from pharmalink import config
from pharmalink.db import get_db
from pharmalink.models.location import Location
from pharmalink.models.request import MedicineRequest, NearbyRequest
from pharmalink.services.request_store import RequestStore, coerce_location
from pharmalink.utils.callbacks import invoke_callback
from pharmalink.utils.geohash import distance_km, query_bounds

logger = logging.getLogger(__name__)


class NearbySubscription:
    """A registered live query. Call it (or ``cancel()``) to unsubscribe."""

    def __init__(self, engine: "BroadcastEngine", location: Location, radius_km: float, on_change):
        self.engine = engine
        self.location = location
        self.radius_km = radius_km
        self.on_change = on_change
        self.bounds = query_bounds(location.point, radius_km * 1000)
        self.cancelled = False
        self.last_ids: Optional[List[str]] = None
        # Serialises evaluations so deliveries never overlap or reorder
        self._lock = asyncio.Lock()

    def __call__(self):
        self.cancel()

    def cancel(self):
        if self.cancelled:
            return
        self.cancelled = True
        self.engine.subscriptions.discard(self)

    async def evaluate(self, now: datetime = None) -> bool:
        """Re-run the query and deliver if the matching set changed. Returns True on delivery."""
        async with self._lock:
            if self.cancelled:
                return False
            matches = await self.engine.evaluate(self.location, self.radius_km, self.bounds, now)
            ids = [request.requestId for request in matches]
            if ids == self.last_ids or self.cancelled:
                return False
            self.last_ids = ids
            await invoke_callback(self.on_change, matches)
            return True

    async def refresh(self, now: datetime = None):
        try:
            await self.evaluate(now)
        except Exception as e:
            logger.warning(f"Nearby query at {self.location.geohash} failed: {e}")


class BroadcastEngine:
    """Live "active requests within radius" queries for online pharmacies.

    MongoDB has no change feed we can rely on here, so the engine polls: one
    background loop re-evaluates every subscription every ``interval``
    seconds, and ``poke()``/``refresh()`` trigger an immediate pass after a
    local create or close. Subscribers only hear about a pass when their
    matching set actually changed.
    """

    def __init__(self, interval: float = None, db=None):
        self.interval = interval if interval is not None else config.LIVE_QUERY_INTERVAL_SECONDS
        self._db = db
        self.subscriptions: Set[NearbySubscription] = set()
        self.is_running = False
        self.task = None
        self._wakeup: Optional[asyncio.Event] = None

    def _store(self) -> RequestStore:
        return RequestStore(self._db if self._db is not None else get_db())

    async def evaluate(self, location: Location, radius_km: float, bounds=None, now: datetime = None) -> List[NearbyRequest]:
        """Scan each geohash range, merge by id, then keep only true in-radius hits.

        Result order is newest first, with nearer requests first among equal
        ``createdAt``.
        """
        now = now or datetime.utcnow()
        if bounds is None:
            bounds = query_bounds(location.point, radius_km * 1000)
        store = self._store()

        batches = await asyncio.gather(*(store.find_active_in_range(lower, upper, now) for lower, upper in bounds))

        # Ranges can overlap; dedupe before the distance check.
        candidates = {}
        for batch in batches:
            for request in batch:
                candidates.setdefault(request.requestId, request)

        matches = []
        for request in candidates.values():
            distance = distance_km(location.point, request.location.point)
            if distance <= radius_km:
                matches.append(NearbyRequest(**request.model_dump(), distanceKm=round(distance, 3)))

        matches.sort(key=lambda r: r.distanceKm)
        matches.sort(key=lambda r: r.createdAt, reverse=True)
        return matches

    async def snapshot(self, location: Union[Location, dict], radius_km: float = None, now: datetime = None) -> List[NearbyRequest]:
        location = coerce_location(location)
        return await self.evaluate(location, radius_km or config.BROADCAST_RADIUS_KM, now=now)

    async def subscribe(self, location: Union[Location, dict], radius_km: float = None, on_change=None) -> NearbySubscription:
        """Register a live query and deliver the current matching set before returning."""
        location = coerce_location(location)
        subscription = NearbySubscription(self, location, radius_km or config.BROADCAST_RADIUS_KM, on_change)
        self.subscriptions.add(subscription)
        await subscription.refresh()
        return subscription

    async def refresh(self, now: datetime = None):
        """Re-evaluate every live subscription once."""
        subscriptions = list(self.subscriptions)
        if subscriptions:
            await asyncio.gather(*(subscription.refresh(now) for subscription in subscriptions))

    def poke(self):
        """Ask the poll loop for an early pass. Safe to call when the engine is stopped."""
        if self._wakeup is not None:
            self._wakeup.set()

    async def start(self):
        """Start the broadcast poll loop"""
        if self.is_running:
            return

        self.is_running = True
        self._wakeup = asyncio.Event()
        self.task = asyncio.create_task(self._poll_loop())
        logger.info("Broadcast engine started")

    async def stop(self):
        """Stop the poll loop and drop every subscription"""
        if not self.is_running:
            return

        self.is_running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        self._wakeup = None
        for subscription in list(self.subscriptions):
            subscription.cancel()
        logger.info("Broadcast engine stopped")

    async def _poll_loop(self):
        while self.is_running:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
            try:
                await self.refresh()
            except Exception as e:
                logger.error(f"Error during broadcast refresh: {e}")


class NewRequestDetector:
    """Subscriber-side diff that turns set deliveries into "new request" events.

    Compares against the last delivered set rather than assuming growth, so a
    repeated delivery reports nothing. Ids already reported stay reported
    even if the request drops out of the set and comes back.
    """

    def __init__(self):
        self.last_ids: Set[str] = set()
        self.reported: Set[str] = set()

    def diff(self, requests: Iterable[MedicineRequest]) -> List[MedicineRequest]:
        requests = list(requests)
        fresh = [
            request for request in requests
            if request.requestId not in self.last_ids and request.requestId not in self.reported
        ]
        self.last_ids = {request.requestId for request in requests}
        self.reported.update(request.requestId for request in fresh)
        return fresh


# Global instance
broadcast_engine = BroadcastEngine()


async def start_broadcast_engine():
    """Start the broadcast engine"""
    await broadcast_engine.start()


async def stop_broadcast_engine():
    """Stop the broadcast engine"""
    await broadcast_engine.stop()
