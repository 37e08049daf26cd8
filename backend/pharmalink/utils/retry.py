import asyncio
import logging
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ExecutionTimeout
from pharmalink import config
from pharmalink.errors import TransientStorageError

logger = logging.getLogger(__name__)

# Driver failures that mean "the store did not answer", as opposed to
# "the store answered no".
STORAGE_ERRORS = (ConnectionFailure, ExecutionTimeout)


async def with_retry(operation, description: str = "storage operation", attempts: int = None, base_delay: float = None):
    """Run ``operation`` (a zero-argument coroutine factory) with backoff.

    Only use this for reads and idempotent writes: a write that timed out may
    still have been applied.
    """
    attempts = attempts or config.STORAGE_RETRY_ATTEMPTS
    delay = config.STORAGE_RETRY_BASE_DELAY if base_delay is None else base_delay

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except STORAGE_ERRORS as exc:
            if attempt == attempts:
                logger.error("%s failed after %d attempts: %s", description, attempts, exc)
                raise TransientStorageError() from exc
            logger.warning("%s failed (attempt %d/%d), retrying in %.2fs: %s", description, attempt, attempts, delay, exc)
            await asyncio.sleep(delay)
            delay *= 2


async def insert_once(collection, document: dict, description: str = "insert") -> bool:
    """Insert a document whose ``_id`` is already assigned, retrying safely.

    Returns False when a document with the same ``_id`` already exists, which
    is what an earlier attempt that timed out after writing looks like. Any
    other unique-index violation propagates as DuplicateKeyError.
    """
    async def _insert():
        try:
            await collection.insert_one(document)
            return True
        except DuplicateKeyError:
            existing = await collection.find_one({"_id": document["_id"]}, {"_id": 1})
            if existing is None:
                raise
            return False

    return await with_retry(_insert, description)
