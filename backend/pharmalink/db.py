import logging
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
from pharmalink import config

logger = logging.getLogger(__name__)

# MongoDB Setup
client = None
db = None


def init_db(app=None, database=None):
    """Bind the module-level database handle.

    Passing ``database`` skips client creation; the test suite uses this to
    install an in-memory database.
    """
    global client, db
    if database is not None:
        db = database
    else:
        client = AsyncIOMotorClient(config.MONGODB_URI)
        db = client.get_default_database()
    if app is not None:
        app.state.db = db
    return db


def get_db():
    return db


async def ensure_indexes(database=None):
    """Create every index the services rely on. Safe to run repeatedly."""
    database = database if database is not None else get_db()

    await database["requests"].create_index(
        [("status", ASCENDING), ("location.geohash", ASCENDING)], name="status_geohash_index"
    )
    await database["requests"].create_index(
        [("customerId", ASCENDING), ("createdAt", DESCENDING)], name="customer_recent_index"
    )
    await database["requests"].create_index("expiresAt", name="expiresAt_index")

    # One response per pharmacy per request. The matcher depends on this
    # constraint for its duplicate detection.
    await database["responses"].create_index(
        [("requestId", ASCENDING), ("pharmacyId", ASCENDING)],
        unique=True,
        name="request_pharmacy_unique",
    )
    await database["responses"].create_index(
        [("requestId", ASCENDING), ("respondedAt", ASCENDING)], name="request_respondedAt_index"
    )

    await database["chats"].create_index("requestId", name="requestId_index")
    await database["chats"].create_index("participants.customerId", name="customer_index")
    await database["chats"].create_index("participants.pharmacyId", name="pharmacy_index")

    await database["messages"].create_index(
        [("chatId", ASCENDING), ("seq", ASCENDING)], unique=True, name="chat_seq_unique"
    )
    await database["messages"].create_index(
        [("chatId", ASCENDING), ("createdAt", ASCENDING), ("seq", ASCENDING)],
        name="chat_createdAt_index",
    )

    await database["users"].create_index("role", name="role_index")

    await database["notifications"].create_index(
        [("userId", ASCENDING), ("dedupeKey", ASCENDING)], unique=True, name="user_dedupe_unique"
    )
    await database["notifications"].create_index(
        [("userId", ASCENDING), ("createdAt", DESCENDING)], name="user_recent_index"
    )
    logger.info("MongoDB indexes ensured")
