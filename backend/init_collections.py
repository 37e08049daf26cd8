#!/usr/bin/env python3
"""
Initialize MongoDB indexes and the stats singleton for PharmaLink
"""
import asyncio
from dotenv import load_dotenv
load_dotenv()

from pymongo.errors import PyMongoError
from pharmalink.db import init_db, ensure_indexes
from pharmalink.services.stats_service import STATS_ID, STAT_FIELDS


async def init_collections():
    db = init_db()

    print(f"🔧 Initializing MongoDB collections in '{db.name}'...")

    try:
        await ensure_indexes(db)
        print("✅ Created indexes for requests, responses, chats, messages, users and notifications")
    except PyMongoError as e:
        print(f"❌ Error creating indexes: {e}")
        raise

    # Seed the stats singleton so dashboards never see a missing document
    result = await db["stats"].update_one(
        {"_id": STATS_ID},
        {"$setOnInsert": {field: 0 for field in STAT_FIELDS}},
        upsert=True,
    )
    if result.upserted_id is not None:
        print("✅ Created stats document")
    else:
        print("ℹ️  stats document already exists")

    for name in ("requests", "responses", "chats", "messages", "notifications"):
        indexes = await db[name].index_information()
        print(f"📋 {name}: {', '.join(sorted(indexes))}")

    print("🎉 Database initialization completed!")


if __name__ == "__main__":
    asyncio.run(init_collections())
