"""
Database connection - MongoDB async (Motor).
"""

from motor.motor_asyncio import AsyncIOMotorClient

from grader.config import MONGO_URL, DB_NAME

# Async client (used by all app queries). Motor connects lazily on first use.
client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]
