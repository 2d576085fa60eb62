from motor.motor_asyncio import AsyncIOMotorClient

from config.env import MONGO_URI

if not MONGO_URI:
    raise RuntimeError("MONGODB_URI not set")

client = AsyncIOMotorClient(MONGO_URI)

# Falls back to "cardmarket" when the URI carries no database path
db = client.get_default_database("cardmarket")


def get_db():
    return db
