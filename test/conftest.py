import os

# database.py refuses to import without a URI; config.env reads these at import time
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017/cardmarket_test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("ENABLE_WORKERS", "false")
os.environ.setdefault("ENV", "test")
