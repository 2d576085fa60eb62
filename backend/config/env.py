import os
from dotenv import load_dotenv

load_dotenv()

# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
SITE_URL = os.getenv("SITE_URL", "https://cardmarket.local")
PORT = int(os.getenv("PORT", 8000))

# =====================================================
# DATABASE
# =====================================================
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")

# =====================================================
# JWT
# =====================================================
JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# =====================================================
# SECRETS
# =====================================================
# Shared secret for scheduler-triggered recalculation endpoints
CRON_SECRET = os.getenv("CRON_SECRET")

# =====================================================
# FEES
# =====================================================
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "GBP").upper()

# =====================================================
# WORKERS
# =====================================================
ENABLE_WORKERS = os.getenv("ENABLE_WORKERS", "true").lower() in {"1", "true", "yes"}
RISK_TIER_INTERVAL_HOURS = int(os.getenv("RISK_TIER_INTERVAL_HOURS", 24))
REPUTATION_INTERVAL_HOURS = int(os.getenv("REPUTATION_INTERVAL_HOURS", 24))

# =====================================================
# CORS
# =====================================================
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")


def validate_production_env() -> None:
    if (ENV or "").lower() != "production":
        return

    required = {
        "JWT_SECRET": JWT_SECRET,
        "CRON_SECRET": CRON_SECRET,
        "MONGODB_URI": MONGO_URI,
    }

    invalid = []
    for key, value in required.items():
        val = (value or "").strip()
        if not val or val.startswith("CHANGE_THIS"):
            invalid.append(key)

    if invalid:
        raise RuntimeError(f"Production env misconfigured. Invalid keys: {', '.join(sorted(invalid))}")
