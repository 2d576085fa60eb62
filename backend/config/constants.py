# backend/config/constants.py

# =========================================
# BUYER PROTECTION FEE (BY MEMBERSHIP)
# =========================================

BUYER_FEE_BASE = 0.30                 # flat part, free tier
BUYER_FEE_PERCENT = 5.0               # % of item price, free tier

PRO_FREE_GMV_LIMIT = 1000             # monthly GMV covered by zero buyer fees
PRO_BUYER_FEE_DISCOUNT = 0.5          # 50% off standard fee above the limit

# =========================================
# SELLER COMMISSION (BY RISK TIER)
# =========================================

SELLER_COMMISSION_BY_RISK_TIER = {
    "A": 0.0,
    "B": 3.0,
    "C": 5.0,
}

# =========================================
# PAYOUTS / ADD-ONS
# =========================================

INSTANT_PAYOUT_PERCENT = {
    "free": 2.0,
    "pro": 1.0,
}

PROTECTION_ADDON_FEE = 1.50

# Payment processor cost (ours, not charged to users)
PROCESSING_COSTS = {
    "GBP": {"percent": 1.5, "fixed": 0.20},
    "USD": {"percent": 2.9, "fixed": 0.30},
    "EUR": {"percent": 2.5, "fixed": 0.20},
}

MAX_ITEM_PRICE = 1_000_000
MAX_SHIPPING_COST = 1000

# =========================================
# RISK TIERS
# =========================================

RISK_LOOKBACK_DAYS = 30
RISK_TIER_B_SCORE = 25
RISK_TIER_C_SCORE = 50

# =========================================
# REPUTATION
# =========================================

REPUTATION_BASE_SCORE = 500
REPUTATION_MIN_SCORE = 0
REPUTATION_MAX_SCORE = 1000
ON_TIME_SHIPPING_HOURS = 48

# =========================================
# LISTINGS (AGENT CREATED)
# =========================================

DEFAULT_LISTING_CATEGORY = "Pokémon Singles"
DEFAULT_SHIPPING_COST = 2.99
DEFAULT_DELIVERY_DAYS = 3

# =========================================
# API KEYS
# =========================================

API_KEY_PREFIX = "cm_"
API_KEY_LENGTH = 48
DEFAULT_API_KEY_SCOPES = ["acp_read", "mcp_search"]
DEFAULT_RATE_LIMIT_PER_HOUR = 1000
DEFAULT_RATE_LIMIT_PER_DAY = 10000

API_KEY_SCOPES = {
    "mcp_search",
    "mcp_listing",
    "mcp_purchase",
    "mcp_wallet",
    "acp_read",
    "acp_purchase",
}

# =========================================
# ACP
# =========================================

ACP_SESSION_MINUTES = 30
