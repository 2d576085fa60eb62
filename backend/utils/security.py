import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from datetime import datetime

from config.env import CRON_SECRET
from utils.jwt import decode_token
from utils.guards import parse_object_id
from database import get_db

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


async def _load_user(token: str):
    payload = decode_token(token)

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    db = get_db()
    user = await db.profiles.find_one({"_id": parse_object_id(user_id, "token subject")})
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )

    await db.profiles.update_one(
        {"_id": user["_id"]},
        {"$set": {"last_active_at": datetime.utcnow()}}
    )

    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
):
    return await _load_user(credentials.credentials)


async def require_cron_or_admin(
    x_cron_secret: Optional[str] = Header(default=None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
):
    """
    Scheduled jobs authenticate with the shared cron secret,
    people with an admin token.
    """
    if x_cron_secret is not None:
        if CRON_SECRET and hmac.compare_digest(x_cron_secret, CRON_SECRET):
            return {"role": "cron"}
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
        )

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
        )

    user = await _load_user(credentials.credentials)
    if user.get("role") != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access only",
        )
    return user
