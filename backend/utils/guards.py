from fastapi import HTTPException
from bson import ObjectId

# -------------------------------
# ObjectId Guard
# -------------------------------

def parse_object_id(value: str, name: str = "id") -> ObjectId:
    try:
        return ObjectId(value)
    except Exception:
        raise HTTPException(status_code=400, detail=f"Invalid {name}")


# -------------------------------
# Ownership Guard
# -------------------------------

def assert_self_or_admin(user: dict, target_id: ObjectId):
    if user.get("role") == "admin":
        return
    if user.get("_id") != target_id:
        raise HTTPException(
            status_code=403,
            detail="You can only recalculate your own profile"
        )
