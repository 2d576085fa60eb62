from pydantic import BaseModel, Field

from models.mcp import ShippingAddress


class AcpCheckoutRequest(BaseModel):
    listing_id: str
    shipping_address: ShippingAddress


class AcpSessionRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
