from pydantic import BaseModel, ConfigDict, Field, HttpUrl
from typing import List, Literal, Optional


class ToolParams(BaseModel):
    model_config = ConfigDict(extra="ignore")


class NoParams(ToolParams):
    pass


# -----------------------------
# SEARCH / READ
# -----------------------------

class SearchFilters(ToolParams):
    condition: Optional[str] = None
    rarity: Optional[str] = None
    set: Optional[str] = None
    min_price: Optional[float] = Field(None, ge=0)
    max_price: Optional[float] = Field(None, ge=0)


class SearchListingsParams(ToolParams):
    query: str = Field(..., min_length=1)
    filters: Optional[SearchFilters] = None
    limit: int = Field(20, ge=1, le=100)


class GetListingParams(ToolParams):
    listing_id: str


# -----------------------------
# SELLING
# -----------------------------

class CardData(ToolParams):
    name: str = Field(..., min_length=1)
    set: str = Field(..., min_length=1)
    condition: str = Field(..., min_length=1)
    rarity: Optional[str] = None
    card_number: Optional[str] = None


class CreateListingParams(ToolParams):
    card_data: CardData
    price: float = Field(..., ge=0.01)
    description: Optional[str] = None
    images: Optional[List[HttpUrl]] = Field(None, min_length=1, max_length=12)
    trade_enabled: bool = True


class ListingUpdates(ToolParams):
    price: Optional[float] = Field(None, ge=0.01)
    description: Optional[str] = None
    condition: Optional[str] = None
    trade_enabled: Optional[bool] = None
    status: Optional[Literal["active", "inactive", "sold"]] = None
    ai_answer_engines_enabled: Optional[bool] = None


class UpdateListingParams(ToolParams):
    listing_id: str
    updates: ListingUpdates


class ListInventoryParams(ToolParams):
    status: Literal["active", "inactive", "sold", "all"] = "all"
    limit: int = Field(50, ge=1, le=100)


class PriceCardData(ToolParams):
    name: str = Field(..., min_length=1)
    set: str = Field(..., min_length=1)
    condition: str = Field(..., min_length=1)
    card_number: Optional[str] = None


class EvaluatePriceParams(ToolParams):
    card_data: PriceCardData


# -----------------------------
# BUYING / WALLET
# -----------------------------

class ShippingAddress(ToolParams):
    name: str = Field(..., min_length=1)
    line1: str = Field(..., min_length=1)
    line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = "GB"


class PurchaseItemParams(ToolParams):
    listing_id: str
    payment_method: Literal["wallet", "stripe", "split"] = "wallet"
    shipping_address: ShippingAddress
    idempotency_key: Optional[str] = Field(None, max_length=128)


class WalletParams(ToolParams):
    operation: Literal["get_balance", "deposit", "withdraw"] = "get_balance"


class WalletAmountParams(ToolParams):
    amount: float = Field(..., gt=0)
    currency: str = Field("GBP", min_length=3, max_length=3)
