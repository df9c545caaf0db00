from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class ItemStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    SOLD = "SOLD"
    REMOVED = "REMOVED"


class Item(BaseModel):
    id: str
    owner_id: str
    campus_id: Optional[str] = None
    title: str
    description: str = ""
    category: Optional[str] = None
    price: int = Field(..., gt=0)
    status: ItemStatus = ItemStatus.AVAILABLE
    reserved_by: Optional[str] = None
    reserved_until: Optional[datetime] = None
    buyer_id: Optional[str] = None
    sold_at: Optional[datetime] = None
    sold_price: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    removed_at: Optional[datetime] = None
    removed_by: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def is_held_by_other(self, account_id: str, now: datetime) -> bool:
        return (
            self.status == ItemStatus.RESERVED
            and self.reserved_by is not None
            and self.reserved_by != account_id
            and self.reserved_until is not None
            and self.reserved_until > now
        )


class CreateItemRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    price: int = Field(..., gt=0)
    description: str = ""
    category: Optional[str] = None
    campus_id: Optional[str] = Field(default=None, alias="campusId")

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={
        "example": {
            "title": "Engineering Drawing kit",
            "price": 120,
            "category": "stationery",
            "campusId": "vitap",
        }
    })


class UpdateItemRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    price: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = None
    category: Optional[str] = None


class PurchaseRequest(BaseModel):
    item_id: str = Field(..., alias="itemId", min_length=1)
    idempotency_key: Optional[str] = Field(default=None, alias="idempotencyKey")

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={
        "example": {"itemId": "3f0c2a9e-...", "idempotencyKey": "buy-3f0c2a9e-1700000000"}
    })


class ReserveRequest(BaseModel):
    item_id: str = Field(..., alias="itemId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class PurchaseResult(BaseModel):
    transaction_id: str = Field(..., serialization_alias="transactionId")
    item_id: str = Field(..., serialization_alias="itemId")
    price: int
    platform_fee: int = Field(..., serialization_alias="platformFee")
    seller_amount: int = Field(..., serialization_alias="sellerAmount")
    replayed: bool = False


class ReservationResponse(BaseModel):
    item_id: str = Field(..., serialization_alias="itemId")
    reserved_until: datetime = Field(..., serialization_alias="reservedUntil")
