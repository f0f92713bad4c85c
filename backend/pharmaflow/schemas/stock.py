from decimal import Decimal
from typing import List, Literal, Optional
from pydantic import BaseModel, Field

MovementTypeLiteral = Literal["IN", "OUT", "TRANSFER", "ADJUSTMENT"]


class MovementCreate(BaseModel):
    type: MovementTypeLiteral
    productId: str
    batchId: Optional[str] = None
    fromLocationId: Optional[str] = None
    toLocationId: Optional[str] = None
    quantity: Decimal = Field(gt=0)
    referenceType: Optional[str] = Field(default=None, max_length=50)
    referenceId: Optional[str] = Field(default=None, max_length=80)
    note: Optional[str] = Field(default=None, max_length=500)


class BulkTransferItem(BaseModel):
    productId: str
    batchId: Optional[str] = None
    quantity: Decimal = Field(gt=0)
    fromLocationId: Optional[str] = None
    toLocationId: Optional[str] = None
    note: Optional[str] = Field(default=None, max_length=500)


class BulkTransferCreate(BaseModel):
    fromLocationId: str
    toLocationId: str
    fromWarehouseId: Optional[str] = None
    toWarehouseId: Optional[str] = None
    note: Optional[str] = Field(default=None, max_length=500)
    items: List[BulkTransferItem] = Field(min_length=1, max_length=200)


# ---- Movement requests ----
class RequestItemIn(BaseModel):
    productId: str
    quantity: Decimal = Field(gt=0)


class MovementRequestCreate(BaseModel):
    warehouseId: str
    requestedByName: str = Field(min_length=1, max_length=200)
    quoteId: Optional[str] = None
    note: Optional[str] = Field(default=None, max_length=500)
    items: List[RequestItemIn] = Field(min_length=1, max_length=200)


class FulfillLine(BaseModel):
    productId: str
    batchId: Optional[str] = None
    quantity: Decimal = Field(gt=0)


class BulkFulfillRequest(BaseModel):
    requestIds: List[str] = Field(min_length=1, max_length=100)
    fromLocationId: str
    toLocationId: str
    note: Optional[str] = Field(default=None, max_length=500)
    lines: List[FulfillLine] = Field(min_length=1, max_length=200)


class RequestConfirm(BaseModel):
    action: Literal["ACCEPT", "REJECT"]
    note: Optional[str] = Field(default=None, max_length=500)


# ---- Returns ----
class ReturnItemIn(BaseModel):
    productId: str
    batchId: Optional[str] = None
    quantity: Decimal = Field(gt=0)
    note: Optional[str] = Field(default=None, max_length=500)


class ReturnCreate(BaseModel):
    toLocationId: str
    reason: str = Field(min_length=1, max_length=500)
    sourceType: Optional[str] = Field(default=None, max_length=50)
    sourceId: Optional[str] = Field(default=None, max_length=80)
    note: Optional[str] = Field(default=None, max_length=500)
    items: List[ReturnItemIn] = Field(min_length=1, max_length=200)
