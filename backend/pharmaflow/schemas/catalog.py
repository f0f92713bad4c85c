from datetime import date
from decimal import Decimal
from typing import Literal, Optional
from pydantic import BaseModel, Field, model_validator

BatchStatusLiteral = Literal["RELEASED", "QUARANTINE"]


# ---- Products ----
class ProductCreate(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    genericName: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    cost: Optional[Decimal] = Field(default=None, ge=0)
    price: Optional[Decimal] = Field(default=None, ge=0)


class ProductUpdate(BaseModel):
    version: int = Field(ge=1)
    sku: Optional[str] = Field(default=None, min_length=1, max_length=64)
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    genericName: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    cost: Optional[Decimal] = Field(default=None, ge=0)
    price: Optional[Decimal] = Field(default=None, ge=0)
    isActive: Optional[bool] = None


# ---- Batches ----
class InitialStock(BaseModel):
    quantity: Decimal = Field(gt=0)
    toLocationId: Optional[str] = None
    warehouseId: Optional[str] = None

    @model_validator(mode="after")
    def _one_target(self):
        if not self.toLocationId and not self.warehouseId:
            raise ValueError("toLocationId or warehouseId is required")
        return self


class BatchCreate(BaseModel):
    batchNumber: Optional[str] = Field(default=None, max_length=80)
    manufacturingDate: Optional[date] = None
    expiresAt: Optional[date] = None
    status: BatchStatusLiteral = "RELEASED"
    initialStock: Optional[InitialStock] = None


class BatchStatusUpdate(BaseModel):
    status: BatchStatusLiteral
    version: int = Field(ge=1)
