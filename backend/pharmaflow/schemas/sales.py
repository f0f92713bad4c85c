from datetime import date
from decimal import Decimal
from typing import List, Literal, Optional
from pydantic import BaseModel, EmailStr, Field, field_validator

PAYMENT_MODE = r"^(CASH|CREDIT_\d{1,3})$"


# ---- Customers ----
class CustomerBase(BaseModel):
    businessName: Optional[str] = Field(default=None, max_length=200)
    nit: Optional[str] = Field(default=None, max_length=40)
    contactName: Optional[str] = Field(default=None, max_length=200)
    contactBirthDay: Optional[int] = Field(default=None, ge=1, le=31)
    contactBirthMonth: Optional[int] = Field(default=None, ge=1, le=12)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=40)
    address: Optional[str] = Field(default=None, max_length=300)
    city: Optional[str] = Field(default=None, max_length=120)
    zone: Optional[str] = Field(default=None, max_length=120)
    mapsUrl: Optional[str] = Field(default=None, max_length=500)
    creditEnabled: Optional[bool] = None
    creditDays: Optional[int] = Field(default=None, ge=1, le=365)

    @field_validator("email", mode="before")
    @classmethod
    def _blank_email(cls, v):
        return None if isinstance(v, str) and not v.strip() else v


class CustomerCreate(CustomerBase):
    name: str = Field(min_length=1, max_length=200)


class CustomerUpdate(CustomerBase):
    version: int = Field(ge=1)
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    isActive: Optional[bool] = None


# ---- Quotes ----
class QuoteLineIn(BaseModel):
    productId: str
    quantity: Decimal = Field(gt=0)
    unitPrice: Optional[Decimal] = Field(default=None, ge=0)
    discountPct: Optional[Decimal] = None


class QuoteIn(BaseModel):
    customerId: str
    validityDays: int = Field(7, ge=1, le=365)
    paymentMode: str = Field("CASH", pattern=PAYMENT_MODE)
    deliveryDays: int = Field(1, ge=0, le=365)
    globalDiscountPct: Decimal = Decimal("0")
    proposalValue: Optional[str] = Field(default=None, max_length=200)
    note: Optional[str] = Field(default=None, max_length=1000)
    deliveryAddress: Optional[str] = Field(default=None, max_length=300)
    deliveryCity: Optional[str] = Field(default=None, max_length=120)
    deliveryZone: Optional[str] = Field(default=None, max_length=120)
    deliveryMapsUrl: Optional[str] = Field(default=None, max_length=500)
    lines: List[QuoteLineIn] = Field(min_length=1, max_length=200)


# ---- Orders ----
class OrderLineIn(BaseModel):
    productId: str
    batchId: Optional[str] = None
    quantity: Decimal = Field(gt=0)
    unitPrice: Optional[Decimal] = Field(default=None, ge=0)


class OrderCreate(BaseModel):
    customerId: str
    note: Optional[str] = Field(default=None, max_length=1000)
    paymentMode: Optional[str] = Field(default=None, pattern=PAYMENT_MODE)
    deliveryDate: Optional[date] = None
    lines: List[OrderLineIn] = Field(default_factory=list, max_length=200)


class VersionBody(BaseModel):
    version: int = Field(ge=1)


class FulfillBody(VersionBody):
    fromLocationId: str
    note: Optional[str] = Field(default=None, max_length=500)


class DeliverBody(VersionBody):
    note: Optional[str] = Field(default=None, max_length=500)


DeliveryStatusLiteral = Literal["PENDING", "DELIVERED", "ALL"]
PaymentStatusLiteral = Literal["DUE", "PAID", "ALL"]
