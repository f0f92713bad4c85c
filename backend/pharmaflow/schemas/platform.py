from typing import Optional
from pydantic import BaseModel, EmailStr, Field


class TenantCreate(BaseModel):
    name: str = Field(min_length=2, max_length=200)
    branchCount: int = Field(1, ge=1, le=50)
    adminEmail: EmailStr
    adminPassword: str = Field(min_length=6, max_length=200)
    primaryDomain: Optional[str] = Field(default=None, max_length=255)
    contactName: str = Field(min_length=1, max_length=200)
    contactEmail: EmailStr
    contactPhone: str = Field(min_length=8, max_length=20)
    subscriptionMonths: int = Field(12, ge=1, le=36)


class TenantUpdate(BaseModel):
    isActive: Optional[bool] = None
    branchLimit: Optional[int] = Field(default=None, ge=1, le=100)


class SubscriptionExtension(BaseModel):
    extensionMonths: int = Field(ge=1, le=48)


class TenantAdminCreate(BaseModel):
    tenantId: str
    email: EmailStr
    password: str = Field(min_length=6, max_length=200)
    fullName: Optional[str] = Field(default=None, max_length=200)


class UserStatusUpdate(BaseModel):
    isActive: bool


class CustomerImportRequest(BaseModel):
    csv: str = Field(min_length=1)
    dryRun: bool = True


class DomainCreate(BaseModel):
    domain: str = Field(min_length=3, max_length=255)
    isPrimary: bool = False


class DomainVerify(BaseModel):
    timeoutMs: Optional[int] = Field(default=None, ge=1000, le=20000)
