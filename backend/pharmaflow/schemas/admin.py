from typing import List, Optional
from pydantic import BaseModel, EmailStr, Field


class RoleCreate(BaseModel):
    code: str = Field(min_length=2, max_length=50)
    name: str = Field(min_length=2, max_length=100)
    permissionCodes: List[str] = Field(default_factory=list)


class RolePermissionsUpdate(BaseModel):
    permissionCodes: List[str] = Field(default_factory=list)


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6, max_length=200)
    fullName: Optional[str] = Field(default=None, max_length=200)
    roleIds: List[str] = Field(default_factory=list)
    warehouseId: Optional[str] = None


class UserRolesUpdate(BaseModel):
    roleIds: List[str] = Field(default_factory=list)


class UserWarehouseUpdate(BaseModel):
    warehouseId: Optional[str] = None
