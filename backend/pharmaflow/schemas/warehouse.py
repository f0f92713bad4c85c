from typing import Optional
from pydantic import BaseModel, Field


class WarehouseCreate(BaseModel):
    code: str = Field(min_length=1, max_length=32)
    name: str = Field(min_length=1, max_length=200)
    city: Optional[str] = Field(default=None, max_length=120)


class WarehouseUpdate(BaseModel):
    version: int = Field(ge=1)
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    city: Optional[str] = Field(default=None, max_length=120)
