from typing import Literal, Optional
from pydantic import BaseModel, Field

HEX_COLOR = r"^#[0-9a-fA-F]{6}$"


class BrandingUpdate(BaseModel):
    logoUrl: Optional[str] = Field(default=None, max_length=500)
    brandPrimary: Optional[str] = Field(default=None, pattern=HEX_COLOR)
    brandSecondary: Optional[str] = Field(default=None, pattern=HEX_COLOR)
    brandTertiary: Optional[str] = Field(default=None, pattern=HEX_COLOR)
    defaultTheme: Optional[Literal["LIGHT", "DARK"]] = None


class ExtensionRequest(BaseModel):
    branchLimit: int = Field(ge=1, le=100)
    subscriptionMonths: int = Field(ge=1, le=36)


class ContactInfoUpdate(BaseModel):
    modalHeader: str = Field(min_length=1, max_length=200)
    modalBody: str = Field(min_length=1, max_length=2000)
