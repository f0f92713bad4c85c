from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, EmailStr, Field, model_validator

FrequencyLiteral = Literal["DAILY", "WEEKLY", "MONTHLY"]


class ReportEmail(BaseModel):
    to: List[EmailStr] = Field(min_length=1, max_length=20)
    subject: str = Field(min_length=1, max_length=200)
    filename: str = Field(min_length=1, max_length=200)
    pdfBase64: str = Field(min_length=1)
    message: Optional[str] = Field(default=None, max_length=2000)


class ScheduleCreate(BaseModel):
    type: Literal["SALES", "STOCK"]
    reportKey: str = Field(min_length=1, max_length=80)
    params: Optional[Dict[str, Any]] = None
    frequency: FrequencyLiteral
    hour: int = Field(8, ge=0, le=23)
    minute: int = Field(0, ge=0, le=59)
    dayOfWeek: Optional[int] = Field(default=None, ge=0, le=6)
    dayOfMonth: Optional[int] = Field(default=None, ge=1, le=31)
    recipients: List[EmailStr] = Field(min_length=1, max_length=20)
    enabled: bool = True


class ScheduleUpdate(BaseModel):
    version: int = Field(ge=1)
    reportKey: Optional[str] = Field(default=None, min_length=1, max_length=80)
    params: Optional[Dict[str, Any]] = None
    frequency: Optional[FrequencyLiteral] = None
    hour: Optional[int] = Field(default=None, ge=0, le=23)
    minute: Optional[int] = Field(default=None, ge=0, le=59)
    dayOfWeek: Optional[int] = Field(default=None, ge=0, le=6)
    dayOfMonth: Optional[int] = Field(default=None, ge=1, le=31)
    recipients: Optional[List[EmailStr]] = Field(default=None, min_length=1, max_length=20)
    enabled: Optional[bool] = None

    @model_validator(mode="after")
    def _no_null_required(self):
        for key in ("reportKey", "frequency", "hour", "minute", "recipients", "enabled"):
            if key in self.model_fields_set and getattr(self, key) is None:
                raise ValueError(f"{key} cannot be null")
        return self
