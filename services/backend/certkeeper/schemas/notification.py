"""
Pydantic schemas for notification operations.
"""

from typing import Optional, List, Literal
from datetime import datetime
from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter, ValidationError, field_validator, model_validator

_email = TypeAdapter(EmailStr)


class NotificationTestRequest(BaseModel):
    to: EmailStr


class NotificationTestResponse(BaseModel):
    message: str
    sent: bool


class ThresholdSetting(BaseModel):
    days: int = Field(..., gt=0, le=3650)
    enabled: bool = True


class RecipientEntry(BaseModel):
    type: str
    value: str


class RecipientSetting(RecipientEntry):
    """An address, a directory user, or every user holding a role."""
    type: Literal["email", "user", "role"]
    value: str = Field(..., min_length=1, max_length=255)

    @model_validator(mode="after")
    def check_email(self):
        if self.type == "email":
            try:
                _email.validate_python(self.value)
            except ValidationError:
                raise ValueError(f"Invalid email address: {self.value}")
        return self


class NotificationSettingsUpdate(BaseModel):
    """Partial update; omitted fields keep their stored value."""
    enabled: Optional[bool] = None
    thresholds: Optional[List[ThresholdSetting]] = None
    recipients: Optional[List[RecipientSetting]] = None
    schedule_hour: Optional[int] = Field(None, ge=0, le=23)

    @field_validator("thresholds")
    @classmethod
    def unique_threshold_days(cls, v):
        if v is not None:
            days = [t.days for t in v]
            if len(days) != len(set(days)):
                raise ValueError("Threshold days must be unique")
        return v


class NotificationSettingsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    enabled: bool
    thresholds: List[ThresholdSetting]
    recipients: List[RecipientEntry]
    schedule_hour: int
    updated_at: Optional[datetime] = None


class CASyncScheduleResponse(BaseModel):
    name: str
    sync_enabled: bool
    sync_interval_minutes: int
    last_synced_at: Optional[datetime] = None


class SyncSettingsResponse(BaseModel):
    scheduler_running: bool
    last_sync_time: Optional[datetime] = None
    cas: List[CASyncScheduleResponse]
