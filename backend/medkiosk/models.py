import uuid
from typing import Annotated, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from . import DEFAULT_KIOSK_ID, DEFAULT_SETTINGS_ID
from .clock import WEEKDAYS, normalize_hhmm, parse_hhmm

REMINDER_TYPES = ("medication", "task", "appointment")
KIOSK_VIEWS = ("idle", "reminder", "completed")

COMPLETED = "completed"
SKIPPED = "skipped"
# missed is derived at query time and snoozed is never written
COMPLETION_STATUSES = (COMPLETED, SKIPPED, "missed", "snoozed")
RECORDABLE_STATUSES = (COMPLETED, SKIPPED)


class CamelModel(BaseModel):
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    def to_doc(self) -> dict:
        return self.model_dump(by_alias=True)


def clean_title(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("title must not be empty")
    return cleaned


def clean_time(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    parse_hhmm(value)
    return normalize_hhmm(value)


def clean_days(values: Optional[List[str]]) -> Optional[List[str]]:
    if values is None:
        return None
    cleaned = {str(v).strip().lower() for v in values}
    unknown = sorted(cleaned - set(WEEKDAYS))
    if unknown:
        raise ValueError(f"unknown day(s): {', '.join(unknown)}")
    if not cleaned:
        raise ValueError("days must contain at least one day")
    return [d for d in WEEKDAYS if d in cleaned]


def clean_type(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip().lower()
    if cleaned not in REMINDER_TYPES:
        raise ValueError(f"type must be one of {', '.join(REMINDER_TYPES)}")
    return cleaned


Title = Annotated[str, AfterValidator(clean_title)]
TimeOfDay = Annotated[str, AfterValidator(clean_time)]
Days = Annotated[List[str], AfterValidator(clean_days)]
ReminderType = Annotated[str, AfterValidator(clean_type)]


class Reminder(CamelModel):
    id: str = Field(default_factory=lambda: f"reminder_{uuid.uuid4().hex[:12]}")
    title: str
    description: str = ""
    time: str
    days: List[str] = Field(default_factory=lambda: list(WEEKDAYS))
    type: str = "medication"
    active: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ReminderCreate(CamelModel):
    title: Title
    description: Optional[str] = ""
    time: TimeOfDay
    type: ReminderType = "medication"
    days: Days = Field(default_factory=lambda: list(WEEKDAYS))
    active: bool = True

    @field_validator("description")
    @classmethod
    def _description(cls, value: Optional[str]) -> str:
        return value or ""


class ReminderUpdate(CamelModel):
    title: Optional[Title] = None
    description: Optional[str] = None
    time: Optional[TimeOfDay] = None
    type: Optional[ReminderType] = None
    days: Optional[Days] = None
    active: Optional[bool] = None

    def changes(self) -> dict:
        """Fields the caller actually sent, without nulls."""
        data = self.model_dump(by_alias=True, exclude_unset=True)
        return {k: v for k, v in data.items() if v is not None}


class Completion(CamelModel):
    id: str = Field(default_factory=lambda: f"completion_{uuid.uuid4().hex[:12]}")
    reminder_id: str
    status: str = COMPLETED
    scheduled_for: str
    scheduled_date: str
    completed_at: str
    notes: str = ""


class KioskState(CamelModel):
    kiosk_id: str = DEFAULT_KIOSK_ID
    current_reminder_id: Optional[str] = None
    current_view: str = "idle"
    last_activity: Optional[str] = None
    connected_at: Optional[str] = None


class KioskSettings(CamelModel):
    settings_id: str = DEFAULT_SETTINGS_ID
    reminder_lead_time: int = Field(0, ge=0, le=120)
    display_only: bool = False
    auto_skip_timeout: int = Field(0, ge=0, le=1440)


class SettingsUpdate(CamelModel):
    reminder_lead_time: Optional[int] = Field(None, ge=0, le=120)
    display_only: Optional[bool] = None
    auto_skip_timeout: Optional[int] = Field(None, ge=0, le=1440)

    def changes(self) -> dict:
        data = self.model_dump(by_alias=True, exclude_unset=True)
        return {k: v for k, v in data.items() if v is not None}


class KioskStateChange(CamelModel):
    current_reminder_id: Optional[str] = None
    current_view: str = "idle"

    @field_validator("current_view")
    @classmethod
    def _view(cls, value: str) -> str:
        cleaned = (value or "").strip().lower()
        if cleaned not in KIOSK_VIEWS:
            raise ValueError(f"currentView must be one of {', '.join(KIOSK_VIEWS)}")
        return cleaned
