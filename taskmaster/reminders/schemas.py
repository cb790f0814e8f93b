"""
Reminder read model and recurrence expansion schemas
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskmaster.schemas.timezone import LocalizedDateTime
from taskmaster.utils.timezone import to_utc_aware

logger = logging.getLogger(__name__)


class Cadence(str, Enum):
    """Recurrence cadences understood by the expander"""
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"  # stored rule only; fires once at the anchor

    @property
    def is_recurring(self) -> bool:
        return self is not Cadence.NONE


# 0 = Sunday .. 6 = Saturday
Weekday = Annotated[int, Field(ge=0, le=6)]


def _optional_str(v: Any) -> Optional[str]:
    return None if v is None else str(v)


class Recurrence(BaseModel):
    """Recurrence rule of a reminder"""
    model_config = ConfigDict(populate_by_name=True)

    cadence: Cadence = Cadence.NONE
    interval: int = 1  # every N days/weeks/months
    days_of_week: List[Weekday] = Field(default_factory=list, alias="daysOfWeek")
    anchor_date: Optional[datetime] = Field(default=None, alias="anchorDate")
    custom_rule: str = Field(default="", alias="customRule")

    @field_validator("cadence", mode="before")
    @classmethod
    def coerce_cadence(cls, v: Any) -> Cadence:
        if isinstance(v, Cadence):
            return v
        if v is None or str(v).strip() == "":
            return Cadence.NONE
        try:
            return Cadence(str(v).strip().lower())
        except ValueError:
            # Stored data may carry cadences we never learned; keep them as one-shot reminders
            logger.warning('Unsupported recurrence cadence "%s", treating as custom.', v)
            return Cadence.CUSTOM

    @field_validator("interval", mode="before")
    @classmethod
    def default_interval(cls, v: Any) -> Any:
        return 1 if v is None else v

    @field_validator("days_of_week", mode="before")
    @classmethod
    def default_days(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("custom_rule", mode="before")
    @classmethod
    def default_rule(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("anchor_date")
    @classmethod
    def anchor_to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc_aware(v)


class ReminderSnapshot(BaseModel):
    """Read-only view of a reminder document as consumed by expansion and delivery"""
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    user_id: Optional[str] = Field(default=None, alias="user")
    title: str = ""
    description: str = ""
    scheduled_at: Optional[datetime] = Field(default=None, alias="scheduledAt")
    timezone: Optional[str] = None
    recurrence: Recurrence = Field(default_factory=Recurrence)
    is_deleted: bool = Field(default=False, alias="isDeleted")

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def stringify_ids(cls, v: Any) -> Optional[str]:
        return _optional_str(v)

    @field_validator("title", "description", mode="before")
    @classmethod
    def default_text(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("recurrence", mode="before")
    @classmethod
    def default_recurrence(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("scheduled_at")
    @classmethod
    def scheduled_to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc_aware(v)

    @property
    def anchor(self) -> Optional[datetime]:
        return self.recurrence.anchor_date or self.scheduled_at


class Occurrence(BaseModel):
    """One concrete firing of a reminder"""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    occurrence_date: datetime = Field(alias="occurrenceDate")
    local_meta: Optional[LocalizedDateTime] = Field(default=None, alias="localMeta")
