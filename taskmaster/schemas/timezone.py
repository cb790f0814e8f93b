from pydantic import BaseModel, ConfigDict, Field


class LocalizedDateTime(BaseModel):
    """Display/identity metadata for a UTC instant in a user's timezone."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    local_timezone: str = Field(alias="localTimezone")
    local_date: str = Field(alias="localDate")  # YYYY-MM-DD
    local_time: str = Field(alias="localTime")  # HH:MM
    local_date_time_iso: str = Field(alias="localDateTimeISO")
    local_date_time_display: str = Field(alias="localDateTimeDisplay")
