"""
Schemas for the Pill Reminder Tracker

The stored models (Medication, TakenEntry, TemporaryReschedule) are kept lenient
so that records written by older versions still load; the *Create/*Update models
carry the validation rules applied to user input.
"""
from datetime import date
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Dict, List, Literal, Optional

TIME_PATTERN = r"^([01]\d|2[0-3]):([0-5]\d)$"
DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"
COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"

DosageUnit = Literal["pill", "ml", "mg", "g", "drop", "puff", "patch", "unit", "custom"]
FrequencyType = Literal["daily", "cyclical", "custom_weekly"]

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class Intake(BaseModel):
    """A single dose at a time of day."""
    time: str = Field(..., pattern=TIME_PATTERN, description="Time of day in HH:MM 24h format")
    dosage: float = Field(..., gt=0, description="Dosage amount, e.g. 1 or 0.5")
    unit: DosageUnit = Field(..., description="Dosage unit")
    custom_unit: Optional[str] = Field(None, description="Unit label, required when unit is 'custom'")

    @model_validator(mode="after")
    def custom_unit_required(self):
        if self.unit == "custom" and not (self.custom_unit and self.custom_unit.strip()):
            raise ValueError("Custom unit description is required")
        return self

    @property
    def unit_label(self) -> str:
        return self.custom_unit if self.unit == "custom" and self.custom_unit else self.unit


class CyclicalDay(BaseModel):
    day: int = Field(..., ge=1, description="1-indexed day within the cycle")
    intakes: List[Intake] = Field(default_factory=list)


class CustomWeeklyDosages(BaseModel):
    monday: Optional[List[Intake]] = None
    tuesday: Optional[List[Intake]] = None
    wednesday: Optional[List[Intake]] = None
    thursday: Optional[List[Intake]] = None
    friday: Optional[List[Intake]] = None
    saturday: Optional[List[Intake]] = None
    sunday: Optional[List[Intake]] = None

    def for_weekday(self, name: str) -> List[Intake]:
        return getattr(self, name.lower(), None) or []


class MedicationBase(BaseModel):
    name: str = Field(..., description="Medication name")
    color: str = Field("#4ECDC4", description="Display color as a hex string")
    icon: Optional[str] = Field(None, description="Icon name")
    frequency_type: FrequencyType = Field("daily", description="Which recurrence rule applies")
    daily_intakes: Optional[List[Intake]] = None
    cyclical_pattern: Optional[List[CyclicalDay]] = None
    cycle_length: Optional[int] = Field(None, description="Cycle length in days")
    cycle_start_date: Optional[str] = Field(None, description="ISO date the cycle starts on")
    custom_weekly_dosages: Optional[CustomWeeklyDosages] = None
    notes: Optional[str] = Field("", description="Additional notes")


class Medication(MedicationBase):
    """A medication and its recurrence rule.
    Record: medications
    """
    id: str
    created_at: str
    updated_at: str


class MedicationCreate(MedicationBase):
    name: str = Field(..., min_length=2, max_length=100, description="Medication name")
    color: str = Field("#4ECDC4", pattern=COLOR_PATTERN, description="Display color as a hex string")
    notes: Optional[str] = Field("", max_length=500, description="Additional notes")

    @field_validator("cyclical_pattern")
    @classmethod
    def cycle_days_have_intakes(cls, v):
        if v is not None and any(not d.intakes for d in v):
            raise ValueError("At least one intake is required for a cycle day")
        return v

    @field_validator("cycle_start_date")
    @classmethod
    def start_date_is_iso(cls, v):
        if v:
            try:
                date.fromisoformat(v[:10])
            except ValueError:
                raise ValueError("Invalid date format")
        return v

    @model_validator(mode="after")
    def rule_is_complete(self):
        if self.frequency_type == "daily" and not self.daily_intakes:
            raise ValueError("At least one daily intake is required for 'Daily' frequency.")
        if self.frequency_type == "cyclical" and not (
            self.cyclical_pattern and self.cycle_length and self.cycle_length > 0 and self.cycle_start_date
        ):
            raise ValueError("Cyclical pattern, cycle length, and start date are required for 'Cyclical' frequency.")
        if self.frequency_type == "custom_weekly":
            weekly = self.custom_weekly_dosages
            if weekly is None or not any(weekly.for_weekday(d) for d in WEEKDAYS):
                raise ValueError(
                    "At least one intake for one day of the week is required for 'Custom Weekly' frequency."
                )
        return self


class MedicationUpdate(BaseModel):
    """Partial update; fields left out keep their stored value."""
    name: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    frequency_type: Optional[FrequencyType] = None
    daily_intakes: Optional[List[Intake]] = None
    cyclical_pattern: Optional[List[CyclicalDay]] = None
    cycle_length: Optional[int] = None
    cycle_start_date: Optional[str] = None
    custom_weekly_dosages: Optional[CustomWeeklyDosages] = None
    notes: Optional[str] = None


class TakenEntry(BaseModel):
    """Whether a scheduled dose was taken.
    Record: taken_log[medication_id][date][scheduled_time]
    """
    model_config = ConfigDict(frozen=True)

    taken: bool
    actual_taken_time: Optional[str] = Field(None, description="HH:MM the dose was actually taken")


TakenLog = Dict[str, Dict[str, Dict[str, TakenEntry]]]


class TemporaryReschedule(BaseModel):
    """A one-off time shift of a single dose on the day it was made.
    Record: temp_reschedules
    """
    medication_id: str
    original_date: str = Field(..., description="YYYY-MM-DD the dose was scheduled for")
    original_time: str = Field(..., description="Original scheduled time in HH:MM")
    new_time: str = Field(..., description="New time in HH:MM")
    applied_date: str = Field(..., description="YYYY-MM-DD the reschedule was made")


class ResolvedOccurrence(BaseModel):
    """One dose due on a date, after reschedules and taken state are applied."""
    medication: Medication
    intake: Intake = Field(..., description="Effective intake; time is the rescheduled time if any")
    scheduled_time: str = Field(..., description="Original scheduled time, the key into the taken log")
    is_taken: bool = False
    is_rescheduled: bool = False
    date: str


def calendar_date(v: str) -> str:
    """Reject well-formed but impossible dates such as 2024-02-30."""
    try:
        date.fromisoformat(v)
    except ValueError:
        raise ValueError("Invalid calendar date")
    return v


class TakenRequest(BaseModel):
    medication_id: str
    date: str = Field(..., pattern=DATE_PATTERN)
    scheduled_time: str = Field(..., pattern=TIME_PATTERN)
    actual_taken_time: Optional[str] = Field(None, pattern=TIME_PATTERN)

    @field_validator("date")
    @classmethod
    def date_is_real(cls, v):
        return calendar_date(v)


class UntakenRequest(BaseModel):
    medication_id: str
    date: str = Field(..., pattern=DATE_PATTERN)
    scheduled_time: str = Field(..., pattern=TIME_PATTERN)

    @field_validator("date")
    @classmethod
    def date_is_real(cls, v):
        return calendar_date(v)


class RescheduleCreate(BaseModel):
    medication_id: str
    original_date: str = Field(..., pattern=DATE_PATTERN)
    original_time: str = Field(..., pattern=TIME_PATTERN)
    new_time: str = Field(..., pattern=TIME_PATTERN, description="New time for today in HH:MM")

    @field_validator("original_date")
    @classmethod
    def date_is_real(cls, v):
        return calendar_date(v)


class PermissionUpdate(BaseModel):
    permission: Literal["granted", "denied", "default"]
