"""Domain models for the scheduling core."""

from __future__ import annotations

import re
import uuid
from datetime import date, datetime, timedelta, timezone
from enum import StrEnum
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializeAsAny,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class ShiftType(StrEnum):
    REGULAR = "regular"
    OVERTIME = "overtime"
    EMERGENCY = "emergency"
    TRAINING = "training"


class ScheduleStatus(StrEnum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    MISSED = "missed"


class ConflictType(StrEnum):
    OVERLAP = "overlap"
    OVERTIME_LIMIT = "overtime-limit"
    INSUFFICIENT_REST = "insufficient-rest"
    SKILL_MISMATCH = "skill-mismatch"
    TRAVEL_TIME_RISK = "travel-time-risk"


class ConflictSeverity(StrEnum):
    WARNING = "warning"
    ERROR = "error"


class RuleType(StrEnum):
    TIME_OVERLAP = "time_overlap"
    MAX_HOURS = "max_hours"
    MINIMUM_BREAK = "minimum_break"
    SKILL_MISMATCH = "skill_mismatch"
    TRAVEL_TIME = "travel_time"


class RecurrenceType(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _check_hhmm(value: str | None) -> str | None:
    if value is not None and not _HHMM.match(value):
        raise ValueError(f"expected HH:MM (24-hour), got {value!r}")
    return value


# ---------------------------------------------------------------------------
# Schedules and conflicts
# ---------------------------------------------------------------------------


class SerializedTimestamp(BaseModel):
    """Document-store timestamp as it arrives over the wire."""

    seconds: int
    nanoseconds: int = Field(default=0, ge=0, lt=1_000_000_000)

    def to_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.seconds, tz=timezone.utc) + timedelta(
            microseconds=self.nanoseconds // 1000
        )

    @classmethod
    def from_datetime(cls, value: datetime) -> SerializedTimestamp:
        value = _as_utc(value)
        seconds = int(value.timestamp())
        return cls(seconds=seconds, nanoseconds=value.microsecond * 1000)


class ScheduleMetadata(BaseModel):
    created_from_template: str | None = None
    template_name: str | None = None
    priority: str = "medium"


class Schedule(BaseModel):
    id: str = Field(default_factory=_new_id)
    company_id: str | None = None
    employee_id: str
    employee_name: str = ""
    job_site_id: str = ""
    job_site_name: str = ""
    start_date_time: datetime | None = None
    end_date_time: datetime | None = None
    start_time: SerializedTimestamp | None = None
    end_time: SerializedTimestamp | None = None
    shift_type: ShiftType = ShiftType.REGULAR
    status: ScheduleStatus = ScheduleStatus.SCHEDULED
    break_duration: int = Field(default=0, ge=0)
    expected_hours: float | None = None
    skills_required: set[str] = Field(default_factory=set)
    equipment_needed: set[str] = Field(default_factory=set)
    notes: str | None = None
    special_instructions: str = ""
    metadata: ScheduleMetadata = Field(default_factory=ScheduleMetadata)
    created_by: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_by: str | None = None
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _resolve_instants(self) -> Schedule:
        self.start_date_time = _as_utc(self.start_date_time)
        self.end_date_time = _as_utc(self.end_date_time)
        if self.start_date_time is None and self.start_time is None:
            raise ValueError("schedule needs start_date_time or start_time")
        if self.end_date_time is None and self.end_time is None:
            raise ValueError("schedule needs end_date_time or end_time")
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self

    @property
    def start(self) -> datetime:
        if self.start_date_time is not None:
            return self.start_date_time
        return self.start_time.to_datetime()

    @property
    def end(self) -> datetime:
        if self.end_date_time is not None:
            return self.end_date_time
        return self.end_time.to_datetime()

    @property
    def duration_minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60


class ScheduleConflict(BaseModel):
    conflict_id: str
    type: ConflictType
    severity: ConflictSeverity
    conflicting_schedules: list[str]
    employee_id: str
    employee_name: str = ""
    message: str
    suggestions: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Validation rules
# ---------------------------------------------------------------------------


class RuleParams(BaseModel):
    """Base for typed rule parameters; accepts camelCase or snake_case keys."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class TimeOverlapParams(RuleParams):
    allow_grace_period: bool = False
    grace_period_minutes: int = Field(default=0, ge=0)


class MaxHoursParams(RuleParams):
    daily_limit: float = Field(default=8, gt=0)
    weekly_limit: float = Field(default=40, gt=0)


class MinimumBreakParams(RuleParams):
    minimum_minutes: int = Field(default=480, ge=0)


class SkillMismatchParams(RuleParams):
    enforce_strict: bool = True


class TravelTimeParams(RuleParams):
    buffer_minutes: int = Field(default=30, ge=0)


RULE_PARAMS: dict[RuleType, type[RuleParams]] = {
    RuleType.TIME_OVERLAP: TimeOverlapParams,
    RuleType.MAX_HOURS: MaxHoursParams,
    RuleType.MINIMUM_BREAK: MinimumBreakParams,
    RuleType.SKILL_MISMATCH: SkillMismatchParams,
    RuleType.TRAVEL_TIME: TravelTimeParams,
}


class ValidationRule(BaseModel):
    type: RuleType
    severity: ConflictSeverity
    parameters: SerializeAsAny[RuleParams]

    @model_validator(mode="before")
    @classmethod
    def _typed_parameters(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "type" not in data:
            return data
        params_cls = RULE_PARAMS[RuleType(data["type"])]
        params = data.get("parameters") or {}
        if not isinstance(params, params_cls):
            if isinstance(params, BaseModel):
                params = params.model_dump()
            data = {**data, "parameters": params_cls.model_validate(params)}
        return data


class CompanyRuleSettings(BaseModel):
    company_id: str
    # Keyed by rule type name; unknown names are skipped when loaded.
    overrides: dict[str, dict[str, Any]] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class Recurrence(BaseModel):
    type: RecurrenceType
    interval: int = Field(default=1, ge=1)
    # 0 = Sunday ... 6 = Saturday
    days_of_week: list[int] | None = None

    @field_validator("days_of_week")
    @classmethod
    def _valid_days(cls, value: list[int] | None) -> list[int] | None:
        if value is not None and any(d < 0 or d > 6 for d in value):
            raise ValueError("days_of_week entries must be 0 (Sunday) to 6 (Saturday)")
        return value


class ScheduleTemplate(BaseModel):
    id: str = Field(default_factory=_new_id)
    company_id: str
    template_name: str
    description: str | None = None
    job_site_id: str | None = None
    shift_type: ShiftType = ShiftType.REGULAR
    duration: float = Field(gt=0)
    break_duration: int = Field(default=0, ge=0)
    default_start_time: str
    default_end_time: str
    recurrence: Recurrence
    skills_required: list[str] = Field(default_factory=list)
    equipment_needed: list[str] = Field(default_factory=list)
    special_instructions: str | None = None
    tags: list[str] = Field(default_factory=list)
    is_public: bool = False
    is_active: bool = True
    usage_count: int = 0
    last_used: datetime | None = None
    total_ratings: int = 0
    average_rating: float = 0.0
    created_by: str
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    last_modified_by: str | None = None
    deleted_by: str | None = None
    deleted_at: datetime | None = None

    @field_validator("default_start_time", "default_end_time")
    @classmethod
    def _valid_time_of_day(cls, value: str | None) -> str | None:
        return _check_hhmm(value)


class TemplateAnalytics(BaseModel):
    template_id: str
    total_usage: int = 0
    created_schedules_count: int = 0
    last_used: datetime | None = None
    average_rating: float = 0.0
    total_ratings: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class TemplateRating(BaseModel):
    id: str = Field(default_factory=_new_id)
    template_id: str
    user_id: str
    rating: int
    comment: str
    created_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Directory records consulted during template application
# ---------------------------------------------------------------------------


class Employee(BaseModel):
    id: str = Field(default_factory=_new_id)
    company_id: str | None = None
    first_name: str = ""
    last_name: str = ""
    email: str | None = None
    skills: list[str] = Field(default_factory=list)

    @property
    def display_name(self) -> str | None:
        return f"{self.first_name} {self.last_name}".strip() or self.email


class JobSite(BaseModel):
    id: str = Field(default_factory=_new_id)
    company_id: str | None = None
    site_name: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    radius: float | None = None


# ---------------------------------------------------------------------------
# Request / Response DTOs
# ---------------------------------------------------------------------------


class ConflictCheckRequest(BaseModel):
    candidate: Schedule
    existing_schedules: list[Schedule] = Field(default_factory=list)


class CreateTemplateData(BaseModel):
    template_name: str
    description: str | None = None
    job_site_id: str | None = None
    shift_type: ShiftType = ShiftType.REGULAR
    duration: float = Field(gt=0)
    break_duration: int = Field(default=0, ge=0)
    default_start_time: str
    default_end_time: str
    recurrence: Recurrence
    skills_required: list[str] = Field(default_factory=list)
    equipment_needed: list[str] = Field(default_factory=list)
    special_instructions: str | None = None
    tags: list[str] = Field(default_factory=list)
    is_public: bool = False

    @field_validator("default_start_time", "default_end_time")
    @classmethod
    def _valid_time_of_day(cls, value: str | None) -> str | None:
        return _check_hhmm(value)


class CreateTemplateRequest(BaseModel):
    company_id: str
    created_by: str
    template: CreateTemplateData


class TemplateUpdate(BaseModel):
    template_name: str | None = None
    description: str | None = None
    job_site_id: str | None = None
    shift_type: ShiftType | None = None
    duration: float | None = Field(default=None, gt=0)
    break_duration: int | None = Field(default=None, ge=0)
    default_start_time: str | None = None
    default_end_time: str | None = None
    recurrence: Recurrence | None = None
    skills_required: list[str] | None = None
    equipment_needed: list[str] | None = None
    special_instructions: str | None = None
    tags: list[str] | None = None
    is_public: bool | None = None

    @field_validator("default_start_time", "default_end_time")
    @classmethod
    def _valid_time_of_day(cls, value: str | None) -> str | None:
        return _check_hhmm(value)


class UpdateTemplateRequest(BaseModel):
    updated_by: str
    updates: TemplateUpdate


class TemplateCustomizations(BaseModel):
    start_time: str | None = None
    end_time: str | None = None
    break_duration: int | None = Field(default=None, ge=0)
    special_instructions: str | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _valid_time_of_day(cls, value: str | None) -> str | None:
        return _check_hhmm(value)


class TemplateApplicationOptions(BaseModel):
    target_date: date
    end_date: date | None = None
    employee_ids: list[str] = Field(min_length=1)
    job_site_id: str | None = None
    customizations: TemplateCustomizations | None = None


class ApplyTemplateRequest(BaseModel):
    created_by: str
    options: TemplateApplicationOptions


class TemplateApplicationResult(BaseModel):
    created_schedules: list[Schedule] = Field(default_factory=list)
    conflicts: list[ScheduleConflict] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class RateTemplateRequest(BaseModel):
    user_id: str
    # Range is enforced by the service so the failure maps to InvalidRatingError.
    rating: int
    comment: str | None = None


class TemplateFilters(BaseModel):
    search_query: str | None = None
    job_site_id: str | None = None
    shift_types: list[ShiftType] | None = None
    is_active: bool | None = None
    created_by: str | None = None
    min_duration: float | None = None
    max_duration: float | None = None


TemplateSortField = Literal[
    "template_name", "created_at", "updated_at", "usage_count", "average_rating"
]


class TemplatePage(BaseModel):
    templates: list[ScheduleTemplate]
    has_more: bool
    next_offset: int | None = None
