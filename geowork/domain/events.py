"""Domain events emitted by the scheduling services."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class TemplateCreated(BaseModel):
    """Fired when a new template is persisted."""

    template_id: str


class TemplateApplied(BaseModel):
    """Fired after a template has been expanded into schedules."""

    template_id: str
    schedules_created: int
    applied_at: datetime


class TemplateDeleted(BaseModel):
    template_id: str
    permanent: bool = False


class ConflictsDetected(BaseModel):
    """Fired when a conflict check finds at least one problem."""

    schedule_id: str
    employee_id: str
    conflict_ids: list[str]
