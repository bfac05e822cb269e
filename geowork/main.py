"""HTTP entry point for the scheduling service."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from pydantic import ValidationError

from geowork.config import get_settings
from geowork.domain.bus import EventBus
from geowork.domain.errors import InvalidRatingError, TemplateNotFoundError
from geowork.domain.events import ConflictsDetected
from geowork.domain.handlers import HandlerRegistry
from geowork.domain.models import (
    ApplyTemplateRequest,
    CompanyRuleSettings,
    ConflictCheckRequest,
    CreateTemplateRequest,
    RateTemplateRequest,
    Schedule,
    ScheduleConflict,
    ScheduleTemplate,
    ShiftType,
    TemplateAnalytics,
    TemplateApplicationResult,
    TemplateFilters,
    TemplatePage,
    TemplateSortField,
    UpdateTemplateRequest,
    ValidationRule,
)
from geowork.log import configure_logging
from geowork.repos.memory import (
    CompanyRuleSettingsRepository,
    EmployeeRepository,
    JobSiteRepository,
    ScheduleRepository,
    TemplateAnalyticsRepository,
    TemplateRatingRepository,
    TemplateRepository,
)
from geowork.services.conflicts import ConflictDetector
from geowork.services.templates import TemplateService

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)

# ── Singletons ────────────────────────────────────────────────────────
event_bus = EventBus()
schedule_repo = ScheduleRepository()
template_repo = TemplateRepository()
employee_repo = EmployeeRepository()
job_site_repo = JobSiteRepository()
analytics_repo = TemplateAnalyticsRepository()
rating_repo = TemplateRatingRepository()
company_rules_repo = CompanyRuleSettingsRepository()

handler_registry = HandlerRegistry(
    bus=event_bus,
    template_repo=template_repo,
    analytics_repo=analytics_repo,
)
detector = ConflictDetector.from_settings(settings)
template_service = TemplateService(
    template_repo=template_repo,
    schedule_repo=schedule_repo,
    employee_repo=employee_repo,
    job_site_repo=job_site_repo,
    analytics_repo=analytics_repo,
    rating_repo=rating_repo,
    bus=event_bus,
    settings=settings,
)


def _report(candidate: Schedule, conflicts: list[ScheduleConflict]) -> None:
    if conflicts:
        event_bus.publish(
            ConflictsDetected(
                schedule_id=candidate.id,
                employee_id=candidate.employee_id,
                conflict_ids=[c.conflict_id for c in conflicts],
            )
        )


# ── Conflicts & rules ─────────────────────────────────────────────────


@app.post("/conflicts/check", response_model=list[ScheduleConflict])
def check_conflicts(payload: ConflictCheckRequest) -> list[ScheduleConflict]:
    """Evaluate a schedule draft against the supplied existing schedules."""
    conflicts = detector.detect_conflicts(payload.candidate, payload.existing_schedules)
    _report(payload.candidate, conflicts)
    return conflicts


@app.post("/schedules/{schedule_id}/conflicts", response_model=list[ScheduleConflict])
def check_stored_schedule(schedule_id: str) -> list[ScheduleConflict]:
    """Evaluate a stored schedule against the employee's other stored schedules."""
    schedule = schedule_repo.get(schedule_id)
    if schedule is None:
        raise HTTPException(status_code=404, detail="Schedule not found")
    existing = schedule_repo.list_for_employee(schedule.employee_id)
    conflicts = detector.detect_conflicts(schedule, existing)
    _report(schedule, conflicts)
    return conflicts


@app.get("/rules", response_model=list[ValidationRule])
def list_rules() -> list[ValidationRule]:
    return detector.get_rules()


@app.patch("/rules/{rule_type}", response_model=list[ValidationRule])
def update_rule(rule_type: str, parameters: dict[str, Any]) -> list[ValidationRule]:
    """Merge parameters into one rule; unknown rule types leave the rules unchanged."""
    try:
        detector.update_rule(rule_type, parameters)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return detector.get_rules()


@app.post("/companies/{company_id}/rules", response_model=list[ValidationRule])
def apply_company_rules(
    company_id: str, overrides: dict[str, dict[str, Any]]
) -> list[ValidationRule]:
    """Store a company's rule overrides and apply them to the active detector."""
    try:
        company_settings = CompanyRuleSettings(company_id=company_id, overrides=overrides)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    company_rules_repo.add(company_settings)
    detector.load_company_rules(company_rules_repo.get(company_id))
    return detector.get_rules()


# ── Templates ─────────────────────────────────────────────────────────


@app.post("/templates", response_model=ScheduleTemplate, status_code=201)
def create_template(payload: CreateTemplateRequest) -> ScheduleTemplate:
    return template_service.create_template(
        payload.company_id, payload.created_by, payload.template
    )


@app.get("/templates", response_model=TemplatePage)
def list_templates(
    company_id: str,
    search_query: str | None = None,
    job_site_id: str | None = None,
    shift_types: list[ShiftType] | None = Query(default=None),
    is_active: bool | None = None,
    created_by: str | None = None,
    min_duration: float | None = None,
    max_duration: float | None = None,
    sort_field: TemplateSortField = "updated_at",
    descending: bool = True,
    page_size: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> TemplatePage:
    filters = TemplateFilters(
        search_query=search_query,
        job_site_id=job_site_id,
        shift_types=shift_types,
        is_active=is_active,
        created_by=created_by,
        min_duration=min_duration,
        max_duration=max_duration,
    )
    return template_service.list_templates(
        company_id, filters, sort_field, descending, page_size, offset
    )


@app.get("/templates/popular", response_model=list[ScheduleTemplate])
def popular_templates(
    company_id: str, limit: int = Query(default=10, ge=1, le=100)
) -> list[ScheduleTemplate]:
    return template_service.get_popular_templates(company_id, limit)


@app.get("/templates/{template_id}", response_model=ScheduleTemplate)
def get_template(template_id: str) -> ScheduleTemplate:
    template = template_service.get_template(template_id)
    if template is None:
        raise HTTPException(status_code=404, detail="Template not found")
    return template


@app.patch("/templates/{template_id}", response_model=ScheduleTemplate)
def update_template(template_id: str, payload: UpdateTemplateRequest) -> ScheduleTemplate:
    try:
        return template_service.update_template(
            template_id, payload.updates, payload.updated_by
        )
    except TemplateNotFoundError:
        raise HTTPException(status_code=404, detail="Template not found")
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@app.delete("/templates/{template_id}", status_code=200)
def delete_template(
    template_id: str, deleted_by: str, permanent: bool = False
) -> dict:
    try:
        if permanent:
            template_service.permanently_delete_template(template_id)
        else:
            template_service.delete_template(template_id, deleted_by)
    except TemplateNotFoundError:
        raise HTTPException(status_code=404, detail="Template not found")
    return {"status": "deleted", "permanent": permanent}


@app.post("/templates/{template_id}/apply", response_model=TemplateApplicationResult)
def apply_template(
    template_id: str, payload: ApplyTemplateRequest
) -> TemplateApplicationResult:
    """Expand the template's recurrence into concrete schedules."""
    try:
        return template_service.apply_template(
            template_id, payload.options, payload.created_by
        )
    except TemplateNotFoundError:
        raise HTTPException(status_code=404, detail="Template not found")


@app.post("/templates/{template_id}/rate", response_model=ScheduleTemplate)
def rate_template(template_id: str, payload: RateTemplateRequest) -> ScheduleTemplate:
    try:
        return template_service.rate_template(
            template_id, payload.rating, payload.user_id, payload.comment
        )
    except InvalidRatingError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except TemplateNotFoundError:
        raise HTTPException(status_code=404, detail="Template not found")


@app.get("/templates/{template_id}/analytics", response_model=TemplateAnalytics)
def template_analytics(template_id: str) -> TemplateAnalytics:
    analytics = template_service.get_template_analytics(template_id)
    if analytics is None:
        raise HTTPException(status_code=404, detail="Analytics not found")
    return analytics


# ── Schedules ─────────────────────────────────────────────────────────


@app.get("/schedules", response_model=list[Schedule])
def list_schedules(employee_id: str | None = None) -> list[Schedule]:
    if employee_id is not None:
        return schedule_repo.list_for_employee(employee_id)
    return schedule_repo.list_all()
