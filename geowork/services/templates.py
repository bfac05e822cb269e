"""Schedule template management and application."""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timezone

from dateutil import tz

from geowork.config import Settings
from geowork.domain.bus import EventBus
from geowork.domain.errors import InvalidRatingError, TemplateNotFoundError
from geowork.domain.events import TemplateApplied, TemplateCreated, TemplateDeleted
from geowork.domain.models import (
    CreateTemplateData,
    Schedule,
    ScheduleMetadata,
    ScheduleStatus,
    ScheduleTemplate,
    TemplateAnalytics,
    TemplateApplicationOptions,
    TemplateApplicationResult,
    TemplateCustomizations,
    TemplateFilters,
    TemplatePage,
    TemplateRating,
    TemplateSortField,
    TemplateUpdate,
)
from geowork.repos.memory import (
    EmployeeRepository,
    JobSiteRepository,
    ScheduleRepository,
    TemplateAnalyticsRepository,
    TemplateRatingRepository,
    TemplateRepository,
)
from geowork.services.recurrence import calculate_schedule_dates, resolve_shift_window

logger = logging.getLogger(__name__)

UNKNOWN_EMPLOYEE = "Unknown Employee"
UNKNOWN_JOB_SITE = "Unknown Job Site"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _matches_filters(template: ScheduleTemplate, filters: TemplateFilters) -> bool:
    if filters.is_active is not None and template.is_active != filters.is_active:
        return False
    if filters.job_site_id and template.job_site_id != filters.job_site_id:
        return False
    if filters.created_by and template.created_by != filters.created_by:
        return False
    if filters.shift_types and template.shift_type not in filters.shift_types:
        return False
    if filters.search_query:
        term = filters.search_query.lower()
        haystacks = [template.template_name, template.description or ""]
        if not any(term in h.lower() for h in haystacks):
            return False
    if filters.min_duration is not None and template.duration < filters.min_duration:
        return False
    if filters.max_duration is not None and template.duration > filters.max_duration:
        return False
    return True


class TemplateService:
    """Create, query and apply reusable shift templates for a company."""

    def __init__(
        self,
        template_repo: TemplateRepository,
        schedule_repo: ScheduleRepository,
        employee_repo: EmployeeRepository,
        job_site_repo: JobSiteRepository,
        analytics_repo: TemplateAnalyticsRepository,
        rating_repo: TemplateRatingRepository,
        bus: EventBus,
        settings: Settings | None = None,
    ) -> None:
        self.template_repo = template_repo
        self.schedule_repo = schedule_repo
        self.employee_repo = employee_repo
        self.job_site_repo = job_site_repo
        self.analytics_repo = analytics_repo
        self.rating_repo = rating_repo
        self.bus = bus
        self.settings = settings or Settings()
        self._tz = tz.gettz(self.settings.timezone)
        if self._tz is None:
            raise ValueError(f"Unknown timezone: {self.settings.timezone}")
        self._rating_lock = threading.Lock()

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_template(
        self, company_id: str, created_by: str, data: CreateTemplateData
    ) -> ScheduleTemplate:
        template = ScheduleTemplate(
            company_id=company_id, created_by=created_by, **data.model_dump()
        )
        self.template_repo.add(template)
        self.bus.publish(TemplateCreated(template_id=template.id))
        logger.info("Created template %s (%s)", template.id, template.template_name)
        return template

    def get_template(self, template_id: str) -> ScheduleTemplate | None:
        return self.template_repo.get(template_id)

    def _require(self, template_id: str) -> ScheduleTemplate:
        template = self.template_repo.get(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    def list_templates(
        self,
        company_id: str,
        filters: TemplateFilters | None = None,
        sort_field: TemplateSortField = "updated_at",
        descending: bool = True,
        page_size: int = 20,
        offset: int = 0,
    ) -> TemplatePage:
        filters = filters or TemplateFilters()
        matching = [
            t
            for t in self.template_repo.list_for_company(company_id)
            if _matches_filters(t, filters)
        ]
        matching.sort(key=lambda t: getattr(t, sort_field), reverse=descending)

        page = matching[offset : offset + page_size]
        has_more = len(matching) > offset + page_size
        return TemplatePage(
            templates=page,
            has_more=has_more,
            next_offset=offset + page_size if has_more else None,
        )

    def update_template(
        self, template_id: str, updates: TemplateUpdate, updated_by: str
    ) -> ScheduleTemplate:
        self._require(template_id)
        return self.template_repo.update(
            template_id,
            **updates.model_dump(exclude_unset=True),
            updated_at=_utcnow(),
            last_modified_by=updated_by,
        )

    def delete_template(self, template_id: str, deleted_by: str) -> None:
        """Soft delete: the template stays stored but is marked inactive."""
        self._require(template_id)
        now = _utcnow()
        self.template_repo.update(
            template_id,
            is_active=False,
            deleted_at=now,
            deleted_by=deleted_by,
            updated_at=now,
        )
        self.bus.publish(TemplateDeleted(template_id=template_id))

    def permanently_delete_template(self, template_id: str) -> None:
        self._require(template_id)
        self.template_repo.delete(template_id)
        self.bus.publish(TemplateDeleted(template_id=template_id, permanent=True))
        logger.info("Permanently deleted template %s", template_id)

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def apply_template(
        self,
        template_id: str,
        options: TemplateApplicationOptions,
        created_by: str,
    ) -> TemplateApplicationResult:
        """Materialize one schedule per (date, employee) the template's recurrence covers.

        A missing template raises ``TemplateNotFoundError`` before anything is
        created. Failures for a single (date, employee) pair are collected in
        ``errors`` and do not stop the remaining pairs.
        """
        template = self._require(template_id)
        dates = calculate_schedule_dates(
            template.recurrence,
            options.target_date,
            options.end_date,
            horizon_months=self.settings.default_recurrence_months,
        )

        result = TemplateApplicationResult()
        for day in dates:
            for employee_id in options.employee_ids:
                try:
                    schedule = self._create_schedule_from_template(
                        template, day, employee_id, options, created_by
                    )
                except Exception as exc:
                    logger.warning(
                        "Template %s: schedule for %s on %s failed: %s",
                        template_id,
                        employee_id,
                        day,
                        exc,
                    )
                    result.errors.append(
                        f"Failed to create schedule for employee {employee_id} "
                        f"on {day.isoformat()}: {exc}"
                    )
                    continue
                result.created_schedules.append(schedule)

        self.bus.publish(
            TemplateApplied(
                template_id=template_id,
                schedules_created=len(result.created_schedules),
                applied_at=_utcnow(),
            )
        )
        logger.info(
            "Applied template %s: %d created, %d failed",
            template_id,
            len(result.created_schedules),
            len(result.errors),
        )
        return result

    def _resolve_names(self, employee_id: str, job_site_id: str) -> tuple[str, str]:
        employee_name = UNKNOWN_EMPLOYEE
        job_site_name = UNKNOWN_JOB_SITE
        try:
            employee = self.employee_repo.get(employee_id)
            if employee is not None:
                employee_name = employee.display_name or UNKNOWN_EMPLOYEE
            if job_site_id:
                site = self.job_site_repo.get(job_site_id)
                if site is not None:
                    job_site_name = site.site_name or UNKNOWN_JOB_SITE
        except Exception:
            logger.warning(
                "Name lookup failed for employee %s / job site %s",
                employee_id,
                job_site_id,
                exc_info=True,
            )
        return employee_name, job_site_name

    def _create_schedule_from_template(
        self,
        template: ScheduleTemplate,
        day: date,
        employee_id: str,
        options: TemplateApplicationOptions,
        created_by: str,
    ) -> Schedule:
        custom = options.customizations or TemplateCustomizations()
        start, end = resolve_shift_window(
            day,
            custom.start_time or template.default_start_time,
            custom.end_time or template.default_end_time,
            self._tz,
        )
        job_site_id = options.job_site_id or template.job_site_id or ""
        employee_name, job_site_name = self._resolve_names(employee_id, job_site_id)
        instructions = custom.special_instructions or template.special_instructions

        schedule = Schedule(
            company_id=template.company_id,
            employee_id=employee_id,
            employee_name=employee_name,
            job_site_id=job_site_id,
            job_site_name=job_site_name,
            start_date_time=start,
            end_date_time=end,
            shift_type=template.shift_type,
            status=ScheduleStatus.SCHEDULED,
            break_duration=(
                custom.break_duration
                if custom.break_duration is not None
                else template.break_duration
            ),
            expected_hours=template.duration,
            skills_required=set(template.skills_required),
            equipment_needed=set(template.equipment_needed),
            notes=instructions,
            special_instructions=instructions or "",
            metadata=ScheduleMetadata(
                created_from_template=template.id,
                template_name=template.template_name,
            ),
            created_by=created_by,
        )
        self.schedule_repo.add(schedule)
        return schedule

    # ------------------------------------------------------------------
    # Ratings & analytics
    # ------------------------------------------------------------------

    def rate_template(
        self,
        template_id: str,
        rating: int,
        user_id: str,
        comment: str | None = None,
    ) -> ScheduleTemplate:
        if rating < 1 or rating > 5:
            raise InvalidRatingError(rating)

        with self._rating_lock:
            template = self._require(template_id)
            total = template.total_ratings + 1
            average = (template.average_rating * template.total_ratings + rating) / total
            now = _utcnow()
            updated = self.template_repo.update(
                template_id,
                total_ratings=total,
                average_rating=average,
                updated_at=now,
            )
            self.analytics_repo.add_if_absent(TemplateAnalytics(template_id=template_id))
            self.analytics_repo.update(
                template_id,
                total_ratings=total,
                average_rating=average,
                updated_at=now,
            )
            if comment:
                self.rating_repo.add(
                    TemplateRating(
                        template_id=template_id,
                        user_id=user_id,
                        rating=rating,
                        comment=comment,
                    )
                )
        return updated

    def get_template_analytics(self, template_id: str) -> TemplateAnalytics | None:
        return self.analytics_repo.get(template_id)

    def get_popular_templates(
        self, company_id: str, limit: int = 10
    ) -> list[ScheduleTemplate]:
        templates = self.template_repo.list_for_company(company_id)
        templates.sort(key=lambda t: t.usage_count, reverse=True)
        return templates[:limit]
