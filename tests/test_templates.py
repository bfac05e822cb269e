"""Tests for the template service: CRUD, application, ratings and analytics."""

from __future__ import annotations

import threading
import time
from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError

from geowork.config import Settings
from geowork.domain.bus import EventBus
from geowork.domain.errors import InvalidRatingError, TemplateNotFoundError
from geowork.domain.handlers import HandlerRegistry
from geowork.domain.models import (
    CreateTemplateData,
    Employee,
    JobSite,
    Recurrence,
    RecurrenceType,
    ShiftType,
    TemplateApplicationOptions,
    TemplateCustomizations,
    TemplateFilters,
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
from geowork.services.templates import (
    UNKNOWN_EMPLOYEE,
    UNKNOWN_JOB_SITE,
    TemplateService,
)

_MONDAY = date(2026, 3, 2)


class FlakyScheduleRepository(ScheduleRepository):
    """Refuses to store schedules for one employee."""

    def __init__(self, failing_employee: str) -> None:
        super().__init__()
        self.failing_employee = failing_employee

    def add(self, document):
        if document.employee_id == self.failing_employee:
            raise RuntimeError("write rejected")
        return super().add(document)


def _build_env(schedule_repo: ScheduleRepository | None = None):
    bus = EventBus()
    template_repo = TemplateRepository()
    analytics_repo = TemplateAnalyticsRepository()

    class Env:
        pass

    e = Env()
    e.bus = bus
    e.template_repo = template_repo
    e.analytics_repo = analytics_repo
    e.schedule_repo = schedule_repo or ScheduleRepository()
    e.employee_repo = EmployeeRepository()
    e.job_site_repo = JobSiteRepository()
    e.rating_repo = TemplateRatingRepository()
    e.registry = HandlerRegistry(
        bus=bus, template_repo=template_repo, analytics_repo=analytics_repo
    )
    e.service = TemplateService(
        template_repo=template_repo,
        schedule_repo=e.schedule_repo,
        employee_repo=e.employee_repo,
        job_site_repo=e.job_site_repo,
        analytics_repo=analytics_repo,
        rating_repo=e.rating_repo,
        bus=bus,
        settings=Settings(timezone="UTC"),
    )
    e.employee_repo.add(Employee(id="emp-1", first_name="Ada", last_name="Lovelace"))
    e.employee_repo.add(Employee(id="emp-2", email="grace@example.com"))
    e.job_site_repo.add(JobSite(id="site-1", site_name="North Yard"))
    return e


@pytest.fixture()
def env():
    """Fresh bus + repos + service for each test."""
    return _build_env()


def _make_data(**overrides) -> CreateTemplateData:
    defaults = dict(
        template_name="Morning crew",
        description="Standard early shift",
        job_site_id="site-1",
        duration=8,
        break_duration=30,
        default_start_time="08:00",
        default_end_time="16:00",
        recurrence=Recurrence(type=RecurrenceType.WEEKLY, days_of_week=[1, 3]),
        skills_required=["forklift"],
        special_instructions="Bring PPE",
    )
    defaults.update(overrides)
    return CreateTemplateData(**defaults)


def _options(**overrides) -> TemplateApplicationOptions:
    defaults = dict(
        target_date=_MONDAY,
        end_date=date(2026, 3, 15),
        employee_ids=["emp-1"],
    )
    defaults.update(overrides)
    return TemplateApplicationOptions(**defaults)


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


def test_create_template_initializes_analytics(env):
    template = env.service.create_template("acme", "mgr-1", _make_data())

    assert env.service.get_template(template.id) == template
    assert template.is_active and template.usage_count == 0
    analytics = env.service.get_template_analytics(template.id)
    assert analytics.total_usage == 0
    assert analytics.created_schedules_count == 0


def test_create_template_rejects_bad_time_of_day():
    with pytest.raises(ValidationError):
        _make_data(default_start_time="25:00")


def test_get_missing_template_returns_none(env):
    assert env.service.get_template("nope") is None


def test_update_template_changes_fields_and_audit(env):
    template = env.service.create_template("acme", "mgr-1", _make_data())

    updated = env.service.update_template(
        template.id, TemplateUpdate(template_name="Early crew", duration=7.5), "mgr-2"
    )

    assert updated.template_name == "Early crew"
    assert updated.duration == 7.5
    assert updated.default_start_time == "08:00"
    assert updated.last_modified_by == "mgr-2"
    assert updated.updated_at >= template.updated_at


def test_update_missing_template_raises(env):
    with pytest.raises(TemplateNotFoundError):
        env.service.update_template("nope", TemplateUpdate(template_name="x"), "mgr-1")


def test_soft_delete_marks_inactive(env):
    template = env.service.create_template("acme", "mgr-1", _make_data())

    env.service.delete_template(template.id, "mgr-2")

    stored = env.service.get_template(template.id)
    assert stored.is_active is False
    assert stored.deleted_by == "mgr-2"
    assert stored.deleted_at is not None
    assert env.service.get_template_analytics(template.id) is not None
    active = env.service.list_templates("acme", TemplateFilters(is_active=True))
    assert active.templates == []


def test_permanent_delete_removes_template_and_analytics(env):
    template = env.service.create_template("acme", "mgr-1", _make_data())

    env.service.permanently_delete_template(template.id)

    assert env.service.get_template(template.id) is None
    assert env.service.get_template_analytics(template.id) is None
    with pytest.raises(TemplateNotFoundError):
        env.service.permanently_delete_template(template.id)


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


def test_list_templates_filters(env):
    env.service.create_template("acme", "mgr-1", _make_data(template_name="Morning crew"))
    env.service.create_template(
        "acme",
        "mgr-1",
        _make_data(template_name="Night watch", duration=10, shift_type=ShiftType.OVERTIME),
    )
    env.service.create_template("other-co", "mgr-9", _make_data(template_name="Morning"))

    by_text = env.service.list_templates("acme", TemplateFilters(search_query="NIGHT"))
    assert [t.template_name for t in by_text.templates] == ["Night watch"]

    by_type = env.service.list_templates(
        "acme", TemplateFilters(shift_types=[ShiftType.REGULAR])
    )
    assert [t.template_name for t in by_type.templates] == ["Morning crew"]

    by_duration = env.service.list_templates("acme", TemplateFilters(min_duration=9))
    assert [t.template_name for t in by_duration.templates] == ["Night watch"]


def test_list_templates_sorts_and_pages(env):
    for name in ["Charlie", "Alpha", "Bravo"]:
        env.service.create_template("acme", "mgr-1", _make_data(template_name=name))

    first = env.service.list_templates(
        "acme", sort_field="template_name", descending=False, page_size=2
    )
    assert [t.template_name for t in first.templates] == ["Alpha", "Bravo"]
    assert first.has_more is True
    assert first.next_offset == 2

    second = env.service.list_templates(
        "acme", sort_field="template_name", descending=False, page_size=2, offset=2
    )
    assert [t.template_name for t in second.templates] == ["Charlie"]
    assert second.has_more is False
    assert second.next_offset is None


def test_popular_templates_ordered_by_usage(env):
    quiet = env.service.create_template("acme", "mgr-1", _make_data(template_name="Quiet"))
    busy = env.service.create_template("acme", "mgr-1", _make_data(template_name="Busy"))
    env.service.apply_template(busy.id, _options(), "mgr-1")
    env.service.apply_template(busy.id, _options(), "mgr-1")
    env.service.apply_template(quiet.id, _options(), "mgr-1")

    popular = env.service.get_popular_templates("acme", limit=1)
    assert [t.id for t in popular] == [busy.id]


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def test_apply_creates_one_schedule_per_date_and_employee(env):
    template = env.service.create_template("acme", "mgr-1", _make_data())

    result = env.service.apply_template(
        template.id, _options(employee_ids=["emp-1", "emp-2"]), "mgr-1"
    )

    assert result.errors == []
    assert result.conflicts == []
    assert len(result.created_schedules) == 8
    pairs = [(s.start.date(), s.employee_id) for s in result.created_schedules]
    assert pairs[:4] == [
        (date(2026, 3, 2), "emp-1"),
        (date(2026, 3, 2), "emp-2"),
        (date(2026, 3, 4), "emp-1"),
        (date(2026, 3, 4), "emp-2"),
    ]
    assert len(env.schedule_repo.list_all()) == 8


def test_applied_schedule_carries_template_fields(env):
    template = env.service.create_template("acme", "mgr-1", _make_data())

    schedule = env.service.apply_template(template.id, _options(), "mgr-1").created_schedules[0]

    assert schedule.company_id == "acme"
    assert schedule.employee_name == "Ada Lovelace"
    assert schedule.job_site_name == "North Yard"
    assert schedule.start == datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
    assert schedule.end == datetime(2026, 3, 2, 16, 0, tzinfo=timezone.utc)
    assert schedule.break_duration == 30
    assert schedule.skills_required == {"forklift"}
    assert schedule.special_instructions == "Bring PPE"
    assert schedule.metadata.created_from_template == template.id
    assert schedule.metadata.template_name == "Morning crew"
    assert schedule.created_by == "mgr-1"


def test_apply_overnight_template(env):
    template = env.service.create_template(
        "acme",
        "mgr-1",
        _make_data(
            default_start_time="22:00",
            default_end_time="06:00",
            recurrence=Recurrence(type=RecurrenceType.DAILY),
        ),
    )

    result = env.service.apply_template(
        template.id, _options(end_date=_MONDAY), "mgr-1"
    )

    assert len(result.created_schedules) == 1
    schedule = result.created_schedules[0]
    assert schedule.start == datetime(2026, 3, 2, 22, 0, tzinfo=timezone.utc)
    assert schedule.end == datetime(2026, 3, 3, 6, 0, tzinfo=timezone.utc)


def test_customizations_override_template(env):
    template = env.service.create_template("acme", "mgr-1", _make_data())
    env.job_site_repo.add(JobSite(id="site-2", site_name="South Dock"))

    result = env.service.apply_template(
        template.id,
        _options(
            end_date=_MONDAY,
            job_site_id="site-2",
            customizations=TemplateCustomizations(
                start_time="10:00",
                end_time="14:00",
                break_duration=0,
                special_instructions="Gate B",
            ),
        ),
        "mgr-1",
    )

    schedule = result.created_schedules[0]
    assert schedule.start.hour == 10 and schedule.end.hour == 14
    assert schedule.break_duration == 0
    assert schedule.special_instructions == "Gate B"
    assert schedule.job_site_id == "site-2"
    assert schedule.job_site_name == "South Dock"


def test_missing_names_fall_back(env):
    template = env.service.create_template(
        "acme", "mgr-1", _make_data(job_site_id="site-gone")
    )

    result = env.service.apply_template(
        template.id, _options(end_date=_MONDAY, employee_ids=["emp-2", "emp-gone"]), "mgr-1"
    )

    names = [(s.employee_name, s.job_site_name) for s in result.created_schedules]
    assert names == [
        ("grace@example.com", UNKNOWN_JOB_SITE),
        (UNKNOWN_EMPLOYEE, UNKNOWN_JOB_SITE),
    ]


def test_failing_lookup_falls_back_without_error(env, monkeypatch):
    template = env.service.create_template("acme", "mgr-1", _make_data())

    def broken_get(doc_id):
        raise ConnectionError("directory offline")

    monkeypatch.setattr(env.employee_repo, "get", broken_get)
    result = env.service.apply_template(template.id, _options(end_date=_MONDAY), "mgr-1")

    assert result.errors == []
    assert result.created_schedules[0].employee_name == UNKNOWN_EMPLOYEE
    assert result.created_schedules[0].job_site_name == UNKNOWN_JOB_SITE


def test_missing_template_raises_and_creates_nothing(env):
    with pytest.raises(TemplateNotFoundError):
        env.service.apply_template("nope", _options(), "mgr-1")
    assert env.schedule_repo.list_all() == []


def test_one_failed_pair_does_not_stop_the_rest():
    env = _build_env(schedule_repo=FlakyScheduleRepository("emp-ghost"))
    template = env.service.create_template("acme", "mgr-1", _make_data())

    result = env.service.apply_template(
        template.id, _options(end_date=_MONDAY, employee_ids=["emp-1", "emp-ghost"]), "mgr-1"
    )

    assert [s.employee_id for s in result.created_schedules] == ["emp-1"]
    assert result.errors == [
        "Failed to create schedule for employee emp-ghost on 2026-03-02: write rejected"
    ]


def test_apply_records_usage(env):
    template = env.service.create_template("acme", "mgr-1", _make_data())

    env.service.apply_template(template.id, _options(employee_ids=["emp-1", "emp-2"]), "mgr-1")

    stored = env.service.get_template(template.id)
    assert stored.usage_count == 1
    assert stored.last_used is not None
    analytics = env.service.get_template_analytics(template.id)
    assert analytics.total_usage == 1
    assert analytics.created_schedules_count == 8
    assert analytics.last_used == stored.last_used


def test_apply_recreates_missing_analytics(env):
    template = env.service.create_template("acme", "mgr-1", _make_data())
    env.analytics_repo.delete(template.id)

    env.service.apply_template(template.id, _options(end_date=_MONDAY), "mgr-1")

    analytics = env.service.get_template_analytics(template.id)
    assert analytics.total_usage == 1
    assert analytics.created_schedules_count == 1


def test_usage_recording_failure_does_not_fail_application(env, monkeypatch):
    template = env.service.create_template("acme", "mgr-1", _make_data())

    def broken_increment(doc_id, counters, **fields):
        raise RuntimeError("analytics store down")

    monkeypatch.setattr(env.analytics_repo, "increment", broken_increment)
    result = env.service.apply_template(template.id, _options(end_date=_MONDAY), "mgr-1")

    assert len(result.created_schedules) == 1
    assert result.errors == []


def test_concurrent_applies_count_every_use(env, monkeypatch):
    template = env.service.create_template("acme", "mgr-1", _make_data())
    original_get = env.template_repo.get

    def get_with_latency(doc_id):
        time.sleep(0.05)
        return original_get(doc_id)

    monkeypatch.setattr(env.template_repo, "get", get_with_latency)
    start = threading.Barrier(5)

    def apply():
        start.wait()
        env.service.apply_template(template.id, _options(end_date=_MONDAY), "mgr-1")

    workers = [threading.Thread(target=apply) for _ in range(5)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert env.template_repo.get(template.id).usage_count == 5
    analytics = env.service.get_template_analytics(template.id)
    assert analytics.total_usage == 5
    assert analytics.created_schedules_count == 5


def test_empty_date_range_creates_nothing(env):
    template = env.service.create_template("acme", "mgr-1", _make_data())

    result = env.service.apply_template(
        template.id, _options(end_date=date(2026, 3, 1)), "mgr-1"
    )

    assert result.created_schedules == []
    assert result.errors == []


# ---------------------------------------------------------------------------
# Ratings
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("rating", [0, 6, -1])
def test_out_of_range_rating_rejected_without_writes(env, rating):
    template = env.service.create_template("acme", "mgr-1", _make_data())

    with pytest.raises(InvalidRatingError):
        env.service.rate_template(template.id, rating, "user-1", "nice")

    assert env.service.get_template(template.id).total_ratings == 0
    assert env.rating_repo.list_all() == []


def test_rating_updates_running_average(env):
    template = env.service.create_template("acme", "mgr-1", _make_data())

    env.service.rate_template(template.id, 5, "user-1")
    updated = env.service.rate_template(template.id, 3, "user-2", "Too long")

    assert updated.total_ratings == 2
    assert updated.average_rating == pytest.approx(4.0)
    analytics = env.service.get_template_analytics(template.id)
    assert analytics.total_ratings == 2
    assert analytics.average_rating == pytest.approx(4.0)
    ratings = env.rating_repo.list_for_template(template.id)
    assert [(r.user_id, r.rating, r.comment) for r in ratings] == [("user-2", 3, "Too long")]


def test_rating_missing_template_raises(env):
    with pytest.raises(TemplateNotFoundError):
        env.service.rate_template("nope", 4, "user-1")
