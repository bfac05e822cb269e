"""Rule-based detection of scheduling conflicts for a single employee."""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable, Iterable, Mapping
from datetime import date, tzinfo
from typing import Any

from dateutil import tz
from pydantic import ValidationError

from geowork.config import Settings
from geowork.domain.models import (
    RULE_PARAMS,
    CompanyRuleSettings,
    ConflictSeverity,
    ConflictType,
    MaxHoursParams,
    MinimumBreakParams,
    RuleParams,
    RuleType,
    Schedule,
    ScheduleConflict,
    SkillMismatchParams,
    TimeOverlapParams,
    TravelTimeParams,
    ValidationRule,
)

logger = logging.getLogger(__name__)


def find_conflicts(candidate: Schedule, existing: Iterable[Schedule]) -> list[Schedule]:
    """Return existing schedules whose time range overlaps the candidate's.

    Overlap rule: conflict if candidate.start < other.end AND candidate.end > other.start.
    Exact boundary touches (end == start) are NOT considered conflicts.
    """
    return [
        other
        for other in existing
        if candidate.start < other.end and candidate.end > other.start
    ]


def break_minutes(first: Schedule, second: Schedule) -> float | None:
    """Idle minutes between two schedules, or None when they overlap."""
    if first.end <= second.start:
        return (second.start - first.end).total_seconds() / 60
    if second.end <= first.start:
        return (first.start - second.end).total_seconds() / 60
    return None


def _field_names(
    params_cls: type[RuleParams], parameters: Mapping[str, Any]
) -> dict[str, Any]:
    """Key *parameters* by field name; camelCase aliases are accepted too."""
    names = {f.alias or name: name for name, f in params_cls.model_fields.items()}
    return {names.get(key, key): value for key, value in parameters.items()}


def _round_hours(minutes: float) -> int:
    # Half-up: 450 minutes reads as 8h.
    return math.floor(minutes / 60 + 0.5)


def default_rules(settings: Settings | None = None) -> list[ValidationRule]:
    """The stock rule set, optionally seeded from settings."""
    settings = settings or Settings()
    rules = [
        ValidationRule(
            type=RuleType.TIME_OVERLAP,
            severity=ConflictSeverity.ERROR,
            parameters=TimeOverlapParams(),
        ),
        ValidationRule(
            type=RuleType.MAX_HOURS,
            severity=ConflictSeverity.WARNING,
            parameters=MaxHoursParams(
                daily_limit=settings.daily_hour_limit,
                weekly_limit=settings.weekly_hour_limit,
            ),
        ),
        ValidationRule(
            type=RuleType.MINIMUM_BREAK,
            severity=ConflictSeverity.WARNING,
            parameters=MinimumBreakParams(
                minimum_minutes=settings.minimum_break_minutes
            ),
        ),
        ValidationRule(
            type=RuleType.SKILL_MISMATCH,
            severity=ConflictSeverity.ERROR,
            parameters=SkillMismatchParams(),
        ),
        ValidationRule(
            type=RuleType.TRAVEL_TIME,
            severity=ConflictSeverity.WARNING,
            parameters=TravelTimeParams(
                buffer_minutes=settings.travel_buffer_minutes
            ),
        ),
    ]
    return [r for r in rules if r.type not in settings.disabled_rules]


class ConflictDetector:
    """Evaluates a candidate schedule against existing ones.

    Rules run in declaration order. A rule that raises is reported as a single
    error-severity conflict and the remaining rules still run, so
    ``detect_conflicts`` never raises for a well-formed candidate.

    Rule configuration may be shared across request handlers; all reads and
    writes of it go through ``_lock``.
    """

    def __init__(
        self,
        rules: list[ValidationRule] | None = None,
        timezone: str | tzinfo = "UTC",
    ) -> None:
        if rules is None:
            rules = default_rules()
        self._rules = [r.model_copy(deep=True) for r in rules]
        self._tz = tz.gettz(timezone) if isinstance(timezone, str) else timezone
        if self._tz is None:
            raise ValueError(f"Unknown timezone: {timezone}")
        self._lock = threading.Lock()
        self._checks: dict[RuleType, Callable[..., list[ScheduleConflict]]] = {
            RuleType.TIME_OVERLAP: self._check_time_overlap,
            RuleType.MAX_HOURS: self._check_max_hours,
            RuleType.MINIMUM_BREAK: self._check_minimum_break,
            RuleType.SKILL_MISMATCH: self._check_skill_match,
            RuleType.TRAVEL_TIME: self._check_travel_time,
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> ConflictDetector:
        return cls(rules=default_rules(settings), timezone=settings.timezone)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_rules(self) -> list[ValidationRule]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._rules]

    def update_rule(self, rule_type: str, parameters: Mapping[str, Any]) -> None:
        """Shallow-merge *parameters* into the named rule; unknown types are ignored."""
        try:
            kind = RuleType(rule_type)
        except ValueError:
            logger.debug("Ignoring update for unknown rule type %r", rule_type)
            return

        params_cls = RULE_PARAMS[kind]
        with self._lock:
            for index, rule in enumerate(self._rules):
                if rule.type != kind:
                    continue
                merged = {
                    **rule.parameters.model_dump(),
                    **_field_names(params_cls, parameters),
                }
                new_params = params_cls.model_validate(merged)
                self._rules[index] = rule.model_copy(update={"parameters": new_params})
                logger.info("Updated rule %s: %s", kind, new_params.model_dump())
                return
        logger.debug("Rule %s is not active; update ignored", kind)

    def load_company_rules(self, settings: CompanyRuleSettings | None) -> None:
        """Apply a company's stored rule overrides on top of the current rules."""
        if settings is None:
            return
        known = set(RuleType)
        for rule_type, parameters in settings.overrides.items():
            if rule_type not in known:
                logger.warning(
                    "Skipping unknown rule type %r for company %s",
                    rule_type,
                    settings.company_id,
                )
                continue
            try:
                self.update_rule(rule_type, parameters)
            except ValidationError:
                logger.warning(
                    "Rejected %s override for company %s: %s",
                    rule_type,
                    settings.company_id,
                    parameters,
                )

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect_conflicts(
        self, candidate: Schedule, existing_schedules: Iterable[Schedule]
    ) -> list[ScheduleConflict]:
        rules = self.get_rules()
        others = [
            s
            for s in existing_schedules
            if s.id != candidate.id and s.employee_id == candidate.employee_id
        ]

        conflicts: list[ScheduleConflict] = []
        for rule in rules:
            try:
                conflicts.extend(self._checks[rule.type](candidate, others, rule))
            except Exception:
                logger.exception(
                    "Rule %s failed while checking schedule %s", rule.type, candidate.id
                )
                conflicts.append(
                    ScheduleConflict(
                        conflict_id=f"error_{rule.type}_{candidate.id}",
                        type=ConflictType.OVERLAP,
                        severity=ConflictSeverity.ERROR,
                        conflicting_schedules=[candidate.id],
                        employee_id=candidate.employee_id,
                        employee_name=candidate.employee_name,
                        message=f"Error occurred during conflict detection ({rule.type})",
                        suggestions=["Please try again or contact support"],
                    )
                )
        return conflicts

    def _local_date(self, schedule: Schedule) -> date:
        return schedule.start.astimezone(self._tz).date()

    def _check_time_overlap(
        self, candidate: Schedule, others: list[Schedule], rule: ValidationRule
    ) -> list[ScheduleConflict]:
        return [
            ScheduleConflict(
                conflict_id=f"overlap_{candidate.id}_{other.id}",
                type=ConflictType.OVERLAP,
                severity=rule.severity,
                conflicting_schedules=[candidate.id, other.id],
                employee_id=candidate.employee_id,
                employee_name=candidate.employee_name,
                message=f"Schedule overlaps with existing shift at {other.job_site_name}",
                suggestions=[
                    "Adjust start or end time",
                    "Reschedule to different time slot",
                    "Assign to different employee",
                ],
            )
            for other in find_conflicts(candidate, others)
        ]

    def _check_max_hours(
        self, candidate: Schedule, others: list[Schedule], rule: ValidationRule
    ) -> list[ScheduleConflict]:
        params: MaxHoursParams = rule.parameters
        day = self._local_date(candidate)
        total = candidate.duration_minutes + sum(
            s.duration_minutes for s in others if self._local_date(s) == day
        )
        # The weekly limit is carried for reporting; only the daily limit is enforced here.
        if total <= params.daily_limit * 60:
            return []
        return [
            ScheduleConflict(
                conflict_id=f"max_hours_{candidate.id}",
                type=ConflictType.OVERTIME_LIMIT,
                severity=rule.severity,
                conflicting_schedules=[candidate.id],
                employee_id=candidate.employee_id,
                employee_name=candidate.employee_name,
                message=(
                    f"Daily hours exceeded: {_round_hours(total)}h "
                    f"(limit: {params.daily_limit:g}h)"
                ),
                suggestions=[
                    "Reduce shift duration",
                    "Move to different day",
                    "Split into multiple shifts",
                ],
            )
        ]

    def _check_minimum_break(
        self, candidate: Schedule, others: list[Schedule], rule: ValidationRule
    ) -> list[ScheduleConflict]:
        params: MinimumBreakParams = rule.parameters
        conflicts = []
        for other in others:
            gap = break_minutes(other, candidate)
            if gap is None or gap >= params.minimum_minutes:
                continue
            conflicts.append(
                ScheduleConflict(
                    conflict_id=f"break_{candidate.id}_{other.id}",
                    type=ConflictType.INSUFFICIENT_REST,
                    severity=rule.severity,
                    conflicting_schedules=[candidate.id, other.id],
                    employee_id=candidate.employee_id,
                    employee_name=candidate.employee_name,
                    message=(
                        f"Insufficient break time: {_round_hours(gap)}h "
                        f"(minimum: {_round_hours(params.minimum_minutes)}h)"
                    ),
                    suggestions=[
                        "Increase gap between shifts",
                        "Reschedule one of the shifts",
                        "Allow extended break period",
                    ],
                )
            )
        return conflicts

    def _check_skill_match(
        self, candidate: Schedule, others: list[Schedule], rule: ValidationRule
    ) -> list[ScheduleConflict]:
        # Needs employee skill profiles, which are not part of the inputs.
        return []

    def _check_travel_time(
        self, candidate: Schedule, others: list[Schedule], rule: ValidationRule
    ) -> list[ScheduleConflict]:
        # Needs distances between job sites, which are not part of the inputs.
        return []
