"""Domain event handlers, registered on the bus at application startup."""

from __future__ import annotations

import logging

from geowork.domain.bus import EventBus
from geowork.domain.events import (
    ConflictsDetected,
    TemplateApplied,
    TemplateCreated,
    TemplateDeleted,
)
from geowork.domain.models import TemplateAnalytics
from geowork.repos.memory import TemplateAnalyticsRepository, TemplateRepository

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Wires domain-event handlers to the bus with access to the template stores."""

    def __init__(
        self,
        bus: EventBus,
        template_repo: TemplateRepository,
        analytics_repo: TemplateAnalyticsRepository,
    ) -> None:
        self.bus = bus
        self.template_repo = template_repo
        self.analytics_repo = analytics_repo
        self._register()

    def _register(self) -> None:
        self.bus.subscribe(TemplateCreated, self.on_template_created)
        self.bus.subscribe(TemplateApplied, self.on_template_applied)
        self.bus.subscribe(TemplateDeleted, self.on_template_deleted)
        self.bus.subscribe(ConflictsDetected, self.on_conflicts_detected)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def on_template_created(self, event: TemplateCreated) -> None:
        self.analytics_repo.add(TemplateAnalytics(template_id=event.template_id))
        logger.info("Template analytics initialized for %s", event.template_id)

    def on_template_applied(self, event: TemplateApplied) -> None:
        # 1. Usage counter on the template itself
        template = self.template_repo.increment(
            event.template_id,
            {"usage_count": 1},
            last_used=event.applied_at,
            updated_at=event.applied_at,
        )
        if template is None:
            return

        # 2. Analytics document, created on demand if it went missing
        if self.analytics_repo.add_if_absent(
            TemplateAnalytics(template_id=event.template_id)
        ):
            logger.info("Analytics for %s not found, created it", event.template_id)
        self.analytics_repo.increment(
            event.template_id,
            {"total_usage": 1, "created_schedules_count": event.schedules_created},
            last_used=event.applied_at,
            updated_at=event.applied_at,
        )

    def on_template_deleted(self, event: TemplateDeleted) -> None:
        if event.permanent:
            self.analytics_repo.delete(event.template_id)

    def on_conflicts_detected(self, event: ConflictsDetected) -> None:
        logger.warning(
            "Schedule %s for employee %s has %d conflict(s): %s",
            event.schedule_id,
            event.employee_id,
            len(event.conflict_ids),
            ", ".join(event.conflict_ids),
        )
