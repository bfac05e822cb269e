"""In-memory repositories standing in for the document store."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from geowork.domain.models import (
    CompanyRuleSettings,
    Employee,
    JobSite,
    Schedule,
    ScheduleTemplate,
    TemplateAnalytics,
    TemplateRating,
)

T = TypeVar("T", bound=BaseModel)


class DocumentRepository(Generic[T]):
    """Dict-backed collection of documents keyed by id."""

    id_field = "id"

    def __init__(self) -> None:
        self._store: dict[str, T] = {}
        self._lock = threading.RLock()

    def add(self, document: T) -> str:
        doc_id = getattr(document, self.id_field)
        with self._lock:
            self._store[doc_id] = document
        return doc_id

    def add_if_absent(self, document: T) -> bool:
        """Store *document* unless its id is taken; True if it was stored."""
        doc_id = getattr(document, self.id_field)
        with self._lock:
            if doc_id in self._store:
                return False
            self._store[doc_id] = document
            return True

    def get(self, doc_id: str) -> T | None:
        return self._store.get(doc_id)

    def update(self, doc_id: str, **fields: Any) -> T | None:
        """Merge *fields* into the stored document and revalidate it.

        Returns None if the document is missing.
        """
        with self._lock:
            current = self._store.get(doc_id)
            if current is None:
                return None
            updated = type(current).model_validate({**current.model_dump(), **fields})
            self._store[doc_id] = updated
            return updated

    def increment(
        self, doc_id: str, counters: Mapping[str, int], **fields: Any
    ) -> T | None:
        """Add *counters* to numeric fields and set *fields* in one step.

        Returns None if the document is missing.
        """
        with self._lock:
            current = self._store.get(doc_id)
            if current is None:
                return None
            data = current.model_dump()
            for name, by in counters.items():
                data[name] += by
            data.update(fields)
            updated = type(current).model_validate(data)
            self._store[doc_id] = updated
            return updated

    def delete(self, doc_id: str) -> None:
        with self._lock:
            self._store.pop(doc_id, None)

    def list_all(self) -> list[T]:
        return list(self._store.values())


class ScheduleRepository(DocumentRepository[Schedule]):
    def list_for_employee(self, employee_id: str) -> list[Schedule]:
        return sorted(
            (s for s in self._store.values() if s.employee_id == employee_id),
            key=lambda s: s.start,
        )


class TemplateRepository(DocumentRepository[ScheduleTemplate]):
    def list_for_company(self, company_id: str) -> list[ScheduleTemplate]:
        return [t for t in self._store.values() if t.company_id == company_id]


class EmployeeRepository(DocumentRepository[Employee]):
    pass


class JobSiteRepository(DocumentRepository[JobSite]):
    pass


class TemplateAnalyticsRepository(DocumentRepository[TemplateAnalytics]):
    """Analytics documents share their template's id."""

    id_field = "template_id"


class TemplateRatingRepository(DocumentRepository[TemplateRating]):
    def list_for_template(self, template_id: str) -> list[TemplateRating]:
        return [r for r in self._store.values() if r.template_id == template_id]


class CompanyRuleSettingsRepository(DocumentRepository[CompanyRuleSettings]):
    id_field = "company_id"
