"""Failures that abort a whole scheduling operation."""

from __future__ import annotations


class SchedulingError(Exception):
    """Base class for errors surfaced to the immediate caller."""


class TemplateNotFoundError(SchedulingError):
    def __init__(self, template_id: str) -> None:
        super().__init__(f"Template not found: {template_id}")
        self.template_id = template_id


class InvalidRatingError(SchedulingError, ValueError):
    def __init__(self, rating: int) -> None:
        super().__init__(f"Rating must be between 1 and 5, got {rating}")
        self.rating = rating
