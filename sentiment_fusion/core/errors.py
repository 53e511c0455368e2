"""Exception taxonomy for the sentiment fusion core.

Only boundary problems are exceptions. Staleness, missing data, out-of-order
and duplicate observations are ordinary outcomes and never raise.
"""
from __future__ import annotations


class SentimentFusionError(Exception):
    """Base class for all package errors."""
    pass


class ConfigError(SentimentFusionError):
    """Configuration could not be loaded or failed validation."""
    pass


class ObservationValidationError(SentimentFusionError):
    """Malformed or out-of-range observation rejected at ingestion."""

    def __init__(self, message: str, *, source: str | None = None, entity: str | None = None):
        super().__init__(message)
        self.source = source
        self.entity = entity


class FusionInputError(SentimentFusionError):
    """Fusion received input that should have been rejected upstream."""
    pass


class PublishError(SentimentFusionError):
    """A sink failed to deliver; the publisher decides whether to retry."""
    pass


__all__ = [
    "SentimentFusionError",
    "ConfigError",
    "ObservationValidationError",
    "FusionInputError",
    "PublishError",
]
