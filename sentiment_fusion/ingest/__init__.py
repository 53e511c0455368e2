"""Ingestion boundary: payload normalization and partition queues."""

from .normalizer import ObservationNormalizer, validate_range, to_epoch_ms  # noqa: F401
from .queue import CoalescingQueue, PutOutcome  # noqa: F401
