"""Live service layer: partitioned workers, publisher and metrics.

`SentimentFusionService` is the entry point; it owns the partition
queues and workers and hands alerts to the `Publisher`.
"""

from .metrics import Metrics  # noqa: F401
from .publisher import Publisher  # noqa: F401
from .service import SentimentFusionService  # noqa: F401

__all__ = [
    "SentimentFusionService",
    "Publisher",
    "Metrics",
]
