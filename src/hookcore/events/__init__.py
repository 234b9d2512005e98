"""Event model, learning bus and observation log."""

from .bus import LearningBus, Subscription, SubscriptionClosed
from .observation_log import ObservationLogWriter, read_observations, tail_observations
from .types import Event, EventKind

__all__ = [
    "Event",
    "EventKind",
    "LearningBus",
    "ObservationLogWriter",
    "Subscription",
    "SubscriptionClosed",
    "read_observations",
    "tail_observations",
]
