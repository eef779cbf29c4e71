"""
Notifications emitted by the accounting engine.

Events are delivered to an injected sink after the corresponding write
has committed. Delivery is fire-and-forget: the engine does not wait for
or inspect any acknowledgment.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, List, Protocol, Type, TypeVar, Union

from ..storage.models import Quota, UsageRecord
from .catalog import Feature, Subject

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageRecorded:
    """A usage amount was written to the ledger."""
    subject: Subject
    feature: Feature
    amount: Decimal
    usage: UsageRecord


@dataclass(frozen=True)
class QuotaWarning:
    """Usage crossed one of the configured warning thresholds."""
    subject: Subject
    feature: Feature
    threshold: int
    quota: Quota


@dataclass(frozen=True)
class QuotaExceeded:
    """A request was rejected because it did not fit the quota."""
    subject: Subject
    feature: Feature
    quota: Quota


Event = Union[UsageRecorded, QuotaWarning, QuotaExceeded]
E = TypeVar("E")


class EventSink(Protocol):
    def emit(self, event: Event) -> None:
        ...


class NullSink:
    """Discards every event."""

    def emit(self, event: Event) -> None:
        pass


class CollectingSink:
    """Keeps emitted events in memory, in order."""

    def __init__(self):
        self.events: List[Event] = []

    def emit(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, event_type: Type[E]) -> List[E]:
        return [event for event in self.events if isinstance(event, event_type)]

    def clear(self) -> None:
        self.events.clear()


class LoggingSink:
    """Writes events to the log."""

    def __init__(self, log: logging.Logger = logger):
        self.log = log

    def emit(self, event: Event) -> None:
        subject = f"{event.subject.type_tag()}:{event.subject.id()}"
        if isinstance(event, QuotaExceeded):
            self.log.warning(
                "Quota exceeded for %s on %s (used %s of %s)",
                subject, event.feature.slug, event.quota.used, event.quota.limit
            )
        elif isinstance(event, QuotaWarning):
            self.log.warning(
                "Quota for %s on %s reached %s%% (used %s of %s)",
                subject, event.feature.slug, event.threshold,
                event.quota.used, event.quota.limit
            )
        else:
            self.log.info(
                "Recorded %s %s of %s for %s",
                event.amount, event.feature.unit or "units", event.feature.slug, subject
            )


class CallbackSink:
    """Forwards events to every registered callback."""

    def __init__(self, *callbacks: Callable[[Event], None]):
        self.callbacks = list(callbacks)

    def subscribe(self, callback: Callable[[Event], None]) -> None:
        self.callbacks.append(callback)

    def emit(self, event: Event) -> None:
        for callback in self.callbacks:
            callback(event)
