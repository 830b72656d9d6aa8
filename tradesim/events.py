"""Typed lifecycle and progress events.

Components publish discrete event objects on a caller-owned ``EventBus``.
Observers (a UI, a logger, a test) subscribe per event class. Handler
exceptions are logged and never propagate into the run that emitted them.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, DefaultDict, Dict, List, Optional, Type
import logging
import threading


@dataclass(frozen=True)
class Event:
    """Base class for all events."""


@dataclass(frozen=True)
class DataLoadStarted(Event):
    symbol: str
    resolution: str
    start: datetime
    end: datetime


@dataclass(frozen=True)
class DataLoadProgress(Event):
    symbol: str
    progress: float  # 0.0 - 1.0
    candles_loaded: int


@dataclass(frozen=True)
class DataLoaded(Event):
    symbol: str
    candles: int
    first_timestamp: Optional[datetime]
    last_timestamp: Optional[datetime]
    from_cache: bool = False


@dataclass(frozen=True)
class RunStarted(Event):
    strategy: str
    total_steps: int


@dataclass(frozen=True)
class RunProgress(Event):
    strategy: str
    step: int
    total_steps: int
    equity: float

    @property
    def progress(self) -> float:
        return self.step / self.total_steps if self.total_steps else 1.0


@dataclass(frozen=True)
class TradeCompleted(Event):
    trade: Any


@dataclass(frozen=True)
class RunCompleted(Event):
    strategy: str
    total_trades: int
    final_equity: float


@dataclass(frozen=True)
class RunFailed(Event):
    strategy: str
    step: int
    error: str


@dataclass(frozen=True)
class OptimizationProgress(Event):
    completed: int
    total: int
    parameters: Dict[str, Any]
    score: Optional[float]


@dataclass(frozen=True)
class OptimizationCompleted(Event):
    total: int
    failed: int
    best_parameters: Optional[Dict[str, Any]]
    best_score: Optional[float]


@dataclass(frozen=True)
class MonteCarloProgress(Event):
    completed: int
    total: int


@dataclass(frozen=True)
class WalkForwardWindowCompleted(Event):
    index: int
    total: int
    parameters: Optional[Dict[str, Any]]
    out_of_sample_return: Optional[float]


Handler = Callable[[Event], None]


class EventBus:
    """Synchronous publish/subscribe dispatcher keyed by event class.

    Subscribing to ``Event`` receives every event.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._subscribers: DefaultDict[Type[Event], List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()
        self.logger = logger or logging.getLogger(__name__)

    def subscribe(self, event_type: Type[Event], handler: Handler) -> Callable[[], None]:
        """Register a handler.

        Args:
            event_type: Event class to listen for (subclasses included)
            handler: Callable receiving the event

        Returns:
            Function that removes the subscription
        """
        with self._lock:
            self._subscribers[event_type].append(handler)

        def unsubscribe():
            with self._lock:
                if handler in self._subscribers[event_type]:
                    self._subscribers[event_type].remove(handler)

        return unsubscribe

    def emit(self, event: Event):
        """Dispatch an event to every matching handler."""
        with self._lock:
            handlers = [
                handler
                for event_type, registered in self._subscribers.items()
                if isinstance(event, event_type)
                for handler in registered
            ]

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                self.logger.exception(f"Event handler failed for {type(event).__name__}")


class CancellationToken:
    """Advisory cancellation flag checked between independent sub-runs."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def emit(bus: Optional[EventBus], event: Event):
    """Emit on ``bus`` when one is configured."""
    if bus is not None:
        bus.emit(event)
