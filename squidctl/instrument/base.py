"""Abstract base class for potentiostat instruments."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..data.models import ExperimentDefinition

logger = logging.getLogger(__name__)

DC_DATA = "dc_data"
AC_DATA = "ac_data"
ELEMENT_STARTING = "element_starting"
EXPERIMENT_STOPPED = "experiment_stopped"

EVENTS = (DC_DATA, AC_DATA, ELEMENT_STARTING, EXPERIMENT_STOPPED)

EventCallback = Callable[[int, Dict[str, Any]], None]


@dataclass(frozen=True)
class UploadResult:
    """Outcome of uploading an experiment to a channel."""

    success: bool
    code: int = 0
    message: str = "Success"

    @classmethod
    def ok(cls) -> "UploadResult":
        return cls(True)

    @classmethod
    def failed(cls, message: str, code: int = -1) -> "UploadResult":
        return cls(False, code, message)


class PotentiostatInterface(ABC):
    """Abstract interface for multi-channel potentiostats.

    Data arrives asynchronously through :meth:`subscribe`. Callbacks are
    invoked on whatever thread the driver delivers events on and receive
    ``(channel, payload)``.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[EventCallback]] = {name: [] for name in EVENTS}
        self._subscribers_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Event delivery
    # ------------------------------------------------------------------
    def subscribe(self, event: str, callback: EventCallback) -> None:
        """Register a callback for one of :data:`EVENTS`."""
        if event not in self._subscribers:
            raise ValueError(f"Unknown event: {event}")
        with self._subscribers_lock:
            self._subscribers[event].append(callback)

    def unsubscribe(self, event: str, callback: EventCallback) -> None:
        if event not in self._subscribers:
            raise ValueError(f"Unknown event: {event}")
        with self._subscribers_lock:
            if callback in self._subscribers[event]:
                self._subscribers[event].remove(callback)

    def _emit(self, event: str, channel: int, payload: Dict[str, Any]) -> None:
        with self._subscribers_lock:
            callbacks = list(self._subscribers[event])
        for callback in callbacks:
            try:
                callback(channel, payload)
            except Exception:
                logger.exception("Subscriber for %s on channel %d failed", event, channel)

    def poll(self) -> None:
        """Process pending driver events. Drivers without an event loop do nothing."""

    def _check_channel(self, channel: int) -> None:
        if not 0 <= channel < self.channel_count():
            raise ValueError(f"Channel {channel} out of range (0-{self.channel_count() - 1})")

    # ------------------------------------------------------------------
    # Driver operations
    # ------------------------------------------------------------------
    @abstractmethod
    def connect(self, address: Optional[str] = None) -> bool:
        """Connect to the instrument.

        Args:
            address: Serial port (e.g. 'COM3') or None where the driver does not need one

        Returns:
            True if connection successful
        """

    @abstractmethod
    def disconnect(self) -> None:
        """Disconnect from the instrument."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if instrument is connected."""

    @abstractmethod
    def get_info(self) -> Dict[str, Any]:
        """Get instrument identification information.

        Returns:
            Dictionary with manufacturer, model, serial, firmware, channels keys
        """

    @abstractmethod
    def channel_count(self) -> int:
        """Return the number of channels on the instrument."""

    @abstractmethod
    def upload_experiment(self, channel: int, definition: ExperimentDefinition) -> UploadResult:
        """Upload an experiment to a channel without starting it.

        A busy channel or a transient driver error is reported through the
        returned result rather than raised.
        """

    @abstractmethod
    def start_experiment(self, channel: int) -> None:
        """Start the experiment previously uploaded to a channel."""

    @abstractmethod
    def stop_experiment(self, channel: int) -> None:
        """Stop a running experiment."""

    @abstractmethod
    def pause_experiment(self, channel: int) -> None:
        """Pause a running experiment."""

    @abstractmethod
    def resume_experiment(self, channel: int) -> None:
        """Resume a paused experiment."""

    @abstractmethod
    def is_channel_busy(self, channel: int) -> bool:
        """Return True while an experiment runs on the channel."""
