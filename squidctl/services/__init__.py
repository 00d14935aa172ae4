"""Business logic services."""

from .device_manager import DeviceManager
from .retry import RetryPolicy, UploadError, call_with_retry
from .coordinator import ExperimentCoordinator, ExperimentRun, RunRequest
from .remote import RemoteControlServer

__all__ = [
    "DeviceManager",
    "RetryPolicy",
    "UploadError",
    "call_with_retry",
    "ExperimentCoordinator",
    "ExperimentRun",
    "RunRequest",
    "RemoteControlServer",
]
