"""Data models, persistence and streaming sinks."""

from .models import (
    ACDataPoint,
    DCDataPoint,
    ExperimentDefinition,
    ExperimentRecord,
    ExperimentStep,
)
from .repository import ExperimentRepository
from .sinks import CsvSink, DataSink, SinkDispatcher, TcpFanoutSink

__all__ = [
    "ACDataPoint",
    "DCDataPoint",
    "ExperimentDefinition",
    "ExperimentRecord",
    "ExperimentStep",
    "ExperimentRepository",
    "CsvSink",
    "DataSink",
    "SinkDispatcher",
    "TcpFanoutSink",
]
