"""Models for experiments, streamed data and run records."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

import yaml
from pydantic import BaseModel, Field, model_validator

StepKind = Literal[
    "open_circuit",
    "constant_potential",
    "constant_current",
    "cyclic_voltammetry",
    "eis_potentiostatic",
]

RunStatus = Literal[
    "pending",
    "uploading",
    "running",
    "paused",
    "completed",
    "stopped",
    "failed",
    "timed_out",
]

FINAL_STATUSES = ("completed", "stopped", "failed", "timed_out")

_REQUIRED_PARAMETERS: Dict[str, tuple] = {
    "open_circuit": ("duration_s",),
    "constant_potential": ("voltage", "duration_s"),
    "constant_current": ("current", "duration_s"),
    "cyclic_voltammetry": ("start_voltage", "first_limit", "second_limit", "end_voltage", "scan_rate"),
    "eis_potentiostatic": ("start_frequency", "end_frequency", "bias_voltage", "amplitude"),
}


class ExperimentStep(BaseModel):
    """A single element of an experiment, repeated `repeats` times."""

    kind: StepKind
    repeats: int = Field(1, ge=1)
    sampling_interval_s: float = Field(0.1, gt=0, description="Time between DC samples")

    duration_s: Optional[float] = Field(None, gt=0)
    voltage: Optional[float] = Field(None, description="Applied potential in V")
    current: Optional[float] = Field(None, description="Applied current in A")

    start_voltage: Optional[float] = None
    first_limit: Optional[float] = None
    second_limit: Optional[float] = None
    end_voltage: Optional[float] = None
    scan_rate: Optional[float] = Field(None, gt=0, description="Sweep rate in V/s")

    start_frequency: Optional[float] = Field(None, gt=0, description="Hz")
    end_frequency: Optional[float] = Field(None, gt=0, description="Hz")
    steps_per_decade: int = Field(10, ge=1)
    bias_voltage: Optional[float] = None
    amplitude: Optional[float] = Field(None, gt=0, description="AC amplitude in V")

    @model_validator(mode="after")
    def _check_parameters(self) -> "ExperimentStep":
        missing = [name for name in _REQUIRED_PARAMETERS[self.kind] if getattr(self, name) is None]
        if missing:
            raise ValueError(f"{self.kind} step requires: {', '.join(missing)}")
        return self

    @property
    def label(self) -> str:
        return self.kind.replace("_", " ").title()


class ExperimentDefinition(BaseModel):
    """An ordered list of steps uploaded to one channel."""

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    steps: List[ExperimentStep] = Field(..., min_length=1)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ExperimentDefinition":
        """Load a definition from a YAML file."""

        with Path(path).open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
        if not isinstance(payload, dict):
            raise ValueError(f"Experiment file {path} must contain a mapping")
        return cls.model_validate(payload)


class DCDataPoint(BaseModel):
    timestamp: float
    working_electrode_voltage: float
    counter_electrode_voltage: float = 0.0
    current: float
    temperature: Optional[float] = None
    step_number: int = 0


class ACDataPoint(BaseModel):
    timestamp: float
    frequency: float
    absolute_impedance: float
    real_impedance: float
    imaginary_impedance: float
    phase_angle: float
    step_number: int = 0


class ExperimentRecord(BaseModel):
    """Metadata describing one experiment run on one channel."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    device: str
    channel: int = Field(..., ge=0)
    definition: ExperimentDefinition
    status: RunStatus = "pending"
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    dc_points: int = 0
    ac_points: int = 0
    upload_attempts: int = 0
    data_files: Dict[str, Path] = Field(default_factory=dict)
    metadata_path: Optional[Path] = None
    instrument_info: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @property
    def base_name(self) -> str:
        """Return the file stem shared by every file of this run."""

        timestamp = self.timestamp.strftime("%Y%m%d_%H%M%S")
        return f"exp_{timestamp}_{self.id[:8]}"

    @property
    def is_finished(self) -> bool:
        return self.status in FINAL_STATUSES
