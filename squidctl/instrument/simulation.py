"""Simulation potentiostat for development and testing."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Tuple

import numpy as np

from ..data.models import ExperimentDefinition, ExperimentStep
from .base import (
    AC_DATA,
    DC_DATA,
    ELEMENT_STARTING,
    EXPERIMENT_STOPPED,
    PotentiostatInterface,
    UploadResult,
)

logger = logging.getLogger(__name__)

# Error codes reported through UploadResult
BUSY_CODE = 1
TRANSIENT_CODE = 2


class _CellModel:
    """Randles-type electrochemical cell used to synthesise responses."""

    def __init__(
        self,
        rest_potential: float = 0.2,
        solution_resistance: float = 100.0,
        charge_transfer_resistance: float = 1000.0,
        double_layer_capacitance: float = 2e-5,
        formal_potential: float = 0.25,
        peak_current: float = 5e-5,
        peak_width: float = 0.05,
    ) -> None:
        self.rest_potential = rest_potential
        self.solution_resistance = solution_resistance
        self.charge_transfer_resistance = charge_transfer_resistance
        self.double_layer_capacitance = double_layer_capacitance
        self.formal_potential = formal_potential
        self.peak_current = peak_current
        self.peak_width = peak_width

    def open_circuit(self, step: ExperimentStep, rng: np.random.Generator) -> Tuple[np.ndarray, np.ndarray]:
        n = _sample_count(step.duration_s, step.sampling_interval_s)
        voltage = self.rest_potential + rng.normal(0.0, 1e-4, n)
        return voltage, np.zeros(n)

    def chronoamperometry(self, step: ExperimentStep, rng: np.random.Generator) -> Tuple[np.ndarray, np.ndarray]:
        n = _sample_count(step.duration_s, step.sampling_interval_s)
        t = step.sampling_interval_s * np.arange(1, n + 1)
        overpotential = step.voltage - self.rest_potential
        # Cottrell decay on top of the steady-state ohmic current
        steady = overpotential / (self.solution_resistance + self.charge_transfer_resistance)
        current = steady + 1e-5 * overpotential / np.sqrt(t) + rng.normal(0.0, 1e-8, n)
        return np.full(n, step.voltage), current

    def chronopotentiometry(self, step: ExperimentStep, rng: np.random.Generator) -> Tuple[np.ndarray, np.ndarray]:
        n = _sample_count(step.duration_s, step.sampling_interval_s)
        t = step.sampling_interval_s * np.arange(1, n + 1)
        resistance = self.solution_resistance + self.charge_transfer_resistance
        voltage = self.rest_potential + step.current * resistance + 1e-3 * t + rng.normal(0.0, 1e-4, n)
        return voltage, np.full(n, step.current)

    def cyclic_voltammetry(self, step: ExperimentStep, rng: np.random.Generator) -> Tuple[np.ndarray, np.ndarray]:
        dv = step.scan_rate * step.sampling_interval_s
        vertices = [step.start_voltage, step.first_limit, step.second_limit, step.end_voltage]
        voltage = np.concatenate(
            [[vertices[0]]] + [_ramp(a, b, dv) for a, b in zip(vertices[:-1], vertices[1:])]
        )
        direction = np.sign(np.gradient(voltage)) if voltage.size > 1 else np.ones(1)
        capacitive = self.double_layer_capacitance * step.scan_rate * direction
        faradaic = self.peak_current * direction * np.exp(
            -(((voltage - self.formal_potential) / self.peak_width) ** 2)
        )
        current = capacitive + faradaic + rng.normal(0.0, 1e-8, voltage.size)
        return voltage, current

    def impedance(self, frequency: np.ndarray) -> np.ndarray:
        omega = 2 * np.pi * frequency
        rct = self.charge_transfer_resistance
        return self.solution_resistance + rct / (1 + 1j * omega * rct * self.double_layer_capacitance)


def _sample_count(duration_s: float, interval_s: float) -> int:
    return max(1, int(round(duration_s / interval_s)))


def _ramp(start: float, stop: float, step: float) -> np.ndarray:
    count = max(1, int(math.ceil(abs(stop - start) / step)))
    return np.linspace(start, stop, count + 1)[1:]


def _eis_frequencies(step: ExperimentStep) -> np.ndarray:
    decades = abs(math.log10(step.end_frequency) - math.log10(step.start_frequency))
    count = max(1, int(math.ceil(decades * step.steps_per_decade))) + 1
    return np.logspace(math.log10(step.start_frequency), math.log10(step.end_frequency), count)


@dataclass
class _ChannelState:
    uploaded: Optional[ExperimentDefinition] = None
    thread: Optional[threading.Thread] = None
    busy: bool = False
    stop_event: threading.Event = field(default_factory=threading.Event)
    resume_event: threading.Event = field(default_factory=threading.Event)


class SimulationPotentiostat(PotentiostatInterface):
    """Simulated multi-channel potentiostat backed by a Randles cell model.

    Each started channel runs on its own worker thread, so data events
    arrive on that thread just like they would from a real driver.
    """

    def __init__(self, channels: int = 4, time_scale: float = 1.0, seed: Optional[int] = None) -> None:
        super().__init__()
        if channels < 1:
            raise ValueError("Simulation needs at least one channel")
        self._connected = False
        self._channel_total = channels
        self._time_scale = max(0.0, time_scale)
        self._seed = seed
        self._cell = _CellModel()
        self._channels = [_ChannelState() for _ in range(channels)]
        self._lock = threading.Lock()
        self._pending_failures = 0
        self._failure_message = "Device communication error"
        self.upload_calls = 0

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    def connect(self, address: Optional[str] = None) -> bool:
        time.sleep(0.1 * self._time_scale)
        self._connected = True
        return True

    def disconnect(self) -> None:
        for channel in range(self._channel_total):
            self._channels[channel].stop_event.set()
            self._channels[channel].resume_event.set()
        for state in self._channels:
            if state.thread is not None and state.thread is not threading.current_thread():
                state.thread.join(timeout=5)
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    def get_info(self) -> Dict[str, Any]:
        return {
            "manufacturer": "Simulated",
            "model": "POTENTIOSTAT-SIM",
            "serial": "SIM0001",
            "firmware": "1.0.0",
            "channels": self._channel_total,
        }

    def channel_count(self) -> int:
        return self._channel_total

    # ------------------------------------------------------------------
    # Experiment control
    # ------------------------------------------------------------------
    def fail_uploads(self, count: int, message: str = "Device communication error") -> None:
        """Make the next `count` uploads fail with a transient error."""
        with self._lock:
            self._pending_failures = count
            self._failure_message = message

    def upload_experiment(self, channel: int, definition: ExperimentDefinition) -> UploadResult:
        self._require_connected()
        self._check_channel(channel)
        with self._lock:
            self.upload_calls += 1
            state = self._channels[channel]
            if state.busy:
                return UploadResult.failed(f"Channel {channel} is busy", code=BUSY_CODE)
            if self._pending_failures > 0:
                self._pending_failures -= 1
                return UploadResult.failed(self._failure_message, code=TRANSIENT_CODE)
            state.uploaded = definition
        logger.debug("Uploaded '%s' to simulated channel %d", definition.name, channel)
        return UploadResult.ok()

    def start_experiment(self, channel: int) -> None:
        self._require_connected()
        self._check_channel(channel)
        with self._lock:
            state = self._channels[channel]
            if state.uploaded is None:
                raise RuntimeError(f"No experiment uploaded to channel {channel}")
            if state.busy:
                raise RuntimeError(f"Channel {channel} is busy")
            state.busy = True
            state.stop_event.clear()
            state.resume_event.set()
            state.thread = threading.Thread(
                target=self._run_channel,
                args=(channel, state.uploaded),
                name=f"sim-channel-{channel}",
                daemon=True,
            )
            state.thread.start()

    def stop_experiment(self, channel: int) -> None:
        self._require_connected()
        self._check_channel(channel)
        state = self._channels[channel]
        if not state.busy:
            logger.debug("Stop requested on idle channel %d", channel)
            return
        state.stop_event.set()
        state.resume_event.set()

    def pause_experiment(self, channel: int) -> None:
        self._require_connected()
        self._check_channel(channel)
        if not self._channels[channel].busy:
            raise RuntimeError(f"No experiment running on channel {channel}")
        self._channels[channel].resume_event.clear()

    def resume_experiment(self, channel: int) -> None:
        self._require_connected()
        self._check_channel(channel)
        self._channels[channel].resume_event.set()

    def is_channel_busy(self, channel: int) -> bool:
        self._check_channel(channel)
        return self._channels[channel].busy

    # ------------------------------------------------------------------
    # Data generation
    # ------------------------------------------------------------------
    def _run_channel(self, channel: int, definition: ExperimentDefinition) -> None:
        state = self._channels[channel]
        seed = None if self._seed is None else self._seed + channel
        rng = np.random.default_rng(seed)
        elapsed = 0.0
        reason = "completed"
        try:
            for step_number, step, substep in _expand(definition):
                self._emit(
                    ELEMENT_STARTING,
                    channel,
                    {"step_name": step.label, "step_number": step_number, "substep_number": substep},
                )
                for event, payload in self._generate(step, step_number, rng):
                    state.resume_event.wait()
                    if state.stop_event.is_set():
                        reason = "stopped"
                        return
                    elapsed += step.sampling_interval_s
                    payload["timestamp"] = elapsed
                    self._emit(event, channel, payload)
                    if self._time_scale:
                        time.sleep(step.sampling_interval_s * self._time_scale)
        except Exception as exc:
            reason = f"error: {exc}"
            logger.exception("Simulated channel %d failed", channel)
        finally:
            with self._lock:
                state.busy = False
            self._emit(EXPERIMENT_STOPPED, channel, {"reason": reason})

    def _generate(
        self, step: ExperimentStep, step_number: int, rng: np.random.Generator
    ) -> Iterator[Tuple[str, Dict[str, Any]]]:
        if step.kind == "eis_potentiostatic":
            frequency = _eis_frequencies(step)
            impedance = self._cell.impedance(frequency)
            for f, z in zip(frequency, impedance):
                yield AC_DATA, {
                    "frequency": float(f),
                    "absolute_impedance": float(abs(z)),
                    "real_impedance": float(z.real),
                    "imaginary_impedance": float(z.imag),
                    "phase_angle": float(np.degrees(np.angle(z))),
                    "step_number": step_number,
                }
            return

        generators = {
            "open_circuit": self._cell.open_circuit,
            "constant_potential": self._cell.chronoamperometry,
            "constant_current": self._cell.chronopotentiometry,
            "cyclic_voltammetry": self._cell.cyclic_voltammetry,
        }
        voltage, current = generators[step.kind](step, rng)
        temperature = 25.0 + rng.normal(0.0, 0.05, voltage.size)
        for v, i, temp in zip(voltage, current, temperature):
            yield DC_DATA, {
                "working_electrode_voltage": float(v),
                "counter_electrode_voltage": float(-v),
                "current": float(i),
                "temperature": float(temp),
                "step_number": step_number,
            }

    def _require_connected(self) -> None:
        if not self._connected:
            raise RuntimeError("Potentiostat not connected")


def _expand(definition: ExperimentDefinition) -> Iterator[Tuple[int, ExperimentStep, int]]:
    for step_number, step in enumerate(definition.steps, start=1):
        for substep in range(1, step.repeats + 1):
            yield step_number, step, substep
