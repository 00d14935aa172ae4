"""Admiral Instruments Squidstat driver built on SquidstatPyLibrary."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

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


class Squidstat(PotentiostatInterface):
    """Squidstat potentiostat driver.

    The vendor library delivers every signal through the Qt event loop, so
    nothing arrives unless :meth:`poll` runs regularly on the thread that
    created the driver.
    """

    def __init__(
        self,
        channels: int = 1,
        connect_timeout: float = 10.0,
        library: Any = None,
        qt_core: Any = None,
    ) -> None:
        super().__init__()
        if library is None:
            try:
                import SquidstatPyLibrary as library  # type: ignore[no-redef]
            except ImportError as exc:
                raise RuntimeError(
                    "SquidstatPyLibrary is not installed; install squidctl[squidstat]"
                ) from exc
        if qt_core is None:
            from PySide6 import QtCore as qt_core  # type: ignore[no-redef]

        self._lib = library
        self._qt_core = qt_core
        self._app = qt_core.QCoreApplication.instance() or qt_core.QCoreApplication([])
        self._channel_total = channels
        self._connect_timeout = connect_timeout
        self._tracker = None
        self._handler = None
        self._device_name: Optional[str] = None
        self._port: Optional[str] = None
        self._uploaded: Dict[int, bool] = {}
        self._running: Dict[int, bool] = {}

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    def connect(self, address: Optional[str] = None) -> bool:
        """Connect to a Squidstat on a serial port.

        Args:
            address: Serial port name (e.g., 'COM19' or '/dev/ttyACM0')
        """
        if address is None:
            raise ValueError("COM port required for Squidstat connection")

        self._tracker = self._lib.AisDeviceTracker.Instance()
        self._tracker.newDeviceConnected.connect(self._on_device_connected)
        error = self._tracker.connectToDeviceOnComPort(address)
        if error is not None and not _is_success(error):
            raise RuntimeError(f"Failed to connect to Squidstat on {address}: {_message(error)}")

        deadline = time.monotonic() + self._connect_timeout
        while self._device_name is None and time.monotonic() < deadline:
            self.poll()
            time.sleep(0.01)
        if self._device_name is None:
            raise TimeoutError(f"No Squidstat announced itself on {address}")

        self._handler = self._tracker.getInstrumentHandler(self._device_name)
        self._handler.activeDCDataReady.connect(self._on_dc_data)
        self._handler.activeACDataReady.connect(self._on_ac_data)
        self._handler.experimentNewElementStarting.connect(self._on_element_starting)
        self._handler.experimentStopped.connect(self._on_experiment_stopped)
        self._port = address
        logger.info("Connected to Squidstat %s on %s", self._device_name, address)
        return True

    def disconnect(self) -> None:
        if self._handler is not None:
            for channel, running in list(self._running.items()):
                if running:
                    try:
                        self._handler.stopExperiment(channel)
                    except Exception as exc:
                        logger.warning("Error stopping channel %d during disconnect: %s", channel, exc)
        if self._tracker is not None and self._port is not None:
            release = getattr(self._tracker, "disconnectFromDeviceOnComPort", None)
            if release is not None:
                release(self._port)
        self._handler = None
        self._device_name = None
        self._port = None
        self._uploaded.clear()
        self._running.clear()

    def is_connected(self) -> bool:
        return self._handler is not None

    def get_info(self) -> Dict[str, Any]:
        if not self.is_connected():
            raise RuntimeError("Squidstat not connected")
        return {
            "manufacturer": "Admiral Instruments",
            "model": "Squidstat",
            "serial": self._device_name,
            "firmware": "Unknown",
            "channels": self._channel_total,
            "port": self._port,
        }

    def channel_count(self) -> int:
        return self._channel_total

    def poll(self) -> None:
        self._app.processEvents()

    # ------------------------------------------------------------------
    # Experiment control
    # ------------------------------------------------------------------
    def upload_experiment(self, channel: int, definition: ExperimentDefinition) -> UploadResult:
        handler = self._require_handler()
        self._check_channel(channel)
        if self._running.get(channel):
            return UploadResult.failed(f"Channel {channel} is busy", code=1)

        experiment = self.build_experiment(definition)
        error = handler.uploadExperimentToChannel(channel, experiment)
        if not _is_success(error):
            return UploadResult.failed(_message(error), code=_value(error))
        self._uploaded[channel] = True
        return UploadResult.ok()

    def build_experiment(self, definition: ExperimentDefinition) -> Any:
        """Translate a definition into an AisExperiment."""

        experiment = self._lib.AisExperiment()
        for step in definition.steps:
            experiment.appendElement(self._build_element(step), step.repeats)
        return experiment

    def start_experiment(self, channel: int) -> None:
        handler = self._require_handler()
        self._check_channel(channel)
        if not self._uploaded.get(channel):
            raise RuntimeError(f"No experiment uploaded to channel {channel}")
        if self._running.get(channel):
            raise RuntimeError(f"Channel {channel} is busy")
        error = handler.startUploadedExperiment(channel)
        if error is not None and not _is_success(error):
            raise RuntimeError(f"Failed to start channel {channel}: {_message(error)}")
        self._running[channel] = True

    def stop_experiment(self, channel: int) -> None:
        handler = self._require_handler()
        self._check_channel(channel)
        if not self._running.get(channel):
            logger.debug("Stop requested on idle channel %d", channel)
            return
        handler.stopExperiment(channel)

    def pause_experiment(self, channel: int) -> None:
        handler = self._require_handler()
        self._check_channel(channel)
        if not self._running.get(channel):
            raise RuntimeError(f"No experiment running on channel {channel}")
        handler.pauseExperiment(channel)

    def resume_experiment(self, channel: int) -> None:
        handler = self._require_handler()
        self._check_channel(channel)
        handler.resumeExperiment(channel)

    def is_channel_busy(self, channel: int) -> bool:
        self._check_channel(channel)
        return bool(self._running.get(channel))

    # ------------------------------------------------------------------
    # Element translation
    # ------------------------------------------------------------------
    def _build_element(self, step: ExperimentStep) -> Any:
        lib = self._lib
        if step.kind == "open_circuit":
            return lib.AisOpenCircuitElement(step.duration_s, step.sampling_interval_s)
        if step.kind == "constant_potential":
            return lib.AisConstantPotElement(step.voltage, step.sampling_interval_s, step.duration_s)
        if step.kind == "constant_current":
            return lib.AisConstantCurrentElement(step.current, step.sampling_interval_s, step.duration_s)
        if step.kind == "cyclic_voltammetry":
            return lib.AisCyclicVoltammetryElement(
                step.start_voltage,
                step.first_limit,
                step.second_limit,
                step.end_voltage,
                step.scan_rate,
                step.sampling_interval_s,
            )
        if step.kind == "eis_potentiostatic":
            return lib.AisEISPotentiostaticElement(
                step.start_frequency,
                step.end_frequency,
                step.steps_per_decade,
                step.bias_voltage,
                step.amplitude,
            )
        raise ValueError(f"Unsupported step kind: {step.kind}")

    # ------------------------------------------------------------------
    # Signal slots
    # ------------------------------------------------------------------
    def _on_device_connected(self, device_name: str) -> None:
        logger.debug("Device tracker reported %s", device_name)
        if self._device_name is None:
            self._device_name = device_name

    def _on_dc_data(self, channel: int, data: Any) -> None:
        self._emit(DC_DATA, channel, {
            "timestamp": data.timestamp,
            "working_electrode_voltage": data.workingElectrodeVoltage,
            "counter_electrode_voltage": getattr(data, "counterElectrodeVoltage", 0.0),
            "current": data.current,
            "temperature": getattr(data, "temperature", None),
        })

    def _on_ac_data(self, channel: int, data: Any) -> None:
        self._emit(AC_DATA, channel, {
            "timestamp": data.timestamp,
            "frequency": data.frequency,
            "absolute_impedance": data.absoluteImpedance,
            "real_impedance": data.realImpedance,
            "imaginary_impedance": data.imagImpedance,
            "phase_angle": data.phaseAngle,
        })

    def _on_element_starting(self, channel: int, data: Any) -> None:
        self._emit(ELEMENT_STARTING, channel, {
            "step_name": data.stepName,
            "step_number": data.stepNumber,
            "substep_number": data.substepNumber,
        })

    def _on_experiment_stopped(self, channel: int, *args: Any) -> None:
        self._running[channel] = False
        reason = str(args[0]) if args else "completed"
        self._emit(EXPERIMENT_STOPPED, channel, {"reason": reason})

    def _require_handler(self) -> Any:
        if self._handler is None:
            raise RuntimeError("Squidstat not connected")
        return self._handler


def _value(error: Any) -> int:
    value = error.value
    return int(value() if callable(value) else value)


def _message(error: Any) -> str:
    message = error.message
    return str(message() if callable(message) else message)


def _is_success(error: Any) -> bool:
    return _value(error) == 0
