"""Device management service."""

from typing import Any, Dict, Optional
import logging

from ..config import settings
from ..instrument import PotentiostatInterface, SimulationPotentiostat, Squidstat

logger = logging.getLogger(__name__)


class DeviceManager:
    """Manages named potentiostat connections.

    `simulation_options` and `squidstat_options` are passed to the driver
    constructors. Squidstat drivers default to `settings.device.channels`.
    """

    def __init__(
        self,
        simulation_options: Optional[Dict[str, Any]] = None,
        squidstat_options: Optional[Dict[str, Any]] = None,
    ):
        self._devices: Dict[str, PotentiostatInterface] = {}
        self._device_info: Dict[str, Dict[str, Any]] = {}
        self._simulation_options = simulation_options or {}
        self._squidstat_options = squidstat_options or {}

    @property
    def names(self) -> list:
        return list(self._devices)

    def get(self, name: str) -> PotentiostatInterface:
        """Return the connected device registered under `name`."""
        try:
            return self._devices[name]
        except KeyError:
            raise KeyError(f"No device named '{name}'") from None

    def is_connected(self, name: str) -> bool:
        device = self._devices.get(name)
        return device is not None and device.is_connected()

    def connect(
        self,
        name: str,
        instrument_type: str = "auto",
        address: Optional[str] = None,
    ) -> PotentiostatInterface:
        """Connect to a potentiostat and register it under `name`.

        Args:
            name: Label used to address the device from the coordinator
            instrument_type: 'squidstat', 'simulation', or 'auto'
            address: Serial port for real instruments

        Returns:
            The connected device
        """
        # Disconnect existing connection
        if name in self._devices:
            self.disconnect(name)

        # Determine instrument type
        if instrument_type == "auto":
            if settings.simulation_mode:
                instrument_type = "simulation"
            else:
                instrument_type = "squidstat"

        device: Optional[PotentiostatInterface] = None
        try:
            if instrument_type == "simulation":
                device = SimulationPotentiostat(**self._simulation_options)
                success = device.connect()
                connect_address = "SIMULATION"
            elif instrument_type == "squidstat":
                connect_address = address or settings.device.com_port
                if not connect_address:
                    raise ValueError("COM port required for Squidstat connection")
                options = {"channels": settings.device.channels, **self._squidstat_options}
                device = Squidstat(**options)
                success = device.connect(connect_address)
            else:
                raise ValueError(f"Unknown instrument type: {instrument_type}")
        except Exception as e:
            logger.error("Failed to connect to device '%s': %s", name, e)
            raise

        if not success:
            raise RuntimeError(f"Device '{name}' refused the connection")

        info = dict(device.get_info() or {})
        info.setdefault("model", instrument_type.upper())
        info["address"] = connect_address
        info["type"] = instrument_type
        self._devices[name] = device
        self._device_info[name] = info
        logger.info(
            "Connected '%s' to %s %s",
            name,
            info.get("manufacturer", "Unknown"),
            info.get("model"),
        )
        return device

    def add(self, name: str, device: PotentiostatInterface) -> None:
        """Register an already connected device."""
        if not device.is_connected():
            raise RuntimeError(f"Device '{name}' is not connected")
        if name in self._devices:
            self.disconnect(name)
        self._devices[name] = device
        self._device_info[name] = dict(device.get_info() or {})

    def disconnect(self, name: str) -> None:
        """Disconnect and forget a device."""
        device = self._devices.pop(name, None)
        self._device_info.pop(name, None)
        if device is None:
            return
        try:
            device.disconnect()
        except Exception as e:
            logger.warning("Error during disconnect of '%s': %s", name, e)

    def disconnect_all(self) -> None:
        for name in list(self._devices):
            self.disconnect(name)

    def get_info(self, name: Optional[str] = None) -> Dict[str, Any]:
        """Get connection status and identification for one or all devices."""
        if name is not None:
            return {
                "connected": self.is_connected(name),
                "info": self._device_info.get(name),
                "simulation_mode": settings.simulation_mode,
            }
        return {
            device_name: {
                "connected": self.is_connected(device_name),
                "info": self._device_info.get(device_name),
            }
            for device_name in self._devices
        }
