"""Remote control of the experiment coordinator over ZeroMQ.

Clients connect a REQ socket and exchange one JSON object per message::

    {"command": "start", "device": "sim", "channel": 0, "definition": {...}}
    {"ok": true, "result": {"run_id": "...", "status": "running", ...}}
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Dict, Optional, Tuple

import zmq

from ..config import settings
from ..data import ExperimentDefinition
from .coordinator import ExperimentCoordinator
from .device_manager import DeviceManager

logger = logging.getLogger(__name__)


class RemoteControlServer:
    """Answers commands for a coordinator on a REP socket.

    Commands run one at a time on the server thread. Devices whose driver
    needs calls from a single thread should be driven locally instead.
    """

    def __init__(
        self,
        coordinator: ExperimentCoordinator,
        devices: DeviceManager,
        host: Optional[str] = None,
        port: Optional[int] = None,
        context: Optional[zmq.Context] = None,
    ) -> None:
        host = host or settings.remote.host
        port = settings.remote.port if port is None else port
        self._coordinator = coordinator
        self._devices = devices
        self._context = context or zmq.Context.instance()
        self._socket = self._context.socket(zmq.REP)
        self._socket.setsockopt(zmq.LINGER, 0)
        if port == 0:
            port = self._socket.bind_to_random_port(f"tcp://{host}")
        else:
            self._socket.bind(f"tcp://{host}:{port}")
        self._address = (host, port)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._commands: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "ping": lambda _: "pong",
            "devices": lambda _: self._devices.get_info(),
            "start": self._start,
            "stop": self._stop,
            "status": lambda message: self._coordinator.get_run(_require(message, "run_id")).summary(),
            "runs": lambda _: [run.summary() for run in self._coordinator.runs()],
        }

    @property
    def address(self) -> Tuple[str, int]:
        return self._address

    @property
    def endpoint(self) -> str:
        return "tcp://%s:%d" % self._address

    def serve_forever(self, poll_interval: float = 0.1) -> None:
        """Answer requests until :meth:`stop_background` is called."""

        try:
            while not self._stop_event.is_set():
                if not self._socket.poll(int(poll_interval * 1000), zmq.POLLIN):
                    continue
                raw = self._socket.recv()
                try:
                    reply = self.execute(raw)
                except Exception as exc:
                    logger.exception("Uncaught error handling remote command")
                    reply = {"ok": False, "error": f"Internal error: {exc}"}
                self._socket.send_json(reply)
        finally:
            self._socket.close(linger=0)

    def start_background(self) -> None:
        """Serve on a daemon thread."""
        self._thread = threading.Thread(target=self.serve_forever, name="squidctl-remote", daemon=True)
        self._thread.start()
        logger.info("Remote control listening on %s", self.endpoint)

    def stop_background(self) -> None:
        self._stop_event.set()
        if self._thread is None:
            self._socket.close(linger=0)
            return
        self._thread.join(timeout=5)
        self._thread = None

    def execute(self, raw: bytes) -> Dict[str, Any]:
        """Run one encoded command and return the reply."""
        try:
            message = json.loads(raw)
        except ValueError as exc:
            return {"ok": False, "error": f"Invalid JSON: {exc}"}
        if not isinstance(message, dict):
            return {"ok": False, "error": "Command must be a JSON object"}

        command = message.get("command")
        handler = self._commands.get(command)
        if handler is None:
            return {"ok": False, "error": f"Unknown command: {command}"}
        try:
            return {"ok": True, "result": handler(message)}
        except KeyError as exc:
            return {"ok": False, "error": str(exc.args[0]) if exc.args else "Missing value"}
        except (ValueError, RuntimeError) as exc:
            logger.warning("Remote command %s failed: %s", command, exc)
            return {"ok": False, "error": str(exc)}

    def _start(self, message: Dict[str, Any]) -> Dict[str, Any]:
        definition = ExperimentDefinition.model_validate(_require(message, "definition"))
        run = self._coordinator.start(
            _require(message, "device"),
            int(message.get("channel", settings.device.channel)),
            definition,
            notes=message.get("notes"),
            tags=message.get("tags"),
        )
        return run.summary()

    def _stop(self, message: Dict[str, Any]) -> Dict[str, Any]:
        run = self._coordinator.get_run(_require(message, "run_id"))
        self._coordinator.stop(run)
        return run.summary()


def _require(message: Dict[str, Any], key: str) -> Any:
    if key not in message:
        raise KeyError(f"Missing field '{key}'")
    return message[key]
