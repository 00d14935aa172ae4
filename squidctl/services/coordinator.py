"""Experiment orchestration service."""

from __future__ import annotations

import functools
import logging
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, ValidationError

from ..config import settings
from ..data import (
    ACDataPoint,
    CsvSink,
    DataSink,
    DCDataPoint,
    ExperimentDefinition,
    ExperimentRecord,
    ExperimentRepository,
    SinkDispatcher,
    TcpFanoutSink,
)
from ..instrument.base import AC_DATA, DC_DATA, ELEMENT_STARTING, EXPERIMENT_STOPPED, PotentiostatInterface
from .device_manager import DeviceManager
from .retry import RetryPolicy, UploadError, call_with_retry

logger = logging.getLogger(__name__)

# Time allowed for a device to confirm a stop before the run is closed anyway
STOP_GRACE_S = 10.0

# Shortest run id prefix accepted by get_run
MIN_ID_PREFIX = 8


def default_sinks(repository: ExperimentRepository) -> List[DataSink]:
    """CSV capture, plus TCP fan-out when the broker is enabled."""

    sinks: List[DataSink] = [CsvSink(repository.data_dir)]
    if settings.broker.enabled:
        sinks.append(TcpFanoutSink(settings.broker.host, settings.broker.port))
    return sinks


class RunRequest(BaseModel):
    """One channel's share of a synchronized start."""

    device: str
    channel: int = Field(0, ge=0)
    definition: ExperimentDefinition
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class ExperimentRun:
    """Handle to an experiment running on one channel."""

    def __init__(self, record: ExperimentRecord) -> None:
        self.record = record
        self.stop_requested = False
        self.current_step = 0
        self._begun = False
        self._done = threading.Event()
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<ExperimentRun {self.id[:8]} {self.device}:{self.channel} {self.status}>"

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def device(self) -> str:
        return self.record.device

    @property
    def channel(self) -> int:
        return self.record.channel

    @property
    def status(self) -> str:
        return self.record.status

    @property
    def done(self) -> bool:
        """True once the run's data is closed and its metadata saved."""
        return self._done.is_set()

    def _count(self, kind: str) -> None:
        with self._lock:
            if kind == "dc":
                self.record.dc_points += 1
            else:
                self.record.ac_points += 1

    def summary(self) -> Dict[str, object]:
        return {
            "run_id": self.id,
            "device": self.device,
            "channel": self.channel,
            "experiment": self.record.definition.name,
            "status": self.status,
            "dc_points": self.record.dc_points,
            "ac_points": self.record.ac_points,
            "error": self.record.error,
        }


class ExperimentCoordinator:
    """Sequences experiments across channels and routes their data to sinks.

    Device callbacks only convert, count and enqueue. Every write to disk or
    network happens on the dispatcher thread, and a run only reports
    :attr:`ExperimentRun.done` after its sinks are finished and its record
    is saved.
    """

    def __init__(
        self,
        devices: DeviceManager,
        repository: ExperimentRepository,
        sinks: Optional[Sequence[DataSink]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._devices = devices
        self._repository = repository
        if sinks is None:
            sinks = default_sinks(repository)
        self._dispatcher = SinkDispatcher(sinks)
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._sleep = sleep

        self._lock = threading.RLock()
        self._active: Dict[Tuple[str, int], ExperimentRun] = {}
        self._runs: Dict[str, ExperimentRun] = {}
        self._subscriptions: Dict[str, Tuple[PotentiostatInterface, List[Tuple[str, Callable]]]] = {}
        self._closed = False

    @property
    def dispatcher(self) -> SinkDispatcher:
        return self._dispatcher

    # ------------------------------------------------------------------
    # Run control
    # ------------------------------------------------------------------
    def start(
        self,
        device: str,
        channel: int,
        definition: ExperimentDefinition,
        notes: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> ExperimentRun:
        """Upload and start an experiment without waiting for it to finish."""

        run = self._prepare(device, channel, definition, notes, tags)
        try:
            self._upload(run)
        except UploadError as exc:
            self._fail(run, str(exc))
            raise
        self._launch(run)
        return run

    def run_experiment(
        self,
        device: str,
        channel: int,
        definition: ExperimentDefinition,
        timeout: Optional[float] = None,
        notes: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> ExperimentRecord:
        """Run an experiment to completion.

        Raises:
            TimeoutError: if the run outlives `timeout`; it is stopped and
                recorded as ``timed_out`` with the data captured so far
        """
        timeout = settings.device.timeout_s if timeout is None else timeout
        run = self.start(device, channel, definition, notes=notes, tags=tags)
        if self.wait(run, timeout):
            return run.record

        with self._lock:
            finished_late = self._active.get((device, channel)) is not run
            if not finished_late:
                run.record.status = "timed_out"
                run.record.error = f"Experiment exceeded {timeout:g} s"
                run.stop_requested = True
        if finished_late:
            self.wait(run, STOP_GRACE_S)
            return run.record

        logger.warning("Run %s exceeded %g s, stopping channel %d", run.id[:8], timeout, channel)
        self._stop_device(run)
        if not self.wait(run, STOP_GRACE_S):
            self._abandon(run)
        raise TimeoutError(f"Experiment '{definition.name}' did not complete within {timeout:g} s")

    def start_synchronized(self, requests: Sequence[RunRequest]) -> List[ExperimentRun]:
        """Start several channels, possibly on different devices, together.

        Each request gets a worker thread that uploads its experiment and
        then waits on a shared start signal. Nothing starts unless every
        upload succeeded.

        Raises:
            UploadError: if any upload failed; every run is recorded as failed
        """
        if not requests:
            return []

        runs: List[ExperimentRun] = []
        try:
            for request in requests:
                runs.append(
                    self._prepare(request.device, request.channel, request.definition, request.notes, request.tags)
                )
        except Exception:
            for run in runs:
                self._release(run)
            raise

        all_uploaded = threading.Barrier(len(runs) + 1)
        start_signal = threading.Event()
        aborted = threading.Event()
        upload_errors: Dict[str, Exception] = {}

        def worker(run: ExperimentRun) -> None:
            try:
                self._upload(run)
            except Exception as exc:
                upload_errors[run.id] = exc
            all_uploaded.wait()
            start_signal.wait()
            if aborted.is_set():
                return
            try:
                self._launch(run)
            except Exception:
                logger.exception("Synchronized start failed for run %s", run.id[:8])

        threads = [
            threading.Thread(target=worker, args=(run,), name=f"sync-{run.device}-{run.channel}", daemon=True)
            for run in runs
        ]
        for thread in threads:
            thread.start()

        all_uploaded.wait()
        if upload_errors:
            aborted.set()
        start_signal.set()
        for thread in threads:
            thread.join()

        if upload_errors:
            first = next(iter(upload_errors.values()))
            for run in runs:
                error = upload_errors.get(run.id)
                self._fail(run, str(error) if error else f"Synchronized start aborted: {first}")
            if isinstance(first, UploadError):
                raise first
            raise UploadError(str(first), attempts=self._retry_policy.max_attempts, original=first)

        logger.info("Started %d channels together", len(runs))
        return runs

    def stop(self, run: ExperimentRun) -> None:
        """Ask the device to stop a run. The run finishes once the device confirms."""

        with self._lock:
            if self._active.get((run.device, run.channel)) is not run:
                return
            run.stop_requested = True
        self._stop_device(run)

    def pause(self, run: ExperimentRun) -> None:
        self._set_paused(run, True)

    def resume(self, run: ExperimentRun) -> None:
        self._set_paused(run, False)

    def wait(self, run: ExperimentRun, timeout: Optional[float] = None) -> bool:
        """Wait for a run to finish, pumping the device's event loop meanwhile.

        Returns:
            True if the run finished within `timeout`
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return run.done
            if run._done.wait(0.05 if remaining is None else min(0.05, remaining)):
                return True
            if self._devices.is_connected(run.device):
                self._devices.get(run.device).poll()

    def get_run(self, run_id: str) -> ExperimentRun:
        """Look up a run by its full id or an unambiguous prefix of at least 8 characters."""

        with self._lock:
            run = self._runs.get(run_id)
            if run is not None:
                return run
            if len(run_id) >= MIN_ID_PREFIX:
                matches = [run for known_id, run in self._runs.items() if known_id.startswith(run_id)]
                if len(matches) == 1:
                    return matches[0]
                if matches:
                    raise KeyError(f"Run id '{run_id}' is ambiguous")
        raise KeyError(f"No run with id '{run_id}'")

    def active_runs(self) -> List[ExperimentRun]:
        with self._lock:
            return list(self._active.values())

    def runs(self) -> List[ExperimentRun]:
        with self._lock:
            return list(self._runs.values())

    def shutdown(self, timeout: float = STOP_GRACE_S) -> None:
        """Stop active runs, wait for their data and release the sinks.

        Calling it again after it returned does nothing.
        """
        if self._closed:
            return

        for run in self.active_runs():
            self.stop(run)
        for run in self.active_runs():
            if not self.wait(run, timeout):
                self._abandon(run)
        self._dispatcher.flush(timeout)
        for device, callbacks in self._subscriptions.values():
            for event, callback in callbacks:
                device.unsubscribe(event, callback)
        self._subscriptions.clear()
        self._dispatcher.close()
        self._closed = True

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------
    def _prepare(
        self,
        device: str,
        channel: int,
        definition: ExperimentDefinition,
        notes: Optional[str],
        tags: Optional[Sequence[str]],
    ) -> ExperimentRun:
        adapter = self._devices.get(device)
        if not adapter.is_connected():
            raise RuntimeError(f"Device '{device}' is not connected")
        if not 0 <= channel < adapter.channel_count():
            raise ValueError(f"Device '{device}' has no channel {channel}")

        record = ExperimentRecord(
            device=device,
            channel=channel,
            definition=definition,
            instrument_info=self._devices.get_info(device).get("info") or {},
            notes=notes,
            tags=list(tags) if tags else [],
        )
        record.data_files = self._dispatcher.files_for(record)
        run = ExperimentRun(record)

        with self._lock:
            if (device, channel) in self._active:
                raise RuntimeError(f"Channel {channel} on '{device}' already has an active run")
            self._ensure_subscribed(device, adapter)
            self._active[(device, channel)] = run
            self._runs[run.id] = run
        return run

    def _upload(self, run: ExperimentRun) -> None:
        adapter = self._devices.get(run.device)
        record = run.record
        record.status = "uploading"

        def on_attempt(attempt: int) -> None:
            record.upload_attempts = attempt

        call_with_retry(
            lambda: adapter.upload_experiment(run.channel, record.definition),
            self._retry_policy,
            description=f"Upload of '{record.definition.name}' to {run.device}:{run.channel}",
            sleep=self._sleep,
            on_attempt=on_attempt,
        )

    def _launch(self, run: ExperimentRun) -> None:
        adapter = self._devices.get(run.device)
        with self._lock:
            run.record.status = "running"
            run.record.started_at = datetime.utcnow()
            run._begun = True
        # Sinks must see begin before the first point, which can arrive
        # before start_experiment returns
        self._dispatcher.begin(run.record)
        try:
            adapter.start_experiment(run.channel)
        except Exception as exc:
            self._fail(run, f"Failed to start: {exc}")
            raise
        logger.info(
            "Started '%s' on %s:%d (run %s)", run.record.definition.name, run.device, run.channel, run.id[:8]
        )

    def _fail(self, run: ExperimentRun, error: str) -> None:
        logger.error("Run %s on %s:%d failed: %s", run.id[:8], run.device, run.channel, error)
        with self._lock:
            if self._active.get((run.device, run.channel)) is run:
                del self._active[(run.device, run.channel)]
            run.record.status = "failed"
            run.record.error = error
        self._finalize(run)

    def _abandon(self, run: ExperimentRun) -> None:
        """Close a run whose device never confirmed the stop."""

        with self._lock:
            if self._active.get((run.device, run.channel)) is not run:
                return
            del self._active[(run.device, run.channel)]
            if run.record.status not in ("timed_out", "failed"):
                run.record.status = "stopped"
            run.record.error = run.record.error or "Device did not confirm stop"
        logger.warning("Closing run %s without stop confirmation", run.id[:8])
        self._finalize(run)

    def _release(self, run: ExperimentRun) -> None:
        with self._lock:
            if self._active.get((run.device, run.channel)) is run:
                del self._active[(run.device, run.channel)]
            self._runs.pop(run.id, None)

    def _finalize(self, run: ExperimentRun) -> None:
        run.record.finished_at = datetime.utcnow()
        if run._begun:
            self._dispatcher.finish(run.record, on_done=functools.partial(self._complete, run))
        else:
            self._complete(run)

    def _complete(self, run: ExperimentRun) -> None:
        record = run.record
        record.data_files = {kind: path for kind, path in record.data_files.items() if Path(path).exists()}
        try:
            self._repository.save_record(record)
        finally:
            run._done.set()
        logger.info(
            "Run %s %s with %d DC and %d AC points", run.id[:8], record.status, record.dc_points, record.ac_points
        )

    def _stop_device(self, run: ExperimentRun) -> None:
        try:
            self._devices.get(run.device).stop_experiment(run.channel)
        except (KeyError, RuntimeError) as exc:
            logger.warning("Could not stop %s:%d: %s", run.device, run.channel, exc)

    def _set_paused(self, run: ExperimentRun, paused: bool) -> None:
        with self._lock:
            self._require_active(run)
            adapter = self._devices.get(run.device)
            if paused:
                adapter.pause_experiment(run.channel)
            else:
                adapter.resume_experiment(run.channel)
            # A timeout or stop in flight owns the status from here on
            if run.record.status == "timed_out" or run.stop_requested:
                return
            run.record.status = "paused" if paused else "running"

    def _require_active(self, run: ExperimentRun) -> None:
        with self._lock:
            if self._active.get((run.device, run.channel)) is not run:
                raise RuntimeError(f"Run {run.id[:8]} is not active")

    # ------------------------------------------------------------------
    # Device callbacks
    # ------------------------------------------------------------------
    def _ensure_subscribed(self, name: str, adapter: PotentiostatInterface) -> None:
        existing = self._subscriptions.get(name)
        if existing is not None and existing[0] is adapter:
            return
        if existing is not None:
            for event, callback in existing[1]:
                existing[0].unsubscribe(event, callback)

        callbacks = [
            (DC_DATA, functools.partial(self._on_data, name, "dc")),
            (AC_DATA, functools.partial(self._on_data, name, "ac")),
            (ELEMENT_STARTING, functools.partial(self._on_element_starting, name)),
            (EXPERIMENT_STOPPED, functools.partial(self._on_experiment_stopped, name)),
        ]
        for event, callback in callbacks:
            adapter.subscribe(event, callback)
        self._subscriptions[name] = (adapter, callbacks)

    def _lookup(self, device: str, channel: int) -> Optional[ExperimentRun]:
        with self._lock:
            return self._active.get((device, channel))

    def _on_data(self, device: str, kind: str, channel: int, payload: dict) -> None:
        run = self._lookup(device, channel)
        if run is None:
            logger.debug("Dropping %s data from %s:%d with no active run", kind, device, channel)
            return
        values = dict(payload)
        if values.get("step_number") is None:
            values["step_number"] = run.current_step
        try:
            point = DCDataPoint(**values) if kind == "dc" else ACDataPoint(**values)
        except ValidationError as exc:
            logger.warning("Discarding malformed %s point from %s:%d: %s", kind, device, channel, exc)
            return
        run._count(kind)
        self._dispatcher.publish(run.record, kind, point)

    def _on_element_starting(self, device: str, channel: int, payload: dict) -> None:
        run = self._lookup(device, channel)
        if run is None:
            return
        run.current_step = int(payload.get("step_number") or 0)
        logger.info(
            "%s:%d step %d (%s)", device, channel, run.current_step, payload.get("step_name", "unknown")
        )

    def _on_experiment_stopped(self, device: str, channel: int, payload: dict) -> None:
        with self._lock:
            run = self._active.pop((device, channel), None)
            if run is None:
                return
            reason = str(payload.get("reason") or "")
            record = run.record
            # A timed out run keeps its status through the confirming stop
            if record.status == "timed_out":
                record.error = record.error or reason
            elif reason.startswith("error"):
                record.status = "failed"
                record.error = reason
            elif run.stop_requested:
                record.status = "stopped"
            else:
                record.status = "completed"
        self._finalize(run)
