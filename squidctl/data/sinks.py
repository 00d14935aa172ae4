"""Destinations for streamed data points.

Sinks are only ever called from the :class:`SinkDispatcher` worker thread,
so they do not need their own locking around per-run state.
"""

from __future__ import annotations

import csv
import json
import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, Callable, Dict, List, Literal, Optional, Sequence, Tuple, Union

import zmq

from .models import ACDataPoint, DCDataPoint, ExperimentRecord

logger = logging.getLogger(__name__)

DataKind = Literal["dc", "ac"]
DataPoint = Union[DCDataPoint, ACDataPoint]


class DataSink(ABC):
    """Receives the data of experiment runs."""

    def begin(self, record: ExperimentRecord) -> None:
        """Called once before the first point of a run."""

    @abstractmethod
    def write(self, record: ExperimentRecord, kind: DataKind, point: DataPoint) -> None:
        """Handle one data point."""

    def finish(self, record: ExperimentRecord) -> None:
        """Called once after the last point of a run."""

    def files_for(self, record: ExperimentRecord) -> Dict[str, Path]:
        """Return the files this sink writes for a run, keyed by data kind."""
        return {}

    def close(self) -> None:
        """Release resources held by the sink."""


class CsvSink(DataSink):
    """Writes one CSV file per run and data kind."""

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self._open: Dict[Tuple[str, str], Tuple[IO[str], csv.DictWriter]] = {}

    def files_for(self, record: ExperimentRecord) -> Dict[str, Path]:
        return {
            "dc": self.output_dir / f"{record.base_name}_dc.csv",
            "ac": self.output_dir / f"{record.base_name}_ac.csv",
        }

    def write(self, record: ExperimentRecord, kind: DataKind, point: DataPoint) -> None:
        key = (record.id, kind)
        entry = self._open.get(key)
        if entry is None:
            path = self.files_for(record)[kind]
            handle = path.open("w", encoding="utf-8", newline="")
            writer = csv.DictWriter(handle, fieldnames=list(type(point).model_fields))
            writer.writeheader()
            entry = (handle, writer)
            self._open[key] = entry
            logger.debug("Opened %s", path)

        handle, writer = entry
        writer.writerow(point.model_dump())
        # Flush per row so a crash keeps everything captured so far
        handle.flush()

    def finish(self, record: ExperimentRecord) -> None:
        for kind in ("dc", "ac"):
            entry = self._open.pop((record.id, kind), None)
            if entry is not None:
                entry[0].close()

    def close(self) -> None:
        for handle, _ in self._open.values():
            handle.close()
        self._open.clear()


class TcpFanoutSink(DataSink):
    """Publishes every event on a ZeroMQ PUB socket.

    Messages have two frames: the event name (``begin``, ``dc``, ``ac`` or
    ``finish``), which subscribers can filter on, and a JSON body. Slow or
    absent subscribers never block publishing.

    The socket counts live topic subscriptions, not connected peers: a
    listener filtering on ``dc`` and ``finish`` holds two, and an empty
    filter is one subscription to everything. Unsubscribing or
    disconnecting gives them back.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 5555,
        context: Optional[zmq.Context] = None,
    ) -> None:
        self._context = context or zmq.Context.instance()
        self._socket = self._context.socket(zmq.XPUB)
        self._socket.setsockopt(zmq.LINGER, 0)
        # Report every subscribe and unsubscribe, including those of departing peers
        self._socket.setsockopt(zmq.XPUB_VERBOSER, 1)
        if port == 0:
            port = self._socket.bind_to_random_port(f"tcp://{host}")
        else:
            self._socket.bind(f"tcp://{host}:{port}")
        self._address = (host, port)
        self._subscriptions = 0
        logger.info("Streaming data on tcp://%s:%d", host, port)

    @property
    def address(self) -> Tuple[str, int]:
        return self._address

    @property
    def endpoint(self) -> str:
        return "tcp://%s:%d" % self._address

    @property
    def subscription_count(self) -> int:
        self._drain_subscriptions()
        return self._subscriptions

    def wait_for_subscriptions(self, count: int = 1, timeout: float = 5.0) -> bool:
        """Block until at least `count` topic subscriptions are live.

        Only call this before the sink is handed to a dispatcher; the socket
        must not be used from two threads at once.
        """
        deadline = time.monotonic() + timeout
        while True:
            self._drain_subscriptions()
            if self._subscriptions >= count:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._socket.poll(max(1, int(min(remaining, 0.05) * 1000)), zmq.POLLIN)

    def begin(self, record: ExperimentRecord) -> None:
        self._send("begin", {
            "run_id": record.id,
            "device": record.device,
            "channel": record.channel,
            "experiment": record.definition.name,
        })

    def write(self, record: ExperimentRecord, kind: DataKind, point: DataPoint) -> None:
        self._send(kind, {
            "run_id": record.id,
            "channel": record.channel,
            "data": point.model_dump(),
        })

    def finish(self, record: ExperimentRecord) -> None:
        self._send("finish", {"run_id": record.id, "status": record.status})

    def close(self) -> None:
        if not self._socket.closed:
            self._socket.close(linger=0)

    def _send(self, event: str, body: dict) -> None:
        self._drain_subscriptions()
        body = {"event": event, **body}
        self._socket.send_multipart([event.encode("utf-8"), json.dumps(body).encode("utf-8")])

    def _drain_subscriptions(self) -> None:
        # XPUB hands subscribe (0x01) and unsubscribe (0x00) frames back to us
        while self._socket.poll(0, zmq.POLLIN):
            frame = self._socket.recv()
            if frame[:1] == b"\x01":
                self._subscriptions += 1
                logger.debug("Stream subscription added (%d live)", self._subscriptions)
            elif frame[:1] == b"\x00":
                self._subscriptions = max(0, self._subscriptions - 1)
                logger.debug("Stream subscription dropped (%d live)", self._subscriptions)


class SinkDispatcher:
    """Fans data out to sinks from a single worker thread.

    Producers only enqueue, so the device callback thread never waits on
    disk or network I/O. Events are handled in the order they were queued.
    """

    _STOP = object()

    def __init__(self, sinks: Sequence[DataSink] = ()) -> None:
        self._sinks: List[DataSink] = list(sinks)
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._closed = False
        self.errors = 0
        self._thread = threading.Thread(target=self._run, name="squidctl-sinks", daemon=True)
        self._thread.start()

    @property
    def sinks(self) -> List[DataSink]:
        return list(self._sinks)

    def add_sink(self, sink: DataSink) -> None:
        self._queue.put(("add", sink))

    def files_for(self, record: ExperimentRecord) -> Dict[str, Path]:
        files: Dict[str, Path] = {}
        for sink in self._sinks:
            files.update(sink.files_for(record))
        return files

    def begin(self, record: ExperimentRecord) -> None:
        self._put(("begin", record))

    def publish(self, record: ExperimentRecord, kind: DataKind, point: DataPoint) -> None:
        self._put(("write", record, kind, point))

    def finish(self, record: ExperimentRecord, on_done: Optional[Callable[[], None]] = None) -> None:
        self._put(("finish", record, on_done))

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued event has been handled."""

        done = threading.Event()
        self._put(("barrier", done))
        return done.wait(timeout)

    def close(self, timeout: float = 10.0) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(self._STOP)
        self._thread.join(timeout)
        for sink in self._sinks:
            try:
                sink.close()
            except Exception:
                logger.exception("Error closing sink %s", type(sink).__name__)

    def _put(self, item: tuple) -> None:
        if self._closed:
            raise RuntimeError("Sink dispatcher is closed")
        self._queue.put(item)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is self._STOP:
                break
            action = item[0]
            if action == "add":
                self._sinks.append(item[1])
            elif action == "barrier":
                item[1].set()
            elif action == "begin":
                self._each(lambda sink: sink.begin(item[1]))
            elif action == "write":
                _, record, kind, point = item
                self._each(lambda sink: sink.write(record, kind, point))
            elif action == "finish":
                _, record, on_done = item
                self._each(lambda sink: sink.finish(record))
                if on_done is not None:
                    try:
                        on_done()
                    except Exception:
                        logger.exception("Completion callback for run %s failed", record.id)

    def _each(self, call: Callable[[DataSink], None]) -> None:
        for sink in self._sinks:
            try:
                call(sink)
            except Exception:
                self.errors += 1
                logger.exception("Sink %s failed", type(sink).__name__)
