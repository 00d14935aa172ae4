"""Tests for data sinks and the dispatcher."""

import csv
import json
import threading

import pytest
import zmq

from squidctl.data import (
    ACDataPoint,
    CsvSink,
    DataSink,
    DCDataPoint,
    ExperimentDefinition,
    ExperimentRecord,
    SinkDispatcher,
    TcpFanoutSink,
)

from conftest import wait_until


def make_record(channel=0):
    definition = ExperimentDefinition.model_validate({
        "name": "OCP",
        "steps": [{"kind": "open_circuit", "duration_s": 1.0}],
    })
    return ExperimentRecord(device="sim", channel=channel, definition=definition)


def dc_point(index):
    return DCDataPoint(
        timestamp=0.1 * index,
        working_electrode_voltage=0.2,
        current=1e-6 * index,
        step_number=1,
    )


class RecordingSink(DataSink):
    def __init__(self):
        self.events = []

    def begin(self, record):
        self.events.append(("begin", record.id))

    def write(self, record, kind, point):
        self.events.append((kind, point.timestamp))

    def finish(self, record):
        self.events.append(("finish", record.id))


class TestCsvSink:
    def setup_method(self):
        self.record = make_record()

    def test_files_are_named_after_the_run(self, tmp_path):
        sink = CsvSink(tmp_path)
        files = sink.files_for(self.record)
        assert files["dc"] == tmp_path / f"{self.record.base_name}_dc.csv"
        assert files["ac"] == tmp_path / f"{self.record.base_name}_ac.csv"

    def test_rows_follow_a_single_header(self, tmp_path):
        sink = CsvSink(tmp_path)
        for index in range(3):
            sink.write(self.record, "dc", dc_point(index))
        sink.finish(self.record)

        with sink.files_for(self.record)["dc"].open(newline="") as handle:
            rows = list(csv.DictReader(handle))
        assert len(rows) == 3
        assert float(rows[2]["current"]) == pytest.approx(2e-6)
        assert not sink.files_for(self.record)["ac"].exists()

    def test_rows_are_on_disk_before_finish(self, tmp_path):
        sink = CsvSink(tmp_path)
        sink.write(self.record, "dc", dc_point(1))

        content = sink.files_for(self.record)["dc"].read_text()
        assert content.count("\n") == 2
        sink.close()

    def test_ac_points_get_their_own_file(self, tmp_path):
        sink = CsvSink(tmp_path)
        point = ACDataPoint(
            timestamp=0.0,
            frequency=1000.0,
            absolute_impedance=110.0,
            real_impedance=100.0,
            imaginary_impedance=-45.8,
            phase_angle=-24.6,
        )
        sink.write(self.record, "ac", point)
        sink.finish(self.record)

        header = sink.files_for(self.record)["ac"].read_text().splitlines()[0]
        assert header.startswith("timestamp,frequency,absolute_impedance")


class TestSinkDispatcher:
    def test_events_arrive_in_order(self):
        sink = RecordingSink()
        dispatcher = SinkDispatcher([sink])
        record = make_record()
        done = threading.Event()

        dispatcher.begin(record)
        for index in range(50):
            dispatcher.publish(record, "dc", dc_point(index))
        dispatcher.finish(record, on_done=done.set)

        assert done.wait(5)
        assert sink.events[0] == ("begin", record.id)
        assert sink.events[-1] == ("finish", record.id)
        timestamps = [event[1] for event in sink.events[1:-1]]
        assert timestamps == [dc_point(index).timestamp for index in range(50)]
        dispatcher.close()

    def test_failing_sink_is_isolated(self):
        class Broken(DataSink):
            def write(self, record, kind, point):
                raise ValueError("boom")

        good = RecordingSink()
        dispatcher = SinkDispatcher([Broken(), good])
        record = make_record()
        dispatcher.publish(record, "dc", dc_point(1))

        assert dispatcher.flush(5)
        assert dispatcher.errors == 1
        assert good.events == [("dc", pytest.approx(0.1))]
        dispatcher.close()

    def test_closed_dispatcher_rejects_events(self):
        dispatcher = SinkDispatcher([])
        dispatcher.close()
        with pytest.raises(RuntimeError):
            dispatcher.publish(make_record(), "dc", dc_point(0))

    def test_added_sink_receives_later_events(self):
        dispatcher = SinkDispatcher([])
        sink = RecordingSink()
        dispatcher.add_sink(sink)
        record = make_record()
        dispatcher.begin(record)
        assert dispatcher.flush(5)
        assert sink.events == [("begin", record.id)]
        dispatcher.close()


class TestTcpFanoutSink:
    def setup_method(self):
        self.context = zmq.Context()
        self.sink = TcpFanoutSink("127.0.0.1", 0, context=self.context)
        self.subscribers = []

    def teardown_method(self):
        for subscriber in self.subscribers:
            subscriber.close(linger=0)
        self.sink.close()
        self.context.term()

    def _subscriber(self, topic=b""):
        subscriber = self.context.socket(zmq.SUB)
        subscriber.setsockopt(zmq.RCVTIMEO, 5000)
        subscriber.setsockopt(zmq.SUBSCRIBE, topic)
        subscriber.connect(self.sink.endpoint)
        self.subscribers.append(subscriber)
        return subscriber

    def _receive(self, subscriber):
        topic, body = subscriber.recv_multipart()
        return topic.decode(), json.loads(body)

    def test_subscribers_receive_json_events(self):
        subscriber = self._subscriber()
        assert self.sink.wait_for_subscriptions(1)

        record = make_record(channel=2)
        self.sink.begin(record)
        self.sink.write(record, "dc", dc_point(3))
        record.status = "completed"
        self.sink.finish(record)
        messages = [self._receive(subscriber) for _ in range(3)]

        assert [topic for topic, _ in messages] == ["begin", "dc", "finish"]
        assert messages[0][1]["channel"] == 2
        assert messages[0][1]["run_id"] == record.id
        assert messages[1][1]["data"]["current"] == pytest.approx(3e-6)
        assert messages[2][1]["status"] == "completed"

    def test_every_subscriber_gets_each_event(self):
        first = self._subscriber()
        second = self._subscriber()
        assert self.sink.wait_for_subscriptions(2)

        record = make_record()
        self.sink.begin(record)

        assert self._receive(first)[1]["run_id"] == record.id
        assert self._receive(second)[1]["run_id"] == record.id

    def test_topic_filter(self):
        subscriber = self._subscriber(topic=b"finish")
        assert self.sink.wait_for_subscriptions(1)

        record = make_record()
        self.sink.begin(record)
        self.sink.write(record, "dc", dc_point(1))
        self.sink.finish(record)

        assert self._receive(subscriber)[0] == "finish"

    def test_publishing_without_subscribers(self):
        assert self.sink.subscription_count == 0
        assert not self.sink.wait_for_subscriptions(1, timeout=0.05)
        self.sink.begin(make_record())
        self.sink.close()
        self.sink.close()

    def test_one_listener_with_two_topics(self):
        listener = self._subscriber(topic=b"dc")
        listener.setsockopt(zmq.SUBSCRIBE, b"finish")
        assert self.sink.wait_for_subscriptions(2)
        assert self.sink.subscription_count == 2

        listener.setsockopt(zmq.UNSUBSCRIBE, b"dc")
        assert wait_until(lambda: self.sink.subscription_count == 1)

        record = make_record()
        self.sink.write(record, "dc", dc_point(1))
        self.sink.finish(record)
        assert self._receive(listener)[0] == "finish"

    def test_departed_listener_releases_subscriptions(self):
        listener = self._subscriber(topic=b"dc")
        listener.setsockopt(zmq.SUBSCRIBE, b"finish")
        self._subscriber()
        assert self.sink.wait_for_subscriptions(3)

        self.subscribers.remove(listener)
        listener.close(linger=0)

        assert wait_until(lambda: self.sink.subscription_count == 1)
