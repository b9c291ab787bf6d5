from __future__ import annotations

import threading

import pytest

from sixforce.modbus.client import SensorClient
from sixforce.modbus.errors import Cancelled, ConfigurationError
from sixforce.modbus.polling import CHANNELS, PollState, QueueSink, build_reading


def _seed(sensor) -> None:
    sensor.set_channels(0x0000, [100, 200, 300, 400, 500, 600])
    sensor.set_channels(0x0020, [-1, -2, -3, -4, -5, -6])


def test_build_reading_orders_channels() -> None:
    reading = build_reading([1, 2, 3, 4, 5, 6], [7, 8, 9, 10, 11, 12])
    assert list(reading) == list(CHANNELS)
    assert reading["Mz"] == (6, 12)
    with pytest.raises(ValueError):
        build_reading([1, 2], [3, 4])


def test_start_requires_connection_and_map(fake_serial, fast_timing) -> None:
    client = SensorClient(timing=fast_timing)
    with pytest.raises(ConfigurationError):
        client.start_reading(lambda reading: None)
    client.connect("/dev/ttyFAKE", 115200)
    try:
        with pytest.raises(ConfigurationError):
            client.start_reading(lambda reading: None)
        assert client.poll_state is PollState.STOPPED
    finally:
        client.disconnect()


def test_polling_delivers_readings(client, sensor, wait_for) -> None:
    _seed(sensor)
    sink = QueueSink(maxsize=16)
    readings: list = []
    client.subscribe(sink)
    client.start_reading(readings.append)
    try:
        assert wait_for(lambda: len(readings) >= 3)
        assert client.poll_state is PollState.RUNNING
        first = readings[0]
        assert first["Fx"] == (100, -1)
        assert first["Mz"] == (600, -6)
        assert sink.get(timeout=1.0) == first
    finally:
        client.stop_reading()
    assert client.poll_state is PollState.STOPPED
    assert client.poller.stats()["cycles"] >= 3


def test_polling_uses_current_slave_id(client, sensor, wait_for) -> None:
    _seed(sensor)
    readings: list = []
    client.start_reading(readings.append)
    try:
        assert wait_for(lambda: len(readings) >= 1)
        sensor.slave_id = 9
        client.slave_id = 9
        seen = len(readings)
        assert wait_for(lambda: len(readings) >= seen + 2)
        assert sensor.requests_with(0x03)[-1][0] == 9
    finally:
        client.stop_reading()


def test_pause_and_resume(client, sensor, wait_for) -> None:
    _seed(sensor)
    readings: list = []
    client.start_reading(readings.append)
    try:
        assert wait_for(lambda: len(readings) >= 1)
        client.poller.pause()
        assert client.poll_state is PollState.PAUSED
        # any cycle already in flight finishes, then the loop idles
        client.poller.stop_event.wait(0.05)
        paused_count = len(readings)
        client.poller.stop_event.wait(0.05)
        assert len(readings) == paused_count
        client.poller.resume()
        assert client.poll_state is PollState.RUNNING
        assert wait_for(lambda: len(readings) > paused_count)
    finally:
        client.stop_reading()


def test_transient_errors_are_retried(client, sensor, wait_for) -> None:
    _seed(sensor)
    sensor.silent = True
    readings: list = []
    errors: list = []
    client.start_reading(readings.append, errors.append)
    try:
        assert wait_for(lambda: client.poller.stats()["errors"] >= 1)
        assert client.poll_state is PollState.RUNNING
        sensor.silent = False
        assert wait_for(lambda: len(readings) >= 1)
        assert errors == []
    finally:
        client.stop_reading()


def test_error_during_stop_is_reported_once(client, sensor, fast_timing, wait_for) -> None:
    sensor.silent = True
    fast_timing.response_timeout_sec = 5.0
    errors: list = []
    reported = threading.Event()

    def on_error(exc: Exception) -> None:
        errors.append(exc)
        reported.set()

    client.start_reading(lambda reading: None, on_error)
    assert wait_for(lambda: len(sensor.requests) >= 1)
    client.stop_reading()
    assert reported.wait(1.0)
    assert len(errors) == 1
    assert isinstance(errors[0], Cancelled)
    assert client.poll_state is PollState.STOPPED


def test_subscriber_failure_does_not_stop_loop(client, sensor, wait_for) -> None:
    _seed(sensor)
    readings: list = []

    def broken(reading) -> None:
        raise RuntimeError("boom")

    client.subscribe(broken)
    client.start_reading(readings.append)
    try:
        assert wait_for(lambda: len(readings) >= 3)
        client.unsubscribe(broken)
    finally:
        client.stop_reading()


def test_queue_sink_drops_when_full() -> None:
    sink = QueueSink(maxsize=1)
    reading = build_reading([0] * 6, [0] * 6)
    sink(reading)
    sink(reading)
    assert sink.dropped == 1
    assert sink.get(timeout=0.1) == reading


def test_stop_between_reads_skips_force_request(client, sensor, fast_timing, wait_for) -> None:
    _seed(sensor)
    fast_timing.read_delay_sec = 5.0
    errors: list = []
    client.start_reading(lambda reading: None, errors.append)
    assert wait_for(lambda: len(sensor.requests) >= 1)
    client.stop_reading()
    assert client.poll_state is PollState.STOPPED
    assert [req[3] for req in sensor.requests_with(0x03)] == [0x00]
    assert len(errors) == 1
    assert isinstance(errors[0], Cancelled)
