from __future__ import annotations

import enum
import logging
import queue
import threading
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .config import ModbusTiming, RegisterMap
from .errors import Cancelled, ConfigurationError
from .frames import build_read_request, parse_read_response
from .transport import SerialTransport

logger = logging.getLogger(__name__)

CHANNELS: Tuple[str, ...] = ("Fx", "Fy", "Fz", "Mx", "My", "Mz")

ChannelReading = Dict[str, Tuple[int, int]]
DataCallback = Callable[[ChannelReading], None]
ErrorCallback = Callable[[Exception], None]


class PollState(str, enum.Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


def build_reading(mv_values: Sequence[int], force_values: Sequence[int]) -> ChannelReading:
    if len(mv_values) != len(CHANNELS) or len(force_values) != len(CHANNELS):
        raise ValueError("mV and force vectors must both hold six channels")
    return {name: (mv, force) for name, mv, force in zip(CHANNELS, mv_values, force_values)}


class QueueSink:
    """
    Subscriber that forwards readings into a bounded queue, dropping the
    newest reading when the consumer falls behind.
    """

    def __init__(self, maxsize: int = 256, put_timeout: float = 0.0) -> None:
        self.queue: "queue.Queue[ChannelReading]" = queue.Queue(maxsize=maxsize)
        self.put_timeout = put_timeout
        self.dropped = 0

    def __call__(self, reading: ChannelReading) -> None:
        try:
            if self.put_timeout > 0:
                self.queue.put(reading, timeout=self.put_timeout)
            else:
                self.queue.put_nowait(reading)
        except queue.Full:
            self.dropped += 1
            logger.warning("Reading queue full (%d), dropping reading", self.queue.qsize())

    def get(self, timeout: Optional[float] = None) -> ChannelReading:
        return self.queue.get(timeout=timeout)


class PollingEngine:
    """
    Background loop reading mV and force values every interval.

    Transient failures are retried after `error_retry_sec` for as long as the
    loop is not stopped; an error seen after stop was requested is reported
    once through the error callback and ends the loop.
    """

    def __init__(
        self,
        transport: SerialTransport,
        register_map: Callable[[], Optional[RegisterMap]],
        slave_id: Callable[[], int],
        timing: Optional[ModbusTiming] = None,
    ) -> None:
        self.transport = transport
        self.timing = timing or ModbusTiming()
        self._register_map = register_map
        self._slave_id = slave_id
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._pause_depth = 0
        self._interval = self.timing.poll_interval_sec
        self._on_data: Optional[DataCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._subscribers: List[DataCallback] = []
        self._cycles = 0
        self._errors = 0
        self.last_exception: Optional[Exception] = None
        self._log = logging.getLogger(__name__)

    @property
    def state(self) -> PollState:
        with self._state_lock:
            return self._state_unlocked()

    def _state_unlocked(self) -> PollState:
        thread = self._thread
        if thread is None or not thread.is_alive() or self._stop_event.is_set():
            return PollState.STOPPED
        if self._pause_depth > 0:
            return PollState.PAUSED
        return PollState.RUNNING

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def subscribe(self, callback: DataCallback) -> None:
        with self._state_lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: DataCallback) -> None:
        with self._state_lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def start(
        self,
        on_data: Optional[DataCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        interval_sec: Optional[float] = None,
    ) -> None:
        self.stop()
        with self._state_lock:
            if not self.transport.is_open:
                raise ConfigurationError("Serial port not connected")
            if self._register_map() is None:
                raise ConfigurationError("Register map not set")
            self._on_data = on_data
            self._on_error = on_error
            self._interval = self.timing.poll_interval_sec if interval_sec is None else max(interval_sec, 0.0)
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run, args=(self._stop_event,), name="sixforce-poll", daemon=True
            )
            self._thread.start()
        self._log.info("Polling started (interval=%.3fs)", self._interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._state_lock:
            thread = self._thread
            self._stop_event.set()
        if thread is None or thread is threading.current_thread():
            return
        thread.join(self.timing.stop_join_sec if timeout is None else timeout)
        if thread.is_alive():
            self._log.warning("Poll thread did not stop within the join timeout")
        else:
            self._log.info("Polling stopped")

    def pause(self) -> None:
        with self._state_lock:
            self._pause_depth += 1

    def resume(self) -> None:
        with self._state_lock:
            self._pause_depth = max(self._pause_depth - 1, 0)

    def stats(self) -> Dict[str, int]:
        return {"cycles": self._cycles, "errors": self._errors}

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            if self._pause_depth > 0:
                stop_event.wait(self.timing.pause_check_sec)
                continue
            try:
                reading = self._poll_once(stop_event)
            except Exception as exc:
                self.last_exception = exc
                if not stop_event.is_set():
                    self._errors += 1
                    self._log.warning("Poll cycle failed, retrying in %.1fs: %s", self.timing.error_retry_sec, exc)
                    stop_event.wait(self.timing.error_retry_sec)
                    continue
                self._log.info("Poll loop ending after error during stop: %s", exc)
                self._report_error(exc)
                break
            self._cycles += 1
            self._publish(reading)
            stop_event.wait(self._interval)

    def _poll_once(self, stop_event: threading.Event) -> ChannelReading:
        register_map = self._register_map()
        if register_map is None:
            raise ConfigurationError("Register map not set")
        mv_request = build_read_request(self._slave_id(), register_map.mv_start_address, register_map.mv_register_count)
        mv_values = parse_read_response(self.transport.exchange(mv_request, stop_event))
        # device needs settling time between consecutive requests
        if stop_event.wait(self.timing.read_delay_sec):
            raise Cancelled("Poll cycle cancelled between reads")
        force_request = build_read_request(
            self._slave_id(), register_map.force_start_address, register_map.force_register_count
        )
        force_values = parse_read_response(self.transport.exchange(force_request, stop_event))
        return build_reading(mv_values, force_values)

    def _publish(self, reading: ChannelReading) -> None:
        with self._state_lock:
            callbacks = [self._on_data] if self._on_data else []
            callbacks.extend(self._subscribers)
        for callback in callbacks:
            try:
                callback(dict(reading))
            except Exception:
                self._log.exception("Reading subscriber raised")

    def _report_error(self, exc: Exception) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(exc)
        except Exception:
            self._log.exception("Error callback raised")
