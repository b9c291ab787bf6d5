from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import serial  # type: ignore[import]

from .config import DEFAULT_BAUDRATE, ModbusTiming
from .errors import Cancelled, ConnectionLost, LockTimeout, ModbusError, ResponseTimeout
from .frames import EXCEPTION_BIT, EXCEPTION_RESPONSE_LENGTH, expected_response_length, validate_response

logger = logging.getLogger(__name__)


@dataclass
class SerialSettings:
    port: str
    baudrate: int = DEFAULT_BAUDRATE
    timeout: float = 0.05


def list_ports() -> List[str]:
    from serial.tools import list_ports as _list_ports  # type: ignore[import]

    return [info.device for info in _list_ports.comports()]


class SerialTransport:
    """
    Owns the serial handle. Every frame exchange runs under one lock that is
    only ever taken with a bounded wait.
    """

    def __init__(self, timing: Optional[ModbusTiming] = None) -> None:
        self.timing = timing or ModbusTiming()
        self.settings: Optional[SerialSettings] = None
        self._handle = None
        self._lock = threading.Lock()
        self._stats: Dict[str, int] = {"exchanges": 0, "timeouts": 0, "lock_timeouts": 0, "failures": 0}
        self._log = logging.getLogger(__name__)

    @property
    def is_open(self) -> bool:
        handle = self._handle
        return handle is not None and bool(handle.is_open)

    @property
    def port(self) -> Optional[str]:
        return self.settings.port if self.settings else None

    def open(self, port: str, baudrate: int = DEFAULT_BAUDRATE) -> None:
        if self.is_open:
            if self.port == port:
                return
            raise ConnectionLost(f"Transport already open on {self.port}")
        settings = SerialSettings(port=port, baudrate=baudrate)
        try:
            handle = serial.Serial(
                port=settings.port,
                baudrate=settings.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=settings.timeout,
            )
        except (serial.SerialException, OSError, ValueError) as exc:
            raise ConnectionLost(f"Cannot open {port}: {exc}") from exc
        self.settings = settings
        self._handle = handle
        self._log.info("Opened %s at %d baud (8N1)", port, baudrate)

    def close(self) -> None:
        handle = self._handle
        if handle is None:
            return
        acquired = self._lock.acquire(timeout=self.timing.close_lock_timeout_sec)
        if not acquired:
            self._log.warning("Transport lock busy, force-closing %s", self.port)
        try:
            handle.close()
        except Exception:
            self._log.warning("Error while closing %s", self.port, exc_info=True)
        finally:
            self._handle = None
            if acquired:
                self._lock.release()
        self._log.info("Closed %s", self.port)

    def exchange(self, request: bytes, cancel_event: Optional[threading.Event] = None) -> bytes:
        expected = expected_response_length(request)
        if not self._lock.acquire(timeout=self.timing.lock_timeout_sec):
            self._stats["lock_timeouts"] += 1
            raise LockTimeout(f"Transport lock not acquired within {self.timing.lock_timeout_sec:.1f}s")
        try:
            handle = self._handle
            if handle is None or not handle.is_open:
                raise ConnectionLost("Serial port is not open")
            self._stats["exchanges"] += 1
            self._log.debug("TX %s", request.hex(" "))
            try:
                handle.reset_input_buffer()
                handle.write(request)
                handle.flush()
                response = self._read_response(handle, expected, cancel_event)
            except ModbusError:
                raise
            except (serial.SerialException, OSError) as exc:
                raise ConnectionLost(f"Serial I/O failed: {exc}") from exc
        except ResponseTimeout:
            self._stats["timeouts"] += 1
            raise
        except (ConnectionLost, Cancelled):
            self._stats["failures"] += 1
            raise
        finally:
            self._lock.release()
        self._log.debug("RX %s", response.hex(" "))
        validate_response(request, response)
        return response

    def _read_response(self, handle, expected: int, cancel_event: Optional[threading.Event]) -> bytes:
        buffer = bytearray()
        deadline = time.monotonic() + self.timing.response_timeout_sec
        while len(buffer) < expected:
            if not handle.is_open:
                raise ConnectionLost("Serial port closed while reading")
            if cancel_event is not None and cancel_event.is_set():
                raise Cancelled("Exchange cancelled")
            if time.monotonic() > deadline:
                raise ResponseTimeout(
                    f"Timed out waiting for response (expected={expected}, received={len(buffer)})"
                )
            available = handle.in_waiting
            if available:
                buffer.extend(handle.read(min(available, expected - len(buffer))))
                if len(buffer) >= 2 and buffer[1] & EXCEPTION_BIT:
                    expected = EXCEPTION_RESPONSE_LENGTH
                    del buffer[expected:]
                continue
            if cancel_event is not None:
                cancel_event.wait(self.timing.idle_poll_sec)
            else:
                time.sleep(self.timing.idle_poll_sec)
        return bytes(buffer)

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)
