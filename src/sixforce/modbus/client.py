from __future__ import annotations

import enum
import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence, Union

from .bulk import BulkTransferEngine
from .config import DEFAULT_BAUDRATE, DEFAULT_SLAVE_ID, ModbusTiming, RegisterMap
from .errors import ArgumentError, Cancelled, ConfigurationError
from .frames import build_clear_channel_request, clear_channel_code, parse_write_ack
from .matrix import DecouplingMatrix
from .polling import DataCallback, ErrorCallback, PollingEngine, PollState
from .transport import SerialTransport

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class SensorClient:
    """Host-side entry point for one six-axis force/torque sensor on a serial line."""

    def __init__(self, timing: Optional[ModbusTiming] = None, slave_id: int = DEFAULT_SLAVE_ID) -> None:
        self.timing = timing or ModbusTiming()
        self.transport = SerialTransport(self.timing)
        self._slave_id = DEFAULT_SLAVE_ID
        self.slave_id = slave_id
        self._register_map: Optional[RegisterMap] = None
        self.model: Optional[str] = None
        self._shutdown = threading.Event()
        self.poller = PollingEngine(self.transport, lambda: self._register_map, lambda: self._slave_id, self.timing)
        self.bulk = BulkTransferEngine(self.transport, lambda: self._slave_id, self.timing, self._shutdown)

    @property
    def slave_id(self) -> int:
        return self._slave_id

    @slave_id.setter
    def slave_id(self, value: int) -> None:
        if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 255:
            raise ArgumentError(f"slave id must be an integer between 1 and 255, got {value!r}")
        self._slave_id = value

    @property
    def register_map(self) -> Optional[RegisterMap]:
        return self._register_map

    @property
    def is_connected(self) -> bool:
        return self.transport.is_open

    @property
    def connection_state(self) -> ConnectionState:
        return ConnectionState.CONNECTED if self.is_connected else ConnectionState.DISCONNECTED

    @property
    def poll_state(self) -> PollState:
        return self.poller.state

    def set_register_map(self, register_map: RegisterMap, model: Optional[str] = None) -> None:
        self._register_map = register_map
        self.model = model
        logger.info("Register map set (model=%s)", model or "n/a")

    def connect(self, port: str, baudrate: int = DEFAULT_BAUDRATE) -> None:
        self.transport.open(port, baudrate)
        self._shutdown.clear()

    def disconnect(self) -> None:
        self._shutdown.set()
        try:
            self.poller.stop()
        except Exception:
            logger.exception("Failed to stop polling during disconnect")
        try:
            self.transport.close()
        except Exception:
            logger.exception("Failed to close transport during disconnect")

    def start_reading(
        self,
        on_data: DataCallback,
        on_error: Optional[ErrorCallback] = None,
        interval_sec: Optional[float] = None,
    ) -> None:
        self.poller.start(on_data, on_error, interval_sec)

    def stop_reading(self) -> None:
        self.poller.stop()

    def subscribe(self, callback: DataCallback) -> None:
        self.poller.subscribe(callback)

    def unsubscribe(self, callback: DataCallback) -> None:
        self.poller.unsubscribe(callback)

    def clear_channel(self, channel: int) -> None:
        """Zero channel 1-6, or every channel with 7."""
        register_map = self._require_map()
        code = clear_channel_code(register_map, channel)
        with self._interactive():
            request = build_clear_channel_request(self._slave_id, register_map.clear_function_address, code)
            response = self.transport.exchange(request, self._shutdown)
            parse_write_ack(request, response)
        logger.info("Cleared channel %d (code=0x%02X)", channel, code)

    def read_decoupling_matrix(self) -> DecouplingMatrix:
        register_map = self._require_map()
        self._require_decoupling(register_map)
        with self._interactive():
            return self.bulk.read_matrix(register_map)

    def write_decoupling_matrix(self, matrix: Union[DecouplingMatrix, Sequence[Sequence[int]]]) -> None:
        if not isinstance(matrix, DecouplingMatrix):
            matrix = DecouplingMatrix.from_rows(matrix)
        register_map = self._require_map()
        self._require_decoupling(register_map)
        expected = (register_map.decoupling_row_count, register_map.elements_per_row)
        if matrix.shape != expected:
            raise ArgumentError(f"matrix shape {matrix.shape} does not match device layout {expected}")
        with self._interactive():
            self.bulk.write_matrix(register_map, matrix)

    def save_parameters(self) -> None:
        register_map = self._require_map()
        with self._interactive():
            self.bulk.save_parameters(register_map)

    def _require_map(self) -> RegisterMap:
        if self._register_map is None:
            raise ConfigurationError("Register map not set")
        if not self.is_connected:
            raise ConfigurationError("Serial port not connected")
        return self._register_map

    def _require_decoupling(self, register_map: RegisterMap) -> None:
        if not register_map.supports_decoupling:
            raise ConfigurationError(f"Model {self.model or 'n/a'} has no decoupling matrix")

    @contextmanager
    def _interactive(self) -> Iterator[None]:
        self.poller.pause()
        try:
            # let an in-flight poll cycle finish before taking the line
            if self._shutdown.wait(self.timing.clear_settle_sec):
                raise Cancelled("Disconnected while waiting for the poll cycle to settle")
            yield
        finally:
            self.poller.resume()

    def __enter__(self) -> "SensorClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.disconnect()
