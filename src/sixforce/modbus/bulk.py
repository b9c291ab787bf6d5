from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Sequence, TypeVar

from .config import ModbusTiming, RegisterMap
from .errors import ArgumentError, Cancelled, CellTransferError, ConfigurationError, ModbusError
from .frames import build_read_request, build_write_request, parse_read_response, parse_write_ack
from .matrix import DecouplingMatrix, cell_address
from .transport import SerialTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BulkTransferEngine:
    """
    Cell-by-cell transfer of the decoupling matrix plus the parameter-save
    command. Every wait goes through `cancel_event` so a disconnect aborts the
    transfer at the next step.
    """

    def __init__(
        self,
        transport: SerialTransport,
        slave_id: Callable[[], int],
        timing: Optional[ModbusTiming] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.transport = transport
        self.timing = timing or ModbusTiming()
        self._slave_id = slave_id
        self.cancel_event = cancel_event or threading.Event()
        self._log = logging.getLogger(__name__)

    def read_matrix(self, register_map: RegisterMap) -> DecouplingMatrix:
        matrix = DecouplingMatrix.for_map(register_map)
        for row, col in matrix.cells():
            address = cell_address(register_map, row, col)
            matrix[row, col] = self._with_retry("read", row, col, lambda: self._read_cell(address))
            self._wait(self.timing.cell_interval_sec)
        self._log.info("Read %dx%d decoupling matrix", matrix.rows, matrix.cols)
        return matrix

    def write_matrix(self, register_map: RegisterMap, matrix: DecouplingMatrix) -> None:
        expected = DecouplingMatrix.for_map(register_map).shape
        if matrix.shape != expected:
            raise ArgumentError(f"matrix shape {matrix.shape} does not match device layout {expected}")
        for row, col in matrix.cells():
            address = cell_address(register_map, row, col)
            value = matrix[row, col]
            self._with_retry("write", row, col, lambda: self._write_cell(address, value))
            self._wait(self.timing.cell_interval_sec)
        self._log.info("Wrote %dx%d decoupling matrix", matrix.rows, matrix.cols)
        self.save_parameters(register_map)

    def save_parameters(self, register_map: RegisterMap) -> None:
        if not register_map.save_parameters_value:
            raise ConfigurationError("Register map has no save_parameters_value")
        self._log.info(
            "Saving parameters: address=0x%04X values=%s",
            register_map.save_parameters_address,
            list(register_map.save_parameters_value),
        )
        self.write_registers(register_map.save_parameters_address, register_map.save_parameters_value)
        self._wait(self.timing.save_settle_sec)

    def write_registers(self, start_address: int, values: Sequence[int]) -> None:
        request = build_write_request(self._slave_id(), start_address, list(values))
        response = self.transport.exchange(request, self.cancel_event)
        parse_write_ack(request, response)

    def _read_cell(self, address: int) -> int:
        request = build_read_request(self._slave_id(), address, 2)
        response = self.transport.exchange(request, self.cancel_event)
        return parse_read_response(response, expected_channel_count=1)[0]

    def _write_cell(self, address: int, value: int) -> None:
        self.write_registers(address, [value])

    def _with_retry(self, operation: str, row: int, col: int, action: Callable[[], T]) -> T:
        attempts = max(self.timing.cell_attempts, 1)
        attempt = 1
        while True:
            try:
                return action()
            except Cancelled:
                raise
            except ModbusError as exc:
                self._log.debug("%s [%d,%d] attempt %d/%d failed: %s", operation, row, col, attempt, attempts, exc)
                if attempt >= attempts:
                    raise CellTransferError(operation, row, col, exc) from exc
            self._wait(self.timing.retry_delay_sec)
            attempt += 1

    def _wait(self, seconds: float) -> None:
        if self.cancel_event.wait(seconds):
            raise Cancelled("Bulk transfer cancelled")
