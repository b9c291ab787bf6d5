from __future__ import annotations

from typing import Optional


class ModbusError(Exception):
    """Base class for every failure raised by the Modbus core."""


class ResponseTimeout(ModbusError, TimeoutError):
    """No response, or a partial one, within the configured window."""


class LockTimeout(ModbusError, TimeoutError):
    """The transport stayed busy longer than the bounded lock wait."""


class CrcError(ModbusError):
    pass


class SlaveIdMismatch(ModbusError):
    pass


class FunctionCodeError(ModbusError):
    pass


class FrameError(ModbusError):
    """Malformed frame: wrong length, byte count or write echo."""


class DeviceError(ModbusError):
    """Exception response signalled by the device (function code high bit set)."""

    def __init__(self, code: int, function_code: Optional[int] = None) -> None:
        self.code = code
        self.function_code = function_code
        super().__init__(f"Device returned exception code 0x{code:02X}")


class ConnectionLost(ModbusError, ConnectionError):
    pass


class ConfigurationError(ModbusError):
    """Missing register map, unsupported model feature or not connected."""


class ArgumentError(ModbusError, ValueError):
    pass


class Cancelled(ModbusError):
    """Operation aborted because its cancellation event was set."""


class CellTransferError(ModbusError):
    def __init__(self, operation: str, row: int, col: int, cause: Exception) -> None:
        self.operation = operation
        self.row = row
        self.col = col
        self.cause = cause
        super().__init__(f"{operation} [{row},{col}] failed: {cause}")
