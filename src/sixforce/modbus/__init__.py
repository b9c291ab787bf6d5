"""
Modbus RTU core for the six-axis force/torque sensor.

The subpackage holds the frame codec, the locked serial transport, the
background poll loop and the retrying matrix transfer. UI layers talk to it
through `SensorClient`; register layouts are loaded from JSON per model.
"""

from .bulk import BulkTransferEngine
from .client import ConnectionState, SensorClient
from .config import ModbusTiming, RegisterMap, load_register_maps, load_timing
from .errors import (
    ArgumentError,
    Cancelled,
    CellTransferError,
    ConfigurationError,
    ConnectionLost,
    CrcError,
    DeviceError,
    FrameError,
    FunctionCodeError,
    LockTimeout,
    ModbusError,
    ResponseTimeout,
    SlaveIdMismatch,
)
from .frames import (
    build_clear_channel_request,
    build_read_request,
    build_write_request,
    clear_channel_code,
    crc16_modbus,
    parse_read_response,
    validate_response,
)
from .matrix import DecouplingMatrix, cell_address
from .polling import CHANNELS, ChannelReading, PollingEngine, PollState, QueueSink
from .transport import SerialSettings, SerialTransport

__all__ = [
    "BulkTransferEngine",
    "ConnectionState",
    "SensorClient",
    "ModbusTiming",
    "RegisterMap",
    "load_register_maps",
    "load_timing",
    "ArgumentError",
    "Cancelled",
    "CellTransferError",
    "ConfigurationError",
    "ConnectionLost",
    "CrcError",
    "DeviceError",
    "FrameError",
    "FunctionCodeError",
    "LockTimeout",
    "ModbusError",
    "ResponseTimeout",
    "SlaveIdMismatch",
    "build_clear_channel_request",
    "build_read_request",
    "build_write_request",
    "clear_channel_code",
    "crc16_modbus",
    "parse_read_response",
    "validate_response",
    "DecouplingMatrix",
    "cell_address",
    "CHANNELS",
    "ChannelReading",
    "PollingEngine",
    "PollState",
    "QueueSink",
    "SerialSettings",
    "SerialTransport",
]
