from __future__ import annotations

import struct
from typing import List, Sequence

from .config import RegisterMap
from .errors import (
    ArgumentError,
    CrcError,
    DeviceError,
    FrameError,
    FunctionCodeError,
    SlaveIdMismatch,
)

READ_HOLDING_REGISTERS = 0x03
WRITE_MULTIPLE_REGISTERS = 0x10
EXCEPTION_BIT = 0x80

WRITE_ACK_LENGTH = 8
EXCEPTION_RESPONSE_LENGTH = 5
MAX_READ_REGISTERS = 125
MAX_WRITE_VALUES = 61  # 122 registers, inside the 123 register limit

CLEAR_ALL_CHANNELS = 7

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1


def crc16_modbus(data: bytes, init: int = 0xFFFF) -> int:
    crc = init
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
    return crc


def append_crc(body: bytes) -> bytes:
    return bytes(body) + struct.pack("<H", crc16_modbus(body))


def check_crc(frame: bytes) -> bool:
    if len(frame) < 3:
        return False
    return struct.unpack_from("<H", frame, len(frame) - 2)[0] == crc16_modbus(frame[:-2])


def _check_slave_id(slave_id: int) -> None:
    if not 1 <= slave_id <= 0xFF:
        raise ArgumentError(f"slave id must be 1-255, got {slave_id}")


def _check_address(address: int) -> None:
    if not 0 <= address <= 0xFFFF:
        raise ArgumentError(f"register address out of range: {address}")


def build_read_request(slave_id: int, start_address: int, register_count: int) -> bytes:
    _check_slave_id(slave_id)
    _check_address(start_address)
    if not 1 <= register_count <= MAX_READ_REGISTERS:
        raise ArgumentError(f"register count must be 1-{MAX_READ_REGISTERS}, got {register_count}")
    body = struct.pack(">BBHH", slave_id, READ_HOLDING_REGISTERS, start_address, register_count)
    return append_crc(body)


def build_write_request(slave_id: int, start_address: int, values: Sequence[int]) -> bytes:
    """Write-multiple-registers frame; each int32 takes two registers, high word first."""
    _check_slave_id(slave_id)
    _check_address(start_address)
    if not values:
        raise ArgumentError("write payload may not be empty")
    if len(values) > MAX_WRITE_VALUES:
        raise ArgumentError(f"at most {MAX_WRITE_VALUES} values per write, got {len(values)}")
    for value in values:
        if not INT32_MIN <= value <= INT32_MAX:
            raise ArgumentError(f"value {value} does not fit in a signed 32-bit register pair")
    header = struct.pack(
        ">BBHHB",
        slave_id,
        WRITE_MULTIPLE_REGISTERS,
        start_address,
        len(values) * 2,
        len(values) * 4,
    )
    payload = struct.pack(f">{len(values)}i", *values)
    return append_crc(header + payload)


def clear_channel_code(register_map: RegisterMap, channel: int) -> int:
    if 1 <= channel <= 6:
        return register_map.clear_channel_start_code + (channel - 1)
    if channel == CLEAR_ALL_CHANNELS:
        return register_map.clear_all_channels_code
    raise ArgumentError(f"channel must be 1-7, got {channel}")


def build_clear_channel_request(slave_id: int, address: int, function_code_byte: int) -> bytes:
    # Two registers, 4 payload bytes: 00 00 00 <code>
    if not 0 <= function_code_byte <= 0xFF:
        raise ArgumentError(f"clear code must fit in one byte, got {function_code_byte}")
    return build_write_request(slave_id, address, [function_code_byte])


def expected_response_length(request: bytes) -> int:
    if len(request) < 8:
        raise FrameError(f"request too short ({len(request)} bytes)")
    function_code = request[1]
    if function_code == READ_HOLDING_REGISTERS:
        register_count = struct.unpack_from(">H", request, 4)[0]
        return 3 + 2 * register_count + 2
    if function_code == WRITE_MULTIPLE_REGISTERS:
        return WRITE_ACK_LENGTH
    raise FunctionCodeError(f"Unsupported function code 0x{function_code:02X}")


def validate_response(request: bytes, response: bytes) -> None:
    """
    Reject anything that must not be acted upon. Checks run in order: length,
    CRC, slave id, exception bit, function code.
    """
    if len(response) < EXCEPTION_RESPONSE_LENGTH:
        raise FrameError(f"response too short ({len(response)} bytes)")
    if not check_crc(response):
        expected = crc16_modbus(response[:-2])
        actual = struct.unpack_from("<H", response, len(response) - 2)[0]
        raise CrcError(f"CRC mismatch (expected=0x{expected:04X}, actual=0x{actual:04X})")
    if response[0] != request[0]:
        raise SlaveIdMismatch(f"Slave id mismatch (expected={request[0]}, actual={response[0]})")
    if response[1] & EXCEPTION_BIT:
        raise DeviceError(response[2], function_code=response[1] & ~EXCEPTION_BIT & 0xFF)
    if response[1] != request[1]:
        raise FunctionCodeError(
            f"Function code mismatch (expected=0x{request[1]:02X}, actual=0x{response[1]:02X})"
        )


def parse_read_response(response: bytes, expected_channel_count: int = 6) -> List[int]:
    byte_count = 4 * expected_channel_count
    if len(response) < 3 + byte_count + 2:
        raise FrameError(
            f"Read response too short (expected={3 + byte_count + 2}, actual={len(response)})"
        )
    if response[2] != byte_count:
        raise FrameError(f"Byte count mismatch (expected={byte_count}, actual={response[2]})")
    return list(struct.unpack_from(f">{expected_channel_count}i", response, 3))


def parse_write_ack(request: bytes, response: bytes) -> None:
    if len(response) != WRITE_ACK_LENGTH or response[1] != WRITE_MULTIPLE_REGISTERS:
        raise FrameError(f"Invalid write acknowledgement: {bytes(response).hex(' ')}")
    if response[2:6] != request[2:6]:
        raise FrameError(
            f"Write acknowledgement does not echo address/count "
            f"(expected={bytes(request[2:6]).hex(' ')}, actual={bytes(response[2:6]).hex(' ')})"
        )
