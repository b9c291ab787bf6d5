from __future__ import annotations

import struct
import threading
import time
from typing import Dict, List

import pytest

from sixforce.modbus.client import SensorClient
from sixforce.modbus.config import ModbusTiming, RegisterMap
from sixforce.modbus.frames import append_crc, check_crc


class FakeSerialException(IOError):
    pass


class SimulatedSensor:
    """In-memory Modbus slave: 16-bit holding registers plus fault injection."""

    def __init__(self, slave_id: int = 1) -> None:
        self.slave_id = slave_id
        self.registers: Dict[int, int] = {}
        self.requests: List[bytes] = []
        self.silent = False
        self.corrupt_reads: Dict[int, int] = {}
        self.exception_for: Dict[int, int] = {}
        self.drop_writes: Dict[int, int] = {}
        self._lock = threading.Lock()

    def set_int32(self, address: int, value: int) -> None:
        high, low = struct.unpack(">HH", struct.pack(">i", value))
        self.registers[address] = high
        self.registers[address + 1] = low

    def get_int32(self, address: int) -> int:
        raw = struct.pack(">HH", self.registers.get(address, 0), self.registers.get(address + 1, 0))
        return struct.unpack(">i", raw)[0]

    def set_channels(self, start: int, values: List[int]) -> None:
        for idx, value in enumerate(values):
            self.set_int32(start + idx * 2, value)

    def handle(self, request: bytes) -> bytes:
        with self._lock:
            self.requests.append(request)
            if self.silent or len(request) < 8 or not check_crc(request):
                return b""
            if request[0] != self.slave_id:
                return b""
            function_code = request[1]
            address = struct.unpack_from(">H", request, 2)[0]
            if address in self.exception_for:
                return append_crc(bytes([self.slave_id, function_code | 0x80, self.exception_for[address]]))
            if function_code == 0x03:
                count = struct.unpack_from(">H", request, 4)[0]
                payload = b"".join(struct.pack(">H", self.registers.get(address + i, 0)) for i in range(count))
                response = append_crc(bytes([self.slave_id, 0x03, 2 * count]) + payload)
                if self.corrupt_reads.get(address, 0) > 0:
                    self.corrupt_reads[address] -= 1
                    response = response[:-1] + bytes([response[-1] ^ 0xFF])
                return response
            if function_code == 0x10:
                if self.drop_writes.get(address, 0) > 0:
                    self.drop_writes[address] -= 1
                    return b""
                count = struct.unpack_from(">H", request, 4)[0]
                for i in range(count):
                    self.registers[address + i] = struct.unpack_from(">H", request, 7 + 2 * i)[0]
                return append_crc(struct.pack(">BBHH", self.slave_id, 0x10, address, count))
            return append_crc(bytes([self.slave_id, function_code | 0x80, 0x01]))

    def requests_with(self, function_code: int) -> List[bytes]:
        with self._lock:
            return [req for req in self.requests if req[1] == function_code]


class FakeSerialPort:
    def __init__(self, sensor: SimulatedSensor, **kwargs) -> None:
        self.sensor = sensor
        self.kwargs = kwargs
        self.port = kwargs.get("port")
        self.is_open = True
        self._rx = bytearray()

    @property
    def in_waiting(self) -> int:
        if not self.is_open:
            raise FakeSerialException("port closed")
        return len(self._rx)

    def read(self, size: int = 1) -> bytes:
        data = bytes(self._rx[:size])
        del self._rx[:size]
        return data

    def write(self, data: bytes) -> int:
        if not self.is_open:
            raise FakeSerialException("port closed")
        self._rx.extend(self.sensor.handle(bytes(data)))
        return len(data)

    def flush(self) -> None:
        pass

    def reset_input_buffer(self) -> None:
        self._rx.clear()

    def close(self) -> None:
        self.is_open = False


class FakeSerialModule:
    SerialException = FakeSerialException
    EIGHTBITS = 8
    PARITY_NONE = "N"
    STOPBITS_ONE = 1

    def __init__(self, sensor: SimulatedSensor) -> None:
        self.sensor = sensor
        self.unavailable: set = set()
        self.opened: List[FakeSerialPort] = []

    def Serial(self, **kwargs) -> FakeSerialPort:
        if kwargs.get("port") in self.unavailable:
            raise FakeSerialException(f"could not open port {kwargs.get('port')}")
        handle = FakeSerialPort(self.sensor, **kwargs)
        self.opened.append(handle)
        return handle


@pytest.fixture
def sensor() -> SimulatedSensor:
    return SimulatedSensor()


@pytest.fixture
def fake_serial(monkeypatch, sensor: SimulatedSensor) -> FakeSerialModule:
    module = FakeSerialModule(sensor)
    monkeypatch.setattr("sixforce.modbus.transport.serial", module)
    return module


@pytest.fixture
def fast_timing() -> ModbusTiming:
    return ModbusTiming(
        response_timeout_sec=0.2,
        lock_timeout_sec=0.3,
        close_lock_timeout_sec=0.1,
        idle_poll_sec=0.001,
        read_delay_sec=0.001,
        poll_interval_sec=0.005,
        pause_check_sec=0.005,
        error_retry_sec=0.02,
        clear_settle_sec=0.01,
        retry_delay_sec=0.001,
        cell_interval_sec=0.0,
        save_settle_sec=0.0,
        stop_join_sec=1.0,
    )


@pytest.fixture
def register_map() -> RegisterMap:
    return RegisterMap(
        force_start_address=0x0020,
        force_register_count=12,
        mv_start_address=0x0000,
        mv_register_count=12,
        clear_function_address=0x0626,
        clear_channel_start_code=0x15,
        clear_all_channels_code=0x1B,
        decoupling_start_address=0x0100,
        decoupling_row_count=6,
        elements_per_row=6,
        registers_per_element=2,
        skip_registers_per_row=4,
        save_parameters_address=0x0700,
        save_parameters_value=(1,),
    )


@pytest.fixture
def client(fake_serial: FakeSerialModule, fast_timing: ModbusTiming, register_map: RegisterMap):
    sensor_client = SensorClient(timing=fast_timing)
    sensor_client.set_register_map(register_map, model="503A")
    sensor_client.connect("/dev/ttyFAKE", 115200)
    try:
        yield sensor_client
    finally:
        sensor_client.disconnect()


def wait_until(predicate, timeout: float = 2.0, step: float = 0.005) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(step)
    return predicate()


@pytest.fixture
def wait_for():
    return wait_until
