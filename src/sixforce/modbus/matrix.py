from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, List, Sequence, Tuple

import numpy as np

from .config import RegisterMap
from .errors import ArgumentError, ConfigurationError
from .frames import INT32_MAX, INT32_MIN


def cell_address(register_map: RegisterMap, row: int, col: int) -> int:
    """
    Start register of matrix cell (row, col). Each row may reserve
    `skip_registers_per_row` trailing registers that are never addressed.
    """
    if not register_map.supports_decoupling:
        raise ConfigurationError("Register map has no decoupling matrix block")
    if not 0 <= row < register_map.decoupling_row_count:
        raise ArgumentError(f"row {row} outside 0..{register_map.decoupling_row_count - 1}")
    if not 0 <= col < register_map.elements_per_row:
        raise ArgumentError(f"col {col} outside 0..{register_map.elements_per_row - 1}")
    row_stride = (
        register_map.elements_per_row * register_map.registers_per_element
        + register_map.skip_registers_per_row
    )
    return (
        register_map.decoupling_start_address
        + row * row_stride
        + col * register_map.registers_per_element
    )


@dataclass
class DecouplingMatrix:
    """Row-major flat storage of the calibration coefficients (signed 32-bit)."""

    rows: int = 6
    cols: int = 6
    values: List[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.rows <= 0 or self.cols <= 0:
            raise ArgumentError(f"matrix shape must be positive, got {self.rows}x{self.cols}")
        if not self.values:
            self.values = [0] * (self.rows * self.cols)
        if len(self.values) != self.rows * self.cols:
            raise ArgumentError(
                f"matrix needs {self.rows * self.cols} values, got {len(self.values)}"
            )
        self.values = [_check_int32(value) for value in self.values]

    @staticmethod
    def for_map(register_map: RegisterMap) -> "DecouplingMatrix":
        if not register_map.supports_decoupling:
            raise ConfigurationError("Register map has no decoupling matrix block")
        return DecouplingMatrix(register_map.decoupling_row_count, register_map.elements_per_row)

    @staticmethod
    def from_rows(rows: Sequence[Sequence[int]]) -> "DecouplingMatrix":
        if not rows or any(len(row) != len(rows[0]) for row in rows):
            raise ArgumentError("matrix rows must be non-empty and of identical length")
        flat = [int(value) for row in rows for value in row]
        return DecouplingMatrix(len(rows), len(rows[0]), flat)

    @staticmethod
    def from_array(array: np.ndarray) -> "DecouplingMatrix":
        data = np.asarray(array)
        if data.ndim != 2:
            raise ArgumentError("matrix array must be 2-D")
        if not np.issubdtype(data.dtype, np.integer):
            raise ArgumentError(f"matrix array must hold integers, got {data.dtype}")
        return DecouplingMatrix(data.shape[0], data.shape[1], [int(v) for v in data.ravel()])

    @property
    def shape(self) -> Tuple[int, int]:
        return self.rows, self.cols

    def index(self, row: int, col: int) -> int:
        if not (0 <= row < self.rows and 0 <= col < self.cols):
            raise ArgumentError(f"cell [{row},{col}] outside {self.rows}x{self.cols} matrix")
        return row * self.cols + col

    def __getitem__(self, key: Tuple[int, int]) -> int:
        return self.values[self.index(*key)]

    def __setitem__(self, key: Tuple[int, int], value: int) -> None:
        self.values[self.index(*key)] = _check_int32(value)

    def cells(self) -> Iterator[Tuple[int, int]]:
        for row in range(self.rows):
            for col in range(self.cols):
                yield row, col

    def to_rows(self) -> List[List[int]]:
        return [self.values[r * self.cols : (r + 1) * self.cols] for r in range(self.rows)]

    def to_array(self) -> np.ndarray:
        return np.array(self.values, dtype=np.int32).reshape(self.rows, self.cols)


def _check_int32(value: int) -> int:
    value = int(value)
    if not INT32_MIN <= value <= INT32_MAX:
        raise ArgumentError(f"value {value} does not fit in a signed 32-bit register pair")
    return value
