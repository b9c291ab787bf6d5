from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Sequence, Tuple

from .errors import ConfigurationError

DEFAULT_SLAVE_ID = 1
DEFAULT_BAUDRATE = 115200
CHANNEL_REGISTER_COUNT = 12
REGISTERS_PER_INT32 = 2


@dataclass
class ModbusTiming:
    response_timeout_sec: float = 10.0
    lock_timeout_sec: float = 5.0
    close_lock_timeout_sec: float = 1.0
    idle_poll_sec: float = 0.005
    read_delay_sec: float = 0.02
    poll_interval_sec: float = 0.05
    pause_check_sec: float = 0.1
    error_retry_sec: float = 1.0
    clear_settle_sec: float = 0.15
    cell_attempts: int = 3
    retry_delay_sec: float = 0.02
    cell_interval_sec: float = 0.01
    save_settle_sec: float = 0.1
    stop_join_sec: float = 2.0


@dataclass(frozen=True)
class RegisterMap:
    """Register layout of one sensor model. Supplied by configuration, never mutated."""

    force_start_address: int
    force_register_count: int
    mv_start_address: int
    mv_register_count: int
    clear_function_address: int
    clear_channel_start_code: int
    clear_all_channels_code: int
    decoupling_start_address: int = 0
    decoupling_row_count: int = 0
    elements_per_row: int = 0
    registers_per_element: int = 2
    skip_registers_per_row: int = 0
    save_parameters_address: int = 0
    save_parameters_value: Tuple[int, ...] = field(default_factory=tuple)

    @property
    def supports_decoupling(self) -> bool:
        return self.decoupling_row_count > 0 and self.elements_per_row > 0

    def check_layout(self) -> None:
        """Reject layouts the six-channel int32 frame format cannot address."""
        for name in ("mv_register_count", "force_register_count"):
            count = getattr(self, name)
            if count != CHANNEL_REGISTER_COUNT:
                raise ConfigurationError(f"{name} must be {CHANNEL_REGISTER_COUNT} (six int32 channels), got {count}")
        if self.registers_per_element != REGISTERS_PER_INT32:
            raise ConfigurationError(
                f"registers_per_element must be {REGISTERS_PER_INT32}, got {self.registers_per_element}"
            )
        for name in ("decoupling_row_count", "elements_per_row", "skip_registers_per_row"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} may not be negative, got {getattr(self, name)}")
        for name in (
            "force_start_address",
            "mv_start_address",
            "clear_function_address",
            "decoupling_start_address",
            "save_parameters_address",
        ):
            address = getattr(self, name)
            if not 0 <= address <= 0xFFFF:
                raise ConfigurationError(f"{name} outside 0x0000-0xFFFF: {address}")
        if self.supports_decoupling:
            row_stride = self.elements_per_row * self.registers_per_element + self.skip_registers_per_row
            last = self.decoupling_start_address + self.decoupling_row_count * row_stride - 1
            if last > 0xFFFF:
                raise ConfigurationError(f"decoupling block ends past 0xFFFF (0x{last:X})")

    @staticmethod
    def from_mapping(data: Dict[str, Any]) -> "RegisterMap":
        required = (
            "force_start_address",
            "force_register_count",
            "mv_start_address",
            "mv_register_count",
            "clear_function_address",
            "clear_channel_start_code",
            "clear_all_channels_code",
        )
        missing = [name for name in required if name not in data]
        if missing:
            raise ConfigurationError(f"register map missing fields {missing}")
        known = {f.name for f in fields(RegisterMap)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"register map has unknown fields {unknown}")
        values: Dict[str, Any] = {}
        for key, raw in data.items():
            if key == "save_parameters_value":
                if not isinstance(raw, list):
                    raise ConfigurationError("save_parameters_value must be a list of integers")
                values[key] = tuple(_as_int(item, key) for item in raw)
            else:
                values[key] = _as_int(raw, key)
        register_map = RegisterMap(**values)
        register_map.check_layout()
        for name in ("clear_channel_start_code", "clear_all_channels_code"):
            code = getattr(register_map, name)
            if not 0 <= code <= 0xFF:
                raise ConfigurationError(f"{name} must fit in one byte, got {code}")
        if register_map.clear_channel_start_code + 5 > 0xFF:
            raise ConfigurationError("clear_channel_start_code leaves no room for six channels")
        return register_map


def _as_int(raw: Any, key: str) -> int:
    if isinstance(raw, bool):
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        try:
            return int(raw, 0)
        except ValueError as exc:
            raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from exc
    raise ConfigurationError(f"{key} must be an integer, got {raw!r}")


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def load_register_maps(path: Path | str, overrides: Sequence[str] | None = None) -> Dict[str, RegisterMap]:
    """
    Load the per-model register maps from JSON and apply CLI-style overrides.

    The file is an object keyed by model name. Integers may be given as hex
    strings. An optional top-level "timing" section is ignored here and read
    by `load_timing`. Overrides are dotted `model.field=value` pairs, e.g.:
        ["503A.clear_all_channels_code=0x1B"]
    """
    data = _load_raw(path, overrides)
    maps: Dict[str, RegisterMap] = {}
    for model, entry in data.items():
        if model == "timing":
            continue
        if not isinstance(entry, dict):
            raise ConfigurationError(f"register map for model '{model}' must be an object")
        try:
            maps[model] = RegisterMap.from_mapping(entry)
        except ConfigurationError as exc:
            raise ConfigurationError(f"model '{model}': {exc}") from exc
    if not maps:
        raise ConfigurationError(f"no register maps defined in {path}")
    return maps


def load_timing(path: Path | str, overrides: Sequence[str] | None = None) -> ModbusTiming:
    data = _load_raw(path, overrides).get("timing") or {}
    defaults = ModbusTiming()
    known = {f.name for f in fields(ModbusTiming)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"timing has unknown fields {unknown}")
    return ModbusTiming(
        **{
            name: type(getattr(defaults, name))(data.get(name, getattr(defaults, name)))
            for name in known
        }
    )


def _load_raw(path: Path | str, overrides: Sequence[str] | None) -> Dict[str, Any]:
    config_path = Path(path)
    try:
        data = _load_json(config_path)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"cannot load register config {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path} must contain a JSON object")
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    return _merge(data, override_data)


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ConfigurationError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ConfigurationError("Override key may not be empty")
    try:
        value = _coerce_value(raw_value.strip())
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Override '{item}' has an invalid list value: {exc}") from exc
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    try:
        return int(raw, 0)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        pass
    if raw.startswith("[") and raw.endswith("]"):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
