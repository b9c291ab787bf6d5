"""Command line interface for the sixforce package."""
from __future__ import annotations

import logging
import queue
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import numpy as np
import typer

from .modbus.client import SensorClient
from .modbus.config import DEFAULT_BAUDRATE, DEFAULT_SLAVE_ID, load_register_maps, load_timing
from .modbus.errors import ModbusError
from .modbus.matrix import DecouplingMatrix
from .modbus.polling import CHANNELS, QueueSink
from .modbus.transport import list_ports

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path("configs/register_config.json")

app = typer.Typer(context_settings={"help_option_names": ["-h", "--help"]}, help="Six-axis force sensor utilities.")
matrix_app = typer.Typer(help="Decoupling matrix transfer.")
app.add_typer(matrix_app, name="matrix")

PortOption = typer.Option("/dev/ttyUSB0", "--port", "-p", help="Serial device")
BaudOption = typer.Option(DEFAULT_BAUDRATE, "--baud", help="Serial baudrate")
SlaveOption = typer.Option(DEFAULT_SLAVE_ID, "--slave", min=1, max=255, help="Modbus slave id (1-255)")
ConfigOption = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Register map JSON")
ModelOption = typer.Option(None, "--model", "-m", help="Device model (defaults to the first in the config)")
OverrideOption = typer.Option(None, "--set", help="Override config keys, e.g. --set 503A.clear_all_channels_code=0x1B")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log frame traffic.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@contextmanager
def _session(
    port: str,
    baudrate: int,
    slave: int,
    config_path: Path,
    model: Optional[str],
    overrides: Optional[List[str]],
) -> Iterator[SensorClient]:
    try:
        maps = load_register_maps(config_path, overrides)
        timing = load_timing(config_path, overrides)
    except ModbusError as exc:
        raise typer.BadParameter(str(exc), param_hint="--config") from exc
    selected = model or next(iter(maps))
    if selected not in maps:
        raise typer.BadParameter(f"Unknown model '{selected}'. Expected one of {list(maps)}", param_hint="--model")
    client = SensorClient(timing=timing, slave_id=slave)
    client.set_register_map(maps[selected], model=selected)
    try:
        client.connect(port, baudrate)
        yield client
    except ModbusError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    finally:
        client.disconnect()


@app.command()
def ports() -> None:
    """List serial ports."""
    found = list_ports()
    if not found:
        typer.echo("No serial ports found")
    for name in found:
        typer.echo(name)


@app.command()
def models(config_path: Path = ConfigOption) -> None:
    """List device models defined in a register config."""
    try:
        maps = load_register_maps(config_path)
    except ModbusError as exc:
        raise typer.BadParameter(str(exc), param_hint="--config") from exc
    for name, register_map in maps.items():
        flag = "decoupling" if register_map.supports_decoupling else "no decoupling"
        typer.echo(f"{name}: {flag}")


@app.command()
def monitor(
    port: str = PortOption,
    baudrate: int = BaudOption,
    slave: int = SlaveOption,
    config_path: Path = ConfigOption,
    model: Optional[str] = ModelOption,
    override: Optional[List[str]] = OverrideOption,
    count: int = typer.Option(0, "--count", "-n", help="Stop after N readings (0=run until Ctrl+C)"),
    interval: Optional[float] = typer.Option(None, "--interval", help="Poll interval in seconds"),
) -> None:
    """Stream raw mV/force readings for all six channels."""

    sink = QueueSink(maxsize=64)
    errors: "queue.Queue[Exception]" = queue.Queue(maxsize=1)
    received = 0
    with _session(port, baudrate, slave, config_path, model, override) as client:
        client.start_reading(sink, errors.put_nowait, interval)
        typer.echo("\t".join(["#"] + [f"{name}(mV,F)" for name in CHANNELS]))
        try:
            while count <= 0 or received < count:
                try:
                    reading = sink.get(timeout=1.0)
                except queue.Empty:
                    if not errors.empty():
                        raise errors.get_nowait()
                    continue
                received += 1
                cells = [f"{reading[name][0]},{reading[name][1]}" for name in CHANNELS]
                typer.echo("\t".join([str(received)] + cells))
        except KeyboardInterrupt:
            logger.info("Stopping monitor (Ctrl+C)")
        finally:
            client.stop_reading()
            stats = client.poller.stats()
            logger.info(
                "received=%d cycles=%d errors=%d dropped=%d",
                received,
                stats["cycles"],
                stats["errors"],
                sink.dropped,
            )


@app.command()
def clear(
    channel: int = typer.Option(..., "--channel", help="Channel 1-6, or 7 for all channels"),
    port: str = PortOption,
    baudrate: int = BaudOption,
    slave: int = SlaveOption,
    config_path: Path = ConfigOption,
    model: Optional[str] = ModelOption,
    override: Optional[List[str]] = OverrideOption,
) -> None:
    """Zero one channel or all of them."""
    if not 1 <= channel <= 7:
        raise typer.BadParameter("channel must be 1-7", param_hint="--channel")
    with _session(port, baudrate, slave, config_path, model, override) as client:
        client.clear_channel(channel)
    typer.echo("All channels cleared" if channel == 7 else f"Channel {channel} cleared")


@app.command()
def save(
    port: str = PortOption,
    baudrate: int = BaudOption,
    slave: int = SlaveOption,
    config_path: Path = ConfigOption,
    model: Optional[str] = ModelOption,
    override: Optional[List[str]] = OverrideOption,
) -> None:
    """Persist device parameters."""
    with _session(port, baudrate, slave, config_path, model, override) as client:
        client.save_parameters()
    typer.echo("Parameters saved")


@matrix_app.command("read")
def matrix_read(
    out: Optional[Path] = typer.Option(None, "--out", help="Write the matrix as CSV"),
    port: str = PortOption,
    baudrate: int = BaudOption,
    slave: int = SlaveOption,
    config_path: Path = ConfigOption,
    model: Optional[str] = ModelOption,
    override: Optional[List[str]] = OverrideOption,
) -> None:
    """Read the decoupling matrix from the device."""
    with _session(port, baudrate, slave, config_path, model, override) as client:
        matrix = client.read_decoupling_matrix()
    for row in matrix.to_rows():
        typer.echo(",".join(str(value) for value in row))
    if out is not None:
        save_matrix_csv(out, matrix)
        typer.echo(f"Wrote matrix to {out}")


@matrix_app.command("write")
def matrix_write(
    input_path: Path = typer.Option(..., "--in", help="Matrix CSV", exists=True, readable=True),
    port: str = PortOption,
    baudrate: int = BaudOption,
    slave: int = SlaveOption,
    config_path: Path = ConfigOption,
    model: Optional[str] = ModelOption,
    override: Optional[List[str]] = OverrideOption,
) -> None:
    """Write a decoupling matrix CSV to the device and save parameters."""
    try:
        matrix = load_matrix_csv(input_path)
    except (ValueError, ModbusError) as exc:
        raise typer.BadParameter(f"Invalid matrix file: {exc}", param_hint="--in") from exc
    with _session(port, baudrate, slave, config_path, model, override) as client:
        client.write_decoupling_matrix(matrix)
    typer.echo(f"Wrote {matrix.rows}x{matrix.cols} matrix and saved parameters")


def save_matrix_csv(path: Path, matrix: DecouplingMatrix) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savetxt(path, matrix.to_array(), fmt="%d", delimiter=",")


def load_matrix_csv(path: Path) -> DecouplingMatrix:
    data = np.loadtxt(path, dtype=np.int64, delimiter=",", ndmin=2)
    return DecouplingMatrix.from_array(data)


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
