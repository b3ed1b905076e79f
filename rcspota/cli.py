"""Typer CLI entrypoint."""

from __future__ import annotations

import logging

import typer

from rcspota.api import Client
from rcspota.core.errors import RcspOtaError
from rcspota.core.model import OtaProgress, OtaState

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

app = typer.Typer(help="Firmware upgrades for RCSP Bluetooth LE accessories")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)


@app.command("scan")
def scan(
    timeout: float = typer.Option(10.0, "--timeout", help="Scan duration in seconds"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """List nearby Bluetooth LE devices."""
    _configure_logging(verbose)
    try:
        devices = Client().scan(timeout)
        if not devices:
            typer.echo("No Bluetooth LE devices found")
            return

        for device in devices:
            rssi = f"{device.rssi} dBm" if device.rssi is not None else "?"
            typer.echo(f"{device.device_id} {device.name or '<unnamed>'} ({rssi})")
    except RcspOtaError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("inspect")
def inspect(firmware: str) -> None:
    """Validate a firmware file and print its size and checksum."""
    try:
        info = Client().inspect_firmware(firmware)
        typer.echo(f"File: {firmware}")
        typer.echo(f"Size: {info.size} bytes")
        typer.echo(f"CRC16: 0x{info.crc16:04X}")
        typer.echo(f"Header: {info.header[:16].hex(' ')}")
    except RcspOtaError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("config")
def show_config(
    config: str | None = typer.Option(None, "--config", help="Path to a YAML config file"),
) -> None:
    """Print the effective configuration."""
    try:
        client = Client(config_path=config)
        source = client.config_source or "<defaults>"
        settings = client.config
        typer.echo(f"Source: {source}")
        typer.echo(f"  command_timeout_s: {settings.command_timeout_s}")
        typer.echo(f"  reconnect_timeout_s: {settings.reconnect_timeout_s}")
        typer.echo(f"  offline_timeout_s: {settings.offline_timeout_s}")
        typer.echo(f"  reconnect_settle_s: {settings.reconnect_settle_s}")
        typer.echo(f"  max_retries: {settings.max_retries}")
        typer.echo(f"  transfer_block_size: {settings.transfer_block_size}")
        typer.echo(f"  transport.service_uuid: {settings.transport.service_uuid}")
        typer.echo(f"  transport.write_char_uuid: {settings.transport.write_char_uuid}")
        typer.echo(f"  transport.notify_char_uuid: {settings.transport.notify_char_uuid}")
        typer.echo(f"  transport.write_with_response: {str(settings.transport.write_with_response).lower()}")
        typer.echo(f"  transport.connect_timeout_s: {settings.transport.connect_timeout_s}")
    except RcspOtaError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("upgrade")
def upgrade(
    device: str,
    firmware: str,
    config: str | None = typer.Option(None, "--config", help="Path to a YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Upgrade DEVICE (address) with the FIRMWARE file."""
    _configure_logging(verbose)
    last_percent = -1

    def _on_state(state: OtaState) -> None:
        typer.echo(f"[{state.value}]")

    def _on_progress(progress: OtaProgress) -> None:
        nonlocal last_percent
        percent = int(progress.percentage)
        if percent == last_percent:
            return
        last_percent = percent
        typer.echo(
            f"  {progress.percentage:5.1f}% {progress.transferred_bytes}/{progress.total_bytes} bytes "
            f"{progress.speed / 1024:.1f} KiB/s"
        )

    try:
        client = Client(config_path=config)
        result = client.upgrade(device, firmware, on_state=_on_state, on_progress=_on_progress)
    except RcspOtaError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        typer.echo("Cancelled", err=True)
        raise typer.Exit(code=130) from None

    if not result.success:
        typer.echo(f"Error: {result.message} ({int(result.error_code)})", err=True)
        raise typer.Exit(code=1)
    version = result.device_info.version_name if result.device_info else "unknown"
    typer.echo(f"Upgrade completed in {result.elapsed_s:.1f}s (firmware {version})")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
