"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import typer

from turniectl.api import create_session
from turniectl.core.device_store import FileDeviceStore
from turniectl.core.errors import (
    DeviceSelectionError,
    EncodeError,
    TransportConnectError,
    TransportUnavailableError,
    TurnieError,
)
from turniectl.core.model import Disconnected, PeripheralRef
from turniectl.core.profile_loader import load_profiles
from turniectl.core.session import Session

_READY_TIMEOUT_S = 5.0

app = typer.Typer(help="Send text and pixel art to turnie displays over Bluetooth LE")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _build_session(profile: str | None) -> Session:
    session = create_session(profile_id=profile)
    for warning in session.load_warnings:
        typer.echo(f"Warning: {warning}", err=True)
    return session


async def _wait_ready(session: Session) -> None:
    await session.wait_for(lambda s: s.bluetooth_ready or s.last_error is not None, _READY_TIMEOUT_S)
    if not session.bluetooth_ready:
        error = session.last_error
        raise TransportUnavailableError(error.message if error else "Bluetooth adapter did not become ready")


async def _ensure_connected(session: Session, device: str | None, timeout_s: float) -> None:
    await _wait_ready(session)
    if device:
        await session.connect(PeripheralRef(identifier=device))
    elif not session.has_previous_device:
        raise DeviceSelectionError("No previously connected device. Use --device to choose one.")
    elif not (session.auto_connecting or session.connected):
        await session.reconnect_last()

    await session.wait_for(lambda s: s.connected or isinstance(s.state, Disconnected), timeout_s)
    if not session.connected:
        error = session.last_error
        detail = f": {error.message}" if error else ""
        raise TransportConnectError(f"Could not connect to {session.device_name}{detail}")


async def _with_connection(
    session: Session,
    device: str | None,
    timeout_s: float,
    action: Callable[[Session], Awaitable[int]],
) -> tuple[int, str]:
    async with session:
        await _ensure_connected(session, device, timeout_s)
        count = await action(session)
        return count, session.device_name


async def _scan(session: Session, timeout_s: float) -> tuple[PeripheralRef, ...]:
    async with session:
        await _wait_ready(session)
        await session.start_scan()
        await asyncio.sleep(timeout_s)
        found = session.discovered
        await session.stop_scan()
    return found


async def _fetch(session: Session, device: str | None, timeout_s: float, wait_s: float) -> str:
    async with session:
        await _ensure_connected(session, device, timeout_s)
        await session.request_stored_data()
        await asyncio.sleep(wait_s)
        return session.last_received_text


@app.command("profiles")
def list_profiles() -> None:
    """List available device profiles."""
    try:
        loaded = load_profiles()
        for warning in loaded.warnings:
            typer.echo(f"Warning: {warning}", err=True)
        if not loaded.profiles:
            typer.echo("No profiles loaded")
            raise typer.Exit(code=1)

        for profile in sorted(loaded.profiles.values(), key=lambda p: p.id):
            typer.echo(f"{profile.id}: {profile.name}")
            typer.echo(f"  service: {profile.service_uuid}")
            typer.echo(
                f"  transfer: {profile.transfer.chunk_size} byte chunks, "
                f"{profile.transfer.chunk_interval_s * 1000:.0f} ms apart"
            )
            typer.echo(f"  image: {profile.image.width}x{profile.image.height}")
    except TurnieError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("status")
def status() -> None:
    """Show the last bonded device."""
    try:
        device = FileDeviceStore().load()
        if device is None:
            typer.echo("No bonded device")
            return
        typer.echo(f"Last connected: {device.display_name} ({device.identifier})")
    except TurnieError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("scan")
def scan(
    timeout: float = typer.Option(5.0, "--timeout", help="Seconds to scan"),
    profile: str | None = typer.Option(None, "--profile", help="Profile ID"),
) -> None:
    """Scan for advertising displays."""
    try:
        devices = asyncio.run(_scan(_build_session(profile), timeout))
        if not devices:
            typer.echo("No devices found")
            return
        for device in devices:
            typer.echo(f"{device.identifier} {device.display_name} rssi={device.rssi}")
    except TurnieError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("send-text")
def send_text(
    text: str,
    device: str | None = typer.Option(None, "--device", help="Address or UUID; defaults to the bonded device"),
    profile: str | None = typer.Option(None, "--profile", help="Profile ID"),
    timeout: float = typer.Option(15.0, "--timeout", help="Seconds to wait for a connection"),
) -> None:
    """Send a text message to the display."""
    try:
        session = _build_session(profile)
        count, name = asyncio.run(
            _with_connection(session, device, timeout, lambda s: s.send_text(text))
        )
        typer.echo(f"Sent text to {name} in {count} chunks")
    except TurnieError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("send-image")
def send_image(
    pixels: str = typer.Argument(..., help="RGB pixel buffer as hex, row-major"),
    device: str | None = typer.Option(None, "--device", help="Address or UUID; defaults to the bonded device"),
    profile: str | None = typer.Option(None, "--profile", help="Profile ID"),
    timeout: float = typer.Option(15.0, "--timeout", help="Seconds to wait for a connection"),
) -> None:
    """Send a pixel-art image to the display.

    PIXELS must hold exactly 3 x width x height bytes for the profile.
    """
    try:
        session = _build_session(profile)
        try:
            data = bytes.fromhex(pixels.replace(" ", ""))
        except ValueError as exc:
            raise EncodeError(f"PIXELS must be hex: {exc}") from exc
        image = session.profile.image
        if len(data) != image.byte_length:
            raise EncodeError(
                f"Expected {image.byte_length} bytes for a {image.width}x{image.height} image, got {len(data)}"
            )
        count, name = asyncio.run(
            _with_connection(session, device, timeout, lambda s: s.send_image(data))
        )
        typer.echo(f"Sent image to {name} in {count} chunks")
    except TurnieError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("fetch")
def fetch(
    device: str | None = typer.Option(None, "--device", help="Address or UUID; defaults to the bonded device"),
    profile: str | None = typer.Option(None, "--profile", help="Profile ID"),
    timeout: float = typer.Option(15.0, "--timeout", help="Seconds to wait for a connection"),
    wait: float = typer.Option(3.0, "--wait", help="Seconds to collect the response"),
) -> None:
    """Ask the display for its stored content and print it."""
    try:
        session = _build_session(profile)
        text = asyncio.run(_fetch(session, device, timeout, wait))
        if not text:
            typer.echo("No data received")
            return
        typer.echo(text, nl=False)
    except TurnieError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
