"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any
from uuid import UUID

import typer

from beaconctl.core.errors import BeaconctlError
from beaconctl.core.model import FirmwareImage, UpdateProgress
from beaconctl.core.profile_loader import DEFAULT_PROFILE_ID, load_profile, load_profiles
from beaconctl.core.registers import parse_text_value
from beaconctl.core.service import BeaconConnection

app = typer.Typer(help="Configure and update BLE proximity beacons")

_PROFILE_OPTION = typer.Option(DEFAULT_PROFILE_ID, "--profile", help="Device profile ID")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log connection and transfer details"),
) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s %(message)s")


def _format(value: Any) -> str:
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, UUID):
        return str(value).upper()
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _read_image(path: Path, hardware: str, version: str, changelog: str) -> FirmwareImage:
    return FirmwareImage(
        data=path.read_bytes(),
        hardware_version=hardware,
        firmware_version=version,
        changelog=changelog,
    )


def _print_progress(progress: UpdateProgress) -> None:
    typer.echo(f"{progress.percent:3d}% {progress.stage.value}: {progress.description}")


@app.command("registers")
def list_registers(profile: str = _PROFILE_OPTION) -> None:
    """List the registers a device profile exposes."""
    try:
        loaded = load_profiles()
        for warning in loaded.warnings:
            typer.echo(f"Warning: {warning}", err=True)
        spec = loaded.profiles.get(profile)
        if spec is None:
            typer.echo(f"Error: Unknown profile '{profile}'", err=True)
            raise typer.Exit(code=1)

        typer.echo(f"{spec.id}: {spec.name}")
        for register in sorted(spec.registers.values(), key=lambda r: r.register_id):
            extra = f" notify={register.notify}" if register.notify else ""
            typer.echo(f"  0x{register.register_id:02x} {register.name}: {register.type} {register.access}{extra}")
    except BeaconctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("read")
def read_register(
    identifier: str,
    register: str,
    profile: str = _PROFILE_OPTION,
) -> None:
    """Read one register from a beacon by MAC address."""

    async def _run() -> Any:
        async with BeaconConnection(identifier, profile_id=profile) as beacon:
            return await beacon.read(register)

    try:
        value = asyncio.run(_run())
        typer.echo(f"{register}={_format(value)}")
    except BeaconctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("write")
def write_register(
    identifier: str,
    register: str,
    value: str,
    profile: str = _PROFILE_OPTION,
) -> None:
    """Validate VALUE and write it to a beacon register."""
    try:
        device_profile = load_profile(profile)
        spec = device_profile.registers.get(register)
        if spec is None:
            available = ", ".join(sorted(device_profile.registers))
            typer.echo(f"Error: Unknown register '{register}'. Available: {available}", err=True)
            raise typer.Exit(code=1)
        parsed = parse_text_value(spec, value)

        async def _run() -> Any:
            async with BeaconConnection(identifier, profile=device_profile) as beacon:
                return await beacon.write(register, parsed)

        result = asyncio.run(_run())
        typer.echo(f"Wrote {register}={_format(result)}")
    except BeaconctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("firmware-check")
def firmware_check(
    identifier: str,
    image: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    hardware: str = typer.Option(..., "--hardware", help="Hardware revision the image targets"),
    version: str = typer.Option(..., "--version", help="Firmware version of the image"),
    changelog: str = typer.Option("", "--changelog"),
    profile: str = _PROFILE_OPTION,
) -> None:
    """Report whether IMAGE is an update for the beacon."""
    firmware = _read_image(image, hardware, version, changelog)

    async def _run():
        async with BeaconConnection(identifier, profile_id=profile) as beacon:
            return await beacon.check_firmware_update(firmware)

    try:
        info = asyncio.run(_run())
    except BeaconctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    if not info.available:
        typer.echo("No firmware update available")
        return
    typer.echo(f"Update available: {info.firmware_version} for hardware {info.hardware_version}")
    if info.changelog:
        typer.echo(info.changelog)


@app.command("firmware-update")
def firmware_update(
    identifier: str,
    image: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    hardware: str = typer.Option(..., "--hardware", help="Hardware revision the image targets"),
    version: str = typer.Option(..., "--version", help="Firmware version of the image"),
    profile: str = _PROFILE_OPTION,
) -> None:
    """Upload IMAGE to the beacon and reboot it into the new firmware."""
    firmware = _read_image(image, hardware, version, "")

    async def _run():
        async with BeaconConnection(identifier, profile_id=profile) as beacon:
            return await beacon.update_firmware(firmware, on_progress=_print_progress)

    try:
        session = asyncio.run(_run())
    except BeaconctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    typer.echo(f"Installed firmware {version} ({session.total} bytes)")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
