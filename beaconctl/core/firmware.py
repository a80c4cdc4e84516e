"""Staged firmware transfer driven through the request pipeline."""

from __future__ import annotations

import asyncio
import logging
import re
import struct
import zlib
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from beaconctl.core.errors import BeaconctlError, ErrorReason, FirmwareUpdateError, ProfileValidationError
from beaconctl.core.model import (
    DeviceProfile,
    FirmwareImage,
    FirmwareInfo,
    RegisterRequest,
    RegisterSpec,
    UpdateProgress,
    UpdateStage,
)
from beaconctl.core.pipeline import RequestPipeline
from beaconctl.core.registers import read_request, write_request

LOGGER = logging.getLogger(__name__)

OP_START = 0x01
OP_REBOOT = 0x04

_OFFSET = struct.Struct("<I")
_START = struct.Struct("<BII")
_CHECKSUM = struct.Struct("<II")
# Progress stays below 100 until the reboot command is acknowledged.
_PROGRESS_CEILING = 99
_TERMINAL_STAGES = (UpdateStage.DONE, UpdateStage.FAILED)

ProgressCallback = Callable[[UpdateProgress], None]


@dataclass
class FirmwareUpdateSession:
    total: int
    chunk_size: int
    stage: UpdateStage = UpdateStage.CHECK_VERSION
    offset: int = 0
    failure: ErrorReason | None = None

    @property
    def percent(self) -> int:
        if self.stage is UpdateStage.DONE:
            return 100
        return min(self.offset * 100 // self.total, _PROGRESS_CEILING)

    @property
    def terminal(self) -> bool:
        return self.stage in _TERMINAL_STAGES

    def advance(self, offset: int) -> None:
        if offset < self.offset or offset > self.total:
            raise ValueError(f"offset {offset} outside {self.offset}..{self.total}")
        self.offset = offset

    def fail(self, reason: ErrorReason) -> None:
        self.stage = UpdateStage.FAILED
        self.failure = reason


class _ProgressReporter:
    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback
        self._last = 0

    def emit(self, session: FirmwareUpdateSession, description: str) -> None:
        percent = max(session.percent, self._last)
        self._last = percent
        LOGGER.debug("Firmware %s %d%%: %s", session.stage.value, percent, description)
        if self._callback is None:
            return
        try:
            self._callback(UpdateProgress(percent=percent, stage=session.stage, description=description))
        except Exception:
            LOGGER.exception("Firmware progress callback failed")


def version_key(version: str) -> tuple[int, ...]:
    """Numeric ordering key for versions such as ``A3.2.1`` or ``D3.4.0``."""
    return tuple(int(part) for part in re.findall(r"\d+", version))


def same_hardware(installed: str, targeted: str) -> bool:
    return installed.strip().lower() == targeted.strip().lower()


class FirmwareUpdateEngine:
    """Runs CheckVersion -> Transferring -> Verifying -> Rebooting.

    The engine holds the pipeline exclusively for the whole session. Any
    failed operation ends the session; a later ``perform_update`` starts
    again from offset 0.
    """

    def __init__(
        self,
        pipeline_provider: Callable[[], RequestPipeline],
        profile: DeviceProfile,
        *,
        chunk_size: int | None = None,
        chunk_timeout_s: float | None = None,
    ) -> None:
        self._pipeline_provider = pipeline_provider
        self.profile = profile
        self.chunk_size = profile.defaults.chunk_size if chunk_size is None else chunk_size
        self.chunk_timeout_s = profile.defaults.chunk_timeout_s if chunk_timeout_s is None else chunk_timeout_s
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        if self.chunk_timeout_s <= 0:
            raise ValueError("chunk_timeout_s must be positive")
        self._session: FirmwareUpdateSession | None = None
        self._abort_event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def session(self) -> FirmwareUpdateSession | None:
        return self._session

    def _register(self, name: str) -> RegisterSpec:
        spec = self.profile.registers.get(name)
        if spec is None:
            raise ProfileValidationError(
                f"Profile '{self.profile.id}' has no '{name}' register required for firmware updates"
            )
        return spec

    async def check_for_update(self, image: FirmwareImage) -> FirmwareInfo:
        pipeline = self._pipeline_provider()
        hardware = await pipeline.submit(read_request(self._register("hardware_version")))
        installed = await pipeline.submit(read_request(self._register("firmware_version")))
        if not same_hardware(hardware, image.hardware_version):
            LOGGER.info("Image targets hardware %s, device is %s", image.hardware_version, hardware)
            return FirmwareInfo(available=False)
        if version_key(image.firmware_version) <= version_key(installed):
            return FirmwareInfo(available=False)
        return FirmwareInfo(
            available=True,
            hardware_version=image.hardware_version,
            firmware_version=image.firmware_version,
            changelog=image.changelog,
        )

    async def perform_update(
        self,
        image: FirmwareImage,
        on_progress: ProgressCallback | None = None,
    ) -> FirmwareUpdateSession:
        """Transfer ``image`` and reboot the device into it.

        Returns the finished session or raises ``FirmwareUpdateError`` whose
        ``session`` is the failed one. Progress is reported through
        ``on_progress`` and never decreases.
        """
        if self._session is not None:
            raise FirmwareUpdateError("A firmware update is already running", reason=ErrorReason.BUSY)
        if not image.data:
            raise FirmwareUpdateError("Firmware image is empty", reason=ErrorReason.VALIDATION_FAILED)
        registers = {
            name: self._register(name)
            for name in ("hardware_version", "firmware_version", "firmware_control", "firmware_data", "firmware_checksum")
        }

        session = FirmwareUpdateSession(total=len(image.data), chunk_size=self.chunk_size)
        reporter = _ProgressReporter(on_progress)
        self._session = session
        self._loop = asyncio.get_running_loop()
        self._abort_event = asyncio.Event()
        try:
            pipeline = self._pipeline_provider()
            async with pipeline.exclusive() as lease:
                await self._run_stages(pipeline, lease, image, registers, session, reporter)
        except FirmwareUpdateError as exc:
            self._fail(session, exc.reason or ErrorReason.NOT_CONNECTED_TO_READ_WRITE, reporter, str(exc))
            exc.session = session
            raise
        except BeaconctlError as exc:
            reason = exc.reason or ErrorReason.NOT_CONNECTED_TO_READ_WRITE
            stage = session.stage.value
            self._fail(session, reason, reporter, str(exc))
            raise FirmwareUpdateError(
                f"Firmware update failed while {stage}: {exc}",
                reason=reason,
                session=session,
            ) from exc
        except asyncio.CancelledError:
            session.fail(ErrorReason.CANCELLED)
            raise
        finally:
            self._session = None
            self._abort_event = None
        return session

    def abort(self) -> None:
        """Abort the running update. Safe to call from any state and any thread."""
        event, loop = self._abort_event, self._loop
        if event is None or loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            event.set()
        elif not loop.is_closed():
            loop.call_soon_threadsafe(event.set)

    async def _run_stages(
        self,
        pipeline: RequestPipeline,
        lease: object,
        image: FirmwareImage,
        registers: dict[str, RegisterSpec],
        session: FirmwareUpdateSession,
        reporter: _ProgressReporter,
    ) -> None:
        reporter.emit(session, "Checking installed firmware version")
        hardware = await self._call(pipeline, lease, read_request(registers["hardware_version"]))
        installed = await self._call(pipeline, lease, read_request(registers["firmware_version"]))
        if not same_hardware(hardware, image.hardware_version):
            raise FirmwareUpdateError(
                f"Image targets hardware {image.hardware_version}, device reports {hardware}",
                reason=ErrorReason.VERSION_MISMATCH,
            )
        LOGGER.info("Updating firmware %s -> %s (hardware %s)", installed, image.firmware_version, hardware)

        session.stage = UpdateStage.TRANSFERRING
        crc = zlib.crc32(image.data) & 0xFFFFFFFF
        start = _START.pack(OP_START, session.total, crc)
        await self._call(pipeline, lease, write_request(registers["firmware_control"], start))
        reporter.emit(session, f"Uploading {session.total} bytes")

        while session.offset < session.total:
            chunk = image.data[session.offset : session.offset + session.chunk_size]
            next_offset = session.offset + len(chunk)
            payload = _OFFSET.pack(session.offset) + chunk
            ack = await self._call(
                pipeline,
                lease,
                write_request(registers["firmware_data"], payload),
                timeout_s=self.chunk_timeout_s,
            )
            _check_ack(ack, payload, next_offset)
            session.advance(next_offset)
            reporter.emit(session, f"Uploaded {next_offset} of {session.total} bytes")

        session.stage = UpdateStage.VERIFYING
        reporter.emit(session, "Verifying firmware checksum")
        raw = await self._call(pipeline, lease, read_request(registers["firmware_checksum"]))
        if len(raw) != _CHECKSUM.size:
            raise FirmwareUpdateError(
                f"Checksum register returned {len(raw)} bytes, expected {_CHECKSUM.size}",
                reason=ErrorReason.CHECKSUM_MISMATCH,
            )
        received, device_crc = _CHECKSUM.unpack(raw)
        if received != session.total or device_crc != crc:
            raise FirmwareUpdateError(
                f"Verification failed: device_len={received} device_crc=0x{device_crc:08X} "
                f"local_len={session.total} local_crc=0x{crc:08X}",
                reason=ErrorReason.CHECKSUM_MISMATCH,
            )

        session.stage = UpdateStage.REBOOTING
        reporter.emit(session, "Rebooting beacon")
        await self._call(pipeline, lease, write_request(registers["firmware_control"], bytes([OP_REBOOT])))

        session.stage = UpdateStage.DONE
        reporter.emit(session, "Firmware update complete")
        LOGGER.info("Firmware %s installed", image.firmware_version)

    async def _call(
        self,
        pipeline: RequestPipeline,
        lease: object,
        request: RegisterRequest,
        *,
        timeout_s: float | None = None,
    ) -> Any:
        abort_event = self._abort_event
        if abort_event is None or abort_event.is_set():
            raise FirmwareUpdateError("Firmware update aborted", reason=ErrorReason.CANCELLED)
        future = pipeline.submit(request, lease=lease, timeout_s=timeout_s)
        abort_wait = asyncio.ensure_future(abort_event.wait())
        try:
            await asyncio.wait({future, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            abort_wait.cancel()
            if not future.done():
                future.cancel()
        if future.cancelled():
            raise FirmwareUpdateError("Firmware update aborted", reason=ErrorReason.CANCELLED)
        return future.result()

    @staticmethod
    def _fail(
        session: FirmwareUpdateSession,
        reason: ErrorReason,
        reporter: _ProgressReporter,
        message: str,
    ) -> None:
        session.fail(reason)
        LOGGER.warning("Firmware update failed (%s): %s", reason.value, message)
        reporter.emit(session, f"Failed: {message}")


def _check_ack(ack: Any, payload: bytes, expected_offset: int) -> None:
    # A plain write acknowledgement resolves to the written payload.
    if ack == payload:
        return
    if isinstance(ack, bytes) and len(ack) == _OFFSET.size and _OFFSET.unpack(ack)[0] == expected_offset:
        return
    raise FirmwareUpdateError(
        f"Device rejected chunk ending at {expected_offset}: ack={bytes(ack).hex() if isinstance(ack, bytes) else ack!r}",
        reason=ErrorReason.TRANSFER_REJECTED,
    )
