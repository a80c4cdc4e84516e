from __future__ import annotations

import asyncio
import struct
import zlib
from typing import Any

import pytest

from beaconctl.core.errors import LinkDroppedError
from beaconctl.core.firmware import OP_REBOOT, OP_START
from beaconctl.core.model import DeviceProfile, NotificationFrame, RegisterKind, RegisterRequest
from beaconctl.core.profile_loader import load_profile
from beaconctl.core.registers import encode_value


class FakeLink:
    def __init__(self, number: int) -> None:
        self.number = number


class FakeTransport:
    """In-memory transport with scripted open outcomes and a register store.

    ``open_outcomes`` items are ``"ok"``, ``"hang"`` or an exception to raise.
    ``send_hook`` may return bytes to override the store, or raise.
    """

    def __init__(self, profile: DeviceProfile, open_outcomes: list[Any] | None = None) -> None:
        self.profile = profile
        self.open_outcomes = list(open_outcomes or [])
        self.open_calls = 0
        self.closed: list[FakeLink] = []
        self.sent: list[RegisterRequest] = []
        self.store: dict[str, bytes] = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self.send_delay = 0.0
        self.send_hook = None
        self.on_frame = None
        self.on_drop = None

    def set_value(self, register: str, value: Any) -> None:
        self.store[register] = encode_value(self.profile.registers[register], value)

    def emit_frame(self, register: str, value: Any) -> None:
        spec = self.profile.registers[register]
        self.on_frame(NotificationFrame(discriminator=spec.register_id, payload=encode_value(spec, value)))

    async def open(self, identifier, *, on_frame, on_drop):
        self.open_calls += 1
        self.on_frame, self.on_drop = on_frame, on_drop
        outcome = self.open_outcomes.pop(0) if self.open_outcomes else "ok"
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome == "hang":
            await asyncio.Event().wait()
        return FakeLink(self.open_calls)

    async def send(self, link, request: RegisterRequest) -> bytes:
        self.sent.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.send_delay:
                await asyncio.sleep(self.send_delay)
            if self.send_hook is not None:
                result = await self.send_hook(request)
                if result is not None:
                    return result
            name = request.register.name
            if request.kind is RegisterKind.WRITE:
                self.store[name] = request.payload
                return b""
            return self.store.get(name, b"")
        finally:
            self.in_flight -= 1

    async def close(self, link) -> None:
        self.closed.append(link)


class FirmwareDevice:
    """Emulates the firmware registers on top of a FakeTransport store."""

    def __init__(self, transport: FakeTransport, *, hardware: str = "D3.4", firmware: str = "A3.2.0") -> None:
        transport.set_value("hardware_version", hardware)
        transport.set_value("firmware_version", firmware)
        transport.send_hook = self.handle
        self.received = bytearray()
        self.starts = 0
        self.declared: tuple[int, int] | None = None
        self.rebooted = False
        self.offset_acks = False
        self.bad_ack_once = False
        self.corrupt = False
        self.drop_at: int | None = None
        self.hang_at: int | None = None
        self.chunk_offsets: list[int] = []

    async def handle(self, request: RegisterRequest) -> bytes | None:
        name = request.register.name
        payload = request.payload
        if name == "firmware_control":
            if payload[0] == OP_START:
                self.starts += 1
                self.received = bytearray()
                self.declared = struct.unpack("<II", payload[1:])
            elif payload[0] == OP_REBOOT:
                self.rebooted = True
            return None
        if name == "firmware_data":
            offset = struct.unpack("<I", payload[:4])[0]
            if self.drop_at is not None and offset >= self.drop_at:
                raise LinkDroppedError("peripheral disconnected")
            if self.hang_at is not None and offset >= self.hang_at:
                await asyncio.Event().wait()
            self.chunk_offsets.append(offset)
            self.received[offset:] = payload[4:]
            if self.bad_ack_once:
                self.bad_ack_once = False
                return struct.pack("<I", 0xFFFF)
            if self.offset_acks:
                return struct.pack("<I", len(self.received))
            return None
        if name == "firmware_checksum":
            data = bytes(self.received)
            if self.corrupt:
                data = data[:-1] + b"\xff"
            return struct.pack("<II", len(self.received), zlib.crc32(data))
        return None


@pytest.fixture(scope="session")
def profile() -> DeviceProfile:
    return load_profile()


@pytest.fixture
def transport(profile: DeviceProfile) -> FakeTransport:
    return FakeTransport(profile)
