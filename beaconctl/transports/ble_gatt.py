"""BLE GATT transport implementation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from beaconctl.core.errors import (
    LinkDroppedError,
    TransportAuthorizationError,
    TransportConnectError,
    TransportError,
    TransportIdentifierError,
    TransportSendError,
    TransportTimeoutError,
    TransportUnavailableError,
)
from beaconctl.core.model import (
    BeaconIdentifier,
    DeviceProfile,
    IdentifierKind,
    NotificationFrame,
    RegisterKind,
    RegisterRequest,
)
from beaconctl.transports.base import DropHandler, FrameHandler

LOGGER = logging.getLogger(__name__)

_AUTH_MARKERS = ("not authorized", "notauthorized", "permission", "unauthorized", "access denied")
_UNAVAILABLE_MARKERS = ("turned off", "not available", "no bluetooth adapters", "powered off")


def _classify_connect_error(exc: Exception, address: str) -> TransportError:
    message = str(exc).lower()
    if isinstance(exc, PermissionError) or any(marker in message for marker in _AUTH_MARKERS):
        return TransportAuthorizationError(f"Bluetooth access to {address} was denied: {exc}")
    if any(marker in message for marker in _UNAVAILABLE_MARKERS):
        return TransportUnavailableError(f"Bluetooth radio unavailable: {exc}")
    return TransportConnectError(f"BLE connect failed for {address}: {exc}")


class BLEGATTTransport:
    """Maps register requests onto GATT characteristic reads and writes.

    Each register in the profile is one characteristic; registers with a
    ``notify`` kind are subscribed on open and surface as notification frames
    keyed by register id.
    """

    def __init__(self, profile: DeviceProfile, *, connect_timeout_s: float = 10.0) -> None:
        self.profile = profile
        self.connect_timeout_s = connect_timeout_s

    async def open(
        self,
        identifier: BeaconIdentifier,
        *,
        on_frame: FrameHandler,
        on_drop: DropHandler,
    ) -> Any:
        if identifier.kind is not IdentifierKind.MAC:
            raise TransportIdentifierError(
                f"BLE transport connects by MAC address; resolve {identifier.key} through discovery first"
            )
        try:
            from bleak import BleakClient  # type: ignore
            from bleak.exc import BleakError  # type: ignore
        except Exception as exc:  # pragma: no cover - import failure path
            raise TransportUnavailableError(
                "BLE transport requires 'bleak'. Install dependency and retry."
            ) from exc

        address = str(identifier.mac)
        client = BleakClient(
            address,
            disconnected_callback=lambda _client: on_drop("peripheral disconnected"),
            timeout=self.connect_timeout_s,
        )
        try:
            await client.connect()
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"BLE connect timed out for {address}") from exc
        except (BleakError, OSError) as exc:
            raise _classify_connect_error(exc, address) from exc

        try:
            if client.services.get_service(self.profile.service_uuid) is None:
                raise TransportConnectError(
                    f"Service {self.profile.service_uuid} not found on {address}; "
                    "read/write channel is not ready"
                )
            for spec in self.profile.registers.values():
                if spec.notify is None:
                    continue
                await client.start_notify(spec.uuid, self._frame_callback(spec.register_id, on_frame))
        except TransportError:
            await self._safe_disconnect(client)
            raise
        except BleakError as exc:
            await self._safe_disconnect(client)
            raise TransportConnectError(f"BLE setup failed for {address}: {exc}") from exc

        LOGGER.debug("Opened BLE link to %s", address)
        return client

    async def send(self, link: Any, request: RegisterRequest) -> bytes:
        from bleak.exc import BleakError  # type: ignore

        if not link.is_connected:
            raise LinkDroppedError("BLE link is not connected")
        uuid = request.register.uuid
        try:
            if request.kind is RegisterKind.READ:
                data = await link.read_gatt_char(uuid)
                return bytes(data)
            await link.write_gatt_char(uuid, request.payload, response=True)
            return b""
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"GATT {request.kind.value} of {uuid} timed out") from exc
        except BleakError as exc:
            if not link.is_connected:
                raise LinkDroppedError(f"Device disconnected: {exc}") from exc
            raise TransportSendError(f"GATT {request.kind.value} of {uuid} failed: {exc}") from exc

    async def close(self, link: Any) -> None:
        from bleak.exc import BleakError  # type: ignore

        try:
            await link.disconnect()
        except BleakError as exc:
            raise TransportError(f"BLE disconnect failed: {exc}") from exc

    @staticmethod
    def _frame_callback(register_id: int, on_frame: FrameHandler):
        def _notify_handler(_: Any, data: bytearray) -> None:
            on_frame(NotificationFrame(discriminator=register_id, payload=bytes(data)))

        return _notify_handler

    @staticmethod
    async def _safe_disconnect(client: Any) -> None:
        """Disconnect without raising, for cleanup after a failed open."""
        try:
            await asyncio.wait_for(client.disconnect(), timeout=0.5)
        except (asyncio.TimeoutError, Exception):
            LOGGER.debug("disconnect after failed open failed (ignored)", exc_info=True)
