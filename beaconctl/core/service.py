"""Connection facade used by the public API and the CLI."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import UUID

from beaconctl.core.connection import ConnectionManager, ObserverRef
from beaconctl.core.errors import BeaconctlError, IdentifierError, LinkLostError, NotConnectedError, RegisterValidationError
from beaconctl.core.firmware import FirmwareUpdateEngine, FirmwareUpdateSession, ProgressCallback
from beaconctl.core.identifier import parse_identifier
from beaconctl.core.model import (
    BeaconIdentifier,
    BeaconMetadata,
    ConditionalBroadcasting,
    ConnectionState,
    DeviceProfile,
    FirmwareImage,
    FirmwareInfo,
    MotionChanged,
    RegisterSpec,
    SensorEvent,
)
from beaconctl.core.notifications import NotificationRouter, SensorObserver
from beaconctl.core.pipeline import RequestPipeline
from beaconctl.core.profile_loader import DEFAULT_PROFILE_ID, load_profile
from beaconctl.core.registers import read_request, write_request
from beaconctl.transports.base import Transport
from beaconctl.transports.ble_gatt import BLEGATTTransport

LOGGER = logging.getLogger(__name__)

MetadataProvider = Callable[[BeaconIdentifier], Awaitable[BeaconMetadata | None]]

# Registers that are not device settings and are never read by refresh_settings.
_NON_SETTING_TYPES = {"bytes"}


class BeaconConnection:
    """One beacon's session: connection lifecycle, register I/O and firmware.

    Every register operation runs through a request pipeline that exists only
    while the connection is up. Observer callbacks are dispatched on the event
    loop that called ``connect``; the observer is held weakly.
    """

    def __init__(
        self,
        identifier: str | BeaconIdentifier | None,
        *,
        transport: Transport | None = None,
        observer: Any | None = None,
        profile: DeviceProfile | None = None,
        profile_id: str = DEFAULT_PROFILE_ID,
        metadata_provider: MetadataProvider | None = None,
    ) -> None:
        self.profile = profile or load_profile(profile_id)
        self.identifier = _parse_or_none(identifier)
        self._transport = transport or BLEGATTTransport(
            self.profile,
            connect_timeout_s=self.profile.defaults.attempt_timeout_s,
        )
        self._observer = ObserverRef(observer)
        self._metadata_provider = metadata_provider
        self._pipeline: RequestPipeline | None = None
        self.settings: dict[str, Any] = {}
        self.metadata: BeaconMetadata | None = None

        self.router = NotificationRouter(self.profile)
        self.router.subscribe(self._relay_sensor_event)
        self._manager = ConnectionManager(
            self.identifier,
            self._transport,
            observer=self._observer,
            source=self,
            on_connected=self._start_pipeline,
            on_link_lost=self._stop_pipeline,
            on_frame=self.router.on_notification_frame,
        )
        self._firmware = FirmwareUpdateEngine(self._require_pipeline, self.profile)

    async def __aenter__(self) -> BeaconConnection:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    @property
    def state(self) -> ConnectionState:
        return self._manager.state

    @property
    def connected(self) -> bool:
        return self._manager.connected

    @property
    def motion_state(self) -> bool | None:
        return self.router.motion_state

    @property
    def temperature(self) -> float | None:
        return self.router.temperature

    @property
    def firmware_session(self) -> FirmwareUpdateSession | None:
        return self._firmware.session

    def subscribe(self, observer: SensorObserver) -> Callable[[], None]:
        return self.router.subscribe(observer)

    async def connect(
        self,
        *,
        max_attempts: int | None = None,
        attempt_timeout_s: float | None = None,
    ) -> ConnectionState:
        defaults = self.profile.defaults
        return await self._manager.connect(
            max_attempts=max_attempts or defaults.max_attempts,
            attempt_timeout_s=attempt_timeout_s or defaults.attempt_timeout_s,
        )

    def cancel(self) -> None:
        self._manager.cancel()

    async def disconnect(self) -> None:
        self._firmware.abort()
        await self._manager.disconnect()

    async def read(self, register: str, *, timeout_s: float | None = None) -> Any:
        spec = self._spec(register)
        request = read_request(spec)
        value = await self._require_pipeline().submit(request, timeout_s=timeout_s)
        self._remember(spec, value)
        return value

    async def write(self, register: str, value: Any, *, timeout_s: float | None = None) -> Any:
        """Validate and write ``value``; resolves to the value the device now holds."""
        spec = self._spec(register)
        request = write_request(spec, value)
        result = await self._require_pipeline().submit(request, timeout_s=timeout_s)
        self._remember(spec, result)
        return result

    async def read_temperature(self) -> float:
        return await self.read("temperature")

    async def read_accelerometer_count(self) -> int:
        return await self.read("accelerometer_count")

    async def reset_accelerometer_count(self) -> int:
        return await self.write("accelerometer_count", 0)

    async def write_name(self, name: str) -> str:
        return await self.write("name", name)

    async def write_proximity_uuid(self, proximity_uuid: UUID | str) -> UUID:
        return await self.write("proximity_uuid", proximity_uuid)

    async def write_major(self, major: int) -> int:
        return await self.write("major", major)

    async def write_minor(self, minor: int) -> int:
        return await self.write("minor", minor)

    async def write_adv_interval(self, interval_ms: int) -> int:
        return await self.write("adv_interval", interval_ms)

    async def write_power(self, power_dbm: int) -> int:
        return await self.write("power", power_dbm)

    async def write_basic_power_mode(self, enabled: bool) -> bool:
        return await self.write("basic_power_mode", enabled)

    async def write_smart_power_mode(self, enabled: bool) -> bool:
        return await self.write("smart_power_mode", enabled)

    async def write_conditional_broadcasting(self, mode: ConditionalBroadcasting | int) -> ConditionalBroadcasting:
        result = await self.write("conditional_broadcasting", int(mode))
        return ConditionalBroadcasting(result)

    async def write_secure_uuid_enabled(self, enabled: bool) -> bool:
        return await self.write("secure_uuid", enabled)

    async def write_motion_detection_enabled(self, enabled: bool) -> bool:
        return await self.write("motion_detection", enabled)

    async def write_motion_uuid_enabled(self, enabled: bool) -> bool:
        return await self.write("motion_uuid_enabled", enabled)

    async def write_calibrated_temperature(self, celsius: float) -> float:
        return await self.write("calibrated_temperature", celsius)

    async def reset_to_factory_settings(self) -> None:
        await self.write("factory_reset", 1)
        self.settings.clear()

    async def refresh_settings(self) -> dict[str, Any]:
        """Read every readable setting register into ``settings``."""
        for spec in self.profile.registers.values():
            if not spec.readable or spec.type in _NON_SETTING_TYPES:
                continue
            await self.read(spec.name)
        return dict(self.settings)

    async def fetch_metadata(self) -> BeaconMetadata | None:
        """Look up cloud-side name and color; failures leave ``metadata`` unset."""
        if self.identifier is None:
            raise IdentifierError("Beacon identifier is missing")
        if self._metadata_provider is None:
            return None
        try:
            self.metadata = await self._metadata_provider(self.identifier)
        except Exception as exc:
            LOGGER.warning("Metadata lookup for %s failed: %s", self.identifier.key, exc)
            self.metadata = None
        return self.metadata

    async def check_firmware_update(self, image: FirmwareImage) -> FirmwareInfo:
        return await self._firmware.check_for_update(image)

    async def update_firmware(
        self,
        image: FirmwareImage,
        on_progress: ProgressCallback | None = None,
    ) -> FirmwareUpdateSession:
        return await self._firmware.perform_update(image, on_progress)

    def abort_firmware_update(self) -> None:
        self._firmware.abort()

    def _spec(self, register: str) -> RegisterSpec:
        spec = self.profile.registers.get(register)
        if spec is None:
            available = ", ".join(sorted(self.profile.registers))
            raise RegisterValidationError(
                f"Profile '{self.profile.id}' has no register '{register}'. Available: {available}"
            )
        return spec

    def _remember(self, spec: RegisterSpec, value: Any) -> None:
        if spec.readable and spec.type not in _NON_SETTING_TYPES:
            self.settings[spec.name] = value

    def _require_pipeline(self) -> RequestPipeline:
        pipeline = self._pipeline
        if pipeline is None or not pipeline.running:
            target = self.identifier.key if self.identifier is not None else "beacon"
            raise NotConnectedError(f"Not connected to {target}; call connect() first")
        return pipeline

    def _start_pipeline(self, link: Any) -> None:
        pipeline = RequestPipeline(
            self._transport,
            link,
            timeout_s=self.profile.defaults.operation_timeout_s,
            on_link_lost=self._manager.handle_link_lost,
        )
        pipeline.start()
        self._pipeline = pipeline

    def _stop_pipeline(self, error: BeaconctlError | None) -> None:
        pipeline, self._pipeline = self._pipeline, None
        if pipeline is not None:
            pipeline.close(error or LinkLostError("Connection closed by caller"))

    def _relay_sensor_event(self, event: SensorEvent) -> None:
        if isinstance(event, MotionChanged):
            self._observer.emit("motion_state_changed", self, event.moving)


def _parse_or_none(identifier: str | BeaconIdentifier | None) -> BeaconIdentifier | None:
    try:
        return parse_identifier(identifier)
    except IdentifierError as exc:
        LOGGER.warning("%s; connect() will fail", exc)
        return None
