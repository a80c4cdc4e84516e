"""Core data models used across profiles, connection, pipeline, and CLI."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any
from uuid import UUID

from beaconctl.core.errors import ErrorReason


class IdentifierKind(str, Enum):
    MAC = "mac"
    IBEACON = "ibeacon"


@dataclass(frozen=True)
class BeaconIdentifier:
    kind: IdentifierKind
    mac: str | None = None
    proximity_uuid: UUID | None = None
    major: int | None = None
    minor: int | None = None

    @property
    def key(self) -> str:
        if self.kind is IdentifierKind.MAC:
            return str(self.mac)
        return f"{str(self.proximity_uuid).upper()}:{self.major}:{self.minor}"


class ConnectionStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class ConnectionState:
    status: ConnectionStatus
    attempt: int | None = None
    deadline: float | None = None
    reason: ErrorReason | None = None
    cause: str | None = None


class RegisterKind(str, Enum):
    READ = "read"
    WRITE = "write"


@dataclass(frozen=True)
class RegisterSpec:
    name: str
    register_id: int
    uuid: str
    type: str
    access: str
    minimum: float | None = None
    maximum: float | None = None
    choices: tuple[int, ...] = ()
    max_length: int | None = None
    notify: str | None = None

    @property
    def readable(self) -> bool:
        return "r" in self.access

    @property
    def writable(self) -> bool:
        return "w" in self.access


@dataclass(frozen=True)
class RegisterRequest:
    kind: RegisterKind
    register: RegisterSpec
    payload: bytes = b""
    value: Any = None


@dataclass(frozen=True)
class NotificationFrame:
    discriminator: int
    payload: bytes


@dataclass(frozen=True)
class SensorEvent:
    pass


@dataclass(frozen=True)
class MotionChanged(SensorEvent):
    moving: bool


@dataclass(frozen=True)
class TemperatureSample(SensorEvent):
    celsius: float


class ConditionalBroadcasting(IntEnum):
    OFF = 0
    MOTION_ONLY = 1
    FLIP_TO_STOP = 2


@dataclass(frozen=True)
class ConnectionDefaults:
    max_attempts: int = 3
    attempt_timeout_s: float = 10.0
    operation_timeout_s: float = 5.0
    chunk_size: int = 128
    chunk_timeout_s: float = 10.0


@dataclass(frozen=True)
class DeviceProfile:
    id: str
    name: str
    service_uuid: str
    registers: dict[str, RegisterSpec]
    defaults: ConnectionDefaults


@dataclass(frozen=True)
class BeaconMetadata:
    name: str | None = None
    color: str | None = None


@dataclass(frozen=True)
class FirmwareImage:
    data: bytes
    hardware_version: str
    firmware_version: str
    changelog: str = ""


@dataclass(frozen=True)
class FirmwareInfo:
    available: bool
    hardware_version: str | None = None
    firmware_version: str | None = None
    changelog: str | None = None


class UpdateStage(str, Enum):
    CHECK_VERSION = "check_version"
    TRANSFERRING = "transferring"
    VERIFYING = "verifying"
    REBOOTING = "rebooting"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class UpdateProgress:
    percent: int
    stage: UpdateStage
    description: str
