"""Stable public API for building tooling on top of beaconctl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from beaconctl.core.connection import ConnectionObserver
from beaconctl.core.errors import (
    BeaconctlError,
    ConnectionFailedError,
    ErrorReason,
    FirmwareUpdateError,
    IdentifierError,
    InvalidStateError,
    LinkLostError,
    NotConnectedError,
    OperationError,
    OperationTimeoutError,
    PipelineBusyError,
    ProfileLoadError,
    ProfileValidationError,
    RegisterDecodeError,
    RegisterValidationError,
)
from beaconctl.core.firmware import FirmwareUpdateSession
from beaconctl.core.identifier import from_ibeacon, from_mac, parse_identifier
from beaconctl.core.model import (
    BeaconIdentifier,
    BeaconMetadata,
    ConditionalBroadcasting,
    ConnectionState,
    ConnectionStatus,
    DeviceProfile,
    FirmwareImage,
    FirmwareInfo,
    MotionChanged,
    RegisterSpec,
    SensorEvent,
    TemperatureSample,
    UpdateProgress,
    UpdateStage,
)
from beaconctl.core.profile_loader import DEFAULT_PROFILE_ID, load_profile, load_profiles
from beaconctl.core.service import BeaconConnection, MetadataProvider
from beaconctl.transports.base import Transport
from beaconctl.transports.ble_gatt import BLEGATTTransport

__all__ = [
    "BeaconctlError",
    "ConnectionFailedError",
    "ErrorReason",
    "FirmwareUpdateError",
    "IdentifierError",
    "InvalidStateError",
    "LinkLostError",
    "NotConnectedError",
    "OperationError",
    "OperationTimeoutError",
    "PipelineBusyError",
    "ProfileLoadError",
    "ProfileValidationError",
    "RegisterDecodeError",
    "RegisterValidationError",
    "BeaconIdentifier",
    "BeaconMetadata",
    "ConditionalBroadcasting",
    "ConnectionState",
    "ConnectionStatus",
    "DeviceProfile",
    "FirmwareImage",
    "FirmwareInfo",
    "FirmwareUpdateSession",
    "MotionChanged",
    "RegisterSpec",
    "SensorEvent",
    "TemperatureSample",
    "UpdateProgress",
    "UpdateStage",
    "BeaconConnection",
    "ConnectionObserver",
    "MetadataProvider",
    "Transport",
    "BLEGATTTransport",
    "DEFAULT_PROFILE_ID",
    "from_ibeacon",
    "from_mac",
    "parse_identifier",
    "load_profile",
    "load_profiles",
]
