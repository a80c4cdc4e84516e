"""Beacon identifier parsing."""

from __future__ import annotations

import re
from uuid import UUID

from beaconctl.core.errors import IdentifierError
from beaconctl.core.model import BeaconIdentifier, IdentifierKind

_MAC_RE = re.compile(r"^[0-9A-F]{2}(?::[0-9A-F]{2}){5}$", re.IGNORECASE)
_MAX_BEACON_VALUE = 0xFFFF


def from_mac(mac: str) -> BeaconIdentifier:
    normalized = mac.strip().upper().replace("-", ":")
    if not _MAC_RE.match(normalized):
        raise IdentifierError(f"Invalid MAC address '{mac}'")
    return BeaconIdentifier(kind=IdentifierKind.MAC, mac=normalized)


def from_ibeacon(proximity_uuid: UUID | str, major: int, minor: int) -> BeaconIdentifier:
    if isinstance(proximity_uuid, str):
        try:
            proximity_uuid = UUID(proximity_uuid.strip())
        except ValueError as exc:
            raise IdentifierError(f"Invalid proximity UUID '{proximity_uuid}'") from exc
    for label, value in (("major", major), ("minor", minor)):
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= _MAX_BEACON_VALUE:
            raise IdentifierError(f"iBeacon {label} must be an integer in 0..{_MAX_BEACON_VALUE}, got {value!r}")
    return BeaconIdentifier(
        kind=IdentifierKind.IBEACON,
        proximity_uuid=proximity_uuid,
        major=major,
        minor=minor,
    )


def parse_identifier(value: str | BeaconIdentifier | None) -> BeaconIdentifier:
    """Parse a MAC address or a ``ProximityUUID:Major:Minor`` string."""
    if isinstance(value, BeaconIdentifier):
        return value
    if value is None or not value.strip():
        raise IdentifierError("Beacon identifier is missing")

    text = value.strip()
    if _MAC_RE.match(text.replace("-", ":")):
        return from_mac(text)

    parts = text.rsplit(":", 2)
    if len(parts) != 3:
        raise IdentifierError(
            f"Identifier '{value}' is neither a MAC address nor ProximityUUID:Major:Minor"
        )
    uuid_part, major_part, minor_part = parts
    try:
        major, minor = int(major_part), int(minor_part)
    except ValueError as exc:
        raise IdentifierError(f"Identifier '{value}' has non-numeric major/minor") from exc
    return from_ibeacon(uuid_part, major, minor)
