from __future__ import annotations

from uuid import UUID

import pytest

from beaconctl.core.errors import ErrorReason, IdentifierError
from beaconctl.core.identifier import from_ibeacon, from_mac, parse_identifier
from beaconctl.core.model import IdentifierKind


def test_mac_is_normalized() -> None:
    identifier = parse_identifier("aa-bb-cc-dd-ee-ff")
    assert identifier.kind is IdentifierKind.MAC
    assert identifier.key == "AA:BB:CC:DD:EE:FF"


def test_ibeacon_triple_parsed() -> None:
    identifier = parse_identifier("b9407f30-f5f8-466e-aff9-25556b57fe6d:100:7")
    assert identifier.kind is IdentifierKind.IBEACON
    assert identifier.proximity_uuid == UUID("b9407f30-f5f8-466e-aff9-25556b57fe6d")
    assert (identifier.major, identifier.minor) == (100, 7)
    assert identifier.key == "B9407F30-F5F8-466E-AFF9-25556B57FE6D:100:7"


@pytest.mark.parametrize("value", [None, "", "   "])
def test_missing_identifier_rejected(value) -> None:
    with pytest.raises(IdentifierError) as excinfo:
        parse_identifier(value)
    assert excinfo.value.reason is ErrorReason.IDENTIFIER_MISSING


@pytest.mark.parametrize(
    "value",
    [
        "AA:BB:CC:DD:EE",
        "not-a-uuid:1:2",
        "b9407f30-f5f8-466e-aff9-25556b57fe6d:70000:1",
        "b9407f30-f5f8-466e-aff9-25556b57fe6d:one:2",
    ],
)
def test_malformed_identifier_rejected(value: str) -> None:
    with pytest.raises(IdentifierError):
        parse_identifier(value)


def test_from_ibeacon_rejects_bool_major() -> None:
    with pytest.raises(IdentifierError):
        from_ibeacon(UUID(int=1), True, 1)


def test_from_mac_rejects_garbage() -> None:
    with pytest.raises(IdentifierError):
        from_mac("zz:zz:zz:zz:zz:zz")
