"""Register value codecs and pre-submission validation."""

from __future__ import annotations

import math
import struct
from typing import Any
from uuid import UUID

from beaconctl.core.errors import RegisterDecodeError, RegisterValidationError
from beaconctl.core.model import RegisterKind, RegisterRequest, RegisterSpec

_INT_FORMATS = {
    "uint8": "<B",
    "int8": "<b",
    "uint16": "<H",
    "int16": "<h",
    "uint32": "<I",
}
# Temperatures travel as signed 8.8 fixed point.
_TEMPERATURE_SCALE = 256
_TRUE_WORDS = {"true", "on", "yes", "1"}
_FALSE_WORDS = {"false", "off", "no", "0"}

VALUE_TYPES = frozenset(_INT_FORMATS) | {"bool", "temperature", "string", "uuid", "bytes"}


def _check_bounds(spec: RegisterSpec, value: float) -> None:
    if spec.choices and value not in spec.choices:
        allowed = ", ".join(str(c) for c in spec.choices)
        raise RegisterValidationError(f"Register '{spec.name}' does not accept {value}. Allowed: {allowed}")
    if spec.minimum is not None and value < spec.minimum:
        raise RegisterValidationError(
            f"Register '{spec.name}' value {value} is below minimum {_fmt(spec.minimum)}"
        )
    if spec.maximum is not None and value > spec.maximum:
        raise RegisterValidationError(
            f"Register '{spec.name}' value {value} is above maximum {_fmt(spec.maximum)}"
        )


def _fmt(number: float) -> str:
    return str(int(number)) if float(number).is_integer() else str(number)


def encode_value(spec: RegisterSpec, value: Any) -> bytes:
    """Validate ``value`` against ``spec`` and encode it to a register payload."""
    if spec.type in _INT_FORMATS:
        if isinstance(value, bool) or not isinstance(value, int):
            raise RegisterValidationError(f"Register '{spec.name}' expects an integer, got {value!r}")
        _check_bounds(spec, value)
        try:
            return struct.pack(_INT_FORMATS[spec.type], value)
        except struct.error as exc:
            raise RegisterValidationError(f"Register '{spec.name}' value {value} does not fit {spec.type}") from exc

    if spec.type == "bool":
        if not isinstance(value, bool):
            raise RegisterValidationError(f"Register '{spec.name}' expects true/false, got {value!r}")
        return b"\x01" if value else b"\x00"

    if spec.type == "temperature":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise RegisterValidationError(f"Register '{spec.name}' expects a temperature, got {value!r}")
        if not math.isfinite(value):
            raise RegisterValidationError(f"Register '{spec.name}' expects a finite temperature, got {value!r}")
        _check_bounds(spec, value)
        try:
            return struct.pack("<h", round(value * _TEMPERATURE_SCALE))
        except struct.error as exc:
            raise RegisterValidationError(f"Register '{spec.name}' temperature {value} out of range") from exc

    if spec.type == "string":
        if not isinstance(value, str):
            raise RegisterValidationError(f"Register '{spec.name}' expects text, got {value!r}")
        encoded = value.encode("utf-8")
        if spec.max_length is not None and len(encoded) > spec.max_length:
            raise RegisterValidationError(
                f"Register '{spec.name}' accepts at most {spec.max_length} bytes, got {len(encoded)}"
            )
        return encoded

    if spec.type == "uuid":
        if isinstance(value, UUID):
            return value.bytes
        try:
            return UUID(str(value).strip()).bytes
        except ValueError as exc:
            raise RegisterValidationError(f"Register '{spec.name}' expects a UUID, got {value!r}") from exc

    if spec.type == "bytes":
        if not isinstance(value, (bytes, bytearray)):
            raise RegisterValidationError(f"Register '{spec.name}' expects bytes, got {type(value).__name__}")
        if spec.max_length is not None and len(value) > spec.max_length:
            raise RegisterValidationError(
                f"Register '{spec.name}' accepts at most {spec.max_length} bytes, got {len(value)}"
            )
        return bytes(value)

    raise RegisterValidationError(f"Register '{spec.name}' has unsupported type '{spec.type}'")


def decode_value(spec: RegisterSpec, payload: bytes) -> Any:
    if spec.type in _INT_FORMATS:
        fmt = _INT_FORMATS[spec.type]
        if len(payload) != struct.calcsize(fmt):
            raise RegisterDecodeError(
                f"Register '{spec.name}' returned {len(payload)} bytes, expected {struct.calcsize(fmt)}"
            )
        return struct.unpack(fmt, payload)[0]

    if spec.type == "bool":
        if len(payload) != 1:
            raise RegisterDecodeError(f"Register '{spec.name}' returned {len(payload)} bytes, expected 1")
        return payload != b"\x00"

    if spec.type == "temperature":
        if len(payload) != 2:
            raise RegisterDecodeError(f"Register '{spec.name}' returned {len(payload)} bytes, expected 2")
        return struct.unpack("<h", payload)[0] / _TEMPERATURE_SCALE

    if spec.type == "string":
        try:
            return payload.rstrip(b"\x00").decode("utf-8")
        except UnicodeDecodeError as exc:
            raise RegisterDecodeError(f"Register '{spec.name}' returned invalid UTF-8") from exc

    if spec.type == "uuid":
        if len(payload) != 16:
            raise RegisterDecodeError(f"Register '{spec.name}' returned {len(payload)} bytes, expected 16")
        return UUID(bytes=payload)

    if spec.type == "bytes":
        return bytes(payload)

    raise RegisterDecodeError(f"Register '{spec.name}' has unsupported type '{spec.type}'")


def read_request(spec: RegisterSpec) -> RegisterRequest:
    if not spec.readable:
        raise RegisterValidationError(f"Register '{spec.name}' is write-only")
    return RegisterRequest(kind=RegisterKind.READ, register=spec)


def write_request(spec: RegisterSpec, value: Any) -> RegisterRequest:
    if not spec.writable:
        raise RegisterValidationError(f"Register '{spec.name}' is read-only")
    return RegisterRequest(
        kind=RegisterKind.WRITE,
        register=spec,
        payload=encode_value(spec, value),
        value=value,
    )


def decode_response(request: RegisterRequest, response: bytes | None) -> Any:
    """Decode a transport response for ``request``.

    Write acknowledgements without a body resolve to the written value, in
    the same form a read of the register would return it.
    """
    if request.kind is RegisterKind.WRITE and not response:
        return decode_value(request.register, request.payload)
    return decode_value(request.register, response or b"")


def parse_text_value(spec: RegisterSpec, text: str) -> Any:
    """Convert command-line text to the Python type ``spec`` expects."""
    stripped = text.strip()
    if spec.type == "bool":
        lowered = stripped.lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
        raise RegisterValidationError(f"Register '{spec.name}' expects true/false, got '{text}'")
    if spec.type in _INT_FORMATS:
        try:
            return int(stripped, 0)
        except ValueError as exc:
            raise RegisterValidationError(f"Register '{spec.name}' expects an integer, got '{text}'") from exc
    if spec.type == "temperature":
        try:
            return float(stripped)
        except ValueError as exc:
            raise RegisterValidationError(f"Register '{spec.name}' expects a number, got '{text}'") from exc
    if spec.type == "bytes":
        try:
            return bytes.fromhex(stripped.replace(" ", ""))
        except ValueError as exc:
            raise RegisterValidationError(f"Register '{spec.name}' expects hex bytes, got '{text}'") from exc
    return stripped
