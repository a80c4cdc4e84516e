"""Profile loading and validation for YAML-based beacon register maps."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from beaconctl.core.errors import ProfileLoadError, ProfileValidationError
from beaconctl.core.model import ConnectionDefaults, DeviceProfile, RegisterSpec
from beaconctl.core.registers import VALUE_TYPES

_UUID_RE = re.compile(r"^[0-9a-f]{4}$|^[0-9a-f]{8}$|^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
_NUMERIC_TYPES = {"uint8", "int8", "uint16", "int16", "uint32", "temperature"}
_LENGTH_TYPES = {"string", "bytes"}
DEFAULT_PROFILE_ID = "estimote_beacon"
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag != "tag:yaml.org,2002:bool"
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ProfileValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedProfiles:
    profiles: dict[str, DeviceProfile]
    warnings: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("beaconctl.schemas").joinpath("profile.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _profile_dirs() -> tuple[Path, Path]:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_config / "beaconctl/profiles", xdg_data / "beaconctl/profiles"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ProfileLoadError(f"Could not read profile file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ProfileValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ProfileValidationError(f"Profile file {path} must contain a mapping at root")
    return loaded


def _normalize_uuid(value: str, *, context: str) -> str:
    normalized = value.strip().lower()
    if not _UUID_RE.match(normalized):
        raise ProfileValidationError(
            f"{context} must be a 16-bit, 32-bit, or 128-bit UUID string"
        )
    return normalized


def _build_register(name: str, doc: dict[str, Any], *, context: str) -> RegisterSpec:
    value_type = doc["type"]
    if value_type not in VALUE_TYPES:
        raise ProfileValidationError(f"{context}.type '{value_type}' is not supported")

    minimum = doc.get("minimum")
    maximum = doc.get("maximum")
    if (minimum is not None or maximum is not None) and value_type not in _NUMERIC_TYPES:
        raise ProfileValidationError(f"{context} declares bounds on non-numeric type '{value_type}'")
    if minimum is not None and maximum is not None and minimum > maximum:
        raise ProfileValidationError(f"{context}.minimum must not exceed maximum")
    if "max_length" in doc and value_type not in _LENGTH_TYPES:
        raise ProfileValidationError(f"{context}.max_length only applies to string/bytes registers")

    notify = doc.get("notify")
    if notify == "motion" and value_type != "bool":
        raise ProfileValidationError(f"{context} motion notifications require a bool register")
    if notify == "temperature" and value_type != "temperature":
        raise ProfileValidationError(f"{context} temperature notifications require a temperature register")

    return RegisterSpec(
        name=name,
        register_id=int(doc["id"]),
        uuid=_normalize_uuid(doc["uuid"], context=f"{context}.uuid"),
        type=value_type,
        access=doc["access"],
        minimum=minimum,
        maximum=maximum,
        choices=tuple(doc.get("choices", ())),
        max_length=doc.get("max_length"),
        notify=notify,
    )


def _build_profile(doc: dict[str, Any], source: Path | Traversable) -> DeviceProfile:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ProfileValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    registers: dict[str, RegisterSpec] = {}
    seen_ids: dict[int, str] = {}
    for register_name, register_doc in doc["registers"].items():
        context = f"{doc['id']}.registers.{register_name}"
        spec = _build_register(register_name, register_doc, context=context)
        if spec.register_id in seen_ids:
            raise ProfileValidationError(
                f"{context} reuses id {spec.register_id:#04x} of '{seen_ids[spec.register_id]}'"
            )
        seen_ids[spec.register_id] = register_name
        registers[register_name] = spec

    defaults_doc = doc.get("defaults", {})
    fallback = ConnectionDefaults()
    defaults = ConnectionDefaults(
        max_attempts=int(defaults_doc.get("max_attempts", fallback.max_attempts)),
        attempt_timeout_s=float(defaults_doc.get("attempt_timeout_s", fallback.attempt_timeout_s)),
        operation_timeout_s=float(defaults_doc.get("operation_timeout_s", fallback.operation_timeout_s)),
        chunk_size=int(defaults_doc.get("chunk_size", fallback.chunk_size)),
        chunk_timeout_s=float(defaults_doc.get("chunk_timeout_s", fallback.chunk_timeout_s)),
    )

    return DeviceProfile(
        id=doc["id"],
        name=doc["name"],
        service_uuid=_normalize_uuid(doc["service_uuid"], context=f"{doc['id']}.service_uuid"),
        registers=registers,
        defaults=defaults,
    )


def _iter_packaged_profile_paths() -> list[Traversable]:
    profile_root = resources.files("beaconctl.profiles")
    return [item for item in profile_root.iterdir() if item.name.endswith((".yml", ".yaml"))]


def _iter_user_profile_paths() -> list[Path]:
    paths: list[Path] = []
    for directory in _profile_dirs():
        if not directory.exists() or not directory.is_dir():
            continue
        paths.extend(sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"}))
    return paths


def load_profiles() -> LoadedProfiles:
    profiles: dict[str, DeviceProfile] = {}
    warnings: list[str] = []

    for path in sorted(_iter_packaged_profile_paths(), key=lambda p: p.name):
        doc = _read_yaml(path)
        profile = _build_profile(doc, path)
        profiles[profile.id] = profile

    for path in _iter_user_profile_paths():
        doc = _read_yaml(path)
        profile = _build_profile(doc, path)
        if profile.id in profiles:
            warning = f"User profile '{profile.id}' overrides packaged profile"
            LOGGER.warning(warning)
            warnings.append(warning)
        profiles[profile.id] = profile

    return LoadedProfiles(profiles=profiles, warnings=tuple(warnings))


def load_profile(profile_id: str = DEFAULT_PROFILE_ID) -> DeviceProfile:
    loaded = load_profiles()
    profile = loaded.profiles.get(profile_id)
    if profile is None:
        available = ", ".join(sorted(loaded.profiles))
        raise ProfileLoadError(f"Unknown profile '{profile_id}'. Available: {available}")
    return profile
