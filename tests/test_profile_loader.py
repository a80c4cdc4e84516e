from __future__ import annotations

from pathlib import Path

import pytest

from beaconctl.core.errors import ProfileLoadError, ProfileValidationError
from beaconctl.core.profile_loader import load_profile, load_profiles


def _write_profile(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


@pytest.fixture(autouse=True)
def _isolated_xdg(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))


def test_load_packaged_profile() -> None:
    profile = load_profile()
    assert profile.id == "estimote_beacon"
    assert profile.service_uuid == "b9403000-f5f8-466e-aff9-25556b57fe6d"
    assert profile.registers["adv_interval"].minimum == 100
    assert profile.registers["motion_state"].notify == "motion"
    assert profile.defaults.max_attempts == 3
    assert profile.defaults.chunk_size == 128


def test_unknown_profile_rejected() -> None:
    with pytest.raises(ProfileLoadError, match="Unknown profile 'nope'"):
        load_profile("nope")


def test_user_profile_override_packaged(tmp_path: Path) -> None:
    _write_profile(
        tmp_path / "cfg" / "beaconctl" / "profiles" / "override.yaml",
        """
id: estimote_beacon
name: User Override
service_uuid: "180f"
defaults:
  operation_timeout_s: 2.5
registers:
  battery_level:
    id: 1
    uuid: "2a19"
    type: uint8
    access: r
""",
    )

    loaded = load_profiles()
    profile = loaded.profiles["estimote_beacon"]
    assert profile.name == "User Override"
    assert profile.defaults.operation_timeout_s == 2.5
    assert profile.defaults.max_attempts == 3
    assert list(profile.registers) == ["battery_level"]
    assert any("overrides" in warning for warning in loaded.warnings)


def test_data_dir_profile_loads(tmp_path: Path) -> None:
    _write_profile(
        tmp_path / "data" / "beaconctl" / "profiles" / "sticker.yml",
        """
id: sticker
name: Sticker Beacon
service_uuid: "0000180f-0000-1000-8000-00805f9b34fb"
registers:
  motion_state:
    id: 0x10
    uuid: "00002a19-0000-1000-8000-00805f9b34fb"
    type: bool
    access: r
    notify: motion
""",
    )

    profile = load_profiles().profiles["sticker"]
    assert profile.registers["motion_state"].register_id == 0x10
    assert not load_profiles().warnings


def test_missing_required_keys_rejected(tmp_path: Path) -> None:
    _write_profile(
        tmp_path / "cfg" / "beaconctl" / "profiles" / "missing.yaml",
        """
id: missing
name: Missing
service_uuid: "180f"
""",
    )

    with pytest.raises(ProfileValidationError, match="registers"):
        load_profiles()


def test_duplicate_yaml_keys_rejected(tmp_path: Path) -> None:
    _write_profile(
        tmp_path / "cfg" / "beaconctl" / "profiles" / "dup.yaml",
        """
id: dup
name: Duplicate
service_uuid: "180f"
registers:
  major:
    id: 1
    uuid: "2a19"
    type: uint16
    type: uint8
    access: rw
""",
    )

    with pytest.raises(ProfileValidationError):
        load_profiles()


def test_duplicate_register_ids_rejected(tmp_path: Path) -> None:
    _write_profile(
        tmp_path / "cfg" / "beaconctl" / "profiles" / "ids.yaml",
        """
id: ids
name: Shared Ids
service_uuid: "180f"
registers:
  major:
    id: 1
    uuid: "2a19"
    type: uint16
    access: rw
  minor:
    id: 1
    uuid: "2a1a"
    type: uint16
    access: rw
""",
    )

    with pytest.raises(ProfileValidationError, match="reuses id"):
        load_profiles()


def test_bounds_on_string_register_rejected(tmp_path: Path) -> None:
    _write_profile(
        tmp_path / "cfg" / "beaconctl" / "profiles" / "bounds.yaml",
        """
id: bounds
name: Bounds
service_uuid: "180f"
registers:
  name:
    id: 6
    uuid: "2a00"
    type: string
    access: rw
    minimum: 1
""",
    )

    with pytest.raises(ProfileValidationError, match="non-numeric"):
        load_profiles()


def test_motion_notify_requires_bool(tmp_path: Path) -> None:
    _write_profile(
        tmp_path / "cfg" / "beaconctl" / "profiles" / "motion.yaml",
        """
id: motion
name: Motion
service_uuid: "180f"
registers:
  motion_state:
    id: 6
    uuid: "2a00"
    type: uint8
    access: r
    notify: motion
""",
    )

    with pytest.raises(ProfileValidationError, match="require a bool"):
        load_profiles()
