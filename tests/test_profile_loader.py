from __future__ import annotations

from pathlib import Path

import pytest

from turniectl.core.errors import ProfileResolutionError, ProfileValidationError
from turniectl.core.profile_loader import load_profiles

_VALID_PROFILE = """
id: {id}
name: {name}
service_uuid: 12345678-1234-1234-1234-1234567890AB
write_char_uuid: abcd1234-5678-90ab-cdef-1234567890ab
notify_char_uuid: abcd1234-5678-90ab-cdef-1234567890ac
"""


def _write_profile(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


@pytest.fixture
def config_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    return tmp_path / "cfg" / "turniectl" / "profiles"


def test_load_packaged_profile(config_home: Path) -> None:
    loaded = load_profiles()
    assert loaded.warnings == ()
    profile = loaded.get()
    assert profile.id == "turnie"
    assert profile.service_uuid == "12345678-1234-1234-1234-1234567890ab"
    assert profile.write_char_uuid == "abcd1234-5678-90ab-cdef-1234567890ab"
    assert profile.notify_char_uuid == "abcd1234-5678-90ab-cdef-1234567890ac"
    assert profile.auto_connect_timeout_s == 10.0
    assert profile.transfer.chunk_size == 100
    assert profile.transfer.chunk_interval_s == pytest.approx(0.03)
    assert profile.transfer.write_with_response is True
    assert profile.image.byte_length == 192
    assert (profile.text_slot, profile.image_slot) == ("p001", "p002")
    assert profile.request_command == "GET_DATA"


def test_user_profile_defaults_and_normalizes(config_home: Path) -> None:
    _write_profile(config_home / "bench.yaml", _VALID_PROFILE.format(id="bench", name="Bench rig"))

    profile = load_profiles().get("bench")
    assert profile.name == "Bench rig"
    assert profile.service_uuid == "12345678-1234-1234-1234-1234567890ab"
    assert profile.transfer.chunk_size == 100
    assert profile.image.width == 8


def test_user_profile_override_packaged(config_home: Path) -> None:
    _write_profile(
        config_home / "override.yaml",
        _VALID_PROFILE.format(id="turnie", name="Custom turnie")
        + "transfer:\n  chunk_size: 20\n  chunk_interval_s: 0.05\n",
    )

    loaded = load_profiles()
    profile = loaded.get("turnie")
    assert profile.name == "Custom turnie"
    assert profile.transfer.chunk_size == 20
    assert any("overrides packaged profile" in warning for warning in loaded.warnings)


def test_invalid_uuid_rejected(config_home: Path) -> None:
    _write_profile(
        config_home / "bad.yaml",
        _VALID_PROFILE.format(id="bad", name="Bad").replace("12345678-1234-1234-1234-1234567890AB", "not-a-uuid"),
    )
    with pytest.raises(ProfileValidationError):
        load_profiles()


def test_same_write_and_notify_rejected(config_home: Path) -> None:
    _write_profile(
        config_home / "same.yaml",
        _VALID_PROFILE.format(id="same", name="Same").replace(
            "abcd1234-5678-90ab-cdef-1234567890ac", "ABCD1234-5678-90AB-CDEF-1234567890AB"
        ),
    )
    with pytest.raises(ProfileValidationError):
        load_profiles()


def test_missing_required_keys_rejected(config_home: Path) -> None:
    _write_profile(config_home / "missing.yaml", "id: missing\nname: Missing\n")
    with pytest.raises(ProfileValidationError):
        load_profiles()


def test_unknown_keys_rejected(config_home: Path) -> None:
    _write_profile(
        config_home / "extra.yaml",
        _VALID_PROFILE.format(id="extra", name="Extra") + "features: {}\n",
    )
    with pytest.raises(ProfileValidationError):
        load_profiles()


def test_duplicate_keys_rejected(config_home: Path) -> None:
    _write_profile(
        config_home / "dup.yaml",
        _VALID_PROFILE.format(id="dup", name="Dup") + "name: Again\n",
    )
    with pytest.raises(ProfileValidationError):
        load_profiles()


def test_non_mapping_root_rejected(config_home: Path) -> None:
    _write_profile(config_home / "list.yml", "- turnie\n")
    with pytest.raises(ProfileValidationError):
        load_profiles()


def test_unknown_profile_id(config_home: Path) -> None:
    with pytest.raises(ProfileResolutionError):
        load_profiles().get("missing")
