"""
Tests for tvcast.config, tvcast.logs and tvcast.core.network.
"""

from __future__ import annotations

from pathlib import Path

from tvcast.config import (
    DEVICE_UUID_LENGTH,
    CastConfig,
    get_or_create_device_uuid,
    load_config,
)
from tvcast.core.network import advertised_host
from tvcast.logs import LOG_FILE_NAME, latest_log_path, log_files, oldest_log_path


class TestLoadConfig:
    """Tests for TOML config loading."""

    def test_packaged_defaults(self) -> None:
        """The packaged defaults match the dataclass defaults."""
        config = load_config()
        assert config == CastConfig()
        assert config.enabled is True
        assert config.descriptor_port == 9958
        assert config.receiver_port == 9959
        assert config.beacon_port == 9960

    def test_user_file_layered(self, tmp_path: Path) -> None:
        """A user file overrides individual keys."""
        user = tmp_path / "tvcast.toml"
        user.write_text('[cast]\nenabled = false\nfriendly_name = "Bedroom"\nadvertise_interval = 2\n')

        config = load_config(user)

        assert config.enabled is False
        assert config.friendly_name == "Bedroom"
        assert config.advertise_interval == 2.0
        assert isinstance(config.advertise_interval, float)
        assert config.descriptor_port == 9958

    def test_wrong_type_ignored(self, tmp_path: Path) -> None:
        """Keys with the wrong type keep their default."""
        user = tmp_path / "tvcast.toml"
        user.write_text('[cast]\ndescriptor_port = "abc"\nenabled = 1\n')

        config = load_config(user)

        assert config.descriptor_port == 9958
        assert config.enabled is True

    def test_unknown_keys_ignored(self, tmp_path: Path) -> None:
        """Unknown keys do not break loading."""
        user = tmp_path / "tvcast.toml"
        user.write_text("[cast]\nno_such_key = 3\n")

        assert load_config(user) == CastConfig()

    def test_with_overrides_skips_none(self) -> None:
        """None overrides leave the value untouched."""
        config = CastConfig().with_overrides(host="127.0.0.1", descriptor_port=None)
        assert config.host == "127.0.0.1"
        assert config.descriptor_port == 9958


class TestDeviceUuid:
    """Tests for the persistent device identifier."""

    def test_created_and_persisted(self, tmp_path: Path) -> None:
        """A new id is written and reused on the next call."""
        path = tmp_path / "cache" / "device_uuid"

        first = get_or_create_device_uuid(path)
        second = get_or_create_device_uuid(path)

        assert len(first) == DEVICE_UUID_LENGTH
        assert first.isalnum()
        assert first == first.upper()
        assert first == second
        assert path.read_text() == first

    def test_malformed_replaced(self, tmp_path: Path) -> None:
        """A malformed stored id is regenerated."""
        path = tmp_path / "device_uuid"
        path.write_text("not-a-valid-id")

        value = get_or_create_device_uuid(path)

        assert value != "not-a-valid-id"
        assert len(value) == DEVICE_UUID_LENGTH


class TestLogFiles:
    """Tests for rotated log file lookup."""

    def test_no_files(self, tmp_path: Path) -> None:
        """An empty directory has neither latest nor oldest file."""
        assert log_files(tmp_path) == []
        assert latest_log_path(tmp_path) is None
        assert oldest_log_path(tmp_path) is None

    def test_latest_and_oldest(self, tmp_path: Path) -> None:
        """The live file is latest, the highest rotation is oldest."""
        (tmp_path / LOG_FILE_NAME).write_text("now")
        (tmp_path / f"{LOG_FILE_NAME}.1").write_text("before")
        (tmp_path / f"{LOG_FILE_NAME}.2").write_text("long ago")

        assert latest_log_path(tmp_path) == tmp_path / LOG_FILE_NAME
        assert oldest_log_path(tmp_path) == tmp_path / f"{LOG_FILE_NAME}.2"


class TestAdvertisedHost:
    """Tests for LOCATION host selection."""

    def test_explicit_bind_address(self) -> None:
        """A concrete bind address is advertised as-is."""
        assert advertised_host("192.168.1.20") == "192.168.1.20"

    def test_wildcard_resolves(self) -> None:
        """The wildcard address is replaced by a concrete one."""
        assert advertised_host("0.0.0.0") != "0.0.0.0"
