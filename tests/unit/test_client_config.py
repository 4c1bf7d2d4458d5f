"""Tests for client configuration."""

import json

import pytest

from mxcrypt.config import ClientConfig


@pytest.fixture
def credentials():
    return {
        "homeserverUrl": "https://matrix.example.org/",
        "username": "alice",
        "password": "secret",
    }


@pytest.fixture
def credentials_file(tmp_path, credentials):
    path = tmp_path / "credentials.json"
    path.write_text(json.dumps(credentials), encoding="utf-8")
    return path


class TestClientConfig:
    def test_defaults(self, credentials):
        config = ClientConfig(credentials)

        assert config.homeserver == "https://matrix.example.org"
        assert config.username == "alice"
        assert config.blacklist_unverified_devices is False
        assert config.error_on_unknown_devices is False
        assert config.auto_join_rooms is True
        assert config.initial_sync_limit == 1
        assert config.device_id.startswith("MXCRYPT_")

    def test_device_id_kept(self, credentials):
        credentials["deviceId"] = "MYDEVICE"
        assert ClientConfig(credentials).device_id == "MYDEVICE"

    def test_missing_properties_listed(self):
        with pytest.raises(ValueError, match="needed properties: username, password"):
            ClientConfig({"homeserver": "https://matrix.example.org"})

    def test_homeserver_must_be_url(self, credentials):
        credentials["homeserverUrl"] = "matrix.example.org"
        with pytest.raises(ValueError):
            ClientConfig(credentials)

    def test_retry_attempts_validated(self, credentials):
        credentials["decrypt_retry_attempts"] = 0
        with pytest.raises(ValueError):
            ClientConfig(credentials)


class TestFromSources:
    def test_requires_a_source(self):
        with pytest.raises(ValueError, match="Must provide"):
            ClientConfig.from_sources()

    def test_from_file(self, credentials_file):
        config = ClientConfig.from_file(credentials_file)
        assert config.password == "secret"

    def test_mapping_overrides_file(self, credentials_file):
        config = ClientConfig.from_sources(
            credentials_file, {"password": "runtime", "username": None}
        )
        assert config.password == "runtime"
        assert config.username == "alice"

    def test_mapping_only(self, credentials):
        config = ClientConfig.from_sources(credentials=credentials)
        assert config.homeserver == "https://matrix.example.org"
