"""
Client configuration

Built from a mapping or from a JSON credentials file holding at least
``homeserverUrl``/``homeserver``, ``username`` and ``password``.
"""

import json
import uuid
from pathlib import Path
from typing import Any

from .log import get_logger

logger = get_logger("config")

REQUIRED_PROPERTIES = ("homeserver", "username", "password")

# Accepted spellings of the credential keys
_ALIASES = {
    "homeserverUrl": "homeserver",
    "homeserver_url": "homeserver",
    "user_id": "username",
    "userId": "username",
    "accessToken": "access_token",
    "deviceId": "device_id",
}


def _normalize(data: dict[str, Any] | None) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in (data or {}).items():
        result[_ALIASES.get(key, key)] = value
    return result


class ClientConfig:
    def __init__(self, config: dict[str, Any]):
        """Initialize client configuration.

        Password login is required because cross-signing bootstrap needs a
        fresh re-authentication; an access token alone is not enough.
        """
        self.config = _normalize(config)
        self.homeserver = str(self.config.get("homeserver") or "").rstrip("/")
        self.username = self.config.get("username")
        self.password = self.config.get("password")
        self.access_token = self.config.get("access_token")
        self.device_name = self.config.get("device_name", "mxcrypt")
        self.device_id = self.config.get("device_id")
        if not self.device_id:
            self.device_id = f"MXCRYPT_{uuid.uuid4().hex[:12].upper()}"
            self.config["device_id"] = self.device_id
            logger.info(f"Auto-generated device_id: {self.device_id}")

        self.store_path = self.config.get("store_path", "./data/mxcrypt_store")
        self.pickle_key = self.config.get("pickle_key")
        self.auto_join_rooms = self.config.get("auto_join_rooms", True)
        self.sync_timeout = self.config.get("sync_timeout", 30000)
        self.initial_sync_limit = self.config.get("initial_sync_limit", 1)

        # Permissive trust defaults:
        # unverified devices do not block sends, unknown devices are included.
        self.blacklist_unverified_devices = self.config.get(
            "blacklist_unverified_devices", False
        )
        self.error_on_unknown_devices = self.config.get(
            "error_on_unknown_devices", False
        )

        self.decrypt_retry_attempts = self.config.get("decrypt_retry_attempts", 5)
        self.decrypt_retry_base_delay = self.config.get(
            "decrypt_retry_base_delay", 0.5
        )
        self.decrypt_retry_max_delay = self.config.get("decrypt_retry_max_delay", 8.0)
        self.network_retry_attempts = self.config.get("network_retry_attempts", 3)
        self.network_retry_base_delay = self.config.get(
            "network_retry_base_delay", 1.0
        )
        self.subscription_queue_size = self.config.get("subscription_queue_size", 100)

        self._validate()

    def _validate(self):
        missing = [prop for prop in REQUIRED_PROPERTIES if not self.config.get(prop)]
        if missing:
            raise ValueError(
                f"Missing properties, needed properties: {', '.join(missing)}"
            )
        if not self.homeserver.startswith(("http://", "https://")):
            raise ValueError(
                f"homeserver must be an http(s) URL, got: {self.homeserver}"
            )
        if self.decrypt_retry_attempts < 1:
            raise ValueError("decrypt_retry_attempts must be at least 1")
        if self.subscription_queue_size < 1:
            raise ValueError("subscription_queue_size must be at least 1")

    @classmethod
    def from_file(cls, path: str | Path) -> "ClientConfig":
        """Load configuration from a JSON credentials file"""
        with open(path, encoding="utf-8") as f:
            return cls(json.load(f))

    @classmethod
    def from_sources(
        cls,
        file_path: str | Path | None = None,
        credentials: dict[str, Any] | None = None,
    ) -> "ClientConfig":
        """
        Merge a credentials file and a credentials mapping

        Values in ``credentials`` take precedence over the file so a caller can
        keep the homeserver in a file and pass the password at runtime.

        Raises:
            ValueError: when neither source is given or required keys are missing
        """
        if not file_path and not credentials:
            raise ValueError(
                "Must provide either a file path or a mapping with username, "
                "password and homeserverUrl"
            )
        merged: dict[str, Any] = {}
        if file_path:
            with open(file_path, encoding="utf-8") as f:
                merged.update(_normalize(json.load(f)))
        for key, value in _normalize(credentials).items():
            if value:
                merged[key] = value
        return cls(merged)

