"""
Crypto Store - persisted E2EE state of one account

Layout under ``<store_path>/<account>/``:

- ``identity.json``        pickled Olm account (Ed25519 + Curve25519 identity)
- ``devices.json``         peer device trust table and pending key changes
- ``olm_sessions/``        one file per peer identity key
- ``outbound_sessions/``   one file per room with a current outbound session
- ``retired_sessions/``    one file per retired outbound session, written once
- ``inbound_sessions/``    one file per inbound Megolm session
- ``cross_signing.json``   cross-signing keys

Session ratchet state is stored as vodozemac pickles so it round-trips
exactly. Each session lives in its own file so advancing one ratchet rewrites
only that record.
"""

import hashlib
import json
import os
from pathlib import Path
from typing import Any

from ..constants import PICKLE_KEY_SALT, PICKLE_KEY_SIZE
from ..log import get_logger

logger = get_logger("e2ee.store")

IDENTITY_FILE = "identity.json"
DEVICES_FILE = "devices.json"
CROSS_SIGNING_FILE = "cross_signing.json"
OLM_SESSIONS_DIR = "olm_sessions"
OUTBOUND_DIR = "outbound_sessions"
RETIRED_DIR = "retired_sessions"
INBOUND_DIR = "inbound_sessions"


def generate_pickle_key(user_id: str, device_id: str) -> bytes:
    """Derive the default pickle key for an account/device pair"""
    key_material = f"{user_id}:{device_id}:{PICKLE_KEY_SALT}".encode()
    return hashlib.sha256(key_material).digest()


def _record_name(key: str) -> str:
    """File name for a record key (room and session IDs are not path-safe)"""
    return hashlib.sha256(key.encode("utf-8")).hexdigest() + ".json"


class CryptoStore:
    """File-backed JSON store for one account"""

    def __init__(
        self,
        store_path: str | Path,
        user_id: str,
        device_id: str,
        pickle_key: bytes | str | None = None,
    ):
        """
        Args:
            store_path: Root directory for all accounts
            user_id: Matrix user ID owning the state
            device_id: This device's ID
            pickle_key: Explicit pickle key; derived from the IDs when omitted
        """
        self.user_id = user_id
        self.device_id = device_id
        self.store_path = Path(store_path) / user_id.replace(":", "_")
        self.store_path.mkdir(parents=True, exist_ok=True)

        if pickle_key is None:
            self.pickle_key = generate_pickle_key(user_id, device_id)
        elif isinstance(pickle_key, str):
            self.pickle_key = hashlib.sha256(pickle_key.encode()).digest()
        else:
            self.pickle_key = pickle_key
        if len(self.pickle_key) != PICKLE_KEY_SIZE:
            raise ValueError(f"pickle key must be {PICKLE_KEY_SIZE} bytes")

    def _path(self, name: str) -> Path:
        return self.store_path / name

    @staticmethod
    def _read(path: Path) -> Any | None:
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    @staticmethod
    def _write(path: Path, data: Any) -> None:
        # Write to a sibling file first so a crash never leaves half a record
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2, sort_keys=True)
        os.replace(tmp_path, path)

    def _load(self, name: str) -> Any | None:
        return self._read(self._path(name))

    def _save(self, name: str, data: Any) -> None:
        self._write(self._path(name), data)

    # ========== Per-record directories ==========

    def _record_path(self, directory: str, key: str) -> Path:
        return self._path(directory) / _record_name(key)

    def _load_records(self, directory: str) -> list[Any]:
        path = self._path(directory)
        if not path.is_dir():
            return []
        return [self._read(item) for item in sorted(path.glob("*.json"))]

    def _delete_record(self, directory: str, key: str) -> None:
        path = self._record_path(directory, key)
        if path.exists():
            path.unlink()

    # ========== Identity ==========

    def load_identity(self) -> dict[str, Any] | None:
        return self._load(IDENTITY_FILE)

    def save_identity(self, data: dict[str, Any]) -> None:
        self._save(IDENTITY_FILE, data)

    # ========== Devices ==========

    def load_devices(self) -> dict[str, Any]:
        return self._load(DEVICES_FILE) or {"devices": [], "key_changes": []}

    def save_devices(self, data: dict[str, Any]) -> None:
        self._save(DEVICES_FILE, data)

    # ========== Olm sessions ==========

    def load_olm_sessions(self) -> dict[str, list[str]]:
        """Peer identity key -> session pickles"""
        return {
            record["identity_key"]: record["pickles"]
            for record in self._load_records(OLM_SESSIONS_DIR)
        }

    def save_olm_sessions(self, identity_key: str, pickles: list[str]) -> None:
        self._write(
            self._record_path(OLM_SESSIONS_DIR, identity_key),
            {"identity_key": identity_key, "pickles": pickles},
        )

    # ========== Megolm sessions ==========

    def load_outbound_sessions(self) -> list[dict[str, Any]]:
        return self._load_records(OUTBOUND_DIR)

    def save_outbound_session(self, room_id: str, data: dict[str, Any]) -> None:
        self._write(self._record_path(OUTBOUND_DIR, room_id), data)

    def delete_outbound_session(self, room_id: str) -> None:
        self._delete_record(OUTBOUND_DIR, room_id)

    def load_retired_sessions(self) -> list[dict[str, Any]]:
        return self._load_records(RETIRED_DIR)

    def save_retired_session(self, session_id: str, data: dict[str, Any]) -> None:
        self._write(self._record_path(RETIRED_DIR, session_id), data)

    def load_inbound_sessions(self) -> list[dict[str, Any]]:
        return self._load_records(INBOUND_DIR)

    def save_inbound_session(
        self, room_id: str, session_id: str, data: dict[str, Any]
    ) -> None:
        self._write(self._record_path(INBOUND_DIR, f"{room_id}|{session_id}"), data)

    # ========== Cross-signing ==========

    def load_cross_signing(self) -> dict[str, Any] | None:
        return self._load(CROSS_SIGNING_FILE)

    def save_cross_signing(self, data: dict[str, Any]) -> None:
        self._save(CROSS_SIGNING_FILE, data)
        logger.debug("Saved cross-signing keys")
