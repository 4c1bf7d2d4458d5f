"""
Device Identity Store

Holds this device's long-term identity and the trust table of every peer
device we have observed. Recorded key material is immutable: a device
announcing different keys under a known device ID is reported as a key change
and only replaced after ``accept_key_change``.

The identity is the vodozemac Olm account. To-device payloads travel inside
``m.olm.v1.curve25519-aes-sha2`` messages bound to the sender's and the
recipient's recorded keys.
"""

import binascii
import json
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from ..constants import OLM_ALGORITHM, SIGNED_CURVE25519, SUPPORTED_ALGORITHMS
from ..errors import (
    CiphertextInvalid,
    SignatureInvalid,
    UnknownDeviceError,
    UnsupportedAlgorithm,
)
from ..log import get_logger
from .crypto_store import CryptoStore
from .encoding import canonical_json, decode_base64
from .olm_machine import OlmMachine

logger = get_logger("e2ee.devices")


def verify_signature(signing_key: str, message: str, signature: str) -> bool:
    """Check an Ed25519 signature made over ``message``"""
    try:
        public_key = Ed25519PublicKey.from_public_bytes(decode_base64(signing_key))
        public_key.verify(decode_base64(signature), message.encode("utf-8"))
        return True
    except (InvalidSignature, ValueError, TypeError, binascii.Error):
        return False


def _require_str(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value:
        raise CiphertextInvalid(f"To-device field {name} must be a non-empty string")
    return value


def _require_dict(value: Any, name: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise CiphertextInvalid(f"To-device field {name} must be an object")
    return value


class VerificationStatus(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    BLACKLISTED = "blacklisted"


@dataclass(frozen=True)
class Identity:
    """Public half of this device's long-term identity"""

    user_id: str
    device_id: str
    signing_key: str
    identity_key: str


@dataclass
class PeerDevice:
    """A device of another user (or another device of ours)"""

    user_id: str
    device_id: str
    identity_key: str
    signing_key: str
    verification: VerificationStatus = VerificationStatus.UNVERIFIED
    known: bool = False
    display_name: str | None = None
    flagged_reason: str | None = None
    first_seen: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def keys(self) -> dict[str, str]:
        return {"ed25519": self.signing_key, "curve25519": self.identity_key}

    @property
    def is_verified(self) -> bool:
        return self.verification == VerificationStatus.VERIFIED

    @property
    def is_blacklisted(self) -> bool:
        return self.verification == VerificationStatus.BLACKLISTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "device_id": self.device_id,
            "curve25519": self.identity_key,
            "ed25519": self.signing_key,
            "verification": self.verification.value,
            "known": self.known,
            "display_name": self.display_name,
            "flagged_reason": self.flagged_reason,
            "first_seen": self.first_seen,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PeerDevice":
        return cls(
            user_id=data["user_id"],
            device_id=data["device_id"],
            identity_key=data["curve25519"],
            signing_key=data["ed25519"],
            verification=VerificationStatus(data.get("verification", "unverified")),
            known=data.get("known", False),
            display_name=data.get("display_name"),
            flagged_reason=data.get("flagged_reason"),
            first_seen=data.get("first_seen", 0),
        )


@dataclass
class DeviceKeyChange:
    """A known device ID re-announced with different keys"""

    previous: PeerDevice
    identity_key: str
    signing_key: str
    detected_at: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict[str, Any]:
        return {
            "previous": self.previous.to_dict(),
            "curve25519": self.identity_key,
            "ed25519": self.signing_key,
            "detected_at": self.detected_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceKeyChange":
        return cls(
            previous=PeerDevice.from_dict(data["previous"]),
            identity_key=data["curve25519"],
            signing_key=data["ed25519"],
            detected_at=data.get("detected_at", 0),
        )


@dataclass
class ToDevicePayload:
    """Decrypted content of an Olm to-device message"""

    sender: str
    sender_key: str
    signing_key: str
    event_type: str
    content: dict[str, Any]
    sender_device: str | None = None


class DeviceIdentityStore:
    """Own identity plus per-peer-device trust state"""

    def __init__(
        self,
        store: CryptoStore,
        olm: OlmMachine | None = None,
        on_key_change: Callable[[DeviceKeyChange], None] | None = None,
    ):
        """
        Args:
            store: Persistence of the trust table
            olm: Holder of the Olm account; share one per account
            on_key_change: Called when a known device announces new keys
        """
        self.store = store
        self.olm = olm or OlmMachine(store)
        self.user_id = store.user_id
        self.device_id = store.device_id
        self.on_key_change = on_key_change

        self._identity: Identity | None = None

        # (user_id, device_id) -> PeerDevice
        self._devices: dict[tuple[str, str], PeerDevice] = {}
        self._key_changes: dict[tuple[str, str], DeviceKeyChange] = {}
        self._load_devices()

    # ========== Own identity ==========

    def get_or_create_identity(self) -> Identity:
        """
        Load this device's identity, creating it on first use

        Idempotent: once persisted the Olm account is never regenerated, since
        a new identity invalidates every peer's trust in this device.
        """
        if self._identity is None:
            self._identity = Identity(
                user_id=self.user_id,
                device_id=self.device_id,
                signing_key=self.olm.ed25519_key,
                identity_key=self.olm.curve25519_key,
            )
        return self._identity

    def sign(self, message: str) -> str:
        """Sign a message with this device's Ed25519 key"""
        return self.olm.sign(message)

    def sign_json(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of ``obj`` carrying this device's signature"""
        signed = dict(obj)
        signature = self.sign(canonical_json(obj))
        signatures = dict(obj.get("signatures", {}))
        user_signatures = dict(signatures.get(self.user_id, {}))
        user_signatures[f"ed25519:{self.device_id}"] = signature
        signatures[self.user_id] = user_signatures
        signed["signatures"] = signatures
        return signed

    @staticmethod
    def verify_json(
        obj: dict[str, Any], user_id: str, device_id: str, signing_key: str
    ) -> bool:
        """Check the ``ed25519:<device_id>`` signature of ``user_id`` on ``obj``"""
        if not isinstance(obj, dict):
            return False
        signatures = obj.get("signatures")
        user_signatures = (
            signatures.get(user_id) if isinstance(signatures, dict) else None
        )
        signature = (
            user_signatures.get(f"ed25519:{device_id}")
            if isinstance(user_signatures, dict)
            else None
        )
        if not isinstance(signature, str) or not signature:
            return False
        return verify_signature(signing_key, canonical_json(obj), signature)

    def device_keys_payload(self) -> dict[str, Any]:
        """Signed device announcement suitable for keys/upload"""
        identity = self.get_or_create_identity()
        device_keys = {
            "user_id": self.user_id,
            "device_id": self.device_id,
            "algorithms": list(SUPPORTED_ALGORITHMS),
            "keys": {
                f"curve25519:{self.device_id}": identity.identity_key,
                f"ed25519:{self.device_id}": identity.signing_key,
            },
        }
        return self.sign_json(device_keys)

    def one_time_keys_payload(self, count: int) -> dict[str, Any]:
        """
        Generate ``count`` one-time keys and sign every unpublished one

        Call ``mark_one_time_keys_published`` once the upload succeeded.
        """
        keys = self.olm.generate_one_time_keys(count)
        return {
            f"{SIGNED_CURVE25519}:{key_id}": self.sign_json({"key": key})
            for key_id, key in keys.items()
        }

    def mark_one_time_keys_published(self):
        self.olm.mark_keys_as_published()

    # ========== Olm to-device ==========

    def has_olm_session(self, device: PeerDevice) -> bool:
        return self.olm.has_olm_session(device.identity_key)

    def create_olm_session(self, device: PeerDevice, one_time_key: Any) -> None:
        """
        Start an Olm session with ``device`` from a claimed one-time key

        Raises:
            SignatureInvalid: the key is not signed by the device
        """
        if (
            not isinstance(one_time_key, dict)
            or not isinstance(one_time_key.get("key"), str)
            or not self.verify_json(
                one_time_key, device.user_id, device.device_id, device.signing_key
            )
        ):
            raise SignatureInvalid(
                f"One-time key of {device.user_id}:{device.device_id} is not "
                f"signed by the device",
                device.user_id,
                device.device_id,
            )
        self.olm.create_outbound_session(device.identity_key, one_time_key["key"])
        logger.debug(f"Started Olm session with {device.user_id}:{device.device_id}")

    def encrypt_for_device(
        self, device: PeerDevice, event_type: str, content: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Encrypt a to-device event so only ``device`` can read it

        Requires an Olm session with the device (``create_olm_session``).
        """
        identity = self.get_or_create_identity()
        payload = {
            "type": event_type,
            "content": content,
            "sender": self.user_id,
            "sender_device": self.device_id,
            "keys": {"ed25519": identity.signing_key},
            "recipient": device.user_id,
            "recipient_keys": {"ed25519": device.signing_key},
        }
        message_type, body = self.olm.encrypt_olm(
            device.identity_key, json.dumps(payload, ensure_ascii=False)
        )
        return {
            "algorithm": OLM_ALGORITHM,
            "sender_key": identity.identity_key,
            "ciphertext": {device.identity_key: {"type": message_type, "body": body}},
        }

    def decrypt_to_device(self, sender: str, content: Any) -> ToDevicePayload:
        """
        Decrypt a to-device ``m.room.encrypted`` event addressed to this device

        The sender device is not looked up here; see ``resolve_sender_device``.

        Raises:
            UnsupportedAlgorithm: not an Olm message
            CiphertextInvalid: malformed, not for us, or undecryptable
            SignatureInvalid: the plaintext names another sender
        """
        identity = self.get_or_create_identity()
        content = _require_dict(content, "content")
        algorithm = content.get("algorithm")
        if algorithm != OLM_ALGORITHM:
            raise UnsupportedAlgorithm(f"Unsupported to-device algorithm: {algorithm}")
        sender_key = _require_str(content.get("sender_key"), "sender_key")
        ciphertext = _require_dict(content.get("ciphertext"), "ciphertext")
        if identity.identity_key not in ciphertext:
            raise CiphertextInvalid("To-device message is not addressed to us")
        message = _require_dict(ciphertext[identity.identity_key], "ciphertext entry")
        message_type = message.get("type")
        if not isinstance(message_type, int) or isinstance(message_type, bool):
            raise CiphertextInvalid("Olm message type must be an integer")
        body = _require_str(message.get("body"), "body")

        plaintext = self.olm.decrypt_olm(sender_key, message_type, body)
        try:
            payload = json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise CiphertextInvalid(f"Olm payload is not JSON: {e}") from e
        payload = _require_dict(payload, "payload")

        if payload.get("sender") != sender:
            raise SignatureInvalid(
                f"Olm payload claims sender {payload.get('sender')!r}, "
                f"event came from {sender}",
                sender,
            )
        recipient_keys = _require_dict(payload.get("recipient_keys"), "recipient_keys")
        if (
            payload.get("recipient") != self.user_id
            or recipient_keys.get("ed25519") != identity.signing_key
        ):
            raise CiphertextInvalid("Olm payload was encrypted for another device")
        keys = _require_dict(payload.get("keys"), "keys")
        sender_device = payload.get("sender_device")
        if sender_device is not None:
            sender_device = _require_str(sender_device, "sender_device")

        return ToDevicePayload(
            sender=sender,
            sender_key=sender_key,
            signing_key=_require_str(keys.get("ed25519"), "keys.ed25519"),
            event_type=_require_str(payload.get("type"), "type"),
            content=_require_dict(payload.get("content"), "content"),
            sender_device=sender_device,
        )

    def resolve_sender_device(self, payload: ToDevicePayload) -> PeerDevice:
        """
        Recorded device that sent a decrypted to-device payload

        Raises:
            UnknownDeviceError: no recorded device of the sender owns the key
            SignatureInvalid: the payload's signing key is not the device's
        """
        if payload.sender_device:
            device = self._devices.get((payload.sender, payload.sender_device))
            if device and device.identity_key != payload.sender_key:
                device = None
        else:
            device = next(
                (
                    d
                    for d in self.get_user_devices(payload.sender)
                    if d.identity_key == payload.sender_key
                ),
                None,
            )
        if device is None:
            raise UnknownDeviceError(payload.sender, payload.sender_device or "")
        if device.signing_key != payload.signing_key:
            self.flag_device(
                device.user_id, device.device_id, "to-device signing key mismatch"
            )
            raise SignatureInvalid(
                f"To-device signing key of {device.user_id}:{device.device_id} "
                f"does not match the recorded key",
                device.user_id,
                device.device_id,
            )
        return device

    # ========== Peer devices ==========

    def _load_devices(self):
        data = self.store.load_devices()
        for item in data.get("devices", []):
            device = PeerDevice.from_dict(item)
            self._devices[(device.user_id, device.device_id)] = device
        for item in data.get("key_changes", []):
            change = DeviceKeyChange.from_dict(item)
            self._key_changes[(change.previous.user_id, change.previous.device_id)] = (
                change
            )

    def _save_devices(self):
        self.store.save_devices(
            {
                "devices": [device.to_dict() for device in self._devices.values()],
                "key_changes": [
                    change.to_dict() for change in self._key_changes.values()
                ],
            }
        )

    def record_peer_device(
        self,
        user_id: str,
        device_id: str,
        keys: dict[str, str],
        display_name: str | None = None,
    ) -> PeerDevice:
        """
        Record a device observation

        The first observation wins. A later observation with different keys
        is kept aside as a DeviceKeyChange and the existing record returned
        unchanged.

        Args:
            keys: ``{"ed25519": ..., "curve25519": ...}``
        """
        signing_key = keys.get("ed25519")
        identity_key = keys.get("curve25519")
        if not signing_key or not identity_key:
            raise ValueError(f"Device {user_id}:{device_id} announced incomplete keys")

        existing = self._devices.get((user_id, device_id))
        if existing:
            if (
                existing.signing_key == signing_key
                and existing.identity_key == identity_key
            ):
                return existing

            change = DeviceKeyChange(
                previous=existing, identity_key=identity_key, signing_key=signing_key
            )
            self._key_changes[(user_id, device_id)] = change
            self._save_devices()
            logger.warning(
                f"[E2EE-Devices] Device {user_id}:{device_id} announced new keys; "
                f"keeping the recorded keys until the change is accepted"
            )
            if self.on_key_change:
                self.on_key_change(change)
            return existing

        device = PeerDevice(
            user_id=user_id,
            device_id=device_id,
            identity_key=identity_key,
            signing_key=signing_key,
            display_name=display_name,
        )
        self._devices[(user_id, device_id)] = device
        self._save_devices()
        logger.debug(f"Recorded device {user_id}:{device_id}")
        return device

    def ingest_device_announcement(self, payload: dict[str, Any]) -> PeerDevice:
        """
        Record a device from a signed keys/query announcement

        Raises:
            SignatureInvalid: the announcement is not self-signed by its key
        """
        user_id = payload.get("user_id", "")
        device_id = payload.get("device_id", "")
        announced = payload.get("keys")
        if not isinstance(announced, dict) or not isinstance(device_id, str):
            announced = {}
        keys = {
            "ed25519": announced.get(f"ed25519:{device_id}", ""),
            "curve25519": announced.get(f"curve25519:{device_id}", ""),
        }
        if not keys["ed25519"] or not self.verify_json(
            payload, user_id, device_id, keys["ed25519"]
        ):
            raise SignatureInvalid(
                f"Device announcement of {user_id}:{device_id} has a bad signature",
                user_id,
                device_id,
            )
        display_name = (payload.get("unsigned") or {}).get("device_display_name")
        return self.record_peer_device(user_id, device_id, keys, display_name)

    def pending_key_changes(self) -> list[DeviceKeyChange]:
        return list(self._key_changes.values())

    def accept_key_change(self, user_id: str, device_id: str) -> PeerDevice:
        """
        Replace a device record with its newly announced keys

        The replacement is a new, unverified record; trust is never carried
        over from the previous keys.
        """
        change = self._key_changes.pop((user_id, device_id), None)
        if not change:
            raise UnknownDeviceError(user_id, device_id)
        device = PeerDevice(
            user_id=user_id,
            device_id=device_id,
            identity_key=change.identity_key,
            signing_key=change.signing_key,
            display_name=change.previous.display_name,
        )
        self._devices[(user_id, device_id)] = device
        self._save_devices()
        logger.info(f"Accepted key change for {user_id}:{device_id}")
        return device

    def get_device(self, user_id: str, device_id: str) -> PeerDevice | None:
        return self._devices.get((user_id, device_id))

    def get_user_devices(self, user_id: str) -> list[PeerDevice]:
        return [
            device for (uid, _), device in self._devices.items() if uid == user_id
        ]

    def set_verification(
        self, user_id: str, device_id: str, status: VerificationStatus | str
    ) -> PeerDevice:
        device = self._devices.get((user_id, device_id))
        if not device:
            raise UnknownDeviceError(user_id, device_id)
        device.verification = VerificationStatus(status)
        self._save_devices()
        logger.info(f"Device {user_id}:{device_id} marked {device.verification.value}")
        return device

    def flag_device(self, user_id: str, device_id: str, reason: str) -> None:
        """Remember that a device produced an integrity failure"""
        device = self._devices.get((user_id, device_id))
        logger.warning(f"[E2EE-Devices] Flagging {user_id}:{device_id}: {reason}")
        if device:
            device.flagged_reason = reason
            self._save_devices()

    def mark_known(self, devices: Iterable[PeerDevice]) -> None:
        """Mark devices as shown to the user"""
        changed = False
        for device in devices:
            stored = self._devices.get((device.user_id, device.device_id))
            if stored and not stored.known:
                stored.known = True
                changed = True
        if changed:
            self._save_devices()

    def is_trusted(
        self, user_id: str, device_id: str, blacklist_unverified: bool = False
    ) -> bool:
        """
        Trust decision for a device

        Blacklisted devices are never trusted. Unverified devices are trusted
        only while the blacklist-unverified policy is off.
        """
        device = self._devices.get((user_id, device_id))
        if device is None or device.is_blacklisted:
            return False
        if device.is_verified:
            return True
        return not blacklist_unverified
