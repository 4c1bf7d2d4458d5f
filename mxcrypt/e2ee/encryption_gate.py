"""
Encryption Gate - per-room encryption policy

Decides whether a room needs encryption, with which algorithm, and which
recipient devices a message may be encrypted for. Once a room is known to be
encrypted it stays encrypted for the lifetime of the client.
"""

import asyncio
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from ..constants import (
    DEFAULT_ROTATION_PERIOD_MS,
    DEFAULT_ROTATION_PERIOD_MSGS,
    EVENT_ROOM_ENCRYPTION,
    MEGOLM_ALGORITHM,
)
from ..errors import PolicyViolation
from ..log import get_logger
from .device_store import DeviceIdentityStore, PeerDevice

logger = get_logger("e2ee.gate")


class RoomStateTransport(Protocol):
    async def get_room_state(
        self, room_id: str, event_type: str, state_key: str = ""
    ) -> dict[str, Any] | None: ...

    async def set_room_state(
        self,
        room_id: str,
        event_type: str,
        content: dict[str, Any],
        state_key: str = "",
    ) -> str: ...


@dataclass(frozen=True)
class MessagePolicy:
    block_on_unverified: bool = False
    error_on_unknown: bool = False


@dataclass(frozen=True)
class RoomEncryptionPolicy:
    room_id: str
    algorithm: str
    enabled_since: int
    rotation_period_ms: int = DEFAULT_ROTATION_PERIOD_MS
    rotation_period_msgs: int = DEFAULT_ROTATION_PERIOD_MSGS

    @classmethod
    def from_state(
        cls, room_id: str, content: dict[str, Any]
    ) -> "RoomEncryptionPolicy":
        return cls(
            room_id=room_id,
            algorithm=content["algorithm"],
            enabled_since=int(time.time() * 1000),
            rotation_period_ms=content.get(
                "rotation_period_ms", DEFAULT_ROTATION_PERIOD_MS
            ),
            rotation_period_msgs=content.get(
                "rotation_period_msgs", DEFAULT_ROTATION_PERIOD_MSGS
            ),
        )

    @property
    def is_supported(self) -> bool:
        return self.algorithm == MEGOLM_ALGORITHM


class EncryptionGate:
    """Room encryption state plus the unverified/unknown device flags"""

    def __init__(
        self,
        transport: RoomStateTransport,
        devices: DeviceIdentityStore,
        block_on_unverified: bool = False,
        error_on_unknown: bool = False,
    ):
        """
        Args:
            transport: Room state reads and writes (the HTTP client)
            devices: Trust table consulted by ``check_recipients``
            block_on_unverified: Global default; unverified devices block sends
            error_on_unknown: Global default; devices never shown to the user
                raise instead of being included silently
        """
        self.transport = transport
        self.devices = devices
        self._global_policy = MessagePolicy(block_on_unverified, error_on_unknown)
        self._room_overrides: dict[str, dict[str, bool]] = {}
        self._policies: dict[str, RoomEncryptionPolicy] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        return lock

    # ========== Room encryption ==========

    async def ensure_room_encrypted(self, room_id: str) -> RoomEncryptionPolicy:
        """
        Make sure the room is encrypted and return its policy

        Adopts an algorithm already declared in the room state. Otherwise
        sends the ``m.room.encryption`` state change, which needs enough power
        in the room. Idempotent: later calls return the cached policy without
        touching the server.
        """
        policy = self._policies.get(room_id)
        if policy:
            return policy

        async with self._lock(room_id):
            policy = self._policies.get(room_id)
            if policy:
                return policy

            content = await self.transport.get_room_state(
                room_id, EVENT_ROOM_ENCRYPTION
            )
            if content and content.get("algorithm"):
                policy = RoomEncryptionPolicy.from_state(room_id, content)
                logger.info(f"Room {room_id} already encrypted with {policy.algorithm}")
            else:
                content = {"algorithm": MEGOLM_ALGORITHM}
                await self.transport.set_room_state(
                    room_id, EVENT_ROOM_ENCRYPTION, content
                )
                policy = RoomEncryptionPolicy.from_state(room_id, content)
                logger.info(f"Enabled encryption in room {room_id}")

            self._policies[room_id] = policy
            return policy

    def observe_state_event(
        self, room_id: str, content: dict[str, Any]
    ) -> RoomEncryptionPolicy | None:
        """Adopt encryption announced by an ``m.room.encryption`` state event"""
        existing = self._policies.get(room_id)
        algorithm = (content or {}).get("algorithm")
        if existing:
            if algorithm != existing.algorithm:
                logger.warning(
                    f"[E2EE-Gate] Ignoring change of {room_id} encryption from "
                    f"{existing.algorithm} to {algorithm}"
                )
            return existing
        if not algorithm:
            return None
        policy = RoomEncryptionPolicy.from_state(room_id, content)
        self._policies[room_id] = policy
        logger.info(f"Room {room_id} announced encryption {algorithm}")
        return policy

    def is_room_encrypted(self, room_id: str) -> bool:
        return room_id in self._policies

    def get_room_policy(self, room_id: str) -> RoomEncryptionPolicy | None:
        return self._policies.get(room_id)

    # ========== Per-message policy ==========

    def set_global_block_on_unverified(self, value: bool):
        self._global_policy = MessagePolicy(
            bool(value), self._global_policy.error_on_unknown
        )

    def set_global_error_on_unknown(self, value: bool):
        self._global_policy = MessagePolicy(
            self._global_policy.block_on_unverified, bool(value)
        )

    def set_room_block_on_unverified(self, room_id: str, value: bool | None):
        """Per-room override; ``None`` falls back to the global flag"""
        self._set_override(room_id, "block_on_unverified", value)

    def set_room_error_on_unknown(self, room_id: str, value: bool | None):
        self._set_override(room_id, "error_on_unknown", value)

    def _set_override(self, room_id: str, name: str, value: bool | None):
        overrides = self._room_overrides.setdefault(room_id, {})
        if value is None:
            overrides.pop(name, None)
        else:
            overrides[name] = bool(value)

    def decide_per_message_policy(self, room_id: str) -> MessagePolicy:
        overrides = self._room_overrides.get(room_id, {})
        return MessagePolicy(
            block_on_unverified=overrides.get(
                "block_on_unverified", self._global_policy.block_on_unverified
            ),
            error_on_unknown=overrides.get(
                "error_on_unknown", self._global_policy.error_on_unknown
            ),
        )

    def check_recipients(
        self, room_id: str, devices: Iterable[PeerDevice]
    ) -> list[PeerDevice]:
        """
        Apply the room's policy to candidate recipient devices

        Blacklisted devices are always left out.

        Returns:
            Devices the room key may be shared with

        Raises:
            PolicyViolation: unverified devices while blocking on unverified,
                or unknown devices while erroring on unknown
        """
        policy = self.decide_per_message_policy(room_id)
        allowed: list[PeerDevice] = []
        unverified: list[PeerDevice] = []
        unknown: list[PeerDevice] = []

        for device in devices:
            if device.is_blacklisted:
                logger.debug(
                    f"Excluding blacklisted device {device.user_id}:{device.device_id}"
                )
                continue
            if not self.devices.is_trusted(
                device.user_id,
                device.device_id,
                blacklist_unverified=policy.block_on_unverified,
            ):
                unverified.append(device)
                continue
            if policy.error_on_unknown and not device.known:
                unknown.append(device)
                continue
            allowed.append(device)

        if unverified:
            raise PolicyViolation(
                f"{len(unverified)} unverified device(s) in {room_id}: "
                + ", ".join(f"{d.user_id}:{d.device_id}" for d in unverified),
                unverified,
            )
        if unknown:
            raise PolicyViolation(
                f"{len(unknown)} unknown device(s) in {room_id}: "
                + ", ".join(f"{d.user_id}:{d.device_id}" for d in unknown),
                unknown,
            )
        return allowed
