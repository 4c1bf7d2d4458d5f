"""
Group Session Manager

Creates, rotates and shares the Megolm sessions used to encrypt room
messages, and holds the inbound sessions received from other devices.

Room keys travel to each recipient device as ``m.room_key`` payloads inside
to-device ``m.room.encrypted`` Olm messages. Devices without an Olm session
get one from a claimed one-time key first.

Locking:
- one ``asyncio.Lock`` per room serializes rotation checks and outbound
  ratchet steps
- one share lock per room serializes key sharing, so concurrent senders
  never share the same key twice
- one lock per ``(room_id, sender_device)`` serializes inbound ratchet
  advancement
Network I/O is never awaited while a room lock or an inbound lock is held.
"""

import asyncio
import json
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from vodozemac import GroupSession, InboundGroupSession

from ..constants import (
    DEFAULT_ROTATION_PERIOD_MS,
    DEFAULT_ROTATION_PERIOD_MSGS,
    EVENT_ROOM_ENCRYPTED,
    EVENT_ROOM_KEY,
    MEGOLM_ALGORITHM,
    SIGNED_CURVE25519,
)
from ..errors import (
    CiphertextInvalid,
    PolicyViolation,
    SignatureInvalid,
    StaleSessionError,
)
from ..log import get_logger
from .crypto_store import CryptoStore
from .device_store import DeviceIdentityStore, PeerDevice, ToDevicePayload
from .olm_machine import OlmMachine

logger = get_logger("e2ee.sessions")

DeviceKey = tuple[str, str]


class ToDeviceTransport(Protocol):
    async def send_to_device(
        self,
        event_type: str,
        messages: dict[str, dict[str, Any]],
        txn_id: str | None = None,
    ) -> dict[str, Any]: ...

    async def claim_keys(
        self, one_time_keys: dict[str, dict[str, str]], timeout: int = 10000
    ) -> dict[str, Any]: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


def _device_keys(devices: Iterable[PeerDevice]) -> frozenset[DeviceKey]:
    return frozenset((d.user_id, d.device_id) for d in devices)


@dataclass
class OutboundGroupSession:
    """Our sending session for one room"""

    room_id: str
    session: GroupSession
    session_id: str
    recipients: frozenset[DeviceKey] = frozenset()
    shared_with: set[DeviceKey] = field(default_factory=set)
    # Recipients with no claimable one-time key; retried on every share
    withheld: set[DeviceKey] = field(default_factory=set)
    created_at: int = field(default_factory=_now_ms)
    message_count: int = 0
    retired: bool = False
    rotation_period_ms: int = DEFAULT_ROTATION_PERIOD_MS
    rotation_period_msgs: int = DEFAULT_ROTATION_PERIOD_MSGS

    def expired(self, now_ms: int | None = None) -> bool:
        """Message or age threshold crossed"""
        if self.message_count >= self.rotation_period_msgs:
            return True
        now_ms = _now_ms() if now_ms is None else now_ms
        return now_ms - self.created_at >= self.rotation_period_ms

    def to_dict(self, olm: OlmMachine) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "session_id": self.session_id,
            "pickle": olm.pickle_outbound(self.session),
            "recipients": sorted(list(k) for k in self.recipients),
            "shared_with": sorted(list(k) for k in self.shared_with),
            "withheld": sorted(list(k) for k in self.withheld),
            "created_at": self.created_at,
            "message_count": self.message_count,
            "retired": self.retired,
            "rotation_period_ms": self.rotation_period_ms,
            "rotation_period_msgs": self.rotation_period_msgs,
        }

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], olm: OlmMachine
    ) -> "OutboundGroupSession":
        return cls(
            room_id=data["room_id"],
            session=olm.unpickle_outbound(data["pickle"]),
            session_id=data["session_id"],
            recipients=frozenset(tuple(k) for k in data.get("recipients", [])),
            shared_with={tuple(k) for k in data.get("shared_with", [])},
            withheld={tuple(k) for k in data.get("withheld", [])},
            created_at=data.get("created_at", 0),
            message_count=data.get("message_count", 0),
            retired=data.get("retired", False),
            rotation_period_ms=data.get(
                "rotation_period_ms", DEFAULT_ROTATION_PERIOD_MS
            ),
            rotation_period_msgs=data.get(
                "rotation_period_msgs", DEFAULT_ROTATION_PERIOD_MSGS
            ),
        )


@dataclass
class InboundSession:
    """A receiving session, owned by exactly one sender device"""

    room_id: str
    session_id: str
    sender_user: str
    sender_device: str
    sender_signing_key: str
    sender_key: str
    session: InboundGroupSession
    # Lowest message index still accepted; only ever increases
    next_index: int = 0

    @property
    def owner(self) -> DeviceKey:
        return (self.sender_user, self.sender_device)

    def to_dict(self, olm: OlmMachine) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "session_id": self.session_id,
            "sender_user": self.sender_user,
            "sender_device": self.sender_device,
            "sender_signing_key": self.sender_signing_key,
            "sender_key": self.sender_key,
            "pickle": olm.pickle_inbound(self.session),
            "next_index": self.next_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], olm: OlmMachine):
        return cls(
            room_id=data["room_id"],
            session_id=data["session_id"],
            sender_user=data["sender_user"],
            sender_device=data["sender_device"],
            sender_signing_key=data["sender_signing_key"],
            sender_key=data["sender_key"],
            session=olm.unpickle_inbound(data["pickle"]),
            next_index=data.get("next_index", 0),
        )


@dataclass
class EncryptedMessage:
    """Result of one outbound encryption"""

    content: dict[str, Any]
    session_id: str
    message_index: int


@dataclass
class _SessionWaiter:
    event: asyncio.Event = field(default_factory=asyncio.Event)
    count: int = 0


class GroupSessionManager:
    """Outbound and inbound Megolm sessions of one account"""

    def __init__(
        self,
        olm: OlmMachine,
        devices: DeviceIdentityStore,
        store: CryptoStore,
        transport: ToDeviceTransport,
    ):
        """
        Args:
            olm: vodozemac wrapper
            devices: Identity and trust table; owns the Olm sessions used to
                share keys
            store: Persistence for both session tables
            transport: Anything with ``send_to_device`` and ``claim_keys``
                (the HTTP client)
        """
        self.olm = olm
        self.devices = devices
        self.store = store
        self.transport = transport

        self._outbound: dict[str, OutboundGroupSession] = {}
        self._retired: dict[str, list[OutboundGroupSession]] = {}
        self._inbound: dict[tuple[str, str], InboundSession] = {}

        self._room_locks: dict[str, asyncio.Lock] = {}
        self._share_locks: dict[str, asyncio.Lock] = {}
        self._inbound_locks: dict[tuple[str, DeviceKey], asyncio.Lock] = {}
        self._session_waiters: dict[tuple[str, str], _SessionWaiter] = {}

        self._load()

    # ========== Locks ==========

    def room_lock(self, room_id: str) -> asyncio.Lock:
        lock = self._room_locks.get(room_id)
        if lock is None:
            lock = self._room_locks[room_id] = asyncio.Lock()
        return lock

    def _share_lock(self, room_id: str) -> asyncio.Lock:
        lock = self._share_locks.get(room_id)
        if lock is None:
            lock = self._share_locks[room_id] = asyncio.Lock()
        return lock

    def inbound_lock(self, room_id: str, sender: DeviceKey) -> asyncio.Lock:
        key = (room_id, sender)
        lock = self._inbound_locks.get(key)
        if lock is None:
            lock = self._inbound_locks[key] = asyncio.Lock()
        return lock

    # ========== Persistence ==========

    def _load(self):
        for data in self.store.load_outbound_sessions():
            session = OutboundGroupSession.from_dict(data, self.olm)
            self._outbound[session.room_id] = session
        for data in self.store.load_retired_sessions():
            session = OutboundGroupSession.from_dict(data, self.olm)
            self._retired.setdefault(session.room_id, []).append(session)

        for data in self.store.load_inbound_sessions():
            record = InboundSession.from_dict(data, self.olm)
            self._inbound[(record.room_id, record.session_id)] = record

        if self._outbound or self._inbound:
            logger.info(
                f"Loaded {len(self._outbound)} outbound and "
                f"{len(self._inbound)} inbound group sessions"
            )

    def save_outbound(self, session: OutboundGroupSession):
        """Persist one outbound session record"""
        self.store.save_outbound_session(session.room_id, session.to_dict(self.olm))

    def save_inbound(self, record: InboundSession):
        """Persist one inbound session record"""
        self.store.save_inbound_session(
            record.room_id, record.session_id, record.to_dict(self.olm)
        )

    # ========== Outbound ==========

    def get_outbound_session(self, room_id: str) -> OutboundGroupSession | None:
        return self._outbound.get(room_id)

    def get_retired_sessions(self, room_id: str) -> list[OutboundGroupSession]:
        return list(self._retired.get(room_id, []))

    def has_session_history(self, room_id: str) -> bool:
        """Whether we ever encrypted for this room"""
        return room_id in self._outbound or bool(self._retired.get(room_id))

    def _retire(self, room_id: str, reason: str):
        session = self._outbound.pop(room_id, None)
        if session is None:
            return
        session.retired = True
        self._retired.setdefault(room_id, []).append(session)
        # A retired record never changes again, so it is written exactly once
        self.store.save_retired_session(session.session_id, session.to_dict(self.olm))
        self.store.delete_outbound_session(room_id)
        logger.info(
            f"[E2EE-Sessions] Rotating session {session.session_id[:8]}... "
            f"in {room_id}: {reason}"
        )

    def _rotate_if_needed_locked(
        self, room_id: str, recipients: frozenset[DeviceKey]
    ) -> bool:
        session = self._outbound.get(room_id)
        if session is None:
            return False

        removed = session.recipients - recipients
        if removed:
            # A removed device must not read anything sent after it left
            self._retire(room_id, f"{len(removed)} recipient device(s) removed")
        elif session.message_count >= session.rotation_period_msgs:
            self._retire(room_id, "message threshold reached")
        elif session.expired():
            self._retire(room_id, "age threshold reached")
        else:
            return False
        return True

    async def rotate_if_needed(
        self, room_id: str, recipients: Iterable[PeerDevice]
    ) -> bool:
        """
        Retire the room's session when it can no longer be used

        Added recipients never force a rotation; they receive the current key
        at its current ratchet position on the next share.

        Returns:
            True if the session was rotated
        """
        async with self.room_lock(room_id):
            return self._rotate_if_needed_locked(room_id, _device_keys(recipients))

    def _create_outbound_locked(
        self,
        room_id: str,
        rotation_period_ms: int | None,
        rotation_period_msgs: int | None,
    ) -> OutboundGroupSession:
        group_session = self.olm.create_outbound_group_session()
        session = OutboundGroupSession(
            room_id=room_id,
            session=group_session,
            session_id=self.olm.session_id(group_session),
            rotation_period_ms=rotation_period_ms or DEFAULT_ROTATION_PERIOD_MS,
            rotation_period_msgs=rotation_period_msgs or DEFAULT_ROTATION_PERIOD_MSGS,
        )
        self._outbound[room_id] = session

        # Keep an inbound copy so our own messages decrypt when synced back
        identity = self.devices.get_or_create_identity()
        record = InboundSession(
            room_id=room_id,
            session_id=session.session_id,
            sender_user=identity.user_id,
            sender_device=identity.device_id,
            sender_signing_key=identity.signing_key,
            sender_key=identity.identity_key,
            session=self.olm.create_inbound_group_session(
                self.olm.export_session_key(group_session)
            ),
        )
        self._add_inbound(record)
        self.save_inbound(record)
        logger.info(
            f"Created outbound group session {session.session_id[:8]}... "
            f"for {room_id}"
        )
        return session

    async def get_or_create_outbound_session(
        self,
        room_id: str,
        recipients: Iterable[PeerDevice],
        rotation_period_ms: int | None = None,
        rotation_period_msgs: int | None = None,
    ) -> OutboundGroupSession:
        """
        Return a session that every recipient device holds the key for

        Rotates first when needed, then shares the key with recipients that
        have not received it yet. Sharing happens after the room lock is
        released; recipients without a claimable one-time key end up in
        ``withheld`` and are retried on the next call.

        Args:
            recipients: Devices allowed to read the room (already filtered by
                the encryption policy)
        """
        recipients = list(recipients)
        recipient_keys = _device_keys(recipients)

        async with self._share_lock(room_id):
            async with self.room_lock(room_id):
                self._rotate_if_needed_locked(room_id, recipient_keys)
                session = self._outbound.get(room_id)
                if session is None:
                    session = self._create_outbound_locked(
                        room_id, rotation_period_ms, rotation_period_msgs
                    )
                session.recipients = recipient_keys
                session.withheld &= recipient_keys
                pending = [
                    d
                    for d in recipients
                    if (d.user_id, d.device_id) not in session.shared_with
                ]
                session_key = self.olm.export_session_key(session.session)
                self.save_outbound(session)

            if pending:
                await self._share_session_key(session, session_key, pending)
        return session

    def _room_key_payload(
        self, session: OutboundGroupSession, session_key: str
    ) -> dict[str, Any]:
        identity = self.devices.get_or_create_identity()
        return self.devices.sign_json(
            {
                "algorithm": MEGOLM_ALGORITHM,
                "room_id": session.room_id,
                "session_id": session.session_id,
                "session_key": session_key,
                "sender_device": identity.device_id,
                "sender_key": identity.identity_key,
            }
        )

    async def _establish_olm_sessions(self, devices: list[PeerDevice]):
        """Claim one-time keys and start Olm sessions with ``devices``"""
        query: dict[str, dict[str, str]] = {}
        for device in devices:
            query.setdefault(device.user_id, {})[device.device_id] = SIGNED_CURVE25519
        response = await self.transport.claim_keys(query)

        claimed = response.get("one_time_keys") or {}
        for device in devices:
            user_keys = claimed.get(device.user_id)
            keys = (
                user_keys.get(device.device_id)
                if isinstance(user_keys, dict)
                else None
            )
            if not isinstance(keys, dict):
                continue
            for key_id, one_time_key in keys.items():
                if not key_id.startswith(f"{SIGNED_CURVE25519}:"):
                    continue
                try:
                    self.devices.create_olm_session(device, one_time_key)
                except SignatureInvalid as e:
                    self.devices.flag_device(
                        device.user_id, device.device_id, "bad one-time key signature"
                    )
                    logger.warning(f"[E2EE-Sessions] {e}")
                except CiphertextInvalid as e:
                    logger.warning(
                        f"[E2EE-Sessions] Unusable one-time key from "
                        f"{device.user_id}:{device.device_id}: {e}"
                    )
                break

    async def _share_session_key(
        self,
        session: OutboundGroupSession,
        session_key: str,
        devices: list[PeerDevice],
    ):
        missing = [d for d in devices if not self.devices.has_olm_session(d)]
        if missing:
            await self._establish_olm_sessions(missing)

        payload = self._room_key_payload(session, session_key)
        messages: dict[str, dict[str, Any]] = {}
        ready: list[PeerDevice] = []
        withheld: list[PeerDevice] = []
        for device in devices:
            if not self.devices.has_olm_session(device):
                withheld.append(device)
                continue
            messages.setdefault(device.user_id, {})[device.device_id] = (
                self.devices.encrypt_for_device(device, EVENT_ROOM_KEY, payload)
            )
            ready.append(device)

        if messages:
            await self.transport.send_to_device(EVENT_ROOM_ENCRYPTED, messages)

        shared = _device_keys(ready)
        session.shared_with.update(shared)
        session.withheld.difference_update(shared)
        session.withheld.update(_device_keys(withheld))
        self.save_outbound(session)
        if ready:
            logger.info(
                f"Shared session {session.session_id[:8]}... with "
                f"{len(ready)} device(s) in {session.room_id}"
            )
        if withheld:
            logger.warning(
                f"[E2EE-Sessions] No one-time key for "
                f"{', '.join(f'{d.user_id}:{d.device_id}' for d in withheld)}; "
                f"session {session.session_id[:8]}... withheld from them"
            )

    async def encrypt(
        self,
        session: OutboundGroupSession,
        event_type: str,
        content: dict[str, Any],
        recipients: Iterable[PeerDevice] | None = None,
    ) -> EncryptedMessage:
        """
        Encrypt one room event, advancing the ratchet by exactly one step

        Raises:
            StaleSessionError: the session was retired or exhausted, or does
                not match ``recipients``; fetch a fresh session first
        """
        room_id = session.room_id
        async with self.room_lock(room_id):
            if session.retired or self._outbound.get(room_id) is not session:
                raise StaleSessionError(
                    f"Session {session.session_id[:8]}... is no longer current"
                )
            if session.expired():
                raise StaleSessionError(
                    f"Session {session.session_id[:8]}... has reached its "
                    f"rotation threshold"
                )
            if recipients is not None:
                current = _device_keys(recipients)
                handled = session.shared_with | session.withheld
                if current != session.recipients or not current <= handled:
                    raise StaleSessionError(
                        f"Session {session.session_id[:8]}... was not shared "
                        f"with the current members of {room_id}",
                        sorted(current ^ session.recipients),
                    )

            payload = json.dumps(
                {"type": event_type, "content": content, "room_id": room_id},
                ensure_ascii=False,
            )
            message_index = session.message_count
            ciphertext = self.olm.encrypt(session.session, payload)
            session.message_count += 1
            self.save_outbound(session)

        identity = self.devices.get_or_create_identity()
        return EncryptedMessage(
            content={
                "algorithm": MEGOLM_ALGORITHM,
                "sender_key": identity.identity_key,
                "ciphertext": ciphertext,
                "session_id": session.session_id,
                "device_id": identity.device_id,
            },
            session_id=session.session_id,
            message_index=message_index,
        )

    def forget_room(self, room_id: str):
        """Retire the room's outbound session (the room was left)"""
        if room_id in self._outbound:
            self._retire(room_id, "room left")

    # ========== Inbound ==========

    def get_inbound_session(
        self, room_id: Any, session_id: Any
    ) -> InboundSession | None:
        if not isinstance(room_id, str) or not isinstance(session_id, str):
            return None
        return self._inbound.get((room_id, session_id))

    def _add_inbound(self, record: InboundSession):
        self._inbound[(record.room_id, record.session_id)] = record
        waiter = self._session_waiters.pop((record.room_id, record.session_id), None)
        if waiter:
            waiter.event.set()

    def ingest_inbound_session_key(
        self,
        sender_device: PeerDevice,
        payload: dict[str, Any],
        authenticated: bool = False,
    ) -> InboundSession:
        """
        Accept a room key shared by ``sender_device``

        A key re-shared for a known session never moves its ratchet backwards.

        Args:
            authenticated: The payload arrived inside an Olm message from
                ``sender_device``; an unsigned payload is then accepted.
                Otherwise the payload must carry the device's own signature.

        Raises:
            SignatureInvalid: bad signature, or the session belongs to
                another device
            PolicyViolation: the sender device is blacklisted
            CiphertextInvalid: malformed payload
        """
        user_id, device_id = sender_device.user_id, sender_device.device_id
        if not isinstance(payload, dict):
            raise CiphertextInvalid("Room key payload must be an object")
        if payload.get("algorithm") != MEGOLM_ALGORITHM:
            raise CiphertextInvalid(
                f"Unsupported room key algorithm: {payload.get('algorithm')}"
            )
        room_id = payload.get("room_id")
        session_id = payload.get("session_id")
        session_key = payload.get("session_key")
        if not all(
            isinstance(value, str) and value
            for value in (room_id, session_id, session_key)
        ):
            raise CiphertextInvalid("Room key payload is missing fields")

        claimed_device = payload.get(
            "sender_device", device_id if authenticated else None
        )
        claimed_key = payload.get(
            "sender_key", sender_device.identity_key if authenticated else None
        )
        invalid = (
            claimed_device != device_id or claimed_key != sender_device.identity_key
        )
        if not invalid and ("signatures" in payload or not authenticated):
            invalid = not self.devices.verify_json(
                payload, user_id, device_id, sender_device.signing_key
            )
        if invalid:
            reason = f"invalid room key signature for session {session_id[:8]}..."
            self.devices.flag_device(user_id, device_id, reason)
            raise SignatureInvalid(
                f"Room key from {user_id}:{device_id} failed verification",
                user_id,
                device_id,
            )

        if sender_device.is_blacklisted:
            raise PolicyViolation(
                f"Refusing room key from blacklisted device {user_id}:{device_id}",
                [sender_device],
            )

        existing = self._inbound.get((room_id, session_id))
        if existing:
            if existing.owner != (user_id, device_id):
                self.devices.flag_device(
                    user_id, device_id, f"claimed session {session_id[:8]}..."
                )
                raise SignatureInvalid(
                    f"Session {session_id[:8]}... already belongs to "
                    f"{existing.sender_user}:{existing.sender_device}",
                    user_id,
                    device_id,
                )
            logger.debug(f"Ignoring re-shared key for session {session_id[:8]}...")
            return existing

        session = self.olm.create_inbound_group_session(session_key)
        if self.olm.session_id(session) != session_id:
            raise CiphertextInvalid(
                f"Room key does not match session id {session_id[:8]}..."
            )

        record = InboundSession(
            room_id=room_id,
            session_id=session_id,
            sender_user=user_id,
            sender_device=device_id,
            sender_signing_key=sender_device.signing_key,
            sender_key=sender_device.identity_key,
            session=session,
        )
        self._add_inbound(record)
        self.save_inbound(record)
        logger.info(
            f"Received session {session_id[:8]}... for {room_id} "
            f"from {user_id}:{device_id}"
        )
        return record

    def accept_room_key(self, payload: ToDevicePayload) -> InboundSession:
        """
        Ingest the room key carried by a decrypted to-device payload

        Raises:
            UnknownDeviceError: the sending device has not been recorded yet
            CiphertextInvalid: the payload is not an ``m.room_key``
        """
        if payload.event_type != EVENT_ROOM_KEY:
            raise CiphertextInvalid(
                f"Expected {EVENT_ROOM_KEY}, got {payload.event_type}"
            )
        device = self.devices.resolve_sender_device(payload)
        return self.ingest_inbound_session_key(
            device, payload.content, authenticated=True
        )

    def receive_room_key(self, sender: str, content: Any) -> InboundSession:
        """Decrypt an Olm to-device event and ingest the room key inside"""
        payload = self.devices.decrypt_to_device(sender, content)
        return self.accept_room_key(payload)

    async def wait_for_session(
        self, room_id: str, session_id: str, timeout: float
    ) -> bool:
        """Wait until the inbound session arrives or ``timeout`` passes"""
        key = (room_id, session_id)
        if key in self._inbound:
            return True
        waiter = self._session_waiters.get(key)
        if waiter is None:
            waiter = self._session_waiters[key] = _SessionWaiter()
        waiter.count += 1
        try:
            await asyncio.wait_for(waiter.event.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return key in self._inbound
        finally:
            waiter.count -= 1
            # Only the last waiter drops the event; others still wait on it
            if waiter.count == 0 and self._session_waiters.get(key) is waiter:
                del self._session_waiters[key]
