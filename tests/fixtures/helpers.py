"""Test helpers: an in-memory homeserver and engine builders.

The fake transport implements the collaborator interface of
``MatrixHTTPClient`` so engines and clients can talk to each other without a
network.
"""

import itertools
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from mxcrypt.client.event_types import (
    SOURCE_TIMELINE,
    SOURCE_TO_DEVICE,
    LoginResponse,
    RawEvent,
)
from mxcrypt.constants import EVENT_ROOM_ENCRYPTED
from mxcrypt.e2ee.crypto_store import CryptoStore
from mxcrypt.e2ee.decryption import DecryptionPipeline
from mxcrypt.e2ee.device_store import DeviceIdentityStore
from mxcrypt.e2ee.encryption_gate import EncryptionGate
from mxcrypt.e2ee.group_sessions import EncryptedMessage, GroupSessionManager
from mxcrypt.e2ee.olm_machine import OlmMachine
from mxcrypt.errors import AuthFailure, MatrixAPIError

ROOM_ID = "!room:example.org"
ALICE = "@alice:example.org"
BOB = "@bob:example.org"


@dataclass
class ToDeviceMessage:
    sender: str
    event_type: str
    user_id: str
    device_id: str
    content: dict[str, Any]


@dataclass
class FakeHomeserver:
    """Shared server state seen by every FakeTransport"""

    passwords: dict[str, str] = field(default_factory=dict)
    room_state: dict[tuple[str, str, str], dict] = field(default_factory=dict)
    members: dict[str, list[str]] = field(default_factory=dict)
    device_keys: dict[str, dict[str, dict]] = field(default_factory=dict)
    # (user_id, device_id) -> key_id -> signed one-time key
    one_time_keys: dict[tuple[str, str], dict[str, dict]] = field(default_factory=dict)
    key_claims: list[dict] = field(default_factory=list)
    master_keys: dict[str, dict] = field(default_factory=dict)
    to_device: list[ToDeviceMessage] = field(default_factory=list)
    sent_events: list[tuple[str, str, dict]] = field(default_factory=list)
    set_state_calls: list[tuple[str, str, dict]] = field(default_factory=list)
    signing_key_uploads: list[tuple[dict, str]] = field(default_factory=list)
    signature_uploads: list[tuple[dict, str | None]] = field(default_factory=list)
    invites: list[tuple[str, str]] = field(default_factory=list)
    issued_tokens: list[str] = field(default_factory=list)
    stream: list = field(default_factory=list)

    def __post_init__(self):
        self._counter = itertools.count(1)

    def next_id(self) -> int:
        return next(self._counter)

    def inbox(self, user_id: str, device_id: str) -> list[ToDeviceMessage]:
        """Pop the to-device messages addressed to one device"""
        mine = [
            m
            for m in self.to_device
            if m.user_id == user_id and m.device_id == device_id
        ]
        self.to_device = [m for m in self.to_device if m not in mine]
        return mine


class FakeTransport:
    """One account's view of the FakeHomeserver"""

    def __init__(self, server: FakeHomeserver, user_id: str, device_id: str):
        self.server = server
        self.user_id = user_id
        self.device_id = device_id
        self.access_token: str | None = None
        self.next_batch: str | None = None
        self.closed = False
        self.joined_rooms: list[str] = []

    # ---- auth ----

    async def login_password(
        self,
        username: str,
        password: str,
        device_name: str = "mxcrypt",
        device_id: str | None = None,
        store: bool = True,
    ) -> LoginResponse:
        if self.server.passwords.get(username) != password:
            raise AuthFailure(f"Password login failed for {username}")
        token = f"token_{self.server.next_id()}"
        self.server.issued_tokens.append(token)
        if store:
            self.access_token = token
        return LoginResponse(
            access_token=token,
            user_id=self.user_id,
            device_id=device_id or self.device_id,
        )

    async def close(self):
        self.closed = True

    # ---- rooms ----

    async def get_room_state(
        self, room_id: str, event_type: str, state_key: str = ""
    ) -> dict | None:
        return self.server.room_state.get((room_id, event_type, state_key))

    async def set_room_state(
        self, room_id: str, event_type: str, content: dict, state_key: str = ""
    ) -> str:
        self.server.set_state_calls.append((room_id, event_type, content))
        self.server.room_state[(room_id, event_type, state_key)] = content
        return f"$state{self.server.next_id()}"

    async def send_raw_event(self, room_id: str, event_type: str, content: dict) -> str:
        self.server.sent_events.append((room_id, event_type, content))
        return f"$event{self.server.next_id()}"

    async def get_joined_members(self, room_id: str) -> list[str]:
        return list(self.server.members.get(room_id, []))

    async def get_joined_rooms(self) -> list[str]:
        return list(self.joined_rooms)

    async def join_room(self, room_id: str) -> dict:
        self.joined_rooms.append(room_id)
        self.server.members.setdefault(room_id, []).append(self.user_id)
        return {"room_id": room_id}

    async def leave_room(self, room_id: str) -> dict:
        if room_id in self.joined_rooms:
            self.joined_rooms.remove(room_id)
        return {}

    async def invite_user(self, room_id: str, user_id: str) -> dict:
        self.server.invites.append((room_id, user_id))
        return {}

    async def create_room(self, config: dict) -> str:
        room_id = f"!new{self.server.next_id()}:example.org"
        for state in config.get("initial_state", []):
            self.server.room_state[
                (room_id, state["type"], state.get("state_key", ""))
            ] = state["content"]
        self.server.members[room_id] = [self.user_id]
        self.joined_rooms.append(room_id)
        return room_id

    async def stream_live_events(
        self, since=None, timeout=30000, initial_sync_limit=None
    ):
        for event in self.server.stream:
            yield event

    # ---- keys ----

    async def upload_keys(
        self, device_keys: dict | None = None, one_time_keys: dict | None = None
    ) -> dict:
        if device_keys:
            self.server.device_keys.setdefault(device_keys["user_id"], {})[
                device_keys["device_id"]
            ] = device_keys
        stock = self.server.one_time_keys.setdefault(
            (self.user_id, self.device_id), {}
        )
        stock.update(one_time_keys or {})
        return {"one_time_key_counts": {"signed_curve25519": len(stock)}}

    async def claim_keys(self, one_time_keys: dict, timeout: int = 10000) -> dict:
        self.server.key_claims.append(one_time_keys)
        claimed: dict[str, dict] = {}
        for user_id, devices in one_time_keys.items():
            for device_id in devices:
                stock = self.server.one_time_keys.get((user_id, device_id))
                if stock:
                    key_id = next(iter(stock))
                    claimed.setdefault(user_id, {})[device_id] = {
                        key_id: stock.pop(key_id)
                    }
        return {"one_time_keys": claimed, "failures": {}}

    async def query_keys(self, device_keys: dict, timeout: int = 10000) -> dict:
        return {
            "device_keys": {
                user_id: dict(self.server.device_keys.get(user_id, {}))
                for user_id in device_keys
            },
            "master_keys": {
                user_id: self.server.master_keys[user_id]
                for user_id in device_keys
                if user_id in self.server.master_keys
            },
        }

    async def upload_signing_keys(self, signing_keys: dict, access_token: str) -> dict:
        if access_token not in self.server.issued_tokens:
            raise MatrixAPIError("M_UNKNOWN_TOKEN", "Unknown token", 401)
        self.server.signing_key_uploads.append((signing_keys, access_token))
        self.server.master_keys[self.user_id] = signing_keys["master_key"]
        return {}

    async def upload_signatures(
        self, signatures: dict, access_token: str | None = None
    ) -> dict:
        self.server.signature_uploads.append((signatures, access_token))
        return {}

    async def send_to_device(
        self, event_type: str, messages: dict, txn_id: str | None = None
    ) -> dict:
        for user_id, devices in messages.items():
            for device_id, content in devices.items():
                self.server.to_device.append(
                    ToDeviceMessage(
                        self.user_id, event_type, user_id, device_id, content
                    )
                )
        return {}


@dataclass
class Engine:
    """The E2EE components of one device, wired like MatrixE2EEClient does"""

    user_id: str
    device_id: str
    transport: FakeTransport
    store: CryptoStore
    olm: OlmMachine
    devices: DeviceIdentityStore
    sessions: GroupSessionManager
    gate: EncryptionGate
    pipeline: DecryptionPipeline

    def peer(self):
        """This device as another engine's PeerDevice announcement"""
        return self.devices.device_keys_payload()


def make_engine(
    store_path: Path,
    server: FakeHomeserver,
    user_id: str,
    device_id: str,
    retry_attempts: int = 3,
    retry_base_delay: float = 0.01,
    one_time_keys: int = 10,
) -> Engine:
    transport = FakeTransport(server, user_id, device_id)
    store = CryptoStore(store_path, user_id, device_id)
    olm = OlmMachine(store)
    devices = DeviceIdentityStore(store, olm)
    devices.get_or_create_identity()
    publish_one_time_keys(server, devices, one_time_keys)
    sessions = GroupSessionManager(olm, devices, store, transport)
    gate = EncryptionGate(transport, devices)
    pipeline = DecryptionPipeline(
        sessions,
        devices,
        retry_attempts=retry_attempts,
        retry_base_delay=retry_base_delay,
        retry_max_delay=0.05,
    )
    return Engine(
        user_id, device_id, transport, store, olm, devices, sessions, gate, pipeline
    )


def publish_one_time_keys(
    server: FakeHomeserver, devices: DeviceIdentityStore, count: int
):
    """Put ``count`` signed one-time keys of a device on the server"""
    if count <= 0:
        return
    server.one_time_keys.setdefault((devices.user_id, devices.device_id), {}).update(
        devices.one_time_keys_payload(count)
    )
    devices.mark_one_time_keys_published()


def introduce(*engines: Engine):
    """Let every engine record every other engine's device"""
    for engine in engines:
        for other in engines:
            if other is not engine:
                engine.devices.ingest_device_announcement(other.peer())


def deliver_room_keys(server: FakeHomeserver, engine: Engine) -> int:
    """Hand every pending Olm-wrapped room key for ``engine`` to its manager"""
    messages = server.inbox(engine.user_id, engine.device_id)
    for message in messages:
        assert message.event_type == EVENT_ROOM_ENCRYPTED
        engine.sessions.receive_room_key(message.sender, message.content)
    return len(messages)


def room_key_event(message: ToDeviceMessage) -> RawEvent:
    return RawEvent(
        event_type=message.event_type,
        sender=message.sender,
        content=message.content,
        source=SOURCE_TO_DEVICE,
    )


def encrypted_event(
    sender: str,
    message: EncryptedMessage,
    room_id: str = ROOM_ID,
    event_id: str | None = None,
) -> RawEvent:
    return RawEvent(
        event_type=EVENT_ROOM_ENCRYPTED,
        sender=sender,
        content=dict(message.content),
        room_id=room_id,
        event_id=event_id or f"$enc{message.session_id[:4]}{message.message_index}",
        origin_server_ts=int(time.time() * 1000),
        source=SOURCE_TIMELINE,
    )
