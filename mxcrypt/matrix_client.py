"""
Matrix E2EE Client

The context object owning one account's identity, device trust table, group
sessions and event stream. Several instances can live in one process.
"""

import asyncio
import inspect
import json
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from .client import MatrixHTTPClient
from .client.event_types import RawEvent
from .config import ClientConfig
from .constants import (
    DEFAULT_INVITE_POWER_LEVEL,
    DEFAULT_USER_POWER_LEVEL,
    EVENT_POWER_LEVELS,
    EVENT_ROOM_ENCRYPTED,
    EVENT_ROOM_ENCRYPTION,
    EVENT_ROOM_MESSAGE,
    MEGOLM_ALGORITHM,
    EVENT_ROOM_KEY,
    PRIVATE_CHAT_PRESET,
    SIGNED_CURVE25519,
)
from .e2ee.crypto_store import CryptoStore
from .e2ee.cross_signing import SessionBootstrap
from .e2ee.decryption import DecryptionOutcome, DecryptionPipeline, Failed, Plaintext
from .e2ee.device_store import (
    DeviceIdentityStore,
    DeviceKeyChange,
    PeerDevice,
    ToDevicePayload,
    VerificationStatus,
)
from .e2ee.encryption_gate import EncryptionGate
from .e2ee.group_sessions import GroupSessionManager
from .e2ee.olm_machine import OlmMachine
from .errors import (
    BootstrapError,
    E2EEError,
    MatrixClientError,
    PermissionDenied,
    PolicyViolation,
    SignatureInvalid,
    StaleSessionError,
    UnknownDeviceError,
)
from .log import get_logger
from .sync import (
    KIND_DECRYPTED,
    KIND_FAILED,
    KIND_MESSAGE,
    KIND_OUTCOME,
    RoomEventRouter,
)
from .sync.subscription import Subscription

logger = get_logger("client")

# Attempts to obtain a session that matches the room after a concurrent change
MAX_SESSION_ATTEMPTS = 3


class MatrixE2EEClient:
    """
    End-to-end encrypted Matrix client

    Usage::

        client = await MatrixE2EEClient.run(credentials={...})
        client.on_decrypted(room_id, print)
        await client.encrypt_and_send(room_id, "hello")
        await client.stop()
    """

    def __init__(
        self,
        config: ClientConfig,
        http_client: MatrixHTTPClient | None = None,
    ):
        """
        Args:
            config: Client configuration
            http_client: Transport to use; built from ``config`` when omitted
        """
        self.config = config
        self.client = http_client or MatrixHTTPClient(
            config.homeserver,
            retry_attempts=config.network_retry_attempts,
            retry_base_delay=config.network_retry_base_delay,
        )
        self.user_id: str | None = None
        self.device_id: str | None = config.device_id

        self.store: CryptoStore | None = None
        self.olm: OlmMachine | None = None
        self.devices: DeviceIdentityStore | None = None
        self.sessions: GroupSessionManager | None = None
        self.gate: EncryptionGate | None = None
        self.pipeline: DecryptionPipeline | None = None
        self.bootstrap: SessionBootstrap | None = None
        self.router: RoomEventRouter | None = None

        self.bootstrap_failed = False
        self._sync_task: asyncio.Task | None = None
        self._listener_tasks: set[asyncio.Task] = set()

    @classmethod
    async def run(
        cls,
        file_path: str | Path | None = None,
        credentials: dict[str, Any] | None = None,
        sync: bool = True,
    ) -> "MatrixE2EEClient":
        """
        Build a client from a credentials file and/or mapping and start it

        Raises:
            ValueError: neither source given, or required properties missing
            AuthFailure: login failed
        """
        client = cls(ClientConfig.from_sources(file_path, credentials))
        await client.start(sync=sync)
        return client

    # ========== Startup ==========

    async def start(self, sync: bool = True):
        """
        Log in, set up the encryption engine and start the event stream

        Raises:
            AuthFailure: login failed; nothing else is started
        """
        login = await self.client.login_password(
            self.config.username,
            self.config.password,
            device_name=self.config.device_name,
            device_id=self.config.device_id,
        )
        self.user_id = login.user_id
        self.device_id = login.device_id
        logger.info(f"Logged in as {self.user_id} (device {self.device_id})")

        self._setup_engine()

        try:
            response = await self.client.upload_keys(
                device_keys=self.devices.device_keys_payload()
            )
            logger.info("Device keys uploaded")
            await self._replenish_one_time_keys(response)
        except MatrixClientError as e:
            logger.error(f"Uploading device keys failed: {e}")

        try:
            await self.bootstrap.bootstrap(self._reauthenticate)
        except BootstrapError as e:
            # Existing sessions keep working; new rooms cannot be encrypted
            self.bootstrap_failed = True
            logger.error(f"[E2EE-CrossSign] Bootstrap failed: {e}")

        if sync:
            self._sync_task = asyncio.create_task(self.router.sync_forever())
        logger.info(
            f"Matrix E2EE client is running for {self.user_id} on "
            f"{self.config.homeserver}"
        )

    def _setup_engine(self):
        self.store = CryptoStore(
            self.config.store_path,
            self.user_id,
            self.device_id,
            pickle_key=self.config.pickle_key,
        )
        self.olm = OlmMachine(self.store)
        self.devices = DeviceIdentityStore(
            self.store, self.olm, on_key_change=self._on_key_change
        )
        self.devices.get_or_create_identity()
        self.sessions = GroupSessionManager(
            self.olm, self.devices, self.store, self.client
        )
        self.gate = EncryptionGate(
            self.client,
            self.devices,
            block_on_unverified=self.config.blacklist_unverified_devices,
            error_on_unknown=self.config.error_on_unknown_devices,
        )
        self.pipeline = DecryptionPipeline(
            self.sessions,
            self.devices,
            retry_attempts=self.config.decrypt_retry_attempts,
            retry_base_delay=self.config.decrypt_retry_base_delay,
            retry_max_delay=self.config.decrypt_retry_max_delay,
        )
        self.bootstrap = SessionBootstrap(self.client, self.devices, self.store)
        self.router = RoomEventRouter(
            self.client,
            self.user_id,
            self.pipeline,
            self.gate,
            sync_timeout=self.config.sync_timeout,
            initial_sync_limit=self.config.initial_sync_limit,
            auto_join_rooms=self.config.auto_join_rooms,
            sync_store_path=self.store.store_path / "sync_token.json",
            startup_ts=int(time.time() * 1000),
        )
        self.router.on_to_device = self._handle_to_device
        self.router.on_invite = self._auto_join
        self.router.on_leave = self._handle_room_left

    async def _reauthenticate(self) -> str:
        """Fresh access token for step-up operations; never the cached one"""
        login = await self.client.login_password(
            self.config.username,
            self.config.password,
            device_name=self.config.device_name,
            device_id=self.device_id,
            store=False,
        )
        return login.access_token

    def _on_key_change(self, change: DeviceKeyChange):
        previous = change.previous
        logger.warning(
            f"[E2EE-Devices] {previous.user_id}:{previous.device_id} changed its "
            f"keys; call accept_key_change() after verifying the device"
        )

    # ========== Devices ==========

    async def refresh_devices(self, user_ids: Iterable[str]) -> list[PeerDevice]:
        """Query the server for the devices of ``user_ids`` and record them"""
        user_ids = list(dict.fromkeys(user_ids))
        if not user_ids:
            return []
        response = await self.client.query_keys({user_id: [] for user_id in user_ids})
        for user_id, devices in (response.get("device_keys") or {}).items():
            for device_id, payload in devices.items():
                if user_id == self.user_id and device_id == self.device_id:
                    continue
                try:
                    self.devices.ingest_device_announcement(payload)
                except (SignatureInvalid, ValueError) as e:
                    logger.warning(f"[E2EE-Devices] Ignoring device {device_id}: {e}")
        return [
            device
            for user_id in user_ids
            for device in self.devices.get_user_devices(user_id)
        ]

    async def _room_devices(self, room_id: str) -> list[PeerDevice]:
        members = await self.client.get_joined_members(room_id)
        devices = await self.refresh_devices(members)
        return [
            device
            for device in devices
            if (device.user_id, device.device_id) != (self.user_id, self.device_id)
        ]

    def verify_device(self, user_id: str, device_id: str) -> PeerDevice:
        return self.devices.set_verification(
            user_id, device_id, VerificationStatus.VERIFIED
        )

    def blacklist_device(self, user_id: str, device_id: str) -> PeerDevice:
        return self.devices.set_verification(
            user_id, device_id, VerificationStatus.BLACKLISTED
        )

    def mark_devices_known(self, devices: Iterable[PeerDevice]):
        self.devices.mark_known(devices)

    def accept_key_change(self, user_id: str, device_id: str) -> PeerDevice:
        return self.devices.accept_key_change(user_id, device_id)

    def set_global_blacklist_unverified_devices(self, value: bool):
        """When True, unverified devices in a room block encrypted sends"""
        self.gate.set_global_block_on_unverified(value)

    def set_global_error_on_unknown_devices(self, value: bool):
        """When True, devices not yet marked known block encrypted sends"""
        self.gate.set_global_error_on_unknown(value)

    def set_room_blacklist_unverified_devices(self, room_id: str, value: bool | None):
        self.gate.set_room_block_on_unverified(room_id, value)

    # ========== Room keys ==========

    async def _replenish_one_time_keys(
        self, response: dict[str, Any] | None = None
    ):
        """
        Top the server's stock of one-time keys up to half the account maximum

        Args:
            response: A keys/upload answer carrying the current counts; the
                counts are fetched when omitted
        """
        if response is None:
            response = await self.client.upload_keys()
        counts = response.get("one_time_key_counts") or {}
        published = counts.get(SIGNED_CURVE25519, 0)
        target = self.olm.max_one_time_keys // 2
        if published >= target:
            return
        keys = self.devices.one_time_keys_payload(target - published)
        await self.client.upload_keys(one_time_keys=keys)
        self.devices.mark_one_time_keys_published()
        logger.info(f"[E2EE-Keys] Uploaded {len(keys)} one-time keys")

    async def _handle_to_device(self, event: RawEvent):
        payload: ToDevicePayload | None = None
        try:
            payload = self.devices.decrypt_to_device(event.sender, event.content)
        except E2EEError as e:
            logger.warning(
                f"[E2EE-Keys] Rejected to-device message from {event.sender}: {e}"
            )

        if self.olm.one_time_keys_consumed:
            self.olm.one_time_keys_consumed = False
            try:
                await self._replenish_one_time_keys()
            except MatrixClientError as e:
                logger.error(f"[E2EE-Keys] Replenishing one-time keys failed: {e}")

        if payload is None:
            return
        if payload.event_type != EVENT_ROOM_KEY:
            logger.debug(f"Ignoring encrypted to-device event {payload.event_type}")
            return
        try:
            try:
                self.sessions.accept_room_key(payload)
            except UnknownDeviceError:
                await self.refresh_devices([event.sender])
                self.sessions.accept_room_key(payload)
        except E2EEError as e:
            logger.warning(f"[E2EE-Keys] Rejected room key from {event.sender}: {e}")
        except MatrixClientError as e:
            logger.error(f"[E2EE-Keys] Could not process room key: {e}")

    # ========== Sending ==========

    @staticmethod
    def _message_content(body: Any, msgtype: str = "m.text") -> dict[str, Any]:
        if not isinstance(body, str):
            body = json.dumps(body, ensure_ascii=False)
        return {"msgtype": msgtype, "body": body}

    async def encrypt_and_send(
        self, room_id: str, body: Any, msgtype: str = "m.text"
    ) -> str:
        """
        Encrypt a message for the room's devices and send it

        Non-string bodies are sent as JSON text.

        Returns:
            Event ID of the encrypted event

        Raises:
            PolicyViolation: encryption cannot be guaranteed for this send
        """
        return await self.send_encrypted_event(
            room_id, EVENT_ROOM_MESSAGE, self._message_content(body, msgtype)
        )

    async def send_encrypted_event(
        self, room_id: str, event_type: str, content: dict[str, Any]
    ) -> str:
        policy = await self.gate.ensure_room_encrypted(room_id)
        if not policy.is_supported:
            raise PolicyViolation(
                f"Room {room_id} uses unsupported algorithm {policy.algorithm}"
            )
        if self.bootstrap_failed and not self.sessions.has_session_history(room_id):
            raise PolicyViolation(
                f"Cross-signing bootstrap failed; not starting encryption in {room_id}"
            )

        for attempt in range(1, MAX_SESSION_ATTEMPTS + 1):
            devices = await self._room_devices(room_id)
            recipients = self.gate.check_recipients(room_id, devices)
            session = await self.sessions.get_or_create_outbound_session(
                room_id,
                recipients,
                rotation_period_ms=policy.rotation_period_ms,
                rotation_period_msgs=policy.rotation_period_msgs,
            )
            try:
                message = await self.sessions.encrypt(
                    session, event_type, content, recipients
                )
            except StaleSessionError as e:
                logger.info(f"Session for {room_id} went stale ({attempt}): {e}")
                continue
            return await self.client.send_raw_event(
                room_id, EVENT_ROOM_ENCRYPTED, message.content
            )

        raise PolicyViolation(f"Could not obtain a current session for {room_id}")

    async def send_message(
        self, room_id: str, body: Any, msgtype: str = "m.text"
    ) -> str:
        """
        Send a message, encrypting it when the room is known to be encrypted
        """
        if self.gate.is_room_encrypted(room_id):
            return await self.encrypt_and_send(room_id, body, msgtype)
        return await self.client.send_raw_event(
            room_id, EVENT_ROOM_MESSAGE, self._message_content(body, msgtype)
        )

    # ========== Receiving ==========

    def subscribe(self, kind: str, room_id: str | None = None) -> Subscription:
        """Bounded subscription to ``decrypted``, ``failed`` or ``message`` items"""
        return self.router.subscribe(
            kind, room_id, maxsize=self.config.subscription_queue_size
        )

    def _listen(self, subscription: Subscription, handler: Callable) -> Subscription:
        task = asyncio.create_task(self._consume(subscription, handler))
        self._listener_tasks.add(task)
        task.add_done_callback(self._listener_tasks.discard)
        return subscription

    async def _consume(self, subscription: Subscription, handler: Callable):
        async for item in subscription:
            try:
                result = handler(item)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Listener for {subscription.kind} events failed: {e}")

    def on_decrypted(self, room_id: str | None, callback: Callable) -> Subscription:
        """
        Call ``callback(body)`` for every decrypted message of a room

        Returns:
            The underlying subscription; close it to stop listening
        """

        def handle(outcome: Plaintext):
            if outcome.event_type == EVENT_ROOM_MESSAGE:
                return callback(outcome.body)

        return self._listen(self.subscribe(KIND_DECRYPTED, room_id), handle)

    def on_decrypt_failed(
        self, room_id: str | None, callback: Callable
    ) -> Subscription:
        """Call ``callback(reason)`` for every event that could not be decrypted"""

        def handle(outcome: Failed):
            return callback(outcome.reason)

        return self._listen(self.subscribe(KIND_FAILED, room_id), handle)

    def on_message(self, room_id: str | None, callback: Callable) -> Subscription:
        """Call ``callback(body)`` for every unencrypted message of a room"""

        def handle(event: RawEvent):
            return callback(event.content.get("body"))

        return self._listen(self.subscribe(KIND_MESSAGE, room_id), handle)

    async def next_decryption_outcome(
        self, room_id: str | None = None, timeout: float | None = None
    ) -> DecryptionOutcome:
        """
        Wait for the next decrypted or failed event of a room

        Raises:
            asyncio.TimeoutError: nothing arrived within ``timeout`` seconds
        """
        # One queue for both kinds, so an outcome is never taken and dropped
        outcomes = self.subscribe(KIND_OUTCOME, room_id)
        try:
            return await asyncio.wait_for(outcomes.get(), timeout)
        finally:
            outcomes.close()

    # ========== Rooms ==========

    async def get_my_power_level(self, room_id: str) -> int:
        """Power level of our user (0 user, 50 moderator, 100 owner by default)"""
        power_levels = (
            await self.client.get_room_state(room_id, EVENT_POWER_LEVELS) or {}
        )
        users = power_levels.get("users") or {}
        return int(
            users.get(
                self.user_id,
                power_levels.get("users_default", DEFAULT_USER_POWER_LEVEL),
            )
        )

    async def invite_user(self, room_id: str, user_id: str):
        """
        Invite a user after checking our power level allows it

        Raises:
            PermissionDenied: our power level is below the room's invite level
        """
        power_levels = (
            await self.client.get_room_state(room_id, EVENT_POWER_LEVELS) or {}
        )
        required = int(power_levels.get("invite", DEFAULT_INVITE_POWER_LEVEL))
        mine = await self.get_my_power_level(room_id)
        if required > mine:
            raise PermissionDenied(
                f"Power level {mine} cannot invite users to {room_id} "
                f"(requires {required})",
                required,
                mine,
            )
        await self.client.invite_user(room_id, user_id)
        logger.info(f"Invited {user_id} to {room_id}")

    async def create_room(self, name: str) -> str:
        """Create a private room that is encrypted from its first event"""
        encryption = {"algorithm": MEGOLM_ALGORITHM}
        room_id = await self.client.create_room(
            {
                "name": name,
                "preset": PRIVATE_CHAT_PRESET,
                "visibility": "private",
                "initial_state": [
                    {
                        "type": "m.room.guest_access",
                        "state_key": "",
                        "content": {"guest_access": "can_join"},
                    },
                    {
                        "type": EVENT_ROOM_ENCRYPTION,
                        "state_key": "",
                        "content": encryption,
                    },
                ],
            }
        )
        self.gate.observe_state_event(room_id, encryption)
        logger.info(f"Created encrypted room {room_id}")
        return room_id

    async def get_joined_room_ids(self) -> list[str]:
        return await self.client.get_joined_rooms()

    async def is_user_joined(self, room_id: str) -> bool:
        return room_id in await self.client.get_joined_rooms()

    async def join_room(self, room_id: str):
        await self.client.join_room(room_id)

    async def leave_room(self, room_id: str):
        await self.client.leave_room(room_id)
        await self._handle_room_left(room_id)

    async def _auto_join(self, room_id: str):
        try:
            await self.client.join_room(room_id)
            logger.info(f"Auto-joined {room_id}")
        except MatrixClientError as e:
            logger.error(f"Failed to auto-join {room_id}: {e}")

    async def _handle_room_left(self, room_id: str):
        self.pipeline.cancel_room(room_id)
        self.sessions.forget_room(room_id)

    # ========== Shutdown ==========

    async def stop(self):
        """Stop the event stream, pending decryptions and listeners"""
        if self.router:
            self.router.stop()
        if self._sync_task:
            self._sync_task.cancel()
            await asyncio.gather(self._sync_task, return_exceptions=True)
            self._sync_task = None
        if self.pipeline:
            await self.pipeline.close()
        for task in list(self._listener_tasks):
            task.cancel()
        if self._listener_tasks:
            await asyncio.gather(*self._listener_tasks, return_exceptions=True)
        await self.client.close()
        logger.info("Matrix E2EE client stopped")
