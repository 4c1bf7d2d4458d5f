"""
Room Event Router
Runs the live event stream and distributes events to the E2EE engine and to
subscribers
"""

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

from ..client.event_types import (
    SOURCE_INVITE,
    SOURCE_STATE,
    SOURCE_TIMELINE,
    SOURCE_TO_DEVICE,
    RawEvent,
)
from ..constants import (
    EVENT_ROOM_ENCRYPTED,
    EVENT_ROOM_ENCRYPTION,
    EVENT_ROOM_MEMBER,
    EVENT_ROOM_MESSAGE,
)
from ..e2ee.decryption import DecryptionOutcome, DecryptionPipeline, Failed, Pending
from ..e2ee.encryption_gate import EncryptionGate
from ..errors import MatrixClientError
from ..log import get_logger
from .subscription import KIND_DECRYPTED, KIND_FAILED, KIND_MESSAGE, Subscription

logger = get_logger("sync")

EventHandler = Callable[[RawEvent], Awaitable[None]]
RoomHandler = Callable[[str], Awaitable[None]]


class RoomEventRouter:
    """
    Consumes the live event stream

    - ``m.room.encrypted`` goes through the decryption pipeline
    - ``m.room.message`` goes to plaintext subscribers
    - ``m.room.encryption`` updates the encryption gate
    - to-device ``m.room.encrypted`` (Olm) events go to ``on_to_device``
    - invites of our own user go to ``on_invite``
    Pagination replay and timeline events older than the client start are
    dropped.
    """

    def __init__(
        self,
        client,
        user_id: str,
        pipeline: DecryptionPipeline,
        gate: EncryptionGate,
        sync_timeout: int = 30000,
        initial_sync_limit: int | None = 1,
        auto_join_rooms: bool = True,
        sync_store_path: str | Path | None = None,
        startup_ts: int | None = None,
        retry_delay: float = 5.0,
    ):
        """
        Args:
            client: Matrix HTTP client providing ``stream_live_events``
            user_id: Our own user ID
            pipeline: Decryption pipeline for encrypted events
            gate: Encryption gate fed with ``m.room.encryption`` state
            sync_timeout: Long-poll timeout in milliseconds
            initial_sync_limit: Timeline limit of the first sync
            auto_join_rooms: Whether to auto-join invited rooms
            sync_store_path: File keeping the sync token for resumption
            startup_ts: Timeline events older than this (ms) are dropped
            retry_delay: Seconds to wait before restarting a failed stream
        """
        self.client = client
        self.user_id = user_id
        self.pipeline = pipeline
        self.gate = gate
        self.sync_timeout = sync_timeout
        self.initial_sync_limit = initial_sync_limit
        self.auto_join_rooms = auto_join_rooms
        self.sync_store_path = sync_store_path
        self.startup_ts = (
            startup_ts if startup_ts is not None else int(time.time() * 1000)
        )
        self.retry_delay = retry_delay

        self.on_to_device: EventHandler | None = None
        self.on_invite: RoomHandler | None = None
        self.on_leave: RoomHandler | None = None

        self._subscriptions: list[Subscription] = []
        self._next_batch: str | None = None
        self._running = False

        self._load_sync_token()

    # ========== Sync token ==========

    def _load_sync_token(self) -> None:
        """Load sync token from disk for resumption"""
        if not self.sync_store_path:
            return
        path = Path(self.sync_store_path)
        if not path.exists():
            return
        with open(path, encoding="utf-8") as f:
            self._next_batch = json.load(f).get("next_batch")
        if self._next_batch:
            logger.info(f"Resuming sync from token {self._next_batch[:20]}...")

    def _save_sync_token(self) -> None:
        if not self.sync_store_path or not self._next_batch:
            return
        path = Path(self.sync_store_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"next_batch": self._next_batch}, f)

    def get_next_batch(self) -> str | None:
        return self._next_batch

    # ========== Subscriptions ==========

    def subscribe(
        self, kind: str, room_id: str | None = None, maxsize: int = 100
    ) -> Subscription:
        """
        Subscribe to routed items

        Args:
            kind: ``decrypted`` (Plaintext outcomes), ``failed`` (Failed
                outcomes), ``outcome`` (both) or ``message`` (unencrypted
                m.room.message events)
            room_id: Only items of this room; all rooms when None
            maxsize: Queue bound
        """
        subscription = Subscription(
            kind, room_id, maxsize=maxsize, on_close=self._remove_subscription
        )
        self._subscriptions.append(subscription)
        return subscription

    def _remove_subscription(self, subscription: Subscription):
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def _publish(self, kind: str, room_id: str | None, item) -> int:
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.matches(kind, room_id) and await subscription.put(item):
                delivered += 1
        return delivered

    async def deliver_outcome(self, outcome: DecryptionOutcome):
        """Publish a final decryption outcome to exactly one listener set"""
        if isinstance(outcome, Pending):
            raise ValueError("Pending outcomes are not delivered")
        kind = KIND_FAILED if isinstance(outcome, Failed) else KIND_DECRYPTED
        await self._publish(kind, outcome.room_id, outcome)

    # ========== Dispatch ==========

    async def dispatch(self, event: RawEvent):
        """Route one event from the stream"""
        if event.from_pagination:
            return

        if event.source == SOURCE_TO_DEVICE:
            await self._handle_to_device(event)
            return

        if event.source == SOURCE_INVITE:
            await self._handle_invite(event)
            return

        if event.event_type == EVENT_ROOM_ENCRYPTION and event.state_key == "":
            self.gate.observe_state_event(event.room_id, event.content)
            return

        if event.event_type == EVENT_ROOM_MEMBER and event.state_key == self.user_id:
            await self._handle_own_membership(event)
            return

        if event.source == SOURCE_STATE:
            return
        if event.source == SOURCE_TIMELINE and event.origin_server_ts < self.startup_ts:
            return

        if event.event_type == EVENT_ROOM_ENCRYPTED:
            outcome = await self.pipeline.decrypt_once(event)
            if isinstance(outcome, Pending):
                # Retry in the background so the key share can still arrive
                self.pipeline.schedule_retry(event, self.deliver_outcome)
            else:
                await self.deliver_outcome(outcome)
        elif event.event_type == EVENT_ROOM_MESSAGE:
            await self._publish(KIND_MESSAGE, event.room_id, event)

    async def _handle_to_device(self, event: RawEvent):
        if event.event_type != EVENT_ROOM_ENCRYPTED:
            logger.debug(f"Ignoring to-device event {event.event_type}")
            return
        if self.on_to_device:
            await self.on_to_device(event)

    async def _handle_invite(self, event: RawEvent):
        if (
            event.event_type != EVENT_ROOM_MEMBER
            or event.state_key != self.user_id
            or event.content.get("membership") != "invite"
        ):
            return
        logger.info(f"Invited to {event.room_id} by {event.sender}")
        if self.auto_join_rooms and self.on_invite:
            await self.on_invite(event.room_id)

    async def _handle_own_membership(self, event: RawEvent):
        membership = event.content.get("membership")
        if membership in ("leave", "ban") and self.on_leave:
            await self.on_leave(event.room_id)

    # ========== Loop ==========

    async def sync_forever(self):
        """
        Run the event stream until ``stop`` is called

        A stream that fails is restarted from the last sync token.
        """
        self._running = True
        logger.info("Starting Matrix sync loop")

        while self._running:
            try:
                async for event in self.client.stream_live_events(
                    since=self._next_batch,
                    timeout=self.sync_timeout,
                    initial_sync_limit=self.initial_sync_limit,
                ):
                    try:
                        await self.dispatch(event)
                    except Exception as e:
                        # One bad event must not end the stream
                        logger.error(
                            f"Failed to route {event.event_type} event "
                            f"{event.event_id}: {e}",
                            exc_info=True,
                        )
                    batch = self.client.next_batch
                    if batch and batch != self._next_batch:
                        self._next_batch = batch
                        self._save_sync_token()
                    if not self._running:
                        break
            except MatrixClientError as e:
                logger.error(f"Error in sync loop: {e}")
                await asyncio.sleep(self.retry_delay)

    def stop(self):
        """Stop the sync loop and close every subscription"""
        self._running = False
        for subscription in list(self._subscriptions):
            subscription.close()
        logger.info("Stopping Matrix sync loop")

    def is_running(self) -> bool:
        return self._running
