"""
Decryption Pipeline

Turns ``m.room.encrypted`` events into typed outcomes::

    Received -> Resolving -> Decrypted                       => Plaintext
                          -> Rejected(UnknownSession)        => Pending, retried
                          -> Rejected(ForwardSecrecyViolation) => Failed
                          -> Rejected(SignatureInvalid)      => Failed

Nothing raised while decrypting escapes into the event stream; every event
ends up as exactly one outcome.
"""

import asyncio
import functools
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..client.event_types import RawEvent
from ..constants import MEGOLM_ALGORITHM
from ..errors import (
    CiphertextInvalid,
    E2EEError,
    ForwardSecrecyViolation,
    SignatureInvalid,
    UnknownSession,
    UnsupportedAlgorithm,
)
from ..log import get_logger
from .device_store import DeviceIdentityStore
from .group_sessions import GroupSessionManager

logger = get_logger("e2ee.decryption")


class FailureReason(str, Enum):
    UNKNOWN_SESSION = "unknown_session"
    FORWARD_SECRECY_VIOLATION = "forward_secrecy_violation"
    SIGNATURE_INVALID = "signature_invalid"
    CIPHERTEXT_INVALID = "ciphertext_invalid"
    UNSUPPORTED_ALGORITHM = "unsupported_algorithm"
    CANCELLED = "cancelled"


@dataclass
class Plaintext:
    event: RawEvent
    event_type: str
    content: dict[str, Any]
    sender_device: str
    session_id: str
    message_index: int

    @property
    def room_id(self) -> str | None:
        return self.event.room_id

    @property
    def body(self) -> Any:
        return self.content.get("body")


@dataclass
class Pending:
    event: RawEvent
    reason: FailureReason
    session_id: str

    @property
    def room_id(self) -> str | None:
        return self.event.room_id


@dataclass
class Failed:
    event: RawEvent
    reason: FailureReason
    retryable: bool
    message: str = ""

    @property
    def room_id(self) -> str | None:
        return self.event.room_id


DecryptionOutcome = Plaintext | Pending | Failed

OutcomeHandler = Callable[[DecryptionOutcome], Awaitable[None]]


def _failure_from_error(event: RawEvent, error: E2EEError) -> Failed:
    if isinstance(error, ForwardSecrecyViolation):
        reason = FailureReason.FORWARD_SECRECY_VIOLATION
    elif isinstance(error, SignatureInvalid):
        reason = FailureReason.SIGNATURE_INVALID
    elif isinstance(error, UnsupportedAlgorithm):
        reason = FailureReason.UNSUPPORTED_ALGORITHM
    else:
        reason = FailureReason.CIPHERTEXT_INVALID
    return Failed(
        event=event,
        reason=reason,
        retryable=getattr(error, "retryable", False),
        message=str(error),
    )


class DecryptionPipeline:
    """Resolves sessions, advances inbound ratchets and classifies failures"""

    def __init__(
        self,
        sessions: GroupSessionManager,
        devices: DeviceIdentityStore,
        retry_attempts: int = 5,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 8.0,
    ):
        """
        Args:
            sessions: Source of inbound sessions and their locks
            devices: Used to flag devices that fail sender checks
            retry_attempts: Waits for a missing session before giving up
            retry_base_delay: First wait in seconds, doubled per attempt
            retry_max_delay: Upper bound of a single wait
        """
        self.sessions = sessions
        self.devices = devices
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

        self._retry_tasks: dict[str, set[asyncio.Task]] = {}
        self._deliveries: set[asyncio.Future] = set()
        self._closed = False

    # ========== Single attempt ==========

    async def _decrypt(self, event: RawEvent) -> Plaintext:
        content = event.content if isinstance(event.content, dict) else {}
        room_id = event.room_id or ""

        algorithm = content.get("algorithm")
        if algorithm != MEGOLM_ALGORITHM:
            raise UnsupportedAlgorithm(f"Unsupported algorithm: {algorithm}")

        session_id = content.get("session_id")
        ciphertext = content.get("ciphertext")
        if not isinstance(session_id, str) or not session_id:
            raise CiphertextInvalid("Encrypted event lacks a string session_id")
        if not isinstance(ciphertext, str) or not ciphertext:
            raise CiphertextInvalid("Encrypted event lacks a string ciphertext")
        for name in ("sender_key", "device_id"):
            if content.get(name) is not None and not isinstance(content[name], str):
                raise CiphertextInvalid(f"Encrypted event field {name} is not a string")

        record = self.sessions.get_inbound_session(room_id, session_id)
        if record is None:
            raise UnknownSession(room_id, session_id)

        # The event must come from the device that shared the session
        claimed_device = content.get("device_id") or record.sender_device
        claimed_key = content.get("sender_key") or record.sender_key
        if (
            event.sender != record.sender_user
            or claimed_device != record.sender_device
            or claimed_key != record.sender_key
        ):
            self.devices.flag_device(
                event.sender,
                claimed_device,
                f"sent with session {session_id[:8]}... owned by "
                f"{record.sender_user}:{record.sender_device}",
            )
            raise SignatureInvalid(
                f"Event {event.event_id} was not sent by the owner of "
                f"session {session_id[:8]}...",
                event.sender,
                claimed_device,
            )

        async with self.sessions.inbound_lock(room_id, record.owner):
            plaintext, message_index = self.sessions.olm.decrypt(
                record.session, ciphertext
            )
            if message_index < record.next_index:
                raise ForwardSecrecyViolation(
                    session_id, message_index, record.next_index
                )

            try:
                payload = json.loads(plaintext)
            except json.JSONDecodeError as e:
                raise CiphertextInvalid(f"Decrypted payload is not JSON: {e}") from e
            if not isinstance(payload, dict) or not isinstance(
                payload.get("content"), dict
            ):
                raise CiphertextInvalid("Decrypted payload has no content")
            if payload.get("room_id") != room_id:
                raise CiphertextInvalid(
                    f"Event {event.event_id} was encrypted for another room"
                )

            record.next_index = message_index + 1
            self.sessions.save_inbound(record)

        return Plaintext(
            event=event,
            event_type=payload.get("type", ""),
            content=payload["content"],
            sender_device=record.sender_device,
            session_id=session_id,
            message_index=message_index,
        )

    async def decrypt_once(self, event: RawEvent) -> DecryptionOutcome:
        """One resolution attempt; a missing session yields ``Pending``"""
        try:
            return await self._decrypt(event)
        except UnknownSession as e:
            logger.debug(f"[E2EE-Decrypt] {e}; waiting for the key")
            return Pending(
                event=event,
                reason=FailureReason.UNKNOWN_SESSION,
                session_id=e.session_id,
            )
        except E2EEError as e:
            failed = _failure_from_error(event, e)
            logger.warning(
                f"[E2EE-Decrypt] Event {event.event_id} in {event.room_id} "
                f"rejected: {failed.reason.value}: {e}"
            )
            return failed
        except Exception as e:
            logger.error(
                f"[E2EE-Decrypt] Event {event.event_id} in {event.room_id} "
                f"could not be decrypted: {e}",
                exc_info=True,
            )
            return Failed(
                event=event,
                reason=FailureReason.CIPHERTEXT_INVALID,
                retryable=False,
                message=str(e),
            )

    # ========== Retries ==========

    async def process(self, event: RawEvent) -> DecryptionOutcome:
        """
        Decrypt an event, waiting a bounded time for a missing session

        Each wait ends early when the session key arrives.

        Returns:
            ``Plaintext`` or ``Failed``, never ``Pending``
        """
        outcome = await self.decrypt_once(event)
        attempt = 0
        while isinstance(outcome, Pending) and attempt < self.retry_attempts:
            delay = min(self.retry_base_delay * (2**attempt), self.retry_max_delay)
            attempt += 1
            await self.sessions.wait_for_session(
                event.room_id or "", outcome.session_id, delay
            )
            outcome = await self.decrypt_once(event)

        if isinstance(outcome, Pending):
            logger.warning(
                f"[E2EE-Decrypt] No key for session {outcome.session_id[:8]}... "
                f"after {attempt} attempts (event {event.event_id})"
            )
            return Failed(
                event=event,
                reason=FailureReason.UNKNOWN_SESSION,
                retryable=True,
                message=f"No key for session {outcome.session_id}",
            )
        return outcome

    def schedule_retry(self, event: RawEvent, deliver: OutcomeHandler) -> asyncio.Task:
        """
        Run ``process`` in the background and hand the outcome to ``deliver``

        A retry cancelled by ``cancel_room`` delivers ``Failed(cancelled)``,
        even when it was cancelled before it started running.
        """
        room_id = event.room_id or ""
        task = asyncio.create_task(self._run_retry(event, deliver))
        tasks = self._retry_tasks.setdefault(room_id, set())
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        task.add_done_callback(functools.partial(self._retry_done, event, deliver))
        return task

    async def _run_retry(self, event: RawEvent, deliver: OutcomeHandler):
        await deliver(await self.process(event))

    def _retry_done(
        self, event: RawEvent, deliver: OutcomeHandler, task: asyncio.Task
    ):
        if not task.cancelled():
            if task.exception() is not None:
                logger.error(
                    f"[E2EE-Decrypt] Delivering outcome of {event.event_id} failed",
                    exc_info=task.exception(),
                )
            return
        if self._closed:
            return
        delivery = asyncio.ensure_future(
            deliver(
                Failed(
                    event=event,
                    reason=FailureReason.CANCELLED,
                    retryable=True,
                    message="Decryption retry cancelled",
                )
            )
        )
        self._deliveries.add(delivery)
        delivery.add_done_callback(self._deliveries.discard)

    def pending_retries(self, room_id: str) -> int:
        return len(self._retry_tasks.get(room_id, ()))

    def cancel_room(self, room_id: str) -> int:
        """Cancel pending retries of a room (the room was left)"""
        tasks = self._retry_tasks.pop(room_id, set())
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info(f"Cancelled {len(tasks)} pending decryption(s) in {room_id}")
        return len(tasks)

    async def close(self):
        """Cancel every pending retry and wait for them to finish"""
        self._closed = True
        tasks = [task for tasks in self._retry_tasks.values() for task in tasks]
        self._retry_tasks.clear()
        for task in tasks:
            task.cancel()
        tasks.extend(self._deliveries)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
