"""
Matrix HTTP Client - the transport collaborator of the E2EE engine
Implements the subset of the Matrix Client-Server API the client needs using aiohttp
"""

import asyncio
import secrets
import time
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote

import aiohttp

from ..errors import AuthFailure, MatrixAPIError, NetworkTransient
from ..log import get_logger
from .event_types import (
    SOURCE_INVITE,
    SOURCE_STATE,
    SOURCE_TIMELINE,
    SOURCE_TO_DEVICE,
    LoginResponse,
    RawEvent,
    SyncBatch,
)

logger = get_logger("http")

# Methods safe to repeat after a transient failure
_RETRYABLE_METHODS = {"GET"}


class MatrixHTTPClient:
    """
    Low-level HTTP client for Matrix C-S API
    """

    def __init__(
        self,
        homeserver: str,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
    ):
        """
        Initialize Matrix HTTP client

        Args:
            homeserver: Matrix homeserver URL (e.g., https://matrix.org)
            retry_attempts: Attempts for read requests on transient failures
            retry_base_delay: First backoff delay in seconds, doubled per attempt
        """
        self.homeserver = homeserver.rstrip("/")
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.access_token: str | None = None
        self.user_id: str | None = None
        self.device_id: str | None = None
        self.session: aiohttp.ClientSession | None = None
        self._next_batch: str | None = None

    async def _ensure_session(self):
        """Ensure aiohttp session exists"""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()

    async def close(self):
        """Close the HTTP session"""
        if self.session and not self.session.closed:
            await self.session.close()

    def _get_headers(self, access_token: str | None = None) -> dict[str, str]:
        """Get HTTP headers for authenticated requests"""
        headers = {"Content-Type": "application/json"}
        token = access_token or self.access_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request_once(
        self,
        method: str,
        endpoint: str,
        data: dict | None = None,
        params: dict | None = None,
        authenticated: bool = True,
        access_token: str | None = None,
    ) -> dict[str, Any]:
        await self._ensure_session()

        url = f"{self.homeserver}{endpoint}"
        headers = (
            self._get_headers(access_token)
            if authenticated
            else {"Content-Type": "application/json"}
        )

        try:
            async with self.session.request(
                method, url, json=data, params=params, headers=headers
            ) as response:
                try:
                    response_data = await response.json(content_type=None)
                except ValueError:
                    response_data = {}
                response_data = response_data or {}

                if response.status == 429 or response.status >= 500:
                    raise NetworkTransient(
                        f"Matrix server busy: HTTP {response.status} for {endpoint}",
                        retry_after_ms=response_data.get("retry_after_ms"),
                    )

                if response.status >= 400:
                    raise MatrixAPIError(
                        response_data.get("errcode", "UNKNOWN"),
                        response_data.get("error", "Unknown error"),
                        response.status,
                    )

                return response_data

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Matrix HTTP request failed: {method} {endpoint}: {e}")
            raise NetworkTransient(f"{method} {endpoint} failed: {e}") from e

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: dict | None = None,
        params: dict | None = None,
        authenticated: bool = True,
        access_token: str | None = None,
        retry: bool | None = None,
    ) -> dict[str, Any]:
        """
        Make HTTP request to Matrix server

        Read requests (and requests flagged ``retry=True``) are retried with
        exponential backoff on ``NetworkTransient``; the last failure is
        re-raised once the budget is spent.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            endpoint: API endpoint (e.g., /_matrix/client/v3/login)
            data: JSON data for request body
            params: URL query parameters
            authenticated: Whether to include access token
            access_token: Token overriding the cached one for this request
            retry: Force retry behaviour on or off

        Returns:
            Response JSON data

        Raises:
            NetworkTransient: transport failure after the retry budget
            MatrixAPIError: on 4xx answers
        """
        should_retry = method in _RETRYABLE_METHODS if retry is None else retry
        attempts = self.retry_attempts if should_retry else 1

        for attempt in range(1, attempts + 1):
            try:
                return await self._request_once(
                    method,
                    endpoint,
                    data=data,
                    params=params,
                    authenticated=authenticated,
                    access_token=access_token,
                )
            except NetworkTransient as e:
                if attempt >= attempts:
                    raise
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                if e.retry_after_ms:
                    delay = max(delay, e.retry_after_ms / 1000)
                logger.debug(
                    f"Retrying {method} {endpoint} in {delay:.1f}s "
                    f"(attempt {attempt}/{attempts})"
                )
                await asyncio.sleep(delay)

        raise NetworkTransient(f"{method} {endpoint} failed")

    # ========== Authentication ==========

    async def login_password(
        self,
        username: str,
        password: str,
        device_name: str = "mxcrypt",
        device_id: str | None = None,
        store: bool = True,
    ) -> LoginResponse:
        """
        Login with password

        Args:
            username: Matrix user ID or localpart
            password: User password
            device_name: Device display name
            device_id: Optional device ID to reuse
            store: Keep the returned token as the cached credential

        Returns:
            Login response with access_token, user_id and device_id

        Raises:
            AuthFailure: credentials rejected or homeserver unreachable
        """
        data = {
            "type": "m.login.password",
            "identifier": {"type": "m.id.user", "user": username},
            "password": password,
            "initial_device_display_name": device_name,
        }
        if device_id:
            data["device_id"] = device_id

        try:
            response = await self._request(
                "POST",
                "/_matrix/client/v3/login",
                data=data,
                authenticated=False,
                retry=False,
            )
        except (MatrixAPIError, NetworkTransient) as e:
            raise AuthFailure(f"Password login failed: {e}") from e

        login = LoginResponse(
            access_token=response.get("access_token", ""),
            user_id=response.get("user_id", ""),
            device_id=response.get("device_id", device_id or ""),
        )
        if not login.access_token:
            raise AuthFailure("Password login returned no access token")

        if store:
            self.access_token = login.access_token
            self.user_id = login.user_id
            self.device_id = login.device_id

        return login

    def restore_login(
        self, user_id: str, access_token: str, device_id: str | None = None
    ):
        """
        Restore login session with access token

        Args:
            user_id: Matrix user ID
            access_token: Access token from previous login
            device_id: Device ID (optional)
        """
        self.user_id = user_id
        self.access_token = access_token
        self.device_id = device_id

    async def whoami(self) -> dict[str, Any]:
        """
        Get information about the current user

        Returns:
            User information including user_id and device_id
        """
        return await self._request("GET", "/_matrix/client/v3/account/whoami")

    # ========== Sync ==========

    async def sync(
        self,
        since: str | None = None,
        timeout: int = 30000,
        full_state: bool = False,
        filter_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Sync with the Matrix server

        Args:
            since: Sync batch token from previous sync
            timeout: Timeout in milliseconds
            full_state: Whether to return full state
            filter_id: Filter ID or inline JSON filter

        Returns:
            Sync response
        """
        params: dict[str, Any] = {"timeout": timeout}
        if since:
            params["since"] = since
        if full_state:
            params["full_state"] = "true"
        if filter_id:
            params["filter"] = filter_id

        response = await self._request("GET", "/_matrix/client/v3/sync", params=params)

        self._next_batch = response.get("next_batch")

        return response

    @staticmethod
    def parse_sync_response(response: dict[str, Any]) -> SyncBatch:
        """Flatten a sync response into RawEvents, to-device events first"""
        events: list[RawEvent] = []

        for event in response.get("to_device", {}).get("events", []):
            events.append(RawEvent.from_dict(event, source=SOURCE_TO_DEVICE))

        rooms = response.get("rooms", {})
        for room_id, room_data in rooms.get("join", {}).items():
            for event in room_data.get("state", {}).get("events", []):
                events.append(RawEvent.from_dict(event, room_id, source=SOURCE_STATE))
            for event in room_data.get("timeline", {}).get("events", []):
                events.append(
                    RawEvent.from_dict(event, room_id, source=SOURCE_TIMELINE)
                )

        for room_id, invite_data in rooms.get("invite", {}).items():
            for event in invite_data.get("invite_state", {}).get("events", []):
                events.append(
                    RawEvent.from_dict(event, room_id, source=SOURCE_INVITE)
                )

        return SyncBatch(next_batch=response.get("next_batch"), events=events)

    async def stream_live_events(
        self,
        since: str | None = None,
        timeout: int = 30000,
        initial_sync_limit: int | None = None,
    ) -> AsyncIterator[RawEvent]:
        """
        Lazily yield live events forever

        The stream is restartable: pass the last seen ``next_batch`` token as
        ``since``. Transient network errors are retried inside ``sync``; once
        that budget is exhausted the error propagates to the caller.
        """
        filter_id = None
        if since is None and initial_sync_limit is not None:
            filter_id = (
                '{"room":{"timeline":{"limit":%d}}}' % int(initial_sync_limit)
            )

        next_batch = since
        while True:
            response = await self.sync(
                since=next_batch,
                timeout=timeout if next_batch else 0,
                filter_id=filter_id if next_batch is None else None,
            )
            batch = self.parse_sync_response(response)
            next_batch = batch.next_batch or next_batch
            for event in batch.events:
                yield event

    @property
    def next_batch(self) -> str | None:
        return self._next_batch

    # ========== Rooms ==========

    async def get_room_state(
        self, room_id: str, event_type: str, state_key: str = ""
    ) -> dict[str, Any] | None:
        """
        Get one state event's content

        Returns:
            Content of the state event, or None when the room has none
        """
        endpoint = (
            f"/_matrix/client/v3/rooms/{quote(room_id)}/state/"
            f"{quote(event_type)}/{quote(state_key)}"
        )
        try:
            return await self._request("GET", endpoint)
        except MatrixAPIError as e:
            if e.status == 404 or e.errcode == "M_NOT_FOUND":
                return None
            raise

    async def set_room_state(
        self,
        room_id: str,
        event_type: str,
        content: dict[str, Any],
        state_key: str = "",
    ) -> str:
        """
        Send a state event

        Returns:
            Event ID of the state event
        """
        endpoint = (
            f"/_matrix/client/v3/rooms/{quote(room_id)}/state/"
            f"{quote(event_type)}/{quote(state_key)}"
        )
        response = await self._request("PUT", endpoint, data=content)
        return response.get("event_id", "")

    async def send_raw_event(
        self, room_id: str, event_type: str, content: dict[str, Any]
    ) -> str:
        """
        Send an event to a room

        Args:
            room_id: Room ID
            event_type: Event type (e.g., m.room.encrypted)
            content: Event content

        Returns:
            Event ID
        """
        txn_id = f"{int(time.time() * 1000)}_{secrets.token_hex(4)}"
        endpoint = (
            f"/_matrix/client/v3/rooms/{quote(room_id)}/send/"
            f"{quote(event_type)}/{txn_id}"
        )
        # PUT with a transaction id is idempotent server side
        response = await self._request("PUT", endpoint, data=content, retry=True)
        return response.get("event_id", "")

    async def join_room(self, room_id: str) -> dict[str, Any]:
        """
        Join a room

        Args:
            room_id: Room ID or alias

        Returns:
            Join response with room_id
        """
        endpoint = f"/_matrix/client/v3/join/{quote(room_id)}"
        return await self._request("POST", endpoint, data={})

    async def leave_room(self, room_id: str) -> dict[str, Any]:
        """
        Leave a room

        Args:
            room_id: Room ID

        Returns:
            Leave response
        """
        endpoint = f"/_matrix/client/v3/rooms/{quote(room_id)}/leave"
        return await self._request("POST", endpoint, data={})

    async def invite_user(self, room_id: str, user_id: str) -> dict[str, Any]:
        endpoint = f"/_matrix/client/v3/rooms/{quote(room_id)}/invite"
        return await self._request("POST", endpoint, data={"user_id": user_id})

    async def create_room(self, config: dict[str, Any]) -> str:
        """
        Create a room

        Args:
            config: createRoom request body (name, preset, initial_state, ...)

        Returns:
            The new room ID
        """
        response = await self._request(
            "POST", "/_matrix/client/v3/createRoom", data=config
        )
        return response.get("room_id", "")

    async def get_joined_rooms(self) -> list[str]:
        """
        Get list of joined room IDs

        Returns:
            List of room IDs
        """
        response = await self._request("GET", "/_matrix/client/v3/joined_rooms")
        return response.get("joined_rooms", [])

    async def get_joined_members(self, room_id: str) -> list[str]:
        """
        Get the user IDs currently joined to a room
        """
        endpoint = f"/_matrix/client/v3/rooms/{quote(room_id)}/joined_members"
        response = await self._request("GET", endpoint)
        return list(response.get("joined", {}).keys())

    # ========== Keys ==========

    async def upload_keys(
        self,
        device_keys: dict[str, Any] | None = None,
        one_time_keys: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Upload device and one-time keys to the server

        With no arguments this only reads the current one-time key counts.

        Args:
            device_keys: Signed device keys
            one_time_keys: Signed one-time keys (optional)

        Returns:
            Upload response with one_time_key_counts
        """
        data: dict[str, Any] = {}
        if device_keys:
            data["device_keys"] = device_keys
        if one_time_keys:
            data["one_time_keys"] = one_time_keys
        return await self._request("POST", "/_matrix/client/v3/keys/upload", data=data)

    async def query_keys(
        self, device_keys: dict[str, list[str]], timeout: int = 10000
    ) -> dict[str, Any]:
        """
        Query keys for other devices

        Args:
            device_keys: Dict of user_id -> list of device_ids
            timeout: Query timeout in milliseconds

        Returns:
            Device keys and cross-signing keys
        """
        data = {"device_keys": device_keys, "timeout": timeout}
        # keys/query is a read even though it is a POST
        return await self._request(
            "POST", "/_matrix/client/v3/keys/query", data=data, retry=True
        )

    async def claim_keys(
        self, one_time_keys: dict[str, dict[str, str]], timeout: int = 10000
    ) -> dict[str, Any]:
        """
        Claim one-time keys for establishing Olm sessions

        Args:
            one_time_keys: Dict of user_id -> device_id -> key_algorithm
            timeout: Federation timeout in milliseconds

        Returns:
            Claimed one-time keys
        """
        data = {"one_time_keys": one_time_keys, "timeout": timeout}
        return await self._request("POST", "/_matrix/client/v3/keys/claim", data=data)

    async def upload_signing_keys(
        self, signing_keys: dict[str, Any], access_token: str
    ) -> dict[str, Any]:
        """
        Upload cross-signing keys

        Requires a freshly obtained access token; the cached one is never used.
        """
        return await self._request(
            "POST",
            "/_matrix/client/v3/keys/device_signing/upload",
            data=signing_keys,
            access_token=access_token,
        )

    async def upload_signatures(
        self, signatures: dict[str, Any], access_token: str | None = None
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/_matrix/client/v3/keys/signatures/upload",
            data=signatures,
            access_token=access_token,
        )

    async def send_to_device(
        self,
        event_type: str,
        messages: dict[str, dict[str, Any]],
        txn_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Send to-device events to specific devices

        Args:
            event_type: The type of event to send
            messages: Dict of user_id -> device_id -> content
            txn_id: Transaction ID (auto-generated if not provided)

        Returns:
            Empty dict on success
        """
        if txn_id is None:
            txn_id = secrets.token_hex(16)

        endpoint = f"/_matrix/client/v3/sendToDevice/{quote(event_type)}/{txn_id}"

        return await self._request(
            "PUT", endpoint, data={"messages": messages}, retry=True
        )
