"""Tests for the aiohttp transport."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mxcrypt.client.event_types import (
    SOURCE_INVITE,
    SOURCE_STATE,
    SOURCE_TIMELINE,
    SOURCE_TO_DEVICE,
)
from mxcrypt.client.http_client import MatrixHTTPClient
from mxcrypt.errors import AuthFailure, MatrixAPIError, NetworkTransient


@pytest.fixture
def client():
    return MatrixHTTPClient("https://matrix.example.org/", retry_base_delay=0.5)


def mock_response(client, status, body):
    response = MagicMock(status=status)
    response.json = AsyncMock(return_value=body)
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    client.session = MagicMock(closed=False)
    client.session.request = MagicMock(return_value=context)
    return client.session.request


class TestRequest:
    async def test_success(self, client):
        request = mock_response(client, 200, {"joined_rooms": ["!a:x"]})

        assert await client.get_joined_rooms() == ["!a:x"]
        method, url = request.call_args[0]
        assert method == "GET"
        assert url == "https://matrix.example.org/_matrix/client/v3/joined_rooms"

    async def test_server_error_is_transient(self, client):
        mock_response(client, 503, {})
        with pytest.raises(NetworkTransient):
            await client._request_once("GET", "/x")

    async def test_rate_limit_carries_retry_after(self, client):
        mock_response(
            client, 429, {"errcode": "M_LIMIT_EXCEEDED", "retry_after_ms": 2000}
        )
        with pytest.raises(NetworkTransient) as exc:
            await client._request_once("GET", "/x")
        assert exc.value.retry_after_ms == 2000

    async def test_client_error_is_api_error(self, client):
        mock_response(client, 403, {"errcode": "M_FORBIDDEN", "error": "no"})
        with pytest.raises(MatrixAPIError) as exc:
            await client._request_once("POST", "/x")
        assert exc.value.errcode == "M_FORBIDDEN"
        assert exc.value.status == 403

    async def test_explicit_token_overrides_cached(self, client):
        client.access_token = "cached"
        request = mock_response(client, 200, {})

        await client.upload_signing_keys({}, access_token="fresh")

        headers = request.call_args[1]["headers"]
        assert headers["Authorization"] == "Bearer fresh"

    async def test_missing_state_is_none(self, client):
        mock_response(client, 404, {"errcode": "M_NOT_FOUND", "error": "none"})
        assert await client.get_room_state("!a:x", "m.room.encryption") is None


class TestRetry:
    async def test_get_retried_with_backoff(self, client):
        client._request_once = AsyncMock(
            side_effect=[NetworkTransient("a"), NetworkTransient("b"), {"ok": 1}]
        )
        with patch("asyncio.sleep", new=AsyncMock()) as sleep:
            assert await client._request("GET", "/x") == {"ok": 1}

        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    async def test_retry_after_respected(self, client):
        client._request_once = AsyncMock(
            side_effect=[NetworkTransient("busy", retry_after_ms=3000), {}]
        )
        with patch("asyncio.sleep", new=AsyncMock()) as sleep:
            await client._request("GET", "/x")
        sleep.assert_awaited_once_with(3.0)

    async def test_post_not_retried(self, client):
        client._request_once = AsyncMock(side_effect=NetworkTransient("down"))
        with pytest.raises(NetworkTransient):
            await client._request("POST", "/x")
        assert client._request_once.await_count == 1

    async def test_budget_exhausted(self, client):
        client._request_once = AsyncMock(side_effect=NetworkTransient("down"))
        with patch("asyncio.sleep", new=AsyncMock()):
            with pytest.raises(NetworkTransient):
                await client._request("GET", "/x")
        assert client._request_once.await_count == 3

    async def test_api_errors_not_retried(self, client):
        client._request_once = AsyncMock(
            side_effect=MatrixAPIError("M_FORBIDDEN", "no", 403)
        )
        with pytest.raises(MatrixAPIError):
            await client._request("GET", "/x")
        assert client._request_once.await_count == 1


class TestLogin:
    async def test_login_stores_token(self, client):
        client._request = AsyncMock(
            return_value={"access_token": "t", "user_id": "@a:x", "device_id": "D"}
        )
        login = await client.login_password("a", "pw")

        assert login.access_token == "t"
        assert client.access_token == "t"
        assert client.user_id == "@a:x"

    async def test_reauthentication_does_not_replace_token(self, client):
        client.access_token = "cached"
        client._request = AsyncMock(
            return_value={"access_token": "fresh", "user_id": "@a:x"}
        )
        login = await client.login_password("a", "pw", device_id="D", store=False)

        assert login.access_token == "fresh"
        assert login.device_id == "D"
        assert client.access_token == "cached"

    async def test_rejected_login(self, client):
        client._request = AsyncMock(
            side_effect=MatrixAPIError("M_FORBIDDEN", "Invalid password", 403)
        )
        with pytest.raises(AuthFailure):
            await client.login_password("a", "wrong")


class TestKeys:
    async def test_upload_sends_only_given_parts(self, client):
        client._request = AsyncMock(return_value={"one_time_key_counts": {}})

        await client.upload_keys(one_time_keys={"signed_curve25519:A": {"key": "k"}})

        method, path = client._request.call_args[0]
        assert (method, path) == ("POST", "/_matrix/client/v3/keys/upload")
        assert client._request.call_args[1]["data"] == {
            "one_time_keys": {"signed_curve25519:A": {"key": "k"}}
        }

    async def test_upload_without_keys_reads_counts(self, client):
        client._request = AsyncMock(
            return_value={"one_time_key_counts": {"signed_curve25519": 3}}
        )

        response = await client.upload_keys()

        assert response["one_time_key_counts"]["signed_curve25519"] == 3
        assert client._request.call_args[1]["data"] == {}

    async def test_claim_is_not_retried(self, client):
        client._request_once = AsyncMock(side_effect=NetworkTransient("down"))

        with pytest.raises(NetworkTransient):
            await client.claim_keys({"@b:x": {"D": "signed_curve25519"}})
        assert client._request_once.await_count == 1

    async def test_claim_request_body(self, client):
        request = mock_response(client, 200, {"one_time_keys": {}, "failures": {}})

        await client.claim_keys({"@b:x": {"D": "signed_curve25519"}}, timeout=500)

        method, url = request.call_args[0]
        assert method == "POST"
        assert url.endswith("/_matrix/client/v3/keys/claim")
        assert request.call_args[1]["json"] == {
            "one_time_keys": {"@b:x": {"D": "signed_curve25519"}},
            "timeout": 500,
        }


def test_parse_sync_response_order():
    response = {
        "next_batch": "s2",
        "to_device": {"events": [{"type": "m.room_key", "sender": "@b:x"}]},
        "rooms": {
            "join": {
                "!a:x": {
                    "state": {"events": [{"type": "m.room.encryption"}]},
                    "timeline": {"events": [{"type": "m.room.encrypted"}]},
                }
            },
            "invite": {
                "!b:x": {"invite_state": {"events": [{"type": "m.room.member"}]}}
            },
        },
    }

    batch = MatrixHTTPClient.parse_sync_response(response)

    assert batch.next_batch == "s2"
    assert [e.source for e in batch.events] == [
        SOURCE_TO_DEVICE,
        SOURCE_STATE,
        SOURCE_TIMELINE,
        SOURCE_INVITE,
    ]
    assert batch.events[1].room_id == "!a:x"
    assert batch.events[3].room_id == "!b:x"
