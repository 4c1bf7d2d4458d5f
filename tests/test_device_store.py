"""Tests for the device identity store."""

import json

import pytest

from mxcrypt.e2ee.crypto_store import CryptoStore
from mxcrypt.e2ee.device_store import DeviceIdentityStore, VerificationStatus
from mxcrypt.errors import (
    CiphertextInvalid,
    E2EEError,
    SignatureInvalid,
    UnknownDeviceError,
)
from tests.fixtures.helpers import ALICE, BOB


@pytest.fixture
def store(tmp_path):
    return CryptoStore(tmp_path, ALICE, "ALICEDEVICE")


@pytest.fixture
def devices(store):
    return DeviceIdentityStore(store)


class TestIdentity:
    def test_identity_is_created_once(self, store, devices):
        first = devices.get_or_create_identity()
        again = DeviceIdentityStore(store).get_or_create_identity()

        assert first == again
        assert first.user_id == ALICE
        assert first.device_id == "ALICEDEVICE"

    def test_identity_file_belongs_to_device(self, tmp_path, devices):
        devices.get_or_create_identity()
        other = CryptoStore(tmp_path, ALICE, "OTHERDEVICE")
        # Same account directory, different device
        assert other.store_path == devices.store.store_path

        with pytest.raises(E2EEError):
            DeviceIdentityStore(other).get_or_create_identity()

    def test_sign_json_verifies(self, devices):
        identity = devices.get_or_create_identity()
        signed = devices.sign_json({"hello": "world"})

        assert DeviceIdentityStore.verify_json(
            signed, ALICE, "ALICEDEVICE", identity.signing_key
        )
        signed["hello"] = "mars"
        assert not DeviceIdentityStore.verify_json(
            signed, ALICE, "ALICEDEVICE", identity.signing_key
        )

    def test_device_keys_payload(self, devices):
        identity = devices.get_or_create_identity()
        payload = devices.device_keys_payload()

        assert payload["keys"]["ed25519:ALICEDEVICE"] == identity.signing_key
        assert payload["keys"]["curve25519:ALICEDEVICE"] == identity.identity_key
        assert "ed25519:ALICEDEVICE" in payload["signatures"][ALICE]


class TestPeerDevices:
    def test_ingest_announcement(self, pair):
        alice, bob = pair
        device = alice.devices.get_device(BOB, "BOBDEVICE")

        assert device is not None
        assert device.signing_key == bob.devices.get_or_create_identity().signing_key
        assert device.verification == VerificationStatus.UNVERIFIED
        assert not device.known

    def test_forged_announcement_is_rejected(self, alice, bob):
        payload = bob.peer()
        identity = alice.devices.get_or_create_identity()
        payload["keys"]["curve25519:BOBDEVICE"] = identity.identity_key

        with pytest.raises(SignatureInvalid):
            alice.devices.ingest_device_announcement(payload)
        assert alice.devices.get_device(BOB, "BOBDEVICE") is None

    def test_key_change_does_not_replace_record(self, devices):
        changes = []
        devices.on_key_change = changes.append
        original = devices.record_peer_device(
            BOB, "BOBDEVICE", {"ed25519": "sig1", "curve25519": "id1"}
        )
        devices.set_verification(BOB, "BOBDEVICE", VerificationStatus.VERIFIED)

        returned = devices.record_peer_device(
            BOB, "BOBDEVICE", {"ed25519": "sig2", "curve25519": "id2"}
        )

        assert returned is original
        assert returned.signing_key == "sig1"
        assert len(changes) == 1
        assert devices.pending_key_changes()[0].signing_key == "sig2"

    def test_accept_key_change_resets_trust(self, devices):
        devices.record_peer_device(
            BOB, "BOBDEVICE", {"ed25519": "sig1", "curve25519": "id1"}
        )
        devices.set_verification(BOB, "BOBDEVICE", VerificationStatus.VERIFIED)
        devices.record_peer_device(
            BOB, "BOBDEVICE", {"ed25519": "sig2", "curve25519": "id2"}
        )

        device = devices.accept_key_change(BOB, "BOBDEVICE")

        assert device.signing_key == "sig2"
        assert device.verification == VerificationStatus.UNVERIFIED
        assert devices.pending_key_changes() == []

    def test_accept_without_change_raises(self, devices):
        with pytest.raises(UnknownDeviceError):
            devices.accept_key_change(BOB, "BOBDEVICE")

    def test_incomplete_keys(self, devices):
        with pytest.raises(ValueError):
            devices.record_peer_device(BOB, "BOBDEVICE", {"ed25519": "sig"})

    def test_devices_persist(self, store, devices):
        devices.record_peer_device(
            BOB, "BOBDEVICE", {"ed25519": "sig1", "curve25519": "id1"}
        )
        devices.set_verification(BOB, "BOBDEVICE", "blacklisted")

        reloaded = DeviceIdentityStore(store)
        device = reloaded.get_device(BOB, "BOBDEVICE")
        assert device.is_blacklisted
        with open(store.store_path / "devices.json", encoding="utf-8") as f:
            assert json.load(f)["devices"][0]["verification"] == "blacklisted"


class TestTrust:
    @pytest.fixture(autouse=True)
    def bob_device(self, devices):
        devices.record_peer_device(
            BOB, "BOBDEVICE", {"ed25519": "sig1", "curve25519": "id1"}
        )

    def test_unverified_trusted_unless_blacklisting(self, devices):
        assert devices.is_trusted(BOB, "BOBDEVICE")
        assert not devices.is_trusted(BOB, "BOBDEVICE", blacklist_unverified=True)

    def test_verified_always_trusted(self, devices):
        devices.set_verification(BOB, "BOBDEVICE", VerificationStatus.VERIFIED)
        assert devices.is_trusted(BOB, "BOBDEVICE", blacklist_unverified=True)

    def test_blacklisted_never_trusted(self, devices):
        devices.set_verification(BOB, "BOBDEVICE", VerificationStatus.BLACKLISTED)
        assert not devices.is_trusted(BOB, "BOBDEVICE")

    def test_unknown_device_not_trusted(self, devices):
        assert not devices.is_trusted(BOB, "NOPE")
        with pytest.raises(UnknownDeviceError):
            devices.set_verification(BOB, "NOPE", VerificationStatus.VERIFIED)

    def test_mark_known(self, devices):
        devices.mark_known([devices.get_device(BOB, "BOBDEVICE")])
        assert devices.get_device(BOB, "BOBDEVICE").known

    def test_flag_device(self, devices):
        devices.flag_device(BOB, "BOBDEVICE", "bad signature")
        assert devices.get_device(BOB, "BOBDEVICE").flagged_reason == "bad signature"


def claim_key(server, user_id, device_id):
    stock = server.one_time_keys[(user_id, device_id)]
    return stock.pop(next(iter(stock)))


@pytest.fixture
def olm_pair(pair, server):
    """Alice holds an outbound Olm session with Bob's device"""
    alice, bob = pair
    bob_device = alice.devices.get_device(BOB, "BOBDEVICE")
    alice.devices.create_olm_session(bob_device, claim_key(server, BOB, "BOBDEVICE"))
    return alice, bob, bob_device


class TestOneTimeKeys:
    def test_keys_are_signed(self, devices):
        identity = devices.get_or_create_identity()
        keys = devices.one_time_keys_payload(3)

        assert len(keys) == 3
        for key_id, key in keys.items():
            assert key_id.startswith("signed_curve25519:")
            assert DeviceIdentityStore.verify_json(
                key, ALICE, "ALICEDEVICE", identity.signing_key
            )

    def test_published_keys_are_not_returned_again(self, devices):
        first = devices.one_time_keys_payload(2)
        devices.mark_one_time_keys_published()
        second = devices.one_time_keys_payload(2)

        assert len(second) == 2
        assert not set(first) & set(second)

    def test_device_keys_list_olm(self, devices):
        algorithms = devices.device_keys_payload()["algorithms"]
        assert "m.olm.v1.curve25519-aes-sha2" in algorithms
        assert "m.megolm.v1.aes-sha2" in algorithms

    def test_forged_one_time_key(self, pair, server):
        alice, _ = pair
        bob_device = alice.devices.get_device(BOB, "BOBDEVICE")
        key = claim_key(server, BOB, "BOBDEVICE")
        key["key"] = alice.devices.get_or_create_identity().identity_key

        with pytest.raises(SignatureInvalid):
            alice.devices.create_olm_session(bob_device, key)
        assert not alice.devices.has_olm_session(bob_device)


class TestOlmToDevice:
    def test_only_recipient_can_decrypt(self, olm_pair):
        alice, bob, bob_device = olm_pair
        content = alice.devices.encrypt_for_device(
            bob_device, "m.room_key", {"secret": 42}
        )

        assert content["algorithm"] == "m.olm.v1.curve25519-aes-sha2"
        assert "42" not in json.dumps(content)
        payload = bob.devices.decrypt_to_device(ALICE, content)
        assert payload.event_type == "m.room_key"
        assert payload.content == {"secret": 42}
        assert payload.sender_device == "ALICEDEVICE"
        with pytest.raises(CiphertextInvalid):
            alice.devices.decrypt_to_device(ALICE, content)

    def test_session_is_reused(self, olm_pair):
        alice, bob, bob_device = olm_pair
        for n in range(3):
            content = alice.devices.encrypt_for_device(bob_device, "m.dummy", {"n": n})
            assert bob.devices.decrypt_to_device(ALICE, content).content == {"n": n}
        alice_device = bob.devices.get_device(ALICE, "ALICEDEVICE")
        assert bob.devices.has_olm_session(alice_device)

    def test_resolve_sender_device(self, olm_pair):
        alice, bob, bob_device = olm_pair
        payload = bob.devices.decrypt_to_device(
            ALICE, alice.devices.encrypt_for_device(bob_device, "m.room_key", {})
        )

        device = bob.devices.resolve_sender_device(payload)
        assert device.device_id == "ALICEDEVICE"

    def test_signing_key_mismatch_flags_device(self, olm_pair):
        alice, bob, bob_device = olm_pair
        payload = bob.devices.decrypt_to_device(
            ALICE, alice.devices.encrypt_for_device(bob_device, "m.room_key", {})
        )
        payload.signing_key = bob.devices.get_or_create_identity().signing_key

        with pytest.raises(SignatureInvalid):
            bob.devices.resolve_sender_device(payload)
        assert bob.devices.get_device(ALICE, "ALICEDEVICE").flagged_reason

    def test_unknown_sender_device(self, olm_pair, tmp_path):
        alice, bob, bob_device = olm_pair
        payload = bob.devices.decrypt_to_device(
            ALICE, alice.devices.encrypt_for_device(bob_device, "m.room_key", {})
        )
        fresh = DeviceIdentityStore(
            CryptoStore(tmp_path / "fresh", BOB, "BOBDEVICE")
        )

        with pytest.raises(UnknownDeviceError):
            fresh.resolve_sender_device(payload)

    def test_sender_mismatch(self, olm_pair):
        alice, bob, bob_device = olm_pair
        content = alice.devices.encrypt_for_device(bob_device, "m.room_key", {})

        with pytest.raises(SignatureInvalid):
            bob.devices.decrypt_to_device("@mallory:example.org", content)

    def test_tampered_body(self, olm_pair):
        alice, bob, bob_device = olm_pair
        content = alice.devices.encrypt_for_device(bob_device, "m.room_key", {})
        message = content["ciphertext"][bob_device.identity_key]
        message["body"] = message["body"][::-1]

        with pytest.raises(CiphertextInvalid):
            bob.devices.decrypt_to_device(ALICE, content)

    def test_plaintext_that_is_not_an_object(self, olm_pair):
        alice, bob, bob_device = olm_pair
        message_type, body = alice.olm.encrypt_olm(bob_device.identity_key, "[1, 2]")
        content = {
            "algorithm": "m.olm.v1.curve25519-aes-sha2",
            "sender_key": alice.devices.get_or_create_identity().identity_key,
            "ciphertext": {
                bob_device.identity_key: {"type": message_type, "body": body}
            },
        }

        with pytest.raises(CiphertextInvalid):
            bob.devices.decrypt_to_device(ALICE, content)

    @pytest.mark.parametrize(
        "content",
        [
            [1, 2],
            "m.room_key",
            {"algorithm": "m.olm.v1.curve25519-aes-sha2", "sender_key": 5},
            {
                "algorithm": "m.olm.v1.curve25519-aes-sha2",
                "sender_key": "abc",
                "ciphertext": ["abc"],
            },
        ],
    )
    def test_malformed_envelope(self, bob, content):
        with pytest.raises(CiphertextInvalid):
            bob.devices.decrypt_to_device(ALICE, content)

    @pytest.mark.parametrize(
        "entry",
        [
            [0, "AAAA"],
            {"type": "0", "body": "AAAA"},
            {"type": True, "body": "AAAA"},
            {"type": 0, "body": 17},
            {"type": 7, "body": "AAAA"},
        ],
    )
    def test_malformed_message(self, bob, entry):
        identity = bob.devices.get_or_create_identity()
        content = {
            "algorithm": "m.olm.v1.curve25519-aes-sha2",
            "sender_key": identity.identity_key,
            "ciphertext": {identity.identity_key: entry},
        }

        with pytest.raises(CiphertextInvalid):
            bob.devices.decrypt_to_device(ALICE, content)

    def test_wrong_algorithm(self, bob):
        with pytest.raises(CiphertextInvalid):
            bob.devices.decrypt_to_device(
                ALICE, {"algorithm": "m.megolm.v1.aes-sha2", "ciphertext": {}}
            )
