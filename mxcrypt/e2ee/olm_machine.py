"""
Olm Machine - vodozemac wrapper

All calls into the vodozemac ratchet implementation go through this module so
the rest of the engine deals in base64 strings, pickles and Python exceptions
from ``mxcrypt.errors``.

The Olm account (this device's Ed25519/Curve25519 identity and one-time keys)
and the pairwise Olm sessions live here and are persisted through the
CryptoStore. Megolm sessions are owned by the GroupSessionManager; this module
only provides their primitive operations.
"""

from vodozemac import (
    Account,
    AnyOlmMessage,
    Curve25519PublicKey,
    GroupSession,
    InboundGroupSession,
    MegolmMessage,
    Session,
    SessionKey,
)

from ..constants import OLM_MESSAGE_NORMAL, OLM_MESSAGE_PRE_KEY, PICKLE_KEY_SIZE
from ..errors import CiphertextInvalid, E2EEError
from ..log import get_logger
from .crypto_store import CryptoStore
from .encoding import decode_base64, encode_base64

logger = get_logger("e2ee.olm")


class OlmMachine:
    """
    Olm/Megolm primitive operations

    Provides:
    - the device's Olm account (identity keys, signing, one-time keys)
    - pairwise Olm sessions for to-device messages
    - Megolm outbound/inbound group sessions
    - Megolm encryption/decryption
    """

    def __init__(self, store: CryptoStore):
        """
        Args:
            store: Persistence of the account and the Olm sessions; its
                pickle key protects every pickle written to disk
        """
        if len(store.pickle_key) != PICKLE_KEY_SIZE:
            raise ValueError(f"pickle key must be {PICKLE_KEY_SIZE} bytes")
        self.store = store
        self.pickle_key = store.pickle_key
        self.user_id = store.user_id
        self.device_id = store.device_id

        self._account: Account | None = None
        # peer curve25519 key -> sessions, newest last
        self._olm_sessions: dict[str, list[Session]] = {}
        self._olm_sessions_loaded = False
        # Set when an inbound session used up one of our published keys
        self.one_time_keys_consumed = False

    # ========== Account ==========

    @property
    def account(self) -> Account:
        if self._account is None:
            self._init_account()
        return self._account

    def _init_account(self):
        """Load the Olm account, creating it on first use"""
        data = self.store.load_identity()
        if data:
            if data.get("device_id") != self.device_id:
                raise E2EEError(
                    f"Stored identity belongs to device {data.get('device_id')}, "
                    f"not {self.device_id}"
                )
            self._account = Account.from_pickle(data["account"], self.pickle_key)
            logger.info(f"Loaded Olm account for {self.user_id}/{self.device_id}")
        else:
            self._account = Account()
            self._save_account()
            logger.info(f"Created Olm account for {self.user_id}/{self.device_id}")

    def _save_account(self):
        self.store.save_identity(
            {
                "user_id": self.user_id,
                "device_id": self.device_id,
                "account": self._account.pickle(self.pickle_key),
            }
        )

    @property
    def ed25519_key(self) -> str:
        return self.account.ed25519_key.to_base64()

    @property
    def curve25519_key(self) -> str:
        return self.account.curve25519_key.to_base64()

    def sign(self, message: str) -> str:
        """Ed25519 signature of ``message`` by the account's signing key"""
        return self.account.sign(message.encode("utf-8")).to_base64()

    @property
    def max_one_time_keys(self) -> int:
        return self.account.max_number_of_one_time_keys

    def generate_one_time_keys(self, count: int) -> dict[str, str]:
        """
        Generate one-time keys and return every unpublished one

        Returns:
            key_id -> base64 Curve25519 key
        """
        if count > 0:
            self.account.generate_one_time_keys(count)
            self._save_account()
        return {
            key_id: key.to_base64()
            for key_id, key in self.account.one_time_keys.items()
        }

    def mark_keys_as_published(self):
        self.account.mark_keys_as_published()
        self._save_account()

    # ========== Olm sessions ==========

    def _sessions_for(self, identity_key: str) -> list[Session]:
        if not self._olm_sessions_loaded:
            for key, pickles in self.store.load_olm_sessions().items():
                self._olm_sessions[key] = [
                    Session.from_pickle(pickle, self.pickle_key) for pickle in pickles
                ]
            self._olm_sessions_loaded = True
        return self._olm_sessions.setdefault(identity_key, [])

    def _save_sessions(self, identity_key: str):
        self.store.save_olm_sessions(
            identity_key,
            [
                session.pickle(self.pickle_key)
                for session in self._olm_sessions.get(identity_key, [])
            ],
        )

    def has_olm_session(self, identity_key: str) -> bool:
        return bool(self._sessions_for(identity_key))

    def create_outbound_session(self, identity_key: str, one_time_key: str) -> str:
        """
        Start an Olm session with a device from one of its claimed one-time keys

        Returns:
            The new session's ID

        Raises:
            CiphertextInvalid: a key is not a valid Curve25519 key
        """
        try:
            session = self.account.create_outbound_session(
                Curve25519PublicKey.from_base64(identity_key),
                Curve25519PublicKey.from_base64(one_time_key),
            )
        except (ValueError, TypeError) as e:
            raise CiphertextInvalid(f"Cannot start Olm session: {e}") from e
        self._sessions_for(identity_key).append(session)
        self._save_sessions(identity_key)
        return session.session_id

    def encrypt_olm(self, identity_key: str, plaintext: str) -> tuple[int, str]:
        """
        Encrypt with the newest Olm session towards ``identity_key``

        Returns:
            (message_type, base64 body) tuple
        """
        sessions = self._sessions_for(identity_key)
        if not sessions:
            raise CiphertextInvalid(f"No Olm session with {identity_key}")
        message = sessions[-1].encrypt(plaintext.encode("utf-8"))
        self._save_sessions(identity_key)
        message_type, body = message.to_parts()
        return message_type, encode_base64(bytes(body))

    def decrypt_olm(self, sender_key: str, message_type: int, body: str) -> str:
        """
        Decrypt an Olm message, creating an inbound session for pre-key messages

        Raises:
            CiphertextInvalid: malformed message or no session can decrypt it
        """
        if message_type not in (OLM_MESSAGE_PRE_KEY, OLM_MESSAGE_NORMAL):
            raise CiphertextInvalid(f"Unknown Olm message type {message_type}")
        try:
            message = AnyOlmMessage.from_parts(message_type, decode_base64(body))
        except (ValueError, TypeError) as e:
            raise CiphertextInvalid(f"Malformed Olm message: {e}") from e

        sessions = self._sessions_for(sender_key)
        pre_key = message.to_pre_key() if message_type == OLM_MESSAGE_PRE_KEY else None
        for session in reversed(sessions):
            if pre_key is not None and not session.session_matches(pre_key):
                continue
            try:
                plaintext = session.decrypt(message)
            except ValueError:
                continue
            self._save_sessions(sender_key)
            return bytes(plaintext).decode("utf-8")

        if pre_key is None:
            raise CiphertextInvalid(f"No Olm session with {sender_key} decrypts")

        try:
            session, plaintext = self.account.create_inbound_session(
                Curve25519PublicKey.from_base64(sender_key), pre_key
            )
        except (ValueError, TypeError) as e:
            raise CiphertextInvalid(f"Cannot create inbound Olm session: {e}") from e
        sessions.append(session)
        self._save_sessions(sender_key)
        # The consumed one-time key is removed from the account
        self._save_account()
        self.one_time_keys_consumed = True
        logger.debug(f"Created inbound Olm session {session.session_id[:8]}...")
        try:
            return bytes(plaintext).decode("utf-8")
        except UnicodeDecodeError as e:
            raise CiphertextInvalid(f"Olm plaintext is not UTF-8: {e}") from e

    # ========== Megolm outbound ==========

    def create_outbound_group_session(self) -> GroupSession:
        return GroupSession()

    @staticmethod
    def session_id(session: GroupSession | InboundGroupSession) -> str:
        return session.session_id

    @staticmethod
    def export_session_key(session: GroupSession) -> str:
        """Session key at the session's current ratchet position"""
        return session.session_key.to_base64()

    @staticmethod
    def encrypt(session: GroupSession, plaintext: str) -> str:
        """Encrypt and advance the outbound ratchet by one step"""
        message = session.encrypt(plaintext.encode("utf-8"))
        return message.to_base64()

    def pickle_outbound(self, session: GroupSession) -> str:
        return session.pickle(self.pickle_key)

    def unpickle_outbound(self, pickle: str) -> GroupSession:
        return GroupSession.from_pickle(pickle, self.pickle_key)

    # ========== Megolm inbound ==========

    @staticmethod
    def create_inbound_group_session(session_key: str) -> InboundGroupSession:
        """
        Build an inbound session from a shared session key

        Raises:
            CiphertextInvalid: the key is not a valid Megolm session key
        """
        try:
            return InboundGroupSession(SessionKey(session_key))
        except (ValueError, TypeError) as e:
            raise CiphertextInvalid(f"Invalid Megolm session key: {e}") from e

    @staticmethod
    def decrypt(session: InboundGroupSession, ciphertext: str) -> tuple[str, int]:
        """
        Decrypt a Megolm message

        Returns:
            (plaintext, message_index) tuple

        Raises:
            CiphertextInvalid: malformed message, bad MAC or unknown index
        """
        try:
            message = MegolmMessage.from_base64(ciphertext)
            decrypted = session.decrypt(message)
            plaintext = bytes(decrypted.plaintext).decode("utf-8")
        except (ValueError, TypeError) as e:
            raise CiphertextInvalid(f"Megolm decryption failed: {e}") from e
        return plaintext, decrypted.message_index

    def pickle_inbound(self, session: InboundGroupSession) -> str:
        return session.pickle(self.pickle_key)

    def unpickle_inbound(self, pickle: str) -> InboundGroupSession:
        return InboundGroupSession.from_pickle(pickle, self.pickle_key)
