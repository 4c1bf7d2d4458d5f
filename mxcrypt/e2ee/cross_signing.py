"""
Session Bootstrap - cross-signing identity of the account

Runs once per account. Generates the master, self-signing and user-signing
keys, cross-signs this device and uploads everything with a freshly
re-authenticated access token.
"""

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from ..errors import BootstrapError, MatrixClientError
from ..log import get_logger
from .crypto_store import CryptoStore
from .device_store import DeviceIdentityStore
from .encoding import (
    canonical_json,
    decode_base64,
    encode_base64,
    raw_private_bytes,
    raw_public_bytes,
)

logger = get_logger("e2ee.cross_signing")

KEY_USAGES = ("master", "self_signing", "user_signing")


class CrossSigningTransport(Protocol):
    async def query_keys(
        self, device_keys: dict[str, list[str]], timeout: int = 10000
    ) -> dict[str, Any]: ...

    async def upload_signing_keys(
        self, signing_keys: dict[str, Any], access_token: str
    ) -> dict[str, Any]: ...

    async def upload_signatures(
        self, signatures: dict[str, Any], access_token: str | None = None
    ) -> dict[str, Any]: ...


class SessionBootstrap:
    """
    Cross-signing bootstrap

    Idempotent: an identity found locally or on the server is never replaced.
    """

    def __init__(
        self,
        transport: CrossSigningTransport,
        devices: DeviceIdentityStore,
        store: CryptoStore,
    ):
        self.transport = transport
        self.devices = devices
        self.store = store
        self.user_id = store.user_id
        self.device_id = store.device_id

        # usage -> public key
        self.public_keys: dict[str, str] = {}
        self._private_keys: dict[str, Ed25519PrivateKey] = {}
        self._load_local_keys()

    @property
    def master_key(self) -> str | None:
        return self.public_keys.get("master")

    @property
    def has_identity(self) -> bool:
        return bool(self.master_key)

    def _load_local_keys(self):
        data = self.store.load_cross_signing()
        if not data:
            return
        for usage in KEY_USAGES:
            entry = data.get(usage) or {}
            if entry.get("pub"):
                self.public_keys[usage] = entry["pub"]
            if entry.get("priv"):
                self._private_keys[usage] = Ed25519PrivateKey.from_private_bytes(
                    decode_base64(entry["priv"])
                )
        logger.info("[E2EE-CrossSign] Loaded local cross-signing keys")

    def _save_local_keys(self):
        self.store.save_cross_signing(
            {
                usage: {
                    "priv": encode_base64(
                        raw_private_bytes(self._private_keys[usage])
                    ),
                    "pub": self.public_keys[usage],
                }
                for usage in KEY_USAGES
            }
        )

    def _key_id(self, usage: str) -> str:
        return f"ed25519:{self.public_keys[usage]}"

    def _sign(self, usage: str, obj: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of ``obj`` signed with one of the cross-signing keys"""
        signature = encode_base64(
            self._private_keys[usage].sign(canonical_json(obj).encode("utf-8"))
        )
        signed = dict(obj)
        signatures = dict(obj.get("signatures", {}))
        user_signatures = dict(signatures.get(self.user_id, {}))
        user_signatures[self._key_id(usage)] = signature
        signatures[self.user_id] = user_signatures
        signed["signatures"] = signatures
        return signed

    def _key_object(self, usage: str) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "usage": [usage],
            "keys": {self._key_id(usage): self.public_keys[usage]},
        }

    async def _server_master_key(self) -> str | None:
        response = await self.transport.query_keys({self.user_id: []})
        master = (response.get("master_keys") or {}).get(self.user_id) or {}
        keys = list((master.get("keys") or {}).values())
        return keys[0] if keys else None

    async def bootstrap(self, reauthenticate: Callable[[], Awaitable[str]]) -> bool:
        """
        Create and upload the cross-signing identity if none exists

        Args:
            reauthenticate: Returns a fresh access token. The cached token is
                never used to upload signing keys.

        Returns:
            True if a new identity was created, False if one already existed

        Raises:
            BootstrapError: re-authentication or an upload failed
        """
        if self.has_identity:
            logger.info("[E2EE-CrossSign] Cross-signing identity present, skipping")
            return False

        try:
            server_master = await self._server_master_key()
        except MatrixClientError as e:
            raise BootstrapError(f"Could not query cross-signing keys: {e}") from e
        if server_master:
            # Keys exist on the server but not here; never overwrite them
            self.public_keys["master"] = server_master
            logger.warning(
                "[E2EE-CrossSign] Server already has a cross-signing identity, "
                "private keys are not available locally"
            )
            return False

        for usage in KEY_USAGES:
            self._private_keys[usage] = Ed25519PrivateKey.generate()
            self.public_keys[usage] = encode_base64(
                raw_public_bytes(self._private_keys[usage])
            )

        # Master key is attested by this device, the others by the master key
        master_key = self.devices.sign_json(self._key_object("master"))
        self_signing_key = self._sign("master", self._key_object("self_signing"))
        user_signing_key = self._sign("master", self._key_object("user_signing"))
        device_keys = self._sign("self_signing", self.devices.device_keys_payload())

        try:
            access_token = await reauthenticate()
        except Exception as e:
            self._forget_generated_keys()
            raise BootstrapError(f"Re-authentication failed: {e}") from e
        if not access_token:
            self._forget_generated_keys()
            raise BootstrapError("Re-authentication returned no access token")

        try:
            await self.transport.upload_signing_keys(
                {
                    "master_key": master_key,
                    "self_signing_key": self_signing_key,
                    "user_signing_key": user_signing_key,
                },
                access_token=access_token,
            )
        except MatrixClientError as e:
            self._forget_generated_keys()
            raise BootstrapError(f"Uploading cross-signing keys failed: {e}") from e
        self._save_local_keys()

        try:
            await self.transport.upload_signatures(
                {self.user_id: {self.device_id: device_keys}},
                access_token=access_token,
            )
        except MatrixClientError as e:
            raise BootstrapError(f"Signing device {self.device_id} failed: {e}") from e

        logger.info(
            f"[E2EE-CrossSign] Created cross-signing identity, "
            f"device {self.device_id} signed"
        )
        return True

    def _forget_generated_keys(self):
        self.public_keys.clear()
        self._private_keys.clear()
