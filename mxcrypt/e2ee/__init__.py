"""
End-to-end encryption engine

- olm_machine: vodozemac Olm account, Olm sessions and Megolm primitives
- device_store: own identity, peer device trust and Olm to-device messages
- group_sessions: Megolm session creation, rotation and sharing
- encryption_gate: per-room encryption policy
- decryption: decryption pipeline and outcomes
- cross_signing: one-time cross-signing bootstrap
"""

from .crypto_store import CryptoStore, generate_pickle_key
from .cross_signing import SessionBootstrap
from .decryption import (
    DecryptionOutcome,
    DecryptionPipeline,
    Failed,
    FailureReason,
    Pending,
    Plaintext,
)
from .device_store import (
    DeviceIdentityStore,
    DeviceKeyChange,
    Identity,
    PeerDevice,
    ToDevicePayload,
    VerificationStatus,
)
from .encryption_gate import EncryptionGate, MessagePolicy, RoomEncryptionPolicy
from .group_sessions import (
    EncryptedMessage,
    GroupSessionManager,
    InboundSession,
    OutboundGroupSession,
)
from .olm_machine import OlmMachine

__all__ = [
    "CryptoStore",
    "generate_pickle_key",
    "OlmMachine",
    "DeviceIdentityStore",
    "DeviceKeyChange",
    "Identity",
    "PeerDevice",
    "ToDevicePayload",
    "VerificationStatus",
    "GroupSessionManager",
    "OutboundGroupSession",
    "InboundSession",
    "EncryptedMessage",
    "EncryptionGate",
    "MessagePolicy",
    "RoomEncryptionPolicy",
    "DecryptionPipeline",
    "DecryptionOutcome",
    "Plaintext",
    "Pending",
    "Failed",
    "FailureReason",
    "SessionBootstrap",
]
