"""
mxcrypt - Matrix client core with Megolm end-to-end encryption

Exposes the client context plus the encryption engine components so callers
can compose their own client or drive the engine directly in tests.
"""

from .config import ClientConfig
from .errors import (
    AuthFailure,
    BootstrapError,
    CiphertextInvalid,
    E2EEError,
    ForwardSecrecyViolation,
    MatrixAPIError,
    MatrixClientError,
    NetworkTransient,
    PermissionDenied,
    PolicyViolation,
    SignatureInvalid,
    StaleSessionError,
    UnknownDeviceError,
    UnknownSession,
    UnsupportedAlgorithm,
)
from .log import setup_logging
from .matrix_client import MatrixE2EEClient

__all__ = [
    "ClientConfig",
    "MatrixE2EEClient",
    "setup_logging",
    "MatrixClientError",
    "AuthFailure",
    "NetworkTransient",
    "MatrixAPIError",
    "PermissionDenied",
    "E2EEError",
    "UnknownSession",
    "ForwardSecrecyViolation",
    "SignatureInvalid",
    "CiphertextInvalid",
    "UnsupportedAlgorithm",
    "PolicyViolation",
    "StaleSessionError",
    "UnknownDeviceError",
    "BootstrapError",
]
