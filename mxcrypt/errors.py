"""
Error taxonomy of the client

Only ``NetworkTransient`` and ``UnknownSession`` are recovered locally.
Integrity failures always propagate to the caller or become a typed
``Failed`` outcome on the decryption pipeline.
"""


class MatrixClientError(Exception):
    """Base class for all client errors"""


class AuthFailure(MatrixClientError):
    """Login or re-authentication failed. Fatal to startup, never retried."""


class NetworkTransient(MatrixClientError):
    """Connection problem or 5xx/429 answer; read requests retry with backoff"""

    def __init__(self, message: str, retry_after_ms: int | None = None):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class MatrixAPIError(MatrixClientError):
    """The homeserver answered with an error body"""

    def __init__(self, errcode: str, error: str, status: int):
        super().__init__(f"Matrix API error: {errcode} - {error} (status: {status})")
        self.errcode = errcode
        self.error = error
        self.status = status


class PermissionDenied(MatrixClientError):
    """Our power level in the room is too low for the action"""

    def __init__(self, message: str, required: int, actual: int):
        super().__init__(message)
        self.required = required
        self.actual = actual


class E2EEError(MatrixClientError):
    """Base class for end-to-end encryption failures"""


class UnknownSession(E2EEError):
    """No inbound group session for (room_id, session_id) yet. Retryable."""

    retryable = True

    def __init__(self, room_id: str, session_id: str):
        super().__init__(f"No inbound group session {session_id} in {room_id}")
        self.room_id = room_id
        self.session_id = session_id


class ForwardSecrecyViolation(E2EEError):
    """Ratchet step behind the session's advancement (possible replay)"""

    retryable = False

    def __init__(self, session_id: str, message_index: int, next_index: int):
        super().__init__(
            f"Message index {message_index} of session {session_id} is behind "
            f"ratchet position {next_index}"
        )
        self.session_id = session_id
        self.message_index = message_index
        self.next_index = next_index


class SignatureInvalid(E2EEError):
    """A signature or sender binding did not verify. The device gets flagged."""

    retryable = False

    def __init__(self, message: str, user_id: str = "", device_id: str = ""):
        super().__init__(message)
        self.user_id = user_id
        self.device_id = device_id


class CiphertextInvalid(E2EEError):
    """Ciphertext or decrypted payload could not be decoded"""

    retryable = False


class PolicyViolation(E2EEError):
    """Encryption cannot be guaranteed for a send; the send is blocked"""

    def __init__(self, message: str, devices: list | None = None):
        super().__init__(message)
        self.devices = devices or []


class StaleSessionError(PolicyViolation):
    """Outbound session retired, exhausted or shared with a stale recipient set"""


class UnknownDeviceError(E2EEError, KeyError):
    """Device has never been recorded in the device store"""

    def __init__(self, user_id: str, device_id: str):
        E2EEError.__init__(self, f"Unknown device {user_id}:{device_id}")
        self.user_id = user_id
        self.device_id = device_id

    def __str__(self) -> str:
        return f"Unknown device {self.user_id}:{self.device_id}"


class BootstrapError(E2EEError):
    """Cross-signing bootstrap failed"""


class UnsupportedAlgorithm(CiphertextInvalid):
    """Event encrypted with an algorithm this client does not implement"""
