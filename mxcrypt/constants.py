"""
Matrix protocol constants used by the E2EE engine
"""

MEGOLM_ALGORITHM = "m.megolm.v1.aes-sha2"
# Pairwise Olm sessions carrying room keys to each device
OLM_ALGORITHM = "m.olm.v1.curve25519-aes-sha2"
SUPPORTED_ALGORITHMS = [OLM_ALGORITHM, MEGOLM_ALGORITHM]

# Olm message types
OLM_MESSAGE_PRE_KEY = 0
OLM_MESSAGE_NORMAL = 1

# One-time key algorithm claimed to start Olm sessions
SIGNED_CURVE25519 = "signed_curve25519"

# Event types
EVENT_ROOM_MESSAGE = "m.room.message"
EVENT_ROOM_ENCRYPTED = "m.room.encrypted"
EVENT_ROOM_ENCRYPTION = "m.room.encryption"
EVENT_ROOM_MEMBER = "m.room.member"
EVENT_POWER_LEVELS = "m.room.power_levels"
EVENT_ROOM_KEY = "m.room_key"

# Megolm rotation defaults (m.room.encryption rotation_period_ms / _msgs)
DEFAULT_ROTATION_PERIOD_MS = 7 * 24 * 60 * 60 * 1000
DEFAULT_ROTATION_PERIOD_MSGS = 100

# Pickle key length required by vodozemac
PICKLE_KEY_SIZE = 32
PICKLE_KEY_SALT = "mxcrypt_e2ee"

# Default power levels (0 user, 50 moderator, 100 owner)
DEFAULT_INVITE_POWER_LEVEL = 0
DEFAULT_USER_POWER_LEVEL = 0

# Room creation presets
PRIVATE_CHAT_PRESET = "private_chat"
