"""
Event routing

- sync_manager: runs the live event stream and routes events
- subscription: bounded, async-iterable subscriptions
"""

from .subscription import (
    KIND_DECRYPTED,
    KIND_FAILED,
    KIND_MESSAGE,
    KIND_OUTCOME,
    Subscription,
)
from .sync_manager import RoomEventRouter

__all__ = [
    "RoomEventRouter",
    "Subscription",
    "KIND_DECRYPTED",
    "KIND_FAILED",
    "KIND_MESSAGE",
    "KIND_OUTCOME",
]
