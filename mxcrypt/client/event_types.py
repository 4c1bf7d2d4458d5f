"""
Matrix event types used between the transport and the router
"""

from dataclasses import dataclass, field
from typing import Any

# Where an event came from inside a sync response
SOURCE_TIMELINE = "timeline"
SOURCE_STATE = "state"
SOURCE_TO_DEVICE = "to_device"
SOURCE_INVITE = "invite"


@dataclass
class RawEvent:
    """An event as delivered by the live event stream"""

    event_type: str
    sender: str
    content: dict[str, Any]
    room_id: str | None = None
    event_id: str = ""
    origin_server_ts: int = 0
    state_key: str | None = None
    unsigned: dict[str, Any] | None = None
    source: str = SOURCE_TIMELINE
    # True for events replayed by back-pagination (older history)
    from_pagination: bool = False

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        room_id: str | None = None,
        source: str = SOURCE_TIMELINE,
        from_pagination: bool = False,
    ):
        """Create event from dictionary"""
        content = data.get("content")
        return cls(
            event_type=data.get("type", ""),
            sender=data.get("sender", ""),
            # Non-object content is treated as empty
            content=content if isinstance(content, dict) else {},
            room_id=room_id or data.get("room_id"),
            event_id=data.get("event_id", ""),
            origin_server_ts=data.get("origin_server_ts", 0),
            state_key=data.get("state_key"),
            unsigned=data.get("unsigned"),
            source=source,
            from_pagination=from_pagination,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.event_type,
            "sender": self.sender,
            "content": self.content,
            "event_id": self.event_id,
            "origin_server_ts": self.origin_server_ts,
        }
        if self.room_id:
            data["room_id"] = self.room_id
        if self.state_key is not None:
            data["state_key"] = self.state_key
        if self.unsigned:
            data["unsigned"] = self.unsigned
        return data


@dataclass
class LoginResponse:
    access_token: str
    user_id: str
    device_id: str


@dataclass
class SyncBatch:
    """Events of one sync response plus the token to resume from"""

    next_batch: str | None
    events: list[RawEvent] = field(default_factory=list)
