import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .state_machine import utc_now


def derive_action(message: list) -> str:
    if len(message) > 2:
        third = message[2]
        if isinstance(third, str):
            return third
        if isinstance(third, dict) and isinstance(third.get("action"), str):
            return third["action"]
    return "Unknown"


@dataclass
class MessageLogEntry:
    direction: str  # "sent" | "received"
    message: List[Any]
    device_id: Optional[str]
    action: str
    timestamp: str = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "direction": self.direction,
            "message": self.message,
            "timestamp": self.timestamp,
            "deviceId": self.device_id,
            "action": self.action,
        }


class MessageLog:
    """Most-recent-first record of the frames exchanged by every charge point."""

    def __init__(self, limit: int = 100):
        self._entries: deque = deque(maxlen=limit)

    def add(self, direction: str, message: list, device_id=None, action=None) -> MessageLogEntry:
        entry = MessageLogEntry(
            direction=direction,
            message=message,
            device_id=device_id,
            action=action or derive_action(message),
        )
        self._entries.appendleft(entry)
        return entry

    def entries(self, device_id=None) -> List[MessageLogEntry]:
        if device_id is None:
            return list(self._entries)
        return [e for e in self._entries if e.device_id == device_id]

    def purge_device(self, device_id: str) -> None:
        kept = [e for e in self._entries if e.device_id != device_id]
        self._entries.clear()
        self._entries.extend(kept)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self):
        return len(self._entries)
