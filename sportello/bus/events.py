"""Event types for the message bus."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass
class InboundMessage:
    """Message received from a chat channel."""

    channel: str  # discord, console, ...
    sender_id: str  # User identifier
    chat_id: str  # Channel/thread identifier
    content: str  # Message text
    message_id: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)  # Channel-specific data
    session_key_override: str | None = None

    @property
    def session_key(self) -> str:
        """Unique key identifying the conversation."""
        return self.session_key_override or f"{self.channel}:{self.chat_id}"

    @property
    def command(self) -> str:
        """Command name used by the error-loop guard (slash command or plain chat)."""
        return self.metadata.get("command") or "chat"


@dataclass
class OutboundMessage:
    """Message to send to a chat channel."""

    channel: str
    chat_id: str
    content: str
    reply_to: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
